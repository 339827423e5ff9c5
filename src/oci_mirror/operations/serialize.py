"""Serialize an artifact and everything it references to an archive."""

import logging
from pathlib import Path
from typing import Awaitable, Callable, Iterable, Optional, Union

from ..core.storage import Fetcher, GraphSource, PredecessorFinder
from ..core.types import Descriptor, ResumeFromLedger, SerializeOptions
from ..encoding.annotations import (
    ANNOTATION_REF_NAME,
    ANNOTATION_SERIALIZATION_VERSION,
    ANNOTATION_TOOL_VERSION,
)
from ..encoding.graph import successors
from ..encoding.ledger import LedgerWriter, resume_from
from ..encoding.mediatype import MEDIA_TYPE_IMAGE_INDEX, is_manifest
from ..encoding.serializer import OCILayoutSerializer
from ..exceptions import LedgerError
from ..tar.blockbuf import BlockBuffer, FileSink

logger = logging.getLogger(__name__)

# Serialization format version. Increment when the archive layout changes.
SERIALIZATION_VERSION = 2

RepoFunc = Callable[[str], Awaitable[GraphSource]]


class ManifestTracker:
    """Manifests seen during one traversal, in the order first seen.

    Descriptors are compared by media type, digest and size, so the same
    manifest reached under different annotations is only walked once.
    """

    def __init__(self) -> None:
        self._seen: set[Descriptor] = set()
        self.manifests: list[Descriptor] = []

    def __contains__(self, desc: Descriptor) -> bool:
        return desc in self._seen

    def add(self, desc: Descriptor) -> None:
        self._seen.add(desc)
        self.manifests.append(desc)


def archive_extension(compression: Optional[str]) -> str:
    """Return the conventional file extension for an archive."""
    if compression == "zstd":
        return "tar.zst"
    if compression == "gzip":
        return "tar.gz"
    return "tar"


async def serialize(
    source: GraphSource,
    reference: str,
    dest_path: Union[str, Path],
    checkpoint_path: Optional[Union[str, Path]] = None,
    options: Optional[SerializeOptions] = None,
    repo_func: Optional[RepoFunc] = None,
) -> Descriptor:
    """Write reference and its full transitive closure to an archive.

    The archive file is opened for appending only. When checkpoint_path is
    given, a ledger of every blob written and its archive offset is written
    there. On failure the partial archive is left in place, without an
    end-of-archive marker, so that a later run can resume from the ledger.

    Args:
        source: Where content is read from
        reference: Tag or digest of the root in source
        dest_path: Archive file or tape device
        checkpoint_path: Optional ledger file to create
        options: Serialize options
        repo_func: Maps an existing image reference to the source holding
            it; defaults to source itself

    Returns:
        Root descriptor, annotated with the reference it was resolved from

    Raises:
        LedgerError: If checkpoint_path is also a ledger being resumed from
    """
    options = options or SerializeOptions()
    if checkpoint_path:
        _check_ledger_path(checkpoint_path, options.existing_checkpoints)

    sink = FileSink(dest_path)
    await sink.open()
    dest: Union[FileSink, BlockBuffer] = sink
    if options.buffer.buffer_blocks > 0:
        dest = BlockBuffer(
            sink,
            options.buffer.buffer_blocks,
            options.buffer.block_size,
            options.buffer.high_water_mark,
            options.buffer.low_water_mark,
        )

    ledger = LedgerWriter(checkpoint_path) if checkpoint_path else None
    serializer = OCILayoutSerializer(dest, options.compression, ledger)
    failed = True
    try:
        await process_existing(
            options.existing_images, serializer.skip_blob, repo_func or _same_source(source)
        )
        await resume_from(serializer.skip_blob, options.existing_checkpoints)

        # opening truncates, so only after every earlier ledger has been read
        if ledger is not None:
            await ledger.open()

        root = await source.resolve(reference)
        # similar to tagging the root inside the archive
        root = root.with_annotations(**{ANNOTATION_REF_NAME: reference})

        # the oci-layout file always comes first
        await serializer.write_layout_marker()

        # a minimal index so that even a truncated archive names its root
        index = {
            "schemaVersion": 2,
            "mediaType": MEDIA_TYPE_IMAGE_INDEX,
            "manifests": [root.to_dict()],
            "annotations": {
                ANNOTATION_TOOL_VERSION: options.tool_version,
                ANNOTATION_SERIALIZATION_VERSION: str(SERIALIZATION_VERSION),
            },
        }
        await serializer.write_index(index)

        tracker = ManifestTracker()
        await write_descriptor(source, serializer, tracker, root, options.recursive)

        # every manifest is listed so predecessors remain discoverable
        index["manifests"] = [desc.to_dict() for desc in tracker.manifests]
        await serializer.write_index(index)

        await serializer.close()
        failed = False
    finally:
        if ledger is not None:
            await ledger.close()
        if failed:
            # a stalled medium must not block cancellation; queued blocks are dropped
            await dest.abort()
        else:
            await dest.close()

    logger.info(
        "Serialized %s (%d manifests, %d bytes)",
        reference,
        len(tracker.manifests),
        serializer.count,
    )
    return root


async def write_descriptor(
    fetcher: Fetcher,
    serializer: OCILayoutSerializer,
    tracker: ManifestTracker,
    desc: Descriptor,
    recursive: bool = False,
) -> None:
    """Write desc and, depth first, everything it references.

    With recursive set, manifests referring to desc through their subject
    are written too, if fetcher can find them.
    """
    if desc in tracker:
        return

    if not is_manifest(desc.media_type):
        logger.debug("Writing blob %s (%d B)", desc.short_digest(), desc.size)
        await serializer.write_blob(fetcher, desc)
        return

    await _write_manifest(fetcher, serializer, tracker, desc, recursive)

    if recursive and isinstance(fetcher, PredecessorFinder):
        # blobs are never searched for predecessors
        for predecessor in await fetcher.predecessors(desc):
            await write_descriptor(fetcher, serializer, tracker, predecessor, recursive)


async def _write_manifest(
    fetcher: Fetcher,
    serializer: OCILayoutSerializer,
    tracker: ManifestTracker,
    desc: Descriptor,
    recursive: bool,
) -> None:
    logger.info("Processing manifest %s", desc.digest)
    tracker.add(desc)

    # the manifest itself is stored as a blob
    await serializer.write_blob(fetcher, desc)

    for successor in await successors(fetcher, desc):
        await write_descriptor(fetcher, serializer, tracker, successor, recursive)


async def process_existing(
    existing_images: Iterable[str],
    skip_blob: Callable[[Descriptor], None],
    repo_func: RepoFunc,
) -> None:
    """Mark every blob reachable from the existing images as skippable.

    Manifests themselves are not marked.
    """
    for reference in existing_images:
        repo = await repo_func(reference)
        desc = await repo.resolve(reference)
        logger.info("Existing image %s resolved to %s", reference, desc.digest)
        await extract_blobs(repo, desc, skip_blob)


async def extract_blobs(
    fetcher: Fetcher,
    desc: Descriptor,
    found: Callable[[Descriptor], None],
) -> None:
    """Report every blob below desc to found."""
    for successor in await successors(fetcher, desc):
        if is_manifest(successor.media_type):
            await extract_blobs(fetcher, successor, found)
            continue
        found(successor)


def _check_ledger_path(
    checkpoint_path: Union[str, Path], existing: Iterable[ResumeFromLedger]
) -> None:
    target = Path(checkpoint_path).resolve()
    for checkpoint in existing:
        if Path(checkpoint.path).resolve() == target:
            raise LedgerError(
                f"checkpoint {checkpoint_path} is also being resumed from; "
                "write the new ledger to a different file"
            )


def _same_source(source: GraphSource) -> RepoFunc:
    async def repo_func(reference: str) -> GraphSource:
        return source

    return repo_func
