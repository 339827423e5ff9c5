"""Extract an archive into a destination, pushing manifests once complete."""

import json
import logging
from pathlib import Path
from typing import Optional, Union

from ..core.storage import GraphTarget, verified_content
from ..core.types import Descriptor, DeserializeOptions, MEDIA_TYPE_OCTET_STREAM
from ..encoding.graph import extra_manifests, parse_manifest
from ..encoding.mediatype import MEDIA_TYPE_IMAGE_INDEX
from ..encoding.serializer import BLOBS_DIR, INDEX_FILE, LAYOUT_FILE, LAYOUT_VERSION
from ..encoding.tracker import TaggableTracker
from ..exceptions import ArchiveFormatError, MissingBlobsError, ProtocolError
from ..tar.reader import ArchiveReader
from ..utils.digest import validate_digest

logger = logging.getLogger(__name__)

# the minimal index written first and the complete one written last
STRICT_INDEX_COUNT = 2


def blob_digest(name: str) -> Optional[str]:
    """Return the digest named by an archive path under ``blobs/``, if any."""
    parts = name.split("/")
    if len(parts) != 3 or parts[0] != BLOBS_DIR:
        return None
    digest = f"{parts[1]}:{parts[2]}"
    return digest if validate_digest(digest) else None


async def deserialize(
    archive_path: Union[str, Path],
    target: GraphTarget,
    reference: Optional[str] = None,
    options: Optional[DeserializeOptions] = None,
) -> Descriptor:
    """Push the content of an archive to target.

    Archive entries may come in any order. Blobs are pushed as they are read
    (unless target already has them) and every manifest is pushed as soon
    as everything it references is present. The last ``index.json`` in the
    archive becomes the root index.

    Args:
        archive_path: Archive file or tape device
        target: Destination storage
        reference: Optional tag for the root index
        options: Deserialize options

    Returns:
        Descriptor of the root index

    Raises:
        MissingBlobsError: If the archive lacks content its manifests need
        ArchiveFormatError: If the archive is not a valid layout
    """
    options = options or DeserializeOptions()
    tracker = TaggableTracker(target)

    index_count = 0
    last_index: Optional[bytes] = None
    first = True
    pushed = 0

    async with ArchiveReader(archive_path, options.block_size) as reader:
        async for member in reader:
            name = member.name
            while name.startswith("./"):
                name = name[2:]

            if first and options.strict and name != LAYOUT_FILE:
                raise ArchiveFormatError(
                    f"expected {LAYOUT_FILE} as the first entry in strict mode but found {name}"
                )
            first = False

            if member.isdir():
                continue

            if name == LAYOUT_FILE:
                check_layout_marker(await reader.read_all(member))
                continue

            if name == INDEX_FILE:
                index_count += 1
                last_index = await reader.read_all(member)
                await _notify_index(tracker, last_index)
                continue

            digest = blob_digest(name) if member.isfile() else None
            if digest is None:
                if options.strict:
                    raise ArchiveFormatError(f"unexpected archive entry {name}")
                logger.warning("Ignoring unexpected archive entry %s", name)
                continue

            desc = Descriptor(MEDIA_TYPE_OCTET_STREAM, digest, member.size)
            if await target.exists(desc):
                logger.debug("Blob %s already in destination", digest)
            else:
                content = reader.iter_content(member, options.chunk_size)
                await target.push(desc, verified_content(content, desc))
                pushed += 1
                logger.debug("Pushed blob %s (%d B)", digest, member.size)
            await tracker.add_blob(digest)

    if options.strict and index_count != STRICT_INDEX_COUNT:
        raise ArchiveFormatError(
            f"expected {STRICT_INDEX_COUNT} index.json files in strict mode "
            f"but received {index_count}"
        )
    if last_index is None:
        raise ArchiveFormatError(f"archive has no {INDEX_FILE}")

    root = Descriptor.from_bytes(MEDIA_TYPE_IMAGE_INDEX, last_index)
    await tracker.add_manifest_bytes(root, last_index)

    missing = tracker.missing_blobs()
    if missing:
        raise MissingBlobsError(missing)

    if reference:
        await target.tag(root, reference)
    logger.info("Extracted %s: %d blobs pushed, root %s", archive_path, pushed, root.digest)
    return root


def check_layout_marker(data: bytes) -> None:
    """Validate the content of the ``oci-layout`` file.

    Raises:
        ArchiveFormatError: If the marker is not a supported layout version
    """
    try:
        marker = json.loads(data)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ArchiveFormatError(f"invalid {LAYOUT_FILE}: {e}") from e
    if not isinstance(marker, dict) or marker.get("imageLayoutVersion") != LAYOUT_VERSION:
        raise ArchiveFormatError(f"unsupported {LAYOUT_FILE}: {marker!r}")


async def _notify_index(tracker: TaggableTracker, data: bytes) -> None:
    placeholder = Descriptor.from_bytes(MEDIA_TYPE_IMAGE_INDEX, data)
    try:
        index = parse_manifest(placeholder, data)
        manifests = [Descriptor.from_dict(item) for item in index.get("manifests") or []]
        manifests += extra_manifests(index)
    except (ProtocolError, ValueError, AttributeError) as e:
        raise ArchiveFormatError(f"invalid {INDEX_FILE}: {e}") from e
    for desc in manifests:
        await tracker.notify_manifest(desc)
