"""Tracks when a taggable may be pushed to the destination.

A taggable is an image manifest or an index: something a registry can tag.
Content arrives in any order. A taggable is pushed only once every successor
is present at the destination, and never more than once.

Events that can complete taggables:

- a blob arrives (may complete many images or indexes)
- an image or index is completed (may complete indexes that point to it)
- a manifest is named as such by an index after its bytes arrived as a blob

The content of a blob says nothing about its type. Only a referrer's
descriptor says that a digest is a manifest, so manifests are first stored at
the destination as plain blobs and promoted once their type is known. The
bytes of every taggable not yet pushed are kept in an in-memory cache.

The tracker keeps no locks. Callers feeding it from several tasks must
serialize access.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from ..core.storage import Storage, fetch_all, try_push
from ..core.types import Descriptor
from ..exceptions import BlobNotFoundError, DescriptorConflictError, ProtocolError
from .graph import successors_from_bytes
from .mediatype import is_manifest

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class _IncompleteTaggable:
    descriptor: Descriptor
    # successors not yet at the destination; zero means safe to push
    missing: int = 0


class TaggableTracker:
    """Completion state machine for one extraction.

    Args:
        target: Destination where blobs are found and completed manifests pushed
    """

    def __init__(self, target: Storage) -> None:
        self.target = target

        # The number of times a taggable appears across missing_blobs and
        # missing_taggables always equals its ``missing`` count.
        self.missing_blobs_index: dict[str, list[_IncompleteTaggable]] = {}
        self.missing_taggables: dict[str, list[_IncompleteTaggable]] = {}

        # every distinct descriptor seen for a taggable digest
        self.taggable_descriptors: dict[str, list[Descriptor]] = {}

        self._cache: dict[str, bytes] = {}
        self._added: set[str] = set()
        self._completed: set[str] = set()

    def known_taggable(self, digest: str) -> Optional[Descriptor]:
        """Return the (media type, digest, size) descriptor of a known taggable.

        Returns None if the digest has not been seen as a taggable yet.

        Raises:
            DescriptorConflictError: If recorded descriptors disagree
        """
        found = None
        for d in self.taggable_descriptors.get(digest, []):
            canonical = Descriptor(d.media_type, d.digest, d.size)
            if found is not None and found != canonical:
                raise DescriptorConflictError(
                    f"expected media type and size to match for {digest} "
                    f"but found {found} != {canonical}"
                )
            found = canonical
        return found

    def is_complete(self, digest: str) -> bool:
        """Return True once the taggable was pushed (or found) as a manifest."""
        return digest in self._completed

    def missing_blobs(self) -> list[str]:
        """Return the sorted digests of content the stream failed to supply.

        Taggables whose bytes arrived but which still wait on their own
        successors are not missing content and are not reported.
        """
        missing = set(self.missing_blobs_index)
        missing.update(h for h in self.missing_taggables if h not in self._added)
        return sorted(missing)

    async def notify_manifest(self, desc: Descriptor) -> None:
        """Record that desc is a taggable. Its data need not exist yet."""
        if await self._notify_manifest(desc):
            await self._complete(desc)

    async def add_manifest_bytes(self, desc: Descriptor, data: bytes) -> None:
        """Track a taggable whose bytes are held by the caller.

        Used for content that never passes through the destination as a blob,
        such as the root index of an archive.
        """
        self._record(desc)
        self._cache.setdefault(desc.digest, data)
        await self._add_taggables([desc])

    async def add_blob(self, digest: str) -> None:
        """Record that a blob with this digest now exists at the destination."""
        # the blob may be a taggable whose bytes arrived as a plain blob
        for desc in list(self.taggable_descriptors.get(digest, [])):
            if await self._load(desc):
                await self._add_taggables([desc])

        for waiting in self.missing_blobs_index.pop(digest, []):
            waiting.missing -= 1
            if waiting.missing == 0:
                await self._complete(waiting.descriptor)

    def _record(self, desc: Descriptor) -> None:
        if not is_manifest(desc.media_type):
            raise ProtocolError(f"{desc.media_type!r} is not a media type of a manifest")
        variants = self.taggable_descriptors.setdefault(desc.digest, [])
        for known in variants:
            if known.media_type != desc.media_type or known.size != desc.size:
                raise DescriptorConflictError(
                    f"descriptors for {desc.digest} disagree: {known} != {desc}"
                )
        if not any(known.to_dict() == desc.to_dict() for known in variants):
            variants.append(desc)

    async def _notify_manifest(self, desc: Descriptor) -> bool:
        """Record desc and return True if it is already complete."""
        pending: list[Descriptor] = []
        await self._check_manifest(desc, pending)
        await self._add_taggables(pending)
        return desc.digest in self._completed

    async def _check_manifest(self, desc: Descriptor, pending: list[Descriptor]) -> bool:
        """Record desc and return True if it is already complete.

        A manifest found at the destination as a blob is appended to pending,
        its successors still to be enumerated.
        """
        self._record(desc)
        logger.info("Notify manifest %s", desc.digest)

        if desc.digest in self._completed:
            return True
        if desc.digest in self._added:
            # bytes known, still waiting on successors
            return False

        try:
            data = await fetch_all(self.target, desc)
        except BlobNotFoundError:
            pass
        else:
            logger.info("Manifest %s already in destination", desc.digest)
            self._cache[desc.digest] = data
            # nothing else to do with this descriptor, it is already complete
            self._completed.add(desc.digest)
            return True

        # try promoting a blob to a manifest
        if await self._load(desc):
            logger.info("Manifest %s is stored as a blob", desc.digest)
            pending.append(desc)
        return False

    async def _load(self, desc: Descriptor) -> bool:
        """Ensure the bytes of desc are cached, reading them as a blob."""
        if desc.digest in self._cache:
            return True
        try:
            self._cache[desc.digest] = await fetch_all(self.target, desc.as_blob())
        except BlobNotFoundError:
            return False
        return True

    async def _add_taggables(self, pending: list[Descriptor]) -> None:
        """Enumerate the successors of cached taggables and track what is missing.

        Successor manifests whose bytes are available join the same work
        stack. A parent is registered as waiting before its successors are
        processed, so their completion cascades up to it.
        """
        while pending:
            desc = pending.pop()
            if desc.digest in self._added or desc.digest in self._completed:
                continue
            self._added.add(desc.digest)
            logger.info("Processing manifest %s in tracker", desc.digest)

            taggable = _IncompleteTaggable(desc)
            for successor in successors_from_bytes(desc, self._cache[desc.digest]):
                if is_manifest(successor.media_type):
                    if not await self._check_manifest(successor, pending):
                        logger.debug("%s waits on manifest %s", desc.digest, successor.digest)
                        taggable.missing += 1
                        self.missing_taggables.setdefault(successor.digest, []).append(taggable)
                elif not await self.target.exists(successor):
                    logger.debug("%s waits on blob %s", desc.digest, successor.digest)
                    taggable.missing += 1
                    self.missing_blobs_index.setdefault(successor.digest, []).append(taggable)

            if taggable.missing == 0:
                await self._complete(desc)

    async def _complete(self, desc: Descriptor) -> None:
        """Push a completed taggable and every parent its completion completes."""
        stack = [desc]
        while stack:
            node = stack.pop()
            if node.digest not in self._completed:
                data = self._cache[node.digest]
                # pushed under its real media type, without annotations
                manifest = Descriptor(node.media_type, node.digest, node.size)
                await try_push(self.target, manifest, data)
                self._completed.add(node.digest)
                logger.info("Pushed manifest %s (%s)", node.digest, node.media_type)

            # an index may now be complete, and so on up the graph
            for waiting in self.missing_taggables.pop(node.digest, []):
                waiting.missing -= 1
                if waiting.missing == 0:
                    stack.append(waiting.descriptor)
