"""In-memory content-addressed storage."""

from collections import Counter
from typing import AsyncIterator

from ..encoding.graph import subject_of
from ..encoding.mediatype import is_manifest
from ..exceptions import AlreadyExistsError, BlobNotFoundError
from ..utils.digest import DigestVerifier
from .storage import Content, iter_content
from .types import Descriptor


class MemoryStore:
    """Storage keeping blobs and manifests in separate namespaces.

    Like a registry, the namespace is chosen by the descriptor's media type:
    content pushed with a manifest media type is a manifest, anything else is
    a blob. ``pushes`` counts successful pushes per (namespace, digest).
    """

    def __init__(self, chunk_size: int = 64 * 1024) -> None:
        self.chunk_size = chunk_size
        self.blobs: dict[str, bytes] = {}
        self.manifests: dict[str, tuple[Descriptor, bytes]] = {}
        self.tags: dict[str, Descriptor] = {}
        self.pushes: Counter = Counter()

    async def exists(self, desc: Descriptor) -> bool:
        if is_manifest(desc.media_type):
            return desc.digest in self.manifests
        return desc.digest in self.blobs

    async def fetch(self, desc: Descriptor) -> AsyncIterator[bytes]:
        data = self._get(desc)
        for i in range(0, len(data), self.chunk_size):
            yield data[i : i + self.chunk_size]

    async def push(self, desc: Descriptor, data: Content) -> None:
        if await self.exists(desc):
            raise AlreadyExistsError(f"{desc.digest} already exists")

        verifier = DigestVerifier(desc.digest, desc.size)
        chunks = []
        async for chunk in iter_content(data):
            verifier.update(chunk)
            chunks.append(chunk)
        verifier.verify()
        content = b"".join(chunks)

        if is_manifest(desc.media_type):
            self.manifests[desc.digest] = (
                Descriptor(desc.media_type, desc.digest, desc.size),
                content,
            )
            self.pushes[("manifest", desc.digest)] += 1
        else:
            self.blobs[desc.digest] = content
            self.pushes[("blob", desc.digest)] += 1

    async def resolve(self, reference: str) -> Descriptor:
        if reference in self.tags:
            return self.tags[reference]
        if reference in self.manifests:
            return self.manifests[reference][0]
        raise BlobNotFoundError(f"{reference}: not found")

    async def tag(self, desc: Descriptor, reference: str) -> None:
        if desc.digest not in self.manifests:
            raise BlobNotFoundError(f"{desc.digest}: manifest not found")
        self.tags[reference] = Descriptor(desc.media_type, desc.digest, desc.size)

    async def predecessors(self, desc: Descriptor) -> list[Descriptor]:
        """Return the manifests whose subject is desc."""
        result = []
        for manifest_desc, data in self.manifests.values():
            subject = subject_of(manifest_desc, data)
            if subject is not None and subject.digest == desc.digest:
                result.append(manifest_desc)
        return sorted(result, key=lambda d: d.digest)

    def _get(self, desc: Descriptor) -> bytes:
        if is_manifest(desc.media_type):
            if desc.digest in self.manifests:
                return self.manifests[desc.digest][1]
        elif desc.digest in self.blobs:
            return self.blobs[desc.digest]
        raise BlobNotFoundError(f"{desc.digest}: not found")

    def state(self) -> dict[str, set[str]]:
        """Return the digests stored in each namespace."""
        return {"blobs": set(self.blobs), "manifests": set(self.manifests)}
