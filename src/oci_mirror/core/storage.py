"""Collaborator interfaces used by the serializer and the tracker."""

from typing import AsyncIterator, Protocol, Union, runtime_checkable

from ..exceptions import AlreadyExistsError
from ..utils.digest import DigestVerifier
from .types import Descriptor

Content = Union[bytes, AsyncIterator[bytes]]


@runtime_checkable
class Fetcher(Protocol):
    """Reads content by descriptor."""

    def fetch(self, desc: Descriptor) -> AsyncIterator[bytes]:
        """Stream the content of desc. Raises BlobNotFoundError if absent."""
        ...


@runtime_checkable
class Pusher(Protocol):
    """Writes content by descriptor."""

    async def push(self, desc: Descriptor, data: Content) -> None:
        """Store data under desc. Raises AlreadyExistsError if present."""
        ...


@runtime_checkable
class Storage(Fetcher, Pusher, Protocol):
    """Readable and writable content-addressed storage."""

    async def exists(self, desc: Descriptor) -> bool: ...


@runtime_checkable
class PredecessorFinder(Protocol):
    """Finds nodes that reference a node through a subject relationship."""

    async def predecessors(self, desc: Descriptor) -> list[Descriptor]: ...


@runtime_checkable
class GraphSource(Fetcher, Protocol):
    """A source whose references can be resolved to root descriptors."""

    async def resolve(self, reference: str) -> Descriptor: ...


@runtime_checkable
class GraphTarget(Storage, Protocol):
    """A destination that can also tag a manifest."""

    async def tag(self, desc: Descriptor, reference: str) -> None: ...


async def fetch_all(fetcher: Fetcher, desc: Descriptor) -> bytes:
    """Fetch the whole content of desc and verify it.

    Raises:
        ContentIntegrityError: If the content does not match desc
    """
    verifier = DigestVerifier(desc.digest, desc.size)
    chunks = []
    async for chunk in fetcher.fetch(desc):
        verifier.update(chunk)
        chunks.append(chunk)
    verifier.verify()
    return b"".join(chunks)


async def try_push(pusher: Pusher, desc: Descriptor, data: Content) -> None:
    """Push data, treating already existing content as success."""
    try:
        await pusher.push(desc, data)
    except AlreadyExistsError:
        pass


async def iter_content(data: Content) -> AsyncIterator[bytes]:
    """Normalise bytes or an async iterator of bytes into an async iterator."""
    if isinstance(data, (bytes, bytearray)):
        yield bytes(data)
        return
    async for chunk in data:
        yield chunk


async def verified_content(chunks: AsyncIterator[bytes], desc: Descriptor) -> AsyncIterator[bytes]:
    """Pass chunks through, raising once they stop matching desc.

    Raises:
        ContentIntegrityError: If the content does not match desc
    """
    verifier = DigestVerifier(desc.digest, desc.size)
    async for chunk in chunks:
        verifier.update(chunk)
        yield chunk
    verifier.verify()
