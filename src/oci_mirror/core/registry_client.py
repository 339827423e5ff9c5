"""Registry API v2 async client for one repository.

Implements the storage, graph source, graph target and predecessor finder
interfaces on top of an unauthenticated registry, so that a repository can be
serialized to an archive or be the destination of an extraction.
"""

import json
import logging
from typing import AsyncIterator, Dict, List, Optional
from urllib.parse import urljoin

import aiohttp

from ..encoding.mediatype import MANIFEST_MEDIA_TYPES, MEDIA_TYPE_IMAGE_INDEX, is_manifest
from ..exceptions import (
    AlreadyExistsError,
    BlobNotFoundError,
    BlobUploadError,
    ManifestError,
    RegistryConnectionError,
)
from ..utils.digest import calculate_digest, validate_digest
from ..utils.reference import parse_reference
from .storage import Content, iter_content
from .types import Descriptor, RegistryConfig

logger = logging.getLogger(__name__)


class RegistryClient:
    """Registry API v2 async client bound to a single repository."""

    def __init__(
        self,
        registry_url: str,
        repository: str,
        timeout: int = 30,
        connector: Optional[aiohttp.TCPConnector] = None,
        chunk_size: int = 64 * 1024,
    ) -> None:
        """Initialize the registry client.

        Args:
            registry_url: Registry URL (e.g., http://localhost:5000)
            repository: Repository name (e.g., library/nginx)
            timeout: Request timeout in seconds
            connector: aiohttp connector for connection pooling
            chunk_size: Size of chunks yielded when fetching content
        """
        self.registry_url = registry_url.rstrip("/")
        self.repository = repository
        self.timeout = timeout
        self.connector = connector
        self.chunk_size = chunk_size
        self.session: Optional[aiohttp.ClientSession] = None

    @classmethod
    def from_config(cls, config: RegistryConfig, repository: str) -> "RegistryClient":
        """Create a client from a registry configuration."""
        return cls(config.url, repository, timeout=config.timeout)

    async def __aenter__(self) -> "RegistryClient":
        """Enter async context manager."""
        if not self.session:
            self.session = aiohttp.ClientSession(
                connector=self.connector,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit async context manager."""
        await self.close()

    async def close(self) -> None:
        """Close the client session."""
        if self.session and not self.session.closed:
            await self.session.close()

    async def check_registry_v2(self) -> bool:
        """Check if the registry supports v2 API.

        Returns:
            True if v2 API is supported
        """
        try:
            async with self.session.get(f"{self.registry_url}/v2/") as resp:
                return resp.status == 200
        except aiohttp.ClientError:
            return False

    def _url(self, desc: Descriptor) -> str:
        kind = "manifests" if is_manifest(desc.media_type) else "blobs"
        return f"{self.registry_url}/v2/{self.repository}/{kind}/{desc.digest}"

    async def exists(self, desc: Descriptor) -> bool:
        """Check if content exists in the repository.

        Manifest media types are looked up as manifests, anything else as a
        blob.

        Raises:
            RegistryConnectionError: If the registry cannot be reached
        """
        headers = {"Accept": desc.media_type} if is_manifest(desc.media_type) else {}
        try:
            async with self.session.head(self._url(desc), headers=headers) as resp:
                if resp.status == 404:
                    return False
                resp.raise_for_status()
                return True
        except aiohttp.ClientError as e:
            raise RegistryConnectionError(f"Failed to check {desc.digest}: {e}") from e

    async def fetch(self, desc: Descriptor) -> AsyncIterator[bytes]:
        """Stream the content of desc.

        Raises:
            BlobNotFoundError: If the repository does not hold desc
            RegistryConnectionError: If the download fails
        """
        headers = {"Accept": desc.media_type} if is_manifest(desc.media_type) else {}
        try:
            async with self.session.get(self._url(desc), headers=headers) as resp:
                if resp.status == 404:
                    raise BlobNotFoundError(f"{desc.digest}: not found in {self.repository}")
                resp.raise_for_status()
                async for chunk in resp.content.iter_chunked(self.chunk_size):
                    yield chunk
        except aiohttp.ClientError as e:
            raise RegistryConnectionError(f"Failed to fetch {desc.digest}: {e}") from e

    async def push(self, desc: Descriptor, data: Content) -> None:
        """Store content in the repository under desc.

        Args:
            desc: Descriptor of the content; a manifest media type pushes a
                manifest, anything else uploads a blob
            data: Content bytes or async iterator of chunks

        Raises:
            AlreadyExistsError: If the content is already present
            BlobUploadError: If a blob upload fails
            ManifestError: If a manifest upload fails
        """
        if not validate_digest(desc.digest):
            raise ValueError(f"Invalid digest format: {desc.digest}")
        if await self.exists(desc):
            raise AlreadyExistsError(f"{desc.digest} already exists in {self.repository}")

        if is_manifest(desc.media_type):
            content = b"".join([chunk async for chunk in iter_content(data)])
            await self.upload_manifest(desc.digest, content, desc.media_type)
        else:
            await self.upload_blob(data, desc.digest)

    async def upload_blob(self, data: Content, digest: str) -> str:
        """Upload a blob using a chunked upload session.

        Args:
            data: Blob data (bytes or async iterator)
            digest: Expected blob digest

        Returns:
            Blob digest

        Raises:
            BlobUploadError: If upload fails
        """
        try:
            # Start upload session
            url = f"{self.registry_url}/v2/{self.repository}/blobs/uploads/"
            async with self.session.post(url) as resp:
                resp.raise_for_status()
                upload_url = self._location(resp)

            async for chunk in iter_content(data):
                if not chunk:
                    continue
                async with self.session.patch(
                    upload_url,
                    data=chunk,
                    headers={
                        "Content-Type": "application/octet-stream",
                        "Content-Length": str(len(chunk)),
                    },
                ) as resp:
                    resp.raise_for_status()
                    upload_url = self._location(resp)

            # Finalize upload
            final_url = (
                f"{upload_url}&digest={digest}"
                if "?" in upload_url
                else f"{upload_url}?digest={digest}"
            )
            async with self.session.put(
                final_url, headers={"Content-Length": "0"}
            ) as resp:
                resp.raise_for_status()

            logger.debug("Uploaded blob %s to %s", digest, self.repository)
            return digest

        except aiohttp.ClientError as e:
            raise BlobUploadError(f"Failed to upload blob: {e}") from e

    async def upload_manifest(self, reference: str, data: bytes, media_type: str) -> str:
        """Upload raw manifest bytes under a tag or digest reference.

        The bytes are sent untouched so the digest is preserved.

        Returns:
            Manifest digest

        Raises:
            ManifestError: If upload fails
        """
        try:
            url = f"{self.registry_url}/v2/{self.repository}/manifests/{reference}"
            async with self.session.put(
                url,
                data=data,
                headers={
                    "Content-Type": media_type,
                    "Content-Length": str(len(data)),
                },
            ) as resp:
                resp.raise_for_status()
                return resp.headers.get("Docker-Content-Digest", calculate_digest(data))

        except aiohttp.ClientError as e:
            raise ManifestError(f"Failed to upload manifest: {e}") from e

    async def get_manifest(self, reference: str) -> tuple[Descriptor, bytes]:
        """Retrieve a manifest and its descriptor by tag or digest.

        Returns:
            The manifest descriptor and its raw bytes

        Raises:
            BlobNotFoundError: If the reference is unknown
            ManifestError: If retrieval fails
        """
        try:
            url = f"{self.registry_url}/v2/{self.repository}/manifests/{reference}"
            headers = {"Accept": ", ".join(MANIFEST_MEDIA_TYPES)}
            async with self.session.get(url, headers=headers) as resp:
                if resp.status == 404:
                    raise BlobNotFoundError(f"{reference}: not found in {self.repository}")
                resp.raise_for_status()
                data = await resp.read()
                media_type = resp.content_type

        except aiohttp.ClientError as e:
            raise ManifestError(f"Failed to get manifest: {e}") from e

        if not is_manifest(media_type):
            # fall back to the mediaType field of the document
            try:
                media_type = json.loads(data).get("mediaType", "")
            except (json.JSONDecodeError, UnicodeDecodeError, AttributeError) as e:
                raise ManifestError(f"Invalid manifest for {reference}: {e}") from e
            if not is_manifest(media_type):
                raise ManifestError(f"Unknown manifest media type for {reference}")
        return Descriptor.from_bytes(media_type, data), data

    async def resolve(self, reference: str) -> Descriptor:
        """Resolve a tag or digest to the descriptor of the manifest it names.

        A full reference naming this repository, such as ``myapp:v1`` or
        ``myapp@sha256:...``, is accepted as well.
        """
        if "@" in reference or "/" in reference or ":" in reference:
            repository, tag_or_digest = parse_reference(reference)
            if repository == self.repository:
                reference = tag_or_digest
        desc, _ = await self.get_manifest(reference)
        return desc

    async def tag(self, desc: Descriptor, reference: str) -> None:
        """Point a tag at an existing manifest.

        Raises:
            BlobNotFoundError: If the manifest is not in the repository
            ManifestError: If tagging fails
        """
        existing, data = await self.get_manifest(desc.digest)
        await self.upload_manifest(reference, data, desc.media_type or existing.media_type)
        logger.info("Tagged %s as %s:%s", desc.digest, self.repository, reference)

    async def predecessors(self, desc: Descriptor) -> List[Descriptor]:
        """List manifests whose subject is desc using the referrers API.

        A registry without the referrers API has no predecessors to offer.

        Raises:
            RegistryConnectionError: If the request fails
        """
        url = f"{self.registry_url}/v2/{self.repository}/referrers/{desc.digest}"
        try:
            async with self.session.get(
                url, headers={"Accept": MEDIA_TYPE_IMAGE_INDEX}
            ) as resp:
                if resp.status == 404:
                    return []
                resp.raise_for_status()
                index: Dict = await resp.json(content_type=None)
        except aiohttp.ClientError as e:
            raise RegistryConnectionError(f"Failed to list referrers: {e}") from e

        try:
            return [Descriptor.from_dict(item) for item in index.get("manifests") or []]
        except ValueError as e:
            raise ManifestError(f"Invalid referrers index for {desc.digest}: {e}") from e

    def _location(self, resp: aiohttp.ClientResponse) -> str:
        upload_url = resp.headers.get("Location", "")
        if not upload_url.startswith("http"):
            upload_url = urljoin(self.registry_url, upload_url)
        return upload_url
