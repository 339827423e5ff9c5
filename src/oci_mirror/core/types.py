"""Core data types for the OCI mirror."""

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Optional

from ..utils.digest import calculate_digest, split_digest

MEDIA_TYPE_OCTET_STREAM = "application/octet-stream"


@dataclass(frozen=True)
class Descriptor:
    """Content-addressed reference to a blob, manifest or index.

    Equality and hashing use only media type, digest and size so that two
    descriptors differing in annotations identify the same node.
    """

    media_type: str
    digest: str
    size: int
    annotations: dict[str, str] = field(default_factory=dict, compare=False)
    # any other descriptor fields (platform, urls, artifactType, ...) kept verbatim
    extra: dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def algorithm(self) -> str:
        return split_digest(self.digest)[0]

    @property
    def encoded(self) -> str:
        return split_digest(self.digest)[1]

    @classmethod
    def from_bytes(cls, media_type: str, data: bytes) -> "Descriptor":
        """Create a descriptor for data already held in memory."""
        return cls(media_type=media_type, digest=calculate_digest(data), size=len(data))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Descriptor":
        """Parse the JSON form of a descriptor.

        Raises:
            ValueError: If a required field is missing or has the wrong type
        """
        try:
            media_type = data.get("mediaType", "")
            digest = data["digest"]
            size = data["size"]
        except (KeyError, AttributeError) as e:
            raise ValueError(f"Invalid descriptor: {data!r}") from e

        if not isinstance(digest, str) or not isinstance(size, int):
            raise ValueError(f"Invalid descriptor: {data!r}")
        split_digest(digest)

        extra = {
            k: v
            for k, v in data.items()
            if k not in ("mediaType", "digest", "size", "annotations")
        }
        return cls(
            media_type=media_type,
            digest=digest,
            size=size,
            annotations=dict(data.get("annotations") or {}),
            extra=extra,
        )

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON form of the descriptor."""
        result: dict[str, Any] = {
            "mediaType": self.media_type,
            "digest": self.digest,
            "size": self.size,
        }
        result.update(self.extra)
        if self.annotations:
            result["annotations"] = dict(self.annotations)
        return result

    def with_annotations(self, **annotations: str) -> "Descriptor":
        """Return a copy with the given annotations added."""
        merged = dict(self.annotations)
        merged.update(annotations)
        return replace(self, annotations=merged)

    def as_blob(self) -> "Descriptor":
        """Return the same content addressed as an opaque blob."""
        return Descriptor(MEDIA_TYPE_OCTET_STREAM, self.digest, self.size)

    def short_digest(self) -> str:
        return self.encoded[:12]


@dataclass
class RegistryConfig:
    """Registry connection configuration."""

    url: str
    timeout: int = 30

    def __post_init__(self) -> None:
        self.url = self.url.rstrip("/")


@dataclass
class BlockBufferOptions:
    """Options for the block buffer placed in front of the archive medium.

    ``buffer_blocks`` of zero disables the buffer entirely.
    """

    buffer_blocks: int = 0
    block_size: int = 10240
    high_water_mark: int = 0
    low_water_mark: int = 0


@dataclass
class ResumeFromLedger:
    """A checkpoint ledger and the number of bytes known to be on the medium."""

    path: Path
    offset: int


@dataclass
class SerializeOptions:
    """Options for a serialize operation."""

    compression: Optional[str] = None
    buffer: BlockBufferOptions = field(default_factory=BlockBufferOptions)
    existing_checkpoints: list[ResumeFromLedger] = field(default_factory=list)
    existing_images: list[str] = field(default_factory=list)
    recursive: bool = False
    tool_version: str = "0.1.0"


@dataclass
class DeserializeOptions:
    """Options for a deserialize operation."""

    strict: bool = False
    block_size: int = 0
    chunk_size: int = 64 * 1024
