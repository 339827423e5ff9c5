"""OCI Mirror - Async Python tool for moving OCI content DAGs through archives."""

__version__ = "0.1.0"

from .core.memory import MemoryStore
from .core.registry_client import RegistryClient
from .core.types import (
    BlockBufferOptions,
    DeserializeOptions,
    Descriptor,
    RegistryConfig,
    ResumeFromLedger,
    SerializeOptions,
)
from .encoding.serializer import OCILayoutSerializer
from .encoding.tracker import TaggableTracker
from .exceptions import (
    AlreadyExistsError,
    ArchiveFormatError,
    ArchiveReadError,
    BlobNotFoundError,
    BlobUploadError,
    ContentIntegrityError,
    DescriptorConflictError,
    DigestMismatchError,
    LedgerError,
    ManifestError,
    MirrorError,
    MissingBlobsError,
    ProtocolError,
    RegistryConnectionError,
    SizeMismatchError,
)
from .mirror import (
    batch_deserialize_archives,
    batch_serialize_images,
    deserialize_archive,
    serialize_image,
)
from .operations import (
    BatchItem,
    BatchResult,
    DeserializeItem,
    DeserializeResult,
    batch_deserialize,
    batch_serialize,
    deserialize,
    serialize,
)

__all__ = [
    # Functional API
    "serialize_image",
    "deserialize_archive",
    "batch_serialize_images",
    "batch_deserialize_archives",
    # Operations
    "serialize",
    "deserialize",
    "batch_serialize",
    "BatchItem",
    "BatchResult",
    "batch_deserialize",
    "DeserializeItem",
    "DeserializeResult",
    # Building blocks
    "Descriptor",
    "MemoryStore",
    "OCILayoutSerializer",
    "RegistryClient",
    "TaggableTracker",
    # Configuration
    "BlockBufferOptions",
    "DeserializeOptions",
    "RegistryConfig",
    "ResumeFromLedger",
    "SerializeOptions",
    # Exceptions
    "MirrorError",
    "AlreadyExistsError",
    "ArchiveFormatError",
    "ArchiveReadError",
    "BlobNotFoundError",
    "BlobUploadError",
    "ContentIntegrityError",
    "DescriptorConflictError",
    "DigestMismatchError",
    "LedgerError",
    "ManifestError",
    "MissingBlobsError",
    "ProtocolError",
    "RegistryConnectionError",
    "SizeMismatchError",
]
