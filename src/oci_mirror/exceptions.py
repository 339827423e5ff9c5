"""Custom exceptions for the OCI mirror."""


class MirrorError(Exception):
    """Base exception for all mirror-related errors."""

    pass


class ContentIntegrityError(MirrorError):
    """Raised when content does not match its descriptor."""

    pass


class DigestMismatchError(ContentIntegrityError):
    """Raised when content hashes to a different digest than expected."""

    pass


class SizeMismatchError(ContentIntegrityError):
    """Raised when content length differs from the descriptor size."""

    pass


class MissingBlobsError(MirrorError):
    """Raised at end of stream when content needed by a manifest never arrived."""

    def __init__(self, missing: list[str]) -> None:
        self.missing = list(missing)
        super().__init__(f"missing {len(self.missing)} blobs: {self.missing}")


class ProtocolError(MirrorError):
    """Raised when an invariant of the content-addressed format is violated."""

    pass


class LedgerError(ProtocolError):
    """Raised when a checkpoint ledger cannot be decoded."""

    pass


class DescriptorConflictError(ProtocolError):
    """Raised when two descriptors for the same digest disagree."""

    pass


class ArchiveFormatError(ProtocolError):
    """Raised when an archive stream is not a valid OCI layout stream."""

    pass


class BlobNotFoundError(MirrorError):
    """Raised when content is not present in a storage."""

    pass


class AlreadyExistsError(MirrorError):
    """Raised when pushing content that is already present."""

    pass


class RegistryConnectionError(MirrorError):
    """Raised when unable to connect to the registry."""

    pass


class BlobUploadError(MirrorError):
    """Raised when blob upload fails."""

    pass


class ManifestError(MirrorError):
    """Raised when manifest operations fail."""

    pass


class ArchiveReadError(MirrorError):
    """Raised when unable to read an archive file."""

    pass
