"""Annotation keys written to and read from archives."""

# Standard OCI annotation carrying the reference a root was resolved from
ANNOTATION_REF_NAME = "org.opencontainers.image.ref.name"

# Version of the tool that wrote the archive
ANNOTATION_TOOL_VERSION = "vnd.oci-mirror.version"

# Serialization format version of the archive
ANNOTATION_SERIALIZATION_VERSION = "vnd.oci-mirror.serialization.version"

# JSON encoded list of descriptors of nested indexes moved out of an index
ANNOTATION_EXTRA_MANIFESTS = "vnd.oci-mirror.extra-manifests"

# Bytes written to the archive once this descriptor was fully written.
# The minimum prefix of the archive needed to recover the descriptor.
ANNOTATION_ARCHIVE_OFFSET = "vnd.oci-mirror.offset"
