"""Serialize, deserialize and batch operations."""

from .batch import (
    BatchItem,
    BatchResult,
    DeserializeItem,
    DeserializeResult,
    batch_deserialize,
    batch_serialize,
)
from .deserialize import deserialize
from .serialize import ManifestTracker, archive_extension, serialize, write_descriptor

__all__ = [
    "BatchItem",
    "BatchResult",
    "DeserializeItem",
    "DeserializeResult",
    "ManifestTracker",
    "archive_extension",
    "batch_deserialize",
    "batch_serialize",
    "deserialize",
    "serialize",
    "write_descriptor",
]
