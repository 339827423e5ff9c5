"""Content model and storage collaborators."""

from .memory import MemoryStore
from .registry_client import RegistryClient
from .storage import (
    Fetcher,
    GraphSource,
    GraphTarget,
    PredecessorFinder,
    Pusher,
    Storage,
    fetch_all,
    try_push,
)
from .types import (
    BlockBufferOptions,
    DeserializeOptions,
    Descriptor,
    RegistryConfig,
    ResumeFromLedger,
    SerializeOptions,
)

__all__ = [
    "BlockBufferOptions",
    "DeserializeOptions",
    "Descriptor",
    "Fetcher",
    "GraphSource",
    "GraphTarget",
    "MemoryStore",
    "PredecessorFinder",
    "Pusher",
    "RegistryClient",
    "RegistryConfig",
    "ResumeFromLedger",
    "SerializeOptions",
    "Storage",
    "fetch_all",
    "try_push",
]
