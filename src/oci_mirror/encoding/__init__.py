"""Archive encoding: serializer, checkpoint ledger, graph traversal and tracker."""

from .graph import extra_manifests, index_fallback, successors, successors_from_bytes
from .ledger import LedgerWriter, process_checkpoint, resume_from
from .mediatype import is_image, is_index, is_manifest
from .serializer import OCILayoutSerializer
from .tracker import TaggableTracker

__all__ = [
    "LedgerWriter",
    "OCILayoutSerializer",
    "TaggableTracker",
    "extra_manifests",
    "index_fallback",
    "is_image",
    "is_index",
    "is_manifest",
    "process_checkpoint",
    "resume_from",
    "successors",
    "successors_from_bytes",
]
