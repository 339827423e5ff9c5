"""Archive stream reading and medium writing."""

from .blockbuf import BlockBuffer, FileSink
from .reader import ArchiveReader

__all__ = ["ArchiveReader", "BlockBuffer", "FileSink"]
