"""Writes a content DAG as an OCI image layout inside a forward-only tar stream.

The stream holds, in order: the ``oci-layout`` marker, a minimal
``index.json``, every unique blob under ``blobs/<algorithm>/<hex>``, and a
final ``index.json``. Tar headers carry no timestamps or ownership so that
identical inputs produce identical bytes. Compression, when enabled, applies
to the whole stream underneath the tar framing.
"""

import json
import logging
import tarfile
import zlib
from typing import Any, Optional

import zstandard

from ..core.storage import Fetcher
from ..core.types import Descriptor
from ..exceptions import MirrorError
from ..tar.blockbuf import Sink
from ..utils.digest import DigestVerifier
from .ledger import LedgerWriter

logger = logging.getLogger(__name__)

LAYOUT_FILE = "oci-layout"
INDEX_FILE = "index.json"
BLOBS_DIR = "blobs"
LAYOUT_VERSION = "1.0.0"

COMPRESSIONS = ("gzip", "zstd")


class _Compressor:
    """Whole-stream compressor with a flush that ends on a byte boundary."""

    def __init__(self, compression: str) -> None:
        self.compression = compression
        if compression == "gzip":
            # wbits=31 selects the gzip container; zlib writes a zero mtime
            self._obj = zlib.compressobj(9, zlib.DEFLATED, 31)
        elif compression == "zstd":
            self._obj = zstandard.ZstdCompressor(level=10).compressobj()
        else:
            raise ValueError(f"Unsupported compression: {compression}")

    def compress(self, data: bytes) -> bytes:
        return self._obj.compress(data)

    def flush(self) -> bytes:
        if self.compression == "gzip":
            return self._obj.flush(zlib.Z_SYNC_FLUSH)
        return self._obj.flush(zstandard.COMPRESSOBJ_FLUSH_BLOCK)

    def finish(self) -> bytes:
        return self._obj.flush()


class OCILayoutSerializer:
    """Serializes blobs, the layout marker and the index to a sink.

    Args:
        dest: Forward-only sink receiving the archive bytes
        compression: None, "gzip" or "zstd"
        ledger: Optional checkpoint ledger receiving one record per blob
        chunk_size: Read size used when copying blobs
    """

    def __init__(
        self,
        dest: Sink,
        compression: Optional[str] = None,
        ledger: Optional[LedgerWriter] = None,
    ) -> None:
        self.dest = dest
        self.ledger = ledger
        self._compressor = _Compressor(compression) if compression else None

        # bytes handed to dest, i.e. bytes that end up on the medium
        self.count = 0
        # bytes of tar framing produced, before compression
        self._tar_offset = 0

        self._blobs_dir = False
        self._algorithms: set[str] = set()
        self.existing_blobs: dict[str, Descriptor] = {}
        self._closed = False
        self._broken = False

    async def __aenter__(self) -> "OCILayoutSerializer":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def write_layout_marker(self) -> None:
        """Write the ``oci-layout`` file. Must be the first entry."""
        data = json.dumps({"imageLayoutVersion": LAYOUT_VERSION}).encode("utf-8")
        await self._write_file_bytes(LAYOUT_FILE, data)

    async def write_index(self, index: dict[str, Any]) -> None:
        """Write (or write again) the top level ``index.json``."""
        data = json.dumps(index, indent=2).encode("utf-8")
        await self._write_file_bytes(INDEX_FILE, data)

    async def write_blob(self, fetcher: Fetcher, desc: Descriptor) -> None:
        """Fetch desc from fetcher and append it to the archive.

        Does nothing if the digest was already written or marked skipped.

        Raises:
            ContentIntegrityError: If the fetched content does not match desc
        """
        if desc.digest in self.existing_blobs:
            return

        await self._ensure_dirs(desc.algorithm)

        name = f"{BLOBS_DIR}/{desc.algorithm}/{desc.encoded}"
        verifier = DigestVerifier(desc.digest, desc.size)
        try:
            await self._write_header(name, desc.size, tarfile.REGTYPE, 0o666)
            async for chunk in fetcher.fetch(desc):
                verifier.update(chunk)
                await self._emit(chunk)
            verifier.verify()
            await self._pad(desc.size)
        except BaseException:
            # the tar framing is now inconsistent; never finish this archive
            self._broken = True
            raise

        # so we never write this blob again to this archive
        self.skip_blob(desc)
        logger.debug("Wrote blob %s (%d B)", desc.digest, desc.size)

        if self.ledger is not None:
            await self._flush()
            await self.ledger.record(desc, self.count)

    def skip_blob(self, desc: Descriptor) -> None:
        """Never write a blob with this digest to the archive."""
        self.existing_blobs[desc.digest] = desc

    async def close(self) -> None:
        """Finish the archive. Safe to call more than once.

        The sink itself is owned by the caller and is not closed.
        """
        if self._closed:
            return
        self._closed = True

        if self.ledger is not None:
            await self.ledger.flush()

        if self._broken:
            logger.warning("Archive left unfinished after a failed blob write")
            return

        # end-of-archive marker followed by padding to a full record, as tarfile does
        trailer = tarfile.NUL * (tarfile.BLOCKSIZE * 2)
        remainder = (self._tar_offset + len(trailer)) % tarfile.RECORDSIZE
        if remainder:
            trailer += tarfile.NUL * (tarfile.RECORDSIZE - remainder)
        await self._emit(trailer)

        if self._compressor is not None:
            await self._write_out(self._compressor.finish())

    async def _write_file_bytes(self, name: str, data: bytes) -> None:
        await self._write_header(name, len(data), tarfile.REGTYPE, 0o666)
        await self._emit(data)
        await self._pad(len(data))

    async def _ensure_dirs(self, algorithm: str) -> None:
        if not self._blobs_dir:
            await self._write_header(BLOBS_DIR, 0, tarfile.DIRTYPE, 0o777)
            self._blobs_dir = True
        if algorithm not in self._algorithms:
            await self._write_header(f"{BLOBS_DIR}/{algorithm}", 0, tarfile.DIRTYPE, 0o777)
            self._algorithms.add(algorithm)

    async def _write_header(self, name: str, size: int, kind: bytes, mode: int) -> None:
        if self._closed:
            raise MirrorError("serializer is closed")
        info = tarfile.TarInfo(name)
        info.size = size
        info.mode = mode
        info.mtime = 0
        info.type = kind
        await self._emit(info.tobuf(tarfile.PAX_FORMAT, "utf-8", "surrogateescape"))

    async def _pad(self, size: int) -> None:
        remainder = size % tarfile.BLOCKSIZE
        if remainder:
            await self._emit(tarfile.NUL * (tarfile.BLOCKSIZE - remainder))

    async def _emit(self, data: bytes) -> None:
        self._tar_offset += len(data)
        if self._compressor is not None:
            data = self._compressor.compress(data)
        await self._write_out(data)

    async def _flush(self) -> None:
        if self._compressor is not None:
            await self._write_out(self._compressor.flush())

    async def _write_out(self, data: bytes) -> None:
        if data:
            await self.dest.write(data)
            self.count += len(data)
