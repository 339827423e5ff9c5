"""Async streaming reader for archive files and tape devices."""

import asyncio
import io
import tarfile
from pathlib import Path
from typing import AsyncIterator, Optional, Union

import zstandard

from ..exceptions import ArchiveReadError

ZSTD_MAGIC = b"\x28\xb5\x2f\xfd"


class ArchiveReader:
    """Reads a tar stream front to back without seeking.

    gzip, bzip2 and xz streams are detected by ``tarfile``; zstd streams by
    their magic number. A member's content must be consumed, if at all,
    before moving to the next member.
    """

    def __init__(self, archive_path: Union[str, Path], block_size: int = 0) -> None:
        """Initialize archive reader.

        Args:
            archive_path: Path to the archive file or device
            block_size: Read buffer size; use the block size the medium was
                written with. Zero selects the default buffering.

        Raises:
            ArchiveReadError: If the archive does not exist
        """
        self.archive_path = Path(archive_path)
        if not self.archive_path.exists():
            raise ArchiveReadError(f"Archive not found: {archive_path}")
        self.block_size = block_size
        self._file: Optional[io.BufferedReader] = None
        self._stream = None
        self._tar_file: Optional[tarfile.TarFile] = None

    async def __aenter__(self) -> "ArchiveReader":
        """Enter async context manager."""
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._open)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit async context manager."""
        await self.close()

    async def close(self) -> None:
        """Close the archive."""
        if self._tar_file is not None or self._file is not None:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, self._close)

    def __aiter__(self) -> AsyncIterator[tarfile.TarInfo]:
        return self._members()

    async def _members(self) -> AsyncIterator[tarfile.TarInfo]:
        if self._tar_file is None:
            raise ArchiveReadError("Archive not opened")
        loop = asyncio.get_running_loop()
        while True:
            try:
                member = await loop.run_in_executor(None, self._tar_file.next)
            except (tarfile.TarError, OSError, zstandard.ZstdError) as e:
                raise ArchiveReadError(f"Failed to read archive entry: {e}") from e
            if member is None:
                break
            yield member

    async def iter_content(
        self, member: tarfile.TarInfo, chunk_size: int = 64 * 1024
    ) -> AsyncIterator[bytes]:
        """Get the current member's data as an async stream.

        Args:
            member: The member most recently yielded by iteration
            chunk_size: Size of chunks to yield

        Yields:
            Chunks of member data

        Raises:
            ArchiveReadError: If the member cannot be read
        """
        if self._tar_file is None:
            raise ArchiveReadError("Archive not opened")
        loop = asyncio.get_running_loop()
        try:
            member_file = await loop.run_in_executor(
                None, self._tar_file.extractfile, member
            )
            if member_file is None:
                raise ArchiveReadError(f"Could not extract {member.name}")

            while True:
                chunk = await loop.run_in_executor(None, member_file.read, chunk_size)
                if not chunk:
                    break
                yield chunk
        except (tarfile.TarError, OSError, zstandard.ZstdError) as e:
            raise ArchiveReadError(f"Failed to read {member.name}: {e}") from e

    async def read_all(self, member: tarfile.TarInfo) -> bytes:
        """Read the current member's data into memory."""
        chunks = [chunk async for chunk in self.iter_content(member)]
        return b"".join(chunks)

    def _open(self) -> None:
        buffering = self.block_size if self.block_size > 0 else io.DEFAULT_BUFFER_SIZE
        try:
            self._file = open(self.archive_path, "rb", buffering=buffering)
            if self._file.peek(len(ZSTD_MAGIC))[: len(ZSTD_MAGIC)] == ZSTD_MAGIC:
                self._stream = zstandard.ZstdDecompressor().stream_reader(self._file)
                self._tar_file = tarfile.open(fileobj=self._stream, mode="r|")
            else:
                self._tar_file = tarfile.open(fileobj=self._file, mode="r|*")
        except (tarfile.TarError, OSError, zstandard.ZstdError) as e:
            self._close()
            raise ArchiveReadError(
                f"Failed to open archive {self.archive_path}: {e}"
            ) from e

    def _close(self) -> None:
        if self._tar_file is not None:
            self._tar_file.close()
            self._tar_file = None
        if self._stream is not None:
            self._stream.close()
            self._stream = None
        if self._file is not None:
            self._file.close()
            self._file = None
