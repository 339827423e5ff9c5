"""Writers for the archive medium.

``BlockBuffer`` behaves like mbuffer: the producer fills a bounded queue of
fixed-size blocks while a separate task writes them to the medium. Writing
starts once ``high_water_mark`` blocks are queued and continues until the
queue drains to ``low_water_mark``. A full queue blocks the producer.
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional, Protocol, Union

import aiofiles

logger = logging.getLogger(__name__)


class Sink(Protocol):
    """Forward-only byte sink."""

    async def write(self, data: bytes) -> None: ...

    async def close(self) -> None: ...


class FileSink:
    """Appends to a file or device without ever seeking."""

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)
        self._file = None

    async def __aenter__(self) -> "FileSink":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def open(self) -> None:
        if self._file is None:
            # append only so an existing prefix on the medium is never rewritten
            self._file = await aiofiles.open(self.path, "ab")

    async def write(self, data: bytes) -> None:
        if self._file is None:
            await self.open()
        await self._file.write(data)

    async def close(self) -> None:
        if self._file is not None:
            await self._file.flush()
            await self._file.close()
            self._file = None

    async def abort(self) -> None:
        """Close the file; nothing is buffered here."""
        await self.close()


class BlockBuffer:
    """Bounded block queue between the serializer and a sink."""

    def __init__(
        self,
        dest: Sink,
        buffer_blocks: int,
        block_size: int,
        high_water_mark: int = 0,
        low_water_mark: int = 0,
    ) -> None:
        if buffer_blocks < 1 or block_size < 1:
            raise ValueError("buffer_blocks and block_size must be positive")
        self.dest = dest
        self.block_size = block_size
        self.buffer_blocks = buffer_blocks
        # cap the marks to the buffer size
        self.high_water_mark = min(max(high_water_mark, 1), buffer_blocks)
        self.low_water_mark = min(max(low_water_mark, 0), self.high_water_mark - 1)

        self._queue: asyncio.Queue = asyncio.Queue(maxsize=buffer_blocks)
        self._pending = bytearray()
        self._start_writing = asyncio.Event()
        self._closing = False
        self._closed = False
        self._writer: Optional[asyncio.Task] = None

    async def __aenter__(self) -> "BlockBuffer":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if exc_type is None:
            await self.close()
        else:
            await self.abort()

    def start(self) -> None:
        if self._writer is None:
            self._writer = asyncio.create_task(self._drain())

    async def write(self, data: bytes) -> None:
        self.start()
        self._pending += data
        while len(self._pending) >= self.block_size:
            block = bytes(self._pending[: self.block_size])
            del self._pending[: self.block_size]
            await self._put(block)

    async def close(self) -> None:
        """Write the final partial block, drain the queue and close the sink."""
        if self._closed:
            return
        self.start()
        if self._pending:
            await self._put(bytes(self._pending))
            self._pending.clear()
        self._closing = True
        self._start_writing.set()
        try:
            await self._writer
        finally:
            self._closed = True
            await self.dest.close()

    async def abort(self) -> None:
        """Stop the writer task without flushing buffered blocks."""
        if self._writer is not None and not self._writer.done():
            self._writer.cancel()
            try:
                await self._writer
            except asyncio.CancelledError:
                pass
        self._closed = True
        await self.dest.close()

    async def _put(self, block: bytes) -> None:
        put = asyncio.ensure_future(self._queue.put(block))
        try:
            done, _ = await asyncio.wait(
                {put, self._writer}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            put.cancel()
            raise
        if put not in done:
            # the writer stopped while we were blocked on a full queue
            put.cancel()
            self._writer.result()
            raise RuntimeError("block buffer writer stopped unexpectedly")
        if self._writer.done():
            self._writer.result()
        if self._queue.qsize() >= self.high_water_mark:
            self._start_writing.set()

    async def _drain(self) -> None:
        while True:
            await self._start_writing.wait()
            logger.debug("Draining %d buffered blocks", self._queue.qsize())
            while not self._queue.empty() and (
                self._closing or self._queue.qsize() > self.low_water_mark
            ):
                block = self._queue.get_nowait()
                await self.dest.write(block)
            self._start_writing.clear()
            if self._closing and self._queue.empty():
                return
