"""Tests for the block buffer in front of the archive medium."""

import asyncio

import pytest

from oci_mirror.tar.blockbuf import BlockBuffer


class RecordingSink:
    """Sink recording every block written to it."""

    def __init__(self, gate: asyncio.Event = None):
        self.blocks = []
        self.closed = False
        self.gate = gate

    async def write(self, data):
        if self.gate is not None:
            await self.gate.wait()
        self.blocks.append(bytes(data))

    async def close(self):
        self.closed = True


class FailingSink(RecordingSink):
    async def write(self, data):
        raise OSError("medium error")


class TestBlockBuffer:
    """Test block framing, ordering and backpressure."""

    @pytest.mark.asyncio
    async def test_fixed_size_blocks_in_order(self):
        sink = RecordingSink()
        buffer = BlockBuffer(sink, buffer_blocks=4, block_size=8)
        payload = bytes(range(30))
        for i in range(0, len(payload), 7):
            await buffer.write(payload[i : i + 7])
        await buffer.close()

        assert [len(b) for b in sink.blocks] == [8, 8, 8, 6]
        assert b"".join(sink.blocks) == payload
        assert sink.closed

    @pytest.mark.asyncio
    async def test_producer_blocks_when_full(self):
        gate = asyncio.Event()
        sink = RecordingSink(gate)
        buffer = BlockBuffer(sink, buffer_blocks=2, block_size=4, high_water_mark=2)

        producer = asyncio.create_task(buffer.write(b"x" * 20))
        await asyncio.sleep(0.05)
        # one block held by the stalled writer and two queued
        assert not producer.done()

        gate.set()
        await asyncio.wait_for(producer, timeout=5)
        await buffer.close()
        assert b"".join(sink.blocks) == b"x" * 20
        assert all(len(b) == 4 for b in sink.blocks)

    @pytest.mark.asyncio
    async def test_writer_waits_for_high_water_mark(self):
        sink = RecordingSink()
        buffer = BlockBuffer(sink, buffer_blocks=8, block_size=2, high_water_mark=3)

        await buffer.write(b"ab" * 2)
        await asyncio.sleep(0.01)
        assert sink.blocks == []

        await buffer.write(b"cd")
        await asyncio.sleep(0.01)
        assert sink.blocks == [b"ab", b"ab", b"cd"]
        await buffer.close()

    @pytest.mark.asyncio
    async def test_close_flushes_below_high_water_mark(self):
        sink = RecordingSink()
        buffer = BlockBuffer(sink, buffer_blocks=8, block_size=4, high_water_mark=8)
        await buffer.write(b"abcdef")
        await buffer.close()
        assert sink.blocks == [b"abcd", b"ef"]

    @pytest.mark.asyncio
    async def test_writer_error_propagates(self):
        buffer = BlockBuffer(FailingSink(), buffer_blocks=1, block_size=4)
        with pytest.raises(OSError):
            await buffer.write(b"x" * 64)
            await buffer.close()

    @pytest.mark.asyncio
    async def test_abort_discards_buffered_blocks(self):
        sink = RecordingSink()
        buffer = BlockBuffer(sink, buffer_blocks=8, block_size=4, high_water_mark=8)
        await buffer.write(b"x" * 12)
        await buffer.abort()
        assert sink.blocks == []
        assert sink.closed

    @pytest.mark.asyncio
    async def test_abort_after_cancelled_producer(self):
        sink = RecordingSink(asyncio.Event())
        buffer = BlockBuffer(sink, buffer_blocks=2, block_size=4)

        producer = asyncio.create_task(buffer.write(b"x" * 40))
        await asyncio.sleep(0.05)
        producer.cancel()
        with pytest.raises(asyncio.CancelledError):
            await producer

        # the writer is stuck in the sink, so only abort can finish
        await asyncio.wait_for(buffer.abort(), timeout=2)
        assert sink.blocks == []
        assert sink.closed

    @pytest.mark.asyncio
    async def test_water_marks_are_capped(self):
        sink = RecordingSink()
        buffer = BlockBuffer(
            sink, buffer_blocks=4, block_size=10, high_water_mark=100, low_water_mark=50
        )
        assert buffer.high_water_mark == 4
        assert buffer.low_water_mark == 3

        buffer = BlockBuffer(sink, buffer_blocks=4, block_size=10)
        assert buffer.high_water_mark == 1
        assert buffer.low_water_mark == 0

    def test_invalid_sizes(self):
        with pytest.raises(ValueError):
            BlockBuffer(RecordingSink(), buffer_blocks=0, block_size=10)
