"""Tests for the checkpoint ledger and resume protocol."""

import json

import pytest
import pytest_asyncio

from oci_mirror.core.types import Descriptor, ResumeFromLedger
from oci_mirror.encoding.annotations import ANNOTATION_ARCHIVE_OFFSET
from oci_mirror.encoding.ledger import (
    LedgerWriter,
    decode_record,
    process_checkpoint,
    resume_from,
)
from oci_mirror.encoding.mediatype import MEDIA_TYPE_IMAGE_LAYER
from oci_mirror.exceptions import LedgerError


def layer(data: bytes) -> Descriptor:
    return Descriptor.from_bytes(MEDIA_TYPE_IMAGE_LAYER, data)


@pytest.fixture
def entries():
    return [(layer(b"one"), 1024), (layer(b"two"), 2048), (layer(b"three"), 4096)]


@pytest_asyncio.fixture
async def ledger_path(tmp_path, entries):
    path = tmp_path / "ledger.jsonl"
    async with LedgerWriter(path) as writer:
        for desc, offset in entries:
            await writer.record(desc, offset)
    return path


class Collector:
    def __init__(self):
        self.skipped = []

    def __call__(self, desc):
        self.skipped.append(desc)


class TestDecodeRecord:
    """Test decoding of single ledger records."""

    def test_offset_is_removed(self):
        line = json.dumps(
            {
                "mediaType": MEDIA_TYPE_IMAGE_LAYER,
                "digest": layer(b"x").digest,
                "size": 1,
                "annotations": {ANNOTATION_ARCHIVE_OFFSET: "512", "keep": "me"},
            }
        )
        desc, offset = decode_record(line)
        assert offset == 512
        assert desc == layer(b"x")
        assert desc.annotations == {"keep": "me"}

    @pytest.mark.parametrize(
        "annotations",
        [{}, {ANNOTATION_ARCHIVE_OFFSET: "12ab"}, {ANNOTATION_ARCHIVE_OFFSET: "-1"}],
    )
    def test_bad_offset(self, annotations):
        record = layer(b"x").to_dict()
        record["annotations"] = annotations
        with pytest.raises(LedgerError):
            decode_record(json.dumps(record))

    def test_not_json(self):
        with pytest.raises(LedgerError):
            decode_record("{not json")


class TestProcessCheckpoint:
    """Test applying one ledger."""

    @pytest.mark.asyncio
    async def test_skips_strictly_below_offset(self, ledger_path, entries):
        collect = Collector()
        count = await process_checkpoint(ledger_path, 2048, collect)
        assert count == 1
        assert collect.skipped == [entries[0][0]]

    @pytest.mark.asyncio
    async def test_offset_past_end_skips_everything(self, ledger_path, entries):
        collect = Collector()
        await process_checkpoint(ledger_path, 10_000, collect)
        assert collect.skipped == [desc for desc, _ in entries]

    @pytest.mark.asyncio
    async def test_stops_at_first_record_beyond_offset(self, tmp_path):
        # a record below the offset after one beyond it is never reached
        path = tmp_path / "ledger.jsonl"
        async with LedgerWriter(path) as writer:
            await writer.record(layer(b"a"), 100)
            await writer.record(layer(b"b"), 300)
            await writer.record(layer(b"c"), 200)
        collect = Collector()
        await process_checkpoint(path, 250, collect)
        assert collect.skipped == [layer(b"a")]

    @pytest.mark.asyncio
    async def test_truncated_final_record_is_ignored(self, ledger_path, entries):
        with open(ledger_path, "a", encoding="utf-8") as f:
            f.write('{"mediaType":"application/vnd.oci.image.layer.v1.tar","dig')

        collect = Collector()
        await process_checkpoint(ledger_path, 10_000, collect)
        assert len(collect.skipped) == len(entries)

    @pytest.mark.asyncio
    async def test_malformed_record_is_fatal(self, tmp_path, entries):
        path = tmp_path / "ledger.jsonl"
        lines = [
            json.dumps(desc.with_annotations(**{ANNOTATION_ARCHIVE_OFFSET: str(o)}).to_dict())
            for desc, o in entries
        ]
        lines.insert(1, "garbage")
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")

        with pytest.raises(LedgerError):
            await process_checkpoint(path, 10_000, Collector())

    @pytest.mark.asyncio
    async def test_missing_file(self, tmp_path):
        with pytest.raises(LedgerError):
            await process_checkpoint(tmp_path / "nope.jsonl", 100, Collector())


class TestResumeFrom:
    """Test applying several ledgers."""

    @pytest.mark.asyncio
    async def test_zero_offset_is_ignored(self, tmp_path):
        collect = Collector()
        # the file does not exist; it must not even be opened
        await resume_from(collect, [ResumeFromLedger(tmp_path / "nope.jsonl", 0)])
        assert collect.skipped == []

    @pytest.mark.asyncio
    async def test_ledgers_applied_independently(self, tmp_path, ledger_path, entries):
        other = tmp_path / "other.jsonl"
        async with LedgerWriter(other) as writer:
            await writer.record(layer(b"four"), 512)
            await writer.record(layer(b"five"), 1024)

        collect = Collector()
        await resume_from(
            collect,
            [ResumeFromLedger(ledger_path, 1025), ResumeFromLedger(other, 513)],
        )
        assert collect.skipped == [entries[0][0], layer(b"four")]

    @pytest.mark.asyncio
    async def test_writer_truncates_existing_ledger(self, tmp_path):
        path = tmp_path / "ledger.jsonl"
        path.write_text("old content\n", encoding="utf-8")
        async with LedgerWriter(path) as writer:
            await writer.record(layer(b"a"), 512)
        collect = Collector()
        await process_checkpoint(path, 1024, collect)
        assert collect.skipped == [layer(b"a")]
