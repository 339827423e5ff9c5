"""Tests for the streaming archive reader."""

import gzip
import io
import tarfile

import pytest
import zstandard

from oci_mirror.exceptions import ArchiveReadError
from oci_mirror.tar.reader import ArchiveReader
from tests.helpers import write_tar

ENTRIES = [("a.txt", b"alpha" * 1000), ("dir/b.bin", bytes(range(256))), ("empty", b"")]


async def read_entries(path, **kwargs):
    result = []
    async with ArchiveReader(path, **kwargs) as reader:
        async for member in reader:
            result.append((member.name, await reader.read_all(member)))
    return result


class TestArchiveReader:
    """Test reading plain and compressed archives."""

    @pytest.mark.asyncio
    async def test_plain(self, tmp_path):
        path = tmp_path / "plain.tar"
        write_tar(path, ENTRIES)
        assert await read_entries(path) == ENTRIES

    @pytest.mark.asyncio
    async def test_gzip(self, tmp_path):
        plain = tmp_path / "plain.tar"
        write_tar(plain, ENTRIES)
        path = tmp_path / "archive.tar.gz"
        path.write_bytes(gzip.compress(plain.read_bytes()))
        assert await read_entries(path) == ENTRIES

    @pytest.mark.asyncio
    async def test_zstd(self, tmp_path):
        plain = tmp_path / "plain.tar"
        write_tar(plain, ENTRIES)
        path = tmp_path / "archive.tar.zst"
        path.write_bytes(zstandard.ZstdCompressor().compress(plain.read_bytes()))
        assert await read_entries(path) == ENTRIES

    @pytest.mark.asyncio
    async def test_block_size(self, tmp_path):
        path = tmp_path / "plain.tar"
        write_tar(path, ENTRIES)
        assert await read_entries(path, block_size=10240) == ENTRIES

    @pytest.mark.asyncio
    async def test_unread_members_are_skipped(self, tmp_path):
        path = tmp_path / "plain.tar"
        write_tar(path, ENTRIES)
        async with ArchiveReader(path) as reader:
            names = [member.name async for member in reader]
        assert names == [name for name, _ in ENTRIES]

    @pytest.mark.asyncio
    async def test_chunked_content(self, tmp_path):
        path = tmp_path / "plain.tar"
        write_tar(path, ENTRIES[:1])
        async with ArchiveReader(path) as reader:
            async for member in reader:
                chunks = [c async for c in reader.iter_content(member, chunk_size=1000)]
        assert [len(c) for c in chunks] == [1000] * 5

    def test_missing_archive(self, tmp_path):
        with pytest.raises(ArchiveReadError):
            ArchiveReader(tmp_path / "missing.tar")

    @pytest.mark.asyncio
    async def test_truncated_archive(self, tmp_path):
        plain = tmp_path / "plain.tar"
        write_tar(plain, ENTRIES)
        path = tmp_path / "truncated.tar"
        path.write_bytes(plain.read_bytes()[:1500])

        with pytest.raises(ArchiveReadError):
            await read_entries(path)

    @pytest.mark.asyncio
    async def test_not_an_archive(self, tmp_path):
        path = tmp_path / "junk.tar"
        path.write_bytes(b"this is not a tar file" * 100)
        with pytest.raises(ArchiveReadError):
            await read_entries(path)

    @pytest.mark.asyncio
    async def test_iterate_before_open(self, tmp_path):
        path = tmp_path / "plain.tar"
        write_tar(path, ENTRIES)
        reader = ArchiveReader(path)
        with pytest.raises(ArchiveReadError):
            async for _ in reader:
                pass

    @pytest.mark.asyncio
    async def test_pax_members(self, tmp_path):
        path = tmp_path / "pax.tar"
        long_name = "blobs/sha256/" + "a" * 120
        with tarfile.open(path, "w", format=tarfile.PAX_FORMAT) as tar:
            info = tarfile.TarInfo(long_name)
            info.size = 3
            tar.addfile(info, io.BytesIO(b"abc"))
        assert await read_entries(path) == [(long_name, b"abc")]
