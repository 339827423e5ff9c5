"""Checkpoint ledger for resumable serialization.

The ledger is a JSON Lines file with one descriptor per blob written to the
archive. Each record carries, in an annotation, the number of archive bytes
written once that blob was complete. Given a conservative count of bytes known
to be on the medium, a later run skips every blob recorded below that count.
"""

import json
import logging
from pathlib import Path
from typing import Callable, Iterable, Union

import aiofiles

from ..core.types import Descriptor, ResumeFromLedger
from ..exceptions import LedgerError
from .annotations import ANNOTATION_ARCHIVE_OFFSET

logger = logging.getLogger(__name__)


class LedgerWriter:
    """Appends checkpoint records to a ledger file."""

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)
        self._file = None

    async def __aenter__(self) -> "LedgerWriter":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def open(self) -> None:
        if self._file is None:
            self._file = await aiofiles.open(self.path, "w", encoding="utf-8")

    async def record(self, desc: Descriptor, offset: int) -> None:
        """Write one record for desc fully written at offset bytes."""
        if self._file is None:
            await self.open()
        entry = desc.with_annotations(**{ANNOTATION_ARCHIVE_OFFSET: str(offset)})
        await self._file.write(json.dumps(entry.to_dict(), separators=(",", ":")) + "\n")
        await self._file.flush()

    async def flush(self) -> None:
        if self._file is not None:
            await self._file.flush()

    async def close(self) -> None:
        if self._file is not None:
            await self._file.flush()
            await self._file.close()
            self._file = None


def decode_record(line: str) -> tuple[Descriptor, int]:
    """Decode one ledger line into the descriptor and its offset.

    The offset annotation is removed from the returned descriptor.

    Raises:
        LedgerError: If the line is not a valid record
    """
    try:
        data = json.loads(line)
        desc = Descriptor.from_dict(data)
    except (json.JSONDecodeError, ValueError) as e:
        raise LedgerError(f"ledger ill-formatted: {e}") from e

    raw = desc.annotations.get(ANNOTATION_ARCHIVE_OFFSET)
    if raw is None:
        raise LedgerError(f"ledger record for {desc.digest} has no offset")
    try:
        offset = int(raw, 10)
    except ValueError as e:
        raise LedgerError(f"extracting offset: {e}") from e
    if offset < 0:
        raise LedgerError(f"negative offset {offset} for {desc.digest}")

    annotations = {k: v for k, v in desc.annotations.items() if k != ANNOTATION_ARCHIVE_OFFSET}
    return Descriptor(desc.media_type, desc.digest, desc.size, annotations, desc.extra), offset


async def process_checkpoint(
    path: Union[str, Path],
    max_offset: int,
    skip_blob: Callable[[Descriptor], None],
) -> int:
    """Report every blob recorded strictly below max_offset to skip_blob.

    Reading stops at the first record at or beyond max_offset. A final record
    without a line terminator that cannot be decoded is a write interrupted by
    a crash and is ignored.

    Returns:
        Number of blobs reported
    """
    skipped = 0
    try:
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            async for line in f:
                if not line.strip():
                    continue
                try:
                    desc, offset = decode_record(line)
                except LedgerError:
                    if not line.endswith("\n"):
                        logger.warning("Ignoring truncated final record in ledger %s", path)
                        break
                    raise

                # only want digests that were serialized to the medium successfully
                if max_offset <= offset:
                    break

                skip_blob(desc)
                skipped += 1
    except OSError as e:
        raise LedgerError(f"unable to open checkpoint file: {e}") from e

    logger.info("Checkpoint %s: skipping %d blobs below offset %d", path, skipped, max_offset)
    return skipped


async def resume_from(
    skip_blob: Callable[[Descriptor], None],
    checkpoints: Iterable[ResumeFromLedger],
) -> None:
    """Apply each checkpoint ledger independently."""
    for checkpoint in checkpoints:
        # an offset of zero has nothing to offer
        if checkpoint.offset == 0:
            continue
        await process_checkpoint(checkpoint.path, checkpoint.offset, skip_blob)
