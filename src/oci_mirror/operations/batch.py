"""Serialize many independent artifacts concurrently, and extract many archives."""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Sequence, Union

import aiofiles

from ..core.storage import GraphSource, GraphTarget
from ..core.types import DeserializeOptions, Descriptor, SerializeOptions
from ..exceptions import LedgerError
from .deserialize import deserialize
from .serialize import RepoFunc, serialize

logger = logging.getLogger(__name__)


@dataclass
class BatchItem:
    """One artifact to serialize to its own archive."""

    source: GraphSource
    reference: str
    dest_path: Union[str, Path]
    checkpoint_path: Optional[Union[str, Path]] = None
    options: SerializeOptions = field(default_factory=SerializeOptions)


@dataclass
class BatchResult:
    """Outcome of serializing one batch item."""

    item: BatchItem
    descriptor: Optional[Descriptor] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


async def batch_serialize(
    items: Sequence[BatchItem],
    max_concurrency: int = 3,
    fail_fast: bool = False,
    repo_func: Optional[RepoFunc] = None,
) -> List[BatchResult]:
    """Serialize each item to its own archive with bounded concurrency.

    Items are independent: without fail_fast a failure is recorded in that
    item's result and the others carry on. With fail_fast the first failure
    cancels the remaining items and is raised.

    Returns:
        One result per item, in input order
    """
    if max_concurrency < 1:
        raise ValueError("max_concurrency must be positive")
    semaphore = asyncio.Semaphore(max_concurrency)

    async def run(item: BatchItem) -> BatchResult:
        async with semaphore:
            logger.info("Serializing %s to %s", item.reference, item.dest_path)
            try:
                desc = await serialize(
                    item.source,
                    item.reference,
                    item.dest_path,
                    item.checkpoint_path,
                    item.options,
                    repo_func,
                )
            except Exception as e:
                if fail_fast:
                    raise
                logger.error("Failed to serialize %s: %s", item.reference, e)
                return BatchResult(item, error=e)
            return BatchResult(item, descriptor=desc)

    tasks = [asyncio.create_task(run(item)) for item in items]
    try:
        return list(await asyncio.gather(*tasks))
    finally:
        for task in tasks:
            task.cancel()
        # wait for cancelled siblings to release their files
        await asyncio.gather(*tasks, return_exceptions=True)


@dataclass
class DeserializeItem:
    """One archive to extract to a destination."""

    archive_path: Union[str, Path]
    target: GraphTarget
    reference: Optional[str] = None
    options: DeserializeOptions = field(default_factory=DeserializeOptions)

    @property
    def name(self) -> str:
        return Path(self.archive_path).name


@dataclass
class DeserializeResult:
    """Outcome of extracting one archive.

    ``skipped`` is set when a previous run already extracted the archive.
    """

    item: DeserializeItem
    descriptor: Optional[Descriptor] = None
    error: Optional[BaseException] = None
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None


async def read_sync_records(path: Union[str, Path]) -> set[str]:
    """Return the names of the archives recorded as extracted in path.

    A missing file holds no records.

    Raises:
        LedgerError: If a record cannot be decoded
    """
    path = Path(path)
    if not path.exists():
        return set()

    names = set()
    async with aiofiles.open(path, "r", encoding="utf-8") as f:
        async for line in f:
            if not line.strip():
                continue
            try:
                names.add(json.loads(line)["archive"])
            except (json.JSONDecodeError, KeyError, TypeError) as e:
                raise LedgerError(f"sync record in {path} ill-formatted: {e}") from e
    return names


async def write_sync_record(
    path: Union[str, Path], item: DeserializeItem, desc: Descriptor
) -> None:
    """Append a record of a successful extraction to path."""
    record = {
        "archive": item.name,
        "reference": item.reference,
        "digest": desc.digest,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    async with aiofiles.open(path, "a", encoding="utf-8") as f:
        await f.write(json.dumps(record) + "\n")
        await f.flush()


async def batch_deserialize(
    items: Sequence[DeserializeItem],
    sync_path: Optional[Union[str, Path]] = None,
    fail_fast: bool = False,
) -> List[DeserializeResult]:
    """Extract each archive in turn.

    Archives are extracted one after the other since they usually share a
    destination. When sync_path is given, archives it already names are
    skipped and every successful extraction is appended to it straight away,
    so an interrupted batch can be run again as is.

    Without fail_fast a failure is recorded in that item's result and the
    remaining archives are still extracted. With fail_fast it is raised.

    Returns:
        One result per item, in input order
    """
    synced = await read_sync_records(sync_path) if sync_path else set()

    results = []
    for item in items:
        if item.name in synced:
            logger.info("Archive %s has previously been synced, skipping", item.name)
            results.append(DeserializeResult(item, skipped=True))
            continue

        logger.info("Extracting %s", item.archive_path)
        try:
            desc = await deserialize(item.archive_path, item.target, item.reference, item.options)
        except Exception as e:
            if fail_fast:
                raise
            logger.error("Failed to extract %s: %s", item.archive_path, e)
            results.append(DeserializeResult(item, error=e))
            continue

        if sync_path:
            await write_sync_record(sync_path, item, desc)
        synced.add(item.name)
        results.append(DeserializeResult(item, descriptor=desc))
    return results
