"""
Batch processor — fixed-size chunking with bounded per-chunk concurrency.

Items are split into chunks of `chunk_size`. Each chunk runs its items with at
most `max_concurrency` in flight, and a static delay separates consecutive
chunks to stay under Graph rate limits. Per-item failures are logged and
counted; they never abort the run. There is no retry and no adaptive
throttling: a 429 inside a work item is that item's failure.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Iterator, Optional, Sequence, Union

from ..config import BatchConfig

logger = logging.getLogger("m365_admin.batch")

WorkFn = Callable[[Any], Union[Any, Awaitable[Any]]]
ProgressFn = Callable[[int, Any, "ItemOutcome"], None]


def chunked(items: Sequence[Any], size: int) -> Iterator[list[Any]]:
    """Yield consecutive chunks of at most `size` items, preserving order."""
    if size < 1:
        raise ValueError(f"chunk size must be >= 1, got {size}")
    for start in range(0, len(items), size):
        yield list(items[start:start + size])


@dataclass
class ItemOutcome:
    """Outcome of a single work item."""
    ok: bool
    value: Any = None
    error: str = ""


@dataclass
class BatchFailure:
    index: int
    item: Any
    error: str

    def to_dict(self) -> dict:
        return {"index": self.index, "item": self.item, "error": self.error}


@dataclass
class BatchResult:
    """Counts for one batch run. processed + failed == total."""
    total: int = 0
    processed: int = 0
    failed: int = 0
    chunks: int = 0
    duration_seconds: float = 0.0
    failures: list[BatchFailure] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "processed": self.processed,
            "failed": self.failed,
            "chunks": self.chunks,
            "duration_seconds": self.duration_seconds,
            "failures": [f.to_dict() for f in self.failures],
        }


class BatchProcessor:
    """
    Runs a unit of work over a collection in sequential chunks.

    Usage:
        processor = BatchProcessor(BatchConfig(chunk_size=20, max_concurrency=5))
        result = await processor.run(users, update_user)
    """

    def __init__(
        self,
        config: Optional[BatchConfig] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config or BatchConfig()
        self._sleep = sleep

    async def run(
        self,
        items: Iterable[Any],
        work: WorkFn,
        on_item: Optional[ProgressFn] = None,
    ) -> BatchResult:
        """Attempt `work(item)` exactly once for every item."""
        items = list(items)
        result = BatchResult(total=len(items))
        started = time.monotonic()
        semaphore = asyncio.Semaphore(self.config.max_concurrency)
        delay = self.config.delay_ms / 1000.0

        logger.info(
            f"Batch start: {len(items)} items, chunk size {self.config.chunk_size}, "
            f"concurrency {self.config.max_concurrency}, delay {self.config.delay_ms}ms"
        )

        offset = 0
        for chunk_no, chunk in enumerate(chunked(items, self.config.chunk_size)):
            if chunk_no > 0 and delay > 0:
                await self._sleep(delay)

            outcomes = await asyncio.gather(*[
                self._attempt(semaphore, work, item) for item in chunk
            ])

            for pos, (item, outcome) in enumerate(zip(chunk, outcomes)):
                index = offset + pos
                if outcome.ok:
                    result.processed += 1
                else:
                    result.failed += 1
                    result.failures.append(BatchFailure(index, item, outcome.error))
                    logger.error(f"Batch item {index} failed: {outcome.error}")
                if on_item:
                    on_item(index, item, outcome)

            result.chunks += 1
            offset += len(chunk)
            logger.debug(
                f"Chunk {chunk_no + 1} done: {result.processed} processed, "
                f"{result.failed} failed so far"
            )

        result.duration_seconds = round(time.monotonic() - started, 2)
        logger.info(
            f"Batch complete: {result.processed} processed, {result.failed} failed "
            f"in {result.duration_seconds}s"
        )
        return result

    @staticmethod
    async def _attempt(semaphore: asyncio.Semaphore, work: WorkFn, item: Any) -> ItemOutcome:
        async with semaphore:
            try:
                if inspect.iscoroutinefunction(work):
                    value = await work(item)
                else:
                    value = await asyncio.to_thread(work, item)
                    if inspect.isawaitable(value):
                        value = await value
                return ItemOutcome(ok=True, value=value)
            except Exception as e:
                return ItemOutcome(ok=False, error=f"{type(e).__name__}: {e}")


def run_batch(
    items: Iterable[Any],
    work: WorkFn,
    config: Optional[BatchConfig] = None,
    on_item: Optional[ProgressFn] = None,
) -> BatchResult:
    """Synchronous entry point around BatchProcessor.run()."""
    return asyncio.run(BatchProcessor(config).run(items, work, on_item=on_item))
