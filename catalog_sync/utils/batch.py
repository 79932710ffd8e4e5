"""
Bounded-concurrency batch execution.

Items are split into fixed-size batches that run one after another. Inside a
batch at most `concurrency` items are in flight. Failed items are logged and
dropped; only successful results are returned.
"""

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Generic, TypeVar

import structlog

logger = structlog.get_logger()

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class BatchResult(Generic[T, R]):
    """Outcome of a run_in_batches call."""

    succeeded: list[R] = field(default_factory=list)
    failed: list[tuple[T, BaseException]] = field(default_factory=list)
    batches_run: int = 0
    stopped_early: bool = False


async def run_in_batches(
    items: Sequence[T],
    processor: Callable[[T], Awaitable[R]],
    batch_size: int = 10,
    concurrency: int = 5,
    pause_seconds: float = 1.0,
    should_continue: Callable[[], Awaitable[bool]] | None = None,
    on_batch_complete: Callable[[list[tuple[T, R | BaseException]]], Awaitable[None]] | None = None,
) -> BatchResult[T, R]:
    """
    Process items batch by batch.

    Args:
        items: Items to process, in order
        processor: Coroutine function applied to each item
        batch_size: Number of items per batch
        concurrency: Maximum concurrent processor calls within a batch
        pause_seconds: Pause between batches (not after the last one)
        should_continue: Awaited before each batch; returning False stops the run
        on_batch_complete: Awaited after each batch with (item, result-or-exception) pairs

    Returns:
        BatchResult with successes in input order and the failed items
    """
    if batch_size < 1:
        raise ValueError("batch_size must be >= 1")
    if concurrency < 1:
        raise ValueError("concurrency must be >= 1")

    result: BatchResult[T, R] = BatchResult()
    semaphore = asyncio.Semaphore(concurrency)

    async def _bounded(item: T) -> R:
        async with semaphore:
            return await processor(item)

    for start in range(0, len(items), batch_size):
        if should_continue is not None and not await should_continue():
            logger.info("Batch run stopped before batch", batch_start=start, total=len(items))
            result.stopped_early = True
            break

        batch = list(items[start : start + batch_size])
        outcomes = await asyncio.gather(*(_bounded(item) for item in batch), return_exceptions=True)
        result.batches_run += 1

        for item, outcome in zip(batch, outcomes):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                logger.warning("Batch item failed", item=str(item), error=str(outcome))
                result.failed.append((item, outcome))
            else:
                result.succeeded.append(outcome)

        if on_batch_complete is not None:
            await on_batch_complete(list(zip(batch, outcomes)))

        if start + batch_size < len(items) and pause_seconds > 0:
            await asyncio.sleep(pause_seconds)

    return result
