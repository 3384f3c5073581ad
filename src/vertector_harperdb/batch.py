"""
Batch and parallel execution under a concurrency bound.

run_batched splits a record sequence into fixed-size groups and sends them in
waves of up to `concurrency` groups; a wave must settle before the next one
starts. A failed group marks each of its items failed at its original index
without aborting the job.

run_parallel launches independent operations with at most `concurrency` in
flight and returns a tagged outcome: Settled with per-item results, or
Aborted with the first error when fail_fast is requested.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Sequence, TypeVar, Union

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

DEFAULT_BATCH_SIZE = 1000
CANCELLED_MESSAGE = "Batch cancelled"


class BatchState(str, Enum):
    """Lifecycle of a batch job."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class BatchItemError:
    """Failure of one input item, by its position in the input sequence."""

    index: int
    error: str


@dataclass
class BatchResult:
    """Aggregate outcome of a bulk job. Partial failure is reported, not raised."""

    successful: int = 0
    failed: int = 0
    errors: list[BatchItemError] | None = None
    execution_time_ms: float = 0.0
    state: BatchState = BatchState.COMPLETED

    @property
    def ok(self) -> bool:
        return self.failed == 0


@dataclass(frozen=True)
class ParallelItem:
    """Result slot for one parallel operation."""

    index: int
    success: bool
    data: Any = None
    error: str | None = None


@dataclass
class ParallelResult:
    results: list[ParallelItem] = field(default_factory=list)
    successful: int = 0
    failed: int = 0
    execution_time_ms: float = 0.0


@dataclass(frozen=True)
class Settled:
    """Every operation ran; failures are recorded inline."""

    result: ParallelResult

    def unwrap(self) -> ParallelResult:
        return self.result


@dataclass(frozen=True)
class Aborted:
    """fail_fast stopped the run at the first failure."""

    error: BaseException
    index: int
    execution_time_ms: float = 0.0

    def unwrap(self) -> ParallelResult:
        raise self.error


ParallelOutcome = Union[Settled, Aborted]


def chunk(items: Sequence[T], size: int) -> list[list[T]]:
    """Split items into consecutive groups of at most size."""
    if size < 1:
        raise ValueError("batch size must be at least 1")
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


def _error_message(error: BaseException) -> str:
    return str(error) or type(error).__name__ or "Unknown error"


async def run_batched(
    items: Sequence[T],
    send_group: Callable[[list[T]], Awaitable[Any]],
    *,
    batch_size: int = DEFAULT_BATCH_SIZE,
    concurrency: int = 10,
    cancel_event: asyncio.Event | None = None,
) -> BatchResult:
    """
    Send items in fixed-size groups, `concurrency` groups per wave.

    Args:
        items: Records or keys to send, in input order
        send_group: Coroutine function sending one group as one request
        batch_size: Items per group
        concurrency: Groups dispatched together in one wave
        cancel_event: When set, no further wave is dispatched; the items not
            yet sent are recorded as failed with "Batch cancelled"

    Returns:
        BatchResult with counts and per-index errors (None if no failures)
    """
    start_time = time.perf_counter()
    items = list(items)
    groups = chunk(items, batch_size)
    concurrency = max(1, concurrency)

    successful = 0
    failed = 0
    errors: list[BatchItemError] = []
    state = BatchState.PENDING

    async def send(group: list[T]) -> BaseException | None:
        try:
            await send_group(group)
        except Exception as e:
            return e
        return None

    for wave_start in range(0, len(groups), concurrency):
        if cancel_event is not None and cancel_event.is_set():
            state = BatchState.CANCELLED
            first_index = wave_start * batch_size
            remaining = len(items) - first_index
            failed += remaining
            errors.extend(
                BatchItemError(index=first_index + i, error=CANCELLED_MESSAGE)
                for i in range(remaining)
            )
            logger.warning(
                f"Batch cancelled before wave {wave_start // concurrency + 1}; "
                f"{remaining} items not sent"
            )
            break

        state = BatchState.RUNNING
        wave = groups[wave_start:wave_start + concurrency]
        logger.debug(
            f"Dispatching wave {wave_start // concurrency + 1} "
            f"({len(wave)} groups of up to {batch_size})"
        )
        outcomes = await asyncio.gather(*(send(group) for group in wave))

        for offset, (group, error) in enumerate(zip(wave, outcomes)):
            if error is None:
                successful += len(group)
                continue
            failed += len(group)
            first_index = (wave_start + offset) * batch_size
            message = _error_message(error)
            errors.extend(
                BatchItemError(index=first_index + i, error=message)
                for i in range(len(group))
            )
            logger.warning(
                f"Group {wave_start + offset} failed ({len(group)} items): {message}"
            )
    else:
        state = BatchState.COMPLETED

    execution_time_ms = (time.perf_counter() - start_time) * 1000
    if failed:
        logger.info(
            f"Batch finished with partial failure: {successful} succeeded, {failed} failed"
        )
    return BatchResult(
        successful=successful,
        failed=failed,
        errors=errors or None,
        execution_time_ms=execution_time_ms,
        state=state,
    )


async def run_parallel(
    operations: Sequence[Callable[[], Awaitable[R]]],
    *,
    concurrency: int = 10,
    fail_fast: bool = False,
) -> ParallelOutcome:
    """
    Run independent operations with at most `concurrency` in flight.

    Args:
        operations: Zero-argument coroutine functions, one per operation
        concurrency: Maximum operations in flight
        fail_fast: Abort on the first failure instead of recording it

    Returns:
        Settled(ParallelResult) or, with fail_fast, Aborted(first error)
    """
    start_time = time.perf_counter()
    semaphore = asyncio.Semaphore(max(1, concurrency))

    async def run(index: int, operation: Callable[[], Awaitable[R]]) -> ParallelItem:
        async with semaphore:
            try:
                data = await operation()
            except Exception as e:
                if fail_fast:
                    raise _IndexedFailure(index, e) from e
                return ParallelItem(index=index, success=False, error=_error_message(e))
            return ParallelItem(index=index, success=True, data=data)

    tasks = [asyncio.create_task(run(i, op)) for i, op in enumerate(operations)]

    if fail_fast:
        try:
            for next_done in asyncio.as_completed(tasks):
                await next_done
        except _IndexedFailure as failure:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.warning(f"Parallel run aborted by operation {failure.index}: {failure.error}")
            return Aborted(
                error=failure.error,
                index=failure.index,
                execution_time_ms=(time.perf_counter() - start_time) * 1000,
            )

    items = list(await asyncio.gather(*tasks))
    successful = sum(1 for item in items if item.success)
    return Settled(ParallelResult(
        results=items,
        successful=successful,
        failed=len(items) - successful,
        execution_time_ms=(time.perf_counter() - start_time) * 1000,
    ))


class _IndexedFailure(Exception):
    def __init__(self, index: int, error: BaseException):
        super().__init__(str(error))
        self.index = index
        self.error = error
