"""
Bounded-concurrency batch runner.

Items are processed in fixed-width batches. Each batch is a barrier: the
next one starts only after every member of the current one has either
returned or raised.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, List, Optional, Sequence, Tuple, TypeVar

from makerfleet.core.utils import chunked

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class BatchReport(Generic[T]):
    """Per-item results of a batched run."""
    results: List[Tuple[T, Any]] = field(default_factory=list)
    failures: List[Tuple[T, BaseException]] = field(default_factory=list)
    batches: int = 0

    @property
    def drained(self) -> int:
        return len(self.results) + len(self.failures)

    @property
    def ok(self) -> bool:
        return not self.failures


async def run_in_batches(
    items: Sequence[T],
    width: int,
    worker: Callable[[T], Awaitable[Any]],
    label: str = "batch",
    describe: Callable[[T], str] = str,
    log: Optional[logging.Logger] = None,
) -> BatchReport[T]:
    """
    Run `worker` over `items`, at most `width` at a time.

    A worker exception is logged and recorded; it never stops its batch or
    the batches after it.

    Args:
        items: Work items
        width: Batch width
        worker: Coroutine function applied to each item
        label: Name used in log lines
        describe: Renders an item for log lines
        log: Logger to report failures to

    Returns:
        BatchReport with results and failures in item order
    """
    if width < 1:
        raise ValueError("Batch width must be at least 1")

    log = log or logger
    report: BatchReport[T] = BatchReport()
    batches = chunked(list(items), width)

    for number, batch in enumerate(batches, 1):
        log.info(f"{label}: processing batch {number}/{len(batches)} ({len(batch)} items)")
        outcomes = await asyncio.gather(*(worker(item) for item in batch), return_exceptions=True)

        for item, outcome in zip(batch, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, Exception):
                log.error(f"{label}: {describe(item)} failed: {outcome}")
                report.failures.append((item, outcome))
            else:
                report.results.append((item, outcome))

        report.batches += 1

    return report
