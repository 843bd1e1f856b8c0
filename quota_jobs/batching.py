"""Bounded-concurrency batch execution."""

import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional, Sequence

from quota_jobs.models import BatchResult

BatchCallback = Callable[[Sequence[Any], List[Any]], Awaitable[None]]


class BatchExecutor:
    """
    Run work over a list in consecutive fixed-size chunks.

    Items inside a chunk run concurrently; chunks run one after another with
    a pause in between. One failing item never cancels its siblings.
    """

    def __init__(
        self,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        logger: Optional[logging.Logger] = None,
    ):
        self._sleep = sleep
        self.logger = logger or logging.getLogger(__name__)

    async def run_batches(
        self,
        items: Sequence[Any],
        batch_size: int,
        work: Callable[[Any], Awaitable[Any]],
        inter_batch_delay: float,
        on_batch: Optional[BatchCallback] = None,
    ) -> BatchResult:
        """
        Apply ``work`` to every item, ``batch_size`` at a time.

        Args:
            items: Items to process, in order
            batch_size: Maximum number of items in flight
            work: Coroutine function called once per item
            inter_batch_delay: Seconds to sleep between chunks (not after the last)
            on_batch: Optional coroutine awaited with ``(batch, outcomes)`` after
                each chunk settles; an outcome is the work result or the exception

        Returns:
            BatchResult with the count of fulfilled and rejected items
        """
        if batch_size < 1:
            raise ValueError(f"batch_size must be at least 1, got {batch_size}")

        result = BatchResult()
        total_batches = (len(items) + batch_size - 1) // batch_size

        for index in range(total_batches):
            batch = items[index * batch_size : (index + 1) * batch_size]
            self.logger.debug(
                f"Processing batch {index + 1}/{total_batches} ({len(batch)} items)"
            )

            outcomes = await asyncio.gather(
                *(work(item) for item in batch), return_exceptions=True
            )

            errors = 0
            for item, outcome in zip(batch, outcomes):
                if isinstance(outcome, BaseException):
                    errors += 1
                    self.logger.warning(f"Batch item {item!r} failed: {outcome}")
            result += BatchResult(processed=len(batch) - errors, errors=errors)

            if on_batch is not None:
                await on_batch(batch, list(outcomes))

            if index < total_batches - 1:
                await self._sleep(inter_batch_delay)

        return result
