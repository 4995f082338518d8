"""Bounded-concurrency batch driver."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

ItemT = TypeVar("ItemT")
ResultT = TypeVar("ResultT")


@dataclass(slots=True)
class BatchItemResult(Generic[ItemT, ResultT]):
    """Per-item outcome; exactly one of ``value``/``error`` is meaningful."""

    index: int
    item: ItemT
    value: ResultT | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


async def run_batch(
    items: Sequence[ItemT],
    handler: Callable[[ItemT], Awaitable[ResultT]],
    concurrency: int,
) -> list[BatchItemResult[ItemT, ResultT]]:
    """Process ``items`` with at most ``concurrency`` handlers in flight.

    Workers claim the next unclaimed index from a shared cursor. A failing
    item is recorded in its slot and never stops the other workers; results
    come back in input order.
    """

    if concurrency < 1:
        raise ValueError("concurrency must be >= 1")

    slots: list[BatchItemResult[ItemT, ResultT] | None] = [None] * len(items)
    cursor = 0

    async def _worker(worker_no: int) -> None:
        nonlocal cursor
        while cursor < len(items):
            index = cursor
            cursor += 1
            item = items[index]
            try:
                value = await handler(item)
            except Exception as error:  # noqa: BLE001
                logger.warning("Batch item %d failed on worker %d: %s", index, worker_no, error)
                slots[index] = BatchItemResult(index=index, item=item, error=error)
            else:
                slots[index] = BatchItemResult(index=index, item=item, value=value)

    worker_count = min(concurrency, len(items))
    await asyncio.gather(*(_worker(worker_no) for worker_no in range(worker_count)))
    return [slot for slot in slots if slot is not None]
