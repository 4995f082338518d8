"""Poll-until-predicate utility with a swappable policy."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from spike_relay.errors import PollTimeout

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class PollPolicy:
    """Fixed-interval polling with an attempt cap."""

    interval_seconds: float = 5.0
    max_attempts: int = 120

    def __post_init__(self) -> None:
        if self.interval_seconds < 0:
            raise ValueError("interval_seconds must be >= 0")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")


async def poll_until(
    fetch: Callable[[], Awaitable[T]],
    predicate: Callable[[T], bool],
    policy: PollPolicy,
    *,
    on_attempt: Callable[[int, T], None] | None = None,
    sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
) -> T:
    """Call ``fetch`` until ``predicate`` holds, sleeping between attempts.

    Raises :class:`PollTimeout` carrying the last fetched value once the
    policy's attempts are exhausted. Errors from ``fetch`` propagate.
    """

    last_value: T | None = None
    for attempt in range(1, policy.max_attempts + 1):
        last_value = await fetch()
        if on_attempt is not None:
            on_attempt(attempt, last_value)
        if predicate(last_value):
            return last_value
        if attempt < policy.max_attempts:
            logger.debug("Poll attempt %d/%d not ready", attempt, policy.max_attempts)
            await sleep(policy.interval_seconds)
    raise PollTimeout(policy.max_attempts, last_value)
