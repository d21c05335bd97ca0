from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, TypeVar


T = TypeVar("T")

DelayFn = Callable[[int], float]


def fixed_delay(seconds: float) -> DelayFn:
    def _delay(_attempt: int) -> float:
        return max(0.0, seconds)

    return _delay


def schedule_delay(schedule_seconds: list[float]) -> DelayFn:
    """Delay for attempt ``n`` is ``schedule[n]``; past the end the last entry repeats."""

    def _delay(attempt: int) -> float:
        if not schedule_seconds:
            return 0.0
        index = min(max(attempt, 0), len(schedule_seconds) - 1)
        return max(0.0, schedule_seconds[index])

    return _delay


def parse_backoff_ms(value: str | None) -> list[float]:
    delays: list[float] = []
    for item in str(value or "").split(","):
        item = item.strip()
        if not item:
            continue
        try:
            delays.append(max(0, int(item)) / 1000.0)
        except ValueError:
            continue
    return delays


async def retry_until_found(
    operation: Callable[[], Awaitable[T | None]],
    *,
    attempts: int,
    delay: DelayFn,
    delay_first: bool = False,
    max_total_seconds: float | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T | None:
    """Call ``operation`` up to ``attempts`` times until it returns a value.

    The wait before the n-th retry is ``delay(n)`` (n counts from 0); with
    ``delay_first`` the first call is preceded by ``delay(0)`` as well.
    Retrying stops once the next wait would push cumulative sleep past
    ``max_total_seconds``.
    """
    slept = 0.0
    for attempt in range(max(1, attempts)):
        if delay_first or attempt > 0:
            wait_seconds = delay(attempt if delay_first else attempt - 1)
            if max_total_seconds is not None and slept + wait_seconds > max_total_seconds:
                break
            if wait_seconds > 0:
                await sleep(wait_seconds)
            slept += wait_seconds
        result = await operation()
        if result is not None:
            return result
    return None
