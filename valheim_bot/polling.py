from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, Optional, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass
class PollResult(Generic[T]):
    value: Optional[T]
    done: bool
    attempts: int

    @property
    def timed_out(self) -> bool:
        return not self.done


async def poll_until(
    fetch: Callable[[], Awaitable[T]],
    predicate: Callable[[T], bool],
    interval: float,
    budget: float,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    retry_on: tuple[type[BaseException], ...] = (),
) -> PollResult[T]:
    """Call ``fetch`` every ``interval`` seconds until ``predicate`` holds.

    Gives up once ``budget`` seconds have elapsed since the first attempt.
    Exceptions listed in ``retry_on`` are logged and count as a missed attempt;
    anything else propagates.
    """
    started = clock()
    attempts = 0
    last: Optional[T] = None
    while clock() - started < budget:
        attempts += 1
        try:
            last = await fetch()
        except retry_on as exc:
            logger.warning("Poll attempt %d failed, will retry: %s", attempts, exc)
        else:
            if predicate(last):
                return PollResult(value=last, done=True, attempts=attempts)
        await sleep(interval)
    return PollResult(value=last, done=False, attempts=attempts)
