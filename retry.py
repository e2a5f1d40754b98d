"""Bounded retry policy for collaborator calls.

One policy object describes attempts and spacing; run() applies it to
any coroutine function. Fixed spacing by default, exponential when
backoff > 1, optional jitter.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass
from typing import Any, TypeVar

log = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    delay: float = 1.0
    backoff: float = 1.0
    max_delay: float = 30.0
    jitter: float = 0.0  # fraction of each delay, applied +/-

    def __post_init__(self):
        if self.attempts < 1:
            raise ValueError("attempts must be >= 1")
        if self.delay < 0:
            raise ValueError("delay must be >= 0")

    def delays(self) -> Iterator[float]:
        """Sleep durations between attempts (attempts - 1 values)."""
        delay = self.delay
        for _ in range(self.attempts - 1):
            wait = min(delay, self.max_delay)
            if self.jitter:
                wait += wait * self.jitter * (random.random() * 2 - 1)  # noqa: S311 — timing jitter, not cryptographic
            yield max(wait, 0.0)
            delay *= self.backoff

    async def run(
        self,
        fn: Callable[..., Awaitable[T]],
        *args: Any,
        label: str = "",
        retry_on: tuple[type[BaseException], ...] = (Exception,),
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> T:
        """Call fn(*args) until it succeeds or attempts are exhausted.

        Exceptions outside retry_on propagate immediately. After the last
        attempt the last exception propagates.
        """
        label = label or getattr(fn, "__name__", "call")
        delays = self.delays()
        attempt = 0
        while True:
            attempt += 1
            try:
                return await fn(*args)
            except retry_on as e:
                wait = next(delays, None)
                if wait is None:
                    log.warning("%s failed after %d attempt(s): %s", label, attempt, e)
                    raise
                log.debug("%s failed (attempt %d/%d): %s, retrying in %.1fs",
                          label, attempt, self.attempts, e, wait)
                await sleep(wait)
