"""Bounded exponential backoff for tracker calls."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, TypeVar

from rich.console import Console

from ..errors import RateLimitError, RetryExhaustedError, TransientTrackerError

T = TypeVar("T")
SleepFn = Callable[[float], None]


@dataclass
class RetryPolicy:
    max_attempts: int = 4
    base_delay: float = 1.0
    max_delay: float = 60.0
    sleep: SleepFn = time.sleep

    def delay_for(self, attempt: int, error: TransientTrackerError) -> float:
        if isinstance(error, RateLimitError) and error.retry_after is not None:
            return max(0.0, float(error.retry_after))
        return min(self.max_delay, self.base_delay * (2 ** attempt))

    def call(
        self,
        fn: Callable[[], T],
        *,
        describe: str = "tracker call",
        console: Console | None = None,
    ) -> T:
        """Run fn, retrying transient failures. Blocks while backing off."""
        attempts = max(1, self.max_attempts)
        for attempt in range(attempts):
            try:
                return fn()
            except TransientTrackerError as exc:
                if attempt + 1 >= attempts:
                    raise RetryExhaustedError(
                        f"{describe} failed after {attempts} attempts: {exc}",
                        attempts=attempts,
                        last=exc,
                    ) from exc
                delay = self.delay_for(attempt, exc)
                if console is not None:
                    kind = "rate limited" if isinstance(exc, RateLimitError) else "transient error"
                    console.print(
                        f"  [yellow]{describe}: {kind}, retry {attempt + 1}/{attempts - 1} "
                        f"in {delay:.1f}s[/yellow] [dim]({exc})[/dim]"
                    )
                self.sleep(delay)
        raise AssertionError("unreachable")
