"""Bounded retry loop with injectable sleep."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Generic, TypeVar

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


class Backoff(str, Enum):
    EXPONENTIAL = "exponential"
    LINEAR = "linear"


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """How many attempts to make and how long to wait after each failed one."""

    attempts: int
    base_delay: float
    backoff: Backoff = Backoff.EXPONENTIAL

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ValueError("attempts must be at least 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must not be negative")

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after failed attempt number ``attempt`` (1-based)."""

        if attempt < 1:
            raise ValueError("attempt numbers start at 1")
        if self.backoff is Backoff.EXPONENTIAL:
            return self.base_delay * 2 ** (attempt - 1)
        return self.base_delay * attempt


@dataclass(slots=True)
class RetryOutcome(Generic[T]):
    value: T | None = None
    error: Exception | None = None
    attempts: int = 0
    delays: list[float] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.error is None and self.attempts > 0


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    sleep: Sleep = asyncio.sleep,
    retry_on: tuple[type[Exception], ...] = (Exception,),
    on_failure: Callable[[int, Exception], None] | None = None,
) -> RetryOutcome[T]:
    """Run ``operation`` until it succeeds or ``policy.attempts`` are used up.

    Exceptions matching ``retry_on`` are captured in the outcome instead of
    raised; anything else propagates immediately. No sleep follows the last
    attempt.
    """

    outcome: RetryOutcome[T] = RetryOutcome()
    for attempt in range(1, policy.attempts + 1):
        outcome.attempts = attempt
        try:
            outcome.value = await operation()
        except retry_on as exc:
            outcome.error = exc
            if on_failure is not None:
                on_failure(attempt, exc)
            if attempt == policy.attempts:
                break
            delay = policy.delay_for(attempt)
            outcome.delays.append(delay)
            await sleep(delay)
        else:
            outcome.error = None
            return outcome
    return outcome
