"""Retry, rate limiting and deadlines for external calls.

Every process invocation and network request made by the gate goes through
``call_external`` (directly or via the ``external_call`` decorator), so the
failure policy lives in one place.
"""

from __future__ import annotations

import functools
import random
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, TypeVar

from commit_gate.errors import (
    DeadlineExceededError,
    RateLimitExceededError,
    RetriesExhaustedError,
    TransientExternalError,
)
from commit_gate.logger import log_event

T = TypeVar("T")

Clock = Callable[[], float]

# category -> (capacity, refill tokens per second); zero refill bounds the
# category for the whole invocation.
DEFAULT_RATE_LIMITS: Mapping[str, tuple[float, float]] = {
    "security-event": (50.0, 0.0),
    "merge-write": (3.0, 0.0),
    "git": (2000.0, 0.0),
    "forge-api": (60.0, 1.0),
}


class Deadline:
    def __init__(self, seconds: float | None, clock: Clock = time.monotonic) -> None:
        self._clock = clock
        self.seconds = seconds
        self._expires_at = None if seconds is None else clock() + seconds

    def remaining(self) -> float | None:
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - self._clock())

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0.0

    def check(self, operation: str = "") -> None:
        if self.expired:
            raise DeadlineExceededError(
                f"deadline of {self.seconds}s exceeded",
                operation=operation or None,
            )


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 8.0
    jitter: float = 0.5
    sleep: Callable[[float], None] = field(default=time.sleep, compare=False, repr=False)
    rng: Callable[[], float] = field(default=random.random, compare=False, repr=False)

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ValueError("commit_gate.retry.invalid attempts")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("commit_gate.retry.invalid delay")
        if not 0.0 <= self.jitter <= 1.0:
            raise ValueError("commit_gate.retry.invalid jitter")

    def delay(self, attempt: int) -> float:
        raw = min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))
        return raw * (1.0 - self.jitter * self.rng())


DEFAULT_RETRY_POLICY = RetryPolicy()


class TokenBucket:
    def __init__(self, capacity: float, refill_per_second: float = 0.0, clock: Clock = time.monotonic) -> None:
        if capacity < 0 or refill_per_second < 0:
            raise ValueError("commit_gate.rate_limit.invalid bucket")
        self.capacity = float(capacity)
        self.refill_per_second = float(refill_per_second)
        self._clock = clock
        self._tokens = float(capacity)
        self._updated = clock()
        self._lock = threading.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._updated)
        self._updated = now
        if self.refill_per_second:
            self._tokens = min(self.capacity, self._tokens + elapsed * self.refill_per_second)

    def try_take(self, amount: float = 1.0) -> bool:
        with self._lock:
            self._refill()
            if self._tokens >= amount:
                self._tokens -= amount
                return True
            return False

    @property
    def available(self) -> float:
        with self._lock:
            self._refill()
            return self._tokens


class RateLimiter:
    """Token buckets keyed by operation category.

    Categories without a configured bucket are not limited.
    """

    def __init__(
        self,
        limits: Mapping[str, tuple[float, float]] | None = None,
        clock: Clock = time.monotonic,
    ) -> None:
        limits = DEFAULT_RATE_LIMITS if limits is None else limits
        self._buckets = {
            category: TokenBucket(capacity, refill, clock=clock)
            for category, (capacity, refill) in limits.items()
        }
        self._denied: dict[str, int] = {}
        self._lock = threading.Lock()

    def try_acquire(self, category: str) -> bool:
        bucket = self._buckets.get(category)
        if bucket is None or bucket.try_take():
            return True
        with self._lock:
            self._denied[category] = self._denied.get(category, 0) + 1
        return False

    def acquire(self, category: str) -> None:
        if not self.try_acquire(category):
            raise RateLimitExceededError(f"rate limit exceeded for {category}", category=category)

    def denied(self, category: str) -> int:
        with self._lock:
            return self._denied.get(category, 0)


def call_external(
    category: str,
    fn: Callable[..., T],
    *args: Any,
    policy: RetryPolicy | None = None,
    limiter: RateLimiter | None = None,
    deadline: Deadline | None = None,
    operation: str | None = None,
    **kwargs: Any,
) -> T:
    policy = policy or DEFAULT_RETRY_POLICY
    operation = operation or getattr(fn, "__name__", "external_call")
    last_error: TransientExternalError | None = None

    for attempt in range(1, policy.attempts + 1):
        if deadline is not None:
            deadline.check(operation)
        if limiter is not None:
            limiter.acquire(category)
        try:
            return fn(*args, **kwargs)
        except TransientExternalError as exc:
            last_error = exc
            log_event(
                "resilience",
                f"transient_failure category={category} operation={operation} "
                f"attempt={attempt}/{policy.attempts} error={exc}",
            )
            if attempt == policy.attempts:
                break
            delay = policy.delay(attempt)
            remaining = deadline.remaining() if deadline is not None else None
            if remaining is not None and remaining <= delay:
                raise DeadlineExceededError(
                    f"deadline of {deadline.seconds}s exceeded while retrying",
                    operation=operation,
                ) from exc
            policy.sleep(delay)

    raise RetriesExhaustedError(
        f"{operation} failed after {policy.attempts} attempts",
        category=category,
        operation=operation,
        attempts=policy.attempts,
    ) from last_error


@dataclass
class Resilience:
    policy: RetryPolicy = DEFAULT_RETRY_POLICY
    limiter: RateLimiter | None = None
    deadline: Deadline | None = None

    def call(self, category: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        return call_external(
            category,
            fn,
            *args,
            policy=self.policy,
            limiter=self.limiter,
            deadline=self.deadline,
            **kwargs,
        )


def external_call(category: str) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Route a client method through the owner's ``resilience`` settings."""

    def decorator(method: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(method)
        def wrapper(self, *args: Any, **kwargs: Any) -> T:
            resilience = getattr(self, "resilience", None) or Resilience()
            return resilience.call(category, method, self, *args, operation=method.__name__, **kwargs)

        return wrapper

    return decorator
