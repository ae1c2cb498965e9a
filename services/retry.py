"""Exponential backoff with jitter for remote store calls.

``RetryExecutor.run`` returns a discriminated result (:class:`Success`,
:class:`Exhausted` or :class:`Aborted`) instead of raising, and reports retry
progress through an ``on_retry`` callback. ``execute_with_retry`` is the
raising form. Delays are awaited with ``asyncio.sleep``, so other tasks keep
running while one operation backs off.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import (
    Awaitable,
    Callable,
    Deque,
    Dict,
    Generic,
    Optional,
    TypeVar,
    Union,
)

from models.errors import ConflictError, SyncError
from models.records import utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")

Operation = Callable[[], Awaitable[T]]
RetryPredicate = Callable[[BaseException], bool]
RetryObserver = Callable[[int, BaseException], None]
Sleeper = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget; delays are in seconds."""

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 300.0
    jitter_factor: float = 0.1

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be >= 0")
        if not 0.0 <= self.jitter_factor <= 1.0:
            raise ValueError("jitter_factor must be within [0, 1]")

    def to_dict(self) -> Dict[str, float]:
        return {
            "max_retries": self.max_retries,
            "base_delay_ms": self.base_delay * 1000,
            "max_delay_ms": self.max_delay * 1000,
            "jitter_factor": self.jitter_factor,
        }


DEFAULT = RetryPolicy()
# Safety-critical writes: few retries, patient spacing.
CONSERVATIVE = RetryPolicy(max_retries=2, base_delay=2.0, max_delay=120.0)
# Best-effort telemetry.
AGGRESSIVE = RetryPolicy(max_retries=5, base_delay=0.5, max_delay=600.0)
# Connectivity flaps.
NETWORK = RetryPolicy(max_retries=4, base_delay=1.0, max_delay=180.0, jitter_factor=0.2)

PRESETS: Dict[str, RetryPolicy] = {
    "default": DEFAULT,
    "conservative": CONSERVATIVE,
    "aggressive": AGGRESSIVE,
    "network": NETWORK,
}


def get_policy(name: str) -> RetryPolicy:
    try:
        return PRESETS[name.strip().lower()]
    except KeyError as exc:
        raise ValueError(f"Unknown retry preset {name!r}; expected one of {sorted(PRESETS)}") from exc


# Heuristic classification for errors that cross an untyped boundary (third
# party clients, plain exceptions). Typed ``SyncError`` instances carry their
# own ``retryable`` flag and never reach these tables.
_RETRYABLE_PATTERNS = (
    "network",
    "connection",
    "timeout",
    "timed out",
    "socket",
    "unavailable",
    "deadline exceeded",
    "resource exhausted",
    "internal error",
    "cancelled",
    "rate limit",
    "quota exceeded",
    "too many requests",
    "bad gateway",
    "gateway timeout",
)

_PERMANENT_PATTERNS = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "authentication",
    "bad request",
    "not found",
    "invalid argument",
    "already exists",
    "validation",
    "invalid data",
    "malformed",
)


def _message(error: BaseException) -> str:
    return f"{type(error).__name__}: {error}".lower()


def is_retryable_error(error: BaseException) -> bool:
    if isinstance(error, SyncError):
        return error.retryable
    if isinstance(error, (ConnectionError, TimeoutError, asyncio.TimeoutError)):
        return True
    message = _message(error)
    return any(pattern in message for pattern in _RETRYABLE_PATTERNS)


def is_permanent_error(error: BaseException) -> bool:
    if isinstance(error, SyncError):
        return not error.retryable
    message = _message(error)
    return any(pattern in message for pattern in _PERMANENT_PATTERNS)


def error_kind(error: BaseException) -> str:
    if isinstance(error, SyncError):
        return error.kind
    return type(error).__name__


def compute_backoff(attempt: int, policy: RetryPolicy) -> float:
    """Pre-jitter delay before retry ``attempt`` (1-indexed)."""
    if attempt < 1:
        raise ValueError("attempt is 1-indexed")
    exponential = policy.base_delay * (2 ** (attempt - 1))
    return min(exponential, policy.max_delay)


def apply_jitter(delay: float, jitter_factor: float, rng: Optional[random.Random] = None) -> float:
    """Spread ``delay`` uniformly by ``± delay * jitter_factor``, floored at zero."""
    spread = delay * jitter_factor
    offset = (rng or random).uniform(-spread, spread)
    return max(0.0, delay + offset)


def compute_delay(
    attempt: int, policy: RetryPolicy, rng: Optional[random.Random] = None
) -> float:
    return apply_jitter(compute_backoff(attempt, policy), policy.jitter_factor, rng)


@dataclass(frozen=True)
class RetryOutcome:
    attempt: int
    delay: float
    succeeded: bool
    error_kind: Optional[str] = None
    recorded_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class Success(Generic[T]):
    value: T
    attempts: int
    ok = True


@dataclass(frozen=True)
class Exhausted:
    """Every attempt failed with a retryable error."""

    error: BaseException
    attempts: int
    ok = False


@dataclass(frozen=True)
class Aborted:
    """A non-retryable error stopped the operation early."""

    error: BaseException
    attempts: int
    ok = False


RetryResult = Union[Success[T], Exhausted, Aborted]


class RetryStats:
    """Cumulative attempt statistics for one executor."""

    def __init__(self, history_size: int = 500) -> None:
        self.total_attempts = 0
        self.total_retries = 0
        self.successful_retries = 0
        self.failed_retries = 0
        self.permanent_failures = 0
        self.exhausted_operations = 0
        self.conflicts = 0
        self.total_delay = 0.0
        self.error_counts: Dict[str, int] = {}
        self.last_retry_at: Optional[datetime] = None
        self.outcomes: Deque[RetryOutcome] = deque(maxlen=history_size)

    def record_attempt(self, outcome: RetryOutcome) -> None:
        self.total_attempts += 1
        self.outcomes.append(outcome)
        if outcome.error_kind is not None:
            self.error_counts[outcome.error_kind] = self.error_counts.get(outcome.error_kind, 0) + 1
        if outcome.attempt <= 1:
            return
        self.total_retries += 1
        self.total_delay += outcome.delay
        self.last_retry_at = outcome.recorded_at
        if outcome.succeeded:
            self.successful_retries += 1
        else:
            self.failed_retries += 1

    def record_permanent_failure(self) -> None:
        self.permanent_failures += 1

    def record_exhausted(self) -> None:
        self.exhausted_operations += 1

    def record_conflict(self) -> None:
        self.conflicts += 1

    @property
    def success_rate(self) -> float:
        if not self.total_retries:
            return 0.0
        return self.successful_retries / self.total_retries * 100

    @property
    def average_delay_ms(self) -> float:
        if not self.total_retries:
            return 0.0
        return self.total_delay / self.total_retries * 1000

    def to_dict(self) -> Dict[str, object]:
        return {
            "total_attempts": self.total_attempts,
            "total_retries": self.total_retries,
            "successful_retries": self.successful_retries,
            "failed_retries": self.failed_retries,
            "permanent_failures": self.permanent_failures,
            "exhausted_operations": self.exhausted_operations,
            "conflicts": self.conflicts,
            "success_rate": self.success_rate,
            "average_delay_ms": self.average_delay_ms,
            "total_delay_ms": self.total_delay * 1000,
            "error_counts": dict(self.error_counts),
            "last_retry_at": self.last_retry_at.isoformat() if self.last_retry_at else None,
        }


class RetryExecutor:

    def __init__(
        self,
        policy: RetryPolicy = DEFAULT,
        sleep: Sleeper = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.policy = policy
        self.stats = RetryStats()
        self._sleep = sleep
        self._rng = rng or random.Random()

    async def run(
        self,
        operation: Operation[T],
        policy: Optional[RetryPolicy] = None,
        is_retryable: Optional[RetryPredicate] = None,
        on_retry: Optional[RetryObserver] = None,
    ) -> RetryResult[T]:
        policy = policy or self.policy
        last_error: Optional[BaseException] = None
        delay = 0.0
        attempt = 1

        while True:
            try:
                value = await operation()
            except Exception as exc:
                last_error = exc
                kind = error_kind(exc)
                self.stats.record_attempt(
                    RetryOutcome(attempt=attempt, delay=delay, succeeded=False, error_kind=kind)
                )
                if not self._should_retry(exc, is_retryable):
                    if isinstance(exc, ConflictError):
                        # Handed to the conflict resolver; not a failure.
                        self.stats.record_conflict()
                        logger.info(
                            "Remote store reported a version conflict",
                            extra={"attempt": attempt, "error_kind": kind},
                        )
                    else:
                        self.stats.record_permanent_failure()
                        logger.info(
                            "Operation failed with a non-retryable error",
                            extra={"attempt": attempt, "error_kind": kind},
                        )
                    return Aborted(error=exc, attempts=attempt)
                if attempt > policy.max_retries:
                    self.stats.record_exhausted()
                    logger.warning(
                        "Retries exhausted",
                        extra={"attempt": attempt, "error_kind": kind},
                    )
                    return Exhausted(error=exc, attempts=attempt)

                delay = compute_delay(attempt, policy, self._rng)
                logger.debug(
                    "Attempt failed, backing off",
                    extra={
                        "attempt": attempt,
                        "error_kind": kind,
                        "delay_ms": round(delay * 1000),
                    },
                )
                await self._sleep(delay)
                if on_retry is not None:
                    on_retry(attempt, exc)
                attempt += 1
                continue

            self.stats.record_attempt(RetryOutcome(attempt=attempt, delay=delay, succeeded=True))
            if attempt > 1:
                logger.info(
                    "Operation succeeded after retrying",
                    extra={"attempt": attempt},
                )
            return Success(value=value, attempts=attempt)

    async def execute_with_retry(
        self,
        operation: Operation[T],
        policy: Optional[RetryPolicy] = None,
        is_retryable: Optional[RetryPredicate] = None,
        on_retry: Optional[RetryObserver] = None,
    ) -> T:
        """Run ``operation`` and return its value, or raise the last error."""
        result = await self.run(operation, policy, is_retryable, on_retry)
        if isinstance(result, Success):
            return result.value
        raise result.error

    @staticmethod
    def _should_retry(error: BaseException, is_retryable: Optional[RetryPredicate]) -> bool:
        if is_retryable is not None:
            return is_retryable(error)
        if is_permanent_error(error):
            return False
        return is_retryable_error(error)
