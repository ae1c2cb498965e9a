from __future__ import annotations

import asyncio
import random

import pytest

from models.errors import ConflictError, PermanentSyncError, TransientSyncError
from services.retry import (
    AGGRESSIVE,
    NETWORK,
    Aborted,
    Exhausted,
    RetryExecutor,
    RetryPolicy,
    Success,
    apply_jitter,
    compute_backoff,
    get_policy,
    is_permanent_error,
    is_retryable_error,
)


class FakeSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class Flaky:
    """Fails with ``errors`` in order, then returns ``value``."""

    def __init__(self, errors, value="stored") -> None:
        self.errors = list(errors)
        self.value = value
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.value


def _executor(policy: RetryPolicy = RetryPolicy(jitter_factor=0.0)):
    sleep = FakeSleep()
    return RetryExecutor(policy=policy, sleep=sleep, rng=random.Random(7)), sleep


def test_backoff_doubles_until_capped() -> None:
    policy = RetryPolicy(max_retries=10, base_delay=1.0, max_delay=30.0)

    delays = [compute_backoff(attempt, policy) for attempt in range(1, 9)]

    assert delays == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0, 30.0]
    assert all(later >= earlier for earlier, later in zip(delays, delays[1:]))
    with pytest.raises(ValueError):
        compute_backoff(0, policy)


def test_jitter_stays_within_bounds() -> None:
    rng = random.Random(42)

    samples = [apply_jitter(10.0, 0.2, rng) for _ in range(500)]

    assert all(8.0 <= sample <= 12.0 for sample in samples)
    assert len(set(samples)) > 1
    assert apply_jitter(0.0, 1.0, rng) == 0.0


def test_presets_and_lookup() -> None:
    assert get_policy("Network") is NETWORK
    assert AGGRESSIVE.max_retries == 5
    assert NETWORK.to_dict()["base_delay_ms"] == 1000
    with pytest.raises(ValueError):
        get_policy("reckless")
    with pytest.raises(ValueError):
        RetryPolicy(jitter_factor=1.5)


def test_classification_prefers_typed_errors() -> None:
    assert is_retryable_error(TransientSyncError("offline")) is True
    assert is_retryable_error(PermanentSyncError("Request timeout")) is False
    assert is_retryable_error(ConflictError("version moved")) is False
    assert is_retryable_error(ConnectionResetError()) is True
    assert is_retryable_error(RuntimeError("Request timeout after 30s")) is True
    assert is_permanent_error(RuntimeError("401 Unauthorized")) is True
    assert is_retryable_error(RuntimeError("something odd")) is False


def test_timeout_errors_are_retried_until_exhausted() -> None:
    executor, sleep = _executor(RetryPolicy(max_retries=3, base_delay=1.0, jitter_factor=0.0))
    operation = Flaky([RuntimeError("Request timeout")] * 10)
    observed = []

    result = asyncio.run(
        executor.run(operation, on_retry=lambda attempt, error: observed.append(attempt))
    )

    assert isinstance(result, Exhausted)
    assert result.ok is False
    assert result.attempts == 4
    assert operation.calls == 4
    assert sleep.delays == [1.0, 2.0, 4.0]
    assert observed == [1, 2, 3]
    assert executor.stats.exhausted_operations == 1
    assert executor.stats.failed_retries == 3


def test_unauthorized_errors_fail_without_retry() -> None:
    executor, sleep = _executor(RetryPolicy(max_retries=3))
    operation = Flaky([RuntimeError("401 Unauthorized")])

    result = asyncio.run(executor.run(operation))

    assert isinstance(result, Aborted)
    assert result.attempts == 1
    assert operation.calls == 1
    assert sleep.delays == []
    assert executor.stats.permanent_failures == 1


def test_conflicts_are_counted_apart_from_permanent_failures() -> None:
    executor, sleep = _executor(RetryPolicy(max_retries=3))

    result = asyncio.run(executor.run(Flaky([ConflictError("version moved")])))

    assert isinstance(result, Aborted)
    assert sleep.delays == []
    stats = executor.stats.to_dict()
    assert stats["conflicts"] == 1
    assert stats["permanent_failures"] == 0
    assert stats["error_counts"] == {"conflict": 1}


def test_success_after_transient_failures() -> None:
    executor, sleep = _executor(RetryPolicy(max_retries=3, base_delay=0.5, jitter_factor=0.0))
    operation = Flaky([TransientSyncError("offline"), TransientSyncError("offline")], value=42)

    result = asyncio.run(executor.run(operation))

    assert isinstance(result, Success)
    assert result.value == 42
    assert result.attempts == 3
    assert sleep.delays == [0.5, 1.0]
    stats = executor.stats.to_dict()
    assert stats["successful_retries"] == 1
    assert stats["error_counts"] == {"transient": 2}
    assert stats["average_delay_ms"] == pytest.approx(750.0)


def test_custom_predicate_overrides_classification() -> None:
    executor, _ = _executor(RetryPolicy(max_retries=2, jitter_factor=0.0))
    operation = Flaky([PermanentSyncError("nope")], value="ok")

    result = asyncio.run(executor.run(operation, is_retryable=lambda error: True))

    assert isinstance(result, Success)
    assert result.attempts == 2


def test_execute_with_retry_raises_last_error() -> None:
    executor, _ = _executor(RetryPolicy(max_retries=1, jitter_factor=0.0))

    with pytest.raises(TransientSyncError):
        asyncio.run(executor.execute_with_retry(Flaky([TransientSyncError("a"), TransientSyncError("b")])))

    assert asyncio.run(executor.execute_with_retry(Flaky([]))) == "stored"


def test_cancellation_is_not_swallowed() -> None:
    async def scenario() -> None:
        executor = RetryExecutor(policy=RetryPolicy(max_retries=5, base_delay=60.0))
        task = asyncio.create_task(executor.run(Flaky([TransientSyncError("offline")] * 10)))
        await asyncio.sleep(0)
        task.cancel()
        await task

    with pytest.raises(asyncio.CancelledError):
        asyncio.run(scenario())
