from __future__ import annotations

import random

import pytest
from aws_fakes import client_error, throttling_error

from sso_deployer.config import ExecutionSettings
from sso_deployer.execution.errors import CloudCallError
from sso_deployer.execution.retry import JITTER_HIGH, JITTER_LOW, RetryExecutor


class _FlakyCall:
    def __init__(self, failures: list[BaseException], result: object = "ok") -> None:
        self.failures = list(failures)
        self.result = result
        self.attempts = 0

    async def __call__(self) -> object:
        self.attempts += 1
        if self.failures:
            raise self.failures.pop(0)
        return self.result


@pytest.mark.asyncio
async def test_returns_first_success_without_sleeping(executor, sleeps) -> None:
    call = _FlakyCall([])

    assert await executor.run(call) == "ok"
    assert call.attempts == 1
    assert sleeps == []


@pytest.mark.asyncio
async def test_retries_throttling_until_success(executor, sleeps) -> None:
    call = _FlakyCall([throttling_error() for _ in range(4)], result={"done": True})

    result = await executor.run(call, description="attach_role_policy")

    assert result == {"done": True}
    assert call.attempts == 5
    assert len(sleeps) == 4
    previous = 1.0
    for delay in sleeps:
        assert previous * 2 * JITTER_LOW <= delay <= min(previous * 2 * JITTER_HIGH, 30.0)
        previous = delay


@pytest.mark.asyncio
async def test_gives_up_after_max_retries_with_original_error(executor, sleeps) -> None:
    errors = [throttling_error() for _ in range(5)]
    call = _FlakyCall(errors)

    with pytest.raises(Exception) as excinfo:
        await executor.run(call)

    assert excinfo.value is errors[-1]
    assert call.attempts == 5
    assert len(sleeps) == 4


@pytest.mark.asyncio
async def test_non_throttling_error_propagates_immediately(executor, sleeps) -> None:
    error = client_error("AccessDenied", "User is not authorized")
    call = _FlakyCall([error])

    with pytest.raises(Exception) as excinfo:
        await executor.run(call)

    assert excinfo.value is error
    assert call.attempts == 1
    assert sleeps == []


@pytest.mark.asyncio
async def test_structured_retryable_flag_decides(executor, sleeps) -> None:
    not_retryable = CloudCallError(
        "Rate exceeded", operation="CreateRole", code="Throttling", retryable=False
    )
    call = _FlakyCall([not_retryable])

    with pytest.raises(CloudCallError):
        await executor.run(call)

    assert call.attempts == 1
    assert sleeps == []


@pytest.mark.asyncio
async def test_delay_is_capped_at_max_delay(fake_sleep, sleeps) -> None:
    executor = RetryExecutor(
        max_retries=3, initial_delay=20.0, max_delay=30.0, sleep=fake_sleep, rng=random.Random(1)
    )
    call = _FlakyCall([throttling_error(), throttling_error()])

    assert await executor.run(call) == "ok"
    assert sleeps == [30.0, 30.0]


def test_next_delay_stays_within_jitter_bounds() -> None:
    executor = RetryExecutor(max_delay=1000.0, rng=random.Random(42))
    for _ in range(100):
        delay = executor.next_delay(4.0)
        assert 8.0 * JITTER_LOW <= delay <= 8.0 * JITTER_HIGH


@pytest.mark.parametrize(
    "kwargs",
    [
        {"max_retries": 0},
        {"initial_delay": 0},
        {"max_delay": -1.0},
    ],
)
def test_rejects_invalid_configuration(kwargs: dict[str, float]) -> None:
    with pytest.raises(ValueError):
        RetryExecutor(**kwargs)


def test_from_settings_copies_bounds() -> None:
    settings = ExecutionSettings(max_retries=3, initial_delay_seconds=0.5, max_delay_seconds=4.0)

    executor = RetryExecutor.from_settings(settings)

    assert executor.max_retries == 3
    assert executor.max_delay == 4.0
