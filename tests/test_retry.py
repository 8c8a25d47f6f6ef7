"""Tests for backoff arithmetic and the inline retry loop."""

import pytest
from hypothesis import given
from hypothesis import strategies as st

from relaystack.core.errors import ProviderFailureError, RetryExhaustedError
from relaystack.core.models import BackoffKind, RetryPolicy
from relaystack.core.retry import RetryPolicyExecutor, is_retryable


class FakeSleep:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.mark.parametrize(
    "backoff,expected",
    [
        (BackoffKind.EXPONENTIAL, [1.0, 2.0, 4.0, 8.0]),
        (BackoffKind.LINEAR, [1.0, 2.0, 3.0, 4.0]),
        (BackoffKind.NONE, [0.0, 0.0, 0.0, 0.0]),
    ],
)
def test_compute_delay(backoff, expected):
    policy = RetryPolicy(attempts=5, delay=1.0, backoff=backoff)
    assert [RetryPolicyExecutor.compute_delay(n, policy) for n in range(1, 5)] == expected


def test_compute_delay_is_capped():
    policy = RetryPolicy(attempts=10, delay=1.0, max_delay=5.0)
    assert RetryPolicyExecutor.compute_delay(8, policy) == 5.0


def test_attempt_numbering_starts_at_one():
    with pytest.raises(ValueError):
        RetryPolicyExecutor.compute_delay(0, RetryPolicy())


@given(
    delay=st.floats(min_value=0, max_value=10),
    max_delay=st.floats(min_value=10, max_value=100),
    attempt=st.integers(min_value=1, max_value=60),
    backoff=st.sampled_from([BackoffKind.LINEAR, BackoffKind.EXPONENTIAL]),
)
def test_delay_never_exceeds_cap(delay, max_delay, attempt, backoff):
    policy = RetryPolicy(attempts=100, delay=delay, backoff=backoff, max_delay=max_delay)
    computed = RetryPolicyExecutor.compute_delay(attempt, policy)
    assert 0 <= computed <= max_delay
    assert computed <= RetryPolicyExecutor.compute_delay(attempt + 1, policy)


class TestNextRetry:
    def test_retries_until_budget_spent(self):
        executor = RetryPolicyExecutor()
        policy = RetryPolicy(attempts=3, delay=0.5)

        assert executor.next_retry(1, policy).delay == 0.5
        assert executor.next_retry(2, policy).delay == 1.0
        assert executor.next_retry(3, policy).exhausted

    def test_none_backoff_never_retries(self):
        executor = RetryPolicyExecutor()
        policy = RetryPolicy(attempts=5, backoff=BackoffKind.NONE)

        assert executor.next_retry(1, policy).exhausted
        assert executor.max_attempts(policy) == 1

    def test_non_retryable_error_stops(self):
        executor = RetryPolicyExecutor()
        error = ProviderFailureError("bad request", retryable=False)

        assert not is_retryable(error)
        assert executor.next_retry(1, RetryPolicy(attempts=5), error).exhausted

    def test_default_policy_used_when_none(self):
        executor = RetryPolicyExecutor(default_policy=RetryPolicy(attempts=2, delay=3))

        assert executor.max_attempts(None) == 2
        assert executor.total_delay() == 3


class TestExecute:
    async def test_returns_first_success(self):
        sleep = FakeSleep()
        executor = RetryPolicyExecutor(sleep=sleep)

        async def succeed(attempt: int) -> str:
            return f"ok on {attempt}"

        assert await executor.execute(succeed) == "ok on 1"
        assert sleep.delays == []

    async def test_retries_with_backoff(self):
        sleep = FakeSleep()
        executor = RetryPolicyExecutor(sleep=sleep)
        policy = RetryPolicy(attempts=4, delay=0.1, backoff=BackoffKind.EXPONENTIAL)
        attempts = []

        async def flaky(attempt: int) -> int:
            attempts.append(attempt)
            if attempt < 3:
                raise ConnectionError("refused")
            return attempt

        assert await executor.execute(flaky, policy) == 3
        assert attempts == [1, 2, 3]
        assert sleep.delays == pytest.approx([0.1, 0.2])

    async def test_exhaustion_chains_last_error(self):
        executor = RetryPolicyExecutor(sleep=FakeSleep())

        async def always_fail(attempt: int) -> None:
            raise ConnectionError(f"refused {attempt}")

        with pytest.raises(RetryExhaustedError) as exc_info:
            await executor.execute(always_fail, RetryPolicy(attempts=3, delay=0))

        assert exc_info.value.attempts == 3
        assert isinstance(exc_info.value.__cause__, ConnectionError)
        assert "refused 3" in str(exc_info.value)

    async def test_non_retryable_error_is_not_retried(self):
        executor = RetryPolicyExecutor(sleep=FakeSleep())
        calls = []

        async def rejected(attempt: int) -> None:
            calls.append(attempt)
            raise ProviderFailureError("HTTP 400", retryable=False)

        with pytest.raises(RetryExhaustedError):
            await executor.execute(rejected, RetryPolicy(attempts=5))

        assert calls == [1]
