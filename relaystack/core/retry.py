"""Backoff computation and the inline retry loop.

Attempt numbering starts at 1. ``compute_delay(n, policy)`` is the delay to
wait after attempt ``n`` failed, before attempt ``n + 1``.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from relaystack.core.errors import RetryExhaustedError
from relaystack.core.logging import get_logger
from relaystack.core.models import BackoffKind, RetryPolicy

T = TypeVar("T")

DEFAULT_RETRY_POLICY = RetryPolicy(
    attempts=3, delay=1.0, backoff=BackoffKind.EXPONENTIAL, max_delay=30.0
)


@dataclass(frozen=True)
class RetryDecision:
    """Whether to try again, and after how long (seconds)."""

    exhausted: bool
    delay: float = 0.0


def is_retryable(error: BaseException) -> bool:
    """Errors opt out of retries by setting ``retryable = False``."""
    return getattr(error, "retryable", True)


class RetryPolicyExecutor:
    """Pure backoff arithmetic plus an inline retry helper.

    Args:
        default_policy: Used when an event type carries no retry policy.
        sleep: Injected for tests; defaults to asyncio.sleep.
    """

    def __init__(
        self,
        default_policy: RetryPolicy = DEFAULT_RETRY_POLICY,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.default_policy = default_policy
        self._sleep = sleep
        self._log = get_logger("retry")

    def policy_for(self, policy: RetryPolicy | None) -> RetryPolicy:
        return policy if policy is not None else self.default_policy

    @staticmethod
    def compute_delay(attempt: int, policy: RetryPolicy) -> float:
        """Delay before the attempt following ``attempt``."""
        if attempt < 1:
            raise ValueError(f"attempt numbering starts at 1, got {attempt}")
        if policy.backoff is BackoffKind.NONE:
            return 0.0
        if policy.backoff is BackoffKind.LINEAR:
            delay = policy.delay * attempt
        else:
            delay = policy.delay * (2 ** (attempt - 1))
        if policy.max_delay is not None:
            delay = min(delay, policy.max_delay)
        return delay

    @staticmethod
    def is_exhausted(attempt: int, policy: RetryPolicy) -> bool:
        return policy.backoff is BackoffKind.NONE or attempt >= policy.attempts

    def next_retry(
        self,
        attempt: int,
        policy: RetryPolicy | None = None,
        error: BaseException | None = None,
    ) -> RetryDecision:
        """Decide what happens after ``attempt`` failed with ``error``."""
        policy = self.policy_for(policy)
        if self.is_exhausted(attempt, policy):
            return RetryDecision(exhausted=True)
        if error is not None and not is_retryable(error):
            return RetryDecision(exhausted=True)
        return RetryDecision(exhausted=False, delay=self.compute_delay(attempt, policy))

    def max_attempts(self, policy: RetryPolicy | None) -> int:
        policy = self.policy_for(policy)
        return 1 if policy.backoff is BackoffKind.NONE else policy.attempts

    def total_delay(self, policy: RetryPolicy | None = None) -> float:
        """Sum of every delay a fully failing delivery would wait."""
        policy = self.policy_for(policy)
        return sum(
            self.compute_delay(attempt, policy)
            for attempt in range(1, self.max_attempts(policy))
        )

    async def execute(
        self,
        fn: Callable[[int], Awaitable[T]],
        policy: RetryPolicy | None = None,
        context: dict[str, Any] | None = None,
    ) -> T:
        """Call ``fn(attempt)`` until it returns, retrying per policy.

        Raises:
            RetryExhaustedError: When every attempt raised. The last error is
                chained as ``__cause__``.
        """
        policy = self.policy_for(policy)
        context = context or {}
        attempt = 1
        while True:
            try:
                return await fn(attempt)
            except Exception as e:
                decision = self.next_retry(attempt, policy, e)
                if decision.exhausted:
                    self._log.error(
                        f"All retry attempts exhausted: {e}",
                        extra={**context, "attempt": attempt, "error": str(e)},
                    )
                    raise RetryExhaustedError(attempt, str(e)) from e
                self._log.warning(
                    f"Attempt failed, retrying in {decision.delay}s "
                    f"({attempt}/{policy.attempts})",
                    extra={**context, "attempt": attempt, "error": str(e)},
                )
                await self._sleep(decision.delay)
                attempt += 1
