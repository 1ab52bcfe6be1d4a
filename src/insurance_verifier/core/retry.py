"""Policy-driven retries on top of tenacity.

A :class:`RetryPolicy` names which exceptions it covers, how many total
attempts it allows and how long to wait between them.  The runner matches
each failure against the policies in order; the first policy whose
``is_retryable`` accepts the exception decides.  Exceptions no policy
accepts propagate unchanged.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Optional, TypeVar

from loguru import logger
from tenacity import AsyncRetrying, RetryCallState, RetryError

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    name: str
    max_attempts: int
    backoff: Callable[[int], float]
    is_retryable: Callable[[BaseException], bool]


class RetryExhausted(Exception):
    """Raised once the matching policy has used all of its attempts."""

    def __init__(self, policy: RetryPolicy, last_exception: BaseException, attempts: int) -> None:
        super().__init__(
            f"{policy.name}: gave up after {attempts} attempts ({last_exception!r})"
        )
        self.policy = policy
        self.last_exception = last_exception
        self.attempts = attempts


def fixed_backoff(seconds: float) -> Callable[[int], float]:
    return lambda _attempt: seconds


def polynomial_backoff(scale: float = 1.0) -> Callable[[int], float]:
    """``attempt**4 + 2`` seconds, multiplied by *scale*."""
    return lambda attempt: scale * (attempt**4 + 2)


def _match(policies: Sequence[RetryPolicy], exc: Optional[BaseException]) -> Optional[RetryPolicy]:
    if exc is None:
        return None
    for policy in policies:
        if policy.is_retryable(exc):
            return policy
    return None


async def run_with_policies(
    fn: Callable[[], Awaitable[T]],
    policies: Sequence[RetryPolicy],
    *,
    label: str = "task",
) -> T:
    """Await ``fn()`` until it succeeds or the matching policy is exhausted.

    Parameters
    ----------
    fn:
        Zero-argument coroutine factory; called once per attempt.
    policies:
        Ordered retry policies.
    label:
        Name used in log lines.

    Raises
    ------
    RetryExhausted
        When a retryable failure hits its policy's ``max_attempts``.
    """

    def _outcome(state: RetryCallState) -> Optional[BaseException]:
        if state.outcome is None or not state.outcome.failed:
            return None
        return state.outcome.exception()

    def _retry(state: RetryCallState) -> bool:
        return _match(policies, _outcome(state)) is not None

    def _stop(state: RetryCallState) -> bool:
        policy = _match(policies, _outcome(state))
        return policy is None or state.attempt_number >= policy.max_attempts

    def _wait(state: RetryCallState) -> float:
        policy = _match(policies, _outcome(state))
        return policy.backoff(state.attempt_number) if policy else 0.0

    def _before_sleep(state: RetryCallState) -> None:
        exc = _outcome(state)
        logger.warning(
            "{label}: attempt {n} failed ({err_type}: {err}); retrying in {wait:.1f}s",
            label=label,
            n=state.attempt_number,
            err_type=type(exc).__name__,
            err=exc,
            wait=state.next_action.sleep if state.next_action else 0.0,
        )

    retrying = AsyncRetrying(
        retry=_retry,
        stop=_stop,
        wait=_wait,
        before_sleep=_before_sleep,
        reraise=False,
    )
    try:
        async for attempt in retrying:
            with attempt:
                return await fn()
    except RetryError as err:
        last = err.last_attempt.exception()
        policy = _match(policies, last)
        if policy is None or last is None:
            raise
        logger.error(
            "{label}: retries exhausted under policy {policy} after {n} attempts",
            label=label,
            policy=policy.name,
            n=err.last_attempt.attempt_number,
        )
        raise RetryExhausted(policy, last, err.last_attempt.attempt_number) from last
