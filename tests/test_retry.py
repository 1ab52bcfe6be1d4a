"""Tests for policy-driven retries."""

from __future__ import annotations

import pytest

from insurance_verifier.core.retry import (
    RetryExhausted,
    RetryPolicy,
    fixed_backoff,
    polynomial_backoff,
    run_with_policies,
)


class _Flaky:
    def __init__(self, errors: list[Exception], result: str = "ok") -> None:
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


def _policy(name: str, attempts: int, exc_type: type[Exception]) -> RetryPolicy:
    return RetryPolicy(
        name=name,
        max_attempts=attempts,
        backoff=fixed_backoff(0),
        is_retryable=lambda exc: isinstance(exc, exc_type),
    )


class TestBackoff:
    def test_polynomial(self) -> None:
        backoff = polynomial_backoff()
        assert [backoff(n) for n in (1, 2, 3)] == [3, 18, 83]

    def test_polynomial_scaled(self) -> None:
        assert polynomial_backoff(0.5)(2) == 9

    def test_fixed(self) -> None:
        assert fixed_backoff(5)(4) == 5


class TestRunWithPolicies:
    @pytest.mark.asyncio
    async def test_success_after_retries(self) -> None:
        fn = _Flaky([ValueError("a"), ValueError("b")])
        result = await run_with_policies(fn, [_policy("value", 3, ValueError)])
        assert result == "ok"
        assert fn.calls == 3

    @pytest.mark.asyncio
    async def test_exhaustion(self) -> None:
        fn = _Flaky([ValueError(str(n)) for n in range(10)])
        with pytest.raises(RetryExhausted) as exc_info:
            await run_with_policies(fn, [_policy("value", 3, ValueError)])
        assert fn.calls == 3
        assert exc_info.value.attempts == 3
        assert exc_info.value.policy.name == "value"
        assert isinstance(exc_info.value.last_exception, ValueError)

    @pytest.mark.asyncio
    async def test_non_retryable_propagates_unchanged(self) -> None:
        fn = _Flaky([KeyError("boom")])
        with pytest.raises(KeyError):
            await run_with_policies(fn, [_policy("value", 3, ValueError)])
        assert fn.calls == 1

    @pytest.mark.asyncio
    async def test_first_matching_policy_decides(self) -> None:
        fn = _Flaky([TypeError(str(n)) for n in range(10)])
        policies = [_policy("type", 5, TypeError), _policy("any", 2, Exception)]
        with pytest.raises(RetryExhausted) as exc_info:
            await run_with_policies(fn, policies)
        assert fn.calls == 5
        assert exc_info.value.policy.name == "type"

    @pytest.mark.asyncio
    async def test_coroutine_factory_lambda_is_awaited(self) -> None:
        fn = _Flaky([ValueError("a")], result="done")
        result = await run_with_policies(lambda: fn(), [_policy("value", 3, ValueError)])
        assert result == "done"
        assert fn.calls == 2

    @pytest.mark.asyncio
    async def test_coroutine_factory_lambda_exhausts(self) -> None:
        fn = _Flaky([ValueError(str(n)) for n in range(10)])
        with pytest.raises(RetryExhausted) as exc_info:
            await run_with_policies(lambda: fn(), [_policy("value", 2, ValueError)])
        assert exc_info.value.attempts == 2
