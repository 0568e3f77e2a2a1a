"""Tests for the bounded exponential backoff policy."""

from __future__ import annotations

import pytest

from blobsync.exceptions import QueryError, RetriesExhausted
from blobsync.pipeline.retry import RetryPolicy


def _transient(exc: BaseException) -> bool:
    return isinstance(exc, QueryError)


class _Flaky:
    def __init__(self, failures: int, error: Exception | None = None) -> None:
        self.failures = failures
        self.error = error or QueryError("down")
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "ok"


@pytest.mark.parametrize("max_retries", [0, 1, 3])
async def test_attempts_equal_bound_plus_one(max_retries):
    fn = _Flaky(failures=100)
    policy = RetryPolicy(max_retries=max_retries, base_delay=0)

    with pytest.raises(RetriesExhausted) as excinfo:
        await policy.run(fn, retry_if=_transient, label="test")

    assert fn.calls == max_retries + 1
    assert excinfo.value.attempts == max_retries + 1
    assert isinstance(excinfo.value.last_error, QueryError)


async def test_success_after_failures():
    fn = _Flaky(failures=2)
    assert await RetryPolicy(base_delay=0).run(fn, retry_if=_transient, label="test") == "ok"
    assert fn.calls == 3


async def test_non_retryable_error_propagates_immediately():
    fn = _Flaky(failures=100, error=ValueError("bad content"))

    with pytest.raises(ValueError, match="bad content"):
        await RetryPolicy(base_delay=0).run(fn, retry_if=_transient, label="test")

    assert fn.calls == 1


def test_defaults():
    policy = RetryPolicy()
    assert policy.max_retries == 3
    assert policy.max_attempts == 4
    assert policy.base_delay == 1.0
