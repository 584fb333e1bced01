"""Unit tests for the resilient remote caller.

Tests cover:
- Retry classification (network, status codes, wording)
- Backoff growth, cap and jitter bounds
- call_with_retry success, recovery, give-up and timeout paths
- The default policy: four calls and three jittered delays against a 503
- RetryMetadata contents on the raised RemoteCallError
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import httpx
import pytest

from src.app.core.errors import ErrorCategory, categorize_error
from src.app.core.retry import (
    DEFAULT_POLICY,
    RemoteCallError,
    RetryPolicy,
    call_with_retry,
    compute_backoff_delay,
    is_retryable_error,
)
from src.app.sync.clients.base import RemoteApiError


def _failing_then(result, *errors):
    """Operation raising each error in turn, then returning ``result``."""
    remaining = list(errors)
    calls = {"count": 0}

    async def _operation():
        calls["count"] += 1
        if remaining:
            raise remaining.pop(0)
        return result

    return _operation, calls


# ── Classification ───────────────────────────────────────────────────────────


class TestIsRetryableError:
    """Which failures are worth another attempt."""

    @pytest.mark.parametrize(
        "error",
        [
            httpx.ConnectError("connection refused"),
            httpx.ReadTimeout("read timed out"),
            ConnectionResetError("reset"),
            RemoteApiError("target", "update_task", 503),
            RemoteApiError("target", "update_task", 429),
            RuntimeError("fetch failed"),
            RuntimeError("something unexpected"),
        ],
    )
    def test_retryable(self, error):
        assert is_retryable_error(error) is True

    @pytest.mark.parametrize(
        "error",
        [
            RemoteApiError("source", "get_quote", 404),
            RemoteApiError("source", "get_quote", 401),
            RemoteApiError("target", "update_task", 400),
            RuntimeError("Unauthorized"),
            RuntimeError("resource not found"),
        ],
    )
    def test_not_retryable(self, error):
        assert is_retryable_error(error) is False


# ── Backoff ──────────────────────────────────────────────────────────────────


class TestBackoff:
    """Exponential backoff with cap and +/-25% jitter."""

    @pytest.mark.parametrize("index, expected", [(0, 1.0), (1, 2.0), (3, 8.0), (4, 10.0), (8, 10.0)])
    def test_without_jitter(self, index, expected):
        assert compute_backoff_delay(index, 1.0, 10.0, jitter=lambda a, b: 0.0) == expected

    def test_jitter_bounds(self):
        assert compute_backoff_delay(1, 1.0, 10.0, jitter=lambda a, b: 1.0) == 2.5
        assert compute_backoff_delay(1, 1.0, 10.0, jitter=lambda a, b: -1.0) == 1.5

    def test_random_jitter_stays_in_range(self):
        for _ in range(50):
            assert 0.75 <= compute_backoff_delay(0, 1.0, 10.0) <= 1.25


# ── call_with_retry ──────────────────────────────────────────────────────────


class TestCallWithRetry:
    """End-to-end behavior of the caller."""

    @pytest.mark.asyncio
    async def test_first_attempt_success(self):
        sleep = AsyncMock()
        operation, calls = _failing_then("ok")

        assert await call_with_retry(operation, sleep=sleep) == "ok"
        assert calls["count"] == 1
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failure(self):
        sleep = AsyncMock()
        operation, calls = _failing_then("ok", RemoteApiError("target", "search_tasks", 503))

        assert await call_with_retry(operation, RetryPolicy(base_delay=1.0), sleep=sleep) == "ok"
        assert calls["count"] == 2
        sleep.assert_awaited_once()
        delay = sleep.await_args.args[0]
        assert 0.75 <= delay <= 1.25

    @pytest.mark.asyncio
    async def test_non_retryable_gives_up_immediately(self):
        sleep = AsyncMock()
        operation, calls = _failing_then("ok", RemoteApiError("source", "get_quote", 404))

        with pytest.raises(RemoteCallError) as exc_info:
            await call_with_retry(operation, sleep=sleep, description="source.get_quote(7)")

        error = exc_info.value
        assert calls["count"] == 1
        assert error.status_code == 404
        assert error.metadata.total_attempts == 1
        assert error.metadata.is_retryable is False
        assert error.metadata.delays == []
        assert "source.get_quote(7) failed after 1 attempt(s)" in str(error)
        assert isinstance(error.__cause__, RemoteApiError)
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_exhausts_attempts(self):
        sleep = AsyncMock()
        errors = [RemoteApiError("target", "update_task", 500) for _ in range(5)]
        operation, calls = _failing_then("ok", *errors)

        with pytest.raises(RemoteCallError) as exc_info:
            await call_with_retry(operation, RetryPolicy(max_attempts=2), sleep=sleep)

        metadata = exc_info.value.metadata
        assert calls["count"] == 3
        assert metadata.total_attempts == 3
        assert len(metadata.delays) == 2
        assert len(metadata.errors) == 3
        assert metadata.is_retryable is True
        assert [a.number for a in metadata.attempts] == [1, 2, 3]
        assert "Retry delays:" in str(exc_info.value)
        assert categorize_error(exc_info.value) == ErrorCategory.api_error

    @pytest.mark.asyncio
    async def test_default_policy_against_constant_503(self):
        sleep = AsyncMock()
        calls = {"count": 0}

        async def _unavailable():
            calls["count"] += 1
            raise RemoteApiError("source", "get_work_order", 503)

        with pytest.raises(RemoteCallError) as exc_info:
            await call_with_retry(_unavailable, DEFAULT_POLICY, sleep=sleep)

        assert calls["count"] == 4
        delays = [c.args[0] for c in sleep.await_args_list]
        assert len(delays) == 3
        assert exc_info.value.metadata.delays == delays
        for i, delay in enumerate(delays):
            nominal = min(1.0 * 2**i, 10.0)
            assert 0.75 * nominal <= delay <= 1.25 * nominal
        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_per_attempt_timeout(self):
        async def _hang():
            await asyncio.sleep(5)

        with pytest.raises(RemoteCallError) as exc_info:
            await call_with_retry(_hang, RetryPolicy(max_attempts=0, timeout=0.01), sleep=AsyncMock())

        error = exc_info.value
        assert error.timed_out is True
        assert "timed out after" in error.metadata.errors[0]
        assert categorize_error(error) == ErrorCategory.timeout

    @pytest.mark.asyncio
    async def test_custom_classifier(self):
        operation, calls = _failing_then("ok", RuntimeError("something unexpected"))
        policy = RetryPolicy(classifier=lambda exc: False)

        with pytest.raises(RemoteCallError):
            await call_with_retry(operation, policy, sleep=AsyncMock())
        assert calls["count"] == 1

    def test_policy_from_settings(self):
        class _Settings:
            RETRY_MAX_ATTEMPTS = 5
            RETRY_BASE_DELAY = 0.5
            RETRY_MAX_DELAY = 4.0
            REMOTE_CALL_TIMEOUT = 12.0

        policy = RetryPolicy.from_settings(_Settings())
        assert (policy.max_attempts, policy.base_delay, policy.max_delay, policy.timeout) == (5, 0.5, 4.0, 12.0)
