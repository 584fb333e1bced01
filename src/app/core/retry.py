"""Resilient remote caller: classification-aware retry with jittered backoff.

Every outbound call to the source system, the target system and the
notification provider goes through ``call_with_retry``. Built on tenacity
(the same library the HTTP clients used for their ``@retry`` decorators),
with two additions tenacity does not give us out of the box:

- a per-attempt wall-clock timeout enforced by cancellation, and
- a ``RetryMetadata`` record (attempt count, delays, error messages, final
  verdict) attached to the error raised when the call gives up.

Backoff for retry ``i`` (0-based) is ``min(base * 2**i, max_delay)`` jittered
by up to +/-25% of that value.
"""

from __future__ import annotations

import asyncio
import random
import re
import socket
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

import httpx
import structlog
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from src.app.core.errors import error_message, extract_status_code

logger = structlog.get_logger(__name__)

T = TypeVar("T")

JITTER_RATIO = 0.25

_NETWORK_PATTERNS = (
    "fetch failed",
    "network error",
    "timeout",
    "timed out",
    "econnrefused",
    "enotfound",
    "econnreset",
    "connection refused",
    "connection reset",
    "name or service not known",
    "temporary failure in name resolution",
)
_RETRYABLE_CODES = re.compile(r"\b(500|502|503|504|429)\b")
_NON_RETRYABLE_CODES = re.compile(r"\b(401|403|404)\b")


# ── Records ─────────────────────────────────────────────────────────────────


@dataclass
class RetryAttempt:
    """One execution of the wrapped operation."""

    number: int
    delay_before: float = 0.0
    error: str | None = None
    retryable: bool | None = None


@dataclass
class RetryMetadata:
    """Aggregated history of a ``call_with_retry`` invocation."""

    total_attempts: int = 0
    delays: list[float] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    is_retryable: bool = False
    attempts: list[RetryAttempt] = field(default_factory=list)


class CallTimeoutError(TimeoutError):
    """Raised when a single attempt exceeds the per-call timeout."""

    def __init__(self, description: str, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(f"{description} timed out after {timeout:g}s")


class RemoteCallError(Exception):
    """Raised when a remote call fails for good.

    Either the last error was not retryable or every attempt was used.
    The original exception is chained as ``__cause__``.

    Attributes:
        description: What was being called, e.g. ``"source.get_work_order"``.
        metadata: Retry history for the call.
        last_error: The exception raised by the final attempt.
        status_code: HTTP status of the final failure when known.
    """

    is_api_error = True

    def __init__(
        self,
        description: str,
        metadata: RetryMetadata,
        last_error: BaseException,
    ) -> None:
        self.description = description
        self.metadata = metadata
        self.last_error = last_error
        self.status_code = extract_status_code(last_error)
        self.timed_out = isinstance(last_error, (TimeoutError, httpx.TimeoutException))

        message = (
            f"{description} failed after {metadata.total_attempts} attempt(s): "
            f"{error_message(last_error)}"
        )
        if metadata.delays:
            message += "\nRetry delays: " + ", ".join(f"{d:.3f}s" for d in metadata.delays)
        if len(metadata.errors) > 1:
            message += "\nAll errors: " + " | ".join(metadata.errors)
        super().__init__(message)


# ── Policy ──────────────────────────────────────────────────────────────────


def is_retryable_error(error: BaseException) -> bool:
    """Decide whether a failed call should be attempted again.

    Priority:
    1. Network-level failures and timeouts -> retry
    2. Embedded HTTP status >= 500 or 429 -> retry; other 4xx -> give up
    3. Auth / forbidden / not-found wording -> give up
    4. Anything else -> retry
    """
    if isinstance(error, RemoteCallError):
        return error.metadata.is_retryable

    if isinstance(
        error,
        (httpx.TransportError, ConnectionError, TimeoutError, asyncio.TimeoutError, socket.gaierror),
    ):
        return True

    message = error_message(error)
    lower = message.lower()
    if any(pattern in lower for pattern in _NETWORK_PATTERNS):
        return True

    status = extract_status_code(error)
    if status is not None:
        if status >= 500 or status == 429:
            return True
        if 400 <= status < 500:
            return False

    if _RETRYABLE_CODES.search(message):
        return True
    if (
        _NON_RETRYABLE_CODES.search(message)
        or "unauthorized" in lower
        or "forbidden" in lower
        or "not found" in lower
    ):
        return False

    return True


def compute_backoff_delay(
    retry_index: int,
    base_delay: float,
    max_delay: float,
    jitter: Callable[[float, float], float] = random.uniform,
) -> float:
    """Delay in seconds before retry ``retry_index`` (0-based)."""
    capped = min(base_delay * (2**retry_index), max_delay)
    return max(0.0, capped + capped * JITTER_RATIO * jitter(-1.0, 1.0))


@dataclass(frozen=True)
class RetryPolicy:
    """How hard to try a remote call.

    ``max_attempts`` counts retries after the first attempt, so the default
    policy performs at most four calls.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    timeout: float = 30.0
    classifier: Callable[[BaseException], bool] = is_retryable_error

    @classmethod
    def from_settings(cls, settings: Any) -> RetryPolicy:
        """Build the process-wide default policy from Settings."""
        return cls(
            max_attempts=settings.RETRY_MAX_ATTEMPTS,
            base_delay=settings.RETRY_BASE_DELAY,
            max_delay=settings.RETRY_MAX_DELAY,
            timeout=settings.REMOTE_CALL_TIMEOUT,
        )


DEFAULT_POLICY = RetryPolicy()


# ── Caller ──────────────────────────────────────────────────────────────────


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
    *,
    description: str = "remote call",
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Run ``operation`` under ``policy`` and return its result.

    Args:
        operation: Zero-argument coroutine function performing one call.
        policy: Retry policy; defaults to 3 retries, 1s base, 10s cap, 30s timeout.
        description: Label used in logs and in the raised error.
        sleep: Awaitable sleep used between attempts (injectable for tests).

    Returns:
        Whatever the first successful attempt returned.

    Raises:
        RemoteCallError: The call failed with a non-retryable error or every
            attempt was used. ``metadata`` holds the retry history.
    """
    policy = policy or DEFAULT_POLICY
    metadata = RetryMetadata()
    pending_delay = 0.0

    def _wait(retry_state: RetryCallState) -> float:
        return compute_backoff_delay(
            retry_state.attempt_number - 1, policy.base_delay, policy.max_delay
        )

    def _should_retry(exc: BaseException) -> bool:
        verdict = policy.classifier(exc)
        metadata.is_retryable = verdict
        if metadata.attempts:
            metadata.attempts[-1].retryable = verdict
        return verdict

    def _before_sleep(retry_state: RetryCallState) -> None:
        nonlocal pending_delay
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        pending_delay = delay
        metadata.delays.append(delay)
        logger.warning(
            "retry.attempt_failed",
            call=description,
            attempt=retry_state.attempt_number,
            delay=round(delay, 3),
            error=metadata.errors[-1] if metadata.errors else None,
        )

    async def _attempt() -> T:
        attempt = RetryAttempt(number=len(metadata.attempts) + 1, delay_before=pending_delay)
        metadata.attempts.append(attempt)
        metadata.total_attempts = attempt.number
        try:
            return await asyncio.wait_for(operation(), timeout=policy.timeout)
        except asyncio.TimeoutError as exc:
            timeout_error = CallTimeoutError(description, policy.timeout)
            attempt.error = error_message(timeout_error)
            metadata.errors.append(attempt.error)
            raise timeout_error from exc
        except Exception as exc:
            attempt.error = error_message(exc)
            metadata.errors.append(attempt.error)
            raise

    retrying = AsyncRetrying(
        stop=stop_after_attempt(policy.max_attempts + 1),
        wait=_wait,
        retry=retry_if_exception(_should_retry),
        before_sleep=_before_sleep,
        sleep=sleep,
        reraise=True,
    )

    try:
        async for attempt_ctx in retrying:
            with attempt_ctx:
                result = await _attempt()
    except Exception as exc:
        logger.error(
            "retry.gave_up",
            call=description,
            attempts=metadata.total_attempts,
            retryable=metadata.is_retryable,
            error=error_message(exc),
        )
        raise RemoteCallError(description, metadata, exc) from exc

    if metadata.total_attempts > 1:
        logger.info("retry.recovered", call=description, attempts=metadata.total_attempts)
    return result
