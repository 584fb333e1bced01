"""Error taxonomy shared by the retry layer and the execution trace layer.

Provides:
- ErrorCategory: api_error / validation_error / timeout / unknown
- extract_status_code(): HTTP status embedded in an exception, if any
- categorize_error(): pattern-based categorization used when recording traces

The same status extraction is used by ``is_retryable_error`` in
``src.app.core.retry`` so both layers agree on what a failure was.
"""

from __future__ import annotations

import asyncio
import re
from enum import Enum

import httpx
from pydantic import ValidationError

_STATUS_PATTERN = re.compile(r"status[:\s]+(\d{3})", re.IGNORECASE)


class ErrorCategory(str, Enum):
    """Stored in ``error_category`` columns of the trace tables."""

    api_error = "api_error"
    validation_error = "validation_error"
    timeout = "timeout"
    unknown = "unknown"


def error_message(error: BaseException | str) -> str:
    """Human-readable message for an error, falling back to its type name."""
    if isinstance(error, str):
        return error
    return str(error) or type(error).__name__


def extract_status_code(error: BaseException | str) -> int | None:
    """Return the HTTP status carried by an error.

    Checks an ``httpx.HTTPStatusError`` response first, then a
    ``status_code`` attribute, then a ``status: NNN`` fragment in the message.
    """
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    status_code = getattr(error, "status_code", None)
    if isinstance(status_code, int):
        return status_code
    match = _STATUS_PATTERN.search(error_message(error))
    if match:
        return int(match.group(1))
    return None


def _is_timeout(error: BaseException | str) -> bool:
    if isinstance(error, (TimeoutError, asyncio.TimeoutError, httpx.TimeoutException)):
        return True
    if getattr(error, "timed_out", False):
        return True
    lower = error_message(error).lower()
    return "timeout" in lower or "timed out" in lower or "etimedout" in lower


def categorize_error(error: BaseException | str) -> ErrorCategory:
    """Map an error to its category.

    Order matters: timeout, then API/transport failures, then validation
    failures, otherwise unknown.
    """
    if _is_timeout(error):
        return ErrorCategory.timeout

    message = error_message(error)
    lower = message.lower()

    if isinstance(error, httpx.HTTPError) or getattr(error, "is_api_error", False):
        return ErrorCategory.api_error
    if isinstance(error, ValidationError) or getattr(error, "is_validation_error", False):
        return ErrorCategory.validation_error

    if (
        "API" in message
        or "HTTP" in message
        or "fetch failed" in lower
        or "status" in lower
    ):
        return ErrorCategory.api_error
    if "validation" in lower or "invalid" in lower or "required" in lower:
        return ErrorCategory.validation_error

    return ErrorCategory.unknown
