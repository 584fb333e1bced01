"""Webhook authentication for both remote systems.

Target system:
- Handshake: a body ``{"requestType": "WebHook secret verification"}`` with
  a nonce in the ``X-Hook-Secret`` header is answered by echoing
  ``HMAC-SHA256(secret, nonce)`` in the same header.
- Events: ``X-Hook-Secret`` carries ``HMAC-SHA256(secret, raw_body)``.
  The raw bytes must be the ones received; re-serializing the parsed body
  (pretty-printed with a 2-space indent, the sender's own format) is only
  a fallback for when the bytes are gone.

Source system: a shared token inside the JSON envelope.

All comparisons are constant-time.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from typing import Any

import structlog

from src.app.sync.errors import WebhookVerificationError

logger = structlog.get_logger(__name__)

SIGNATURE_HEADER = "X-Hook-Secret"
HANDSHAKE_REQUEST_TYPE = "WebHook secret verification"


def compute_signature(secret: str, payload: bytes | str) -> str:
    """Hex HMAC-SHA256 of ``payload`` under ``secret``."""
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def signing_bytes(raw_body: bytes | None, parsed: Any = None) -> bytes:
    """The bytes a signature is checked against.

    Args:
        raw_body: Bytes exactly as received, when available.
        parsed: Decoded body, used only when ``raw_body`` is empty.
    """
    if raw_body:
        return raw_body
    logger.warning("webhook_auth.raw_body_missing")
    return json.dumps(parsed, indent=2, ensure_ascii=False).encode("utf-8")


def is_handshake(parsed: Any) -> bool:
    """True for the target system's one-time secret verification request."""
    return isinstance(parsed, dict) and parsed.get("requestType") == HANDSHAKE_REQUEST_TYPE


def handshake_response(secret: str, nonce: str | None) -> str:
    """Value to return in ``X-Hook-Secret`` for a handshake.

    Raises:
        WebhookVerificationError: No secret is configured or no nonce was sent.
    """
    if not secret:
        raise WebhookVerificationError("Webhook secret is not configured")
    if not nonce:
        raise WebhookVerificationError(f"Handshake is missing the {SIGNATURE_HEADER} header")
    return compute_signature(secret, nonce)


def verify_signature(secret: str, raw_body: bytes, signature: str | None) -> None:
    """Check an event signature over the exact received bytes.

    Raises:
        WebhookVerificationError: Missing secret or header, or mismatch.
    """
    if not secret:
        raise WebhookVerificationError("Webhook secret is not configured")
    if not signature:
        raise WebhookVerificationError(f"Missing {SIGNATURE_HEADER} header")
    expected = compute_signature(secret, raw_body)
    if not hmac.compare_digest(expected, signature.strip().lower()):
        raise WebhookVerificationError("Invalid webhook signature")


def verify_token(expected: str, supplied: str | None) -> None:
    """Check the shared token carried inside a source webhook envelope.

    Raises:
        WebhookVerificationError: Missing configuration or token mismatch.
    """
    if not expected:
        raise WebhookVerificationError("Webhook token is not configured")
    if not supplied or not hmac.compare_digest(expected.encode("utf-8"), supplied.encode("utf-8")):
        raise WebhookVerificationError("Invalid webhook token")
