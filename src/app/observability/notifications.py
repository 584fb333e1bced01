"""Finality notifications.

Subscribes to the finality topics. Error finality is rendered into a
plain-text report (trace id, flow, failing step, error category and
message, the per-step log trail, and the record ids the flow touched) and
sent through Mailgun when it is configured; otherwise the report is
logged. Success finality is logged only. The trace's log trail is cleared
once the report has been handled.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

import httpx
import structlog

from src.app.core.retry import RetryPolicy, call_with_retry
from src.app.events.schemas import FinalityEvent, SyncEvent

if TYPE_CHECKING:
    from src.app.events.trail import FlowLogTrail

logger = structlog.get_logger(__name__)

FLOW_TITLES: dict[str, str] = {
    "quote-created": "Source Quote -> Target",
    "quote-updated": "Source Quote -> Target",
    "quote-destroyed": "Source Quote -> Target",
    "work-order-created": "Source Work Order -> Target",
    "work-order-updated": "Source Work Order -> Target",
    "work-order-destroyed": "Source Work Order -> Target",
    "target-field-updated": "Target Field Update -> Source",
    "subtask-created": "Target Subtask -> Parent Fields",
}


# ── Rendering ────────────────────────────────────────────────────────────────


def render_subject(finality: FinalityEvent) -> str:
    title = FLOW_TITLES.get(finality.flow_name, finality.flow_name)
    outcome = "succeeded" if finality.succeeded else "FAILED"
    ref = finality.result.get("source_id") or finality.result.get("target_id") or finality.trace_id[:8]
    return f"[Sync] {title} {outcome} ({ref})"


def render_report(finality: FinalityEvent, trail: list[dict[str, Any]]) -> str:
    """Plain-text report for one finished flow.

    Args:
        finality: Terminal outcome of the flow.
        trail: Log trail entries, oldest first.

    Returns:
        Report body.
    """
    lines = [
        f"Flow:      {FLOW_TITLES.get(finality.flow_name, finality.flow_name)} ({finality.flow_name})",
        f"Trace ID:  {finality.trace_id}",
        f"Status:    {finality.status}",
        f"Duration:  {finality.duration_ms} ms",
    ]
    if not finality.succeeded:
        lines += [
            f"Step:      {finality.step_name or 'unknown'}",
            f"Category:  {finality.error_category or 'unknown'}",
            "",
            "Error:",
            f"  {finality.error_message or 'no message'}",
        ]
    if finality.result:
        lines += ["", "Records:"]
        lines += [f"  {key}: {value}" for key, value in finality.result.items() if value is not None]

    lines += ["", f"Log trail ({len(trail)} entries):"]
    for entry in trail:
        metadata = {k: v for k, v in (entry.get("metadata") or {}).items() if v is not None}
        suffix = f" {json.dumps(metadata, default=str, sort_keys=True)}" if metadata else ""
        lines.append(
            f"  {entry.get('timestamp', '')} [{str(entry.get('level', 'info')).upper()}] "
            f"{entry.get('message', '')}{suffix}"
        )
    return "\n".join(lines)


# ── Delivery ─────────────────────────────────────────────────────────────────


class MailgunNotifier:
    """Sends plain-text email through the Mailgun messages API.

    Args:
        http: Shared async HTTP client (owned by the caller).
        api_key: Mailgun private API key.
        domain: Sending domain.
        sender: From address.
        recipient: Address that receives error reports.
        api_url: Mailgun API root.
        policy: Retry policy for the send call.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        api_key: str,
        domain: str,
        sender: str,
        recipient: str,
        api_url: str = "https://api.mailgun.net/v3",
        policy: RetryPolicy | None = None,
    ) -> None:
        self._http = http
        self._auth = ("api", api_key)
        self._url = f"{api_url.rstrip('/')}/{domain}/messages"
        self._sender = sender
        self._recipient = recipient
        self._policy = policy

    async def send(self, subject: str, text: str) -> None:
        async def _post() -> None:
            response = await self._http.post(
                self._url,
                auth=self._auth,
                data={"from": self._sender, "to": self._recipient, "subject": subject, "text": text},
            )
            response.raise_for_status()

        await call_with_retry(_post, self._policy, description="mailgun.send")
        logger.info("notifications.email_sent", subject=subject)


class FinalityNotifier:
    """Dispatcher handler for ``finality:*`` topics.

    Args:
        trail: Log trail to render and clear; None renders without one.
        mailer: Delivery for error reports; None logs them instead.
    """

    def __init__(self, trail: FlowLogTrail | None = None, mailer: MailgunNotifier | None = None) -> None:
        self._trail = trail
        self._mailer = mailer

    async def handle(self, event: SyncEvent) -> None:
        finality = FinalityEvent.model_validate(event.data)
        trail = await self._trail.read(finality.trace_id) if self._trail else []

        try:
            if finality.succeeded:
                logger.info(
                    "notifications.flow_succeeded",
                    trace_id=finality.trace_id,
                    flow_name=finality.flow_name,
                    duration_ms=finality.duration_ms,
                )
            else:
                subject = render_subject(finality)
                report = render_report(finality, trail)
                if self._mailer is not None:
                    await self._mailer.send(subject, report)
                else:
                    logger.error(
                        "notifications.flow_failed",
                        trace_id=finality.trace_id,
                        flow_name=finality.flow_name,
                        subject=subject,
                        report=report,
                    )
        finally:
            if self._trail is not None:
                await self._trail.clear(finality.trace_id)
