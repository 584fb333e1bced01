"""Inbound webhook endpoints for both remote systems.

- ``POST /webhooks/source``: token-authenticated JSON envelope, published as
  ``{event_object}:{event_action}``.
- ``POST /webhooks/target/{kind}``: handshake or a signed array of
  custom-field change events, published as ``target_field:changed``.
- ``POST /webhooks/target/{kind}/subtasks``: handshake or a signed array of
  ``TaskCreated`` events, published as ``target_task:created``.

Authentication happens before anything is parsed into a notification;
rejected requests never reach the dispatcher. The raw body is read once
and used both for the signature and for JSON decoding. A 200 is returned
only once every event is on its stream; if the stream is unreachable the
sender gets a 503 and delivers again.
"""

from __future__ import annotations

import json
from typing import Any

import redis.asyncio as aioredis
import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import TypeAdapter, ValidationError

from src.app.api.deps import get_app_settings, get_dispatcher
from src.app.config import Settings
from src.app.events.schemas import (
    TARGET_FIELD_CHANGED,
    TARGET_TASK_CREATED,
    SyncEvent,
    entity_topic,
    new_trace_id,
)
from src.app.sync.errors import WebhookVerificationError
from src.app.sync.ingest import created_tasks, notification_from_envelope, target_changes
from src.app.sync.schemas import EntityKind, SourceWebhookEnvelope, TargetTaskCreatedEvent, TargetWebhookEvent
from src.app.sync.webhook_auth import (
    SIGNATURE_HEADER,
    handshake_response,
    is_handshake,
    signing_bytes,
    verify_signature,
    verify_token,
)

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

_target_events = TypeAdapter(list[TargetWebhookEvent])
_created_events = TypeAdapter(list[TargetTaskCreatedEvent])


def _decode(raw_body: bytes) -> Any:
    try:
        return json.loads(raw_body) if raw_body else None
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Body is not valid JSON") from exc


def _unauthorized(exc: WebhookVerificationError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_401_UNAUTHORIZED, content={"message": str(exc)})


async def _publish(dispatcher: Any, event: SyncEvent) -> None:
    """Append ``event`` to its stream, or 503 so the sender retries."""
    try:
        await dispatcher.publish(event)
    except aioredis.RedisError as exc:
        logger.error("webhooks.publish_failed", topic=event.topic, trace_id=event.trace_id, exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Event stream unavailable"
        ) from exc


def _verify_target(request: Request, settings: Settings, kind: EntityKind, raw_body: bytes, body: Any) -> Response | None:
    """Answer a handshake or reject a bad signature; None lets the request through."""
    secret = settings.TARGET_WEBHOOK_SECRET

    if is_handshake(body):
        try:
            answer = handshake_response(secret, request.headers.get(SIGNATURE_HEADER))
        except WebhookVerificationError as exc:
            logger.warning("webhooks.handshake_rejected", reason=str(exc))
            return _unauthorized(exc)
        logger.info("webhooks.handshake_answered", kind=kind.value, path=request.url.path)
        return JSONResponse(content={"success": True}, headers={SIGNATURE_HEADER: answer})

    try:
        verify_signature(secret, signing_bytes(raw_body, body), request.headers.get(SIGNATURE_HEADER))
    except WebhookVerificationError as exc:
        logger.warning("webhooks.target_rejected", reason=str(exc))
        return _unauthorized(exc)

    if not isinstance(body, list):
        logger.warning("webhooks.target_not_array")
        return JSONResponse(content={"message": "Webhook received but not processed"})
    return None


# ── Source System ────────────────────────────────────────────────────────────


@router.post("/source")
async def source_webhook(
    request: Request,
    settings: Settings = Depends(get_app_settings),
    dispatcher: Any = Depends(get_dispatcher),
) -> Response:
    """Receive a source system lifecycle event."""
    body = _decode(await request.body())
    try:
        envelope = SourceWebhookEnvelope.model_validate(body)
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=exc.errors()) from exc

    try:
        verify_token(settings.SOURCE_WEBHOOK_TOKEN, envelope.webhook_token)
    except WebhookVerificationError as exc:
        logger.warning("webhooks.source_rejected", reason=str(exc))
        return _unauthorized(exc)

    try:
        notification = notification_from_envelope(envelope)
    except ValueError:
        logger.info(
            "webhooks.source_event_ignored",
            event_object=envelope.event_object,
            event_action=envelope.event_action,
        )
        return JSONResponse(content={"message": "Event not supported"})

    trace_id = new_trace_id()
    topic = entity_topic(notification.entity_kind, notification.action)
    await _publish(dispatcher, SyncEvent(topic=topic, trace_id=trace_id, data=notification.model_dump()))
    logger.info("webhooks.source_received", topic=topic, source_id=notification.entity_id, trace_id=trace_id)
    return JSONResponse(content={"message": "Accepted", "trace_id": trace_id})


# ── Target System ────────────────────────────────────────────────────────────


@router.post("/target/{kind}")
async def target_webhook(
    kind: EntityKind,
    request: Request,
    settings: Settings = Depends(get_app_settings),
    dispatcher: Any = Depends(get_dispatcher),
) -> Response:
    """Answer the handshake, or verify and fan out custom-field changes."""
    raw_body = await request.body()
    body = _decode(raw_body)
    answered = _verify_target(request, settings, kind, raw_body, body)
    if answered is not None:
        return answered

    try:
        events = _target_events.validate_python(body)
    except ValidationError:
        logger.warning("webhooks.target_event_incomplete", exc_info=True)
        return JSONResponse(content={"message": "Webhook received but event incomplete"})

    changes = target_changes(
        kind,
        events,
        settings.get_target_custom_field_ids(),
        settings.get_target_webhook_events(),
    )
    trace_ids = []
    for change in changes:
        trace_id = new_trace_id()
        await _publish(dispatcher, SyncEvent(topic=TARGET_FIELD_CHANGED, trace_id=trace_id, data=change.model_dump()))
        trace_ids.append(trace_id)

    logger.info("webhooks.target_received", kind=kind.value, events=len(events), published=len(trace_ids))
    return JSONResponse(content={"message": "Webhook processed", "trace_ids": trace_ids})


@router.post("/target/{kind}/subtasks")
async def target_task_created_webhook(
    kind: EntityKind,
    request: Request,
    settings: Settings = Depends(get_app_settings),
    dispatcher: Any = Depends(get_dispatcher),
) -> Response:
    """Answer the handshake, or verify and publish created tasks."""
    raw_body = await request.body()
    body = _decode(raw_body)
    answered = _verify_target(request, settings, kind, raw_body, body)
    if answered is not None:
        return answered

    try:
        events = _created_events.validate_python(body)
    except ValidationError:
        logger.warning("webhooks.task_created_incomplete", exc_info=True)
        return JSONResponse(content={"message": "Webhook received but event incomplete"})

    trace_ids = []
    for created in created_tasks(kind, events):
        trace_id = new_trace_id()
        await _publish(dispatcher, SyncEvent(topic=TARGET_TASK_CREATED, trace_id=trace_id, data=created.model_dump()))
        trace_ids.append(trace_id)

    logger.info("webhooks.task_created_received", kind=kind.value, events=len(events), published=len(trace_ids))
    return JSONResponse(content={"message": "Webhook processed", "trace_ids": trace_ids})
