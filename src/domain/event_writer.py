from __future__ import annotations

import logging
from typing import Any

from src.domain.errors import EventWriteFailure
from src.domain.resolver import Resolution
from src.models.events import NormalizedEvent
from src.observability import incr_metric, log_event
from src.store import TrackingStore


def build_event_record(event: NormalizedEvent, resolution: Resolution) -> dict[str, Any]:
    message = resolution.message or {}
    raw: dict[str, Any] = dict(event.payload)
    raw["resend_event_id"] = event.provider_event_id
    if event.external_message_id:
        raw["resend_email_id"] = event.external_message_id
    if not resolution.resolved:
        raw["needs_linking"] = True
    if event.clicked_link:
        raw["clicked_link"] = event.clicked_link
    if event.user_agent:
        raw["user_agent"] = event.user_agent

    # Tags are advisory; the resolved message row wins where both exist.
    campaign_id = message.get("campaign_id") or event.tag_campaign_id
    user_id = message.get("recipient_id") or event.tag_user_id
    return {
        "email_id": resolution.message_id,
        "event_type": event.stored_type,
        "raw": raw,
        "occurred_at": event.occurred_at.isoformat(),
        "campaign_id": campaign_id,
        "recipient": event.recipient_address,
        "user_id": user_id,
        "needs_linking": not resolution.resolved,
    }


async def write_event(
    store: TrackingStore,
    event: NormalizedEvent,
    resolution: Resolution,
    *,
    request_id: str | None = None,
) -> dict[str, Any]:
    record = build_event_record(event, resolution)
    try:
        row = await store.insert_event(record)
    except Exception as exc:
        incr_metric("webhook.events.write_failed", event_type=event.stored_type)
        log_event(
            "webhook_event_write_failed",
            level=logging.ERROR,
            request_id=request_id,
            event_type=event.stored_type,
            external_message_id=event.external_message_id,
            error=str(exc),
        )
        raise EventWriteFailure(str(exc)) from exc
    incr_metric("webhook.events.persisted", event_type=event.stored_type, linked=resolution.resolved)
    log_event(
        "webhook_event_persisted",
        request_id=request_id,
        event_id=row.get("id"),
        event_type=event.stored_type,
        message_id=resolution.message_id,
        needs_linking=not resolution.resolved,
        occurred_at=event.occurred_at,
    )
    return row
