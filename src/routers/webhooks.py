from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse

from src.auth import OperatorContext, get_current_operator
from src.config import settings
from src.domain.dedupe import raw_payload
from src.domain.errors import EventWriteFailure, InvalidSignature, MalformedPayload
from src.domain.pipeline import WebhookPipeline
from src.models.events import EmailEventType
from src.models.webhooks import (
    IngestionSummary,
    StoredEventItem,
    WebhookAcceptedResponse,
    WebhookFailureResponse,
    WebhookHealthResponse,
)
from src.observability import incr_metric, ingestion_summary, log_event
from src.store import TrackingStore, get_tracking_store


router = APIRouter(prefix="/api/resend", tags=["webhooks"])

HANDLED_EVENT_TYPES = [f"email.{member.value}" for member in EmailEventType if member is not EmailEventType.UNKNOWN]


def _request_id(request: Request | None) -> str | None:
    if not request:
        return None
    return getattr(getattr(request, "state", None), "request_id", None)


def _event_item(row: dict[str, Any]) -> StoredEventItem:
    return StoredEventItem(
        id=str(row.get("id")),
        email_id=row.get("email_id"),
        event_type=str(row.get("event_type") or "unknown"),
        occurred_at=row.get("occurred_at"),
        campaign_id=row.get("campaign_id"),
        recipient=row.get("recipient"),
        user_id=row.get("user_id"),
        needs_linking=bool(row.get("needs_linking")),
        created_at=row.get("created_at"),
        raw=raw_payload(row) or None,
    )


@router.post("/webhook", response_model=WebhookAcceptedResponse, responses={500: {"model": WebhookFailureResponse}})
async def ingest_resend_webhook(
    request: Request,
    store: TrackingStore = Depends(get_tracking_store),
):
    req_id = _request_id(request)
    raw_body = await request.body()
    signature = request.headers.get(settings.resend_webhook_signature_header)
    pipeline = WebhookPipeline.from_settings(store, settings, request_id=req_id)

    try:
        result = await pipeline.ingest(raw_body, signature)
    except InvalidSignature as exc:
        detail = "Missing webhook signature" if exc.reason == "missing_signature" else "Invalid webhook signature"
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail) from exc
    except MalformedPayload as exc:
        incr_metric("webhook.events.malformed")
        log_event("webhook_malformed_payload", level=logging.WARNING, request_id=req_id, error=str(exc))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON payload") from exc
    except EventWriteFailure as exc:
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Failed to save event", "details": str(exc)},
        )

    log_event(
        "webhook_processed",
        request_id=req_id,
        event_id=result.event_id,
        event_type=result.event_type,
        duplicate=result.duplicate,
        linked=result.linked,
        resolution_strategy=result.resolution_strategy,
        status_updated=result.status_updated,
    )
    return WebhookAcceptedResponse(
        eventId=result.event_id,
        message=result.message,
        duplicate=result.duplicate,
        linked=result.linked,
        status_updated=result.status_updated,
    )


@router.get("/webhook", response_model=WebhookHealthResponse)
async def webhook_health(
    request: Request,
    store: TrackingStore = Depends(get_tracking_store),
):
    try:
        recent = await store.list_recent_events(10)
    except Exception as exc:
        log_event(
            "webhook_health_recent_events_failed",
            level=logging.WARNING,
            request_id=_request_id(request),
            error=str(exc),
        )
        recent = []
    return WebhookHealthResponse(
        signature_required=bool(settings.resend_webhook_secret),
        events=HANDLED_EVENT_TYPES,
        recentEvents=[_event_item(row) for row in recent],
        summary=IngestionSummary(**ingestion_summary()),
    )


@router.get("/webhook/events", response_model=list[StoredEventItem])
async def list_stored_events(
    request: Request,
    event_type: str | None = None,
    campaign_id: str | None = None,
    unlinked_only: bool = False,
    limit: int = 50,
    offset: int = 0,
    store: TrackingStore = Depends(get_tracking_store),
    _ctx: OperatorContext = Depends(get_current_operator),
):
    if event_type:
        event_type = event_type.strip().lower().removeprefix("email.")
    bounded_limit = max(1, min(limit, 200))
    bounded_offset = max(0, offset)

    rows = await store.list_recent_events(
        bounded_offset + bounded_limit,
        event_type=event_type,
        campaign_id=campaign_id,
        unlinked_only=unlinked_only,
    )
    result_rows = rows[bounded_offset:bounded_offset + bounded_limit]
    log_event(
        "webhook_events_listed",
        request_id=_request_id(request),
        event_type=event_type,
        campaign_id=campaign_id,
        unlinked_only=unlinked_only,
        returned=len(result_rows),
        limit=bounded_limit,
        offset=bounded_offset,
    )
    return [_event_item(row) for row in result_rows]
