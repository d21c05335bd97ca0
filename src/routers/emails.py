from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status

from src.domain.dedupe import raw_payload
from src.models.emails import TimelineEvent, TimelineResponse
from src.observability import log_event
from src.store import TrackingStore, get_tracking_store


router = APIRouter(prefix="/api/emails", tags=["emails"])

_DEFAULT_DETAILS = {
    "sent": "Email successfully sent",
    "delivered": "Email delivered to recipient",
    "opened": "Email opened by recipient",
    "clicked": "Recipient clicked link in email",
    "bounced": "Email bounced - delivery failed",
    "complained": "Recipient marked email as spam",
    "unsubscribed": "Recipient unsubscribed",
}
_INVALID_IDS = {"", "undefined", "null"}


def describe_event(event_type: str, raw: dict[str, Any]) -> str:
    if event_type == "clicked" and raw.get("clicked_link"):
        return f"Recipient clicked link: {raw['clicked_link']}"
    if event_type == "opened" and raw.get("user_agent"):
        return f"Email opened by recipient ({raw['user_agent']})"
    return _DEFAULT_DETAILS.get(event_type, f"Email {event_type}")


@router.get("/{email_id}/events", response_model=TimelineResponse)
async def get_email_timeline(
    email_id: str,
    request: Request,
    store: TrackingStore = Depends(get_tracking_store),
):
    if email_id.strip() in _INVALID_IDS:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid email ID")

    try:
        rows = await store.list_events_for_message(email_id)
    except Exception as exc:
        log_event(
            "email_timeline_failed",
            level=logging.ERROR,
            request_id=getattr(request.state, "request_id", None),
            email_id=email_id,
            error=str(exc),
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to fetch email events",
        ) from exc

    events = []
    for row in rows:
        event_type = str(row.get("event_type") or "unknown")
        events.append(
            TimelineEvent(
                id=str(row["id"]),
                type=event_type,
                timestamp=row.get("occurred_at") or row.get("created_at"),
                details=describe_event(event_type, raw_payload(row)),
            )
        )
    return TimelineResponse(data=events)
