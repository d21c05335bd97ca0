from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status

from src.domain.normalization import effective_status, is_delivered
from src.models.stats import CampaignStats, CampaignStatsResponse
from src.observability import log_event
from src.store import TrackingStore, get_tracking_store


router = APIRouter(prefix="/api/stats", tags=["stats"])


def _rate(part: int, whole: int) -> float:
    if whole <= 0:
        return 0
    return round(part / whole * 100, 2)


def compute_campaign_stats(
    campaign: dict[str, Any],
    messages: list[dict[str, Any]],
    events: list[dict[str, Any]],
) -> CampaignStats:
    """Engagement totals; opens and clicks count unique messages from events and row timestamps."""
    opened_ids = {str(m["id"]) for m in messages if m.get("opened_at")}
    clicked_ids = {str(m["id"]) for m in messages if effective_status(m) == "clicked"}
    for event in events:
        email_id = event.get("email_id")
        if not email_id:
            continue
        if event.get("event_type") == "opened":
            opened_ids.add(str(email_id))
        elif event.get("event_type") == "clicked":
            clicked_ids.add(str(email_id))

    total_sent = len(messages)
    total_delivered = sum(1 for m in messages if is_delivered(m))
    total_bounced = sum(1 for m in messages if effective_status(m) == "bounced")
    total_failed = sum(1 for m in messages if effective_status(m) == "failed")
    return CampaignStats(
        campaign_id=str(campaign["id"]),
        campaign_name=campaign.get("name"),
        total_sent=total_sent,
        total_delivered=total_delivered,
        total_opened=len(opened_ids),
        total_clicked=len(clicked_ids),
        total_bounced=total_bounced,
        total_failed=total_failed,
        open_rate=_rate(len(opened_ids), total_delivered),
        click_rate=_rate(len(clicked_ids), total_delivered),
        delivery_rate=_rate(total_delivered, total_sent),
        bounce_rate=_rate(total_bounced, total_sent),
    )


@router.get("/{campaign_id}", response_model=CampaignStatsResponse)
async def get_campaign_stats(
    campaign_id: str,
    request: Request,
    store: TrackingStore = Depends(get_tracking_store),
):
    campaign = await store.get_campaign(campaign_id)
    if not campaign:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Campaign not found")

    messages = await store.list_campaign_messages(campaign_id)
    events = await store.list_campaign_events(campaign_id, [str(m["id"]) for m in messages])
    stats = compute_campaign_stats(campaign, messages, events)
    log_event(
        "campaign_stats_computed",
        request_id=getattr(request.state, "request_id", None),
        campaign_id=campaign_id,
        total_sent=stats.total_sent,
        total_opened=stats.total_opened,
        total_clicked=stats.total_clicked,
    )
    return CampaignStatsResponse(data=stats)
