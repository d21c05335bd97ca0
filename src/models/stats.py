from __future__ import annotations

from pydantic import BaseModel


class CampaignStats(BaseModel):
    campaign_id: str
    campaign_name: str | None = None
    total_sent: int
    total_delivered: int
    total_opened: int
    total_clicked: int
    total_bounced: int
    total_failed: int
    open_rate: float
    click_rate: float
    delivery_rate: float
    bounce_rate: float


class CampaignStatsResponse(BaseModel):
    data: CampaignStats
    error: str | None = None
