from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class WebhookAcceptedResponse(BaseModel):
    success: bool = True
    eventId: str | None = None
    message: str
    duplicate: bool = False
    linked: bool = False
    status_updated: bool = False


class WebhookFailureResponse(BaseModel):
    error: str
    details: str | None = None


class StoredEventItem(BaseModel):
    id: str
    email_id: str | None = None
    event_type: str
    occurred_at: datetime | None = None
    campaign_id: str | None = None
    recipient: str | None = None
    user_id: str | None = None
    needs_linking: bool = False
    created_at: datetime | None = None
    raw: dict[str, Any] | None = None


class IngestionSummary(BaseModel):
    received: int = 0
    persisted: int = 0
    duplicates: int = 0
    unresolved: int = 0
    relinked: int = 0
    signature_rejected: int = 0
    status_updates: int = 0
    status_update_failures: int = 0
    event_write_failures: int = 0
    duplicate_rate: float = 0.0
    unresolved_rate: float = 0.0


class WebhookHealthResponse(BaseModel):
    message: str = "Resend webhook endpoint is active"
    method: str = "POST"
    webhookUrl: str = "/api/resend/webhook"
    signature_required: bool
    events: list[str]
    recentEvents: list[StoredEventItem] = Field(default_factory=list)
    summary: IngestionSummary
