from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class EmailEventType(str, Enum):
    SENT = "sent"
    DELIVERED = "delivered"
    OPENED = "opened"
    CLICKED = "clicked"
    BOUNCED = "bounced"
    COMPLAINED = "complained"
    UNSUBSCRIBED = "unsubscribed"
    UNKNOWN = "unknown"


class NormalizedEvent(BaseModel):
    """Provider-independent view of one webhook call.

    ``event_type`` is decoded once; ``stored_type`` is what lands in the
    ``email_events.event_type`` column (the raw provider suffix when the
    type is unknown).
    """

    event_type: EmailEventType
    stored_type: str
    provider_event_type: str
    external_message_id: str | None = None
    recipient_address: str | None = None
    occurred_at: datetime
    occurred_at_from_payload: bool = True
    tag_user_id: str | None = None
    tag_campaign_id: str | None = None
    provider_event_id: str | None = None
    clicked_link: str | None = None
    user_agent: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_known(self) -> bool:
        return self.event_type is not EmailEventType.UNKNOWN
