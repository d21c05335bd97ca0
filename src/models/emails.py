from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class TimelineEvent(BaseModel):
    id: str
    type: str
    timestamp: datetime | None = None
    details: str


class TimelineResponse(BaseModel):
    data: list[TimelineEvent]
    error: str | None = None
