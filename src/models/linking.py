from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class RelinkRunRequest(BaseModel):
    dry_run: bool = True
    limit: int = Field(default=200, ge=1, le=2000)


class RelinkRunResponse(BaseModel):
    dry_run: bool
    started_at: datetime
    finished_at: datetime
    events_scanned: int
    external_ids_scanned: int
    events_linked: int
    messages_updated: int
    unresolved: int
    errors: list[str] = []
