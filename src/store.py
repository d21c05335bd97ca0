from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi.concurrency import run_in_threadpool

from src.db import get_supabase
from src.observability import SNAPSHOT_TABLE


MESSAGE_FIELDS = "id, resend_email_id, campaign_id, recipient_id, status, sent_at, delivered_at, opened_at, clicked_at, created_at"
EVENT_FIELDS = "id, email_id, event_type, raw, occurred_at, campaign_id, recipient, user_id, needs_linking, created_at"

_UNSET = object()


class TrackingStore:
    """Async facade over the Supabase tables the tracking pipeline touches.

    supabase-py is synchronous, so each query runs in the threadpool.
    """

    def __init__(self, client: Any) -> None:
        self.client = client

    async def _rows(self, query: Any) -> list[dict[str, Any]]:
        result = await run_in_threadpool(query.execute)
        return result.data or []

    # --- messages ---

    async def find_message_by_external_id(self, external_id: str) -> dict[str, Any] | None:
        rows = await self._rows(
            self.client.table("emails").select(MESSAGE_FIELDS).eq("resend_email_id", external_id).limit(1)
        )
        return rows[0] if rows else None

    async def find_messages_by_campaign(self, campaign_id: str, recent_limit: int) -> list[dict[str, Any]]:
        return await self._rows(
            self.client.table("emails")
            .select(f"{MESSAGE_FIELDS}, recipient:recipients(email)")
            .eq("campaign_id", campaign_id)
            .order("created_at", desc=True)
            .limit(recent_limit)
        )

    async def get_message(self, message_id: str) -> dict[str, Any] | None:
        rows = await self._rows(self.client.table("emails").select(MESSAGE_FIELDS).eq("id", message_id).limit(1))
        return rows[0] if rows else None

    async def update_message(
        self,
        message_id: str,
        fields: dict[str, Any],
        *,
        expected_status: Any = _UNSET,
        null_columns: tuple[str, ...] = (),
    ) -> list[dict[str, Any]]:
        """Conditional update; returns the updated rows (empty when a guard did not hold)."""
        query = self.client.table("emails").update(fields).eq("id", message_id)
        if expected_status is not _UNSET:
            if expected_status is None:
                query = query.is_("status", "null")
            else:
                query = query.eq("status", expected_status)
        for column in null_columns:
            query = query.is_(column, "null")
        return await self._rows(query)

    async def list_campaign_messages(self, campaign_id: str) -> list[dict[str, Any]]:
        return await self._rows(self.client.table("emails").select(MESSAGE_FIELDS).eq("campaign_id", campaign_id))

    async def get_campaign(self, campaign_id: str) -> dict[str, Any] | None:
        rows = await self._rows(self.client.table("campaigns").select("id, name").eq("id", campaign_id).limit(1))
        return rows[0] if rows else None

    # --- events ---

    async def insert_event(self, record: dict[str, Any]) -> dict[str, Any]:
        rows = await self._rows(self.client.table("email_events").insert(record))
        if not rows:
            raise RuntimeError("insert returned no row")
        return rows[0]

    async def query_recent_events(
        self,
        event_type: str,
        window_start: datetime,
        window_end: datetime,
        limit: int,
        filters: dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        query = (
            self.client.table("email_events")
            .select(EVENT_FIELDS)
            .eq("event_type", event_type)
            .gte("occurred_at", window_start.isoformat())
            .lte("occurred_at", window_end.isoformat())
        )
        for column, value in (filters or {}).items():
            query = query.eq(column, value)
        return await self._rows(query.order("occurred_at", desc=True).limit(limit))

    async def find_unlinked_events(self, limit: int, external_id: str | None = None) -> list[dict[str, Any]]:
        query = (
            self.client.table("email_events")
            .select(EVENT_FIELDS)
            .eq("needs_linking", True)
            .is_("email_id", "null")
        )
        if external_id:
            query = query.eq("raw->>resend_email_id", external_id)
        return await self._rows(query.order("occurred_at").limit(limit))

    async def link_event(self, event_id: str, message_id: str) -> bool:
        rows = await self._rows(
            self.client.table("email_events")
            .update({"email_id": message_id, "needs_linking": False})
            .eq("id", event_id)
            .is_("email_id", "null")
        )
        return bool(rows)

    async def list_events_for_message(self, message_id: str) -> list[dict[str, Any]]:
        return await self._rows(
            self.client.table("email_events").select(EVENT_FIELDS).eq("email_id", message_id).order("occurred_at")
        )

    async def list_campaign_events(self, campaign_id: str, message_ids: list[str]) -> list[dict[str, Any]]:
        rows = await self._rows(
            self.client.table("email_events").select("id, event_type, email_id, campaign_id").eq("campaign_id", campaign_id)
        )
        if message_ids:
            rows += await self._rows(
                self.client.table("email_events")
                .select("id, event_type, email_id, campaign_id")
                .in_("email_id", message_ids)
            )
        unique: dict[str, dict[str, Any]] = {}
        for row in rows:
            unique.setdefault(str(row.get("id")), row)
        return list(unique.values())

    async def list_recent_events(
        self,
        limit: int,
        *,
        event_type: str | None = None,
        campaign_id: str | None = None,
        unlinked_only: bool = False,
    ) -> list[dict[str, Any]]:
        query = self.client.table("email_events").select(EVENT_FIELDS)
        if event_type:
            query = query.eq("event_type", event_type)
        if campaign_id:
            query = query.eq("campaign_id", campaign_id)
        if unlinked_only:
            query = query.eq("needs_linking", True)
        return await self._rows(query.order("occurred_at", desc=True).limit(limit))

    # --- operators ---

    async def find_operator_by_email(self, email: str) -> dict[str, Any] | None:
        rows = await self._rows(
            self.client.table("operators").select("id, email, password_hash").eq("email", email).limit(1)
        )
        return rows[0] if rows else None

    async def get_operator(self, operator_id: str) -> dict[str, Any] | None:
        rows = await self._rows(self.client.table("operators").select("id, email").eq("id", operator_id).limit(1))
        return rows[0] if rows else None

    async def list_metric_snapshots(self) -> list[dict[str, Any]]:
        return await self._rows(
            self.client.table(SNAPSHOT_TABLE).select("id, source, request_id, counters, created_at")
        )


def get_tracking_store() -> TrackingStore:
    return TrackingStore(get_supabase())
