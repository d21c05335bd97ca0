from __future__ import annotations

import json
from datetime import datetime, timedelta
from typing import Any, Callable

from src.domain.normalization import parse_timestamp
from src.models.events import NormalizedEvent


EventRow = dict[str, Any]
Matcher = Callable[[NormalizedEvent, str | None, EventRow], bool]


def dedupe_window(occurred_at: datetime, window_seconds: float) -> tuple[datetime, datetime]:
    delta = timedelta(seconds=max(0.0, window_seconds))
    return occurred_at - delta, occurred_at + delta


def raw_payload(row: EventRow) -> dict[str, Any]:
    raw = row.get("raw")
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            return {}
    return raw if isinstance(raw, dict) else {}


def stored_external_id(row: EventRow) -> str | None:
    raw = raw_payload(row)
    data = raw.get("data") if isinstance(raw.get("data"), dict) else {}
    for value in (raw.get("resend_email_id"), raw.get("email_id"), data.get("email_id")):
        if value:
            return str(value)
    return None


def within_window(candidate: NormalizedEvent, row: EventRow, window_seconds: float) -> bool:
    occurred = parse_timestamp(row.get("occurred_at") or row.get("created_at"))
    if occurred is None:
        return False
    return abs((occurred - candidate.occurred_at).total_seconds()) <= window_seconds


def match_by_message_id(candidate: NormalizedEvent, message_id: str | None, row: EventRow) -> bool:
    return bool(message_id) and row.get("email_id") == message_id


def match_by_external_id(candidate: NormalizedEvent, message_id: str | None, row: EventRow) -> bool:
    external_id = candidate.external_message_id
    return bool(external_id) and stored_external_id(row) == external_id


def match_by_campaign_recipient(candidate: NormalizedEvent, message_id: str | None, row: EventRow) -> bool:
    # Weakest signal: only consulted when no id could be resolved at all.
    if message_id or candidate.external_message_id:
        return False
    campaign_id = candidate.tag_campaign_id
    recipient = candidate.recipient_address
    if not campaign_id or not recipient:
        return False
    return row.get("campaign_id") == campaign_id and row.get("recipient") == recipient


MATCHERS: tuple[tuple[str, Matcher], ...] = (
    ("by_email_id", match_by_message_id),
    ("by_resend_id", match_by_external_id),
    ("by_campaign_recipient", match_by_campaign_recipient),
)


def strategy_filters(candidate: NormalizedEvent, message_id: str | None) -> list[tuple[str, Matcher, dict[str, str]]]:
    """Store-side column filters for each strategy that can apply, in priority order.

    The candidate row limit applies per strategy, after these filters.
    """
    filters: list[tuple[str, Matcher, dict[str, str]]] = []
    if message_id:
        filters.append(("by_email_id", match_by_message_id, {"email_id": message_id}))
    if candidate.external_message_id:
        filters.append(
            ("by_resend_id", match_by_external_id, {"raw->>resend_email_id": candidate.external_message_id})
        )
    if not message_id and not candidate.external_message_id and candidate.tag_campaign_id and candidate.recipient_address:
        filters.append(
            (
                "by_campaign_recipient",
                match_by_campaign_recipient,
                {"campaign_id": candidate.tag_campaign_id, "recipient": candidate.recipient_address},
            )
        )
    return filters


def find_duplicate(
    candidate: NormalizedEvent,
    message_id: str | None,
    rows: list[EventRow],
    *,
    window_seconds: float,
    matchers: tuple[tuple[str, Matcher], ...] = MATCHERS,
) -> tuple[EventRow, str] | None:
    """First matching prior event and the strategy that found it.

    Strategies run in order over the whole candidate set; the first
    strategy with any hit wins.
    """
    eligible = [
        row
        for row in rows
        if row.get("event_type") == candidate.stored_type and within_window(candidate, row, window_seconds)
    ]
    for name, matcher in matchers:
        for row in eligible:
            if matcher(candidate, message_id, row):
                return row, name
    return None
