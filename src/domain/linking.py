from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from src.domain.dedupe import stored_external_id
from src.domain.errors import ReconciliationWriteFailure
from src.domain.normalization import normalize_event_type, parse_timestamp
from src.domain.reconciler import StatusReconciler
from src.domain.resolver import MessageResolver
from src.observability import incr_metric, log_event
from src.store import TrackingStore


@dataclass
class RelinkStats:
    events_scanned: int = 0
    external_ids_scanned: int = 0
    events_linked: int = 0
    messages_updated: int = 0
    unresolved: int = 0
    errors: list[str] = field(default_factory=list)


def _occurred_at(row: dict[str, Any]) -> datetime:
    return parse_timestamp(row.get("occurred_at") or row.get("created_at")) or datetime.min.replace(tzinfo=timezone.utc)


async def link_and_replay(
    store: TrackingStore,
    reconciler: StatusReconciler,
    message_id: str,
    rows: list[dict[str, Any]],
    *,
    stats: RelinkStats,
    request_id: str | None = None,
) -> None:
    """Attach orphaned events to ``message_id`` and apply their status effects oldest first."""
    for row in sorted(rows, key=_occurred_at):
        event_id = str(row["id"])
        if not await store.link_event(event_id, message_id):
            continue
        stats.events_linked += 1
        incr_metric("webhook.events.relinked")
        event_type, _ = normalize_event_type(row.get("event_type"))
        try:
            outcome = await reconciler.reconcile(message_id, event_type, _occurred_at(row))
        except ReconciliationWriteFailure as exc:
            stats.errors.append(f"{event_id}: {exc}")
            log_event(
                "webhook_backfill_status_failed",
                level=logging.WARNING,
                request_id=request_id,
                event_id=event_id,
                message_id=message_id,
                error=exc.error,
            )
            continue
        if outcome.updated:
            stats.messages_updated += 1


async def backfill_for_external_id(
    store: TrackingStore,
    reconciler: StatusReconciler,
    *,
    message_id: str,
    external_id: str,
    exclude_event_id: str | None = None,
    occurred_before: datetime | None = None,
    limit: int = 50,
    request_id: str | None = None,
) -> RelinkStats:
    """Opportunistic pass run whenever a message resolves for ``external_id``.

    With ``occurred_before`` only orphans at or before that time are taken.
    Never raises; failures are logged and reported in the stats.
    """
    stats = RelinkStats(external_ids_scanned=1)
    try:
        rows = await store.find_unlinked_events(limit, external_id=external_id)
        rows = [
            row
            for row in rows
            if str(row.get("id")) != str(exclude_event_id)
            and (occurred_before is None or _occurred_at(row) <= occurred_before)
        ]
        stats.events_scanned = len(rows)
        if rows:
            await link_and_replay(store, reconciler, message_id, rows, stats=stats, request_id=request_id)
    except Exception as exc:
        stats.errors.append(str(exc))
        log_event(
            "webhook_backfill_failed",
            level=logging.WARNING,
            request_id=request_id,
            external_message_id=external_id,
            error=str(exc),
        )
        return stats
    if stats.events_linked:
        log_event(
            "webhook_backfill_completed",
            request_id=request_id,
            external_message_id=external_id,
            message_id=message_id,
            events_linked=stats.events_linked,
            messages_updated=stats.messages_updated,
        )
    return stats


async def relink_orphaned_events(
    store: TrackingStore,
    resolver: MessageResolver,
    reconciler: StatusReconciler,
    *,
    limit: int,
    dry_run: bool = True,
    request_id: str | None = None,
) -> RelinkStats:
    """Batch job: resolve every unlinked event still waiting for its message."""
    stats = RelinkStats()
    rows = await store.find_unlinked_events(limit)
    stats.events_scanned = len(rows)

    groups: dict[tuple[str | None, str | None, str | None], list[dict[str, Any]]] = {}
    for row in rows:
        external_id = stored_external_id(row)
        key = (external_id, None, None) if external_id else (None, row.get("campaign_id"), row.get("recipient"))
        groups.setdefault(key, []).append(row)

    for (external_id, campaign_id, recipient), group in groups.items():
        stats.external_ids_scanned += 1
        if not campaign_id and not recipient:
            campaign_id = next((r.get("campaign_id") for r in group if r.get("campaign_id")), None)
            recipient = next((r.get("recipient") for r in group if r.get("recipient")), None)
        try:
            resolution = await resolver.lookup_once(
                external_id=external_id,
                campaign_id=campaign_id,
                recipient=recipient,
            )
        except Exception as exc:
            stats.errors.append(f"{external_id or campaign_id}: lookup failed: {exc}")
            continue
        if resolution is None:
            stats.unresolved += len(group)
            continue
        if dry_run:
            stats.events_linked += len(group)
            continue
        try:
            await link_and_replay(
                store,
                reconciler,
                str(resolution.message_id),
                group,
                stats=stats,
                request_id=request_id,
            )
        except Exception as exc:
            stats.errors.append(f"{external_id or campaign_id}: link failed: {exc}")

    incr_metric("webhook.relink.runs", dry_run=dry_run)
    log_event(
        "webhook_relink_completed",
        request_id=request_id,
        dry_run=dry_run,
        events_scanned=stats.events_scanned,
        events_linked=stats.events_linked,
        messages_updated=stats.messages_updated,
        unresolved=stats.unresolved,
        error_count=len(stats.errors),
    )
    return stats
