from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

from src.domain.errors import ReconciliationWriteFailure
from src.models.events import EmailEventType
from src.observability import incr_metric, log_event
from src.store import TrackingStore


ReconcileStatus = Literal["updated", "unchanged", "conflict", "missing", "skipped"]

# Rank order for positive progress; "bounced" sits outside it as a terminal state.
STATUS_RANK: dict[str, int] = {
    "pending": 0,
    "queued": 0,
    "failed": 0,
    "sent": 1,
    "delivered": 2,
    "clicked": 3,
}
TERMINAL_STATUS = "bounced"

_TIMESTAMP_COLUMN: dict[EmailEventType, str] = {
    EmailEventType.SENT: "sent_at",
    EmailEventType.DELIVERED: "delivered_at",
    EmailEventType.OPENED: "opened_at",
    EmailEventType.CLICKED: "clicked_at",
}
_TARGET_STATUS: dict[EmailEventType, str] = {
    EmailEventType.SENT: "sent",
    EmailEventType.DELIVERED: "delivered",
    EmailEventType.CLICKED: "clicked",
    EmailEventType.BOUNCED: TERMINAL_STATUS,
    EmailEventType.COMPLAINED: TERMINAL_STATUS,
    EmailEventType.UNSUBSCRIBED: TERMINAL_STATUS,
}


@dataclass
class StatusPlan:
    fields: dict[str, Any]
    expected_status: str | None = None
    guard_status: bool = False
    null_columns: tuple[str, ...] = ()


@dataclass
class ReconcileOutcome:
    status: ReconcileStatus
    fields: dict[str, Any] = field(default_factory=dict)

    @property
    def updated(self) -> bool:
        return self.status == "updated"


def status_rank(value: str | None) -> int:
    return STATUS_RANK.get(str(value or "pending").strip().lower(), 0)


def can_transition(current: str | None, target: str) -> bool:
    current_key = str(current or "pending").strip().lower()
    if current_key == TERMINAL_STATUS:
        return False
    if target == TERMINAL_STATUS:
        # Negative outcomes cannot overwrite an engagement that already happened.
        return status_rank(current_key) < STATUS_RANK["clicked"]
    return STATUS_RANK[target] > status_rank(current_key)


def plan_status_update(
    message: dict[str, Any],
    event_type: EmailEventType,
    occurred_at: datetime,
) -> StatusPlan | None:
    """Fields to write for ``event_type`` given the message's current row, or None."""
    fields: dict[str, Any] = {}
    null_columns: tuple[str, ...] = ()

    column = _TIMESTAMP_COLUMN.get(event_type)
    if column and not message.get(column):
        fields[column] = occurred_at.isoformat()
        null_columns = (column,)

    target = _TARGET_STATUS.get(event_type)
    current = message.get("status")
    guard_status = False
    if target and can_transition(current, target):
        fields["status"] = target
        guard_status = True

    if not fields:
        return None
    return StatusPlan(
        fields=fields,
        expected_status=current,
        guard_status=guard_status,
        null_columns=null_columns,
    )


class StatusReconciler:
    def __init__(self, store: TrackingStore, *, max_attempts: int = 2, request_id: str | None = None) -> None:
        self.store = store
        self.max_attempts = max(1, max_attempts)
        self.request_id = request_id

    async def reconcile(
        self,
        message_id: str,
        event_type: EmailEventType,
        occurred_at: datetime,
    ) -> ReconcileOutcome:
        if event_type is EmailEventType.UNKNOWN:
            return ReconcileOutcome("skipped")
        try:
            for _ in range(self.max_attempts):
                current = await self.store.get_message(message_id)
                if current is None:
                    return ReconcileOutcome("missing")
                plan = plan_status_update(current, event_type, occurred_at)
                if plan is None:
                    log_event(
                        "webhook_status_unchanged",
                        request_id=self.request_id,
                        message_id=message_id,
                        event_type=event_type.value,
                        current_status=current.get("status"),
                    )
                    return ReconcileOutcome("unchanged")
                guard = {"expected_status": plan.expected_status} if plan.guard_status else {}
                rows = await self.store.update_message(
                    message_id,
                    plan.fields,
                    null_columns=plan.null_columns,
                    **guard,
                )
                if rows:
                    incr_metric("webhook.status.updated", event_type=event_type.value)
                    log_event(
                        "webhook_status_updated",
                        request_id=self.request_id,
                        message_id=message_id,
                        event_type=event_type.value,
                        previous_status=current.get("status"),
                        fields=plan.fields,
                    )
                    return ReconcileOutcome("updated", plan.fields)
                # Another delivery changed the row between read and write; re-read and re-plan.
                incr_metric("webhook.status.conflict", event_type=event_type.value)
        except Exception as exc:
            incr_metric("webhook.status.failed", event_type=event_type.value)
            raise ReconciliationWriteFailure(message_id, event_type.value, str(exc)) from exc

        log_event(
            "webhook_status_conflict",
            level=logging.WARNING,
            request_id=self.request_id,
            message_id=message_id,
            event_type=event_type.value,
            attempts=self.max_attempts,
        )
        return ReconcileOutcome("conflict")
