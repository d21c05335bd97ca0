from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable

from src.config import Settings
from src.domain.dedupe import dedupe_window, find_duplicate, strategy_filters
from src.domain.errors import InvalidSignature, ReconciliationWriteFailure
from src.domain.event_writer import write_event
from src.domain.linking import backfill_for_external_id
from src.domain.normalization import normalize_webhook_payload, parse_payload, verify_signature
from src.domain.reconciler import StatusReconciler
from src.domain.resolver import UNRESOLVED, MessageResolver, Resolution
from src.domain.retry import parse_backoff_ms
from src.models.events import NormalizedEvent
from src.observability import incr_metric, log_event
from src.store import TrackingStore


@dataclass
class IngestResult:
    event_id: str | None
    event_type: str
    duplicate: bool = False
    detection_method: str | None = None
    message_id: str | None = None
    resolution_strategy: str | None = None
    status_updated: bool = False
    reconciliation_error: str | None = None

    @property
    def linked(self) -> bool:
        return self.message_id is not None

    @property
    def message(self) -> str:
        if self.duplicate:
            return "Event already processed (duplicate)"
        if not self.linked:
            return "Event stored; message not yet linked"
        if self.reconciliation_error:
            return "Event stored; status update failed"
        return "Event processed successfully"


class WebhookPipeline:
    """Normalize, resolve, dedupe, persist and reconcile one provider webhook call."""

    def __init__(
        self,
        store: TrackingStore,
        *,
        signing_secret: str | None,
        require_signature: bool,
        dedupe_window_seconds: float,
        dedupe_candidate_limit: int,
        resolver: MessageResolver,
        reconciler: StatusReconciler,
        request_id: str | None = None,
    ) -> None:
        self.store = store
        self.signing_secret = signing_secret
        self.require_signature = require_signature
        self.dedupe_window_seconds = dedupe_window_seconds
        self.dedupe_candidate_limit = dedupe_candidate_limit
        self.resolver = resolver
        self.reconciler = reconciler
        self.request_id = request_id

    @classmethod
    def from_settings(
        cls,
        store: TrackingStore,
        settings: Settings,
        *,
        request_id: str | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> "WebhookPipeline":
        resolver = MessageResolver(
            store,
            retry_delay_seconds=max(0, settings.resolver_retry_delay_ms) / 1000.0,
            campaign_scan_limit=max(1, settings.resolver_campaign_scan_limit),
            relink_delays=parse_backoff_ms(settings.relink_backoff_ms),
            relink_max_total_seconds=max(0, settings.relink_max_total_ms) / 1000.0,
            sleep=sleep,
            request_id=request_id,
        )
        return cls(
            store,
            signing_secret=settings.resend_webhook_secret,
            require_signature=settings.resend_webhook_require_signature,
            dedupe_window_seconds=max(0.0, settings.dedupe_window_seconds),
            dedupe_candidate_limit=max(1, settings.dedupe_candidate_limit),
            resolver=resolver,
            reconciler=StatusReconciler(store, max_attempts=settings.reconcile_max_attempts, request_id=request_id),
            request_id=request_id,
        )

    def authenticate(self, raw_body: bytes, signature: str | None) -> bool:
        try:
            verified = verify_signature(
                raw_body,
                signature,
                self.signing_secret,
                require_signature=self.require_signature,
            )
        except InvalidSignature as exc:
            incr_metric("webhook.signature.rejected", reason=exc.reason)
            log_event(
                "webhook_signature_rejected",
                level=logging.WARNING,
                request_id=self.request_id,
                reason=exc.reason,
            )
            raise
        if verified:
            incr_metric("webhook.signature.verified")
        return verified

    async def ingest(self, raw_body: bytes, signature: str | None) -> IngestResult:
        self.authenticate(raw_body, signature)
        event = normalize_webhook_payload(parse_payload(raw_body))
        incr_metric("webhook.events.received", event_type=event.stored_type)
        log_event(
            "webhook_received",
            request_id=self.request_id,
            provider_event_type=event.provider_event_type,
            event_type=event.stored_type,
            external_message_id=event.external_message_id,
            has_campaign_tag=bool(event.tag_campaign_id),
            occurred_at=event.occurred_at,
            occurred_at_from_payload=event.occurred_at_from_payload,
        )

        resolution = await self._resolve(event)

        duplicate = await self._find_duplicate(event, resolution.message_id)
        if duplicate is not None:
            row, method = duplicate
            incr_metric("webhook.events.duplicate", event_type=event.stored_type, method=method)
            log_event(
                "webhook_duplicate_ignored",
                request_id=self.request_id,
                event_type=event.stored_type,
                existing_event_id=row.get("id"),
                detection_method=method,
                external_message_id=event.external_message_id,
            )
            return IngestResult(
                event_id=str(row.get("id")),
                event_type=event.stored_type,
                duplicate=True,
                detection_method=method,
                message_id=resolution.message_id,
            )

        row = await write_event(self.store, event, resolution, request_id=self.request_id)
        event_id = str(row.get("id"))

        if not resolution.resolved:
            resolution = await self._relink(event, event_id)

        result = IngestResult(
            event_id=event_id,
            event_type=event.stored_type,
            message_id=resolution.message_id,
            resolution_strategy=resolution.strategy,
        )
        if resolution.resolved:
            await self._reconcile(event, event_id, resolution, result)
        return result

    async def _resolve(self, event: NormalizedEvent) -> Resolution:
        try:
            return await self.resolver.resolve(event)
        except Exception as exc:
            incr_metric("webhook.resolver.failed")
            log_event(
                "webhook_resolution_failed",
                level=logging.WARNING,
                request_id=self.request_id,
                external_message_id=event.external_message_id,
                error=str(exc),
            )
            return UNRESOLVED

    async def _find_duplicate(self, event: NormalizedEvent, message_id: str | None) -> tuple[dict[str, Any], str] | None:
        start, end = dedupe_window(event.occurred_at, self.dedupe_window_seconds)
        for name, matcher, filters in strategy_filters(event, message_id):
            try:
                rows = await self.store.query_recent_events(
                    event.stored_type,
                    start,
                    end,
                    self.dedupe_candidate_limit,
                    filters=filters,
                )
            except Exception as exc:
                log_event(
                    "webhook_dedupe_lookup_failed",
                    level=logging.WARNING,
                    request_id=self.request_id,
                    event_type=event.stored_type,
                    strategy=name,
                    error=str(exc),
                )
                continue
            found = find_duplicate(
                event,
                message_id,
                rows,
                window_seconds=self.dedupe_window_seconds,
                matchers=((name, matcher),),
            )
            if found is not None:
                return found
        return None

    async def _relink(self, event: NormalizedEvent, event_id: str) -> Resolution:
        incr_metric("webhook.events.unresolved", event_type=event.stored_type)
        log_event(
            "webhook_message_unresolved",
            level=logging.WARNING,
            request_id=self.request_id,
            event_id=event_id,
            event_type=event.stored_type,
            external_message_id=event.external_message_id,
        )
        if not event.external_message_id and not (event.tag_campaign_id and event.recipient_address):
            return UNRESOLVED
        resolution = await self.resolver.relink(event)
        if not resolution.resolved:
            return UNRESOLVED
        try:
            await self.store.link_event(event_id, str(resolution.message_id))
        except Exception as exc:
            log_event(
                "webhook_event_link_failed",
                level=logging.WARNING,
                request_id=self.request_id,
                event_id=event_id,
                message_id=resolution.message_id,
                error=str(exc),
            )
            return UNRESOLVED
        incr_metric("webhook.events.relinked")
        return resolution

    async def _reconcile(
        self,
        event: NormalizedEvent,
        event_id: str,
        resolution: Resolution,
        result: IngestResult,
    ) -> None:
        message_id = str(resolution.message_id)
        # Orphans replay in occurrence order around the current event.
        await self._backfill(event, event_id, message_id, occurred_before=event.occurred_at)
        try:
            outcome = await self.reconciler.reconcile(message_id, event.event_type, event.occurred_at)
        except ReconciliationWriteFailure as exc:
            result.reconciliation_error = exc.error
            log_event(
                "webhook_status_update_failed",
                level=logging.ERROR,
                request_id=self.request_id,
                event_id=event_id,
                message_id=message_id,
                event_type=event.stored_type,
                error=exc.error,
            )
        else:
            result.status_updated = outcome.updated
        await self._backfill(event, event_id, message_id)

    async def _backfill(
        self,
        event: NormalizedEvent,
        event_id: str,
        message_id: str,
        occurred_before: datetime | None = None,
    ) -> None:
        if not event.external_message_id:
            return
        await backfill_for_external_id(
            self.store,
            self.reconciler,
            message_id=message_id,
            external_id=event.external_message_id,
            exclude_event_id=event_id,
            occurred_before=occurred_before,
            request_id=self.request_id,
        )
