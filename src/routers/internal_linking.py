from __future__ import annotations

import hmac
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from src.auth import OperatorContext, get_current_operator
from src.config import settings
from src.domain.linking import relink_orphaned_events
from src.domain.reconciler import StatusReconciler
from src.domain.resolver import MessageResolver
from src.domain.retry import parse_backoff_ms
from src.models.linking import RelinkRunRequest, RelinkRunResponse
from src.observability import incr_metric, log_event, persist_metrics_snapshot
from src.store import TrackingStore, get_tracking_store


router = APIRouter(prefix="/api/internal/events", tags=["internal-linking"])


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


async def _run_relink(
    data: RelinkRunRequest,
    store: TrackingStore,
    request_id: str | None = None,
) -> RelinkRunResponse:
    started_at = _now_utc()
    resolver = MessageResolver(
        store,
        retry_delay_seconds=0.0,
        campaign_scan_limit=max(1, settings.resolver_campaign_scan_limit),
        relink_delays=parse_backoff_ms(settings.relink_backoff_ms),
        relink_max_total_seconds=max(0, settings.relink_max_total_ms) / 1000.0,
        request_id=request_id,
    )
    reconciler = StatusReconciler(store, max_attempts=settings.reconcile_max_attempts, request_id=request_id)
    stats = await relink_orphaned_events(
        store,
        resolver,
        reconciler,
        limit=data.limit,
        dry_run=data.dry_run,
        request_id=request_id,
    )
    return RelinkRunResponse(
        dry_run=data.dry_run,
        started_at=started_at,
        finished_at=_now_utc(),
        events_scanned=stats.events_scanned,
        external_ids_scanned=stats.external_ids_scanned,
        events_linked=stats.events_linked,
        messages_updated=stats.messages_updated,
        unresolved=stats.unresolved,
        errors=stats.errors,
    )


@router.post("/relink", response_model=RelinkRunResponse)
async def relink_unlinked_events(
    data: RelinkRunRequest,
    request: Request,
    store: TrackingStore = Depends(get_tracking_store),
    _ctx: OperatorContext = Depends(get_current_operator),
):
    request_id = getattr(request.state, "request_id", None)
    return await _run_relink(data, store, request_id=request_id)


@router.post("/relink-scheduled", response_model=RelinkRunResponse)
async def relink_unlinked_events_scheduled(
    data: RelinkRunRequest,
    request: Request,
    x_internal_scheduler_secret: str | None = Header(default=None),
    store: TrackingStore = Depends(get_tracking_store),
):
    request_id = getattr(request.state, "request_id", None)
    configured_secret = settings.internal_scheduler_secret
    if not configured_secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="internal scheduler secret is not configured",
        )
    if not x_internal_scheduler_secret or not hmac.compare_digest(
        x_internal_scheduler_secret,
        configured_secret,
    ):
        incr_metric("relink.scheduled.auth_failed")
        log_event("relink_scheduled_auth_failed", request_id=request_id)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="invalid scheduler secret",
        )
    incr_metric("relink.scheduled.auth_succeeded")
    response = await _run_relink(data, store, request_id=request_id)
    if not data.dry_run:
        persist_metrics_snapshot(
            supabase_client=store.client,
            source="relink_scheduled",
            request_id=request_id,
            reset_after_persist=False,
            export_url=settings.observability_export_url,
            export_bearer_token=settings.observability_export_bearer_token,
            export_timeout_seconds=settings.observability_export_timeout_seconds,
        )
    return response
