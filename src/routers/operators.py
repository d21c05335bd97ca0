import logging

import bcrypt as bcrypt_lib
from fastapi import APIRouter, Depends, HTTPException, Request, status
from src.auth import OperatorContext, create_operator_token, get_current_operator
from src.config import settings
from src.models.auth import (
    MetricsSnapshotFlushRequest,
    MetricsSnapshotFlushResponse,
    MetricsSnapshotRecord,
    OperatorLoginRequest,
    OperatorLoginResponse,
    OperatorMeResponse,
)
from src.observability import metrics_snapshot, persist_metrics_snapshot
from src.store import TrackingStore, get_tracking_store

logger = logging.getLogger(__name__)


def hash_password(password: str) -> str:
    """Hash password using bcrypt."""
    return bcrypt_lib.hashpw(password.encode(), bcrypt_lib.gensalt()).decode()


def verify_password(password: str, password_hash: str) -> bool:
    """Verify password against hash."""
    return bcrypt_lib.checkpw(password.encode(), password_hash.encode())


router = APIRouter(prefix="/api/operators", tags=["operators"])


# --- Login (no auth required) ---

@router.post("/login", response_model=OperatorLoginResponse)
async def operator_login(
    data: OperatorLoginRequest,
    store: TrackingStore = Depends(get_tracking_store),
):
    """Login as operator, returns JWT with type 'operator'."""
    try:
        operator = await store.find_operator_by_email(data.email)
    except Exception as e:
        logger.error(f"Database error during operator login: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Database connection failed: {type(e).__name__}"
        )

    if not operator or not operator.get("password_hash"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password"
        )

    try:
        password_ok = verify_password(data.password, operator["password_hash"])
    except ValueError as e:
        logger.error(f"Password verification error: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Password verification failed: {type(e).__name__}"
        )
    if not password_ok:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password"
        )

    return OperatorLoginResponse(access_token=create_operator_token(operator_id=str(operator["id"])))


@router.get("/me", response_model=OperatorMeResponse)
async def get_me(ctx: OperatorContext = Depends(get_current_operator)):
    """Get current operator info."""
    return OperatorMeResponse(
        operator_id=ctx.operator_id,
        email=ctx.email,
    )


# --- Observability ---

@router.get("/observability/metrics-snapshots", response_model=list[MetricsSnapshotRecord])
async def list_metrics_snapshots(
    limit: int = 50,
    offset: int = 0,
    store: TrackingStore = Depends(get_tracking_store),
    ctx: OperatorContext = Depends(get_current_operator),
):
    bounded_limit = max(1, min(limit, 200))
    bounded_offset = max(0, offset)
    rows = await store.list_metric_snapshots()
    rows = sorted(rows, key=lambda row: row.get("created_at") or "", reverse=True)
    return rows[bounded_offset:bounded_offset + bounded_limit]


@router.post("/observability/metrics-snapshots/flush", response_model=MetricsSnapshotFlushResponse)
async def flush_metrics_snapshot(
    data: MetricsSnapshotFlushRequest,
    request: Request,
    store: TrackingStore = Depends(get_tracking_store),
    ctx: OperatorContext = Depends(get_current_operator),
):
    counter_count = len(metrics_snapshot())
    persisted = persist_metrics_snapshot(
        supabase_client=store.client,
        source=data.source,
        request_id=getattr(request.state, "request_id", None),
        reset_after_persist=data.reset_after_persist,
        export_url=settings.observability_export_url,
        export_bearer_token=settings.observability_export_bearer_token,
        export_timeout_seconds=settings.observability_export_timeout_seconds,
    )
    return MetricsSnapshotFlushResponse(
        persisted=persisted,
        source=data.source,
        counter_count=counter_count,
    )
