from fastapi import Depends, Header, HTTPException, status
from src.auth.context import OperatorContext
from src.auth.jwt import decode_operator_token
from src.store import TrackingStore, get_tracking_store


def _extract_bearer_token(authorization: str | None) -> str | None:
    """Extract token from 'Bearer <token>' header."""
    if not authorization:
        return None
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1]


async def get_current_operator(
    authorization: str | None = Header(None),
    store: TrackingStore = Depends(get_tracking_store),
) -> OperatorContext:
    """
    Operator JWT auth. Validates token type is 'operator' and the operator still exists.
    """
    token = _extract_bearer_token(authorization)
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authorization header",
        )

    payload = decode_operator_token(token)
    if not payload:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired operator token",
        )

    operator = await store.get_operator(payload["sub"])
    if not operator:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Operator not found",
        )

    return OperatorContext(
        operator_id=str(operator["id"]),
        email=operator["email"],
    )
