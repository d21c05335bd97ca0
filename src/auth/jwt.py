from datetime import datetime, timedelta, timezone
from jose import jwt, JWTError
from src.config import settings


def create_operator_token(operator_id: str) -> str:
    """Create a signed JWT for an operator session."""
    expire = datetime.now(timezone.utc) + timedelta(minutes=settings.jwt_expiration_minutes)
    payload = {
        "sub": operator_id,
        "type": "operator",
        "exp": expire,
        "iat": datetime.now(timezone.utc),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_operator_token(token: str) -> dict | None:
    """Decode and validate an operator JWT. Returns payload or None if invalid."""
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
        if payload.get("type") != "operator":
            return None
        return payload
    except JWTError:
        return None
