from __future__ import annotations

import hashlib
import hmac
import json
from datetime import datetime, timezone
from typing import Any, Literal

from src.domain.errors import InvalidSignature, MalformedPayload
from src.models.events import EmailEventType, NormalizedEvent


EffectiveStatus = Literal["pending", "sent", "delivered", "opened", "clicked", "bounced", "failed"]

_PROVIDER_EVENT_TYPES: dict[str, EmailEventType] = {
    "email.sent": EmailEventType.SENT,
    "email.delivered": EmailEventType.DELIVERED,
    "email.opened": EmailEventType.OPENED,
    "email.clicked": EmailEventType.CLICKED,
    "email.bounced": EmailEventType.BOUNCED,
    "email.complained": EmailEventType.COMPLAINED,
    "email.unsubscribed": EmailEventType.UNSUBSCRIBED,
}


def normalize_event_type(value: str | None) -> tuple[EmailEventType, str]:
    """Map a provider type string to (enum member, stored type string)."""
    if not value:
        return EmailEventType.UNKNOWN, "unknown"
    key = str(value).strip().lower()
    mapped = _PROVIDER_EVENT_TYPES.get(key)
    if mapped is not None:
        return mapped, mapped.value
    suffix = key.removeprefix("email.") or "unknown"
    try:
        member = EmailEventType(suffix)
    except ValueError:
        return EmailEventType.UNKNOWN, suffix
    return member, member.value


def verify_signature(
    raw_body: bytes,
    signature_header: str | None,
    secret: str | None,
    *,
    require_signature: bool = False,
) -> bool:
    """Return True when the body was verified, False when verification was skipped.

    Raises InvalidSignature on mismatch, or on a missing header when
    ``require_signature`` is set.
    """
    if not secret:
        return False
    if not signature_header:
        if require_signature:
            raise InvalidSignature("missing_signature")
        return False
    provided = signature_header.strip()
    if provided.startswith("sha256="):
        provided = provided.split("=", 1)[1]
    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, provided):
        raise InvalidSignature("invalid_signature")
    return True


def parse_payload(raw_body: bytes) -> dict[str, Any]:
    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedPayload("Invalid JSON payload") from exc
    if not isinstance(payload, dict):
        raise MalformedPayload("Webhook payload must be a JSON object")
    return payload


def parse_timestamp(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if not text:
            return None
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _first_text(*values: Any) -> str | None:
    for value in values:
        if isinstance(value, list):
            value = value[0] if value else None
        if value is None:
            continue
        text = str(value).strip()
        if text:
            return text
    return None


def _extract_tags(payload: dict[str, Any], data: dict[str, Any]) -> dict[str, str]:
    raw_tags = data.get("tags") or payload.get("tags") or []
    tags: dict[str, str] = {}
    if isinstance(raw_tags, dict):
        for name, value in raw_tags.items():
            if value is not None:
                tags[str(name)] = str(value)
        return tags
    if isinstance(raw_tags, list):
        for tag in raw_tags:
            if not isinstance(tag, dict):
                continue
            name = tag.get("name")
            value = tag.get("value")
            if name and value is not None and str(name) not in tags:
                tags[str(name)] = str(value)
    return tags


def _extract_clicked_link(data: dict[str, Any]) -> str | None:
    click = data.get("click") if isinstance(data.get("click"), dict) else {}
    return _first_text(data.get("link"), data.get("url"), data.get("clicked_link"), click.get("link"))


def _extract_user_agent(data: dict[str, Any]) -> str | None:
    opened = data.get("open") if isinstance(data.get("open"), dict) else {}
    return _first_text(data.get("user_agent"), opened.get("userAgent"), opened.get("user_agent"))


def normalize_webhook_payload(
    payload: dict[str, Any],
    *,
    received_at: datetime | None = None,
) -> NormalizedEvent:
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    provider_event_type = str(payload.get("type") or "unknown")
    event_type, stored_type = normalize_event_type(provider_event_type)

    occurred_at = parse_timestamp(payload.get("created_at") or payload.get("createdAt"))
    from_payload = occurred_at is not None
    if occurred_at is None:
        occurred_at = received_at or datetime.now(timezone.utc)

    tags = _extract_tags(payload, data)
    return NormalizedEvent(
        event_type=event_type,
        stored_type=stored_type,
        provider_event_type=provider_event_type,
        external_message_id=_first_text(data.get("email_id"), data.get("id"), payload.get("email_id")),
        recipient_address=_first_text(data.get("to"), data.get("email"), payload.get("to")),
        occurred_at=occurred_at,
        occurred_at_from_payload=from_payload,
        tag_user_id=tags.get("userId"),
        tag_campaign_id=tags.get("campaignId"),
        provider_event_id=_first_text(payload.get("id"), data.get("id")),
        clicked_link=_extract_clicked_link(data) if event_type is EmailEventType.CLICKED else None,
        user_agent=_extract_user_agent(data) if event_type is EmailEventType.OPENED else None,
        payload=payload,
    )


def effective_status(message: dict[str, Any]) -> EffectiveStatus:
    """Display status for a message row; a click implies delivery."""
    status_value = str(message.get("status") or "pending").strip().lower()
    if status_value == "bounced":
        return "bounced"
    if status_value == "clicked" or message.get("clicked_at"):
        return "clicked"
    if message.get("opened_at"):
        return "opened"
    if status_value == "delivered" or message.get("delivered_at"):
        return "delivered"
    if status_value == "sent" or message.get("sent_at"):
        return "sent"
    if status_value == "failed":
        return "failed"
    return "pending"


def is_delivered(message: dict[str, Any]) -> bool:
    return effective_status(message) in {"delivered", "opened", "clicked"}
