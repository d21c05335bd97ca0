from __future__ import annotations


class InvalidSignature(Exception):
    """Webhook body failed HMAC verification (or was unsigned when a signature is required)."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class MalformedPayload(ValueError):
    """Webhook body is not a JSON object."""


class EventWriteFailure(Exception):
    """The canonical event could not be durably stored."""


class ReconciliationWriteFailure(Exception):
    """The message status update failed after the event was stored."""

    def __init__(self, message_id: str, event_type: str, error: str) -> None:
        super().__init__(f"status update failed for {message_id} ({event_type}): {error}")
        self.message_id = message_id
        self.event_type = event_type
        self.error = error
