import hashlib
import hmac
import json
from datetime import datetime, timezone

from fastapi.testclient import TestClient

from src.config import settings
from src.main import app
from src.observability import metrics_snapshot, reset_metrics
from src.store import TrackingStore, get_tracking_store


class FakeResponse:
    def __init__(self, data):
        self.data = data


def _parse(value):
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return value
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return value


class FakeQuery:
    def __init__(self, table_name: str, db: "FakeSupabase"):
        self.table_name = table_name
        self.db = db
        self.operation = "select"
        self.fields = "*"
        self.insert_payload = None
        self.update_payload = None
        self.filters = []
        self.order_by = None
        self.row_limit = None

    def select(self, fields: str = "*"):
        self.operation = "select"
        self.fields = fields
        return self

    def insert(self, payload: dict):
        self.operation = "insert"
        self.insert_payload = payload
        return self

    def update(self, payload: dict):
        self.operation = "update"
        self.update_payload = payload
        return self

    def eq(self, key: str, value):
        self.filters.append(("eq", key, value))
        return self

    def is_(self, key: str, value):
        self.filters.append(("is", key, value))
        return self

    def gte(self, key: str, value):
        self.filters.append(("gte", key, value))
        return self

    def lte(self, key: str, value):
        self.filters.append(("lte", key, value))
        return self

    def in_(self, key: str, values):
        self.filters.append(("in", key, list(values)))
        return self

    def order(self, key: str, desc: bool = False):
        self.order_by = (key, desc)
        return self

    def limit(self, value: int):
        self.row_limit = value
        return self

    @staticmethod
    def _value(row: dict, key: str):
        if "->>" in key:
            column, json_key = key.split("->>", 1)
            container = row.get(column) or {}
            value = container.get(json_key) if isinstance(container, dict) else None
            return None if value is None else str(value)
        return row.get(key)

    def _matches(self, row: dict) -> bool:
        for kind, key, value in self.filters:
            current = self._value(row, key)
            if kind == "eq" and current != value:
                return False
            if kind == "is" and value == "null" and current is not None:
                return False
            if kind == "in" and current not in value:
                return False
            if kind in {"gte", "lte"}:
                if current is None:
                    return False
                left, right = _parse(current), _parse(value)
                if kind == "gte" and left < right:
                    return False
                if kind == "lte" and left > right:
                    return False
        return True

    def _with_joins(self, row: dict) -> dict:
        row = dict(row)
        if "recipient:recipients(email)" in self.fields:
            recipient = next(
                (r for r in self.db.tables.get("recipients", []) if r.get("id") == row.get("recipient_id")),
                None,
            )
            row["recipient"] = {"email": recipient["email"]} if recipient else None
        return row

    def execute(self):
        self.db.calls.append((self.table_name, self.operation))
        if (self.table_name, self.operation) in self.db.failures:
            raise Exception(f"{self.table_name} {self.operation} unavailable")
        table = self.db.tables.setdefault(self.table_name, [])
        if self.operation == "insert":
            row = dict(self.insert_payload or {})
            self.db.sequence += 1
            row.setdefault("id", f"{self.table_name}-{self.db.sequence}")
            row.setdefault("created_at", _ts())
            table.append(row)
            return FakeResponse([dict(row)])

        if self.operation == "update":
            updated = []
            for row in table:
                if self._matches(row):
                    row.update(self.update_payload or {})
                    updated.append(dict(row))
            return FakeResponse(updated)

        rows = [self._with_joins(row) for row in table if self._matches(row)]
        if self.order_by:
            key, desc = self.order_by
            rows.sort(key=lambda r: str(r.get(key) or ""), reverse=desc)
        if self.row_limit is not None:
            rows = rows[: self.row_limit]
        return FakeResponse(rows)


class FakeSupabase:
    def __init__(self, tables: dict | None = None):
        self.tables = tables or {}
        self.failures = set()
        self.calls = []
        self.sequence = 0

    def table(self, table_name: str):
        return FakeQuery(table_name, self)


def _ts() -> str:
    return datetime.now(timezone.utc).isoformat()


def _clear_overrides():
    app.dependency_overrides.clear()


def _fresh_db():
    _clear_overrides()
    reset_metrics()
    return FakeSupabase(
        {
            "campaigns": [],
            "recipients": [],
            "emails": [],
            "email_events": [],
            "operators": [],
            "observability_metric_snapshots": [],
        }
    )


def _use_store(fake_db):
    store = TrackingStore(fake_db)
    app.dependency_overrides[get_tracking_store] = lambda: store
    return store


def _fast_retries(monkeypatch):
    monkeypatch.setattr(settings, "resolver_retry_delay_ms", 0)
    monkeypatch.setattr(settings, "relink_backoff_ms", "0")
    monkeypatch.setattr(settings, "resend_webhook_secret", None)
    monkeypatch.setattr(settings, "resend_webhook_require_signature", False)


def _payload(event_type="email.delivered", email_id="re_1", created_at="2026-03-01T10:00:00.000Z", **data):
    body = {"type": event_type, "created_at": created_at, "data": {"to": ["target@example.com"], **data}}
    if email_id:
        body["data"]["email_id"] = email_id
    return body


def _message(fake_db, **fields):
    row = {
        "id": "msg-1",
        "resend_email_id": "re_1",
        "campaign_id": "camp-1",
        "recipient_id": "rcp-1",
        "status": "pending",
        "sent_at": None,
        "delivered_at": None,
        "opened_at": None,
        "clicked_at": None,
    }
    row.update(fields)
    fake_db.tables["emails"].append(row)
    return row


def _signed_post(client, payload, secret):
    body = json.dumps(payload).encode()
    digest = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return client.post(
        "/api/resend/webhook",
        content=body,
        headers={"Content-Type": "application/json", "resend-signature": f"sha256={digest}"},
    )


def test_webhook_signature_enforced_when_secret_set(monkeypatch):
    fake_db = _fresh_db()
    _use_store(fake_db)
    _fast_retries(monkeypatch)
    monkeypatch.setattr(settings, "resend_webhook_secret", "whsec_test")
    client = TestClient(app)

    response = client.post(
        "/api/resend/webhook",
        json=_payload(),
        headers={"resend-signature": "sha256=" + "0" * 64},
    )

    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid webhook signature"
    assert fake_db.tables["email_events"] == []
    assert ("email_events", "insert") not in fake_db.calls
    assert metrics_snapshot()["webhook.signature.rejected|reason=invalid_signature"] == 1


def test_webhook_accepts_valid_signature(monkeypatch):
    fake_db = _fresh_db()
    _use_store(fake_db)
    _fast_retries(monkeypatch)
    monkeypatch.setattr(settings, "resend_webhook_secret", "whsec_test")
    _message(fake_db)
    client = TestClient(app)

    response = _signed_post(client, _payload(), "whsec_test")

    assert response.status_code == 200
    assert response.json()["success"] is True
    assert len(fake_db.tables["email_events"]) == 1


def test_webhook_unsigned_call_follows_require_setting(monkeypatch):
    fake_db = _fresh_db()
    _use_store(fake_db)
    _fast_retries(monkeypatch)
    monkeypatch.setattr(settings, "resend_webhook_secret", "whsec_test")
    client = TestClient(app)

    assert client.post("/api/resend/webhook", json=_payload()).status_code == 200

    monkeypatch.setattr(settings, "resend_webhook_require_signature", True)
    response = client.post("/api/resend/webhook", json=_payload(event_type="email.opened"))
    assert response.status_code == 401
    assert response.json()["detail"] == "Missing webhook signature"


def test_webhook_rejects_malformed_json(monkeypatch):
    fake_db = _fresh_db()
    _use_store(fake_db)
    _fast_retries(monkeypatch)
    client = TestClient(app)

    response = client.post(
        "/api/resend/webhook",
        content=b"{not json",
        headers={"Content-Type": "application/json"},
    )

    assert response.status_code == 400
    assert fake_db.tables["email_events"] == []


def test_webhook_persists_event_and_updates_message(monkeypatch):
    fake_db = _fresh_db()
    _use_store(fake_db)
    _fast_retries(monkeypatch)
    message = _message(fake_db, status="sent")
    client = TestClient(app)

    response = client.post(
        "/api/resend/webhook",
        json=_payload(tags=[{"name": "userId", "value": "user-1"}, {"name": "campaignId", "value": "camp-1"}]),
        headers={"X-Request-ID": "req-123"},
    )

    assert response.status_code == 200
    assert response.headers["X-Request-ID"] == "req-123"
    body = response.json()
    assert body["success"] is True
    assert body["linked"] is True
    assert body["duplicate"] is False
    assert body["status_updated"] is True
    assert body["message"] == "Event processed successfully"

    events = fake_db.tables["email_events"]
    assert len(events) == 1
    assert body["eventId"] == events[0]["id"]
    assert events[0]["email_id"] == "msg-1"
    assert events[0]["event_type"] == "delivered"
    assert events[0]["needs_linking"] is False
    assert events[0]["campaign_id"] == "camp-1"
    assert events[0]["recipient"] == "target@example.com"
    assert events[0]["user_id"] == "rcp-1"
    assert events[0]["raw"]["resend_email_id"] == "re_1"
    assert message["status"] == "delivered"
    assert message["delivered_at"] == "2026-03-01T10:00:00+00:00"


def test_webhook_duplicate_is_ignored(monkeypatch):
    fake_db = _fresh_db()
    _use_store(fake_db)
    _fast_retries(monkeypatch)
    message = _message(fake_db, status="delivered")
    client = TestClient(app)
    payload = _payload(event_type="email.opened")

    first = client.post("/api/resend/webhook", json=payload)
    second = client.post("/api/resend/webhook", json=payload)

    assert first.status_code == 200
    assert second.status_code == 200
    assert second.json()["duplicate"] is True
    assert second.json()["message"] == "Event already processed (duplicate)"
    assert second.json()["eventId"] == first.json()["eventId"]
    assert len(fake_db.tables["email_events"]) == 1
    assert message["opened_at"] == "2026-03-01T10:00:00+00:00"
    assert metrics_snapshot()["webhook.events.duplicate|event_type=opened,method=by_email_id"] == 1


def test_webhook_retransmission_within_window_is_duplicate(monkeypatch):
    fake_db = _fresh_db()
    _use_store(fake_db)
    _fast_retries(monkeypatch)
    _message(fake_db, status="sent")
    client = TestClient(app)

    client.post("/api/resend/webhook", json=_payload(created_at="2026-03-01T10:00:00Z"))
    retry = client.post("/api/resend/webhook", json=_payload(created_at="2026-03-01T10:00:08Z"))
    later = client.post("/api/resend/webhook", json=_payload(created_at="2026-03-01T10:05:00Z"))

    assert retry.json()["duplicate"] is True
    assert later.json()["duplicate"] is False
    assert len(fake_db.tables["email_events"]) == 2


def test_webhook_duplicate_bounce_transitions_once(monkeypatch):
    fake_db = _fresh_db()
    _use_store(fake_db)
    _fast_retries(monkeypatch)
    message = _message(fake_db, status="delivered")
    client = TestClient(app)
    payload = _payload(event_type="email.bounced")

    client.post("/api/resend/webhook", json=payload)
    client.post("/api/resend/webhook", json=payload)

    assert len(fake_db.tables["email_events"]) == 1
    assert message["status"] == "bounced"
    assert fake_db.calls.count(("emails", "update")) == 1


def test_webhook_full_lifecycle(monkeypatch):
    fake_db = _fresh_db()
    _use_store(fake_db)
    _fast_retries(monkeypatch)
    message = _message(fake_db)
    client = TestClient(app)

    for minute, event_type in enumerate(["email.sent", "email.delivered", "email.opened", "email.clicked"]):
        response = client.post(
            "/api/resend/webhook",
            json=_payload(
                event_type=event_type,
                created_at=f"2026-03-01T10:0{minute}:00Z",
                click={"link": "https://training.example.com/lure"},
            ),
        )
        assert response.status_code == 200

    assert message["status"] == "clicked"
    assert message["sent_at"] == "2026-03-01T10:00:00+00:00"
    assert message["delivered_at"] == "2026-03-01T10:01:00+00:00"
    assert message["opened_at"] == "2026-03-01T10:02:00+00:00"
    assert message["clicked_at"] == "2026-03-01T10:03:00+00:00"
    clicked = [e for e in fake_db.tables["email_events"] if e["event_type"] == "clicked"][0]
    assert clicked["raw"]["clicked_link"] == "https://training.example.com/lure"


def test_webhook_clicked_before_delivered(monkeypatch):
    fake_db = _fresh_db()
    _use_store(fake_db)
    _fast_retries(monkeypatch)
    message = _message(fake_db, status="sent")
    client = TestClient(app)

    client.post("/api/resend/webhook", json=_payload(event_type="email.clicked", created_at="2026-03-01T10:02:00Z"))

    assert message["status"] == "clicked"
    assert message["delivered_at"] is None

    client.post("/api/resend/webhook", json=_payload(event_type="email.delivered", created_at="2026-03-01T10:01:00Z"))

    assert message["status"] == "clicked"
    assert message["delivered_at"] == "2026-03-01T10:01:00+00:00"


def test_webhook_stores_unresolved_event_for_later_linking(monkeypatch):
    fake_db = _fresh_db()
    _use_store(fake_db)
    _fast_retries(monkeypatch)
    client = TestClient(app)

    response = client.post("/api/resend/webhook", json=_payload(email_id="re_not_yet_committed"))

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["linked"] is False
    assert body["message"] == "Event stored; message not yet linked"
    events = fake_db.tables["email_events"]
    assert len(events) == 1
    assert events[0]["email_id"] is None
    assert events[0]["needs_linking"] is True
    assert events[0]["raw"]["needs_linking"] is True
    assert events[0]["raw"]["resend_email_id"] == "re_not_yet_committed"
    assert metrics_snapshot()["webhook.events.unresolved|event_type=delivered"] == 1


def test_webhook_backfills_orphans_once_message_resolves(monkeypatch):
    fake_db = _fresh_db()
    _use_store(fake_db)
    _fast_retries(monkeypatch)
    client = TestClient(app)

    orphan = client.post("/api/resend/webhook", json=_payload(event_type="email.sent", created_at="2026-03-01T10:00:00Z"))
    assert orphan.json()["linked"] is False

    message = _message(fake_db)
    response = client.post(
        "/api/resend/webhook",
        json=_payload(event_type="email.delivered", created_at="2026-03-01T10:01:00Z"),
    )

    assert response.json()["linked"] is True
    events = {e["event_type"]: e for e in fake_db.tables["email_events"]}
    assert events["sent"]["email_id"] == "msg-1"
    assert events["sent"]["needs_linking"] is False
    assert message["sent_at"] == "2026-03-01T10:00:00+00:00"
    assert message["delivered_at"] == "2026-03-01T10:01:00+00:00"
    assert message["status"] == "delivered"


def test_webhook_resolves_by_campaign_tag_and_recipient(monkeypatch):
    fake_db = _fresh_db()
    _use_store(fake_db)
    _fast_retries(monkeypatch)
    fake_db.tables["recipients"].append({"id": "rcp-1", "email": "target@example.com"})
    message = _message(fake_db, resend_email_id=None, status="sent", created_at="2026-03-01T09:00:00+00:00")
    client = TestClient(app)

    response = client.post(
        "/api/resend/webhook",
        json=_payload(email_id="re_unknown", tags=[{"name": "campaignId", "value": "camp-1"}]),
    )

    assert response.json()["linked"] is True
    assert fake_db.tables["email_events"][0]["email_id"] == "msg-1"
    assert message["status"] == "delivered"


def test_webhook_event_write_failure_returns_500(monkeypatch):
    fake_db = _fresh_db()
    _use_store(fake_db)
    _fast_retries(monkeypatch)
    _message(fake_db)
    fake_db.failures.add(("email_events", "insert"))
    client = TestClient(app)

    response = client.post("/api/resend/webhook", json=_payload())

    assert response.status_code == 500
    assert response.json() == {"error": "Failed to save event", "details": "email_events insert unavailable"}
    assert ("emails", "update") not in fake_db.calls


def test_webhook_status_failure_still_acknowledged(monkeypatch):
    fake_db = _fresh_db()
    _use_store(fake_db)
    _fast_retries(monkeypatch)
    _message(fake_db, status="sent")
    fake_db.failures.add(("emails", "update"))
    client = TestClient(app)

    response = client.post("/api/resend/webhook", json=_payload())

    assert response.status_code == 200
    assert response.json()["status_updated"] is False
    assert response.json()["message"] == "Event stored; status update failed"
    assert len(fake_db.tables["email_events"]) == 1


def test_webhook_unknown_type_is_stored_without_status_change(monkeypatch):
    fake_db = _fresh_db()
    _use_store(fake_db)
    _fast_retries(monkeypatch)
    message = _message(fake_db, status="sent")
    client = TestClient(app)

    response = client.post("/api/resend/webhook", json=_payload(event_type="email.delivery_delayed"))

    assert response.status_code == 200
    assert fake_db.tables["email_events"][0]["event_type"] == "delivery_delayed"
    assert message["status"] == "sent"
    assert ("emails", "update") not in fake_db.calls


def test_webhook_health_lists_recent_events(monkeypatch):
    fake_db = _fresh_db()
    _use_store(fake_db)
    _fast_retries(monkeypatch)
    _message(fake_db)
    client = TestClient(app)
    client.post("/api/resend/webhook", json=_payload())

    response = client.get("/api/resend/webhook")

    assert response.status_code == 200
    body = response.json()
    assert body["message"] == "Resend webhook endpoint is active"
    assert "email.clicked" in body["events"]
    assert "email.unknown" not in body["events"]
    assert len(body["recentEvents"]) == 1
    assert body["recentEvents"][0]["event_type"] == "delivered"
    assert body["summary"]["received"] == 1
    assert body["summary"]["persisted"] == 1


def _bulk_events(fake_db, count, event_type="delivered", occurred_at="2026-03-01T10:00:03+00:00"):
    fake_db.tables["email_events"].extend(
        {
            "id": f"bulk-{index}",
            "email_id": f"msg-bulk-{index}",
            "event_type": event_type,
            "raw": {"resend_email_id": f"re_bulk_{index}"},
            "occurred_at": occurred_at,
            "campaign_id": "camp-1",
            "recipient": f"user{index}@example.com",
            "needs_linking": False,
        }
        for index in range(count)
    )


def test_webhook_duplicate_detected_in_busy_window(monkeypatch):
    fake_db = _fresh_db()
    _use_store(fake_db)
    _fast_retries(monkeypatch)
    _message(fake_db, status="sent")
    client = TestClient(app)

    first = client.post("/api/resend/webhook", json=_payload(created_at="2026-03-01T10:00:00Z"))
    _bulk_events(fake_db, 150)
    second = client.post("/api/resend/webhook", json=_payload(created_at="2026-03-01T10:00:00Z"))

    assert second.json()["duplicate"] is True
    assert second.json()["eventId"] == first.json()["eventId"]
    assert len([e for e in fake_db.tables["email_events"] if e["email_id"] == "msg-1"]) == 1


def test_webhook_unlinked_duplicate_detected_in_busy_window(monkeypatch):
    fake_db = _fresh_db()
    _use_store(fake_db)
    _fast_retries(monkeypatch)
    client = TestClient(app)

    client.post("/api/resend/webhook", json=_payload(email_id="re_pending", created_at="2026-03-01T10:00:00Z"))
    _bulk_events(fake_db, 150)
    second = client.post("/api/resend/webhook", json=_payload(email_id="re_pending", created_at="2026-03-01T10:00:00Z"))

    assert second.json()["duplicate"] is True
    assert len([e for e in fake_db.tables["email_events"] if e["raw"].get("resend_email_id") == "re_pending"]) == 1
    assert metrics_snapshot()["webhook.events.duplicate|event_type=delivered,method=by_resend_id"] == 1


def test_webhook_backfill_keeps_earliest_timestamp_for_later_orphan(monkeypatch):
    fake_db = _fresh_db()
    _use_store(fake_db)
    _fast_retries(monkeypatch)
    client = TestClient(app)

    orphan = client.post("/api/resend/webhook", json=_payload(event_type="email.opened", created_at="2026-03-01T10:05:00Z"))
    assert orphan.json()["linked"] is False

    message = _message(fake_db, status="delivered")
    response = client.post("/api/resend/webhook", json=_payload(event_type="email.opened", created_at="2026-03-01T10:00:00Z"))

    assert response.json()["linked"] is True
    assert message["opened_at"] == "2026-03-01T10:00:00+00:00"
    assert all(e["email_id"] == "msg-1" for e in fake_db.tables["email_events"])
