import logging

import pytest
from fastapi.testclient import TestClient

from conftest import AUDIT_KEY, PHI_KEY, TEST_ITERATIONS

from phiguard import (
    AttemptTracker,
    AuditCodec,
    AuditSink,
    EncryptionEngine,
    InMemoryAttemptStore,
    InMemoryAuditSink,
    StaticKeyResolver,
)
from phiguard.admin import create_admin_app

TOKEN = "admin-secret"
AUTH = {"X-Admin-Token": TOKEN}
OVERRIDE = {"operator": "ops-oncall", "reason": "ticket 4711"}


@pytest.fixture
def tracker(clock):
    return AttemptTracker(InMemoryAttemptStore(), clock=clock)


@pytest.fixture
def codec():
    engine = EncryptionEngine(
        StaticKeyResolver({"phi": PHI_KEY, "audit": AUDIT_KEY}),
        iterations=TEST_ITERATIONS
    )
    return AuditCodec(engine)


@pytest.fixture
def sink():
    return InMemoryAuditSink()


@pytest.fixture
def client(tracker, codec, sink):
    return TestClient(create_admin_app(tracker, codec, sink, admin_token=TOKEN))


def lock(tracker, identity="jane@example.com"):
    for _ in range(3):
        tracker.record_failed_attempt(identity)


def override_events(caplog):
    return [
        r.extra_fields for r in caplog.records
        if getattr(r, "extra_fields", {}).get("event_type") == "ADMIN_OVERRIDE"
    ]


class FailingAuditSink(AuditSink):
    def write(self, entry):
        raise OSError("disk full")

    def read_all(self):
        return []


class SnapshotAuditSink(InMemoryAuditSink):
    """Records how many lockout records existed when each entry was written."""

    def __init__(self, tracker):
        super().__init__()
        self.tracker = tracker
        self.records_at_write = []

    def write(self, entry):
        self.records_at_write.append(len(self.tracker.store.list_all()))
        super().write(entry)


def test_health_needs_no_token(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


def test_missing_token_rejected(client):
    assert client.get("/lockouts").status_code == 401


def test_wrong_token_rejected(client):
    assert client.get("/lockouts", headers={"X-Admin-Token": "nope"}).status_code == 401


def test_admin_disabled_without_token(tracker, codec, sink):
    client = TestClient(create_admin_app(tracker, codec, sink, admin_token=""))
    r = client.get("/lockouts", headers=AUTH)
    assert r.status_code == 503
    assert client.get("/health").status_code == 200


def test_lockout_status(client, tracker):
    lock(tracker)
    r = client.get("/lockouts/Jane@Example.com", headers=AUTH)
    assert r.status_code == 200
    body = r.json()
    assert body["identity"] == "jane@example.com"
    assert body["is_blocked"] is True
    assert body["attempts"] == 3
    assert body["time_remaining"] == "1 hour and 0 minutes"
    assert body["remaining_seconds"] == 3600
    assert body["blocked_until"] == tracker.is_user_blocked("jane@example.com").blocked_until


def test_list_lockouts(client, tracker):
    lock(tracker)
    tracker.record_failed_attempt("bob@example.com")
    r = client.get("/lockouts", headers=AUTH)
    assert r.status_code == 200
    identities = sorted(rec["identity"] for rec in r.json())
    assert identities == ["bob@example.com", "jane@example.com"]


def test_unblock_is_audited(client, tracker, codec, sink, caplog):
    caplog.set_level(logging.WARNING, logger="phiguard.security")
    lock(tracker)
    r = client.post("/lockouts/jane@example.com/unblock", headers=AUTH, json=OVERRIDE)
    assert r.status_code == 200
    assert r.json() == {"identity": "jane@example.com", "unblocked": True}
    assert tracker.is_user_blocked("jane@example.com").is_blocked is False

    entries = sink.read_all()
    assert len(entries) == 1
    assert entries[0].startswith("gcm:")
    entry = codec.verify_entry(entries[0])
    assert entry["action"] == "ADMIN_EMERGENCY_UNBLOCK"
    assert entry["details"]["operator"] == "ops-oncall"
    assert entry["details"]["reason"] == "ticket 4711"
    assert entry["details"]["identity"] == "j***@example.com"

    events = override_events(caplog)
    assert len(events) == 1
    assert events[0]["record_existed"] is True
    assert events[0]["identity"] == "j***@example.com"


def test_unblock_unknown_identity_still_audited(client, sink):
    r = client.post("/lockouts/nobody@example.com/unblock", headers=AUTH, json=OVERRIDE)
    assert r.status_code == 200
    assert r.json()["unblocked"] is False
    assert len(sink.read_all()) == 1


def test_clear_all_is_audited(client, tracker, codec, sink, caplog):
    caplog.set_level(logging.WARNING, logger="phiguard.security")
    lock(tracker, "a@example.com")
    tracker.record_failed_attempt("b@example.com")
    r = client.post("/lockouts/clear-all", headers=AUTH, json=OVERRIDE)
    assert r.status_code == 200
    assert r.json() == {"cleared": 2}
    assert tracker.list_records() == []

    entry = codec.verify_entry(sink.read_all()[0])
    assert entry["action"] == "ADMIN_EMERGENCY_CLEAR_ALL"
    assert entry["details"]["operator"] == "ops-oncall"
    assert override_events(caplog)[0]["records_removed"] == 2


def test_override_requires_operator_and_reason(client, sink):
    r = client.post("/lockouts/clear-all", headers=AUTH, json={"operator": "ops"})
    assert r.status_code == 422
    r = client.post("/lockouts/clear-all", headers=AUTH, json={"operator": "", "reason": "x"})
    assert r.status_code == 422
    assert sink.read_all() == []


def test_override_without_token_not_audited(client, tracker, sink):
    lock(tracker)
    r = client.post("/lockouts/jane@example.com/unblock", json=OVERRIDE)
    assert r.status_code == 401
    assert tracker.is_user_blocked("jane@example.com").is_blocked is True
    assert sink.read_all() == []


def test_request_id_echoed(client):
    r = client.get("/health", headers={"X-Request-ID": "req-123"})
    assert r.headers["X-Request-ID"] == "req-123"
    assert client.get("/health").headers["X-Request-ID"]


def test_audit_entry_written_before_clear_all(tracker, codec):
    lock(tracker, "a@example.com")
    lock(tracker, "b@example.com")
    sink = SnapshotAuditSink(tracker)
    client = TestClient(create_admin_app(tracker, codec, sink, admin_token=TOKEN))

    r = client.post("/lockouts/clear-all", headers=AUTH, json=OVERRIDE)
    assert r.status_code == 200
    assert sink.records_at_write == [2]
    assert tracker.list_records() == []


def test_clear_all_refused_when_audit_write_fails(tracker, codec, caplog):
    caplog.set_level(logging.WARNING, logger="phiguard.security")
    lock(tracker)
    client = TestClient(create_admin_app(tracker, codec, FailingAuditSink(), admin_token=TOKEN))

    r = client.post("/lockouts/clear-all", headers=AUTH, json=OVERRIDE)
    assert r.status_code == 503
    assert r.json()["detail"] == "AUDIT_UNAVAILABLE"
    assert [rec.identity for rec in tracker.list_records()] == ["jane@example.com"]
    assert tracker.is_user_blocked("jane@example.com").is_blocked is True
    assert override_events(caplog) == []
    assert any(
        getattr(rec, "extra_fields", {}).get("event_type") == "AUDIT_WRITE_FAILED"
        for rec in caplog.records
    )


def test_unblock_refused_when_audit_write_fails(tracker, codec):
    lock(tracker)
    client = TestClient(create_admin_app(tracker, codec, FailingAuditSink(), admin_token=TOKEN))

    r = client.post("/lockouts/jane@example.com/unblock", headers=AUTH, json=OVERRIDE)
    assert r.status_code == 503
    assert tracker.is_user_blocked("jane@example.com").is_blocked is True
