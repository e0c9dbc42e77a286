"""Tests for the observer API, session view and liveness sweep."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from freezegun import freeze_time

from safetrack.liveness import LivenessWatcher
from safetrack.observer import create_app, session_view
from safetrack.sessions.models import new_session_record, session_path
from safetrack.store.memory import InMemorySessionStore
from tests.fakes import make_fix

STARTED = "2026-03-14T18:30:00+00:00"


def _record(status="active", heartbeat=STARTED, **extra):
    record = new_session_record("u1", make_fix())
    record.update(status=status, startTime=STARTED, heartbeat=heartbeat, **extra)
    return record


def _store(**sessions) -> InMemorySessionStore:
    return InMemorySessionStore({"sessions": sessions})


class PanicAfterQueryStore(InMemorySessionStore):
    """The device raises a silent panic right after the sweep has listed sessions."""

    async def query(self, path, child, equal_to):
        found = await super().query(path, child, equal_to)
        for session_id in found:
            await self.update(
                session_path(session_id), {"status": "panic_triggered_by_user", "silentMode": True}
            )
        return found


class HeartbeatAfterQueryStore(InMemorySessionStore):
    """The device writes a fresh heartbeat right after the sweep has listed sessions."""

    def __init__(self, initial, heartbeat):
        super().__init__(initial)
        self.heartbeat = heartbeat

    async def query(self, path, child, equal_to):
        found = await super().query(path, child, equal_to)
        for session_id in found:
            await self.update(session_path(session_id), {"heartbeat": self.heartbeat})
        return found


# ── Session view ──────────────────────────────────────────────────────────


class TestSessionView:
    """Observer projection of a record."""

    def test_fresh_heartbeat_not_stale(self):
        now = datetime(2026, 3, 14, 18, 30, 30, tzinfo=timezone.utc)
        view = session_view("s1", _record(), now=now, stale_after=60)
        assert view["stale"] is False
        assert view["heartbeatAgeSeconds"] == 30.0
        assert view["status"] == "active"
        assert view["path"] == []

    def test_old_heartbeat_is_stale(self):
        now = datetime(2026, 3, 14, 18, 35, tzinfo=timezone.utc)
        assert session_view("s1", _record(), now=now, stale_after=60)["stale"] is True

    def test_ended_session_never_stale(self):
        now = datetime(2026, 3, 14, 23, 0, tzinfo=timezone.utc)
        view = session_view("s1", _record("cancelled", endTime=STARTED), now=now, stale_after=60)
        assert view["stale"] is False

    def test_silent_panic_visible(self):
        view = session_view("s1", _record("panic_triggered_by_user", silentMode=True), stale_after=60)
        assert view["status"] == "panic_triggered_by_user"
        assert view["silentMode"] is True


# ── HTTP API ──────────────────────────────────────────────────────────────


class TestObserverAPI:
    """GET /sessions/{id}, POST /sessions/{id}/check-response."""

    @freeze_time("2026-03-14 18:30:10")
    def test_get_session(self):
        client = TestClient(create_app(_store(s1=_record())))
        resp = client.get("/sessions/s1")
        assert resp.status_code == 200
        body = resp.json()
        assert body["sessionId"] == "s1"
        assert body["stale"] is False

    def test_unknown_session_404(self):
        client = TestClient(create_app(_store()))
        assert client.get("/sessions/nope").status_code == 404
        assert client.post("/sessions/nope/check-response", json={"status": "ok"}).status_code == 404

    def test_malformed_record_422(self):
        client = TestClient(create_app(_store(s1={"userId": "u1"})))
        assert client.get("/sessions/s1").status_code == 422

    def test_check_response_flips_pending(self):
        store = _store(s1=_record(checkRequest={"timestamp": STARTED, "status": "pending"}))
        client = TestClient(create_app(store))
        resp = client.post("/sessions/s1/check-response", json={"status": "danger"})
        assert resp.status_code == 200
        assert resp.json() == {"sessionId": "s1", "status": "danger"}
        assert store._read(session_path("s1", "checkRequest", "status")) == "danger"

    def test_check_response_without_request_409(self):
        client = TestClient(create_app(_store(s1=_record())))
        assert client.post("/sessions/s1/check-response", json={"status": "ok"}).status_code == 409

    def test_already_answered_409(self):
        store = _store(s1=_record(checkRequest={"timestamp": STARTED, "status": "ok"}))
        client = TestClient(create_app(store))
        assert client.post("/sessions/s1/check-response", json={"status": "danger"}).status_code == 409

    @pytest.mark.parametrize("status", ["pending", "maybe"])
    def test_invalid_status_422(self, status):
        store = _store(s1=_record(checkRequest={"timestamp": STARTED, "status": "pending"}))
        client = TestClient(create_app(store))
        assert client.post("/sessions/s1/check-response", json={"status": status}).status_code == 422


# ── Liveness ──────────────────────────────────────────────────────────────


class TestLivenessSweep:
    """Stale active sessions become connection_lost."""

    @pytest.mark.asyncio
    async def test_stale_active_marked(self):
        now = datetime.fromisoformat(STARTED) + timedelta(minutes=5)
        fresh = (now - timedelta(seconds=10)).isoformat()
        store = _store(
            stale=_record(),
            fresh=_record(heartbeat=fresh),
            panic=_record("panic_triggered_by_user"),
            ended=_record(endTime=STARTED),
        )
        touched = await LivenessWatcher(store, timeout_seconds=60).sweep(now=now)
        assert touched == ["stale"]
        assert await store.get("sessions/stale/status") == "connection_lost"
        assert await store.get("sessions/stale/lastEventTimestamp") == now.isoformat()
        assert await store.get("sessions/fresh/status") == "active"
        assert await store.get("sessions/panic/status") == "panic_triggered_by_user"

    @pytest.mark.asyncio
    async def test_sweep_idempotent(self):
        now = datetime.fromisoformat(STARTED) + timedelta(minutes=5)
        store = _store(s1=_record())
        watcher = LivenessWatcher(store, timeout_seconds=60)
        assert await watcher.sweep(now=now) == ["s1"]
        assert await watcher.sweep(now=now) == []

    @pytest.mark.asyncio
    async def test_panic_raised_during_sweep_is_kept(self):
        now = datetime.fromisoformat(STARTED) + timedelta(minutes=5)
        store = PanicAfterQueryStore({"sessions": {"s1": _record()}})
        touched = await LivenessWatcher(store, timeout_seconds=60).sweep(now=now)
        assert touched == []
        assert await store.get("sessions/s1/status") == "panic_triggered_by_user"
        assert await store.get("sessions/s1/silentMode") is True

    @pytest.mark.asyncio
    async def test_heartbeat_refreshed_during_sweep_is_kept(self):
        now = datetime.fromisoformat(STARTED) + timedelta(minutes=5)
        store = HeartbeatAfterQueryStore({"sessions": {"s1": _record()}}, heartbeat=now.isoformat())
        assert await LivenessWatcher(store, timeout_seconds=60).sweep(now=now) == []
        assert await store.get("sessions/s1/status") == "active"
