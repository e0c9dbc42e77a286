"""Tests for session models, the transition function and resume selection.

Tests:
- Transition table (valid edges, panic self-loops, rejected events)
- Session record parsing and serialisation
- Resume candidate selection and tie-breaking
- SessionContext reset
"""

from __future__ import annotations

import logging

import pytest

from safetrack.sessions.context import SessionContext
from safetrack.sessions.machine import (
    InvalidTransition,
    SessionEvent,
    can_transition,
    is_panic,
    transition,
)
from safetrack.sessions.models import (
    CheckStatus,
    Session,
    SessionStatus,
    new_session_record,
    session_path,
)
from safetrack.sessions.resume import parse_sessions, select_resumable
from tests.fakes import make_fix

ACTIVE = SessionStatus.ACTIVE
LOST = SessionStatus.CONNECTION_LOST
PANIC = SessionStatus.PANIC
CANCELLED = SessionStatus.CANCELLED


def _record(status: SessionStatus = ACTIVE, start: str = "2026-03-14T18:30:00+00:00", **extra):
    record = new_session_record("user-1", make_fix())
    record.update(status=status.value, startTime=start, **extra)
    return record


# ── State machine ─────────────────────────────────────────────────────────


class TestTransitions:
    """Pure transition function."""

    @pytest.mark.parametrize(
        "status, event, expected",
        [
            (None, SessionEvent.START, ACTIVE),
            (ACTIVE, SessionEvent.TEARDOWN, LOST),
            (LOST, SessionEvent.RESUME, ACTIVE),
            (ACTIVE, SessionEvent.RESUME, ACTIVE),
            (ACTIVE, SessionEvent.WELLBEING_DENIED, PANIC),
            (ACTIVE, SessionEvent.ANOMALY_ESCALATED, PANIC),
            (PANIC, SessionEvent.PANIC_CANCELLED, ACTIVE),
            (ACTIVE, SessionEvent.STOP, CANCELLED),
        ],
    )
    def test_valid_edges(self, status, event, expected):
        assert transition(status, event) == expected

    @pytest.mark.parametrize("event", [SessionEvent.TEARDOWN, SessionEvent.RESUME, SessionEvent.STOP])
    def test_panic_is_sticky(self, event):
        assert transition(PANIC, event) == PANIC

    def test_cancelled_is_terminal(self):
        for event in SessionEvent:
            assert not can_transition(CANCELLED, event)

    def test_panic_cannot_be_cancelled_directly(self):
        assert transition(PANIC, SessionEvent.STOP) != CANCELLED

    def test_double_panic_rejected(self):
        with pytest.raises(InvalidTransition) as exc:
            transition(PANIC, SessionEvent.WELLBEING_DENIED)
        assert exc.value.status == PANIC
        assert "panic_triggered_by_user" in str(exc.value)

    def test_start_only_from_idle(self):
        assert not can_transition(ACTIVE, SessionEvent.START)
        with pytest.raises(InvalidTransition, match="idle"):
            transition(None, SessionEvent.STOP)

    def test_cancel_panic_requires_panic(self):
        assert not can_transition(ACTIVE, SessionEvent.PANIC_CANCELLED)

    def test_is_panic(self):
        assert is_panic(PANIC)
        assert not is_panic(ACTIVE)
        assert not is_panic(None)


# ── Models ────────────────────────────────────────────────────────────────


class TestSessionModel:
    """Record parsing and serialisation."""

    def test_new_record_starts_active_at_initial_location(self):
        record = new_session_record("user-1", make_fix())
        assert record["status"] == "active"
        assert record["initialLocation"] == record["liveLocation"]
        assert record["heartbeat"] == record["startTime"]
        assert "endTime" not in record

    def test_from_record_orders_path_by_push_key(self):
        record = _record(path={"0002": make_fix(20).to_record(), "0001": make_fix(10).to_record()})
        session = Session.from_record("s1", record)
        assert session.path == [make_fix(10), make_fix(20)]

    def test_from_record_optional_fields(self):
        record = _record(
            PANIC,
            silentMode=True,
            anomalyDetected=True,
            checkRequest={"timestamp": "t", "status": "pending"},
        )
        session = Session.from_record("s1", record)
        assert session.silent_mode
        assert session.anomaly_detected
        assert session.check_request.status == CheckStatus.PENDING
        assert session.is_resumable

    def test_to_record_omits_unset_optionals(self):
        session = Session.from_record("s1", _record())
        record = session.to_record()
        assert "endTime" not in record
        assert "silentMode" not in record
        assert record["userId"] == "user-1"

    def test_finished_when_end_time_set(self):
        session = Session.from_record("s1", _record(endTime="2026-03-14T19:00:00+00:00"))
        assert session.is_finished
        assert not session.is_resumable

    def test_last_known_location_falls_back_to_initial(self):
        record = _record()
        del record["liveLocation"]
        assert Session.from_record("s1", record).last_known_location == make_fix()

    def test_session_path(self):
        assert session_path("abc", "checkRequest") == "sessions/abc/checkRequest"


# ── Resume ────────────────────────────────────────────────────────────────


class TestResumeSelection:
    """Which session a reload re-enters."""

    def test_no_sessions(self):
        assert select_resumable({}) is None

    def test_finished_sessions_ignored(self):
        records = {
            "a": _record(CANCELLED, endTime="2026-03-14T19:00:00+00:00"),
            "b": _record(PANIC, endTime="2026-03-14T19:00:00+00:00"),
        }
        assert select_resumable(records) is None

    @pytest.mark.parametrize("status", [ACTIVE, LOST, PANIC])
    def test_unfinished_statuses_resumable(self, status):
        assert select_resumable({"a": _record(status)}).session_id == "a"

    def test_most_recent_wins_and_is_logged(self, caplog):
        records = {
            "old": _record(ACTIVE, start="2026-03-14T18:00:00+00:00"),
            "new": _record(LOST, start="2026-03-14T18:45:00Z"),
        }
        with caplog.at_level(logging.WARNING, logger="safetrack.sessions.resume"):
            chosen = select_resumable(records)
        assert chosen.session_id == "new"
        assert "unfinished sessions" in caplog.text

    def test_malformed_records_skipped(self):
        records = {"bad": {"status": "active"}, "good": _record()}
        assert [s.session_id for s in parse_sessions(records)] == ["good"]

    @pytest.mark.parametrize("start", ["", "yesterday", 1710441000])
    def test_unreadable_start_time_skipped(self, start):
        records = {"bad": _record(ACTIVE, start=start), "good": _record(LOST)}
        assert [s.session_id for s in parse_sessions(records)] == ["good"]
        assert select_resumable(records).session_id == "good"


class TestSessionContext:
    def test_reset_keeps_user(self):
        ctx = SessionContext(user_id="u", session_id="s", status=ACTIVE, panic_active=True, watch_id=3)
        assert ctx.is_tracking
        ctx.reset()
        assert ctx.user_id == "u"
        assert ctx.session_id is None
        assert not ctx.panic_active
        assert not ctx.is_tracking
