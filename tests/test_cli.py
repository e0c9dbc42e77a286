"""Tests for the safetrack CLI, run against an in-memory store."""

from __future__ import annotations

import json

import pytest

from safetrack import cli
from safetrack.sessions.models import new_session_record
from safetrack.store.memory import InMemorySessionStore
from tests.fakes import make_fix


@pytest.fixture
def store(monkeypatch):
    store = InMemorySessionStore()
    monkeypatch.setattr(cli, "RedisSessionStore", lambda: store)
    return store


def _seed(store, session_id="s1", **extra):
    record = new_session_record("u1", make_fix())
    record.update(extra)
    store._put(f"sessions/{session_id}", record)


class TestShowAndRespond:
    def test_show(self, store, capsys):
        _seed(store)
        assert cli.main(["show", "s1"]) == 0
        assert json.loads(capsys.readouterr().out)["sessionId"] == "s1"

    def test_show_missing(self, store, capsys):
        assert cli.main(["show", "nope"]) == 1
        assert "session not found" in capsys.readouterr().err

    def test_respond(self, store, capsys):
        _seed(store, checkRequest={"timestamp": "t", "status": "pending"})
        assert cli.main(["respond", "s1", "ok"]) == 0
        assert store._read("sessions/s1/checkRequest/status") == "ok"

    def test_respond_without_request(self, store, capsys):
        _seed(store)
        assert cli.main(["respond", "s1", "danger"]) == 1

    def test_respond_rejects_pending(self, store):
        with pytest.raises(SystemExit):
            cli.main(["respond", "s1", "pending"])


class TestSweepAndContacts:
    def test_sweep(self, store, capsys):
        _seed(store, heartbeat="2020-01-01T00:00:00+00:00")
        assert cli.main(["sweep", "--timeout", "60"]) == 0
        assert "1 session(s) marked" in capsys.readouterr().out
        assert store._read("sessions/s1/status") == "connection_lost"

    def test_contacts_add_list_remove(self, store, capsys):
        assert cli.main(["contacts", "add", "u1", "Maria", "@maria"]) == 0
        contact_id = next(iter(store._read("users/u1/contacts")))
        assert cli.main(["contacts", "list", "u1"]) == 0
        assert "@maria" in capsys.readouterr().out
        assert cli.main(["contacts", "remove", "u1", contact_id]) == 0
        assert store._read("users/u1/contacts") is None

    def test_contacts_add_invalid(self, store, capsys):
        assert cli.main(["contacts", "add", "u1", "Maria", "123"]) == 1
        assert "Invalid format" in capsys.readouterr().err


class TestReplay:
    def test_replay_runs_and_ends_session(self, store, tmp_path, capsys):
        fixes = tmp_path / "fixes.jsonl"
        fixes.write_text(
            "\n".join(json.dumps(make_fix(n * 30, seconds=n * 5).to_record()) for n in range(3)),
            encoding="utf-8",
        )
        assert cli.main(["replay", "u1", str(fixes), "--interval", "0.01"]) == 0
        sessions = store._read("sessions")
        assert len(sessions) == 1
        record = next(iter(sessions.values()))
        assert record["status"] == "cancelled"
        assert len(record["path"]) == 2
        assert "tracker.html?session=" in capsys.readouterr().out
