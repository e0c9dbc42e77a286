"""Liveness sweep — server-side counterpart of the device unload hook.

An unload write is best-effort and often never lands (killed tab, dead
battery). The sweep marks ``active`` sessions whose heartbeat is older than
the timeout as ``connection_lost``. Panic sessions are left untouched.

The write is a store transaction that re-reads the record, so a panic or a
fresh heartbeat landing between the query and the write wins.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from safetrack.config import settings
from safetrack.geo import parse_timestamp, utc_now
from safetrack.sessions.machine import InvalidTransition, SessionEvent, transition
from safetrack.sessions.models import SESSIONS_ROOT, SessionStatus, session_path
from safetrack.store.protocol import SessionStore

logger = logging.getLogger(__name__)


class LivenessWatcher:
    """Periodic heartbeat check over every active session."""

    def __init__(self, store: SessionStore, timeout_seconds: float | None = None):
        self._store = store
        self.timeout_seconds = settings.heartbeat_stale_seconds if timeout_seconds is None else timeout_seconds

    def _heartbeat_age(self, record: dict[str, Any], now: datetime) -> float | None:
        beat = record.get("heartbeat") or record.get("startTime")
        try:
            return (now - parse_timestamp(beat)).total_seconds()
        except (TypeError, ValueError):
            return None

    def _mark_lost(self, now: datetime):
        """Build the conditional write; it re-checks the record as stored at write time."""

        def apply(record: Any) -> dict[str, Any] | None:
            if not isinstance(record, dict) or record.get("endTime"):
                return None
            age = self._heartbeat_age(record, now)
            if age is None or age <= self.timeout_seconds:
                return None
            try:
                current = SessionStatus(record.get("status"))
                next_status = transition(current, SessionEvent.TEARDOWN)
            except (ValueError, InvalidTransition):
                return None
            if next_status == current:
                # A panic keeps its status
                return None
            return {"status": next_status.value, "lastEventTimestamp": now.isoformat()}

        return apply

    async def sweep(self, now: datetime | None = None) -> list[str]:
        """Mark stale active sessions as connection_lost. Returns the ids touched."""
        now = now or utc_now()
        active = await self._store.query(SESSIONS_ROOT, "status", SessionStatus.ACTIVE.value)
        touched: list[str] = []
        for session_id, record in sorted(active.items()):
            if record.get("endTime"):
                continue
            age = self._heartbeat_age(record, now)
            if age is None:
                logger.warning("Session %s has no readable heartbeat", session_id[:8])
                continue
            if age <= self.timeout_seconds:
                continue
            written = await self._store.transaction(session_path(session_id), self._mark_lost(now))
            if written is None:
                logger.info("Session %s changed before the sweep could mark it; left alone", session_id[:8])
                continue
            logger.warning("Session %s heartbeat is %.0fs old; marked %s", session_id[:8], age, written["status"])
            touched.append(session_id)
        if touched:
            logger.info("Liveness sweep touched %d session(s)", len(touched))
        return touched
