"""Tracking session data models.

A session record lives at ``sessions/{id}`` and is never deleted, only
status-terminated, so the store keeps an audit trail of every trip.

Record fields use the store's camelCase names; the dataclasses here are
the typed view the core works with.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from safetrack.geo import LocationFix, parse_timestamp, utc_now

SESSIONS_ROOT = "sessions"


class SessionStatus(str, Enum):
    """Session lifecycle states as stored."""
    ACTIVE = "active"
    CONNECTION_LOST = "connection_lost"
    PANIC = "panic_triggered_by_user"
    CANCELLED = "cancelled"  # Terminal


# Statuses a reload may re-enter; see sessions.resume
RESUMABLE_STATUSES = frozenset(
    {SessionStatus.ACTIVE, SessionStatus.CONNECTION_LOST, SessionStatus.PANIC}
)


class CheckStatus(str, Enum):
    """Observer check-request mailbox states."""
    PENDING = "pending"
    OK = "ok"
    DANGER = "danger"


def now_iso() -> str:
    return utc_now().isoformat()


def session_path(session_id: str, *children: str) -> str:
    return "/".join([SESSIONS_ROOT, session_id, *children])


@dataclass
class CheckRequest:
    """Single-slot mailbox entry at ``sessions/{id}/checkRequest``."""
    timestamp: str
    status: CheckStatus = CheckStatus.PENDING

    def to_record(self) -> dict[str, Any]:
        return {"timestamp": self.timestamp, "status": self.status.value}

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> CheckRequest:
        return cls(timestamp=record.get("timestamp", ""), status=CheckStatus(record["status"]))


@dataclass
class Session:
    """A tracking session.

    Invariants:
    - user_id is immutable after creation
    - path entries are append-only (insertion order = chronological order)
    - anomaly_detected, once True, is never cleared automatically
    """
    session_id: str
    user_id: str
    status: SessionStatus
    start_time: str
    initial_location: LocationFix
    live_location: LocationFix
    heartbeat: str
    end_time: str | None = None
    last_event_timestamp: str | None = None
    path: list[LocationFix] = field(default_factory=list)
    anomaly_detected: bool = False
    silent_mode: bool = False
    check_request: CheckRequest | None = None
    user_safety_confirmation: str | None = None

    @property
    def is_finished(self) -> bool:
        return self.status == SessionStatus.CANCELLED or self.end_time is not None

    @property
    def is_resumable(self) -> bool:
        return self.status in RESUMABLE_STATUSES and self.end_time is None

    @property
    def started_at(self) -> datetime:
        return parse_timestamp(self.start_time)

    @property
    def last_known_location(self) -> LocationFix:
        return self.live_location or self.initial_location

    def to_record(self) -> dict[str, Any]:
        """Store record. ``path`` and ``checkRequest`` are written through their own nodes."""
        record: dict[str, Any] = {
            "userId": self.user_id,
            "status": self.status.value,
            "startTime": self.start_time,
            "initialLocation": self.initial_location.to_record(),
            "liveLocation": self.live_location.to_record(),
            "heartbeat": self.heartbeat,
        }
        optional = {
            "endTime": self.end_time,
            "lastEventTimestamp": self.last_event_timestamp,
            "anomalyDetected": self.anomaly_detected or None,
            "silentMode": self.silent_mode or None,
            "userSafetyConfirmation": self.user_safety_confirmation,
        }
        record.update({k: v for k, v in optional.items() if v is not None})
        return record

    @classmethod
    def from_record(cls, session_id: str, record: dict[str, Any]) -> Session:
        # Unreadable start times fail here, not later when sessions are ordered
        parse_timestamp(record["startTime"])
        initial = LocationFix.from_record(record["initialLocation"])
        live_raw = record.get("liveLocation")
        path_raw = record.get("path") or {}
        check_raw = record.get("checkRequest")
        return cls(
            session_id=session_id,
            user_id=record["userId"],
            status=SessionStatus(record["status"]),
            start_time=record["startTime"],
            initial_location=initial,
            live_location=LocationFix.from_record(live_raw) if live_raw else initial,
            heartbeat=record.get("heartbeat") or record["startTime"],
            end_time=record.get("endTime"),
            last_event_timestamp=record.get("lastEventTimestamp"),
            # Push keys sort chronologically
            path=[LocationFix.from_record(path_raw[key]) for key in sorted(path_raw)],
            anomaly_detected=bool(record.get("anomalyDetected", False)),
            silent_mode=bool(record.get("silentMode", False)),
            check_request=CheckRequest.from_record(check_raw) if check_raw else None,
            user_safety_confirmation=record.get("userSafetyConfirmation"),
        )


def new_session_record(user_id: str, fix: LocationFix) -> dict[str, Any]:
    """Record for a freshly started session: initial = live location, fresh heartbeat."""
    now = now_iso()
    return {
        "userId": user_id,
        "status": SessionStatus.ACTIVE.value,
        "startTime": now,
        "initialLocation": fix.to_record(),
        "liveLocation": fix.to_record(),
        "heartbeat": now,
    }
