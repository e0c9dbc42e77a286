"""Session state machine — pure transition function.

States are stored ``SessionStatus`` values; ``None`` is the local idle
state (no session)::

    idle --START--> active
    active --TEARDOWN--> connection_lost
    connection_lost --RESUME--> active
    active --WELLBEING_DENIED | ANOMALY_ESCALATED--> panic_triggered_by_user
    panic_triggered_by_user --PANIC_CANCELLED--> active
    active --STOP--> cancelled                       (terminal)

Panic self-loops: TEARDOWN, RESUME and STOP leave a panic in place. A panic
is cleared only by an explicit cancel, so an unload or a coerced "end
tracking" never hides it from the observer.

The function has no side effects; the tracker performs the I/O the new
state implies.
"""

from __future__ import annotations

from enum import Enum

from safetrack.sessions.models import SessionStatus


class SessionEvent(str, Enum):
    """Inputs to the state machine."""
    START = "start"
    TEARDOWN = "teardown"
    RESUME = "resume"
    WELLBEING_DENIED = "wellbeing_denied"
    ANOMALY_ESCALATED = "anomaly_escalated"
    PANIC_CANCELLED = "panic_cancelled"
    STOP = "stop"


class InvalidTransition(Exception):
    """Raised when an event is not accepted in the current state."""

    def __init__(self, status: SessionStatus | None, event: SessionEvent):
        self.status = status
        self.event = event
        state = status.value if status is not None else "idle"
        super().__init__(f"Event {event.value!r} is not valid in state {state!r}")


_TRANSITIONS: dict[tuple[SessionStatus | None, SessionEvent], SessionStatus] = {
    (None, SessionEvent.START): SessionStatus.ACTIVE,
    (SessionStatus.ACTIVE, SessionEvent.TEARDOWN): SessionStatus.CONNECTION_LOST,
    (SessionStatus.ACTIVE, SessionEvent.RESUME): SessionStatus.ACTIVE,
    (SessionStatus.CONNECTION_LOST, SessionEvent.RESUME): SessionStatus.ACTIVE,
    (SessionStatus.ACTIVE, SessionEvent.WELLBEING_DENIED): SessionStatus.PANIC,
    (SessionStatus.ACTIVE, SessionEvent.ANOMALY_ESCALATED): SessionStatus.PANIC,
    (SessionStatus.PANIC, SessionEvent.PANIC_CANCELLED): SessionStatus.ACTIVE,
    (SessionStatus.ACTIVE, SessionEvent.STOP): SessionStatus.CANCELLED,
    (SessionStatus.PANIC, SessionEvent.TEARDOWN): SessionStatus.PANIC,
    (SessionStatus.PANIC, SessionEvent.RESUME): SessionStatus.PANIC,
    (SessionStatus.PANIC, SessionEvent.STOP): SessionStatus.PANIC,
}


def transition(status: SessionStatus | None, event: SessionEvent) -> SessionStatus:
    """Return the status ``event`` leads to from ``status``.

    Raises:
        InvalidTransition: if the pair is not in the transition table
    """
    try:
        return _TRANSITIONS[(status, event)]
    except KeyError:
        raise InvalidTransition(status, event) from None


def can_transition(status: SessionStatus | None, event: SessionEvent) -> bool:
    return (status, event) in _TRANSITIONS


def is_panic(status: SessionStatus | None) -> bool:
    return status == SessionStatus.PANIC
