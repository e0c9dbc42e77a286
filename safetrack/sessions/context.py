"""Per-device tracking context.

Local mirrors of the shared record. They are caches: on reload they are
rehydrated from the store, never trusted across restarts.
"""

from __future__ import annotations

from dataclasses import dataclass

from safetrack.geo import LocationFix
from safetrack.sessions.models import SessionStatus


@dataclass
class SessionContext:
    user_id: str | None = None
    session_id: str | None = None
    status: SessionStatus | None = None  # None = idle
    last_location: LocationFix | None = None
    panic_active: bool = False
    watch_id: int | None = None

    @property
    def is_tracking(self) -> bool:
        """A session exists and the location stream is running."""
        return self.session_id is not None and self.watch_id is not None

    def reset(self) -> None:
        """Back to idle, keeping the signed-in user."""
        self.session_id = None
        self.status = None
        self.last_location = None
        self.panic_active = False
        self.watch_id = None
