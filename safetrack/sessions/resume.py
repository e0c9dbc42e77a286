"""Resume-candidate selection after a reload.

A user should own at most one unfinished session. The store does not
enforce it, so several candidates are treated as a data-integrity anomaly:
logged, then resolved deterministically by most recent start time.
"""

from __future__ import annotations

import logging
from typing import Any

from safetrack.sessions.models import Session

logger = logging.getLogger(__name__)


def parse_sessions(records: dict[str, Any]) -> list[Session]:
    """Parse raw session records, skipping malformed ones."""
    sessions: list[Session] = []
    for session_id, record in records.items():
        try:
            sessions.append(Session.from_record(session_id, record))
        except (KeyError, TypeError, ValueError):
            logger.warning("Skipping malformed session record %s", session_id[:8], exc_info=True)
    return sessions


def select_resumable(records: dict[str, Any]) -> Session | None:
    """Pick the session a reload should re-enter, or None."""
    candidates = [s for s in parse_sessions(records) if s.is_resumable]
    if not candidates:
        return None
    if len(candidates) > 1:
        logger.warning(
            "Found %d unfinished sessions for user %s: %s; resuming the most recent",
            len(candidates),
            candidates[0].user_id,
            ", ".join(s.session_id[:8] for s in candidates),
        )
    return max(candidates, key=lambda s: (s.started_at, s.session_id))
