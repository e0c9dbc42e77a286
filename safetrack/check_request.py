"""Observer check-request protocol — a single-slot mailbox.

The user writes ``{timestamp, status: pending}`` to
``sessions/{id}/checkRequest``; the observer flips ``status`` to ``ok`` or
``danger``. The first resolved value is rendered and the node deleted.
Consumption is destructive: anything arriving after it is ignored until a
new pending request is written. Concurrent requests overwrite each other.
"""

from __future__ import annotations

import logging
from typing import Any

from safetrack.sessions.models import CheckRequest, CheckStatus, now_iso, session_path
from safetrack.store.protocol import SessionStore, StoreError, Subscription
from safetrack.ui import TrackingUI

logger = logging.getLogger(__name__)

CHECK_REQUEST_NODE = "checkRequest"


def check_request_path(session_id: str) -> str:
    return session_path(session_id, CHECK_REQUEST_NODE)


class CheckRequestMailbox:
    """User-side end of the mailbox; at most one listener at a time."""

    def __init__(self, store: SessionStore, ui: TrackingUI):
        self._store = store
        self._ui = ui
        self._session_id: str | None = None
        self._subscription: Subscription | None = None
        self._outstanding = False
        self.consumed: list[CheckStatus] = []

    @property
    def attached(self) -> bool:
        return self._subscription is not None

    @property
    def outstanding(self) -> bool:
        return self._outstanding

    async def attach(self, session_id: str) -> None:
        """Listen for responses on ``session_id``, replacing any previous listener."""
        self.detach()
        self._session_id = session_id
        path = check_request_path(session_id)
        # A node left over from before a reload is still a question awaiting consumption
        self._outstanding = await self._store.get(path) is not None
        self._subscription = await self._store.subscribe(path, self._on_change)
        logger.debug("Check-request listener attached to %s", session_id[:8])

    def detach(self) -> None:
        if self._subscription is None:
            return
        try:
            self._store.unsubscribe(self._subscription)
        except Exception:
            logger.error("Failed to detach check-request listener", exc_info=True)
        self._subscription = None
        self._session_id = None
        self._outstanding = False

    async def request(self) -> None:
        """Ask the observer to confirm the user's safety.

        Raises:
            StoreError: if the request cannot be written
            RuntimeError: if no session is attached
        """
        if self._session_id is None:
            raise RuntimeError("No tracking session to send a check request on")
        request = CheckRequest(timestamp=now_iso(), status=CheckStatus.PENDING)
        self._outstanding = True
        await self._store.set(check_request_path(self._session_id), request.to_record())
        logger.info("Check request sent on session %s", self._session_id[:8])

    async def _on_change(self, value: Any) -> None:
        if not isinstance(value, dict):
            return
        try:
            check = CheckRequest.from_record(value)
        except (KeyError, ValueError):
            logger.warning("Ignoring malformed check request: %r", value)
            return
        if check.status == CheckStatus.PENDING:
            self._outstanding = True
            return
        if not self._outstanding:
            logger.debug("Ignoring check response %s: nothing outstanding", check.status.value)
            return

        self._outstanding = False
        self.consumed.append(check.status)
        self._ui.show_check_response(check.status)
        logger.info("Observer answered check request: %s", check.status.value)

        if self._session_id is not None:
            try:
                await self._store.remove(check_request_path(self._session_id))
            except StoreError:
                logger.error("Failed to clear consumed check request", exc_info=True)
