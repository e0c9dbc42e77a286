"""Observer side — read-only session view and the check-response write.

The observer (the trusted contact following the tracking link) may:
- read a session's live view, with a ``stale`` flag derived from heartbeat age
- answer an outstanding check request with ``ok`` or ``danger``

Nothing here mutates session status; only the check-request node is written.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

from fastapi import APIRouter, FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from safetrack.check_request import check_request_path
from safetrack.config import settings
from safetrack.geo import parse_timestamp, utc_now
from safetrack.sessions.models import CheckStatus, Session, session_path
from safetrack.store.protocol import SessionStore, StoreError

logger = logging.getLogger(__name__)


async def respond_to_check(store: SessionStore, session_id: str, status: CheckStatus) -> bool:
    """Flip a pending check request to ``status``. False if none is pending."""
    if status == CheckStatus.PENDING:
        raise ValueError("A check response must be 'ok' or 'danger'")
    path = check_request_path(session_id)
    current = await store.get(path)
    if not isinstance(current, dict):
        logger.info("No check request on session %s", session_id[:8])
        return False
    if current.get("status") != CheckStatus.PENDING.value:
        logger.info("Check request on session %s already answered", session_id[:8])
        return False
    await store.update(path, {"status": status.value})
    logger.info("Observer answered %s on session %s", status.value, session_id[:8])
    return True


def session_view(
    session_id: str,
    record: dict[str, Any],
    now: datetime | None = None,
    stale_after: float | None = None,
) -> dict[str, Any]:
    """Project a stored record into what the observer page renders."""
    session = Session.from_record(session_id, record)
    now = now or utc_now()
    stale_after = settings.heartbeat_stale_seconds if stale_after is None else stale_after
    heartbeat_age = (now - parse_timestamp(session.heartbeat)).total_seconds()
    live = session.live_location
    return {
        "sessionId": session.session_id,
        "status": session.status.value,
        "startTime": session.start_time,
        "endTime": session.end_time,
        "liveLocation": live.to_record(),
        "path": [fix.to_record() for fix in session.path],
        "heartbeat": session.heartbeat,
        "heartbeatAgeSeconds": round(heartbeat_age, 1),
        "stale": session.end_time is None and heartbeat_age > stale_after,
        "anomalyDetected": session.anomaly_detected,
        "silentMode": session.silent_mode,
        "lastEventTimestamp": session.last_event_timestamp,
        "checkRequest": session.check_request.to_record() if session.check_request else None,
    }


class CheckResponseBody(BaseModel):
    status: CheckStatus


def create_app(store: SessionStore | None = None) -> FastAPI:
    """Observer API over ``store`` (a Redis store from settings by default)."""
    if store is None:
        from safetrack.store.redis_store import RedisSessionStore

        store = RedisSessionStore()

    router = APIRouter(prefix="/sessions", tags=["sessions"])

    @router.get("/{session_id}")
    async def get_session(session_id: str):
        """Live view of one session."""
        try:
            record = await store.get(session_path(session_id))
        except StoreError:
            logger.exception("Failed to read session %s", session_id)
            return JSONResponse({"error": "Session store unavailable"}, status_code=503)
        if not isinstance(record, dict):
            return JSONResponse({"error": "Session not found"}, status_code=404)
        try:
            return session_view(session_id, record)
        except (KeyError, TypeError, ValueError):
            logger.warning("Malformed session record %s", session_id)
            return JSONResponse({"error": "Session record is malformed"}, status_code=422)

    @router.post("/{session_id}/check-response")
    async def post_check_response(session_id: str, body: CheckResponseBody):
        """Answer the user's check request."""
        if body.status == CheckStatus.PENDING:
            return JSONResponse({"error": "Status must be 'ok' or 'danger'"}, status_code=422)
        try:
            if await store.get(session_path(session_id, "userId")) is None:
                return JSONResponse({"error": "Session not found"}, status_code=404)
            answered = await respond_to_check(store, session_id, body.status)
        except StoreError:
            logger.exception("Failed to answer check on session %s", session_id)
            return JSONResponse({"error": "Session store unavailable"}, status_code=503)
        if not answered:
            return JSONResponse({"error": "No check request outstanding"}, status_code=409)
        return {"sessionId": session_id, "status": body.status.value}

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await store.close()

    app = FastAPI(title=f"{settings.app_name} observer", lifespan=lifespan)
    app.include_router(router)

    return app
