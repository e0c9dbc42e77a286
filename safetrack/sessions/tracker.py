"""Session tracker — owns the tracking lifecycle on the user's device.

Handles:
- Starting a session (initial fix, record creation, link, contact alerts)
- Streaming throttled fixes, heartbeats and anomaly flags to the store
- Silent panic and its cancellation, fed by the wellbeing cycle
- Observer check requests
- Resume after reload and the teardown (unload) fail-safe

Contract:
- The session record in the store is the source of truth; the
  SessionContext is a cache rehydrated on resume
- Every status change goes through ``machine.transition``
- A silent panic never touches the UI; only the store changes
- Stop paths are idempotent and unwind every watch, timer and listener
"""

from __future__ import annotations

import logging

from safetrack.check_request import CheckRequestMailbox
from safetrack.config import settings
from safetrack.contacts import ContactBook, InvalidContact, TrustedContact
from safetrack.geo import GeoSampler, GeolocationError, LocationFix, PositionOptions
from safetrack.notifier import Notifier
from safetrack.safety_check import SafetyCheckCycle
from safetrack.sessions.context import SessionContext
from safetrack.sessions.machine import (
    InvalidTransition,
    SessionEvent,
    is_panic,
    transition,
)
from safetrack.sessions.models import (
    SESSIONS_ROOT,
    Session,
    SessionStatus,
    new_session_record,
    now_iso,
    session_path,
)
from safetrack.sessions.resume import select_resumable
from safetrack.share import ShareSheet, share_tracking_link, tracking_link
from safetrack.store.protocol import SessionStore, StoreError
from safetrack.throttle import LocationThrottle
from safetrack.ui import TrackingUI

logger = logging.getLogger(__name__)


class SessionTracker:
    """Tracking session state machine and its I/O glue."""

    def __init__(
        self,
        store: SessionStore,
        sampler: GeoSampler,
        ui: TrackingUI,
        *,
        notifier: Notifier | None = None,
        contacts: ContactBook | None = None,
        throttle: LocationThrottle | None = None,
        share_sheet: ShareSheet | None = None,
        check_visible_seconds: float | None = None,
        check_hidden_seconds: float | None = None,
        escalate_anomaly_to_panic: bool | None = None,
        tracker_base_url: str | None = None,
    ):
        self.ctx = SessionContext()
        self._store = store
        self._sampler = sampler
        self._ui = ui
        self._share_sheet = share_sheet
        self._base_url = tracker_base_url
        self.contacts = contacts or ContactBook(store)
        self._notifier = notifier or Notifier(self.contacts, ui)
        self.throttle = throttle or LocationThrottle()
        self.checks = CheckRequestMailbox(store, ui)
        self.cycle = SafetyCheckCycle(
            ui,
            gate=self._cycle_gate,
            on_confirmed=self.confirm_safety,
            on_denied=self.trigger_silent_panic,
            visible_seconds=check_visible_seconds,
            hidden_seconds=check_hidden_seconds,
        )
        self._escalate_anomaly = (
            settings.escalate_anomaly_to_panic if escalate_anomaly_to_panic is None else escalate_anomaly_to_panic
        )
        self.link: str | None = None

    # ── Helpers ───────────────────────────────────────────────────────────

    def _cycle_gate(self) -> bool:
        return self.ctx.is_tracking and not self.ctx.panic_active

    def _path(self, *children: str) -> str:
        return session_path(self.ctx.session_id, *children)

    def _start_watch(self, seed: LocationFix | None) -> None:
        self._stop_watch()
        self.throttle.reset(seed)
        self.ctx.watch_id = self._sampler.watch_position(
            self.handle_fix,
            self.handle_fix_error,
            PositionOptions(timeout_seconds=settings.watch_fix_timeout_seconds),
        )

    def _stop_watch(self) -> None:
        if self.ctx.watch_id is not None:
            self._sampler.clear_watch(self.ctx.watch_id)
            self.ctx.watch_id = None

    async def _attach_checks(self) -> None:
        try:
            await self.checks.attach(self.ctx.session_id)
        except StoreError:
            logger.error("Failed to attach check-request listener", exc_info=True)

    def _unwind(self) -> None:
        """Stop sampling, the wellbeing cycle and the check listener."""
        self._stop_watch()
        self.cycle.stop()
        self.checks.detach()

    async def _find_resumable(self, user_id: str) -> Session | None:
        records = await self._store.query(SESSIONS_ROOT, "userId", user_id)
        return select_resumable(records)

    # ── Start / stop ──────────────────────────────────────────────────────

    async def toggle(self) -> None:
        if self.ctx.is_tracking:
            await self.stop_tracking()
        else:
            await self.start_tracking()

    async def start_tracking(self) -> str | None:
        """idle -> active. Returns the session id, or None if tracking did not start."""
        ctx = self.ctx
        if not ctx.user_id:
            self._ui.show_message("You need to be signed in to use trip tracking.", error=True)
            return None
        if ctx.is_tracking:
            return ctx.session_id

        try:
            existing = await self._find_resumable(ctx.user_id)
        except StoreError:
            logger.warning("Could not check for unfinished sessions before starting", exc_info=True)
            existing = None
        if existing is not None:
            logger.warning("User %s already has session %s in progress; resuming it", ctx.user_id, existing.session_id[:8])
            await self._resume_into(existing)
            return existing.session_id

        self._ui.set_busy(True)
        try:
            try:
                fix = await self._sampler.get_current_position(
                    PositionOptions(timeout_seconds=settings.initial_fix_timeout_seconds)
                )
            except GeolocationError as e:
                logger.warning("Initial fix unavailable (%s): %s", e.code, e.message)
                self._ui.show_message(f"Could not get your initial location: {e.message}", error=True)
                return None

            try:
                session_id = await self._store.push(SESSIONS_ROOT, new_session_record(ctx.user_id, fix))
            except StoreError:
                logger.exception("Failed to create tracking session for user %s", ctx.user_id)
                self._ui.show_message("Could not start trip tracking. Please try again.", error=True)
                return None

            ctx.session_id = session_id
            ctx.status = transition(None, SessionEvent.START)
            ctx.last_location = fix
            ctx.panic_active = False
            logger.info("Session started: %s (user=%s)", session_id[:8], ctx.user_id)

            self.link = tracking_link(session_id, self._base_url)
            self._ui.show_link(self.link)
            await self._notifier.notify_contacts(ctx.user_id, self.link)

            self._ui.show_tracking(True)
            self._ui.set_status("Tracking active. Share the link manually if needed.")
            await self._attach_checks()
            # The initial fix is already persisted; it seeds the throttle
            self._start_watch(seed=fix)
            self.cycle.start()
            return session_id
        finally:
            self._ui.set_busy(False)

    async def stop_tracking(self) -> None:
        """active -> cancelled (terminal). A no-op when not tracking."""
        ctx = self.ctx
        if not ctx.is_tracking:
            return
        session_id = ctx.session_id
        try:
            next_status = transition(ctx.status, SessionEvent.STOP)
        except InvalidTransition:
            logger.warning("Stopping session %s from unexpected state %s", session_id[:8], ctx.status)
            next_status = SessionStatus.CANCELLED

        self._unwind()
        self._ui.show_message("Trip tracking ended.")
        self._ui.set_status("Tracking ended.")

        now = now_iso()
        values: dict[str, object] = {"endTime": now}
        if next_status == SessionStatus.CANCELLED:
            values["status"] = SessionStatus.CANCELLED.value
        else:
            # The panic stays visible to the observer; only the trip ends
            values["lastEventTimestamp"] = now
            logger.warning("Tracking ended during silent panic on session %s", session_id[:8])
        try:
            await self._store.update(session_path(session_id), values)
        except StoreError:
            logger.exception("Failed to mark session %s as ended", session_id[:8])

        logger.info("Session ended: %s", session_id[:8])
        ctx.reset()
        self.link = None
        self._ui.show_tracking(False)

    async def on_teardown(self) -> None:
        """Fail-safe for the runtime going away mid-session.

        active -> connection_lost; a panic keeps its status. Only status
        and lastEventTimestamp are written, the record is never erased.
        """
        ctx = self.ctx
        if not ctx.is_tracking:
            return
        session_id = ctx.session_id
        try:
            next_status = transition(ctx.status, SessionEvent.TEARDOWN)
        except InvalidTransition:
            logger.warning("Teardown from unexpected state %s", ctx.status)
            next_status = ctx.status

        values: dict[str, object] = {"lastEventTimestamp": now_iso()}
        if next_status is not None and next_status != ctx.status:
            values["status"] = next_status.value
        try:
            await self._store.update(session_path(session_id), values)
            logger.warning("Connection lost on session %s; status updated on server", session_id[:8])
        except StoreError:
            logger.exception("Failed to record connection loss for session %s", session_id[:8])

        self._unwind()
        self.contacts.unwatch()
        ctx.reset()

    async def close(self) -> None:
        """Detach everything without touching the session record."""
        self._unwind()
        self.contacts.unwatch()

    # ── Location stream ──────────────────────────────────────────────────

    async def handle_fix(self, fix: LocationFix) -> None:
        """Throttle a raw fix; persist it if accepted."""
        ctx = self.ctx
        if ctx.session_id is None:
            return
        decision = self.throttle.accept(fix)
        if not decision.write:
            return

        logger.debug(
            "Writing fix for %s (%s, %.1fm)", ctx.session_id[:8], decision.reason, decision.distance_meters
        )
        ctx.last_location = fix
        record = fix.to_record()
        try:
            await self._store.set(self._path("liveLocation"), record)
            await self._store.push(self._path("path"), record)
            beat = await self._store.transaction(self._path(), self._heartbeat)
            if beat is not None and "status" in beat:
                logger.info("Session %s was marked connection_lost while live; restored", ctx.session_id[:8])
            if decision.anomaly:
                await self._store.update(
                    self._path(), {"anomalyDetected": True, "lastEventTimestamp": now_iso()}
                )
        except StoreError:
            logger.exception("Failed to persist location for session %s", ctx.session_id[:8])
            self._ui.show_message(
                "Could not update your location. The shared session may be out of date.", error=True
            )
            return

        if decision.anomaly:
            logger.warning("Anomalous movement flagged on session %s", ctx.session_id[:8])
            if self._escalate_anomaly:
                await self.trigger_silent_panic(SessionEvent.ANOMALY_ESCALATED)

    @staticmethod
    def _heartbeat(record: object) -> dict[str, object] | None:
        """Refresh the heartbeat; a live device undoes a server-side connection_lost."""
        if not isinstance(record, dict):
            return None
        now = now_iso()
        values: dict[str, object] = {"heartbeat": now}
        if record.get("status") == SessionStatus.CONNECTION_LOST.value:
            values["status"] = transition(SessionStatus.CONNECTION_LOST, SessionEvent.RESUME).value
            values["lastEventTimestamp"] = now
        return values

    async def handle_fix_error(self, error: GeolocationError) -> None:
        """Mid-session sampling error: reported, tracking continues."""
        logger.error("Location sampling error (%s): %s", error.code, error.message)
        self._ui.set_status(f"Tracking error: {error.message}")

    # ── Panic ────────────────────────────────────────────────────────────

    async def answer_safety_check(self, safe: bool) -> None:
        await self.cycle.answer(safe)

    async def confirm_safety(self) -> None:
        if self.ctx.session_id is None:
            return
        try:
            await self._store.update(self._path(), {"userSafetyConfirmation": now_iso()})
            logger.info("Safety confirmation recorded on session %s", self.ctx.session_id[:8])
        except StoreError:
            logger.exception("Failed to record safety confirmation")

    async def trigger_silent_panic(self, event: SessionEvent = SessionEvent.WELLBEING_DENIED) -> None:
        """active -> panic, visible only in the store."""
        ctx = self.ctx
        if ctx.session_id is None:
            logger.error("No tracking session; silent alert could not be sent")
            return
        try:
            next_status = transition(ctx.status, event)
        except InvalidTransition as e:
            logger.info("Silent panic ignored: %s", e)
            return

        ctx.panic_active = True
        ctx.status = next_status
        self.cycle.stop()
        try:
            await self._store.update(
                self._path(),
                {"status": next_status.value, "silentMode": True, "lastEventTimestamp": now_iso()},
            )
        except StoreError:
            # No UI fallback: a visible error would reveal the panic
            logger.exception("Failed to send silent alert for session %s", ctx.session_id[:8])
            return
        logger.warning("Silent alert sent on session %s (%s); screen unchanged", ctx.session_id[:8], event.value)

    async def cancel_panic(self) -> None:
        """panic -> active; restarts the wellbeing cycle."""
        ctx = self.ctx
        if ctx.session_id is None:
            logger.warning("Panic cancel requested without a session")
            return
        try:
            next_status = transition(ctx.status, SessionEvent.PANIC_CANCELLED)
        except InvalidTransition as e:
            logger.info("Panic cancel ignored: %s", e)
            return

        self._ui.hide_emergency_action()
        try:
            await self._store.update(
                self._path(),
                {"status": next_status.value, "silentMode": False, "lastEventTimestamp": now_iso()},
            )
        except StoreError:
            logger.exception("Failed to revert session %s to active", ctx.session_id[:8])
            self._ui.show_message(
                "Could not cancel the alert on the server. Tracking may be inconsistent.", error=True
            )
            return

        ctx.panic_active = False
        ctx.status = next_status
        self._ui.show_message("Alert cancelled. Tracking continues.")
        logger.info("Panic cancelled on session %s", ctx.session_id[:8])
        self.cycle.start()

    # ── Observer check ───────────────────────────────────────────────────

    async def request_check(self) -> bool:
        if self.ctx.session_id is None:
            self._ui.show_message("Start tracking to be able to check on your contact.", error=True)
            return False
        try:
            await self.checks.request()
        except StoreError:
            logger.exception("Failed to send check request")
            self._ui.show_message("Error sending the check to your contact.", error=True)
            return False
        self._ui.show_message("Check sent to your contact. Waiting for a reply...")
        return True

    async def share_link(self) -> bool:
        link = self.link
        if link is None and self.ctx.session_id is not None:
            link = self.link = tracking_link(self.ctx.session_id, self._base_url)
        return await share_tracking_link(self._share_sheet, self._ui, link)

    # ── Resume ───────────────────────────────────────────────────────────

    async def resume_active_session(self, user_id: str) -> str | None:
        """Re-enter an unfinished session after sign-in. Returns its id or None."""
        if not user_id:
            return None
        self.ctx.user_id = user_id
        logger.info("Checking for unfinished sessions for user %s", user_id)
        try:
            session = await self._find_resumable(user_id)
        except StoreError:
            logger.exception("Failed to look up sessions to resume")
            self._ui.show_message("Error checking previous sessions.", error=True)
            return None
        if session is None:
            logger.info("No session to resume for user %s", user_id)
            return None
        await self._resume_into(session)
        return session.session_id

    async def _resume_into(self, session: Session) -> None:
        ctx = self.ctx
        logger.warning("Resuming session %s (status=%s)", session.session_id[:8], session.status.value)
        ctx.session_id = session.session_id
        ctx.panic_active = is_panic(session.status)
        ctx.last_location = session.last_known_location
        ctx.status = transition(session.status, SessionEvent.RESUME)
        self.link = tracking_link(session.session_id, self._base_url)

        self._ui.show_tracking(True)
        self._ui.set_status("Tracking (resumed) active.")
        await self._attach_checks()
        self._start_watch(seed=ctx.last_location)
        if ctx.panic_active:
            self.cycle.stop()
        else:
            self.cycle.start()

        if session.status == SessionStatus.CONNECTION_LOST:
            try:
                await self._store.update(
                    self._path(), {"status": ctx.status.value, "lastEventTimestamp": now_iso()}
                )
            except StoreError:
                logger.exception("Failed to restore session %s to active", session.session_id[:8])
                self._ui.show_message("Could not restore the session status. Tracking may be inconsistent.", error=True)

    # ── Contacts ─────────────────────────────────────────────────────────

    async def load_contacts(self, user_id: str | None = None) -> None:
        if user_id:
            self.ctx.user_id = user_id
        if not self.ctx.user_id:
            logger.warning("Cannot load contacts: no signed-in user")
            return
        try:
            await self.contacts.watch(self.ctx.user_id, self._ui.render_contacts)
        except StoreError:
            logger.exception("Failed to listen to contacts")
            self._ui.show_message("Could not load your trusted contacts.", error=True)

    async def add_contact(self, name: str, detail: str) -> TrustedContact | None:
        if not self.ctx.user_id:
            self._ui.show_message("Sign in to add contacts.", error=True)
            return None
        self._ui.set_busy(True)
        try:
            contact = await self.contacts.add(self.ctx.user_id, name, detail)
        except InvalidContact as e:
            self._ui.show_message(str(e), error=True)
            return None
        except StoreError as e:
            logger.exception("Failed to add contact")
            self._ui.show_message(f"Error adding contact: {e}", error=True)
            return None
        finally:
            self._ui.set_busy(False)
        self._ui.show_message("Contact added.")
        return contact

    async def remove_contact(self, contact_id: str) -> bool:
        if not self.ctx.user_id or not contact_id:
            logger.error("Cannot remove contact: missing user or contact id")
            return False
        self._ui.set_busy(True)
        try:
            await self.contacts.remove(self.ctx.user_id, contact_id)
        except StoreError as e:
            logger.exception("Failed to remove contact")
            self._ui.show_message(f"Error removing contact: {e}", error=True)
            return False
        finally:
            self._ui.set_busy(False)
        self._ui.show_message("Contact removed.")
        return True
