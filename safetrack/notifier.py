"""Notifier — best-effort alerts to trusted contacts at session start.

Routing per contact:
- ``@handle``              -> handle relay
- pre-authorized phone     -> phone relay (with that number's API key)
- anything else            -> skipped, reason logged

Fire-and-forget: failures are swallowed per contact and only an aggregate
count reaches the user.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from safetrack.channels.callmebot import HandleRelay, PhoneRelay
from safetrack.channels.protocol import NotificationMessage, Relay, SendResult
from safetrack.config import AuthorizedPhone, settings
from safetrack.contacts import ContactBook, ContactKind, TrustedContact, clean_phone
from safetrack.store.protocol import StoreError
from safetrack.ui import TrackingUI

logger = logging.getLogger(__name__)


@dataclass
class NotifySummary:
    """Aggregate outcome of one notification round."""
    attempted: int = 0
    succeeded: int = 0
    skipped: list[tuple[str, str]] = field(default_factory=list)  # (contact name, reason)
    error: str = ""

    @property
    def failed(self) -> int:
        return self.attempted - self.succeeded


def build_alert_text(link: str, app_name: str | None = None) -> str:
    return f"{app_name or settings.app_name} ALERT: I'm starting my trip tracking. Location: {link}"


class Notifier:
    """Dispatches the session-start alert to every eligible trusted contact."""

    def __init__(
        self,
        contacts: ContactBook,
        ui: TrackingUI,
        handle_relay: Relay | None = None,
        phone_relays: dict[str, tuple[Relay, str]] | None = None,
    ):
        self._contacts = contacts
        self._ui = ui
        self._handle_relay = handle_relay or HandleRelay()
        # local digits -> (relay, number to dial)
        self._phone_relays = (
            phone_relays if phone_relays is not None else self.phone_relays_from(settings.authorized_phones)
        )

    @staticmethod
    def phone_relays_from(phones: list[AuthorizedPhone]) -> dict[str, tuple[Relay, str]]:
        return {
            clean_phone(entry.local_digits): (PhoneRelay(api_key=entry.api_key), entry.international_number)
            for entry in phones
        }

    def _route(self, contact: TrustedContact) -> tuple[Relay, str] | str:
        """(relay, recipient) for an eligible contact, else the skip reason."""
        kind = contact.kind
        if kind == ContactKind.HANDLE:
            return self._handle_relay, contact.detail
        if kind == ContactKind.PHONE:
            entry = self._phone_relays.get(clean_phone(contact.detail))
            if entry is None:
                return "phone number has not opted in to the phone relay"
            return entry
        if kind == ContactKind.EMAIL:
            return "no relay delivers to email"
        return "unrecognised contact detail"

    async def notify_contacts(self, user_id: str, link: str) -> NotifySummary:
        summary = NotifySummary()
        try:
            contacts = await self._contacts.list(user_id)
        except StoreError as e:
            logger.exception("Failed to load contacts for user %s", user_id)
            summary.error = str(e)
            self._ui.show_message("Error fetching contacts to notify. Check your connection.", error=True)
            return summary

        if not contacts:
            logger.info("No trusted contacts to notify for user %s", user_id)
            self._ui.show_message("No contacts registered. Add trusted contacts first.", error=True)
            return summary

        message = NotificationMessage(body=build_alert_text(link), metadata={"link": link})
        sends = []
        for contact in contacts:
            route = self._route(contact)
            if isinstance(route, str):
                logger.info("Skipping contact %s: %s", contact.name, route)
                summary.skipped.append((contact.name, route))
                continue
            relay, recipient = route
            sends.append(relay.send(recipient, message))

        summary.attempted = len(sends)
        if not sends:
            self._ui.show_message(
                "No @handle contact or authorized phone number found for automatic notification.",
                error=True,
            )
            return summary

        results = await asyncio.gather(*sends, return_exceptions=True)
        for result in results:
            if isinstance(result, SendResult) and result.success:
                summary.succeeded += 1
            elif isinstance(result, BaseException):
                logger.warning("Relay raised instead of reporting failure", exc_info=result)

        logger.info("Notified %d/%d contacts for user %s", summary.succeeded, summary.attempted, user_id)
        if summary.succeeded:
            self._ui.show_message(f"Notification attempt sent to {summary.succeeded} contact(s).")
        return summary
