"""Trusted contacts — validation, formatting, and the per-user contact list.

A contact detail is one of:
- an ``@handle`` (handle relay)
- a BR phone number, 10 or 11 digits once punctuation is stripped
- an email address (accepted, but no relay delivers to it)

Contacts live at ``users/{userId}/contacts/{contactId}`` and are read-only
to the session core.
"""

from __future__ import annotations

import inspect
import logging
import re
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator

from safetrack.store.protocol import SessionStore, Subscription

logger = logging.getLogger(__name__)

_EMAIL_PATTERN = re.compile(
    r'^[^<>()\[\]\\.,;:\s@"]+(\.[^<>()\[\]\\.,;:\s@"]+)*'
    r"@([A-Za-z0-9-]+\.)+[A-Za-z]{2,}$"
)
_NON_DIGITS = re.compile(r"\D")


class ContactKind(str, Enum):
    HANDLE = "handle"
    PHONE = "phone"
    EMAIL = "email"


class InvalidContact(ValueError):
    """Raised when a contact fails validation at write time."""


def clean_phone(value: str) -> str:
    return _NON_DIGITS.sub("", value)


def is_valid_phone(value: str) -> bool:
    return len(clean_phone(value)) in (10, 11)


def is_handle(value: str) -> bool:
    return isinstance(value, str) and value.startswith("@") and len(value) > 1


def is_valid_email(value: str) -> bool:
    return bool(_EMAIL_PATTERN.match(str(value).lower()))


def classify_detail(detail: str) -> ContactKind | None:
    """Which kind of detail this is, or None if it is none of them."""
    if is_handle(detail):
        return ContactKind.HANDLE
    if "@" in detail:
        return ContactKind.EMAIL if is_valid_email(detail) else None
    if is_valid_phone(detail):
        return ContactKind.PHONE
    return None


def mask_phone(value: str) -> str:
    """Format typed digits as ``(11) 98765-4321``.

    Values containing ``@`` (handles, emails) are returned unchanged.
    """
    if "@" in value:
        return value
    digits = clean_phone(value)
    digits = re.sub(r"^(\d{2})(\d)", r"(\1) \2", digits)
    return re.sub(r"(\d)(\d{4})$", r"\1-\2", digits)


class TrustedContact(BaseModel):
    """A person notified out-of-band when tracking starts."""

    name: str = Field(min_length=1)
    detail: str = Field(min_length=1)
    contact_id: str = Field(default="", exclude=True)

    @field_validator("name", "detail", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @field_validator("detail")
    @classmethod
    def _valid_detail(cls, value: str) -> str:
        if classify_detail(value) is None:
            raise ValueError(
                "Invalid format. Use a BR phone (10/11 digits), an @handle or an email."
            )
        return value

    @property
    def kind(self) -> ContactKind:
        return classify_detail(self.detail)

    def to_record(self) -> dict[str, str]:
        return self.model_dump()


def contacts_path(user_id: str, contact_id: str | None = None) -> str:
    base = f"users/{user_id}/contacts"
    return f"{base}/{contact_id}" if contact_id else base


def parse_contacts(records: dict[str, Any] | None) -> list[TrustedContact]:
    """Stored records to contacts, skipping entries without a usable detail."""
    contacts: list[TrustedContact] = []
    for contact_id, record in (records or {}).items():
        if not isinstance(record, dict) or not record.get("detail"):
            logger.warning("Skipping stored contact without detail: %s", contact_id)
            continue
        try:
            contacts.append(TrustedContact(contact_id=contact_id, **record))
        except ValidationError:
            # Stored before validation tightened; keep it visible, unclassified
            contacts.append(
                TrustedContact.model_construct(
                    contact_id=contact_id,
                    name=record.get("name") or "Unnamed",
                    detail=record["detail"],
                )
            )
    return contacts


ContactsCallback = Callable[[list[TrustedContact]], Awaitable[None] | None]


class ContactBook:
    """Per-user trusted contact list with a single live listener."""

    def __init__(self, store: SessionStore):
        self._store = store
        self._subscription: Subscription | None = None

    @property
    def watching(self) -> bool:
        return self._subscription is not None

    async def add(self, user_id: str, name: str, detail: str) -> TrustedContact:
        """Validate and store a contact.

        Raises:
            InvalidContact: if name or detail is missing or malformed
        """
        if not (name or "").strip() or not (detail or "").strip():
            raise InvalidContact("Fill in the contact's name and detail (phone or @handle).")
        try:
            contact = TrustedContact(name=name, detail=detail)
        except ValidationError as exc:
            raise InvalidContact(
                "Invalid format. Use a BR phone (10/11 digits), an @handle or an email."
            ) from exc
        contact.contact_id = await self._store.push(contacts_path(user_id), contact.to_record())
        logger.info("Contact added for user %s (%s)", user_id, contact.kind.value)
        return contact

    async def remove(self, user_id: str, contact_id: str) -> None:
        if not user_id or not contact_id:
            raise InvalidContact("Missing user or contact id")
        await self._store.remove(contacts_path(user_id, contact_id))
        logger.info("Contact %s removed for user %s", contact_id, user_id)

    async def list(self, user_id: str) -> list[TrustedContact]:
        return parse_contacts(await self._store.get(contacts_path(user_id)))

    async def watch(self, user_id: str, on_change: ContactsCallback) -> None:
        """Stream the contact list to ``on_change``, replacing any previous listener."""
        self.unwatch()

        async def _deliver(records: Any) -> None:
            result = on_change(parse_contacts(records))
            if inspect.isawaitable(result):
                await result

        self._subscription = await self._store.subscribe(contacts_path(user_id), _deliver)
        logger.debug("Contacts listener attached for user %s", user_id)

    def unwatch(self) -> None:
        if self._subscription is None:
            return
        try:
            self._store.unsubscribe(self._subscription)
            logger.debug("Removed previous contacts listener")
        except Exception:
            logger.error("Failed to remove contacts listener", exc_info=True)
        self._subscription = None
