"""Tracking-link sharing: native share sheet with a messaging-app fallback."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol
from urllib.parse import quote, urlencode

from safetrack.config import settings
from safetrack.ui import TrackingUI

logger = logging.getLogger(__name__)

WHATSAPP_SEND_URL = "https://api.whatsapp.com/send"


class ShareCancelled(Exception):
    """The user dismissed the share sheet."""


class ShareUnavailable(Exception):
    """The host has no native share sheet."""


@dataclass(frozen=True)
class SharePayload:
    title: str
    text: str
    url: str


class ShareSheet(Protocol):
    async def share(self, payload: SharePayload) -> None:
        """Open the native share sheet. Raises ShareCancelled / ShareUnavailable."""
        ...

    def open_url(self, url: str) -> bool:
        """Open ``url`` in a new window; False if it was blocked."""
        ...


def tracking_link(session_id: str, base_url: str | None = None) -> str:
    base = (base_url or settings.tracker_base_url).rstrip("/")
    return f"{base}/tracker.html?{urlencode({'session': session_id})}"


def build_share_payload(link: str, app_name: str | None = None) -> SharePayload:
    name = app_name or settings.app_name
    return SharePayload(
        title=f"Follow my trip - {name}",
        text=f"{name} ALERT: I'm starting my trip tracking. Follow my live location: {link}",
        url=link,
    )


def whatsapp_share_url(text: str) -> str:
    return f"{WHATSAPP_SEND_URL}?text={quote(text, safe='')}"


async def share_tracking_link(sheet: ShareSheet | None, ui: TrackingUI, link: str | None) -> bool:
    """Share ``link``; returns True if a share surface was opened."""
    if not link:
        ui.show_message("Start tracking to generate a link to share.", error=True)
        return False

    payload = build_share_payload(link)
    if sheet is not None:
        try:
            await sheet.share(payload)
            ui.show_message("Sharing started. Pick your contacts.")
            return True
        except ShareCancelled:
            logger.info("Share cancelled by user")
            return False
        except ShareUnavailable:
            logger.info("Native share not supported, using messaging fallback")
        except Exception:
            logger.error("Native share failed, using messaging fallback", exc_info=True)
        return _open_fallback(sheet, ui, payload.text)

    ui.show_message("Copy the link and paste it into your messaging app.", error=True)
    return False


def _open_fallback(sheet: ShareSheet, ui: TrackingUI, text: str) -> bool:
    if sheet.open_url(whatsapp_share_url(text)):
        ui.show_message("Opening WhatsApp to share...")
        return True
    ui.show_message("Could not open WhatsApp automatically. Copy the link and paste it in the app.", error=True)
    return False
