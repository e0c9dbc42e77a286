"""Tests for tracking-link sharing."""

from __future__ import annotations

from urllib.parse import parse_qs, urlparse

import pytest

from safetrack.share import (
    ShareCancelled,
    ShareUnavailable,
    build_share_payload,
    share_tracking_link,
    tracking_link,
    whatsapp_share_url,
)

LINK = "https://track.example/tracker.html?session=abc"


class FakeShareSheet:
    def __init__(self, share_error: Exception | None = None, can_open: bool = True):
        self.share_error = share_error
        self.can_open = can_open
        self.shared = []
        self.opened = []

    async def share(self, payload):
        self.shared.append(payload)
        if self.share_error is not None:
            raise self.share_error

    def open_url(self, url: str) -> bool:
        self.opened.append(url)
        return self.can_open


class TestLinks:
    def test_tracking_link(self):
        assert tracking_link("-Nabc", "https://track.example/") == "https://track.example/tracker.html?session=-Nabc"

    def test_payload_carries_link(self):
        payload = build_share_payload(LINK, app_name="SafeTrack")
        assert payload.url == LINK
        assert LINK in payload.text
        assert payload.title == "Follow my trip - SafeTrack"

    def test_whatsapp_url_encodes_text(self):
        url = whatsapp_share_url(f"Follow me: {LINK}")
        assert parse_qs(urlparse(url).query)["text"] == [f"Follow me: {LINK}"]


class TestShareTrackingLink:
    """Native sheet first, messaging app as fallback."""

    @pytest.mark.asyncio
    async def test_native_share(self, ui):
        sheet = FakeShareSheet()
        assert await share_tracking_link(sheet, ui, LINK)
        assert sheet.shared[0].url == LINK
        assert sheet.opened == []

    @pytest.mark.asyncio
    async def test_user_cancel_is_not_an_error(self, ui):
        sheet = FakeShareSheet(share_error=ShareCancelled())
        assert not await share_tracking_link(sheet, ui, LINK)
        assert ui.errors == []
        assert sheet.opened == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [ShareUnavailable(), RuntimeError("sheet crashed")])
    async def test_fallback_to_messaging_app(self, ui, error):
        sheet = FakeShareSheet(share_error=error)
        assert await share_tracking_link(sheet, ui, LINK)
        assert sheet.opened[0].startswith("https://api.whatsapp.com/send?text=")
        assert ui.infos == ["Opening WhatsApp to share..."]

    @pytest.mark.asyncio
    async def test_blocked_fallback_asks_to_copy(self, ui):
        sheet = FakeShareSheet(share_error=ShareUnavailable(), can_open=False)
        assert not await share_tracking_link(sheet, ui, LINK)
        assert "Copy the link" in ui.errors[0]

    @pytest.mark.asyncio
    async def test_no_link(self, ui):
        assert not await share_tracking_link(FakeShareSheet(), ui, None)
        assert ui.errors == ["Start tracking to generate a link to share."]

    @pytest.mark.asyncio
    async def test_no_share_surface(self, ui):
        assert not await share_tracking_link(None, ui, LINK)
        assert ui.errors == ["Copy the link and paste it into your messaging app."]
