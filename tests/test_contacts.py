"""Tests for trusted contacts.

Tests:
- Detail classification (handle, phone, email) and phone masking
- Write-time validation
- ContactBook add / list / remove and the single live listener
"""

from __future__ import annotations

import pytest

from safetrack.contacts import (
    ContactBook,
    ContactKind,
    InvalidContact,
    TrustedContact,
    classify_detail,
    clean_phone,
    contacts_path,
    is_valid_email,
    is_valid_phone,
    mask_phone,
    parse_contacts,
)

# ── Validation ────────────────────────────────────────────────────────────


class TestClassification:
    """What kind of detail a contact carries."""

    @pytest.mark.parametrize(
        "detail, kind",
        [
            ("@maria", ContactKind.HANDLE),
            ("(51) 98467-2843", ContactKind.PHONE),
            ("5133334444", ContactKind.PHONE),
            ("maria@example.com", ContactKind.EMAIL),
        ],
    )
    def test_valid_details(self, detail, kind):
        assert classify_detail(detail) == kind

    @pytest.mark.parametrize("detail", ["@", "12345", "519846728431", "maria@", "not a contact"])
    def test_invalid_details(self, detail):
        assert classify_detail(detail) is None

    def test_phone_digit_counts(self):
        assert is_valid_phone("51 9846-7284")
        assert is_valid_phone("(51) 98467-2843")
        assert not is_valid_phone("123456789")

    def test_email_case_insensitive(self):
        assert is_valid_email("Maria.Silva@Example.COM")

    def test_clean_phone(self):
        assert clean_phone("+55 (51) 98467-2843") == "5551984672843"


class TestMaskPhone:
    """Input echo formatting."""

    @pytest.mark.parametrize(
        "typed, shown",
        [
            ("51984672843", "(51) 98467-2843"),
            ("5133334444", "(51) 3333-4444"),
            ("519", "(51) 9"),
            ("5", "5"),
        ],
    )
    def test_masks_digits(self, typed, shown):
        assert mask_phone(typed) == shown

    def test_handles_pass_through(self):
        assert mask_phone("@maria_99") == "@maria_99"


class TestTrustedContact:
    def test_strips_whitespace(self):
        contact = TrustedContact(name="  Maria ", detail=" @maria ")
        assert contact.name == "Maria"
        assert contact.detail == "@maria"
        assert contact.kind == ContactKind.HANDLE

    def test_record_excludes_id(self):
        contact = TrustedContact(name="Maria", detail="@maria", contact_id="k1")
        assert contact.to_record() == {"name": "Maria", "detail": "@maria"}

    def test_parse_skips_entries_without_detail(self):
        contacts = parse_contacts({"a": {"name": "No detail"}, "b": {"name": "Ana", "detail": "@ana"}})
        assert [c.contact_id for c in contacts] == ["b"]

    def test_parse_keeps_legacy_invalid_entries(self):
        contacts = parse_contacts({"a": {"detail": "12345"}})
        assert contacts[0].name == "Unnamed"
        assert contacts[0].kind is None


# ── Contact book ──────────────────────────────────────────────────────────


class TestContactBook:
    """Per-user contact list in the store."""

    @pytest.mark.asyncio
    async def test_add_and_list(self, store):
        book = ContactBook(store)
        added = await book.add("u1", "Maria", "(51) 98467-2843")
        assert added.contact_id
        assert await store.get(contacts_path("u1", added.contact_id)) == {
            "name": "Maria",
            "detail": "(51) 98467-2843",
        }
        listed = await book.list("u1")
        assert [(c.contact_id, c.kind) for c in listed] == [(added.contact_id, ContactKind.PHONE)]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("name, detail", [("", "@maria"), ("Maria", "  "), ("Maria", "123")])
    async def test_add_rejects_invalid(self, store, name, detail):
        with pytest.raises(InvalidContact):
            await ContactBook(store).add("u1", name, detail)
        assert await store.get(contacts_path("u1")) is None

    @pytest.mark.asyncio
    async def test_remove(self, store):
        book = ContactBook(store)
        contact = await book.add("u1", "Maria", "@maria")
        await book.remove("u1", contact.contact_id)
        assert await book.list("u1") == []

    @pytest.mark.asyncio
    async def test_remove_requires_ids(self, store):
        with pytest.raises(InvalidContact):
            await ContactBook(store).remove("u1", "")

    @pytest.mark.asyncio
    async def test_watch_streams_list(self, store):
        book = ContactBook(store)
        snapshots = []
        await book.watch("u1", lambda contacts: snapshots.append([c.name for c in contacts]))
        await book.add("u1", "Maria", "@maria")
        await book.add("u1", "Ana", "@ana")
        assert snapshots == [[], ["Maria"], ["Maria", "Ana"]]

    @pytest.mark.asyncio
    async def test_rewatch_replaces_listener(self, store):
        book = ContactBook(store)
        first, second = [], []

        async def to_second(contacts):
            second.append(len(contacts))

        await book.watch("u1", first.append)
        await book.watch("u1", to_second)
        assert store.subscription_count == 1
        await book.add("u1", "Maria", "@maria")
        assert len(first) == 1
        assert second == [0, 1]
        book.unwatch()
        book.unwatch()
        assert not book.watching
        assert store.subscription_count == 0
