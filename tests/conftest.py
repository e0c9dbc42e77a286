"""Shared fixtures for the SafeTrack test suite."""

from __future__ import annotations

import pytest

# FastAPI imports pydantic.v1 lazily; importing it while freezegun has patched
# datetime.date fails with a metaclass conflict, so load it up front.
import pydantic.v1  # noqa: F401

from tests.fakes import FakeClock, FlakyStore, RecordingUI


@pytest.fixture
def store() -> FlakyStore:
    return FlakyStore()


@pytest.fixture
def ui() -> RecordingUI:
    return RecordingUI()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
