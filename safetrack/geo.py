"""Geolocation primitives — fixes, distance, and position samplers.

Provides:
- LocationFix: a single position sample in the shape the store persists
- haversine_distance: the one great-circle formula used everywhere
- GeoSampler: protocol for one-shot and continuous position sampling
- ReplaySampler: sampler that replays recorded fixes (CLI demos, tests)

Sampler callbacks are coroutines. A sampler awaits each callback before
emitting the next fix, so consumers see fixes strictly in order.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
import math
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

EARTH_RADIUS_METERS = 6_371_000.0


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: str | datetime) -> datetime:
    """Parse an ISO timestamp as stored (accepts a trailing ``Z``)."""
    if isinstance(value, datetime):
        parsed = value
    elif not isinstance(value, str):
        raise TypeError(f"Expected an ISO timestamp string, got {type(value).__name__}")
    else:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class GeolocationError(Exception):
    """Raised when no position fix can be obtained."""

    PERMISSION_DENIED = "permission_denied"
    POSITION_UNAVAILABLE = "position_unavailable"
    TIMEOUT = "timeout"

    def __init__(self, message: str, code: str = POSITION_UNAVAILABLE):
        super().__init__(message)
        self.code = code
        self.message = message


@dataclass(frozen=True)
class LocationFix:
    """A single geolocation sample."""

    latitude: float
    longitude: float
    accuracy: float
    timestamp: datetime
    heading: float | None = None
    speed: float | None = None

    def to_record(self) -> dict[str, Any]:
        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "accuracy": self.accuracy,
            "heading": self.heading,
            "speed": self.speed,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> LocationFix:
        return cls(
            latitude=float(record["latitude"]),
            longitude=float(record["longitude"]),
            accuracy=float(record.get("accuracy") or 0.0),
            timestamp=parse_timestamp(record["timestamp"]),
            heading=record.get("heading"),
            speed=record.get("speed"),
        )


def haversine_distance(a: LocationFix, b: LocationFix) -> float:
    """Great-circle distance in meters between two fixes (degrees in, meters out)."""
    phi1 = math.radians(a.latitude)
    phi2 = math.radians(b.latitude)
    d_phi = math.radians(b.latitude - a.latitude)
    d_lambda = math.radians(b.longitude - a.longitude)

    h = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    # Clamp: rounding can push h marginally outside [0, 1] near antipodes
    h = min(1.0, max(0.0, h))
    return 2 * EARTH_RADIUS_METERS * math.atan2(math.sqrt(h), math.sqrt(1 - h))


@dataclass(frozen=True)
class PositionOptions:
    """Sampling options: high accuracy, acquisition timeout, no stale cache."""

    high_accuracy: bool = True
    timeout_seconds: float = 10.0
    maximum_age_seconds: float = 0.0


FixCallback = Callable[[LocationFix], Awaitable[None]]
ErrorCallback = Callable[[GeolocationError], Awaitable[None]]


@runtime_checkable
class GeoSampler(Protocol):
    """Protocol for position providers."""

    async def get_current_position(self, options: PositionOptions) -> LocationFix:
        """One-shot fix. Raises GeolocationError when unavailable."""
        ...

    def watch_position(
        self,
        on_fix: FixCallback,
        on_error: ErrorCallback,
        options: PositionOptions,
    ) -> int:
        """Start continuous sampling. Returns a watch id."""
        ...

    def clear_watch(self, watch_id: int) -> None:
        """Stop a watch. Unknown or already-cleared ids are ignored."""
        ...


class ReplaySampler:
    """Replays a recorded sequence of fixes (or errors) at a fixed pace.

    The first entry answers ``get_current_position``; a watch replays the
    remaining entries. A ``GeolocationError`` entry is delivered to the
    error callback instead of the fix callback.
    """

    def __init__(
        self,
        samples: Iterable[LocationFix | GeolocationError],
        interval_seconds: float = 1.0,
        restamp: bool = False,
    ):
        self._samples = list(samples)
        self._interval = interval_seconds
        self._restamp = restamp
        self._ids = itertools.count(1)
        self._watches: dict[int, asyncio.Task] = {}

    @classmethod
    def from_jsonl(cls, path: str | Path, **kwargs: Any) -> ReplaySampler:
        """Load fixes from a JSON-lines file of fix records."""
        samples: list[LocationFix | GeolocationError] = []
        with open(path, encoding="utf-8") as fh:
            for line in fh:
                line = line.strip()
                if not line:
                    continue
                record = json.loads(line)
                if "error" in record:
                    samples.append(GeolocationError(record["error"], record.get("code", GeolocationError.POSITION_UNAVAILABLE)))
                else:
                    samples.append(LocationFix.from_record(record))
        return cls(samples, **kwargs)

    def _stamp(self, fix: LocationFix) -> LocationFix:
        return replace(fix, timestamp=utc_now()) if self._restamp else fix

    async def get_current_position(self, options: PositionOptions) -> LocationFix:
        if not self._samples:
            raise GeolocationError("No position available", GeolocationError.POSITION_UNAVAILABLE)
        first = self._samples[0]
        if isinstance(first, GeolocationError):
            raise first
        return self._stamp(first)

    def watch_position(
        self,
        on_fix: FixCallback,
        on_error: ErrorCallback,
        options: PositionOptions,
    ) -> int:
        watch_id = next(self._ids)
        self._watches[watch_id] = asyncio.get_running_loop().create_task(
            self._replay(watch_id, on_fix, on_error)
        )
        return watch_id

    def clear_watch(self, watch_id: int) -> None:
        task = self._watches.pop(watch_id, None)
        if task is not None:
            task.cancel()

    @property
    def active_watches(self) -> int:
        return len(self._watches)

    async def _replay(self, watch_id: int, on_fix: FixCallback, on_error: ErrorCallback) -> None:
        try:
            for sample in self._samples[1:]:
                await asyncio.sleep(self._interval)
                if isinstance(sample, GeolocationError):
                    await on_error(sample)
                else:
                    await on_fix(self._stamp(sample))
            logger.info("Replay watch %d exhausted", watch_id)
        finally:
            self._watches.pop(watch_id, None)
