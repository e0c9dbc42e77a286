"""Location throttle and movement anomaly detection.

Decides which raw fixes become durable writes:
- A fix is written if more than ``interval_seconds`` passed since the last
  write OR it lies more than ``distance_meters`` from the last written fix
- The first fix ever seen is always written

Anomaly detection runs on the same cadence as writes: the implied speed
between two consecutive accepted fixes (fix timestamps, not wall clock)
above ``anomaly_speed_mps`` flags an anomaly. Non-positive elapsed time
skips the check.

The throttle is pure state: no I/O, strictly sequential callers.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from safetrack.config import settings
from safetrack.geo import LocationFix, haversine_distance

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ThrottleDecision:
    """Result of ``LocationThrottle.accept``."""

    write: bool
    anomaly: bool = False
    distance_meters: float = 0.0
    speed_mps: float | None = None
    reason: str = ""  # first | interval | distance | throttled


class LocationThrottle:
    """Filters raw fixes into accepted writes and flags implausible movement."""

    def __init__(
        self,
        interval_seconds: float | None = None,
        distance_meters: float | None = None,
        anomaly_speed_mps: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.interval_seconds = (
            settings.throttle_interval_seconds if interval_seconds is None else interval_seconds
        )
        self.distance_meters = (
            settings.throttle_distance_meters if distance_meters is None else distance_meters
        )
        self.anomaly_speed_mps = (
            settings.anomaly_speed_mps if anomaly_speed_mps is None else anomaly_speed_mps
        )
        self._clock = clock
        self._last_fix: LocationFix | None = None
        self._last_write_time: float | None = None
        self.anomaly_detected = False

    @property
    def last_fix(self) -> LocationFix | None:
        return self._last_fix

    def reset(self, seed: LocationFix | None = None, *, now: float | None = None) -> None:
        """Restart the throttle timer, optionally seeding the last written fix.

        Used at session start (seeded with the initial fix, which is already
        persisted) and on resume (seeded with the last known location).
        """
        self._last_fix = seed
        self._last_write_time = self._clock() if now is None else now
        self.anomaly_detected = False

    def accept(self, fix: LocationFix, *, now: float | None = None) -> ThrottleDecision:
        """Decide whether ``fix`` is written and whether it is anomalous."""
        current = self._clock() if now is None else now
        previous = self._last_fix

        if previous is None:
            self._last_fix = fix
            self._last_write_time = current
            return ThrottleDecision(write=True, reason="first")

        distance = haversine_distance(previous, fix)
        elapsed_since_write = (
            float("inf") if self._last_write_time is None else current - self._last_write_time
        )

        if elapsed_since_write > self.interval_seconds:
            reason = "interval"
        elif distance > self.distance_meters:
            reason = "distance"
        else:
            return ThrottleDecision(write=False, distance_meters=distance, reason="throttled")

        self._last_write_time = current
        self._last_fix = fix

        speed = self._implied_speed(previous, fix, distance)
        anomaly = speed is not None and speed > self.anomaly_speed_mps
        if anomaly:
            self.anomaly_detected = True
            logger.warning(
                "Anomalous movement: %.1f m/s over %.1f m (limit %.1f m/s)",
                speed,
                distance,
                self.anomaly_speed_mps,
            )

        return ThrottleDecision(
            write=True,
            anomaly=anomaly,
            distance_meters=distance,
            speed_mps=speed,
            reason=reason,
        )

    @staticmethod
    def _implied_speed(previous: LocationFix, fix: LocationFix, distance: float) -> float | None:
        elapsed = (fix.timestamp - previous.timestamp).total_seconds()
        if elapsed <= 0:
            return None
        return distance / elapsed
