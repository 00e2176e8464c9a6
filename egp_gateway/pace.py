"""Pace derivation from raw GPS fixes.

A rolling window of speed segments, distance-weighted, with the usual GPS
noise handling:

- a long silence resets the window (new stretch of activity)
- sub-noise-floor movement keeps the previous anchor so slow progress still
  accumulates into a segment
- segments implying an unrealistic speed are discarded and the anchor stays
  where it was, so a single bad fix cannot poison the next segment either

Timestamps are unix seconds (float). Pace is seconds per mile.
"""

from __future__ import annotations

import logging
import math
import os
import re
from collections import deque
from dataclasses import dataclass
from typing import Deque, Optional

logger = logging.getLogger("egp_gateway.pace")

METERS_PER_MILE = 1609.344
EARTH_RADIUS_METERS = 6371000.0

_PACE_RE = re.compile(r"^(\d+):(\d{2})$")


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in meters."""
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    return EARTH_RADIUS_METERS * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def speed_to_pace(speed_mps: float) -> float:
    if speed_mps <= 0:
        return math.inf
    return METERS_PER_MILE / speed_mps


def pace_to_speed(pace_seconds: float) -> float:
    if pace_seconds <= 0 or not math.isfinite(pace_seconds):
        return 0.0
    return METERS_PER_MILE / pace_seconds


def format_pace(pace_seconds: Optional[float]) -> str:
    """Render seconds-per-mile as ``M:SS``; ``--:--`` when unknown."""
    if pace_seconds is None or not math.isfinite(pace_seconds) or pace_seconds <= 0:
        return "--:--"
    minutes = int(pace_seconds // 60)
    seconds = int(pace_seconds % 60)
    return f"{minutes}:{seconds:02d}"


def parse_pace(text: str) -> Optional[int]:
    """Parse ``M:SS`` into seconds per mile, or None when malformed."""
    m = _PACE_RE.match(str(text).strip())
    if not m:
        return None
    minutes, seconds = int(m.group(1)), int(m.group(2))
    if seconds >= 60:
        return None
    return minutes * 60 + seconds


@dataclass(frozen=True)
class LocationSample:
    latitude: float
    longitude: float
    timestamp: float
    accuracy: Optional[float] = None

    def is_well_formed(self) -> bool:
        try:
            if not all(math.isfinite(float(x)) for x in (self.latitude, self.longitude, self.timestamp)):
                return False
        except (TypeError, ValueError):
            return False
        return -90.0 <= self.latitude <= 90.0 and -180.0 <= self.longitude <= 180.0


@dataclass(frozen=True)
class SpeedSegment:
    speed: float
    distance: float
    duration: float
    timestamp: float


@dataclass(frozen=True)
class PaceWindowConfig:
    """Tuning for PaceWindow.

    Environment variables:
    - EGP_WINDOW_SIZE: number of segments averaged (default 5)
    - EGP_MIN_SEGMENT_METERS: noise floor in meters (default 5)
    - EGP_MAX_TIME_GAP_SECONDS: silence that resets the window (default 10)
    - EGP_MIN_MOVING_SPEED: below this average (m/s) pace is unknown (default 0.5)
    - EGP_MAX_REALISTIC_SPEED: segments above this (m/s) are jumps (default 10)
    """

    window_size: int = 5
    min_distance_meters: float = 5.0
    max_time_gap_seconds: float = 10.0
    min_moving_speed: float = 0.5
    max_realistic_speed: float = 10.0

    @classmethod
    def from_env(cls) -> "PaceWindowConfig":
        def _get_float(name: str, default: float) -> float:
            try:
                return float(os.getenv(name, str(default)).strip())
            except ValueError:
                return default

        window = int(_get_float("EGP_WINDOW_SIZE", cls.window_size))
        min_dist = _get_float("EGP_MIN_SEGMENT_METERS", cls.min_distance_meters)
        gap = _get_float("EGP_MAX_TIME_GAP_SECONDS", cls.max_time_gap_seconds)
        min_speed = _get_float("EGP_MIN_MOVING_SPEED", cls.min_moving_speed)
        max_speed = _get_float("EGP_MAX_REALISTIC_SPEED", cls.max_realistic_speed)

        # Clamp
        if window < 1:
            window = 1
        if min_dist < 0:
            min_dist = 0.0
        if gap <= 0:
            gap = cls.max_time_gap_seconds
        if min_speed < 0:
            min_speed = 0.0
        if max_speed <= min_speed:
            max_speed = cls.max_realistic_speed

        return cls(
            window_size=window,
            min_distance_meters=min_dist,
            max_time_gap_seconds=gap,
            min_moving_speed=min_speed,
            max_realistic_speed=max_speed,
        )


class PaceWindow:
    """Rolling, distance-weighted pace over the last ``window_size`` segments.

    Not thread-safe; the owning stabilizer serializes access.
    """

    def __init__(self, config: Optional[PaceWindowConfig] = None):
        self.config = config or PaceWindowConfig()
        self._segments: Deque[SpeedSegment] = deque(maxlen=self.config.window_size)
        self._anchor: Optional[LocationSample] = None
        self._last_timestamp: Optional[float] = None
        self.total_distance = 0.0
        self.rejected_jumps = 0

    def __len__(self) -> int:
        return len(self._segments)

    def reset(self) -> None:
        self._segments.clear()
        self._anchor = None
        self._last_timestamp = None
        self.total_distance = 0.0

    def add(self, sample: LocationSample) -> Optional[float]:
        """Feed one raw fix; return the current pace or None."""
        if not sample.is_well_formed():
            logger.debug("dropping malformed location sample: %r", sample)
            return self.current_pace()
        if self._last_timestamp is not None and sample.timestamp <= self._last_timestamp:
            logger.debug("dropping out-of-order sample ts=%s last=%s", sample.timestamp, self._last_timestamp)
            return self.current_pace()

        if self._last_timestamp is not None and sample.timestamp - self._last_timestamp > self.config.max_time_gap_seconds:
            self.reset()
        self._last_timestamp = sample.timestamp

        anchor = self._anchor
        if anchor is None:
            self._anchor = sample
            return self.current_pace()

        distance = haversine_distance(anchor.latitude, anchor.longitude, sample.latitude, sample.longitude)
        duration = sample.timestamp - anchor.timestamp
        if distance < self.config.min_distance_meters:
            return self.current_pace()

        speed = distance / duration
        if speed > self.config.max_realistic_speed:
            self.rejected_jumps += 1
            logger.debug("rejecting jump: %.1f m/s over %.1f m", speed, distance)
            return self.current_pace()

        self._segments.append(SpeedSegment(speed=speed, distance=distance, duration=duration, timestamp=sample.timestamp))
        self.total_distance += distance
        self._anchor = sample
        return self.current_pace()

    def average_speed(self) -> Optional[float]:
        total = sum(s.distance for s in self._segments)
        if not self._segments or total <= 0:
            return None
        return sum(s.speed * s.distance for s in self._segments) / total

    def current_pace(self) -> Optional[float]:
        speed = self.average_speed()
        if speed is None or speed < self.config.min_moving_speed:
            return None
        return speed_to_pace(speed)
