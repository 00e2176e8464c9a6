"""
Metric stabilizers: raw samples in, a stable gate state out.

Two policies share one lifecycle:

    INACTIVE --start_session--> LOCKED <--update--> UNLOCKED
        ^                          |                   |
        +-------end_session--------+-------------------+

A session always starts LOCKED; the user has to prove the metric before the
gate opens. ``force_lock`` (heartbeat timeout) drops UNLOCKED back to LOCKED.

- ThresholdStabilizer: heart rate. Qualifies whenever the latest valid value
  is at or above the threshold. No memory.
- HysteresisStabilizer: pace (or any noisy metric). A dead band of
  ``threshold +/- buffer`` and K consecutive out-of-band readings are needed
  to flip state, so jitter around the threshold never flaps the gate.

Every mutation happens under the stabilizer's own lock. Listeners are called
after the lock is released; listener errors are logged and swallowed.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Tuple, Union

from .pace import LocationSample, PaceWindow, PaceWindowConfig

logger = logging.getLogger("egp_gateway.stabilizer")

HEART_RATE_MIN_BPM = 30
HEART_RATE_MAX_BPM = 250
DEFAULT_HEART_RATE_THRESHOLD = 120
DEFAULT_PACE_THRESHOLD = 600  # 10:00 per mile
DEFAULT_HYSTERESIS_BUFFER = 15
DEFAULT_CONSECUTIVE_READINGS = 3
DEFAULT_HEARTBEAT_TIMEOUT_SECONDS = 30.0

POLICY_THRESHOLD = "threshold"
POLICY_HYSTERESIS = "hysteresis"


class GateState(str, Enum):
    INACTIVE = "INACTIVE"
    LOCKED = "LOCKED"
    UNLOCKED = "UNLOCKED"


@dataclass(frozen=True)
class HeartRateSample:
    value: float
    timestamp: float


@dataclass(frozen=True)
class PaceSample:
    """A pace already computed by the client, in seconds per mile."""

    value: float
    timestamp: float


@dataclass(frozen=True)
class StabilizerReading:
    state: GateState
    qualifies: bool
    metric_value: Optional[float]


@dataclass(frozen=True)
class StateChangeEvent:
    previous_state: GateState
    new_state: GateState
    timestamp: float
    reason: str  # session_started | session_ended | metric_change | heartbeat_timeout
    metric_value: Optional[float] = None


StateChangeListener = Callable[[StateChangeEvent], None]
Sample = Union[HeartRateSample, PaceSample, LocationSample, float, int]


def _finite_number(x: object) -> Optional[float]:
    if isinstance(x, bool) or not isinstance(x, (int, float)):
        return None
    v = float(x)
    return v if math.isfinite(v) else None


class Stabilizer:
    """Shared lifecycle, locking, heartbeat and listener plumbing."""

    policy = "base"
    sample_types: Tuple[type, ...] = ()

    def __init__(
        self,
        threshold: float,
        *,
        heartbeat_timeout_seconds: float = DEFAULT_HEARTBEAT_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.threshold = float(threshold)
        self.heartbeat_timeout_seconds = float(heartbeat_timeout_seconds)
        self._clock = clock
        self._lock = threading.Lock()
        self._state = GateState.INACTIVE
        self._metric: Optional[float] = None
        self._last_heartbeat = 0.0
        self._last_sample_ts: Optional[float] = None
        self._listeners: List[StateChangeListener] = []

    # -- introspection ----------------------------------------------------

    @property
    def state(self) -> GateState:
        return self._state

    @property
    def last_heartbeat(self) -> float:
        return self._last_heartbeat

    def reading(self) -> StabilizerReading:
        with self._lock:
            return self._reading_locked()

    def _reading_locked(self) -> StabilizerReading:
        qualifies = self._state is GateState.UNLOCKED and self._metric is not None
        return StabilizerReading(state=self._state, qualifies=qualifies, metric_value=self._metric)

    # -- listeners ----------------------------------------------------------

    def add_listener(self, listener: StateChangeListener) -> Callable[[], None]:
        """Subscribe to state changes. Returns an unsubscribe callable."""
        with self._lock:
            self._listeners.append(listener)

        def _remove() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _remove

    def _emit(self, events: List[StateChangeEvent]) -> None:
        if not events:
            return
        with self._lock:
            listeners = list(self._listeners)
        for ev in events:
            for listener in listeners:
                try:
                    listener(ev)
                except Exception:
                    logger.exception("state change listener failed (%s -> %s)", ev.previous_state.value, ev.new_state.value)

    def _transition_locked(
        self, new_state: GateState, reason: str, events: List[StateChangeEvent], metric: Optional[float] = None
    ) -> None:
        prev = self._state
        if prev is new_state:
            return
        self._state = new_state
        events.append(StateChangeEvent(prev, new_state, self._clock(), reason, metric))
        logger.info("stabilizer %s: %s -> %s (%s)", self.policy, prev.value, new_state.value, reason)

    # -- lifecycle ----------------------------------------------------------

    def start_session(self) -> StabilizerReading:
        events: List[StateChangeEvent] = []
        with self._lock:
            if self._state is GateState.INACTIVE:
                self._reset_locked()
                self._last_heartbeat = self._clock()
                self._transition_locked(GateState.LOCKED, "session_started", events)
            reading = self._reading_locked()
        self._emit(events)
        return reading

    def end_session(self) -> StabilizerReading:
        events: List[StateChangeEvent] = []
        with self._lock:
            if self._state is not GateState.INACTIVE:
                self._transition_locked(GateState.INACTIVE, "session_ended", events)
                self._reset_locked()
            reading = self._reading_locked()
        self._emit(events)
        return reading

    def force_lock(self, reason: str = "heartbeat_timeout") -> bool:
        """Drop UNLOCKED to LOCKED. Returns True if the state changed."""
        events: List[StateChangeEvent] = []
        with self._lock:
            changed = self._state is GateState.UNLOCKED
            if changed:
                self._transition_locked(GateState.LOCKED, reason, events, self._metric)
                self._on_force_lock_locked()
        self._emit(events)
        return changed

    def is_heartbeat_stale(self, now: Optional[float] = None) -> bool:
        if self._state is GateState.INACTIVE:
            return False
        t = self._clock() if now is None else now
        return t - self._last_heartbeat > self.heartbeat_timeout_seconds

    def check_heartbeat(self, now: Optional[float] = None) -> bool:
        """Force-lock if no sample arrived within the heartbeat timeout."""
        if self.is_heartbeat_stale(now):
            return self.force_lock("heartbeat_timeout")
        return False

    # -- updates ------------------------------------------------------------

    def accepts(self, sample: Sample) -> bool:
        """True for this policy's sample records and for bare numbers."""
        if isinstance(sample, self.sample_types):
            return True
        return isinstance(sample, (int, float)) and not isinstance(sample, bool)

    def update(self, sample: Sample) -> StabilizerReading:
        """Feed one sample and return the resulting reading.

        Samples received while INACTIVE are ignored. Another policy's sample
        kind and malformed location fixes are dropped before they count as a
        heartbeat. Out-of-range or out-of-order values are dropped as noise.
        """
        events: List[StateChangeEvent] = []
        with self._lock:
            if self._state is not GateState.INACTIVE and self._admissible(sample):
                ts = self._sample_timestamp(sample)
                if ts is not False:
                    self._last_heartbeat = self._clock()
                    self._apply_locked(sample, events)
            reading = self._reading_locked()
        self._emit(events)
        return reading

    def _admissible(self, sample: Sample) -> bool:
        if not self.accepts(sample):
            logger.debug("dropping %s sample for %s policy", type(sample).__name__, self.policy)
            return False
        if isinstance(sample, LocationSample) and not sample.is_well_formed():
            logger.debug("dropping malformed location sample: %r", sample)
            return False
        return True

    def _sample_timestamp(self, sample: Sample):
        """Validate and record the sample timestamp; False means drop."""
        ts = getattr(sample, "timestamp", None)
        if ts is None:
            return None
        t = _finite_number(ts)
        if t is None:
            logger.debug("dropping sample with malformed timestamp: %r", ts)
            return False
        if self._last_sample_ts is not None and t <= self._last_sample_ts:
            logger.debug("dropping out-of-order sample ts=%s last=%s", t, self._last_sample_ts)
            return False
        self._last_sample_ts = t
        return t

    def _reset_locked(self) -> None:
        self._metric = None
        self._last_sample_ts = None

    def _on_force_lock_locked(self) -> None:
        pass

    def _apply_locked(self, sample: Sample, events: List[StateChangeEvent]) -> None:
        raise NotImplementedError


class ThresholdStabilizer(Stabilizer):
    """Qualifies iff the latest valid value is >= threshold."""

    policy = POLICY_THRESHOLD
    sample_types = (HeartRateSample,)

    def __init__(
        self,
        threshold: float = DEFAULT_HEART_RATE_THRESHOLD,
        *,
        min_value: float = HEART_RATE_MIN_BPM,
        max_value: float = HEART_RATE_MAX_BPM,
        heartbeat_timeout_seconds: float = DEFAULT_HEARTBEAT_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(threshold, heartbeat_timeout_seconds=heartbeat_timeout_seconds, clock=clock)
        self.min_value = float(min_value)
        self.max_value = float(max_value)

    def _apply_locked(self, sample: Sample, events: List[StateChangeEvent]) -> None:
        raw = sample.value if isinstance(sample, HeartRateSample) else sample
        value = _finite_number(raw)
        if value is None or not (self.min_value <= value <= self.max_value):
            logger.debug("dropping out-of-range value: %r", raw)
            return
        self._metric = value
        target = GateState.UNLOCKED if value >= self.threshold else GateState.LOCKED
        self._transition_locked(target, "metric_change", events, value)


class HysteresisStabilizer(Stabilizer):
    """K-of-consecutive hysteresis around ``threshold +/- buffer``.

    With ``lower_is_better`` (pace) a reading below ``threshold - buffer``
    counts toward unlocking and one above ``threshold + buffer`` toward
    locking. Readings inside the band reset both counters. Counters reset
    on every transition.
    """

    policy = POLICY_HYSTERESIS
    sample_types = (PaceSample, LocationSample)

    def __init__(
        self,
        threshold: float = DEFAULT_PACE_THRESHOLD,
        buffer: float = DEFAULT_HYSTERESIS_BUFFER,
        required_consecutive: int = DEFAULT_CONSECUTIVE_READINGS,
        *,
        lower_is_better: bool = True,
        window: Optional[PaceWindowConfig] = None,
        heartbeat_timeout_seconds: float = DEFAULT_HEARTBEAT_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(threshold, heartbeat_timeout_seconds=heartbeat_timeout_seconds, clock=clock)
        if buffer < 0:
            raise ValueError("buffer must be >= 0")
        if required_consecutive < 1:
            raise ValueError("required_consecutive must be >= 1")
        self.buffer = float(buffer)
        self.required_consecutive = int(required_consecutive)
        self.lower_is_better = bool(lower_is_better)
        self.window = PaceWindow(window)
        self._qualifying = 0
        self._disqualifying = 0

    @property
    def counters(self) -> Tuple[int, int]:
        return self._qualifying, self._disqualifying

    def _reset_locked(self) -> None:
        super()._reset_locked()
        self.window.reset()
        self._qualifying = 0
        self._disqualifying = 0

    def _on_force_lock_locked(self) -> None:
        self._qualifying = 0
        self._disqualifying = 0

    def _classify(self, value: float) -> int:
        """+1 qualifying, -1 disqualifying, 0 inside the dead band."""
        low = self.threshold - self.buffer
        high = self.threshold + self.buffer
        if self.lower_is_better:
            if value < low:
                return 1
            if value > high:
                return -1
            return 0
        if value > high:
            return 1
        if value < low:
            return -1
        return 0

    def _apply_locked(self, sample: Sample, events: List[StateChangeEvent]) -> None:
        if isinstance(sample, LocationSample):
            value = self.window.add(sample)
        else:
            raw = sample.value if isinstance(sample, PaceSample) else sample
            value = _finite_number(raw)
            if value is None or value <= 0:
                logger.debug("dropping malformed metric value: %r", raw)
                return

        self._metric = value
        if value is None:
            # Window cannot determine a pace; counters are left as they are.
            return

        c = self._classify(value)
        if c > 0:
            self._qualifying += 1
            self._disqualifying = 0
        elif c < 0:
            self._disqualifying += 1
            self._qualifying = 0
        else:
            self._qualifying = 0
            self._disqualifying = 0

        if self._state is GateState.LOCKED and self._qualifying >= self.required_consecutive:
            self._transition_locked(GateState.UNLOCKED, "metric_change", events, value)
            self._qualifying = 0
            self._disqualifying = 0
        elif self._state is GateState.UNLOCKED and self._disqualifying >= self.required_consecutive:
            self._transition_locked(GateState.LOCKED, "metric_change", events, value)
            self._qualifying = 0
            self._disqualifying = 0


def build_stabilizer(
    policy: str,
    *,
    threshold: Optional[float] = None,
    buffer: float = DEFAULT_HYSTERESIS_BUFFER,
    required_consecutive: int = DEFAULT_CONSECUTIVE_READINGS,
    lower_is_better: bool = True,
    window: Optional[PaceWindowConfig] = None,
    heartbeat_timeout_seconds: float = DEFAULT_HEARTBEAT_TIMEOUT_SECONDS,
    clock: Callable[[], float] = time.time,
) -> Stabilizer:
    """Select a stabilizer variant by policy name."""
    p = (policy or POLICY_THRESHOLD).strip().lower()
    if p in (POLICY_THRESHOLD, "heart_rate", "hr"):
        return ThresholdStabilizer(
            DEFAULT_HEART_RATE_THRESHOLD if threshold is None else threshold,
            heartbeat_timeout_seconds=heartbeat_timeout_seconds,
            clock=clock,
        )
    if p in (POLICY_HYSTERESIS, "pace"):
        return HysteresisStabilizer(
            DEFAULT_PACE_THRESHOLD if threshold is None else threshold,
            buffer,
            required_consecutive,
            lower_is_better=lower_is_better,
            window=window,
            heartbeat_timeout_seconds=heartbeat_timeout_seconds,
            clock=clock,
        )
    raise ValueError(f"Unknown stabilizer policy: {policy!r} (expected 'threshold' or 'hysteresis')")
