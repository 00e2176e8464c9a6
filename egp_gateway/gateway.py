"""
Effort gateway: the ingestion side of the protocol.

One active session per subject. Each session owns a stabilizer; every
accepted sample may publish a fresh capability token, with the claim store
bounding the rate. Session end and heartbeat expiry publish a
``decision=false`` token so gates lock without waiting for the TTL.
"""

from __future__ import annotations

import logging
import secrets
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from . import metrics
from .config import GatewaySettings
from .debounce import PublishClaimStore
from .errors import (
    EGP_E_BAD_REQUEST,
    EGP_E_SAMPLE_INVALID,
    EGP_E_SESSION_INACTIVE,
    EGP_E_SESSION_NOT_FOUND,
    EGPError,
    egp_error,
)
from .lockdown import ClaimBreakerConfig, ClaimStoreBreaker
from .publisher import DebouncedPublisher, PublishAttempt
from .stabilizer import (
    GateState,
    Sample,
    Stabilizer,
    StabilizerReading,
    StateChangeEvent,
    build_stabilizer,
)
from .tokens import CapabilityToken, TokenIssuer
from .transport import DEFAULT_READ_TIMEOUT_SECONDS, SignalTransport, build_transport, check_subject_key

logger = logging.getLogger("egp_gateway")


def _new_session_id() -> str:
    return f"sess_{secrets.token_hex(12)}"


@dataclass
class Session:
    session_id: str
    subject_key: str
    stabilizer: Stabilizer
    started_at: float
    ended_at: Optional[float] = None
    samples_received: int = 0
    last_publish: Optional[PublishAttempt] = field(default=None, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def active(self) -> bool:
        return self.ended_at is None

    def count_sample(self) -> int:
        with self._lock:
            self.samples_received += 1
            return self.samples_received

    def status(self) -> Dict[str, Any]:
        reading = self.stabilizer.reading()
        return {
            "session_id": self.session_id,
            "subject_key": self.subject_key,
            "policy": self.stabilizer.policy,
            "state": reading.state.value,
            "qualifies": reading.qualifies,
            "metric_value": reading.metric_value,
            "threshold": self.stabilizer.threshold,
            "active": self.active,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "samples_received": self.samples_received,
        }


class SessionManager:
    """In-memory session table, at most one active session per subject."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._lock = threading.Lock()
        self._sessions: Dict[str, Session] = {}
        self._active_by_subject: Dict[str, str] = {}

    def open(self, subject_key: str, stabilizer: Stabilizer) -> Tuple[Session, Optional[Session]]:
        """Register a new session. Returns (new, displaced) where displaced is
        the subject's previously active session, now marked ended."""
        session = Session(
            session_id=_new_session_id(),
            subject_key=subject_key,
            stabilizer=stabilizer,
            started_at=self._clock(),
        )
        with self._lock:
            displaced = None
            prev_id = self._active_by_subject.get(subject_key)
            if prev_id is not None:
                displaced = self._sessions.get(prev_id)
                if displaced is not None and displaced.active:
                    displaced.ended_at = self._clock()
                else:
                    displaced = None
            self._sessions[session.session_id] = session
            self._active_by_subject[subject_key] = session.session_id
        return session, displaced

    def get(self, session_id: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.get(session_id)

    def close(self, session_id: str) -> Optional[Session]:
        """Mark a session ended. Returns it, or None if it was not active."""
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or not session.active:
                return None
            session.ended_at = self._clock()
            if self._active_by_subject.get(session.subject_key) == session_id:
                del self._active_by_subject[session.subject_key]
            return session

    def active_sessions(self) -> List[Session]:
        with self._lock:
            return [self._sessions[sid] for sid in self._active_by_subject.values()]

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)


@dataclass(frozen=True)
class SampleResult:
    session_id: str
    reading: StabilizerReading
    publish: PublishAttempt

    def as_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "state": self.reading.state.value,
            "qualifies": self.reading.qualifies,
            "metric_value": self.reading.metric_value,
            "published": self.publish.claimed,
            "publish_reason": self.publish.reason,
        }


class EffortGateway:
    """Sessions, stabilizers, token issuance and debounced publication."""

    def __init__(
        self,
        signer: Any,
        settings: Optional[GatewaySettings] = None,
        *,
        transport: Optional[SignalTransport] = None,
        claims: Optional[PublishClaimStore] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings or GatewaySettings()
        self._clock = clock
        self.issuer = TokenIssuer(signer, default_ttl_seconds=self.settings.token_ttl_seconds, clock=clock)
        if claims is None:
            claims = PublishClaimStore(
                self.settings.db_path,
                self.settings.publish_min_interval_seconds,
                circuit=ClaimStoreBreaker(ClaimBreakerConfig.from_env()),
            )
        self.claims = claims
        self.transport = transport if transport is not None else build_transport(self.settings.transport_spec())
        self.publisher = DebouncedPublisher(self.claims, self.transport)
        self.sessions = SessionManager(clock=clock)

    @property
    def public_key_hex(self) -> str:
        return self.issuer.public_key_hex

    # -- sessions -----------------------------------------------------------

    def _build_stabilizer(self) -> Stabilizer:
        s = self.settings
        return build_stabilizer(
            s.policy,
            threshold=s.threshold,
            buffer=s.hysteresis_buffer,
            required_consecutive=s.consecutive_readings,
            lower_is_better=s.lower_is_better,
            window=s.window,
            heartbeat_timeout_seconds=s.heartbeat_timeout_seconds,
            clock=self._clock,
        )

    def start_session(self, subject_key: str) -> Session:
        try:
            check_subject_key(subject_key)
        except ValueError as e:
            raise egp_error(EGP_E_BAD_REQUEST, str(e), http_status=400) from e

        stabilizer = self._build_stabilizer()
        stabilizer.add_listener(self._on_state_change)
        session, displaced = self.sessions.open(subject_key, stabilizer)
        if displaced is not None:
            logger.info("session %s displaced by %s for %s", displaced.session_id, session.session_id, subject_key)
            displaced.stabilizer.end_session()
        stabilizer.start_session()
        logger.info("session %s started for %s (%s)", session.session_id, subject_key, stabilizer.policy)
        return session

    def get_session(self, session_id: str) -> Session:
        session = self.sessions.get(session_id)
        if session is None:
            raise egp_error(EGP_E_SESSION_NOT_FOUND, "session not found", http_status=404, session_id=session_id)
        return session

    def ingest_sample(self, session_id: str, sample: Sample) -> SampleResult:
        """Feed one sample and publish the current decision (debounced).

        Raises SignerUnavailableError if the claim was won but signing
        failed; in that case nothing was published. A sample kind the
        session's policy does not read (a heart rate on a pace gate, say) is
        rejected with EGP_E_SAMPLE_INVALID.
        """
        session = self.get_session(session_id)
        if not session.active:
            raise egp_error(EGP_E_SESSION_INACTIVE, "session has ended", http_status=409, session_id=session_id)
        if not session.stabilizer.accepts(sample):
            raise egp_error(
                EGP_E_SAMPLE_INVALID,
                f"{type(sample).__name__} does not apply to the {session.stabilizer.policy} policy",
                http_status=400,
                session_id=session_id,
            )

        reading = session.stabilizer.update(sample)
        session.count_sample()
        metrics.record_sample(session.stabilizer.policy, "qualifying" if reading.qualifies else "not_qualifying")

        attempt = self._publish(session, reading)
        return SampleResult(session_id=session_id, reading=reading, publish=attempt)

    def end_session(self, session_id: str) -> Session:
        session = self.get_session(session_id)
        closed = self.sessions.close(session_id)
        if closed is None:
            raise egp_error(EGP_E_SESSION_INACTIVE, "session has ended", http_status=409, session_id=session_id)
        reading = session.stabilizer.end_session()
        self._publish(session, reading)
        logger.info("session %s ended for %s", session_id, session.subject_key)
        return session

    def sweep_stale(self, now: Optional[float] = None) -> List[str]:
        """Force-lock sessions whose heartbeat expired. Returns their ids."""
        locked: List[str] = []
        for session in self.sessions.active_sessions():
            if session.stabilizer.check_heartbeat(now):
                locked.append(session.session_id)
                try:
                    self._publish(session, session.stabilizer.reading())
                except EGPError as e:
                    logger.error("heartbeat lock publish failed for %s: %s", session.subject_key, e)
        if locked:
            logger.warning("heartbeat timeout: locked %d session(s)", len(locked))
        return locked

    # -- publication ----------------------------------------------------------

    def _publish(self, session: Session, reading: StabilizerReading) -> PublishAttempt:
        decision = reading.qualifies
        metric_value = reading.metric_value if reading.metric_value is not None else 0
        threshold = session.stabilizer.threshold

        def _build() -> CapabilityToken:
            return self.issuer.issue(session.subject_key, decision, metric_value, threshold)

        attempt = self.publisher.maybe_publish(session.subject_key, _build)
        session.last_publish = attempt
        return attempt

    def _on_state_change(self, event: StateChangeEvent) -> None:
        metrics.record_transition(event.previous_state.value, event.new_state.value, event.reason)

    def read_signal(self, subject_key: str, timeout_seconds: float = DEFAULT_READ_TIMEOUT_SECONDS) -> Optional[bytes]:
        check_subject_key(subject_key)
        return self.transport.read_latest(subject_key, timeout_seconds)

    def write_signal(self, subject_key: str, blob: bytes) -> None:
        """Store a token blob as-is (relay mode for HTTP transports)."""
        check_subject_key(subject_key)
        self.transport.write_latest(subject_key, blob)

    def close(self) -> None:
        for session in self.sessions.active_sessions():
            if session.stabilizer.state is not GateState.INACTIVE:
                self.sessions.close(session.session_id)
                session.stabilizer.end_session()
        self.publisher.close()
