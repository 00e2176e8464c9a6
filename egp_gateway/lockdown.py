"""Fail-closed breaker for the publish-claim store.

Every claim is timed in two parts:

    connect + BEGIN IMMEDIATE   -> lock_wait_ms  (queueing behind other writers)
    INSERT/UPDATE + COMMIT      -> work_ms       (the database doing its job)

Waiting for the write lock is normal when several gateway processes share the
file, so the two parts have separate budgets. A claim over either budget is a
*strike*, and so is a sqlite error. Strikes are consecutive: any healthy claim
clears them. Only ``strikes_to_trip`` strikes in a row open the breaker, and
while it is open every claim raises StorageLockdownError. No claim means no
new token, so gates deny once the last token's TTL runs out.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from .errors import EGP_E_LOCKDOWN_ACTIVE, EGPError

logger = logging.getLogger("egp_gateway.lockdown")


class StorageLockdownError(EGPError):
    """Raised for every claim while the breaker is open."""

    def __init__(self, message: str = "LOCKDOWN_ACTIVE", **details: Any):
        super().__init__(EGP_E_LOCKDOWN_ACTIVE, message, retryable=True, http_status=503, details=details)


def _env_number(name: str, default: float, cast: Callable[[str], float]) -> float:
    raw = (os.getenv(name, "") or "").strip()
    if not raw:
        return default
    try:
        return cast(raw)
    except ValueError:
        logger.warning("ignoring non-numeric %s=%r", name, raw)
        return default


@dataclass
class ClaimBreakerConfig:
    """Budgets for ClaimStoreBreaker.

    Environment variables (all optional):
    - EGP_CLAIM_WORK_BUDGET_MS: claim statements + commit, once the lock is held.
    - EGP_CLAIM_LOCK_WAIT_BUDGET_MS: time allowed to queue for the write lock.
    - EGP_CLAIM_STRIKES: consecutive strikes that open the breaker.
    - EGP_CLAIM_LOCKDOWN_SECONDS: how long the breaker stays open.
    - EGP_CLAIM_BUSY_TIMEOUT_SECONDS: sqlite busy timeout; a claim that cannot
      get the lock within this fails with "database is locked".
    """

    work_budget_ms: float = 250.0
    lock_wait_budget_ms: float = 2000.0
    strikes_to_trip: int = 3
    lockdown_seconds: float = 10.0
    busy_timeout_seconds: float = 5.0

    @classmethod
    def from_env(cls) -> "ClaimBreakerConfig":
        cfg = cls(
            work_budget_ms=_env_number("EGP_CLAIM_WORK_BUDGET_MS", cls.work_budget_ms, float),
            lock_wait_budget_ms=_env_number("EGP_CLAIM_LOCK_WAIT_BUDGET_MS", cls.lock_wait_budget_ms, float),
            strikes_to_trip=int(_env_number("EGP_CLAIM_STRIKES", cls.strikes_to_trip, int)),
            lockdown_seconds=_env_number("EGP_CLAIM_LOCKDOWN_SECONDS", cls.lockdown_seconds, float),
            busy_timeout_seconds=_env_number("EGP_CLAIM_BUSY_TIMEOUT_SECONDS", cls.busy_timeout_seconds, float),
        )
        return cfg.clamped()

    def clamped(self) -> "ClaimBreakerConfig":
        d = ClaimBreakerConfig()
        return ClaimBreakerConfig(
            work_budget_ms=self.work_budget_ms if self.work_budget_ms > 0 else d.work_budget_ms,
            lock_wait_budget_ms=self.lock_wait_budget_ms if self.lock_wait_budget_ms > 0 else d.lock_wait_budget_ms,
            strikes_to_trip=max(1, int(self.strikes_to_trip)),
            lockdown_seconds=max(1.0, float(self.lockdown_seconds)),
            busy_timeout_seconds=self.busy_timeout_seconds if self.busy_timeout_seconds > 0 else 0.01,
        )


class ClaimStoreBreaker:
    """Counts consecutive slow or failed claims; opens after too many."""

    def __init__(self, config: Optional[ClaimBreakerConfig] = None, *, clock: Callable[[], float] = time.monotonic):
        self.config = (config or ClaimBreakerConfig.from_env()).clamped()
        self._clock = clock
        self._lock = threading.Lock()
        self._strikes = 0
        self._open_until = 0.0
        self.slow_claims = 0
        self.faults = 0
        self.trips = 0

    @property
    def strikes(self) -> int:
        return self._strikes

    def is_open(self) -> bool:
        return self._clock() < self._open_until

    def check(self) -> None:
        if self.is_open():
            raise StorageLockdownError(retry_after_seconds=round(self._open_until - self._clock(), 3))

    def observe(self, lock_wait_ms: float, work_ms: float) -> bool:
        """Record a completed claim. Returns True if it counted as slow."""
        cfg = self.config
        slow_wait = lock_wait_ms >= cfg.lock_wait_budget_ms
        slow_work = work_ms >= cfg.work_budget_ms
        if not (slow_wait or slow_work):
            with self._lock:
                self._strikes = 0
            return False
        with self._lock:
            self.slow_claims += 1
        self._strike(f"slow claim (lock wait {lock_wait_ms:.0f}ms, work {work_ms:.0f}ms)")
        return True

    def fault(self, exc: BaseException) -> None:
        with self._lock:
            self.faults += 1
        self._strike(f"claim store error: {exc}")

    def _strike(self, why: str) -> None:
        with self._lock:
            self._strikes += 1
            strikes = self._strikes
            tripped = strikes >= self.config.strikes_to_trip
            if tripped:
                self._open_until = self._clock() + self.config.lockdown_seconds
                self._strikes = 0
                self.trips += 1
        if tripped:
            logger.error("claim store lockdown for %.0fs after %d strikes; last: %s", self.config.lockdown_seconds, strikes, why)
        else:
            logger.warning("claim store strike %d/%d: %s", strikes, self.config.strikes_to_trip, why)

    def status(self) -> Dict[str, Any]:
        return {
            "open": self.is_open(),
            "strikes": self._strikes,
            "slow_claims": self.slow_claims,
            "faults": self.faults,
            "trips": self.trips,
        }
