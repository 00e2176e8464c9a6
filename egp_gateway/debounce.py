"""Durable publish debounce.

At most one publish attempt per subject per ``min_interval_seconds``, across
threads and processes. The claim is a single conditional UPDATE inside a
``BEGIN IMMEDIATE`` transaction: whoever flips the row wins, everybody else
sees ``rowcount == 0`` and backs off. No in-process lock is involved, so two
gateway instances sharing the same database file debounce each other.

The timestamp records the *attempt*, not a successful write; a failed publish
still consumes the interval.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from contextlib import contextmanager
from typing import Optional, Protocol, runtime_checkable

from .errors import EGP_E_CLAIM_STORAGE, egp_error
from .lockdown import ClaimStoreBreaker

logger = logging.getLogger("egp_gateway.debounce")

DEFAULT_MIN_INTERVAL_SECONDS = 1.0


@runtime_checkable
class ClaimStore(Protocol):
    def try_claim(self, subject_key: str, now: Optional[float] = None) -> bool: ...


class PublishClaimStore:
    """SQLite-backed compare-and-swap on ``publish_claims.last_attempt_at``."""

    def __init__(
        self,
        db_path: str = "egp_gateway.db",
        min_interval_seconds: float = DEFAULT_MIN_INTERVAL_SECONDS,
        *,
        circuit: Optional[ClaimStoreBreaker] = None,
    ):
        if min_interval_seconds < 0:
            raise ValueError("min_interval_seconds must be >= 0")
        self.db_path = str(db_path)
        self.min_interval_seconds = float(min_interval_seconds)
        self.circuit = circuit or ClaimStoreBreaker()
        self._init_db()

    @contextmanager
    def _db(self, op_name: str, *, write: bool = False):
        """Per-call connection, timed and reported to the breaker.

        ``write=True`` opens the transaction with an explicit BEGIN IMMEDIATE
        so the wait for the write lock is measured apart from the work done
        once it is held.
        """
        self.circuit.check()
        start = time.monotonic()
        try:
            conn = sqlite3.connect(
                self.db_path,
                timeout=float(self.circuit.config.busy_timeout_seconds),
                isolation_level=None,
            )
            try:
                if write:
                    conn.execute("BEGIN IMMEDIATE")
                locked_at = time.monotonic()
                try:
                    yield conn
                except BaseException:
                    if write:
                        conn.execute("ROLLBACK")
                    raise
                if write:
                    conn.execute("COMMIT")
            finally:
                conn.close()
        except sqlite3.Error as e:
            self.circuit.fault(e)
            raise egp_error(EGP_E_CLAIM_STORAGE, f"{op_name} failed: {e}", retryable=True, http_status=503) from e
        done = time.monotonic()
        lock_wait_ms = (locked_at - start) * 1000.0
        work_ms = (done - locked_at) * 1000.0
        if self.circuit.observe(lock_wait_ms, work_ms):
            logger.warning("%s slow: lock wait %.1fms, work %.1fms", op_name, lock_wait_ms, work_ms)

    def _init_db(self) -> None:
        with self._db("init") as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS publish_claims (
                    subject_key TEXT PRIMARY KEY,
                    last_attempt_at REAL
                )
                """
            )

    def try_claim(self, subject_key: str, now: Optional[float] = None) -> bool:
        """Atomically claim the next publish slot for ``subject_key``.

        True means the caller must publish now; False means someone published
        within the interval and the caller must do nothing.
        """
        t = time.time() if now is None else float(now)
        cutoff = t - self.min_interval_seconds
        with self._db("try_claim", write=True) as conn:
            conn.execute(
                "INSERT OR IGNORE INTO publish_claims (subject_key, last_attempt_at) VALUES (?, NULL)",
                (subject_key,),
            )
            cur = conn.execute(
                """
                UPDATE publish_claims SET last_attempt_at = ?
                WHERE subject_key = ?
                  AND (last_attempt_at IS NULL OR last_attempt_at < ?)
                """,
                (t, subject_key, cutoff),
            )
            won = cur.rowcount == 1
        if not won:
            logger.debug("claim lost for %s", subject_key)
        return won

    def last_attempt(self, subject_key: str) -> Optional[float]:
        with self._db("last_attempt") as conn:
            row = conn.execute(
                "SELECT last_attempt_at FROM publish_claims WHERE subject_key = ?", (subject_key,)
            ).fetchone()
        return None if row is None else row[0]
