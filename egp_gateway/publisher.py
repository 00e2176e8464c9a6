"""
Debounced, fire-and-forget token publication.

    maybe_publish(subject_key, build_token)
        |
        +-- claim lost ---------------------> PublishAttempt(claimed=False)
        |
        +-- claim won --> build_token() (sync, signer errors propagate)
                           |
                           +--> per-subject queue --> executor: transport.write_latest(...)
                           +--> PublishAttempt(claimed=True, future=...)

The caller (sample ingestion) never waits on transport latency. Write
failures are logged and counted; there is no retry. The next sample after
the debounce interval publishes a fresh token anyway.

At most one write per subject is in flight. A token built while an earlier
write for the same subject is still running waits for it; if a newer token
arrives in the meantime the waiting one is superseded (its future is
cancelled) and never written. The slot therefore always ends on the newest
token, so a slow allow cannot land after a later lock.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import CancelledError, Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Set, Tuple

from . import metrics
from .debounce import ClaimStore
from .errors import EGPError, SignerUnavailableError, egp_error, EGP_E_SUBJECT_MISMATCH
from .lockdown import StorageLockdownError
from .tokens import CapabilityToken
from .transport import SignalTransport

logger = logging.getLogger("egp_gateway.publisher")

TokenBuilder = Callable[[], CapabilityToken]


@dataclass(frozen=True)
class PublishAttempt:
    claimed: bool
    token: Optional[CapabilityToken] = None
    future: Optional["Future[None]"] = None
    reason: str = ""

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the background write finishes. True if it succeeded.

        False for a failed write and for a token superseded before it was
        written.
        """
        if self.future is None:
            return False
        try:
            self.future.result(timeout=timeout)
        except (CancelledError, Exception):
            return False
        return True


class DebouncedPublisher:
    """Claim, sign, and hand off to a background transport write."""

    def __init__(
        self,
        claims: ClaimStore,
        transport: SignalTransport,
        *,
        executor: Optional[ThreadPoolExecutor] = None,
        max_workers: int = 4,
    ):
        self.claims = claims
        self.transport = transport
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="egp-publish")
        self._queue_lock = threading.Lock()
        self._pending: Dict[str, Tuple[bytes, "Future[None]"]] = {}
        self._draining: Set[str] = set()

    def maybe_publish(self, subject_key: str, build_token: TokenBuilder) -> PublishAttempt:
        """Publish a fresh token for ``subject_key`` unless one went out recently.

        Raises SignerUnavailableError when the claim was won but the token
        could not be signed; nothing is published in that case.
        """
        try:
            won = self.claims.try_claim(subject_key)
        except StorageLockdownError:
            metrics.set_lockdown_active(True)
            metrics.record_publish("storage_unavailable")
            logger.warning("claim store in lockdown; skipping publish for %s", subject_key)
            return PublishAttempt(claimed=False, reason="storage_unavailable")
        except EGPError as e:
            metrics.record_publish("storage_unavailable")
            logger.warning("claim failed for %s: %s", subject_key, e)
            return PublishAttempt(claimed=False, reason="storage_unavailable")

        if not won:
            metrics.record_publish("claim_lost")
            return PublishAttempt(claimed=False, reason="claim_lost")
        metrics.set_lockdown_active(False)

        try:
            token = build_token()
        except SignerUnavailableError:
            metrics.record_publish("signer_unavailable")
            logger.error("signer unavailable; no token published for %s", subject_key)
            raise
        if token.subject_key != subject_key:
            raise egp_error(
                EGP_E_SUBJECT_MISMATCH,
                "token subject does not match publish subject",
                http_status=500,
                expected=subject_key,
                got=token.subject_key,
            )

        future = self._enqueue(subject_key, token.to_wire())
        return PublishAttempt(claimed=True, token=token, future=future, reason="submitted")

    def _enqueue(self, subject_key: str, blob: bytes) -> "Future[None]":
        future: "Future[None]" = Future()
        with self._queue_lock:
            superseded = self._pending.get(subject_key)
            self._pending[subject_key] = (blob, future)
            start = subject_key not in self._draining
            if start:
                self._draining.add(subject_key)
            if superseded is not None and superseded[1].cancel():
                metrics.record_publish("superseded")
                logger.debug("superseded pending token for %s", subject_key)
        if start:
            try:
                self._executor.submit(self._drain, subject_key)
            except RuntimeError:
                with self._queue_lock:
                    self._draining.discard(subject_key)
                    self._pending.pop(subject_key, None)
                raise
        return future

    def _drain(self, subject_key: str) -> None:
        """Write queued tokens for one subject, newest only, one at a time."""
        while True:
            with self._queue_lock:
                item = self._pending.pop(subject_key, None)
                if item is None:
                    self._draining.discard(subject_key)
                    return
            blob, future = item
            if not future.set_running_or_notify_cancel():
                continue
            try:
                self._write(subject_key, blob)
            except Exception as e:
                future.set_exception(e)
            else:
                future.set_result(None)

    def _write(self, subject_key: str, blob: bytes) -> None:
        try:
            self.transport.write_latest(subject_key, blob)
        except Exception as e:
            metrics.record_publish("failed")
            logger.warning("publish failed for %s: %s", subject_key, e)
            raise
        metrics.record_publish("published")
        logger.debug("published token for %s (%d bytes)", subject_key, len(blob))

    def close(self, wait: bool = True) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=wait)

    def __enter__(self) -> "DebouncedPublisher":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
