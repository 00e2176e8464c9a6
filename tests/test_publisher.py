import threading

import pytest

from egp_gateway.crypto import Ed25519KeyPair
from egp_gateway.errors import EGP_E_SUBJECT_MISMATCH, EGPError, SignerUnavailableError
from egp_gateway.lockdown import StorageLockdownError
from egp_gateway.publisher import DebouncedPublisher
from egp_gateway.tokens import CapabilityToken, TokenIssuer


class ScriptedClaims:
    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = 0

    def try_claim(self, subject_key, now=None):
        self.calls += 1
        outcome = self.outcomes.pop(0) if self.outcomes else True
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class MemoryTransport:
    def __init__(self, fail=False):
        self.fail = fail
        self.slots = {}
        self.written = threading.Event()

    def write_latest(self, subject_key, blob):
        if self.fail:
            raise OSError("disk full")
        self.slots[subject_key] = bytes(blob)
        self.written.set()

    def read_latest(self, subject_key, timeout_seconds=5.0):
        return self.slots.get(subject_key)


@pytest.fixture()
def issuer():
    return TokenIssuer(Ed25519KeyPair.generate("k"), default_ttl_seconds=15)


def test_claim_won_publishes_token(issuer):
    transport = MemoryTransport()
    with DebouncedPublisher(ScriptedClaims(True), transport) as pub:
        attempt = pub.maybe_publish("alice", lambda: issuer.issue("alice", True, 150, 140))
        assert attempt.claimed
        assert attempt.reason == "submitted"
        assert attempt.wait(5) is True
    stored = CapabilityToken.from_wire(transport.slots["alice"])
    assert stored == attempt.token


def test_claim_lost_builds_nothing(issuer):
    transport = MemoryTransport()
    built = []

    def build():
        built.append(1)
        return issuer.issue("alice", True, 150, 140)

    with DebouncedPublisher(ScriptedClaims(False), transport) as pub:
        attempt = pub.maybe_publish("alice", build)
    assert not attempt.claimed
    assert attempt.reason == "claim_lost"
    assert attempt.wait() is False
    assert built == []
    assert transport.slots == {}


def test_lockdown_skips_publish(issuer):
    transport = MemoryTransport()
    with DebouncedPublisher(ScriptedClaims(StorageLockdownError()), transport) as pub:
        attempt = pub.maybe_publish("alice", lambda: issuer.issue("alice", True, 150, 140))
    assert not attempt.claimed
    assert attempt.reason == "storage_unavailable"
    assert transport.slots == {}


def test_signer_error_propagates_and_nothing_written():
    transport = MemoryTransport()

    def build():
        raise SignerUnavailableError("hsm offline")

    with DebouncedPublisher(ScriptedClaims(True), transport) as pub:
        with pytest.raises(SignerUnavailableError):
            pub.maybe_publish("alice", build)
    assert transport.slots == {}


def test_write_failure_is_reported_by_wait(issuer, caplog):
    transport = MemoryTransport(fail=True)
    with DebouncedPublisher(ScriptedClaims(True), transport) as pub:
        attempt = pub.maybe_publish("alice", lambda: issuer.issue("alice", True, 150, 140))
        assert attempt.claimed
        assert attempt.wait(5) is False
    assert "publish failed for alice" in caplog.text


def test_subject_mismatch_rejected(issuer):
    transport = MemoryTransport()
    with DebouncedPublisher(ScriptedClaims(True), transport) as pub:
        with pytest.raises(EGPError) as ei:
            pub.maybe_publish("alice", lambda: issuer.issue("bob", True, 150, 140))
    assert ei.value.code == EGP_E_SUBJECT_MISMATCH
    assert transport.slots == {}


def test_caller_does_not_wait_on_slow_transport(issuer):
    release = threading.Event()

    class SlowTransport(MemoryTransport):
        def write_latest(self, subject_key, blob):
            release.wait(5)
            super().write_latest(subject_key, blob)

    transport = SlowTransport()
    with DebouncedPublisher(ScriptedClaims(True), transport) as pub:
        attempt = pub.maybe_publish("alice", lambda: issuer.issue("alice", True, 150, 140))
        assert attempt.claimed
        assert not transport.written.is_set()
        release.set()
        assert attempt.wait(5) is True


class GatedTransport(MemoryTransport):
    """Holds the very first write until ``release`` is set."""

    def __init__(self):
        super().__init__()
        self.release = threading.Event()
        self.first_started = threading.Event()
        self.lock = threading.Lock()
        self.inflight = 0
        self.max_inflight = 0
        self.history = []

    def write_latest(self, subject_key, blob):
        with self.lock:
            self.inflight += 1
            self.max_inflight = max(self.max_inflight, self.inflight)
            first = not self.first_started.is_set()
            self.first_started.set()
        try:
            if first:
                self.release.wait(5)
            super().write_latest(subject_key, blob)
            with self.lock:
                self.history.append(CapabilityToken.from_wire(blob).decision)
        finally:
            with self.lock:
                self.inflight -= 1


def test_slow_allow_cannot_overwrite_later_lock(issuer):
    transport = GatedTransport()
    with DebouncedPublisher(ScriptedClaims(True, True), transport) as pub:
        allow = pub.maybe_publish("alice", lambda: issuer.issue("alice", True, 150, 140))
        assert transport.first_started.wait(5)
        deny = pub.maybe_publish("alice", lambda: issuer.issue("alice", False, 120, 140))
        assert allow.claimed and deny.claimed
        transport.release.set()
        assert allow.wait(5) is True
        assert deny.wait(5) is True

    assert transport.max_inflight == 1
    assert transport.history == [True, False]
    assert CapabilityToken.from_wire(transport.slots["alice"]).decision is False


def test_queued_token_is_superseded_by_newer_one(issuer):
    transport = GatedTransport()
    with DebouncedPublisher(ScriptedClaims(True, True, True), transport) as pub:
        first = pub.maybe_publish("alice", lambda: issuer.issue("alice", True, 150, 140))
        assert transport.first_started.wait(5)
        middle = pub.maybe_publish("alice", lambda: issuer.issue("alice", True, 151, 140))
        last = pub.maybe_publish("alice", lambda: issuer.issue("alice", False, 0, 140))
        assert middle.future.cancelled()
        transport.release.set()
        assert last.wait(5) is True
        assert middle.wait(5) is False
        assert first.wait(5) is True

    assert transport.history == [True, False]
    stored = CapabilityToken.from_wire(transport.slots["alice"])
    assert stored == last.token


def test_slow_subject_does_not_hold_up_others(issuer):
    transport = GatedTransport()
    with DebouncedPublisher(ScriptedClaims(True, True), transport) as pub:
        pub.maybe_publish("alice", lambda: issuer.issue("alice", True, 150, 140))
        assert transport.first_started.wait(5)
        bob = pub.maybe_publish("bob", lambda: issuer.issue("bob", True, 150, 140))
        assert bob.wait(5) is True
        assert "alice" not in transport.slots
        transport.release.set()
