import threading

import pytest

from egp_gateway.config import GatewaySettings
from egp_gateway.crypto import Ed25519KeyPair
from egp_gateway.debounce import PublishClaimStore
from egp_gateway.errors import (
    EGP_E_BAD_REQUEST,
    EGP_E_SAMPLE_INVALID,
    EGP_E_SESSION_INACTIVE,
    EGP_E_SESSION_NOT_FOUND,
    ConfigError,
    EGPError,
    SignerUnavailableError,
)
from egp_gateway.gateway import EffortGateway
from egp_gateway.lockdown import ClaimBreakerConfig, ClaimStoreBreaker
from egp_gateway.pace import LocationSample
from egp_gateway.stabilizer import GateState, HeartRateSample, PaceSample
from egp_gateway.tokens import CapabilityToken
from egp_gateway.transport import DirectoryTransport
from egp_verify import check


class AlwaysClaim:
    def try_claim(self, subject_key, now=None):
        return True


class NeverClaim:
    def try_claim(self, subject_key, now=None):
        return False


class FakeClock:
    def __init__(self, t=1_700_000_000.0):
        self.t = t

    def __call__(self):
        return self.t


@pytest.fixture()
def kp():
    return Ed25519KeyPair.generate("gw")


@pytest.fixture()
def transport(tmp_path):
    return DirectoryTransport(str(tmp_path / "signals"))


def _gateway(kp, transport, settings=None, claims=None, clock=None):
    kw = {"transport": transport, "claims": claims or AlwaysClaim()}
    if clock is not None:
        kw["clock"] = clock
    return EffortGateway(kp, settings or GatewaySettings(threshold=140), **kw)


def _latest(transport, subject="alice"):
    return CapabilityToken.from_wire(transport.read_latest(subject))


def test_session_lifecycle_publishes_tokens(kp, transport):
    gw = _gateway(kp, transport)
    session = gw.start_session("alice")
    assert session.session_id.startswith("sess_")
    assert session.status()["state"] == "LOCKED"

    r = gw.ingest_sample(session.session_id, HeartRateSample(152, timestamp=1))
    assert r.reading.state is GateState.UNLOCKED
    assert r.publish.claimed and r.publish.wait(5)
    tok = _latest(transport)
    assert tok.decision is True and tok.metric_value == 152 and tok.threshold == 140
    assert check("alice", kp.public_key_hex, transport=transport).allowed

    r = gw.ingest_sample(session.session_id, HeartRateSample(120, timestamp=2))
    assert r.publish.wait(5)
    assert _latest(transport).decision is False
    assert check("alice", kp.public_key_hex, transport=transport).reason == "below threshold"

    gw.end_session(session.session_id)
    assert session.last_publish.wait(5)
    assert _latest(transport).decision is False
    assert not session.active
    gw.close()


def test_end_session_locks_gate_immediately(kp, transport):
    gw = _gateway(kp, transport)
    session = gw.start_session("alice")
    gw.ingest_sample(session.session_id, 150).publish.wait(5)
    assert check("alice", kp.public_key_hex, transport=transport).allowed
    gw.end_session(session.session_id)
    session.last_publish.wait(5)
    tok = _latest(transport)
    assert tok.decision is False
    assert tok.metric_value == 0
    gw.close()


def test_samples_after_end_rejected(kp, transport):
    gw = _gateway(kp, transport)
    session = gw.start_session("alice")
    gw.end_session(session.session_id)
    with pytest.raises(EGPError) as ei:
        gw.ingest_sample(session.session_id, 150)
    assert ei.value.code == EGP_E_SESSION_INACTIVE
    assert ei.value.http_status == 409
    with pytest.raises(EGPError):
        gw.end_session(session.session_id)
    gw.close()


def test_unknown_session(kp, transport):
    gw = _gateway(kp, transport)
    with pytest.raises(EGPError) as ei:
        gw.get_session("sess_nope")
    assert ei.value.code == EGP_E_SESSION_NOT_FOUND
    assert ei.value.http_status == 404
    gw.close()


def test_invalid_subject_key_rejected(kp, transport):
    gw = _gateway(kp, transport)
    with pytest.raises(EGPError) as ei:
        gw.start_session("../etc")
    assert ei.value.code == EGP_E_BAD_REQUEST
    gw.close()


def test_new_session_displaces_old(kp, transport):
    gw = _gateway(kp, transport)
    first = gw.start_session("alice")
    gw.ingest_sample(first.session_id, 150)
    second = gw.start_session("alice")
    assert not first.active
    assert first.stabilizer.state is GateState.INACTIVE
    assert second.active
    assert [s.session_id for s in gw.sessions.active_sessions()] == [second.session_id]
    with pytest.raises(EGPError):
        gw.ingest_sample(first.session_id, 150)
    other = gw.start_session("bob")
    assert len(gw.sessions.active_sessions()) == 2
    assert other.subject_key == "bob"
    gw.close()


def test_debounce_limits_publishes(kp, transport, tmp_path):
    claims = PublishClaimStore(
        str(tmp_path / "claims.db"),
        60.0,
        circuit=ClaimStoreBreaker(ClaimBreakerConfig(work_budget_ms=10_000, lock_wait_budget_ms=10_000)),
    )
    gw = _gateway(kp, transport, claims=claims)
    session = gw.start_session("alice")
    results = [gw.ingest_sample(session.session_id, HeartRateSample(150 + i, timestamp=i + 1)) for i in range(5)]
    assert [r.publish.claimed for r in results] == [True, False, False, False, False]
    assert results[1].publish.reason == "claim_lost"
    results[0].publish.wait(5)
    assert _latest(transport).metric_value == 150
    gw.close()


def test_heartbeat_sweep_locks_and_publishes(kp, transport):
    clock = FakeClock()
    gw = _gateway(kp, transport, GatewaySettings(threshold=140, heartbeat_timeout_seconds=30), clock=clock)
    session = gw.start_session("alice")
    gw.ingest_sample(session.session_id, 150).publish.wait(5)

    assert gw.sweep_stale(now=clock.t + 10) == []
    assert gw.sweep_stale(now=clock.t + 31) == [session.session_id]
    session.last_publish.wait(5)
    assert session.stabilizer.state is GateState.LOCKED
    tok = _latest(transport)
    assert tok.decision is False
    assert tok.metric_value == 150
    # Already locked: nothing further to do.
    assert gw.sweep_stale(now=clock.t + 62) == []
    gw.close()


def test_token_ttl_follows_settings(kp, transport):
    clock = FakeClock()
    gw = _gateway(kp, transport, GatewaySettings(threshold=140, token_ttl_seconds=20), clock=clock)
    session = gw.start_session("alice")
    gw.ingest_sample(session.session_id, 150).publish.wait(5)
    assert _latest(transport).expires_at == int(clock.t) + 20
    gw.close()


def test_signer_failure_surfaces(transport):
    class BrokenSigner:
        key_id = "broken"
        public_key_bytes = b"\x00" * 32
        public_key_hex = "00" * 32

        def sign(self, message):
            raise OSError("hsm offline")

    gw = _gateway(BrokenSigner(), transport)
    session = gw.start_session("alice")
    with pytest.raises(SignerUnavailableError):
        gw.ingest_sample(session.session_id, 150)
    assert transport.read_latest("alice") is None
    gw.close()


def test_hysteresis_policy_gateway(kp, transport):
    settings = GatewaySettings(policy="hysteresis", threshold=600, hysteresis_buffer=15, consecutive_readings=3)
    gw = _gateway(kp, transport, settings)
    session = gw.start_session("alice")
    for i in range(2):
        r = gw.ingest_sample(session.session_id, PaceSample(540, timestamp=i + 1))
        assert r.reading.state is GateState.LOCKED
        r.publish.wait(5)
    r = gw.ingest_sample(session.session_id, PaceSample(540, timestamp=3))
    assert r.reading.state is GateState.UNLOCKED
    r.publish.wait(5)
    tok = _latest(transport)
    assert tok.decision is True and tok.threshold == 600
    assert session.status()["policy"] == "hysteresis"
    gw.close()


def test_heart_rate_rejected_on_pace_gate(kp, transport):
    settings = GatewaySettings(policy="hysteresis", threshold=600, hysteresis_buffer=15, consecutive_readings=3)
    gw = _gateway(kp, transport, settings)
    session = gw.start_session("alice")
    for i in range(3):
        with pytest.raises(EGPError) as ei:
            gw.ingest_sample(session.session_id, HeartRateSample(150, timestamp=i + 1))
        assert ei.value.code == EGP_E_SAMPLE_INVALID
        assert ei.value.http_status == 400
    assert session.stabilizer.state is GateState.LOCKED
    assert session.samples_received == 0
    assert transport.read_latest("alice") is None
    gw.close()


def test_pace_and_location_rejected_on_heart_rate_gate(kp, transport):
    gw = _gateway(kp, transport)
    session = gw.start_session("alice")
    for sample in (PaceSample(150, timestamp=1), LocationSample(latitude=1.0, longitude=2.0, timestamp=2)):
        with pytest.raises(EGPError) as ei:
            gw.ingest_sample(session.session_id, sample)
        assert ei.value.code == EGP_E_SAMPLE_INVALID
    assert session.stabilizer.state is GateState.LOCKED
    gw.close()


def test_sample_count_is_exact_under_concurrency(kp, transport):
    gw = _gateway(kp, transport, claims=NeverClaim())
    session = gw.start_session("alice")
    barrier = threading.Barrier(8)

    def worker():
        barrier.wait()
        for _ in range(50):
            gw.ingest_sample(session.session_id, 150)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert session.samples_received == 400
    assert session.status()["samples_received"] == 400
    gw.close()


def test_read_and_write_signal(kp, transport):
    gw = _gateway(kp, transport)
    assert gw.read_signal("alice") is None
    gw.write_signal("alice", b"{}")
    assert gw.read_signal("alice") == b"{}"
    with pytest.raises(ValueError):
        gw.read_signal("../x")
    gw.close()


def test_close_ends_active_sessions(kp, transport):
    gw = _gateway(kp, transport)
    session = gw.start_session("alice")
    gw.close()
    assert not session.active
    assert session.stabilizer.state is GateState.INACTIVE


# --- settings ---


def test_settings_from_env_defaults(monkeypatch):
    for name in ("EGP_POLICY", "EGP_THRESHOLD", "EGP_TRANSPORT", "EGP_TOKEN_TTL_SECONDS"):
        monkeypatch.delenv(name, raising=False)
    s = GatewaySettings.from_env()
    assert s.policy == "threshold"
    assert s.threshold == 120
    assert s.token_ttl_seconds == 15
    assert s.transport_spec() == {"kind": "dir", "path": "egp_signals"}


def test_settings_from_env_pace_and_clamps(monkeypatch):
    monkeypatch.setenv("EGP_POLICY", "pace")
    monkeypatch.delenv("EGP_THRESHOLD", raising=False)
    monkeypatch.setenv("EGP_TOKEN_TTL_SECONDS", "9999")
    monkeypatch.setenv("EGP_CONSECUTIVE_READINGS", "0")
    monkeypatch.setenv("EGP_PUBLISH_MIN_INTERVAL_SECONDS", "-2")
    monkeypatch.setenv("EGP_HIGHER_IS_BETTER", "1")
    s = GatewaySettings.from_env()
    assert s.policy == "hysteresis"
    assert s.threshold == 600
    assert s.token_ttl_seconds == 300
    assert s.consecutive_readings == 1
    assert s.publish_min_interval_seconds == 1.0
    assert s.lower_is_better is False


def test_settings_rejects_unknown_policy_and_transport(monkeypatch):
    monkeypatch.setenv("EGP_POLICY", "vibes")
    with pytest.raises(ConfigError):
        GatewaySettings.from_env()
    monkeypatch.setenv("EGP_POLICY", "hr")
    monkeypatch.setenv("EGP_TRANSPORT", "smoke-signal")
    with pytest.raises(ConfigError):
        GatewaySettings.from_env()


def test_transport_spec_variants():
    with pytest.raises(ConfigError):
        GatewaySettings(transport_kind="http").transport_spec()
    assert GatewaySettings(transport_kind="http", transport_url="http://x", transport_api_key="k").transport_spec() == {
        "kind": "http",
        "url": "http://x",
        "api_key": "k",
    }
    assert GatewaySettings(transport_kind="git", git_remote="origin").transport_spec() == {
        "kind": "git",
        "repo_dir": ".",
        "remote": "origin",
    }
