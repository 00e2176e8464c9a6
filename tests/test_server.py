import asyncio
import json
import threading

import pytest
from fastapi.testclient import TestClient

from egp_gateway.config import GatewaySettings
from egp_gateway.crypto import Ed25519KeyPair
from egp_gateway.gateway import EffortGateway
from egp_gateway.server import MAX_SIGNAL_BYTES, create_app
from egp_gateway.stabilizer import GateState
from egp_gateway.tokens import CapabilityToken, TokenIssuer
from egp_gateway.transport import PAYLOAD_FILENAME, DirectoryTransport

ENV_VARS = (
    "EGP_API_KEYS_JSON",
    "EGP_API_KEYS_FILE",
    "EGP_METRICS_TOKEN",
    "EGP_METRICS_ENABLED",
    "EGP_SIGNING_KEY",
    "EGP_SIGNING_KEY_FILE",
    "EGP_SIGNING_CMD",
    "EGP_ALLOW_EPHEMERAL_SIGNING_KEYS",
    "EGP_PUBLIC_KEY_HEX",
)


class AlwaysClaim:
    def try_claim(self, subject_key, now=None):
        return True


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def kp():
    return Ed25519KeyPair.generate("gw")


@pytest.fixture()
def transport(tmp_path):
    return DirectoryTransport(str(tmp_path / "signals"))


@pytest.fixture()
def gateway(kp, transport):
    gw = EffortGateway(kp, GatewaySettings(threshold=140), transport=transport, claims=AlwaysClaim())
    yield gw
    gw.close()


@pytest.fixture()
def client(gateway):
    return TestClient(create_app(gateway))


def _start(client, subject="alice", headers=None):
    r = client.post("/v1/sessions", json={"subject_key": subject}, headers=headers or {})
    assert r.status_code == 200, r.text
    return r.json()["session_id"]


def _sample(client, sid, headers=None, **body):
    return client.post(f"/v1/sessions/{sid}/samples", json=body, headers=headers or {})


def test_health(client, kp):
    r = client.get("/v1/health")
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "healthy"
    assert body["public_key"] == kp.public_key_hex
    assert body["policy"] == "threshold"
    assert body["key_version"] == 1
    assert body["active_sessions"] == 0


def test_session_flow(client, gateway, transport):
    sid = _start(client)
    r = client.get(f"/v1/sessions/{sid}")
    assert r.json()["state"] == "LOCKED"
    assert r.json()["threshold"] == 140

    r = _sample(client, sid, heart_rate=150, timestamp=1)
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["state"] == "UNLOCKED"
    assert body["qualifies"] is True
    assert body["published"] is True
    gateway.get_session(sid).last_publish.wait(5)

    r = client.get("/v1/signals/alice")
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("application/json")
    assert r.content == transport.read_latest("alice")
    assert CapabilityToken.from_wire(r.content).decision is True

    r = client.get(f"/v1/signals/alice/{PAYLOAD_FILENAME}")
    assert r.content == transport.read_latest("alice")

    r = client.post(f"/v1/sessions/{sid}/end")
    assert r.status_code == 200
    assert r.json()["active"] is False
    assert r.json()["state"] == "INACTIVE"

    r = _sample(client, sid, heart_rate=150, timestamp=2)
    assert r.status_code == 409
    assert r.json()["code"] == "EGP_E_SESSION_INACTIVE"


def test_session_requires_subject(client):
    r = client.post("/v1/sessions", json={})
    assert r.status_code == 400
    assert r.json()["detail"]["code"] == "EGP_E_BAD_REQUEST"


def test_invalid_subject_key(client):
    r = client.post("/v1/sessions", json={"subject_key": "bad/key"})
    assert r.status_code == 400
    assert r.json()["code"] == "EGP_E_BAD_REQUEST"


def test_unknown_session_is_404(client):
    r = client.get("/v1/sessions/sess_missing")
    assert r.status_code == 404
    assert r.json()["code"] == "EGP_E_SESSION_NOT_FOUND"


@pytest.mark.parametrize(
    "body",
    [
        {},
        {"heart_rate": 150, "pace": 500},
        {"latitude": 1.0},
        {"heart_rate": 150, "latitude": 1.0, "longitude": 2.0},
    ],
)
def test_sample_shape_errors(client, body):
    sid = _start(client)
    r = _sample(client, sid, **body)
    assert r.status_code == 400
    assert r.json()["detail"]["code"] == "EGP_E_SAMPLE_INVALID"


@pytest.mark.parametrize("body", [{"heart_rate": 10}, {"heart_rate": 400}, {"pace": -1}, {"latitude": 95, "longitude": 0}])
def test_sample_range_validation(client, body):
    sid = _start(client)
    assert _sample(client, sid, **body).status_code == 422


def test_signal_not_found(client):
    r = client.get("/v1/signals/nobody")
    assert r.status_code == 404
    assert r.json()["detail"]["code"] == "EGP_E_SIGNAL_NOT_FOUND"
    assert client.get("/v1/signals/alice/other.json").status_code == 404


def _token(kp, subject="alice"):
    return TokenIssuer(kp).issue(subject, True, 150, 140).to_wire()


def test_put_relay_stores_token(client, kp, transport):
    blob = _token(kp)
    r = client.put(f"/v1/signals/alice/{PAYLOAD_FILENAME}", content=blob)
    assert r.status_code == 204
    assert transport.read_latest("alice") == blob


def test_put_relay_rejections(client, kp, transport):
    url = f"/v1/signals/alice/{PAYLOAD_FILENAME}"
    r = client.put(url, content=b"not json")
    assert r.status_code == 400
    assert r.json()["detail"]["code"] == "EGP_E_TOKEN_MALFORMED"

    r = client.put(url, content=_token(kp, subject="bob"))
    assert r.status_code == 403

    r = client.put(url, content=b" " * (MAX_SIGNAL_BYTES + 1))
    assert r.status_code == 413

    r = client.put("/v1/signals/alice/other.json", content=_token(kp))
    assert r.status_code == 404

    data = json.loads(_token(kp))
    data["version"] = 7
    r = client.put(url, content=json.dumps(data).encode())
    assert r.status_code == 400
    assert r.json()["detail"]["code"] == "EGP_E_TOKEN_VERSION"

    assert transport.read_latest("alice") is None


# --- API key auth ---


@pytest.fixture()
def auth_client(gateway, monkeypatch):
    monkeypatch.setenv("EGP_API_KEYS_JSON", json.dumps({"key-alice": "alice", "key-bob": "bob"}))
    return TestClient(create_app(gateway))


def test_api_key_determines_subject(auth_client):
    r = auth_client.post("/v1/sessions", json={}, headers={"X-Api-Key": "key-alice"})
    assert r.status_code == 200
    assert r.json()["subject_key"] == "alice"


def test_api_key_required_and_checked(auth_client):
    r = auth_client.post("/v1/sessions", json={"subject_key": "alice"})
    assert r.status_code == 401
    assert r.json()["detail"]["message"] == "API_KEY_REQUIRED"

    r = auth_client.post("/v1/sessions", json={"subject_key": "alice"}, headers={"X-Api-Key": "wrong"})
    assert r.status_code == 401
    assert r.json()["detail"]["message"] == "API_KEY_INVALID"

    r = auth_client.post("/v1/sessions", json={"subject_key": "alice"}, headers={"X-Api-Key": "key-bob"})
    assert r.status_code == 403


def test_other_subject_cannot_drive_session(auth_client):
    sid = _start(auth_client, headers={"X-Api-Key": "key-alice"})
    r = _sample(auth_client, sid, headers={"X-Api-Key": "key-bob"}, heart_rate=150, timestamp=1)
    assert r.status_code == 403
    r = auth_client.post(f"/v1/sessions/{sid}/end", headers={"X-Api-Key": "key-bob"})
    assert r.status_code == 403
    r = _sample(auth_client, sid, headers={"X-Api-Key": "key-alice"}, heart_rate=150, timestamp=1)
    assert r.status_code == 200


def test_relay_requires_matching_key(auth_client, kp):
    url = f"/v1/signals/alice/{PAYLOAD_FILENAME}"
    assert auth_client.put(url, content=_token(kp), headers={"X-Api-Key": "key-bob"}).status_code == 403
    assert auth_client.put(url, content=_token(kp), headers={"X-Api-Key": "key-alice"}).status_code == 204
    assert auth_client.get("/v1/signals/alice", headers={"X-Api-Key": "key-alice"}).status_code == 200
    assert auth_client.get("/v1/signals/alice").status_code == 401


def test_malformed_key_config_fails_closed(gateway, monkeypatch):
    monkeypatch.setenv("EGP_API_KEYS_JSON", "{not json")
    client = TestClient(create_app(gateway))
    r = client.post("/v1/sessions", json={"subject_key": "alice"})
    assert r.status_code == 503
    assert r.json()["detail"]["code"] == "EGP_E_AUTH_REQUIRED"


def test_api_keys_file(gateway, monkeypatch, tmp_path):
    path = tmp_path / "keys.json"
    path.write_text(json.dumps({"file-key": "carol"}), encoding="utf-8")
    monkeypatch.setenv("EGP_API_KEYS_FILE", str(path))
    client = TestClient(create_app(gateway))
    r = client.post("/v1/sessions", json={}, headers={"X-Api-Key": "file-key"})
    assert r.json()["subject_key"] == "carol"


# --- metrics ---


def test_metrics_endpoint(client):
    sid = _start(client)
    _sample(client, sid, heart_rate=150, timestamp=1)
    r = client.get("/metrics")
    assert r.status_code == 200
    assert "egp_samples_total" in r.text
    assert "egp_state_transitions_total" in r.text


def test_metrics_token(gateway, monkeypatch):
    monkeypatch.setenv("EGP_METRICS_TOKEN", "s3cret")
    client = TestClient(create_app(gateway))
    assert client.get("/metrics").status_code == 403
    assert client.get("/metrics", headers={"Authorization": "Bearer s3cret"}).status_code == 200
    assert client.get("/metrics", headers={"X-Metrics-Token": "s3cret"}).status_code == 200


# --- default wiring from env ---


def test_default_gateway_requires_key(monkeypatch, tmp_path):
    monkeypatch.setenv("EGP_DB_PATH", str(tmp_path / "gw.db"))
    with pytest.raises(RuntimeError):
        create_app()


def test_default_gateway_with_ephemeral_key(monkeypatch, tmp_path):
    monkeypatch.setenv("EGP_DB_PATH", str(tmp_path / "gw.db"))
    monkeypatch.setenv("EGP_TRANSPORT", "dir")
    monkeypatch.setenv("EGP_TRANSPORT_DIR", str(tmp_path / "signals"))
    monkeypatch.setenv("EGP_CLAIM_WORK_BUDGET_MS", "10000")
    monkeypatch.setenv("EGP_ALLOW_EPHEMERAL_SIGNING_KEYS", "1")
    with pytest.warns(UserWarning):
        app = create_app()
    with TestClient(app) as client:
        sid = _start(client)
        r = _sample(client, sid, heart_rate=150, timestamp=1)
        assert r.json()["published"] is True
        app.state.gateway.get_session(sid).last_publish.wait(5)
        assert client.get("/v1/signals/alice").status_code == 200


@pytest.mark.asyncio
async def test_lifespan_sweep_locks_stale_sessions(kp, transport):
    settings = GatewaySettings(threshold=140, heartbeat_timeout_seconds=0.2, heartbeat_check_interval_seconds=0.05)
    gw = EffortGateway(kp, settings, transport=transport, claims=AlwaysClaim())
    app = create_app(gw)
    session = gw.start_session("alice")
    gw.ingest_sample(session.session_id, 150).publish.wait(5)
    assert session.stabilizer.state is GateState.UNLOCKED

    async with app.router.lifespan_context(app):
        for _ in range(100):
            if session.stabilizer.state is GateState.LOCKED:
                break
            await asyncio.sleep(0.05)

    assert session.stabilizer.state is GateState.LOCKED
    session.last_publish.wait(5)
    assert CapabilityToken.from_wire(transport.read_latest("alice")).decision is False
    gw.close()


def test_sample_kind_must_match_policy(client, kp, transport):
    sid = _start(client)
    r = _sample(client, sid, pace=500, timestamp=1)
    assert r.status_code == 400
    assert r.json()["code"] == "EGP_E_SAMPLE_INVALID"
    r = _sample(client, sid, latitude=1.0, longitude=2.0, timestamp=2)
    assert r.status_code == 400

    pace_gw = EffortGateway(
        kp,
        GatewaySettings(policy="hysteresis", threshold=600, consecutive_readings=3),
        transport=transport,
        claims=AlwaysClaim(),
    )
    pace_client = TestClient(create_app(pace_gw))
    sid = _start(pace_client, subject="bob")
    for i in range(3):
        r = _sample(pace_client, sid, heart_rate=150, timestamp=i + 1)
        assert r.status_code == 400
        assert r.json()["code"] == "EGP_E_SAMPLE_INVALID"
    assert pace_client.get(f"/v1/sessions/{sid}").json()["state"] == "LOCKED"

    for i in range(3):
        r = _sample(pace_client, sid, pace=540, timestamp=i + 10)
        assert r.status_code == 200
    assert r.json()["state"] == "UNLOCKED"
    pace_gw.close()


class BlockingSweepGateway(EffortGateway):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.entered = threading.Event()
        self.release = threading.Event()
        self.finished = threading.Event()

    def sweep_stale(self, now=None):
        self.entered.set()
        self.release.wait(5)
        self.finished.set()
        return []


@pytest.mark.asyncio
async def test_lifespan_sweep_runs_off_the_event_loop(kp, transport):
    settings = GatewaySettings(threshold=140, heartbeat_check_interval_seconds=0.01)
    gw = BlockingSweepGateway(kp, settings, transport=transport, claims=AlwaysClaim())
    app = create_app(gw)

    async with app.router.lifespan_context(app):
        for _ in range(200):
            if gw.entered.is_set():
                break
            await asyncio.sleep(0.01)
        assert gw.entered.is_set()
        # The loop keeps running while the sweep is still blocked.
        assert not gw.finished.is_set()
        gw.release.set()
    gw.close()
