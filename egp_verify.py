"""egp_verify: fail-closed gate check for the effort gate.

Run as a short-lived process right before a privileged action (for example
as a pre-tool-use hook). It trusts nothing but its own config file and the
public key in it, fetches the subject's latest published token, and re-checks
every property from the wire payload.

Checks, in order (first failure wins):
  1) gate config present and valid, pinned key version known
  2) latest token fetched within the deadline
  3) payload decodes into a version-1 token
  4) token subject equals the configured subject
  5) token not expired
  6) Ed25519 signature valid over the canonical message
  7) expiry not further out than the configured TTL (plus clock skew)
  8) token decision is true

Exit codes: 0 allow, 2 deny. Any unexpected error is a deny.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from egp_gateway.crypto import Ed25519KeyPair, KeyRegistry
from egp_gateway.errors import EGP_E_CONFIG_MISSING, EGP_E_TOKEN_VERSION, ConfigError, MalformedTokenError, TransportError
from egp_gateway.tokens import CapabilityToken
from egp_gateway.transport import (
    DEFAULT_READ_TIMEOUT_SECONDS,
    PAYLOAD_FILENAME,
    SIGNAL_REF_PATTERN,
    SignalTransport,
    build_transport,
)

logger = logging.getLogger("egp_verify")

CONFIG_FILENAME = "egp.config.json"
CONFIG_ENV = "EGP_GATE_CONFIG"
GATE_CONFIG_VERSION = 1
DEFAULT_MAX_CLOCK_SKEW_SECONDS = 30
MAX_FETCH_TIMEOUT_SECONDS = 30.0
EXIT_ALLOW = 0
EXIT_DENY = 2

REASON_ALLOW = "allow"
REASON_CONFIG_MISSING = "config missing"
REASON_CONFIG_INVALID = "config invalid"
REASON_UNKNOWN_KEY_VERSION = "unknown key version"
REASON_SIGNAL_NOT_FOUND = "signal not found"
REASON_MALFORMED_PAYLOAD = "malformed payload"
REASON_UNSUPPORTED_VERSION = "unsupported version"
REASON_SUBJECT_MISMATCH = "subject mismatch"
REASON_EXPIRED = "expired"
REASON_INVALID_SIGNATURE = "invalid signature"
REASON_TTL_EXCEEDS_HINT = "ttl exceeds hint"
REASON_BELOW_THRESHOLD = "below threshold"
REASON_INTERNAL_ERROR = "internal error"


@dataclass(frozen=True)
class GateDecision:
    allowed: bool
    reason: str
    detail: str = ""

    @classmethod
    def allow(cls, detail: str = "") -> "GateDecision":
        return cls(True, REASON_ALLOW, detail)

    @classmethod
    def deny(cls, reason: str, detail: str = "") -> "GateDecision":
        return cls(False, reason, detail)

    def as_dict(self) -> Dict[str, Any]:
        return {"allowed": self.allowed, "reason": self.reason, "detail": self.detail}


@dataclass
class GateConfig:
    """Verifier-side record written by ``egp init-gate``."""

    subject_key: str
    public_key_version: int
    registry: KeyRegistry
    ttl_seconds: Optional[int] = None
    fetch_timeout_seconds: float = DEFAULT_READ_TIMEOUT_SECONDS
    max_clock_skew_seconds: int = DEFAULT_MAX_CLOCK_SKEW_SECONDS
    signal_ref_pattern: str = SIGNAL_REF_PATTERN
    payload_filename: str = PAYLOAD_FILENAME
    transport: Dict[str, Any] = field(default_factory=dict)
    base_dir: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any, *, base_dir: Optional[str] = None) -> "GateConfig":
        if not isinstance(data, dict):
            raise ConfigError("gate config must be a JSON object")
        if data.get("version") != GATE_CONFIG_VERSION or isinstance(data.get("version"), bool):
            raise ConfigError(f"unsupported gate config version: {data.get('version')!r}")
        subject_key = data.get("subject_key")
        if not isinstance(subject_key, str) or not subject_key:
            raise ConfigError("subject_key is required")
        version = data.get("public_key_version", 1)
        if isinstance(version, bool) or not isinstance(version, int) or version < 1:
            raise ConfigError("public_key_version must be a positive integer")
        if data.get("public_key") is None and not data.get("public_keys"):
            raise ConfigError("public_key or public_keys is required")
        try:
            registry = KeyRegistry.from_config(data)
        except ValueError as e:
            raise ConfigError(f"invalid public key material: {e}") from e

        ttl = data.get("ttl_seconds")
        if ttl is not None and (isinstance(ttl, bool) or not isinstance(ttl, int) or ttl < 1):
            raise ConfigError("ttl_seconds must be a positive integer")
        timeout = data.get("fetch_timeout_seconds", DEFAULT_READ_TIMEOUT_SECONDS)
        if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
            raise ConfigError("fetch_timeout_seconds must be a positive number")
        skew = data.get("max_clock_skew_seconds", DEFAULT_MAX_CLOCK_SKEW_SECONDS)
        if isinstance(skew, bool) or not isinstance(skew, int) or skew < 0:
            raise ConfigError("max_clock_skew_seconds must be a non-negative integer")

        pattern = data.get("signal_ref_pattern", SIGNAL_REF_PATTERN)
        payload_filename = data.get("payload_filename", PAYLOAD_FILENAME)
        if not isinstance(pattern, str) or "{subject_key}" not in pattern:
            raise ConfigError("signal_ref_pattern must contain {subject_key}")
        if not isinstance(payload_filename, str) or not payload_filename or "/" in payload_filename:
            raise ConfigError("payload_filename must be a bare file name")
        transport = data.get("transport", {"kind": "git", "remote": "origin"})
        if not isinstance(transport, dict):
            raise ConfigError("transport must be an object")

        return cls(
            subject_key=subject_key,
            public_key_version=version,
            registry=registry,
            ttl_seconds=ttl,
            fetch_timeout_seconds=min(float(timeout), MAX_FETCH_TIMEOUT_SECONDS),
            max_clock_skew_seconds=skew,
            signal_ref_pattern=pattern,
            payload_filename=payload_filename,
            transport=dict(transport),
            base_dir=base_dir,
        )

    @classmethod
    def load(cls, path: Union[str, Path]) -> "GateConfig":
        p = Path(path)
        try:
            text = p.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigError(f"cannot read gate config {p}: {e}", code=EGP_E_CONFIG_MISSING) from e
        try:
            data = json.loads(text)
        except ValueError as e:
            raise ConfigError(f"gate config {p} is not valid JSON: {e}") from e
        return cls.from_dict(data, base_dir=str(p.resolve().parent))

    def pinned_key(self) -> Optional[Ed25519KeyPair]:
        return self.registry.get(self.public_key_version)

    def build_transport(self) -> SignalTransport:
        spec = dict(self.transport)
        spec.setdefault("ref_pattern", self.signal_ref_pattern)
        spec.setdefault("payload_filename", self.payload_filename)
        if spec.get("kind") == "git":
            spec.setdefault("repo_dir", self.base_dir or ".")
        return build_transport(spec, base_dir=self.base_dir)


def discover_config(explicit: Optional[str] = None, *, cwd: Optional[str] = None) -> Optional[Path]:
    """Resolve the gate config: explicit path, then $EGP_GATE_CONFIG, then walk up from cwd."""
    if explicit:
        return Path(explicit)
    env_path = (os.getenv(CONFIG_ENV, "") or "").strip()
    if env_path:
        return Path(env_path)
    here = Path(cwd or os.getcwd()).resolve()
    for d in (here, *here.parents):
        candidate = d / CONFIG_FILENAME
        if candidate.is_file():
            return candidate
    return None


def fetch_with_deadline(transport: SignalTransport, subject_key: str, timeout_seconds: float) -> Optional[bytes]:
    """Read the slot on a daemon thread and give up after the deadline.

    A transport that ignores its own timeout cannot keep the gate (or the
    process) waiting.
    """
    box: Dict[str, Any] = {}

    def _run() -> None:
        try:
            box["data"] = transport.read_latest(subject_key, timeout_seconds)
        except BaseException as e:  # re-raised on the caller's thread
            box["error"] = e

    t = threading.Thread(target=_run, name="egp-verify-fetch", daemon=True)
    t.start()
    t.join(float(timeout_seconds) + 0.5)
    if t.is_alive():
        raise TransportError(f"fetch exceeded {timeout_seconds}s deadline")
    if "error" in box:
        raise box["error"]
    return box.get("data")


def _coerce_public_key(key: Union[Ed25519KeyPair, str, bytes]) -> Ed25519KeyPair:
    if isinstance(key, Ed25519KeyPair):
        return key
    if isinstance(key, (bytes, bytearray)):
        return Ed25519KeyPair.from_public_key("pinned", bytes(key).hex())
    return Ed25519KeyPair.from_public_key("pinned", str(key))


def evaluate_payload(
    blob: Union[bytes, str],
    subject_key: str,
    public_key: Ed25519KeyPair,
    *,
    now: Optional[float] = None,
    ttl_hint: Optional[int] = None,
    max_clock_skew_seconds: int = DEFAULT_MAX_CLOCK_SKEW_SECONDS,
) -> GateDecision:
    """Steps 3 to 8 on an already-fetched payload."""
    try:
        token = CapabilityToken.from_wire(blob)
    except MalformedTokenError as e:
        if e.code == EGP_E_TOKEN_VERSION:
            return GateDecision.deny(REASON_UNSUPPORTED_VERSION, e.message)
        return GateDecision.deny(REASON_MALFORMED_PAYLOAD, e.message)

    if token.subject_key != subject_key:
        return GateDecision.deny(REASON_SUBJECT_MISMATCH, f"token is for {token.subject_key!r}")

    t = time.time() if now is None else float(now)
    if not (t < token.expires_at):
        return GateDecision.deny(REASON_EXPIRED, f"expired {int(t - token.expires_at)}s ago")

    if not token.verify_signature(public_key):
        return GateDecision.deny(REASON_INVALID_SIGNATURE)

    if ttl_hint is not None and token.expires_at - t > ttl_hint + max_clock_skew_seconds:
        return GateDecision.deny(REASON_TTL_EXCEEDS_HINT, f"expires in {int(token.expires_at - t)}s")

    if token.decision is not True:
        return GateDecision.deny(REASON_BELOW_THRESHOLD, f"metric {token.metric_value} vs threshold {token.threshold}")

    return GateDecision.allow(f"metric {token.metric_value} vs threshold {token.threshold}")


def check(
    subject_key: str,
    trusted_public_key: Union[Ed25519KeyPair, str, bytes],
    *,
    transport: SignalTransport,
    now: Optional[float] = None,
    timeout_seconds: float = DEFAULT_READ_TIMEOUT_SECONDS,
    ttl_hint: Optional[int] = None,
    max_clock_skew_seconds: int = DEFAULT_MAX_CLOCK_SKEW_SECONDS,
) -> GateDecision:
    """Fetch the subject's latest token and decide. Never raises."""
    try:
        try:
            public_key = _coerce_public_key(trusted_public_key)
        except ValueError as e:
            return GateDecision.deny(REASON_CONFIG_INVALID, f"trusted public key: {e}")

        try:
            blob = fetch_with_deadline(transport, subject_key, timeout_seconds)
        except Exception as e:
            logger.warning("signal fetch failed for %s: %s", subject_key, e)
            return GateDecision.deny(REASON_SIGNAL_NOT_FOUND, str(e))
        if blob is None:
            return GateDecision.deny(REASON_SIGNAL_NOT_FOUND)

        decision = evaluate_payload(
            blob,
            subject_key,
            public_key,
            now=now,
            ttl_hint=ttl_hint,
            max_clock_skew_seconds=max_clock_skew_seconds,
        )
        if not decision.allowed:
            logger.warning("gate denied for %s: %s (%s)", subject_key, decision.reason, decision.detail)
        return decision
    except Exception as e:
        logger.exception("verifier internal error")
        return GateDecision.deny(REASON_INTERNAL_ERROR, f"{type(e).__name__}: {e}")


def _load_gate(config_path: Optional[str]):
    """Return (config, None) or (None, deny decision)."""
    path = discover_config(config_path)
    if path is None:
        return None, GateDecision.deny(REASON_CONFIG_MISSING, f"no {CONFIG_FILENAME} found")
    try:
        cfg = GateConfig.load(path)
    except ConfigError as e:
        reason = REASON_CONFIG_MISSING if e.code == EGP_E_CONFIG_MISSING else REASON_CONFIG_INVALID
        return None, GateDecision.deny(reason, e.message)
    if cfg.pinned_key() is None:
        return None, GateDecision.deny(
            REASON_UNKNOWN_KEY_VERSION,
            f"public_key_version {cfg.public_key_version} not in registry {cfg.registry.versions()}",
        )
    return cfg, None


def run_gate(
    config_path: Optional[str] = None,
    *,
    now: Optional[float] = None,
    transport: Optional[SignalTransport] = None,
) -> GateDecision:
    """Full gate: resolve config, fetch, verify. Never raises."""
    try:
        cfg, denial = _load_gate(config_path)
        if denial is not None:
            return denial
        try:
            tr = transport or cfg.build_transport()
        except ConfigError as e:
            return GateDecision.deny(REASON_CONFIG_INVALID, e.message)
        return check(
            cfg.subject_key,
            cfg.pinned_key(),
            transport=tr,
            now=now,
            timeout_seconds=cfg.fetch_timeout_seconds,
            ttl_hint=cfg.ttl_seconds,
            max_clock_skew_seconds=cfg.max_clock_skew_seconds,
        )
    except Exception as e:
        logger.exception("verifier internal error")
        return GateDecision.deny(REASON_INTERNAL_ERROR, f"{type(e).__name__}: {e}")


def run_token_file(config_path: Optional[str], token_path: str, *, now: Optional[float] = None) -> GateDecision:
    """Verify a token saved on disk against the gate config (debugging aid)."""
    try:
        cfg, denial = _load_gate(config_path)
        if denial is not None:
            return denial
        try:
            blob = Path(token_path).read_bytes()
        except OSError as e:
            return GateDecision.deny(REASON_SIGNAL_NOT_FOUND, str(e))
        return evaluate_payload(
            blob,
            cfg.subject_key,
            cfg.pinned_key(),
            now=now,
            ttl_hint=cfg.ttl_seconds,
            max_clock_skew_seconds=cfg.max_clock_skew_seconds,
        )
    except Exception as e:
        logger.exception("verifier internal error")
        return GateDecision.deny(REASON_INTERNAL_ERROR, f"{type(e).__name__}: {e}")


def _emit_json(decision: GateDecision, *, pretty: bool = False) -> None:
    payload = decision.as_dict()
    if pretty:
        print(json.dumps(payload, indent=2, sort_keys=True))
    else:
        print(json.dumps(payload, separators=(",", ":"), sort_keys=True))


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="egp-verify",
        description="Allow (exit 0) or block (exit 2) based on the subject's latest effort token",
    )
    parser.add_argument("--config", default=None, help=f"Path to {CONFIG_FILENAME} (default: ${CONFIG_ENV} or search upward)")
    parser.add_argument("--token-file", default=None, help="Verify this token file instead of fetching")
    parser.add_argument("--json", dest="json_out", action="store_true", help="Emit a machine-readable JSON decision")
    parser.add_argument("--pretty", dest="json_pretty", action="store_true", help="Pretty-print JSON output")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log verification details to stderr")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.ERROR,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )

    if args.token_file:
        decision = run_token_file(args.config, args.token_file)
    else:
        decision = run_gate(args.config)

    if args.json_out:
        _emit_json(decision, pretty=args.json_pretty)
    if decision.allowed:
        return EXIT_ALLOW
    msg = f"effort-gate: {decision.reason}; tools locked"
    if decision.detail:
        msg += f" ({decision.detail})"
    print(msg, file=sys.stderr)
    return EXIT_DENY


if __name__ == "__main__":
    raise SystemExit(main())
