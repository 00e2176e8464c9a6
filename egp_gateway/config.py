"""Environment-driven settings for the ingestion service.

Every value has a safe default; bad values fall back to the default rather
than crashing, and numeric values are clamped into sane ranges.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .debounce import DEFAULT_MIN_INTERVAL_SECONDS
from .errors import ConfigError
from .pace import PaceWindowConfig
from .stabilizer import (
    DEFAULT_CONSECUTIVE_READINGS,
    DEFAULT_HEART_RATE_THRESHOLD,
    DEFAULT_HEARTBEAT_TIMEOUT_SECONDS,
    DEFAULT_HYSTERESIS_BUFFER,
    DEFAULT_PACE_THRESHOLD,
    POLICY_HYSTERESIS,
    POLICY_THRESHOLD,
)
from .tokens import DEFAULT_TTL_SECONDS


def _get_str(name: str, default: str = "") -> str:
    return (os.getenv(name, default) or default).strip()


def _get_int(name: str, default: int) -> int:
    try:
        return int(_get_str(name, str(default)))
    except ValueError:
        return default


def _get_float(name: str, default: float) -> float:
    try:
        return float(_get_str(name, str(default)))
    except ValueError:
        return default


def _get_bool(name: str, default: bool = False) -> bool:
    v = _get_str(name).lower()
    if not v:
        return default
    return v in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class GatewaySettings:
    """Ingestion service configuration.

    Environment variables:
    - EGP_DB_PATH: SQLite file for publish claims (default egp_gateway.db)
    - EGP_POLICY: threshold (heart rate) | hysteresis (pace)
    - EGP_THRESHOLD: gate threshold (default 120 bpm / 600 s per mile)
    - EGP_HYSTERESIS_BUFFER, EGP_CONSECUTIVE_READINGS: hysteresis tuning
    - EGP_HIGHER_IS_BETTER: flip the hysteresis comparison
    - EGP_TOKEN_TTL_SECONDS: token lifetime (default 15)
    - EGP_PUBLISH_MIN_INTERVAL_SECONDS: debounce interval (default 1)
    - EGP_HEARTBEAT_TIMEOUT_SECONDS / EGP_HEARTBEAT_CHECK_INTERVAL_SECONDS
    - EGP_TRANSPORT: dir | http | git, plus EGP_TRANSPORT_DIR, EGP_TRANSPORT_URL,
      EGP_TRANSPORT_API_KEY, EGP_GIT_REPO, EGP_GIT_REMOTE
    - EGP_KEY_VERSION: public key version advertised to gate configs
    - EGP_ALLOW_EPHEMERAL_SIGNING_KEYS: dev/tests only
    """

    db_path: str = "egp_gateway.db"
    policy: str = POLICY_THRESHOLD
    threshold: float = DEFAULT_HEART_RATE_THRESHOLD
    hysteresis_buffer: float = DEFAULT_HYSTERESIS_BUFFER
    consecutive_readings: int = DEFAULT_CONSECUTIVE_READINGS
    lower_is_better: bool = True
    window: PaceWindowConfig = field(default_factory=PaceWindowConfig)
    token_ttl_seconds: int = DEFAULT_TTL_SECONDS
    publish_min_interval_seconds: float = DEFAULT_MIN_INTERVAL_SECONDS
    heartbeat_timeout_seconds: float = DEFAULT_HEARTBEAT_TIMEOUT_SECONDS
    heartbeat_check_interval_seconds: float = 10.0
    transport_kind: str = "dir"
    transport_dir: str = "egp_signals"
    transport_url: Optional[str] = None
    transport_api_key: Optional[str] = None
    git_repo: str = "."
    git_remote: Optional[str] = None
    key_version: int = 1
    allow_ephemeral_keys: bool = False

    @classmethod
    def from_env(cls) -> "GatewaySettings":
        policy = _get_str("EGP_POLICY", POLICY_THRESHOLD).lower()
        if policy in ("pace",):
            policy = POLICY_HYSTERESIS
        if policy in ("hr", "heart_rate"):
            policy = POLICY_THRESHOLD
        if policy not in (POLICY_THRESHOLD, POLICY_HYSTERESIS):
            raise ConfigError(f"EGP_POLICY must be threshold|hysteresis, got {policy!r}")
        default_threshold = DEFAULT_PACE_THRESHOLD if policy == POLICY_HYSTERESIS else DEFAULT_HEART_RATE_THRESHOLD

        threshold = _get_float("EGP_THRESHOLD", float(default_threshold))
        buffer = _get_float("EGP_HYSTERESIS_BUFFER", float(DEFAULT_HYSTERESIS_BUFFER))
        consecutive = _get_int("EGP_CONSECUTIVE_READINGS", DEFAULT_CONSECUTIVE_READINGS)
        ttl = _get_int("EGP_TOKEN_TTL_SECONDS", DEFAULT_TTL_SECONDS)
        interval = _get_float("EGP_PUBLISH_MIN_INTERVAL_SECONDS", DEFAULT_MIN_INTERVAL_SECONDS)
        hb_timeout = _get_float("EGP_HEARTBEAT_TIMEOUT_SECONDS", DEFAULT_HEARTBEAT_TIMEOUT_SECONDS)
        hb_check = _get_float("EGP_HEARTBEAT_CHECK_INTERVAL_SECONDS", 10.0)
        key_version = _get_int("EGP_KEY_VERSION", 1)

        # Clamp
        if threshold <= 0:
            threshold = float(default_threshold)
        if buffer < 0:
            buffer = float(DEFAULT_HYSTERESIS_BUFFER)
        if consecutive < 1:
            consecutive = 1
        if ttl < 1:
            ttl = 1
        if ttl > 300:
            ttl = 300
        if interval < 0:
            interval = DEFAULT_MIN_INTERVAL_SECONDS
        if hb_timeout <= 0:
            hb_timeout = DEFAULT_HEARTBEAT_TIMEOUT_SECONDS
        if hb_check <= 0:
            hb_check = 10.0
        if key_version < 1:
            key_version = 1

        kind = _get_str("EGP_TRANSPORT", "dir").lower()
        if kind not in ("dir", "http", "git"):
            raise ConfigError(f"EGP_TRANSPORT must be dir|http|git, got {kind!r}")

        return cls(
            db_path=_get_str("EGP_DB_PATH", "egp_gateway.db"),
            policy=policy,
            threshold=threshold,
            hysteresis_buffer=buffer,
            consecutive_readings=consecutive,
            lower_is_better=not _get_bool("EGP_HIGHER_IS_BETTER", False),
            window=PaceWindowConfig.from_env(),
            token_ttl_seconds=ttl,
            publish_min_interval_seconds=interval,
            heartbeat_timeout_seconds=hb_timeout,
            heartbeat_check_interval_seconds=hb_check,
            transport_kind=kind,
            transport_dir=_get_str("EGP_TRANSPORT_DIR", "egp_signals"),
            transport_url=_get_str("EGP_TRANSPORT_URL") or None,
            transport_api_key=_get_str("EGP_TRANSPORT_API_KEY") or None,
            git_repo=_get_str("EGP_GIT_REPO", "."),
            git_remote=_get_str("EGP_GIT_REMOTE") or None,
            key_version=key_version,
            allow_ephemeral_keys=_get_bool("EGP_ALLOW_EPHEMERAL_SIGNING_KEYS", False),
        )

    def transport_spec(self) -> Dict[str, Any]:
        """Transport description usable by ``build_transport`` and in gate configs."""
        if self.transport_kind == "http":
            if not self.transport_url:
                raise ConfigError("EGP_TRANSPORT_URL is required for EGP_TRANSPORT=http")
            spec: Dict[str, Any] = {"kind": "http", "url": self.transport_url}
            if self.transport_api_key:
                spec["api_key"] = self.transport_api_key
            return spec
        if self.transport_kind == "git":
            spec = {"kind": "git", "repo_dir": self.git_repo}
            if self.git_remote:
                spec["remote"] = self.git_remote
            return spec
        return {"kind": "dir", "path": self.transport_dir}
