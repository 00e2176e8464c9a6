"""EGP Gateway package.

Issuing side of the Effort Gate Protocol:

- Metric stabilizers (heart-rate threshold, pace hysteresis)
- Short-lived Ed25519 capability tokens
- Debounced, cross-process publish claims (SQLite)
- Pluggable signal transports (directory, HTTP, git refs)

Convenience imports
------------------
Nothing heavy happens at import time. These names resolve lazily:

    from egp_gateway import EffortGateway, create_app
    from egp_gateway import CapabilityToken, TokenIssuer, DebouncedPublisher
"""

from __future__ import annotations

import re
from importlib import import_module
from pathlib import Path
from typing import Any


def _read_version_from_pyproject() -> str | None:
    """Best-effort version discovery for dev/test environments.

    The project version is a simple `version = "..."` field in
    `pyproject.toml`, so a regex parse is enough.
    """

    try:
        pyproject = Path(__file__).resolve().parents[1] / "pyproject.toml"
        txt = pyproject.read_text(encoding="utf-8")
        m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
        return m.group(1) if m else None
    except OSError:
        return None


__version__ = _read_version_from_pyproject() or "0.3.0"

__all__ = [
    "__version__",
    "EffortGateway",
    "create_app",
    "CapabilityToken",
    "TokenIssuer",
    "DebouncedPublisher",
    "PublishClaimStore",
    "ThresholdStabilizer",
    "HysteresisStabilizer",
    "GateState",
]

# name -> (module, attribute)
_LAZY_EXPORTS: dict[str, tuple[str, str]] = {
    "EffortGateway": ("egp_gateway.gateway", "EffortGateway"),
    "create_app": ("egp_gateway.server", "create_app"),
    "CapabilityToken": ("egp_gateway.tokens", "CapabilityToken"),
    "TokenIssuer": ("egp_gateway.tokens", "TokenIssuer"),
    "DebouncedPublisher": ("egp_gateway.publisher", "DebouncedPublisher"),
    "PublishClaimStore": ("egp_gateway.debounce", "PublishClaimStore"),
    "ThresholdStabilizer": ("egp_gateway.stabilizer", "ThresholdStabilizer"),
    "HysteresisStabilizer": ("egp_gateway.stabilizer", "HysteresisStabilizer"),
    "GateState": ("egp_gateway.stabilizer", "GateState"),
}


def __getattr__(name: str) -> Any:
    if name in _LAZY_EXPORTS:
        module_name, attr = _LAZY_EXPORTS[name]
        module = import_module(module_name)
        value = getattr(module, attr)
        globals()[name] = value
        return value
    raise AttributeError(f"module 'egp_gateway' has no attribute {name!r}")


def __dir__() -> list[str]:
    return sorted(set(list(globals().keys()) + list(_LAZY_EXPORTS.keys())))
