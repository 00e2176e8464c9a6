"""Stable error taxonomy for the effort gate.

This module defines machine-readable error codes and a single exception type
used across the issuer, publisher, transports, and the ingestion service.

Design goals:
- Stable `code` string suitable for programmatic handling.
- Optional `retryable` flag and `http_status` for transport layers.
- Structured `details` for debugging without parsing messages.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict


# Canonicalization
EGP_E_CANON_NON_JSON = "EGP_E_CANON_NON_JSON"
EGP_E_CANON_DEPTH = "EGP_E_CANON_DEPTH"
EGP_E_CANON_NONFINITE = "EGP_E_CANON_NONFINITE"
EGP_E_CANON_KEY_TYPE = "EGP_E_CANON_KEY_TYPE"
EGP_E_CANON_KEY_COLLISION = "EGP_E_CANON_KEY_COLLISION"
EGP_E_CANON_INT_TOO_LARGE = "EGP_E_CANON_INT_TOO_LARGE"

# Signing / tokens
EGP_E_SIGNER_UNAVAILABLE = "EGP_E_SIGNER_UNAVAILABLE"
EGP_E_TOKEN_MALFORMED = "EGP_E_TOKEN_MALFORMED"
EGP_E_TOKEN_VERSION = "EGP_E_TOKEN_VERSION"

# Transport
EGP_E_TRANSPORT = "EGP_E_TRANSPORT"
EGP_E_TRANSPORT_TIMEOUT = "EGP_E_TRANSPORT_TIMEOUT"

# Storage
EGP_E_LOCKDOWN_ACTIVE = "EGP_E_LOCKDOWN_ACTIVE"
EGP_E_CLAIM_STORAGE = "EGP_E_CLAIM_STORAGE"

# Configuration
EGP_E_CONFIG_MISSING = "EGP_E_CONFIG_MISSING"
EGP_E_CONFIG_INVALID = "EGP_E_CONFIG_INVALID"

# Service / sessions / auth
EGP_E_AUTH_REQUIRED = "EGP_E_AUTH_REQUIRED"
EGP_E_SUBJECT_MISMATCH = "EGP_E_SUBJECT_MISMATCH"
EGP_E_SESSION_NOT_FOUND = "EGP_E_SESSION_NOT_FOUND"
EGP_E_SESSION_INACTIVE = "EGP_E_SESSION_INACTIVE"
EGP_E_SAMPLE_INVALID = "EGP_E_SAMPLE_INVALID"
EGP_E_SIGNAL_NOT_FOUND = "EGP_E_SIGNAL_NOT_FOUND"

# Generic
EGP_E_BAD_REQUEST = "EGP_E_BAD_REQUEST"
EGP_E_INTERNAL = "EGP_E_INTERNAL"


@dataclass
class EGPError(Exception):
    """Base exception with a stable error code."""

    code: str
    message: str
    retryable: bool = False
    http_status: int = 400
    details: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "retryable": bool(self.retryable),
            "http_status": int(self.http_status),
        }
        if self.details:
            d["details"] = self.details
        return d

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class SignerUnavailableError(EGPError):
    """The signing backend could not produce a signature. Nothing may be published."""

    def __init__(self, message: str, **details: Any):
        super().__init__(EGP_E_SIGNER_UNAVAILABLE, message, retryable=True, http_status=503, details=details)


class MalformedTokenError(EGPError):
    """A wire payload does not decode into a well-formed capability token."""

    def __init__(self, message: str, *, code: str = EGP_E_TOKEN_MALFORMED, **details: Any):
        super().__init__(code, message, retryable=False, http_status=400, details=details)


class TransportError(EGPError):
    """Reading or writing the shared signal slot failed."""

    def __init__(self, message: str, *, code: str = EGP_E_TRANSPORT, **details: Any):
        super().__init__(code, message, retryable=True, http_status=502, details=details)


class ConfigError(EGPError):
    """Gate or service configuration is absent or unusable."""

    def __init__(self, message: str, *, code: str = EGP_E_CONFIG_INVALID, **details: Any):
        super().__init__(code, message, retryable=False, http_status=500, details=details)


def egp_error(
    code: str,
    message: str,
    *,
    retryable: bool = False,
    http_status: int = 400,
    **details: Any,
) -> EGPError:
    return EGPError(code=code, message=message, retryable=retryable, http_status=http_status, details=details)
