"""
Capability tokens for the effort gate.

A token is a small signed statement: "as of issuance, ``subject_key``'s live
metric did (or did not) satisfy ``threshold``, and this statement is good
until ``expires_at``".

Security Properties:
- Ed25519 signed over strict canonical JSON of every non-signature field
- Short-lived (default 15s); the TTL is the only replay bound
- Closed schema: a payload with missing, extra or mistyped fields is rejected
- Immutable once signed

Wire form (schema version 1)::

    {"version":1,"subject_key":"...","decision":true,"metric_value":152,
     "threshold":140,"expires_at":1730000000,"nonce":"<32 hex>",
     "signature":"<128 hex>"}
"""

from __future__ import annotations

import json
import math
import re
import secrets
import time
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional, Union

from .crypto import ED25519_SIGNATURE_HEX_LEN, Ed25519KeyPair, canonical_json_bytes
from .errors import EGP_E_TOKEN_VERSION, EGPError, MalformedTokenError, SignerUnavailableError
from .signing import Signer, coerce_signer

TOKEN_VERSION = 1
DEFAULT_TTL_SECONDS = 15
NONCE_BYTES = 16

SIGNED_FIELDS = ("version", "subject_key", "decision", "metric_value", "threshold", "expires_at", "nonce")
WIRE_FIELDS = frozenset(SIGNED_FIELDS + ("signature",))

Number = Union[int, float]

_HEX_RE = re.compile(r"[0-9a-f]+")


def _normalize_number(x: Number) -> Number:
    # 150.0 and 150 must encode identically across JSON producers.
    if isinstance(x, float) and x.is_integer():
        return int(x)
    return x


def _is_number(x: Any) -> bool:
    if isinstance(x, bool) or not isinstance(x, (int, float)):
        return False
    return math.isfinite(x)


def _is_hex(s: str) -> bool:
    return _HEX_RE.fullmatch(s) is not None


@dataclass(frozen=True)
class CapabilityToken:
    version: int
    subject_key: str
    decision: bool
    metric_value: Number
    threshold: Number
    expires_at: int
    nonce: str
    signature: str

    def signed_fields(self) -> Dict[str, Any]:
        d = asdict(self)
        d.pop("signature")
        return d

    def compute_signature_payload(self) -> bytes:
        """Exact bytes the signature covers."""
        return canonical_json_bytes(self.signed_fields())

    def signature_bytes(self) -> bytes:
        return bytes.fromhex(self.signature)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_wire(self) -> bytes:
        """Serialized slot contents (canonical JSON, UTF-8)."""
        return canonical_json_bytes(self.to_dict())

    def is_expired(self, now: Optional[float] = None) -> bool:
        t = time.time() if now is None else now
        return not (t < self.expires_at)

    def verify_signature(self, public_key: Ed25519KeyPair) -> bool:
        try:
            return public_key.verify(self.compute_signature_payload(), self.signature_bytes())
        except (ValueError, EGPError):
            return False

    @classmethod
    def from_dict(cls, data: Any) -> "CapabilityToken":
        """Strictly decode a wire object.

        Raises MalformedTokenError on any structural problem. An unknown
        ``version`` raises with code EGP_E_TOKEN_VERSION so callers can
        report it separately.
        """
        if not isinstance(data, dict):
            raise MalformedTokenError("payload must be a JSON object")
        version = data.get("version")
        if isinstance(version, bool) or not isinstance(version, int):
            raise MalformedTokenError("version must be an integer")
        # Checked before the field set: a future schema may add fields.
        if version != TOKEN_VERSION:
            raise MalformedTokenError(f"unsupported token version {version}", code=EGP_E_TOKEN_VERSION, version=version)

        keys = set(data.keys())
        if keys != WIRE_FIELDS:
            raise MalformedTokenError(
                "payload fields do not match schema",
                missing=sorted(WIRE_FIELDS - keys),
                unexpected=sorted(str(k) for k in keys - WIRE_FIELDS),
            )

        subject_key = data["subject_key"]
        if not isinstance(subject_key, str) or not subject_key:
            raise MalformedTokenError("subject_key must be a non-empty string")
        if not isinstance(data["decision"], bool):
            raise MalformedTokenError("decision must be a boolean")
        for name in ("metric_value", "threshold"):
            if not _is_number(data[name]):
                raise MalformedTokenError(f"{name} must be a finite number")
        expires_at = data["expires_at"]
        if isinstance(expires_at, bool) or not isinstance(expires_at, int):
            raise MalformedTokenError("expires_at must be integer unix seconds")
        nonce = data["nonce"]
        if not isinstance(nonce, str) or not nonce:
            raise MalformedTokenError("nonce must be a non-empty string")
        sig = data["signature"]
        if not isinstance(sig, str) or len(sig) != ED25519_SIGNATURE_HEX_LEN or not _is_hex(sig):
            raise MalformedTokenError("signature must be 128 lowercase hex chars")

        return cls(
            version=version,
            subject_key=subject_key,
            decision=data["decision"],
            metric_value=data["metric_value"],
            threshold=data["threshold"],
            expires_at=expires_at,
            nonce=nonce,
            signature=sig,
        )

    @classmethod
    def from_wire(cls, blob: Union[bytes, str]) -> "CapabilityToken":
        try:
            text = blob.decode("utf-8") if isinstance(blob, (bytes, bytearray)) else str(blob)
            data = json.loads(text)
        except (UnicodeDecodeError, ValueError) as e:
            raise MalformedTokenError(f"payload is not valid JSON: {e}") from e
        return cls.from_dict(data)


class TokenIssuer:
    """Issues signed capability tokens.

    Issuance only fails when the signer cannot sign; that error propagates
    so callers never publish an unsigned or mis-signed token.
    """

    def __init__(
        self,
        signer: Any,
        *,
        default_ttl_seconds: int = DEFAULT_TTL_SECONDS,
        clock=time.time,
    ):
        self.signer: Signer = coerce_signer(signer)
        if int(default_ttl_seconds) < 1:
            raise ValueError("default_ttl_seconds must be >= 1")
        self.default_ttl_seconds = int(default_ttl_seconds)
        self._clock = clock

    @property
    def public_key_hex(self) -> str:
        return self.signer.public_key_hex

    def issue(
        self,
        subject_key: str,
        decision: bool,
        metric_value: Number,
        threshold: Number,
        ttl_seconds: Optional[int] = None,
    ) -> CapabilityToken:
        if not isinstance(subject_key, str) or not subject_key:
            raise ValueError("subject_key must be a non-empty string")
        if not _is_number(metric_value) or not _is_number(threshold):
            raise ValueError("metric_value and threshold must be finite numbers")
        ttl = self.default_ttl_seconds if ttl_seconds is None else int(ttl_seconds)
        if ttl < 1:
            raise ValueError("ttl_seconds must be >= 1")

        fields: Dict[str, Any] = {
            "version": TOKEN_VERSION,
            "subject_key": subject_key,
            "decision": bool(decision),
            "metric_value": _normalize_number(metric_value),
            "threshold": _normalize_number(threshold),
            "expires_at": int(self._clock()) + ttl,
            "nonce": secrets.token_hex(NONCE_BYTES),
        }
        message = canonical_json_bytes(fields)
        try:
            signature = self.signer.sign(message)
        except SignerUnavailableError:
            raise
        except Exception as e:
            raise SignerUnavailableError(f"signer failed: {e}", key_id=getattr(self.signer, "key_id", None)) from e
        if len(signature) != 64:
            raise SignerUnavailableError(f"signer returned {len(signature)}-byte signature")
        return CapabilityToken(signature=signature.hex(), **fields)


def issue_token(
    subject_key: str,
    decision: bool,
    metric_value: Number,
    threshold: Number,
    ttl_seconds: int = DEFAULT_TTL_SECONDS,
    private_key: Any = None,
) -> CapabilityToken:
    """One-shot issuance with an explicit key (or any Signer)."""
    if private_key is None:
        raise SignerUnavailableError("no signing key supplied")
    return TokenIssuer(private_key).issue(subject_key, decision, metric_value, threshold, ttl_seconds)
