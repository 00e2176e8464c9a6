"""
Effort gate cryptography module.

Ed25519 signatures for capability tokens plus the strict canonical JSON
encoding the signatures are computed over.

- The issuer holds the PRIVATE key (or delegates to an external signer).
- Verifiers hold only PUBLIC keys, looked up by integer key version.

A verifier that compromises its own config can lock itself out, but it
cannot mint a token that another verifier will accept.
"""

from __future__ import annotations

import json
import math
import unicodedata
import warnings
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from .errors import (
    EGPError,
    egp_error,
    EGP_E_CANON_NON_JSON,
    EGP_E_CANON_DEPTH,
    EGP_E_CANON_NONFINITE,
    EGP_E_CANON_KEY_TYPE,
    EGP_E_CANON_KEY_COLLISION,
    EGP_E_CANON_INT_TOO_LARGE,
)


# Canonical JSON hardening:
# - bounded nesting depth
# - bounded integers (many JSON decoders coerce numbers to float64)
# - NFC unicode so visually identical strings encode identically
_CANON_MAX_DEPTH = 64
_CANON_MAX_INT_DIGITS = 128
_CANON_UNICODE_NORM = "NFC"

ED25519_PUBLIC_KEY_HEX_LEN = 64
ED25519_SIGNATURE_HEX_LEN = 128


def _canon_path_key(k: str) -> str:
    ks = k.replace("\\", "\\\\").replace("'", "\\'")
    return f"['{ks}']"


def _canonicalize(obj: Any, *, _path: str = "$", _depth: int = 0) -> Any:
    if _depth > _CANON_MAX_DEPTH:
        raise egp_error(EGP_E_CANON_DEPTH, "max nesting depth exceeded", path=_path, max_depth=_CANON_MAX_DEPTH)

    if obj is None or isinstance(obj, bool):
        return obj
    if isinstance(obj, str):
        return unicodedata.normalize(_CANON_UNICODE_NORM, obj)
    if isinstance(obj, int):
        digits = len(str(abs(obj)))
        if digits > _CANON_MAX_INT_DIGITS:
            raise egp_error(EGP_E_CANON_INT_TOO_LARGE, "integer has too many digits", path=_path, digits=digits)
        return obj
    if isinstance(obj, float):
        if not math.isfinite(obj):
            raise egp_error(EGP_E_CANON_NONFINITE, "non-finite float", path=_path)
        return obj

    if isinstance(obj, dict):
        out: Dict[str, Any] = {}
        for k, v in obj.items():
            if not isinstance(k, str):
                raise egp_error(EGP_E_CANON_KEY_TYPE, "dict key must be str", path=_path, got=type(k).__name__)
            nk = unicodedata.normalize(_CANON_UNICODE_NORM, k)
            if nk in out:
                raise egp_error(EGP_E_CANON_KEY_COLLISION, "duplicate dict key after unicode normalization", path=_path)
            out[nk] = _canonicalize(v, _path=_path + _canon_path_key(nk), _depth=_depth + 1)
        return out

    if isinstance(obj, (list, tuple)):
        return [_canonicalize(v, _path=f"{_path}[{i}]", _depth=_depth + 1) for i, v in enumerate(obj)]

    raise egp_error(EGP_E_CANON_NON_JSON, "non-JSON-serializable type", path=_path, got=type(obj).__name__)


def canonical_json_dumps(obj: Any) -> str:
    """Strict canonical JSON.

    Keys sorted, no insignificant whitespace, UTF-8 preserved, NaN/Infinity
    rejected. Equivalent to ``jq -cS`` for the payloads this project signs,
    so a shell-only verifier can re-derive the signed bytes.
    """
    try:
        normalized = _canonicalize(obj)
        return json.dumps(
            normalized,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
            allow_nan=False,
        )
    except EGPError:
        raise
    except (TypeError, ValueError) as e:
        raise egp_error(EGP_E_CANON_NON_JSON, f"canonical encoding failed: {e}") from e


def canonical_json_bytes(obj: Any) -> bytes:
    return canonical_json_dumps(obj).encode("utf-8")


def _raw_private_bytes(private_key: Ed25519PrivateKey) -> bytes:
    return private_key.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )


def _raw_public_bytes(public_key: Ed25519PublicKey) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )


def parse_public_key_hex(public_key_hex: str) -> bytes:
    """Decode a raw Ed25519 public key given as 64 hex chars."""
    s = str(public_key_hex or "").strip().lower()
    if len(s) != ED25519_PUBLIC_KEY_HEX_LEN:
        raise ValueError(f"Public key must be {ED25519_PUBLIC_KEY_HEX_LEN} hex chars, got {len(s)}")
    raw = bytes.fromhex(s)
    # Reject points the backend cannot load.
    Ed25519PublicKey.from_public_bytes(raw)
    return raw


@dataclass
class Ed25519KeyPair:
    """
    Ed25519 key pair for signing and verification.

    Verifier-side instances carry only the public key
    (``private_key_bytes is None``).
    """
    key_id: str
    public_key_bytes: bytes
    private_key_bytes: Optional[bytes] = None

    @classmethod
    def generate(cls, key_id: str) -> "Ed25519KeyPair":
        private_key = Ed25519PrivateKey.generate()
        return cls(
            key_id=key_id,
            public_key_bytes=_raw_public_bytes(private_key.public_key()),
            private_key_bytes=_raw_private_bytes(private_key),
        )

    @classmethod
    def from_public_key(cls, key_id: str, public_key_hex: str) -> "Ed25519KeyPair":
        return cls(key_id=key_id, public_key_bytes=parse_public_key_hex(public_key_hex))

    @classmethod
    def from_seed(cls, seed: bytes, key_id: str) -> "Ed25519KeyPair":
        """Create a key pair from a 32-byte seed."""
        if len(seed) != 32:
            raise ValueError(f"Seed must be 32 bytes, got {len(seed)}")
        private_key = Ed25519PrivateKey.from_private_bytes(seed)
        return cls(
            key_id=key_id,
            public_key_bytes=_raw_public_bytes(private_key.public_key()),
            private_key_bytes=_raw_private_bytes(private_key),
        )

    @property
    def public_key_hex(self) -> str:
        return self.public_key_bytes.hex()

    @property
    def seed_hex(self) -> str:
        if self.private_key_bytes is None:
            raise ValueError(f"Key {self.key_id} has no private key")
        return self.private_key_bytes[:32].hex()

    def can_sign(self) -> bool:
        return self.private_key_bytes is not None

    def sign(self, message: bytes) -> bytes:
        if not self.can_sign():
            raise ValueError(f"Key {self.key_id} has no private key - cannot sign")
        private_key = Ed25519PrivateKey.from_private_bytes(self.private_key_bytes)
        return private_key.sign(message)

    def verify(self, message: bytes, signature: bytes) -> bool:
        try:
            public_key = Ed25519PublicKey.from_public_bytes(self.public_key_bytes)
            public_key.verify(signature, message)
            return True
        except InvalidSignature:
            return False
        except ValueError:
            return False


@dataclass
class KeyRegistry:
    """Trusted public keys indexed by integer key version.

    Rotation publishes a new version alongside the old one; verifiers pin the
    version in their gate config and pick up the next one when the config is
    rewritten.
    """
    keys: Dict[int, Ed25519KeyPair] = field(default_factory=dict)

    def add_public_key(self, version: int, public_key_hex: str) -> None:
        v = int(version)
        if v < 1:
            raise ValueError("key version must be >= 1")
        self.keys[v] = Ed25519KeyPair.from_public_key(f"v{v}", public_key_hex)

    def get(self, version: int) -> Optional[Ed25519KeyPair]:
        return self.keys.get(int(version))

    def has(self, version: int) -> bool:
        return int(version) in self.keys

    def versions(self) -> List[int]:
        return sorted(self.keys)

    def verify(self, version: int, message: bytes, signature: bytes) -> bool:
        kp = self.get(version)
        if kp is None:
            return False
        return kp.verify(message, signature)

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "KeyRegistry":
        """Build a registry from a gate config record.

        Accepts the pinned pair ``public_key`` / ``public_key_version`` and an
        optional ``public_keys`` map of ``{"<version>": "<hex>"}``. Invalid
        entries raise ValueError; a verifier treats that as config invalid.
        """
        reg = cls()
        extra = config.get("public_keys")
        if extra is not None:
            if not isinstance(extra, dict):
                raise ValueError("public_keys must be an object")
            for ver, pub in extra.items():
                if not isinstance(pub, str):
                    raise ValueError(f"public_keys[{ver!r}] must be a hex string")
                reg.add_public_key(int(ver), pub)
        pub = config.get("public_key")
        if pub is not None:
            if not isinstance(pub, str):
                raise ValueError("public_key must be a hex string")
            version = config.get("public_key_version", 1)
            if isinstance(version, bool) or not isinstance(version, int):
                raise ValueError("public_key_version must be an integer")
            reg.add_public_key(version, pub)
        return reg


def create_key_pair(key_id: str) -> Ed25519KeyPair:
    return Ed25519KeyPair.generate(key_id)


# ---------------------------
# Key management
# ---------------------------

def _keypair_from_seed_hex(key_hex: str, key_id: str) -> Ed25519KeyPair:
    key_hex = key_hex.strip()
    if len(key_hex) != 64:
        raise ValueError(f"Key must be 64 hex chars (32 bytes), got {len(key_hex)}")
    return Ed25519KeyPair.from_seed(bytes.fromhex(key_hex), key_id)


def load_signing_key_from_env(
    env_var: str = "EGP_SIGNING_KEY",
    key_id: str = "egp",
) -> Optional[Ed25519KeyPair]:
    """Load the signing key from a hex seed in ``env_var``.

    Returns None if not configured or invalid.
    """
    import os

    key_hex = os.environ.get(env_var)
    if not key_hex:
        return None
    try:
        return _keypair_from_seed_hex(key_hex, key_id)
    except Exception as e:
        warnings.warn(f"Failed to load signing key from {env_var}: {e}")
        return None


def load_signing_key_from_file(
    path: str,
    key_id: str = "egp",
    require_strict_permissions: bool = True,
) -> Optional[Ed25519KeyPair]:
    """
    Load signing key from a seed file with permission checks.

    The file must contain the hex seed (64 chars) and be mode 0600.
    Returns None if the file doesn't exist or has invalid permissions/content.
    """
    import os
    import stat
    from pathlib import Path

    key_path = Path(path)
    if not key_path.exists():
        return None

    if require_strict_permissions and os.name == "posix":
        mode = os.stat(path).st_mode
        if mode & (stat.S_IRWXG | stat.S_IRWXO):
            warnings.warn(
                f"Key file {path} has insecure permissions. "
                f"Expected 0600, got {oct(mode & 0o777)}. "
                f"Run: chmod 600 {path}"
            )
            return None

    try:
        return _keypair_from_seed_hex(key_path.read_text(encoding="ascii"), key_id)
    except Exception as e:
        warnings.warn(f"Failed to load signing key from {path}: {e}")
        return None


def load_signing_key(
    env_var: str = "EGP_SIGNING_KEY",
    file_path: Optional[str] = None,
    key_id: str = "egp",
    generate_if_missing: bool = False,
) -> Optional[Ed25519KeyPair]:
    """
    Load signing key with fallback chain.

    Priority:
    1. Environment variable (for containers/CI)
    2. File path (for traditional deployments)
    3. Generate new key (if generate_if_missing=True)
    """
    key = load_signing_key_from_env(env_var, key_id)
    if key:
        return key

    if file_path:
        key = load_signing_key_from_file(file_path, key_id)
        if key:
            return key

    if generate_if_missing:
        warnings.warn(
            "No signing key found - generating ephemeral key. "
            f"Set {env_var} for production; verifiers will not trust this key."
        )
        return create_key_pair(key_id)

    return None


def generate_key_file(path: str, key_id: str = "egp") -> Ed25519KeyPair:
    """Generate a new key pair and save its seed to ``path`` with 0600 permissions."""
    import os

    key = create_key_pair(key_id)
    fd = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    try:
        os.write(fd, key.seed_hex.encode("ascii"))
    finally:
        os.close(fd)
    # O_CREAT mode is ignored when the file already existed.
    os.chmod(str(path), 0o600)
    return key
