"""
egp_gateway.signing: signing abstraction for capability tokens.

Backends:
- FileEd25519Signer: in-process signing with a seed loaded from env/file.
- ExternalCommandSigner: delegates signing to an external command, enabling
  non-exportable private keys (TPM/HSM/enclave/daemon).

Contract for ExternalCommandSigner:
- stdin: base64(message) (may include trailing newline)
- stdout: base64(signature)

All modes are fail-closed: any signer error raises SignerUnavailableError and
no token is produced.
"""

from __future__ import annotations

import base64
import binascii
import os
import shlex
import subprocess
from dataclasses import dataclass
from typing import Any, Optional, Protocol, runtime_checkable

from .crypto import Ed25519KeyPair, load_signing_key, parse_public_key_hex
from .errors import SignerUnavailableError


@runtime_checkable
class Signer(Protocol):
    """Protocol implemented by signing backends."""
    key_id: str
    public_key_bytes: bytes

    @property
    def public_key_hex(self) -> str: ...

    def sign(self, message: bytes) -> bytes: ...


def _run_external_signer_cmd(*, signing_cmd: str, message: bytes, timeout_seconds: float) -> bytes:
    if not signing_cmd or not str(signing_cmd).strip():
        raise SignerUnavailableError("external signer requires signing_cmd")
    msg_b64 = base64.b64encode(bytes(message)).decode("ascii")
    try:
        proc = subprocess.run(
            shlex.split(str(signing_cmd)),
            input=(msg_b64 + "\n").encode("utf-8"),
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            timeout=float(timeout_seconds),
            check=False,
        )
    except subprocess.TimeoutExpired as e:
        raise SignerUnavailableError(f"external signer timed out after {timeout_seconds}s") from e
    except OSError as e:
        raise SignerUnavailableError(f"external signer failed to execute: {e}") from e

    if proc.returncode != 0:
        err = (proc.stderr or b"").decode("utf-8", errors="ignore").strip()
        raise SignerUnavailableError(f"external signer returned code {proc.returncode}", stderr=err)

    out = (proc.stdout or b"").decode("utf-8", errors="ignore").strip()
    try:
        sig = base64.b64decode(out.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as e:
        raise SignerUnavailableError("external signer output was not valid base64(signature)") from e

    if len(sig) != 64:
        raise SignerUnavailableError(f"external signer returned invalid Ed25519 signature length: {len(sig)} bytes")
    return sig


@dataclass
class FileEd25519Signer:
    """Signer that wraps an Ed25519KeyPair (in-process signing)."""
    keypair: Ed25519KeyPair

    @property
    def key_id(self) -> str:
        return self.keypair.key_id

    @property
    def public_key_bytes(self) -> bytes:
        return self.keypair.public_key_bytes

    @property
    def public_key_hex(self) -> str:
        return self.keypair.public_key_hex

    def sign(self, message: bytes) -> bytes:
        try:
            return self.keypair.sign(message)
        except ValueError as e:
            raise SignerUnavailableError(str(e), key_id=self.key_id) from e


@dataclass
class ExternalCommandSigner:
    """Signer that delegates to an external signing command.

    Private keys can live outside the Python process.
    """
    key_id: str
    public_key_bytes: bytes
    signing_cmd: str
    timeout_seconds: float = 2.0

    @property
    def public_key_hex(self) -> str:
        return self.public_key_bytes.hex()

    def sign(self, message: bytes) -> bytes:
        return _run_external_signer_cmd(
            signing_cmd=self.signing_cmd,
            message=bytes(message),
            timeout_seconds=self.timeout_seconds,
        )


def coerce_signer(obj: Any) -> Signer:
    """Coerce a supported object into a Signer."""
    if obj is None:
        raise TypeError("signer is None")
    if isinstance(obj, Ed25519KeyPair):
        return FileEd25519Signer(obj)
    if isinstance(obj, (ExternalCommandSigner, FileEd25519Signer)):
        return obj
    if isinstance(obj, Signer):
        return obj
    raise TypeError(f"Unsupported signer type: {type(obj)}")


def _env_timeout(name: str, default: float = 2.0) -> float:
    raw = (os.getenv(name, "") or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be a number (seconds)")


def load_signer(
    *,
    key_id: str = "egp",
    key_file: Optional[str] = None,
    allow_ephemeral: bool = False,
) -> Optional[Signer]:
    """Resolve the issuing signer from EGP_* environment variables.

    Priority:
    1) EGP_SIGNING_CMD + EGP_PUBLIC_KEY_HEX (external signer, no key in process)
    2) EGP_SIGNING_KEY hex seed, then ``key_file`` / EGP_SIGNING_KEY_FILE
    3) ephemeral key when ``allow_ephemeral`` (dev/tests only)

    Returns None if nothing is configured.
    """
    signing_cmd = (os.getenv("EGP_SIGNING_CMD", "") or "").strip()
    public_key_hex = (os.getenv("EGP_PUBLIC_KEY_HEX", "") or "").strip()
    if signing_cmd:
        if not public_key_hex:
            raise RuntimeError("EGP_PUBLIC_KEY_HEX must be set when EGP_SIGNING_CMD is used")
        return ExternalCommandSigner(
            key_id=key_id,
            public_key_bytes=parse_public_key_hex(public_key_hex),
            signing_cmd=signing_cmd,
            timeout_seconds=_env_timeout("EGP_SIGNING_CMD_TIMEOUT_SECONDS"),
        )

    kp = load_signing_key(
        env_var="EGP_SIGNING_KEY",
        file_path=key_file or os.getenv("EGP_SIGNING_KEY_FILE") or None,
        key_id=key_id,
        generate_if_missing=allow_ephemeral,
    )
    if kp is None:
        return None
    return FileEd25519Signer(kp)
