#!/usr/bin/env python3
"""
Stand-in for an HSM/KMS signing command in tests.

Protocol: base64(message) on stdin, base64(signature) on stdout.

Env:
  FAKE_SIGNER_SEED_HEX       32-byte hex seed (default "1f" * 32)
  FAKE_SIGNER_MODE           "ok" (default) | "fail" (exit 1) | "short" (31-byte signature) | "garbage"
  FAKE_SIGNER_SLEEP_SECONDS  delay before answering, to exercise timeouts
"""
import base64
import os
import sys
import time

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

DEFAULT_SEED_HEX = "1f" * 32


def main() -> int:
    delay = float(os.getenv("FAKE_SIGNER_SLEEP_SECONDS") or 0)
    if delay > 0:
        time.sleep(delay)

    mode = (os.getenv("FAKE_SIGNER_MODE") or "ok").strip()
    if mode == "fail":
        print("signing backend unavailable", file=sys.stderr)
        return 1

    seed = bytes.fromhex((os.getenv("FAKE_SIGNER_SEED_HEX") or DEFAULT_SEED_HEX).strip())
    if len(seed) != 32:
        print("seed must be 32 bytes", file=sys.stderr)
        return 2

    try:
        msg = base64.b64decode(sys.stdin.read().strip().encode("ascii"), validate=True)
    except ValueError:
        print("invalid base64 message", file=sys.stderr)
        return 2

    if mode == "garbage":
        sys.stdout.write("not base64 at all!")
        return 0

    sig = Ed25519PrivateKey.from_private_bytes(seed).sign(msg)
    if mode == "short":
        sig = sig[:31]
    sys.stdout.write(base64.b64encode(sig).decode("ascii"))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
