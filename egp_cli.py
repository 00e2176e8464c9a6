#!/usr/bin/env python3
"""
Effort Gate Protocol - Operator Command Line Interface

Usage:
    egp keygen --out <file>                 Create a 0600 Ed25519 seed file, print the public key
    egp init-gate --subject-key K ...       Write an egp.config.json gate record
    egp issue --subject-key K --value V ... Issue (and optionally publish) a token by hand
    egp show-token <file>                   Pretty-print a token, optionally verify it
"""

import argparse
import json
import logging
import sys
import time
from pathlib import Path
from typing import Any, Dict, Optional

from egp_gateway.crypto import Ed25519KeyPair, generate_key_file, load_signing_key_from_file
from egp_gateway.errors import EGPError, MalformedTokenError
from egp_gateway.signing import FileEd25519Signer
from egp_gateway.tokens import DEFAULT_TTL_SECONDS, CapabilityToken, TokenIssuer
from egp_gateway.transport import DirectoryTransport, check_subject_key
from egp_verify import CONFIG_FILENAME, GATE_CONFIG_VERSION

logger = logging.getLogger("egp_cli")


def setup_logging(verbose: bool = False):
    """Configure logging for CLI usage."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )


def _load_key_or_exit(path: str) -> Ed25519KeyPair:
    kp = load_signing_key_from_file(path, key_id="egp")
    if kp is None:
        print(f"ERROR: could not load signing key from {path}", file=sys.stderr)
        sys.exit(3)
    return kp


def _write_json(path: Path, payload: Dict[str, Any]) -> None:
    path.write_text(json.dumps(payload, indent=2, sort_keys=True) + "\n", encoding="utf-8")


def cmd_keygen(args):
    """Generate a signing key file."""
    out = Path(args.out)
    if out.exists() and not args.force:
        print(f"ERROR: {out} already exists (use --force to overwrite)", file=sys.stderr)
        sys.exit(3)
    kp = generate_key_file(str(out), key_id=args.key_id)
    print(kp.public_key_hex)


def build_gate_record(args) -> Dict[str, Any]:
    """Gate record from init-gate arguments."""
    if args.public_key:
        public_key = Ed25519KeyPair.from_public_key("egp", args.public_key).public_key_hex
    else:
        public_key = _load_key_or_exit(args.signing_key_file).public_key_hex

    transport: Dict[str, Any] = {"kind": args.transport}
    if args.transport == "git":
        transport["remote"] = args.remote
    elif args.transport == "http":
        if not args.url:
            raise ValueError("--url is required for --transport http")
        transport["url"] = args.url
    else:
        if not args.dir:
            raise ValueError("--dir is required for --transport dir")
        transport["path"] = args.dir

    return {
        "version": GATE_CONFIG_VERSION,
        "subject_key": check_subject_key(args.subject_key),
        "public_key": public_key,
        "public_key_version": args.key_version,
        "ttl_seconds": args.ttl,
        "fetch_timeout_seconds": args.fetch_timeout,
        "transport": transport,
    }


def cmd_init_gate(args):
    """Write the gate record consulted by egp-verify."""
    try:
        record = build_gate_record(args)
    except ValueError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(3)
    out = Path(args.out)
    _write_json(out, record)
    print(f"Wrote {out} (subject {record['subject_key']}, key v{record['public_key_version']})")


def cmd_issue(args):
    """Issue a token by hand, for testing gates."""
    kp = _load_key_or_exit(args.signing_key_file)
    issuer = TokenIssuer(FileEd25519Signer(kp))
    try:
        token = issuer.issue(
            args.subject_key,
            not args.deny,
            args.value,
            args.threshold,
            ttl_seconds=args.ttl,
        )
    except (ValueError, EGPError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(3)

    blob = token.to_wire()
    if args.publish_dir:
        DirectoryTransport(args.publish_dir).write_latest(token.subject_key, blob)
        logger.info("published token for %s to %s", token.subject_key, args.publish_dir)
    if args.out:
        Path(args.out).write_bytes(blob)
    if not args.publish_dir and not args.out:
        print(blob.decode("utf-8"))
    else:
        print(f"Issued token for {token.subject_key} (decision={token.decision}, expires_at={token.expires_at})")


def describe_token(token: CapabilityToken, now: Optional[float] = None) -> Dict[str, Any]:
    t = time.time() if now is None else now
    info = token.to_dict()
    info["expired"] = token.is_expired(t)
    info["seconds_remaining"] = int(token.expires_at - t)
    info["signed_message"] = token.compute_signature_payload().decode("utf-8")
    return info


def cmd_show_token(args):
    """Pretty-print a token file and optionally check its signature."""
    try:
        token = CapabilityToken.from_wire(Path(args.token_file).read_bytes())
    except FileNotFoundError:
        print(f"ERROR: File not found: {args.token_file}", file=sys.stderr)
        sys.exit(3)
    except MalformedTokenError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(3)

    info = describe_token(token)
    if args.public_key:
        try:
            pub = Ed25519KeyPair.from_public_key("egp", args.public_key)
        except ValueError as e:
            print(f"ERROR: {e}", file=sys.stderr)
            sys.exit(3)
        info["signature_valid"] = token.verify_signature(pub)
    print(json.dumps(info, indent=2, sort_keys=True))
    if info.get("signature_valid") is False:
        sys.exit(1)


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="egp",
        description="Effort Gate Protocol CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # keygen command
    keygen_parser = subparsers.add_parser("keygen", help="Generate an Ed25519 signing key file")
    keygen_parser.add_argument("--out", required=True, help="Key file path (written 0600)")
    keygen_parser.add_argument("--key-id", default="egp", help="Key identifier")
    keygen_parser.add_argument("--force", action="store_true", help="Overwrite an existing file")
    keygen_parser.set_defaults(func=cmd_keygen)

    # init-gate command
    init_parser = subparsers.add_parser("init-gate", help="Write a gate config record")
    init_parser.add_argument("--subject-key", required=True, help="Subject whose tokens unlock this gate")
    key_group = init_parser.add_mutually_exclusive_group(required=True)
    key_group.add_argument("--public-key", help="Issuer public key (64 hex chars)")
    key_group.add_argument("--signing-key-file", help="Derive the public key from this seed file")
    init_parser.add_argument("--key-version", type=int, default=1, help="Pinned public key version")
    init_parser.add_argument("--ttl", type=int, default=DEFAULT_TTL_SECONDS, help="Issuer TTL hint in seconds")
    init_parser.add_argument("--fetch-timeout", type=float, default=5.0, help="Signal fetch timeout in seconds")
    init_parser.add_argument("--transport", choices=["git", "http", "dir"], default="git")
    init_parser.add_argument("--remote", default="origin", help="Git remote (git transport)")
    init_parser.add_argument("--url", help="Gateway base URL (http transport)")
    init_parser.add_argument("--dir", help="Signal directory (dir transport)")
    init_parser.add_argument("--out", default=CONFIG_FILENAME, help=f"Output path (default: {CONFIG_FILENAME})")
    init_parser.set_defaults(func=cmd_init_gate)

    # issue command
    issue_parser = subparsers.add_parser("issue", help="Issue a token by hand")
    issue_parser.add_argument("--subject-key", required=True)
    issue_parser.add_argument("--value", type=float, required=True, help="Metric value")
    issue_parser.add_argument("--threshold", type=float, required=True)
    issue_parser.add_argument("--deny", action="store_true", help="Issue decision=false")
    issue_parser.add_argument("--ttl", type=int, default=DEFAULT_TTL_SECONDS)
    issue_parser.add_argument("--signing-key-file", required=True)
    out_group = issue_parser.add_mutually_exclusive_group()
    out_group.add_argument("--publish-dir", help="Publish into a directory transport root")
    out_group.add_argument("--out", help="Write the token to this file")
    issue_parser.set_defaults(func=cmd_issue)

    # show-token command
    show_parser = subparsers.add_parser("show-token", help="Pretty-print a token file")
    show_parser.add_argument("token_file")
    show_parser.add_argument("--public-key", help="Verify the signature with this public key")
    show_parser.set_defaults(func=cmd_show_token)

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    setup_logging(args.verbose)
    args.func(args)


if __name__ == "__main__":
    main()
