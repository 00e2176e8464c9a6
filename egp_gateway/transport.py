"""Signal transports: the shared "latest token" slot per subject.

A transport exposes exactly two operations:

- ``write_latest(subject_key, blob)``: overwrite the subject's slot
- ``read_latest(subject_key, timeout_seconds)``: return the slot bytes,
  ``None`` if the slot is absent, or raise TransportError on failure

Implementations here:

- DirectoryTransport: one file per subject on a local/shared filesystem
- HttpTransport: PUT/GET against the gateway's /v1/signals endpoints (urllib)
- GitRefTransport: one commit per publish, force-pushed to a per-subject ref
  (``refs/effort-gate/signal/<subject_key>``) holding ``effort-signal.json``
- FanoutTransport: write to several targets in parallel, read from the first

Transports are eventually consistent and never authoritative; the verifier
re-checks everything it reads.
"""

from __future__ import annotations

import logging
import os
import re
import subprocess
import tempfile
import urllib.error
import urllib.parse
import urllib.request
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Sequence, runtime_checkable

from .errors import EGP_E_TRANSPORT_TIMEOUT, ConfigError, TransportError

logger = logging.getLogger("egp_gateway.transport")

PAYLOAD_FILENAME = "effort-signal.json"
SIGNAL_REF_PATTERN = "refs/effort-gate/signal/{subject_key}"
DEFAULT_READ_TIMEOUT_SECONDS = 5.0
MAX_PAYLOAD_BYTES = 64 * 1024

_SUBJECT_KEY_RE = re.compile(r"[A-Za-z0-9_][A-Za-z0-9._-]{0,127}")


def check_subject_key(subject_key: str) -> str:
    """Subject keys end up in file names, URLs and git refs."""
    if not isinstance(subject_key, str) or not _SUBJECT_KEY_RE.fullmatch(subject_key) or ".." in subject_key:
        raise ValueError(f"invalid subject_key: {subject_key!r}")
    if subject_key.endswith(".lock") or subject_key.endswith("."):
        raise ValueError(f"invalid subject_key: {subject_key!r}")
    return subject_key


def signal_ref(subject_key: str, pattern: str = SIGNAL_REF_PATTERN) -> str:
    return pattern.format(subject_key=check_subject_key(subject_key))


@runtime_checkable
class SignalTransport(Protocol):
    def write_latest(self, subject_key: str, blob: bytes) -> None: ...

    def read_latest(self, subject_key: str, timeout_seconds: float = DEFAULT_READ_TIMEOUT_SECONDS) -> Optional[bytes]: ...


class DirectoryTransport:
    """``<root>/<subject_key>/<payload_filename>`` with atomic replace."""

    def __init__(self, root: str, payload_filename: str = PAYLOAD_FILENAME):
        self.root = Path(root)
        self.payload_filename = payload_filename

    def _path(self, subject_key: str) -> Path:
        return self.root / check_subject_key(subject_key) / self.payload_filename

    def write_latest(self, subject_key: str, blob: bytes) -> None:
        path = self._path(subject_key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(prefix=".signal-", dir=str(path.parent))
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(bytes(blob))
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp, path)
            except BaseException:
                if os.path.exists(tmp):
                    os.unlink(tmp)
                raise
        except OSError as e:
            raise TransportError(f"directory write failed: {e}", path=str(path)) from e

    def read_latest(self, subject_key: str, timeout_seconds: float = DEFAULT_READ_TIMEOUT_SECONDS) -> Optional[bytes]:
        path = self._path(subject_key)
        try:
            with path.open("rb") as f:
                data = f.read(MAX_PAYLOAD_BYTES + 1)
        except FileNotFoundError:
            return None
        except OSError as e:
            raise TransportError(f"directory read failed: {e}", path=str(path)) from e
        if len(data) > MAX_PAYLOAD_BYTES:
            raise TransportError("signal payload too large", path=str(path))
        return data


class HttpTransport:
    """HTTP slot at ``{base_url}/v1/signals/{subject_key}/{payload_filename}``."""

    def __init__(
        self,
        base_url: str,
        *,
        api_key: Optional[str] = None,
        payload_filename: str = PAYLOAD_FILENAME,
        write_timeout_seconds: float = 10.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.payload_filename = payload_filename
        self.write_timeout_seconds = float(write_timeout_seconds)

    def _url(self, subject_key: str) -> str:
        sk = urllib.parse.quote(check_subject_key(subject_key), safe="")
        return f"{self.base_url}/v1/signals/{sk}/{urllib.parse.quote(self.payload_filename)}"

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["X-Api-Key"] = str(self.api_key)
        return headers

    def write_latest(self, subject_key: str, blob: bytes) -> None:
        req = urllib.request.Request(self._url(subject_key), data=bytes(blob), headers=self._headers(), method="PUT")
        try:
            with urllib.request.urlopen(req, timeout=self.write_timeout_seconds) as resp:
                resp.read()
        except urllib.error.HTTPError as e:
            raise TransportError(f"signal PUT failed: HTTP {e.code}", status=e.code) from e
        except (urllib.error.URLError, OSError) as e:
            raise TransportError(f"signal PUT failed: {e}") from e

    def read_latest(self, subject_key: str, timeout_seconds: float = DEFAULT_READ_TIMEOUT_SECONDS) -> Optional[bytes]:
        req = urllib.request.Request(self._url(subject_key), headers=self._headers(), method="GET")
        try:
            with urllib.request.urlopen(req, timeout=float(timeout_seconds)) as resp:
                data = resp.read(MAX_PAYLOAD_BYTES + 1)
        except urllib.error.HTTPError as e:
            if e.code == 404:
                return None
            raise TransportError(f"signal GET failed: HTTP {e.code}", status=e.code) from e
        except (urllib.error.URLError, OSError) as e:
            raise TransportError(f"signal GET failed: {e}") from e
        if len(data) > MAX_PAYLOAD_BYTES:
            raise TransportError("signal payload too large")
        return data


class GitRefTransport:
    """Per-subject git ref carrying a single-file tree.

    Each publish creates a parentless commit and force-updates the ref, so the
    ref always points at exactly one payload and history does not grow. With
    ``remote`` set the ref is pushed/fetched; otherwise the local repository
    is the slot.
    """

    def __init__(
        self,
        repo_dir: str = ".",
        *,
        remote: Optional[str] = None,
        ref_pattern: str = SIGNAL_REF_PATTERN,
        payload_filename: str = PAYLOAD_FILENAME,
        git_bin: str = "git",
        write_timeout_seconds: float = 30.0,
    ):
        self.repo_dir = str(repo_dir)
        self.remote = remote
        self.ref_pattern = ref_pattern
        self.payload_filename = payload_filename
        self.git_bin = git_bin
        self.write_timeout_seconds = float(write_timeout_seconds)

    def _env(self) -> Dict[str, str]:
        env = dict(os.environ)
        env.setdefault("GIT_AUTHOR_NAME", "effort-gate")
        env.setdefault("GIT_AUTHOR_EMAIL", "effort-gate@localhost")
        env.setdefault("GIT_COMMITTER_NAME", "effort-gate")
        env.setdefault("GIT_COMMITTER_EMAIL", "effort-gate@localhost")
        env["GIT_TERMINAL_PROMPT"] = "0"
        return env

    def _git(self, args: Sequence[str], *, input: Optional[bytes] = None, timeout: float) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                [self.git_bin, "-C", self.repo_dir, *args],
                input=input,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                timeout=float(timeout),
                env=self._env(),
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise TransportError(f"git {args[0]} timed out after {timeout}s", code=EGP_E_TRANSPORT_TIMEOUT) from e
        except OSError as e:
            raise TransportError(f"git unavailable: {e}") from e

    def _git_ok(self, args: Sequence[str], *, input: Optional[bytes] = None, timeout: float) -> str:
        proc = self._git(args, input=input, timeout=timeout)
        if proc.returncode != 0:
            err = (proc.stderr or b"").decode("utf-8", errors="ignore").strip()
            raise TransportError(f"git {args[0]} failed ({proc.returncode})", stderr=err[:500])
        return (proc.stdout or b"").decode("utf-8", errors="ignore").strip()

    def write_latest(self, subject_key: str, blob: bytes) -> None:
        ref = signal_ref(subject_key, self.ref_pattern)
        t = self.write_timeout_seconds
        blob_sha = self._git_ok(["hash-object", "-w", "--stdin"], input=bytes(blob), timeout=t)
        tree_line = f"100644 blob {blob_sha}\t{self.payload_filename}\n".encode("utf-8")
        tree_sha = self._git_ok(["mktree"], input=tree_line, timeout=t)
        commit_sha = self._git_ok(["commit-tree", tree_sha, "-m", f"effort-gate signal for {subject_key}"], timeout=t)
        if self.remote:
            self._git_ok(["push", "--force", "--quiet", self.remote, f"{commit_sha}:{ref}"], timeout=t)
        else:
            self._git_ok(["update-ref", ref, commit_sha], timeout=t)

    def read_latest(self, subject_key: str, timeout_seconds: float = DEFAULT_READ_TIMEOUT_SECONDS) -> Optional[bytes]:
        ref = signal_ref(subject_key, self.ref_pattern)
        if self.remote:
            scratch = f"refs/effort-gate/fetched/{subject_key}"
            proc = self._git(
                ["fetch", "--quiet", "--no-tags", self.remote, f"+{ref}:{scratch}"],
                timeout=timeout_seconds,
            )
            if proc.returncode != 0:
                err = (proc.stderr or b"").decode("utf-8", errors="ignore")
                if "couldn't find remote ref" in err.lower():
                    return None
                raise TransportError(f"git fetch failed ({proc.returncode})", stderr=err.strip()[:500])
            try:
                return self._show(scratch, timeout_seconds)
            finally:
                self._git(["update-ref", "-d", scratch], timeout=timeout_seconds)
        return self._show(ref, timeout_seconds)

    def _show(self, ref: str, timeout_seconds: float) -> Optional[bytes]:
        proc = self._git(["show", f"{ref}:{self.payload_filename}"], timeout=timeout_seconds)
        if proc.returncode != 0:
            err = (proc.stderr or b"").decode("utf-8", errors="ignore").lower()
            if "invalid object name" in err or "does not exist" in err or "unknown revision" in err:
                return None
            raise TransportError(f"git show failed ({proc.returncode})", stderr=err.strip()[:500])
        data = proc.stdout or b""
        if len(data) > MAX_PAYLOAD_BYTES:
            raise TransportError("signal payload too large")
        return data


class FanoutTransport:
    """Write to every target in parallel; read from the first.

    A write fails only if every target failed. Individual failures are
    logged and counted, never retried here.
    """

    def __init__(self, targets: List[SignalTransport], *, max_workers: Optional[int] = None):
        if not targets:
            raise ValueError("FanoutTransport requires at least one target")
        self.targets = list(targets)
        self.max_workers = max_workers or len(self.targets)

    def write_latest(self, subject_key: str, blob: bytes) -> None:
        errors: List[BaseException] = []
        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="egp-fanout") as pool:
            futures = [pool.submit(t.write_latest, subject_key, blob) for t in self.targets]
            for target, fut in zip(self.targets, futures):
                exc = fut.exception()
                if exc is not None:
                    logger.warning("fanout write to %s failed for %s: %s", type(target).__name__, subject_key, exc)
                    errors.append(exc)
        if len(errors) == len(self.targets):
            raise TransportError(f"all {len(errors)} fanout targets failed", errors=[str(e) for e in errors])

    def read_latest(self, subject_key: str, timeout_seconds: float = DEFAULT_READ_TIMEOUT_SECONDS) -> Optional[bytes]:
        return self.targets[0].read_latest(subject_key, timeout_seconds)


def build_transport(spec: Dict[str, Any], *, base_dir: Optional[str] = None) -> SignalTransport:
    """Build a transport from a config dict such as ``{"kind": "git", "remote": "origin"}``.

    Relative paths are resolved against ``base_dir`` (the gate config's directory).
    """
    if not isinstance(spec, dict):
        raise ConfigError("transport must be an object")
    kind = str(spec.get("kind") or "").strip().lower()
    payload_filename = str(spec.get("payload_filename") or PAYLOAD_FILENAME)

    def _resolve(p: str) -> str:
        if base_dir and not os.path.isabs(p):
            return os.path.join(base_dir, p)
        return p

    if kind in ("dir", "directory", "file"):
        path = spec.get("path")
        if not isinstance(path, str) or not path:
            raise ConfigError("transport.path is required for kind=dir")
        return DirectoryTransport(_resolve(path), payload_filename=payload_filename)
    if kind == "http":
        url = spec.get("url")
        if not isinstance(url, str) or not url.startswith(("http://", "https://")):
            raise ConfigError("transport.url must be an http(s) URL for kind=http")
        api_key = spec.get("api_key")
        return HttpTransport(url, api_key=api_key if isinstance(api_key, str) else None, payload_filename=payload_filename)
    if kind == "git":
        repo = spec.get("repo_dir") or "."
        remote = spec.get("remote")
        return GitRefTransport(
            _resolve(str(repo)),
            remote=str(remote) if remote else None,
            ref_pattern=str(spec.get("ref_pattern") or SIGNAL_REF_PATTERN),
            payload_filename=payload_filename,
        )
    if kind == "fanout":
        targets = spec.get("targets")
        if not isinstance(targets, list) or not targets:
            raise ConfigError("transport.targets must be a non-empty list for kind=fanout")
        return FanoutTransport([build_transport(t, base_dir=base_dir) for t in targets])
    raise ConfigError(f"unknown transport kind: {kind!r}")
