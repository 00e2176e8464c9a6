"""
EGP Gateway Server

FastAPI ingestion service in front of ``EffortGateway``.

Security Properties:
- The API key determines the subject; a client cannot drive someone else's gate
- Misconfigured auth fails closed (503) instead of running open
- Stale sessions are force-locked by a background heartbeat sweep
- Signing failures surface as 503; nothing unsigned is ever published
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, Header, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .auth import ApiKeyAuth
from .config import GatewaySettings
from .errors import (
    EGP_E_AUTH_REQUIRED,
    EGP_E_BAD_REQUEST,
    EGP_E_SAMPLE_INVALID,
    EGP_E_SIGNAL_NOT_FOUND,
    EGP_E_SUBJECT_MISMATCH,
    EGPError,
    MalformedTokenError,
)
from .gateway import EffortGateway
from .metrics import instrument_fastapi
from .pace import LocationSample
from .signing import load_signer
from .stabilizer import HeartRateSample, PaceSample, Sample
from .tokens import CapabilityToken
from .transport import PAYLOAD_FILENAME, check_subject_key

logger = logging.getLogger("egp_gateway")

MAX_SIGNAL_BYTES = 64 * 1024


def _http_exc(status: int, code: str, message: str, *, retryable: bool = False, **details: Any):
    """Create an HTTPException with a stable error envelope in `detail`."""
    detail: Dict[str, Any] = {"code": code, "message": message, "retryable": bool(retryable)}
    if details:
        detail["details"] = details
    return HTTPException(status, detail)


# ---------------------------
# Request/Response Models
# ---------------------------


class SessionRequest(BaseModel):
    subject_key: Optional[str] = Field(None, max_length=128)


class SessionResponse(BaseModel):
    session_id: str
    subject_key: str
    policy: str
    state: str
    qualifies: bool
    metric_value: Optional[float] = None
    threshold: float
    active: bool
    started_at: float
    ended_at: Optional[float] = None
    samples_received: int = 0


class SampleRequest(BaseModel):
    """Exactly one of heart_rate, pace, or latitude+longitude."""

    heart_rate: Optional[float] = Field(None, ge=30, le=250)
    pace: Optional[float] = Field(None, gt=0)
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)
    accuracy: Optional[float] = Field(None, ge=0)
    timestamp: Optional[float] = None

    def to_sample(self, now: float) -> Sample:
        ts = now if self.timestamp is None else self.timestamp
        has_location = self.latitude is not None or self.longitude is not None
        kinds = sum(1 for present in (self.heart_rate is not None, self.pace is not None, has_location) if present)
        if kinds != 1:
            raise ValueError("provide exactly one of heart_rate, pace, or latitude+longitude")
        if self.heart_rate is not None:
            return HeartRateSample(value=self.heart_rate, timestamp=ts)
        if self.pace is not None:
            return PaceSample(value=self.pace, timestamp=ts)
        if self.latitude is None or self.longitude is None:
            raise ValueError("latitude and longitude must be given together")
        return LocationSample(latitude=self.latitude, longitude=self.longitude, timestamp=ts, accuracy=self.accuracy)


class SampleResponse(BaseModel):
    session_id: str
    state: str
    qualifies: bool
    metric_value: Optional[float] = None
    published: bool
    publish_reason: str


# ---------------------------
# FastAPI App Factory
# ---------------------------


def _default_gateway() -> EffortGateway:
    settings = GatewaySettings.from_env()
    signer = load_signer(allow_ephemeral=settings.allow_ephemeral_keys)
    if signer is None:
        raise RuntimeError(
            "No signing key configured. Set EGP_SIGNING_KEY or EGP_SIGNING_KEY_FILE, "
            "or EGP_SIGNING_CMD with EGP_PUBLIC_KEY_HEX. "
            "For demos/tests only, set EGP_ALLOW_EPHEMERAL_SIGNING_KEYS=1 to generate an ephemeral key."
        )
    return EffortGateway(signer, settings)


def create_app(gateway: Optional[EffortGateway] = None) -> FastAPI:
    """Create FastAPI application with gateway endpoints."""
    from . import __version__ as egp_version

    owns_gateway = gateway is None
    if gateway is None:
        gateway = _default_gateway()
    settings = gateway.settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        async def _sweep_loop() -> None:
            while True:
                await asyncio.sleep(settings.heartbeat_check_interval_seconds)
                try:
                    await asyncio.to_thread(gateway.sweep_stale)
                except Exception:
                    logger.exception("heartbeat sweep failed")

        task = asyncio.create_task(_sweep_loop())
        try:
            yield
        finally:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            if owns_gateway:
                gateway.close()

    app = FastAPI(
        title="EGP Gateway",
        description="Effort Gate Protocol - sample ingestion and token publication",
        version=egp_version,
        lifespan=lifespan,
    )
    app.state.gateway = gateway

    @app.exception_handler(EGPError)
    async def _egp_error_handler(request: Request, exc: EGPError):
        return JSONResponse(status_code=int(exc.http_status or 400), content=exc.as_dict())

    # If configured, caller identity is derived from X-Api-Key instead of
    # client-controlled fields.
    api_auth = ApiKeyAuth.load_from_env()

    metrics_token = (os.getenv("EGP_METRICS_TOKEN", "") or "").strip()

    def _authorize_metrics(req: Request) -> bool:
        if not metrics_token:
            return True
        authz = (req.headers.get("Authorization") or "").strip()
        if authz.lower().startswith("bearer ") and authz.split(" ", 1)[1].strip() == metrics_token:
            return True
        return (req.headers.get("X-Metrics-Token") or "").strip() == metrics_token

    instrument_fastapi(app, authorize=_authorize_metrics)

    def _resolve_subject(x_api_key: Optional[str], claimed: Optional[str]) -> str:
        subject, error = api_auth.resolve_subject(x_api_key, claimed)
        if error == "API_KEY_CONFIG_INVALID":
            raise _http_exc(503, EGP_E_AUTH_REQUIRED, error, retryable=False)
        if error == "SUBJECT_MISMATCH":
            raise _http_exc(403, EGP_E_SUBJECT_MISMATCH, error)
        if error:
            raise _http_exc(401, EGP_E_AUTH_REQUIRED, error)
        if not subject:
            raise _http_exc(400, EGP_E_BAD_REQUEST, "subject_key required")
        return subject

    @app.post("/v1/sessions", response_model=SessionResponse)
    def start_session(
        request: SessionRequest,
        x_api_key: Optional[str] = Header(None, alias="X-Api-Key"),
    ):
        """Start a session; any other active session for the subject ends."""
        subject = _resolve_subject(x_api_key, request.subject_key)
        session = gateway.start_session(subject)
        return SessionResponse(**session.status())

    @app.post("/v1/sessions/{session_id}/samples", response_model=SampleResponse)
    def ingest_sample(
        session_id: str,
        request: SampleRequest,
        x_api_key: Optional[str] = Header(None, alias="X-Api-Key"),
    ):
        session = gateway.get_session(session_id)
        _resolve_subject(x_api_key, session.subject_key)
        try:
            sample = request.to_sample(time.time())
        except ValueError as e:
            raise _http_exc(400, EGP_E_SAMPLE_INVALID, str(e))
        result = gateway.ingest_sample(session_id, sample)
        return SampleResponse(**result.as_dict())

    @app.post("/v1/sessions/{session_id}/end", response_model=SessionResponse)
    def end_session(
        session_id: str,
        x_api_key: Optional[str] = Header(None, alias="X-Api-Key"),
    ):
        session = gateway.get_session(session_id)
        _resolve_subject(x_api_key, session.subject_key)
        session = gateway.end_session(session_id)
        return SessionResponse(**session.status())

    @app.get("/v1/sessions/{session_id}", response_model=SessionResponse)
    def get_session(
        session_id: str,
        x_api_key: Optional[str] = Header(None, alias="X-Api-Key"),
    ):
        session = gateway.get_session(session_id)
        _resolve_subject(x_api_key, session.subject_key)
        return SessionResponse(**session.status())

    def _read_signal(subject_key: str, x_api_key: Optional[str]) -> Response:
        try:
            check_subject_key(subject_key)
        except ValueError as e:
            raise _http_exc(400, EGP_E_BAD_REQUEST, str(e))
        _resolve_subject(x_api_key, subject_key)
        blob = gateway.read_signal(subject_key)
        if blob is None:
            raise _http_exc(404, EGP_E_SIGNAL_NOT_FOUND, "no signal published", subject_key=subject_key)
        return Response(content=blob, media_type="application/json")

    @app.get("/v1/signals/{subject_key}")
    def get_signal(
        subject_key: str,
        x_api_key: Optional[str] = Header(None, alias="X-Api-Key"),
    ):
        """Latest published token for a subject, byte-for-byte."""
        return _read_signal(subject_key, x_api_key)

    @app.get("/v1/signals/{subject_key}/{filename}")
    def get_signal_file(
        subject_key: str,
        filename: str,
        x_api_key: Optional[str] = Header(None, alias="X-Api-Key"),
    ):
        if filename != PAYLOAD_FILENAME:
            raise _http_exc(404, EGP_E_SIGNAL_NOT_FOUND, "unknown signal file", filename=filename)
        return _read_signal(subject_key, x_api_key)

    @app.put("/v1/signals/{subject_key}/{filename}")
    async def put_signal_file(
        subject_key: str,
        filename: str,
        request: Request,
        x_api_key: Optional[str] = Header(None, alias="X-Api-Key"),
    ):
        """Relay a token written by another issuer (HTTP transport target).

        The body must decode as a well-formed token for the same subject.
        Signatures are not checked here; gates verify them.
        """
        if filename != PAYLOAD_FILENAME:
            raise _http_exc(404, EGP_E_SIGNAL_NOT_FOUND, "unknown signal file", filename=filename)
        try:
            check_subject_key(subject_key)
        except ValueError as e:
            raise _http_exc(400, EGP_E_BAD_REQUEST, str(e))
        _resolve_subject(x_api_key, subject_key)

        blob = await request.body()
        if len(blob) > MAX_SIGNAL_BYTES:
            raise _http_exc(413, EGP_E_BAD_REQUEST, "REQUEST_TOO_LARGE")
        try:
            token = CapabilityToken.from_wire(blob)
        except MalformedTokenError as e:
            raise _http_exc(400, e.code, e.message)
        if token.subject_key != subject_key:
            raise _http_exc(403, EGP_E_SUBJECT_MISMATCH, "token subject does not match path")
        await asyncio.to_thread(gateway.write_signal, subject_key, blob)
        return Response(status_code=204)

    @app.get("/v1/health")
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "version": egp_version,
            "policy": settings.policy,
            "public_key": gateway.public_key_hex,
            "key_version": settings.key_version,
            "active_sessions": len(gateway.sessions.active_sessions()),
        }

    return app


def main():
    """
    Main entry point for egp-gateway CLI.

    Usage:
        egp-gateway                    # Start on default port 8000
        egp-gateway --port 9000        # Start on custom port
        egp-gateway --host 127.0.0.1   # Bind to localhost only
    """
    import argparse

    import uvicorn

    parser = argparse.ArgumentParser(
        description="EGP Gateway - effort sample ingestion and token publication",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    egp-gateway                         Start gateway on 0.0.0.0:8000
    egp-gateway --port 9000             Start on custom port

Environment Variables:
    EGP_SIGNING_KEY_FILE  Path to the 0600 Ed25519 seed file
    EGP_POLICY            threshold | hysteresis
    EGP_TRANSPORT         dir | http | git
    EGP_DB_PATH           Path to the claim database (default: egp_gateway.db)
    EGP_PROXY_HEADERS     If set (1/true), trust X-Forwarded-* headers
        """,
    )
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind (default: 8000)")
    parser.add_argument("--proxy-headers", action="store_true", help="Trust X-Forwarded-* headers (for reverse proxy)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )

    app = create_app()
    gateway = app.state.gateway
    print(f"Starting EGP Gateway on {args.host}:{args.port}")
    print(f"  Policy: {gateway.settings.policy} (threshold {gateway.settings.threshold:g})")
    print(f"  Public key (v{gateway.settings.key_version}): {gateway.public_key_hex}")
    print()

    env_proxy = os.environ.get("EGP_PROXY_HEADERS", "").strip().lower()
    proxy_headers = args.proxy_headers or env_proxy in ("1", "true", "yes")

    uvicorn.run(app, host=args.host, port=args.port, proxy_headers=proxy_headers)
    return 0


if __name__ == "__main__":
    import sys

    sys.exit(main() or 0)
