"""FastAPI server for the Ember operator node.

Endpoints:
- POST /v1/share    Accept a signed, sealed share from the epoch's leader
- GET  /v1/identity Operator address and the public key shares are sealed to
- GET  /v1/status   Leadership and last distribution summary
- GET  /health      Liveness, identity and monitor state
- GET  /metrics     Prometheus exposition
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import Response
from starlette.responses import JSONResponse

from ember_node import __version__
from ember_node.api.metrics import metrics_response
from ember_node.api.middleware import RateLimiter, RateLimitMiddleware, RequestIdMiddleware
from ember_node.api.models import (
    DistributionSummary,
    HealthResponse,
    IdentityResponse,
    LeadershipInfo,
    ShareRejectedResponse,
    ShareResponse,
    ShareSubmission,
    StatusResponse,
)
from ember_node.core.leadership import Epoch, same_identity
from ember_node.core.signing import ShareEnvelope, share_context
from ember_node.errors import (
    DuplicateShare,
    InvalidShare,
    InvalidSignature,
    ShareRejected,
    StaleShare,
    UnexpectedSender,
)
from ember_node.utils.crypto import Share
from ember_node.utils.sealing import ShareKey

if TYPE_CHECKING:
    from ember_node.chain.contracts import ChainClient
    from ember_node.core.leadership import LeadershipTracker
    from ember_node.core.monitor import SelectionMonitor
    from ember_node.core.receiver import ShareReceiver

log = structlog.get_logger()

# (error class, HTTP status, reason) checked in order
_REJECTION_STATUS: tuple[tuple[type[ShareRejected], int, str], ...] = (
    (DuplicateShare, 409, "duplicate"),
    (StaleShare, 409, "stale"),
    (InvalidSignature, 401, "signature"),
    (UnexpectedSender, 403, "sender"),
    (InvalidShare, 400, "invalid"),
)


def _rejection_response(exc: ShareRejected) -> JSONResponse:
    status, reason = 400, "rejected"
    for cls, code, name in _REJECTION_STATUS:
        if isinstance(exc, cls):
            status, reason = code, name
            break
    body = ShareRejectedResponse(
        detail=str(exc),
        reason=reason,
        matches_stored=getattr(exc, "matches_stored", False),
    )
    return JSONResponse(status_code=status, content=body.model_dump())


def _to_envelope(req: ShareSubmission, share_key: ShareKey) -> ShareEnvelope:
    try:
        epoch = Epoch.parse(req.epoch, tx_hash=req.tx_hash)
        sealed = bytes.fromhex(req.sealed_value[2:])
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    value = share_key.open(sealed, share_context(epoch, req.recipient, req.index, req.custody_address))
    return ShareEnvelope(
        epoch=epoch,
        sender=req.sender,
        recipient=req.recipient,
        share=Share(x=req.index, y=value),
        custody_address=req.custody_address,
        signature=req.signature,
    )


def create_app(
    receiver: ShareReceiver,
    tracker: LeadershipTracker,
    share_key: ShareKey,
    monitor: SelectionMonitor | None = None,
    chain_client: ChainClient | None = None,
    rate_limit_capacity: int = 60,
    rate_limit_rate: int = 10,
) -> FastAPI:
    """Create the FastAPI application with injected dependencies."""
    if not same_identity(share_key.address, tracker.local_identity):
        raise ValueError(f"Share key {share_key.address} does not belong to operator {tracker.local_identity}")
    app = FastAPI(
        title="Ember Node",
        version=__version__,
        description="Ember operator node API",
    )

    # Never leak stack traces to clients
    @app.exception_handler(Exception)
    async def _unhandled_error(request: Request, exc: Exception) -> JSONResponse:
        log.error(
            "unhandled_exception",
            error=str(exc),
            path=request.url.path,
            method=request.method,
            exc_info=True,
        )
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})

    @app.middleware("http")
    async def limit_body_size(request: Request, call_next):  # type: ignore[no-untyped-def]
        content_length = request.headers.get("content-length")
        if content_length:
            try:
                if int(content_length) > 65_536:
                    return JSONResponse(status_code=413, content={"detail": "Request body too large"})
            except ValueError:
                return JSONResponse(status_code=400, content={"detail": "Invalid Content-Length header"})
        return await call_next(request)

    limiter = RateLimiter(default_capacity=rate_limit_capacity, default_rate=rate_limit_rate)
    limiter.set_path_limit("/v1/share", capacity=20, rate=2)
    app.add_middleware(RateLimitMiddleware, limiter=limiter)

    # Outermost, so it must be added last
    app.add_middleware(RequestIdMiddleware)

    @app.post("/v1/share", response_model=ShareResponse, responses={202: {"model": ShareResponse}})
    async def submit_share(req: ShareSubmission) -> Response:
        """Validate and store a share addressed to this operator."""
        try:
            envelope = _to_envelope(req, share_key)
            stored = receiver.accept(envelope)
        except ShareRejected as e:
            log.info("share_rejected", epoch=req.epoch, sender=req.sender, error=str(e))
            return _rejection_response(e)
        if stored is None:
            body = ShareResponse(epoch=envelope.epoch.id, stored=False, pending=True, index=req.index)
            return JSONResponse(status_code=202, content=body.model_dump())
        body = ShareResponse(epoch=stored.epoch.id, stored=True, index=stored.share.x)
        return JSONResponse(status_code=200, content=body.model_dump())

    @app.get("/v1/identity", response_model=IdentityResponse)
    async def identity() -> IdentityResponse:
        return IdentityResponse(identity=share_key.address, public_key="0x" + share_key.public_key.hex())

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        chain_ok = False
        if chain_client is not None:
            try:
                chain_ok = await chain_client.is_connected()
            except Exception as e:
                log.warning("chain_health_check_failed", error=str(e))
        return HealthResponse(
            status="ok",
            version=__version__,
            identity=tracker.local_identity,
            monitor_state=monitor.state.value if monitor else "disabled",
            chain_connected=chain_ok,
            shares_held=1 if receiver.current() is not None else 0,
        )

    @app.get("/v1/status", response_model=StatusResponse)
    async def status() -> StatusResponse:
        latest = tracker.latest
        leadership = LeadershipInfo()
        if latest is not None:
            leadership = LeadershipInfo(epoch=latest.epoch.id, leader=latest.identity, role=latest.role.value)

        summary = None
        result = monitor.latest_distribution if monitor else None
        if result is not None:
            summary = DistributionSummary(
                epoch=result.epoch.id,
                status=result.status.value,
                delivered=result.delivered,
                threshold=result.threshold,
                total_shares=result.total_shares,
                threshold_met=result.threshold_met,
                superseded=result.superseded,
                custody_address=result.custody_address,
                duration_s=round(result.duration_s, 3),
            )

        held = receiver.current()
        return StatusResponse(
            identity=tracker.local_identity,
            monitor_state=monitor.state.value if monitor else "disabled",
            current_leader=tracker.current_leader,
            leadership=leadership,
            last_distribution=summary,
            held_share_epoch=held.epoch.id if held else None,
            held_share_index=held.share.x if held else None,
            pending_shares=receiver.pending_count,
        )

    @app.get("/metrics")
    async def metrics() -> Response:
        return Response(content=metrics_response(), media_type="text/plain; version=0.0.4; charset=utf-8")

    return app
