"""FastAPI application entry point for the Handoff Broker.

This module provides:
- App factory wiring a RoutingEngine, a roster and the expiry sweeper
- Endpoints for requesting, accepting, rejecting and ending connections
- Message routing and delivery failure reporting
- Admin endpoints for roster management and manual expiry
- Error handling and request logging middleware

Every routing endpoint answers 200 with the RoutingResult, whatever its
type; the caller decides what to tell each party from ``type``.
"""

import asyncio
import json
import time
import uuid
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

import psutil
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from loguru import logger

from . import __version__
from .models import (
    AcceptConnectionBody,
    AggregationChannel,
    Connection,
    ConnectionRequest,
    DeliveryFailureBody,
    DisconnectBody,
    ErrorResponse,
    ExpireRequestsBody,
    ExpireRequestsResponse,
    HealthResponse,
    PartyIdentity,
    RejectConnectionBody,
    RequestConnectionBody,
    RouteMessageBody,
    RoutingResult,
)
from .roster import StaticRoster
from .router import RouterError, RoutingEngine
from .sweeper import ExpirySweeper
from .utils import ConfigurationError, get_current_timestamp, guarded, initialize_app


def _request_id(request: Request) -> Optional[str]:
    return getattr(request.state, "request_id", None)


def _load_snapshot(path: Path) -> Optional[Dict[str, Any]]:
    if not path.exists():
        logger.info("No routing snapshot to load", path=str(path))
        return None
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)


def _write_snapshot(path: Path, data: Dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)
    logger.info("Routing snapshot written", path=str(path))


def create_app(
    engine: Optional[RoutingEngine] = None,
    roster: Optional[StaticRoster] = None,
    config: Optional[Dict[str, Any]] = None
) -> FastAPI:
    """Build the FastAPI app around a routing engine.

    Args:
        engine: Engine to expose; built from ``roster`` and ``config`` if omitted
        roster: Roster used by a newly built engine and the admin endpoints
        config: Configuration dict; loaded from the environment (and logging
            set up) if omitted

    Returns:
        The configured FastAPI application
    """
    if config is None:
        config = initialize_app()

    if engine is None:
        roster = roster if roster is not None else StaticRoster()
        engine = RoutingEngine(
            roster=roster,
            require_aggregation_channel=config["REQUIRE_AGGREGATION_CHANNEL"]
        )
    elif roster is None:
        roster = engine.roster

    request_timeout = timedelta(minutes=config["REQUEST_TIMEOUT_MINUTES"])
    snapshot_path = Path(config["ROUTING_SNAPSHOT_PATH"]) if config.get("ROUTING_SNAPSHOT_PATH") else None
    sweeper = ExpirySweeper(engine, request_timeout, config["EXPIRY_SWEEP_INTERVAL_SECONDS"])

    app = FastAPI(
        title="Handoff Broker",
        description="Connection routing for human handoff conversations",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json"
    )
    app.state.engine = engine
    app.state.roster = roster
    app.state.sweeper = sweeper

    # Request/Response logging and timing middleware
    @app.middleware("http")
    async def logging_and_timing_middleware(request: Request, call_next):
        """Log requests and responses with timing information."""
        start_time = time.time()
        request_id = str(uuid.uuid4())[:8]
        request.state.request_id = request_id

        logger.info(
            "Incoming request",
            method=request.method,
            path=request.url.path,
            request_id=request_id
        )

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                "Request failed",
                method=request.method,
                path=request.url.path,
                error=str(e),
                error_type=type(e).__name__,
                processing_time_ms=(time.time() - start_time) * 1000,
                request_id=request_id
            )
            raise

        logger.info(
            "Request completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            processing_time_ms=(time.time() - start_time) * 1000,
            request_id=request_id
        )
        return response

    # Global exception handlers
    @app.exception_handler(ConfigurationError)
    async def configuration_error_handler(request: Request, exc: ConfigurationError):
        """Handle configuration errors."""
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(
                error="CONFIGURATION_ERROR",
                message="System configuration error",
                details={"error": str(exc)},
                request_id=_request_id(request)
            ).model_dump(mode="json")
        )

    @app.exception_handler(RouterError)
    async def router_error_handler(request: Request, exc: RouterError):
        """Handle routing state errors."""
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(
                error="ROUTER_ERROR",
                message="Error processing your request",
                details={"error": str(exc)},
                request_id=_request_id(request)
            ).model_dump(mode="json")
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """Handle HTTP exceptions with consistent error format."""
        return JSONResponse(
            status_code=exc.status_code,
            content=ErrorResponse(
                error="HTTP_ERROR",
                message=str(exc.detail),
                details={"status_code": exc.status_code},
                request_id=_request_id(request)
            ).model_dump(mode="json")
        )

    @app.exception_handler(ValueError)
    async def validation_error_handler(request: Request, exc: ValueError):
        """Handle validation errors."""
        return JSONResponse(
            status_code=422,
            content=ErrorResponse(
                error="VALIDATION_ERROR",
                message=str(exc),
                request_id=_request_id(request)
            ).model_dump(mode="json")
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Handle unexpected errors."""
        logger.error(
            "Unexpected error occurred",
            error=str(exc),
            error_type=type(exc).__name__,
            request_id=_request_id(request)
        )
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(
                error="INTERNAL_SERVER_ERROR",
                message="An unexpected error occurred. Please try again later.",
                request_id=_request_id(request)
            ).model_dump(mode="json")
        )

    async def _persist_snapshot(path: Path) -> None:
        data = await engine.export_state()
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, _write_snapshot, path, data)

    @app.on_event("startup")
    async def startup_event():
        """Restore the routing snapshot and start the expiry sweeper."""
        if snapshot_path is not None:
            loop = asyncio.get_running_loop()
            data = await loop.run_in_executor(None, _load_snapshot, snapshot_path)
            if data is not None:
                await engine.load_state(data)

        sweeper.start()
        logger.info("Startup completed", version=__version__)

    @app.on_event("shutdown")
    async def shutdown_event():
        """Stop the sweeper and persist the routing snapshot."""
        await sweeper.stop()

        if snapshot_path is not None:
            await guarded(_persist_snapshot, snapshot_path, name="write_snapshot")

    # Root endpoint
    @app.get("/")
    async def root():
        """Root endpoint with basic service information."""
        return {
            "service": "Handoff Broker",
            "version": __version__,
            "timestamp": get_current_timestamp(),
            "docs": "/docs"
        }

    @app.post("/connections/request", response_model=RoutingResult)
    async def request_connection(body: RequestConnectionBody) -> RoutingResult:
        """Ask for a live connection on behalf of the requestor."""
        return await engine.request_connection(body.requestor)

    @app.post("/connections/accept", response_model=RoutingResult)
    async def accept_connection(body: AcceptConnectionBody) -> RoutingResult:
        """Accept a pending request; the owner becomes index 0 of the result."""
        return await engine.accept_connection(body.owner, body.requestor)

    @app.post("/connections/reject", response_model=RoutingResult)
    async def reject_connection(body: RejectConnectionBody) -> RoutingResult:
        return await engine.reject_connection(body.rejecter, body.requestor)

    @app.post("/connections/disconnect", response_model=RoutingResult)
    async def disconnect(body: DisconnectBody) -> RoutingResult:
        return await engine.disconnect_party(body.party)

    @app.get("/connections", response_model=List[Connection])
    async def list_connections() -> List[Connection]:
        return await engine.get_connections()

    @app.get("/parties", response_model=List[PartyIdentity])
    async def list_parties() -> List[PartyIdentity]:
        """Every party the broker has seen and not removed."""
        return await engine.get_parties()

    @app.get("/requests", response_model=List[ConnectionRequest])
    async def list_requests() -> List[ConnectionRequest]:
        """Pending requests, longest waiting first."""
        return await engine.get_pending_requests()

    @app.post("/messages", response_model=RoutingResult)
    async def route_message(body: RouteMessageBody) -> RoutingResult:
        """Resolve where the sender's message goes.

        The returned conversation reference is the recipient; relaying the
        activity is up to the caller.
        """
        return await engine.handle_message(body.sender, body.activity, body.request_if_not_connected)

    @app.post("/messages/failed", response_model=RoutingResult)
    async def report_delivery_failure(body: DeliveryFailureBody) -> RoutingResult:
        return await engine.report_delivery_failure(body.sender, body.reason)

    @app.post("/admin/expire", response_model=ExpireRequestsResponse)
    async def expire_requests(body: Optional[ExpireRequestsBody] = None) -> ExpireRequestsResponse:
        """Manually expire requests older than the given or configured age."""
        max_age = request_timeout
        if body is not None and body.max_age_minutes is not None:
            max_age = timedelta(minutes=body.max_age_minutes)

        expired = await engine.expire_requests(max_age)
        return ExpireRequestsResponse(expired_count=len(expired), expired=expired)

    def _require_static_roster() -> StaticRoster:
        if not isinstance(roster, StaticRoster):
            raise HTTPException(status_code=409, detail="Roster is managed externally")
        return roster

    @app.post("/admin/owners")
    async def add_owner(owner: PartyIdentity):
        added = _require_static_roster().add_owner(owner)
        return {"added": added, "owners": len(roster.owners)}

    @app.delete("/admin/owners")
    async def remove_owner(owner: PartyIdentity):
        removed = _require_static_roster().remove_owner(owner)
        return {"removed": removed, "owners": len(roster.owners)}

    @app.post("/admin/aggregation-channels")
    async def add_aggregation_channel(channel: AggregationChannel):
        added = _require_static_roster().add_aggregation_channel(channel)
        return {"added": added, "aggregation_channels": len(roster.aggregation_channels)}

    @app.delete("/admin/aggregation-channels")
    async def remove_aggregation_channel(channel: AggregationChannel):
        removed = _require_static_roster().remove_aggregation_channel(channel)
        return {"removed": removed, "aggregation_channels": len(roster.aggregation_channels)}

    @app.get("/health", response_model=HealthResponse)
    async def health_check() -> HealthResponse:
        """Store counts and process memory."""
        stats = await engine.get_stats()

        try:
            memory_usage_mb = psutil.Process().memory_info().rss / 1024 / 1024
        except psutil.Error as e:
            logger.warning("Memory usage unavailable", error=str(e))
            memory_usage_mb = 0.0

        return HealthResponse(
            status="healthy" if sweeper.running else "degraded",
            timestamp=get_current_timestamp(),
            version=__version__,
            pending_requests=stats["pending_requests"],
            active_connections=stats["active_connections"],
            memory_usage_mb=round(memory_usage_mb, 2)
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("handoff_broker.main:app", host="0.0.0.0", port=8000)
