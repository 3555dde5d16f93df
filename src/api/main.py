"""FastAPI backend for the pipeline telemetry dashboard.

Owns the process-wide MetricsStore: it is built once in the lifespan and
shared with the live-stream publisher and the system sampler through
``app.state``.  Pipeline code running in the same process gets the store from
``app.state.store`` (or ``get_store``) and starts collectors against it.
"""

import logging
import secrets
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, ValidationError

from src.config import get_settings
from src.observability.dashboard import (
    API_VERSION,
    ActionRequest,
    ActionResponse,
    DashboardAction,
    DashboardResponse,
    get_dashboard,
    run_action,
)
from src.observability.metrics import APP_INFO
from src.observability.sampler import start_sampler, stop_sampler
from src.observability.store import MetricsStore
from src.observability.stream import SSE_HEADERS, LiveStreamPublisher

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------


class AuthRequest(BaseModel):
    """Request body for POST /api/dashboard/auth."""

    password: str


class AuthResponse(BaseModel):
    """Response body for POST /api/dashboard/auth."""

    success: bool
    message: str | None = None
    error: str | None = None


class AuthStatusResponse(BaseModel):
    """Response body for GET /api/dashboard/auth."""

    auth_required: bool
    environment: str


class ServiceHealth(BaseModel):
    """Availability of a single pipeline dependency."""

    name: str
    status: str


class HealthResponse(BaseModel):
    """Response body for GET /health."""

    status: str
    retained_records: int
    active_alerts: int
    stream_sessions: int
    services: list[ServiceHealth]


# ---------------------------------------------------------------------------
# Application lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the store and publisher once at startup, tear down on shutdown."""
    settings = get_settings()
    APP_INFO.info({"version": API_VERSION, "environment": settings.environment})

    logger.info("Initializing metrics store...")
    store = MetricsStore.from_settings(settings)
    publisher = LiveStreamPublisher(
        store,
        interval=settings.stream_interval_seconds,
        max_duration=settings.stream_max_duration_seconds,
    )
    app.state.store = store
    app.state.publisher = publisher

    for service, available in settings.service_status().items():
        if not available:
            logger.warning("%s is not configured; pipeline features using it will be limited", service.upper())

    start_sampler(store, publisher)
    logger.info("Monitoring ready: dashboard at /api/dashboard, stream at /api/dashboard/stream")
    yield
    stop_sampler()
    logger.info("Shutting down pipeline telemetry")


app = FastAPI(title="Pipeline Telemetry", lifespan=lifespan)


def get_store(request: Request) -> MetricsStore:
    return request.app.state.store  # type: ignore[no-any-return]


def get_publisher(request: Request) -> LiveStreamPublisher:
    return request.app.state.publisher  # type: ignore[no-any-return]


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@app.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus metrics in exposition format."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/api/dashboard", response_model=DashboardResponse)
async def dashboard(store: MetricsStore = Depends(get_store)) -> Any:
    """Full dashboard snapshot."""
    settings = get_settings()
    response = get_dashboard(store, update_interval_seconds=settings.stream_interval_seconds)
    if not response.success:
        return JSONResponse(status_code=500, content=response.model_dump(mode="json", exclude_none=True))
    return response


@app.post("/api/dashboard", response_model=ActionResponse)
async def dashboard_action(request: Request, store: MetricsStore = Depends(get_store)) -> Any:
    """Administrative actions: inject a test metric or resolve every alert."""
    try:
        body = ActionRequest.model_validate_json(await request.body())
    except ValidationError:
        logger.warning("Malformed dashboard action request", exc_info=True)
        return JSONResponse(
            status_code=500,
            content=ActionResponse(success=False, error="Failed to process request").model_dump(exclude_none=True),
        )

    try:
        action = DashboardAction(body.action)
    except ValueError:
        logger.warning("Unknown dashboard action '%s'", body.action)
        return JSONResponse(
            status_code=400,
            content=ActionResponse(success=False, error="Unknown action").model_dump(exclude_none=True),
        )

    response = run_action(store, action, body.data)
    if not response.success:
        return JSONResponse(status_code=500, content=response.model_dump(mode="json", exclude_none=True))
    return response


@app.get("/api/dashboard/stream")
async def dashboard_stream(
    request: Request,
    publisher: LiveStreamPublisher = Depends(get_publisher),
) -> StreamingResponse:
    """Live dashboard updates as Server-Sent Events."""
    session = publisher.open_session(is_disconnected=request.is_disconnected)
    logger.info("Live stream %s requested", session.id)
    return StreamingResponse(session.stream(), media_type="text/event-stream", headers=SSE_HEADERS)


@app.post("/api/dashboard/auth", response_model=AuthResponse)
async def dashboard_auth(body: AuthRequest) -> Any:
    """Check a dashboard password against DASHBOARD_PASSWORD."""
    settings = get_settings()
    if not settings.dashboard_password:
        logger.error("Dashboard auth requested but DASHBOARD_PASSWORD is not set")
        return JSONResponse(
            status_code=500,
            content=AuthResponse(success=False, error="Dashboard password not configured").model_dump(
                exclude_none=True
            ),
        )

    if secrets.compare_digest(body.password.encode(), settings.dashboard_password.encode()):
        logger.info("Dashboard authentication succeeded")
        return AuthResponse(success=True, message="Authentication successful")

    logger.warning("Dashboard authentication failed: wrong password")
    return JSONResponse(
        status_code=401,
        content=AuthResponse(success=False, error="Invalid password").model_dump(exclude_none=True),
    )


@app.get("/api/dashboard/auth", response_model=AuthStatusResponse)
async def dashboard_auth_status() -> AuthStatusResponse:
    """Whether the dashboard requires a password."""
    settings = get_settings()
    return AuthStatusResponse(auth_required=bool(settings.dashboard_password), environment=settings.environment)


@app.get("/health", response_model=HealthResponse)
async def health(
    store: MetricsStore = Depends(get_store),
    publisher: LiveStreamPublisher = Depends(get_publisher),
) -> HealthResponse:
    """Report dependency availability from the latest system snapshot."""
    snapshot = store.latest_system_snapshot()
    services_map = snapshot.services if snapshot is not None else get_settings().service_status()
    services = [
        ServiceHealth(name=name, status="healthy" if available else "unhealthy")
        for name, available in services_map.items()
    ]

    healthy_count = sum(1 for s in services if s.status == "healthy")
    if healthy_count == len(services):
        overall = "healthy"
    elif healthy_count == 0:
        overall = "unhealthy"
    else:
        overall = "degraded"

    return HealthResponse(
        status=overall,
        retained_records=store.record_count,
        active_alerts=store.active_alert_count,
        stream_sessions=publisher.active_sessions,
        services=services,
    )
