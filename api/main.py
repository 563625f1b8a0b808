"""
FastAPI status application for the listing monitor.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import structlog
from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse

from api.models import (
    CheckResponse,
    ErrorResponse,
    HealthResponse,
    StatisticsResponse,
    TargetListResponse,
    TargetResponse,
)
from monitor.assembly import build_scheduler, build_store, seed_targets
from monitor.scheduler_service import MonitoringScheduler, SchedulerState
from utilities.config import MonitorSettings, get_settings

logger = structlog.get_logger(__name__)

API_VERSION = "1.0.0"


def _scheduler(request: Request) -> MonitoringScheduler:
    return request.app.state.scheduler


def _target_response(scheduler: MonitoringScheduler, target_id: str) -> TargetResponse:
    target = scheduler.targets.get(target_id)
    if target is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Target not found: {target_id}")
    state = scheduler.target_states.get(target_id)
    return TargetResponse.from_target(
        target,
        state=state.value if state else None,
        in_flight=scheduler.is_in_flight(target_id),
        statistics=scheduler.statistics.target_statistics(target_id),
    )


def create_app(
    scheduler: Optional[MonitoringScheduler] = None,
    settings: Optional[MonitorSettings] = None,
) -> FastAPI:
    """
    Create the status API.

    Args:
        scheduler: Scheduler to expose; when None one is built from settings
            and started and stopped with the application
        settings: Monitor settings used to build the scheduler

    Returns:
        FastAPI application
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if scheduler is not None:
            app.state.scheduler = scheduler
            yield
            return

        monitor_settings = settings or get_settings()
        store = build_store(monitor_settings)
        await store.connect()
        await seed_targets(store, monitor_settings)
        app.state.scheduler = build_scheduler(monitor_settings, store=store)
        await app.state.scheduler.start()
        logger.info("Status API started with embedded scheduler")
        try:
            yield
        finally:
            await app.state.scheduler.stop()
            await store.disconnect()
            logger.info("Status API stopped")

    app = FastAPI(
        title="Listing Monitor API",
        description="Status and control surface for the listing change monitor.",
        version=API_VERSION,
        lifespan=lifespan,
    )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request, exc: HTTPException):
        """Handle HTTP exceptions."""
        return JSONResponse(
            status_code=exc.status_code,
            content=ErrorResponse(error=str(exc.detail), status_code=exc.status_code).model_dump(),
            headers=exc.headers
        )

    @app.get("/health", response_model=HealthResponse, tags=["Health"])
    async def health_check(request: Request):
        """Health check endpoint."""
        current = _scheduler(request)
        scheduler_status = current.status()
        breakers = scheduler_status.get("circuit_breakers") or {}
        if current.state != SchedulerState.RUNNING:
            overall = "stopped"
        elif breakers.get("open_targets"):
            overall = "degraded"
        else:
            overall = "healthy"
        return HealthResponse(
            status=overall,
            timestamp=datetime.now(timezone.utc),
            version=API_VERSION,
            scheduler=scheduler_status,
        )

    @app.get("/targets", response_model=TargetListResponse, tags=["Targets"])
    async def list_targets(request: Request, owner_id: Optional[str] = None):
        """List monitored targets, optionally for one owner."""
        current = _scheduler(request)
        if owner_id is not None:
            owned = await current.store.targets_for_owner(owner_id)
            target_ids = [target.id for target in owned if target.id in current.targets]
        else:
            target_ids = sorted(current.targets)
        targets = [_target_response(current, target_id) for target_id in target_ids]
        return TargetListResponse(targets=targets, total=len(targets))

    @app.get("/targets/{target_id}", response_model=TargetResponse, tags=["Targets"])
    async def get_target(request: Request, target_id: str):
        return _target_response(_scheduler(request), target_id)

    @app.post("/targets/{target_id}/pause", response_model=TargetResponse, tags=["Targets"])
    async def pause_target(request: Request, target_id: str):
        current = _scheduler(request)
        if target_id not in current.targets:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Target not found: {target_id}")
        await current.pause_target(target_id)
        return _target_response(current, target_id)

    @app.post("/targets/{target_id}/resume", response_model=TargetResponse, tags=["Targets"])
    async def resume_target(request: Request, target_id: str):
        current = _scheduler(request)
        if target_id not in current.targets:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Target not found: {target_id}")
        await current.resume_target(target_id)
        return _target_response(current, target_id)

    @app.post("/targets/{target_id}/check", response_model=CheckResponse, tags=["Targets"])
    async def check_target(request: Request, target_id: str):
        """Run a check now, or join the one already running."""
        current = _scheduler(request)
        if target_id not in current.targets:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Target not found: {target_id}")
        try:
            outcome = await current.check_now(target_id)
        except RuntimeError as e:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
        return CheckResponse(target_id=target_id, performed=outcome is not None, outcome=outcome)

    @app.get("/statistics", response_model=StatisticsResponse, tags=["Statistics"])
    async def get_statistics(request: Request):
        snapshot = _scheduler(request).statistics.snapshot()
        return StatisticsResponse(statistics=snapshot, error_rate=snapshot.error_rate)

    return app


app = create_app()
