"""Health and readiness endpoints for orchestrated deployment."""

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from listing_watcher.api.dependencies import DbSession, SchedulerDep
from listing_watcher.api.schemas import HealthResponse, ReadyResponse

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check(scheduler: SchedulerDep) -> JSONResponse:
    """Liveness: 200 while the scheduler loop is running, 503 otherwise."""
    health = scheduler.health()
    body = HealthResponse(status="healthy" if health["alive"] else "unhealthy", **health)
    return JSONResponse(status_code=200 if body.alive else 503, content=body.model_dump())


@router.get("/ready", response_model=ReadyResponse)
async def readiness_check(scheduler: SchedulerDep, session: DbSession) -> JSONResponse:
    """Readiness: scheduler alive and database reachable."""
    try:
        session.execute(text("SELECT 1"))
        database_ok = True
    except SQLAlchemyError:
        database_ok = False

    ready = scheduler.is_alive and database_ok
    body = ReadyResponse(
        status="ready" if ready else "not ready",
        scheduler=scheduler.is_alive,
        database=database_ok,
    )
    return JSONResponse(status_code=200 if ready else 503, content=body.model_dump())
