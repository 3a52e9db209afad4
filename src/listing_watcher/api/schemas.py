"""API response schemas."""

from datetime import datetime

from pydantic import BaseModel


class HealthResponse(BaseModel):
    """Scheduler loop status."""

    status: str
    alive: bool
    queued: int
    in_flight: int


class ReadyResponse(BaseModel):
    status: str
    scheduler: bool
    database: bool


class ScheduleResponse(BaseModel):
    """Result of a run-now or config-changed request."""

    config_id: int
    status: str
    next_run_at: datetime | None = None
