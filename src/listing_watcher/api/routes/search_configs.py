"""Scheduler hooks for saved searches."""

from fastapi import APIRouter, HTTPException

from listing_watcher.api.dependencies import SchedulerDep, SearchConfigServiceDep
from listing_watcher.api.schemas import ScheduleResponse
from listing_watcher.errors import ConfigNotFoundError

router = APIRouter()


@router.post("/{config_id}/run", status_code=202, response_model=ScheduleResponse)
async def run_now(
    config_id: int,
    scheduler: SchedulerDep,
    service: SearchConfigServiceDep,
) -> ScheduleResponse:
    """Run a saved search as soon as possible.

    Raises:
        HTTPException: 404 if the config doesn't exist, 409 if it is disabled.
    """
    try:
        config = service.get_config(config_id)
    except ConfigNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    if not config.enabled:
        raise HTTPException(status_code=409, detail=f"Search config {config_id} is disabled")

    scheduler.schedule_now(config_id)
    return ScheduleResponse(config_id=config_id, status="scheduled")


@router.post("/{config_id}/changed", response_model=ScheduleResponse)
async def config_changed(
    config_id: int,
    scheduler: SchedulerDep,
    service: SearchConfigServiceDep,
) -> ScheduleResponse:
    """Re-read a created, edited or toggled config and re-place it in the queue.

    Raises:
        HTTPException: 404 if the config doesn't exist.
    """
    try:
        service.get_config(config_id)
    except ConfigNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e

    next_run_at = await scheduler.on_config_changed(config_id)
    status = "scheduled" if next_run_at is not None else "unscheduled"
    return ScheduleResponse(config_id=config_id, status=status, next_run_at=next_run_at)
