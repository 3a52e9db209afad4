"""FastAPI dependency injection for database sessions and the scheduler."""

from collections.abc import Generator
from typing import Annotated

from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session

from listing_watcher.database.engine import get_session_factory
from listing_watcher.services.scheduler import Scheduler
from listing_watcher.services.search_config_service import SearchConfigService


def get_db() -> Generator[Session, None, None]:
    """Dependency that provides a database session.

    Yields:
        Database session that is automatically closed after use.
    """
    session_factory = get_session_factory()
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


def get_scheduler(request: Request) -> Scheduler:
    """Dependency that provides the scheduler owned by the app lifespan.

    Raises:
        HTTPException: 503 if the app was started without a scheduler.
    """
    scheduler: Scheduler | None = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        raise HTTPException(status_code=503, detail="Scheduler not running")
    return scheduler


def get_search_config_service(
    session: Annotated[Session, Depends(get_db)],
) -> SearchConfigService:
    return SearchConfigService(session)


# Type aliases for cleaner dependency injection
DbSession = Annotated[Session, Depends(get_db)]
SchedulerDep = Annotated[Scheduler, Depends(get_scheduler)]
SearchConfigServiceDep = Annotated[SearchConfigService, Depends(get_search_config_service)]
