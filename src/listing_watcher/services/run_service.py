"""One search run end to end: scrape, ingest, dispatch."""

import asyncio
import logging

from listing_watcher.errors import ErrorKind
from listing_watcher.models.pydantic_models import DispatchResult, RunResult, SearchJob
from listing_watcher.services.dispatch_service import NotificationDispatcher
from listing_watcher.services.ingestion_service import IngestionService
from listing_watcher.services.session_manager import AutomationSessionManager

logger = logging.getLogger(__name__)


class SearchRunner:
    """Drives one job through the session manager, ingestion and dispatch.

    Never touches scheduling columns; the scheduler records the outcome.
    """

    def __init__(
        self,
        session_manager: AutomationSessionManager,
        ingestion: IngestionService,
        dispatcher: NotificationDispatcher,
    ) -> None:
        self._session_manager = session_manager
        self._ingestion = ingestion
        self._dispatcher = dispatcher

    async def run(self, job: SearchJob) -> RunResult:
        outcome = await self._session_manager.execute(job)

        if outcome.error is not None:
            error = outcome.error
            if error.kind is ErrorKind.PARSE:
                logger.error("Search config %d: page structure not recognised: %s", job.config_id, error)
            else:
                logger.warning("Search config %d failed (%s): %s", job.config_id, error.kind.value, error)
            return RunResult(
                config_id=job.config_id,
                success=False,
                error_kind=error.kind.value,
                error_message=str(error),
                credential_id=outcome.credential_id,
            )

        ingestion = await asyncio.to_thread(self._ingestion.ingest, job, outcome.records)
        dispatch = await self._dispatcher.dispatch(job, ingestion.matched_listing_ids)

        return RunResult(
            config_id=job.config_id,
            success=True,
            records_found=len(outcome.records),
            new_listings=len(ingestion.new_listing_ids),
            notifications_created=dispatch.created,
            credential_id=outcome.credential_id,
        )

    async def resume_pending(self, max_age_seconds: int) -> DispatchResult:
        return await self._dispatcher.resume_pending(max_age_seconds)
