"""Background scheduler for saved searches."""

import asyncio
import heapq
import itertools
import logging
import random
import time
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy.orm import Session, sessionmaker

from listing_watcher.config import SchedulerSettings
from listing_watcher.database.repository import SearchConfigRepository
from listing_watcher.errors import ConfigNotFoundError, ErrorKind
from listing_watcher.models.db_models import SearchConfig
from listing_watcher.models.pydantic_models import RunResult, SearchJob, ensure_utc, utc_now

if TYPE_CHECKING:
    from listing_watcher.services.credential_store import CredentialStore
    from listing_watcher.services.run_service import SearchRunner
    from listing_watcher.services.session_manager import AutomationSessionManager

logger = logging.getLogger(__name__)


def compute_next_run(
    last_run_at: datetime,
    interval_seconds: int,
    random_range_seconds: int,
    rng: random.Random | None = None,
) -> datetime:
    """Next run after a success: ``last_run_at + interval + uniform(0, random_range)``."""
    jitter = (rng or random).uniform(0, random_range_seconds) if random_range_seconds > 0 else 0.0
    return last_run_at + timedelta(seconds=interval_seconds + jitter)


def compute_backoff_delay(
    interval_seconds: int,
    failure_count: int,
    settings: SchedulerSettings,
    blocked: bool = False,
    previous_delay: float = 0.0,
) -> float:
    """Delay before retrying after ``failure_count`` consecutive failures.

    ``min(max_backoff, interval * 2 ** min(failure_count, exponent_cap))``,
    multiplied for anti-bot blocks before the cap applies. Never shorter
    than ``previous_delay`` (the delay of the failure before this one), so
    a streak of failures of mixed kinds never backs off less.
    """
    exponent = min(max(failure_count, 0), settings.backoff_exponent_cap)
    delay = interval_seconds * (2**exponent)
    if blocked:
        delay *= settings.blocked_backoff_multiplier
    return float(min(settings.max_backoff_seconds, max(delay, previous_delay)))


def previous_backoff(config: SearchConfig) -> float:
    """Delay the scheduler chose after the config's last failed run, 0 if none."""
    last_run_at = ensure_utc(config.last_run_at)
    next_run_at = ensure_utc(config.next_run_at)
    if config.consecutive_failure_count <= 0 or last_run_at is None or next_run_at is None:
        return 0.0
    return max((next_run_at - last_run_at).total_seconds(), 0.0)


def failure_weight(kind: ErrorKind, settings: SchedulerSettings) -> int:
    """How much one failure of this kind counts towards auto-disable."""
    if kind in (ErrorKind.CREDENTIAL, ErrorKind.BLOCKED):
        return settings.escalation_weight
    return 1


def job_from_config(config: SearchConfig) -> SearchJob:
    """Snapshot a config row and its service for one run."""
    service = config.service
    return SearchJob(
        config_id=config.id,
        user_id=config.user_id,
        service_id=config.service_id,
        service_name=service.name,
        base_url=service.base_url,
        login_flow=service.login_flow,
        name=config.name,
        keywords=list(config.keywords or []),
        price_min=config.price_min,
        price_max=config.price_max,
        location=config.location,
        custom_filters=dict(config.custom_filters or {}),
        interval_seconds=config.interval_seconds,
        random_range_seconds=config.random_range_seconds,
    )


class Scheduler:
    """Runs every enabled search config on its own cadence.

    The queue is a heap of ``(due_at, generation, config_id)``. Moving
    a config bumps its generation, so superseded heap entries are skipped
    when they surface instead of being removed in place. The heap is
    rebuilt from persisted ``next_run_at`` values on ``start()``; overdue
    configs are due at once but leave the queue at most ``batch_size`` per
    ``dispatch_interval_seconds``.

    Every run is an asyncio task bounded by a global semaphore. The
    per-service gate is applied by the session manager.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        runner: "SearchRunner",
        settings: SchedulerSettings | None = None,
        session_manager: "AutomationSessionManager | None" = None,
        credential_store: "CredentialStore | None" = None,
        clock: Callable[[], datetime] = utc_now,
        rng: random.Random | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._runner = runner
        self._settings = settings or SchedulerSettings()
        self._session_manager = session_manager
        self._credential_store = credential_store
        self._clock = clock
        self._rng = rng or random.Random()

        self._heap: list[tuple[datetime, int, int]] = []
        self._generations: dict[int, int] = {}
        self._counter = itertools.count()
        self._in_flight: dict[int, asyncio.Task[None]] = {}
        self._rerun: set[int] = set()
        # Monotonic time before which no further batch leaves the queue
        self._next_batch_at = 0.0
        self._semaphore = asyncio.Semaphore(self._settings.max_concurrent_runs)
        self._wake = asyncio.Event()
        self._stopping = asyncio.Event()
        self._loop_task: asyncio.Task[None] | None = None

    # ========== QUEUE ==========

    def _enqueue(self, config_id: int, due_at: datetime) -> None:
        generation = next(self._counter)
        self._generations[config_id] = generation
        heapq.heappush(self._heap, (due_at, generation, config_id))
        self._wake.set()

    def _discard(self, config_id: int) -> None:
        self._generations.pop(config_id, None)

    def _is_current(self, entry: tuple[datetime, int, int]) -> bool:
        _, generation, config_id = entry
        return self._generations.get(config_id) == generation

    def _peek_due_at(self) -> datetime | None:
        while self._heap and not self._is_current(self._heap[0]):
            heapq.heappop(self._heap)
        return self._heap[0][0] if self._heap else None

    def _pop_due(self, now: datetime, limit: int) -> list[int]:
        due: list[int] = []
        while len(due) < limit:
            due_at = self._peek_due_at()
            if due_at is None or due_at > now:
                break
            _, _, config_id = heapq.heappop(self._heap)
            del self._generations[config_id]
            due.append(config_id)
        return due

    def due_at(self, config_id: int) -> datetime | None:
        """When a queued config will next run, or None if it is not queued."""
        generation = self._generations.get(config_id)
        if generation is None:
            return None
        for due_at, queued_generation, queued_id in self._heap:
            if queued_id == config_id and queued_generation == generation:
                return due_at
        return None

    @property
    def queue_size(self) -> int:
        return len(self._generations)

    @property
    def in_flight(self) -> set[int]:
        return set(self._in_flight)

    # ========== LIFECYCLE ==========

    @property
    def is_alive(self) -> bool:
        return (
            self._loop_task is not None
            and not self._loop_task.done()
            and not self._stopping.is_set()
        )

    def health(self) -> dict[str, Any]:
        return {
            "alive": self.is_alive,
            "queued": self.queue_size,
            "in_flight": len(self._in_flight),
        }

    async def start(self) -> None:
        """Seed the queue from the database and start the loop."""
        if self.is_alive:
            return
        self._stopping.clear()

        schedule = await asyncio.to_thread(self._load_schedule)
        now = self._clock()
        for config_id, next_run_at in schedule:
            self._enqueue(config_id, next_run_at or now)
        logger.info("Scheduler starting with %d search configs", len(schedule))

        try:
            await self._runner.resume_pending(self._settings.resume_pending_window_seconds)
        except Exception:
            logger.exception("Resuming pending notifications failed")

        self._loop_task = asyncio.create_task(self._run_loop(), name="scheduler-loop")

    async def stop(self) -> None:
        """Cancel in-flight runs, wait for them to drain, close browser sessions.

        Persisted ``next_run_at`` values are left as they are.
        """
        self._stopping.set()
        self._wake.set()

        tasks = list(self._in_flight.values())
        for task in tasks:
            task.cancel()
        if self._loop_task is not None:
            tasks.append(self._loop_task)

        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=self._settings.drain_timeout_seconds)
            if pending:
                logger.warning(
                    "%d tasks still running after %.0fs drain timeout",
                    len(pending), self._settings.drain_timeout_seconds,
                )
        self._loop_task = None
        self._heap.clear()
        self._generations.clear()
        self._rerun.clear()
        self._next_batch_at = 0.0

        if self._session_manager is not None:
            await self._session_manager.close()
        logger.info("Scheduler stopped")

    async def _run_loop(self) -> None:
        while not self._stopping.is_set():
            self._wake.clear()
            try:
                if self._session_manager is not None:
                    await self._session_manager.sweep()
                if time.monotonic() >= self._next_batch_at:
                    if self._dispatch_due() >= self._settings.batch_size:
                        # Backlog may remain; drain it at the bounded rate
                        self._next_batch_at = time.monotonic() + self._settings.dispatch_interval_seconds
            except Exception:
                logger.exception("Scheduler tick failed")

            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self._sleep_seconds())
            except asyncio.TimeoutError:
                pass

    def _sleep_seconds(self) -> float:
        throttle = self._next_batch_at - time.monotonic()
        if throttle > 0:
            return throttle
        due_at = self._peek_due_at()
        if due_at is None:
            return self._settings.idle_poll_seconds
        wait = (due_at - self._clock()).total_seconds()
        return min(max(wait, 0.0), self._settings.idle_poll_seconds)

    def _dispatch_due(self) -> int:
        due = self._pop_due(self._clock(), self._settings.batch_size)
        for config_id in due:
            if config_id in self._in_flight:
                self._rerun.add(config_id)
                continue
            self._launch(config_id)
        return len(due)

    def _launch(self, config_id: int) -> None:
        task = asyncio.create_task(self._run_scheduled(config_id), name=f"search-config-{config_id}")
        self._in_flight[config_id] = task
        task.add_done_callback(lambda t: self._on_run_done(config_id, t))

    def _on_run_done(self, config_id: int, task: asyncio.Task[None]) -> None:
        if self._in_flight.get(config_id) is task:
            del self._in_flight[config_id]
        if config_id in self._rerun and not task.cancelled() and not self._stopping.is_set():
            self._rerun.discard(config_id)
            self._enqueue(config_id, self._clock())

    async def _run_scheduled(self, config_id: int) -> None:
        async with self._semaphore:
            if self._stopping.is_set():
                return
            try:
                job = await asyncio.to_thread(self._load_job, config_id, True)
                if job is None:
                    logger.info("Search config %d is no longer schedulable", config_id)
                    return
                await self._execute(job)
            except asyncio.CancelledError:
                logger.info("Run of search config %d cancelled", config_id)
                raise
            except Exception:
                logger.exception("Run of search config %d crashed", config_id)

    # ========== OPERATIONS ==========

    def schedule_now(self, config_id: int) -> None:
        """Make a config due immediately.

        A config that is running right now runs once more as soon as it
        completes. Its normal cadence resumes after that run.
        """
        if config_id in self._in_flight:
            self._rerun.add(config_id)
            logger.info("Search config %d is running; queued a rerun", config_id)
            return
        self._enqueue(config_id, self._clock())
        logger.info("Search config %d scheduled to run now", config_id)

    async def on_config_changed(self, config_id: int) -> datetime | None:
        """Re-place a created, edited, enabled or disabled config in the queue.

        Returns:
            The new next-run time, or None if the config left the queue.
        """
        next_run_at = await asyncio.to_thread(self._reschedule, config_id)
        if next_run_at is None:
            self._discard(config_id)
            self._rerun.discard(config_id)
            logger.info("Search config %d removed from the queue", config_id)
        elif config_id not in self._in_flight:
            self._enqueue(config_id, next_run_at)
            logger.info("Search config %d next runs at %s", config_id, next_run_at.isoformat())
        return next_run_at

    async def run_once(self, config_id: int) -> RunResult:
        """Run one config immediately and record the outcome, enabled or not.

        Raises:
            ConfigNotFoundError: If the config doesn't exist.
        """
        job = await asyncio.to_thread(self._load_job, config_id, False)
        if job is None:
            raise ConfigNotFoundError(config_id)
        return await self._execute(job)

    async def _execute(self, job: SearchJob) -> RunResult:
        started_at = self._clock()
        try:
            result = await self._runner.run(job)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Search config %d failed unexpectedly", job.config_id)
            result = RunResult(
                config_id=job.config_id,
                success=False,
                error_kind=ErrorKind.TRANSIENT.value,
                error_message=str(e),
            )

        try:
            next_run_at = await asyncio.to_thread(self._complete, job, result, started_at)
        except Exception:
            logger.exception("Could not record run of search config %d", job.config_id)
            next_run_at = started_at + timedelta(seconds=job.interval_seconds)

        if next_run_at is not None and self.is_alive:
            self._enqueue(job.config_id, next_run_at)
        return result

    # ========== PERSISTENCE (worker threads) ==========

    def _load_schedule(self) -> list[tuple[int, datetime | None]]:
        with self._session_factory() as session:
            configs = SearchConfigRepository(session).get_schedulable_configs()
            return [(config.id, ensure_utc(config.next_run_at)) for config in configs]

    def _load_job(self, config_id: int, schedulable_only: bool) -> SearchJob | None:
        with self._session_factory() as session:
            config = SearchConfigRepository(session).get_config(config_id)
            if config is None:
                return None
            if schedulable_only and not (config.enabled and config.service.is_active):
                return None
            return job_from_config(config)

    def _reschedule(self, config_id: int) -> datetime | None:
        with self._session_factory() as session:
            repo = SearchConfigRepository(session)
            config = repo.get_config(config_id)
            if config is None or not config.enabled or not config.service.is_active:
                return None

            last_run_at = ensure_utc(config.last_run_at)
            if last_run_at is None:
                next_run_at = self._clock()
            else:
                next_run_at = compute_next_run(
                    last_run_at, config.interval_seconds, config.random_range_seconds, self._rng
                )
            repo.set_next_run_at(config_id, next_run_at)
            return next_run_at

    def _complete(self, job: SearchJob, result: RunResult, started_at: datetime) -> datetime | None:
        """Persist a run outcome and return when the config runs next (None: not requeued)."""
        with self._session_factory() as session:
            repo = SearchConfigRepository(session)
            config = repo.get_config(job.config_id)
            if config is None:
                return None

            if result.success:
                next_run_at = None
                if config.enabled:
                    next_run_at = compute_next_run(
                        started_at, config.interval_seconds, config.random_range_seconds, self._rng
                    )
                repo.record_run(
                    config.id, last_run_at=started_at, next_run_at=next_run_at, failure_count=0
                )
                if result.credential_id is not None and self._credential_store is not None:
                    self._credential_store.reset_failures(result.credential_id)
                return next_run_at

            kind = ErrorKind(result.error_kind) if result.error_kind else ErrorKind.TRANSIENT
            failure_count = config.consecutive_failure_count + failure_weight(kind, self._settings)
            error = result.error_message or kind.value
            self._record_credential_failure(kind, result, error)

            if failure_count >= self._settings.failure_threshold:
                repo.record_run(
                    config.id,
                    last_run_at=started_at,
                    next_run_at=None,
                    failure_count=failure_count,
                    error=error,
                    disable=True,
                )
                logger.warning(
                    "Search config %d auto-disabled after %d weighted failures: %s",
                    config.id, failure_count, error,
                )
                return None

            delay = compute_backoff_delay(
                config.interval_seconds,
                failure_count,
                self._settings,
                blocked=kind is ErrorKind.BLOCKED,
                previous_delay=previous_backoff(config),
            )
            # A config disabled mid-run keeps no next run
            next_run_at = started_at + timedelta(seconds=delay) if config.enabled else None
            repo.record_run(
                config.id,
                last_run_at=started_at,
                next_run_at=next_run_at,
                failure_count=failure_count,
                error=error,
            )
            logger.info(
                "Search config %d failed (%s, count %d); retry in %.0fs",
                config.id, kind.value, failure_count, delay,
            )
            return next_run_at

    def _record_credential_failure(self, kind: ErrorKind, result: RunResult, error: str) -> None:
        if (
            kind is ErrorKind.CREDENTIAL
            and result.credential_id is not None
            and self._credential_store is not None
        ):
            self._credential_store.record_failure(
                result.credential_id, error, self._settings.failure_threshold
            )
