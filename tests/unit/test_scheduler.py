"""Unit tests for scheduling math and the Scheduler."""

import asyncio
import random
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.orm import Session, sessionmaker

from listing_watcher.config import SchedulerSettings
from listing_watcher.database.engine import build_engine
from listing_watcher.database.repository import SearchConfigRepository, ServiceRepository
from listing_watcher.errors import ConfigNotFoundError, ErrorKind
from listing_watcher.models.pydantic_models import RunResult, SearchConfigCreate, ensure_utc
from listing_watcher.services.scheduler import (
    Scheduler,
    compute_backoff_delay,
    compute_next_run,
    failure_weight,
)

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class TestComputeNextRun:
    """Tests for cadence with jitter."""

    def test_jitter_stays_in_range(self) -> None:
        rng = random.Random(7)

        for _ in range(200):
            next_run = compute_next_run(T0, 60, 15, rng)
            assert T0 + timedelta(seconds=60) <= next_run <= T0 + timedelta(seconds=75)

    def test_zero_range_is_exact(self) -> None:
        assert compute_next_run(T0, 300, 0) == T0 + timedelta(seconds=300)


class TestComputeBackoffDelay:
    """Tests for failure backoff."""

    def test_grows_with_failures(self) -> None:
        settings = SchedulerSettings()
        delays = [compute_backoff_delay(300, n, settings) for n in range(10)]

        assert delays[0] == 300
        assert delays[1] == 600
        assert delays == sorted(delays)

    def test_capped_by_max_backoff(self) -> None:
        settings = SchedulerSettings(max_backoff_seconds=3600)

        assert compute_backoff_delay(300, 20, settings) == 3600

    def test_exponent_cap(self) -> None:
        settings = SchedulerSettings(backoff_exponent_cap=2, max_backoff_seconds=10**6)

        assert compute_backoff_delay(60, 10, settings) == 240

    def test_blocked_multiplier(self) -> None:
        settings = SchedulerSettings(blocked_backoff_multiplier=3)

        assert compute_backoff_delay(300, 1, settings, blocked=True) == 1800

    def test_never_shorter_than_previous_delay(self) -> None:
        settings = SchedulerSettings()

        # A blocked failure at the exponent cap took 60 * 2**6 * 2
        assert compute_backoff_delay(60, 7, settings, previous_delay=7680) == 7680

    def test_previous_delay_still_capped(self) -> None:
        settings = SchedulerSettings(max_backoff_seconds=3600)

        assert compute_backoff_delay(60, 1, settings, previous_delay=10**6) == 3600

    def test_escalated_kinds_weigh_more(self) -> None:
        settings = SchedulerSettings(escalation_weight=3)

        assert failure_weight(ErrorKind.TRANSIENT, settings) == 1
        assert failure_weight(ErrorKind.PARSE, settings) == 1
        assert failure_weight(ErrorKind.CREDENTIAL, settings) == 3
        assert failure_weight(ErrorKind.BLOCKED, settings) == 3


# ========== SCHEDULER ==========


@pytest.fixture
def session_factory(tmp_path: Path) -> sessionmaker[Session]:
    engine = build_engine(f"sqlite:///{tmp_path / 'scheduler.db'}")
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def create_config(session_factory: sessionmaker[Session], **overrides) -> int:
    with session_factory() as session:
        services = ServiceRepository(session)
        service = services.get_service_by_name("OLX.pl") or services.create_service(
            "OLX.pl", "https://www.olx.pl", "olx"
        )
        data = {
            "user_id": 1,
            "service_id": service.id,
            "name": "Rowery",
            "keywords": ["rower"],
            "interval_seconds": 300,
            "random_range_seconds": 0,
        }
        data.update(overrides)
        return SearchConfigRepository(session).create_config(SearchConfigCreate(**data)).id


def load_config(session_factory: sessionmaker[Session], config_id: int):
    with session_factory() as session:
        return SearchConfigRepository(session).get_config(config_id)


class FakeRunner:
    """Stand-in for SearchRunner that returns canned results."""

    def __init__(self, result: RunResult | None = None) -> None:
        self.result = result
        self.jobs = []
        self.started: list[float] = []
        self.running = 0
        self.peak_running = 0
        self.release: asyncio.Event | None = None
        self.resume_pending = AsyncMock()

    async def run(self, job):
        self.jobs.append(job)
        self.started.append(time.monotonic())
        self.running += 1
        self.peak_running = max(self.peak_running, self.running)
        try:
            if self.release is not None:
                await self.release.wait()
            return self.result or RunResult(config_id=job.config_id, success=True)
        finally:
            self.running -= 1


def make_scheduler(session_factory, runner, settings=None, clock=lambda: T0, **kwargs) -> Scheduler:
    return Scheduler(
        session_factory,
        runner,
        settings or SchedulerSettings(),
        clock=clock,
        rng=random.Random(1),
        **kwargs,
    )


async def wait_until(predicate, timeout: float = 2.0) -> None:
    async def poll() -> None:
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout)


class TestRunOnce:
    """Tests for recording run outcomes."""

    @pytest.mark.asyncio
    async def test_success_schedules_next_run(self, session_factory) -> None:
        config_id = create_config(session_factory, random_range_seconds=15, interval_seconds=60)
        scheduler = make_scheduler(session_factory, FakeRunner())

        result = await scheduler.run_once(config_id)

        assert result.success
        config = load_config(session_factory, config_id)
        assert ensure_utc(config.last_run_at) == T0
        next_run = ensure_utc(config.next_run_at)
        assert T0 + timedelta(seconds=60) <= next_run <= T0 + timedelta(seconds=75)
        assert config.consecutive_failure_count == 0
        assert config.last_error is None

    @pytest.mark.asyncio
    async def test_transient_failure_backs_off(self, session_factory) -> None:
        config_id = create_config(session_factory)
        runner = FakeRunner(
            RunResult(config_id=config_id, success=False, error_kind="transient", error_message="timeout")
        )
        scheduler = make_scheduler(session_factory, runner)

        await scheduler.run_once(config_id)

        config = load_config(session_factory, config_id)
        assert config.consecutive_failure_count == 1
        assert config.last_error == "timeout"
        assert ensure_utc(config.next_run_at) == T0 + timedelta(seconds=600)
        assert config.enabled

    @pytest.mark.asyncio
    async def test_blocked_failure_escalates(self, session_factory) -> None:
        config_id = create_config(session_factory)
        runner = FakeRunner(RunResult(config_id=config_id, success=False, error_kind="blocked"))
        scheduler = make_scheduler(session_factory, runner)

        await scheduler.run_once(config_id)

        config = load_config(session_factory, config_id)
        assert config.consecutive_failure_count == 2
        # 300 * 2**2 * blocked multiplier 2
        assert ensure_utc(config.next_run_at) == T0 + timedelta(seconds=2400)
        assert config.last_error == "blocked"

    @pytest.mark.asyncio
    async def test_mixed_failure_kinds_never_back_off_less(self, session_factory) -> None:
        config_id = create_config(session_factory, interval_seconds=60)
        with session_factory() as session:
            SearchConfigRepository(session).record_run(
                config_id, last_run_at=T0 - timedelta(seconds=960), next_run_at=T0, failure_count=4
            )
        runner = FakeRunner()
        scheduler = make_scheduler(session_factory, runner, SchedulerSettings(failure_threshold=20))

        delays = []
        for kind in ("blocked", "transient", "parse"):
            runner.result = RunResult(config_id=config_id, success=False, error_kind=kind)
            await scheduler.run_once(config_id)
            config = load_config(session_factory, config_id)
            delays.append((ensure_utc(config.next_run_at) - ensure_utc(config.last_run_at)).total_seconds())

        assert delays == [7680.0, 7680.0, 7680.0]
        assert load_config(session_factory, config_id).consecutive_failure_count == 8

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "outcome",
        [{"success": True}, {"success": False, "error_kind": "transient"}],
        ids=["success", "failure"],
    )
    async def test_config_disabled_mid_run_keeps_no_next_run(self, session_factory, outcome) -> None:
        config_id = create_config(session_factory)
        runner = FakeRunner(RunResult(config_id=config_id, **outcome))
        runner.release = asyncio.Event()
        scheduler = make_scheduler(session_factory, runner)

        run = asyncio.create_task(scheduler.run_once(config_id))
        await wait_until(lambda: len(runner.jobs) == 1)
        with session_factory() as session:
            SearchConfigRepository(session).set_enabled(config_id, False)
        runner.release.set()
        await run

        config = load_config(session_factory, config_id)
        assert ensure_utc(config.last_run_at) == T0
        assert config.next_run_at is None
        assert not config.enabled

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self, session_factory) -> None:
        config_id = create_config(session_factory)
        with session_factory() as session:
            SearchConfigRepository(session).record_run(
                config_id, last_run_at=T0, next_run_at=T0, failure_count=3, error="timeout"
            )
        scheduler = make_scheduler(session_factory, FakeRunner())

        await scheduler.run_once(config_id)

        config = load_config(session_factory, config_id)
        assert config.consecutive_failure_count == 0
        assert config.last_error is None

    @pytest.mark.asyncio
    async def test_threshold_auto_disables(self, session_factory) -> None:
        config_id = create_config(session_factory)
        with session_factory() as session:
            SearchConfigRepository(session).record_run(
                config_id, last_run_at=T0, next_run_at=T0, failure_count=2
            )
        runner = FakeRunner(RunResult(config_id=config_id, success=False, error_kind="parse"))
        scheduler = make_scheduler(session_factory, runner, SchedulerSettings(failure_threshold=3))

        await scheduler.run_once(config_id)

        config = load_config(session_factory, config_id)
        assert not config.enabled
        assert config.needs_attention
        assert config.next_run_at is None
        assert config.consecutive_failure_count == 3

    @pytest.mark.asyncio
    async def test_credential_failures_reach_credential_store(self, session_factory) -> None:
        config_id = create_config(session_factory)
        store = MagicMock()
        runner = FakeRunner(
            RunResult(
                config_id=config_id,
                success=False,
                error_kind="credential",
                error_message="login rejected",
                credential_id=5,
            )
        )
        scheduler = make_scheduler(session_factory, runner, credential_store=store)

        await scheduler.run_once(config_id)

        store.record_failure.assert_called_once_with(5, "login rejected", 8)

    @pytest.mark.asyncio
    async def test_success_resets_credential_failures(self, session_factory) -> None:
        config_id = create_config(session_factory)
        store = MagicMock()
        runner = FakeRunner(RunResult(config_id=config_id, success=True, credential_id=5))
        scheduler = make_scheduler(session_factory, runner, credential_store=store)

        await scheduler.run_once(config_id)

        store.reset_failures.assert_called_once_with(5)

    @pytest.mark.asyncio
    async def test_runner_crash_counts_as_transient(self, session_factory) -> None:
        config_id = create_config(session_factory)
        runner = FakeRunner()
        runner.run = AsyncMock(side_effect=RuntimeError("boom"))
        scheduler = make_scheduler(session_factory, runner)

        result = await scheduler.run_once(config_id)

        assert not result.success
        assert result.error_kind == "transient"
        assert load_config(session_factory, config_id).consecutive_failure_count == 1

    @pytest.mark.asyncio
    async def test_missing_config(self, session_factory) -> None:
        scheduler = make_scheduler(session_factory, FakeRunner())

        with pytest.raises(ConfigNotFoundError):
            await scheduler.run_once(999)


class TestQueueOperations:
    """Tests for schedule_now and on_config_changed."""

    @pytest.mark.asyncio
    async def test_schedule_now_queues_at_current_time(self, session_factory) -> None:
        scheduler = make_scheduler(session_factory, FakeRunner())

        scheduler.schedule_now(3)

        assert scheduler.due_at(3) == T0
        assert scheduler.queue_size == 1

    @pytest.mark.asyncio
    async def test_requeue_supersedes_previous_entry(self, session_factory) -> None:
        scheduler = make_scheduler(session_factory, FakeRunner())
        config_id = create_config(session_factory)

        await scheduler.on_config_changed(config_id)
        scheduler.schedule_now(config_id)

        assert scheduler.queue_size == 1

    @pytest.mark.asyncio
    async def test_new_config_is_due_now(self, session_factory) -> None:
        config_id = create_config(session_factory)
        scheduler = make_scheduler(session_factory, FakeRunner())

        next_run = await scheduler.on_config_changed(config_id)

        assert next_run == T0
        assert scheduler.due_at(config_id) == T0
        assert ensure_utc(load_config(session_factory, config_id).next_run_at) == T0

    @pytest.mark.asyncio
    async def test_edited_config_uses_last_run(self, session_factory) -> None:
        config_id = create_config(session_factory, interval_seconds=120)
        last_run = T0 - timedelta(seconds=30)
        with session_factory() as session:
            SearchConfigRepository(session).record_run(
                config_id, last_run_at=last_run, next_run_at=None, failure_count=0
            )
        scheduler = make_scheduler(session_factory, FakeRunner())

        next_run = await scheduler.on_config_changed(config_id)

        assert next_run == last_run + timedelta(seconds=120)

    @pytest.mark.asyncio
    async def test_disabled_config_leaves_queue(self, session_factory) -> None:
        config_id = create_config(session_factory)
        scheduler = make_scheduler(session_factory, FakeRunner())
        scheduler.schedule_now(config_id)
        with session_factory() as session:
            SearchConfigRepository(session).set_enabled(config_id, False)

        assert await scheduler.on_config_changed(config_id) is None
        assert scheduler.due_at(config_id) is None
        assert scheduler.queue_size == 0


class TestLoop:
    """Tests for the running scheduler loop."""

    @pytest.mark.asyncio
    async def test_runs_due_configs_and_requeues(self, session_factory) -> None:
        enabled_id = create_config(session_factory)
        disabled_id = create_config(session_factory, enabled=False)
        runner = FakeRunner()
        session_manager = MagicMock()
        session_manager.sweep = AsyncMock(return_value=0)
        session_manager.close = AsyncMock()
        scheduler = Scheduler(session_factory, runner, session_manager=session_manager)

        await scheduler.start()
        try:
            await wait_until(
                lambda: len(runner.jobs) == 1
                and not scheduler.in_flight
                and scheduler.due_at(enabled_id) is not None
            )
        finally:
            await scheduler.stop()

        assert [job.config_id for job in runner.jobs] == [enabled_id]
        assert disabled_id not in [job.config_id for job in runner.jobs]
        runner.resume_pending.assert_awaited_once_with(3600)
        session_manager.close.assert_awaited_once()
        assert not scheduler.is_alive

    @pytest.mark.asyncio
    async def test_run_now_while_running_reruns_after(self, session_factory) -> None:
        config_id = create_config(session_factory)
        runner = FakeRunner()
        runner.release = asyncio.Event()
        scheduler = Scheduler(session_factory, runner)

        await scheduler.start()
        try:
            await wait_until(lambda: config_id in scheduler.in_flight)
            scheduler.schedule_now(config_id)
            assert scheduler.due_at(config_id) is None

            runner.release.set()
            await wait_until(lambda: len(runner.jobs) == 2)
        finally:
            await scheduler.stop()

    @pytest.mark.asyncio
    async def test_backlog_drains_in_bounded_batches(self, session_factory) -> None:
        config_ids = [create_config(session_factory, name=f"Rowery {n}") for n in range(5)]
        runner = FakeRunner()
        settings = SchedulerSettings(batch_size=2, dispatch_interval_seconds=0.3)
        scheduler = make_scheduler(session_factory, runner, settings)

        await scheduler.start()
        try:
            await wait_until(lambda: len(runner.jobs) == 5, timeout=5.0)
        finally:
            await scheduler.stop()

        assert sorted(job.config_id for job in runner.jobs) == config_ids
        started = sorted(runner.started)
        # Batches of two leave the queue at least dispatch_interval apart
        assert started[2] - started[1] >= 0.2
        assert started[4] - started[3] >= 0.2

    @pytest.mark.asyncio
    async def test_stop_cancels_blocked_run_and_keeps_next_run(self, session_factory) -> None:
        config_id = create_config(session_factory)
        overdue = T0 - timedelta(seconds=60)
        with session_factory() as session:
            SearchConfigRepository(session).set_next_run_at(config_id, overdue)
        runner = FakeRunner()
        runner.release = asyncio.Event()
        scheduler = make_scheduler(session_factory, runner, SchedulerSettings(drain_timeout_seconds=2.0))

        await scheduler.start()
        await wait_until(lambda: len(runner.jobs) == 1)
        stop_started = time.monotonic()
        await scheduler.stop()

        assert time.monotonic() - stop_started < 2.0
        assert not scheduler.in_flight
        assert runner.running == 0
        config = load_config(session_factory, config_id)
        assert ensure_utc(config.next_run_at) == overdue
        assert config.last_run_at is None

    @pytest.mark.asyncio
    async def test_global_concurrency_cap(self, session_factory) -> None:
        for n in range(4):
            create_config(session_factory, name=f"Rowery {n}")
        runner = FakeRunner()
        runner.release = asyncio.Event()
        scheduler = make_scheduler(session_factory, runner, SchedulerSettings(max_concurrent_runs=2))

        await scheduler.start()
        try:
            await wait_until(lambda: len(runner.jobs) == 2)
            await asyncio.sleep(0.1)
            assert len(runner.jobs) == 2
            assert len(scheduler.in_flight) == 4

            runner.release.set()
            await wait_until(lambda: len(runner.jobs) == 4)
        finally:
            await scheduler.stop()

        assert runner.peak_running == 2

    @pytest.mark.asyncio
    async def test_stop_forgets_queued_reruns(self, session_factory) -> None:
        config_id = create_config(session_factory)
        runner = FakeRunner()
        runner.release = asyncio.Event()
        scheduler = make_scheduler(session_factory, runner)

        await scheduler.start()
        await wait_until(lambda: config_id in scheduler.in_flight and len(runner.jobs) == 1)
        scheduler.schedule_now(config_id)
        await scheduler.stop()

        assert scheduler.queue_size == 0
        assert scheduler.due_at(config_id) is None

        runner.release.set()
        await scheduler.start()
        try:
            await wait_until(
                lambda: len(runner.jobs) == 2
                and not scheduler.in_flight
                and scheduler.due_at(config_id) is not None
            )
            await asyncio.sleep(0.1)
        finally:
            await scheduler.stop()

        # Restart ran the config once; the rerun from before stop() was dropped
        assert len(runner.jobs) == 2

    @pytest.mark.asyncio
    async def test_health(self, session_factory) -> None:
        scheduler = Scheduler(session_factory, FakeRunner())

        assert scheduler.health() == {"alive": False, "queued": 0, "in_flight": 0}

        await scheduler.start()
        try:
            assert scheduler.health()["alive"] is True
        finally:
            await scheduler.stop()

    @pytest.mark.asyncio
    async def test_stop_without_start_closes_sessions(self, session_factory) -> None:
        session_manager = MagicMock()
        session_manager.close = AsyncMock()
        scheduler = Scheduler(session_factory, FakeRunner(), session_manager=session_manager)

        await scheduler.stop()

        session_manager.close.assert_awaited_once()
