"""Unit tests for notification dispatch and push delivery."""

import asyncio
from pathlib import Path

import pytest
from sqlalchemy.orm import Session, sessionmaker

from listing_watcher.config import DispatchSettings
from listing_watcher.database.engine import build_engine
from listing_watcher.database.repository import (
    DeviceRepository,
    ListingRepository,
    NotificationRepository,
    SearchConfigRepository,
    ServiceRepository,
)
from listing_watcher.errors import ProviderDeliveryError
from listing_watcher.models.pydantic_models import (
    DevicePlatform,
    NotificationStatus,
    PushOutcome,
    PushPayload,
    PushResult,
    RawListing,
    SearchConfigCreate,
    SearchJob,
)
from listing_watcher.services.dispatch_service import NotificationDispatcher, build_payload
from listing_watcher.services.push import PushProvider

USER_ID = 7


class ScriptedProvider(PushProvider):
    """Returns queued results per token; ACK once the script runs out."""

    def __init__(self, scripts: dict[str, list] | None = None) -> None:
        self.scripts = scripts or {}
        self.calls: list[tuple[str, PushPayload]] = []

    async def send(self, device_token, platform, payload):
        self.calls.append((device_token, payload))
        script = self.scripts.get(device_token)
        if script:
            item = script.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        return PushResult(outcome=PushOutcome.ACK)


@pytest.fixture
def session_factory(tmp_path: Path) -> sessionmaker[Session]:
    engine = build_engine(f"sqlite:///{tmp_path / 'dispatch.db'}")
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def job(session_factory) -> SearchJob:
    with session_factory() as session:
        service = ServiceRepository(session).create_service("OLX.pl", "https://www.olx.pl", "olx")
        config = SearchConfigRepository(session).create_config(
            SearchConfigCreate(user_id=USER_ID, service_id=service.id, name="Rowery")
        )
        return SearchJob(
            config_id=config.id,
            user_id=USER_ID,
            service_id=service.id,
            service_name="OLX.pl",
            base_url="https://www.olx.pl",
            login_flow="olx",
            name="Rowery",
        )


@pytest.fixture
def listing_ids(session_factory, job: SearchJob) -> list[int]:
    ids = []
    with session_factory() as session:
        repo = ListingRepository(session)
        for n in (1, 2):
            listing, _ = repo.insert_if_absent(
                job.service_id,
                f"fp-{n}",
                RawListing(external_id=str(n), title=f"Rower {n}", price=100 * n, url=f"https://www.olx.pl/{n}"),
                search_config_id=job.config_id,
            )
            ids.append(listing.id)
    return ids


def register(session_factory, token: str) -> int:
    with session_factory() as session:
        return DeviceRepository(session).register_device(USER_ID, token, DevicePlatform.ANDROID).id


def notifications(session_factory):
    with session_factory() as session:
        return NotificationRepository(session).get_for_user(USER_ID)


def make_dispatcher(session_factory, provider) -> NotificationDispatcher:
    return NotificationDispatcher(
        session_factory, provider, DispatchSettings(max_attempts=3, retry_delay_seconds=0)
    )


class TestBuildPayload:
    def test_includes_title_price_and_link(self, session_factory, listing_ids) -> None:
        with session_factory() as session:
            listing = ListingRepository(session).get_listing(listing_ids[1])

        payload = build_payload(listing, "Rowery")

        assert payload.title == "New in Rowery"
        assert payload.body == "Rower 2 · 200 PLN"
        assert payload.data == {"listing_id": str(listing_ids[1]), "url": "https://www.olx.pl/2"}


class TestDispatch:
    """Tests for exactly-once creation and delivery status."""

    @pytest.mark.asyncio
    async def test_notifies_each_listing_once(self, session_factory, job, listing_ids) -> None:
        register(session_factory, "tok-a")
        provider = ScriptedProvider()
        dispatcher = make_dispatcher(session_factory, provider)

        first = await dispatcher.dispatch(job, listing_ids)
        second = await dispatcher.dispatch(job, listing_ids)

        assert first.created == 2
        assert first.sent == 2
        assert second.created == 0
        assert second.skipped_existing == 2
        assert len(provider.calls) == 2
        with session_factory() as session:
            repo = NotificationRepository(session)
            assert all(repo.count_for_pair(USER_ID, i) == 1 for i in listing_ids)

    @pytest.mark.asyncio
    async def test_nothing_to_dispatch(self, session_factory, job) -> None:
        result = await make_dispatcher(session_factory, ScriptedProvider()).dispatch(job, [])

        assert result.created == 0

    @pytest.mark.asyncio
    async def test_confirmed_delivery(self, session_factory, job, listing_ids) -> None:
        register(session_factory, "tok-a")
        provider = ScriptedProvider({"tok-a": [PushResult(outcome=PushOutcome.ACK, delivered=True)]})

        result = await make_dispatcher(session_factory, provider).dispatch(job, listing_ids[:1])

        assert result.delivered == 1
        (notification,) = notifications(session_factory)
        assert notification.status is NotificationStatus.DELIVERED
        assert notification.sent_at is not None
        assert notification.attempts == 1

    @pytest.mark.asyncio
    async def test_permanent_rejection_deactivates_device(self, session_factory, job, listing_ids) -> None:
        device_id = register(session_factory, "tok-dead")
        provider = ScriptedProvider(
            {"tok-dead": [PushResult(outcome=PushOutcome.PERMANENT, detail="unregistered")]}
        )

        result = await make_dispatcher(session_factory, provider).dispatch(job, listing_ids[:1])

        assert result.failed == 1
        assert result.devices_deactivated == 1
        with session_factory() as session:
            assert not DeviceRepository(session).get_device(device_id).is_active
        (notification,) = notifications(session_factory)
        assert notification.status is NotificationStatus.FAILED
        assert notification.last_error == "unregistered"

    @pytest.mark.asyncio
    async def test_provider_exception_is_classified(self, session_factory, job, listing_ids) -> None:
        register(session_factory, "tok-dead")
        provider = ScriptedProvider({"tok-dead": [ProviderDeliveryError("bad token", permanent=True)]})

        result = await make_dispatcher(session_factory, provider).dispatch(job, listing_ids[:1])

        assert result.devices_deactivated == 1

    @pytest.mark.asyncio
    async def test_transient_failures_are_retried(self, session_factory, job, listing_ids) -> None:
        register(session_factory, "tok-a")
        provider = ScriptedProvider(
            {"tok-a": [PushResult(outcome=PushOutcome.TRANSIENT, detail="503")]}
        )

        result = await make_dispatcher(session_factory, provider).dispatch(job, listing_ids[:1])

        assert result.sent == 1
        (notification,) = notifications(session_factory)
        assert notification.status is NotificationStatus.SENT
        assert notification.attempts == 2

    @pytest.mark.asyncio
    async def test_retries_are_bounded(self, session_factory, job, listing_ids) -> None:
        register(session_factory, "tok-a")
        transient = [PushResult(outcome=PushOutcome.TRANSIENT, detail="503") for _ in range(5)]
        provider = ScriptedProvider({"tok-a": transient})

        result = await make_dispatcher(session_factory, provider).dispatch(job, listing_ids[:1])

        assert result.failed == 1
        assert len(provider.calls) == 3
        (notification,) = notifications(session_factory)
        assert notification.status is NotificationStatus.FAILED
        assert notification.attempts == 3

    @pytest.mark.asyncio
    async def test_one_good_device_is_enough(self, session_factory, job, listing_ids) -> None:
        register(session_factory, "tok-dead")
        register(session_factory, "tok-ok")
        provider = ScriptedProvider({"tok-dead": [PushResult(outcome=PushOutcome.PERMANENT)]})

        result = await make_dispatcher(session_factory, provider).dispatch(job, listing_ids[:1])

        assert result.sent == 1
        assert result.devices_deactivated == 1

    @pytest.mark.asyncio
    async def test_crashing_provider_does_not_skip_other_devices(
        self, session_factory, job, listing_ids
    ) -> None:
        register(session_factory, "tok-bad")
        register(session_factory, "tok-ok")
        provider = ScriptedProvider({"tok-bad": [RuntimeError("sdk exploded") for _ in range(3)]})

        result = await make_dispatcher(session_factory, provider).dispatch(job, listing_ids[:1])

        tokens = [token for token, _ in provider.calls]
        assert tokens.count("tok-bad") == 3
        assert tokens.count("tok-ok") == 1
        assert result.sent == 1
        assert result.devices_deactivated == 0
        (notification,) = notifications(session_factory)
        assert notification.status is NotificationStatus.SENT
        assert "sdk exploded" in notification.last_error

    @pytest.mark.asyncio
    async def test_unexpected_provider_error_is_retried(self, session_factory, job, listing_ids) -> None:
        register(session_factory, "tok-a")
        provider = ScriptedProvider({"tok-a": [RuntimeError("connection reset")]})

        result = await make_dispatcher(session_factory, provider).dispatch(job, listing_ids[:1])

        assert result.sent == 1
        (notification,) = notifications(session_factory)
        assert notification.attempts == 2

    @pytest.mark.asyncio
    async def test_without_devices_stays_pending(self, session_factory, job, listing_ids) -> None:
        provider = ScriptedProvider()

        result = await make_dispatcher(session_factory, provider).dispatch(job, listing_ids)

        assert result.created == 2
        assert provider.calls == []
        assert all(n.status is NotificationStatus.PENDING for n in notifications(session_factory))


class TestResumePending:
    @pytest.mark.asyncio
    async def test_pending_notifications_are_sent_later(self, session_factory, job, listing_ids) -> None:
        provider = ScriptedProvider()
        dispatcher = make_dispatcher(session_factory, provider)
        await dispatcher.dispatch(job, listing_ids)
        register(session_factory, "tok-a")

        result = await dispatcher.resume_pending(3600)

        assert result.sent == 2
        assert len(provider.calls) == 2
        assert provider.calls[0][1].title == "New in Rowery"
        assert all(n.status is NotificationStatus.SENT for n in notifications(session_factory))

    @pytest.mark.asyncio
    async def test_read_notifications_are_not_resent(self, session_factory, job, listing_ids) -> None:
        provider = ScriptedProvider()
        dispatcher = make_dispatcher(session_factory, provider)
        await dispatcher.dispatch(job, listing_ids[:1])
        with session_factory() as session:
            NotificationRepository(session).mark_all_read(USER_ID)
        register(session_factory, "tok-a")

        await dispatcher.resume_pending(3600)

        assert provider.calls == []


class TestConcurrentDispatch:
    @pytest.mark.asyncio
    async def test_concurrent_dispatch_notifies_once(self, session_factory, job, listing_ids) -> None:
        register(session_factory, "tok-a")
        provider = ScriptedProvider()
        dispatcher = make_dispatcher(session_factory, provider)

        results = await asyncio.gather(
            dispatcher.dispatch(job, listing_ids), dispatcher.dispatch(job, listing_ids)
        )

        assert sum(r.created for r in results) == 2
        assert sum(r.skipped_existing for r in results) == 2
        assert len(provider.calls) == 2
        assert len(notifications(session_factory)) == 2
