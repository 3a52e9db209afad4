"""Integration tests for repositories against a real SQLite database."""

from datetime import timedelta
from pathlib import Path

import pytest
from sqlalchemy import update
from sqlalchemy.orm import Session, sessionmaker

from listing_watcher.database.engine import build_engine
from listing_watcher.database.repository import (
    ListingRepository,
    NotificationRepository,
    SearchConfigRepository,
    ServiceRepository,
)
from listing_watcher.models.db_models import Notification, Service
from listing_watcher.models.pydantic_models import (
    NotificationStatus,
    RawListing,
    SearchConfigCreate,
    SearchConfigUpdate,
    utc_now,
)


@pytest.fixture
def session(tmp_path: Path):
    engine = build_engine(f"sqlite:///{tmp_path / 'repo.db'}")
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    with factory() as session:
        yield session


@pytest.fixture
def service_id(session: Session) -> int:
    return ServiceRepository(session).create_service("OLX.pl", "https://www.olx.pl", "olx").id


def make_listing(session: Session, service_id: int, n: int = 1) -> int:
    listing, _ = ListingRepository(session).insert_if_absent(
        service_id,
        f"fp-{n}",
        RawListing(external_id=str(n), title=f"Rower {n}", url=f"https://www.olx.pl/{n}"),
    )
    return listing.id


class TestSearchConfigRepository:
    """Scheduling-related queries and updates."""

    def test_schedulable_excludes_disabled_and_inactive_services(self, session: Session, service_id: int) -> None:
        repo = SearchConfigRepository(session)
        other = ServiceRepository(session).create_service("OTOMOTO.pl", "https://www.otomoto.pl", "otomoto")
        active = repo.create_config(SearchConfigCreate(user_id=1, service_id=service_id, name="a"))
        repo.create_config(SearchConfigCreate(user_id=1, service_id=service_id, name="b", enabled=False))
        repo.create_config(SearchConfigCreate(user_id=1, service_id=other.id, name="c"))
        session.execute(update(Service).where(Service.id == other.id).values(is_active=False))
        session.commit()

        assert [c.id for c in repo.get_schedulable_configs()] == [active.id]

    def test_record_run_disable(self, session: Session, service_id: int) -> None:
        repo = SearchConfigRepository(session)
        config = repo.create_config(SearchConfigCreate(user_id=1, service_id=service_id, name="a"))

        repo.record_run(
            config.id, last_run_at=utc_now(), next_run_at=None, failure_count=8, error="captcha", disable=True
        )
        session.expire_all()

        stored = repo.get_config(config.id)
        assert not stored.enabled
        assert stored.needs_attention
        assert stored.last_error == "captcha"

    def test_enabling_via_update_clears_failure_state(self, session: Session, service_id: int) -> None:
        repo = SearchConfigRepository(session)
        config = repo.create_config(SearchConfigCreate(user_id=1, service_id=service_id, name="a"))
        repo.record_run(
            config.id, last_run_at=utc_now(), next_run_at=None, failure_count=8, error="captcha", disable=True
        )
        session.expire_all()

        updated = repo.update_config(config.id, SearchConfigUpdate(enabled=True))

        assert updated.enabled
        assert updated.consecutive_failure_count == 0
        assert not updated.needs_attention

    def test_update_missing_returns_none(self, session: Session) -> None:
        assert SearchConfigRepository(session).update_config(9, SearchConfigUpdate(name="x")) is None


class TestListingRepository:
    def test_external_id_conflict_returns_stored_row(self, session: Session, service_id: int) -> None:
        repo = ListingRepository(session)
        first, created = repo.insert_if_absent(
            service_id, "fp-a", RawListing(external_id="77", title="A", url="https://www.olx.pl/a")
        )

        # Same external id under a different fingerprint hits the (service, external_id) constraint
        second, created_again = repo.insert_if_absent(
            service_id, "fp-b", RawListing(external_id="77", title="A", url="https://www.olx.pl/a")
        )

        assert created and not created_again
        assert second.id == first.id
        assert repo.count_listings(service_id) == 1

    def test_moderation(self, session: Session, service_id: int) -> None:
        listing_id = make_listing(session, service_id)
        repo = ListingRepository(session)

        listing = repo.set_moderation(listing_id, is_spam=True)

        assert listing.is_spam
        assert not listing.is_success
        assert repo.set_moderation(999, is_spam=True) is None


class TestNotificationRepository:
    """Exactly-once creation and status updates."""

    def test_second_create_for_pair_returns_none(self, session: Session, service_id: int) -> None:
        listing_id = make_listing(session, service_id)
        repo = NotificationRepository(session)

        assert repo.create_if_absent(1, listing_id, {}) is not None
        assert repo.create_if_absent(1, listing_id, {}) is None
        assert repo.create_if_absent(2, listing_id, {}) is not None
        assert repo.count_for_pair(1, listing_id) == 1

    def test_delivery_does_not_overwrite_read(self, session: Session, service_id: int) -> None:
        listing_id = make_listing(session, service_id)
        repo = NotificationRepository(session)
        notification = repo.create_if_absent(1, listing_id, {})
        repo.mark_read(notification.id, 1)

        repo.record_delivery(notification.id, NotificationStatus.SENT, attempts=1)
        session.expire_all()

        assert repo.get_notification(notification.id).status is NotificationStatus.READ

    def test_pending_window(self, session: Session, service_id: int) -> None:
        repo = NotificationRepository(session)
        recent = repo.create_if_absent(1, make_listing(session, service_id, 1), {})
        old = repo.create_if_absent(1, make_listing(session, service_id, 2), {})
        session.execute(
            update(Notification)
            .where(Notification.id == old.id)
            .values(created_at=utc_now() - timedelta(hours=3))
        )
        session.commit()

        pending = repo.get_pending(utc_now() - timedelta(hours=1))

        assert [n.id for n in pending] == [recent.id]
