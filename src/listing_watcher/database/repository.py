"""Repository layer for database operations."""

import functools
from collections.abc import Callable
from datetime import datetime
from typing import Any, TypeVar

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session
from tenacity import (
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from typing_extensions import ParamSpec

from listing_watcher.models.db_models import (
    Device,
    Listing,
    Notification,
    SearchConfig,
    Service,
    ServiceCredential,
)
from listing_watcher.models.pydantic_models import (
    DevicePlatform,
    NotificationStatus,
    RawListing,
    SearchConfigCreate,
    SearchConfigUpdate,
    utc_now,
)

P = ParamSpec("P")
R = TypeVar("R")

# Retry configuration for database operations
DB_RETRY_MAX_ATTEMPTS = 5
DB_RETRY_WAIT_MIN = 1  # seconds
DB_RETRY_WAIT_MAX = 8  # seconds
DB_RETRY_WAIT_MULTIPLIER = 2


def with_db_retry(func: Callable[P, R]) -> Callable[P, R]:
    """Retry a repository method on database lock errors.

    The repository session is rolled back before every retry so the
    next attempt starts from a clean transaction.
    """

    @functools.wraps(func)
    def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
        for attempt in Retrying(
            retry=retry_if_exception_type(OperationalError),
            stop=stop_after_attempt(DB_RETRY_MAX_ATTEMPTS),
            wait=wait_exponential(
                multiplier=DB_RETRY_WAIT_MULTIPLIER,
                min=DB_RETRY_WAIT_MIN,
                max=DB_RETRY_WAIT_MAX,
            ),
            reraise=True,
        ):
            with attempt:
                try:
                    return func(*args, **kwargs)
                except OperationalError:
                    session = getattr(args[0], "_session", None) if args else None
                    if session is not None:
                        session.rollback()
                    raise
        raise RuntimeError("Retry logic failed unexpectedly")

    return wrapper


class ServiceRepository:
    """Marketplace definitions."""

    def __init__(self, session: Session) -> None:
        self._session = session

    @with_db_retry
    def create_service(self, name: str, base_url: str, login_flow: str) -> Service:
        service = Service(name=name, base_url=base_url, login_flow=login_flow)
        self._session.add(service)
        self._session.commit()
        return service

    def get_service(self, service_id: int) -> Service | None:
        return self._session.get(Service, service_id)

    def get_service_by_name(self, name: str) -> Service | None:
        return self._session.scalars(select(Service).where(Service.name == name)).first()

    def list_services(self) -> list[Service]:
        return list(self._session.scalars(select(Service).order_by(Service.id)))


class CredentialRepository:
    """Encrypted credential rows. Encryption happens in the credential store."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def get_credential(self, user_id: int, service_id: int) -> ServiceCredential | None:
        return self._session.scalars(
            select(ServiceCredential).where(
                ServiceCredential.user_id == user_id,
                ServiceCredential.service_id == service_id,
            )
        ).first()

    @with_db_retry
    def upsert_credential(
        self,
        user_id: int,
        service_id: int,
        username_encrypted: str,
        password_encrypted: str,
    ) -> ServiceCredential:
        """Create or replace the credential; a replaced credential is valid again."""
        credential = self.get_credential(user_id, service_id)
        if credential is None:
            credential = ServiceCredential(
                user_id=user_id,
                service_id=service_id,
                username_encrypted=username_encrypted,
                password_encrypted=password_encrypted,
            )
            self._session.add(credential)
        else:
            credential.username_encrypted = username_encrypted
            credential.password_encrypted = password_encrypted
            credential.is_valid = True
            credential.failure_count = 0
            credential.last_error = None
        self._session.commit()
        return credential

    @with_db_retry
    def record_failure(self, credential_id: int, error: str) -> int:
        """Increment the login failure counter. Returns the new count."""
        credential = self._session.get(ServiceCredential, credential_id)
        if credential is None:
            return 0
        credential.failure_count += 1
        credential.last_error = error
        self._session.commit()
        return credential.failure_count

    @with_db_retry
    def reset_failures(self, credential_id: int) -> None:
        self._session.execute(
            update(ServiceCredential)
            .where(ServiceCredential.id == credential_id, ServiceCredential.failure_count > 0)
            .values(failure_count=0, last_error=None)
        )
        self._session.commit()

    @with_db_retry
    def invalidate(self, credential_id: int, reason: str) -> None:
        self._session.execute(
            update(ServiceCredential)
            .where(ServiceCredential.id == credential_id)
            .values(is_valid=False, last_error=reason)
        )
        self._session.commit()


class SearchConfigRepository:
    """Saved searches. Scheduling columns are written only by the scheduler."""

    def __init__(self, session: Session) -> None:
        self._session = session

    @with_db_retry
    def create_config(self, data: SearchConfigCreate) -> SearchConfig:
        config = SearchConfig(**data.model_dump())
        self._session.add(config)
        self._session.commit()
        return config

    def get_config(self, config_id: int) -> SearchConfig | None:
        return self._session.get(SearchConfig, config_id)

    def get_configs(self, user_id: int | None = None, enabled_only: bool = False) -> list[SearchConfig]:
        query = select(SearchConfig).order_by(SearchConfig.id)
        if user_id is not None:
            query = query.where(SearchConfig.user_id == user_id)
        if enabled_only:
            query = query.where(SearchConfig.enabled.is_(True))
        return list(self._session.scalars(query))

    def get_schedulable_configs(self) -> list[SearchConfig]:
        """Enabled configs whose service is active."""
        query = (
            select(SearchConfig)
            .join(Service, Service.id == SearchConfig.service_id)
            .where(SearchConfig.enabled.is_(True), Service.is_active.is_(True))
            .order_by(SearchConfig.id)
        )
        return list(self._session.scalars(query))

    @with_db_retry
    def update_config(self, config_id: int, data: SearchConfigUpdate) -> SearchConfig | None:
        """Apply a user edit. Re-enabling clears the attention flag."""
        config = self.get_config(config_id)
        if config is None:
            return None

        changes = data.model_dump(exclude_unset=True)
        price_min = changes.get("price_min", config.price_min)
        price_max = changes.get("price_max", config.price_max)
        if price_min is not None and price_max is not None and price_min > price_max:
            raise ValueError("price_min must not exceed price_max")

        for field, value in changes.items():
            setattr(config, field, value)
        if changes.get("enabled"):
            self._clear_failure_state(config)
        self._session.commit()
        return config

    @with_db_retry
    def set_enabled(self, config_id: int, enabled: bool) -> SearchConfig | None:
        config = self.get_config(config_id)
        if config is None:
            return None
        config.enabled = enabled
        if enabled:
            self._clear_failure_state(config)
        self._session.commit()
        return config

    @staticmethod
    def _clear_failure_state(config: SearchConfig) -> None:
        config.needs_attention = False
        config.consecutive_failure_count = 0
        config.last_error = None

    @with_db_retry
    def set_next_run_at(self, config_id: int, next_run_at: datetime | None) -> None:
        self._session.execute(
            update(SearchConfig)
            .where(SearchConfig.id == config_id)
            .values(next_run_at=next_run_at)
        )
        self._session.commit()

    @with_db_retry
    def record_run(
        self,
        config_id: int,
        *,
        last_run_at: datetime,
        next_run_at: datetime | None,
        failure_count: int,
        error: str | None = None,
        disable: bool = False,
    ) -> None:
        """Persist the outcome of one run.

        Args:
            config_id: Config that ran.
            last_run_at: When the run started.
            next_run_at: Next scheduled run (None when disabled).
            failure_count: New consecutive failure count.
            error: Last error message, None on success.
            disable: Auto-disable and flag the config for user attention.
        """
        values: dict[str, Any] = {
            "last_run_at": last_run_at,
            "next_run_at": next_run_at,
            "consecutive_failure_count": failure_count,
            "last_error": error,
        }
        if disable:
            values["enabled"] = False
            values["needs_attention"] = True
        self._session.execute(
            update(SearchConfig).where(SearchConfig.id == config_id).values(**values)
        )
        self._session.commit()


class ListingRepository:
    """Append-only listing store with fingerprint deduplication."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def get_listing(self, listing_id: int) -> Listing | None:
        return self._session.get(Listing, listing_id)

    def get_by_fingerprint(self, fingerprint: str) -> Listing | None:
        return self._session.scalars(
            select(Listing).where(Listing.fingerprint == fingerprint)
        ).first()

    def get_by_external_id(self, service_id: int, external_id: str) -> Listing | None:
        return self._session.scalars(
            select(Listing).where(
                Listing.service_id == service_id, Listing.external_id == external_id
            )
        ).first()

    @with_db_retry
    def insert_if_absent(
        self,
        service_id: int,
        fingerprint: str,
        record: RawListing,
        search_config_id: int | None = None,
    ) -> tuple[Listing, bool]:
        """Insert a listing unless its fingerprint or external id already exists.

        The unique constraints decide the winner when two runs insert the
        same listing concurrently; the loser re-reads the stored row.

        Returns:
            Tuple of (listing, created).
        """
        existing = self.get_by_fingerprint(fingerprint)
        if existing is not None:
            return existing, False

        listing = Listing(
            service_id=service_id,
            external_id=record.external_id,
            fingerprint=fingerprint,
            first_search_config_id=search_config_id,
            title=record.title,
            price=record.price,
            currency=record.currency,
            url=record.url,
            location=record.location,
            phone=record.phone,
            image_urls=list(record.image_urls),
            first_seen_at=utc_now(),
        )
        self._session.add(listing)
        try:
            self._session.commit()
        except IntegrityError:
            self._session.rollback()
            existing = self.get_by_fingerprint(fingerprint)
            if existing is None and record.external_id:
                existing = self.get_by_external_id(service_id, record.external_id)
            if existing is None:
                raise
            return existing, False

        return listing, True

    def count_listings(self, service_id: int | None = None) -> int:
        query = select(func.count(Listing.id))
        if service_id is not None:
            query = query.where(Listing.service_id == service_id)
        return self._session.scalar(query) or 0

    def get_listings_for_user(
        self,
        user_id: int,
        include_spam: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Listing]:
        """Listings the user was notified about, newest first."""
        query = (
            select(Listing)
            .join(Notification, Notification.listing_id == Listing.id)
            .where(Notification.user_id == user_id)
            .order_by(Listing.first_seen_at.desc(), Listing.id.desc())
            .limit(limit)
            .offset(offset)
        )
        if not include_spam:
            query = query.where(Listing.is_spam.is_(False))
        return list(self._session.scalars(query))

    @with_db_retry
    def set_moderation(
        self,
        listing_id: int,
        is_spam: bool | None = None,
        is_success: bool | None = None,
    ) -> Listing | None:
        """Set user moderation flags. The only mutation a listing allows."""
        listing = self.get_listing(listing_id)
        if listing is None:
            return None
        if is_spam is not None:
            listing.is_spam = is_spam
        if is_success is not None:
            listing.is_success = is_success
        self._session.commit()
        return listing


class NotificationRepository:
    """Notification rows. (user_id, listing_id) is unique."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def get_notification(self, notification_id: int) -> Notification | None:
        return self._session.get(Notification, notification_id)

    @with_db_retry
    def create_if_absent(
        self,
        user_id: int,
        listing_id: int,
        payload: dict[str, Any],
        search_config_id: int | None = None,
    ) -> Notification | None:
        """Create the notification, or return None if the pair was already notified."""
        notification = Notification(
            user_id=user_id,
            listing_id=listing_id,
            search_config_id=search_config_id,
            status=NotificationStatus.PENDING,
            payload=payload,
        )
        self._session.add(notification)
        try:
            self._session.commit()
        except IntegrityError:
            self._session.rollback()
            return None
        return notification

    def count_for_pair(self, user_id: int, listing_id: int) -> int:
        return self._session.scalar(
            select(func.count(Notification.id)).where(
                Notification.user_id == user_id, Notification.listing_id == listing_id
            )
        ) or 0

    @with_db_retry
    def record_delivery(
        self,
        notification_id: int,
        status: NotificationStatus,
        attempts: int,
        error: str | None = None,
    ) -> None:
        values: dict[str, Any] = {"status": status, "attempts": attempts, "last_error": error}
        if status in (NotificationStatus.SENT, NotificationStatus.DELIVERED):
            values["sent_at"] = utc_now()
        self._session.execute(
            update(Notification)
            .where(
                Notification.id == notification_id,
                Notification.status != NotificationStatus.READ,
            )
            .values(**values)
        )
        self._session.commit()

    def get_pending(self, created_after: datetime, limit: int = 100) -> list[Notification]:
        return list(
            self._session.scalars(
                select(Notification)
                .where(
                    Notification.status == NotificationStatus.PENDING,
                    Notification.created_at >= created_after,
                )
                .order_by(Notification.id)
                .limit(limit)
            )
        )

    def get_for_user(
        self, user_id: int, unread_only: bool = False, limit: int = 50
    ) -> list[Notification]:
        query = (
            select(Notification)
            .where(Notification.user_id == user_id)
            .order_by(Notification.created_at.desc(), Notification.id.desc())
            .limit(limit)
        )
        if unread_only:
            query = query.where(Notification.read_at.is_(None))
        return list(self._session.scalars(query))

    def unread_count(self, user_id: int) -> int:
        return self._session.scalar(
            select(func.count(Notification.id)).where(
                Notification.user_id == user_id, Notification.read_at.is_(None)
            )
        ) or 0

    @with_db_retry
    def mark_read(self, notification_id: int, user_id: int) -> bool:
        result = self._session.execute(
            update(Notification)
            .where(
                Notification.id == notification_id,
                Notification.user_id == user_id,
                Notification.read_at.is_(None),
            )
            .values(read_at=utc_now(), status=NotificationStatus.READ)
        )
        self._session.commit()
        return bool(result.rowcount)

    @with_db_retry
    def mark_all_read(self, user_id: int) -> int:
        result = self._session.execute(
            update(Notification)
            .where(Notification.user_id == user_id, Notification.read_at.is_(None))
            .values(read_at=utc_now(), status=NotificationStatus.READ)
        )
        self._session.commit()
        return result.rowcount or 0


class DeviceRepository:
    """Push token registrations."""

    def __init__(self, session: Session) -> None:
        self._session = session

    @with_db_retry
    def register_device(self, user_id: int, token: str, platform: DevicePlatform) -> Device:
        """Register a token, re-activating and re-assigning it if already known."""
        device = self._session.scalars(select(Device).where(Device.token == token)).first()
        if device is None:
            device = Device(user_id=user_id, token=token, platform=platform)
            self._session.add(device)
        else:
            device.user_id = user_id
            device.platform = platform
            device.is_active = True
        self._session.commit()
        return device

    def get_device(self, device_id: int) -> Device | None:
        return self._session.get(Device, device_id)

    def get_devices(self, user_id: int, active_only: bool = True) -> list[Device]:
        query = select(Device).where(Device.user_id == user_id).order_by(Device.id)
        if active_only:
            query = query.where(Device.is_active.is_(True))
        return list(self._session.scalars(query))

    @with_db_retry
    def deactivate_device(self, device_id: int) -> None:
        self._session.execute(
            update(Device).where(Device.id == device_id).values(is_active=False)
        )
        self._session.commit()

    @with_db_retry
    def unregister_token(self, user_id: int, token: str) -> bool:
        result = self._session.execute(
            update(Device)
            .where(Device.user_id == user_id, Device.token == token, Device.is_active.is_(True))
            .values(is_active=False)
        )
        self._session.commit()
        return bool(result.rowcount)

    @with_db_retry
    def touch_device(self, device_id: int) -> None:
        self._session.execute(
            update(Device).where(Device.id == device_id).values(last_used_at=utc_now())
        )
        self._session.commit()
