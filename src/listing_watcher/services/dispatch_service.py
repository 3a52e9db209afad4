"""Exactly-once notification creation and per-device push delivery."""

import asyncio
import logging
from datetime import timedelta

from sqlalchemy.orm import Session, sessionmaker
from tenacity import AsyncRetrying, retry_if_result, stop_after_attempt, wait_fixed

from listing_watcher.config import DispatchSettings
from listing_watcher.database.repository import (
    DeviceRepository,
    ListingRepository,
    NotificationRepository,
)
from listing_watcher.errors import ProviderDeliveryError
from listing_watcher.models.db_models import Listing
from listing_watcher.models.pydantic_models import (
    DevicePlatform,
    DispatchResult,
    NotificationStatus,
    PushOutcome,
    PushPayload,
    PushResult,
    SearchJob,
    utc_now,
)
from listing_watcher.services.push import PushProvider

logger = logging.getLogger(__name__)


def build_payload(listing: Listing, search_name: str) -> PushPayload:
    price = f" · {listing.price} {listing.currency}" if listing.price is not None else ""
    return PushPayload(
        title=f"New in {search_name}" if search_name else "New listing",
        body=f"{listing.title}{price}",
        data={"listing_id": str(listing.id), "url": listing.url},
    )


def _is_transient(result: PushResult) -> bool:
    return result.outcome is PushOutcome.TRANSIENT


class NotificationDispatcher:
    """Creates one Notification per (user, listing) and delivers it.

    The unique (user_id, listing_id) constraint is the idempotency key:
    re-running dispatch after a crash or concurrently never creates a
    second row, and only newly created rows are delivered.

    Delivery status:
    - any device accepted → SENT, or DELIVERED when the provider confirmed;
    - every device failed → FAILED;
    - no active devices → stays PENDING (visible in-app only).
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        provider: PushProvider,
        settings: DispatchSettings | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._provider = provider
        self._settings = settings or DispatchSettings()

    async def dispatch(self, job: SearchJob, listing_ids: list[int]) -> DispatchResult:
        """Notify the job's user about the given listings."""
        result = DispatchResult()
        if not listing_ids:
            return result

        created = await asyncio.to_thread(self._create_notifications, job, listing_ids, result)
        for notification_id, payload in created:
            await self._deliver(job.user_id, notification_id, payload, 0, result)

        logger.info(
            "Dispatch for config %d: %d created, %d already notified",
            job.config_id, result.created, result.skipped_existing,
        )
        return result

    async def resume_pending(self, max_age_seconds: int) -> DispatchResult:
        """Deliver PENDING notifications created within the window.

        Covers a crash between creating a notification and sending it.
        """
        result = DispatchResult()
        pending = await asyncio.to_thread(self._load_pending, max_age_seconds)
        for notification_id, user_id, payload, attempts in pending:
            await self._deliver(user_id, notification_id, payload, attempts, result)
        if pending:
            logger.info("Resumed %d pending notifications", len(pending))
        return result

    async def _deliver(
        self,
        user_id: int,
        notification_id: int,
        payload: PushPayload,
        prior_attempts: int,
        result: DispatchResult,
    ) -> None:
        devices = await asyncio.to_thread(self._active_devices, user_id)
        if not devices:
            logger.debug("User %d has no active devices; notification %d stays pending", user_id, notification_id)
            return

        attempts = prior_attempts
        accepted = delivered = False
        errors: list[str] = []

        for device_id, token, platform in devices:
            push, tries = await self._send_with_retry(token, platform, payload)
            attempts += tries
            if push.outcome is PushOutcome.ACK:
                accepted = True
                delivered = delivered or push.delivered
                await asyncio.to_thread(self._touch_device, device_id)
            elif push.outcome is PushOutcome.PERMANENT:
                errors.append(push.detail or "permanent rejection")
                await asyncio.to_thread(self._deactivate_device, device_id)
                result.devices_deactivated += 1
                logger.warning("Device %d rejected permanently; deactivated", device_id)
            else:
                errors.append(push.detail or "transient failure")

        if delivered:
            status = NotificationStatus.DELIVERED
            result.delivered += 1
        elif accepted:
            status = NotificationStatus.SENT
            result.sent += 1
        else:
            status = NotificationStatus.FAILED
            result.failed += 1

        await asyncio.to_thread(
            self._record_delivery, notification_id, status, attempts, "; ".join(errors) or None
        )

    async def _send_with_retry(
        self, token: str, platform: DevicePlatform, payload: PushPayload
    ) -> tuple[PushResult, int]:
        """Send to one device, retrying transient results a bounded number of times."""
        tries = 0

        async def attempt() -> PushResult:
            nonlocal tries
            tries += 1
            try:
                return await self._provider.send(token, platform, payload)
            except ProviderDeliveryError as e:
                outcome = PushOutcome.PERMANENT if e.permanent else PushOutcome.TRANSIENT
                return PushResult(outcome=outcome, detail=str(e))
            except Exception as e:
                logger.exception("Push provider raised for %s device", platform.value)
                return PushResult(outcome=PushOutcome.TRANSIENT, detail=f"provider error: {e}")

        retrying = AsyncRetrying(
            retry=retry_if_result(_is_transient),
            stop=stop_after_attempt(self._settings.max_attempts),
            wait=wait_fixed(self._settings.retry_delay_seconds),
            retry_error_callback=lambda state: state.outcome.result(),
        )
        push = await retrying(attempt)
        return push, tries

    # ========== PERSISTENCE (worker threads) ==========

    def _create_notifications(
        self, job: SearchJob, listing_ids: list[int], result: DispatchResult
    ) -> list[tuple[int, PushPayload]]:
        created: list[tuple[int, PushPayload]] = []
        with self._session_factory() as session:
            listings = ListingRepository(session)
            notifications = NotificationRepository(session)
            for listing_id in listing_ids:
                listing = listings.get_listing(listing_id)
                if listing is None:
                    logger.warning("Listing %d vanished before dispatch", listing_id)
                    continue
                payload = build_payload(listing, job.name)
                notification = notifications.create_if_absent(
                    job.user_id, listing_id, payload.model_dump(), search_config_id=job.config_id
                )
                if notification is None:
                    result.skipped_existing += 1
                    continue
                result.created += 1
                created.append((notification.id, payload))
        return created

    def _load_pending(self, max_age_seconds: int) -> list[tuple[int, int, PushPayload, int]]:
        created_after = utc_now() - timedelta(seconds=max_age_seconds)
        with self._session_factory() as session:
            rows = NotificationRepository(session).get_pending(created_after)
            return [
                (row.id, row.user_id, PushPayload.model_validate(row.payload), row.attempts)
                for row in rows
            ]

    def _active_devices(self, user_id: int) -> list[tuple[int, str, DevicePlatform]]:
        with self._session_factory() as session:
            return [
                (device.id, device.token, device.platform)
                for device in DeviceRepository(session).get_devices(user_id, active_only=True)
            ]

    def _touch_device(self, device_id: int) -> None:
        with self._session_factory() as session:
            DeviceRepository(session).touch_device(device_id)

    def _deactivate_device(self, device_id: int) -> None:
        with self._session_factory() as session:
            DeviceRepository(session).deactivate_device(device_id)

    def _record_delivery(
        self, notification_id: int, status: NotificationStatus, attempts: int, error: str | None
    ) -> None:
        with self._session_factory() as session:
            NotificationRepository(session).record_delivery(notification_id, status, attempts, error)
