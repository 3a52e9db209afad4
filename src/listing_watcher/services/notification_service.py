"""Service layer for notifications and push devices."""

from sqlalchemy.orm import Session

from listing_watcher.database.repository import DeviceRepository, NotificationRepository
from listing_watcher.models.pydantic_models import DevicePlatform, DeviceRead, NotificationRead


class NotificationNotFoundError(Exception):
    """Raised when a notification is not found or belongs to another user."""

    pass


class NotificationService:
    """User-facing notification inbox and device registrations."""

    def __init__(self, session: Session) -> None:
        self._session = session
        self._notifications = NotificationRepository(session)
        self._devices = DeviceRepository(session)

    # ========== NOTIFICATIONS ==========

    def get_notifications(
        self, user_id: int, unread_only: bool = False, limit: int = 50
    ) -> list[NotificationRead]:
        rows = self._notifications.get_for_user(user_id, unread_only=unread_only, limit=limit)
        return [NotificationRead.model_validate(row) for row in rows]

    def unread_count(self, user_id: int) -> int:
        return self._notifications.unread_count(user_id)

    def mark_read(self, notification_id: int, user_id: int) -> NotificationRead:
        """Mark one notification read. Already-read notifications are left as they are.

        Raises:
            NotificationNotFoundError: If it doesn't exist for this user.
        """
        notification = self._notifications.get_notification(notification_id)
        if notification is None or notification.user_id != user_id:
            raise NotificationNotFoundError(f"Notification {notification_id} not found")
        self._notifications.mark_read(notification_id, user_id)
        self._session.refresh(notification)
        return NotificationRead.model_validate(notification)

    def mark_all_read(self, user_id: int) -> int:
        """Mark every unread notification read. Returns how many changed."""
        return self._notifications.mark_all_read(user_id)

    # ========== DEVICES ==========

    def register_device(self, user_id: int, token: str, platform: DevicePlatform) -> DeviceRead:
        device = self._devices.register_device(user_id, token, platform)
        return DeviceRead.model_validate(device)

    def get_devices(self, user_id: int, active_only: bool = True) -> list[DeviceRead]:
        return [
            DeviceRead.model_validate(device)
            for device in self._devices.get_devices(user_id, active_only=active_only)
        ]

    def unregister_device(self, user_id: int, token: str) -> bool:
        """Deactivate a token. Returns False if it was not active for this user."""
        return self._devices.unregister_token(user_id, token)
