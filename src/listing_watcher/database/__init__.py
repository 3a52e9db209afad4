"""Database module."""

from listing_watcher.database.engine import get_engine, get_session, get_session_factory, init_db
from listing_watcher.database.repository import (
    CredentialRepository,
    DeviceRepository,
    ListingRepository,
    NotificationRepository,
    SearchConfigRepository,
    ServiceRepository,
)

__all__ = [
    "CredentialRepository",
    "DeviceRepository",
    "ListingRepository",
    "NotificationRepository",
    "SearchConfigRepository",
    "ServiceRepository",
    "get_engine",
    "get_session",
    "get_session_factory",
    "init_db",
]
