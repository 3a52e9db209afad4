"""Data models for the listing watcher."""

from listing_watcher.models.pydantic_models import (
    DevicePlatform,
    NotificationStatus,
    RawListing,
    ScrapeOutcome,
    SearchConfigCreate,
    SearchJob,
)

__all__ = [
    "DevicePlatform",
    "NotificationStatus",
    "RawListing",
    "ScrapeOutcome",
    "SearchConfigCreate",
    "SearchJob",
]
