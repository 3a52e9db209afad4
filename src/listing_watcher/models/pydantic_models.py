"""Pydantic models for data validation."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from listing_watcher.errors import AutomationError

MIN_INTERVAL_SECONDS = 30
MAX_INTERVAL_SECONDS = 86400
MAX_RANDOM_RANGE_SECONDS = 300


def utc_now() -> datetime:
    """Return current UTC datetime (timezone-aware)."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class NotificationStatus(str, Enum):
    """Delivery state of a notification."""

    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


class DevicePlatform(str, Enum):
    """Push platforms."""

    IOS = "ios"
    ANDROID = "android"


class PushOutcome(str, Enum):
    """Result class of a single push provider call."""

    ACK = "ack"
    TRANSIENT = "transient"
    PERMANENT = "permanent"


class SearchConfigCreate(BaseModel):
    """User-supplied saved search."""

    user_id: int
    service_id: int
    name: str = Field(..., min_length=1, max_length=200)
    keywords: list[str] = Field(default_factory=list, description="Ordered search keywords")
    price_min: int | None = Field(None, gt=0)
    price_max: int | None = Field(None, gt=0)
    location: str | None = None
    custom_filters: dict[str, Any] = Field(default_factory=dict)
    interval_seconds: int = Field(
        300, ge=MIN_INTERVAL_SECONDS, le=MAX_INTERVAL_SECONDS
    )
    random_range_seconds: int = Field(60, ge=0, le=MAX_RANDOM_RANGE_SECONDS)
    enabled: bool = True

    @model_validator(mode="after")
    def check_price_range(self) -> "SearchConfigCreate":
        if (
            self.price_min is not None
            and self.price_max is not None
            and self.price_min > self.price_max
        ):
            raise ValueError("price_min must not exceed price_max")
        return self


class SearchConfigUpdate(BaseModel):
    """Partial update of a saved search. Unset fields are left alone."""

    name: str | None = Field(None, min_length=1, max_length=200)
    keywords: list[str] | None = None
    price_min: int | None = Field(None, gt=0)
    price_max: int | None = Field(None, gt=0)
    location: str | None = None
    custom_filters: dict[str, Any] | None = None
    interval_seconds: int | None = Field(
        None, ge=MIN_INTERVAL_SECONDS, le=MAX_INTERVAL_SECONDS
    )
    random_range_seconds: int | None = Field(None, ge=0, le=MAX_RANDOM_RANGE_SECONDS)
    enabled: bool | None = None


class SearchJob(BaseModel):
    """Immutable snapshot of a search config and its service for one run."""

    config_id: int
    user_id: int
    service_id: int
    service_name: str
    base_url: str
    login_flow: str
    name: str = ""
    keywords: list[str] = Field(default_factory=list)
    price_min: int | None = None
    price_max: int | None = None
    location: str | None = None
    custom_filters: dict[str, Any] = Field(default_factory=dict)
    interval_seconds: int = 300
    random_range_seconds: int = 0

    model_config = ConfigDict(frozen=True)


class RawListing(BaseModel):
    """One listing snapshot as extracted from a search results page."""

    external_id: str | None = Field(None, description="Service-scoped listing ID")
    title: str
    price: int | None = Field(None, ge=0)
    currency: str = "PLN"
    url: str
    location: str | None = None
    phone: str | None = None
    image_urls: list[str] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True)


class Credential(BaseModel):
    """Decrypted login credential. Never persisted in this form."""

    credential_id: int
    username: str
    password: str = Field(repr=False)

    model_config = ConfigDict(frozen=True)


class ScrapeOutcome(BaseModel):
    """Result of one automation run: records or a typed failure."""

    records: list[RawListing] = Field(default_factory=list)
    error: AutomationError | None = None
    pages_scraped: int = 0
    credential_id: int | None = Field(None, description="Credential the session logged in with")

    model_config = ConfigDict(arbitrary_types_allowed=True)

    @property
    def ok(self) -> bool:
        return self.error is None


class IngestionResult(BaseModel):
    """Listings touched by one run."""

    matched_listing_ids: list[int] = Field(
        default_factory=list, description="All listings seen in this run, in page order"
    )
    new_listing_ids: list[int] = Field(
        default_factory=list, description="Listings first seen by this run"
    )


class DispatchResult(BaseModel):
    """Counters for one dispatch pass."""

    created: int = 0
    skipped_existing: int = 0
    sent: int = 0
    delivered: int = 0
    failed: int = 0
    devices_deactivated: int = 0


class RunResult(BaseModel):
    """Final result of one scheduled execution."""

    config_id: int
    success: bool
    error_kind: str | None = None
    error_message: str | None = None
    records_found: int = 0
    new_listings: int = 0
    notifications_created: int = 0
    credential_id: int | None = None


class PushPayload(BaseModel):
    """Notification content handed to a push provider."""

    title: str
    body: str
    data: dict[str, str] = Field(default_factory=dict)


class PushResult(BaseModel):
    """Provider answer for one device."""

    outcome: PushOutcome
    delivered: bool = Field(False, description="Provider confirmed delivery to the device")
    detail: str | None = None


# ========== READ MODELS ==========


class SearchConfigRead(BaseModel):
    """Saved search as returned to the CLI and API."""

    id: int
    user_id: int
    service_id: int
    name: str
    keywords: list[str]
    price_min: int | None = None
    price_max: int | None = None
    location: str | None = None
    custom_filters: dict[str, Any] = Field(default_factory=dict)
    interval_seconds: int
    random_range_seconds: int
    enabled: bool
    needs_attention: bool = False
    last_error: str | None = None
    last_run_at: datetime | None = None
    next_run_at: datetime | None = None
    consecutive_failure_count: int = 0

    model_config = ConfigDict(from_attributes=True)


class ListingRead(BaseModel):
    """Stored listing."""

    id: int
    service_id: int
    external_id: str | None = None
    title: str
    price: int | None = None
    currency: str
    url: str
    location: str | None = None
    phone: str | None = None
    image_urls: list[str] = Field(default_factory=list)
    is_spam: bool = False
    is_success: bool = False
    first_seen_at: datetime

    model_config = ConfigDict(from_attributes=True)


class NotificationRead(BaseModel):
    id: int
    user_id: int
    listing_id: int
    search_config_id: int | None = None
    status: NotificationStatus
    payload: dict[str, Any] = Field(default_factory=dict)
    attempts: int = 0
    last_error: str | None = None
    created_at: datetime
    sent_at: datetime | None = None
    read_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class DeviceRead(BaseModel):
    id: int
    user_id: int
    token: str
    platform: DevicePlatform
    is_active: bool
    created_at: datetime
    last_used_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)
