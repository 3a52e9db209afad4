"""SQLAlchemy ORM models."""

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from listing_watcher.models.pydantic_models import (
    DevicePlatform,
    NotificationStatus,
    utc_now,
)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class Service(Base):
    """External marketplace definition. Created by an admin, then immutable."""

    __tablename__ = "services"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    base_url: Mapped[str] = mapped_column(String(300), nullable=False)
    login_flow: Mapped[str] = mapped_column(String(50), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)

    search_configs: Mapped[list["SearchConfig"]] = relationship(
        "SearchConfig", back_populates="service"
    )

    def __repr__(self) -> str:
        return f"<Service(id={self.id}, name='{self.name}', flow='{self.login_flow}')>"


class ServiceCredential(Base):
    """Encrypted login for one (user, service) pair."""

    __tablename__ = "service_credentials"
    __table_args__ = (UniqueConstraint("user_id", "service_id", name="uq_credential_user_service"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    service_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("services.id", ondelete="CASCADE"), nullable=False
    )
    username_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    password_encrypted: Mapped[str] = mapped_column(Text, nullable=False)

    # Soft invalidation after repeated login failures
    is_valid: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    failure_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utc_now, onupdate=utc_now, nullable=False
    )

    def __repr__(self) -> str:
        return (
            f"<ServiceCredential(id={self.id}, user_id={self.user_id}, "
            f"service_id={self.service_id}, valid={self.is_valid})>"
        )


class SearchConfig(Base):
    """Saved search owned by one user against one service."""

    __tablename__ = "search_configs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    service_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("services.id"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)

    # Filters
    keywords: Mapped[list[str]] = mapped_column(JSON, default=list)
    price_min: Mapped[int | None] = mapped_column(Integer, nullable=True)
    price_max: Mapped[int | None] = mapped_column(Integer, nullable=True)
    location: Mapped[str | None] = mapped_column(String(200), nullable=True)
    custom_filters: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)

    # Cadence
    interval_seconds: Mapped[int] = mapped_column(Integer, default=300, nullable=False)
    random_range_seconds: Mapped[int] = mapped_column(Integer, default=60, nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False, index=True)

    # Scheduler-owned state
    last_run_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    next_run_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)
    consecutive_failure_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    needs_attention: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utc_now, onupdate=utc_now, nullable=False
    )

    service: Mapped["Service"] = relationship("Service", back_populates="search_configs")

    def __repr__(self) -> str:
        return f"<SearchConfig(id={self.id}, name='{self.name}', enabled={self.enabled})>"


class Listing(Base):
    """Scraped item. Append-only apart from moderation flags."""

    __tablename__ = "listings"
    __table_args__ = (
        UniqueConstraint("service_id", "external_id", name="uq_listing_service_external"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    service_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("services.id"), nullable=False, index=True
    )
    external_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    fingerprint: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    first_search_config_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("search_configs.id"), nullable=True
    )

    title: Mapped[str] = mapped_column(String(500), nullable=False)
    price: Mapped[int | None] = mapped_column(Integer, nullable=True)
    currency: Mapped[str] = mapped_column(String(10), default="PLN", nullable=False)
    url: Mapped[str] = mapped_column(String(1000), nullable=False)
    location: Mapped[str | None] = mapped_column(String(200), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    image_urls: Mapped[list[str]] = mapped_column(JSON, default=list)

    # Moderation flags set by the user
    is_spam: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_success: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    first_seen_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)

    def __repr__(self) -> str:
        return f"<Listing(id={self.id}, title='{self.title[:30]}...', price={self.price})>"


class Notification(Base):
    """At most one per (user, listing)."""

    __tablename__ = "notifications"
    __table_args__ = (
        UniqueConstraint("user_id", "listing_id", name="uq_notification_user_listing"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    listing_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("listings.id"), nullable=False
    )
    search_config_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("search_configs.id"), nullable=True
    )
    status: Mapped[NotificationStatus] = mapped_column(
        Enum(NotificationStatus), default=NotificationStatus.PENDING, nullable=False, index=True
    )
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    read_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    listing: Mapped["Listing"] = relationship("Listing")

    def __repr__(self) -> str:
        return (
            f"<Notification(id={self.id}, user_id={self.user_id}, "
            f"listing_id={self.listing_id}, status={self.status})>"
        )


class Device(Base):
    """Push token registration. Deactivated rather than deleted."""

    __tablename__ = "devices"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    token: Mapped[str] = mapped_column(String(500), nullable=False, unique=True)
    platform: Mapped[DevicePlatform] = mapped_column(Enum(DevicePlatform), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    def __repr__(self) -> str:
        return f"<Device(id={self.id}, user_id={self.user_id}, platform={self.platform})>"
