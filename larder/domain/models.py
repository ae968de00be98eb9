from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# Activity type id for "item added to shopping list" in the inventory application.
ACTIVITY_SHOPPING_LIST_ITEM_ADD = 14


class Base(DeclarativeBase):
    pass


# Read-only projections of the inventory application's tables. Only the columns
# the notification subsystem reads (or stamps on soft delete) are mapped.


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    family_id: Mapped[int | None] = mapped_column(Integer, index=True, nullable=True)
    # IANA zone name from the user's profile; None falls back to DEFAULT_TIME_ZONE.
    time_zone: Mapped[str | None] = mapped_column(String, nullable=True)
    # Two-letter language code (hu/de/en) from the user's profile.
    language: Mapped[str | None] = mapped_column(String, nullable=True)
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class NotificationPreferences(Base):
    __tablename__ = "user_notification_preferences"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), unique=True, index=True)
    email_notifications_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    email_weekly_summary_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    last_weekly_email_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    push_notifications_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    push_weekly_summary_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # Last modification stamp {"last_modified_at", "last_modified_by"}.
    record_change: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class PushSubscription(Base):
    __tablename__ = "user_push_subscriptions"
    __table_args__ = (
        Index("ix_user_push_subscriptions_user_deleted", "user_id", "is_deleted"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"))
    endpoint: Mapped[str] = mapped_column(String(2048))
    p256dh: Mapped[str] = mapped_column(String(512))
    auth: Mapped[str] = mapped_column(String(512))
    user_agent: Mapped[str | None] = mapped_column(String(512), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    last_daily_notification_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_weekly_notification_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    record_change: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class Product(Base):
    __tablename__ = "products"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String)
    brand: Mapped[str | None] = mapped_column(String, nullable=True)


class InventoryItem(Base):
    __tablename__ = "product_inventory_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    product_id: Mapped[int] = mapped_column(Integer, ForeignKey("products.id"))
    user_id: Mapped[int | None] = mapped_column(Integer, index=True, nullable=True)
    family_id: Mapped[int | None] = mapped_column(Integer, index=True, nullable=True)
    expiration_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_fully_consumed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class ShoppingList(Base):
    __tablename__ = "shopping_lists"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String)
    family_id: Mapped[int | None] = mapped_column(Integer, index=True, nullable=True)
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class ShoppingListItem(Base):
    __tablename__ = "shopping_list_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    shopping_list_id: Mapped[int] = mapped_column(Integer, ForeignKey("shopping_lists.id"), index=True)


class Activity(Base):
    __tablename__ = "activities"
    __table_args__ = (
        Index("ix_activities_type_timestamp", "activity_type", "timestamp"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, index=True)
    family_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    activity_type: Mapped[int] = mapped_column(Integer)
    # Id of the affected record; a shopping list item for item-add activities.
    record_id: Mapped[int] = mapped_column(Integer)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True))


# Owned by the notification subsystem.


class NotificationMarker(Base):
    __tablename__ = "notification_markers"
    __table_args__ = (
        UniqueConstraint("marker_key", name="uq_notification_markers_key"),
        Index("ix_notification_markers_expires_at", "expires_at"),
    )

    # One row per (kind, recipient, period); the unique key makes the first writer win.
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    marker_key: Mapped[str] = mapped_column(String)
    kind: Mapped[str] = mapped_column(String, index=True)
    recipient: Mapped[str] = mapped_column(String)
    period: Mapped[str] = mapped_column(String)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
