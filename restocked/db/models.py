"""SQLAlchemy database models."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class StockStatus(str, Enum):
    IN_STOCK = "in_stock"
    OUT_OF_STOCK = "out_of_stock"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Optional[str]) -> "StockStatus":
        """Normalize an extractor-provided status; anything unrecognized is unknown."""
        if isinstance(value, cls):
            return value
        if not value:
            return cls.UNKNOWN
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.UNKNOWN


class NotificationType(str, Enum):
    PRICE_DROP = "PRICE_DROP"
    PRICE_INCREASE = "PRICE_INCREASE"
    RESTOCK = "RESTOCK"
    OUT_OF_STOCK = "OUT_OF_STOCK"


class DeliveryStatus(str, Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"


class CheckRunStatus(str, Enum):
    RUNNING = "running"
    RAN = "ran"
    SKIPPED = "skipped"
    FAILED = "failed"


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class User(Base):
    """Account owned by the auth layer; only the address is read here."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[Optional[str]] = mapped_column(String(320), nullable=True, unique=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    settings: Mapped[Optional["NotificationSettings"]] = relationship(
        "NotificationSettings", back_populates="user", uselist=False
    )


class Product(Base):
    """Product page being monitored."""

    __tablename__ = "products"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    url: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    last_checked_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime, nullable=True, index=True
    )
    last_check_status: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)  # success | failed
    last_check_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    variants: Mapped[list["Variant"]] = relationship(
        "Variant", back_populates="product", cascade="all, delete-orphan"
    )
    tracked_items: Mapped[list["TrackedItem"]] = relationship(
        "TrackedItem", back_populates="product", cascade="all, delete-orphan"
    )


class Variant(Base):
    """Purchasable variant of a product (size, colour, ...)."""

    __tablename__ = "variants"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    product_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("products.id"), nullable=False, index=True
    )
    variant_key: Mapped[str] = mapped_column(String(255), nullable=False)
    current_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    currency: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)
    current_stock_status: Mapped[str] = mapped_column(
        String(16), default=StockStatus.UNKNOWN.value, nullable=False
    )
    last_modified_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    product: Mapped["Product"] = relationship("Product", back_populates="variants")
    price_history: Mapped[list["VariantPriceHistory"]] = relationship(
        "VariantPriceHistory", back_populates="variant", cascade="all, delete-orphan"
    )
    stock_history: Mapped[list["VariantStockHistory"]] = relationship(
        "VariantStockHistory", back_populates="variant", cascade="all, delete-orphan"
    )

    __table_args__ = (
        UniqueConstraint("product_id", "variant_key", name="uq_variant_product_key"),
        CheckConstraint(
            "current_stock_status IN ('in_stock', 'out_of_stock', 'unknown')",
            name="ck_variant_stock_status",
        ),
    )


class VariantPriceHistory(Base):
    """Append-only log of observed prices (one row per change)."""

    __tablename__ = "variant_price_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    variant_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("variants.id"), nullable=False
    )
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    observed_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    variant: Mapped["Variant"] = relationship("Variant", back_populates="price_history")

    __table_args__ = (
        Index("ix_variant_price_history_variant_observed", "variant_id", "observed_at"),
    )


class VariantStockHistory(Base):
    """Append-only log of observed stock statuses (one row per change)."""

    __tablename__ = "variant_stock_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    variant_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("variants.id"), nullable=False
    )
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    observed_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    variant: Mapped["Variant"] = relationship("Variant", back_populates="stock_history")

    __table_args__ = (
        Index("ix_variant_stock_history_variant_observed", "variant_id", "observed_at"),
    )


class TrackedItem(Base):
    """A user's subscription to a product, or to one variant of it."""

    __tablename__ = "tracked_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id"), nullable=False, index=True
    )
    product_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("products.id"), nullable=False, index=True
    )
    variant_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("variants.id"), nullable=True
    )  # NULL = every variant of the product
    notifications_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    product: Mapped["Product"] = relationship("Product", back_populates="tracked_items")

    __table_args__ = (
        UniqueConstraint(
            "user_id", "product_id", "variant_id", name="uq_tracked_item_user_product_variant"
        ),
        # NULLs are distinct in the constraint above; product-level rows need their own index
        Index(
            "uq_tracked_item_product_level",
            "user_id",
            "product_id",
            unique=True,
            postgresql_where=text("variant_id IS NULL"),
            sqlite_where=text("variant_id IS NULL"),
        ),
    )


class NotificationSettings(Base):
    """Per-user notification thresholds and channel toggles."""

    __tablename__ = "user_notification_settings"

    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id"), primary_key=True
    )
    email_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    # NULL falls back to the configured default
    price_drop_threshold_percent: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(6, 2), nullable=True
    )
    price_increase_threshold_percent: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(6, 2), nullable=True
    )
    notify_price_drop: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    notify_price_increase: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    notify_restock: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    notify_out_of_stock: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    user: Mapped["User"] = relationship("User", back_populates="settings")


class Notification(Base):
    """In-app feed entry, also the unit of email delivery."""

    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id"), nullable=False
    )
    product_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("products.id"), nullable=False
    )
    variant_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("variants.id"), nullable=False
    )
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    payload: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    # Identity of the underlying change: "old->new@since"
    change_key: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    read_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Delivery tracking (owned by the email delivery scheduler)
    delivery_status: Mapped[str] = mapped_column(
        String(16), default=DeliveryStatus.PENDING.value, nullable=False
    )
    delivery_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    next_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "user_id", "variant_id", "type", "change_key", name="uq_notification_change"
        ),
        CheckConstraint(
            "type IN ('PRICE_DROP', 'PRICE_INCREASE', 'RESTOCK', 'OUT_OF_STOCK')",
            name="ck_notification_type",
        ),
        CheckConstraint(
            "delivery_status IN ('PENDING', 'SENT', 'FAILED')",
            name="ck_notification_delivery_status",
        ),
        Index("ix_notifications_delivery", "delivery_status", "next_attempt_at", "created_at"),
        Index("ix_notifications_user_read", "user_id", "read_at", "created_at"),
    )


class CheckRun(Base):
    """One row per check scheduler invocation."""

    __tablename__ = "check_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    run_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)  # UUID hex
    trigger: Mapped[str] = mapped_column(String(32), nullable=False)  # 'scheduled' | 'manual'
    status: Mapped[str] = mapped_column(
        String(20), default=CheckRunStatus.RUNNING.value, nullable=False
    )
    skip_reason: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    started_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    products_selected: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    products_checked: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    products_skipped: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    products_failed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    changes_detected: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    notifications_created: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    errors: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class SchedulerLock(Base):
    """Leased, named mutual-exclusion record for periodic jobs."""

    __tablename__ = "scheduler_locks"

    name: Mapped[str] = mapped_column(String(64), primary_key=True)
    holder: Mapped[str] = mapped_column(String(64), nullable=False)
    token: Mapped[str] = mapped_column(String(64), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
