"""
Database Models

Persistent state of the nexus monitor:

Input Tables (written by the import subsystem):
- ImportedOrder: one normalized order per sales channel order

Owned Tables:
- SalesSummary: one row per (user, state, calendar month) bucket
- NexusAlert: one row per (user, state, alert level) threshold crossing
- NotificationPreference: per-user dispatch preference and recipient identity
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional, List
import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum as SQLEnum,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    """Naive UTC timestamp, the convention for every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# =============================================================================
# ENUMERATIONS
# =============================================================================

class TransactionStatus(str, Enum):
    """Lifecycle status of an imported order"""
    IMPORTED = "imported"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class AlertLevel(str, Enum):
    """Alert level enumeration, declared in ascending severity"""
    APPROACHING = "approaching"
    WARNING = "warning"
    EXCEEDED = "exceeded"

    @property
    def severity(self) -> int:
        return _ALERT_SEVERITY[self]


_ALERT_SEVERITY = {
    AlertLevel.APPROACHING: 1,
    AlertLevel.WARNING: 2,
    AlertLevel.EXCEEDED: 3,
}

# Statuses that never count toward a bucket
EXCLUDED_STATUSES = (TransactionStatus.CANCELLED, TransactionStatus.REFUNDED)


# =============================================================================
# INPUT TABLES
# =============================================================================

class ImportedOrder(Base):
    """
    Imported Order Table

    One immutable fact per order pulled from a sales channel. Amounts are
    pre-computed by the channel connector and rate lookup; this service only
    reads them.
    """
    __tablename__ = "imported_orders"

    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)

    # Channel identity
    channel: Mapped[str] = mapped_column(String(50), nullable=False)  # shopify, amazon, woocommerce
    channel_order_id: Mapped[str] = mapped_column(String(100), nullable=False)

    # NULL when the channel sent a date that could not be parsed
    order_date: Mapped[Optional[datetime]] = mapped_column(DateTime)

    # Measures
    subtotal: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    tax_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)

    # Destination
    shipping_state: Mapped[Optional[str]] = mapped_column(String(10))
    shipping_country: Mapped[Optional[str]] = mapped_column(String(3), default="US")

    status: Mapped[TransactionStatus] = mapped_column(
        SQLEnum(TransactionStatus), default=TransactionStatus.IMPORTED
    )

    # Audit
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "channel", "channel_order_id", name="uq_imported_orders_channel_order"),
        Index("ix_imported_orders_user_state_date", "user_id", "shipping_state", "order_date"),
    )


# =============================================================================
# OWNED TABLES
# =============================================================================

class SalesSummary(Base):
    """
    Monthly Sales Summary Table

    Grain: one row per (user, state, YYYY-MM period). Every write is a full
    recomputation from imported_orders; rows only exist for months with
    activity.
    """
    __tablename__ = "sales_summaries"

    summary_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    state_code: Mapped[str] = mapped_column(String(2), nullable=False)
    period: Mapped[str] = mapped_column(String(7), nullable=False)  # YYYY-MM

    # Measures
    total_sales: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=0)
    taxable_sales: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=0)
    tax_collected: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=0)
    order_count: Mapped[int] = mapped_column(Integer, default=0)
    channels: Mapped[List[str]] = mapped_column(JSON, default=list)

    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "state_code", "period", name="uq_sales_summary_bucket"),
        Index("ix_sales_summaries_user_period", "user_id", "period"),
    )


class NexusAlert(Base):
    """
    Nexus Alert Table

    Audit trail of threshold crossings. The unique constraint on
    (user_id, state_code, alert_level) is what keeps reconciliation
    idempotent across concurrent writers.
    """
    __tablename__ = "nexus_alerts"

    alert_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    state_code: Mapped[str] = mapped_column(String(2), nullable=False)
    state_name: Mapped[str] = mapped_column(String(100), nullable=False)
    alert_level: Mapped[AlertLevel] = mapped_column(SQLEnum(AlertLevel), nullable=False)

    # Snapshot at creation
    sales_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    threshold: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2))
    percentage: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)

    # Flags
    read: Mapped[bool] = mapped_column(Boolean, default=False)
    # email_sent also covers lower levels superseded by a delivered notification
    email_sent: Mapped[bool] = mapped_column(Boolean, default=False)
    # Set when dispatch was suppressed by the user preference; never retried
    notification_skipped: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "state_code", "alert_level", name="uq_nexus_alert_level"),
        Index("ix_nexus_alerts_user_created", "user_id", "created_at"),
        Index("ix_nexus_alerts_user_read", "user_id", "read"),
    )


class NotificationPreference(Base):
    """
    Notification Preference Table

    Users without a row receive nexus alert notifications.
    """
    __tablename__ = "notification_preferences"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[Optional[str]] = mapped_column(String(255))
    display_name: Mapped[Optional[str]] = mapped_column(String(200))
    nexus_alerts_enabled: Mapped[bool] = mapped_column(Boolean, default=True)

    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
