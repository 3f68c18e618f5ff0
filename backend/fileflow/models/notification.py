"""Connection sessions, subscriptions, the offline notification queue and hourly metrics."""
from datetime import date, datetime
from sqlalchemy import String, Text, Integer, Boolean, Date, DateTime, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from fileflow.models.base import Base, TimestampMixin, UserMixin, utcnow

ITEM_FILE = "FILE"
ITEM_FOLDER = "FOLDER"


class ConnectionSession(Base, UserMixin):
    """Durable record of a live connection. A user is present iff one row is active."""
    __tablename__ = "connection_sessions"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    connection_id: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(500), nullable=True)
    connected_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    last_activity: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    disconnected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class Subscription(Base, TimestampMixin, UserMixin):
    """Soft-deactivated on unsubscribe, never hard-deleted."""
    __tablename__ = "subscriptions"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    item_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    item_type: Mapped[str] = mapped_column(String(10), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)

    __table_args__ = (
        UniqueConstraint("user_id", "item_id", "item_type", name="uq_subscription"),
    )


class QueuedNotification(Base, UserMixin):
    """Envelope waiting for its target user. Rows past the retry limit stay for inspection."""
    __tablename__ = "notification_queue"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    notification_type: Mapped[str] = mapped_column(String(40), nullable=False)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)
    is_sent: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    last_retry: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class NotificationMetric(Base):
    __tablename__ = "notification_metrics"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    event_date: Mapped[date] = mapped_column(Date, nullable=False)
    hour_of_day: Mapped[int] = mapped_column(Integer, nullable=False)
    active_connections: Mapped[int] = mapped_column(Integer, default=0)
    messages_sent: Mapped[int] = mapped_column(Integer, default=0)
    messages_received: Mapped[int] = mapped_column(Integer, default=0)
    messages_queued: Mapped[int] = mapped_column(Integer, default=0)
    errors_count: Mapped[int] = mapped_column(Integer, default=0)

    __table_args__ = (
        UniqueConstraint("event_date", "hour_of_day", name="uq_notification_metric_hour"),
    )
