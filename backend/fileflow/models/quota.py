"""QuotaReservation model - provisional holds against a user's quota."""
from datetime import datetime
from sqlalchemy import String, BigInteger, DateTime, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column
from fileflow.models.base import Base, TimestampMixin

RESERVATION_PENDING = "pending"
RESERVATION_CONFIRMED = "confirmed"
RESERVATION_RELEASED = "released"
RESERVATION_EXPIRED = "expired"


class QuotaReservation(Base, TimestampMixin):
    """One check_and_reserve call.

    users.storage_reserved always equals the sum of `remaining` over the user's
    pending rows; confirm/release/expiry move both together.
    """
    __tablename__ = "quota_reservations"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    remaining: Mapped[int] = mapped_column(BigInteger, nullable=False)
    reference: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    status: Mapped[str] = mapped_column(String(20), default=RESERVATION_PENDING, index=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
