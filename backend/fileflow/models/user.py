"""User quota state and quota extensions."""
from datetime import datetime
from sqlalchemy import String, BigInteger, DateTime, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column
from fileflow.models.base import Base, TimestampMixin


class User(Base, TimestampMixin):
    """Per-user quota bookkeeping. The id is the principal id handed in by auth."""
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    storage_quota: Mapped[int] = mapped_column(BigInteger, nullable=False)
    storage_used: Mapped[int] = mapped_column(BigInteger, default=0)
    storage_reserved: Mapped[int] = mapped_column(BigInteger, default=0)


class QuotaExtension(Base, TimestampMixin):
    __tablename__ = "quota_extensions"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    additional_space: Mapped[int] = mapped_column(BigInteger, nullable=False)
    expiry_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
