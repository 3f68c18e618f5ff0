"""Per-user quota accounting: used bytes, in-flight reservations, extensions.

Reservations live in their own table with a TTL. The check-and-increment in
check_and_reserve is a single conditional UPDATE, so two instances racing on
the same user cannot both pass the ceiling check. Within one process calls
for the same user are additionally serialised by a per-user asyncio.Lock.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import select, update, func, case
from sqlalchemy.exc import IntegrityError

from fileflow.config import settings
from fileflow.database import async_session
from fileflow.exceptions import NotFound, ValidationFault
from fileflow.models import User, QuotaExtension, QuotaReservation, FileRecord
from fileflow.models.base import utcnow, as_utc
from fileflow.models.quota import (
    RESERVATION_PENDING, RESERVATION_CONFIRMED, RESERVATION_RELEASED, RESERVATION_EXPIRED,
)

logger = logging.getLogger(__name__)



class _UserLocks:
    """One asyncio.Lock per user, dropped once nobody holds or awaits it."""

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def __call__(self, user_id: str):
        lock = self._locks.setdefault(user_id, asyncio.Lock())
        self._holders[user_id] = self._holders.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[user_id] -= 1
            if not self._holders[user_id]:
                del self._holders[user_id]
                del self._locks[user_id]


@dataclass
class QuotaUsage:
    user_id: str
    base: int
    extensions: int
    effective_quota: int
    used: int
    reserved: int
    available: int
    usage_percentage: float


class QuotaLedger:

    def __init__(self, session_factory=None, reservation_ttl: timedelta | None = None,
                 min_quota: int | None = None, default_quota: int | None = None):
        self.session_factory = session_factory or async_session
        self.reservation_ttl = reservation_ttl or timedelta(minutes=settings.QUOTA_RESERVATION_TTL_MINUTES)
        self.min_quota = settings.MIN_STORAGE_QUOTA if min_quota is None else min_quota
        self.default_quota = settings.DEFAULT_STORAGE_QUOTA if default_quota is None else default_quota
        self._locks = _UserLocks()
        self._known_users: set[str] = set()

    # ── users / extensions ───────────────────────────────────────

    async def register_user(self, user_id: str, base_quota: int | None = None) -> User:
        """Create the quota row for a principal if it does not exist yet. Idempotent."""
        async with self.session_factory() as db:
            user = await db.get(User, user_id)
            if user:
                return user
            user = User(
                id=user_id,
                storage_quota=self.default_quota if base_quota is None else base_quota,
                storage_used=0,
                storage_reserved=0,
            )
            db.add(user)
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                user = await db.get(User, user_id)
            else:
                logger.info(f"Registered quota for user {user_id}: {user.storage_quota} bytes")
            return user

    async def ensure_user(self, user_id: str) -> None:
        """register_user with an in-process cache, cheap enough to call per request."""
        if user_id in self._known_users:
            return
        await self.register_user(user_id)
        self._known_users.add(user_id)

    async def add_extension(self, user_id: str, additional_space: int,
                            expiry_date: datetime, reason: str | None = None) -> QuotaExtension:
        if additional_space <= 0:
            raise ValidationFault("Extension size must be positive")
        if as_utc(expiry_date) <= utcnow():
            raise ValidationFault("Extension expiry must be in the future")
        async with self._locks(user_id):
            async with self.session_factory() as db:
                await self._get_user(db, user_id)
                ext = QuotaExtension(
                    user_id=user_id,
                    additional_space=additional_space,
                    expiry_date=expiry_date,
                    reason=reason,
                )
                db.add(ext)
                await db.commit()
                await db.refresh(ext)
                return ext

    async def set_base_quota(self, user_id: str, new_quota: int) -> None:
        if new_quota < self.min_quota:
            raise ValidationFault(f"Quota cannot be less than {self.min_quota} bytes")
        async with self._locks(user_id):
            async with self.session_factory() as db:
                user = await self._get_user(db, user_id)
                user.storage_quota = new_quota
                await db.commit()
        logger.info(f"Base quota for {user_id} set to {new_quota}")

    # ── reservations ─────────────────────────────────────────────

    async def check_and_reserve(self, user_id: str, size: int, reference: str | None = None) -> bool:
        """Hold `size` bytes if used + reserved + size fits the effective quota.

        Returns False with no state change when it does not fit.
        """
        if size < 0:
            raise ValidationFault("Size cannot be negative")
        async with self._locks(user_id):
            async with self.session_factory() as db:
                await self._get_user(db, user_id)
                await self._expire_stale(db, user_id)
                effective = await self._effective_quota(db, user_id)

                result = await db.execute(
                    update(User)
                    .where(
                        User.id == user_id,
                        User.storage_used + User.storage_reserved + size <= effective,
                    )
                    .values(storage_reserved=User.storage_reserved + size)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    await db.commit()
                    logger.debug(f"Reserve {size} for {user_id} rejected (quota {effective})")
                    return False

                db.add(QuotaReservation(
                    user_id=user_id,
                    amount=size,
                    remaining=size,
                    reference=reference,
                    status=RESERVATION_PENDING,
                    expires_at=utcnow() + self.reservation_ttl,
                ))
                await db.commit()
        logger.debug(f"Reserved {size} for {user_id} (ref={reference})")
        return True

    async def confirm(self, user_id: str, size: int, reference: str | None = None) -> None:
        """Move `size` from reserved to used. The reserved side is clamped at what is held."""
        async with self._locks(user_id):
            async with self.session_factory() as db:
                await self._get_user(db, user_id)
                consumed = await self._consume(db, user_id, size, reference, RESERVATION_CONFIRMED)
                await db.execute(
                    update(User)
                    .where(User.id == user_id)
                    .values(
                        storage_used=User.storage_used + size,
                        storage_reserved=User.storage_reserved - consumed,
                    )
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
        if consumed < size:
            logger.warning(f"Confirm {size} for {user_id}: only {consumed} was reserved")
        logger.debug(f"Confirmed {size} for {user_id} (ref={reference})")

    async def release(self, user_id: str, size: int, reference: str | None = None) -> int:
        """Drop up to `size` bytes of reservation. Returns the amount actually released."""
        async with self._locks(user_id):
            async with self.session_factory() as db:
                await self._get_user(db, user_id)
                released = await self._consume(db, user_id, size, reference, RESERVATION_RELEASED)
                if released:
                    await db.execute(
                        update(User)
                        .where(User.id == user_id)
                        .values(storage_reserved=User.storage_reserved - released)
                        .execution_options(synchronize_session=False)
                    )
                await db.commit()
        logger.debug(f"Released {released}/{size} for {user_id} (ref={reference})")
        return released

    async def cancel(self, user_id: str, size: int, reference: str | None = None) -> int:
        """Alias of release for uploads abandoned before confirmation."""
        return await self.release(user_id, size, reference)

    # ── direct usage adjustments ─────────────────────────────────

    async def update_used(self, user_id: str, delta: int) -> None:
        async with self._locks(user_id):
            async with self.session_factory() as db:
                await self._get_user(db, user_id)
                new_used = User.storage_used + delta
                await db.execute(
                    update(User)
                    .where(User.id == user_id)
                    .values(storage_used=case((new_used < 0, 0), else_=new_used))
                    .execution_options(synchronize_session=False)
                )
                await db.commit()

    async def release_storage(self, user_id: str, size: int) -> None:
        await self.update_used(user_id, -abs(size))

    async def reconcile_usage(self, user_id: str) -> int:
        """Recompute `used` from live file records. Returns the corrected value."""
        async with self._locks(user_id):
            async with self.session_factory() as db:
                user = await self._get_user(db, user_id)
                actual = (await db.execute(
                    select(func.coalesce(func.sum(FileRecord.size_bytes), 0))
                    .where(FileRecord.user_id == user_id, FileRecord.is_deleted == False)  # noqa: E712
                )).scalar_one()
                if actual != user.storage_used:
                    logger.warning(f"Usage drift for {user_id}: recorded {user.storage_used}, actual {actual}")
                    user.storage_used = actual
                    await db.commit()
                return int(actual)

    # ── reads ────────────────────────────────────────────────────

    async def get_usage(self, user_id: str) -> QuotaUsage:
        async with self._locks(user_id):
            async with self.session_factory() as db:
                await self._expire_stale(db, user_id)
                await db.commit()
                user = await self._get_user(db, user_id)
                await db.refresh(user)
                extensions = await self._extension_total(db, user_id)

        effective = user.storage_quota + extensions
        available = max(0, effective - user.storage_used - user.storage_reserved)
        percentage = round(user.storage_used * 100.0 / effective, 2) if effective > 0 else 0.0
        return QuotaUsage(
            user_id=user_id,
            base=user.storage_quota,
            extensions=extensions,
            effective_quota=effective,
            used=user.storage_used,
            reserved=user.storage_reserved,
            available=available,
            usage_percentage=percentage,
        )

    # ── expiry ───────────────────────────────────────────────────

    async def expire_stale_reservations(self, user_id: str | None = None) -> int:
        """Release reservations past their TTL. Returns the number of rows expired."""
        if user_id is not None:
            user_ids = [user_id]
        else:
            async with self.session_factory() as db:
                user_ids = list((await db.execute(
                    select(QuotaReservation.user_id)
                    .where(
                        QuotaReservation.status == RESERVATION_PENDING,
                        QuotaReservation.expires_at <= utcnow(),
                    )
                    .distinct()
                )).scalars())

        total = 0
        for uid in user_ids:
            async with self._locks(uid):
                async with self.session_factory() as db:
                    total += await self._expire_stale(db, uid)
                    await db.commit()
        if total:
            logger.info(f"Expired {total} stale quota reservations")
        return total

    # ── internals (caller holds the user lock and commits) ───────

    async def _get_user(self, db, user_id: str) -> User:
        user = await db.get(User, user_id)
        if not user:
            raise NotFound("User", user_id)
        return user

    async def _extension_total(self, db, user_id: str) -> int:
        return int((await db.execute(
            select(func.coalesce(func.sum(QuotaExtension.additional_space), 0))
            .where(QuotaExtension.user_id == user_id, QuotaExtension.expiry_date > utcnow())
        )).scalar_one())

    async def _effective_quota(self, db, user_id: str) -> int:
        base = (await db.execute(
            select(User.storage_quota).where(User.id == user_id)
        )).scalar_one()
        return base + await self._extension_total(db, user_id)

    async def _expire_stale(self, db, user_id: str) -> int:
        rows = (await db.execute(
            select(QuotaReservation)
            .where(
                QuotaReservation.user_id == user_id,
                QuotaReservation.status == RESERVATION_PENDING,
                QuotaReservation.expires_at <= utcnow(),
            )
        )).scalars().all()
        if not rows:
            return 0
        amount = 0
        now = utcnow()
        for row in rows:
            amount += row.remaining
            row.remaining = 0
            row.status = RESERVATION_EXPIRED
            row.resolved_at = now
        await db.execute(
            update(User)
            .where(User.id == user_id)
            .values(storage_reserved=User.storage_reserved - amount)
            .execution_options(synchronize_session=False)
        )
        logger.info(f"Reclaimed {amount} reserved bytes from {len(rows)} stale reservations of {user_id}")
        return len(rows)

    async def _consume(self, db, user_id: str, size: int, reference: str | None, status: str) -> int:
        """Take up to `size` bytes from pending reservations, oldest first."""
        query = select(QuotaReservation).where(
            QuotaReservation.user_id == user_id,
            QuotaReservation.status == RESERVATION_PENDING,
        )
        if reference is not None:
            query = query.where(QuotaReservation.reference == reference)
        query = query.order_by(QuotaReservation.created_at, QuotaReservation.id)
        rows = (await db.execute(query)).scalars().all()

        left = max(0, size)
        consumed = 0
        now = utcnow()
        for row in rows:
            if left <= 0:
                break
            take = min(left, row.remaining)
            row.remaining -= take
            left -= take
            consumed += take
            if row.remaining == 0:
                row.status = status
                row.resolved_at = now
        return consumed


quota_ledger = QuotaLedger()
