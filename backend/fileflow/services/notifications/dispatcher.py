"""Notification dispatcher: live delivery, offline queue, bounded retries, presence.

Delivery is at-least-once. A queued entry is marked sent only after the send
succeeded, so a crash between the two produces a duplicate, never a loss.
Clients must treat notifications as idempotent hints.
"""
import asyncio
import logging
import time
from collections import defaultdict
from datetime import date, datetime, timedelta
from typing import Any

from sqlalchemy import select, update, delete, func
from sqlalchemy.exc import IntegrityError

from fileflow.config import settings
from fileflow.database import async_session
from fileflow.exceptions import DeliveryFault, ValidationFault
from fileflow.models import ConnectionSession, Subscription, QueuedNotification, NotificationMetric
from fileflow.models.base import utcnow
from fileflow.models.notification import ITEM_FILE, ITEM_FOLDER
from fileflow.services.notifications.connections import ConnectionRegistry, Sender
from fileflow.services.notifications.envelope import (
    FILE_ACTIONS, FOLDER_ACTIONS, Action, MessageType, NotificationEnvelope, payload_to_message,
)

logger = logging.getLogger(__name__)

ITEM_TYPES = (ITEM_FILE, ITEM_FOLDER)


class NotificationDispatcher:

    def __init__(self, session_factory=None, connections: ConnectionRegistry | None = None,
                 max_retries: int | None = None, retry_backoff: timedelta | None = None,
                 batch_size: int | None = None, presence_ttl: float | None = None):
        self.session_factory = session_factory or async_session
        self.connections = connections or ConnectionRegistry()
        self.max_retries = settings.NOTIFICATION_MAX_RETRIES if max_retries is None else max_retries
        self.retry_backoff = (
            timedelta(seconds=settings.NOTIFICATION_RETRY_BACKOFF_SECONDS)
            if retry_backoff is None else retry_backoff
        )
        self.batch_size = batch_size or settings.NOTIFICATION_BATCH_SIZE
        self.presence_ttl = settings.PRESENCE_CACHE_TTL_SECONDS if presence_ttl is None else presence_ttl

        self._presence: dict[str, tuple[bool, float]] = {}
        self._drain_locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._counters = {"sent": 0, "received": 0, "queued": 0, "errors": 0}

    # ── publishing ───────────────────────────────────────────────

    async def publish(self, item_id: str, item_type: str, action: Action | str,
                      payload: dict[str, Any] | None = None, owner_id: str | None = None) -> bool:
        """Deliver to every active subscriber of the item plus its owner.

        Offline recipients get a queued entry. Returns True only if every
        recipient was reached live; callers use it for logging only.
        """
        if item_type not in ITEM_TYPES:
            raise ValidationFault(f"Unknown item type: {item_type}")
        data = dict(payload or {})
        owner_id = owner_id or data.get("ownerId")
        envelope = NotificationEnvelope(
            type=MessageType.FILE_EVENT if item_type == ITEM_FILE else MessageType.FOLDER_EVENT,
            item_id=str(item_id),
            action=Action(action).value,
            data=data,
        )

        recipients = await self.subscribers_of(str(item_id), item_type)
        if owner_id and owner_id not in recipients:
            recipients.append(owner_id)

        all_live = True
        for user_id in recipients:
            if not await self._deliver_or_queue(user_id, envelope):
                all_live = False
        logger.debug(f"Published {envelope.type.value}/{envelope.action} for {item_id} to {len(recipients)} users")
        return all_live

    async def publish_file_event(self, file_id, action: Action | str, file_data: dict[str, Any],
                                 owner_id: str, parent_folder_id=None, previous_parent_id=None) -> bool:
        """File event plus an UPDATED event on each affected parent folder."""
        action = Action(action)
        if action not in FILE_ACTIONS:
            raise ValidationFault(f"Unsupported file action: {action.value}")
        all_live = await self.publish(
            str(file_id), ITEM_FILE, action, {**file_data, "ownerId": owner_id}, owner_id
        )
        parents = []
        for parent in (parent_folder_id, previous_parent_id):
            if parent is not None and str(parent) not in parents:
                parents.append(str(parent))
        for parent in parents:
            folder_live = await self.publish(
                parent, ITEM_FOLDER, Action.UPDATED,
                {"fileId": str(file_id), "fileAction": action.value, "ownerId": owner_id},
                owner_id,
            )
            all_live = all_live and folder_live
        return all_live

    async def publish_folder_event(self, folder_id, action: Action | str, folder_data: dict[str, Any],
                                   owner_id: str, parent_folder_id=None) -> bool:
        action = Action(action)
        if action not in FOLDER_ACTIONS:
            raise ValidationFault(f"Unsupported folder action: {action.value}")
        all_live = await self.publish(
            str(folder_id), ITEM_FOLDER, action, {**folder_data, "ownerId": owner_id}, owner_id
        )
        if parent_folder_id is not None:
            parent_live = await self.publish(
                str(parent_folder_id), ITEM_FOLDER, Action.UPDATED,
                {"folderId": str(folder_id), "folderAction": action.value, "ownerId": owner_id},
                owner_id,
            )
            all_live = all_live and parent_live
        return all_live

    async def notify_quota_update(self, user_id: str, used: int, total: int) -> bool:
        percentage = round(used * 100.0 / total, 2) if total > 0 else 0.0
        envelope = NotificationEnvelope(
            type=MessageType.QUOTA_UPDATE,
            item_id=user_id,
            action=Action.UPDATED.value,
            data={"usedSpace": used, "totalSpace": total, "usagePercentage": percentage},
        )
        return await self._deliver_or_queue(user_id, envelope)

    async def send_system_notification(self, user_id: str, title: str, message: str,
                                       level: str = "info") -> bool:
        envelope = NotificationEnvelope(
            type=MessageType.SYSTEM_NOTIFICATION,
            data={"title": title, "message": message, "level": level},
        )
        return await self._deliver_or_queue(user_id, envelope)

    async def _deliver_or_queue(self, user_id: str, envelope: NotificationEnvelope) -> bool:
        if await self.is_connected(user_id):
            try:
                await self.connections.deliver(user_id, envelope.to_message())
                self._counters["sent"] += 1
                return True
            except DeliveryFault as e:
                self._counters["errors"] += 1
                logger.info(f"Live delivery to {user_id} failed, queueing: {e}")
        await self.enqueue(user_id, envelope)
        return False

    async def enqueue(self, user_id: str, envelope: NotificationEnvelope) -> QueuedNotification:
        entry = QueuedNotification(
            user_id=user_id,
            notification_type=envelope.type.value,
            payload=envelope.to_payload(),
        )
        async with self.session_factory() as db:
            db.add(entry)
            await db.commit()
            await db.refresh(entry)
        self._counters["queued"] += 1
        return entry

    # ── subscriptions ────────────────────────────────────────────

    async def subscribers_of(self, item_id: str, item_type: str) -> list[str]:
        async with self.session_factory() as db:
            return list((await db.execute(
                select(Subscription.user_id).where(
                    Subscription.item_id == item_id,
                    Subscription.item_type == item_type,
                    Subscription.is_active == True,  # noqa: E712
                )
            )).scalars())

    async def subscribe(self, user_id: str, item_id: str, item_type: str) -> Subscription:
        """Idempotent. Reactivates a previously deactivated subscription."""
        if item_type not in ITEM_TYPES:
            raise ValidationFault(f"Unknown item type: {item_type}")
        async with self.session_factory() as db:
            sub = await self._find_subscription(db, user_id, item_id, item_type)
            if sub is None:
                sub = Subscription(user_id=user_id, item_id=item_id, item_type=item_type, is_active=True)
                db.add(sub)
                try:
                    await db.commit()
                    return sub
                except IntegrityError:
                    await db.rollback()
                    sub = await self._find_subscription(db, user_id, item_id, item_type)
            if not sub.is_active:
                sub.is_active = True
                await db.commit()
            return sub

    async def unsubscribe(self, user_id: str, item_id: str, item_type: str) -> bool:
        """Soft-deactivate. Returns False if there was no active subscription."""
        async with self.session_factory() as db:
            sub = await self._find_subscription(db, user_id, item_id, item_type)
            if sub is None or not sub.is_active:
                return False
            sub.is_active = False
            await db.commit()
            return True

    async def _find_subscription(self, db, user_id, item_id, item_type) -> Subscription | None:
        return (await db.execute(
            select(Subscription).where(
                Subscription.user_id == user_id,
                Subscription.item_id == item_id,
                Subscription.item_type == item_type,
            )
        )).scalar_one_or_none()

    # ── presence ─────────────────────────────────────────────────

    async def record_connect(self, user_id: str, connection_id: str, sender: Sender | None = None,
                             ip_address: str | None = None, user_agent: str | None = None) -> ConnectionSession:
        conn = ConnectionSession(
            user_id=user_id,
            connection_id=connection_id,
            ip_address=ip_address,
            user_agent=user_agent,
            is_active=True,
        )
        async with self.session_factory() as db:
            db.add(conn)
            await db.commit()
            await db.refresh(conn)
        if sender is not None:
            self.connections.add(user_id, connection_id, sender)
        self._presence.pop(user_id, None)
        logger.info(f"User {user_id} connected ({connection_id})")
        return conn

    async def record_disconnect(self, connection_id: str) -> None:
        async with self.session_factory() as db:
            conn = (await db.execute(
                select(ConnectionSession).where(ConnectionSession.connection_id == connection_id)
            )).scalar_one_or_none()
            if conn is None:
                return
            conn.is_active = False
            conn.disconnected_at = utcnow()
            await db.commit()
            user_id = conn.user_id
        self.connections.remove(user_id, connection_id)
        self._presence.pop(user_id, None)
        logger.info(f"User {user_id} disconnected ({connection_id})")

    async def touch(self, connection_id: str) -> None:
        """Record client activity on a connection (any inbound message)."""
        async with self.session_factory() as db:
            await db.execute(
                update(ConnectionSession)
                .where(ConnectionSession.connection_id == connection_id)
                .values(last_activity=utcnow())
            )
            await db.commit()
        self._counters["received"] += 1

    async def is_connected(self, user_id: str) -> bool:
        cached = self._presence.get(user_id)
        now = time.monotonic()
        if cached is not None and now - cached[1] < self.presence_ttl:
            return cached[0]
        async with self.session_factory() as db:
            active = (await db.execute(
                select(func.count()).select_from(ConnectionSession).where(
                    ConnectionSession.user_id == user_id,
                    ConnectionSession.is_active == True,  # noqa: E712
                )
            )).scalar_one()
        self._presence[user_id] = (active > 0, now)
        return active > 0

    # ── queue draining ───────────────────────────────────────────

    async def process_queued_for(self, user_id: str) -> int:
        """Deliver the user's pending entries oldest first. Returns the number delivered."""
        return await self._drain(user_id, due_before=None)

    async def retry_sweep(self) -> int:
        """Retry entries whose last attempt is older than the backoff window.

        Only connected users are retried. Entries at the retry limit are skipped
        and stay in the table.
        """
        cutoff = utcnow() - self.retry_backoff
        last_attempt = func.coalesce(QueuedNotification.last_retry, QueuedNotification.created_at)
        async with self.session_factory() as db:
            user_ids = list((await db.execute(
                select(QueuedNotification.user_id)
                .where(
                    QueuedNotification.is_sent == False,  # noqa: E712
                    QueuedNotification.retry_count < self.max_retries,
                    last_attempt < cutoff,
                )
                .distinct()
            )).scalars())

        delivered = 0
        for user_id in user_ids:
            try:
                if not await self.is_connected(user_id):
                    continue
                delivered += await self._drain(user_id, due_before=cutoff)
            except Exception as e:
                self._counters["errors"] += 1
                logger.error(f"Retry sweep failed for user {user_id}: {e}", exc_info=True)
        if delivered:
            logger.info(f"Retry sweep delivered {delivered} queued notifications")
        return delivered

    async def drain_connected(self) -> int:
        """Drain pending entries of every currently connected user."""
        async with self.session_factory() as db:
            user_ids = list((await db.execute(
                select(QueuedNotification.user_id)
                .join(ConnectionSession, ConnectionSession.user_id == QueuedNotification.user_id)
                .where(
                    QueuedNotification.is_sent == False,  # noqa: E712
                    QueuedNotification.retry_count < self.max_retries,
                    ConnectionSession.is_active == True,  # noqa: E712
                )
                .distinct()
            )).scalars())
        delivered = 0
        for user_id in user_ids:
            if not self.connections.has(user_id):
                continue
            try:
                delivered += await self.process_queued_for(user_id)
            except Exception as e:
                self._counters["errors"] += 1
                logger.error(f"Queue drain failed for user {user_id}: {e}", exc_info=True)
        return delivered

    async def _drain(self, user_id: str, due_before: datetime | None) -> int:
        delivered = 0
        async with self._drain_locks[user_id]:
            while True:
                async with self.session_factory() as db:
                    query = select(QueuedNotification).where(
                        QueuedNotification.user_id == user_id,
                        QueuedNotification.is_sent == False,  # noqa: E712
                        QueuedNotification.retry_count < self.max_retries,
                    )
                    if due_before is not None:
                        query = query.where(
                            func.coalesce(QueuedNotification.last_retry, QueuedNotification.created_at)
                            < due_before
                        )
                    batch = (await db.execute(
                        query.order_by(QueuedNotification.created_at, QueuedNotification.id)
                        .limit(self.batch_size)
                    )).scalars().all()
                    if not batch:
                        return delivered

                    for entry in batch:
                        try:
                            await self.connections.deliver(user_id, payload_to_message(entry.payload))
                        except DeliveryFault as e:
                            entry.retry_count += 1
                            entry.last_retry = utcnow()
                            await db.commit()
                            self._counters["errors"] += 1
                            if entry.retry_count >= self.max_retries:
                                logger.warning(
                                    f"Notification {entry.id} for {user_id} abandoned after {entry.retry_count} attempts"
                                )
                            else:
                                logger.info(f"Queued notification {entry.id} for {user_id} not delivered: {e}")
                            # later entries must not overtake this one
                            return delivered
                        entry.is_sent = True
                        entry.sent_at = utcnow()
                        await db.commit()
                        delivered += 1
                        self._counters["sent"] += 1

                    if len(batch) < self.batch_size:
                        return delivered

    # ── housekeeping ─────────────────────────────────────────────

    async def recover_stale_connections(self) -> int:
        """Mark sessions left active by a previous process as disconnected."""
        async with self.session_factory() as db:
            result = await db.execute(
                update(ConnectionSession)
                .where(ConnectionSession.is_active == True)  # noqa: E712
                .values(is_active=False, disconnected_at=utcnow())
            )
            await db.commit()
        self._presence.clear()
        if result.rowcount:
            logger.info(f"Recovered {result.rowcount} connection sessions from a previous run")
        return result.rowcount

    async def cleanup_stale_connections(self, timeout: timedelta | None = None) -> int:
        timeout = timeout or timedelta(minutes=settings.CONNECTION_TIMEOUT_MINUTES)
        cutoff = utcnow() - timeout
        async with self.session_factory() as db:
            stale = (await db.execute(
                select(ConnectionSession).where(
                    ConnectionSession.is_active == True,  # noqa: E712
                    ConnectionSession.last_activity < cutoff,
                )
            )).scalars().all()
            for conn in stale:
                conn.is_active = False
                conn.disconnected_at = utcnow()
                self.connections.remove(conn.user_id, conn.connection_id)
                self._presence.pop(conn.user_id, None)
            await db.commit()
        if stale:
            logger.info(f"Marked {len(stale)} idle connection sessions as disconnected")
        return len(stale)

    async def purge_history(self, connection_days: int | None = None,
                            notification_days: int | None = None) -> tuple[int, int]:
        """Delete old disconnected sessions and old *sent* notifications.

        Failed entries are kept for inspection.
        """
        connection_days = settings.CONNECTION_HISTORY_DAYS if connection_days is None else connection_days
        notification_days = settings.NOTIFICATION_HISTORY_DAYS if notification_days is None else notification_days
        now = utcnow()
        async with self.session_factory() as db:
            sessions = await db.execute(
                delete(ConnectionSession).where(
                    ConnectionSession.is_active == False,  # noqa: E712
                    ConnectionSession.disconnected_at < now - timedelta(days=connection_days),
                )
            )
            notifications = await db.execute(
                delete(QueuedNotification).where(
                    QueuedNotification.is_sent == True,  # noqa: E712
                    QueuedNotification.sent_at < now - timedelta(days=notification_days),
                )
            )
            await db.commit()
        return sessions.rowcount, notifications.rowcount

    # ── stats / metrics ──────────────────────────────────────────

    async def get_stats(self, user_id: str) -> dict:
        async with self.session_factory() as db:
            active_connections = (await db.execute(
                select(func.count()).select_from(ConnectionSession).where(
                    ConnectionSession.user_id == user_id,
                    ConnectionSession.is_active == True,  # noqa: E712
                )
            )).scalar_one()
            active_subscriptions = (await db.execute(
                select(func.count()).select_from(Subscription).where(
                    Subscription.user_id == user_id,
                    Subscription.is_active == True,  # noqa: E712
                )
            )).scalar_one()
            pending = (await db.execute(
                select(func.count()).select_from(QueuedNotification).where(
                    QueuedNotification.user_id == user_id,
                    QueuedNotification.is_sent == False,  # noqa: E712
                    QueuedNotification.retry_count < self.max_retries,
                )
            )).scalar_one()
            failed = (await db.execute(
                select(func.count()).select_from(QueuedNotification).where(
                    QueuedNotification.user_id == user_id,
                    QueuedNotification.is_sent == False,  # noqa: E712
                    QueuedNotification.retry_count >= self.max_retries,
                )
            )).scalar_one()
            last_connected = (await db.execute(
                select(func.max(ConnectionSession.connected_at))
                .where(ConnectionSession.user_id == user_id)
            )).scalar_one()
        return {
            "active_connections": active_connections,
            "active_subscriptions": active_subscriptions,
            "pending_notifications": pending,
            "failed_notifications": failed,
            "last_connected": last_connected,
        }

    async def flush_metrics(self) -> None:
        """Fold in-memory counters into the current hourly bucket."""
        counters, self._counters = self._counters, {"sent": 0, "received": 0, "queued": 0, "errors": 0}
        now = utcnow()
        async with self.session_factory() as db:
            bucket = (await db.execute(
                select(NotificationMetric).where(
                    NotificationMetric.event_date == now.date(),
                    NotificationMetric.hour_of_day == now.hour,
                )
            )).scalar_one_or_none()
            if bucket is None:
                bucket = NotificationMetric(
                    event_date=now.date(), hour_of_day=now.hour,
                    messages_sent=0, messages_received=0, messages_queued=0, errors_count=0,
                )
                db.add(bucket)
            bucket.messages_sent += counters["sent"]
            bucket.messages_received += counters["received"]
            bucket.messages_queued += counters["queued"]
            bucket.errors_count += counters["errors"]
            bucket.active_connections = self.connections.count()
            await db.commit()

    async def get_metrics(self, start: date, end: date) -> list[NotificationMetric]:
        async with self.session_factory() as db:
            return list((await db.execute(
                select(NotificationMetric)
                .where(NotificationMetric.event_date >= start, NotificationMetric.event_date <= end)
                .order_by(NotificationMetric.event_date, NotificationMetric.hour_of_day)
            )).scalars())


notification_dispatcher = NotificationDispatcher()
