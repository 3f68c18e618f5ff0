"""Notification request/response schemas."""
from datetime import datetime
from typing import Literal, Optional

from fileflow.schemas.base import CamelModel


class SubscriptionRequest(CamelModel):
    item_id: str
    item_type: Literal["FILE", "FOLDER"]


class NotificationStatsResponse(CamelModel):
    active_connections: int
    active_subscriptions: int
    pending_notifications: int
    failed_notifications: int
    last_connected: Optional[datetime] = None


class NotificationMetricResponse(CamelModel):
    event_date: str
    hour_of_day: int
    active_connections: int
    messages_sent: int
    messages_received: int
    messages_queued: int
    errors_count: int
