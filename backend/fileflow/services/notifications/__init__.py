from fileflow.services.notifications.connections import ConnectionRegistry
from fileflow.services.notifications.dispatcher import NotificationDispatcher, notification_dispatcher
from fileflow.services.notifications.envelope import Action, MessageType, NotificationEnvelope

__all__ = [
    "Action",
    "ConnectionRegistry",
    "MessageType",
    "NotificationDispatcher",
    "NotificationEnvelope",
    "notification_dispatcher",
]
