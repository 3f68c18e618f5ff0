"""Import all models so SQLAlchemy metadata knows about them."""
from fileflow.models.base import Base
from fileflow.models.user import User, QuotaExtension
from fileflow.models.quota import QuotaReservation
from fileflow.models.file_record import FileRecord, FolderRecord, FileTag
from fileflow.models.upload import UploadSession, UploadChunk
from fileflow.models.notification import (
    ConnectionSession, Subscription, QueuedNotification, NotificationMetric,
)

__all__ = [
    "Base",
    "User", "QuotaExtension", "QuotaReservation",
    "FileRecord", "FolderRecord", "FileTag",
    "UploadSession", "UploadChunk",
    "ConnectionSession", "Subscription", "QueuedNotification", "NotificationMetric",
]
