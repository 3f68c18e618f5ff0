"""Notification envelope: the one payload shape persisted in the queue and sent live.

Field names are stable. Queued rows are replayed verbatim, so renaming a
field breaks every undelivered entry.
"""
import json
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import Field

from fileflow.models.base import utcnow
from fileflow.schemas.base import CamelModel


class MessageType(str, Enum):
    FILE_EVENT = "FILE_EVENT"
    FOLDER_EVENT = "FOLDER_EVENT"
    QUOTA_UPDATE = "QUOTA_UPDATE"
    SYSTEM_NOTIFICATION = "SYSTEM_NOTIFICATION"


class Action(str, Enum):
    UPLOADED = "UPLOADED"
    CREATED = "CREATED"
    UPDATED = "UPDATED"
    DELETED = "DELETED"
    MOVED = "MOVED"


FILE_ACTIONS = {Action.UPLOADED, Action.UPDATED, Action.DELETED, Action.MOVED}
FOLDER_ACTIONS = {Action.CREATED, Action.UPDATED, Action.DELETED}


class NotificationEnvelope(CamelModel):
    type: MessageType
    item_id: Optional[str] = None
    action: Optional[str] = None
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)

    def to_message(self) -> dict:
        """JSON-ready dict with camelCase keys."""
        return self.model_dump(mode="json", by_alias=True)

    def to_payload(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_payload(cls, payload: str) -> "NotificationEnvelope":
        return cls.model_validate_json(payload)


def payload_to_message(payload: str) -> dict:
    """Queued payloads go out exactly as stored."""
    return json.loads(payload)
