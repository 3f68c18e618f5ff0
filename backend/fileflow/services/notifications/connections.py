"""In-process registry of live connections (WebSocket objects or anything with send_json)."""
import logging
from collections import defaultdict
from typing import Any, Protocol

from fileflow.exceptions import DeliveryFault

logger = logging.getLogger(__name__)


class Sender(Protocol):
    async def send_json(self, data: Any) -> None: ...


class ConnectionRegistry:

    def __init__(self):
        self._by_user: dict[str, dict[str, Sender]] = defaultdict(dict)

    def add(self, user_id: str, connection_id: str, sender: Sender) -> None:
        self._by_user[user_id][connection_id] = sender

    def remove(self, user_id: str, connection_id: str) -> None:
        conns = self._by_user.get(user_id)
        if conns is None:
            return
        conns.pop(connection_id, None)
        if not conns:
            del self._by_user[user_id]

    def has(self, user_id: str) -> bool:
        return bool(self._by_user.get(user_id))

    def count(self) -> int:
        return sum(len(c) for c in self._by_user.values())

    async def deliver(self, user_id: str, message: dict) -> int:
        """Send to every live connection of the user.

        Returns the number of connections reached. Raises DeliveryFault if none were.
        """
        conns = list(self._by_user.get(user_id, {}).items())
        if not conns:
            raise DeliveryFault(f"No live connection for user {user_id}")
        delivered = 0
        for connection_id, sender in conns:
            try:
                await sender.send_json(message)
                delivered += 1
            except Exception as e:
                logger.warning(f"Send to {user_id}/{connection_id} failed: {e}")
        if delivered == 0:
            raise DeliveryFault(f"All {len(conns)} connections of {user_id} failed")
        return delivered
