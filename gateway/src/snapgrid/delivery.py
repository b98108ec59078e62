from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List

from .identity import UserId

logger = logging.getLogger(__name__)

NEW_MESSAGE = "newMessage"
CONVERSATIONS_CHANGED = "conversationsChanged"
ONLINE_USERS = "onlineUsers"

Frame = Dict[str, Any]
Callback = Callable[[Frame], None]


def make_frame(event: str, payload: Any = None) -> Frame:
    return {"v": 1, "t": event, "body": payload}


@dataclass(eq=False)
class Connection:
    """One live push connection; a user may hold several (multi-device)."""

    conn_id: int
    user_id: UserId
    callback: Callback = field(repr=False)

    def deliver(self, frame: Frame) -> None:
        self.callback(frame)


class DeliveryChannel:
    """Fans named events out to the live connections of target identities.

    Delivery is at most once per currently connected handle. Nothing is
    queued for identities without a connection; the REST history is the
    durable path.
    """

    def __init__(self) -> None:
        self._connections: Dict[UserId, List[Connection]] = {}
        self._ids = itertools.count(1)

    def connect(self, user_id: UserId, callback: Callback) -> Connection:
        connection = Connection(conn_id=next(self._ids), user_id=user_id, callback=callback)
        self._connections.setdefault(user_id, []).append(connection)
        logger.debug("connection %s opened for %s", connection.conn_id, user_id)
        self._announce_online_users()
        return connection

    def disconnect(self, connection: Connection) -> None:
        handles = self._connections.get(connection.user_id)
        if not handles:
            return
        try:
            handles.remove(connection)
        except ValueError:
            return
        if not handles:
            self._connections.pop(connection.user_id, None)
        logger.debug("connection %s closed for %s", connection.conn_id, connection.user_id)
        self._announce_online_users()

    def is_online(self, user_id: UserId) -> bool:
        return bool(self._connections.get(user_id))

    def online_users(self) -> List[str]:
        return sorted(str(user_id) for user_id, handles in self._connections.items() if handles)

    def connection_count(self, user_id: UserId | None = None) -> int:
        if user_id is not None:
            return len(self._connections.get(user_id, []))
        return sum(len(handles) for handles in self._connections.values())

    def publish(self, event: str, payload: Any, target_user_ids: Iterable[UserId]) -> int:
        """Deliver ``event`` to every connection of each distinct target."""

        frame = make_frame(event, payload)
        delivered = 0
        for user_id in dict.fromkeys(target_user_ids):
            handles = self._connections.get(user_id)
            if not handles:
                logger.debug("%s skipped for offline user %s", event, user_id)
                continue
            for connection in list(handles):
                delivered += self._deliver(connection, frame)
        return delivered

    def broadcast_all(self, event: str, payload: Any = None) -> int:
        frame = make_frame(event, payload)
        delivered = 0
        for handles in list(self._connections.values()):
            for connection in list(handles):
                delivered += self._deliver(connection, frame)
        return delivered

    def _announce_online_users(self) -> None:
        self.broadcast_all(ONLINE_USERS, self.online_users())

    @staticmethod
    def _deliver(connection: Connection, frame: Frame) -> int:
        try:
            connection.deliver(frame)
        except Exception:
            logger.exception("delivery to connection %s failed", connection.conn_id)
            return 0
        return 1
