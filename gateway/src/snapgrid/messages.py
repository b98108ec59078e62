from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass
from typing import Dict, Iterable, List

from .identity import UserId
from .sqlite_backend import SQLiteBackend

# Stays under SQLITE_MAX_VARIABLE_NUMBER on older builds.
_SELECT_BATCH = 500


def new_message_id() -> str:
    return f"m_{secrets.token_urlsafe(12)}"


@dataclass(frozen=True)
class Message:
    """An immutable direct message."""

    msg_id: str
    sender_id: UserId
    receiver_id: UserId
    text: str
    created_at_ms: int

    def to_api_dict(self) -> dict[str, object]:
        return {
            "id": self.msg_id,
            "senderId": str(self.sender_id),
            "receiverId": str(self.receiver_id),
            "text": self.text,
            "createdAt": self.created_at_ms,
        }


class InMemoryMessageStore:
    """Message records keyed by id; references live on conversations."""

    def __init__(self) -> None:
        self._messages: Dict[str, Message] = {}

    async def create(self, sender_id: UserId, receiver_id: UserId, text: str, created_at_ms: int) -> Message:
        message = Message(
            msg_id=new_message_id(),
            sender_id=sender_id,
            receiver_id=receiver_id,
            text=text,
            created_at_ms=created_at_ms,
        )
        self._messages[message.msg_id] = message
        return message

    async def get(self, msg_id: str) -> Message | None:
        return self._messages.get(msg_id)

    async def get_many(self, msg_ids: Iterable[str]) -> List[Message]:
        """Return the known messages for ``msg_ids``, preserving their order."""

        return [self._messages[msg_id] for msg_id in msg_ids if msg_id in self._messages]


class SQLiteMessageStore:
    """Durable message records backed by SQLite."""

    def __init__(self, backend: SQLiteBackend) -> None:
        self._backend = backend

    async def create(self, sender_id: UserId, receiver_id: UserId, text: str, created_at_ms: int) -> Message:
        message = Message(
            msg_id=new_message_id(),
            sender_id=sender_id,
            receiver_id=receiver_id,
            text=text,
            created_at_ms=created_at_ms,
        )
        await asyncio.to_thread(self._insert, message)
        return message

    async def get(self, msg_id: str) -> Message | None:
        messages = await self.get_many([msg_id])
        return messages[0] if messages else None

    async def get_many(self, msg_ids: Iterable[str]) -> List[Message]:
        ids = list(msg_ids)
        if not ids:
            return []
        return await asyncio.to_thread(self._select_many, ids)

    def _insert(self, message: Message) -> None:
        with self._backend.lock:
            self._backend.connection.execute(
                """
                INSERT INTO messages (msg_id, sender_id, receiver_id, text, created_at_ms)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    message.msg_id,
                    str(message.sender_id),
                    str(message.receiver_id),
                    message.text,
                    message.created_at_ms,
                ),
            )

    def _select_many(self, msg_ids: List[str]) -> List[Message]:
        rows: list = []
        with self._backend.lock:
            for start in range(0, len(msg_ids), _SELECT_BATCH):
                batch = msg_ids[start : start + _SELECT_BATCH]
                placeholders = ",".join("?" for _ in batch)
                rows.extend(
                    self._backend.connection.execute(
                        "SELECT msg_id, sender_id, receiver_id, text, created_at_ms FROM messages "
                        f"WHERE msg_id IN ({placeholders})",
                        batch,
                    ).fetchall()
                )
        by_id = {
            row[0]: Message(
                msg_id=row[0],
                sender_id=UserId(row[1]),
                receiver_id=UserId(row[2]),
                text=row[3],
                created_at_ms=row[4],
            )
            for row in rows
        }
        return [by_id[msg_id] for msg_id in msg_ids if msg_id in by_id]
