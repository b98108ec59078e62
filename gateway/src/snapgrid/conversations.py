from __future__ import annotations

import asyncio
import secrets
import sqlite3
from dataclasses import dataclass, field
from typing import Dict, List, Set

from .errors import NotFound
from .identity import ConversationKey, UserId
from .sqlite_backend import SQLiteBackend

DELETED = "deleted"
CLEARED = "cleared"


def new_conversation_id() -> str:
    return f"c_{secrets.token_urlsafe(12)}"


@dataclass
class Conversation:
    """A two-party thread with per-participant visibility markers.

    ``deleted_by``/``cleared_by`` hold who currently hides the thread or its
    history. ``deleted_at``/``cleared_at`` keep the instant of the latest
    delete/clear per user and are not reset when a new message restores the
    thread.
    """

    conv_id: str
    key: ConversationKey
    created_at_ms: int
    updated_at_ms: int
    message_ids: List[str] = field(default_factory=list)
    deleted_by: Set[UserId] = field(default_factory=set)
    cleared_by: Set[UserId] = field(default_factory=set)
    deleted_at: Dict[UserId, int] = field(default_factory=dict)
    cleared_at: Dict[UserId, int] = field(default_factory=dict)

    @property
    def participants(self) -> tuple[UserId, UserId]:
        return self.key.participants()

    def is_participant(self, user_id: UserId) -> bool:
        return user_id in self.participants

    def is_listed_for(self, user_id: UserId) -> bool:
        return user_id not in self.deleted_by

    def peer_of(self, user_id: UserId) -> UserId:
        return self.key.other(user_id)

    def snapshot(self) -> "Conversation":
        return Conversation(
            conv_id=self.conv_id,
            key=self.key,
            created_at_ms=self.created_at_ms,
            updated_at_ms=self.updated_at_ms,
            message_ids=list(self.message_ids),
            deleted_by=set(self.deleted_by),
            cleared_by=set(self.cleared_by),
            deleted_at=dict(self.deleted_at),
            cleared_at=dict(self.cleared_at),
        )


class InMemoryConversationStore:
    def __init__(self) -> None:
        self._conversations: Dict[str, Conversation] = {}
        self._by_pair: Dict[ConversationKey, str] = {}
        self._lock = asyncio.Lock()

    async def find_or_create(
        self, user_a: UserId, user_b: UserId, now_ms: int
    ) -> tuple[Conversation, bool]:
        """Return the conversation for the unordered pair, creating it once."""

        key = ConversationKey.from_participants(user_a, user_b)
        async with self._lock:
            conv_id = self._by_pair.get(key)
            if conv_id is not None:
                return self._conversations[conv_id].snapshot(), False
            conversation = Conversation(
                conv_id=new_conversation_id(),
                key=key,
                created_at_ms=now_ms,
                updated_at_ms=now_ms,
            )
            self._conversations[conversation.conv_id] = conversation
            self._by_pair[key] = conversation.conv_id
            return conversation.snapshot(), True

    async def find(self, user_a: UserId, user_b: UserId) -> Conversation | None:
        key = ConversationKey.from_participants(user_a, user_b)
        conv_id = self._by_pair.get(key)
        if conv_id is None:
            return None
        return self._conversations[conv_id].snapshot()

    async def get(self, conv_id: str) -> Conversation | None:
        conversation = self._conversations.get(conv_id)
        return conversation.snapshot() if conversation else None

    async def append_message(self, conv_id: str, msg_id: str, now_ms: int) -> Conversation:
        async with self._lock:
            conversation = self._require_conversation(conv_id)
            if msg_id not in conversation.message_ids:
                conversation.message_ids.append(msg_id)
            conversation.updated_at_ms = now_ms
            for participant in conversation.participants:
                conversation.deleted_by.discard(participant)
                conversation.cleared_by.discard(participant)
            return conversation.snapshot()

    async def mark_deleted(self, conv_id: str, user_id: UserId, now_ms: int) -> Conversation:
        async with self._lock:
            conversation = self._require_conversation(conv_id)
            if user_id not in conversation.deleted_by:
                conversation.deleted_by.add(user_id)
                conversation.deleted_at[user_id] = now_ms
            return conversation.snapshot()

    async def mark_cleared(self, conv_id: str, user_id: UserId, now_ms: int) -> Conversation:
        async with self._lock:
            conversation = self._require_conversation(conv_id)
            if user_id not in conversation.cleared_by:
                conversation.cleared_by.add(user_id)
                conversation.cleared_at[user_id] = now_ms
            return conversation.snapshot()

    async def list_for_user(self, user_id: UserId) -> List[Conversation]:
        """Conversations ``user_id`` has not deleted, most recently active first."""

        listed = [
            conversation
            for conversation in self._conversations.values()
            if conversation.is_participant(user_id) and conversation.is_listed_for(user_id)
        ]
        listed.sort(key=lambda c: (c.updated_at_ms, c.created_at_ms), reverse=True)
        return [conversation.snapshot() for conversation in listed]

    def _require_conversation(self, conv_id: str) -> Conversation:
        conversation = self._conversations.get(conv_id)
        if conversation is None:
            raise NotFound("conversation not found")
        return conversation


class SQLiteConversationStore:
    def __init__(self, backend: SQLiteBackend) -> None:
        self._backend = backend

    async def find_or_create(
        self, user_a: UserId, user_b: UserId, now_ms: int
    ) -> tuple[Conversation, bool]:
        key = ConversationKey.from_participants(user_a, user_b)
        return await asyncio.to_thread(self._find_or_create, key, now_ms)

    async def find(self, user_a: UserId, user_b: UserId) -> Conversation | None:
        key = ConversationKey.from_participants(user_a, user_b)
        return await asyncio.to_thread(self._find, key)

    async def get(self, conv_id: str) -> Conversation | None:
        return await asyncio.to_thread(self._get, conv_id)

    async def append_message(self, conv_id: str, msg_id: str, now_ms: int) -> Conversation:
        return await asyncio.to_thread(self._append_message, conv_id, msg_id, now_ms)

    async def mark_deleted(self, conv_id: str, user_id: UserId, now_ms: int) -> Conversation:
        return await asyncio.to_thread(self._mark, conv_id, user_id, DELETED, now_ms)

    async def mark_cleared(self, conv_id: str, user_id: UserId, now_ms: int) -> Conversation:
        return await asyncio.to_thread(self._mark, conv_id, user_id, CLEARED, now_ms)

    async def list_for_user(self, user_id: UserId) -> List[Conversation]:
        return await asyncio.to_thread(self._list_for_user, user_id)

    def _find_or_create(self, key: ConversationKey, now_ms: int) -> tuple[Conversation, bool]:
        with self._backend.lock:
            conn = self._backend.connection
            cursor = conn.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                cursor.execute(
                    """
                    INSERT OR IGNORE INTO conversations
                        (conv_id, pair_key, user_a, user_b, created_at_ms, updated_at_ms)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (new_conversation_id(), key.pair_key, str(key.user_a), str(key.user_b), now_ms, now_ms),
                )
                created = cursor.rowcount == 1
                row = cursor.execute(
                    "SELECT conv_id FROM conversations WHERE pair_key=?", (key.pair_key,)
                ).fetchone()
                conversation = self._load(conn, row[0])
                conn.commit()
                return conversation, created
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()

    def _find(self, key: ConversationKey) -> Conversation | None:
        with self._backend.lock:
            conn = self._backend.connection
            row = conn.execute("SELECT conv_id FROM conversations WHERE pair_key=?", (key.pair_key,)).fetchone()
            if row is None:
                return None
            return self._load(conn, row[0])

    def _get(self, conv_id: str) -> Conversation | None:
        with self._backend.lock:
            return self._load(self._backend.connection, conv_id)

    def _append_message(self, conv_id: str, msg_id: str, now_ms: int) -> Conversation:
        with self._backend.lock:
            conn = self._backend.connection
            cursor = conn.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                self._require_conversation(cursor, conv_id)
                already = cursor.execute(
                    "SELECT 1 FROM conversation_messages WHERE conv_id=? AND msg_id=?", (conv_id, msg_id)
                ).fetchone()
                if already is None:
                    position = cursor.execute(
                        "SELECT COALESCE(MAX(position), 0) + 1 FROM conversation_messages WHERE conv_id=?",
                        (conv_id,),
                    ).fetchone()[0]
                    cursor.execute(
                        "INSERT INTO conversation_messages (conv_id, position, msg_id) VALUES (?, ?, ?)",
                        (conv_id, position, msg_id),
                    )
                # A new message restores the thread for both participants.
                cursor.execute("UPDATE conversation_markers SET active=0 WHERE conv_id=?", (conv_id,))
                cursor.execute("UPDATE conversations SET updated_at_ms=? WHERE conv_id=?", (now_ms, conv_id))
                conversation = self._load(conn, conv_id)
                conn.commit()
                return conversation
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()

    def _mark(self, conv_id: str, user_id: UserId, kind: str, now_ms: int) -> Conversation:
        with self._backend.lock:
            conn = self._backend.connection
            cursor = conn.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                self._require_conversation(cursor, conv_id)
                row = cursor.execute(
                    "SELECT active FROM conversation_markers WHERE conv_id=? AND user_id=? AND kind=?",
                    (conv_id, str(user_id), kind),
                ).fetchone()
                if row is None or not row[0]:
                    cursor.execute(
                        """
                        INSERT OR REPLACE INTO conversation_markers (conv_id, user_id, kind, active, at_ms)
                        VALUES (?, ?, ?, 1, ?)
                        """,
                        (conv_id, str(user_id), kind, now_ms),
                    )
                conversation = self._load(conn, conv_id)
                conn.commit()
                return conversation
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()

    def _list_for_user(self, user_id: UserId) -> List[Conversation]:
        with self._backend.lock:
            conn = self._backend.connection
            rows = conn.execute(
                """
                SELECT conv_id FROM conversations
                WHERE (user_a=? OR user_b=?)
                  AND conv_id NOT IN (
                      SELECT conv_id FROM conversation_markers
                      WHERE user_id=? AND kind='deleted' AND active=1
                  )
                ORDER BY updated_at_ms DESC, created_at_ms DESC
                """,
                (str(user_id), str(user_id), str(user_id)),
            ).fetchall()
            conversations = []
            for row in rows:
                conversation = self._load(conn, row[0])
                if conversation is not None:
                    conversations.append(conversation)
            return conversations

    @staticmethod
    def _require_conversation(cursor: sqlite3.Cursor, conv_id: str) -> None:
        row = cursor.execute("SELECT 1 FROM conversations WHERE conv_id=?", (conv_id,)).fetchone()
        if row is None:
            raise NotFound("conversation not found")

    @staticmethod
    def _load(conn: sqlite3.Connection, conv_id: str) -> Conversation | None:
        row = conn.execute(
            "SELECT conv_id, user_a, user_b, created_at_ms, updated_at_ms FROM conversations WHERE conv_id=?",
            (conv_id,),
        ).fetchone()
        if row is None:
            return None
        conversation = Conversation(
            conv_id=row[0],
            key=ConversationKey.from_participants(row[1], row[2]),
            created_at_ms=row[3],
            updated_at_ms=row[4],
        )
        conversation.message_ids = [
            msg_row[0]
            for msg_row in conn.execute(
                "SELECT msg_id FROM conversation_messages WHERE conv_id=? ORDER BY position ASC",
                (conv_id,),
            ).fetchall()
        ]
        for marker in conn.execute(
            "SELECT user_id, kind, active, at_ms FROM conversation_markers WHERE conv_id=?",
            (conv_id,),
        ).fetchall():
            user_id = UserId(marker[0])
            if marker[1] == DELETED:
                conversation.deleted_at[user_id] = marker[3]
                if marker[2]:
                    conversation.deleted_by.add(user_id)
            else:
                conversation.cleared_at[user_id] = marker[3]
                if marker[2]:
                    conversation.cleared_by.add(user_id)
        return conversation
