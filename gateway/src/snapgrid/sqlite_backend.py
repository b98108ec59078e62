from __future__ import annotations

import sqlite3
import threading
from pathlib import Path

SCHEMA_VERSION = 1


class SQLiteBackend:
    """Owns a shared SQLite connection and applies messaging migrations."""

    def __init__(self, db_path: str) -> None:
        self._lock = threading.Lock()
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._configure()
        self._apply_migrations()

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    @property
    def lock(self) -> threading.Lock:
        return self._lock

    def close(self) -> None:
        self._conn.close()

    def _configure(self) -> None:
        cursor = self._conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.close()

    def _apply_migrations(self) -> None:
        user_version = self._conn.execute("PRAGMA user_version").fetchone()[0]
        if user_version == 0:
            self._create_v1_schema()
            self._conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        elif user_version != SCHEMA_VERSION:
            raise ValueError(f"Unsupported schema version: {user_version}")

    def _create_v1_schema(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS messages (
                msg_id TEXT PRIMARY KEY,
                sender_id TEXT NOT NULL,
                receiver_id TEXT NOT NULL,
                text TEXT NOT NULL,
                created_at_ms INTEGER NOT NULL
            )
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS conversations (
                conv_id TEXT PRIMARY KEY,
                pair_key TEXT NOT NULL UNIQUE,
                user_a TEXT NOT NULL,
                user_b TEXT NOT NULL,
                created_at_ms INTEGER NOT NULL,
                updated_at_ms INTEGER NOT NULL
            )
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS conversation_messages (
                conv_id TEXT NOT NULL REFERENCES conversations(conv_id),
                position INTEGER NOT NULL,
                msg_id TEXT NOT NULL REFERENCES messages(msg_id),
                PRIMARY KEY (conv_id, position),
                UNIQUE (conv_id, msg_id)
            )
            """
        )
        # active=1 means the user is in deleted_by/cleared_by; at_ms survives restoration.
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS conversation_markers (
                conv_id TEXT NOT NULL REFERENCES conversations(conv_id),
                user_id TEXT NOT NULL,
                kind TEXT NOT NULL CHECK (kind IN ('deleted', 'cleared')),
                active INTEGER NOT NULL,
                at_ms INTEGER NOT NULL,
                PRIMARY KEY (conv_id, user_id, kind)
            )
            """
        )
        self._conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_conversations_user_a ON conversations (user_a, updated_at_ms)"
        )
        self._conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_conversations_user_b ON conversations (user_b, updated_at_ms)"
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS sessions (
                session_token TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                expires_at_ms INTEGER NOT NULL
            )
            """
        )
