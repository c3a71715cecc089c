"""Append-only conversation stores.

Rows follow the hosted ``messages`` table shape: ``id, conversation_id,
role, content, created_at, attachments`` where ``attachments`` is a JSON
array serialised as text (or NULL).
"""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Any, Protocol

import aiosqlite

from .exceptions import PersistenceError
from .models import Message

LOGGER = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS messages (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    conversation_id TEXT NOT NULL,
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    created_at TEXT NOT NULL,
    attachments TEXT
)
"""
INDEX = (
    "CREATE INDEX IF NOT EXISTS messages_conversation "
    "ON messages(conversation_id, seq)"
)


class ConversationStore(Protocol):
    """Durable, ordered message log keyed by conversation."""

    async def append(self, conversation_id: str, message: Message) -> None: ...

    async def list(self, conversation_id: str) -> list[Message]: ...


class InMemoryConversationStore:
    """Process-local store; keeps rows in insertion order."""

    def __init__(self) -> None:
        self._rows: dict[str, list[dict[str, Any]]] = {}

    async def append(self, conversation_id: str, message: Message) -> None:
        self._rows.setdefault(conversation_id, []).append(message.to_row(conversation_id))

    async def list(self, conversation_id: str) -> list[Message]:
        return [Message.from_row(row) for row in self._rows.get(conversation_id, [])]

    def rows(self, conversation_id: str) -> list[dict[str, Any]]:
        """Return raw rows, as they would appear in the hosted table."""
        return [dict(row) for row in self._rows.get(conversation_id, [])]


class SqliteConversationStore:
    """Local SQLite mirror of the hosted messages table."""

    def __init__(self, database_path: str | Path) -> None:
        self.database_path = Path(database_path).expanduser()
        self._schema_ready = False
        self._schema_lock = asyncio.Lock()

    async def _ensure_schema(self) -> None:
        if self._schema_ready:
            return
        async with self._schema_lock:
            if self._schema_ready:
                return
            self.database_path.parent.mkdir(parents=True, exist_ok=True)
            async with aiosqlite.connect(self.database_path) as db:
                await db.execute(SCHEMA)
                await db.execute(INDEX)
                await db.commit()
            if os.name == "posix":
                try:
                    self.database_path.chmod(0o600)
                except OSError:
                    LOGGER.warning(
                        "Unable to enforce 0600 permissions for %s", self.database_path
                    )
            self._schema_ready = True

    async def append(self, conversation_id: str, message: Message) -> None:
        row = message.to_row(conversation_id)
        try:
            await self._ensure_schema()
            async with aiosqlite.connect(self.database_path) as db:
                await db.execute(
                    "INSERT INTO messages(id,conversation_id,role,content,created_at,attachments) "
                    "VALUES(?,?,?,?,?,?)",
                    [
                        row["id"],
                        row["conversation_id"],
                        row["role"],
                        row["content"],
                        row["created_at"],
                        row["attachments"],
                    ],
                )
                await db.commit()
        except (aiosqlite.Error, OSError) as exc:
            raise PersistenceError(f"Unable to append message {message.id}: {exc}") from exc

    async def list(self, conversation_id: str) -> list[Message]:
        try:
            await self._ensure_schema()
            async with aiosqlite.connect(self.database_path) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(
                    "SELECT id,conversation_id,role,content,created_at,attachments "
                    "FROM messages WHERE conversation_id=? ORDER BY seq",
                    [conversation_id],
                )
                rows = await cursor.fetchall()
        except (aiosqlite.Error, OSError) as exc:
            raise PersistenceError(
                f"Unable to list conversation {conversation_id}: {exc}"
            ) from exc
        try:
            return [Message.from_row(dict(row)) for row in rows]
        except (KeyError, ValueError) as exc:
            raise PersistenceError(
                f"Conversation {conversation_id} holds an unreadable row: {exc}"
            ) from exc
