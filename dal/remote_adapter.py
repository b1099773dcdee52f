"""Async relational persistence for chat sessions and messages.

The database is the identity authority: session ids are assigned here when
the caller supplies none, and message ids come from the `messages` primary
key. Every query is scoped by the authenticated principal's id.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import List, Optional, Sequence

import aiosqlite

from dal.persistence_adapter import PersistenceAdapter, StoredState
from models.chat_models import Message, MessageId, Role, Session
from models.errors import NotAuthenticated, PersistenceError
from services.auth.principal import Principal
from utils.database_init import AsyncDatabaseInitializer

LOGGER = logging.getLogger(__name__)


class RemoteAdapter(PersistenceAdapter):
    """Data access layer for the `sessions` and `messages` tables.

    The constructor accepts an `AsyncDatabaseInitializer` (or any object
    exposing an async `connection()` context manager that yields an
    `aiosqlite.Connection`).
    """

    requires_principal = True

    _SESSION_COLUMNS = "id, title, owner_id, created_at, updated_at"
    _MESSAGE_COLUMNS = "id, session_id, role, content, created_at"

    def __init__(self, db_initializer: AsyncDatabaseInitializer) -> None:
        self._db = db_initializer

    @staticmethod
    def _require(principal: Optional[Principal]) -> Principal:
        if principal is None:
            raise NotAuthenticated("Sign in to sync chats.")
        return principal

    async def load(self, principal: Optional[Principal]) -> StoredState:
        """Return the principal's sessions (messages not loaded) and selection."""
        if principal is None:
            return StoredState()
        sessions = await self.fetch_sessions(principal)
        try:
            async with self._db.connection() as conn:
                cur = await conn.execute(
                    "SELECT session_id FROM session_selection WHERE owner_id = ?",
                    (principal.id,),
                )
                row = await cur.fetchone()
        except aiosqlite.Error as exc:
            raise PersistenceError(f"Failed to load selected session: {exc}") from exc
        selected_id = row[0] if row else None
        if selected_id not in {session.id for session in sessions}:
            selected_id = None
        return StoredState(sessions=sessions, selected_id=selected_id)

    async def fetch_sessions(self, principal: Optional[Principal]) -> List[Session]:
        """Return the principal's sessions, newest-updated first."""
        principal = self._require(principal)
        try:
            async with self._db.connection() as conn:
                cur = await conn.execute(
                    f"SELECT {self._SESSION_COLUMNS} FROM sessions WHERE owner_id = ? "
                    "ORDER BY updated_at DESC, created_at DESC",
                    (principal.id,),
                )
                rows = await cur.fetchall()
        except aiosqlite.Error as exc:
            raise PersistenceError(f"Failed to fetch sessions: {exc}") from exc
        return [self._row_to_session(row) for row in rows]

    async def create_session(self, principal: Optional[Principal], session: Session) -> Session:
        principal = self._require(principal)
        session_id = session.id or str(uuid.uuid4())
        now = time.time()
        try:
            async with self._db.connection() as conn:
                await conn.execute(
                    f"INSERT INTO sessions ({self._SESSION_COLUMNS}) VALUES (?, ?, ?, ?, ?)",
                    (session_id, session.title, principal.id, now, now),
                )
                await conn.commit()
        except aiosqlite.Error as exc:
            raise PersistenceError(f"Failed to create session {session_id}: {exc}") from exc
        return Session(
            id=session_id,
            title=session.title,
            owner_id=principal.id,
            created_at=now,
            updated_at=now,
            messages_loaded=True,
        )

    async def fetch_messages(self, principal: Optional[Principal], session_id: str) -> List[Message]:
        principal = self._require(principal)
        try:
            async with self._db.connection() as conn:
                cur = await conn.execute(
                    "SELECT m.id, m.session_id, m.role, m.content, m.created_at FROM messages m "
                    "JOIN sessions s ON s.id = m.session_id "
                    "WHERE m.session_id = ? AND s.owner_id = ? "
                    "ORDER BY m.created_at, m.id",
                    (session_id, principal.id),
                )
                rows = await cur.fetchall()
        except aiosqlite.Error as exc:
            raise PersistenceError(f"Failed to fetch messages for session {session_id}: {exc}") from exc
        return [self._row_to_message(row) for row in rows]

    async def save_message(
        self, principal: Optional[Principal], session_id: str, message: Message, updated_at: float
    ) -> MessageId:
        """Insert the message, then touch the session timestamp.

        Returns the storage-assigned message id. Only the insert can fail
        the call; the timestamp update is logged on failure.
        """
        principal = self._require(principal)
        try:
            async with self._db.connection() as conn:
                cur = await conn.execute(
                    "INSERT INTO messages (session_id, role, content, created_at) "
                    "SELECT ?, ?, ?, ? WHERE EXISTS "
                    "(SELECT 1 FROM sessions WHERE id = ? AND owner_id = ?)",
                    (
                        session_id,
                        message.role.value,
                        message.content,
                        message.created_at,
                        session_id,
                        principal.id,
                    ),
                )
                await conn.commit()
                if cur.rowcount != 1:
                    raise PersistenceError(f"Session {session_id} not found for current user")
                message_id = cur.lastrowid

                try:
                    await self._touch_session(conn, principal, session_id, updated_at)
                except aiosqlite.Error as exc:
                    LOGGER.warning("Failed to update timestamp for session %s: %s", session_id, exc)
        except aiosqlite.Error as exc:
            raise PersistenceError(f"Failed to save message: {exc}") from exc

        return message_id

    async def _touch_session(
        self, conn: aiosqlite.Connection, principal: Principal, session_id: str, updated_at: float
    ) -> None:
        await conn.execute(
            "UPDATE sessions SET updated_at = ? WHERE id = ? AND owner_id = ?",
            (updated_at, session_id, principal.id),
        )
        await conn.commit()

    async def update_session_title(self, principal: Optional[Principal], session_id: str, title: str) -> None:
        principal = self._require(principal)
        try:
            async with self._db.connection() as conn:
                await conn.execute(
                    "UPDATE sessions SET title = ? WHERE id = ? AND owner_id = ?",
                    (title, session_id, principal.id),
                )
                await conn.commit()
        except aiosqlite.Error as exc:
            raise PersistenceError(f"Failed to rename session {session_id}: {exc}") from exc

    async def delete_session(self, principal: Optional[Principal], session_id: str) -> None:
        principal = self._require(principal)
        try:
            async with self._db.connection() as conn:
                await conn.execute(
                    "DELETE FROM sessions WHERE id = ? AND owner_id = ?",
                    (session_id, principal.id),
                )
                await conn.execute(
                    "UPDATE session_selection SET session_id = NULL WHERE owner_id = ? AND session_id = ?",
                    (principal.id, session_id),
                )
                await conn.commit()
        except aiosqlite.Error as exc:
            raise PersistenceError(f"Failed to delete session {session_id}: {exc}") from exc

    async def save_selection(self, principal: Optional[Principal], session_id: Optional[str]) -> None:
        principal = self._require(principal)
        try:
            async with self._db.connection() as conn:
                await conn.execute(
                    "INSERT INTO session_selection (owner_id, session_id) VALUES (?, ?) "
                    "ON CONFLICT(owner_id) DO UPDATE SET session_id = excluded.session_id",
                    (principal.id, session_id),
                )
                await conn.commit()
        except aiosqlite.Error as exc:
            raise PersistenceError(f"Failed to save selected session: {exc}") from exc

    @staticmethod
    def _row_to_session(row: Sequence[object]) -> Session:
        """Convert a DB row tuple into a Session whose messages load lazily."""
        return Session(
            id=row[0],
            title=row[1],
            owner_id=row[2],
            created_at=row[3],
            updated_at=row[4],
            messages_loaded=False,
        )

    @staticmethod
    def _row_to_message(row: Sequence[object]) -> Message:
        return Message(
            id=row[0],
            session_id=row[1],
            role=Role(row[2]),
            content=row[3],
            created_at=row[4],
        )
