"""Device-local persistence for sessions and the selection pointer.

Two slots back this adapter: one holds the whole session collection, the
other the selected session id. Every write rewrites both. Ids are
generated on the device and never rewritten.
"""

from __future__ import annotations

import logging
import time
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

from dal.persistence_adapter import PersistenceAdapter, StoredState
from dal.slot_store import JsonSlotStore
from models.chat_models import Message, MessageId, Session
from models.errors import PersistenceError
from services.auth.principal import Principal

LOGGER = logging.getLogger(__name__)

SESSIONS_SLOT = "chat_sessions"
SELECTION_SLOT = "chat_selected_session"


class LocalAdapter(PersistenceAdapter):
    """Single-writer persistence on the local device."""

    requires_principal = False

    def __init__(self, base_dir: Path | str) -> None:
        self.slots = JsonSlotStore(base_dir)
        self._records: Dict[str, Dict[str, Any]] = {}
        self._selected_id: Optional[str] = None

    async def load(self, principal: Optional[Principal] = None) -> StoredState:
        raw_sessions = await self.slots.read(SESSIONS_SLOT) or []
        selected_id = await self.slots.read(SELECTION_SLOT)

        self._records = {record["id"]: record for record in raw_sessions if record.get("id")}
        self._selected_id = selected_id if selected_id in self._records else None

        return StoredState(
            sessions=[Session.from_dict(record) for record in self._records.values()],
            selected_id=self._selected_id,
        )

    async def save(self) -> None:
        """Write the session collection and the selection pointer."""
        try:
            await self.slots.write_many(
                {
                    SESSIONS_SLOT: list(self._records.values()),
                    SELECTION_SLOT: self._selected_id,
                }
            )
        except (OSError, TypeError, ValueError) as exc:
            raise PersistenceError(f"Failed to write local chat state: {exc}") from exc

    async def _commit(self, records: Dict[str, Dict[str, Any]], selected_id: Optional[str]) -> None:
        """Install the new mirror and save it; the old mirror comes back if the write fails."""
        previous = (self._records, self._selected_id)
        self._records, self._selected_id = records, selected_id
        try:
            await self.save()
        except PersistenceError:
            self._records, self._selected_id = previous
            raise

    async def create_session(self, principal: Optional[Principal], session: Session) -> Session:
        session_id = session.id or str(uuid.uuid4())
        record = session.to_dict()
        record["id"] = session_id
        record["messages"] = []
        records = {session_id: record, **{k: v for k, v in self._records.items() if k != session_id}}
        await self._commit(records, self._selected_id)
        return Session.from_dict(record)

    async def fetch_messages(self, principal: Optional[Principal], session_id: str) -> List[Message]:
        record = self._records.get(session_id)
        if record is None:
            return []
        return [Message.from_dict({**raw, "session_id": session_id}) for raw in record.get("messages", [])]

    async def save_message(
        self, principal: Optional[Principal], session_id: str, message: Message, updated_at: float
    ) -> MessageId:
        record = self._records.get(session_id)
        if record is None:
            raise PersistenceError(f"Session {session_id} is not stored locally")
        updated = {**record, "messages": [*record["messages"], message.to_dict()], "updated_at": updated_at}
        await self._commit({**self._records, session_id: updated}, self._selected_id)
        return message.id

    async def update_session_title(self, principal: Optional[Principal], session_id: str, title: str) -> None:
        record = self._records.get(session_id)
        if record is None:
            return
        updated = {**record, "title": title, "updated_at": time.time()}
        await self._commit({**self._records, session_id: updated}, self._selected_id)

    async def delete_session(self, principal: Optional[Principal], session_id: str) -> None:
        if session_id not in self._records:
            return
        records = {k: v for k, v in self._records.items() if k != session_id}
        selected_id = None if self._selected_id == session_id else self._selected_id
        await self._commit(records, selected_id)

    async def save_selection(self, principal: Optional[Principal], session_id: Optional[str]) -> None:
        await self._commit(self._records, session_id)
