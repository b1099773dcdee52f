"""Persistence capability shared by the local and remote adapters.

The `ConversationStore` is the only caller. Adapters never mutate the
store's objects; they receive values and return what was made durable.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional

from models.chat_models import Message, MessageId, Session
from services.auth.principal import Principal


@dataclass
class StoredState:
    """Everything an adapter restores at startup."""

    sessions: List[Session] = field(default_factory=list)
    selected_id: Optional[str] = None


class PersistenceAdapter(ABC):
    """Durable storage for sessions, messages, and the selection pointer."""

    #: True when every operation needs an authenticated principal.
    requires_principal: bool = False

    @abstractmethod
    async def load(self, principal: Optional[Principal]) -> StoredState:
        """Restore sessions and the selection pointer."""

    @abstractmethod
    async def create_session(self, principal: Optional[Principal], session: Session) -> Session:
        """Persist a new session and return it with its durable id.

        `session.id` may be None, in which case the adapter assigns one.
        """

    @abstractmethod
    async def fetch_messages(self, principal: Optional[Principal], session_id: str) -> List[Message]:
        """Return a session's messages in creation order."""

    @abstractmethod
    async def save_message(
        self, principal: Optional[Principal], session_id: str, message: Message, updated_at: float
    ) -> MessageId:
        """Insert a sealed message and touch the session's `updated_at`.

        Raises `PersistenceError` only when the insert fails; a failed
        timestamp update is logged.
        """

    @abstractmethod
    async def update_session_title(self, principal: Optional[Principal], session_id: str, title: str) -> None:
        """Persist a new session title."""

    @abstractmethod
    async def delete_session(self, principal: Optional[Principal], session_id: str) -> None:
        """Remove a session and its messages."""

    @abstractmethod
    async def save_selection(self, principal: Optional[Principal], session_id: Optional[str]) -> None:
        """Persist the selected-session pointer."""

    async def close(self) -> None:
        """Release held resources."""
