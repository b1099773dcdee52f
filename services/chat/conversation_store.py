"""Single owner of chat session state.

The store holds the session list, the selected-session pointer, the
active model name, and the one streaming buffer that may exist at a time.
Readers get the current objects and change notifications; all mutation
goes through the methods below, which also delegate durability to the
configured `PersistenceAdapter`.

Listeners are called synchronously inside the mutating call, so a live
view sees every delta as soon as it is applied.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from dal.persistence_adapter import PersistenceAdapter
from models.chat_models import (
    DEFAULT_TITLE,
    Message,
    Role,
    Session,
    StreamingBuffer,
    TurnState,
)
from models.errors import NotAuthenticated, PersistenceError, TurnInProgress
from services.auth.principal import Principal, PrincipalProvider
from services.chat.titles import derive_title

LOGGER = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4o"


@dataclass(frozen=True)
class StoreEvent:
    """A change notification delivered to store listeners."""

    kind: str
    session_id: Optional[str] = None
    message: Optional[Message] = None
    state: Optional[TurnState] = None
    delta: Optional[str] = None
    detail: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"type": self.kind, "session_id": self.session_id}
        if self.message is not None:
            data["message"] = self.message.to_dict()
        if self.state is not None:
            data["state"] = self.state.value
        if self.delta is not None:
            data["delta"] = self.delta
        if self.detail is not None:
            data["detail"] = self.detail
        return data


Listener = Callable[[StoreEvent], None]


class ConversationStore:
    """Manage sessions, messages, and the in-flight streaming buffer."""

    def __init__(
        self,
        adapter: PersistenceAdapter,
        principals: Optional[PrincipalProvider] = None,
        model: str = DEFAULT_MODEL,
    ) -> None:
        self.adapter = adapter
        self.principals = principals or PrincipalProvider()
        self._model = model
        self._sessions: List[Session] = []
        self._selected_id: Optional[str] = None
        self._buffer: Optional[StreamingBuffer] = None
        self._turn_states: Dict[str, TurnState] = {}
        self._listeners: List[Listener] = []
        self._next_message_id = 1
        self._initialized = False

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    @property
    def sessions(self) -> Tuple[Session, ...]:
        return tuple(self._sessions)

    @property
    def selected_session_id(self) -> Optional[str]:
        return self._selected_id

    @property
    def selected_session(self) -> Optional[Session]:
        return self.get_session(self._selected_id) if self._selected_id else None

    @property
    def model(self) -> str:
        return self._model

    @property
    def is_streaming(self) -> bool:
        return self._buffer is not None

    @property
    def streaming_text(self) -> str:
        return self._buffer.text if self._buffer else ""

    def get_session(self, session_id: Optional[str]) -> Optional[Session]:
        for session in self._sessions:
            if session.id == session_id:
                return session
        return None

    def turn_state(self, session_id: str) -> TurnState:
        return self._turn_states.get(session_id, TurnState.IDLE)

    def history(self, session_id: str) -> List[Dict[str, str]]:
        """Return sealed messages of a session as role/content pairs."""
        session = self.get_session(session_id)
        if session is None:
            return []
        return [message.as_history_entry() for message in session.messages if message.sealed]

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a change listener; returns a callable that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, kind: str, session_id: Optional[str] = None, **fields: Any) -> None:
        event = StoreEvent(kind=kind, session_id=session_id, **fields)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                LOGGER.exception("Store listener failed on %s", kind)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Load persisted sessions once and select one if none was stored."""
        if self._initialized:
            return
        principal = await self.principals.current()
        if principal is None and self.adapter.requires_principal:
            LOGGER.info("No principal; starting with an empty chat list")
            stored_sessions, selected_id = [], None
        else:
            stored = await self.adapter.load(principal)
            stored_sessions, selected_id = stored.sessions, stored.selected_id

        self._sessions = list(stored_sessions)
        self._selected_id = selected_id
        self._turn_states.clear()
        self._next_message_id = 1
        for session in self._sessions:
            self._track_ids(session.messages)

        if self._selected_id is None and self._sessions:
            self._selected_id = self._sessions[0].id
        if self._selected_id is not None:
            await self._ensure_messages(self._selected_id, principal)

        self._initialized = True
        self._emit("sessions.loaded", self._selected_id)

    async def reload(self) -> None:
        """Drop in-memory state and load again, e.g. after the principal changed."""
        if self._buffer is not None:
            raise TurnInProgress("Cannot reload while a reply is streaming.")
        self._initialized = False
        await self.initialize()

    async def create_session(self, title: Optional[str] = None, session_id: Optional[str] = None) -> Session:
        """Create a session, put it first in the list, and select it."""
        principal = await self._resolve_principal()
        draft = Session(
            id=session_id,
            title=(title or "").strip() or DEFAULT_TITLE,
            owner_id=principal.id if principal else None,
        )
        session = await self.adapter.create_session(principal, draft)
        self._sessions.insert(0, session)
        self._selected_id = session.id
        LOGGER.info("Created session %s", session.id)
        self._emit("session.created", session.id)
        self._emit("session.selected", session.id)
        await self._persist_selection(principal)
        return session

    async def select_session(self, session_id: str) -> Session:
        """Select a session, creating it under `session_id` if unknown."""
        principal = await self._resolve_principal()
        session = self.get_session(session_id)
        if session is None:
            LOGGER.info("Session %s unknown; creating it", session_id)
            return await self.create_session(session_id=session_id)

        self._selected_id = session_id
        self._emit("session.selected", session_id)
        await self._ensure_messages(session_id, principal)
        await self._persist_selection(principal)
        return session

    async def delete_session(self, session_id: str) -> None:
        """Delete a session and move the selection to a remaining one."""
        principal = await self._resolve_principal()
        session = self.get_session(session_id)
        if session is None:
            return
        if self.turn_state(session_id) in (TurnState.AWAITING_RESPONSE, TurnState.STREAMING):
            raise TurnInProgress(f"Session {session_id} has a reply in progress.")

        await self.adapter.delete_session(principal, session_id)
        self._sessions.remove(session)
        self._turn_states.pop(session_id, None)
        LOGGER.info("Deleted session %s", session_id)
        self._emit("session.deleted", session_id)

        if self._selected_id == session_id:
            self._selected_id = self._sessions[0].id if self._sessions else None
            self._emit("session.selected", self._selected_id)
            if self._selected_id is not None:
                await self._ensure_messages(self._selected_id, principal)
            await self._persist_selection(principal)

    def switch_model(self, model: str) -> None:
        """Set the model used by the next completion request."""
        name = (model or "").strip()
        if not name or name == self._model:
            return
        self._model = name
        self._emit("model.changed", detail=name)

    # ------------------------------------------------------------------
    # Turn primitives
    # ------------------------------------------------------------------

    def begin_turn(self, session_id: str) -> None:
        """Reserve the store for one turn on `session_id`.

        Raises:
            TurnInProgress: A turn is already awaiting a response or streaming.
        """
        if self.get_session(session_id) is None:
            raise KeyError(f"Session {session_id} not found")
        busy = self._buffer is not None or any(
            state in (TurnState.AWAITING_RESPONSE, TurnState.STREAMING) for state in self._turn_states.values()
        )
        if busy:
            raise TurnInProgress("A reply is already in progress.")
        self._set_state(session_id, TurnState.AWAITING_RESPONSE)

    def abort_turn(self, session_id: str) -> None:
        """Return to idle when a turn ends before an assistant message exists."""
        if self._buffer is not None and self._buffer.session_id == session_id:
            return
        if self.turn_state(session_id) != TurnState.IDLE:
            self._set_state(session_id, TurnState.IDLE)

    async def append_user_message(self, text: str) -> Optional[Message]:
        """Append a sealed user message to the selected session and persist it.

        The append is applied in memory first; if the durable insert fails
        it is removed again and `PersistenceError` is raised.
        """
        content = (text or "").strip()
        session = self.selected_session
        if not content or session is None:
            return None
        principal = await self._resolve_principal()

        message = Message(id=self._allocate_id(), role=Role.USER, content=content, session_id=session.id)
        previous_updated_at = session.updated_at
        session.messages.append(message)
        session.updated_at = message.created_at
        self._emit("message.appended", session.id, message=message)

        try:
            await self._persist_message(principal, session, message)
        except PersistenceError:
            LOGGER.warning("Rolling back user message in session %s", session.id)
            session.messages.remove(message)
            session.updated_at = previous_updated_at
            self._emit("message.removed", session.id, message=message)
            raise
        return message

    def start_assistant_message(self, session_id: str) -> Message:
        """Open the streaming buffer and its provisional tail message."""
        session = self.get_session(session_id)
        if session is None:
            raise KeyError(f"Session {session_id} not found")
        if self._buffer is not None:
            raise TurnInProgress("A reply is already streaming.")
        message = Message(
            id=self._allocate_id(),
            role=Role.ASSISTANT,
            content="",
            session_id=session_id,
            sealed=False,
        )
        session.messages.append(message)
        self._buffer = StreamingBuffer(session_id=session_id, message=message)
        self._emit("message.appended", session_id, message=message)
        return message

    def append_delta(self, text: str) -> None:
        """Apply one text delta to the streaming buffer and its mirror message."""
        buffer = self._buffer
        if buffer is None or not text:
            return
        buffer.message.content = buffer.append(text)
        if self.turn_state(buffer.session_id) != TurnState.STREAMING:
            self._set_state(buffer.session_id, TurnState.STREAMING)
        self._emit("message.delta", buffer.session_id, message=buffer.message, delta=text)

    async def seal_assistant_message(self, content: Optional[str] = None) -> Optional[Message]:
        """Freeze the tail assistant message and persist it.

        `content` replaces the buffer text when the whole reply arrived at
        once (non-streaming). The first successful reply of an untitled
        session also names the session.
        """
        buffer = self._buffer
        if buffer is None:
            return None
        message = buffer.message
        if content is not None:
            message.content = content
        session = self.get_session(buffer.session_id)
        name_session = (
            session is not None
            and session.title == DEFAULT_TITLE
            and not any(m.role == Role.ASSISTANT and m.sealed for m in session.messages)
        )
        self._close_buffer(TurnState.SEALED)
        await self._commit_sealed(session, message)
        if name_session and message.content.strip():
            await self._rename(session, derive_title(message.content))
        return message

    async def fail_turn(self, failure_text: str, reason: Optional[str] = None) -> Optional[Message]:
        """Seal the tail message after a failed or cancelled turn.

        Content already applied is kept as-is; if nothing arrived the
        message carries `failure_text` instead. The sealed message stays in
        the session even when it cannot be stored; that failure is logged.
        """
        buffer = self._buffer
        if buffer is None:
            return None
        message = buffer.message
        if not buffer.parts:
            message.content = failure_text
        session = self.get_session(buffer.session_id)
        self._set_state(buffer.session_id, TurnState.ERRORED, detail=reason)
        self._close_buffer(None)
        try:
            await self._commit_sealed(session, message, rollback=False)
        except (PersistenceError, NotAuthenticated) as exc:
            LOGGER.error("Could not store failed reply in session %s: %s", buffer.session_id, exc)
        return message

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _close_buffer(self, final_state: Optional[TurnState]) -> None:
        buffer = self._buffer
        buffer.message.sealed = True
        self._buffer = None
        if final_state is not None:
            self._set_state(buffer.session_id, final_state)
        self._emit("message.sealed", buffer.session_id, message=buffer.message)
        self._set_state(buffer.session_id, TurnState.IDLE)

    async def _commit_sealed(self, session: Optional[Session], message: Message, rollback: bool = True) -> None:
        if session is None:
            return
        principal = await self.principals.current()
        previous_updated_at = session.updated_at
        session.updated_at = message.created_at
        try:
            await self._persist_message(principal, session, message)
        except (PersistenceError, NotAuthenticated):
            session.updated_at = previous_updated_at
            if rollback:
                LOGGER.warning("Rolling back assistant message in session %s", session.id)
                if message in session.messages:
                    session.messages.remove(message)
                self._emit("message.removed", session.id, message=message)
            raise

    async def _persist_message(self, principal: Optional[Principal], session: Session, message: Message) -> None:
        durable_id = await self.adapter.save_message(principal, session.id, message, session.updated_at)
        if durable_id is not None and durable_id != message.id:
            message.id = durable_id
            self._track_ids([message])
            self._emit("message.persisted", session.id, message=message)

    async def _rename(self, session: Session, title: str) -> None:
        previous = session.title
        session.title = title
        self._emit("session.updated", session.id, detail=title)
        try:
            await self.adapter.update_session_title(await self.principals.current(), session.id, title)
        except (PersistenceError, NotAuthenticated) as exc:
            LOGGER.warning("Could not store title for session %s: %s", session.id, exc)
            session.title = previous
            self._emit("session.updated", session.id, detail=previous)

    async def _ensure_messages(self, session_id: str, principal: Optional[Principal]) -> None:
        session = self.get_session(session_id)
        if session is None or session.messages_loaded:
            return
        messages = await self.adapter.fetch_messages(principal, session_id)
        session.messages = messages
        session.messages_loaded = True
        self._track_ids(messages)
        self._emit("messages.loaded", session_id)

    async def _persist_selection(self, principal: Optional[Principal]) -> None:
        try:
            await self.adapter.save_selection(principal, self._selected_id)
        except PersistenceError as exc:
            LOGGER.warning("Could not store selected session: %s", exc)

    async def _resolve_principal(self) -> Optional[Principal]:
        principal = await self.principals.current()
        if principal is None and self.adapter.requires_principal:
            raise NotAuthenticated("Sign in to manage chats.")
        return principal

    def _set_state(self, session_id: str, state: TurnState, detail: Optional[str] = None) -> None:
        self._turn_states[session_id] = state
        self._emit("turn.state", session_id, state=state, detail=detail)

    def _allocate_id(self) -> int:
        message_id = self._next_message_id
        self._next_message_id += 1
        return message_id

    def _track_ids(self, messages: List[Message]) -> None:
        for message in messages:
            if isinstance(message.id, int) and message.id >= self._next_message_id:
                self._next_message_id = message.id + 1
