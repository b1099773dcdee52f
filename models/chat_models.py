"""Conversation domain models shared by the store, adapters, and routes."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

MessageId = Union[int, str]

DEFAULT_TITLE = "New chat"


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class TurnState(str, Enum):
    """Per-session turn lifecycle."""

    IDLE = "idle"
    AWAITING_RESPONSE = "awaiting_response"
    STREAMING = "streaming"
    SEALED = "sealed"
    ERRORED = "errored"


@dataclass
class Message:
    """A single chat message.

    Attributes:
        id: Local monotonic id, replaced by the storage id once persisted remotely.
        role: `user` or `assistant`.
        content: UTF-8 text; frozen once `sealed` is True.
        session_id: Owning session id.
        created_at: Unix timestamp (seconds).
        sealed: True once the content can no longer change.
    """

    id: Optional[MessageId]
    role: Role
    content: str
    session_id: Optional[str] = None
    created_at: float = field(default_factory=lambda: time.time())
    sealed: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role.value,
            "content": self.content,
            "session_id": self.session_id,
            "created_at": self.created_at,
            "sealed": self.sealed,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        return cls(
            id=data.get("id"),
            role=Role(data["role"]),
            content=data.get("content") or "",
            session_id=data.get("session_id"),
            created_at=float(data.get("created_at") or time.time()),
            sealed=True,
        )

    def as_history_entry(self) -> Dict[str, str]:
        """Reduce the message to the role/content pair sent to the endpoint."""
        return {"role": self.role.value, "content": self.content}


@dataclass
class Session:
    """A conversation and its ordered messages.

    `messages_loaded` marks whether `messages` reflects the durable store;
    remote sessions are listed without their messages and loaded lazily.
    """

    id: Optional[str]
    title: str = DEFAULT_TITLE
    messages: List[Message] = field(default_factory=list)
    owner_id: Optional[str] = None
    created_at: float = field(default_factory=lambda: time.time())
    updated_at: float = field(default_factory=lambda: time.time())
    messages_loaded: bool = True

    def to_dict(self, include_messages: bool = True) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "owner_id": self.owner_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
        if include_messages:
            data["messages"] = [message.to_dict() for message in self.messages]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        session_id = data["id"]
        messages = [Message.from_dict({**raw, "session_id": session_id}) for raw in data.get("messages") or []]
        now = time.time()
        return cls(
            id=session_id,
            title=data.get("title") or DEFAULT_TITLE,
            messages=messages,
            owner_id=data.get("owner_id"),
            created_at=float(data.get("created_at") or now),
            updated_at=float(data.get("updated_at") or now),
            messages_loaded=True,
        )


@dataclass
class StreamingBuffer:
    """Accumulates deltas for the single in-flight assistant reply."""

    session_id: str
    message: Message
    parts: List[str] = field(default_factory=list)

    def append(self, delta: str) -> str:
        self.parts.append(delta)
        return self.text

    @property
    def text(self) -> str:
        return "".join(self.parts)
