"""
Shared fixtures and fakes for the chat-stream-sync test suite.

The completion endpoint is faked at the `CompletionClient` seam for store
and orchestrator tests; `test_completion_client.py` exercises the real
client against `httpx.MockTransport`.
"""

import json
from types import SimpleNamespace
from typing import Any, Iterable, List, Optional

import pytest

from dal.local_adapter import LocalAdapter
from dal.remote_adapter import RemoteAdapter
from models.errors import StreamReadError
from services.auth.principal import Principal, PrincipalProvider
from services.chat.conversation_store import ConversationStore
from utils.database_init import AsyncDatabaseInitializer

VALID_KEY = "sk-test-0123456789abcdefghij"


# ---------------------------------------------------------------------------
# Stream builders
# ---------------------------------------------------------------------------


def delta_record(content: Optional[str] = None, role: Optional[str] = None) -> str:
    """Return one `data:` line in the chat-completion chunk envelope."""
    delta = {}
    if role is not None:
        delta["role"] = role
    if content is not None:
        delta["content"] = content
    chunk = {"id": "chatcmpl-1", "object": "chat.completion.chunk", "choices": [{"index": 0, "delta": delta}]}
    return f"data: {json.dumps(chunk)}\n\n"


def sse_body(*contents: str, done: bool = True, extra: Iterable[str] = ()) -> bytes:
    """Build a complete stream body for the given delta contents."""
    lines = [delta_record(role="assistant")]
    lines.extend(extra)
    lines.extend(delta_record(content) for content in contents)
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines).encode("utf-8")


def split_every(body: bytes, size: int) -> List[bytes]:
    return [body[i : i + size] for i in range(0, len(body), size)]


# ---------------------------------------------------------------------------
# Completion fakes
# ---------------------------------------------------------------------------


class FakeStream:
    """Stand-in for `CompletionStream` that replays byte chunks."""

    def __init__(self, chunks: Iterable[bytes], fail_after: Optional[int] = None, on_chunk=None):
        self._chunks = list(chunks)
        self._fail_after = fail_after
        self._on_chunk = on_chunk
        self.closed = False

    async def chunks(self):
        for index, chunk in enumerate(self._chunks):
            if self._fail_after is not None and index >= self._fail_after:
                raise StreamReadError("connection reset")
            if self.closed:
                return
            yield chunk
            if self._on_chunk is not None:
                await self._on_chunk(index)

    async def close(self):
        self.closed = True

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()


def completion_response(content: str) -> Any:
    """Shape-compatible stand-in for a non-streaming `ChatCompletion`."""
    message = SimpleNamespace(role="assistant", content=content)
    return SimpleNamespace(choices=[SimpleNamespace(index=0, message=message)])


class FakeCompletionClient:
    """Return queued responses (or raise queued errors) in order."""

    def __init__(self, *responses: Any):
        self.responses = list(responses)
        self.calls: List[dict] = []

    async def request(self, history, credential, model, streaming, **options):
        self.calls.append(
            {"history": list(history), "credential": credential, "model": model, "streaming": streaming}
        )
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return response


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def principal():
    return Principal(id="user-1", email="user@example.com")


@pytest.fixture
def local_adapter(tmp_path):
    return LocalAdapter(tmp_path / "local")


@pytest.fixture
def db_initializer(tmp_path):
    return AsyncDatabaseInitializer(tmp_path / "db")


@pytest.fixture
def remote_adapter(db_initializer):
    return RemoteAdapter(db_initializer)


@pytest.fixture
def local_store(local_adapter):
    return ConversationStore(local_adapter, PrincipalProvider())


@pytest.fixture
def remote_store(remote_adapter, principal):
    return ConversationStore(remote_adapter, PrincipalProvider(principal))


@pytest.fixture
def events(local_store):
    captured = []
    local_store.subscribe(captured.append)
    return captured
