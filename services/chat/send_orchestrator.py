"""Run one chat turn from user text to a sealed assistant reply."""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import aclosing
from typing import Any, Dict, List, Optional

from models.chat_models import Message
from models.errors import ChatSyncError, StreamReadError
from services.chat.conversation_store import ConversationStore
from services.openai.completion_client import CompletionClient, CompletionStream
from services.streaming.delta_extractor import DeltaKind, extract_delta
from services.streaming.frame_decoder import FrameDecoder

LOGGER = logging.getLogger(__name__)

FAILURE_TEXT = "Sorry, something went wrong while generating a reply. Please try again."


class SendOrchestrator:
    """Coordinate the store, the completion client, and the stream decoder."""

    def __init__(
        self,
        store: ConversationStore,
        client: CompletionClient,
        credential: Optional[str],
        *,
        streaming: bool = True,
        failure_text: str = FAILURE_TEXT,
    ) -> None:
        self.store = store
        self.client = client
        self.credential = credential
        self.streaming = streaming
        self.failure_text = failure_text
        self._active_stream: Optional[CompletionStream] = None

    async def send_message(
        self,
        text: str,
        *,
        stream: Optional[bool] = None,
        document_text: Optional[str] = None,
    ) -> Optional[Message]:
        """Send `text` in the selected session and return the sealed reply.

        Endpoint and transport failures are not raised: the reply is sealed
        with `failure_text` (or with the partial content already received)
        and the store returns to idle.

        Returns:
            The sealed assistant message, or None when `text` is empty.

        Raises:
            TurnInProgress: Another turn is awaiting a response or streaming.
            NotAuthenticated: Remote persistence is configured and nobody is signed in.
            PersistenceError: The user message could not be stored.
        """
        content = (text or "").strip()
        if not content:
            return None

        streaming = self.streaming if stream is None else stream
        if self.store.selected_session is None:
            await self.store.create_session()
        session_id = self.store.selected_session_id

        self.store.begin_turn(session_id)
        try:
            await self.store.append_user_message(content)
        except BaseException:
            self.store.abort_turn(session_id)
            raise

        history = self._build_history(session_id, document_text)
        self.store.start_assistant_message(session_id)
        started = time.monotonic()

        reply_text: Optional[str] = None
        try:
            if streaming:
                completed = await self._consume_stream(history)
            else:
                reply_text = await self._fetch_whole(history)
                completed = True
        except asyncio.CancelledError:
            LOGGER.info("Turn in session %s cancelled; sealing partial reply", session_id)
            await self._fail_quietly("cancelled")
            raise
        except ChatSyncError as exc:
            LOGGER.error("Turn in session %s failed: %s", session_id, exc)
            return await self._fail_quietly(type(exc).__name__)
        except Exception:
            LOGGER.exception("Unexpected error in session %s turn", session_id)
            await self._fail_quietly("internal")
            raise

        if not completed:
            LOGGER.info("Stream closed in session %s; sealing partial reply", session_id)
            return await self._fail_quietly("cancelled")

        reply = await self.store.seal_assistant_message(reply_text)
        LOGGER.info("Turn in session %s completed in %.3fs", session_id, time.monotonic() - started)
        return reply

    async def cancel(self) -> bool:
        """Close the in-flight stream; the partial reply is sealed by the running turn."""
        stream = self._active_stream
        if stream is None:
            return False
        await stream.close()
        return True

    def _build_history(self, session_id: str, document_text: Optional[str]) -> List[Dict[str, str]]:
        history = self.store.history(session_id)
        context = (document_text or "").strip()
        if context:
            history.insert(0, {"role": "system", "content": f"Reference document:\n{context}"})
        return history

    async def _consume_stream(self, history: List[Dict[str, str]]) -> bool:
        """Apply deltas until end of stream; False if the stream was closed early."""
        response = await self.client.request(history, self.credential, self.store.model, True)
        self._active_stream = response
        decoder = FrameDecoder()
        try:
            async with response:
                async with aclosing(decoder.frames(response.chunks())) as frames:
                    async for frame in frames:
                        delta = extract_delta(frame)
                        if delta.kind is DeltaKind.END:
                            break
                        if delta.kind is DeltaKind.TEXT:
                            self.store.append_delta(delta.text)
                return decoder.finished or not response.closed
        finally:
            self._active_stream = None

    async def _fetch_whole(self, history: List[Dict[str, str]]) -> str:
        response: Any = await self.client.request(history, self.credential, self.store.model, False)
        choices = getattr(response, "choices", None) or []
        message = getattr(choices[0], "message", None) if choices else None
        content = getattr(message, "content", None) if message is not None else None
        if content is None:
            raise StreamReadError("Completion response did not include a message.")
        return content

    async def _fail_quietly(self, reason: str) -> Optional[Message]:
        return await self.store.fail_turn(self.failure_text, reason)
