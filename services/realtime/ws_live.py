"""Dispatch live-view websocket commands to the chat store and orchestrator."""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Set

from fastapi import WebSocket

from models.errors import ChatSyncError
from services.chat.conversation_store import ConversationStore
from services.chat.send_orchestrator import SendOrchestrator

LOGGER = logging.getLogger(__name__)


class LiveViewHandler:
	"""Route websocket messages for one connected live view."""

	def __init__(self, store: ConversationStore, orchestrator: SendOrchestrator) -> None:
		self.store = store
		self.orchestrator = orchestrator
		self._turns: Set[asyncio.Task] = set()

	async def handle(self, websocket: WebSocket, payload: Dict[str, Any]) -> None:
		"""Process a single inbound websocket payload."""
		request_id = payload.get("request_id")
		message_type = payload.get("type")
		try:
			if message_type == "chat.send":
				result = self._start_turn(websocket, request_id, payload)
			elif message_type == "chat.cancel":
				result = {"type": "chat.cancelled", "cancelled": await self.orchestrator.cancel()}
			elif message_type == "session.select":
				session_id = (payload.get("session_id") or "").strip()
				if not session_id:
					raise ValueError("session_id is required.")
				session = await self.store.select_session(session_id)
				result = {"type": "session.selected", "session": session.to_dict()}
			elif message_type == "model.switch":
				self.store.switch_model(payload.get("model") or "")
				result = {"type": "model.current", "model": self.store.model}
			else:
				raise ValueError("Unsupported message type.")
			if result is not None:
				result["request_id"] = request_id
				await self._send(websocket, result)
		except (ChatSyncError, ValueError) as exc:
			await self._send_error(websocket, request_id, str(exc))

	def _start_turn(self, websocket: WebSocket, request_id: Any, payload: Dict[str, Any]) -> Dict[str, Any]:
		"""Run the turn in the background so cancel commands are still received."""
		text = (payload.get("text") or "").strip()
		if not text:
			raise ValueError("Message text is required.")
		task = asyncio.create_task(
			self._run_turn(websocket, request_id, text, payload.get("stream"), payload.get("document_text"))
		)
		self._turns.add(task)
		task.add_done_callback(self._turns.discard)
		return {"type": "chat.accepted"}

	async def _run_turn(self, websocket: WebSocket, request_id: Any, text: str, stream, document_text) -> None:
		try:
			reply = await self.orchestrator.send_message(text, stream=stream, document_text=document_text)
		except ChatSyncError as exc:
			await self._send_error(websocket, request_id, str(exc))
			return
		except Exception:
			LOGGER.exception("Live turn failed")
			await self._send_error(websocket, request_id, "Internal error while generating a reply.")
			return
		await self._send(
			websocket,
			{"type": "chat.reply", "request_id": request_id, "reply": reply.to_dict() if reply else None},
		)

	async def close(self) -> None:
		"""Cancel running turns; each seals its partial reply before exiting."""
		turns = list(self._turns)
		for task in turns:
			task.cancel()
		if turns:
			await asyncio.gather(*turns, return_exceptions=True)

	async def _send_error(self, websocket: WebSocket, request_id: Any, detail: str) -> None:
		await self._send(websocket, {"type": "error", "request_id": request_id, "detail": detail})

	async def _send(self, websocket: WebSocket, payload: Dict[str, Any]) -> None:
		await websocket.send_text(json.dumps(payload))
