"""WebSocket endpoint that mirrors store changes to a live view."""

from __future__ import annotations

import asyncio
import json

from fastapi import APIRouter, Depends, HTTPException, WebSocket
from starlette.websockets import WebSocketDisconnect

from controllers.chat_controller import store_snapshot
from services.chat.conversation_store import ConversationStore, StoreEvent
from services.realtime.ws_live import LiveViewHandler

router = APIRouter()


def _require_store(websocket: WebSocket) -> ConversationStore:
	store = getattr(websocket.app.state, "conversation_store", None)
	if store is None:
		raise HTTPException(status_code=500, detail="Conversation store unavailable")
	return store


async def _pump(websocket: WebSocket, queue: "asyncio.Queue[StoreEvent]") -> None:
	while True:
		event = await queue.get()
		await websocket.send_text(json.dumps(event.to_dict()))


@router.websocket("/ws/live")
async def live_socket(websocket: WebSocket, store: ConversationStore = Depends(_require_store)):
	"""Push every store change and accept chat commands over one websocket."""
	await websocket.accept()
	await websocket.send_text(json.dumps({"type": "state.snapshot", **store_snapshot(store)}))

	queue: "asyncio.Queue[StoreEvent]" = asyncio.Queue()
	unsubscribe = store.subscribe(queue.put_nowait)
	pump = asyncio.create_task(_pump(websocket, queue))
	handler = LiveViewHandler(store, websocket.app.state.send_orchestrator)
	try:
		while True:
			try:
				raw = await websocket.receive_text()
			except WebSocketDisconnect:
				break
			try:
				payload = json.loads(raw)
			except json.JSONDecodeError:
				await websocket.send_text(json.dumps({"type": "error", "detail": "Payload must be JSON"}))
				continue
			await handler.handle(websocket, payload)
	finally:
		unsubscribe()
		await handler.close()
		pump.cancel()
		try:
			await pump
		except (asyncio.CancelledError, WebSocketDisconnect, RuntimeError):
			pass
