"""Chat session and turn handlers used by the HTTP routes."""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import HTTPException, Request

from models.errors import ChatSyncError, NotAuthenticated, PersistenceError, TurnInProgress
from services.auth.principal import Principal, PrincipalProvider
from services.chat.conversation_store import ConversationStore
from services.chat.send_orchestrator import SendOrchestrator


def _store(request: Request) -> ConversationStore:
    return request.app.state.conversation_store


def _orchestrator(request: Request) -> SendOrchestrator:
    return request.app.state.send_orchestrator


def to_http_error(exc: ChatSyncError) -> HTTPException:
    """Translate a chat-core error into an HTTP error."""
    if isinstance(exc, NotAuthenticated):
        return HTTPException(status_code=401, detail=str(exc))
    if isinstance(exc, TurnInProgress):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, PersistenceError):
        return HTTPException(status_code=503, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


def store_snapshot(store: ConversationStore) -> Dict[str, Any]:
    """Return the session list, selection, model, and streaming flag."""
    return {
        "sessions": [session.to_dict(include_messages=False) for session in store.sessions],
        "selected_session_id": store.selected_session_id,
        "model": store.model,
        "is_streaming": store.is_streaming,
    }


async def list_sessions(request: Request) -> Dict[str, Any]:
    return store_snapshot(_store(request))


async def create_session(request: Request, title: Optional[str]) -> Dict[str, Any]:
    try:
        session = await _store(request).create_session(title)
    except ChatSyncError as exc:
        raise to_http_error(exc) from exc
    return session.to_dict()


async def select_session(request: Request, session_id: str) -> Dict[str, Any]:
    try:
        session = await _store(request).select_session(session_id)
    except ChatSyncError as exc:
        raise to_http_error(exc) from exc
    return session.to_dict()


async def get_messages(request: Request, session_id: str) -> Dict[str, Any]:
    session = _store(request).get_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return session.to_dict()


async def delete_session(request: Request, session_id: str) -> Dict[str, Any]:
    store = _store(request)
    if store.get_session(session_id) is None:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    try:
        await store.delete_session(session_id)
    except ChatSyncError as exc:
        raise to_http_error(exc) from exc
    return {"deleted": session_id, "selected_session_id": store.selected_session_id}


async def send_message(
    request: Request,
    session_id: str,
    text: str,
    stream: Optional[bool] = None,
    document_text: Optional[str] = None,
) -> Dict[str, Any]:
    """Select `session_id` and run one turn; returns the sealed reply."""
    store = _store(request)
    try:
        if store.selected_session_id != session_id:
            await store.select_session(session_id)
        reply = await _orchestrator(request).send_message(text, stream=stream, document_text=document_text)
    except ChatSyncError as exc:
        raise to_http_error(exc) from exc
    return {
        "session_id": session_id,
        "reply": reply.to_dict() if reply is not None else None,
    }


async def cancel_turn(request: Request) -> Dict[str, Any]:
    cancelled = await _orchestrator(request).cancel()
    return {"cancelled": cancelled}


async def switch_model(request: Request, model: str) -> Dict[str, Any]:
    store = _store(request)
    store.switch_model(model)
    return {"model": store.model}


async def set_principal(request: Request, principal_id: Optional[str], email: Optional[str] = None) -> Dict[str, Any]:
    """Install (or clear) the principal resolved by the sign-in flow and reload."""
    principals: PrincipalProvider = request.app.state.principals
    if principal_id:
        principals.sign_in(Principal(id=principal_id, email=email))
    else:
        principals.sign_out()
    try:
        await _store(request).reload()
    except ChatSyncError as exc:
        raise to_http_error(exc) from exc
    return store_snapshot(_store(request))
