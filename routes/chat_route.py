"""FastAPI routes for chat sessions, turns, model, and principal."""

from typing import Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from controllers.chat_controller import (
    cancel_turn,
    create_session,
    delete_session,
    get_messages,
    list_sessions,
    select_session,
    send_message,
    set_principal,
    switch_model,
)

router = APIRouter()


class CreatePayload(BaseModel):
    title: Optional[str] = None


class MessagePayload(BaseModel):
    text: str
    stream: Optional[bool] = None
    document_text: Optional[str] = None


class ModelPayload(BaseModel):
    model: str


class PrincipalPayload(BaseModel):
    principal_id: str
    email: Optional[str] = None


async def _run(call):
    try:
        return await call
    except HTTPException:
        raise
    except Exception as exc:
        raise HTTPException(status_code=500, detail=str(exc))


@router.get("/sessions")
async def list_sessions_route(request: Request):
    return await _run(list_sessions(request))


@router.post("/sessions")
async def create_session_route(request: Request, payload: CreatePayload):
    return await _run(create_session(request, payload.title))


@router.post("/sessions/{session_id}/select")
async def select_session_route(request: Request, session_id: str):
    return await _run(select_session(request, session_id))


@router.get("/sessions/{session_id}/messages")
async def get_messages_route(request: Request, session_id: str):
    return await _run(get_messages(request, session_id))


@router.delete("/sessions/{session_id}")
async def delete_session_route(request: Request, session_id: str):
    return await _run(delete_session(request, session_id))


@router.post("/sessions/{session_id}/messages")
async def send_message_route(request: Request, session_id: str, payload: MessagePayload):
    return await _run(send_message(request, session_id, payload.text, payload.stream, payload.document_text))


@router.post("/chat/cancel")
async def cancel_route(request: Request):
    return await _run(cancel_turn(request))


@router.get("/model")
async def get_model_route(request: Request):
    return {"model": request.app.state.conversation_store.model}


@router.put("/model")
async def put_model_route(request: Request, payload: ModelPayload):
    return await _run(switch_model(request, payload.model))


@router.put("/principal")
async def put_principal_route(request: Request, payload: PrincipalPayload):
    return await _run(set_principal(request, payload.principal_id, payload.email))


@router.delete("/principal")
async def delete_principal_route(request: Request):
    return await _run(set_principal(request, None))
