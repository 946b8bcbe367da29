"""Chat streaming and conversation endpoints."""

import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from ..llm.errors import RequestInProgressError
from ..llm.tokens import context_usage
from ..llm.types import Language
from ..service import ChatService, get_chat_service

logger = logging.getLogger(__name__)

router = APIRouter()

CONVERSATION_HEADER = "X-Conversation-ID"


class ChatIn(BaseModel):
    message: str
    conversation_id: Optional[str] = None
    model: Optional[str] = None
    temperature: Optional[float] = None
    language: Optional[str] = None


def _format_sse(data: dict) -> str:
    return f"data: {json.dumps(data, ensure_ascii=False)}\n\n"


def _not_found(conversation_id: str) -> JSONResponse:
    return JSONResponse(status_code=404, content={"error": f"Conversation '{conversation_id}' not found"})


@router.post("/chat")
async def chat_endpoint(payload: ChatIn, service: ChatService = Depends(get_chat_service)):
    """Stream the assistant reply as `data: {text, is_final, is_error}` frames."""
    if not payload.message.strip():
        return JSONResponse(status_code=400, content={"error": "message must not be empty"})
    if payload.language:
        try:
            Language.parse(payload.language)
        except ValueError as e:
            return JSONResponse(status_code=400, content={"error": str(e)})

    try:
        session = await service.get_session(payload.conversation_id)
    except KeyError:
        return _not_found(payload.conversation_id)
    if session.is_streaming:
        return JSONResponse(
            status_code=409,
            content={"error": "A reply is still streaming for this conversation; cancel it first"},
        )

    async def event_stream():
        try:
            async for delta in session.send(
                payload.message,
                model=payload.model,
                temperature=payload.temperature,
                language=payload.language,
            ):
                yield _format_sse({"text": delta.text, "is_final": delta.is_final, "is_error": delta.is_error})
        except RequestInProgressError as e:
            yield _format_sse({"text": f"Error: {e.message}", "is_final": True, "is_error": True})

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={CONVERSATION_HEADER: session.id},
    )


@router.post("/chat/{conversation_id}/cancel")
async def cancel_endpoint(conversation_id: str, service: ChatService = Depends(get_chat_service)):
    session = service.sessions.get(conversation_id)
    if session is None:
        if await service.store.get(conversation_id) is None:
            return _not_found(conversation_id)
        return {"conversation_id": conversation_id, "cancelled": False, "partial_text": ""}
    was_streaming = session.is_streaming
    partial = session.cancel()
    return {"conversation_id": conversation_id, "cancelled": was_streaming, "partial_text": partial}


@router.get("/conversations/{conversation_id}")
async def get_conversation(conversation_id: str, service: ChatService = Depends(get_chat_service)):
    record = await service.store.get(conversation_id)
    if record is None:
        return _not_found(conversation_id)
    return record.to_dict()


@router.get("/conversations/{conversation_id}/context")
async def get_context_usage(conversation_id: str, service: ChatService = Depends(get_chat_service)):
    """How much of the model's context window the conversation occupies."""
    record = await service.store.get(conversation_id)
    if record is None:
        return _not_found(conversation_id)
    total, max_tokens, percent, over_budget = context_usage(record.messages, record.system_prompt, record.model)
    return {
        "model": record.model,
        "total_tokens": total,
        "max_tokens": max_tokens,
        "percent_used": round(percent, 1),
        "will_compress": over_budget,
    }
