from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query

from wykra.api.deps import get_orchestrator, get_user_id
from wykra.chat.orchestrator import ChatOrchestrator, SessionNotFoundError
from wykra.llm_client import LLMError
from wykra.models.schemas import (
    ChatHistoryResponse,
    ChatMessageResponse,
    ChatRequest,
    ChatResponse,
    ChatSessionResponse,
    SessionCreateRequest,
    SessionRenameRequest,
)
from wykra.services import error_tracking

router = APIRouter(prefix="/api/v1/chat", tags=["chat"])


@router.post("", response_model=ChatResponse)
async def chat(
    request: ChatRequest,
    user_id: str = Depends(get_user_id),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
):
    """Answer one chat turn. When the turn starts a task, ``taskId`` is set
    and the result is posted to the session once the task finishes.
    """
    try:
        reply = await orchestrator.chat(user_id, request.query, request.session_id)
    except SessionNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except LLMError as exc:
        error_tracking.capture_exception(exc, user_id=user_id, session_id=request.session_id)
        raise HTTPException(status_code=503, detail=f"Chat model unavailable: {exc}") from exc
    return ChatResponse(
        response=reply.response,
        session_id=reply.session_id,
        task_id=reply.task_id,
        detected_endpoint=reply.detected_endpoint,
    )


@router.get("/history", response_model=ChatHistoryResponse)
async def history(
    session_id: int | None = Query(default=None, alias="sessionId"),
    user_id: str = Depends(get_user_id),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
):
    """Messages of a session, oldest first. Defaults to the latest session."""
    try:
        resolved_id, messages = await orchestrator.get_history(user_id, session_id)
    except SessionNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return ChatHistoryResponse(
        session_id=resolved_id,
        messages=[ChatMessageResponse(**m) for m in messages],
    )


@router.get("/sessions", response_model=list[ChatSessionResponse])
async def list_sessions(
    user_id: str = Depends(get_user_id),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
):
    """List the user's chat sessions, most recently active first."""
    sessions = await orchestrator.list_sessions(user_id)
    return [ChatSessionResponse(**s) for s in sessions]


@router.post("/sessions", response_model=ChatSessionResponse)
async def create_session(
    request: SessionCreateRequest | None = None,
    user_id: str = Depends(get_user_id),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
):
    title = request.title if request else None
    session = await orchestrator.create_session(user_id, title)
    return ChatSessionResponse(**session)


@router.patch("/sessions/{session_id}", response_model=ChatSessionResponse)
async def rename_session(
    session_id: int,
    request: SessionRenameRequest,
    user_id: str = Depends(get_user_id),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
):
    try:
        session = await orchestrator.rename_session(user_id, session_id, request.title)
    except SessionNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return ChatSessionResponse(**session)


@router.delete("/sessions/{session_id}")
async def delete_session(
    session_id: int,
    user_id: str = Depends(get_user_id),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
):
    """Delete a session and its messages. Task links survive without a message."""
    try:
        await orchestrator.delete_session(user_id, session_id)
    except SessionNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"status": "deleted"}
