from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --- Requests ---


class ChatRequest(CamelModel):
    query: str
    session_id: int | None = None


class SearchRequest(CamelModel):
    query: str


class ProfileRequest(CamelModel):
    profile: str


class SessionCreateRequest(CamelModel):
    title: str | None = None


class SessionRenameRequest(CamelModel):
    title: str | None = None


# --- Responses ---


class ChatResponse(CamelModel):
    response: str
    session_id: int
    task_id: str | None = None
    detected_endpoint: str | None = None


class ChatMessageResponse(CamelModel):
    id: int
    session_id: int
    role: str
    content: str
    detected_endpoint: str | None = None
    created_at: datetime


class ChatHistoryResponse(CamelModel):
    session_id: int | None = None
    messages: list[ChatMessageResponse]


class ChatSessionResponse(CamelModel):
    id: int
    title: str | None
    created_at: datetime
    updated_at: datetime


class TaskCreatedResponse(CamelModel):
    task_id: str


class TaskStatusResponse(CamelModel):
    task_id: str
    status: str
    result: str | None = None
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


class StopTaskResponse(CamelModel):
    task_id: str
    stop_requested: bool
