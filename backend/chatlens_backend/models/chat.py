from __future__ import annotations

from datetime import datetime
from typing import List, Literal

from pydantic import Field

from .base import CamelModel
from .suggestion import Suggestion

MessageRole = Literal["user", "assistant"]


class ChatRequest(CamelModel):
    session_id: str
    user_id: str
    prompt: str


class StopRequest(CamelModel):
    session_id: str


class MessageMetrics(CamelModel):
    request_start_at: datetime
    first_token_at: datetime | None = None
    completed_at: datetime | None = None
    ttft: int | None = Field(None, description="Time to first token in ms")
    total_time: int | None = Field(None, description="Request start to completion in ms")
    token_count: int | None = None


class Message(CamelModel):
    message_id: str
    session_id: str
    user_id: str
    role: MessageRole
    content: str
    suggestions: List[Suggestion] = Field(default_factory=list)
    created_at: datetime
    metrics: MessageMetrics | None = None


class StreamMetrics(CamelModel):
    """Metrics block carried by the terminal ``done`` event."""

    request_start: str
    first_token_at: str | None = None
    completed_at: str
    ttft: int
    total_time: int


class SessionListItem(CamelModel):
    session_id: str
    title: str
    message_count: int
    last_message_at: datetime
    created_at: datetime


class SessionDetail(CamelModel):
    session_id: str
    user_id: str
    title: str
    created_at: datetime
    updated_at: datetime
    messages: List[Message] = Field(default_factory=list)


class SessionListResponse(CamelModel):
    sessions: List[SessionListItem]
