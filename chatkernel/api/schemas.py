from __future__ import annotations

from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from chatkernel.config import MAX_TEMPERATURE, MAX_TOKENS_CEILING

MAX_MESSAGE_LENGTH = 65536
MAX_ID_LENGTH = 128

_VALID_ERROR_CODES = {
    "validation_error",
    "unauthorized",
    "not_found",
    "conflict",
    "rate_limited",
    "server_error",
    "provider_error",
    "provider_timeout",
    "job_exhausted",
}


class WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, protected_namespaces=()
    )


class ErrorBody(WireModel):
    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(WireModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class GenerationOptions(WireModel):
    model: Optional[str] = Field(None, max_length=MAX_ID_LENGTH)
    max_tokens: Optional[int] = Field(None, ge=1, le=MAX_TOKENS_CEILING)
    temperature: Optional[float] = Field(None, ge=0.0, le=MAX_TEMPERATURE)


def _require_text(value: str) -> str:
    if not value or not value.strip():
        raise ValueError("must not be empty")
    return value


class ChatRequest(GenerationOptions):
    message: str = Field(..., max_length=MAX_MESSAGE_LENGTH)
    conversation_id: Optional[str] = Field(None, max_length=MAX_ID_LENGTH)

    @field_validator("message")
    @classmethod
    def _message_not_blank(cls, value: str) -> str:
        return _require_text(value)


class ChatResponse(WireModel):
    conversation_id: str
    message_id: str
    content: str
    model: str
    tokens: int
    finish_reason: str
    created_at: datetime


class EmbeddingRequest(WireModel):
    text: str = Field(..., max_length=MAX_MESSAGE_LENGTH)
    model: Optional[str] = Field(None, max_length=MAX_ID_LENGTH)

    @field_validator("text")
    @classmethod
    def _text_not_blank(cls, value: str) -> str:
        return _require_text(value)


class EmbeddingResponse(WireModel):
    embedding: List[float]
    model: str
    tokens: int


class CreateConversationRequest(WireModel):
    title: Optional[str] = Field(default=None, max_length=255)


class ConversationResponse(WireModel):
    id: str
    user_id: str
    title: str
    created_at: datetime
    updated_at: datetime


class MessageResponse(WireModel):
    id: str
    conversation_id: str
    role: Literal["user", "assistant", "system"]
    content: str
    seq: int
    token_count: Optional[int] = None
    model_name: Optional[str] = None
    created_at: datetime


class ConversationDetailResponse(ConversationResponse):
    messages: List[MessageResponse] = Field(default_factory=list)


class ConversationSummary(WireModel):
    id: str
    title: str
    user_id: str
    message_count: int
    created_at: datetime
    updated_at: datetime


class PageMeta(WireModel):
    total: int
    page: int
    limit: int
    total_pages: int


class ConversationListResponse(WireModel):
    data: List[ConversationSummary]
    meta: PageMeta


class UsageResponse(WireModel):
    total_tokens: int
    conversations_count: int
    messages_count: int
    last_used: datetime


class CompletionJobRequest(GenerationOptions):
    conversation_id: str = Field(..., min_length=1, max_length=MAX_ID_LENGTH)
    message_id: str = Field(..., min_length=1, max_length=MAX_ID_LENGTH)


class EmbeddingJobRequest(EmbeddingRequest):
    pass


class JobAcceptedResponse(WireModel):
    job_id: str
    status: Literal["queued"]


class JobStatusResponse(WireModel):
    job_id: str
    kind: Literal["completion", "embedding"]
    state: Literal["queued", "active", "completed", "failed"]
    progress: int
    attempts: int
    result: Optional[dict] = None
    failed_reason: Optional[str] = None


class StreamStartPayload(GenerationOptions):
    """``data`` of a client ``start`` frame on the chat WebSocket."""

    user_id: Optional[str] = Field(None, max_length=MAX_ID_LENGTH)
    message: str = Field(..., max_length=MAX_MESSAGE_LENGTH)
    conversation_id: Optional[str] = Field(None, max_length=MAX_ID_LENGTH)


class StreamFrame(BaseModel):
    event: str = Field(..., min_length=1, max_length=64)
    data: dict = Field(default_factory=dict)

    @field_validator("data", mode="before")
    @classmethod
    def _default_data(cls, value: Any) -> dict:
        return {} if value is None else value
