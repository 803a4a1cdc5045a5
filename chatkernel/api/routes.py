from __future__ import annotations

import json
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, Query, Response, WebSocket, WebSocketDisconnect
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from chatkernel.api.schemas import (
    ChatRequest,
    ChatResponse,
    CompletionJobRequest,
    ConversationDetailResponse,
    ConversationListResponse,
    ConversationResponse,
    CreateConversationRequest,
    EmbeddingJobRequest,
    EmbeddingRequest,
    EmbeddingResponse,
    Envelope,
    JobAcceptedResponse,
    JobStatusResponse,
    MessageResponse,
    StreamFrame,
    StreamStartPayload,
    UsageResponse,
)
from chatkernel.logging import get_correlation_id, get_logger, set_correlation_id
from chatkernel.service.errors import AuthenticationError, RateLimitedError
from chatkernel.service.gateway import EVENT_ERROR, ExecutionMode, TurnEvent
from chatkernel.service.runtime import Runtime, check_rate_limit, get_runtime
from chatkernel.service.streaming import StreamingSession
from chatkernel.storage.models import Conversation, Message

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

MAX_USER_ID_LENGTH = 128


def get_user(x_user_id: Optional[str] = Header(None, alias="X-User-ID")) -> str:
    """Principal asserted by the trusted upstream auth layer."""
    if not x_user_id or not x_user_id.strip():
        raise AuthenticationError("missing X-User-ID header")
    user_id = x_user_id.strip()
    if len(user_id) > MAX_USER_ID_LENGTH:
        raise AuthenticationError("invalid X-User-ID header")
    return user_id


def _ok(data: Any) -> Envelope:
    envelope = Envelope(status="ok", data=data)
    cid = get_correlation_id()
    if cid:
        envelope.request_id = cid
    return envelope


async def _enforce_chat_rate_limit(runtime: Runtime, user_id: str) -> None:
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime,
        f"chat:{user_id}",
        runtime.settings.chat_rate_limit_per_minute,
        60,
        return_remaining=True,
    )
    if not allowed:
        raise RateLimitedError(
            "rate limit exceeded",
            detail={"retry_after": reset_seconds, "remaining": remaining},
        )


def _conversation_payload(conversation: Conversation) -> ConversationResponse:
    return ConversationResponse(
        id=conversation.id,
        user_id=conversation.user_id,
        title=conversation.title,
        created_at=conversation.created_at,
        updated_at=conversation.updated_at,
    )


def _message_payload(message: Message) -> MessageResponse:
    return MessageResponse(
        id=message.id,
        conversation_id=message.conversation_id,
        role=message.role.value,
        content=message.content,
        seq=message.seq,
        token_count=message.token_count,
        model_name=message.model_name,
        created_at=message.created_at,
    )


def _camel_keys(data: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if data is None:
        return None
    return {to_camel(key): value for key, value in data.items()}


@router.post("/chat", response_model=Envelope, tags=["chat"])
async def chat(body: ChatRequest, user_id: str = Depends(get_user)):
    """Synchronous completion: persists both turns and charges usage."""
    runtime = get_runtime()
    await _enforce_chat_rate_limit(runtime, user_id)
    gateway = runtime.gateway
    options = gateway.resolve_options(
        model=body.model, max_tokens=body.max_tokens, temperature=body.temperature
    )
    result = await gateway.run(
        user_id,
        body.message,
        body.conversation_id,
        mode=ExecutionMode.SYNC,
        options=options,
    )
    return _ok(
        ChatResponse(
            conversation_id=result.conversation_id,
            message_id=result.message_id,
            content=result.content,
            model=result.model,
            tokens=result.tokens,
            finish_reason=result.finish_reason,
            created_at=result.created_at,
        )
    )


@router.post("/embeddings", response_model=Envelope, tags=["chat"])
async def create_embedding(body: EmbeddingRequest, user_id: str = Depends(get_user)):
    runtime = get_runtime()
    payload = await runtime.gateway.embed(user_id, body.text, model=body.model)
    return _ok(EmbeddingResponse(**payload))


@router.post(
    "/conversations", response_model=Envelope, status_code=201, tags=["conversations"]
)
async def create_conversation(
    body: CreateConversationRequest, user_id: str = Depends(get_user)
):
    runtime = get_runtime()
    conversation = runtime.conversations.create(user_id, title=body.title)
    return _ok(_conversation_payload(conversation))


@router.get("/conversations", response_model=Envelope, tags=["conversations"])
async def list_conversations(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user_id: str = Depends(get_user),
):
    runtime = get_runtime()
    listing = runtime.conversations.list(user_id, page=page, limit=limit)
    return _ok(ConversationListResponse.model_validate(listing))


@router.get(
    "/conversations/{conversation_id}", response_model=Envelope, tags=["conversations"]
)
async def get_conversation(conversation_id: str, user_id: str = Depends(get_user)):
    runtime = get_runtime()
    conversation, messages = runtime.conversations.get(conversation_id, user_id)
    base = _conversation_payload(conversation)
    return _ok(
        ConversationDetailResponse(
            **base.model_dump(),
            messages=[_message_payload(m) for m in messages],
        )
    )


@router.delete(
    "/conversations/{conversation_id}", status_code=204, tags=["conversations"]
)
async def delete_conversation(conversation_id: str, user_id: str = Depends(get_user)):
    runtime = get_runtime()
    runtime.conversations.delete(conversation_id, user_id)
    return Response(status_code=204)


@router.get("/usage", response_model=Envelope, tags=["usage"])
async def get_usage(user_id: str = Depends(get_user)):
    runtime = get_runtime()
    return _ok(UsageResponse(**runtime.usage.stats(user_id)))


@router.post("/jobs/completions", response_model=Envelope, status_code=202, tags=["jobs"])
async def enqueue_completion(body: CompletionJobRequest, user_id: str = Depends(get_user)):
    runtime = get_runtime()
    options = runtime.gateway.resolve_options(
        model=body.model, max_tokens=body.max_tokens, temperature=body.temperature
    )
    accepted = runtime.jobs.enqueue_completion(
        user_id, body.conversation_id, body.message_id, options
    )
    return _ok(JobAcceptedResponse(**accepted))


@router.post("/jobs/embeddings", response_model=Envelope, status_code=202, tags=["jobs"])
async def enqueue_embedding(body: EmbeddingJobRequest, user_id: str = Depends(get_user)):
    runtime = get_runtime()
    accepted = runtime.jobs.enqueue_embedding(user_id, body.text, model=body.model)
    return _ok(JobAcceptedResponse(**accepted))


@router.get("/jobs/{job_id}", response_model=Envelope, tags=["jobs"])
async def get_job_status(job_id: str, user_id: str = Depends(get_user)):
    runtime = get_runtime()
    status = runtime.jobs.status(job_id, user_id)
    status["result"] = _camel_keys(status.get("result"))
    return _ok(JobStatusResponse(**status))


@router.websocket("/chat/stream")
async def websocket_chat(ws: WebSocket):
    """Streaming chat: one connection owns one StreamingSession.

    Frames are ``{"event": ..., "data": {...}}`` both ways. Client events are
    ``start`` and ``stop``; a malformed frame yields an ``error`` event and the
    connection stays open.
    """
    runtime = get_runtime()
    await ws.accept()
    request_id = set_correlation_id(ws.headers.get("x-request-id"))
    header_user = (ws.headers.get("x-user-id") or "").strip() or None

    async def send(event: TurnEvent) -> None:
        await ws.send_json({"event": event.name, "data": event.data})

    async def send_error(message: str) -> None:
        await send(TurnEvent(EVENT_ERROR, {"message": message}))

    session = StreamingSession(runtime.gateway, send)
    logger.info("websocket_connected", request_id=request_id, user_id=header_user)
    try:
        while True:
            raw = await ws.receive_text()
            try:
                frame = StreamFrame.model_validate(json.loads(raw))
            except (json.JSONDecodeError, PydanticValidationError, TypeError):
                logger.warning("websocket_invalid_frame", request_id=request_id)
                await send_error("invalid frame: expected {\"event\", \"data\"} JSON")
                continue

            if frame.event == "stop":
                await session.handle_stop()
                continue
            if frame.event != "start":
                await send_error(f"unknown event: {frame.event}")
                continue

            try:
                start = StreamStartPayload.model_validate(frame.data)
            except PydanticValidationError as exc:
                fields = ", ".join(
                    ".".join(str(part) for part in err.get("loc", ())) for err in exc.errors()
                )
                await send_error(f"invalid start payload: {fields or 'data'}")
                continue
            user_id = header_user or start.user_id
            if not user_id:
                await send_error("userId is required")
                continue
            await session.handle_start(
                user_id,
                start.message,
                start.conversation_id,
                model=start.model,
                max_tokens=start.max_tokens,
                temperature=start.temperature,
            )
    except WebSocketDisconnect:
        logger.info("websocket_disconnected", request_id=request_id)
    finally:
        await session.close()
