from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, AsyncIterator, Dict, List, Optional, Tuple, Union

from chatkernel.config import MAX_TEMPERATURE, MAX_TOKENS_CEILING
from chatkernel.logging import get_logger
from chatkernel.service.conversations import ConversationService
from chatkernel.service.errors import NotFoundError, ProviderError, ValidationError
from chatkernel.service.provider import (
    Completion,
    CompletionOptions,
    CompletionProvider,
    Embedding,
)
from chatkernel.service.tokenizer_utils import estimate_turn_tokens
from chatkernel.service.usage import UsageAccountant
from chatkernel.storage.models import Conversation, Message, MessageRole

if TYPE_CHECKING:
    from chatkernel.service.jobs import JobService

logger = get_logger(__name__)

EVENT_CONVERSATION_CREATED = "conversationCreated"
EVENT_USER_MESSAGE_SAVED = "userMessageSaved"
EVENT_CHUNK = "chunk"
EVENT_END = "end"
EVENT_ERROR = "error"
EVENT_STOPPED = "stopped"


class ExecutionMode(str, Enum):
    SYNC = "sync"
    STREAM = "stream"
    ASYNC = "async"


@dataclass(frozen=True)
class TurnEvent:
    """One outbound streaming event; ``data`` is already in wire shape."""

    name: str
    data: Dict[str, Any]


@dataclass
class PreparedTurn:
    user_id: str
    conversation: Conversation
    conversation_created: bool
    user_message: Message
    history: List[dict]
    options: CompletionOptions


@dataclass(frozen=True)
class TurnResult:
    conversation_id: str
    message_id: str
    content: str
    model: str
    tokens: int
    finish_reason: str
    created_at: datetime


class CompletionGateway:
    """Shared sequencing for sync, streaming and queued completions.

    Every mode runs the same steps in the same order: resolve or create the
    conversation, append the user message, read the bounded history, call the
    provider, then append the assistant message and charge usage once.
    """

    def __init__(
        self,
        conversations: ConversationService,
        usage: UsageAccountant,
        provider: CompletionProvider,
        *,
        default_options: CompletionOptions,
        history_limit: int = 10,
        jobs: Optional["JobService"] = None,
    ) -> None:
        self.conversations = conversations
        self.usage = usage
        self.provider = provider
        self.default_options = default_options
        self.history_limit = history_limit
        self.jobs = jobs

    def resolve_options(
        self,
        *,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> CompletionOptions:
        if max_tokens is not None and not 1 <= max_tokens <= MAX_TOKENS_CEILING:
            raise ValidationError(
                f"maxTokens must be between 1 and {MAX_TOKENS_CEILING}",
                detail={"max_tokens": max_tokens},
            )
        if temperature is not None and not 0.0 <= temperature <= MAX_TEMPERATURE:
            raise ValidationError(
                f"temperature must be between 0 and {MAX_TEMPERATURE:g}",
                detail={"temperature": temperature},
            )
        return CompletionOptions(
            model=model or self.default_options.model,
            max_tokens=max_tokens if max_tokens is not None else self.default_options.max_tokens,
            temperature=(
                temperature if temperature is not None else self.default_options.temperature
            ),
        )

    # shared steps
    def _open_conversation(
        self, user_id: str, conversation_id: Optional[str]
    ) -> Tuple[Conversation, bool]:
        if conversation_id:
            return self.conversations.require_owned(conversation_id, user_id), False
        return self.conversations.create(user_id), True

    def prepare(
        self,
        user_id: str,
        message: str,
        conversation_id: Optional[str] = None,
        options: Optional[CompletionOptions] = None,
    ) -> PreparedTurn:
        """Persist the user message and assemble its context window."""
        if not user_id:
            raise ValidationError("user id is required")
        if not isinstance(message, str) or not message.strip():
            raise ValidationError("message must not be empty")
        conversation, created = self._open_conversation(user_id, conversation_id)
        user_message, _ = self.conversations.append_message(
            conversation.id, MessageRole.USER, message
        )
        history = self.conversations.history(
            conversation.id,
            user_id,
            self.history_limit,
            up_to_seq=user_message.seq,
        )
        return PreparedTurn(
            user_id=user_id,
            conversation=conversation,
            conversation_created=created,
            user_message=user_message,
            history=history,
            options=options or self.default_options,
        )

    def prepare_existing(
        self,
        user_id: str,
        conversation_id: str,
        message_id: str,
        options: Optional[CompletionOptions] = None,
    ) -> PreparedTurn:
        """Rebuild a turn around a user message that is already stored."""
        conversation = self.conversations.require_owned(conversation_id, user_id)
        user_message = self.conversations.store.get_message(message_id)
        if user_message is None or user_message.conversation_id != conversation.id:
            raise NotFoundError("message not found", detail={"message_id": message_id})
        history = self.conversations.history(
            conversation.id,
            user_id,
            self.history_limit,
            up_to_seq=user_message.seq,
        )
        return PreparedTurn(
            user_id=user_id,
            conversation=conversation,
            conversation_created=False,
            user_message=user_message,
            history=history,
            options=options or self.default_options,
        )

    def finalize(
        self,
        turn: PreparedTurn,
        completion: Completion,
        *,
        idempotency_key: Optional[str] = None,
    ) -> Tuple[Message, bool]:
        """Append the assistant message; usage is charged only when it is new."""
        tokens = max(0, int(completion.tokens))
        message, created = self.conversations.append_message(
            turn.conversation.id,
            MessageRole.ASSISTANT,
            completion.content,
            token_count=tokens,
            model_name=completion.model,
            idempotency_key=idempotency_key,
        )
        if created:
            self.usage.increment(turn.user_id, tokens)
        return message, created

    # execution strategies
    async def complete_turn(
        self, turn: PreparedTurn, *, idempotency_key: Optional[str] = None
    ) -> TurnResult:
        try:
            completion = await self.provider.complete(turn.history, turn.options)
        except ProviderError as exc:
            logger.warning(
                "completion_failed",
                conversation_id=turn.conversation.id,
                user_id=turn.user_id,
                error_code=exc.error_code,
            )
            raise
        message, _ = self.finalize(turn, completion, idempotency_key=idempotency_key)
        return TurnResult(
            conversation_id=turn.conversation.id,
            message_id=message.id,
            content=message.content,
            model=message.model_name or completion.model,
            tokens=message.token_count or 0,
            finish_reason=completion.finish_reason,
            created_at=message.created_at,
        )

    async def stream_turn(self, turn: PreparedTurn) -> AsyncIterator[TurnEvent]:
        """Yield ``chunk`` events as deltas arrive, then one ``end`` event.

        Nothing is persisted unless the provider stream reaches its end.
        """
        parts: List[str] = []
        model = turn.options.model
        finish_reason: Optional[str] = None
        stream = self.provider.stream(turn.history, turn.options)
        try:
            async for chunk in stream:
                model = chunk.model or model
                if chunk.content_delta:
                    parts.append(chunk.content_delta)
                    yield TurnEvent(
                        EVENT_CHUNK, {"content": chunk.content_delta, "isComplete": False}
                    )
                if chunk.finish_reason:
                    finish_reason = chunk.finish_reason
                    break
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        if finish_reason is None:
            logger.warning(
                "stream_truncated",
                conversation_id=turn.conversation.id,
                user_id=turn.user_id,
                received_chars=sum(len(part) for part in parts),
            )
            raise ProviderError(
                "stream ended before completion",
                detail={"conversation_id": turn.conversation.id},
            )

        content = "".join(parts)
        completion = Completion(
            content=content,
            tokens=estimate_turn_tokens(turn.user_message.content, content),
            model=model,
            finish_reason=finish_reason,
        )
        message, _ = self.finalize(turn, completion)
        yield TurnEvent(
            EVENT_END,
            {
                "messageId": message.id,
                "conversationId": turn.conversation.id,
                "totalTokens": completion.tokens,
                "model": completion.model,
                "finishReason": completion.finish_reason,
            },
        )

    @staticmethod
    def opening_events(turn: PreparedTurn) -> List[TurnEvent]:
        events: List[TurnEvent] = []
        if turn.conversation_created:
            events.append(
                TurnEvent(EVENT_CONVERSATION_CREATED, {"conversationId": turn.conversation.id})
            )
        events.append(
            TurnEvent(
                EVENT_USER_MESSAGE_SAVED,
                {"messageId": turn.user_message.id, "content": turn.user_message.content},
            )
        )
        return events

    async def _stream_events(self, turn: PreparedTurn) -> AsyncIterator[TurnEvent]:
        for event in self.opening_events(turn):
            yield event
        async for event in self.stream_turn(turn):
            yield event

    async def run(
        self,
        user_id: str,
        message: str,
        conversation_id: Optional[str] = None,
        mode: ExecutionMode = ExecutionMode.SYNC,
        options: Optional[CompletionOptions] = None,
    ) -> Union[TurnResult, AsyncIterator[TurnEvent], Dict[str, Any]]:
        """Single entry point for every mode.

        SYNC returns a TurnResult, STREAM an async iterator of TurnEvents and
        ASYNC the queued job reference.
        """
        mode = ExecutionMode(mode)
        if mode == ExecutionMode.ASYNC and self.jobs is None:
            raise ValidationError("async completions are not enabled")
        turn = self.prepare(user_id, message, conversation_id, options)
        if mode == ExecutionMode.SYNC:
            return await self.complete_turn(turn)
        if mode == ExecutionMode.STREAM:
            return self._stream_events(turn)
        return self.jobs.enqueue_completion(
            user_id,
            turn.conversation.id,
            turn.user_message.id,
            turn.options,
        )

    # embeddings
    async def compute_embedding(self, text: str, *, model: Optional[str] = None) -> Embedding:
        if not isinstance(text, str) or not text.strip():
            raise ValidationError("text must not be empty")
        return await self.provider.embed(text, model=model)

    def charge_embedding(self, user_id: str, embedding: Embedding) -> None:
        self.usage.increment(user_id, max(0, int(embedding.tokens)))

    async def embed(
        self, user_id: str, text: str, *, model: Optional[str] = None
    ) -> Dict[str, Any]:
        embedding = await self.compute_embedding(text, model=model)
        self.charge_embedding(user_id, embedding)
        return {
            "embedding": embedding.vector,
            "model": embedding.model,
            "tokens": embedding.tokens,
        }
