from __future__ import annotations

import asyncio
import hashlib
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional, Protocol

import openai
from openai import AsyncOpenAI

from chatkernel.config import ProviderKind, Settings
from chatkernel.logging import get_logger, sanitize_error_message
from chatkernel.service.errors import ProviderError, ProviderTimeoutError
from chatkernel.service.tokenizer_utils import (
    estimate_history_tokens,
    estimate_token_count,
    estimate_turn_tokens,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class CompletionOptions:
    """Per-request generation options.

    ``max_tokens`` bounds output length; ``temperature`` 0 is deterministic.
    """

    model: str
    max_tokens: int
    temperature: float


@dataclass(frozen=True)
class Completion:
    content: str
    tokens: int
    model: str
    finish_reason: str


@dataclass(frozen=True)
class StreamChunk:
    content_delta: str
    model: str
    finish_reason: Optional[str] = None


@dataclass(frozen=True)
class Embedding:
    vector: List[float]
    tokens: int
    model: str


class CompletionProvider(Protocol):
    """Stateless adapter onto a remote LLM API. Never retries internally."""

    name: str

    async def complete(
        self, history: List[dict], opts: CompletionOptions
    ) -> Completion: ...

    def stream(
        self, history: List[dict], opts: CompletionOptions
    ) -> AsyncIterator[StreamChunk]: ...

    async def embed(self, text: str, *, model: Optional[str] = None) -> Embedding: ...


def _last_user_content(history: List[dict]) -> str:
    for turn in reversed(history):
        if turn.get("role") == "user":
            return turn.get("content") or ""
    return ""


class OpenAIProvider:
    """Chat completions and embeddings through the OpenAI async client.

    Every call is bounded by ``timeout_seconds``. Streams are closed on
    exit, including cancellation, which aborts the upstream HTTP request.
    """

    name = "openai"

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        organization: Optional[str] = None,
        timeout_seconds: float = 120.0,
        embedding_model: str = "text-embedding-3-small",
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.embedding_model = embedding_model
        self.client = client or AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            organization=organization,
            timeout=timeout_seconds,
            max_retries=0,
        )

    def _map_error(self, exc: BaseException, *, operation: str, model: str) -> ProviderError:
        if isinstance(exc, (asyncio.TimeoutError, openai.APITimeoutError)):
            logger.warning(
                "provider_request_failed",
                operation=operation,
                model=model,
                reason="timeout",
                timeout_seconds=self.timeout_seconds,
            )
            return ProviderTimeoutError(
                f"provider did not respond within {self.timeout_seconds:g}s",
                detail={"operation": operation, "model": model},
            )
        logger.warning(
            "provider_request_failed",
            operation=operation,
            model=model,
            error=str(exc),
            error_type=type(exc).__name__,
        )
        detail = {"operation": operation, "model": model}
        status = getattr(exc, "status_code", None)
        if status is not None:
            detail["upstream_status"] = status
        return ProviderError(
            sanitize_error_message(str(exc)) or "provider request failed",
            detail=detail,
        )

    async def complete(
        self, history: List[dict], opts: CompletionOptions
    ) -> Completion:
        try:
            response = await asyncio.wait_for(
                self.client.chat.completions.create(
                    model=opts.model,
                    messages=history,
                    max_tokens=opts.max_tokens,
                    temperature=opts.temperature,
                ),
                timeout=self.timeout_seconds,
            )
        except (asyncio.TimeoutError, openai.OpenAIError) as exc:
            raise self._map_error(exc, operation="complete", model=opts.model) from exc

        choices = getattr(response, "choices", None) or []
        first_choice = next(iter(choices), None)
        if first_choice is None:
            logger.warning("provider_empty_choices", model=opts.model)
            content = ""
            finish_reason = "stop"
        else:
            content = first_choice.message.content or ""
            finish_reason = first_choice.finish_reason or "stop"
        usage = getattr(response, "usage", None)
        tokens = getattr(usage, "total_tokens", None) or (
            estimate_history_tokens(turn.get("content") or "" for turn in history)
            + estimate_token_count(content)
        )
        return Completion(
            content=content,
            tokens=int(tokens),
            model=getattr(response, "model", None) or opts.model,
            finish_reason=finish_reason,
        )

    async def stream(
        self, history: List[dict], opts: CompletionOptions
    ) -> AsyncIterator[StreamChunk]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout_seconds
        try:
            upstream = await asyncio.wait_for(
                self.client.chat.completions.create(
                    model=opts.model,
                    messages=history,
                    max_tokens=opts.max_tokens,
                    temperature=opts.temperature,
                    stream=True,
                ),
                timeout=self.timeout_seconds,
            )
        except (asyncio.TimeoutError, openai.OpenAIError) as exc:
            raise self._map_error(exc, operation="stream", model=opts.model) from exc

        try:
            events = upstream.__aiter__()
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise self._map_error(
                        asyncio.TimeoutError(), operation="stream", model=opts.model
                    )
                try:
                    event = await asyncio.wait_for(events.__anext__(), timeout=remaining)
                except StopAsyncIteration:
                    break
                except (asyncio.TimeoutError, openai.OpenAIError) as exc:
                    raise self._map_error(exc, operation="stream", model=opts.model) from exc

                choices = getattr(event, "choices", None) or []
                if not choices:
                    continue
                choice = choices[0]
                delta = getattr(choice, "delta", None)
                content = (getattr(delta, "content", None) or "") if delta else ""
                finish_reason = getattr(choice, "finish_reason", None)
                if not content and not finish_reason:
                    continue
                yield StreamChunk(
                    content_delta=content,
                    model=getattr(event, "model", None) or opts.model,
                    finish_reason=finish_reason,
                )
                if finish_reason:
                    break
        finally:
            await upstream.close()

    async def embed(self, text: str, *, model: Optional[str] = None) -> Embedding:
        target_model = model or self.embedding_model
        try:
            response = await asyncio.wait_for(
                self.client.embeddings.create(model=target_model, input=text),
                timeout=self.timeout_seconds,
            )
        except (asyncio.TimeoutError, openai.OpenAIError) as exc:
            raise self._map_error(exc, operation="embed", model=target_model) from exc
        data = getattr(response, "data", None) or []
        if not data:
            raise ProviderError("provider returned no embedding", detail={"model": target_model})
        usage = getattr(response, "usage", None)
        tokens = getattr(usage, "total_tokens", None) or estimate_token_count(text)
        return Embedding(
            vector=[float(v) for v in data[0].embedding],
            tokens=int(tokens),
            model=getattr(response, "model", None) or target_model,
        )


class EchoProvider:
    """Deterministic offline provider for tests and key-less development."""

    name = "echo"
    EMBEDDING_DIMENSIONS = 16

    def __init__(self, *, chunk_delay: float = 0.0) -> None:
        self.chunk_delay = chunk_delay

    @staticmethod
    def _reply(history: List[dict]) -> str:
        prompt = _last_user_content(history)
        return f"Echo: {prompt}" if prompt else "Echo."

    async def complete(
        self, history: List[dict], opts: CompletionOptions
    ) -> Completion:
        content = self._reply(history)
        return Completion(
            content=content,
            tokens=estimate_turn_tokens(_last_user_content(history), content),
            model=opts.model,
            finish_reason="stop",
        )

    async def stream(
        self, history: List[dict], opts: CompletionOptions
    ) -> AsyncIterator[StreamChunk]:
        words = self._reply(history).split(" ")
        for index, word in enumerate(words):
            await asyncio.sleep(self.chunk_delay)
            delta = word if index == 0 else f" {word}"
            last = index == len(words) - 1
            yield StreamChunk(
                content_delta=delta,
                model=opts.model,
                finish_reason="stop" if last else None,
            )

    async def embed(self, text: str, *, model: Optional[str] = None) -> Embedding:
        digest = hashlib.sha256((text or "").encode()).digest()
        vector = [
            round(byte / 255.0, 6) for byte in digest[: self.EMBEDDING_DIMENSIONS]
        ]
        return Embedding(
            vector=vector,
            tokens=max(1, estimate_token_count(text)),
            model=model or "echo-embedding",
        )


def build_provider(settings: Settings) -> CompletionProvider:
    if settings.test_mode or settings.provider == ProviderKind.ECHO:
        return EchoProvider()
    if not settings.openai_api_key:
        logger.warning(
            "provider_api_key_missing",
            provider=settings.provider.value,
            fallback=EchoProvider.name,
        )
        return EchoProvider()
    return OpenAIProvider(
        api_key=settings.openai_api_key,
        base_url=settings.openai_base_url,
        organization=settings.openai_org_id,
        timeout_seconds=settings.provider_timeout_seconds,
        embedding_model=settings.embedding_model,
    )
