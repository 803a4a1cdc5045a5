import asyncio
from types import SimpleNamespace

import httpx
import openai
import pytest

from chatkernel.config import ProviderKind, Settings
from chatkernel.service.errors import ProviderError, ProviderTimeoutError
from chatkernel.service.provider import (
    CompletionOptions,
    EchoProvider,
    OpenAIProvider,
    build_provider,
)

OPTS = CompletionOptions(model="gpt-4", max_tokens=64, temperature=0.0)
HISTORY = [{"role": "user", "content": "Say hello"}]


def _request() -> httpx.Request:
    return httpx.Request("POST", "https://api.openai.com/v1/chat/completions")


def _chunk(content=None, finish_reason=None):
    return SimpleNamespace(
        model="gpt-4-0613",
        choices=[
            SimpleNamespace(
                delta=SimpleNamespace(content=content), finish_reason=finish_reason
            )
        ],
    )


class FakeStream:
    def __init__(self, events, delay: float = 0.0):
        self._events = list(events)
        self.delay = delay
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self.delay:
            await asyncio.sleep(self.delay)
        if not self._events:
            raise StopAsyncIteration
        return self._events.pop(0)

    async def close(self):
        self.closed = True


def _client(create=None, embed=None):
    return SimpleNamespace(
        chat=SimpleNamespace(completions=SimpleNamespace(create=create)),
        embeddings=SimpleNamespace(create=embed),
    )


def _provider(client, timeout: float = 5.0) -> OpenAIProvider:
    return OpenAIProvider(client=client, timeout_seconds=timeout)


async def test_complete_maps_response_and_usage():
    captured = {}

    async def create(**kwargs):
        captured.update(kwargs)
        return SimpleNamespace(
            model="gpt-4-0613",
            choices=[
                SimpleNamespace(
                    message=SimpleNamespace(content="Hello!"), finish_reason="stop"
                )
            ],
            usage=SimpleNamespace(total_tokens=12),
        )

    completion = await _provider(_client(create=create)).complete(HISTORY, OPTS)
    assert completion.content == "Hello!"
    assert completion.tokens == 12
    assert completion.model == "gpt-4-0613"
    assert completion.finish_reason == "stop"
    assert captured["max_tokens"] == 64
    assert captured["temperature"] == 0.0
    assert captured["messages"] == HISTORY


async def test_complete_estimates_tokens_without_usage():
    async def create(**kwargs):
        return SimpleNamespace(
            model=None,
            choices=[
                SimpleNamespace(
                    message=SimpleNamespace(content="Hi there"), finish_reason=None
                )
            ],
            usage=None,
        )

    completion = await _provider(_client(create=create)).complete(HISTORY, OPTS)
    assert completion.tokens > 0
    assert completion.model == "gpt-4"
    assert completion.finish_reason == "stop"


async def test_complete_wraps_client_errors():
    async def create(**kwargs):
        raise openai.APIConnectionError(request=_request())

    with pytest.raises(ProviderError) as excinfo:
        await _provider(_client(create=create)).complete(HISTORY, OPTS)
    assert excinfo.value.error_code == "provider_error"
    assert excinfo.value.status_code == 502


async def test_complete_timeout_is_provider_timeout():
    async def create(**kwargs):
        await asyncio.sleep(1)

    with pytest.raises(ProviderTimeoutError) as excinfo:
        await _provider(_client(create=create), timeout=0.01).complete(HISTORY, OPTS)
    assert excinfo.value.error_code == "provider_timeout"
    assert isinstance(excinfo.value, ProviderError)


async def test_upstream_timeout_error_is_provider_timeout():
    async def create(**kwargs):
        raise openai.APITimeoutError(request=_request())

    with pytest.raises(ProviderTimeoutError):
        await _provider(_client(create=create)).complete(HISTORY, OPTS)


async def test_stream_yields_deltas_and_closes_upstream():
    upstream = FakeStream(
        [_chunk("Hel"), _chunk(None), _chunk("lo"), _chunk(None, finish_reason="stop")]
    )

    async def create(**kwargs):
        assert kwargs["stream"] is True
        return upstream

    chunks = [c async for c in _provider(_client(create=create)).stream(HISTORY, OPTS)]
    assert [c.content_delta for c in chunks] == ["Hel", "lo", ""]
    assert chunks[-1].finish_reason == "stop"
    assert upstream.closed is True


async def test_stream_without_finish_reason_is_passed_through():
    upstream = FakeStream([_chunk("partial")])

    async def create(**kwargs):
        return upstream

    chunks = [c async for c in _provider(_client(create=create)).stream(HISTORY, OPTS)]
    assert [c.content_delta for c in chunks] == ["partial"]
    assert all(c.finish_reason is None for c in chunks)
    assert upstream.closed is True


async def test_stream_close_by_consumer_closes_upstream():
    upstream = FakeStream([_chunk("a"), _chunk("b"), _chunk("c")])

    async def create(**kwargs):
        return upstream

    stream = _provider(_client(create=create)).stream(HISTORY, OPTS)
    first = await stream.__anext__()
    assert first.content_delta == "a"
    await stream.aclose()
    assert upstream.closed is True


async def test_stream_deadline_raises_timeout_and_closes():
    upstream = FakeStream([_chunk("a"), _chunk("b")], delay=0.2)

    async def create(**kwargs):
        return upstream

    with pytest.raises(ProviderTimeoutError):
        async for _ in _provider(_client(create=create), timeout=0.05).stream(HISTORY, OPTS):
            pass
    assert upstream.closed is True


async def test_embed_uses_default_embedding_model():
    async def embed(**kwargs):
        return SimpleNamespace(
            model=kwargs["model"],
            data=[SimpleNamespace(embedding=[0.1, 0.2, 0.3])],
            usage=SimpleNamespace(total_tokens=3),
        )

    result = await _provider(_client(embed=embed)).embed("hello world")
    assert result.vector == [0.1, 0.2, 0.3]
    assert result.tokens == 3
    assert result.model == "text-embedding-3-small"


async def test_embed_without_data_is_provider_error():
    async def embed(**kwargs):
        return SimpleNamespace(model="m", data=[], usage=None)

    with pytest.raises(ProviderError):
        await _provider(_client(embed=embed)).embed("hello")


async def test_echo_provider_is_deterministic():
    provider = EchoProvider()
    completion = await provider.complete(HISTORY, OPTS)
    assert completion.content == "Echo: Say hello"
    assert completion.tokens >= 1

    chunks = [c async for c in provider.stream(HISTORY, OPTS)]
    assert "".join(c.content_delta for c in chunks) == completion.content
    assert chunks[-1].finish_reason == "stop"
    assert all(c.finish_reason is None for c in chunks[:-1])

    first = await provider.embed("same text")
    second = await provider.embed("same text")
    assert first.vector == second.vector
    assert len(first.vector) == EchoProvider.EMBEDDING_DIMENSIONS


def test_build_provider_selection():
    assert isinstance(build_provider(Settings(test_mode=True)), EchoProvider)
    assert isinstance(
        build_provider(Settings(provider=ProviderKind.OPENAI, openai_api_key=None)),
        EchoProvider,
    )
    provider = build_provider(
        Settings(provider="openai", openai_api_key="sk-test-key", provider_timeout_seconds=9)
    )
    assert isinstance(provider, OpenAIProvider)
    assert provider.timeout_seconds == 9
