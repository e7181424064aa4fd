from __future__ import annotations

import json

import httpx
import pytest

from tgrelay.config import RewriteConfig
from tgrelay.rewrite import RewriteClient, RewriteError

CONFIG = RewriteConfig(base_url="http://llm.test/v1", model="tiny", api_token="secret")


def _client(handler, config: RewriteConfig = CONFIG) -> RewriteClient:
    return RewriteClient(
        config,
        http_client_factory=lambda: httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


@pytest.mark.asyncio
async def test_rewrite_posts_chat_completion() -> None:
    captured: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(200, json={"choices": [{"message": {"content": "  Hey Ada  "}}]})

    result = await _client(handler).rewrite("Hi Ada", prompt="be friendly")

    assert result == "Hey Ada"
    request = captured[0]
    assert str(request.url) == "http://llm.test/v1/chat/completions"
    assert request.headers["Authorization"] == "Bearer secret"
    body = json.loads(request.content)
    assert body["model"] == "tiny"
    assert body["messages"] == [
        {"role": "system", "content": "be friendly"},
        {"role": "user", "content": "Hi Ada"},
    ]


@pytest.mark.asyncio
async def test_http_errors_become_rewrite_errors() -> None:
    client = _client(lambda request: httpx.Response(503, json={"error": "busy"}))

    with pytest.raises(RewriteError, match="503"):
        await client.rewrite("Hi", prompt="p")


@pytest.mark.asyncio
async def test_transport_errors_become_rewrite_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(RewriteError, match="rewrite request failed"):
        await _client(handler).rewrite("Hi", prompt="p")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload",
    [{"choices": []}, {"choices": [{"message": {"content": "   "}}]}, {"unexpected": True}],
)
async def test_unusable_responses_are_rejected(payload: dict) -> None:
    client = _client(lambda request: httpx.Response(200, json=payload))

    with pytest.raises(RewriteError):
        await client.rewrite("Hi", prompt="p")


@pytest.mark.asyncio
async def test_invalid_json_is_rejected() -> None:
    client = _client(lambda request: httpx.Response(200, text="not json"))

    with pytest.raises(RewriteError, match="invalid JSON"):
        await client.rewrite("Hi", prompt="p")


@pytest.mark.asyncio
async def test_missing_token_fails_without_request() -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200)

    client = _client(handler, RewriteConfig(api_token=None))

    with pytest.raises(RewriteError, match="not configured"):
        await client.rewrite("Hi", prompt="p")
    assert calls == []
