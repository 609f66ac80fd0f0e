#!/usr/bin/env python3
"""
Tests for the Bedrock HTTP client: signing per attempt, retry/backoff policy,
error classification and streaming, all against httpx.MockTransport.
"""

import asyncio
import json

import httpx
import pytest

from src.clients.bedrock_client import BedrockClient
from src.gateway.errors import HttpError, NetworkError, ParseError, Timeout, TurnCancelled
from src.gateway.models import Credentials

MODEL_ID = "anthropic.claude-3-haiku-20240307-v1:0"
REPLY = {"content": [{"type": "text", "text": "ok"}], "stop_reason": "end_turn"}


def _client(handler, **kwargs) -> BedrockClient:
    kwargs.setdefault("base_delay", 0.0)
    return BedrockClient(
        Credentials(access_key="AKIDEXAMPLE", secret_key="secret", region="us-west-2"),
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


def test_invoke_signs_and_parses_response():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=REPLY)

    async def run():
        async with _client(handler) as client:
            return await client.invoke(MODEL_ID, {"messages": []})

    assert asyncio.run(run()) == REPLY

    request = seen[0]
    assert request.method == "POST"
    assert request.url.raw_path == b"/model/anthropic.claude-3-haiku-20240307-v1%3A0/invoke"
    assert request.headers["authorization"].startswith("AWS4-HMAC-SHA256 Credential=AKIDEXAMPLE/")
    assert request.headers["accept"] == "application/json"
    assert "x-amz-date" in request.headers
    assert json.loads(request.content) == {"messages": []}


def test_three_throttles_then_success_retries_three_times():
    calls = {"count": 0}
    retries: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        if calls["count"] <= 3:
            return httpx.Response(429, json={"message": "Too many requests"})
        return httpx.Response(200, json=REPLY)

    async def run():
        async with _client(handler, max_retries=3) as client:
            return await client.invoke(MODEL_ID, {}, on_retry=lambda attempt, error: retries.append(attempt))

    assert asyncio.run(run()) == REPLY
    assert calls["count"] == 4
    assert retries == [1, 2, 3]


def test_exhausted_retries_surface_last_error():
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(503, text="unavailable")

    async def run():
        async with _client(handler, max_retries=2) as client:
            await client.invoke(MODEL_ID, {})

    with pytest.raises(HttpError) as exc_info:
        asyncio.run(run())
    assert exc_info.value.status == 503
    assert "unavailable" in str(exc_info.value)
    assert calls["count"] == 3


def test_timeout_and_network_errors_are_distinct():
    def timeout_handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    def network_handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    async def run(handler):
        async with _client(handler, max_retries=1) as client:
            await client.invoke(MODEL_ID, {})

    with pytest.raises(Timeout):
        asyncio.run(run(timeout_handler))
    with pytest.raises(NetworkError):
        asyncio.run(run(network_handler))


def test_invalid_json_body_is_parse_error_without_retry():
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(200, text="not json")

    async def run():
        async with _client(handler) as client:
            await client.invoke(MODEL_ID, {})

    with pytest.raises(ParseError):
        asyncio.run(run())
    assert calls["count"] == 1


def test_cancellation_stops_before_sending():
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(200, json=REPLY)

    async def cancelled() -> bool:
        return True

    async def run():
        async with _client(handler) as client:
            await client.invoke(MODEL_ID, {}, is_cancelled=cancelled)

    with pytest.raises(TurnCancelled):
        asyncio.run(run())
    assert calls["count"] == 0


def test_stream_yields_bytes_with_stream_headers():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, content=b'{"bytes": "e30="}\n')

    async def run():
        async with _client(handler) as client:
            async with client.stream(MODEL_ID, {"messages": []}) as byte_iter:
                return b"".join([chunk async for chunk in byte_iter])

    assert asyncio.run(run()) == b'{"bytes": "e30="}\n'
    assert seen[0].url.path.endswith("/invoke-with-response-stream")
    assert seen[0].headers["accept"] == "application/vnd.amazon.eventstream"
    assert seen[0].headers["x-amzn-bedrock-accept"] == "application/json"


class _StalledStream(httpx.AsyncByteStream):
    """Response body that times out, optionally after some chunks."""

    def __init__(self, chunks=()) -> None:
        self.chunks = list(chunks)

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk
        raise httpx.ReadTimeout("stalled")


def test_stream_retries_timeout_before_first_chunk():
    calls = {"count": 0}
    retries: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        if calls["count"] == 1:
            return httpx.Response(200, stream=_StalledStream())
        return httpx.Response(200, content=b'{"bytes": "e30="}\n')

    def on_retry(attempt, error):
        retries.append(attempt)

    async def run():
        async with _client(handler, max_retries=2) as client:
            async with client.stream(MODEL_ID, {}, on_retry=on_retry) as byte_iter:
                return b"".join([chunk async for chunk in byte_iter])

    assert asyncio.run(run()) == b'{"bytes": "e30="}\n'
    assert calls["count"] == 2
    assert retries == [1]


def test_stream_is_not_restarted_after_bytes_flowed():
    calls = {"count": 0}
    received: list[bytes] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(200, stream=_StalledStream([b"partial"]))

    async def run():
        async with _client(handler, max_retries=2) as client:
            async with client.stream(MODEL_ID, {}) as byte_iter:
                async for chunk in byte_iter:
                    received.append(chunk)

    with pytest.raises(Timeout):
        asyncio.run(run())
    assert received == [b"partial"]
    assert calls["count"] == 1


def test_backoff_delays():
    client = _client(lambda request: httpx.Response(200), base_delay=1.0)

    assert client.backoff_delay(HttpError(500), 2) == 2.0
    assert client.backoff_delay(Timeout("slow"), 3) == 3.0

    throttled = client.backoff_delay(HttpError(429), 3)
    assert 4.0 <= throttled <= 4.4

    asyncio.run(client.close())


def test_negative_retry_settings_are_rejected():
    with pytest.raises(ValueError):
        _client(lambda request: httpx.Response(200), max_retries=-1)
