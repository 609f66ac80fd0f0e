#!/usr/bin/env python3
"""
HTTP surface tests: chat (JSON and SSE), direct tool calls and image
generation, with Bedrock and tool endpoints behind httpx.MockTransport.
"""

import base64
import json

import httpx
import pytest
from fastapi.testclient import TestClient

from src.clients import BedrockClient, ToolProxy
from src.config import Configuration
from src.gateway.models import Credentials
from src.gateway.orchestrator import GatewayOrchestrator
from src.gateway.tool_executor import ToolExecutor
from src.http_server import GatewayServer
from src.tool_catalog import ToolCatalog


def _claude_text(text: str) -> httpx.Response:
    return httpx.Response(200, json={"content": [{"type": "text", "text": text}], "stop_reason": "end_turn"})


def _claude_stream(*parts: str) -> httpx.Response:
    events = [{"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": p}} for p in parts]
    events.append({"type": "message_stop"})
    lines = [json.dumps({"bytes": base64.b64encode(json.dumps(e).encode()).decode()}) for e in events]
    return httpx.Response(200, content=("\n".join(lines) + "\n").encode())


def _make_client(bedrock_responses: list[httpx.Response], tool_handler=None) -> TestClient:
    responses = list(bedrock_responses)

    def bedrock(request: httpx.Request) -> httpx.Response:
        return responses.pop(0)

    catalog = ToolCatalog.load()
    bedrock_client = BedrockClient(
        Credentials(access_key="AKIDEXAMPLE", secret_key="secret", region="us-west-2"),
        base_delay=0.0,
        max_retries=0,
        transport=httpx.MockTransport(bedrock),
    )
    proxy = ToolProxy(catalog, transport=httpx.MockTransport(tool_handler or (lambda request: httpx.Response(500))))
    orchestrator = GatewayOrchestrator(bedrock_client, ToolExecutor(proxy))
    server = GatewayServer(orchestrator, proxy, catalog, Configuration())
    return TestClient(server.app)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("AWS_REGION", "BEDROCK_MODEL_ID", "BEDROCK_ENDPOINT_URL"):
        monkeypatch.delenv(name, raising=False)


def test_health_and_tool_listing():
    client = _make_client([])

    assert client.get("/health").json() == {"status": "healthy"}

    tools = client.get("/tools").json()
    assert [t["name"] for t in tools] == ["duckduckgo_search", "arxiv_search"]
    assert tools[1]["parameters"]["required"] == ["search_query"]


def test_chat_json_response():
    client = _make_client([_claude_text("Hello there")])

    response = client.post(
        "/chat",
        json={"messages": [{"role": "user", "content": "Hi"}], "stream": False, "options": {"max_tokens": 50}},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "completed"
    assert body["text"] == "Hello there"
    assert body["states"][-1] == "completed"


def test_chat_sse_stream():
    client = _make_client([_claude_stream("Hel", "lo")])

    response = client.post("/chat", json={"messages": [{"role": "user", "content": "Hi"}]})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    frames = [json.loads(line[len("data: "):]) for line in response.text.splitlines() if line.startswith("data: ")]
    assert frames == [{"text": "Hel"}, {"text": "lo"}, {"done": True}]


def test_chat_unsupported_model_is_bad_gateway():
    client = _make_client([])

    response = client.post(
        "/chat",
        json={"messages": [{"role": "user", "content": "Hi"}], "model_id": "cohere.command-r-v1:0", "stream": False},
    )

    assert response.status_code == 502
    assert response.json()["error"]["kind"] == "UnsupportedModel"


def test_chat_rejects_empty_messages():
    client = _make_client([])
    assert client.post("/chat", json={"messages": []}).status_code == 422


def test_direct_tool_call():
    def tools(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<feed/>", headers={"content-type": "application/atom+xml"})

    client = _make_client([], tools)

    ok = client.post("/tools/arxiv_search", json={"search_query": "all:electron"})
    assert ok.status_code == 200
    assert ok.json() == {"status": "ok", "data": "<feed/>"}

    missing = client.post("/tools/arxiv_search", json={})
    assert missing.status_code == 422
    assert "search_query" in missing.json()["detail"]


def test_direct_tool_call_upstream_failure():
    client = _make_client([], lambda request: httpx.Response(503, text="busy"))

    response = client.post("/tools/duckduckgo_search", json={"q": "bedrock"})
    assert response.status_code == 502


def test_image_generation():
    client = _make_client([httpx.Response(200, json={"images": ["aW1n"]})])

    response = client.post("/images", json={"prompt": "a lighthouse at dusk"})
    assert response.status_code == 200
    assert response.json() == {"images": ["aW1n"]}

    unsupported = client.post("/images", json={"prompt": "x", "model_id": "anthropic.claude-3-haiku-20240307-v1:0"})
    assert unsupported.status_code == 400
