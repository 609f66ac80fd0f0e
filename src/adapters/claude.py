"""Anthropic Claude messages schema."""

from __future__ import annotations

import json
from typing import Any

from src.adapters.base import ChunkState, DecodedEvents, SchemaAdapter
from src.gateway.errors import ModelStreamError
from src.gateway.models import (
    PLACEHOLDER_TEXT,
    Conversation,
    ImageBlock,
    InvokeOptions,
    ModelFamily,
    TextBlock,
    TextDelta,
    ToolCallDetected,
    ToolResultBlock,
    ToolUseBlock,
)

ANTHROPIC_VERSION = "bedrock-2023-05-31"
DEFAULT_TOP_K = 250


class ClaudeAdapter(SchemaAdapter):
    """
    Claude requires strict user/assistant alternation starting with a user turn.

    System and tool turns are sent as user turns. A placeholder turn of the
    opposite role is inserted between two consecutive same-role turns, and a
    placeholder user turn is prepended when the conversation opens with the
    assistant.
    """

    family = ModelFamily.CLAUDE

    response_strategies = ("_content_blocks", "_legacy_completion")
    chunk_strategies = (
        "_block_start",
        "_block_delta",
        "_block_stop",
        "_stream_error",
        "_message_lifecycle",
        "_legacy_completion",
    )

    def encode(self, conversation: Conversation, options: InvokeOptions) -> dict[str, Any]:
        messages: list[dict[str, Any]] = []
        for msg in conversation:
            role = "assistant" if msg.role == "assistant" else "user"

            if not messages and role == "assistant":
                messages.append(_placeholder("user"))
            elif messages and messages[-1]["role"] == role:
                messages.append(_placeholder("assistant" if role == "user" else "user"))

            messages.append({"role": role, "content": [_encode_block(b) for b in msg.content]})

        body: dict[str, Any] = {
            "anthropic_version": ANTHROPIC_VERSION,
            "max_tokens": options.max_tokens,
            "messages": messages,
            "temperature": options.temperature,
            "top_p": options.top_p,
            "top_k": options.top_k if options.top_k is not None else DEFAULT_TOP_K,
        }
        if options.stop_sequences:
            body["stop_sequences"] = options.stop_sequences
        if options.tools:
            body["tools"] = [
                {
                    "name": tool.name,
                    "description": tool.description,
                    "input_schema": tool.parameter_schema,
                }
                for tool in options.tools
            ]
        return body

    # Complete responses

    def _content_blocks(self, body: dict[str, Any], state: ChunkState) -> DecodedEvents | None:
        content = body.get("content")
        if not isinstance(content, list):
            return None

        events: DecodedEvents = []
        for block in content:
            if not isinstance(block, dict):
                continue
            if block.get("type") == "text" and block.get("text"):
                events.append(TextDelta(content=block["text"]))
            elif block.get("type") == "tool_use":
                events.append(
                    ToolCallDetected(
                        id=str(block.get("id", "")),
                        name=str(block.get("name", "")),
                        arguments_json=json.dumps(block.get("input") or {}, ensure_ascii=False),
                    )
                )
        return events

    def _legacy_completion(self, body: dict[str, Any], state: ChunkState) -> DecodedEvents | None:
        if isinstance(body.get("completion"), str):
            return [TextDelta(content=body["completion"])] if body["completion"] else []
        return None

    # Streaming chunks

    def _block_start(self, body: dict[str, Any], state: ChunkState) -> DecodedEvents | None:
        if body.get("type") != "content_block_start":
            return None

        block = body.get("content_block") or {}
        if block.get("type") == "tool_use":
            state.open(
                body.get("index", 0),
                str(block.get("id", "")),
                str(block.get("name", "")),
                initial_input=block.get("input"),
            )
            return []
        if block.get("type") == "text" and block.get("text"):
            return [TextDelta(content=block["text"])]
        return []

    def _block_delta(self, body: dict[str, Any], state: ChunkState) -> DecodedEvents | None:
        if body.get("type") != "content_block_delta":
            return None

        delta = body.get("delta") or {}
        if delta.get("type") == "input_json_delta":
            state.append(body.get("index", 0), delta.get("partial_json", ""))
            return []
        text = delta.get("text")
        if text:
            return [TextDelta(content=text)]
        return []

    def _block_stop(self, body: dict[str, Any], state: ChunkState) -> DecodedEvents | None:
        if body.get("type") != "content_block_stop":
            return None
        return state.close(body.get("index", 0))

    def _stream_error(self, body: dict[str, Any], state: ChunkState) -> DecodedEvents | None:
        if body.get("type") != "error":
            return None
        error = body.get("error") or {}
        raise ModelStreamError(error.get("type", "error"), error.get("message", "Model stream error"))

    def _message_lifecycle(self, body: dict[str, Any], state: ChunkState) -> DecodedEvents | None:
        if body.get("type") in ("message_start", "message_delta", "message_stop", "ping"):
            return []
        return None


def _placeholder(role: str) -> dict[str, Any]:
    return {"role": role, "content": [{"type": "text", "text": PLACEHOLDER_TEXT}]}


def _encode_block(block: Any) -> dict[str, Any]:
    if isinstance(block, TextBlock):
        return {"type": "text", "text": block.text}
    if isinstance(block, ImageBlock):
        return {
            "type": "image",
            "source": {"type": block.encoding, "media_type": block.mime_type, "data": block.data},
        }
    if isinstance(block, ToolUseBlock):
        return {"type": "tool_use", "id": block.id, "name": block.name, "input": block.input or {}}
    if isinstance(block, ToolResultBlock):
        return {
            "type": "tool_result",
            "tool_use_id": block.tool_use_id,
            "content": block.output_text,
            "is_error": block.is_error,
        }
    raise TypeError(f"Unknown content block: {type(block).__name__}")
