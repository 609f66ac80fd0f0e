"""Mistral chat schema with OpenAI-style tool calls."""

from __future__ import annotations

import json
from typing import Any

from src.adapters.base import ChunkState, DecodedEvents, SchemaAdapter
from src.adapters.titan import flatten_text
from src.gateway.models import (
    PLACEHOLDER_TEXT,
    Conversation,
    InvokeOptions,
    Message,
    ModelFamily,
    TextDelta,
    ToolCallDetected,
)


class MistralAdapter(SchemaAdapter):
    """
    Near-passthrough role/content messages.

    Tool calls ride on the assistant message's `tool_calls` list and each tool
    result becomes its own `tool` message carrying `tool_call_id`.
    """

    family = ModelFamily.MISTRAL

    response_strategies = ("_choices", "_outputs")
    chunk_strategies = ("_choices", "_outputs")

    def encode(self, conversation: Conversation, options: InvokeOptions) -> dict[str, Any]:
        messages: list[dict[str, Any]] = []
        for msg in conversation:
            messages.extend(_encode_message(msg))

        body: dict[str, Any] = {
            "messages": messages,
            "max_tokens": options.max_tokens,
            "temperature": options.temperature,
            "top_p": options.top_p,
        }
        if options.stop_sequences:
            body["stop"] = options.stop_sequences
        if options.tools:
            body["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": tool.name,
                        "description": tool.description,
                        "parameters": tool.parameter_schema,
                    },
                }
                for tool in options.tools
            ]
            body["tool_choice"] = "auto"
        return body

    def _choices(self, body: dict[str, Any], state: ChunkState) -> DecodedEvents | None:
        choices = body.get("choices")
        if not isinstance(choices, list) or not choices:
            return None
        choice = choices[0] or {}

        # Complete message (non-streaming, or a stream that sends whole messages)
        if isinstance(choice.get("message"), dict):
            return _message_events(choice["message"])

        events: DecodedEvents = []
        delta = choice.get("delta") or {}
        if delta.get("content"):
            events.append(TextDelta(content=delta["content"]))
        for position, call in enumerate(delta.get("tool_calls") or []):
            key = call.get("index", position)
            function = call.get("function") or {}
            if key not in state.pending:
                state.open(key, str(call.get("id", "")), str(function.get("name", "")))
            arguments = function.get("arguments")
            if arguments:
                state.append(key, arguments if isinstance(arguments, str) else json.dumps(arguments))

        if choice.get("finish_reason") or choice.get("stop_reason"):
            events.extend(state.drain())
        return events

    def _outputs(self, body: dict[str, Any], state: ChunkState) -> DecodedEvents | None:
        outputs = body.get("outputs")
        if not isinstance(outputs, list) or not outputs:
            return None
        text = (outputs[0] or {}).get("text", "")
        return [TextDelta(content=text)] if text else []


def _message_events(message: dict[str, Any]) -> DecodedEvents:
    events: DecodedEvents = []
    if message.get("content"):
        events.append(TextDelta(content=message["content"]))
    for call in message.get("tool_calls") or []:
        function = call.get("function") or {}
        arguments = function.get("arguments", "{}")
        if not isinstance(arguments, str):
            arguments = json.dumps(arguments, ensure_ascii=False)
        events.append(
            ToolCallDetected(
                id=str(call.get("id", "")),
                name=str(function.get("name", "")),
                arguments_json=arguments or "{}",
            )
        )
    return events


def _encode_message(msg: Message) -> list[dict[str, Any]]:
    if msg.role == "tool":
        results = msg.tool_results
        if not results:
            return [{"role": "user", "content": flatten_text(msg)}]
        return [
            {"role": "tool", "tool_call_id": result.tool_use_id, "content": result.output_text}
            for result in results
        ]

    encoded: dict[str, Any] = {"role": msg.role, "content": msg.text or PLACEHOLDER_TEXT}
    if msg.role == "assistant" and msg.tool_uses:
        encoded["tool_calls"] = [
            {
                "id": use.id,
                "type": "function",
                "function": {"name": use.name, "arguments": json.dumps(use.input or {}, ensure_ascii=False)},
            }
            for use in msg.tool_uses
        ]
    return [encoded]
