"""Amazon Nova messages schema."""

from __future__ import annotations

import json
from typing import Any

from src.adapters.base import ChunkState, DecodedEvents, SchemaAdapter
from src.gateway.models import (
    Conversation,
    ImageBlock,
    InvokeOptions,
    Message,
    ModelFamily,
    TextBlock,
    TextDelta,
    ToolCallDetected,
    ToolResultBlock,
    ToolUseBlock,
)

DEFAULT_TOP_K = 50


class NovaAdapter(SchemaAdapter):
    family = ModelFamily.NOVA

    response_strategies = ("_output_message",)
    chunk_strategies = (
        "_block_start",
        "_block_delta",
        "_block_stop",
        "_message_lifecycle",
    )

    def encode(self, conversation: Conversation, options: InvokeOptions) -> dict[str, Any]:
        system_message = conversation.system_message
        messages: list[dict[str, Any]] = []
        for msg in conversation:
            if msg is system_message:
                continue
            messages.append(
                {
                    "role": "assistant" if msg.role == "assistant" else "user",
                    "content": [_encode_block(b) for b in msg.content],
                }
            )

        inference_config: dict[str, Any] = {
            "max_new_tokens": options.max_tokens,
            "temperature": options.temperature,
            "top_p": options.top_p,
            "top_k": options.top_k if options.top_k is not None else DEFAULT_TOP_K,
        }
        if options.stop_sequences:
            inference_config["stopSequences"] = options.stop_sequences

        body: dict[str, Any] = {"messages": messages, "inferenceConfig": inference_config}
        if system_message is not None:
            body["system"] = [{"text": _system_text(system_message)}]
        if options.tools:
            body["toolConfig"] = {
                "tools": [
                    {
                        "toolSpec": {
                            "name": tool.name,
                            "description": tool.description,
                            "inputSchema": {
                                "json": {
                                    "type": "object",
                                    "properties": tool.properties,
                                    "required": tool.required,
                                }
                            },
                        }
                    }
                    for tool in options.tools
                ],
                "toolChoice": {"auto": {}},
            }
        return body

    def _output_message(self, body: dict[str, Any], state: ChunkState) -> DecodedEvents | None:
        message = (body.get("output") or {}).get("message")
        if not isinstance(message, dict):
            return None

        events: DecodedEvents = []
        for block in message.get("content") or []:
            if not isinstance(block, dict):
                continue
            if block.get("text"):
                events.append(TextDelta(content=block["text"]))
            elif isinstance(block.get("toolUse"), dict):
                tool_use = block["toolUse"]
                events.append(
                    ToolCallDetected(
                        id=str(tool_use.get("toolUseId", "")),
                        name=str(tool_use.get("name", "")),
                        arguments_json=json.dumps(tool_use.get("input") or {}, ensure_ascii=False),
                    )
                )
        return events

    def _block_start(self, body: dict[str, Any], state: ChunkState) -> DecodedEvents | None:
        start_event = body.get("contentBlockStart")
        if not isinstance(start_event, dict):
            return None

        tool_use = (start_event.get("start") or {}).get("toolUse")
        if isinstance(tool_use, dict):
            state.open(
                start_event.get("contentBlockIndex", 0),
                str(tool_use.get("toolUseId", "")),
                str(tool_use.get("name", "")),
            )
        return []

    def _block_delta(self, body: dict[str, Any], state: ChunkState) -> DecodedEvents | None:
        delta_event = body.get("contentBlockDelta")
        if not isinstance(delta_event, dict):
            return None

        delta = delta_event.get("delta") or {}
        if isinstance(delta.get("toolUse"), dict):
            fragment = delta["toolUse"].get("input", "")
            if not isinstance(fragment, str):
                fragment = json.dumps(fragment, ensure_ascii=False)
            state.append(delta_event.get("contentBlockIndex", 0), fragment)
            return []
        if delta.get("text"):
            return [TextDelta(content=delta["text"])]
        return []

    def _block_stop(self, body: dict[str, Any], state: ChunkState) -> DecodedEvents | None:
        stop_event = body.get("contentBlockStop")
        if not isinstance(stop_event, dict):
            return None
        return state.close(stop_event.get("contentBlockIndex", 0))

    def _message_lifecycle(self, body: dict[str, Any], state: ChunkState) -> DecodedEvents | None:
        if any(key in body for key in ("messageStart", "messageStop", "metadata")):
            return []
        return None


def _system_text(message: Message) -> str:
    return message.text or "".join(b.output_text for b in message.tool_results)


def _encode_block(block: Any) -> dict[str, Any]:
    if isinstance(block, TextBlock):
        return {"text": block.text}
    if isinstance(block, ImageBlock):
        return {"image": {"format": block.format, "source": {"bytes": block.data}}}
    if isinstance(block, ToolUseBlock):
        return {"toolUse": {"toolUseId": block.id, "name": block.name, "input": block.input or {}}}
    if isinstance(block, ToolResultBlock):
        content = [{"json": block.output}] if isinstance(block.output, dict) else [{"text": block.output_text}]
        return {
            "toolResult": {
                "toolUseId": block.tool_use_id,
                "content": content,
                "status": "error" if block.is_error else "success",
            }
        }
    raise TypeError(f"Unknown content block: {type(block).__name__}")
