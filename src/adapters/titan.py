"""Amazon Titan text schema. No tool support."""

from __future__ import annotations

from typing import Any

from src.adapters.base import ChunkState, DecodedEvents, SchemaAdapter
from src.gateway.models import Conversation, InvokeOptions, Message, ModelFamily, TextDelta


def flatten_text(message: Message) -> str:
    """Plain-text rendering of a turn for prompt-string families."""
    parts = [message.text] if message.text else []
    parts.extend(result.output_text for result in message.tool_results)
    return "\n".join(parts)


class TitanAdapter(SchemaAdapter):
    family = ModelFamily.TITAN
    supports_tools = False

    response_strategies = ("_results",)
    chunk_strategies = ("_output_text",)

    def encode(self, conversation: Conversation, options: InvokeOptions) -> dict[str, Any]:
        self._warn_tools_ignored(options)

        transcript = "\n".join(f"{msg.role}: {flatten_text(msg)}" for msg in conversation)
        return {
            "inputText": transcript,
            "textGenerationConfig": {
                "maxTokenCount": options.max_tokens,
                "temperature": options.temperature,
                "topP": options.top_p,
                "stopSequences": options.stop_sequences,
            },
        }

    def _results(self, body: dict[str, Any], state: ChunkState) -> DecodedEvents | None:
        results = body.get("results")
        if not isinstance(results, list) or not results:
            return None
        text = (results[0] or {}).get("outputText", "")
        return [TextDelta(content=text)] if text else []

    def _output_text(self, body: dict[str, Any], state: ChunkState) -> DecodedEvents | None:
        if "outputText" not in body:
            return self._results(body, state)
        text = body.get("outputText") or ""
        return [TextDelta(content=text)] if text else []
