"""Meta Llama prompt-string schema. No tool support."""

from __future__ import annotations

from typing import Any

from src.adapters.base import ChunkState, DecodedEvents, SchemaAdapter
from src.adapters.titan import flatten_text
from src.gateway.models import Conversation, InvokeOptions, ModelFamily, TextDelta

BEGIN_OF_TEXT = "<|begin_of_text|>"
START_HEADER = "<|start_header_id|>"
END_HEADER = "<|end_header_id|>"
END_OF_TURN = "<|eot_id|>"


def _header(role: str) -> str:
    return f"{START_HEADER}{role}{END_HEADER}"


class LlamaAdapter(SchemaAdapter):
    family = ModelFamily.LLAMA
    supports_tools = False

    response_strategies = ("_generation",)
    chunk_strategies = ("_generation",)

    def build_prompt(self, conversation: Conversation) -> str:
        """System turn first, then every other turn, ending with an open assistant header."""
        system_message = conversation.system_message
        ordered = [system_message] if system_message is not None else []
        ordered.extend(msg for msg in conversation if msg is not system_message)

        parts = [BEGIN_OF_TEXT]
        for msg in ordered:
            # Llama 3 has no tool role; tool output is fed back as user text
            role = "user" if msg.role == "tool" else msg.role
            parts.append(f"{_header(role)}\n{flatten_text(msg)}{END_OF_TURN}")
        parts.append(_header("assistant"))
        return "".join(parts)

    def encode(self, conversation: Conversation, options: InvokeOptions) -> dict[str, Any]:
        self._warn_tools_ignored(options)
        return {
            "prompt": self.build_prompt(conversation),
            "max_gen_len": options.max_tokens,
            "temperature": options.temperature,
            "top_p": options.top_p,
        }

    def _generation(self, body: dict[str, Any], state: ChunkState) -> DecodedEvents | None:
        if "generation" not in body:
            return None
        text = body.get("generation") or ""
        return [TextDelta(content=text)] if text else []
