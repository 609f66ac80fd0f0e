"""
Schema Adapter Base

Each model family implements `encode` (canonical conversation to provider
body) and declares ordered extraction strategies for decoding. A strategy
returns None when the payload is not its shape; the first strategy that
returns a list wins.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, ClassVar

from src.gateway.models import (
    Conversation,
    InvokeOptions,
    ModelFamily,
    TextDelta,
    ToolCallDetected,
    ToolResultReady,
)

logger = logging.getLogger(__name__)

# Events an adapter can produce from one payload
DecodedEvents = list[TextDelta | ToolCallDetected | ToolResultReady]


@dataclass
class PendingToolCall:
    id: str
    name: str
    input_parts: list[str] = field(default_factory=list)
    initial_input: Any = None

    def arguments_json(self) -> str:
        joined = "".join(self.input_parts)
        if joined.strip():
            return joined
        if self.initial_input:
            return json.dumps(self.initial_input, ensure_ascii=False)
        return "{}"

    def to_event(self) -> ToolCallDetected:
        return ToolCallDetected(id=self.id, name=self.name, arguments_json=self.arguments_json())


@dataclass
class ChunkState:
    """Per-stream accumulation of tool-call fragments, keyed by block index."""

    pending: dict[Any, PendingToolCall] = field(default_factory=dict)

    def open(self, key: Any, call_id: str, name: str, initial_input: Any = None) -> None:
        self.pending[key] = PendingToolCall(id=call_id, name=name, initial_input=initial_input)

    def append(self, key: Any, fragment: str) -> bool:
        call = self.pending.get(key)
        if call is None:
            return False
        call.input_parts.append(fragment)
        return True

    def close(self, key: Any) -> DecodedEvents:
        call = self.pending.pop(key, None)
        return [call.to_event()] if call else []

    def drain(self) -> DecodedEvents:
        events: DecodedEvents = [call.to_event() for call in self.pending.values()]
        self.pending.clear()
        return events


def tool_result_envelope(body: dict[str, Any], state: ChunkState) -> DecodedEvents | None:
    """Tool-result envelopes look the same regardless of family."""
    if body.get("type") == "tool_result":
        return [
            ToolResultReady(
                tool_call_id=str(body.get("tool_use_id", "")),
                output=body.get("content"),
                is_error=bool(body.get("is_error", False)),
            )
        ]
    result = body.get("toolResult")
    if isinstance(result, dict):
        return [
            ToolResultReady(
                tool_call_id=str(result.get("toolUseId", "")),
                output=result.get("content"),
                is_error=result.get("status") == "error",
            )
        ]
    return None


class SchemaAdapter(ABC):
    """One family's request encoding and response/chunk decoding."""

    family: ClassVar[ModelFamily]
    supports_tools: ClassVar[bool] = True

    # Ordered; first match wins
    response_strategies: ClassVar[tuple[str, ...]] = ()
    chunk_strategies: ClassVar[tuple[str, ...]] = ()

    @abstractmethod
    def encode(self, conversation: Conversation, options: InvokeOptions) -> dict[str, Any]:
        """Build the provider request body."""

    def decode_response(self, body: Any) -> DecodedEvents:
        """Decode a complete non-streaming response body."""
        return self._run_strategies(self.response_strategies, body, ChunkState())

    def decode_chunk(self, payload: Any, state: ChunkState) -> DecodedEvents:
        """Decode one streaming payload, accumulating partial tool calls in `state`."""
        return self._run_strategies(self.chunk_strategies, payload, state)

    def finish(self, state: ChunkState) -> DecodedEvents:
        """Emit tool calls still open when the stream ended."""
        return state.drain()

    def _run_strategies(self, names: tuple[str, ...], payload: Any, state: ChunkState) -> DecodedEvents:
        if not isinstance(payload, dict):
            logger.debug("Ignoring non-object %s payload: %r", self.family.value, payload)
            return []

        for name in ("tool_result_envelope", *names):
            strategy = tool_result_envelope if name == "tool_result_envelope" else getattr(self, name)
            events = strategy(payload, state)
            if events is not None:
                return events

        logger.debug("No %s extraction strategy matched payload keys %s", self.family.value, list(payload))
        return []

    def _warn_tools_ignored(self, options: InvokeOptions) -> None:
        if options.tools:
            logger.warning(
                "%s models do not support tools; ignoring %d selected tool(s)",
                self.family.value,
                len(options.tools),
            )
