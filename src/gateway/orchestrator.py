"""
Gateway Orchestrator

Owns one user turn from first encode to the terminal answer:

    Encoding → Sending → Decoding → {ExecutingTool → Encoding | Completed | Failed}

Both modes run the same hop loop. Streaming re-emits events to the caller as
they are decoded and checks caller liveness before each one; non-streaming
aggregates the text of every hop into a TurnResult.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator, Awaitable, Callable, Coroutine
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from src.adapters import SchemaAdapter, detect_family, extract_images, get_adapter, shape_image_request
from src.clients.event_stream import decode_stream
from src.gateway.errors import GatewayError, TurnCancelled
from src.gateway.logging_utils import log_model_reply
from src.gateway.models import (
    PLACEHOLDER_TEXT,
    Conversation,
    Done,
    ErrorEvent,
    InvokeOptions,
    Message,
    ModelFamily,
    TextBlock,
    TextDelta,
    ToolCallDetected,
    ToolResultReady,
    ToolUseBlock,
    TurnResult,
    TurnState,
)
from src.gateway.tool_executor import ToolExecutor, parse_tool_arguments

if TYPE_CHECKING:
    from src.clients.bedrock_client import BedrockClient

logger = logging.getLogger(__name__)

DisconnectCheck = Callable[[], Awaitable[bool]]
TurnEvent = TextDelta | ToolCallDetected | ToolResultReady


@dataclass
class TurnContext:
    """Mutable bookkeeping for one in-flight turn. Never shared between turns."""

    conversation: Conversation
    model_id: str
    family: ModelFamily
    adapter: SchemaAdapter
    options: InvokeOptions
    streaming: bool
    is_disconnected: DisconnectCheck | None = None
    states: list[TurnState] = field(default_factory=list)
    hops: int = 0
    tool_calls_made: int = 0
    retries: int = 0
    hop_texts: list[str] = field(default_factory=list)
    cancelled: bool = False

    def transition(self, state: TurnState) -> None:
        self.states.append(state)
        logger.debug("Turn %s → %s (hop %d)", self.model_id, state.value, self.hops)

    async def caller_gone(self) -> bool:
        if not self.cancelled and self.is_disconnected is not None:
            self.cancelled = await self.is_disconnected()
        return self.cancelled

    def record_retry(self, attempt: int, error: GatewayError) -> None:
        self.retries += 1

    @property
    def text(self) -> str:
        return "\n\n".join(t for t in self.hop_texts if t)


class GatewayOrchestrator:
    """
    Sole entry point for model turns.

    The Bedrock client and tool executor are shared, read-only collaborators;
    every call to `invoke` gets its own TurnContext.
    """

    def __init__(
        self,
        bedrock_client: BedrockClient,
        tool_executor: ToolExecutor,
        default_options: InvokeOptions | None = None,
        reply_truncate_length: int = 500,
    ) -> None:
        self.bedrock_client = bedrock_client
        self.tool_executor = tool_executor
        self.default_options = default_options or InvokeOptions()
        self.reply_truncate_length = reply_truncate_length

    def invoke(
        self,
        conversation: Conversation,
        model_id: str,
        stream: bool,
        options: InvokeOptions | None = None,
        is_disconnected: DisconnectCheck | None = None,
    ) -> AsyncGenerator[TurnEvent | ErrorEvent | Done] | Coroutine[Any, Any, TurnResult]:
        """
        Run one turn.

        Returns an async generator of stream events when `stream` is true,
        otherwise a coroutine resolving to the aggregated TurnResult.
        """
        if stream:
            return self.stream_turn(conversation, model_id, options, is_disconnected)
        return self.complete_turn(conversation, model_id, options, is_disconnected)

    async def stream_turn(
        self,
        conversation: Conversation,
        model_id: str,
        options: InvokeOptions | None = None,
        is_disconnected: DisconnectCheck | None = None,
    ) -> AsyncGenerator[TurnEvent | ErrorEvent | Done]:
        """
        Stream one turn. Ends with Done on success or a single ErrorEvent on
        failure; emits nothing further once the caller has disconnected.
        """
        try:
            ctx = self._new_context(conversation, model_id, options, True, is_disconnected)
        except GatewayError as e:
            logger.error("Turn rejected for %s: %s", model_id, e)
            yield e.to_event()
            return

        logger.info("→ Gateway: streaming turn for model=%s (%d messages)", model_id, len(conversation))
        try:
            async with aclosing(self._run_turn(ctx)) as events:
                async for event in events:
                    if await ctx.caller_gone():
                        raise TurnCancelled("Caller disconnected")
                    yield event
            if await ctx.caller_gone():
                raise TurnCancelled("Caller disconnected")
            yield Done()
            logger.info("← Gateway: streaming turn completed after %d tool hop(s)", ctx.hops)
        except TurnCancelled:
            ctx.transition(TurnState.FAILED)
            logger.info("Caller disconnected from %s turn; stopped emitting", model_id)
        except GatewayError as e:
            ctx.transition(TurnState.FAILED)
            logger.error("Turn failed for %s: %s: %s", model_id, e.kind, e)
            if not await ctx.caller_gone():
                yield e.to_event()

    async def complete_turn(
        self,
        conversation: Conversation,
        model_id: str,
        options: InvokeOptions | None = None,
        is_disconnected: DisconnectCheck | None = None,
    ) -> TurnResult:
        """Run one turn to completion and aggregate every hop's text."""
        try:
            ctx = self._new_context(conversation, model_id, options, False, is_disconnected)
        except GatewayError as e:
            logger.error("Turn rejected for %s: %s", model_id, e)
            return TurnResult(status="failed", states=[TurnState.FAILED], error=e.to_event())

        logger.info("→ Gateway: turn for model=%s (%d messages)", model_id, len(conversation))
        try:
            async with aclosing(self._run_turn(ctx)) as events:
                async for _event in events:
                    pass
        except GatewayError as e:
            ctx.transition(TurnState.FAILED)
            logger.error("Turn failed for %s: %s: %s", model_id, e.kind, e)
            return self._result(ctx, "failed", e.to_event())

        logger.info("← Gateway: turn completed after %d tool hop(s)", ctx.hops)
        return self._result(ctx, "completed")

    async def generate_image(
        self, model_id: str, prompt: str, settings: dict[str, Any] | None = None
    ) -> list[str]:
        """Shape an image request, invoke it, and return base64 images."""
        body = shape_image_request(model_id, prompt, settings)
        logger.info("→ Gateway: image request for model=%s", model_id)
        response = await self.bedrock_client.invoke(model_id, body)
        images = extract_images(response)
        logger.info("← Gateway: received %d image(s)", len(images))
        return images

    def _new_context(
        self,
        conversation: Conversation,
        model_id: str,
        options: InvokeOptions | None,
        streaming: bool,
        is_disconnected: DisconnectCheck | None,
    ) -> TurnContext:
        family = detect_family(model_id)
        return TurnContext(
            conversation=conversation,
            model_id=model_id,
            family=family,
            adapter=get_adapter(family),
            options=options or self.default_options,
            streaming=streaming,
            is_disconnected=is_disconnected,
        )

    async def _run_turn(self, ctx: TurnContext) -> AsyncGenerator[TurnEvent]:
        """The hop loop. Raises GatewayError on any turn-fatal failure."""
        while True:
            ctx.transition(TurnState.ENCODING)
            body = ctx.adapter.encode(ctx.conversation, ctx.options)

            ctx.transition(TurnState.SENDING)
            text_parts: list[str] = []
            calls: list[ToolCallDetected] = []

            async with aclosing(self._model_events(ctx, body)) as events:
                async for event in events:
                    if isinstance(event, TextDelta):
                        text_parts.append(event.content)
                    elif isinstance(event, ToolCallDetected):
                        calls.append(event)
                    yield event

            hop_text = "".join(text_parts)
            ctx.hop_texts.append(hop_text)
            log_model_reply(
                ctx.model_id,
                hop_text,
                [c.name for c in calls],
                f"hop {ctx.hops}",
                self.reply_truncate_length,
            )

            if not calls:
                ctx.transition(TurnState.COMPLETED)
                return

            should_stop, warning_msg = self.tool_executor.check_tool_hop_limit(ctx.hops)
            if should_stop and warning_msg:
                ctx.hop_texts.append(warning_msg)
                yield TextDelta(content=warning_msg)
                ctx.transition(TurnState.COMPLETED)
                return

            ctx.transition(TurnState.EXECUTING_TOOL)
            logger.info("Starting tool call iteration %d", ctx.hops + 1)
            async for event in self._execute_tools(ctx, hop_text, calls):
                yield event
            ctx.hops += 1

    async def _model_events(self, ctx: TurnContext, body: dict[str, Any]) -> AsyncGenerator[TurnEvent]:
        if ctx.streaming:
            async with self.bedrock_client.stream(
                ctx.model_id, body, ctx.caller_gone, ctx.record_retry
            ) as byte_iter:
                ctx.transition(TurnState.DECODING)
                async with aclosing(decode_stream(byte_iter, ctx.family)) as events:
                    async for event in events:
                        if not isinstance(event, Done):
                            yield event
            return

        response = await self.bedrock_client.invoke(ctx.model_id, body, ctx.caller_gone, ctx.record_retry)
        ctx.transition(TurnState.DECODING)
        for event in ctx.adapter.decode_response(response):
            yield event

    async def _execute_tools(
        self, ctx: TurnContext, hop_text: str, calls: list[ToolCallDetected]
    ) -> AsyncGenerator[ToolResultReady]:
        # Assistant turn goes in before any tool runs so a failed call still leaves a trail
        ctx.conversation.add_message(
            Message(
                role="assistant",
                content=[
                    TextBlock(text=hop_text or PLACEHOLDER_TEXT),
                    *(ToolUseBlock(id=c.id, name=c.name, input=parse_tool_arguments(c)) for c in calls),
                ],
            )
        )

        results = await self.tool_executor.execute_tool_calls(calls)
        blocks = [result.to_block() for result in results]
        ctx.conversation.add_message(Message(role="tool", content=blocks))
        ctx.tool_calls_made += len(calls)

        for block in blocks:
            yield ToolResultReady(tool_call_id=block.tool_use_id, output=block.output, is_error=block.is_error)

    @staticmethod
    def _result(ctx: TurnContext, status: str, error: ErrorEvent | None = None) -> TurnResult:
        return TurnResult(
            status=status,
            text=ctx.text,
            tool_calls_made=ctx.tool_calls_made,
            hops=ctx.hops,
            retries=ctx.retries,
            states=list(ctx.states),
            error=error,
        )
