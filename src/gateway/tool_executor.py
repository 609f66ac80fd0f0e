"""
Tool Execution Handler

Runs the tool calls a model asked for through the tool proxy, one at a time,
and turns each outcome into a typed ToolExecutionResult. Tool-scoped failures
(validation, upstream status, timeouts, network) become error results so the
model can react to them; anything else propagates and fails the turn.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

from src.gateway.errors import TOOL_SCOPED_ERRORS
from src.gateway.logging_utils import (
    log_tool_args_error,
    log_tool_arguments,
    log_tool_execution_error,
    log_tool_execution_start,
    log_tool_execution_success,
    log_tool_results,
)
from src.gateway.models import ToolCallDetected, ToolExecutionResult

if TYPE_CHECKING:
    from src.clients.tool_proxy import ToolProxy

logger = logging.getLogger(__name__)

ACCEPTED_MESSAGE = "Tool accepted the request and is still processing"


def parse_tool_arguments(call: ToolCallDetected) -> dict[str, Any]:
    """Arguments of a tool call; malformed JSON falls back to an empty object."""
    try:
        args = json.loads(call.arguments_json or "{}")
    except json.JSONDecodeError as e:
        log_tool_args_error(call.name, e)
        return {}
    if not isinstance(args, dict):
        log_tool_args_error(call.name, TypeError(f"expected an object, got {type(args).__name__}"))
        return {}
    return args


class ToolExecutor:
    """Executes tool calls and enforces the per-turn hop limit."""

    def __init__(
        self,
        tool_proxy: ToolProxy,
        max_tool_hops: int = 8,
        arguments_truncate: int = 500,
        results_truncate: int = 200,
    ) -> None:
        if not isinstance(max_tool_hops, int) or max_tool_hops < 1:
            raise ValueError("max_tool_hops must be a positive integer")
        self.tool_proxy = tool_proxy
        self.max_tool_hops = max_tool_hops
        self.arguments_truncate = arguments_truncate
        self.results_truncate = results_truncate

    async def execute_tool_calls(self, calls: list[ToolCallDetected]) -> list[ToolExecutionResult]:
        """
        Execute tool calls sequentially, in the order the model emitted them.

        Every call yields exactly one result, success or failure.
        """
        logger.info("→ Tools: executing %d tool calls", len(calls))
        results = [await self.execute_tool_call(call, i, len(calls)) for i, call in enumerate(calls)]
        logger.info("← Tools: completed all tool executions")
        return results

    async def execute_tool_call(
        self, call: ToolCallDetected, index: int = 0, total: int = 1
    ) -> ToolExecutionResult:
        args = parse_tool_arguments(call)
        log_tool_arguments(call.name, args, f"call {index + 1}/{total}", self.arguments_truncate)
        log_tool_execution_start(call.name, index, total)

        try:
            proxied = await self.tool_proxy.proxy_tool(call.name, args)
        except TOOL_SCOPED_ERRORS as e:
            error_msg = f"Tool execution failed: {e!s}"
            log_tool_execution_error(call.name, error_msg)
            return ToolExecutionResult(
                tool_call_id=call.id,
                name=call.name,
                success=False,
                error=error_msg,
            )

        accepted = proxied.status == "accepted"
        log_tool_execution_success(call.name, accepted)
        log_tool_results(call.name, proxied.data, f"HTTP {proxied.status_code}", self.results_truncate)

        if accepted:
            output: Any = {"status": "accepted", "message": ACCEPTED_MESSAGE}
            if proxied.data is not None:
                output["data"] = proxied.data
        else:
            output = proxied.data if proxied.data is not None else "✓ done"

        return ToolExecutionResult(
            tool_call_id=call.id,
            name=call.name,
            output=output,
            accepted=accepted,
        )

    def check_tool_hop_limit(self, hops: int) -> tuple[bool, str | None]:
        """
        Check if tool call hop limit has been reached.

        Returns:
            tuple: (should_stop, warning_message)
        """
        if hops >= self.max_tool_hops:
            warning_msg = (
                f"⚠️ Reached maximum tool call limit ({self.max_tool_hops}). Stopping to prevent infinite recursion."
            )
            logger.warning("Maximum tool hops (%d) reached, stopping recursion", self.max_tool_hops)
            return True, warning_msg
        return False, None
