"""
Gateway Logging Utilities

Shared logging helpers with per-module feature flags. The flags are set from
the `logging.modules` section of config.yaml by `main._configure_advanced_logging`.
"""

from __future__ import annotations

import logging
from typing import Any

logger = logging.getLogger(__name__)


def should_log_feature(module: str, feature: str) -> bool:
    """
    Check if a specific logging feature should be enabled.

    Uses cached feature flags for better performance during runtime.
    """
    if hasattr(logging, "_module_features"):
        module_features = getattr(logging, "_module_features", {}).get(module, {})
        return module_features.get(feature, False)
    return False


def _truncate(value: Any, length: int) -> str:
    text = value if isinstance(value, str) else str(value)
    if len(text) > length:
        return text[:length] + "..."
    return text


def log_model_reply(
    model_id: str, text: str, tool_calls: list[str], context: str, truncate_length: int = 500
) -> None:
    """
    Log what the model answered in one hop.

    Args:
        model_id: Model that produced the reply
        text: Aggregated text of the reply
        tool_calls: Names of tools the model asked for
        context: Descriptive context for the log entry
        truncate_length: Maximum length for the text part
    """
    if not should_log_feature("gateway", "model_replies"):
        return

    log_parts = [f"Model Reply ({context}):"]
    if text:
        log_parts.append(f"Content: {_truncate(text, truncate_length)}")
    if tool_calls:
        log_parts.append(f"Tool calls: {len(tool_calls)}")
        for i, name in enumerate(tool_calls):
            log_parts.append(f"  [{i}] {name}")
    log_parts.append(f"Model: {model_id}")

    logger.info(" | ".join(log_parts))


def log_tool_execution_start(tool_name: str, call_index: int = 0, total_calls: int = 1) -> None:
    if not should_log_feature("tools", "tool_execution"):
        return
    if total_calls > 1:
        logger.info("→ Tool[%s]: executing tool call %d/%d", tool_name, call_index + 1, total_calls)
    else:
        logger.info("→ Tool[%s]: executing tool", tool_name)


def log_tool_execution_success(tool_name: str, accepted: bool = False) -> None:
    if not should_log_feature("tools", "tool_execution"):
        return
    status = "accepted, still processing" if accepted else "success"
    logger.info("← Tool[%s]: %s", tool_name, status)


def log_tool_execution_error(tool_name: str, error_msg: str) -> None:
    """Tool failures are always logged; they become error results, not turn failures."""
    logger.error("← Tool[%s]: failed with error: %s", tool_name, error_msg)


def log_tool_args_error(tool_name: str, error: Exception) -> None:
    logger.error("Malformed JSON arguments for %s: %s", tool_name, error)


def log_tool_arguments(
    tool_name: str, arguments: dict[str, Any], context: str, truncate_length: int = 500
) -> None:
    """
    Log tool arguments being sent to the tool endpoint.

    Args:
        tool_name: Name of the tool being called
        arguments: Arguments dictionary being sent to the tool
        context: Descriptive context for the log entry
        truncate_length: Maximum length for argument logging
    """
    if not should_log_feature("tools", "tool_arguments"):
        logger.debug("Tool arguments logging disabled for %s", tool_name)
        return

    logger.info("→ Tool[%s]: arguments (%s): %s", tool_name, context, _truncate(arguments, truncate_length))


def log_tool_results(tool_name: str, results: Any, context: str, truncate_length: int = 200) -> None:
    if not should_log_feature("tools", "tool_results"):
        return

    logger.info("← Tool[%s]: results (%s): %s", tool_name, context, _truncate(results, truncate_length))


def log_http_request(
    method: str,
    url: str,
    status_code: int | None = None,
    duration_ms: float | None = None,
) -> None:
    """Log HTTP request details if the `http_requests` feature is on."""
    if not should_log_feature("clients", "http_requests"):
        return

    message_parts = [f"HTTP {method} {url}"]
    if status_code is not None:
        message_parts.append(f"Status: {status_code}")
    if duration_ms is not None:
        message_parts.append(f"Duration: {duration_ms:.2f}ms")

    logger.info(" | ".join(message_parts))
