"""
Main application entry point - HTTP gateway with graceful shutdown handling.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import sys
from typing import Any

from src.clients import BedrockClient, ToolProxy
from src.config import Configuration
from src.gateway.orchestrator import GatewayOrchestrator
from src.gateway.tool_executor import ToolExecutor
from src.http_server import run_http_server
from src.tool_catalog import ToolCatalog

# Module name in config.yaml -> logger trees and the feature flags it owns
MODULE_LOGGER_MAP: dict[str, dict[str, Any]] = {
    "gateway": {
        "loggers": ["src.gateway", "src.adapters", "src.http_server"],
        "default_level": "INFO",
        "features": ["model_replies"],
    },
    "clients": {
        "loggers": ["src.clients", "httpx"],
        "default_level": "INFO",
        "features": ["http_requests", "signing"],
    },
    "tools": {
        "loggers": ["src.clients.tool_proxy", "src.gateway.tool_executor", "src.tool_catalog"],
        "default_level": "INFO",
        "features": ["tool_execution", "tool_arguments", "tool_results"],
    },
}


def _configure_advanced_logging(logging_config: dict[str, Any]) -> None:
    """
    Logging configuration with hierarchical loggers and feature control.

    Levels are set on parent loggers so children inherit them; feature flags
    are cached on the logging module for `should_log_feature()`.
    """
    level_map = {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "ERROR": logging.ERROR,
        "CRITICAL": logging.CRITICAL,
    }

    # Set global level
    global_level = logging_config.get("level", "WARNING")
    logging.getLogger().setLevel(level_map.get(global_level, logging.WARNING))

    modules_config = logging_config.get("modules", {})

    # Parents first, so narrower trees (tools) override the wider ones (clients)
    for module_name in sorted(modules_config, key=lambda name: name == "tools"):
        module_config = modules_config[module_name]
        if not isinstance(module_config, dict):
            continue

        known = MODULE_LOGGER_MAP.get(module_name, {})
        module_level = module_config.get("level", known.get("default_level", global_level))
        level_value = level_map.get(module_level, logging.WARNING)

        for logger_name in known.get("loggers", []):
            logging.getLogger(logger_name).setLevel(level_value)

        if not hasattr(logging, "_module_features"):
            logging._module_features = {}  # type: ignore[attr-defined]
        logging._module_features[module_name] = module_config.get("enable_features", {})  # type: ignore[attr-defined]


# Configure logging for the application
logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")


async def main() -> None:
    """Main entry point - HTTP gateway with graceful shutdown handling."""
    config = Configuration()

    # Apply consolidated logging configuration from YAML
    logging_config = config.get_logging_config()

    if "format" in logging_config:
        for handler in logging.getLogger().handlers:
            if isinstance(handler, logging.StreamHandler):
                handler.setFormatter(logging.Formatter(logging_config["format"]))

    _configure_advanced_logging(logging_config)

    tool_config = config.get_tool_config()
    catalog = ToolCatalog.load(tool_config["catalog_path"])

    service_config = config.get_chat_service_config()
    truncation = service_config.get("logging", {})

    # Setup graceful shutdown handler
    shutdown_event = asyncio.Event()

    def signal_handler() -> None:
        """Handle shutdown signals gracefully."""
        logging.info("Received shutdown signal, initiating graceful shutdown...")
        shutdown_event.set()

    if sys.platform != "win32":
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, signal_handler)

    async with BedrockClient.from_config(config) as bedrock_client, ToolProxy(
        catalog, timeout=tool_config["timeout_seconds"]
    ) as tool_proxy:
        tool_executor = ToolExecutor(
            tool_proxy,
            max_tool_hops=config.get_max_tool_hops(),
            arguments_truncate=truncation.get("tool_arguments_truncate_length", 500),
            results_truncate=truncation.get("tool_results_truncate_length", 200),
        )
        orchestrator = GatewayOrchestrator(
            bedrock_client,
            tool_executor,
            default_options=config.get_default_options(),
            reply_truncate_length=truncation.get("reply_truncate_length", 500),
        )

        try:
            server_task = asyncio.create_task(run_http_server(orchestrator, tool_proxy, catalog, config))

            # Wait for either server completion or shutdown signal
            done, pending = await asyncio.wait(
                [server_task, asyncio.create_task(shutdown_event.wait())],
                return_when=asyncio.FIRST_COMPLETED,
            )

            for task in pending:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

            # Check if server task completed with an exception
            for task in done:
                if task == server_task:
                    exception = task.exception()
                    if exception is not None:
                        raise exception

        except KeyboardInterrupt:
            logging.info("Keyboard interrupt received, shutting down...")
        except Exception as e:
            logging.error(f"Application error: {e}")
            raise
        finally:
            logging.info("Application shutdown complete")


def cli_main() -> None:
    """Synchronous CLI entrypoint that runs the async main."""
    asyncio.run(main())


if __name__ == "__main__":
    cli_main()
