"""Configuration management for the Bedrock gateway."""

from __future__ import annotations

import copy
import logging
import os
from typing import Any, cast

import yaml
from dotenv import load_dotenv

from src.gateway.errors import ConfigError
from src.gateway.models import Credentials, InvokeOptions

DEFAULT_CONFIG_PATH = os.path.join(os.path.dirname(__file__), "config.yaml")

# Environment variable -> config path it overrides
ENV_OVERRIDES: dict[str, tuple[str, ...]] = {
    "AWS_REGION": ("bedrock", "region"),
    "BEDROCK_MODEL_ID": ("bedrock", "default_model_id"),
    "BEDROCK_ENDPOINT_URL": ("bedrock", "endpoint_url"),
}


class Configuration:
    """YAML configuration with `.env` loading and environment overrides."""

    def __init__(self, config_path: str | None = None) -> None:
        """Initialize configuration from YAML and environment variables."""
        self.load_env()  # Load .env for AWS credentials
        self._config_path = config_path or DEFAULT_CONFIG_PATH
        self._current_config = self._apply_env_overrides(self._load_yaml_config())

    @staticmethod
    def load_env() -> None:
        """Load environment variables from .env file."""
        load_dotenv()

    def _load_yaml_config(self) -> dict[str, Any]:
        """Load configuration from YAML file."""
        try:
            with open(self._config_path) as file:
                config = yaml.safe_load(file)
        except OSError as e:
            raise ConfigError(f"Cannot read configuration file {self._config_path}: {e}") from e
        except yaml.YAMLError as e:
            raise ConfigError(f"Configuration file {self._config_path} is not valid YAML: {e}") from e
        if not isinstance(config, dict):
            raise ValueError("Configuration file must contain a dictionary")
        return cast(dict[str, Any], config)

    def _deep_merge(self, base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
        """Deep merge two dictionaries, with override taking precedence."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(cast(dict[str, Any], result[key]), cast(dict[str, Any], value))
            else:
                result[key] = value

        return result

    def _apply_env_overrides(self, config: dict[str, Any]) -> dict[str, Any]:
        overrides: dict[str, Any] = {}
        for env_name, path in ENV_OVERRIDES.items():
            value = os.getenv(env_name)
            if not value:
                continue
            node = overrides
            for key in path[:-1]:
                node = node.setdefault(key, {})
            node[path[-1]] = value
            logging.debug("Configuration %s overridden from %s", ".".join(path), env_name)
        return self._deep_merge(config, overrides)

    def _get_config_value(self, path: list[str], default: Any = None) -> Any:
        """Get a configuration value by path."""
        current: Any = self._current_config
        for key in path:
            if isinstance(current, dict) and key in current:
                current = current[key]
            else:
                return default
        return current

    def get_config_dict(self) -> dict[str, Any]:
        """Get a copy of the full configuration dictionary."""
        return copy.deepcopy(self._current_config)

    @property
    def credentials(self) -> Credentials:
        """AWS credentials for the configured region.

        Raises:
            ConfigError: If AWS_ACCESS_KEY_ID, AWS_SECRET_ACCESS_KEY or the
                region is missing.
        """
        return Credentials.from_env(region=self.get_bedrock_config()["region"] or None)

    def get_bedrock_config(self) -> dict[str, Any]:
        """Get Bedrock runtime configuration with validated defaults."""
        bedrock_config = self._get_config_value(["bedrock"], {})
        pool_config = bedrock_config.get("connection_pool", {})

        timeout = bedrock_config.get("timeout_seconds", 30.0)
        if not isinstance(timeout, (int, float)) or timeout <= 0:
            raise ValueError("bedrock.timeout_seconds must be positive")

        max_connections = pool_config.get("max_connections", 20)
        max_keepalive = pool_config.get("max_keepalive_connections", 10)
        if max_connections < 1:
            raise ValueError("connection_pool.max_connections must be at least 1")
        if max_keepalive < 0 or max_keepalive > max_connections:
            raise ValueError("connection_pool.max_keepalive_connections must be between 0 and max_connections")

        return {
            "region": bedrock_config.get("region", ""),
            "default_model_id": bedrock_config.get("default_model_id", ""),
            "image_model_id": bedrock_config.get("image_model_id", ""),
            "endpoint_url": bedrock_config.get("endpoint_url"),
            "timeout_seconds": float(timeout),
            "connection_pool": {
                "max_connections": max_connections,
                "max_keepalive_connections": max_keepalive,
                "keepalive_expiry_seconds": pool_config.get("keepalive_expiry_seconds", 30.0),
            },
        }

    def get_retry_config(self) -> dict[str, Any]:
        """Get retry policy for Bedrock calls.

        Returns:
            Dictionary with `max_retries` (retries after the first attempt)
            and `base_delay_seconds`.
        """
        retry_config = self._get_config_value(["retry"], {})
        max_retries = retry_config.get("max_retries", 3)
        base_delay = retry_config.get("base_delay_seconds", 1.0)

        if not isinstance(max_retries, int) or max_retries < 0:
            raise ValueError("retry.max_retries must be a non-negative integer")
        if not isinstance(base_delay, (int, float)) or base_delay < 0:
            raise ValueError("retry.base_delay_seconds must be >= 0")

        return {"max_retries": max_retries, "base_delay_seconds": float(base_delay)}

    def get_default_options(self) -> InvokeOptions:
        """Get default inference parameters."""
        defaults = self._get_config_value(["defaults"], {}) or {}
        try:
            return InvokeOptions.model_validate(defaults)
        except ValueError as e:
            raise ValueError(f"Invalid inference defaults: {e}") from e

    def get_chat_service_config(self) -> dict[str, Any]:
        """Get chat service configuration from YAML."""
        return self._get_config_value(["chat", "service"], {})

    def get_max_tool_hops(self) -> int:
        """Get the maximum number of tool hops allowed.

        Returns:
            Maximum number of tool hops (default: 8).
        """
        max_hops = self.get_chat_service_config().get("max_tool_hops", 8)

        # Validate that it's a positive integer
        if not isinstance(max_hops, int) or max_hops < 1:
            raise ValueError("max_tool_hops must be a positive integer")

        return max_hops

    def get_tool_config(self) -> dict[str, Any]:
        """Get tool catalog location and tool call timeout."""
        tool_config = self._get_config_value(["tools"], {})
        timeout = tool_config.get("timeout_seconds", 30.0)
        if not isinstance(timeout, (int, float)) or timeout <= 0:
            raise ValueError("tools.timeout_seconds must be positive")

        catalog_path = tool_config.get("catalog_path")
        if catalog_path and not os.path.isabs(catalog_path):
            catalog_path = os.path.join(os.path.dirname(self._config_path), catalog_path)

        return {"catalog_path": catalog_path, "timeout_seconds": float(timeout)}

    def get_server_config(self) -> dict[str, Any]:
        """Get HTTP server configuration."""
        server_config = self._get_config_value(["server"], {})
        port = server_config.get("port", 8000)
        if not isinstance(port, int) or not 0 < port < 65536:
            raise ValueError("server.port must be a valid TCP port")
        return {
            "host": server_config.get("host", "localhost"),
            "port": port,
            "cors_origins": server_config.get("cors_origins", ["*"]),
        }

    def get_logging_config(self) -> dict[str, Any]:
        """Get logging configuration from YAML."""
        return self._get_config_value(["logging"], {})
