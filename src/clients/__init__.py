"""Clients package containing the Bedrock runtime and tool HTTP clients."""

from __future__ import annotations

from .bedrock_client import BedrockClient
from .tool_proxy import ToolProxy

__all__ = ["BedrockClient", "ToolProxy"]
