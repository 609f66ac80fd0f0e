"""Tool Catalog

Read-only registry of the HTTP tools the model may call. Loaded once at
startup from a JSON or YAML document and handed by reference to the
orchestrator and the tool proxy; nothing mutates it afterwards.

Each catalog entry is either:
- a compact definition: {name, description, parameter_schema, invocation}
- an OpenAPI-subset document: {info, servers[0].url, paths: {<path>: {get|post: ...}}}
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Iterator, Mapping
from types import MappingProxyType
from typing import Any

import yaml

from src.gateway.errors import ConfigError
from src.gateway.models import ToolDefinition, ToolInvocation

logger = logging.getLogger(__name__)

DEFAULT_CATALOG_PATH = os.path.join(os.path.dirname(__file__), "tools.json")

# GET wins when a path defines it; otherwise the first of these that exists
_METHOD_PREFERENCE = ("get", "post", "put", "patch", "delete")

_FORM_CONTENT_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")


def _from_openapi(doc: dict[str, Any]) -> ToolDefinition:
    """
    Reduce an OpenAPI-subset document to one ToolDefinition.

    Only the first path is used. Parameters with `in: query|path|body` keep
    their placement; a JSON `requestBody` schema contributes body fields.
    """
    servers = doc.get("servers") or []
    if not servers or not servers[0].get("url"):
        raise ConfigError("OpenAPI tool is missing servers[0].url")

    paths = doc.get("paths") or {}
    if not paths:
        raise ConfigError("OpenAPI tool defines no paths")
    path, operations = next(iter(paths.items()))

    method = next((m for m in _METHOD_PREFERENCE if m in operations), None)
    if method is None:
        raise ConfigError(f"OpenAPI path '{path}' defines no supported operation")
    operation = operations[method]
    info = doc.get("info") or {}

    name = operation.get("operationId") or info.get("title")
    if not name:
        raise ConfigError("OpenAPI tool needs an operationId or info.title")

    properties: dict[str, Any] = {}
    required: list[str] = []
    locations: dict[str, str] = {}
    defaults: dict[str, Any] = {}
    body_encoding = "none"

    for param in operation.get("parameters") or []:
        param_name = param["name"]
        location = param.get("in", "query")
        if location not in ("query", "path", "body"):
            logger.warning("Ignoring %s parameter '%s' of tool '%s'", location, param_name, name)
            continue

        schema = dict(param.get("schema") or {"type": "string"})
        if param.get("description"):
            schema.setdefault("description", param["description"])
        properties[param_name] = schema
        locations[param_name] = location
        if param.get("required") or location == "path":
            required.append(param_name)
        if "default" in schema:
            defaults[param_name] = schema["default"]
        if location == "body":
            body_encoding = "form"

    request_body = operation.get("requestBody")
    if request_body:
        content = request_body.get("content") or {}
        content_type = next(iter(content), "application/json")
        body_schema = (content.get(content_type) or {}).get("schema") or {}
        body_location = "body" if content_type in _FORM_CONTENT_TYPES else "json"
        body_encoding = "form" if body_location == "body" else "json"

        for field_name, field_schema in (body_schema.get("properties") or {}).items():
            properties[field_name] = field_schema
            locations[field_name] = body_location
            if isinstance(field_schema, dict) and "default" in field_schema:
                defaults[field_name] = field_schema["default"]
        required.extend(r for r in body_schema.get("required", []) if r not in required)

    return ToolDefinition(
        name=name,
        description=operation.get("summary") or operation.get("description") or info.get("description", ""),
        parameter_schema={"type": "object", "properties": properties, "required": required},
        invocation=ToolInvocation(
            base_url=servers[0]["url"],
            path=path,
            http_method=method.upper(),
            parameter_locations=locations,
            body_encoding=body_encoding,
            required=tuple(required),
            defaults=defaults,
        ),
    )


def parse_tool_entry(entry: dict[str, Any]) -> ToolDefinition:
    if "paths" in entry:
        return _from_openapi(entry)

    entry = dict(entry)
    if "parameters" in entry and "parameter_schema" not in entry:
        entry["parameter_schema"] = entry.pop("parameters")
    invocation = dict(entry.get("invocation") or {})
    invocation.setdefault("required", entry.get("parameter_schema", {}).get("required", []))
    entry["invocation"] = invocation
    return ToolDefinition.model_validate(entry)


class ToolCatalog(Mapping[str, ToolDefinition]):
    """Immutable name -> ToolDefinition mapping."""

    def __init__(self, tools: list[ToolDefinition] | None = None) -> None:
        registry: dict[str, ToolDefinition] = {}
        for tool in tools or []:
            if tool.name in registry:
                logger.warning("Tool name conflict: '%s' already exists, keeping the first", tool.name)
                continue
            registry[tool.name] = tool
        self._tools: Mapping[str, ToolDefinition] = MappingProxyType(registry)

    @classmethod
    def load(cls, path: str | None = None) -> ToolCatalog:
        """Load a catalog document (JSON or YAML) with a top-level `tools` list."""
        path = path or DEFAULT_CATALOG_PATH
        try:
            with open(path) as f:
                if path.endswith((".yaml", ".yml")):
                    document = yaml.safe_load(f)
                else:
                    document = json.load(f)
        except OSError as e:
            raise ConfigError(f"Cannot read tool catalog {path}: {e}") from e
        except (json.JSONDecodeError, yaml.YAMLError) as e:
            raise ConfigError(f"Tool catalog {path} is not valid: {e}") from e

        entries = document.get("tools", []) if isinstance(document, dict) else document
        if not isinstance(entries, list):
            raise ConfigError(f"Tool catalog {path} must contain a list of tools")

        catalog = cls([parse_tool_entry(entry) for entry in entries])
        logger.info("Loaded %d tools from %s", len(catalog), path)
        return catalog

    def __getitem__(self, name: str) -> ToolDefinition:
        return self._tools[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._tools)

    def __len__(self) -> int:
        return len(self._tools)

    def select(self, names: list[str] | None) -> list[ToolDefinition]:
        """Tools for one request; unknown names are skipped with a warning."""
        if not names:
            return []
        selected: list[ToolDefinition] = []
        for name in names:
            tool = self._tools.get(name)
            if tool is None:
                logger.warning("Requested tool '%s' is not in the catalog", name)
                continue
            selected.append(tool)
        return selected

    def describe(self) -> list[dict[str, Any]]:
        return [
            {"name": t.name, "description": t.description, "parameters": t.parameter_schema}
            for t in self._tools.values()
        ]
