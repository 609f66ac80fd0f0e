"""
Tool Proxy

Executes a catalog tool as an HTTP call. Placement of every argument (path,
query string, JSON body or form body) comes from the tool's invocation
template; responses are classified into ok / accepted / UpstreamError.
"""

from __future__ import annotations

import json
import logging
import time
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

import httpx

from src.gateway.errors import NetworkError, Timeout, UpstreamError, ValidationError
from src.gateway.logging_utils import log_http_request
from src.gateway.models import ProxyResult, ToolDefinition

if TYPE_CHECKING:
    from src.tool_catalog import ToolCatalog

logger = logging.getLogger(__name__)

HTTP_OK = 200
HTTP_ACCEPTED = 202


class ToolProxy:
    """HTTP executor for catalog tools."""

    def __init__(
        self,
        catalog: ToolCatalog,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.catalog = catalog
        self.timeout = timeout
        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            follow_redirects=True,
            trust_env=False,
            transport=transport,
        )

    async def proxy_tool(self, tool_name: str, arguments: dict[str, Any] | None) -> ProxyResult:
        """
        Call a tool's HTTP endpoint.

        Raises:
            ValidationError: unknown tool, non-object arguments or missing required fields
            UpstreamError: endpoint answered with anything but 200 or 202
            Timeout / NetworkError: endpoint unreachable in time
        """
        tool = self.catalog.get(tool_name)
        if tool is None:
            raise ValidationError(f"Unknown tool: {tool_name}")
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            raise ValidationError(f"Arguments for {tool_name} must be a JSON object")

        request = self.build_request(tool, arguments)

        start_time = time.monotonic()
        try:
            response = await self.client.send(request)
        except httpx.TimeoutException as e:
            raise Timeout(f"Tool {tool_name} timed out after {self.timeout}s") from e
        except httpx.TransportError as e:
            raise NetworkError(f"Tool {tool_name} request failed: {e}") from e
        duration_ms = (time.monotonic() - start_time) * 1000
        log_http_request(request.method, str(request.url), response.status_code, duration_ms)

        return self._classify(tool_name, response)

    def build_request(self, tool: ToolDefinition, arguments: dict[str, Any]) -> httpx.Request:
        invocation = tool.invocation
        args = {**invocation.defaults, **{k: v for k, v in arguments.items() if v is not None}}

        missing = [name for name in invocation.required if args.get(name) in (None, "")]
        if missing:
            raise ValidationError(f"Missing required argument(s) for {tool.name}: {', '.join(missing)}")

        method = invocation.http_method
        path = invocation.path
        query: dict[str, Any] = {}
        json_body: dict[str, Any] = {}
        form_body: dict[str, Any] = {}

        for name, value in args.items():
            location = invocation.parameter_locations.get(name)
            if location is None:
                # Undeclared arguments follow the tool's body encoding
                location = {"json": "json", "form": "body"}.get(invocation.body_encoding, "query")

            if location == "path":
                path = path.replace(f"{{{name}}}", quote(str(value), safe=""))
            elif location == "json":
                json_body[name] = value
            elif location == "body":
                form_body[name] = value
            else:
                query[name] = _query_value(value)

        if method == "GET":
            # GET carries no body; anything destined for one goes to the query string
            query.update({k: _query_value(v) for k, v in {**form_body, **json_body}.items()})
            json_body, form_body = {}, {}

        url = invocation.base_url.rstrip("/") + "/" + path.lstrip("/") if path else invocation.base_url

        kwargs: dict[str, Any] = {"params": query or None}
        if json_body:
            kwargs["json"] = json_body
        elif form_body:
            kwargs["data"] = {k: _query_value(v) for k, v in form_body.items()}

        return self.client.build_request(method, url, **kwargs)

    def _classify(self, tool_name: str, response: httpx.Response) -> ProxyResult:
        if response.status_code == HTTP_OK:
            return ProxyResult(status="ok", status_code=HTTP_OK, data=_response_data(tool_name, response))
        if response.status_code == HTTP_ACCEPTED:
            logger.info("← Tool[%s]: accepted, still processing", tool_name)
            return ProxyResult(status="accepted", status_code=HTTP_ACCEPTED, data=_response_data(tool_name, response))

        snippet = response.text[:300] if response.text else ""
        raise UpstreamError(
            response.status_code,
            f"Tool {tool_name} returned HTTP {response.status_code}" + (f": {snippet}" if snippet else ""),
        )

    async def close(self) -> None:
        await self.client.aclose()

    async def __aenter__(self) -> ToolProxy:
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.close()


def _query_value(value: Any) -> Any:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return [_query_value(v) for v in value]
    if isinstance(value, dict):
        return json.dumps(value, ensure_ascii=False)
    return value


def _response_data(tool_name: str, response: httpx.Response) -> Any:
    """JSON when the content type says so, raw text otherwise."""
    if not response.content:
        return None
    content_type = response.headers.get("content-type", "")
    if "json" in content_type:
        try:
            return response.json()
        except ValueError:
            logger.warning("Tool %s declared JSON but sent invalid JSON; returning text", tool_name)
    return response.text
