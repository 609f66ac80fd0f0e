"""
Bedrock runtime HTTP client.

Signs every attempt afresh, sends through a pooled HTTP/2 httpx client and
classifies failures into the gateway error taxonomy. Transient failures are
retried: throttling (429) with exponential backoff plus jitter, everything
else retryable with linear backoff.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import AsyncGenerator, AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, TypeVar

import httpx

from src.clients.endpoints import EndpointResolver
from src.clients.event_stream import parse_response_body
from src.clients.signer import serialize_body, sign
from src.gateway.errors import GatewayError, HttpError, NetworkError, Timeout, TurnCancelled
from src.gateway.logging_utils import log_http_request
from src.gateway.models import Credentials

if TYPE_CHECKING:
    from src.config import Configuration

logger = logging.getLogger(__name__)

T = TypeVar("T")

STREAM_ACCEPT = "application/vnd.amazon.eventstream"
JSON_CONTENT_TYPE = "application/json"

CancelCheck = Callable[[], Awaitable[bool]]
RetryHook = Callable[[int, GatewayError], None]


class BedrockClient:
    """Signed HTTP access to InvokeModel / InvokeModelWithResponseStream."""

    def __init__(
        self,
        credentials: Credentials,
        *,
        endpoint_url: str | None = None,
        timeout: float = 30.0,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_connections: int = 20,
        max_keepalive_connections: int = 10,
        keepalive_expiry: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if base_delay < 0:
            raise ValueError("base_delay must be >= 0")

        self.credentials = credentials
        self.resolver = EndpointResolver(credentials.region, endpoint_url)
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.timeout = timeout

        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            http2=True,
            limits=httpx.Limits(
                max_connections=max_connections,
                max_keepalive_connections=max_keepalive_connections,
                keepalive_expiry=keepalive_expiry,
            ),
            trust_env=False,
            transport=transport,
        )
        logger.info("Bedrock client initialized for region %s", credentials.region)

    @classmethod
    def from_config(
        cls, configuration: Configuration, transport: httpx.AsyncBaseTransport | None = None
    ) -> BedrockClient:
        bedrock_config = configuration.get_bedrock_config()
        retry_config = configuration.get_retry_config()
        pool_config = bedrock_config.get("connection_pool", {})
        return cls(
            configuration.credentials,
            endpoint_url=bedrock_config.get("endpoint_url"),
            timeout=bedrock_config["timeout_seconds"],
            max_retries=retry_config["max_retries"],
            base_delay=retry_config["base_delay_seconds"],
            max_connections=pool_config.get("max_connections", 20),
            max_keepalive_connections=pool_config.get("max_keepalive_connections", 10),
            keepalive_expiry=pool_config.get("keepalive_expiry_seconds", 30.0),
            transport=transport,
        )

    async def invoke(
        self,
        model_id: str,
        body: Any,
        is_cancelled: CancelCheck | None = None,
        on_retry: RetryHook | None = None,
    ) -> Any:
        """Non-streaming invoke; returns the parsed JSON body."""
        payload = serialize_body(body)
        url = self.resolver.resolve(model_id, streaming=False)

        async def attempt() -> bytes:
            response = await self._send(url, payload, streaming=False)
            try:
                return await response.aread()
            except httpx.TimeoutException as e:
                raise Timeout(f"Timed out reading response from {model_id}") from e
            except httpx.TransportError as e:
                raise NetworkError(f"Connection lost reading response from {model_id}: {e}") from e
            finally:
                await response.aclose()

        raw = await self._with_retry(attempt, is_cancelled, on_retry)
        return parse_response_body(raw)

    @asynccontextmanager
    async def stream(
        self,
        model_id: str,
        body: Any,
        is_cancelled: CancelCheck | None = None,
        on_retry: RetryHook | None = None,
    ) -> AsyncGenerator[AsyncIterator[bytes]]:
        """
        Streaming invoke. Yields the response byte iterator.

        Retries cover establishing the response and reading its first chunk;
        once bytes have been handed out the stream is never restarted. The
        connection is released on exit.
        """
        payload = serialize_body(body)
        url = self.resolver.resolve(model_id, streaming=True)

        async def attempt() -> tuple[httpx.Response, bytes, AsyncIterator[bytes]]:
            response = await self._send(url, payload, streaming=True)
            chunks = self._iter_bytes(response, model_id)
            try:
                first = await anext(chunks, b"")
            except BaseException:
                await response.aclose()
                raise
            return response, first, chunks

        response, first, chunks = await self._with_retry(attempt, is_cancelled, on_retry)
        try:
            yield _prepend(first, chunks)
        finally:
            await response.aclose()

    async def _send(self, url: str, payload: bytes, streaming: bool) -> httpx.Response:
        headers = {
            "content-type": JSON_CONTENT_TYPE,
            "accept": STREAM_ACCEPT if streaming else JSON_CONTENT_TYPE,
        }
        if streaming:
            headers["x-amzn-bedrock-accept"] = JSON_CONTENT_TYPE

        # Fresh timestamp and signature for every attempt
        signed_headers = sign("POST", url, headers, payload, self.credentials)
        request = self.client.build_request("POST", url, content=payload, headers=signed_headers)

        start_time = time.monotonic()
        try:
            response = await self.client.send(request, stream=True)
        except httpx.TimeoutException as e:
            raise Timeout(f"Request to {url} timed out after {self.timeout}s") from e
        except httpx.TransportError as e:
            raise NetworkError(f"Request to {url} failed: {e}") from e
        duration_ms = (time.monotonic() - start_time) * 1000
        log_http_request("POST", url, response.status_code, duration_ms)

        if response.status_code >= 400:
            try:
                error_body = (await response.aread()).decode("utf-8", errors="replace")
            except httpx.HTTPError:
                error_body = ""
            finally:
                await response.aclose()
            raise HttpError(response.status_code, error_body)

        return response

    async def _iter_bytes(self, response: httpx.Response, model_id: str) -> AsyncIterator[bytes]:
        try:
            async for chunk in response.aiter_bytes():
                yield chunk
        except httpx.TimeoutException as e:
            raise Timeout(f"Timed out waiting for the next chunk from {model_id}") from e
        except httpx.TransportError as e:
            raise NetworkError(f"Stream from {model_id} broke: {e}") from e

    async def _with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        is_cancelled: CancelCheck | None,
        on_retry: RetryHook | None,
    ) -> T:
        attempt = 0
        while True:
            if is_cancelled is not None and await is_cancelled():
                raise TurnCancelled("Caller disconnected; request abandoned")

            try:
                return await operation()
            except GatewayError as e:
                if not e.retryable or attempt >= self.max_retries:
                    raise
                attempt += 1
                delay = self.backoff_delay(e, attempt)
                logger.warning(
                    "Bedrock request failed (%s), retry %d/%d in %.2fs",
                    e,
                    attempt,
                    self.max_retries,
                    delay,
                )
                if on_retry is not None:
                    on_retry(attempt, e)
                await asyncio.sleep(delay)

    def backoff_delay(self, error: GatewayError, attempt: int) -> float:
        """Exponential with up to 10% jitter for throttling, linear otherwise."""
        if isinstance(error, HttpError) and error.throttled:
            delay = self.base_delay * 2 ** (attempt - 1)
            return delay + random.uniform(0, delay * 0.1)
        return self.base_delay * attempt

    async def close(self) -> None:
        await self.client.aclose()

    async def __aenter__(self) -> BedrockClient:
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.close()


async def _prepend(first: bytes, rest: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
    if first:
        yield first
    async for chunk in rest:
        yield chunk
