"""
Gateway Error Taxonomy

Every failure the gateway can surface is one of these classes. The `kind`
attribute is the stable identifier reported to callers; `retryable` tells the
Bedrock client whether another attempt is allowed.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from src.gateway.models import ErrorEvent


class GatewayError(Exception):
    """Base class for all gateway failures."""

    kind: str = "GatewayError"
    retryable: bool = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_event(self) -> ErrorEvent:
        """Convert to the caller-visible stream event."""
        from src.gateway.models import ErrorEvent

        return ErrorEvent(kind=self.kind, message=str(self))

    def __str__(self) -> str:
        return self.message


class ConfigError(GatewayError):
    """Missing credentials, region or model id. Fatal."""

    kind = "ConfigError"


class EncodingError(GatewayError):
    """Request body could not be serialized. Fatal."""

    kind = "EncodingError"


class UnsupportedModelError(GatewayError):
    """Model id matches no known family. Fatal, never retried."""

    kind = "UnsupportedModel"

    def __init__(self, model_id: str, message: str | None = None) -> None:
        super().__init__(message or f"Unsupported model: {model_id}")
        self.model_id = model_id


class NetworkError(GatewayError):
    """Connection could not be established or broke mid-request."""

    kind = "NetworkError"
    retryable = True


class Timeout(GatewayError):
    """Send, chunk read or tool call exceeded its deadline."""

    kind = "Timeout"
    retryable = True


class HttpError(GatewayError):
    """Upstream model endpoint answered with a non-success status."""

    kind = "HttpError"
    retryable = True

    def __init__(self, status: int, body: str = "") -> None:
        detail = f": {body[:300]}" if body else ""
        super().__init__(f"HTTP {status}{detail}")
        self.status = status
        self.body = body

    @property
    def throttled(self) -> bool:
        return self.status == 429


class ParseError(GatewayError):
    """Non-streaming response body was not valid JSON. Fatal."""

    kind = "ParseError"


class ModelStreamError(GatewayError):
    """Error reported by the model inside an otherwise healthy stream. Fatal."""

    kind = "ModelError"

    def __init__(self, error_type: str, message: str) -> None:
        super().__init__(f"{error_type}: {message}")
        self.error_type = error_type


class ValidationError(GatewayError):
    """Tool arguments failed validation. Tool-scoped."""

    kind = "ValidationError"


class UpstreamError(GatewayError):
    """Tool endpoint answered with an unexpected status. Tool-scoped."""

    kind = "UpstreamError"

    def __init__(self, status: int, message: str | None = None) -> None:
        super().__init__(message or f"Tool endpoint returned HTTP {status}")
        self.status = status


class TurnCancelled(GatewayError):
    """The caller went away; no further events or retries."""

    kind = "Cancelled"


# Errors that end up as error tool results instead of failing the turn
TOOL_SCOPED_ERRORS: tuple[type[GatewayError], ...] = (
    ValidationError,
    UpstreamError,
    NetworkError,
    Timeout,
)
