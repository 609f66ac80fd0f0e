"""
Gateway Data Models

Canonical conversation, tool and streaming types shared by every component.
All strongly typed with Pydantic; the provider-specific shapes live in the
adapters and never leak past them.
"""

from __future__ import annotations

import json
import os
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator

from src.gateway.errors import ConfigError

# Single character sent in place of empty turns; providers reject blank content
PLACEHOLDER_TEXT = ";"


# ==============================================================================
# CREDENTIALS AND MODEL FAMILIES
# ==============================================================================


class Credentials(BaseModel):
    """AWS access key pair plus region. The secret never shows up in repr/logs."""

    model_config = ConfigDict(frozen=True)

    access_key: str
    secret_key: SecretStr
    region: str

    @classmethod
    def from_env(cls, region: str | None = None) -> Credentials:
        """Build credentials from AWS_* environment variables."""
        access_key = os.getenv("AWS_ACCESS_KEY_ID", "")
        secret_key = os.getenv("AWS_SECRET_ACCESS_KEY", "")
        region = region or os.getenv("AWS_REGION", "")

        missing = [
            name
            for name, value in (
                ("AWS_ACCESS_KEY_ID", access_key),
                ("AWS_SECRET_ACCESS_KEY", secret_key),
                ("AWS_REGION", region),
            )
            if not value
        ]
        if missing:
            raise ConfigError(f"Missing credentials: {', '.join(missing)}")

        return cls(access_key=access_key, secret_key=SecretStr(secret_key), region=region)


class ModelFamily(str, Enum):
    """Request/response schema family a model id belongs to."""

    CLAUDE = "claude"
    NOVA = "nova"
    TITAN = "titan"
    LLAMA = "llama"
    MISTRAL = "mistral"


# ==============================================================================
# CONVERSATION CONTENT
# ==============================================================================


class TextBlock(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["text"] = "text"
    text: str

    @field_validator("text")
    @classmethod
    def coerce_empty_text(cls, v: str) -> str:
        return v if v.strip() else PLACEHOLDER_TEXT


class ImageBlock(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["image"] = "image"
    mime_type: str = "image/png"
    encoding: Literal["base64"] = "base64"
    data: str

    @property
    def format(self) -> str:
        """Image format derived from the MIME subtype (jpg normalized to jpeg)."""
        subtype = self.mime_type.split("/")[-1].lower()
        return "jpeg" if subtype == "jpg" else subtype


class ToolUseBlock(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: Any = Field(default_factory=dict)


class ToolResultBlock(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    output: Any = None
    is_error: bool = False

    @property
    def output_text(self) -> str:
        """Output as text for providers that only accept strings."""
        if isinstance(self.output, str):
            return self.output
        return json.dumps(self.output, ensure_ascii=False)


ContentBlock = Annotated[
    TextBlock | ImageBlock | ToolUseBlock | ToolResultBlock,
    Field(discriminator="type"),
]


class Message(BaseModel):
    """One conversation turn. Content is never empty."""

    model_config = ConfigDict(frozen=True)

    role: Literal["system", "user", "assistant", "tool"]
    content: list[ContentBlock]

    @field_validator("content", mode="before")
    @classmethod
    def normalize_content(cls, v: Any) -> Any:
        """Accept plain strings and coerce empty content to the placeholder."""
        if v is None:
            return [{"type": "text", "text": PLACEHOLDER_TEXT}]
        if isinstance(v, str):
            return [{"type": "text", "text": v}]
        if isinstance(v, list) and not v:
            return [{"type": "text", "text": PLACEHOLDER_TEXT}]
        return v

    @property
    def text(self) -> str:
        """Concatenated text blocks of this turn."""
        return "".join(b.text for b in self.content if isinstance(b, TextBlock))

    @property
    def tool_uses(self) -> list[ToolUseBlock]:
        return [b for b in self.content if isinstance(b, ToolUseBlock)]

    @property
    def tool_results(self) -> list[ToolResultBlock]:
        return [b for b in self.content if isinstance(b, ToolResultBlock)]


class Conversation:
    """Ordered, append-only list of messages owned by a single turn."""

    def __init__(self, messages: list[Message | dict[str, Any]] | None = None) -> None:
        self._messages: list[Message] = []
        for msg in messages or []:
            self.add_message(msg)

    def add_message(self, message: Message | dict[str, Any]) -> Message:
        if not isinstance(message, Message):
            message = Message.model_validate(message)
        self._messages.append(message)
        return message

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    @property
    def system_message(self) -> Message | None:
        return next((m for m in self._messages if m.role == "system"), None)

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self):
        return iter(tuple(self._messages))

    def __repr__(self) -> str:
        return f"Conversation({len(self._messages)} messages)"


# ==============================================================================
# TOOL DEFINITIONS
# ==============================================================================


ParameterLocation = Literal["query", "path", "body", "json"]


class ToolInvocation(BaseModel):
    """HTTP template used by the tool proxy to call a tool's endpoint."""

    model_config = ConfigDict(frozen=True)

    base_url: str
    path: str = ""
    http_method: Literal["GET", "POST", "PUT", "PATCH", "DELETE"] = "GET"
    parameter_locations: dict[str, ParameterLocation] = Field(default_factory=dict)
    body_encoding: Literal["none", "json", "form"] = "none"
    required: tuple[str, ...] = ()
    defaults: dict[str, Any] = Field(default_factory=dict)

    @field_validator("http_method", mode="before")
    @classmethod
    def upper_method(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v


class ToolDefinition(BaseModel):
    """Tool exposed to the model, loaded once from the catalog."""

    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    parameter_schema: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    invocation: ToolInvocation

    @property
    def properties(self) -> dict[str, Any]:
        return self.parameter_schema.get("properties", {})

    @property
    def required(self) -> list[str]:
        return list(self.parameter_schema.get("required", []))


class ToolExecutionResult(BaseModel):
    """Typed outcome of one tool call; errors here never fail the turn."""

    tool_call_id: str
    name: str
    output: Any = None
    success: bool = True
    accepted: bool = False
    error: str | None = None

    def to_block(self) -> ToolResultBlock:
        if self.success:
            return ToolResultBlock(tool_use_id=self.tool_call_id, output=self.output)
        return ToolResultBlock(
            tool_use_id=self.tool_call_id,
            output={"error": self.error},
            is_error=True,
        )


class ProxyResult(BaseModel):
    """Classified response of a proxied tool call."""

    status: Literal["ok", "accepted"]
    status_code: int
    data: Any = None


# ==============================================================================
# STREAM EVENTS
# ==============================================================================


class TextDelta(BaseModel):
    type: Literal["text_delta"] = "text_delta"
    content: str

    def sse_payload(self) -> dict[str, Any] | None:
        return {"text": self.content}


class ToolCallDetected(BaseModel):
    type: Literal["tool_call"] = "tool_call"
    id: str
    name: str
    arguments_json: str = "{}"

    def sse_payload(self) -> dict[str, Any] | None:
        return None


class ToolResultReady(BaseModel):
    type: Literal["tool_result"] = "tool_result"
    tool_call_id: str
    output: Any = None
    is_error: bool = False

    def sse_payload(self) -> dict[str, Any] | None:
        return None


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    kind: str
    message: str

    def sse_payload(self) -> dict[str, Any] | None:
        return {"error": self.message}


class Done(BaseModel):
    type: Literal["done"] = "done"

    def sse_payload(self) -> dict[str, Any] | None:
        return {"done": True}


StreamEvent = Annotated[
    TextDelta | ToolCallDetected | ToolResultReady | ErrorEvent | Done,
    Field(discriminator="type"),
]


def to_sse(event: TextDelta | ToolCallDetected | ToolResultReady | ErrorEvent | Done) -> str | None:
    """Render an event as one SSE frame, or None when it has no public form."""
    payload = event.sse_payload()
    if payload is None:
        return None
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


# ==============================================================================
# REQUEST OPTIONS AND TURN RESULTS
# ==============================================================================


class InvokeOptions(BaseModel):
    """Inference parameters for one turn."""

    temperature: float = 0.7
    max_tokens: int = Field(default=2000, ge=1)
    top_p: float = 0.9
    top_k: int | None = None
    stop_sequences: list[str] = Field(default_factory=list)
    tools: list[ToolDefinition] = Field(default_factory=list)


class RequestSigningContext(BaseModel):
    """Intermediate SigV4 values for one HTTP attempt. Never reused."""

    model_config = ConfigDict(frozen=True)

    amz_date: str
    date_stamp: str
    scope: str
    payload_hash: str
    canonical_request: str
    string_to_sign: str
    signed_headers: str
    signature: str


class TurnState(str, Enum):
    ENCODING = "encoding"
    SENDING = "sending"
    DECODING = "decoding"
    EXECUTING_TOOL = "executing_tool"
    COMPLETED = "completed"
    FAILED = "failed"


class TurnResult(BaseModel):
    """Aggregated outcome of a non-streaming turn."""

    status: Literal["completed", "failed"]
    text: str = ""
    tool_calls_made: int = 0
    hops: int = 0
    retries: int = 0
    states: list[TurnState] = Field(default_factory=list)
    error: ErrorEvent | None = None
