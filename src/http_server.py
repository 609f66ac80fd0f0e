"""
HTTP Server for the Bedrock Gateway

Thin communication layer between callers and the orchestrator. Handles
request validation, SSE framing and status mapping only; every model and
tool decision is delegated to the GatewayOrchestrator and ToolProxy.
"""

import logging
from collections.abc import AsyncGenerator
from typing import Any

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from src.clients.tool_proxy import ToolProxy
from src.config import Configuration
from src.gateway import errors
from src.gateway.models import Conversation, ErrorEvent, InvokeOptions, Message, to_sse
from src.gateway.orchestrator import GatewayOrchestrator
from src.tool_catalog import ToolCatalog

logger = logging.getLogger(__name__)


# Pydantic models for request validation
class ChatOptions(BaseModel):
    """Per-request overrides of the configured inference defaults."""

    temperature: float | None = None
    max_tokens: int | None = Field(default=None, ge=1)
    top_p: float | None = None
    top_k: int | None = None
    stop_sequences: list[str] | None = None


class ChatRequest(BaseModel):
    messages: list[Message] = Field(min_length=1)
    model_id: str | None = None
    stream: bool | None = None
    options: ChatOptions = Field(default_factory=ChatOptions)
    tools: list[str] = Field(default_factory=list)


class ImageRequest(BaseModel):
    prompt: str
    model_id: str | None = None
    settings: dict[str, Any] = Field(default_factory=dict)


class GatewayServer:
    """
    Pure HTTP communication server.

    This class only handles:
    - Request parsing and validation
    - SSE framing of stream events
    - Mapping gateway errors to HTTP status codes
    """

    def __init__(
        self,
        orchestrator: GatewayOrchestrator,
        tool_proxy: ToolProxy,
        catalog: ToolCatalog,
        configuration: Configuration,
    ):
        self.orchestrator = orchestrator
        self.tool_proxy = tool_proxy
        self.catalog = catalog
        self.configuration = configuration
        self.app = self._create_app()

    def _create_app(self) -> FastAPI:
        """Create and configure FastAPI app."""
        app = FastAPI(title="Bedrock Protocol Gateway")

        app.add_middleware(
            CORSMiddleware,
            allow_origins=self.configuration.get_server_config()["cors_origins"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

        @app.get("/")
        async def root():  # type: ignore
            return {"message": "Bedrock Protocol Gateway"}

        @app.get("/health")
        async def health():  # type: ignore
            return {"status": "healthy"}

        @app.get("/tools")
        async def list_tools() -> list[dict[str, Any]]:  # type: ignore
            return self.catalog.describe()

        @app.post("/chat")
        async def chat(payload: ChatRequest, request: Request):  # type: ignore
            return await self._handle_chat(payload, request)

        @app.post("/tools/{tool_name}")
        async def call_tool(tool_name: str, arguments: dict[str, Any] | None = None):  # type: ignore
            return await self._handle_tool_call(tool_name, arguments or {})

        @app.post("/images")
        async def images(payload: ImageRequest):  # type: ignore
            return await self._handle_image(payload)

        return app

    def _build_options(self, payload: ChatRequest) -> InvokeOptions:
        overrides = payload.options.model_dump(exclude_none=True)
        overrides["tools"] = self.catalog.select(payload.tools)
        return self.configuration.get_default_options().model_copy(update=overrides)

    def _resolve_streaming(self, payload: ChatRequest) -> bool:
        if payload.stream is not None:
            # Client explicitly set streaming preference - use it
            return payload.stream

        streaming_config = self.configuration.get_chat_service_config().get("streaming", {})
        if streaming_config.get("enabled") is None:
            # FAIL FAST: No streaming configuration found
            raise HTTPException(
                status_code=400,
                detail=(
                    "Streaming configuration missing. "
                    "Set 'chat.service.streaming.enabled' in config.yaml "
                    "or specify 'stream: true/false' in the request."
                ),
            )
        return bool(streaming_config["enabled"])

    async def _handle_chat(self, payload: ChatRequest, request: Request):
        model_id = payload.model_id or self.configuration.get_bedrock_config()["default_model_id"]
        if not model_id:
            raise HTTPException(status_code=400, detail="No model_id given and no default configured")

        streaming = self._resolve_streaming(payload)
        conversation = Conversation(list(payload.messages))
        options = self._build_options(payload)

        logger.info(
            "Received chat request: model=%s streaming=%s messages=%d tools=%d",
            model_id,
            streaming,
            len(conversation),
            len(options.tools),
        )

        if not streaming:
            result = await self.orchestrator.complete_turn(conversation, model_id, options)
            status_code = 200 if result.status == "completed" else 502
            return JSONResponse(status_code=status_code, content=result.model_dump(mode="json"))

        return StreamingResponse(
            self._sse_events(conversation, model_id, options, request),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    async def _sse_events(
        self,
        conversation: Conversation,
        model_id: str,
        options: InvokeOptions,
        request: Request,
    ) -> AsyncGenerator[str]:
        try:
            async for event in self.orchestrator.stream_turn(
                conversation, model_id, options, request.is_disconnected
            ):
                frame = to_sse(event)
                if frame is not None:
                    yield frame
        except Exception as e:
            logger.exception("Error streaming chat response")
            frame = to_sse(ErrorEvent(kind="InternalError", message=f"Server error: {e!s}"))
            if frame is not None:
                yield frame

    async def _handle_tool_call(self, tool_name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        logger.info("Received tool call: %s", tool_name)
        try:
            result = await self.tool_proxy.proxy_tool(tool_name, arguments)
        except errors.ValidationError as e:
            raise HTTPException(status_code=422, detail=str(e)) from e
        except errors.Timeout as e:
            raise HTTPException(status_code=504, detail=str(e)) from e
        except (errors.UpstreamError, errors.NetworkError) as e:
            raise HTTPException(status_code=502, detail=str(e)) from e
        return {"status": result.status, "data": result.data}

    async def _handle_image(self, payload: ImageRequest) -> dict[str, Any]:
        model_id = payload.model_id or self.configuration.get_bedrock_config()["image_model_id"]
        try:
            images = await self.orchestrator.generate_image(model_id, payload.prompt, payload.settings)
        except (errors.UnsupportedModelError, ValueError) as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        except errors.GatewayError as e:
            logger.error("Image generation failed: %s", e)
            raise HTTPException(status_code=502, detail=str(e)) from e
        return {"images": images}

    async def start_server(self) -> None:
        server_config = self.configuration.get_server_config()
        host, port = server_config["host"], server_config["port"]

        logger.info("Starting HTTP server on %s:%s", host, port)

        config = uvicorn.Config(self.app, host=host, port=port, log_level="info")
        server = uvicorn.Server(config)

        try:
            await server.serve()
        except Exception as e:
            logger.error("HTTP server error: %s", e)
            raise
        finally:
            logger.info("HTTP server stopped")


async def run_http_server(
    orchestrator: GatewayOrchestrator,
    tool_proxy: ToolProxy,
    catalog: ToolCatalog,
    configuration: Configuration,
) -> None:
    """Run the HTTP server until it is shut down."""
    server = GatewayServer(orchestrator, tool_proxy, catalog, configuration)
    await server.start_server()
