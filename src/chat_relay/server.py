"""FastAPI application exposing the relay.

    POST /api/chat   → event stream (or ``{"result": ...}`` with ``stream: false``)
    GET  /health     → liveness
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Literal

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from chat_relay.config import RelayConfig, load_config
from chat_relay.errors import RelayError, UpstreamRateLimitError
from chat_relay.relay.controller import RelayController

_logger = logging.getLogger(__name__)

STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "Access-Control-Allow-Origin": "*",
    "X-Accel-Buffering": "no",
}


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    # Left untyped so an empty or non-string prompt reaches the controller's
    # own validation and gets its error message.
    prompt: Any = None
    conversation_id: str | None = Field(default=None, alias="conversationId")
    messages: list[ChatMessage] = Field(default_factory=list)
    stream: bool = True

    def history(self) -> list[dict[str, str]]:
        return [m.model_dump() for m in self.messages]


def _error_response(exc: RelayError) -> JSONResponse:
    headers: dict[str, str] = {}
    if isinstance(exc, UpstreamRateLimitError) and exc.retry_after is not None:
        headers["Retry-After"] = str(int(exc.retry_after))
    return JSONResponse(
        {"error": exc.message}, status_code=exc.status_code, headers=headers,
    )


def create_app(
    config: RelayConfig | None = None,
    controller: RelayController | None = None,
) -> FastAPI:
    """Build the relay app.  *controller* is injectable for tests."""
    config = config or load_config()
    controller = controller or RelayController(config.upstream)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await controller.aclose()

    app = FastAPI(title="Chat Relay", lifespan=lifespan)
    app.state.controller = controller

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.server.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RelayError)
    async def relay_error_handler(request: Request, exc: RelayError) -> JSONResponse:
        if exc.status_code >= 500:
            _logger.error("Request failed: %s", exc.message)
        return _error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def body_error_handler(
        request: Request, exc: RequestValidationError,
    ) -> JSONResponse:
        errors = exc.errors()
        detail = errors[0].get("msg", "invalid request body") if errors else "invalid request body"
        return JSONResponse({"error": f"Invalid request: {detail}"}, status_code=400)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok", "message": "Server is running"}

    @app.post("/api/chat")
    async def chat(body: ChatRequest, request: Request):
        if not body.stream:
            text = await controller.complete(
                body.prompt, body.conversation_id, body.history(),
            )
            return {"result": text}

        upstream = await controller.open(
            body.prompt, body.conversation_id, body.history(),
        )
        return StreamingResponse(
            controller.relay(upstream, request.is_disconnected),
            media_type="text/event-stream",
            headers=STREAM_HEADERS,
        )

    return app
