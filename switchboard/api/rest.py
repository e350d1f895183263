"""REST API for Switchboard.

Endpoints:
  POST /route        - Classify a message and pick a model tier
  POST /chat         - Route, then run the tool loop; JSON response
  POST /chat/stream  - Route, then stream the tool loop as SSE wire events
  GET  /health       - Liveness check

No persistence and no auth: each request carries the message it needs.
"""

from __future__ import annotations

import logging
from typing import Any
from uuid import uuid4

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response, StreamingResponse
from starlette.routing import Route

from switchboard import __version__
from switchboard.api.streaming import StreamEncoder, StreamError, relay_tool_loop
from switchboard.api.tools import ToolDispatcher
from switchboard.config import Settings
from switchboard.errors import BadRequestError, CompletionError, SwitchboardError
from switchboard.llm.chat import ChatService, ToolLoopRequest
from switchboard.llm.schemas import Message, TokenUsage, extract_text
from switchboard.routing.router import RouterService

logger = logging.getLogger(__name__)


async def _read_message(request: Request) -> tuple[dict[str, Any], str] | JSONResponse:
    """Parse the JSON body and pull out ``message``; 400 on failure."""
    try:
        body = await request.json()
    except ValueError:
        return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
    if not isinstance(body, dict):
        return JSONResponse({"error": "Body must be a JSON object"}, status_code=400)

    message = body.get("message")
    if not isinstance(message, str) or not message.strip():
        return JSONResponse({"error": "Missing required field: message"}, status_code=400)
    return body, message


def _error_response(e: SwitchboardError) -> JSONResponse:
    if isinstance(e, BadRequestError):
        status = 400
    elif isinstance(e, CompletionError):
        status = 502
    else:
        status = 500
    payload: dict[str, Any] = {"error": e.message, "code": type(e).__name__}
    if e.hint:
        payload["hint"] = e.hint
    return JSONResponse(payload, status_code=status)


def create_app(
    chat_service: ChatService,
    router: RouterService,
    dispatcher: ToolDispatcher,
    settings: Settings,
    lifespan: Any | None = None,
) -> Starlette:
    """Create the Starlette ASGI app with all routes."""
    encoder = StreamEncoder()

    def _loop_request(body: dict[str, Any], message: str, tier: Any) -> ToolLoopRequest:
        return ToolLoopRequest(
            messages=[Message.user(message)],
            tools=dispatcher.tool_definitions(),
            execute_tool_call=dispatcher.dispatch,
            model=tier,
            system=body.get("system"),
            max_iterations=settings.max_tool_iterations,
        )

    async def route(request: Request) -> JSONResponse:
        """POST /route - Classification + tier selection + router cost."""
        parsed = await _read_message(request)
        if isinstance(parsed, JSONResponse):
            return parsed
        _, message = parsed

        result = await router.route_message(message)
        return JSONResponse(result.model_dump(mode="json"))

    async def chat(request: Request) -> JSONResponse:
        """POST /chat - Route, run the tool loop, return the final answer."""
        parsed = await _read_message(request)
        if isinstance(parsed, JSONResponse):
            return parsed
        body, message = parsed

        routing = await router.route_message(message)
        tier = routing.model_selection.model

        try:
            result = await chat_service.execute_tool_loop(_loop_request(body, message, tier))
        except SwitchboardError as e:
            logger.error("Chat error: %s", e)
            return _error_response(e)

        summary = router.calculate_cost_summary(
            routing.classification.router_usage, result.total_usage, tier
        )
        return JSONResponse(
            {
                "response": extract_text(result.content),
                "model": router.model_id(tier),
                "tier": tier.value,
                "iterations": result.iterations,
                "classification": routing.classification.model_dump(mode="json"),
                "usage": result.total_usage.to_wire(),
                "cost": summary.model_dump(mode="json"),
            }
        )

    async def chat_stream(request: Request) -> Response:
        """POST /chat/stream - SSE streaming chat."""
        parsed = await _read_message(request)
        if isinstance(parsed, JSONResponse):
            return parsed
        body, message = parsed

        routing = await router.route_message(message)
        tier = routing.model_selection.model
        router_usage = routing.classification.router_usage

        def cost_for(usage: TokenUsage) -> float:
            summary = router.calculate_cost_summary(router_usage, usage, tier)
            return summary.total_cost.total_cost

        async def event_generator():
            try:
                stream = chat_service.stream_tool_loop(_loop_request(body, message, tier))
                async for event in relay_tool_loop(
                    stream,
                    message_id=f"msg_{uuid4().hex}",
                    model=router.model_id(tier),
                    conversation_id=body.get("conversation_id"),
                    cost_for=cost_for,
                ):
                    yield encoder.encode(event)
            except Exception as e:
                logger.error("Stream error: %s", e)
                yield encoder.encode(StreamError(message=str(e), code=type(e).__name__))

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
            },
        )

    async def health(request: Request) -> JSONResponse:
        """GET /health - Health check."""
        return JSONResponse({"status": "healthy", "version": __version__})

    routes = [
        Route("/route", route, methods=["POST"]),
        Route("/chat", chat, methods=["POST"]),
        Route("/chat/stream", chat_stream, methods=["POST"]),
        Route("/health", health),
    ]

    kwargs: dict[str, Any] = {"routes": routes}
    if lifespan is not None:
        kwargs["lifespan"] = lifespan
    return Starlette(**kwargs)
