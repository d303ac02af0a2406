"""Claude-compatible Messages endpoints."""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse

from elara.api.middleware.auth import session_key
from elara.logging import bind_request_context
from elara.shim.claude import count_tokens_response

logger = structlog.get_logger()

router = APIRouter()

SSE_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive"}


@router.post("/v1/messages", response_model=None)
async def create_message(request: Request, body: dict[str, Any]) -> Response:
    """Anthropic ``/v1/messages`` over whichever provider resolves."""
    shim = request.app.state.shim
    key = session_key(request)
    bind_request_context(route="messages", model=body.get("model"), stream=bool(body.get("stream")))

    result = await shim.handle(body, key)
    if result.stream is not None:
        return StreamingResponse(
            result.stream,
            media_type="text/event-stream",
            headers={**SSE_HEADERS, **result.headers},
        )
    return JSONResponse(result.body, status_code=result.status_code, headers=result.headers)


@router.post("/v1/messages/count_tokens")
async def count_tokens(body: dict[str, Any]) -> dict[str, int]:
    return count_tokens_response(body)
