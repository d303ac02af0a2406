"""Generic chat endpoints: provider-neutral SSE over the gateway."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Any

import structlog
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import BaseModel, Field

from elara.accounts import ResolveHints
from elara.api.middleware.auth import bearer_token
from elara.errors import GatewayError, InvalidRequest, error_parts
from elara.logging import bind_request_context
from elara.providers.events import (
    ContentDelta,
    Done,
    Error,
    MetadataUpdate,
    SessionCreated,
    StreamEvent,
    ThinkingDelta,
    collect,
    prime,
)
from elara.providers.models import ChatMessage, SendRequest
from elara.shim.claude import flatten_content

logger = structlog.get_logger()

router = APIRouter()

SSE_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive"}


class MessageIn(BaseModel):
    role: str = "user"
    content: Any = ""


class CompletionRequest(BaseModel):
    model: str | None = None
    messages: list[MessageIn]
    thinking: bool | None = None
    search: bool = False
    conversation_id: str | None = None
    ref_file_ids: list[str] = Field(default_factory=list)
    temperature: float | None = None


class AccountMessageRequest(BaseModel):
    """Body of ``/v1/accounts/{account_id}/messages``; camelCase as clients send it."""

    providerId: str | None = None
    modelId: str | None = None
    messages: list[MessageIn]
    conversationId: str | None = None
    stream: bool = True
    search: bool = False
    is_search: bool = False
    thinking: bool | None = None
    temperature: float | None = None
    ref_file_ids: list[str] = Field(default_factory=list)


def _data(payload: Any) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


def _messages(items: list[MessageIn]) -> tuple[ChatMessage, ...]:
    messages = tuple(ChatMessage.from_dict({"role": m.role, "content": flatten_content(m.content)}) for m in items)
    if not messages:
        raise InvalidRequest("messages must not be empty")
    return messages


def _error_response(exc: BaseException) -> JSONResponse:
    status, _, message = error_parts(exc)
    logger.warning("chat.request_failed", status=status, error=message)
    return JSONResponse({"error": message}, status_code=status)


async def _completion_chunks(events: AsyncIterator[StreamEvent]) -> AsyncIterator[str]:
    async for event in events:
        if isinstance(event, ContentDelta):
            yield _data({"choices": [{"delta": {"content": event.text}}]})
        elif isinstance(event, MetadataUpdate):
            yield _data({"choices": [{"delta": event.data}]})
        elif isinstance(event, ThinkingDelta):
            yield _data({"thinking": event.text})
        elif isinstance(event, SessionCreated):
            yield f"event: session_created\ndata: {event.upstream_id}\n\n"
        elif isinstance(event, Done):
            yield "data: [DONE]\n\n"
        elif isinstance(event, Error):
            yield _data({"error": {"message": event.message}})


@router.post("/v1/chat/completions", response_model=None)
async def chat_completions(
    request: Request,
    body: CompletionRequest,
    provider: str | None = None,
    email: str | None = None,
) -> Response:
    """Stream a completion from the account the bearer token, query or model selects."""
    resolver = request.app.state.resolver
    gateway = request.app.state.gateway
    bind_request_context(route="chat.completions", provider=provider, model=body.model)

    try:
        resolution = await resolver.resolve(
            ResolveHints(token=bearer_token(request), provider=provider, email=email, model=body.model)
        )
        req = SendRequest(
            credential=resolution.account.credential,
            provider_id=resolution.provider.name,
            account_id=resolution.account.id,
            model=resolution.model,
            messages=_messages(body.messages),
            conversation_id=body.conversation_id,
            search=body.search,
            thinking=body.thinking,
            temperature=body.temperature,
            ref_file_ids=tuple(body.ref_file_ids),
        )
        events = await prime(gateway.send(req))
    except GatewayError as exc:
        return _error_response(exc)

    return StreamingResponse(_completion_chunks(events), media_type="text/event-stream", headers=SSE_HEADERS)


async def _account_chunks(account_id: str, events: AsyncIterator[StreamEvent]) -> AsyncIterator[str]:
    yield _data({"meta": {"accountId": account_id}})
    async for event in events:
        if isinstance(event, ContentDelta):
            yield _data({"content": event.text})
        elif isinstance(event, MetadataUpdate):
            yield _data({"meta": event.data})
        elif isinstance(event, ThinkingDelta):
            yield _data({"thinking": event.text})
        elif isinstance(event, SessionCreated):
            yield f"event: session_created\ndata: {event.upstream_id}\n\n"
        elif isinstance(event, Done):
            yield "data: [DONE]\n\n"
        elif isinstance(event, Error):
            yield _data({"error": event.message})


@router.post("/v1/accounts/{account_id}/messages", response_model=None)
async def account_messages(request: Request, account_id: str, body: AccountMessageRequest) -> Response:
    """Send through one explicit account; ``providerId`` must agree with it."""
    resolver = request.app.state.resolver
    gateway = request.app.state.gateway
    bind_request_context(route="accounts.messages", account_id=account_id, model=body.modelId)

    try:
        resolution = await resolver.resolve(
            ResolveHints(account_id=account_id, provider=body.providerId, model=body.modelId)
        )
        req = SendRequest(
            credential=resolution.account.credential,
            provider_id=resolution.provider.name,
            account_id=resolution.account.id,
            model=resolution.model,
            messages=_messages(body.messages),
            conversation_id=body.conversationId,
            stream=body.stream,
            search=body.search or body.is_search,
            thinking=body.thinking,
            temperature=body.temperature,
            ref_file_ids=tuple(body.ref_file_ids),
        )
        events = await prime(gateway.send(req))
    except GatewayError as exc:
        return _error_response(exc)

    if body.stream:
        return StreamingResponse(
            _account_chunks(resolution.account.id, events),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    result = await collect(events)
    if not result.ok:
        return _error_response(result.error)
    metadata: dict[str, Any] = {"accountId": resolution.account.id, **result.metadata}
    if result.session_id:
        metadata["conversation_id"] = result.session_id
    return JSONResponse(
        {
            "success": True,
            "message": {"role": "assistant", "content": result.text},
            "metadata": metadata,
        }
    )
