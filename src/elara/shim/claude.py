"""Claude Messages API shim over any configured provider.

Accepts Anthropic ``/v1/messages`` bodies and answers with the same wire
grammar, whichever adapter actually served the request.
"""

from __future__ import annotations

import json
import time
import uuid
from collections.abc import AsyncIterator, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

import structlog

from elara.accounts import AUTO_MODEL, AccountResolver, ResolveHints
from elara.config import ModelMappingConfig
from elara.errors import GatewayError, InvalidRequest, error_parts, is_session_error
from elara.gateway.service import GatewayService
from elara.providers.events import (
    ContentDelta,
    Done,
    Error,
    SessionCreated,
    StreamEvent,
    prime,
)
from elara.providers.models import ChatMessage, SendRequest
from elara.sessions import RequestQueue, SessionStore, content_text, fingerprint
from elara.stores import ConfigStore
from elara.tokenizer import count_messages_tokens, count_tokens

logger = structlog.get_logger()

PROBE_TEXT = "OK"
RESET_STREAM_TEXT = "Conversation history has been reset for this terminal."
RESET_TEXT = "Conversation history reset."
COUNT_TOKENS_BUFFER = 100

_FILES_NOTICE = "Files modified by user:"
_TITLE_REQUEST = "Please write a 5-10 word title for the following conversation"
_RESET_COMMANDS = ("/reset", "!reset")
_CATEGORIES = ("opus", "sonnet", "haiku")


def message_id() -> str:
    return f"msg_{uuid.uuid4().hex[:24]}"


# ── Fast-path detection ─────────────────────────────────────────────


def _is_probe_text(text: str, *, strict_warmup: bool) -> bool:
    trimmed = text.strip()
    if trimmed == "count" or _FILES_NOTICE in trimmed or _TITLE_REQUEST in trimmed:
        return True
    if strict_warmup:
        return trimmed == "Warmup" or trimmed.startswith("Warmup\n")
    return trimmed.startswith("Warmup") and len(text) < 100


def is_probe_request(messages: Sequence[dict[str, Any]] | None) -> bool:
    """True for keep-alive, warmup and title traffic from CLI clients."""
    if not messages:
        return False
    content = messages[-1].get("content")
    if isinstance(content, str):
        return _is_probe_text(content, strict_warmup=False)
    if not isinstance(content, list):
        return False
    for block in content:
        if not isinstance(block, dict):
            continue
        if block.get("type") == "text":
            if _is_probe_text(block.get("text") or "", strict_warmup=True):
                return True
        elif block.get("type") == "tool_result" and block.get("is_error"):
            inner = block.get("content")
            text = inner if isinstance(inner, str) else json.dumps(inner or "")
            if text.strip().startswith("Warmup"):
                return True
    return False


def is_reset_command(messages: Sequence[dict[str, Any]] | None) -> bool:
    """Only the last message counts, and only as a plain user string."""
    if not messages:
        return False
    last = messages[-1]
    content = last.get("content")
    if last.get("role") != "user" or not isinstance(content, str):
        return False
    return content.strip().lower() in _RESET_COMMANDS


# ── Model mapping ───────────────────────────────────────────────────


@dataclass(frozen=True)
class ModelTarget:
    provider: str | None
    model: str | None


def model_category(model: str) -> str | None:
    m = model.lower()
    for category in _CATEGORIES:
        if category in m:
            return category
    if m.startswith(("claude-2", "claude-3")):
        return "default"
    return None


def parse_target(value: str) -> ModelTarget:
    """``provider/model`` or a bare ``model``."""
    if "/" in value:
        provider, _, model = value.partition("/")
        return ModelTarget(provider or None, model or None)
    return ModelTarget(None, value or None)


def map_model(model: str | None, mapping: Mapping[str, str]) -> ModelTarget:
    """Apply the user's family mapping, then the literal ``provider/model`` form.

    A mapping of ``auto`` means no mapping: the request falls through to
    sequence-based selection.
    """
    model = model or ""
    category = model_category(model)
    preferred = (mapping.get(category) or "").strip() if category else ""
    if preferred == AUTO_MODEL:
        return ModelTarget(None, AUTO_MODEL)
    if preferred:
        target = parse_target(preferred)
        logger.info("shim.model_mapped", requested=model, provider=target.provider, model=target.model)
        return target
    if "/" in model:
        return parse_target(model)
    return ModelTarget(None, model or None)


# ── Request flattening ──────────────────────────────────────────────


def _block_text(block: Any) -> str:
    if isinstance(block, str):
        return block
    if not isinstance(block, dict):
        return ""
    if block.get("type") == "text":
        return block.get("text") or ""
    if block.get("type") == "tool_result":
        return content_text(block.get("content"), sep="\n")
    return ""


def flatten_content(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "\n".join(text for text in map(_block_text, content) if text)
    return ""


def flatten_request(body: Mapping[str, Any], has_session: bool) -> list[ChatMessage]:
    """Claude request body to plain chat messages.

    A live upstream session already holds the history, so only the last
    message is sent; the system prompt is always included.
    """
    messages: list[ChatMessage] = []
    system = body.get("system")
    if system:
        messages.append(ChatMessage(role="system", content=content_text(system, sep="\n")))
    turns = [
        ChatMessage.from_dict({"role": m.get("role"), "content": flatten_content(m.get("content"))})
        for m in body.get("messages") or []
        if isinstance(m, dict)
    ]
    if has_session:
        turns = turns[-1:]
    messages.extend(turns)
    return messages


# ── Encoding ────────────────────────────────────────────────────────


def sse(event: str, data: dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False)}\n\n"


class ClaudeSSEEncoder:
    """Renders one assistant message as Claude stream events."""

    def __init__(self, model: str, msg_id: str | None = None) -> None:
        self.model = model
        self.message_id = msg_id or message_id()

    def message_start(self, input_tokens: int = 0) -> str:
        return sse(
            "message_start",
            {
                "type": "message_start",
                "message": {
                    "id": self.message_id,
                    "type": "message",
                    "role": "assistant",
                    "content": [],
                    "model": self.model,
                    "stop_reason": None,
                    "stop_sequence": None,
                    "usage": {"input_tokens": input_tokens, "output_tokens": 0},
                },
            },
        )

    def content_block_start(self) -> str:
        return sse(
            "content_block_start",
            {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
        )

    def content_block_delta(self, text: str) -> str:
        return sse(
            "content_block_delta",
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": text}},
        )

    def content_block_stop(self) -> str:
        return sse("content_block_stop", {"type": "content_block_stop", "index": 0})

    def message_delta(self, output_tokens: int, stop_reason: str = "end_turn") -> str:
        return sse(
            "message_delta",
            {
                "type": "message_delta",
                "delta": {"stop_reason": stop_reason, "stop_sequence": None},
                "usage": {"output_tokens": output_tokens},
            },
        )

    def message_stop(self) -> str:
        return sse("message_stop", {"type": "message_stop"})

    def error(self, message: str, error_type: str = "api_error") -> str:
        return sse("error", {"type": "error", "error": {"type": error_type, "message": message}})

    def complete(self, text: str, input_tokens: int, output_tokens: int) -> list[str]:
        """A whole canned message."""
        return [
            self.message_start(input_tokens),
            self.content_block_start(),
            self.content_block_delta(text),
            self.content_block_stop(),
            self.message_delta(output_tokens),
            self.message_stop(),
        ]


def build_message(
    text: str,
    *,
    model: str,
    input_tokens: int,
    output_tokens: int,
    msg_id: str | None = None,
) -> dict[str, Any]:
    return {
        "id": msg_id or message_id(),
        "type": "message",
        "role": "assistant",
        "content": [{"type": "text", "text": text}],
        "model": model,
        "stop_reason": "end_turn",
        "stop_sequence": None,
        "usage": {"input_tokens": input_tokens, "output_tokens": output_tokens},
    }


def error_body(message: str, error_type: str = "api_error") -> dict[str, Any]:
    return {"type": "error", "error": {"type": error_type, "message": message}}


def count_tokens_response(body: Mapping[str, Any]) -> dict[str, int]:
    """Local prompt estimate with a fixed safety buffer on top."""
    messages = flatten_request(body, has_session=False)
    return {"input_tokens": count_messages_tokens(messages) + COUNT_TOKENS_BUFFER}


# ── Handler ─────────────────────────────────────────────────────────


@dataclass
class ShimResponse:
    """Either a JSON ``body`` or an SSE ``stream``, plus status and headers."""

    status_code: int = 200
    body: dict[str, Any] | None = None
    stream: AsyncIterator[str] | None = None
    headers: dict[str, str] = field(default_factory=dict)


async def _iterate(parts: Sequence[str]) -> AsyncIterator[str]:
    for part in parts:
        yield part


class ClaudeShim:
    def __init__(
        self,
        *,
        gateway: GatewayService,
        resolver: AccountResolver,
        sessions: SessionStore,
        queue: RequestQueue,
        model_mapping: ModelMappingConfig | None = None,
        config_store: ConfigStore | None = None,
    ) -> None:
        self.gateway = gateway
        self.resolver = resolver
        self.sessions = sessions
        self.queue = queue
        self.model_mapping = model_mapping or ModelMappingConfig()
        self.config_store = config_store
        self.probes = 0

    async def mapping(self) -> dict[str, str]:
        """Static mapping from config, overridden by stored ``claudecode_*_model`` keys."""
        mapping = self.model_mapping.model_dump()
        if self.config_store is not None:
            for category in (*_CATEGORIES, "default"):
                stored = await self.config_store.get(f"claudecode_{category}_model")
                if stored:
                    mapping[category] = stored
        return mapping

    def probe_response(self, model: str, stream: bool) -> ShimResponse:
        self.probes += 1
        logger.info("shim.probe_intercepted", model=model, stream=stream)
        headers = {"X-Warmup-Intercepted": "true"}
        if stream:
            parts = ClaudeSSEEncoder(model, f"msg_warmup_{int(time.time() * 1000)}").complete(PROBE_TEXT, 1, 1)
            return ShimResponse(stream=_iterate(parts), headers=headers)
        body = build_message(
            PROBE_TEXT,
            model=model,
            input_tokens=1,
            output_tokens=1,
            msg_id=f"msg_warmup_{int(time.time() * 1000)}",
        )
        return ShimResponse(body=body, headers=headers)

    async def handle(self, body: Mapping[str, Any], session_key: str) -> ShimResponse:
        messages = body.get("messages") or []
        model = body.get("model") or ""
        stream = bool(body.get("stream"))

        # Probes never reach the queue or an adapter.
        if is_probe_request(messages):
            return self.probe_response(model, stream)

        key = fingerprint(session_key, messages)
        if stream:
            try:
                parts = await prime(self._stream(body, key))
            except GatewayError as exc:
                return self._error_response(exc)
            return ShimResponse(stream=parts)

        try:
            return await self._complete(body, key)
        except GatewayError as exc:
            return self._error_response(exc)

    def _error_response(self, exc: BaseException) -> ShimResponse:
        status, error_type, message = error_parts(exc)
        logger.warning("shim.request_failed", status=status, error=message)
        return ShimResponse(status_code=status, body=error_body(message, error_type))

    async def _prepare(self, body: Mapping[str, Any], key: str) -> SendRequest:
        target = map_model(body.get("model"), await self.mapping())
        resolution = await self.resolver.resolve(
            ResolveHints(provider=target.provider, model=target.model, allow_fallback=True)
        )
        upstream_id = self.sessions.get(key)
        messages = flatten_request(body, has_session=upstream_id is not None)
        if not messages:
            raise InvalidRequest("messages must not be empty")
        logger.info(
            "shim.request",
            key=key,
            provider=resolution.provider.name,
            model=resolution.model,
            session=upstream_id,
            message_count=len(messages),
        )
        return SendRequest(
            credential=resolution.account.credential,
            provider_id=resolution.provider.name,
            account_id=resolution.account.id,
            model=resolution.model,
            messages=tuple(messages),
            conversation_id=upstream_id,
            stream=bool(body.get("stream")),
            temperature=body.get("temperature"),
        )

    async def _tracked(self, req: SendRequest, key: str) -> AsyncIterator[StreamEvent]:
        """Record new upstream sessions and drop ones the upstream rejected."""
        async for event in self.gateway.send(req):
            if isinstance(event, SessionCreated) and req.conversation_id is None:
                self.sessions.set(key, event.upstream_id)
            elif isinstance(event, Error) and is_session_error(event.error):
                logger.warning("shim.session_error", key=key, error=event.message)
                self.sessions.clear(key)
            yield event

    def _reset(self, key: str) -> None:
        self.sessions.clear(key)
        logger.info("shim.session_reset", key=key)

    async def _stream(self, body: Mapping[str, Any], key: str) -> AsyncIterator[str]:
        model = body.get("model") or ""
        async with self.queue.slot(key):
            if is_reset_command(body.get("messages")):
                self._reset(key)
                for part in ClaudeSSEEncoder(model).complete(RESET_STREAM_TEXT, 0, 0):
                    yield part
                return

            req = await self._prepare(body, key)
            events = await prime(self._tracked(req, key))
            encoder = ClaudeSSEEncoder(model or req.model)
            input_tokens = count_messages_tokens(req.messages)
            yield encoder.message_start(input_tokens)
            yield encoder.content_block_start()
            text: list[str] = []
            async for event in events:
                if isinstance(event, ContentDelta):
                    text.append(event.text)
                    yield encoder.content_block_delta(event.text)
                elif isinstance(event, Done):
                    yield encoder.content_block_stop()
                    yield encoder.message_delta(count_tokens("".join(text)))
                    yield encoder.message_stop()
                elif isinstance(event, Error):
                    _, error_type, message = error_parts(event.error)
                    yield encoder.error(message, error_type)

    async def _complete(self, body: Mapping[str, Any], key: str) -> ShimResponse:
        model = body.get("model") or ""
        async with self.queue.slot(key):
            if is_reset_command(body.get("messages")):
                self._reset(key)
                return ShimResponse(body=build_message(RESET_TEXT, model=model, input_tokens=0, output_tokens=0))

            req = await self._prepare(body, key)
            text: list[str] = []
            async for event in self._tracked(req, key):
                if isinstance(event, ContentDelta):
                    text.append(event.text)
                elif isinstance(event, Error):
                    return self._error_response(event.error)
            content = "".join(text)
            return ShimResponse(
                body=build_message(
                    content,
                    model=model or req.model,
                    input_tokens=count_messages_tokens(req.messages),
                    output_tokens=count_tokens(content),
                )
            )
