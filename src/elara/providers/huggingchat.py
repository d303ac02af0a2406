"""HuggingChat provider (huggingface.co/chat cookie session)."""

from __future__ import annotations

import json
import uuid
from collections.abc import AsyncIterator
from typing import Any

import httpx
import structlog

from elara.errors import UpstreamProtocolError
from elara.providers.base import Capabilities, ClientFactory, Provider
from elara.providers.events import RawMeta, RawSession, RawText, RawThinking, RawVendorEvent
from elara.providers.http import ensure_ok, iter_lines, loads_or_none
from elara.providers.models import (
    ChatMessage,
    ConversationDetail,
    ConversationSummary,
    ModelInfo,
    SendRequest,
)
from elara.tokenizer import count_messages_tokens, count_tokens

logger = structlog.get_logger()

BASE_URL = "https://huggingface.co"
USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/142.0.0.0 Safari/537.36"
)

THINK_OPEN = "<think>"
THINK_CLOSE = "</think>"


class ThinkTagSplitter:
    """Route streamed tokens to thinking or content around ``<think>`` tags.

    Tags may arrive split across tokens, so a partial tag suffix is held
    back until the next token decides it.
    """

    def __init__(self) -> None:
        self.thinking = False
        self._pending = ""

    def _emit(self, text: str) -> RawVendorEvent:
        return RawThinking(text) if self.thinking else RawText(text)

    def feed(self, token: str) -> list[RawVendorEvent]:
        buffer = self._pending + token
        self._pending = ""
        events: list[RawVendorEvent] = []
        while buffer:
            tag = THINK_CLOSE if self.thinking else THINK_OPEN
            idx = buffer.find(tag)
            if idx >= 0:
                if idx:
                    events.append(self._emit(buffer[:idx]))
                self.thinking = not self.thinking
                buffer = buffer[idx + len(tag) :]
                continue
            keep = _partial_suffix(buffer, tag)
            if keep:
                self._pending = buffer[-keep:]
                buffer = buffer[:-keep]
            if buffer:
                events.append(self._emit(buffer))
            break
        return events

    def flush(self) -> list[RawVendorEvent]:
        if not self._pending:
            return []
        text, self._pending = self._pending, ""
        return [self._emit(text)]


def _partial_suffix(text: str, tag: str) -> int:
    for size in range(min(len(tag) - 1, len(text)), 0, -1):
        if tag.startswith(text[-size:]):
            return size
    return 0


def _role(sender: str | None) -> str:
    if sender in ("user", "assistant"):
        return sender
    return "system"


class HuggingChatProvider(Provider):
    capabilities = Capabilities(conversations=True, conversation_detail=True, models=True)

    def __init__(self, *, client_factory: ClientFactory | None = None) -> None:
        super().__init__(client_factory=client_factory)

    @property
    def name(self) -> str:
        return "HuggingChat"

    @property
    def default_model(self) -> str:
        return "omni"

    @staticmethod
    def _headers(credential: str, referer: str = f"{BASE_URL}/chat/") -> dict[str, str]:
        return {
            "Cookie": credential,
            "User-Agent": USER_AGENT,
            "Origin": BASE_URL,
            "Referer": referer,
        }

    async def _conversation(self, client: httpx.AsyncClient, credential: str, conversation_id: str) -> dict[str, Any]:
        response = await client.get(
            f"{BASE_URL}/chat/api/v2/conversations/{conversation_id}", headers=self._headers(credential)
        )
        await ensure_ok(response, self.name)
        data = response.json() or {}
        return data.get("json") or data

    async def _create(self, client: httpx.AsyncClient, credential: str, model: str) -> str:
        response = await client.post(
            f"{BASE_URL}/chat/conversation",
            headers=self._headers(credential),
            json={"model": model, "preprompt": ""},
        )
        await ensure_ok(response, self.name)
        conversation_id = (response.json() or {}).get("conversationId")
        if not conversation_id:
            raise UpstreamProtocolError("Failed to obtain conversation ID")
        return conversation_id

    async def _stream(self, req: SendRequest) -> AsyncIterator[RawVendorEvent]:
        async with self.client() as client:
            conversation_id = req.conversation_id
            if not conversation_id:
                conversation_id = await self._create(client, req.credential, req.model or self.default_model)
                yield RawSession(conversation_id)

            detail = await self._conversation(client, req.credential, conversation_id)
            history = detail.get("messages") or []
            if history:
                parent_id = history[-1].get("id")
            else:
                parent_id = detail.get("rootMessageId") or str(uuid.uuid4())

            data = {
                "inputs": req.last_message.content,
                "id": parent_id,
                "is_retry": False,
                "is_continue": False,
                "selectedMcpServerNames": [],
                "selectedMcpServers": [],
            }
            prompt_tokens = count_messages_tokens(req.messages)
            completion_tokens = 0
            splitter = ThinkTagSplitter()
            async with client.stream(
                "POST",
                f"{BASE_URL}/chat/conversation/{conversation_id}",
                headers=self._headers(req.credential, f"{BASE_URL}/chat/conversation/{conversation_id}"),
                files={"data": (None, json.dumps(data))},
            ) as response:
                await ensure_ok(response, self.name)
                yield RawMeta({"conversation_id": conversation_id, "total_token": prompt_tokens})
                async for line in iter_lines(response):
                    chunk = loads_or_none(line.replace("\u0000", ""))
                    if not isinstance(chunk, dict):
                        continue
                    kind = chunk.get("type")
                    if kind == "stream" and chunk.get("token"):
                        token = chunk["token"]
                        completion_tokens += count_tokens(token)
                        for event in splitter.feed(token):
                            yield event
                        yield RawMeta({"total_token": prompt_tokens + completion_tokens})
                    elif kind == "title" and chunk.get("title"):
                        yield RawMeta({"conversation_title": chunk["title"]})
            for event in splitter.flush():
                yield event

    async def list_conversations(self, credential: str, limit: int = 30) -> list[ConversationSummary]:
        async with self.client() as client:
            response = await client.get(
                f"{BASE_URL}/chat/api/v2/conversations", params={"p": 0}, headers=self._headers(credential)
            )
        await ensure_ok(response, self.name)
        data = response.json() or {}
        items = (data.get("json") or {}).get("conversations") or data.get("conversations") or []
        return [
            ConversationSummary(id=c.get("_id") or c.get("id"), title=c.get("title") or "Untitled", updated_at=c.get("updatedAt"))
            for c in items[:limit]
        ]

    async def get_conversation_detail(self, credential: str, conversation_id: str) -> ConversationDetail:
        async with self.client() as client:
            detail = await self._conversation(client, credential, conversation_id)
        messages = [
            ChatMessage(role=_role(m.get("from")), content=m.get("content") or "")
            for m in detail.get("messages") or []
        ]
        return ConversationDetail(
            id=detail.get("id") or conversation_id,
            title=detail.get("title") or "Untitled",
            messages=messages,
        )

    async def list_models(self, credential: str, account_id: str | None = None) -> list[ModelInfo]:
        async with self.client() as client:
            response = await client.get(f"{BASE_URL}/chat/api/v2/models", headers=self._headers(credential))
        await ensure_ok(response, self.name)
        data = response.json()
        if isinstance(data, dict):
            data = data.get("json") or data.get("models") or []
        return [
            ModelInfo(
                id=m.get("id") or m.get("name"),
                name=m.get("displayName") or m.get("name") or m.get("id") or "",
                description=m.get("description") or "",
                context_length=(m.get("parameters") or {}).get("truncate"),
            )
            for m in data
            if isinstance(m, dict) and not m.get("unlisted")
        ]
