"""Qwen chat (chat.qwen.ai) provider."""

from __future__ import annotations

import json
import re
import time
from collections.abc import AsyncIterator
from typing import Any

import httpx
import structlog

from elara.errors import UpstreamProtocolError
from elara.providers.base import Capabilities, ClientFactory, Provider
from elara.providers.events import RawMeta, RawSession, RawText, RawThinking, RawVendorEvent
from elara.providers.http import ensure_ok, iter_sse_data, loads_or_none
from elara.providers.models import SendRequest

logger = structlog.get_logger()

BASE_URL = "https://chat.qwen.ai"
USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"

_TOKEN_COOKIE = re.compile(r"token=([^;]+)")


def split_credential(credential: str) -> tuple[str | None, str]:
    """Return ``(bearer_token, cookie_header)`` for a cookie string or raw JWT."""
    text = credential.strip()
    if text.startswith("eyJ"):
        return text, text if "token=" in text else f"token={text}"
    match = _TOKEN_COOKIE.search(text)
    return (match.group(1) if match else None), text


def parse_event(data: dict[str, Any]) -> list[RawVendorEvent]:
    choices = data.get("choices") or []
    if not choices:
        return []
    delta = (choices[0] or {}).get("delta") or {}
    content = delta.get("content")
    if not content:
        return []
    if delta.get("phase") == "think":
        return [RawThinking(content)]
    return [RawText(content)]


class QwenProvider(Provider):
    capabilities = Capabilities(model_matching=True)

    def __init__(self, *, client_factory: ClientFactory | None = None) -> None:
        super().__init__(client_factory=client_factory)

    @property
    def name(self) -> str:
        return "Qwen"

    @property
    def default_model(self) -> str:
        return "qwen-max-latest"

    def is_model_supported(self, model_id: str) -> bool:
        return "qwen" in model_id.lower()

    def _headers(self, credential: str, referer: str) -> dict[str, str]:
        token, cookie = split_credential(credential)
        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
            "Origin": BASE_URL,
            "Referer": referer,
            "Cookie": cookie,
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def create_chat(self, client: httpx.AsyncClient, credential: str, model: str) -> str:
        response = await client.post(
            f"{BASE_URL}/api/v2/chats/new",
            headers=self._headers(credential, f"{BASE_URL}/c/new-chat"),
            json={
                "title": "New Chat",
                "models": [model],
                "chat_mode": "normal",
                "chat_type": "t2t",
                "timestamp": int(time.time() * 1000),
                "project_id": "",
            },
        )
        await ensure_ok(response, self.name)
        chat_id = ((response.json() or {}).get("data") or {}).get("id")
        if not chat_id:
            raise UpstreamProtocolError("Failed to create Qwen chat: No ID returned")
        return chat_id

    def build_payload(self, req: SendRequest, chat_id: str, model: str) -> dict[str, Any]:
        messages = [
            {
                "role": m.role,
                "content": m.content,
                "models": [model],
                "chat_type": "t2t",
                "feature_config": {
                    "thinking_enabled": bool(req.thinking),
                    "output_schema": "phase",
                    "research_mode": "normal",
                },
                "extra": {"meta": {"subChatType": "t2t"}},
                "sub_chat_type": "t2t",
                "parent_id": None,
                "files": [],
            }
            for m in req.messages
        ]
        return {
            "stream": True,
            "version": "2.1",
            "incremental_output": True,
            "chat_id": chat_id,
            "chat_mode": "normal",
            "model": model,
            "parent_id": None,
            "messages": messages,
            "timestamp": int(time.time() * 1000),
        }

    async def _stream(self, req: SendRequest) -> AsyncIterator[RawVendorEvent]:
        model = req.model or self.default_model
        async with self.client() as client:
            chat_id = req.conversation_id
            if not chat_id:
                chat_id = await self.create_chat(client, req.credential, model)
                yield RawSession(chat_id)
                yield RawMeta({"conversation_id": chat_id, "conversation_title": "New Chat"})

            headers = {**self._headers(req.credential, f"{BASE_URL}/c/{chat_id}"), "x-accel-buffering": "no"}
            async with client.stream(
                "POST",
                f"{BASE_URL}/api/v2/chat/completions",
                params={"chat_id": chat_id},
                headers=headers,
                content=json.dumps(self.build_payload(req, chat_id, model)),
            ) as response:
                await ensure_ok(response, self.name)
                async for data in iter_sse_data(response):
                    chunk = loads_or_none(data)
                    if isinstance(chunk, dict):
                        for event in parse_event(chunk):
                            yield event
