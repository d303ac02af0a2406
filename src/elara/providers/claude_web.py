"""Claude web provider (claude.ai session cookie)."""

from __future__ import annotations

import json
import uuid
from collections.abc import AsyncIterator
from typing import Any

import httpx
import structlog

from elara.errors import UpstreamProtocolError
from elara.providers.base import Capabilities, ClientFactory, Provider
from elara.providers.events import RawEnd, RawMeta, RawSession, RawText, RawVendorEvent
from elara.providers.http import ensure_ok, iter_sse_data, loads_or_none
from elara.providers.models import (
    ChatMessage,
    ConversationDetail,
    ConversationSummary,
    SendRequest,
    UploadedFile,
)

logger = structlog.get_logger()

BASE_URL = "https://claude.ai"
ROOT_PARENT_UUID = "00000000-0000-4000-8000-000000000000"

DEFAULT_TOOLS = [
    {"type": "web_search_v0", "name": "web_search"},
    {"type": "artifacts_v0", "name": "artifacts"},
    {"type": "repl_v0", "name": "repl"},
]


def parse_event(data: dict[str, Any]) -> list[RawVendorEvent]:
    events: list[RawVendorEvent] = []
    if data.get("completion"):
        events.append(RawText(data["completion"]))
    if data.get("type") == "content_block_delta":
        text = (data.get("delta") or {}).get("text")
        if text:
            events.append(RawText(text))
    if data.get("stop_reason") or data.get("type") == "message_stop":
        events.append(RawEnd())
    return events


class ClaudeWebProvider(Provider):
    capabilities = Capabilities(
        conversations=True,
        conversation_detail=True,
        upload=True,
        model_matching=True,
    )

    def __init__(self, *, client_factory: ClientFactory | None = None, timezone: str = "UTC") -> None:
        super().__init__(client_factory=client_factory)
        self.timezone = timezone

    @property
    def name(self) -> str:
        return "Claude"

    @property
    def default_model(self) -> str:
        return "claude-3-5-sonnet-20241022"

    def is_model_supported(self, model_id: str) -> bool:
        return model_id.lower().startswith("claude-")

    @staticmethod
    def _headers(credential: str) -> dict[str, str]:
        return {
            "Cookie": f"sessionKey={credential}",
            "Accept": "application/json",
            "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36",
            "Origin": BASE_URL,
            "Referer": f"{BASE_URL}/",
            "anthropic-client-platform": "web_claude_ai",
            "anthropic-client-version": "1.0.0",
            "anthropic-device-id": str(uuid.uuid4()),
            "anthropic-anonymous-id": f"claudeai.v1.{uuid.uuid4()}",
        }

    async def _organization(self, client: httpx.AsyncClient, headers: dict[str, str]) -> str:
        response = await client.get(f"{BASE_URL}/api/organizations", headers=headers)
        await ensure_ok(response, self.name)
        orgs = response.json()
        if not orgs:
            raise UpstreamProtocolError("No organizations found")
        return orgs[0]["uuid"]

    async def _last_message_uuid(
        self,
        client: httpx.AsyncClient,
        headers: dict[str, str],
        org_id: str,
        conversation_id: str,
    ) -> str | None:
        try:
            response = await client.get(
                f"{BASE_URL}/api/organizations/{org_id}/chat_conversations/{conversation_id}",
                params={"tree": "True", "rendering_mode": "messages"},
                headers=headers,
            )
        except httpx.TransportError as exc:
            logger.warning("claude.last_message_failed", conversation_id=conversation_id, error=str(exc))
            return None
        if not response.is_success:
            return None
        messages = response.json().get("chat_messages") or []
        return messages[-1].get("uuid") if messages else None

    async def _stream(self, req: SendRequest) -> AsyncIterator[RawVendorEvent]:
        headers = self._headers(req.credential)
        async with self.client() as client:
            org_id = await self._organization(client, headers)
            conversation_id = req.conversation_id or str(uuid.uuid4())
            parent_uuid = ROOT_PARENT_UUID
            if req.conversation_id:
                parent_uuid = await self._last_message_uuid(client, headers, org_id, conversation_id) or ROOT_PARENT_UUID
            else:
                created = await client.post(
                    f"{BASE_URL}/api/organizations/{org_id}/chat_conversations",
                    headers=headers,
                    json={"uuid": conversation_id, "name": ""},
                )
                await ensure_ok(created, self.name)
                yield RawSession(conversation_id)

            payload = {
                "prompt": req.last_message.content,
                "timezone": self.timezone,
                "model": req.model or self.default_model,
                "attachments": [],
                "files": list(req.ref_file_ids),
                "rendering_mode": "messages",
                "parent_message_uuid": parent_uuid,
                "locale": "en-US",
                "tools": DEFAULT_TOOLS,
            }
            async with client.stream(
                "POST",
                f"{BASE_URL}/api/organizations/{org_id}/chat_conversations/{conversation_id}/completion",
                headers={**headers, "Accept": "text/event-stream", "Content-Type": "application/json"},
                content=json.dumps(payload),
            ) as response:
                await ensure_ok(response, self.name)
                yield RawMeta({"conversation_id": conversation_id})
                async for data in iter_sse_data(response):
                    chunk = loads_or_none(data)
                    if not isinstance(chunk, dict):
                        continue
                    for event in parse_event(chunk):
                        yield event
                        if isinstance(event, RawEnd):
                            return

    async def list_conversations(self, credential: str, limit: int = 30) -> list[ConversationSummary]:
        headers = self._headers(credential)
        async with self.client() as client:
            org_id = await self._organization(client, headers)
            response = await client.get(
                f"{BASE_URL}/api/organizations/{org_id}/chat_conversations",
                params={"limit": limit, "consistency": "eventual"},
                headers=headers,
            )
        await ensure_ok(response, self.name)
        return [
            ConversationSummary(id=c["uuid"], title=c.get("name") or "Untitled", updated_at=c.get("updated_at"))
            for c in response.json()
        ]

    async def get_conversation_detail(self, credential: str, conversation_id: str) -> ConversationDetail:
        headers = self._headers(credential)
        async with self.client() as client:
            org_id = await self._organization(client, headers)
            response = await client.get(
                f"{BASE_URL}/api/organizations/{org_id}/chat_conversations/{conversation_id}",
                params={
                    "tree": "True",
                    "rendering_mode": "messages",
                    "render_all_tools": "true",
                    "consistency": "eventual",
                },
                headers=headers,
            )
        await ensure_ok(response, self.name)
        data = response.json()
        messages = []
        for m in data.get("chat_messages") or []:
            blocks = m.get("content") or []
            text = (blocks[0].get("text") if blocks else None) or m.get("text") or ""
            messages.append(ChatMessage(role="user" if m.get("sender") == "human" else "assistant", content=text))
        return ConversationDetail(
            id=data.get("uuid") or conversation_id,
            title=data.get("name") or data.get("summary") or "Untitled",
            messages=messages,
        )

    async def upload_file(
        self,
        credential: str,
        filename: str,
        content: bytes,
        content_type: str = "application/octet-stream",
    ) -> UploadedFile:
        headers = self._headers(credential)
        async with self.client() as client:
            org_id = await self._organization(client, headers)
            response = await client.post(
                f"{BASE_URL}/api/{org_id}/upload",
                headers=headers,
                files={"file": (filename, content, content_type)},
            )
        await ensure_ok(response, self.name)
        result = response.json()
        file_id = result.get("file_uuid")
        if not file_id:
            raise UpstreamProtocolError("Claude upload returned no file_uuid")
        return UploadedFile(id=file_id, name=filename, status="READY", size=len(content))
