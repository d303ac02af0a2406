"""Le Chat (chat.mistral.ai) provider; streams ``N:{json}`` patch lines."""

from __future__ import annotations

import json
import re
import uuid
from collections.abc import AsyncIterator
from datetime import date
from typing import Any

import structlog

from elara.providers.base import Capabilities, ClientFactory, Provider
from elara.providers.events import RawSession, RawText, RawVendorEvent
from elara.providers.http import ensure_ok, iter_lines, loads_or_none
from elara.providers.models import ConversationSummary, SendRequest

logger = structlog.get_logger()

BASE_URL = "https://chat.mistral.ai"
USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"
FEATURES = ["beta-code-interpreter", "beta-imagegen", "beta-websearch", "beta-reasoning"]

_CONVERSATION_LINK = re.compile(
    r'href=\\?"/chat/([a-f0-9-]{36})\\?".*?leading-5\.5[^>]*>([^<]+)</div>'
)


def parse_line(line: str) -> list[RawVendorEvent]:
    """Text events from one ``<index>:<json>`` line of message patches."""
    _, sep, payload = line.partition(":")
    if not sep:
        return []
    data = loads_or_none(payload)
    if not isinstance(data, dict):
        return []
    patches = (data.get("json") or {}).get("patches") or []
    events: list[RawVendorEvent] = []
    for patch in patches:
        value = patch.get("value")
        path = patch.get("path") or ""
        if not isinstance(value, str) or not value:
            continue
        if (patch.get("op") in ("append", "add") and "/text" in path) or path.endswith("/text"):
            events.append(RawText(value))
    return events


class MistralProvider(Provider):
    capabilities = Capabilities(conversations=True, model_matching=True)

    def __init__(
        self,
        *,
        client_factory: ClientFactory | None = None,
        timezone: str = "UTC",
    ) -> None:
        super().__init__(client_factory=client_factory)
        self.timezone = timezone

    @property
    def name(self) -> str:
        return "Mistral"

    @property
    def default_model(self) -> str:
        return "mistral-large-latest"

    def is_model_supported(self, model_id: str) -> bool:
        m = model_id.lower()
        return "mistral" in m or "magistral" in m

    def _headers(self, credential: str, chat_id: str) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
            "Cookie": credential,
            "Origin": BASE_URL,
            "Referer": f"{BASE_URL}/chat/{chat_id}",
        }

    def build_payload(self, chat_id: str, mode: str, content: str) -> dict[str, Any]:
        return {
            "chatId": chat_id,
            "mode": mode,
            "disabledFeatures": [],
            "clientPromptData": {
                "currentDate": date.today().isoformat(),
                "userTimezone": self.timezone,
            },
            "shouldAwaitStreamBackgroundTasks": True,
            "shouldUseMessagePatch": True,
            "shouldUsePersistentStream": True,
            "messageInput": [{"type": "text", "text": content}],
            "messageFiles": [],
            "messageId": str(uuid.uuid4()),
            "features": FEATURES,
            "libraries": [],
            "integrations": [],
        }

    async def _stream(self, req: SendRequest) -> AsyncIterator[RawVendorEvent]:
        chat_id = req.conversation_id or str(uuid.uuid4())
        mode = "append" if req.conversation_id else "start"
        payload = self.build_payload(chat_id, mode, req.last_message.content)
        async with self.client() as client:
            async with client.stream(
                "POST",
                f"{BASE_URL}/api/chat",
                headers=self._headers(req.credential, chat_id),
                content=json.dumps(payload),
            ) as response:
                await ensure_ok(response, self.name)
                if not req.conversation_id:
                    yield RawSession(chat_id)
                async for line in iter_lines(response):
                    for event in parse_line(line):
                        yield event

    async def list_conversations(self, credential: str, limit: int = 30) -> list[ConversationSummary]:
        """Scraped from the chat page; Le Chat has no listing API for cookies."""
        async with self.client() as client:
            response = await client.get(
                f"{BASE_URL}/chat", headers={"Cookie": credential, "User-Agent": USER_AGENT}
            )
        await ensure_ok(response, self.name)
        seen: set[str] = set()
        conversations: list[ConversationSummary] = []
        for match in _CONVERSATION_LINK.finditer(response.text):
            conversation_id, title = match.group(1), match.group(2).strip()
            if conversation_id in seen or not title:
                continue
            seen.add(conversation_id)
            conversations.append(ConversationSummary(id=conversation_id, title=title))
        return conversations[:limit]
