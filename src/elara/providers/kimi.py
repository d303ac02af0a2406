"""Kimi (Moonshot) web provider."""

from __future__ import annotations

import base64
import json
import re
import time
from collections.abc import AsyncIterator
from typing import Any

import httpx
import structlog

from elara.errors import NoAccountFound, UpstreamError
from elara.providers.base import Capabilities, ClientFactory, Provider
from elara.providers.events import RawText, RawThinking, RawVendorEvent
from elara.providers.http import ensure_ok, iter_sse_data, loads_or_none
from elara.providers.models import ConversationSummary, ModelInfo, SendRequest

logger = structlog.get_logger()

BASE_URL = "https://www.kimi.com"
API_BASE = f"{BASE_URL}/apiv2"
USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/142.0.0.0 Safari/537.36"
)

FALLBACK_MODELS = (
    ModelInfo("SCENARIO_K2D5", "K2.5 Instant", "Quick response", 200000),
    ModelInfo("SCENARIO_K2D5_THINKING", "K2.5 Thinking", "Deep thinking for complex questions", 200000),
    ModelInfo("SCENARIO_OK_COMPUTER", "K2.5 Agent", "Research, slides, websites, docs, sheets", 200000),
)

_AUTH_COOKIE = re.compile(r"kimi-auth=([^;]+)")


def extract_token(credential: str) -> str | None:
    match = _AUTH_COOKIE.search(credential)
    if match:
        return match.group(1)
    if credential.startswith("eyJ"):
        return credential
    return None


def jwt_expiry(token: str) -> int | None:
    """Read ``exp`` from an unverified JWT payload."""
    parts = token.split(".")
    if len(parts) < 2:
        return None
    padded = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(padded))
    except ValueError:
        return None
    exp = claims.get("exp") if isinstance(claims, dict) else None
    return int(exp) if exp else None


def parse_event(data: dict[str, Any]) -> list[RawVendorEvent]:
    events: list[RawVendorEvent] = []
    if data.get("thinking"):
        events.append(RawThinking(data["thinking"]))
    if data.get("content"):
        events.append(RawText(data["content"]))
    choices = data.get("choices") or []
    if choices:
        content = ((choices[0] or {}).get("delta") or {}).get("content")
        if content:
            events.append(RawText(content))
    return events


class KimiProvider(Provider):
    capabilities = Capabilities(conversations=True, models=True, model_matching=True, thinking=True)

    def __init__(self, *, client_factory: ClientFactory | None = None) -> None:
        super().__init__(client_factory=client_factory)

    @property
    def name(self) -> str:
        return "Kimi"

    @property
    def default_model(self) -> str:
        return "K2.5 Thinking"

    def is_model_supported(self, model_id: str) -> bool:
        m = model_id.lower()
        return "k2" in m or "kimi" in m

    def _headers(self, credential: str, *, referer: str = BASE_URL) -> dict[str, str]:
        token = extract_token(credential)
        if not token:
            raise NoAccountFound("No valid Kimi token found in credentials")
        exp = jwt_expiry(token)
        if exp and exp - time.time() < 7 * 86400:
            logger.warning("kimi.token_expiring", days_left=round((exp - time.time()) / 86400, 1))
        return {
            "Authorization": f"Bearer {token}",
            "Cookie": credential,
            "Content-Type": "application/json",
            "Origin": BASE_URL,
            "Referer": referer,
            "User-Agent": USER_AGENT,
        }

    async def _stream(self, req: SendRequest) -> AsyncIterator[RawVendorEvent]:
        model = req.model or self.default_model
        payload: dict[str, Any] = {
            "messages": [m.to_dict() for m in req.messages],
            "model": model,
            "stream": True,
            "thinking": "thinking" in model.lower(),
        }
        if req.conversation_id:
            payload["conversation_id"] = req.conversation_id
        headers = self._headers(req.credential, referer=f"{BASE_URL}/chat")
        async with self.client() as client:
            async with client.stream(
                "POST",
                f"{API_BASE}/kimi.chat.v1.ChatService/SendMessage",
                headers=headers,
                content=json.dumps(payload),
            ) as response:
                await ensure_ok(response, self.name)
                async for data in iter_sse_data(response):
                    chunk = loads_or_none(data)
                    if isinstance(chunk, dict):
                        for event in parse_event(chunk):
                            yield event

    async def list_models(self, credential: str, account_id: str | None = None) -> list[ModelInfo]:
        try:
            headers = self._headers(credential)
            async with self.client() as client:
                response = await client.post(
                    f"{API_BASE}/kimi.gateway.config.v1.ConfigService/GetAvailableModels",
                    headers=headers,
                    json={},
                )
            await ensure_ok(response, self.name)
        except (NoAccountFound, UpstreamError, httpx.HTTPError) as exc:
            logger.warning("kimi.models_fallback", error=str(exc))
            return list(FALLBACK_MODELS)
        return [
            ModelInfo(
                id=m.get("scenario") or m.get("displayName"),
                name=m.get("displayName") or "",
                description=m.get("description") or "",
                context_length=200000,
            )
            for m in response.json().get("availableModels") or []
        ]

    async def list_conversations(self, credential: str, limit: int = 5) -> list[ConversationSummary]:
        async with self.client() as client:
            response = await client.post(
                f"{API_BASE}/kimi.chat.v1.ChatService/ListChats",
                headers=self._headers(credential),
                json={"project_id": "", "page_size": limit, "query": ""},
            )
        await ensure_ok(response, self.name)
        return [
            ConversationSummary(id=c.get("id", ""), title=c.get("name") or "", updated_at=c.get("updateTime"))
            for c in response.json().get("chats") or []
        ]
