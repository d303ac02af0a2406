"""Cohere v2 chat provider; dashboard JWTs are exchanged for a raw API key."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Any

import httpx
import structlog

from elara.providers.base import Capabilities, ClientFactory, Provider
from elara.providers.events import RawText, RawThinking, RawVendorEvent
from elara.providers.http import ensure_ok, iter_sse_data, loads_or_none
from elara.providers.models import SendRequest

logger = structlog.get_logger()

CHAT_URL = "https://api.cohere.com/v2/chat"
KEY_EXCHANGE_URL = "https://production.api.os.cohere.com/rpc/BlobheartAPI/GetOrCreateDefaultAPIKey"
USER_AGENT = "Elara/1.0.0"


def parse_event(data: dict[str, Any]) -> list[RawVendorEvent]:
    if data.get("type") != "content-delta":
        return []
    content = ((data.get("delta") or {}).get("message") or {}).get("content") or {}
    if content.get("thinking") is not None:
        return [RawThinking(content["thinking"])]
    if content.get("text") is not None:
        return [RawText(content["text"])]
    return []


class CohereProvider(Provider):
    capabilities = Capabilities(model_matching=True, thinking=True)

    def __init__(self, *, client_factory: ClientFactory | None = None) -> None:
        super().__init__(client_factory=client_factory)
        self._api_keys: dict[str, str] = {}

    @property
    def name(self) -> str:
        return "Cohere"

    @property
    def default_model(self) -> str:
        return "command-r7b-12-2024"

    def is_model_supported(self, model_id: str) -> bool:
        m = model_id.lower()
        return m.startswith("command") or "cohere" in m

    async def api_key(self, client: httpx.AsyncClient, credential: str) -> str:
        """Raw keys pass through; a JWT is exchanged once and cached."""
        if not credential.startswith("eyJ"):
            return credential
        if credential in self._api_keys:
            return self._api_keys[credential]
        try:
            response = await client.post(
                KEY_EXCHANGE_URL,
                headers={
                    "Authorization": f"Bearer {credential}",
                    "Content-Type": "application/json",
                    "User-Agent": USER_AGENT,
                    "request-source": "playground",
                },
                json={"canReturnProductionKey": True},
            )
        except httpx.TransportError as exc:
            logger.warning("cohere.key_exchange_error", error=str(exc))
            return credential
        if not response.is_success:
            logger.warning("cohere.key_exchange_failed", status=response.status_code)
            return credential
        raw_key = response.json().get("rawKey")
        if not raw_key:
            logger.warning("cohere.key_exchange_no_key")
            return credential
        self._api_keys[credential] = raw_key
        logger.info("cohere.key_exchanged", key=f"{raw_key[:5]}...{raw_key[-5:]}")
        return raw_key

    def build_payload(self, req: SendRequest) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": req.model or self.default_model,
            "messages": [m.to_dict() for m in req.messages],
            "stream": True,
        }
        if req.temperature is not None:
            payload["temperature"] = req.temperature
        if req.thinking:
            payload["thinking"] = {"type": "enabled"}
        return payload

    async def _stream(self, req: SendRequest) -> AsyncIterator[RawVendorEvent]:
        async with self.client() as client:
            key = await self.api_key(client, req.credential)
            async with client.stream(
                "POST",
                CHAT_URL,
                headers={
                    "Authorization": f"Bearer {key}",
                    "Content-Type": "application/json",
                    "User-Agent": USER_AGENT,
                },
                content=json.dumps(self.build_payload(req)),
            ) as response:
                await ensure_ok(response, self.name)
                async for data in iter_sse_data(response):
                    chunk = loads_or_none(data)
                    if isinstance(chunk, dict):
                        for event in parse_event(chunk):
                            yield event
