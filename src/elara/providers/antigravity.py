"""Antigravity (Google Cloud Code) provider: OAuth refresh with endpoint failover."""

from __future__ import annotations

import hashlib
import json
import random
import uuid
from collections.abc import AsyncIterator, Sequence
from typing import Any

import structlog

from elara.errors import UpstreamAuthExpired
from elara.providers.base import Capabilities, ClientFactory, Provider
from elara.providers.events import RawSession, RawText, RawThinking, RawVendorEvent
from elara.providers.http import EndpointFailover, RateLimiter, iter_sse_data, loads_or_none
from elara.providers.models import ChatMessage, ModelInfo, SendRequest
from elara.providers.oauth import AccessTokenCache, OAuthRefresher
from elara.stores import CredentialStore

logger = structlog.get_logger()

USER_AGENT = "antigravity/1.11.3 Darwin/arm64"
API_CLIENT = "antigravity/1.11.3"

MODEL_ALIASES = {
    "gemini-3-pro-preview": "gemini-3-pro-high",
    "gemini-3-flash-preview": "gemini-3-flash",
}

_MODEL_MARKERS = ("gemini", "antigravity", "gpt-oss", "tab_flash", "rev19")

DEFAULT_MODELS = (
    ModelInfo("gemini-3-flash", "Gemini 3 Flash", "Fast and versatile performance", 32768),
    ModelInfo("gemini-2.5-flash", "Gemini 2.5 Flash", "Next-gen fast model", 32768),
    ModelInfo("gemini-2.5-flash-lite", "Gemini 2.5 Flash Lite", "Lightweight efficient model", 32768),
    ModelInfo("tab_flash_lite_preview", "Tab Flash Lite", "Code completion optimized", 32768),
    ModelInfo("gemini-3-pro-image", "Gemini 3 Pro Image", "Multimodal image generation", 32768),
    ModelInfo("gpt-oss-120b-medium", "GPT OSS 120B", "Open source 120B model", 32768),
    ModelInfo("rev19-uic3-1p", "Rev19 UIC3 1P", "Experimental model", 32768),
    ModelInfo("gemini-3-pro-preview", "Gemini 3 Pro (Preview)", "Complex reasoning and coding", 32768),
    ModelInfo("gemini-3-flash-preview", "Gemini 3 Flash (Preview)", "Fast and versatile", 32768),
)


def resolve_model_alias(model: str) -> str:
    if model.startswith("models/"):
        model = model[len("models/"):]
    return MODEL_ALIASES.get(model, model)


def stable_session_id(messages: Sequence[ChatMessage]) -> str:
    """Client-chosen upstream session id derived from the first user message."""
    text = next((m.content for m in messages if m.role == "user"), "")
    if not text:
        return f"-{random.randrange(9_000_000_000_000_000_000)}"
    digest = hashlib.sha256(text.encode("utf-8")).hexdigest()
    return f"-{int(digest[:16], 16) & 0x7FFFFFFFFFFFFFFF}"


def convert_messages(messages: Sequence[ChatMessage]) -> list[dict[str, Any]]:
    return [
        {
            "role": "model" if m.role == "assistant" else "user",
            "parts": [{"text": m.content}] if m.content else [],
        }
        for m in messages
    ]


def parse_chunk(data: dict[str, Any]) -> list[RawVendorEvent]:
    """Decode one SSE payload; ``parts[].thought`` marks reasoning text."""
    candidates = data.get("candidates")
    response = data.get("response")
    if isinstance(response, dict) and response.get("candidates"):
        candidates = response["candidates"]
    if not candidates:
        return []
    parts = ((candidates[0] or {}).get("content") or {}).get("parts") or []
    events: list[RawVendorEvent] = []
    for part in parts:
        text = part.get("text")
        if not text:
            continue
        events.append(RawThinking(text) if part.get("thought") else RawText(text))
    return events


class AntigravityProvider(Provider):
    capabilities = Capabilities(models=True, model_matching=True, thinking=True)

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        token_url: str = "https://oauth2.googleapis.com/token",
        backend_urls: Sequence[str] = (
            "https://cloudcode-pa.googleapis.com",
            "https://daily-cloudcode-pa.sandbox.googleapis.com",
        ),
        credentials: CredentialStore | None = None,
        token_cache: AccessTokenCache | None = None,
        min_interval_s: float = 0.25,
        client_factory: ClientFactory | None = None,
    ) -> None:
        super().__init__(client_factory=client_factory)
        self.failover = EndpointFailover(backend_urls, name="antigravity")
        self.oauth = OAuthRefresher(
            token_url=token_url,
            client_id=client_id,
            client_secret=client_secret,
            credentials=credentials,
            cache=token_cache or AccessTokenCache(),
            client_factory=self._client_factory,
            provider="antigravity",
        )
        self.limiter = RateLimiter(min_interval_s)
        self._projects: dict[str, str] = {}

    @property
    def name(self) -> str:
        return "Antigravity"

    @property
    def default_model(self) -> str:
        return "gemini-3-flash"

    def is_model_supported(self, model_id: str) -> bool:
        m = model_id.lower()
        return any(marker in m for marker in _MODEL_MARKERS)

    @staticmethod
    def _account_key(req_account_id: str | None, credential: str) -> str:
        return req_account_id or hashlib.sha256(credential.encode("utf-8")).hexdigest()[:16]

    @staticmethod
    def _headers(token: str, *, stream: bool = False) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
            "x-goog-api-client": API_CLIENT,
        }
        if stream:
            headers["Accept"] = "text/event-stream"
        return headers

    async def project_id(self, client, account_key: str, token: str) -> str:
        """Cloud AI companion project, looked up once per account."""
        if account_key in self._projects:
            return self._projects[account_key]
        payload = {
            "metadata": {
                "ideType": "IDE_UNSPECIFIED",
                "platform": "PLATFORM_UNSPECIFIED",
                "pluginType": "GEMINI",
            }
        }
        project = ""
        try:
            await self.limiter.wait()
            response = await self.failover.request(
                client, "POST", "/v1internal:loadCodeAssist", headers=self._headers(token), json=payload
            )
            data = response.json()
            raw = data.get("cloudaicompanionProject")
            if isinstance(raw, str):
                project = raw
            elif isinstance(raw, dict):
                project = raw.get("id") or ""
        except UpstreamAuthExpired:
            raise
        except Exception as exc:
            logger.warning("antigravity.project_lookup_failed", error=str(exc))
        if not project:
            return f"useful-fuze-{uuid.uuid4().hex[:5]}"
        self._projects[account_key] = project
        return project

    def build_payload(self, req: SendRequest, project: str, session_id: str) -> dict[str, Any]:
        model = resolve_model_alias(req.model or self.default_model)
        generation: dict[str, Any] = {
            "temperature": req.temperature or 0.7,
            "maxOutputTokens": 8192,
            "candidateCount": 1,
        }
        if "gemini-3-pro" in model:
            generation["thinkingConfig"] = {"thinkingBudget": 1024, "include_thoughts": True}
        return {
            "model": model,
            "userAgent": "antigravity",
            "requestType": "agent",
            "project": project,
            "requestId": f"agent-{uuid.uuid4()}",
            "request": {
                "sessionId": session_id,
                "contents": convert_messages(req.messages),
                "toolConfig": {"functionCallingConfig": {"mode": "VALIDATED"}},
                "generationConfig": generation,
            },
        }

    async def _stream(self, req: SendRequest) -> AsyncIterator[RawVendorEvent]:
        account_key = self._account_key(req.account_id, req.credential)
        session_id = req.conversation_id or stable_session_id(req.messages)
        token = await self.oauth.access_token(account_key, req.credential)

        async with self.client() as client:
            for attempt in range(2):
                try:
                    project = await self.project_id(client, account_key, token)
                    payload = self.build_payload(req, project, session_id)
                    await self.limiter.wait()
                    async with self.failover.stream(
                        client,
                        "POST",
                        "/v1internal:streamGenerateContent?alt=sse",
                        headers=self._headers(token, stream=True),
                        content=json.dumps(payload),
                    ) as response:
                        if not req.conversation_id:
                            yield RawSession(session_id)
                        async for data in iter_sse_data(response):
                            chunk = loads_or_none(data)
                            if isinstance(chunk, dict):
                                for event in parse_chunk(chunk):
                                    yield event
                    return
                except UpstreamAuthExpired:
                    if attempt:
                        raise
                    logger.info("antigravity.token_expired", account_id=account_key)
                    self.oauth.cache.invalidate(account_key)
                    token = await self.oauth.refresh(account_key, req.credential)

    async def list_models(self, credential: str, account_id: str | None = None) -> list[ModelInfo]:
        account_key = self._account_key(account_id, credential)

        async def fetch(token: str) -> list[ModelInfo]:
            async with self.client() as client:
                project = await self.project_id(client, account_key, token)
                await self.limiter.wait()
                response = await self.failover.request(
                    client,
                    "POST",
                    "/v1internal:fetchAvailableModels",
                    headers=self._headers(token),
                    json={"project": project},
                )
            models = response.json().get("models")
            if not models:
                return list(DEFAULT_MODELS)
            return [
                ModelInfo(
                    id=key,
                    name=val.get("displayName") or key,
                    description=val.get("description") or "",
                    context_length=val.get("inputTokenLimit") or 32768,
                )
                for key, val in models.items()
            ]

        try:
            return await self.oauth.with_auth_retry(account_key, credential, fetch)
        except Exception as exc:
            logger.error("antigravity.models_failed", error=str(exc))
            return list(DEFAULT_MODELS)
