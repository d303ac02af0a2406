"""Stateless OpenAI-style streaming providers (Groq, Cerebras, QWQ).

These upstreams keep no conversation state: every request carries the full
history and no ``SessionCreated`` is emitted.
"""

from __future__ import annotations

import json
import uuid
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from typing import Any

import structlog

from elara.providers.base import Capabilities, ClientFactory, Provider
from elara.providers.events import RawText, RawThinking, RawVendorEvent
from elara.providers.http import ensure_ok, iter_sse_data, loads_or_none
from elara.providers.models import SendRequest

logger = structlog.get_logger()


def parse_openai_chunk(data: dict[str, Any]) -> list[RawVendorEvent]:
    choices = data.get("choices") or []
    if not choices:
        # QWQ streams bare {"content": "..."} objects.
        content = data.get("content")
        return [RawText(content)] if isinstance(content, str) and content else []
    delta = (choices[0] or {}).get("delta") or {}
    events: list[RawVendorEvent] = []
    reasoning = delta.get("reasoning_content") or delta.get("reasoning")
    if reasoning:
        events.append(RawThinking(reasoning))
    if delta.get("content"):
        events.append(RawText(delta["content"]))
    return events


@dataclass(frozen=True)
class CompatProfile:
    """Everything that differs between the OpenAI-style upstreams."""

    name: str
    url: str
    default_model: str
    auth: Callable[[str], dict[str, str]]
    model_markers: tuple[str, ...] = ()
    extra_headers: dict[str, str] = field(default_factory=dict)
    session_field: str | None = None


def _cookie_auth(credential: str) -> dict[str, str]:
    return {"Cookie": credential}


def _bearer_auth(credential: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {credential}"}


def _no_auth(credential: str) -> dict[str, str]:
    return {}


GROQ = CompatProfile(
    name="Groq",
    url="https://api.groq.com/openai/v1/chat/completions",
    default_model="llama-3.3-70b-versatile",
    auth=_cookie_auth,
    model_markers=("groq", "llama", "mixtral"),
    extra_headers={"Origin": "https://console.groq.com", "Referer": "https://console.groq.com/"},
)

CEREBRAS = CompatProfile(
    name="Cerebras",
    url="https://api.cerebras.ai/v1/chat/completions",
    default_model="llama-3.3-70b",
    auth=_bearer_auth,
)

QWQ = CompatProfile(
    name="QWQ",
    url="https://qwq32.com/api/chat",
    default_model="deepseek-r1-0528",
    auth=_no_auth,
    model_markers=("deepseek-r1-0528",),
    extra_headers={
        "User-Agent": "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko)",
        "Origin": "https://qwq32.com",
        "Referer": "https://qwq32.com/chat",
    },
    session_field="chatSessionId",
)


class OpenAICompatProvider(Provider):
    def __init__(self, profile: CompatProfile, *, client_factory: ClientFactory | None = None) -> None:
        super().__init__(client_factory=client_factory)
        self.profile = profile
        self.capabilities = Capabilities(model_matching=bool(profile.model_markers))

    @property
    def name(self) -> str:
        return self.profile.name

    @property
    def default_model(self) -> str:
        return self.profile.default_model

    def is_model_supported(self, model_id: str) -> bool:
        m = model_id.lower()
        return any(marker in m for marker in self.profile.model_markers)

    def build_payload(self, req: SendRequest) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": req.model or self.default_model,
            "messages": [m.to_dict() for m in req.messages],
        }
        if self.profile.session_field:
            payload[self.profile.session_field] = str(uuid.uuid4())
        else:
            payload["stream"] = True
            if req.temperature is not None:
                payload["temperature"] = req.temperature
        return payload

    async def _stream(self, req: SendRequest) -> AsyncIterator[RawVendorEvent]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
            **self.profile.extra_headers,
            **self.profile.auth(req.credential),
        }
        async with self.client() as client:
            async with client.stream(
                "POST", self.profile.url, headers=headers, content=json.dumps(self.build_payload(req))
            ) as response:
                await ensure_ok(response, self.name)
                async for data in iter_sse_data(response):
                    chunk = loads_or_none(data)
                    if isinstance(chunk, dict):
                        for event in parse_openai_chunk(chunk):
                            yield event
