"""Gateway service: dispatches one request envelope to its adapter."""

from __future__ import annotations

import time
from collections import Counter
from collections.abc import AsyncIterator, Iterable
from dataclasses import dataclass, field

import structlog

from elara.errors import ProviderDisabled, ProviderNotFound, UnsupportedCapability
from elara.providers.base import Provider
from elara.providers.events import ContentDelta, Done, Error, StreamEvent
from elara.providers.models import (
    ConversationDetail,
    ConversationSummary,
    ModelInfo,
    SendRequest,
    UploadedFile,
)
from elara.providers.registry import ProviderRegistry

logger = structlog.get_logger()


@dataclass
class GatewayStats:
    requests: int = 0
    completed: int = 0
    failed: int = 0
    by_provider: Counter[str] = field(default_factory=Counter)

    def to_dict(self) -> dict[str, object]:
        return {
            "requests": self.requests,
            "completed": self.completed,
            "failed": self.failed,
            "by_provider": dict(self.by_provider),
        }


class GatewayService:
    """Single entrypoint from the HTTP layer and shim into the adapters."""

    def __init__(self, *, registry: ProviderRegistry, disabled_providers: Iterable[str] = ()) -> None:
        self.registry = registry
        self.disabled = {name.lower() for name in disabled_providers}
        self.stats = GatewayStats()

    def provider(self, name: str) -> Provider:
        """Look up an enabled adapter or raise."""
        if name.lower() in self.disabled:
            raise ProviderDisabled(f"Provider {name} is disabled")
        provider = self.registry.get(name)
        if provider is None:
            raise ProviderNotFound(f"Provider {name} is not loaded")
        return provider

    def _require(self, name: str, capability: str, what: str) -> Provider:
        provider = self.provider(name)
        if not provider.supports(capability):
            raise UnsupportedCapability(f"Provider {provider.name} does not support {what}")
        return provider

    async def send(self, req: SendRequest) -> AsyncIterator[StreamEvent]:
        """Stream events for one request; always ends in ``Done`` or ``Error``."""
        provider = self.provider(req.provider_id)
        if req.search and not provider.supports("search"):
            raise UnsupportedCapability(f"Provider {provider.name} does not support search")

        self.stats.requests += 1
        self.stats.by_provider[provider.name] += 1
        started = time.monotonic()
        chars = 0
        logger.info(
            "gateway.send",
            provider=provider.name,
            account_id=req.account_id,
            model=req.model,
            continued=req.conversation_id is not None,
        )
        async for event in provider.send_message(req):
            if isinstance(event, ContentDelta):
                chars += len(event.text)
            elif isinstance(event, Done):
                self.stats.completed += 1
            elif isinstance(event, Error):
                self.stats.failed += 1
            yield event
        logger.info(
            "gateway.done",
            provider=provider.name,
            account_id=req.account_id,
            chars=chars,
            duration_ms=round((time.monotonic() - started) * 1000),
        )

    # ── Capability-probed operations ────────────────────────────────

    async def list_conversations(self, provider_id: str, credential: str, limit: int = 20) -> list[ConversationSummary]:
        provider = self._require(provider_id, "conversations", "conversation listing")
        return await provider.list_conversations(credential, limit)

    async def get_conversation_detail(self, provider_id: str, credential: str, conversation_id: str) -> ConversationDetail:
        provider = self._require(provider_id, "conversation_detail", "conversation detail")
        return await provider.get_conversation_detail(credential, conversation_id)

    async def upload_file(
        self,
        provider_id: str,
        credential: str,
        filename: str,
        content: bytes,
        content_type: str = "application/octet-stream",
    ) -> UploadedFile:
        provider = self._require(provider_id, "upload", "file upload")
        logger.info("gateway.upload", provider=provider.name, filename=filename, size=len(content))
        return await provider.upload_file(credential, filename, content, content_type)

    async def list_models(self, provider_id: str, credential: str, account_id: str | None = None) -> list[ModelInfo]:
        provider = self._require(provider_id, "models", "model listing")
        return await provider.list_models(credential, account_id)
