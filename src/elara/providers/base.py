"""Provider base class: the capability interface every upstream adapter implements."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, fields

import httpx
import structlog

from elara.errors import UnsupportedCapability
from elara.providers.events import (
    ContentDelta,
    Done,
    Error,
    RawEnd,
    RawSession,
    RawVendorEvent,
    StreamEvent,
    ThinkingDelta,
    normalize,
)
from elara.providers.models import (
    ConversationDetail,
    ConversationSummary,
    ModelInfo,
    SendRequest,
    UploadedFile,
)

logger = structlog.get_logger()

ClientFactory = Callable[[], httpx.AsyncClient]


def default_client_factory(timeout_s: float = 120.0) -> ClientFactory:
    def factory() -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_s, connect=15.0),
            follow_redirects=True,
        )

    return factory


@dataclass(frozen=True)
class Capabilities:
    """Optional operations an adapter implements, checkable before dispatch."""

    conversations: bool = False
    conversation_detail: bool = False
    upload: bool = False
    models: bool = False
    model_matching: bool = False
    search: bool = False
    thinking: bool = False

    def enabled(self) -> list[str]:
        return [f.name for f in fields(self) if getattr(self, f.name)]


class Provider(ABC):
    """Base class for all upstream chat providers.

    Subclasses implement ``_stream`` as an async generator of
    ``RawVendorEvent``. ``send_message`` wraps it and guarantees the terminal
    contract: zero or more events, then exactly one ``Done`` or ``Error``.
    """

    capabilities: Capabilities = Capabilities()

    def __init__(self, *, client_factory: ClientFactory | None = None) -> None:
        self._client_factory = client_factory or default_client_factory()

    @property
    @abstractmethod
    def name(self) -> str:
        """Registry key, matched case-insensitively."""
        ...

    @property
    @abstractmethod
    def default_model(self) -> str:
        ...

    @abstractmethod
    def _stream(self, req: SendRequest) -> AsyncIterator[RawVendorEvent]:
        """Talk to the upstream and yield decoded vendor events."""
        ...

    def client(self) -> httpx.AsyncClient:
        return self._client_factory()

    def supports(self, capability: str) -> bool:
        return bool(getattr(self.capabilities, capability, False))

    def is_model_supported(self, model_id: str) -> bool:
        return False

    async def send_message(self, req: SendRequest) -> AsyncIterator[StreamEvent]:
        """Stream normalized events for one request."""
        session_announced = req.conversation_id is not None
        content_started = False
        raw_events = self._stream(req)
        logger.info(
            "provider.send",
            provider=self.name,
            model=req.model,
            message_count=len(req.messages),
            continued=req.conversation_id is not None,
        )
        try:
            async for raw in raw_events:
                if isinstance(raw, RawEnd):
                    break
                if isinstance(raw, RawSession):
                    if session_announced:
                        continue
                    if content_started:
                        logger.warning("provider.session_after_content", provider=self.name)
                        continue
                    session_announced = True
                event = normalize(raw)
                if event is None:
                    continue
                if isinstance(event, (ContentDelta, ThinkingDelta)):
                    content_started = True
                yield event
        except Exception as exc:
            logger.error("provider.error", provider=self.name, model=req.model, error=str(exc))
            yield Error(exc)
            return
        finally:
            await raw_events.aclose()
        yield Done()

    # ── Optional capabilities ───────────────────────────────────────

    def _unsupported(self, what: str) -> UnsupportedCapability:
        return UnsupportedCapability(f"Provider {self.name} does not support {what}")

    async def list_conversations(self, credential: str, limit: int = 20) -> list[ConversationSummary]:
        raise self._unsupported("conversation listing")

    async def get_conversation_detail(self, credential: str, conversation_id: str) -> ConversationDetail:
        raise self._unsupported("conversation detail")

    async def upload_file(
        self,
        credential: str,
        filename: str,
        content: bytes,
        content_type: str = "application/octet-stream",
    ) -> UploadedFile:
        raise self._unsupported("file upload")

    async def list_models(self, credential: str, account_id: str | None = None) -> list[ModelInfo]:
        raise self._unsupported("model listing")

    def __repr__(self) -> str:
        return f"<{type(self).__name__} name={self.name!r}>"

