"""Streaming normalizer: the common event surface every adapter emits into.

Adapters decode upstream bytes into ``RawVendorEvent`` values first; the pure
``normalize`` function maps those onto ``StreamEvent``. Callers only ever see
``StreamEvent``.
"""

from __future__ import annotations

import inspect
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar, Union

import structlog

logger = structlog.get_logger()

T = TypeVar("T")


# ── Normalized events ───────────────────────────────────────────────


@dataclass(frozen=True)
class ContentDelta:
    text: str
    kind: str = "content"


@dataclass(frozen=True)
class ThinkingDelta:
    text: str
    kind: str = "thinking"


@dataclass(frozen=True)
class MetadataUpdate:
    data: dict[str, Any]
    kind: str = "metadata"


@dataclass(frozen=True)
class SessionCreated:
    upstream_id: str
    kind: str = "session_created"


@dataclass(frozen=True)
class Done:
    kind: str = "done"


@dataclass(frozen=True)
class Error:
    error: BaseException
    kind: str = "error"

    @property
    def message(self) -> str:
        return str(self.error)


StreamEvent = Union[ContentDelta, ThinkingDelta, MetadataUpdate, SessionCreated, Done, Error]


def is_terminal(event: StreamEvent) -> bool:
    return isinstance(event, (Done, Error))


# ── Raw vendor events ───────────────────────────────────────────────


@dataclass(frozen=True)
class RawText:
    text: str


@dataclass(frozen=True)
class RawThinking:
    text: str


@dataclass(frozen=True)
class RawMeta:
    data: dict[str, Any]


@dataclass(frozen=True)
class RawSession:
    upstream_id: str


@dataclass(frozen=True)
class RawEnd:
    """Upstream signalled end of stream before the transport closed."""


RawVendorEvent = Union[RawText, RawThinking, RawMeta, RawSession, RawEnd]


def normalize(raw: RawVendorEvent) -> StreamEvent | None:
    """Map one decoded vendor event to its normalized form.

    Empty text fragments are dropped. ``RawEnd`` maps to ``None``; the adapter
    base emits the single ``Done`` once the stream is closed.
    """
    if isinstance(raw, RawText):
        return ContentDelta(raw.text) if raw.text else None
    if isinstance(raw, RawThinking):
        return ThinkingDelta(raw.text) if raw.text else None
    if isinstance(raw, RawMeta):
        return MetadataUpdate(dict(raw.data)) if raw.data else None
    if isinstance(raw, RawSession):
        return SessionCreated(raw.upstream_id)
    return None


# ── Callback surface ────────────────────────────────────────────────

Callback = Callable[..., Any] | Callable[..., Awaitable[Any]]


@dataclass
class StreamCallbacks:
    """In-order callback surface for callers that prefer hooks to iteration."""

    on_session_created: Callback | None = None
    on_content: Callback | None = None
    on_thinking: Callback | None = None
    on_metadata: Callback | None = None
    on_done: Callback | None = None
    on_error: Callback | None = None


async def _call(callback: Callback | None, *args: Any) -> None:
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


async def dispatch(events: AsyncIterator[StreamEvent], callbacks: StreamCallbacks) -> StreamEvent | None:
    """Drain ``events`` into ``callbacks``; returns the terminal event."""
    async for event in events:
        if isinstance(event, SessionCreated):
            await _call(callbacks.on_session_created, event.upstream_id)
        elif isinstance(event, ContentDelta):
            await _call(callbacks.on_content, event.text)
        elif isinstance(event, ThinkingDelta):
            await _call(callbacks.on_thinking, event.text)
        elif isinstance(event, MetadataUpdate):
            await _call(callbacks.on_metadata, event.data)
        elif isinstance(event, Done):
            await _call(callbacks.on_done)
            return event
        elif isinstance(event, Error):
            await _call(callbacks.on_error, event.error)
            return event
    return None


@dataclass
class StreamResult:
    """Everything a non-streaming caller needs from one adapter run."""

    text: str = ""
    thinking: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    session_id: str | None = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


async def collect(events: AsyncIterator[StreamEvent]) -> StreamResult:
    result = StreamResult()
    text: list[str] = []
    thinking: list[str] = []
    async for event in events:
        if isinstance(event, ContentDelta):
            text.append(event.text)
        elif isinstance(event, ThinkingDelta):
            thinking.append(event.text)
        elif isinstance(event, MetadataUpdate):
            result.metadata.update(event.data)
        elif isinstance(event, SessionCreated):
            result.session_id = event.upstream_id
        elif isinstance(event, Error):
            result.error = event.error
            break
        elif isinstance(event, Done):
            break
    result.text = "".join(text)
    result.thinking = "".join(thinking)
    return result


async def _chain(first: T, rest: AsyncIterator[T]) -> AsyncIterator[T]:
    yield first
    async for item in rest:
        yield item


async def _empty() -> AsyncIterator[T]:
    return
    yield


async def prime(source: AsyncIterator[T]) -> AsyncIterator[T]:
    """Pull the first item now so failures before it raise to the caller.

    HTTP handlers use this to answer with a JSON error instead of an event
    stream when nothing has been produced yet.
    """
    try:
        first = await anext(source)
    except StopAsyncIteration:
        return _empty()
    return _chain(first, source)
