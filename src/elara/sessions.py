"""Session manager: fingerprints, upstream session ids, per-fingerprint ordering."""

from __future__ import annotations

import asyncio
import hashlib
import secrets
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

import structlog

logger = structlog.get_logger()

FINGERPRINT_SCAN = 5


def _field(message: Any, name: str) -> Any:
    if isinstance(message, dict):
        return message.get(name)
    return getattr(message, name, None)


def content_text(content: Any, sep: str = " ") -> str:
    """Plain text of a string or a list of content blocks."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict):
                parts.append(block.get("text") or "")
        return sep.join(parts)
    return ""


def first_user_text(messages: Sequence[Any]) -> str:
    """Text of the first user turn among the first few messages."""
    for message in list(messages)[:FINGERPRINT_SCAN]:
        if _field(message, "role") == "user":
            return content_text(_field(message, "content")).strip()
    return ""


def _digest(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:16]


def fingerprint(api_key: str, messages: Sequence[Any]) -> str:
    """Derive the session key for a caller and conversation.

    Pure for non-empty first-user text. Without it there is nothing to
    tie restarts together, so a random value is used instead.
    """
    text = first_user_text(messages)
    content = _digest(text) if text else secrets.token_hex(8)
    return f"{_digest(api_key)}:{content}"


# ── Session state ───────────────────────────────────────────────────


@dataclass(frozen=True)
class NoSession:
    pass


@dataclass(frozen=True)
class Active:
    upstream_id: str


SessionState = NoSession | Active


class SessionStore:
    """Fingerprint to upstream conversation id, for the process lifetime."""

    def __init__(self) -> None:
        self._sessions: dict[str, str] = {}

    def get(self, key: str) -> str | None:
        return self._sessions.get(key)

    def state(self, key: str) -> SessionState:
        upstream_id = self._sessions.get(key)
        return Active(upstream_id) if upstream_id else NoSession()

    def set(self, key: str, upstream_id: str) -> bool:
        """Record a new session; an active one is never overwritten."""
        if key in self._sessions:
            return False
        self._sessions[key] = upstream_id
        logger.info("session.created", key=key, upstream_id=upstream_id)
        return True

    def clear(self, key: str) -> bool:
        removed = self._sessions.pop(key, None)
        if removed is not None:
            logger.info("session.cleared", key=key, upstream_id=removed)
        return removed is not None

    def __len__(self) -> int:
        return len(self._sessions)


# ── Request serialization ───────────────────────────────────────────


class RequestQueue:
    """Strict FIFO per key; different keys run concurrently.

    Each unit waits on the completion future of the unit enqueued before
    it. Futures only ever resolve with ``None``, so a failing unit never
    poisons its successors.
    """

    def __init__(self) -> None:
        self._tails: dict[str, asyncio.Future[None]] = {}
        self._pending: dict[str, int] = {}

    def pending(self, key: str) -> int:
        return self._pending.get(key, 0)

    def __len__(self) -> int:
        return len(self._tails)

    @asynccontextmanager
    async def slot(self, key: str) -> AsyncIterator[None]:
        loop = asyncio.get_running_loop()
        previous = self._tails.get(key)
        finished: asyncio.Future[None] = loop.create_future()
        self._tails[key] = finished
        self._pending[key] = self._pending.get(key, 0) + 1
        try:
            if previous is not None and not previous.done():
                logger.debug("queue.waiting", key=key, pending=self._pending[key])
                await asyncio.shield(previous)
            yield
        finally:

            def release() -> None:
                _settle(finished)
                if self._tails.get(key) is finished:
                    del self._tails[key]

            if previous is not None and not previous.done():
                # Cancelled while waiting: successors still wait for the predecessor.
                previous.add_done_callback(lambda _: release())
            else:
                release()
            self._pending[key] -= 1
            if not self._pending[key]:
                del self._pending[key]


def _settle(future: asyncio.Future[None]) -> None:
    if not future.done():
        future.set_result(None)
