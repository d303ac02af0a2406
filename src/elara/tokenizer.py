"""Local token accounting: upstream usage numbers are never trusted."""

from __future__ import annotations

from collections.abc import Iterable
from functools import lru_cache
from typing import Any

import tiktoken

MESSAGE_OVERHEAD = 4


@lru_cache(maxsize=1)
def _encoding() -> tiktoken.Encoding:
    return tiktoken.get_encoding("cl100k_base")


def count_tokens(text: str) -> int:
    if not text:
        return 0
    return len(_encoding().encode(text, disallowed_special=()))


def count_messages_tokens(messages: Iterable[Any]) -> int:
    """Count prompt tokens, adding a fixed per-message overhead.

    Accepts ``ChatMessage`` objects or ``{"role", "content"}`` dicts.
    """
    total = 0
    for message in messages:
        content = message.get("content", "") if isinstance(message, dict) else message.content
        total += count_tokens(content if isinstance(content, str) else str(content or "")) + MESSAGE_OVERHEAD
    return total
