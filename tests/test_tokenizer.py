from __future__ import annotations

from elara.providers.models import ChatMessage
from elara.tokenizer import MESSAGE_OVERHEAD, count_messages_tokens, count_tokens


def test_count_tokens_empty_is_zero() -> None:
    assert count_tokens("") == 0


def test_count_tokens_ignores_special_token_text() -> None:
    assert count_tokens("<|endoftext|>") > 0


def test_message_overhead_applies_per_message() -> None:
    messages = [ChatMessage("user", ""), {"role": "assistant", "content": ""}]

    assert count_messages_tokens(messages) == 2 * MESSAGE_OVERHEAD


def test_message_tokens_grow_with_content() -> None:
    short = count_messages_tokens([{"role": "user", "content": "hi"}])
    long = count_messages_tokens([{"role": "user", "content": "hi " * 50}])

    assert long > short > MESSAGE_OVERHEAD
