from __future__ import annotations

from elara.providers.antigravity import parse_chunk, resolve_model_alias, stable_session_id
from elara.providers.claude_web import parse_event as claude_event
from elara.providers.cohere import parse_event as cohere_event
from elara.providers.deepseek import FragmentParser
from elara.providers.events import RawEnd, RawMeta, RawText, RawThinking
from elara.providers.huggingchat import ThinkTagSplitter
from elara.providers.kimi import extract_token, jwt_expiry
from elara.providers.kimi import parse_event as kimi_event
from elara.providers.mistral import parse_line
from elara.providers.models import ChatMessage
from elara.providers.openai_compat import parse_openai_chunk
from elara.providers.qwen import parse_event as qwen_event
from elara.providers.qwen import split_credential


def test_deepseek_fragments_switch_between_think_and_response() -> None:
    parser = FragmentParser()
    chunks = [
        {"request_message_id": 1, "response_message_id": 2},
        {"p": "response/fragments", "o": "APPEND", "v": [{"type": "THINK", "content": "Let me"}]},
        {"v": " think"},
        {"p": "response/fragments/-1/elapsed_secs", "v": 1.5},
        {"p": "response/fragments", "o": "APPEND", "v": [{"type": "RESPONSE", "content": "Answer"}]},
        {"v": "!"},
    ]

    events = [event for chunk in chunks for event in parser.feed(chunk)]

    assert events == [
        RawThinking("Let me"),
        RawThinking(" think"),
        RawMeta({"thinking_elapsed": 1.5}),
        RawText("Answer"),
        RawText("!"),
    ]


def test_deepseek_legacy_paths() -> None:
    parser = FragmentParser()

    assert parser.feed({"p": "response/thinking_content", "v": "hmm"}) == [RawThinking("hmm")]
    assert parser.feed({"v": "more"}) == [RawThinking("more")]
    assert parser.feed({"p": "response/content", "v": "done"}) == [RawText("done")]
    assert parser.feed({"choices": [{"delta": {"content": "compat"}}]}) == [RawText("compat")]
    assert parser.feed({"p": "response/status", "v": "FINISHED"}) == []


def test_think_splitter_handles_tags_split_across_tokens() -> None:
    splitter = ThinkTagSplitter()
    events = []
    for token in ["<thi", "nk>reason", "ing</th", "ink>answer", " <", "b>"]:
        events.extend(splitter.feed(token))
    events.extend(splitter.flush())

    thinking = "".join(e.text for e in events if isinstance(e, RawThinking))
    content = "".join(e.text for e in events if isinstance(e, RawText))
    assert thinking == "reasoning"
    assert content == "answer <b>"


def test_think_splitter_flushes_held_back_suffix() -> None:
    splitter = ThinkTagSplitter()

    assert splitter.feed("a <th") == [RawText("a ")]
    assert splitter.flush() == [RawText("<th")]


def test_mistral_patch_lines() -> None:
    line = '1:{"json":{"patches":[{"op":"append","path":"/contentChunks/0/text","value":"Bon"},' \
        '{"op":"replace","path":"/status","value":"done"}]}}'

    assert parse_line(line) == [RawText("Bon")]
    assert parse_line("no separator") == []
    assert parse_line("2:not json") == []


def test_openai_chunks_and_bare_content() -> None:
    assert parse_openai_chunk({"choices": [{"delta": {"reasoning_content": "r", "content": "c"}}]}) == [
        RawThinking("r"),
        RawText("c"),
    ]
    assert parse_openai_chunk({"content": "qwq"}) == [RawText("qwq")]
    assert parse_openai_chunk({"choices": [{"delta": {}}]}) == []


def test_qwen_phase_and_credential() -> None:
    assert qwen_event({"choices": [{"delta": {"content": "x", "phase": "think"}}]}) == [RawThinking("x")]
    assert qwen_event({"choices": [{"delta": {"content": "y", "phase": "answer"}}]}) == [RawText("y")]
    assert split_credential("eyJabc") == ("eyJabc", "token=eyJabc")
    assert split_credential("a=1; token=tok; b=2") == ("tok", "a=1; token=tok; b=2")
    assert split_credential("a=1") == (None, "a=1")


def test_kimi_events_and_token() -> None:
    assert kimi_event({"thinking": "t", "content": "c"}) == [RawThinking("t"), RawText("c")]
    assert extract_token("x=1; kimi-auth=eyJtok; y=2") == "eyJtok"
    assert extract_token("garbage") is None
    # {"exp": 1700000000}
    assert jwt_expiry("eyJhbGciOiJIUzI1NiJ9.eyJleHAiOjE3MDAwMDAwMDB9.sig") == 1700000000
    assert jwt_expiry("not-a-jwt") is None


def test_cohere_content_delta() -> None:
    thinking = {"type": "content-delta", "delta": {"message": {"content": {"thinking": "t"}}}}
    text = {"type": "content-delta", "delta": {"message": {"content": {"text": "hi"}}}}

    assert cohere_event(thinking) == [RawThinking("t")]
    assert cohere_event(text) == [RawText("hi")]
    assert cohere_event({"type": "message-end"}) == []


def test_claude_web_events() -> None:
    assert claude_event({"type": "content_block_delta", "delta": {"text": "hey"}}) == [RawText("hey")]
    assert claude_event({"completion": "legacy"}) == [RawText("legacy")]
    assert claude_event({"type": "message_stop"}) == [RawEnd()]


def test_antigravity_chunks_and_session_id() -> None:
    chunk = {
        "response": {
            "candidates": [{"content": {"parts": [{"text": "plan", "thought": True}, {"text": "reply"}]}}]
        }
    }
    messages = [ChatMessage("system", "sys"), ChatMessage("user", "first question")]

    assert parse_chunk(chunk) == [RawThinking("plan"), RawText("reply")]
    assert resolve_model_alias("models/gemini-3-pro-preview") == "gemini-3-pro-high"
    assert stable_session_id(messages) == stable_session_id(list(messages))
    assert stable_session_id(messages).startswith("-")
