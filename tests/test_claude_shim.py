from __future__ import annotations

import json

import pytest

from elara.accounts import AccountResolver
from elara.config import ModelMappingConfig
from elara.errors import SessionExpired
from elara.gateway import GatewayService
from elara.providers.events import RawSession, RawText
from elara.sessions import RequestQueue, SessionStore, fingerprint
from elara.shim.claude import (
    COUNT_TOKENS_BUFFER,
    PROBE_TEXT,
    RESET_STREAM_TEXT,
    ClaudeShim,
    ModelTarget,
    count_tokens_response,
    flatten_request,
    is_probe_request,
    is_reset_command,
    map_model,
)
from elara.stores import Account, MemoryConfigStore, MemoryCredentialStore, MemorySequenceStore, ModelSequence


def _user(content) -> list[dict]:
    return [{"role": "user", "content": content}]


def _events(raw: str) -> list[tuple[str, dict]]:
    parsed = []
    for block in raw.strip().split("\n\n"):
        event_line, data_line = block.split("\n", 1)
        parsed.append((event_line.removeprefix("event: "), json.loads(data_line.removeprefix("data: "))))
    return parsed


async def _read(stream) -> str:
    return "".join([part async for part in stream])


@pytest.fixture
def shim_with(scripted, registry_of):
    def build(script, *, sequences=None, mapping=None, stored=None):
        provider = scripted("DeepSeek", script, default_model="deepseek-chat", markers=("deepseek",))
        registry = registry_of(provider)
        resolver = AccountResolver(
            registry=registry,
            credentials=MemoryCredentialStore([Account("ds-1", "DeepSeek", "a@test", "tok")]),
            sequences=MemorySequenceStore(sequences),
        )
        shim = ClaudeShim(
            gateway=GatewayService(registry=registry),
            resolver=resolver,
            sessions=SessionStore(),
            queue=RequestQueue(),
            model_mapping=mapping,
            config_store=MemoryConfigStore(stored),
        )
        return shim, provider

    return build


# ── Fast-path detection ─────────────────────────────────────────────


def test_probe_detection_shapes() -> None:
    assert is_probe_request(_user("count"))
    assert is_probe_request(_user("Warmup"))
    assert is_probe_request(_user([{"type": "text", "text": "Warmup"}]))
    assert is_probe_request(_user([{"type": "tool_result", "is_error": True, "content": "Warmup failed"}]))
    assert is_probe_request(_user("<system-reminder>Files modified by user: a.py</system-reminder>"))
    assert is_probe_request(
        _user("Please write a 5-10 word title for the following conversation: hi")
    )


def test_probe_detection_ignores_real_work() -> None:
    assert not is_probe_request(_user("Warmup " + "x" * 120))
    assert not is_probe_request(_user([{"type": "text", "text": "Warmup the oven please"}]))
    assert not is_probe_request(_user("please count the files"))
    assert not is_probe_request([])


def test_reset_command_is_exact_and_case_insensitive() -> None:
    assert is_reset_command(_user("  /RESET "))
    assert is_reset_command(_user("!reset"))
    assert not is_reset_command(_user("/reset now"))
    assert not is_reset_command([{"role": "assistant", "content": "/reset"}])


# ── Model mapping and flattening ────────────────────────────────────


def test_map_model_uses_family_mapping() -> None:
    mapping = {"opus": "DeepSeek/deepseek-reasoner", "sonnet": "auto", "haiku": "", "default": ""}

    assert map_model("claude-opus-4-1", mapping) == ModelTarget("DeepSeek", "deepseek-reasoner")
    assert map_model("claude-sonnet-4-5", mapping) == ModelTarget(None, "auto")
    assert map_model("claude-3-5-haiku", mapping) == ModelTarget(None, "claude-3-5-haiku")
    assert map_model("Qwen/qwen-max", mapping) == ModelTarget("Qwen", "qwen-max")
    assert map_model(None, mapping) == ModelTarget(None, None)


def test_flatten_request_keeps_system_and_only_last_turn_with_session() -> None:
    body = {
        "system": [{"type": "text", "text": "Be brief."}],
        "messages": [
            {"role": "user", "content": "first"},
            {"role": "assistant", "content": [{"type": "text", "text": "ok"}]},
            {"role": "user", "content": [{"type": "tool_result", "content": [{"type": "text", "text": "42"}]}]},
        ],
    }

    fresh = flatten_request(body, has_session=False)
    continued = flatten_request(body, has_session=True)

    assert [m.role for m in fresh] == ["system", "user", "assistant", "user"]
    assert [(m.role, m.content) for m in continued] == [("system", "Be brief."), ("user", "42")]


def test_count_tokens_adds_buffer() -> None:
    result = count_tokens_response({"messages": _user("hello world")})

    assert result["input_tokens"] > COUNT_TOKENS_BUFFER


# ── Handler ─────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_probe_never_reaches_adapter(shim_with) -> None:
    shim, provider = shim_with([RawText("should not run")])

    first = await shim.handle({"model": "claude-sonnet-4", "messages": _user("count")}, "key")
    second = await shim.handle({"model": "claude-sonnet-4", "messages": _user("count"), "stream": True}, "key")
    streamed = _events(await _read(second.stream))

    assert first.body["content"][0]["text"] == PROBE_TEXT
    assert first.headers["X-Warmup-Intercepted"] == "true"
    assert [name for name, _ in streamed][0] == "message_start"
    assert provider.requests == []
    assert len(shim.queue) == 0
    assert shim.probes == 2


@pytest.mark.asyncio
async def test_auto_stream_emits_exact_event_sequence(shim_with) -> None:
    shim, provider = shim_with(
        [RawSession("up-1"), RawText("Hel"), RawText("lo")],
        sequences=[ModelSequence("DeepSeek", "deepseek-chat", 1)],
    )
    body = {"model": "auto", "stream": True, "messages": _user("hi there")}

    result = await shim.handle(body, "key")
    events = _events(await _read(result.stream))

    assert [name for name, _ in events] == [
        "message_start",
        "content_block_start",
        "content_block_delta",
        "content_block_delta",
        "content_block_stop",
        "message_delta",
        "message_stop",
    ]
    deltas = [data["delta"]["text"] for name, data in events if name == "content_block_delta"]
    assert deltas == ["Hel", "lo"]
    assert events[0][1]["message"]["usage"]["input_tokens"] > 0
    assert events[5][1]["delta"]["stop_reason"] == "end_turn"
    assert provider.requests[0].model == "deepseek-chat"
    assert shim.sessions.get(fingerprint("key", body["messages"])) == "up-1"


@pytest.mark.asyncio
async def test_second_turn_reuses_session_and_sends_last_message(shim_with) -> None:
    shim, provider = shim_with([RawSession("up-1"), RawText("ok")])
    first = {"model": "deepseek-chat", "messages": _user("start")}
    second = {
        "model": "deepseek-chat",
        "messages": [
            {"role": "user", "content": "start"},
            {"role": "assistant", "content": "ok"},
            {"role": "user", "content": "continue"},
        ],
    }

    await shim.handle(first, "key")
    response = await shim.handle(second, "key")

    assert response.status_code == 200
    assert provider.requests[0].conversation_id is None
    assert provider.requests[1].conversation_id == "up-1"
    assert [m.content for m in provider.requests[1].messages] == ["continue"]


@pytest.mark.asyncio
async def test_reset_clears_session_without_adapter_call(shim_with) -> None:
    shim, provider = shim_with([RawSession("up-1"), RawText("ok")])
    await shim.handle({"model": "deepseek-chat", "messages": _user("start")}, "key")
    reset = [
        {"role": "user", "content": "start"},
        {"role": "assistant", "content": "ok"},
        {"role": "user", "content": "/reset"},
    ]

    result = await shim.handle({"model": "deepseek-chat", "stream": True, "messages": reset}, "key")
    events = _events(await _read(result.stream))

    assert len(provider.requests) == 1
    assert len(shim.sessions) == 0
    assert events[2][1]["delta"]["text"] == RESET_STREAM_TEXT


@pytest.mark.asyncio
async def test_session_error_clears_stored_session(shim_with) -> None:
    shim, provider = shim_with([RawSession("up-1"), RawText("ok")])
    body = {"model": "deepseek-chat", "messages": _user("start")}
    await shim.handle(body, "key")
    provider.script = [SessionExpired("chat session not found")]

    result = await shim.handle(body, "key")

    assert result.status_code == 404
    assert result.body["error"]["type"] == "not_found_error"
    assert len(shim.sessions) == 0


@pytest.mark.asyncio
async def test_mapping_from_config_store_overrides_static(shim_with) -> None:
    shim, provider = shim_with(
        [RawText("hi")],
        mapping=ModelMappingConfig(opus="DeepSeek/deepseek-chat"),
        stored={"claudecode_opus_model": "DeepSeek/deepseek-reasoner"},
    )

    await shim.handle({"model": "claude-opus-4", "messages": _user("question")}, "key")

    assert provider.requests[0].model == "deepseek-reasoner"


@pytest.mark.asyncio
async def test_unmatched_claude_model_falls_back_to_any_account(shim_with) -> None:
    shim, provider = shim_with([RawText("hi")])

    response = await shim.handle({"model": "claude-sonnet-4", "messages": _user("question")}, "key")

    assert response.body["content"][0]["text"] == "hi"
    assert response.body["model"] == "claude-sonnet-4"
    assert provider.requests[0].model == "deepseek-chat"


@pytest.mark.asyncio
async def test_empty_messages_is_invalid_request(shim_with) -> None:
    shim, _ = shim_with([RawText("hi")])

    response = await shim.handle({"model": "deepseek-chat", "stream": True, "messages": []}, "key")

    assert response.stream is None
    assert response.status_code == 400
    assert response.body["type"] == "error"
