from __future__ import annotations

import json
from urllib.parse import parse_qs

import httpx
import pytest

from elara.errors import UpstreamProtocolError
from elara.providers.claude_web import ClaudeWebProvider
from elara.providers.cohere import KEY_EXCHANGE_URL, CohereProvider
from elara.providers.events import ContentDelta, Done, Error, MetadataUpdate, SessionCreated, ThinkingDelta
from elara.providers.gemini_web import GeminiWebProvider, ReplyDecoder, extract_context, parse_credential
from elara.providers.kimi import KimiProvider
from elara.providers.mistral import MistralProvider
from elara.providers.models import ChatMessage, SendRequest
from elara.providers.qwen import QwenProvider


def _factory(handler):
    return lambda: httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _sse(*payloads: dict) -> str:
    return "".join(f"data: {json.dumps(p)}\n\n" for p in payloads) + "data: [DONE]\n\n"


def _request(provider: str, model: str, credential: str = "cred", **kwargs) -> SendRequest:
    return SendRequest(
        credential=credential,
        provider_id=provider,
        model=model,
        messages=(ChatMessage("user", "hello there"),),
        **kwargs,
    )


async def _events(provider, req: SendRequest) -> list:
    return [e async for e in provider.send_message(req)]


# ── Claude web ──────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_claude_web_creates_conversation_and_stops_at_message_stop() -> None:
    created: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/api/organizations":
            return httpx.Response(200, json=[{"uuid": "org-1"}])
        if path == "/api/organizations/org-1/chat_conversations":
            created.update(json.loads(request.content))
            return httpx.Response(201, json={})
        if path.endswith("/completion"):
            created["completion_path"] = path
            body = _sse(
                {"type": "content_block_delta", "delta": {"text": "Hel"}},
                {"type": "content_block_delta", "delta": {"text": "lo"}},
                {"type": "message_stop"},
                {"type": "content_block_delta", "delta": {"text": "late"}},
            )
            return httpx.Response(200, text=body)
        return httpx.Response(404)

    provider = ClaudeWebProvider(client_factory=_factory(handler))
    events = await _events(provider, _request("Claude", "claude-sonnet-4"))

    conversation_id = created["uuid"]
    assert events == [
        SessionCreated(conversation_id),
        MetadataUpdate({"conversation_id": conversation_id}),
        ContentDelta("Hel"),
        ContentDelta("lo"),
        Done(),
    ]
    assert created["completion_path"] == f"/api/organizations/org-1/chat_conversations/{conversation_id}/completion"


@pytest.mark.asyncio
async def test_claude_web_rejected_cookie_is_single_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(403, text="forbidden")

    events = await _events(ClaudeWebProvider(client_factory=_factory(handler)), _request("Claude", "claude-sonnet-4"))

    assert len(events) == 1
    assert isinstance(events[0], Error)
    assert "403" in events[0].message


# ── Qwen ────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_qwen_new_chat_announces_session_before_content() -> None:
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/v2/chats/new":
            seen["auth"] = request.headers.get("authorization")
            return httpx.Response(200, json={"data": {"id": "q-1"}})
        if request.url.path == "/api/v2/chat/completions":
            seen["chat_id"] = request.url.params.get("chat_id")
            body = _sse(
                {"choices": [{"delta": {"phase": "think", "content": "hmm"}}]},
                {"choices": [{"delta": {"phase": "answer", "content": "Hi"}}]},
            )
            return httpx.Response(200, text=body)
        return httpx.Response(404)

    provider = QwenProvider(client_factory=_factory(handler))
    events = await _events(provider, _request("Qwen", "qwen-max-latest", credential="token=eyJq; other=1"))

    assert events == [
        SessionCreated("q-1"),
        MetadataUpdate({"conversation_id": "q-1", "conversation_title": "New Chat"}),
        ThinkingDelta("hmm"),
        ContentDelta("Hi"),
        Done(),
    ]
    assert seen == {"auth": "Bearer eyJq", "chat_id": "q-1"}


@pytest.mark.asyncio
async def test_qwen_chat_without_id_is_protocol_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"data": {}})

    events = await _events(QwenProvider(client_factory=_factory(handler)), _request("Qwen", "qwen-max-latest"))

    assert len(events) == 1
    assert isinstance(events[0].error, UpstreamProtocolError)


# ── Kimi ────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_kimi_streams_thinking_and_content() -> None:
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["auth"] = request.headers.get("authorization")
        seen["payload"] = json.loads(request.content)
        return httpx.Response(200, text=_sse({"thinking": "t"}, {"content": "Hey"}))

    provider = KimiProvider(client_factory=_factory(handler))
    events = await _events(
        provider,
        _request("Kimi", "K2.5 Thinking", credential="kimi-auth=tok-1; lang=en", conversation_id="k-9"),
    )

    assert events == [ThinkingDelta("t"), ContentDelta("Hey"), Done()]
    assert seen["path"] == "/apiv2/kimi.chat.v1.ChatService/SendMessage"
    assert seen["auth"] == "Bearer tok-1"
    assert seen["payload"]["thinking"] is True
    assert seen["payload"]["conversation_id"] == "k-9"


@pytest.mark.asyncio
async def test_kimi_without_token_fails_before_any_request() -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200)

    events = await _events(KimiProvider(client_factory=_factory(handler)), _request("Kimi", "k2", credential="x=1"))

    assert calls == []
    assert len(events) == 1
    assert isinstance(events[0], Error)


def test_kimi_model_matching() -> None:
    provider = KimiProvider()

    assert provider.is_model_supported("SCENARIO_K2D5")
    assert provider.is_model_supported("kimi-latest")
    assert not provider.is_model_supported("qwen-max")


# ── Mistral ─────────────────────────────────────────────────────────


def _mistral_line(index: int, value: str) -> str:
    patch = {"op": "append", "path": "/messages/1/text", "value": value}
    return f"{index}:{json.dumps({'json': {'patches': [patch]}})}"


@pytest.mark.asyncio
async def test_mistral_start_announces_generated_chat_id() -> None:
    payloads: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        payloads.append(json.loads(request.content))
        return httpx.Response(200, text="\n".join([_mistral_line(0, "Bon"), _mistral_line(1, "jour")]) + "\n")

    provider = MistralProvider(client_factory=_factory(handler))
    events = await _events(provider, _request("Mistral", "mistral-large-latest"))

    chat_id = payloads[0]["chatId"]
    assert payloads[0]["mode"] == "start"
    assert events == [SessionCreated(chat_id), ContentDelta("Bon"), ContentDelta("jour"), Done()]


@pytest.mark.asyncio
async def test_mistral_continuation_appends_without_session() -> None:
    payloads: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        payloads.append(json.loads(request.content))
        return httpx.Response(200, text=_mistral_line(0, "Encore") + "\n")

    provider = MistralProvider(client_factory=_factory(handler))
    events = await _events(provider, _request("Mistral", "mistral-large-latest", conversation_id="chat-7"))

    assert payloads[0]["chatId"] == "chat-7"
    assert payloads[0]["mode"] == "append"
    assert events == [ContentDelta("Encore"), Done()]


# ── Cohere ──────────────────────────────────────────────────────────


def _cohere_delta(kind: str, value: str) -> dict:
    return {"type": "content-delta", "delta": {"message": {"content": {kind: value}}}}


@pytest.mark.asyncio
async def test_cohere_exchanges_dashboard_jwt_once() -> None:
    calls: list[tuple[str, str]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append((str(request.url), request.headers.get("authorization", "")))
        if str(request.url) == KEY_EXCHANGE_URL:
            return httpx.Response(200, json={"rawKey": "raw-key-123456"})
        body = _sse(
            {"type": "message-start"},
            _cohere_delta("thinking", "plan"),
            _cohere_delta("text", "Answer"),
            {"type": "message-end"},
        )
        return httpx.Response(200, text=body)

    provider = CohereProvider(client_factory=_factory(handler))
    first = await _events(provider, _request("Cohere", "command-a", credential="eyJdash"))
    await _events(provider, _request("Cohere", "command-a", credential="eyJdash"))

    assert first == [ThinkingDelta("plan"), ContentDelta("Answer"), Done()]
    assert [url for url, _ in calls].count(KEY_EXCHANGE_URL) == 1
    assert calls[1][1] == "Bearer raw-key-123456"


@pytest.mark.asyncio
async def test_cohere_rate_limit_is_error_event() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, text="slow down")

    events = await _events(CohereProvider(client_factory=_factory(handler)), _request("Cohere", "command-a"))

    assert len(events) == 1
    assert isinstance(events[0], Error)
    assert "429" in events[0].message


# ── Gemini web ──────────────────────────────────────────────────────

APP_PAGE = (
    '<script>window.WIZ_global_data = {"cfb2h":"boq_assistant-bard-web-server_20260201.01_p0",'
    '"SNlM0e":"at-token","FdrFJe":"sid-1","qwAQke":"0123456789abcdef"};</script>'
)


def _frame(inner: list) -> str:
    return json.dumps([["wrb.fr", None, json.dumps(inner)]])


def _gemini_body(*texts: str, state: str | None = "!state-1") -> str:
    lines = [")]}'", ""]
    for text in texts:
        inner = [None, ["c_1", "r_1"], state, None, [["rc_1", [text]]]]
        frame = _frame(inner)
        lines += [str(len(frame)), frame]
    return "\n".join(lines) + "\n"


def _gemini_handler(seen: dict):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/app":
            seen["app_loads"] = seen.get("app_loads", 0) + 1
            return httpx.Response(200, text=APP_PAGE)
        if request.url.path.endswith("/StreamGenerate"):
            form = parse_qs(request.content.decode())
            outer = json.loads(form["f.req"][0])
            seen.setdefault("inner", []).append(json.loads(outer[1]))
            seen["at"] = form["at"][0]
            seen["params"] = dict(request.url.params)
            return httpx.Response(200, text=_gemini_body("Hel", "Hello"))
        return httpx.Response(404)

    return handler


@pytest.mark.asyncio
async def test_gemini_emits_suffix_deltas_and_joined_session_id() -> None:
    seen: dict = {}
    provider = GeminiWebProvider(client_factory=_factory(_gemini_handler(seen)))

    events = await _events(provider, _request("Gemini", "2", credential="SID=abc"))

    assert events == [
        SessionCreated("c_1|r_1|rc_1"),
        MetadataUpdate({"conversation_id": "c_1|r_1|rc_1"}),
        ContentDelta("Hel"),
        ContentDelta("lo"),
        Done(),
    ]
    inner = seen["inner"][0]
    assert inner[0][0] == "hello there"
    assert inner[17] == [[4]]
    assert inner[3] is None
    assert seen["at"] == "at-token"
    assert seen["params"]["bl"] == "boq_assistant-bard-web-server_20260201.01_p0"
    assert seen["params"]["f.sid"] == "sid-1"


@pytest.mark.asyncio
async def test_gemini_continuation_reuses_context_and_state() -> None:
    seen: dict = {}
    provider = GeminiWebProvider(client_factory=_factory(_gemini_handler(seen)))

    await _events(provider, _request("Gemini", "0", credential="SID=abc"))
    events = await _events(provider, _request("Gemini", "0", credential="SID=abc", conversation_id="c_1|r_1|rc_1"))

    assert seen["app_loads"] == 1
    follow_up = seen["inner"][1]
    assert follow_up[2][:3] == ["c_1", "r_1", "rc_1"]
    assert follow_up[3] == "!state-1"
    assert follow_up[17] == [[3]]
    assert not any(isinstance(e, SessionCreated) for e in events)
    assert events[-1] == Done()


def test_gemini_exported_credential_skips_page_scrape() -> None:
    credential = json.dumps(
        json.dumps({"cookies": {"SID": "a", "HSID": "b"}, "metadata": {"bl": "bl-1", "f_sid": "s", "snlm0e": "t"}})
    )

    cookie, context = parse_credential(credential)

    assert cookie == "SID=a; HSID=b"
    assert (context.bl, context.sid, context.at) == ("bl-1", "s", "t")
    assert parse_credential("SID=raw") == ("SID=raw", None)


def test_gemini_page_without_token_is_protocol_error() -> None:
    with pytest.raises(UpstreamProtocolError):
        extract_context('{"FdrFJe":"sid-1"}')


def test_gemini_decoder_ignores_framing_lines() -> None:
    decoder = ReplyDecoder()

    assert decoder.feed(")]}'") == []
    assert decoder.feed("42") == []
    assert decoder.feed('[["di",17]]') == []
