"""Gemini web app (gemini.google.com) provider over the StreamGenerate batch endpoint.

Credentials are either a raw cookie string or a JSON context export of the form
``{"cookies": {...} | "k=v; ...", "metadata": {"bl", "f_sid", "snlm0e"}}``. Without
metadata the page context (build label, session id, XSRF token) is scraped
from ``/app`` once per cookie and cached.
"""

from __future__ import annotations

import json
import random
import re
import secrets
import time
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import httpx
import structlog

from elara.errors import UpstreamProtocolError
from elara.providers.base import Capabilities, ClientFactory, Provider
from elara.providers.events import RawMeta, RawSession, RawText, RawVendorEvent
from elara.providers.http import ensure_ok, iter_lines, loads_or_none
from elara.providers.models import ModelInfo, SendRequest

logger = structlog.get_logger()

BASE_URL = "https://gemini.google.com"
STREAM_PATH = "/_/BardChatUi/data/assistant.lamda.BardFrontendService/StreamGenerate"
USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/142.0.0.0 Safari/537.36"
)
FALLBACK_BUILD_LABEL = "boq_assistant-bard-web-server_20260112.07_p2"
FALLBACK_WIZ_ID = "9d8ca3786ebdfbea"
NEW_SESSION_TOKEN = "AwAAAAAAAAAQANM7mBjXKZRJHvpAvhk"

# Web model ids map to the selector code the app sends.
MODEL_CODES = {"0": 3, "1": 3, "2": 4}
MODELS = (
    ModelInfo(id="0", name="Gemini Fast", description="Quick everyday answers"),
    ModelInfo(id="1", name="Gemini Thinking", description="Reasons before answering"),
    ModelInfo(id="2", name="Gemini Pro", description="Most capable web model"),
)

_BUILD_LABEL = re.compile(r"boq_assistant-bard-web-server_[0-9.]*_p[0-9]")
_WIZ_ID = re.compile(r'\\*"([a-f0-9]{16})\\*"')


@dataclass
class GeminiContext:
    bl: str
    sid: str
    at: str
    wiz_id: str | None = None
    # Opaque conversation state the app echoes back on the next request.
    state: str | None = None


def _page_value(html: str, key: str) -> str | None:
    match = re.search(rf'{key}\\*":\\*"(.*?)\\*"', html)
    return match.group(1).replace('\\"', '"') if match else None


def parse_credential(credential: str) -> tuple[str, GeminiContext | None]:
    """Split a credential into the cookie header and an optional exported context."""
    text = credential.strip()
    if not text.startswith(("{", '"{')):
        return credential, None
    parsed: Any = loads_or_none(text)
    # Some stores double-encode the export.
    if isinstance(parsed, str):
        parsed = loads_or_none(parsed)
    if not isinstance(parsed, dict):
        logger.warning("gemini.credential_not_json")
        return credential, None

    cookie = credential
    cookies = parsed.get("cookies")
    if isinstance(cookies, dict):
        cookie = "; ".join(f"{k}={v}" for k, v in cookies.items())
    elif isinstance(cookies, str):
        cookie = cookies

    context = None
    metadata = parsed.get("metadata")
    if isinstance(metadata, dict):
        context = GeminiContext(
            bl=metadata.get("bl") or "",
            sid=metadata.get("f_sid") or "",
            at=metadata.get("snlm0e") or "",
        )
    return cookie, context


def extract_context(html: str) -> GeminiContext:
    """Pull the build label, session id and XSRF token out of the ``/app`` page."""
    match = _BUILD_LABEL.search(html)
    bl = match.group(0) if match else _page_value(html, "cfb2h")
    # The identity frontend label belongs to the login server, not the chat backend.
    if not bl or bl.startswith("boq_identity"):
        bl = FALLBACK_BUILD_LABEL
    at = _page_value(html, "SNlM0e")
    sid = _page_value(html, "FdrFJe")
    if not at or not sid:
        raise UpstreamProtocolError(
            f"Failed to extract Gemini context (at: {bool(at)}, sid: {bool(sid)})"
        )
    wiz = _WIZ_ID.search(html)
    return GeminiContext(bl=bl, sid=sid, at=at, wiz_id=wiz.group(1) if wiz else None)


def model_code(model: str | None) -> int:
    m = (model or "0").lower()
    if m in MODEL_CODES:
        return MODEL_CODES[m]
    return 4 if "pro" in m else 3


def session_array(conversation_id: str | None) -> list[Any]:
    """``[cid, rid, rcid, ...]``; ids travel joined as ``c_..|r_..|rc_..``."""
    if not conversation_id:
        return ["", "", "", None, None, None, None, None, None, NEW_SESSION_TOKEN]
    parts = (conversation_id.split("|") + ["", ""])[:3]
    return [*parts, None, None, None, None, None, None, None]


def build_inner_request(
    text: str,
    *,
    conversation_id: str | None,
    context: GeminiContext,
    model: str | None,
    client_uuid: str,
    language: str = "en",
    now: float | None = None,
) -> list[Any]:
    now = time.time() if now is None else now
    inner: list[Any] = [None] * 69
    inner[0] = [text, 0, None, None, None, None, 0]
    inner[1] = [language]
    inner[2] = session_array(conversation_id)
    inner[3] = context.state
    inner[4] = secrets.token_hex(16)
    inner[6] = [1]
    inner[7] = 1
    inner[10] = 1
    inner[11] = 0
    inner[17] = [[model_code(model)]]
    inner[18] = 0
    inner[27] = 1
    inner[30] = [4]
    inner[41] = [1]
    inner[49] = 14
    inner[53] = 0
    inner[59] = client_uuid
    inner[61] = []
    offset = datetime.now().astimezone().utcoffset()
    inner[66] = [int(now), int(offset.total_seconds()) if offset else 0]
    inner[68] = 2
    return inner


def _dig(value: Any, *path: int) -> Any:
    for index in path:
        if not isinstance(value, list) or len(value) <= index:
            return None
        value = value[index]
    return value


def frame_payloads(line: str) -> list[list[Any]]:
    """Decoded ``wrb.fr`` payloads from one response line; other lines are framing."""
    if not line.startswith("[["):
        return []
    data = loads_or_none(line)
    if not isinstance(data, list):
        return []
    payloads = []
    for item in data:
        if _dig(item, 0) != "wrb.fr" or not isinstance(_dig(item, 2), str):
            continue
        inner = loads_or_none(item[2])
        if isinstance(inner, list):
            payloads.append(inner)
    return payloads


class ReplyDecoder:
    """Turns StreamGenerate frames into deltas.

    Each frame repeats the full reply so far; only the new suffix is emitted.
    """

    def __init__(self) -> None:
        self.text = ""
        self.conversation_id: str | None = None
        self.state: str | None = None

    def feed(self, line: str) -> list[RawVendorEvent]:
        events: list[RawVendorEvent] = []
        for inner in frame_payloads(line):
            token = _dig(inner, 2)
            if isinstance(token, str) and token.startswith("!"):
                self.state = token

            raw_ids = _dig(inner, 1)
            ids = [i for i in raw_ids if isinstance(i, str)] if isinstance(raw_ids, list) else []
            reply_id = _dig(inner, 4, 0, 0)
            if ids and isinstance(reply_id, str):
                ids.append(reply_id)
            if ids:
                conversation_id = "|".join(ids)
                if self.conversation_id is None:
                    events.append(RawSession(conversation_id))
                if conversation_id != self.conversation_id:
                    events.append(RawMeta({"conversation_id": conversation_id}))
                self.conversation_id = conversation_id

            candidate = _dig(inner, 4, 0, 1, 0)
            if isinstance(candidate, str):
                delta = candidate[len(self.text):] if candidate.startswith(self.text) else candidate
                self.text = candidate
                if delta:
                    events.append(RawText(delta))
        return events


class GeminiWebProvider(Provider):
    capabilities = Capabilities(models=True, model_matching=True)

    def __init__(self, *, client_factory: ClientFactory | None = None, language: str = "en") -> None:
        super().__init__(client_factory=client_factory)
        self.language = language
        self._contexts: dict[str, GeminiContext] = {}

    @property
    def name(self) -> str:
        return "Gemini"

    @property
    def default_model(self) -> str:
        return "0"

    def is_model_supported(self, model_id: str) -> bool:
        # Plain ``gemini-*`` ids belong to Antigravity, registered after this adapter.
        m = model_id.lower()
        return m in MODEL_CODES or m.startswith("gemini-web")

    def _headers(self, cookie: str) -> dict[str, str]:
        return {
            "Cookie": cookie,
            "User-Agent": USER_AGENT,
            "Origin": BASE_URL,
            "Referer": f"{BASE_URL}/app",
            "X-Same-Domain": "1",
        }

    async def _context(self, client: httpx.AsyncClient, cookie: str, exported: GeminiContext | None) -> GeminiContext:
        cached = self._contexts.get(cookie)
        if cached is not None:
            return cached
        if exported is not None:
            context = exported
        else:
            response = await client.get(f"{BASE_URL}/app", headers=self._headers(cookie))
            await ensure_ok(response, self.name)
            context = extract_context(response.text)
            logger.info("gemini.context_loaded", bl=context.bl, wiz_id=context.wiz_id)
        self._contexts[cookie] = context
        return context

    async def _stream(self, req: SendRequest) -> AsyncIterator[RawVendorEvent]:
        cookie, exported = parse_credential(req.credential)
        client_uuid = str(uuid.uuid4()).upper()
        async with self.client() as client:
            context = await self._context(client, cookie, exported)
            inner = build_inner_request(
                req.last_message.content,
                conversation_id=req.conversation_id,
                context=context,
                model=req.model,
                client_uuid=client_uuid,
                language=self.language,
            )
            params = {
                "bl": context.bl,
                "f.sid": context.sid,
                "hl": self.language,
                "_reqid": str(random.randint(100000, 199999)),
                "rt": "c",
            }
            headers = {
                **self._headers(cookie),
                "Content-Type": "application/x-www-form-urlencoded;charset=UTF-8",
                "X-Goog-Ext-73010989-jspb": "[0]",
                "X-Goog-Ext-525001261-jspb": (
                    f'[1,null,null,null,"{context.wiz_id or FALLBACK_WIZ_ID}",null,null,0,[4],null,null,1]'
                ),
                "X-Goog-Ext-525005358-jspb": json.dumps([client_uuid, 1]),
            }
            form = {"f.req": json.dumps([None, json.dumps(inner)]), "at": context.at}
            decoder = ReplyDecoder()
            async with client.stream(
                "POST", f"{BASE_URL}{STREAM_PATH}", params=params, headers=headers, data=form
            ) as response:
                await ensure_ok(response, self.name)
                async for line in iter_lines(response):
                    for event in decoder.feed(line):
                        yield event
            if decoder.state:
                context.state = decoder.state

    async def list_models(self, credential: str, account_id: str | None = None) -> list[ModelInfo]:
        return list(MODELS)
