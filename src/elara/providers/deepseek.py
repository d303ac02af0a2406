"""DeepSeek web provider: proof-of-work gated completions with path/value fragments."""

from __future__ import annotations

import json
import secrets
from collections.abc import AsyncIterator
from datetime import UTC, datetime
from typing import Any

import httpx
import structlog

from elara.errors import ChallengeExpired, UpstreamError, UpstreamProtocolError
from elara.pow.solver import PowChallenge, PowSolver
from elara.providers.base import Capabilities, ClientFactory, Provider
from elara.providers.events import RawMeta, RawSession, RawText, RawThinking, RawVendorEvent
from elara.providers.http import PendingResult, RetryPolicy, ensure_ok, iter_sse_data, loads_or_none
from elara.providers.models import (
    ChatMessage,
    ConversationDetail,
    ConversationSummary,
    ModelInfo,
    SendRequest,
    UploadedFile,
)
from elara.tokenizer import count_messages_tokens, count_tokens

logger = structlog.get_logger()

BASE_URL = "https://chat.deepseek.com"
COMPLETION_PATH = "/api/v0/chat/completion"
UPLOAD_PATH = "/api/v0/file/upload_file"
BROWSER_UA = "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36"

CLIENT_HEADERS = {
    "X-App-Version": "20241129.1",
    "X-Client-Locale": "en_US",
    "X-Client-Platform": "web",
    "X-Client-Version": "1.0.0-always",
}

MODELS = (
    ModelInfo("deepseek-chat", "DeepSeek V3", "General chat", 65536),
    ModelInfo("deepseek-reasoner", "DeepSeek R1", "Reasoning with visible thinking", 65536),
)


def client_stream_id(now: datetime | None = None) -> str:
    now = now or datetime.now(UTC)
    return f"{now.strftime('%Y%m%d')}-{secrets.token_hex(8)}"


def biz_data(payload: Any) -> dict[str, Any]:
    if not isinstance(payload, dict):
        return {}
    return ((payload.get("data") or {}).get("biz_data")) or {}


class FragmentParser:
    """Stateful decoder for DeepSeek's ``{p, v}`` stream.

    A fragment list switches between THINK and RESPONSE mode; bare string
    values continue in the current mode unless their path says otherwise.
    """

    def __init__(self) -> None:
        self.mode = "RESPONSE"

    def _text(self, value: str) -> RawVendorEvent:
        return RawThinking(value) if self.mode == "THINK" else RawText(value)

    def feed(self, chunk: dict[str, Any]) -> list[RawVendorEvent]:
        if "request_message_id" in chunk and "response_message_id" in chunk:
            return []

        choices = chunk.get("choices")
        if choices:
            content = ((choices[0] or {}).get("delta") or {}).get("content")
            return [RawText(content)] if content else []

        path = chunk.get("p")
        value = chunk.get("v")

        if isinstance(value, list):
            fragment = value[0] if value else None
            if not isinstance(fragment, dict):
                return []
            kind = fragment.get("type")
            if kind in ("THINK", "RESPONSE"):
                self.mode = kind
                if fragment.get("content"):
                    return [self._text(fragment["content"])]
            return []

        if isinstance(value, str):
            if path and "thinking_content" in path:
                self.mode = "THINK"
                return [RawThinking(value)]
            if path == "response/content":
                self.mode = "RESPONSE"
                return [RawText(value)]
            if path and path.endswith("/content"):
                return [self._text(value)]
            if not path:
                return [self._text(value)]
            return []

        if path and path.endswith("elapsed_secs"):
            return [RawMeta({"thinking_elapsed": value})]
        return []


class DeepSeekProvider(Provider):
    capabilities = Capabilities(
        conversations=True,
        conversation_detail=True,
        upload=True,
        models=True,
        model_matching=True,
        search=True,
        thinking=True,
    )

    def __init__(
        self,
        *,
        solver: PowSolver,
        client_factory: ClientFactory | None = None,
        upload_poll: RetryPolicy | None = None,
    ) -> None:
        super().__init__(client_factory=client_factory)
        self.solver = solver
        self.upload_poll = upload_poll or RetryPolicy(
            max_attempts=30,
            base_delay_s=1.0,
            multiplier=1.0,
        )

    @property
    def name(self) -> str:
        return "DeepSeek"

    @property
    def default_model(self) -> str:
        return "deepseek-chat"

    def is_model_supported(self, model_id: str) -> bool:
        return model_id.lower() in ("deepseek-chat", "deepseek-reasoner")

    @staticmethod
    def _headers(credential: str, *, referer: str = f"{BASE_URL}/") -> dict[str, str]:
        return {
            "Cookie": f"DS-AUTH-TOKEN={credential}",
            "Authorization": credential,
            "User-Agent": BROWSER_UA,
            "Origin": BASE_URL,
            "Referer": referer,
        }

    async def _create_session(self, client: httpx.AsyncClient, credential: str) -> str:
        response = await client.post(
            f"{BASE_URL}/api/v0/chat_session/create",
            headers=self._headers(credential),
            json={"character_id": None},
        )
        await ensure_ok(response, self.name)
        session_id = biz_data(response.json()).get("id")
        if not session_id:
            raise UpstreamProtocolError("DeepSeek did not return a chat session id")
        return session_id

    async def _last_assistant_id(self, client: httpx.AsyncClient, credential: str, session_id: str) -> Any:
        try:
            response = await client.get(
                f"{BASE_URL}/api/v0/chat/history_messages",
                params={"chat_session_id": session_id, "count": 20},
                headers=self._headers(credential),
            )
        except httpx.TransportError as exc:
            logger.warning("deepseek.history_failed", error=str(exc))
            return None
        if not response.is_success:
            return None
        messages = biz_data(response.json()).get("chat_messages") or []
        for message in reversed(messages):
            if str(message.get("role") or "").upper() == "ASSISTANT":
                return message.get("message_id")
        return None

    async def pow_header(
        self,
        client: httpx.AsyncClient,
        credential: str,
        target_path: str,
        *,
        referer: str = f"{BASE_URL}/",
    ) -> str | None:
        """Fetch and solve a challenge; a stale challenge is re-fetched once."""
        for attempt in range(2):
            response = await client.post(
                f"{BASE_URL}/api/v0/chat/create_pow_challenge",
                headers=self._headers(credential, referer=referer),
                json={"target_path": target_path},
            )
            if not response.is_success:
                logger.warning("deepseek.pow_challenge_unavailable", status=response.status_code)
                return None
            payload = biz_data(response.json()).get("challenge")
            if not payload:
                return None
            try:
                answer = await self.solver.solve_challenge(PowChallenge.from_payload(payload))
            except ChallengeExpired:
                if attempt:
                    raise
                continue
            return answer.to_header()
        return None

    async def _stream(self, req: SendRequest) -> AsyncIterator[RawVendorEvent]:
        async with self.client() as client:
            session_id = req.conversation_id
            parent_id = None
            if session_id:
                parent_id = await self._last_assistant_id(client, req.credential, session_id)
            else:
                session_id = await self._create_session(client, req.credential)
                yield RawSession(session_id)
                yield RawMeta({"conversation_id": session_id, "conversation_title": "New Chat"})

            referer = f"{BASE_URL}/a/chat/s/{session_id}"
            pow_header = await self.pow_header(client, req.credential, COMPLETION_PATH, referer=referer)
            headers = {**self._headers(req.credential, referer=referer), **CLIENT_HEADERS}
            if pow_header:
                headers["X-Ds-Pow-Response"] = pow_header

            payload = {
                "chat_session_id": session_id,
                "parent_message_id": parent_id,
                "prompt": req.last_message.content,
                "ref_file_ids": list(req.ref_file_ids),
                "thinking_enabled": req.thinking if req.thinking is not None else req.model == "deepseek-reasoner",
                "search_enabled": bool(req.search),
                "client_stream_id": client_stream_id(),
            }

            prompt_tokens = count_messages_tokens(req.messages)
            completion_tokens = 0
            parser = FragmentParser()
            async with client.stream(
                "POST", f"{BASE_URL}{COMPLETION_PATH}", headers=headers, content=json.dumps(payload)
            ) as response:
                await ensure_ok(response, self.name)
                async for data in iter_sse_data(response):
                    chunk = loads_or_none(data)
                    if not isinstance(chunk, dict):
                        continue
                    for event in parser.feed(chunk):
                        if isinstance(event, (RawText, RawThinking)):
                            completion_tokens += count_tokens(event.text)
                        yield event
            yield RawMeta({"total_token": prompt_tokens + completion_tokens})

            if not req.conversation_id:
                title = await self._auto_rename(client, req.credential, session_id)
                if title:
                    yield RawMeta({"conversation_title": title})

    async def _auto_rename(self, client: httpx.AsyncClient, credential: str, session_id: str) -> str | None:
        try:
            response = await client.post(
                f"{BASE_URL}/api/v0/chat_session/auto_rename",
                headers=self._headers(credential),
                json={"chat_session_id": session_id},
            )
        except httpx.TransportError as exc:
            logger.warning("deepseek.auto_rename_failed", error=str(exc))
            return None
        if not response.is_success:
            return None
        return biz_data(response.json()).get("title")

    # ── Optional capabilities ───────────────────────────────────────

    async def list_conversations(self, credential: str, limit: int = 30) -> list[ConversationSummary]:
        async with self.client() as client:
            response = await client.get(
                f"{BASE_URL}/api/v0/chat_session/fetch_page",
                params={"lte_cursor.pinned": "false", "count": limit},
                headers=self._headers(credential),
            )
        await ensure_ok(response, self.name)
        return [
            ConversationSummary(
                id=s.get("id", ""),
                title=s.get("title") or "New Chat",
                updated_at=str(s["updated_at"]) if s.get("updated_at") is not None else None,
            )
            for s in biz_data(response.json()).get("chat_sessions") or []
        ]

    async def get_conversation_detail(self, credential: str, conversation_id: str) -> ConversationDetail:
        async with self.client() as client:
            response = await client.get(
                f"{BASE_URL}/api/v0/chat/history_messages",
                params={"chat_session_id": conversation_id},
                headers=self._headers(credential),
            )
        await ensure_ok(response, self.name)
        data = biz_data(response.json())
        meta = data.get("chat_session") or {}
        messages = [
            ChatMessage(role="user" if m.get("role") == "USER" else "assistant", content=m.get("content") or "")
            for m in data.get("chat_messages") or []
        ]
        return ConversationDetail(id=meta.get("id") or conversation_id, title=meta.get("title") or "", messages=messages)

    async def upload_file(
        self,
        credential: str,
        filename: str,
        content: bytes,
        content_type: str = "application/octet-stream",
    ) -> UploadedFile:
        async with self.client() as client:
            headers = {
                **self._headers(credential),
                "x-client-locale": "en_US",
                "x-app-version": "20241129.1",
                "x-client-version": "1.6.1",
                "x-client-platform": "web",
                "x-file-size": str(len(content)),
            }
            pow_header = await self.pow_header(client, credential, UPLOAD_PATH)
            if pow_header:
                headers["X-Ds-Pow-Response"] = pow_header
            response = await client.post(
                f"{BASE_URL}{UPLOAD_PATH}",
                headers=headers,
                files={"file": (filename, content, content_type)},
            )
            await ensure_ok(response, self.name)
            result = response.json()
            file_id = biz_data(result).get("id")
            if result.get("code") != 0 or not file_id:
                raise UpstreamError(f"Upload failed: {result.get('msg') or 'Unknown error'}")

            logger.info("deepseek.upload.polling", file_id=file_id)

            async def check(attempt: int) -> UploadedFile:
                poll = await client.get(
                    f"{BASE_URL}/api/v0/file/fetch_files",
                    params={"file_ids": file_id},
                    headers=self._headers(credential),
                )
                await ensure_ok(poll, self.name)
                files = biz_data(poll.json()).get("files") or []
                target = next((f for f in files if f.get("id") == file_id), None)
                status = (target or {}).get("status")
                if status in ("SUCCESS", "READY"):
                    return UploadedFile(id=file_id, name=filename, status=status, size=len(content))
                if status in ("FAIL", "ERROR"):
                    raise UpstreamError(f"File processing failed: {status}")
                raise PendingResult(f"file {file_id} status {status}")

            try:
                return await self.upload_poll.run(check)
            except PendingResult:
                logger.warning("deepseek.upload.poll_timeout", file_id=file_id)
                return UploadedFile(id=file_id, name=filename, status="PENDING", size=len(content))

    async def list_models(self, credential: str, account_id: str | None = None) -> list[ModelInfo]:
        return list(MODELS)
