"""OAuth access-token cache and refresh-token exchange."""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import httpx
import structlog

from elara.errors import UpstreamAuthExpired
from elara.stores import CredentialStore

logger = structlog.get_logger()

T = TypeVar("T")

DEFAULT_ACCESS_TOKEN_TTL_S = 3600


@dataclass(frozen=True)
class CachedToken:
    token: str
    expires_at: float


class AccessTokenCache:
    """Per-account access tokens, replaced wholesale on refresh."""

    def __init__(self, *, safety_margin_s: int = 60, clock: Callable[[], float] = time.time) -> None:
        self.safety_margin_s = safety_margin_s
        self._clock = clock
        self._tokens: dict[str, CachedToken] = {}

    def get(self, account_id: str) -> str | None:
        cached = self._tokens.get(account_id)
        if cached and cached.expires_at > self._clock():
            return cached.token
        return None

    def put(self, account_id: str, token: str, expires_in: float) -> None:
        expires_at = self._clock() + max(0.0, float(expires_in) - self.safety_margin_s)
        self._tokens[account_id] = CachedToken(token=token, expires_at=expires_at)

    def invalidate(self, account_id: str) -> None:
        self._tokens.pop(account_id, None)

    def __len__(self) -> int:
        return len(self._tokens)


def parse_credential(credential: str) -> dict[str, Any]:
    """Credential blobs are either JSON token bundles or a bare refresh token."""
    text = (credential or "").strip()
    if text.startswith("{"):
        try:
            data = json.loads(text)
        except ValueError:
            data = None
        if isinstance(data, dict):
            return data
    return {"refresh_token": text}


class OAuthRefresher:
    """Resolves a usable access token per account, refreshing when needed."""

    def __init__(
        self,
        *,
        token_url: str,
        client_id: str,
        client_secret: str,
        credentials: CredentialStore | None,
        cache: AccessTokenCache,
        client_factory: Callable[[], httpx.AsyncClient],
        provider: str = "oauth",
    ) -> None:
        self.token_url = token_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.credentials = credentials
        self.cache = cache
        self._client_factory = client_factory
        self.provider = provider
        self._inflight: dict[str, asyncio.Task[str]] = {}

    async def access_token(self, account_id: str, credential: str) -> str:
        cached = self.cache.get(account_id)
        if cached:
            return cached

        creds = parse_credential(credential)
        if creds.get("access_token"):
            self.cache.put(
                account_id,
                creds["access_token"],
                float(creds.get("expires_in") or DEFAULT_ACCESS_TOKEN_TTL_S),
            )
            return creds["access_token"]

        logger.info("oauth.no_cached_token", provider=self.provider, account_id=account_id)
        return await self.refresh(account_id, credential)

    async def refresh(self, account_id: str, credential: str) -> str:
        """Exchange the refresh token; concurrent callers share one exchange."""
        task = self._inflight.get(account_id)
        if task is None:
            task = asyncio.create_task(self._refresh(account_id, credential))
            self._inflight[account_id] = task
            task.add_done_callback(lambda _t: self._inflight.pop(account_id, None))
        return await asyncio.shield(task)

    async def _refresh(self, account_id: str, credential: str) -> str:
        creds = parse_credential(credential)
        refresh_token = creds.get("refresh_token") or credential
        form = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }
        async with self._client_factory() as client:
            response = await client.post(self.token_url, data=form)
        if not response.is_success:
            logger.error("oauth.refresh_failed", provider=self.provider, account_id=account_id, status=response.status_code)
            raise UpstreamAuthExpired(
                f"Token refresh failed: {response.text[:300]}",
                status=response.status_code,
                body=response.text,
            )

        tokens = response.json()
        access_token = tokens["access_token"]
        self.cache.put(account_id, access_token, float(tokens.get("expires_in") or DEFAULT_ACCESS_TOKEN_TTL_S))
        await self._persist(account_id, tokens.get("refresh_token") or refresh_token)
        logger.info("oauth.refreshed", provider=self.provider, account_id=account_id)
        return access_token

    async def _persist(self, account_id: str, refresh_token: str) -> None:
        if self.credentials is None:
            return
        account = await self.credentials.get_by_id(account_id)
        if account is None:
            logger.warning("oauth.persist_missing_account", provider=self.provider, account_id=account_id)
            return
        await self.credentials.upsert(account.with_credential(refresh_token))

    async def with_auth_retry(
        self,
        account_id: str,
        credential: str,
        fn: Callable[[str], Awaitable[T]],
    ) -> T:
        """Run ``fn(access_token)``; on auth expiry refresh and retry exactly once."""
        token = await self.access_token(account_id, credential)
        try:
            return await fn(token)
        except UpstreamAuthExpired:
            logger.info("oauth.retry_after_401", provider=self.provider, account_id=account_id)
            self.cache.invalidate(account_id)
            token = await self.refresh(account_id, credential)
            return await fn(token)
