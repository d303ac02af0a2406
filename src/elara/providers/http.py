"""Shared upstream HTTP plumbing: line framing, retry policy, endpoint failover."""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, TypeVar

import httpx
import structlog

from elara.errors import (
    UpstreamAuthExpired,
    UpstreamError,
    UpstreamRateLimited,
    UpstreamUnavailable,
    error_for_status,
)

logger = structlog.get_logger()

T = TypeVar("T")

FAILOVER_STATUSES = frozenset({404, 429})


# ── Framing ─────────────────────────────────────────────────────────


async def iter_lines(response: httpx.Response) -> AsyncIterator[str]:
    async for line in response.aiter_lines():
        line = line.strip()
        if line:
            yield line


async def iter_sse_data(response: httpx.Response) -> AsyncIterator[str]:
    """Yield each ``data:`` payload; stops at ``[DONE]``."""
    async for line in iter_lines(response):
        if not line.startswith("data:"):
            continue
        data = line[5:].strip()
        if data == "[DONE]":
            return
        if data:
            yield data


def loads_or_none(text: str | bytes) -> Any:
    try:
        return json.loads(text)
    except ValueError:
        return None


async def ensure_ok(response: httpx.Response, provider: str) -> None:
    """Raise the matching taxonomy error for a non-2xx response."""
    if response.is_success:
        return
    body = (await response.aread()).decode("utf-8", errors="replace")[:1000]
    raise error_for_status(
        response.status_code,
        f"{provider} upstream returned {response.status_code}: {body[:300]}",
        body,
    )


# ── Retry policy ────────────────────────────────────────────────────


class PendingResult(Exception):
    """Raised by a polled operation that has not finished yet."""


@dataclass
class RetryPolicy:
    """Bounded retries with exponential (or fixed, ``multiplier=1``) backoff."""

    max_attempts: int = 3
    base_delay_s: float = 1.0
    multiplier: float = 2.0
    max_delay_s: float = 30.0
    retry_on: tuple[type[BaseException], ...] = (
        UpstreamRateLimited,
        UpstreamUnavailable,
        httpx.TransportError,
        PendingResult,
    )

    def backoff(self, attempt: int) -> float:
        return min(self.max_delay_s, self.base_delay_s * self.multiplier ** max(0, attempt - 1))

    def retryable(self, exc: BaseException) -> bool:
        return isinstance(exc, self.retry_on)

    async def run(
        self,
        fn: Callable[[int], Awaitable[T]],
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> T:
        """Call ``fn(attempt)`` until it returns or the policy gives up."""
        attempt = 0
        while True:
            attempt += 1
            try:
                return await fn(attempt)
            except Exception as exc:
                if attempt >= self.max_attempts or not self.retryable(exc):
                    raise
                delay = self.backoff(attempt)
                logger.debug("retry.backoff", attempt=attempt, delay_s=delay, error=str(exc))
                await sleep(delay)


# ── Endpoint failover ───────────────────────────────────────────────


class EndpointFailover:
    """Tries a prioritized list of equivalent base URLs.

    401 raises ``UpstreamAuthExpired`` at once; 404, 429, 5xx and transport
    errors move on to the next URL; any other non-2xx is terminal. When every
    URL fails the last error is raised.
    """

    def __init__(self, base_urls: Sequence[str], *, name: str = "upstream") -> None:
        if not base_urls:
            raise ValueError("EndpointFailover needs at least one base URL")
        self.base_urls = [u.rstrip("/") for u in base_urls]
        self.name = name

    async def _send(
        self,
        client: httpx.AsyncClient,
        method: str,
        path: str,
        *,
        stream: bool,
        **kwargs: Any,
    ) -> httpx.Response:
        last_error: UpstreamError | None = None
        for index, base in enumerate(self.base_urls):
            url = f"{base}{path}"
            try:
                request = client.build_request(method, url, **kwargs)
                response = await client.send(request, stream=stream)
            except httpx.TransportError as exc:
                last_error = UpstreamUnavailable(f"{self.name} {url}: {exc}")
                logger.warning("failover.next", upstream=self.name, index=index, reason="transport", error=str(exc))
                continue

            status = response.status_code
            if response.is_success:
                if index:
                    logger.info("failover.recovered", upstream=self.name, index=index, url=base)
                return response

            body = (await response.aread()).decode("utf-8", errors="replace")[:1000]
            await response.aclose()
            message = f"{self.name} upstream returned {status}: {body[:300]}"
            if status == 401:
                raise UpstreamAuthExpired(message, status=status, body=body)
            if status in FAILOVER_STATUSES or status >= 500:
                last_error = error_for_status(status, message, body)
                logger.warning("failover.next", upstream=self.name, index=index, status=status)
                continue
            raise UpstreamError(message, status=status, body=body)

        assert last_error is not None
        logger.error("failover.exhausted", upstream=self.name, error=str(last_error))
        raise last_error

    async def request(self, client: httpx.AsyncClient, method: str, path: str, **kwargs: Any) -> httpx.Response:
        return await self._send(client, method, path, stream=False, **kwargs)

    @asynccontextmanager
    async def stream(
        self,
        client: httpx.AsyncClient,
        method: str,
        path: str,
        **kwargs: Any,
    ) -> AsyncIterator[httpx.Response]:
        response = await self._send(client, method, path, stream=True, **kwargs)
        try:
            yield response
        finally:
            await response.aclose()


# ── Pacing ──────────────────────────────────────────────────────────


class RateLimiter:
    """Enforces a minimum interval between calls across concurrent tasks."""

    def __init__(
        self,
        min_interval_s: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.min_interval_s = max(0.0, float(min_interval_s))
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._last: float | None = None

    async def wait(self) -> None:
        async with self._lock:
            if self._last is not None:
                delay = self._last + self.min_interval_s - self._clock()
                if delay > 0:
                    await self._sleep(delay)
            self._last = self._clock()
