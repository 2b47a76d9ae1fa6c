"""Archival-memory passages over the Letta REST API."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import aiohttp

from repo_expert.errors import ProviderError
from repo_expert.providers.base import Passage

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_STATUSES = frozenset({429, 500, 502, 503})
PAGE_SIZE = 1000


def is_transient_error(error: BaseException) -> bool:
    """True for failures worth retrying: rate limits, 5xx, dropped connections."""
    if isinstance(error, ProviderError):
        return error.status in TRANSIENT_STATUSES
    return isinstance(error, (aiohttp.ClientConnectionError, asyncio.TimeoutError))


def _retry_after_seconds(error: BaseException) -> float | None:
    raw = getattr(error, "retry_after", None)
    if raw is None:
        return None
    try:
        seconds = float(raw)
    except (TypeError, ValueError):
        return None
    return seconds if 0 < seconds < 300 else None


class _HttpStatusError(ProviderError):
    def __init__(self, message: str, status: int, retry_after: str | None = None) -> None:
        super().__init__(message, status=status)
        self.retry_after = retry_after


class LettaProvider:
    """Store, delete and list archival passages of a Letta agent.

    Transient failures are retried with jittered exponential backoff.
    """

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        *,
        timeout: int = 60,
        max_retries: int = 3,
        retry_base_delay: float = 1.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._token = token
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self._session: aiohttp.ClientSession | None = None

    @property
    def name(self) -> str:
        return "letta"

    # ── HTTP plumbing ────────────────────────────────────────

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            headers = {"Accept": "application/json"}
            if self._token:
                headers["Authorization"] = f"Bearer {self._token}"
            self._session = aiohttp.ClientSession(headers=headers, timeout=self._timeout)
        return self._session

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        session = self._get_session()
        async with session.request(method, f"{self.base_url}{path}", **kwargs) as resp:
            if resp.status >= 400:
                body = await resp.text()
                raise _HttpStatusError(
                    f"{method} {path} failed ({resp.status}): {body[:200]}",
                    status=resp.status,
                    retry_after=resp.headers.get("Retry-After"),
                )
            if resp.content_type == "application/json":
                return await resp.json()
            return None

    async def _with_retry(self, fn: Callable[[], Awaitable[T]]) -> T:
        for attempt in range(self.max_retries + 1):
            try:
                return await fn()
            except (ProviderError, aiohttp.ClientError, asyncio.TimeoutError) as e:
                if not is_transient_error(e) or attempt == self.max_retries:
                    raise
                delay = _retry_after_seconds(e) or self.retry_base_delay * (2**attempt)
                delay *= 0.5 + random.random() * 0.5
                logger.debug("Transient error (%s), retrying in %.2fs", e, delay)
                await asyncio.sleep(delay)
        raise RuntimeError("retry loop exhausted without result")

    # ── PassageProvider ──────────────────────────────────────

    async def store_passage(self, agent_id: str, text: str) -> str:
        result = await self._with_retry(
            lambda: self._request(
                "POST", f"/v1/agents/{agent_id}/archival-memory", json={"text": text}
            )
        )
        items = result if isinstance(result, list) else [result]
        passage_id = items[0].get("id") if items and isinstance(items[0], dict) else None
        if not passage_id:
            raise ProviderError(f"store_passage returned no passage id for agent {agent_id}")
        return passage_id

    async def delete_passage(self, agent_id: str, passage_id: str) -> None:
        try:
            await self._with_retry(
                lambda: self._request(
                    "DELETE", f"/v1/agents/{agent_id}/archival-memory/{passage_id}"
                )
            )
        except ProviderError as e:
            if e.status == 404:
                return  # Already deleted
            raise

    async def list_passages(self, agent_id: str) -> list[Passage]:
        passages: list[Passage] = []
        cursor: str | None = None
        while True:
            params: dict[str, Any] = {"limit": PAGE_SIZE, "ascending": "true"}
            if cursor:
                params["after"] = cursor
            page = await self._with_retry(
                lambda: self._request(
                    "GET", f"/v1/agents/{agent_id}/archival-memory", params=params
                )
            )
            page = page or []
            passages.extend(
                Passage(id=p["id"], text=p.get("text", "")) for p in page if p.get("id")
            )
            if len(page) < PAGE_SIZE:
                break
            cursor = page[-1].get("id")
            if not cursor:
                break
        return passages

    async def health_check(self) -> bool:
        try:
            await self._request("GET", "/v1/health/")
            return True
        except (ProviderError, aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("Letta health check failed: %s", e)
            return False

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
