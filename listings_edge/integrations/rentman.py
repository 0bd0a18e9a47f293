"""Rentman listings API integration with ETag-conditional retrieval.

Endpoints:
  - {base}/propertyadvertising.php?token=...   full listings array
  - {base}/propertymedia.php?propref=...       per-listing media list

A stored ETag is sent as If-None-Match; a 304 short-circuits to
NOT_MODIFIED and the caller serves its own cached copy. Timeouts and
unexpected statuses raise UpstreamUnavailable; nothing is retried here.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any

import httpx

from listings_edge.errors import StoreError, UpstreamUnavailable
from listings_edge.services.store import KeyValueStore

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://www.rentman.online"
ETAG_PREFIX = "listings:etag:"
PROPERTIES_RESOURCE = "properties"


class FetchStatus(str, Enum):
    FRESH = "fresh"
    NOT_MODIFIED = "not_modified"


@dataclass
class FetchResult:
    status: FetchStatus
    data: Any = None
    etag: str | None = None

    @property
    def is_fresh(self) -> bool:
        return self.status is FetchStatus.FRESH


class RentmanClient:
    """Async client for the Rentman property advertising API."""

    def __init__(
        self,
        store: KeyValueStore,
        token: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 10.0,
        media_timeout: float = 15.0,
        etag_ttl: int = 3600,
    ):
        self.store = store
        self.token = token
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.media_timeout = media_timeout
        self.etag_ttl = etag_ttl

    async def fetch_properties(self) -> FetchResult:
        """Conditionally fetch the full listings array."""
        result = await self.fetch(
            PROPERTIES_RESOURCE,
            "propertyadvertising.php",
            params={"token": self.token},
        )
        if result.is_fresh:
            result.data = self._ensure_list(result.data, "propertyadvertising")
        return result

    async def fetch_media_list(self, propref: str) -> FetchResult:
        """Conditionally fetch the media list of one listing."""
        result = await self.fetch(
            f"media:{propref}",
            "propertymedia.php",
            params={"propref": propref},
            headers={"token": self.token},
            timeout=self.media_timeout,
        )
        if result.is_fresh:
            result.data = self._ensure_list(result.data, "propertymedia")
        return result

    async def fetch(
        self,
        resource_key: str,
        path: str,
        params: dict[str, str] | None = None,
        headers: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> FetchResult:
        """GET `path` with If-None-Match from the stored ETag of `resource_key`."""
        timeout = timeout or self.timeout
        url = f"{self.base_url}/{path}"
        request_headers = {"Accept": "application/json", **(headers or {})}

        etag = await self._load_etag(resource_key)
        if etag:
            request_headers["If-None-Match"] = etag

        start = time.monotonic()
        try:
            async with httpx.AsyncClient(timeout=httpx.Timeout(timeout)) as client:
                response = await asyncio.wait_for(
                    client.get(url, params=params, headers=request_headers),
                    timeout=timeout,
                )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            elapsed_ms = int((time.monotonic() - start) * 1000)
            logger.warning("Rentman timeout | resource=%s | %dms", resource_key, elapsed_ms)
            raise UpstreamUnavailable(f"Rentman timeout after {elapsed_ms}ms") from e
        except httpx.HTTPError as e:
            elapsed_ms = int((time.monotonic() - start) * 1000)
            logger.error("Rentman error | resource=%s | %dms | %s", resource_key, elapsed_ms, str(e)[:200])
            raise UpstreamUnavailable(f"Rentman request failed: {type(e).__name__}") from e

        elapsed_ms = int((time.monotonic() - start) * 1000)

        if response.status_code == 304:
            logger.info("Rentman 304 | resource=%s | %dms", resource_key, elapsed_ms)
            return FetchResult(FetchStatus.NOT_MODIFIED, etag=etag)

        if not response.is_success:
            logger.warning(
                "Rentman | status=%d | resource=%s | %dms",
                response.status_code, resource_key, elapsed_ms,
            )
            raise UpstreamUnavailable(
                f"Rentman API error: {response.status_code}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise UpstreamUnavailable(f"Rentman returned invalid JSON for {path}") from e

        new_etag = response.headers.get("ETag")
        if new_etag:
            await self._save_etag(resource_key, new_etag)

        logger.info(
            "Rentman OK | resource=%s | etag=%s | %dms",
            resource_key, "yes" if new_etag else "no", elapsed_ms,
        )
        return FetchResult(FetchStatus.FRESH, data=data, etag=new_etag)

    async def forget_etag(self, resource_key: str):
        """Drop the stored ETag so the next fetch is unconditional."""
        try:
            await self.store.delete(ETAG_PREFIX + resource_key)
        except StoreError as e:
            logger.warning("ETag delete failed | resource=%s | %s", resource_key, e)

    async def _load_etag(self, resource_key: str) -> str | None:
        etag = await self.store.get(ETAG_PREFIX + resource_key, "text")
        return etag or None

    async def _save_etag(self, resource_key: str, etag: str):
        try:
            await self.store.put(ETAG_PREFIX + resource_key, etag, ttl=self.etag_ttl)
        except StoreError as e:
            logger.warning("ETag write failed | resource=%s | %s", resource_key, e)

    @staticmethod
    def _ensure_list(data: Any, endpoint: str) -> list[dict[str, Any]]:
        if data is None:
            return []
        if not isinstance(data, list):
            raise UpstreamUnavailable(f"Rentman {endpoint} returned {type(data).__name__}, expected a list")
        return data
