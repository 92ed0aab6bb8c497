"""
Model Repository - fetch-through cache for model weights.

Lookup order:
1. IModelCache.get(key)
2. Remote fetch (httpx) for http(s) locators, filesystem read otherwise
3. IModelCache.put(key, data)

Cache failures are never fatal; only a failed fetch or an empty payload
fails the load.
"""

import asyncio
from pathlib import Path
from typing import Optional

import httpx

from src.core.config import settings
from src.core.exceptions import ModelLoadFailedError
from src.core.logging import get_logger
from src.core.metrics import record_model_cache_hit, record_model_cache_miss
from src.core.storage import IModelCache, get_model_cache, model_cache_key

logger = get_logger(__name__)


class ModelRepository:
    """Loads model bytes by locator through the persistent cache."""

    def __init__(
        self,
        cache: Optional[IModelCache] = None,
        fetch_timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.cache = cache or get_model_cache()
        self.fetch_timeout = fetch_timeout or settings.MODEL_FETCH_TIMEOUT_SECONDS
        self._transport = transport

    async def load(self, locator: str) -> bytes:
        if not locator:
            raise ModelLoadFailedError("No model locator configured (set MODEL_URL)")

        key = model_cache_key(locator)

        cached = await self._cache_get(key)
        if cached:
            record_model_cache_hit()
            logger.info("model_cache_hit", key=key, size_bytes=len(cached))
            return cached

        record_model_cache_miss()
        logger.info("model_cache_miss", key=key, locator=locator)

        data = await self.fetch(locator)
        if not data:
            raise ModelLoadFailedError(
                "Model payload is empty",
                details={"locator": locator}
            )

        await self._cache_put(key, data)
        return data

    async def fetch(self, locator: str) -> bytes:
        """Fetch raw bytes from an http(s) URL or a local path."""
        if locator.startswith(("http://", "https://")):
            return await self._fetch_remote(locator)
        return await self._read_local(locator)

    async def _fetch_remote(self, url: str) -> bytes:
        try:
            async with httpx.AsyncClient(
                timeout=self.fetch_timeout,
                follow_redirects=True,
                transport=self._transport
            ) as client:
                response = await client.get(url)
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise ModelLoadFailedError(
                f"Failed to fetch model: HTTP {e.response.status_code}",
                details={"locator": url, "status_code": e.response.status_code}
            ) from e
        except httpx.HTTPError as e:
            raise ModelLoadFailedError(
                f"Failed to fetch model: {e}",
                details={"locator": url}
            ) from e

        logger.info("model_fetched", locator=url, size_bytes=len(response.content))
        return response.content

    async def _read_local(self, locator: str) -> bytes:
        path = Path(locator)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except OSError as e:
            raise ModelLoadFailedError(
                f"Failed to read model file: {e}",
                details={"locator": locator}
            ) from e

    async def _cache_get(self, key: str) -> Optional[bytes]:
        try:
            return await self.cache.get(key)
        except Exception as e:
            logger.warning("model_cache_read_failed", key=key, error=str(e))
            return None

    async def _cache_put(self, key: str, data: bytes) -> None:
        try:
            await self.cache.put(key, data)
            logger.info("model_cached", key=key, size_bytes=len(data))
        except Exception as e:
            logger.warning("model_cache_write_failed", key=key, error=str(e))
