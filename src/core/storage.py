"""
Model Cache Abstraction Layer - The Bridge Pattern

Provides a narrow get/put interface over a persistent key-value byte store
for downloaded model weights, with LocalModelCache (filesystem) and
InMemoryModelCache (tests, ephemeral deployments).
"""

import os
import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional

from src.core.config import settings


def model_cache_key(locator: str) -> str:
    """Derive a storage-safe cache key from a model locator."""
    return "model_" + re.sub(r"[^a-zA-Z0-9]", "_", locator)


class IModelCache(ABC):
    """Interface for model weight caching - The Bridge"""

    @abstractmethod
    async def get(self, key: str) -> Optional[bytes]:
        """
        Look up cached bytes.

        Args:
            key: Cache key (see model_cache_key)

        Returns:
            The stored bytes, or None on a miss
        """
        pass

    @abstractmethod
    async def put(self, key: str, data: bytes) -> None:
        """
        Store bytes under a key, replacing any previous value.

        Args:
            key: Cache key (see model_cache_key)
            data: Raw model bytes
        """
        pass


class LocalModelCache(IModelCache):
    """Filesystem cache: one file per key under the cache root."""

    def __init__(self, base_path: Path = Path("./ml_cache")):
        self.base_path = Path(base_path) / "models"
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _path_for(self, key: str) -> Path:
        return self.base_path / re.sub(r"[^a-zA-Z0-9_]", "_", key)

    async def get(self, key: str) -> Optional[bytes]:
        file_path = self._path_for(key)
        if not file_path.exists():
            return None
        with open(file_path, "rb") as f:
            return f.read()

    async def put(self, key: str, data: bytes) -> None:
        file_path = self._path_for(key)
        tmp_path = file_path.with_suffix(".part")

        with open(tmp_path, "wb") as f:
            f.write(data)
        os.replace(tmp_path, file_path)


class InMemoryModelCache(IModelCache):
    """Process-local cache, used in tests and for throwaway deployments."""

    def __init__(self):
        self._entries: Dict[str, bytes] = {}

    async def get(self, key: str) -> Optional[bytes]:
        return self._entries.get(key)

    async def put(self, key: str, data: bytes) -> None:
        self._entries[key] = bytes(data)

    def __contains__(self, key: str) -> bool:
        return key in self._entries


class ModelCacheFactory:
    """
    Factory for creating model cache instances.

    The engine only sees IModelCache, so switching the storage mechanism
    never touches the upscale code.
    """

    _instance: Optional[IModelCache] = None

    @classmethod
    def get_cache(cls) -> IModelCache:
        """Get the cache implementation for the current environment."""
        if cls._instance is None:
            cls._instance = LocalModelCache(base_path=settings.MODEL_CACHE_DIR)
        return cls._instance

    @classmethod
    def reset(cls):
        """Reset the singleton instance (useful for testing)."""
        cls._instance = None


# Convenience function for dependency injection
def get_model_cache() -> IModelCache:
    """Get the model cache instance - ready for FastAPI Depends()."""
    return ModelCacheFactory.get_cache()
