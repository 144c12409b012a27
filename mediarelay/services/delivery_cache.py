"""Delivery cache: cache key -> opaque delivery handle.

The cache is only a key/handle table. Handles are written after a successful
upload and removed when the distribution layer reports them stale, so a key is
either absent or maps to a handle that was valid when it was written.
"""

import asyncio
import json
import os
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Dict, Optional, Union

import aiofiles

from mediarelay.models.media import CacheEntry, CacheKey
from mediarelay.services import logger


class KeyValueStore(ABC):
    """Persistent storage behind the delivery cache."""

    @abstractmethod
    async def get(self, key: str) -> Optional[CacheEntry]:
        ...

    @abstractmethod
    async def set(self, entry: CacheEntry) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...


class JsonFileStore(KeyValueStore):
    """
    JSON object file, loaded once and rewritten on every mutation.

    Writes go to a temp file that replaces the original, so a crash mid-write
    leaves the previous version intact.
    """

    def __init__(self, path: str):
        self.path = Path(path)
        self._data: Optional[Dict[str, CacheEntry]] = None
        self._lock = asyncio.Lock()

    async def _load(self) -> Dict[str, CacheEntry]:
        if self._data is not None:
            return self._data

        data: Dict[str, CacheEntry] = {}
        if self.path.exists():
            try:
                async with aiofiles.open(self.path, "r", encoding="utf-8") as f:
                    raw = json.loads(await f.read() or "{}")
                for key, value in raw.items():
                    try:
                        data[key] = CacheEntry.from_dict(key, value)
                    except (KeyError, TypeError, ValueError):
                        logger.warn(f"Dropping malformed cache entry: {key}", "cache")
            except (OSError, ValueError, AttributeError) as e:
                logger.error(f"Failed to load cache file, starting empty: {e}", "cache", {"path": str(self.path)})
                data = {}
        logger.info(f"Loaded {len(data)} cache entries", "cache", {"path": str(self.path)})
        self._data = data
        return data

    async def _save(self) -> None:
        payload = json.dumps({key: entry.to_dict() for key, entry in self._data.items()}, indent=2)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
            await f.write(payload)
        os.replace(tmp_path, self.path)

    async def get(self, key: str) -> Optional[CacheEntry]:
        async with self._lock:
            data = await self._load()
            return data.get(key)

    async def set(self, entry: CacheEntry) -> None:
        async with self._lock:
            data = await self._load()
            data[entry.key] = entry
            await self._save()

    async def delete(self, key: str) -> None:
        async with self._lock:
            data = await self._load()
            if data.pop(key, None) is not None:
                await self._save()


class SupabaseTableStore(KeyValueStore):
    """Cache rows in a Supabase table with columns key, handle, inserted_at."""

    def __init__(self, client, table: str, executor: ThreadPoolExecutor, timeout_seconds: float = 15.0):
        self._client = client
        self.table = table
        self._executor = executor
        self.timeout_seconds = timeout_seconds

    async def _run(self, fn):
        loop = asyncio.get_running_loop()
        return await asyncio.wait_for(loop.run_in_executor(self._executor, fn), timeout=self.timeout_seconds)

    async def get(self, key: str) -> Optional[CacheEntry]:
        def _blocking_get():
            return self._client.table(self.table).select("*").eq("key", key).limit(1).execute()

        result = await self._run(_blocking_get)
        rows = result.data or []
        if not rows:
            return None
        return CacheEntry.from_dict(key, rows[0])

    async def set(self, entry: CacheEntry) -> None:
        row = {"key": entry.key, **entry.to_dict()}

        def _blocking_upsert():
            return self._client.table(self.table).upsert(row, on_conflict="key").execute()

        await self._run(_blocking_upsert)

    async def delete(self, key: str) -> None:
        def _blocking_delete():
            return self._client.table(self.table).delete().eq("key", key).execute()

        await self._run(_blocking_delete)


class DeliveryCache:
    """Key -> handle lookups with hit/miss logging."""

    def __init__(self, store: KeyValueStore):
        self.store = store

    async def get(self, key: Union[CacheKey, str]) -> Optional[str]:
        key = str(key)
        entry = await self.store.get(key)
        if entry is None:
            logger.debug(f"Cache miss: {key}", "cache")
            return None
        logger.info(f"Cache hit: {key}", "cache", {"handle": entry.handle})
        return entry.handle

    async def put(self, key: Union[CacheKey, str], handle: str) -> None:
        key = str(key)
        await self.store.set(CacheEntry(key=key, handle=handle))
        logger.info(f"Cached handle for {key}", "cache", {"handle": handle})

    async def invalidate(self, key: Union[CacheKey, str]) -> None:
        key = str(key)
        await self.store.delete(key)
        logger.info(f"Invalidated cache entry: {key}", "cache")
