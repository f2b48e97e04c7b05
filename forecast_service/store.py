import asyncio
import hashlib
import json
import os
import tempfile
import time
from pathlib import Path
from typing import Any, Callable, Optional, Tuple

import redis.asyncio as aioredis
from cachetools import TLRUCache
from redis.exceptions import RedisError

from .config import Settings, get_settings
from .errors import ConfigurationError, StorageError
from .models import CacheEntry, CacheKey

Clock = Callable[[], float]


class ForecastStore:
    """Key/value storage for cache entries with store-level expiry.

    ``put`` replaces the entry for its key in one step and evicts it after
    ``ttl`` seconds.
    """

    async def get(self, key: CacheKey) -> Optional[CacheEntry]:
        raise NotImplementedError

    async def put(self, entry: CacheEntry, ttl: float) -> None:
        raise NotImplementedError

    async def delete(self, key: CacheKey) -> None:
        raise NotImplementedError

    async def aclose(self) -> None:
        pass


class MemoryStore(ForecastStore):
    """In-process store. Lives as long as the cache that owns it.

    Holds at most ``maxsize`` entries, dropping the least recently used one
    when full, and purges expired entries on every write.
    """

    def __init__(self, clock: Clock = time.time, maxsize: int = 1024) -> None:
        self._entries: TLRUCache = TLRUCache(maxsize=maxsize, ttu=_expires_at, timer=clock)

    async def get(self, key: CacheKey) -> Optional[CacheEntry]:
        item = self._entries.get(str(key))
        return item[0] if item is not None else None

    async def put(self, entry: CacheEntry, ttl: float) -> None:
        self._entries[str(entry.key)] = (entry, ttl)

    async def delete(self, key: CacheKey) -> None:
        self._entries.pop(str(key), None)

    def __len__(self) -> int:
        self._entries.expire()
        return len(self._entries)


def _expires_at(key: str, value: Tuple[CacheEntry, float], now: Any) -> float:
    return now + value[1]


class FileStore(ForecastStore):
    """One JSON document per key under ``directory``."""

    def __init__(self, directory: str | Path, clock: Clock = time.time) -> None:
        self.directory = Path(directory)
        self._clock = clock

    def _path(self, key: CacheKey) -> Path:
        digest = hashlib.sha1(str(key).encode("utf-8")).hexdigest()
        return self.directory / f"{digest}.json"

    def _read(self, key: CacheKey) -> Optional[CacheEntry]:
        path = self._path(key)
        try:
            with open(path, "r", encoding="utf-8") as f:
                doc = json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            raise StorageError(f"Cannot read cache file {path}: {exc}") from exc

        if self._clock() >= float(doc.get("expires_at", 0)):
            try:
                path.unlink()
            except FileNotFoundError:
                pass
            except OSError as exc:
                raise StorageError(f"Cannot evict cache file {path}: {exc}") from exc
            return None
        try:
            return CacheEntry.from_dict(doc["entry"])
        except (KeyError, TypeError, ValueError) as exc:
            raise StorageError(f"Malformed cache file {path}: {exc}") from exc

    def _write(self, entry: CacheEntry, ttl: float) -> None:
        path = self._path(entry.key)
        doc = {"entry": entry.to_dict(), "expires_at": self._clock() + ttl}
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            # Write beside the target, then swap it in so readers never see a partial file.
            fd, tmp_path = tempfile.mkstemp(dir=self.directory, suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(doc, f, ensure_ascii=False)
                os.replace(tmp_path, path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
        except OSError as exc:
            raise StorageError(f"Cannot write cache file {path}: {exc}") from exc

    def _delete(self, key: CacheKey) -> None:
        try:
            self._path(key).unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            raise StorageError(f"Cannot delete cache file: {exc}") from exc

    async def get(self, key: CacheKey) -> Optional[CacheEntry]:
        return await asyncio.to_thread(self._read, key)

    async def put(self, entry: CacheEntry, ttl: float) -> None:
        await asyncio.to_thread(self._write, entry, ttl)

    async def delete(self, key: CacheKey) -> None:
        await asyncio.to_thread(self._delete, key)


class RedisStore(ForecastStore):
    """Entries as JSON strings; Redis enforces the hard TTL via ``EX``."""

    def __init__(self, url: str, client: Optional[aioredis.Redis] = None) -> None:
        self._client = client or aioredis.Redis.from_url(url, decode_responses=True)

    async def get(self, key: CacheKey) -> Optional[CacheEntry]:
        try:
            raw = await self._client.get(str(key))
        except RedisError as exc:
            raise StorageError(f"Redis GET failed for {key}: {exc}") from exc
        if raw is None:
            return None
        try:
            return CacheEntry.from_dict(json.loads(raw))
        except (KeyError, TypeError, ValueError) as exc:
            raise StorageError(f"Malformed cache value for {key}: {exc}") from exc

    async def put(self, entry: CacheEntry, ttl: float) -> None:
        value = json.dumps(entry.to_dict(), ensure_ascii=False)
        try:
            await self._client.set(str(entry.key), value, ex=max(1, int(ttl)))
        except RedisError as exc:
            raise StorageError(f"Redis SET failed for {entry.key}: {exc}") from exc

    async def delete(self, key: CacheKey) -> None:
        try:
            await self._client.delete(str(key))
        except RedisError as exc:
            raise StorageError(f"Redis DEL failed for {key}: {exc}") from exc

    async def aclose(self) -> None:
        await self._client.aclose()


def build_store(settings: Settings | None = None, clock: Clock = time.time) -> ForecastStore:
    settings = settings or get_settings()
    backend = settings.cache_backend
    if backend == "memory":
        return MemoryStore(clock=clock, maxsize=settings.memory_cache_size)
    if backend == "file":
        return FileStore(settings.cache_dir, clock=clock)
    if backend == "redis":
        return RedisStore(settings.redis_url)
    raise ConfigurationError(f"Unknown CACHE_BACKEND '{backend}'. Use one of: memory, file, redis")
