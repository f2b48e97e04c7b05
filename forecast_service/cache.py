import asyncio
import logging
import time
from typing import Dict, Iterable, List, Optional

from .config import Settings, get_settings
from .errors import ConfigurationError
from .graph import GenerationSource, WeatherSource, build_refresh_graph
from .llm import make_generation_source
from .models import CacheEntry, CacheKey, is_stale
from .store import Clock, ForecastStore, build_store
from .weather import make_weather_source

logger = logging.getLogger(__name__)


class ForecastCache:
    """Stale-while-revalidate cache of generated forecasts.

    A key with no entry is refreshed while the caller waits. A fresh entry is
    returned as is. A stale entry is returned immediately and a refresh is
    started in the background, so the next caller gets the new text. At most
    one refresh per key is in flight; further triggers join it.

    ``soft_ttl`` marks an entry stale, ``hard_ttl`` is the store-level eviction
    and must be longer so a stale entry is always servable before it goes.
    """

    def __init__(
        self,
        store: ForecastStore,
        weather_source: WeatherSource,
        generation_source: GenerationSource,
        soft_ttl: float = 2 * 60 * 60,
        hard_ttl: float = 2 * 60 * 60 + 20 * 60,
        clock: Clock = time.time,
        summarize: bool = True,
        generation_timeout: Optional[float] = None,
    ) -> None:
        if hard_ttl <= soft_ttl:
            raise ConfigurationError(
                f"HARD_TTL ({hard_ttl}s) must be greater than SOFT_TTL ({soft_ttl}s)"
            )
        self.store = store
        self.soft_ttl = soft_ttl
        self.hard_ttl = hard_ttl
        self._clock = clock
        self._graph = build_refresh_graph(
            weather_source, generation_source, summarize=summarize, generation_timeout=generation_timeout
        )
        self._inflight: Dict[str, asyncio.Task] = {}

    async def get(self, key: CacheKey) -> Optional[CacheEntry]:
        return await self.store.get(key)

    def is_stale(self, entry: CacheEntry, now: Optional[float] = None, soft_ttl: Optional[float] = None) -> bool:
        now = self._clock() if now is None else now
        return is_stale(entry, now, self.soft_ttl if soft_ttl is None else soft_ttl)

    async def refresh(self, key: CacheKey) -> CacheEntry:
        """Regenerate and store the entry for ``key``.

        Provider failures are replaced by fallbacks inside the graph; only a
        StorageError from the write can escape.
        """
        started = self._clock()
        state = await self._graph.ainvoke({"location": key.location, "lang": key.lang})
        entry = CacheEntry(key=key, text=state["text"], generated_at=self._clock())
        await self.store.put(entry, ttl=self.hard_ttl)
        logger.info(
            "Refreshed %s in %.2fs (weather_ok=%s, text_ok=%s)",
            key,
            entry.generated_at - started,
            state.get("weather_ok"),
            state.get("text_ok"),
        )
        return entry

    def refreshing(self, key: CacheKey) -> bool:
        task = self._inflight.get(str(key))
        return task is not None and not task.done()

    def _start_refresh(self, key: CacheKey) -> asyncio.Task:
        name = str(key)
        task = self._inflight.get(name)
        if task is not None and not task.done():
            return task
        task = asyncio.create_task(self._refresh_once(key), name=f"refresh {name}")
        self._inflight[name] = task
        task.add_done_callback(_log_refresh_failure)
        return task

    async def _refresh_once(self, key: CacheKey) -> CacheEntry:
        try:
            return await self.refresh(key)
        finally:
            self._inflight.pop(str(key), None)

    async def get_or_refresh(self, key: CacheKey, soft_ttl: Optional[float] = None) -> CacheEntry:
        entry = await self.get(key)
        if entry is None:
            logger.info("Cache miss for %s", key)
            # Shielded: a disconnecting client must not cancel a refresh others may join.
            return await asyncio.shield(self._start_refresh(key))

        if self.is_stale(entry, soft_ttl=soft_ttl):
            if self.refreshing(key):
                logger.debug("Refresh already running for %s", key)
            else:
                logger.info("Serving stale %s (age %.0fs), refreshing in background", key, entry.age(self._clock()))
                self._start_refresh(key)
        return entry

    async def warm(self, keys: Iterable[CacheKey]) -> List[CacheEntry]:
        tasks = [self._start_refresh(key) for key in keys]
        return list(await asyncio.gather(*tasks))

    async def drain(self) -> None:
        while self._inflight:
            pending = list(self._inflight.items())
            await asyncio.gather(*(task for _, task in pending), return_exceptions=True)
            # A task cancelled before it started never reaches its own cleanup.
            for name, task in pending:
                if self._inflight.get(name) is task:
                    self._inflight.pop(name, None)

    async def aclose(self) -> None:
        await self.drain()
        await self.store.aclose()


def _log_refresh_failure(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("%s failed: %s", task.get_name(), exc, exc_info=exc)


def build_cache(settings: Settings | None = None, clock: Clock = time.time) -> ForecastCache:
    settings = settings or get_settings()
    missing = settings.missing_credentials()
    if missing:
        raise ConfigurationError(f"API keys are not configured: {', '.join(missing)}")
    return ForecastCache(
        store=build_store(settings, clock=clock),
        weather_source=make_weather_source(settings),
        generation_source=make_generation_source(settings),
        soft_ttl=settings.soft_ttl,
        hard_ttl=settings.hard_ttl,
        clock=clock,
        summarize=settings.summarize_weather,
        # Each attempt is bounded by LLM_TIMEOUT; this caps the retries as a whole.
        generation_timeout=settings.llm_timeout * (settings.llm_max_retries + 1),
    )
