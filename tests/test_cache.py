import asyncio
import threading
import time

import pytest
import requests

from forecast_service.cache import ForecastCache
from forecast_service.errors import ConfigurationError, StorageError
from forecast_service.llm import FALLBACK_FORECASTS
from forecast_service.models import CacheEntry, CacheKey
from forecast_service.store import MemoryStore

from conftest import RecordingSources


KEY = CacheKey.build("Edinburgh", "ru")


def test_first_request_refreshes_once(make_cache, sources):
    cache = make_cache(sources)

    entry = asyncio.run(cache.get_or_refresh(KEY))

    assert entry.text == "Cloudy and mild."
    assert sources.weather_calls == ["edinburgh"]
    assert len(sources.generation_calls) == 1


def test_fresh_entry_skips_generation(make_cache, sources, clock):
    cache = make_cache(sources)

    async def scenario():
        await cache.store.put(CacheEntry(KEY, "cached", clock() - 60), ttl=600)
        return await cache.get_or_refresh(KEY)

    entry = asyncio.run(scenario())

    assert entry.text == "cached"
    assert sources.generation_calls == []
    assert sources.weather_calls == []


def test_concurrent_first_requests_share_one_refresh(make_cache, clock):
    gate = threading.Event()
    sources = RecordingSources(gate=gate)
    cache = make_cache(sources)

    async def scenario():
        first = asyncio.create_task(cache.get_or_refresh(KEY))
        second = asyncio.create_task(cache.get_or_refresh(KEY))
        await asyncio.sleep(0.05)
        assert cache.refreshing(KEY)
        gate.set()
        return await asyncio.gather(first, second)

    a, b = asyncio.run(scenario())

    assert a == b
    assert len(sources.generation_calls) == 1


def test_stale_reads_return_immediately_and_coalesce(make_cache, clock):
    gate = threading.Event()
    sources = RecordingSources(text="new text", gate=gate)
    cache = make_cache(sources, soft_ttl=120, hard_ttl=600)

    async def scenario():
        await cache.store.put(CacheEntry(KEY, "old text", clock() - 130), ttl=600)
        started = time.perf_counter()
        results = [await cache.get_or_refresh(KEY) for _ in range(5)]
        elapsed = time.perf_counter() - started
        assert cache.refreshing(KEY)
        gate.set()
        await cache.drain()
        return results, elapsed, await cache.get(KEY)

    results, elapsed, latest = asyncio.run(scenario())

    assert [e.text for e in results] == ["old text"] * 5
    assert elapsed < 1.0
    assert len(sources.generation_calls) == 1
    assert latest.text == "new text"
    assert not cache.refreshing(KEY)


def test_requests_ten_ms_apart_see_stale_text_and_one_refresh(make_cache, clock):
    gate = threading.Event()
    sources = RecordingSources(text="fresh", gate=gate)
    cache = make_cache(sources, soft_ttl=120, hard_ttl=600)

    async def scenario():
        await cache.store.put(CacheEntry(KEY, "stale", clock() - 130), ttl=600)
        request_a = asyncio.create_task(cache.get_or_refresh(KEY))
        await asyncio.sleep(0.01)
        request_b = asyncio.create_task(cache.get_or_refresh(KEY))
        a, b = await asyncio.wait_for(asyncio.gather(request_a, request_b), timeout=1)
        gate.set()
        await cache.drain()
        return a, b

    a, b = asyncio.run(scenario())

    assert a.text == b.text == "stale"
    assert len(sources.weather_calls) == 1
    assert len(sources.generation_calls) == 1


def test_weather_failure_still_produces_text(make_cache, caplog):
    sources = RecordingSources(weather_error=requests.HTTPError("503 Server Error"))
    cache = make_cache(sources)

    entry = asyncio.run(cache.refresh(KEY))

    assert entry.text == "Cloudy and mild."
    weather, lang = sources.generation_calls[0]
    assert weather["current"]["temp_c"] == 10
    assert lang == "ru"
    assert "Weather failed" in caplog.text


@pytest.mark.parametrize("lang", ["ru", "eng"])
def test_generation_failure_uses_fallback_text(make_cache, lang):
    sources = RecordingSources(text_error=RuntimeError("OpenAI 500"))
    cache = make_cache(sources)

    entry = asyncio.run(cache.refresh(CacheKey.build("Edinburgh", lang)))

    assert entry.text == FALLBACK_FORECASTS[lang]


def test_empty_generation_uses_fallback_text(make_cache):
    sources = RecordingSources(text="   ")
    cache = make_cache(sources)

    entry = asyncio.run(cache.refresh(KEY))

    assert entry.text == FALLBACK_FORECASTS["ru"]


def test_refresh_then_get_returns_same_entry(make_cache, sources):
    cache = make_cache(sources)

    async def scenario():
        written = await cache.refresh(KEY)
        return written, await cache.get(KEY)

    written, read = asyncio.run(scenario())

    assert read.text == written.text
    assert read.generated_at == written.generated_at


def test_edinburgh_scenario(make_cache, clock):
    sources = RecordingSources(weather={"current": {"temp_c": 9}}, text="Тепло, 9°C")
    cache = make_cache(sources, soft_ttl=120, hard_ttl=600)
    key = CacheKey.build("Edinburgh", "ru")

    async def scenario():
        first = await cache.get_or_refresh(key)
        clock.advance(60)
        second = await cache.get_or_refresh(key)
        return first, second

    first, second = asyncio.run(scenario())

    assert first.text == second.text == "Тепло, 9°C"
    assert len(sources.weather_calls) == 1
    assert len(sources.generation_calls) == 1
    assert sources.generation_calls[0][0]["current"]["temp_c"] == 9


def test_entry_evicted_after_hard_ttl_is_regenerated(make_cache, sources, clock):
    cache = make_cache(sources, soft_ttl=120, hard_ttl=600)

    async def scenario():
        await cache.get_or_refresh(KEY)
        clock.advance(601)
        assert await cache.get(KEY) is None
        return await cache.get_or_refresh(KEY)

    entry = asyncio.run(scenario())

    assert entry.generated_at == clock()
    assert len(sources.generation_calls) == 2


class FailingWriteStore(MemoryStore):
    def __init__(self, clock):
        super().__init__(clock=clock)
        self.writes = 0

    async def put(self, entry, ttl):
        self.writes += 1
        if self.writes > 1:
            raise StorageError("disk full")
        await super().put(entry, ttl)


def test_failed_background_refresh_releases_marker(make_cache, sources, clock, caplog):
    store = FailingWriteStore(clock)
    cache = make_cache(sources, store=store)

    async def scenario():
        await cache.get_or_refresh(KEY)
        clock.advance(200)
        stale = await cache.get_or_refresh(KEY)
        await cache.drain()
        assert not cache.refreshing(KEY)
        await cache.get_or_refresh(KEY)
        await cache.drain()
        return stale

    stale = asyncio.run(scenario())

    assert stale.text == "Cloudy and mild."
    assert len(sources.generation_calls) == 3
    assert "disk full" in caplog.text


def test_hanging_generation_still_stores_fallback_and_releases_marker(make_cache):
    gate = threading.Event()
    sources = RecordingSources(text="too late", gate=gate)
    cache = make_cache(sources, generation_timeout=0.05)
    release = threading.Timer(0.3, gate.set)
    release.start()

    async def scenario():
        entry = await cache.get_or_refresh(KEY)
        return entry, cache.refreshing(KEY), await cache.get(KEY)

    entry, refreshing, stored = asyncio.run(scenario())
    release.join()

    assert entry.text == FALLBACK_FORECASTS["ru"]
    assert stored == entry
    assert refreshing is False


def test_storage_failure_on_first_request_propagates(make_cache, sources, clock):
    store = FailingWriteStore(clock)
    store.writes = 1
    cache = make_cache(sources, store=store)

    with pytest.raises(StorageError):
        asyncio.run(cache.get_or_refresh(KEY))
    assert not cache.refreshing(KEY)


def test_warm_refreshes_every_key(make_cache, sources):
    cache = make_cache(sources)
    keys = [CacheKey.build("Edinburgh", "ru"), CacheKey.build("Edinburgh", "eng")]

    entries = asyncio.run(cache.warm(keys))

    assert [e.key for e in entries] == keys
    assert sorted(lang for _, lang in sources.generation_calls) == ["eng", "ru"]


def test_hard_ttl_must_exceed_soft_ttl(sources):
    with pytest.raises(ConfigurationError):
        ForecastCache(MemoryStore(), sources.weather, sources.generate, soft_ttl=600, hard_ttl=600)


def test_is_stale_uses_soft_ttl(make_cache, sources, clock):
    cache = make_cache(sources, soft_ttl=120)
    entry = CacheEntry(KEY, "text", clock() - 120)

    assert not cache.is_stale(entry)
    assert cache.is_stale(entry, now=clock() + 1)
    assert cache.is_stale(entry, soft_ttl=60)
