import threading
from typing import Any, Dict, List, Optional, Tuple

import pytest

from forecast_service.cache import ForecastCache
from forecast_service.config import Settings
from forecast_service.store import MemoryStore


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSources:
    """Weather and generation sources that record every call."""

    def __init__(
        self,
        weather: Optional[Dict[str, Any]] = None,
        text: str = "Cloudy and mild.",
        weather_error: Optional[Exception] = None,
        text_error: Optional[Exception] = None,
        gate: Optional[threading.Event] = None,
    ) -> None:
        self.weather_reading = weather if weather is not None else {"current": {"temp_c": 12}}
        self.text = text
        self.weather_error = weather_error
        self.text_error = text_error
        self.gate = gate
        self.weather_calls: List[str] = []
        self.generation_calls: List[Tuple[Dict[str, Any], str]] = []

    def weather(self, location: str) -> Dict[str, Any]:
        self.weather_calls.append(location)
        if self.weather_error is not None:
            raise self.weather_error
        return self.weather_reading

    def generate(self, weather: Dict[str, Any], lang: str) -> str:
        self.generation_calls.append((weather, lang))
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if self.text_error is not None:
            raise self.text_error
        return self.text


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sources():
    return RecordingSources()


@pytest.fixture
def make_cache(clock):
    def _make(sources, store=None, soft_ttl=120, hard_ttl=600, summarize=True, generation_timeout=None):
        return ForecastCache(
            store=store if store is not None else MemoryStore(clock=clock),
            weather_source=sources.weather,
            generation_source=sources.generate,
            soft_ttl=soft_ttl,
            hard_ttl=hard_ttl,
            clock=clock,
            summarize=summarize,
            generation_timeout=generation_timeout,
        )

    return _make


@pytest.fixture
def settings():
    return Settings(
        weather_api_key="weather-key",
        llm_provider="openai",
        openai_api_key="openai-key",
        default_location="Edinburgh",
        default_lang="ru",
        strict_lang=False,
        max_location_length=100,
        soft_ttl=120,
        hard_ttl=600,
        cache_backend="memory",
        warm_interval=0,
    )
