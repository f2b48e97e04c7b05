import asyncio
import logging
from typing import Any, Callable, Dict, Optional, TypedDict

from langgraph.graph import END, START, StateGraph

from .llm import fallback_forecast
from .weather import FALLBACK_WEATHER, compact_weather

logger = logging.getLogger(__name__)

WeatherSource = Callable[[str], Dict[str, Any]]
GenerationSource = Callable[[Dict[str, Any], str], str]


class RefreshState(TypedDict, total=False):
    location: str
    lang: str
    weather: Dict[str, Any]
    weather_ok: bool
    text: str
    text_ok: bool


def build_refresh_graph(
    weather_source: WeatherSource,
    generation_source: GenerationSource,
    summarize: bool = True,
    generation_timeout: Optional[float] = None,
):
    """Compile the ``fetch_weather -> generate_forecast`` pipeline run by every refresh.

    Both nodes absorb upstream failures and substitute the fallback reading or
    the fallback text, so invoking the graph never raises because of a
    provider. The sources are blocking callables and run in worker threads.
    A generation call still running after ``generation_timeout`` seconds is
    abandoned and the fallback text is used.
    """

    async def weather_node(state: RefreshState) -> RefreshState:
        location = state["location"]
        try:
            weather = await asyncio.to_thread(weather_source, location)
            ok = True
        except Exception as exc:
            logger.warning("Weather failed for %r: %s", location, exc)
            weather, ok = FALLBACK_WEATHER, False
        if summarize:
            weather = compact_weather(weather)
        return {"weather": weather, "weather_ok": ok}

    async def forecast_node(state: RefreshState) -> RefreshState:
        lang = state["lang"]
        try:
            text = await asyncio.wait_for(
                asyncio.to_thread(generation_source, state["weather"], lang), timeout=generation_timeout
            )
        except asyncio.TimeoutError:
            logger.warning("Forecast generation timed out after %ss (%s)", generation_timeout, lang)
            text = ""
        except Exception as exc:
            logger.warning("Forecast generation failed (%s): %s", lang, exc)
            text = ""
        text = (text or "").strip()
        if not text:
            return {"text": fallback_forecast(lang), "text_ok": False}
        return {"text": text, "text_ok": True}

    g = StateGraph(RefreshState)
    g.add_node("fetch_weather", weather_node)
    g.add_node("generate_forecast", forecast_node)

    g.add_edge(START, "fetch_weather")
    g.add_edge("fetch_weather", "generate_forecast")
    g.add_edge("generate_forecast", END)
    return g.compile()
