from functools import partial
from typing import Any, Callable, Dict

import requests

from .config import Settings, get_settings

WEATHER_URL = "https://api.weatherapi.com/v1/forecast.json"

# Neutral reading used when the weather provider cannot be reached.
FALLBACK_WEATHER: Dict[str, Any] = {
    "current": {
        "temp_c": 10,
        "feelslike_c": 8,
        "condition": {"text": "cloudy"},
        "wind_kph": 12,
        "precip_mm": 0,
    },
}

_CURRENT_FIELDS = ("temp_c", "feelslike_c", "wind_kph", "precip_mm", "humidity", "is_day")
_HOURLY_STEP = 3


def fetch_weather(location: str, api_key: str, timeout: float = 10) -> Dict[str, Any]:
    if not api_key:
        raise ValueError("Missing WEATHER_KEY in environment")

    params = {"key": api_key, "q": location, "days": 1, "aqi": "no", "alerts": "no"}
    resp = requests.get(WEATHER_URL, params=params, timeout=timeout)
    resp.raise_for_status()
    data = resp.json()
    return {
        "location": data.get("location"),
        "current": data.get("current"),
        "forecastday": data["forecast"]["forecastday"][0],
    }


def _condition(reading: Dict[str, Any]) -> Any:
    condition = reading.get("condition")
    if isinstance(condition, dict):
        return condition.get("text")
    return condition


def compact_weather(weather: Dict[str, Any]) -> Dict[str, Any]:
    """Reduce a provider reading to what a short forecast needs.

    Keeps the current conditions, the day's extremes and every third hour of
    the hourly forecast. Missing sections are skipped, so the fallback reading
    compacts to just its current conditions.
    """
    compact: Dict[str, Any] = {}

    location = weather.get("location") or {}
    if location:
        compact["location"] = {k: location.get(k) for k in ("name", "country", "localtime")}

    current = weather.get("current") or {}
    if current:
        summary = {k: current[k] for k in _CURRENT_FIELDS if k in current}
        summary["condition"] = _condition(current)
        compact["current"] = summary

    day_block = weather.get("forecastday") or {}
    day = day_block.get("day") or {}
    if day:
        compact["day"] = {
            "maxtemp_c": day.get("maxtemp_c"),
            "mintemp_c": day.get("mintemp_c"),
            "daily_chance_of_rain": day.get("daily_chance_of_rain"),
            "condition": _condition(day),
        }

    hours = day_block.get("hour") or []
    if hours:
        compact["hourly"] = [
            {
                "time": hour.get("time"),
                "temp_c": hour.get("temp_c"),
                "chance_of_rain": hour.get("chance_of_rain"),
                "condition": _condition(hour),
            }
            for hour in hours[::_HOURLY_STEP]
        ]

    return compact


def make_weather_source(settings: Settings | None = None) -> Callable[[str], Dict[str, Any]]:
    settings = settings or get_settings()
    return partial(fetch_weather, api_key=settings.weather_api_key, timeout=settings.weather_timeout)
