import asyncio
import contextlib
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse

from .cache import ForecastCache, build_cache
from .config import Settings, get_settings
from .errors import ConfigurationError, ForecastServiceError, StorageError
from .models import LANGUAGES, CacheEntry, CacheKey, UnsupportedLanguage, normalize_lang, sanitize_location

logger = logging.getLogger(__name__)

NO_CACHE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, max-age=0",
    "Pragma": "no-cache",
    "Expires": "0",
    "Access-Control-Allow-Origin": "*",
}


MONTHS = {
    "eng": ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"),
    "ru": ("янв", "фев", "мар", "апр", "мая", "июн", "июл", "авг", "сен", "окт", "ноя", "дек"),
}


def format_updated(updated: datetime, lang: str) -> str:
    months = MONTHS.get(lang, MONTHS["eng"])
    return f"{updated.day} {months[updated.month - 1]} {updated:%H:%M}"


def format_response(entry: CacheEntry, location: str, lang: str) -> Dict[str, Any]:
    updated = datetime.fromtimestamp(entry.generated_at, tz=timezone.utc)
    return {
        "forecast": entry.text,
        "location": location,
        "lang": lang,
        "updated": format_updated(updated, lang),
        "updatedAt": updated.isoformat(timespec="seconds").replace("+00:00", "Z"),
    }


def _json(status_code: int, body: Dict[str, Any]) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=body, headers=NO_CACHE_HEADERS)


def _get_cache(app: FastAPI) -> ForecastCache:
    if app.state.cache is None:
        app.state.cache = build_cache(app.state.settings)
    return app.state.cache


async def _warm_periodically(app: FastAPI) -> None:
    settings: Settings = app.state.settings
    keys = [CacheKey.build(settings.default_location, lang) for lang in LANGUAGES]
    while True:
        try:
            await _get_cache(app).warm(keys)
        except ForecastServiceError as exc:
            logger.error("Scheduled warm-up failed: %s", exc)
        except Exception:
            logger.exception("Scheduled warm-up failed")
        await asyncio.sleep(settings.warm_interval)


def create_app(settings: Settings | None = None, cache: ForecastCache | None = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        warmer = None
        if settings.warm_interval > 0 and not settings.missing_credentials():
            warmer = asyncio.create_task(_warm_periodically(app), name="forecast warm-up")
        try:
            yield
        finally:
            if warmer is not None:
                warmer.cancel()
                # Whatever ended the warm-up loop, the cache still gets closed.
                with contextlib.suppress(asyncio.CancelledError, Exception):
                    await warmer
            if app.state.cache is not None:
                # Let background refreshes finish before the store goes away.
                await app.state.cache.aclose()

    app = FastAPI(title="Forecast Service", lifespan=lifespan)
    app.state.settings = settings
    app.state.cache = cache

    @app.exception_handler(ConfigurationError)
    async def configuration_error(request: Request, exc: ConfigurationError) -> JSONResponse:
        logger.error("Configuration error: %s", exc)
        return _json(500, {"error": str(exc)})

    @app.exception_handler(StorageError)
    async def storage_error(request: Request, exc: StorageError) -> JSONResponse:
        logger.error("Storage error: %s", exc)
        return _json(500, {"error": "Forecast storage unavailable"})

    @app.exception_handler(UnsupportedLanguage)
    async def unsupported_language(request: Request, exc: UnsupportedLanguage) -> JSONResponse:
        return _json(400, {"error": str(exc)})

    @app.get("/forecast")
    @app.get("/api/weather")
    async def forecast(
        location: Optional[str] = Query(None, description="Location, e.g. 'Edinburgh'"),
        city: Optional[str] = Query(None, description="Alias of location"),
        lang: Optional[str] = Query(None, description="ru or eng"),
    ) -> JSONResponse:
        missing = settings.missing_credentials()
        if missing:
            raise ConfigurationError(f"API keys are not configured: {', '.join(missing)}")

        place = sanitize_location(location or city, settings.default_location, settings.max_location_length)
        language = normalize_lang(lang, settings.default_lang, strict=settings.strict_lang)

        entry = await _get_cache(app).get_or_refresh(CacheKey.build(place, language))
        return _json(200, format_response(entry, place, language))

    @app.get("/healthz")
    async def healthz() -> JSONResponse:
        return _json(200, {"status": "ok"})

    return app


def main() -> None:
    import uvicorn

    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        create_app(),
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
    )


if __name__ == "__main__":
    main()
