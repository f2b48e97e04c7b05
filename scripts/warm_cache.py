import argparse
import asyncio

from forecast_service.cache import build_cache
from forecast_service.config import get_settings
from forecast_service.models import LANGUAGES, CacheKey, normalize_lang, sanitize_location


async def warm(locations, langs):
    cache = build_cache()
    try:
        keys = [CacheKey.build(loc, lang) for loc in locations for lang in langs]
        return await cache.warm(keys)
    finally:
        await cache.aclose()


def main():
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Regenerate cached forecasts, e.g. from cron.")
    parser.add_argument("--location", action="append", help="Location to refresh (repeatable)")
    parser.add_argument("--lang", action="append", choices=LANGUAGES, help="Language to refresh (repeatable)")
    args = parser.parse_args()

    locations = [
        sanitize_location(loc, settings.default_location, settings.max_location_length)
        for loc in (args.location or [settings.default_location])
    ]
    langs = [normalize_lang(lang, settings.default_lang) for lang in (args.lang or LANGUAGES)]

    for entry in asyncio.run(warm(locations, langs)):
        print(f"Refreshed {entry.key} ({len(entry.text)} chars).")


if __name__ == "__main__":
    main()
