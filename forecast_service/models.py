import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

LANGUAGES = ("ru", "eng")
_LANG_ALIASES = {"en": "eng", "rus": "ru"}

# Letters, digits, whitespace, comma and hyphen survive; \w also matches "_".
_UNSAFE_LOCATION_CHARS = re.compile(r"[^\w\s,-]|_")


class UnsupportedLanguage(ValueError):
    def __init__(self, lang: str) -> None:
        super().__init__(f"Unsupported language: {lang}. Available: {', '.join(LANGUAGES)}")
        self.lang = lang


def sanitize_location(raw: Optional[str], default: str, max_length: int = 100) -> str:
    if not raw:
        return default
    cleaned = _UNSAFE_LOCATION_CHARS.sub("", raw)
    cleaned = re.sub(r"\s+", " ", cleaned).strip()[:max_length].strip()
    return cleaned or default


def normalize_lang(raw: Optional[str], default: str = "ru", strict: bool = False) -> str:
    lang = (raw or "").strip().lower()
    lang = _LANG_ALIASES.get(lang, lang)
    if lang in LANGUAGES:
        return lang
    if lang and strict:
        raise UnsupportedLanguage(raw or "")
    return default


@dataclass(frozen=True)
class CacheKey:
    location: str
    lang: str

    @classmethod
    def build(cls, location: str, lang: str) -> "CacheKey":
        return cls(location=location.strip().lower(), lang=lang.strip().lower())

    def __str__(self) -> str:
        return f"forecast:{self.location}:{self.lang}"


@dataclass(frozen=True)
class CacheEntry:
    """A generated forecast and the epoch second it was produced at."""

    key: CacheKey
    text: str
    generated_at: float

    def age(self, now: float) -> float:
        return now - self.generated_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "location": self.key.location,
            "lang": self.key.lang,
            "text": self.text,
            "ts": self.generated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CacheEntry":
        return cls(
            key=CacheKey(location=data["location"], lang=data["lang"]),
            text=data["text"],
            generated_at=float(data["ts"]),
        )


def is_stale(entry: CacheEntry, now: float, soft_ttl: float) -> bool:
    return entry.age(now) > soft_ttl
