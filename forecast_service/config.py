import os
from dataclasses import dataclass
from typing import List

from dotenv import load_dotenv


load_dotenv()


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


_SOFT_TTL = int(os.getenv("SOFT_TTL", str(2 * 60 * 60)))
_CACHE_BUFFER = 20 * 60


@dataclass
class Settings:
    weather_api_key: str = os.getenv("WEATHER_KEY", "")
    weather_timeout: float = float(os.getenv("WEATHER_TIMEOUT", "10"))

    llm_provider: str = os.getenv("LLM_PROVIDER", "openai").strip().lower()
    llm_temperature: float = float(os.getenv("LLM_TEMPERATURE", "0.7"))
    llm_max_tokens: int = int(os.getenv("LLM_MAX_TOKENS", "300"))
    llm_timeout: float = float(os.getenv("LLM_TIMEOUT", "30"))
    llm_max_retries: int = int(os.getenv("LLM_MAX_RETRIES", "1"))

    openai_api_key: str = os.getenv("OPENAI_API_KEY", "")
    openai_model: str = os.getenv("OPENAI_MODEL", "gpt-4o-mini")

    deepseek_api_key: str = os.getenv("DEEPSEEK_API_KEY", "")
    deepseek_model: str = os.getenv("DEEPSEEK_MODEL", "deepseek-chat")

    google_api_key: str = os.getenv("GOOGLE_API_KEY", "")
    google_llm_model: str = os.getenv("GOOGLE_LLM_MODEL", "gemini-1.5-flash")

    huggingface_api_key: str = os.getenv("HF_TOKEN") or os.getenv("HUGGINGFACE_API_KEY", "")
    hf_llm_model: str = os.getenv("HF_LLM_MODEL", "Qwen/Qwen3-4B-Thinking-2507")
    hf_provider: str = os.getenv("HF_PROVIDER", "nscale").strip() or "nscale"

    default_location: str = os.getenv("DEFAULT_LOCATION", "Edinburgh")
    default_lang: str = os.getenv("DEFAULT_LANG", "ru")
    strict_lang: bool = _env_bool("STRICT_LANG")
    max_location_length: int = int(os.getenv("MAX_LOCATION_LENGTH", "100"))

    soft_ttl: float = float(_SOFT_TTL)
    hard_ttl: float = float(os.getenv("HARD_TTL", str(_SOFT_TTL + _CACHE_BUFFER)))

    cache_backend: str = os.getenv("CACHE_BACKEND", "memory").strip().lower()
    memory_cache_size: int = int(os.getenv("MEMORY_CACHE_SIZE", "1024"))
    cache_dir: str = os.getenv("CACHE_DIR", "./.forecast_cache")
    redis_url: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")

    summarize_weather: bool = _env_bool("SUMMARIZE_WEATHER", "true")
    warm_interval: float = float(os.getenv("WARM_INTERVAL", "0"))

    def llm_api_key(self) -> str:
        return {
            "openai": self.openai_api_key,
            "deepseek": self.deepseek_api_key,
            "google": self.google_api_key,
            "huggingface": self.huggingface_api_key,
        }.get(self.llm_provider, "")

    def missing_credentials(self) -> List[str]:
        """Names of required environment variables that are not set."""
        missing: List[str] = []
        if not self.weather_api_key:
            missing.append("WEATHER_KEY")
        key_names = {
            "openai": "OPENAI_API_KEY",
            "deepseek": "DEEPSEEK_API_KEY",
            "google": "GOOGLE_API_KEY",
            "huggingface": "HF_TOKEN",
        }
        if self.llm_provider not in key_names:
            missing.append(f"LLM_PROVIDER (unknown provider '{self.llm_provider}')")
        elif not self.llm_api_key():
            missing.append(key_names[self.llm_provider])
        return missing


_CACHED_SETTINGS: Settings | None = None


def get_settings() -> Settings:
    global _CACHED_SETTINGS
    if _CACHED_SETTINGS is None:
        _CACHED_SETTINGS = Settings()
    return _CACHED_SETTINGS
