import json
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from huggingface_hub import InferenceClient
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import (
    AIMessage,
    BaseMessage,
    HumanMessage,
    SystemMessage,
)
from langchain_core.outputs import ChatGeneration, ChatResult
from langchain_core.prompts import ChatPromptTemplate
from langchain_google_genai import ChatGoogleGenerativeAI
from langchain_openai import ChatOpenAI
from pydantic import PrivateAttr

from .config import Settings, get_settings
from .errors import ConfigurationError

DEEPSEEK_BASE_URL = "https://api.deepseek.com/v1"

FALLBACK_FORECASTS: Dict[str, str] = {
    "eng": "Lovely weather today — enjoy your day!",
    "ru": "Хорошая погода сегодня — улыбайтесь!",
}

_SYSTEM_MESSAGES = {
    "eng": (
        "You are a kind meteorologist. Reply ONLY with the forecast text in natural English. "
        "No JSON, no code, no explanations."
    ),
    "ru": (
        "Ты — добрый метеоролог. Отвечай ТОЛЬКО текстом прогноза на русском языке. "
        "Никакого JSON, кода и пояснений."
    ),
}

_USER_MESSAGES = {
    "eng": (
        "Write a short, warm, friendly weather forecast in clear, natural English "
        "(2-3 paragraphs, 70-100 words total). Today is {today}. Greet according to the time of day, "
        "mention the date and weekday, the current temperature and feels-like, wind and precipitation. "
        "Check the hourly forecast for significant changes and warn about them. Give advice on clothing. "
        "If it is night now, give advice for tomorrow.\n\nData: {weather}"
    ),
    "ru": (
        "Короткий тёплый прогноз погоды на русском (2-3 абзаца, 70-100 слов). Сегодня {today}. "
        "Приветствие по времени суток, день недели и число, температура и «ощущается», ветер, осадки. "
        "Используй °C и км/час. Посмотри почасовой прогноз и предупреди о резких изменениях. "
        "Дай совет по одежде. Если сейчас ночь, дай совет на завтра.\n\nДанные: {weather}"
    ),
}


class HFInferenceChat(BaseChatModel):
    """LangChain chat model over Hugging Face ``InferenceClient`` chat completions.

    The inference provider comes from ``HF_PROVIDER`` (default "nscale") and the
    token from ``HF_TOKEN`` or ``HUGGINGFACE_API_KEY``.
    """

    model: str
    api_key: str
    temperature: float = 0.7
    max_tokens: int = 300
    provider: str = "nscale"
    timeout: float = 30.0

    _client: Optional[InferenceClient] = PrivateAttr(default=None)

    @property
    def _llm_type(self) -> str:
        return "hf_inference"

    @property
    def _identifying_params(self) -> dict:
        return {
            "model": self.model,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "provider": self.provider,
            "timeout": self.timeout,
        }

    @property
    def client(self) -> InferenceClient:
        if self._client is None:
            self._client = InferenceClient(provider=self.provider, api_key=self.api_key, timeout=self.timeout)
        return self._client

    @staticmethod
    def _convert_messages(messages: List[BaseMessage]) -> List[Dict[str, str]]:
        roles = {SystemMessage: "system", HumanMessage: "user", AIMessage: "assistant"}
        return [{"role": roles.get(type(m), "user"), "content": m.content} for m in messages]

    def _generate(
        self, messages: List[BaseMessage], stop: Optional[List[str]] = None, run_manager: Any = None, **kwargs: Any
    ) -> ChatResult:
        completion = self.client.chat.completions.create(
            model=self.model,
            messages=self._convert_messages(messages),
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            stop=stop,
        )
        message = completion.choices[0].message
        content = getattr(message, "content", None) or ""
        return ChatResult(generations=[ChatGeneration(message=AIMessage(content=content))])


def build_llm(settings: Settings | None = None) -> BaseChatModel:
    """Return the chat model for ``LLM_PROVIDER``.

    Raises ConfigurationError when the provider is unknown or its key is unset.
    """
    settings = settings or get_settings()
    provider = settings.llm_provider
    api_key = settings.llm_api_key()

    if provider not in ("openai", "deepseek", "google", "huggingface"):
        raise ConfigurationError(
            f"Unknown LLM_PROVIDER '{provider}'. Use one of: openai, deepseek, google, huggingface"
        )
    if not api_key:
        raise ConfigurationError(f"LLM_PROVIDER={provider} requires an API key in the environment")

    if provider == "openai":
        return ChatOpenAI(
            model=settings.openai_model,
            api_key=api_key,
            temperature=settings.llm_temperature,
            max_tokens=settings.llm_max_tokens,
            timeout=settings.llm_timeout,
            max_retries=settings.llm_max_retries,
        )
    if provider == "deepseek":
        return ChatOpenAI(
            model=settings.deepseek_model,
            api_key=api_key,
            base_url=DEEPSEEK_BASE_URL,
            temperature=settings.llm_temperature,
            max_tokens=settings.llm_max_tokens,
            timeout=settings.llm_timeout,
            max_retries=settings.llm_max_retries,
        )
    if provider == "google":
        return ChatGoogleGenerativeAI(
            model=settings.google_llm_model,
            api_key=api_key,
            temperature=settings.llm_temperature,
            max_output_tokens=settings.llm_max_tokens,
            timeout=settings.llm_timeout,
            max_retries=settings.llm_max_retries,
        )
    return HFInferenceChat(
        model=settings.hf_llm_model,
        api_key=api_key,
        temperature=settings.llm_temperature,
        max_tokens=settings.llm_max_tokens,
        provider=settings.hf_provider,
        timeout=settings.llm_timeout,
    )


def build_forecast_prompt(lang: str) -> ChatPromptTemplate:
    lang = lang if lang in _USER_MESSAGES else "ru"
    return ChatPromptTemplate.from_messages(
        [
            ("system", _SYSTEM_MESSAGES[lang]),
            ("human", _USER_MESSAGES[lang]),
        ]
    )


def format_output(generated: Any) -> str:
    # Chat models return AIMessage; plain LLMs return a string
    content = generated.content if hasattr(generated, "content") else generated
    if isinstance(content, list):
        content = "".join(part.get("text", "") if isinstance(part, dict) else str(part) for part in content)
    return str(content or "").strip()


def generate_forecast(
    llm: BaseChatModel, weather: Dict[str, Any], lang: str, today: Optional[datetime] = None
) -> str:
    today = today or datetime.now()
    chain = build_forecast_prompt(lang) | llm
    result = chain.invoke(
        {
            "today": today.strftime("%A, %d %B %Y, %H:%M"),
            "weather": json.dumps(weather, ensure_ascii=False),
        }
    )
    return format_output(result)


def fallback_forecast(lang: str) -> str:
    return FALLBACK_FORECASTS.get(lang, FALLBACK_FORECASTS["ru"])


def make_generation_source(settings: Settings | None = None) -> Callable[[Dict[str, Any], str], str]:
    llm = build_llm(settings)

    def generate(weather: Dict[str, Any], lang: str) -> str:
        return generate_forecast(llm, weather, lang)

    return generate
