"""Application configuration."""

import os
from dataclasses import dataclass
from typing import Optional

import dotenv

from .llm.types import ChatMessage, Language, RequestConfig

dotenv.load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class AppSettings:
    """Main application settings with environment variable overrides."""

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"

    # Endpoint
    endpoint_url: str = "https://api.openai.com"
    api_token: Optional[str] = None
    organization_id: Optional[str] = None
    model_name: str = "gpt-3.5-turbo"
    use_chat_endpoint: bool = True

    # Generation
    temperature: float = 1.0
    system_prompt: str = "You are a helpful AI assistant."
    user_prompt: str = ""
    language: str = Language.ENGLISH.value

    # Timeouts (seconds)
    watchdog_seconds: float = 30.0
    request_timeout: float = 60.0

    @classmethod
    def from_env(cls) -> "AppSettings":
        return cls(
            host=os.getenv("APP_HOST", cls.host),
            port=int(os.getenv("APP_PORT", cls.port)),
            log_level=os.getenv("LOG_LEVEL", cls.log_level).upper(),
            endpoint_url=os.getenv("LLM_ENDPOINT", cls.endpoint_url),
            api_token=os.getenv("LLM_API_TOKEN") or None,
            organization_id=os.getenv("LLM_ORGANIZATION_ID") or None,
            model_name=os.getenv("LLM_MODEL", cls.model_name),
            use_chat_endpoint=_env_bool("LLM_USE_CHAT_ENDPOINT", cls.use_chat_endpoint),
            temperature=float(os.getenv("LLM_TEMPERATURE", cls.temperature)),
            system_prompt=os.getenv("LLM_SYSTEM_PROMPT", cls.system_prompt),
            user_prompt=os.getenv("LLM_USER_PROMPT", cls.user_prompt),
            language=os.getenv("LLM_LANGUAGE", cls.language),
            watchdog_seconds=float(os.getenv("LLM_WATCHDOG_SECONDS", cls.watchdog_seconds)),
            request_timeout=float(os.getenv("LLM_REQUEST_TIMEOUT", cls.request_timeout)),
        )

    def request_config(
        self,
        message: str,
        history: Optional[list[ChatMessage]] = None,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        language: Optional[str] = None,
    ) -> RequestConfig:
        """Build the explicit per-call configuration handed to the controller."""
        return RequestConfig(
            endpoint_url=self.endpoint_url,
            model=model or self.model_name,
            message=message,
            api_token=self.api_token,
            use_chat_endpoint=self.use_chat_endpoint,
            temperature=self.temperature if temperature is None else temperature,
            system_prompt=self.system_prompt,
            user_prompt_template=self.user_prompt,
            history=list(history or []),
            preferred_language=Language.parse(language or self.language),
            organization_id=self.organization_id,
        )


settings = AppSettings.from_env()
