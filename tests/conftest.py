import os

import pytest

for _name in ("LLM_API_TOKEN", "LLM_ENDPOINT", "LLM_MODEL", "LLM_LANGUAGE", "LLM_ORGANIZATION_ID"):
    os.environ.pop(_name, None)
os.environ.setdefault("LOG_LEVEL", "DEBUG")

from llm_chat.config import AppSettings
from llm_chat.llm.types import RequestConfig

ENDPOINT = "https://llm.test"


@pytest.fixture()
def settings() -> AppSettings:
    return AppSettings(
        endpoint_url=ENDPOINT,
        api_token="sk-test",
        model_name="gpt-3.5-turbo",
        system_prompt="You are a test assistant.",
        watchdog_seconds=2.0,
        request_timeout=5.0,
    )


@pytest.fixture()
def make_config():
    def _make(**overrides) -> RequestConfig:
        values = {
            "endpoint_url": ENDPOINT,
            "model": "gpt-3.5-turbo",
            "message": "Hello",
            "api_token": "sk-test",
            "system_prompt": "You are a test assistant.",
        }
        values.update(overrides)
        return RequestConfig(**values)

    return _make
