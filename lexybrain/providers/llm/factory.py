from __future__ import annotations

from lexybrain.core.config import get_settings
from lexybrain.core.errors import ProviderConfigError
from lexybrain.providers.llm.base import LLMProvider
from lexybrain.providers.llm.fake import FakeLLMProvider
from lexybrain.providers.llm.http_model import HttpModelProvider


def get_llm_provider() -> LLMProvider:
    settings = get_settings()
    provider = (settings.llm_provider or "http").lower()

    if provider == "fake":
        return FakeLLMProvider()
    if provider == "http":
        return HttpModelProvider(
            base_url=settings.model_base_url,
            api_key=settings.model_api_key,
            timeout_s=settings.model_timeout_ms / 1000.0,
        )
    raise ProviderConfigError(f"unknown llm_provider: {provider}")
