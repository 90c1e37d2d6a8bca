"""Map "provider/model" ids onto backend model names and environment.

The subprocess backend reads provider credentials from well-known
environment variables, so configured keys are translated into those.
"""
from __future__ import annotations

import logging
import os

from .models import ModelMapping
from .yaml_config import ProviderConfig

logger = logging.getLogger(__name__)

# Environment variable the backend reads for each provider.
BACKEND_KEY_ENV: dict[str, str] = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "deepseek": "DEEPSEEK_API_KEY",
    "groq": "GROQ_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
    "mistral": "MISTRAL_API_KEY",
    "xai": "XAI_API_KEY",
}


def split_model_id(model_id: str) -> tuple[str, str]:
    """Split "provider/model" into its parts. Bare ids have no provider."""
    if "/" not in model_id:
        return "", model_id
    provider, model = model_id.split("/", 1)
    return provider, model


class ModelMapper:
    def __init__(self, providers: dict[str, ProviderConfig] | None = None) -> None:
        self._providers = providers or {}

    def map(self, model_id: str) -> ModelMapping:
        provider_name, model = split_model_id(model_id)
        provider = self._providers.get(provider_name)

        model_name = model_id
        if provider is not None and provider.prefix:
            model_name = f"{provider.prefix}{model}"

        env: dict[str, str] = {}
        target_env = BACKEND_KEY_ENV.get(provider_name)
        if provider is not None and target_env:
            key = provider.api_key
            if not key and provider.api_key_env:
                key = os.getenv(provider.api_key_env)
            if key:
                env[target_env] = key
            else:
                logger.debug("No API key configured for provider %s", provider_name)
        return ModelMapping(model_name=model_name, environment_variables=env)
