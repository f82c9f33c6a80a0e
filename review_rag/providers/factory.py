import logging
from typing import List

from review_rag.providers.anthropic import AnthropicBackend
from review_rag.providers.base import ModelBackend
from review_rag.providers.gemini import GeminiBackend
from review_rag.providers.openai import OpenAIBackend

logger = logging.getLogger(__name__)


def get_backend(name: str, settings) -> ModelBackend:
    if name == "gemini":
        return GeminiBackend(api_key=settings.gemini_api_key, model_id=settings.gemini_model)
    if name == "openai":
        return OpenAIBackend(model_id=settings.openai_model, api_key=settings.openai_api_key)
    if name == "anthropic":
        return AnthropicBackend(model_id=settings.anthropic_model, api_key=settings.anthropic_api_key)
    raise ValueError(f"Unknown model backend: {name!r}. Choose 'gemini', 'openai' or 'anthropic'.")


def build_backends(settings) -> List[ModelBackend]:
    """Ordered backends from settings.model_order, skipping those without credentials."""
    keys = {
        "gemini": settings.gemini_api_key,
        "openai": settings.openai_api_key,
        "anthropic": settings.anthropic_api_key,
    }
    backends = []
    for name in settings.model_order:
        if name in keys and not keys[name]:
            logger.warning("Skipping %s backend: no API key configured", name)
            continue
        backends.append(get_backend(name, settings))
    return backends
