"""LLM provider factory."""

from slop.core.config import ModelPreset, settings
from slop.core.errors import UnsupportedProviderError
from slop.services.llm.base import BaseLLMProvider


def get_llm_provider(preset: ModelPreset | None = None) -> BaseLLMProvider:
    """Factory function that returns the provider for a model preset (the active one by default)."""
    preset = preset or settings.get_model()
    retry = {"max_retries": settings.provider_max_retries, "retry_backoff": settings.provider_retry_backoff}

    if preset.provider in ("gemini", "googleai"):
        from slop.services.llm.gemini import GeminiProvider
        return GeminiProvider(preset.name, **retry)
    elif preset.provider == "openai":
        from slop.services.llm.openai_chat import OpenAIProvider
        return OpenAIProvider(preset.name, **retry)
    elif preset.provider == "anthropic":
        from slop.services.llm.anthropic_messages import AnthropicProvider
        return AnthropicProvider(preset.name, **retry)
    else:
        raise UnsupportedProviderError(f"Unsupported provider: {preset.provider}")
