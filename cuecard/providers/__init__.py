"""Provider factory for creating generation backends."""

from typing import Optional

from cuecard.providers.base import GenerationProvider

PROVIDERS = ("groq", "ollama", "gemini")


def create_provider(name: Optional[str] = None, **kwargs) -> GenerationProvider:
    """Factory function to create a provider instance by name.

    Args:
        name: "groq", "ollama" or "gemini". Defaults to SUGGEST_PROVIDER.
        **kwargs: passed to the provider constructor (api_key, model, client, ...)

    Raises:
        ValueError: If the name is not a known provider
    """
    if name is None:
        from cuecard.config import Config
        name = Config.SUGGEST_PROVIDER
    name = name.strip().lower()

    if name == "groq":
        from cuecard.providers.groq import GroqProvider
        return GroqProvider(**kwargs)
    elif name == "ollama":
        from cuecard.providers.ollama import OllamaProvider
        return OllamaProvider(**kwargs)
    elif name == "gemini":
        from cuecard.providers.gemini import GeminiProvider
        return GeminiProvider(**kwargs)
    else:
        raise ValueError(
            f"Unsupported provider: '{name}'. "
            f"Supported providers are: {', '.join(PROVIDERS)}"
        )


__all__ = ["create_provider", "GenerationProvider", "PROVIDERS"]
