"""Pick the streaming provider implementation named in settings."""

from config.config_loader import ProviderConfig
from polychat.providers.base import CompletionProvider, ProviderError
from polychat.providers.openai_provider import OpenAICompatibleProvider
from polychat.providers.openrouter import OpenRouterProvider

PROVIDER_CLASSES: dict[str, type[CompletionProvider]] = {
    "http": OpenRouterProvider,
    "openai": OpenAICompatibleProvider,
}


def build_provider(config: ProviderConfig) -> CompletionProvider:
    """Instantiate the provider for ``config.sdk``.

    Raises:
        ProviderError: For an unknown sdk or a missing API key.
    """
    provider_cls = PROVIDER_CLASSES.get(config.sdk)
    if provider_cls is None:
        raise ProviderError(config.name, f"Unknown sdk {config.sdk!r}; expected one of {', '.join(PROVIDER_CLASSES)}")
    return provider_cls(config)
