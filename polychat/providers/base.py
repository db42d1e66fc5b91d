"""Abstract base for streaming chat-completion providers."""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator

from polychat.cancel import CancelSignal


class ProviderError(Exception):
    """Raised when a provider call fails."""

    def __init__(self, provider_name: str, message: str, status_code: int | None = None) -> None:
        self.provider_name = provider_name
        self.status_code = status_code
        super().__init__(f"[{provider_name}] {message}")


class CompletionProvider(ABC):
    """Abstract base for all streaming completion providers."""

    @abstractmethod
    def name(self) -> str:
        """Return the short provider name (e.g. 'openrouter')."""
        ...

    @abstractmethod
    def stream_completion(
        self,
        model: str,
        messages: list[dict[str, str]],
        signal: CancelSignal | None = None,
    ) -> AsyncIterator[str]:
        """Stream text deltas for one chat completion.

        Args:
            model: Provider model identifier, e.g. "openai/gpt-4o".
            messages: Ordered ``{"role", "content"}`` messages.
            signal: Aborts the underlying request when fired.

        Returns:
            Lazy, finite, non-restartable sequence of text deltas.

        Raises:
            ProviderError: On a non-2xx response or a transport failure.
            DiscussionCancelled: If ``signal`` aborts while a read is pending.
        """
        ...
