"""OpenAI-compatible streaming provider using the openai SDK with native async."""

import logging
import os
from collections.abc import AsyncIterator
from time import perf_counter

import openai
from openai import AsyncOpenAI

from config.config_loader import ProviderConfig
from polychat.cancel import CancelSignal
from polychat.providers.base import CompletionProvider, ProviderError

logger = logging.getLogger(__name__)


class OpenAICompatibleProvider(CompletionProvider):
    """Any OpenAI-compatible endpoint (OpenRouter included) via the openai SDK."""

    def __init__(self, config: ProviderConfig, client: AsyncOpenAI | None = None) -> None:
        self._config = config
        if client is None:
            api_key = os.environ.get(config.api_key_env, "").strip()
            if not api_key:
                raise ProviderError(config.name, f"Missing API key: {config.api_key_env}")
            headers = {}
            if config.app_url:
                headers["HTTP-Referer"] = config.app_url
            if config.app_title:
                headers["X-Title"] = config.app_title
            client = AsyncOpenAI(
                api_key=api_key,
                base_url=config.base_url,
                timeout=config.timeout_sec,
                max_retries=0,
                default_headers=headers or None,
            )
        self._client = client

    def name(self) -> str:
        return self._config.name

    async def stream_completion(
        self,
        model: str,
        messages: list[dict[str, str]],
        signal: CancelSignal | None = None,
    ) -> AsyncIterator[str]:
        signal = signal or CancelSignal()
        start = perf_counter()
        try:
            stream = await signal.guard(
                self._client.chat.completions.create(model=model, messages=messages, stream=True)
            )
        except openai.APIStatusError as exc:
            raise ProviderError(
                self._config.name,
                f"HTTP {exc.status_code} from {model}: {exc.message}",
                status_code=exc.status_code,
            ) from exc
        except openai.APIError as exc:
            raise ProviderError(self._config.name, f"Request failed for {model}: {exc}") from exc

        delta_count = 0
        try:
            async for chunk in signal.iterate(stream):
                choice = chunk.choices[0] if chunk.choices else None
                content = choice.delta.content if choice and choice.delta else None
                if content:
                    delta_count += 1
                    yield content
        except openai.APIError as exc:
            raise ProviderError(self._config.name, f"Stream failed for {model}: {exc}") from exc
        finally:
            close = getattr(stream, "close", None)
            if close is not None:
                await close()

        logger.info(
            "OpenAI-compatible %s: %d deltas, %.2fs",
            model,
            delta_count,
            perf_counter() - start,
        )
