"""OpenRouter (OpenAI-compatible) streaming client over raw httpx SSE."""

import logging
import os
from collections.abc import AsyncIterator
from time import perf_counter

import httpx

from config.config_loader import ProviderConfig
from polychat.cancel import CancelSignal
from polychat.providers.base import CompletionProvider, ProviderError
from polychat.sse import parse_sse_stream

logger = logging.getLogger(__name__)

_ERROR_BODY_LIMIT = 2000


class OpenRouterProvider(CompletionProvider):
    """Streams ``/chat/completions`` deltas, parsing the SSE frames itself."""

    def __init__(self, config: ProviderConfig, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._config = config
        api_key = os.environ.get(config.api_key_env, "").strip()
        if not api_key:
            raise ProviderError(config.name, f"Missing API key: {config.api_key_env}")
        self._api_key = api_key
        self._transport = transport

    def name(self) -> str:
        return self._config.name

    def _headers(self) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }
        if self._config.app_url:
            headers["HTTP-Referer"] = self._config.app_url
        if self._config.app_title:
            headers["X-Title"] = self._config.app_title
        return headers

    async def stream_completion(
        self,
        model: str,
        messages: list[dict[str, str]],
        signal: CancelSignal | None = None,
    ) -> AsyncIterator[str]:
        signal = signal or CancelSignal()
        payload = {"model": model, "messages": messages, "stream": True}
        start = perf_counter()
        logger.info(
            "openrouter.request model=%s messages=%d prompt_chars=%d",
            model,
            len(messages),
            sum(len(m.get("content", "")) for m in messages),
        )

        async with httpx.AsyncClient(timeout=self._config.timeout_sec, transport=self._transport) as client:
            request = client.build_request(
                "POST",
                f"{self._config.base_url}/chat/completions",
                headers=self._headers(),
                json=payload,
            )
            try:
                response = await signal.guard(client.send(request, stream=True))
            except httpx.HTTPError as exc:
                raise ProviderError(self._config.name, f"Request failed for {model}: {exc}") from exc

            try:
                if response.is_error:
                    body = await signal.guard(response.aread())
                    text = body.decode("utf-8", errors="replace")[:_ERROR_BODY_LIMIT]
                    logger.warning(
                        "openrouter.response model=%s status=%d elapsed_s=%.2f",
                        model,
                        response.status_code,
                        perf_counter() - start,
                    )
                    raise ProviderError(
                        self._config.name,
                        f"HTTP {response.status_code} from {model}: {text}",
                        status_code=response.status_code,
                    )

                delta_count = 0
                try:
                    async for delta in parse_sse_stream(signal.iterate(response.aiter_bytes())):
                        delta_count += 1
                        yield delta
                except httpx.HTTPError as exc:
                    raise ProviderError(self._config.name, f"Stream failed for {model}: {exc}") from exc

                logger.info(
                    "openrouter.done model=%s deltas=%d elapsed_s=%.2f",
                    model,
                    delta_count,
                    perf_counter() - start,
                )
            finally:
                await response.aclose()
