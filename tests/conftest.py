"""Shared pytest fixtures."""

from collections.abc import AsyncIterator, Callable
from pathlib import Path

import pytest

from config.config_loader import AppConfig, DefaultsConfig, ProviderConfig, ServerConfig
from polychat.cancel import CancelSignal
from polychat.models import DiscussionEvent, Participant
from polychat.providers.base import CompletionProvider, ProviderError
from polychat.storage import InMemoryMessageStore


@pytest.fixture
def sample_provider_config() -> ProviderConfig:
    return ProviderConfig(
        name="openrouter",
        sdk="http",
        base_url="https://openrouter.test/api/v1",
        api_key_env="TEST_OPENROUTER_KEY",
        timeout_sec=30,
        app_url="http://localhost:3000",
        app_title="Polychat",
    )


@pytest.fixture
def sample_app_config(sample_provider_config: ProviderConfig, tmp_path: Path) -> AppConfig:
    return AppConfig(
        provider=sample_provider_config,
        defaults=DefaultsConfig(
            mode="round_robin",
            max_rounds=2,
            rounds_limit=5,
            data_dir=tmp_path / "conversations",
            output_dir=tmp_path / "output",
            panel=["openai/gpt-4o", "anthropic/claude-sonnet-4"],
            moderator="anthropic/claude-sonnet-4",
        ),
        server=ServerConfig(),
        models={"openai/gpt-4o": "GPT-4o"},
        api_key_available=True,
    )


class ScriptedProvider(CompletionProvider):
    """Test double that replays scripted deltas per model id.

    A script entry is either a list of deltas or an exception instance,
    raised after any deltas listed before it. Every call is recorded as
    ``(model, messages)``.
    """

    def __init__(
        self,
        scripts: dict[str, list] | None = None,
        default: list | None = None,
        on_call: Callable[[str, int], None] | None = None,
    ) -> None:
        self._scripts = scripts or {}
        self._default = default if default is not None else ["Hello", " world"]
        self._on_call = on_call
        self.calls: list[tuple[str, list[dict[str, str]]]] = []

    def name(self) -> str:
        return "scripted"

    async def stream_completion(
        self,
        model: str,
        messages: list[dict[str, str]],
        signal: CancelSignal | None = None,
    ) -> AsyncIterator[str]:
        self.calls.append((model, messages))
        if self._on_call is not None:
            self._on_call(model, len(self.calls))
        for item in self._scripts.get(model, self._default):
            if isinstance(item, BaseException):
                raise item
            yield item

    @property
    def models_called(self) -> list[str]:
        return [model for model, _ in self.calls]


class FailingStore(InMemoryMessageStore):
    async def create_message(self, *args, **kwargs):
        raise OSError("disk full")


async def collect(events: AsyncIterator[DiscussionEvent]) -> list[DiscussionEvent]:
    return [event async for event in events]


def upstream_error(model: str = "m") -> ProviderError:
    return ProviderError("openrouter", f"HTTP 500 from {model}: upstream exploded", status_code=500)


@pytest.fixture
def three_participants() -> list[Participant]:
    # Deliberately out of order to exercise order_index sorting
    return [
        Participant(id="p-c", model_id="model/c", display_name="Gemini", order_index=2),
        Participant(id="p-a", model_id="model/a", display_name="GPT", order_index=0),
        Participant(id="p-b", model_id="model/b", display_name="Claude", order_index=1),
    ]


@pytest.fixture
def moderated_panel() -> list[Participant]:
    return [
        Participant(id="p-a", model_id="model/a", display_name="GPT", order_index=0),
        Participant(id="p-b", model_id="model/b", display_name="Claude", order_index=1),
        Participant(id="p-m", model_id="model/m", display_name="Mod", role="moderator", order_index=2),
    ]


@pytest.fixture
def memory_store() -> InMemoryMessageStore:
    return InMemoryMessageStore()
