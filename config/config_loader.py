"""Load settings.yaml into typed dataclasses. Checks the provider API key at startup."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

_SETTINGS_PATH = Path(__file__).parent / "settings.yaml"

_VALID_MODES = ("independent", "round_robin", "moderated")


@dataclass
class ProviderConfig:
    name: str
    sdk: str                     # "http" (raw SSE over httpx) or "openai" (openai SDK)
    base_url: str
    api_key_env: str
    timeout_sec: int
    app_url: str | None = None   # sent as HTTP-Referer
    app_title: str | None = None  # sent as X-Title


@dataclass
class DefaultsConfig:
    mode: str
    max_rounds: int
    rounds_limit: int
    data_dir: Path
    output_dir: Path
    panel: list[str] = field(default_factory=list)
    moderator: str | None = None


@dataclass
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 8000
    cors_origins: list[str] = field(default_factory=list)


@dataclass
class AppConfig:
    provider: ProviderConfig
    defaults: DefaultsConfig
    server: ServerConfig = field(default_factory=ServerConfig)
    models: dict[str, str] = field(default_factory=dict)  # model id -> display name
    api_key_available: bool = False


def load_config(settings_path: Path = _SETTINGS_PATH) -> AppConfig:
    """Load and validate configuration from settings.yaml.

    Raises FileNotFoundError if settings file missing, ValueError on an
    unknown default mode or a non-positive round count.
    Logs a warning for a missing API key but does not raise; callers
    check ``api_key_available``.
    """
    if not settings_path.exists():
        raise FileNotFoundError(f"Settings file not found: {settings_path}")

    with settings_path.open("r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    provider_raw = raw["provider"]
    provider = ProviderConfig(
        name=str(provider_raw.get("name", "openrouter")),
        sdk=str(provider_raw.get("sdk", "http")),
        base_url=str(provider_raw["base_url"]).rstrip("/"),
        api_key_env=str(provider_raw["api_key_env"]),
        timeout_sec=int(provider_raw["timeout_sec"]),
        app_url=provider_raw.get("app_url"),
        app_title=provider_raw.get("app_title"),
    )

    defaults_raw = raw["defaults"]
    defaults = DefaultsConfig(
        mode=str(defaults_raw["mode"]),
        max_rounds=int(defaults_raw["max_rounds"]),
        rounds_limit=int(defaults_raw.get("rounds_limit", defaults_raw["max_rounds"])),
        data_dir=Path(defaults_raw["data_dir"]),
        output_dir=Path(defaults_raw["output_dir"]),
        panel=list(defaults_raw.get("panel", [])),
        moderator=defaults_raw.get("moderator"),
    )
    if defaults.mode not in _VALID_MODES:
        raise ValueError(f"Unknown default mode {defaults.mode!r}; expected one of {', '.join(_VALID_MODES)}")
    if defaults.max_rounds < 1 or defaults.rounds_limit < defaults.max_rounds:
        raise ValueError("defaults.max_rounds must be >= 1 and <= defaults.rounds_limit")

    server_raw = raw.get("server", {})
    server = ServerConfig(
        host=str(server_raw.get("host", "127.0.0.1")),
        port=int(server_raw.get("port", 8000)),
        cors_origins=list(server_raw.get("cors_origins", [])),
    )

    models = {str(k): str(v) for k, v in raw.get("models", {}).items()}

    api_key = os.environ.get(provider.api_key_env, "").strip()
    if api_key:
        logger.info("Provider available: %s (%s)", provider.name, provider.sdk)
    else:
        logger.warning(
            "Provider %s has no API key, set %s in .env",
            provider.name,
            provider.api_key_env,
        )

    return AppConfig(
        provider=provider,
        defaults=defaults,
        server=server,
        models=models,
        api_key_available=bool(api_key),
    )
