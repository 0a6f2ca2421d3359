"""Configuration for nexus-stream.

Config discovery (first match wins):
  1. ``--config`` flag
  2. ``./nexus_stream.yaml``
  3. ``~/.config/nexus-stream/config.yaml``
  4. Built-in defaults
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from nexus_stream.errors import ConfigurationError

_logger = logging.getLogger(__name__)

# Values shipped in sample configs that mean "no key configured"
_PLACEHOLDER_KEYS = ("", "no-key", "your-nvidia-api-key-here")

_FALLBACK_MODEL_ID = "minimaxai/minimax-m2.1"


# ---------------------------------------------------------------------------
# Config data structures
# ---------------------------------------------------------------------------

@dataclass
class ProviderSpec:
    """Connection details for the upstream completion provider."""

    url: str = "https://integrate.api.nvidia.com/v1"
    api_key: str = ""
    api_key_env: str = "NVIDIA_API_KEY"
    extra_params: dict[str, Any] = field(default_factory=dict)

    def resolved_api_key(self) -> str:
        """Explicit key if set, otherwise the ``api_key_env`` variable."""
        if self.api_key:
            return self.api_key
        return os.environ.get(self.api_key_env, "") if self.api_key_env else ""

    @property
    def is_available(self) -> bool:
        return self.resolved_api_key() not in _PLACEHOLDER_KEYS


@dataclass
class ModelSpec:
    """One entry of the model catalog."""

    id: str
    name: str = ""
    provider: str = ""
    description: str = ""
    max_tokens: int = 16384
    supports_streaming: bool = True
    supports_thinking: bool = False
    category: str = "general"
    tags: list[str] = field(default_factory=list)


@dataclass
class StreamSpec:
    """Timeouts and retry budget for completion calls."""

    timeout: float = 300  # global deadline per call, seconds
    connect_timeout: float = 30
    read_timeout: float = 60
    max_retries: int = 2
    backoff_base: float = 2.0


@dataclass
class StoreSpec:
    db_path: str = "~/.nexus_stream/nexus.db"


@dataclass
class NexusConfig:
    """Top-level config."""

    provider: ProviderSpec = field(default_factory=ProviderSpec)
    default_model: str = _FALLBACK_MODEL_ID
    models: list[ModelSpec] = field(
        default_factory=lambda: [
            ModelSpec(
                id=_FALLBACK_MODEL_ID,
                name="MiniMax M2.1",
                provider="MiniMax",
                description="Default model",
                supports_thinking=True,
                tags=["default"],
            )
        ]
    )
    stream: StreamSpec = field(default_factory=StreamSpec)
    store: StoreSpec = field(default_factory=StoreSpec)

    def get_model(self, model_id: str | None) -> ModelSpec | None:
        for m in self.models:
            if m.id == model_id:
                return m
        return None

    def resolve_model_id(self, model_id: str | None) -> str:
        """Return *model_id* if it is in the catalog, else the default."""
        if not model_id or not model_id.strip():
            return self.default_model
        model = self.get_model(model_id)
        return model.id if model else self.default_model

    def resolve_max_tokens(self, model_id: str | None) -> int:
        model = self.get_model(self.resolve_model_id(model_id))
        return model.max_tokens if model else 16384

    def supports_thinking(self, model_id: str | None) -> bool:
        model = self.get_model(self.resolve_model_id(model_id))
        return bool(model and model.supports_thinking)


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

_SEARCH_PATHS = [
    Path("./nexus_stream.yaml"),
    Path.home() / ".config" / "nexus-stream" / "config.yaml",
]


def _parse_provider(raw: dict[str, Any] | None) -> ProviderSpec:
    if not raw:
        return ProviderSpec()
    return ProviderSpec(
        url=raw.get("url", "https://integrate.api.nvidia.com/v1"),
        api_key=raw.get("api_key", "") or "",
        api_key_env=raw.get("api_key_env", "NVIDIA_API_KEY"),
        extra_params=raw.get("extra_params", {}) or {},
    )


def _parse_model(raw: dict[str, Any]) -> ModelSpec:
    if "id" not in raw:
        raise ConfigurationError(f"Model entry without id: {raw!r}")
    return ModelSpec(
        id=raw["id"],
        name=raw.get("name", raw["id"]),
        provider=raw.get("provider", ""),
        description=raw.get("description", ""),
        max_tokens=int(raw.get("max_tokens", 16384)),
        supports_streaming=bool(raw.get("supports_streaming", True)),
        supports_thinking=bool(raw.get("supports_thinking", False)),
        category=raw.get("category", "general"),
        tags=list(raw.get("tags", [])),
    )


def _parse_dataclass(cls: type, raw: dict[str, Any] | None) -> Any:
    if not raw:
        return cls()
    known = {k: v for k, v in raw.items()
             if v is not None and k in cls.__dataclass_fields__}
    return cls(**known)


def load_config(path: str | Path | None = None) -> NexusConfig:
    """Load configuration from YAML.

    Parameters
    ----------
    path:
        Explicit config path.  If *None*, search default locations.

    Raises
    ------
    ConfigurationError
        If the file exists but is not valid YAML or has a bad shape.
    """
    config_path: Path | None = None

    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            _logger.warning("Config file not found: %s, using defaults", path)
            return NexusConfig()
    else:
        for candidate in _SEARCH_PATHS:
            if candidate.exists():
                config_path = candidate
                break

    if config_path is None:
        _logger.info("No config file found, using defaults")
        return NexusConfig()

    _logger.info("Loading config from %s", config_path)
    try:
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigurationError(f"Config root must be a mapping: {config_path}")

    models_raw = raw.get("models")
    defaults = NexusConfig()
    models = [_parse_model(m) for m in models_raw] if models_raw else defaults.models
    default_model = raw.get("default_model") or models[0].id

    cfg = NexusConfig(
        provider=_parse_provider(raw.get("provider")),
        default_model=default_model,
        models=models,
        stream=_parse_dataclass(StreamSpec, raw.get("stream")),
        store=_parse_dataclass(StoreSpec, raw.get("store")),
    )
    if cfg.get_model(cfg.default_model) is None:
        _logger.warning(
            "default_model %s is not in the catalog, using %s",
            cfg.default_model, models[0].id,
        )
        cfg.default_model = models[0].id
    _logger.info(
        "Loaded %d models, default: %s", len(cfg.models), cfg.default_model,
    )
    return cfg
