"""Settings schema and loading.

Resolution order, lowest to highest precedence:

1. Built-in provider defaults (``lmstream.catalog``).
2. ``[tool.lmstream]`` in a TOML file (``pyproject.toml`` by default).
3. ``LMSTREAM_*`` environment variables, after ``.env`` is loaded.
4. Explicit overrides passed to ``load_settings``.

Example ``pyproject.toml``::

    [tool.lmstream]
    active_provider = "openrouter"

    [tool.lmstream.providers.openrouter]
    max_concurrent_requests = 2
    available_models = [
        { name = "anthropic/claude-3.5-sonnet", max_tokens = 200000 },
    ]

Vendor API keys come from the vendor's own variable (``OPENAI_API_KEY``
and friends) and are resolved lazily by ``AuthenticationState``. A key set
here is treated as explicit and takes precedence.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
import tomllib
from typing import TYPE_CHECKING, Any

from dotenv import load_dotenv
from pydantic import BaseModel, Field, SecretStr, ValidationError, field_validator

from lmstream.catalog import BUILTIN_PROVIDER_IDS
from lmstream.errors import ConfigurationError
from lmstream.rate_limit import OverflowPolicy
from lmstream.types import ModelCapabilities, ModelDescriptor

if TYPE_CHECKING:
    from collections.abc import Mapping

logger = logging.getLogger(__name__)

CONFIG_TOOL_NAME = "lmstream"
ENV_PREFIX = "LMSTREAM_"


class AvailableModel(BaseModel):
    """A model declared in settings, added to (or overriding) a provider's catalog."""

    model_config = {"extra": "forbid", "frozen": True}

    name: str = Field(min_length=1)
    display_name: str | None = None
    max_tokens: int = Field(ge=1)
    max_output_tokens: int | None = Field(default=None, ge=1)
    supports_tools: bool = True
    supports_json_mode: bool = False
    supports_streaming: bool = True
    supports_parallel_tool_calls: bool = False

    def to_descriptor(self) -> ModelDescriptor:
        return ModelDescriptor(
            id=self.name,
            display_name=self.display_name or self.name,
            max_tokens=self.max_tokens,
            max_output_tokens=self.max_output_tokens,
            capabilities=ModelCapabilities(
                supports_tools=self.supports_tools,
                supports_streaming=self.supports_streaming,
                supports_json_mode=self.supports_json_mode,
                supports_parallel_tool_calls=self.supports_parallel_tool_calls,
            ),
        )


class ProviderSettings(BaseModel):
    """Per-provider overrides. Unset fields keep the built-in defaults."""

    model_config = {"extra": "forbid"}

    api_url: str | None = None
    api_key: SecretStr | None = None
    available_models: list[AvailableModel] = Field(default_factory=list)
    max_concurrent_requests: int = Field(default=4, ge=1)
    tokens_per_minute: int | None = Field(default=None, ge=1)
    overflow: OverflowPolicy = OverflowPolicy.QUEUE
    idle_timeout_s: float | None = Field(default=120.0, gt=0)
    connect_timeout_s: float = Field(default=10.0, gt=0)

    @field_validator("api_url", mode="before")
    @classmethod
    def normalize_api_url(cls, v: Any) -> Any:
        """Trim whitespace and trailing slashes; map empty to None."""
        if isinstance(v, str):
            v = v.strip().rstrip("/")
            return v or None
        return v

    @field_validator("api_key", mode="before")
    @classmethod
    def normalize_api_key(cls, v: Any) -> Any:
        """Trim whitespace and map empty to None."""
        if isinstance(v, SecretStr):
            v = v.get_secret_value()
        if isinstance(v, str):
            s = v.strip()
            return SecretStr(s) if s else None
        return v

    @field_validator("overflow", mode="before")
    @classmethod
    def normalize_overflow(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip().lower()
        return v


class Settings(BaseModel):
    """Top-level settings: provider overrides plus the active selection."""

    model_config = {"extra": "forbid"}

    providers: dict[str, ProviderSettings] = Field(default_factory=dict)
    active_provider: str | None = None
    active_model: str | None = None

    @field_validator("providers")
    @classmethod
    def known_providers(cls, v: dict[str, ProviderSettings]) -> dict[str, ProviderSettings]:
        unknown = sorted(set(v) - BUILTIN_PROVIDER_IDS)
        if unknown:
            raise ValueError(
                f"unknown provider(s) {', '.join(unknown)}; "
                f"expected one of {', '.join(sorted(BUILTIN_PROVIDER_IDS))}"
            )
        return v

    def for_provider(self, provider_id: str) -> ProviderSettings:
        return self.providers.get(provider_id) or ProviderSettings()


def _read_toml(path: Path) -> dict[str, Any]:
    try:
        with path.open("rb") as f:
            data = tomllib.load(f)
    except OSError as e:
        raise ConfigurationError(f"Cannot read settings file {path}: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(
            f"Invalid TOML in {path}: {e}",
            hint="Fix the syntax error or point load_settings at another file.",
        ) from e
    section = data.get("tool", {}).get(CONFIG_TOOL_NAME, {})
    if not isinstance(section, dict):
        raise ConfigurationError(f"[tool.{CONFIG_TOOL_NAME}] in {path} must be a table")
    return section


def load_env(environ: Mapping[str, str] | None = None) -> dict[str, Any]:
    """Collect ``LMSTREAM_*`` variables into a settings mapping.

    ``LMSTREAM_ACTIVE_PROVIDER`` and ``LMSTREAM_ACTIVE_MODEL`` select the
    active model; ``LMSTREAM_<PROVIDER>_<FIELD>`` sets a provider field,
    e.g. ``LMSTREAM_OLLAMA_API_URL``. Values stay strings; pydantic coerces
    them.
    """
    environ = os.environ if environ is None else environ
    fields = set(ProviderSettings.model_fields) - {"available_models"}
    config: dict[str, Any] = {}
    for key, value in environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        name = key[len(ENV_PREFIX) :].lower()
        if name in ("active_provider", "active_model"):
            config[name] = value
            continue
        for provider_id in BUILTIN_PROVIDER_IDS:
            prefix = f"{provider_id}_"
            if name.startswith(prefix) and name[len(prefix) :] in fields:
                providers = config.setdefault("providers", {})
                providers.setdefault(provider_id, {})[name[len(prefix) :]] = value
                break
        else:
            logger.debug("Ignoring unrecognized environment variable %s", key)
    return config


def _merge(base: dict[str, Any], overlay: Mapping[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in overlay.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_settings(
    path: str | Path | None = None,
    *,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Resolve settings from TOML, environment and *overrides*.

    Without *path*, ``pyproject.toml`` in the working directory is used when
    it exists. Raises ``ConfigurationError`` on unreadable files or values
    that fail validation.
    """
    load_dotenv()

    data: dict[str, Any] = {}
    if path is not None:
        data = _read_toml(Path(path))
    else:
        default = Path.cwd() / "pyproject.toml"
        if default.is_file():
            data = _read_toml(default)

    data = _merge(data, load_env())
    if overrides:
        data = _merge(data, overrides)

    try:
        return Settings.model_validate(data)
    except ValidationError as e:
        first = e.errors()[0] if e.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ()))
        raise ConfigurationError(
            f"Invalid lmstream settings: {first.get('msg', e)}"
            + (f" (at {location})" if location else ""),
            hint=f"Check [tool.{CONFIG_TOOL_NAME}] and {ENV_PREFIX}* variables.",
        ) from e
