"""Settings loading: TOML, environment, overrides and validation."""

from __future__ import annotations

from pathlib import Path

import pytest

from lmstream.config import AvailableModel, ProviderSettings, Settings, load_env, load_settings
from lmstream.errors import ConfigurationError
from lmstream.rate_limit import OverflowPolicy

pytestmark = pytest.mark.unit

PYPROJECT = """
[project]
name = "someone-elses-app"

[tool.lmstream]
active_provider = "openrouter"
active_model = "qwen/qwen3-4b:free"

[tool.lmstream.providers.openrouter]
max_concurrent_requests = 2
overflow = "REJECT"
available_models = [
    { name = "anthropic/claude-3.5-sonnet", max_tokens = 200000, max_output_tokens = 8192 },
]

[tool.lmstream.providers.ollama]
api_url = "http://gpu-box:11434/"
idle_timeout_s = 300
"""


@pytest.fixture
def project_dir(tmp_path: Path, monkeypatch) -> Path:
    monkeypatch.chdir(tmp_path)
    return tmp_path


def test_defaults_without_any_source(project_dir: Path) -> None:
    settings = load_settings()

    assert settings.active_provider is None
    assert settings.providers == {}
    defaults = settings.for_provider("openai")
    assert defaults.max_concurrent_requests == 4
    assert defaults.idle_timeout_s == 120.0
    assert defaults.overflow is OverflowPolicy.QUEUE


def test_pyproject_in_working_directory_is_read(project_dir: Path) -> None:
    (project_dir / "pyproject.toml").write_text(PYPROJECT)

    settings = load_settings()

    assert settings.active_provider == "openrouter"
    assert settings.active_model == "qwen/qwen3-4b:free"
    openrouter = settings.for_provider("openrouter")
    assert openrouter.max_concurrent_requests == 2
    assert openrouter.overflow is OverflowPolicy.REJECT
    assert openrouter.available_models[0].to_descriptor().max_output_tokens == 8192
    ollama = settings.for_provider("ollama")
    assert ollama.api_url == "http://gpu-box:11434"
    assert ollama.idle_timeout_s == 300


def test_explicit_path_is_read(tmp_path: Path, project_dir: Path) -> None:
    other = tmp_path / "elsewhere.toml"
    other.write_text('[tool.lmstream]\nactive_provider = "deepseek"\n')

    assert load_settings(other).active_provider == "deepseek"


def test_environment_overrides_file(project_dir: Path, monkeypatch) -> None:
    (project_dir / "pyproject.toml").write_text(PYPROJECT)
    monkeypatch.setenv("LMSTREAM_ACTIVE_PROVIDER", "ollama")
    monkeypatch.setenv("LMSTREAM_ACTIVE_MODEL", "llama3.2")
    monkeypatch.setenv("LMSTREAM_OPENROUTER_MAX_CONCURRENT_REQUESTS", "8")
    monkeypatch.setenv("LMSTREAM_DEEPSEEK_API_KEY", "sk-from-env")

    settings = load_settings()

    assert settings.active_provider == "ollama"
    assert settings.active_model == "llama3.2"
    openrouter = settings.for_provider("openrouter")
    assert openrouter.max_concurrent_requests == 8
    assert len(openrouter.available_models) == 1
    assert settings.for_provider("deepseek").api_key.get_secret_value() == "sk-from-env"


def test_overrides_win_over_environment(project_dir: Path, monkeypatch) -> None:
    monkeypatch.setenv("LMSTREAM_ACTIVE_PROVIDER", "ollama")

    settings = load_settings(overrides={"active_provider": "anthropic"})

    assert settings.active_provider == "anthropic"


def test_load_env_ignores_unrelated_variables() -> None:
    config = load_env(
        {
            "LMSTREAM_OLLAMA_API_URL": "http://x",
            "LMSTREAM_OLLAMA_AVAILABLE_MODELS": "[]",
            "LMSTREAM_NOT_A_THING": "1",
            "PATH": "/usr/bin",
        }
    )

    assert config == {"providers": {"ollama": {"api_url": "http://x"}}}


def test_dotenv_is_loaded(project_dir: Path, monkeypatch) -> None:
    calls: list[bool] = []
    monkeypatch.setattr("lmstream.config.load_dotenv", lambda *a, **k: calls.append(True))

    load_settings()

    assert calls == [True]


@pytest.mark.parametrize(
    "overrides",
    [
        {"providers": {"openai": {"max_concurrent_requests": 0}}},
        {"providers": {"openai": {"idle_timeout_s": -1}}},
        {"providers": {"openai": {"overflow": "drop"}}},
        {"providers": {"openai": {"surprise": True}}},
        {"providers": {"openai": {"available_models": [{"name": "", "max_tokens": 10}]}}},
    ],
)
def test_invalid_values_raise_configuration_error(project_dir: Path, overrides) -> None:
    with pytest.raises(ConfigurationError) as excinfo:
        load_settings(overrides=overrides)
    assert excinfo.value.hint


def test_unknown_provider_is_rejected(project_dir: Path) -> None:
    with pytest.raises(ConfigurationError, match="unknown provider"):
        load_settings(overrides={"providers": {"mystery": {}}})


def test_malformed_toml_raises_configuration_error(project_dir: Path) -> None:
    (project_dir / "pyproject.toml").write_text("[tool.lmstream\n")

    with pytest.raises(ConfigurationError, match="Invalid TOML"):
        load_settings()


def test_missing_explicit_file_raises(project_dir: Path) -> None:
    with pytest.raises(ConfigurationError, match="Cannot read"):
        load_settings(project_dir / "absent.toml")


def test_api_key_is_redacted_and_normalized() -> None:
    settings = ProviderSettings(api_key="  sk-secret  ", api_url="  ")

    assert settings.api_key.get_secret_value() == "sk-secret"
    assert settings.api_url is None
    assert "sk-secret" not in repr(settings)
    assert ProviderSettings(api_key="   ").api_key is None


def test_available_model_descriptor() -> None:
    descriptor = AvailableModel(
        name="local/coder", max_tokens=32_000, supports_tools=False
    ).to_descriptor()

    assert descriptor.id == "local/coder"
    assert descriptor.display_name == "local/coder"
    assert not descriptor.supports_tools


def test_for_provider_returns_defaults_for_unconfigured() -> None:
    settings = Settings(providers={"openai": ProviderSettings(max_concurrent_requests=1)})

    assert settings.for_provider("openai").max_concurrent_requests == 1
    assert settings.for_provider("anthropic").max_concurrent_requests == 4
