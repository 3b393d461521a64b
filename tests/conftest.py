"""Pytest configuration and fixtures.

Provides environment isolation and logging configuration. Isolation
fixtures are autouse; wire doubles live in ``tests/helpers.py``.
"""

from __future__ import annotations

import logging
import os

import pytest

_VENDOR_ENV_PREFIXES = (
    "OPENAI_",
    "ANTHROPIC_",
    "DEEPSEEK_",
    "OPENROUTER_",
    "LITELLM_",
    "LMSTREAM_",
)

# =============================================================================
# Environment Isolation (Autouse)
# =============================================================================


@pytest.fixture(autouse=True)
def block_dotenv(request, monkeypatch):
    """Prevent python-dotenv from loading project .env files during tests.

    Opt-out: @pytest.mark.allow_dotenv
    """
    if request.node.get_closest_marker("allow_dotenv"):
        return
    monkeypatch.setattr("lmstream.config.load_dotenv", lambda *_args, **_kwargs: False)


@pytest.fixture(autouse=True)
def isolate_provider_env(request, monkeypatch):
    """Ensure a clean vendor environment for each test.

    Clears vendor API key variables and ``LMSTREAM_*`` settings so a
    developer's shell never leaks into assertions.
    Opt-out: @pytest.mark.allow_env_pollution
    """
    if request.node.get_closest_marker("allow_env_pollution"):
        return
    for key in list(os.environ.keys()):
        if key.startswith(_VENDOR_ENV_PREFIXES):
            monkeypatch.delenv(key, raising=False)


# =============================================================================
# Logging
# =============================================================================


@pytest.fixture(scope="session", autouse=True)
def quiet_noisy_libraries():
    """Suppress noisy third-party loggers."""
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
