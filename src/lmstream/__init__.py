"""lmstream: one streaming interface over many chat-completion vendors.

Public API:
    - ProviderRegistry: configured providers and the active model
    - Provider / LanguageModel: vendor endpoint and one of its models
    - Request / Message / ToolDefinition: what to send
    - CompletionEvent variants: what comes back, in order
    - load_settings(): resolve settings from TOML, environment and overrides

Example:
    registry = ProviderRegistry.from_settings(load_settings())
    model = registry.set_active("openai", "gpt-4o-mini")
    request = Request(messages=[Message(Role.USER, "Hello")])
    async with model.stream_completion(request) as stream:
        async for event in stream:
            if isinstance(event, TextDelta):
                print(event.text, end="")
"""

from __future__ import annotations

import logging

from lmstream.auth import AuthenticationState, CredentialSource
from lmstream.config import AvailableModel, ProviderSettings, Settings, load_settings
from lmstream.errors import (
    AuthError,
    AuthErrorReason,
    BuildError,
    BuildErrorReason,
    ConfigurationError,
    DecodeError,
    LmstreamError,
    RateLimitError,
    RequestCancelledError,
    TokenError,
    TransportError,
    UnknownModelError,
    UnknownProviderError,
)
from lmstream.events import (
    CompletionEvent,
    Error,
    ErrorKind,
    Stop,
    StopReason,
    TextDelta,
    ToolCallArgumentsDelta,
    ToolCallComplete,
    ToolCallStart,
    UsageUpdate,
    collect_text,
    is_terminal,
)
from lmstream.model import CompletionStream, LanguageModel
from lmstream.provider import Provider
from lmstream.rate_limit import OverflowPolicy, RateLimiter
from lmstream.registry import ProviderRegistry
from lmstream.retry import RetryPolicy
from lmstream.types import (
    Message,
    ModelCapabilities,
    ModelDescriptor,
    Request,
    ResponseFormat,
    Role,
    ToolDefinition,
    ToolUse,
)

try:
    from importlib.metadata import PackageNotFoundError, version

    __version__ = version("lmstream")
except PackageNotFoundError:
    __version__ = "0.0.0+unknown"

# Library-level NullHandler: stay silent unless the consumer configures logging.
logging.getLogger("lmstream").addHandler(logging.NullHandler())

__all__ = [
    "AuthError",
    "AuthErrorReason",
    "AuthenticationState",
    "AvailableModel",
    "BuildError",
    "BuildErrorReason",
    "CompletionEvent",
    "CompletionStream",
    "ConfigurationError",
    "CredentialSource",
    "DecodeError",
    "Error",
    "ErrorKind",
    "LanguageModel",
    "LmstreamError",
    "Message",
    "ModelCapabilities",
    "ModelDescriptor",
    "OverflowPolicy",
    "Provider",
    "ProviderRegistry",
    "ProviderSettings",
    "RateLimitError",
    "RateLimiter",
    "Request",
    "RequestCancelledError",
    "ResponseFormat",
    "RetryPolicy",
    "Role",
    "Settings",
    "Stop",
    "StopReason",
    "TextDelta",
    "TokenError",
    "ToolCallArgumentsDelta",
    "ToolCallComplete",
    "ToolCallStart",
    "ToolDefinition",
    "ToolUse",
    "TransportError",
    "UnknownModelError",
    "UnknownProviderError",
    "UsageUpdate",
    "collect_text",
    "is_terminal",
    "load_settings",
]
