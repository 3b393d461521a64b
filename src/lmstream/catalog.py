"""Built-in provider definitions and model catalogs."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from lmstream.adapters import (
    AnthropicAdapter,
    DeepSeekAdapter,
    OllamaAdapter,
    OpenAIAdapter,
    OpenRouterAdapter,
)
from lmstream.errors import DecodeError
from lmstream.types import ModelCapabilities, ModelDescriptor

if TYPE_CHECKING:
    from collections.abc import Callable

    from lmstream.adapters.base import VendorAdapter

# Context window assumed for models a catalog endpoint lists without one.
UNKNOWN_CONTEXT_WINDOW = 128_000


@dataclass(frozen=True)
class ProviderInfo:
    """Static description of a provider: where it lives and what it offers."""

    id: str
    name: str
    api_url: str
    adapter_factory: Callable[[], VendorAdapter]
    models: tuple[ModelDescriptor, ...]
    default_model_id: str
    default_fast_model_id: str
    env_var: str | None = None
    #: Path (relative to ``api_url``) that lists available models.
    models_endpoint: str | None = None
    parse_models: Callable[[Any], list[ModelDescriptor]] | None = None
    #: tiktoken model name used for counting; ``None`` means the model id.
    tokenizer_model: str | None = "gpt-4"
    requires_api_key: bool = True


def _model(
    id: str,
    display_name: str,
    max_tokens: int,
    max_output_tokens: int | None = None,
    **capabilities: bool,
) -> ModelDescriptor:
    return ModelDescriptor(
        id=id,
        display_name=display_name,
        max_tokens=max_tokens,
        max_output_tokens=max_output_tokens,
        capabilities=ModelCapabilities(**capabilities),
    )


def parse_openai_models(payload: Any) -> list[ModelDescriptor]:
    """Parse an OpenAI-style ``{"data": [{"id": ...}, ...]}`` listing.

    OpenRouter adds ``name``, ``context_length`` and
    ``top_provider.max_completion_tokens``; those are used when present.
    """
    if not isinstance(payload, dict) or not isinstance(payload.get("data"), list):
        raise DecodeError("Model listing has no 'data' list")
    models = []
    for item in payload["data"]:
        if not isinstance(item, dict) or not isinstance(item.get("id"), str):
            continue
        context = item.get("context_length")
        top = item.get("top_provider")
        max_output = top.get("max_completion_tokens") if isinstance(top, dict) else None
        params = item.get("supported_parameters")
        supports_tools = "tools" in params if isinstance(params, list) else True
        models.append(
            _model(
                item["id"],
                str(item.get("name") or item["id"]),
                context if isinstance(context, int) else UNKNOWN_CONTEXT_WINDOW,
                max_output if isinstance(max_output, int) else None,
                supports_tools=supports_tools,
            )
        )
    return models


def parse_ollama_tags(payload: Any) -> list[ModelDescriptor]:
    """Parse Ollama's ``/api/tags`` listing."""
    if not isinstance(payload, dict) or not isinstance(payload.get("models"), list):
        raise DecodeError("Model listing has no 'models' list")
    models = []
    for item in payload["models"]:
        if not isinstance(item, dict):
            continue
        name = item.get("model") or item.get("name")
        if isinstance(name, str) and name:
            models.append(_model(name, name, UNKNOWN_CONTEXT_WINDOW, supports_json_mode=True))
    return models


OPENAI = ProviderInfo(
    id="openai",
    name="OpenAI",
    api_url="https://api.openai.com/v1",
    adapter_factory=OpenAIAdapter,
    env_var="OPENAI_API_KEY",
    models=(
        _model("gpt-4o", "GPT-4o", 128_000, 16_384,
               supports_json_mode=True, supports_parallel_tool_calls=True),
        _model("gpt-4o-mini", "GPT-4o mini", 128_000, 16_384,
               supports_json_mode=True, supports_parallel_tool_calls=True),
        _model("gpt-4.1", "GPT-4.1", 1_047_576, 32_768,
               supports_json_mode=True, supports_parallel_tool_calls=True),
        # o1 is served without streaming; completions arrive as one body.
        _model("o1", "o1", 200_000, 100_000,
               supports_streaming=False, supports_json_mode=True),
    ),
    default_model_id="gpt-4o",
    default_fast_model_id="gpt-4o-mini",
    tokenizer_model=None,
)

ANTHROPIC = ProviderInfo(
    id="anthropic",
    name="Anthropic",
    api_url="https://api.anthropic.com/v1",
    adapter_factory=AnthropicAdapter,
    env_var="ANTHROPIC_API_KEY",
    models=(
        _model("claude-3-5-haiku-latest", "Claude 3.5 Haiku", 200_000, 8_192),
        _model("claude-3-5-sonnet-latest", "Claude 3.5 Sonnet", 200_000, 8_192),
        _model("claude-3-7-sonnet-latest", "Claude 3.7 Sonnet", 200_000, 64_000),
    ),
    default_model_id="claude-3-7-sonnet-latest",
    default_fast_model_id="claude-3-5-haiku-latest",
)

DEEPSEEK = ProviderInfo(
    id="deepseek",
    name="DeepSeek",
    api_url="https://api.deepseek.com/v1",
    adapter_factory=DeepSeekAdapter,
    env_var="DEEPSEEK_API_KEY",
    models=(
        _model("deepseek-chat", "DeepSeek Chat", 32_768, 4_096, supports_json_mode=True),
        _model("deepseek-reasoner", "DeepSeek Reasoner", 32_768, 4_096, supports_tools=False),
    ),
    default_model_id="deepseek-chat",
    default_fast_model_id="deepseek-chat",
)

OPENROUTER = ProviderInfo(
    id="openrouter",
    name="OpenRouter",
    api_url="https://openrouter.ai/api/v1",
    adapter_factory=OpenRouterAdapter,
    env_var="OPENROUTER_API_KEY",
    models=(
        _model("google/gemini-2.0-flash-exp:free", "Gemini Flash 1M (Free)", 1_047_576,
               supports_parallel_tool_calls=True),
        _model("meta-llama/llama-4-scout", "Llama Scout 128K", 128_000),
        _model("openai/gpt-3.5-turbo", "GPT-3.5 Turbo", 16_385),
        _model("qwen/qwen3-235b-a22b", "Qwen3 235B 128K", 128_000),
        _model("qwen/qwen3-4b:free", "Qwen3 4B 128K (Free)", 128_000),
    ),
    default_model_id="openai/gpt-3.5-turbo",
    default_fast_model_id="qwen/qwen3-4b:free",
    models_endpoint="/models",
    parse_models=parse_openai_models,
)

LITELLM = ProviderInfo(
    id="litellm",
    name="LiteLLM",
    api_url="http://localhost:4000/v1",
    adapter_factory=lambda: OpenAIAdapter(vendor="litellm"),
    env_var="LITELLM_API_KEY",
    models=(_model("litellm/auto", "Auto Router", 2_000_000),),
    default_model_id="litellm/auto",
    default_fast_model_id="litellm/auto",
    models_endpoint="/models",
    parse_models=parse_openai_models,
)

OLLAMA = ProviderInfo(
    id="ollama",
    name="Ollama",
    api_url="http://localhost:11434",
    adapter_factory=OllamaAdapter,
    models=(_model("llama3.2", "Llama 3.2", 128_000, supports_json_mode=True),),
    default_model_id="llama3.2",
    default_fast_model_id="llama3.2",
    models_endpoint="/api/tags",
    parse_models=parse_ollama_tags,
    requires_api_key=False,
)

BUILTIN_PROVIDERS: tuple[ProviderInfo, ...] = (
    ANTHROPIC,
    DEEPSEEK,
    LITELLM,
    OLLAMA,
    OPENAI,
    OPENROUTER,
)

BUILTIN_PROVIDER_IDS: frozenset[str] = frozenset(info.id for info in BUILTIN_PROVIDERS)

