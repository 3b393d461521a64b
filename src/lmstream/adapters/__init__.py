"""Vendor adapters."""

from .anthropic import AnthropicAdapter
from .base import Framing, VendorAdapter, WirePayload
from .deepseek import DeepSeekAdapter
from .ollama import OllamaAdapter
from .openai import OpenAIAdapter
from .openrouter import OpenRouterAdapter

__all__ = [
    "AnthropicAdapter",
    "DeepSeekAdapter",
    "Framing",
    "OllamaAdapter",
    "OpenAIAdapter",
    "OpenRouterAdapter",
    "VendorAdapter",
    "WirePayload",
]
