"""Vendor-neutral request and model descriptions."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal


class Role(str, Enum):
    """Author of a message."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class ResponseFormat(str, Enum):
    """Requested shape of the completion text."""

    TEXT = "text"
    JSON_OBJECT = "json_object"


ToolChoice = Literal["auto", "required", "none"]


@dataclass(frozen=True)
class ToolUse:
    """A tool call previously made by the assistant.

    ``arguments`` is the raw JSON text exactly as the model produced it.
    """

    id: str
    name: str
    arguments: str = "{}"


@dataclass(frozen=True)
class Message:
    """A single conversational turn."""

    role: Role
    content: str = ""
    tool_calls: tuple[ToolUse, ...] = ()
    #: Set on ``Role.TOOL`` messages: the id of the call this result answers.
    tool_call_id: str | None = None


@dataclass(frozen=True)
class ToolDefinition:
    """A function the model may call."""

    name: str
    description: str = ""
    json_schema: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )


@dataclass(frozen=True)
class Request:
    """One completion call, built fresh per turn and never mutated after send."""

    messages: tuple[Message, ...]
    tools: tuple[ToolDefinition, ...] = ()
    temperature: float | None = None
    max_tokens: int | None = None
    stream: bool = True
    response_format: ResponseFormat | None = None
    #: Fail instead of silently dropping ``response_format`` on models
    #: without JSON mode.
    require_response_format: bool = False
    tool_choice: ToolChoice | None = None
    stop: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        # Accept lists for convenience while keeping the dataclass hashable.
        object.__setattr__(self, "messages", tuple(self.messages))
        object.__setattr__(self, "tools", tuple(self.tools))
        object.__setattr__(self, "stop", tuple(self.stop))


@dataclass(frozen=True)
class ModelCapabilities:
    """Feature flags for one model."""

    supports_tools: bool = True
    supports_streaming: bool = True
    supports_json_mode: bool = False
    supports_parallel_tool_calls: bool = False


@dataclass(frozen=True)
class ModelDescriptor:
    """Immutable description of one queryable model."""

    id: str
    display_name: str
    #: Context window size in tokens.
    max_tokens: int
    max_output_tokens: int | None = None
    capabilities: ModelCapabilities = field(default_factory=ModelCapabilities)

    @property
    def supports_tools(self) -> bool:
        return self.capabilities.supports_tools

    @property
    def supports_streaming(self) -> bool:
        return self.capabilities.supports_streaming

    @property
    def supports_json_mode(self) -> bool:
        return self.capabilities.supports_json_mode
