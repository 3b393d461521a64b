"""Normalized completion events produced by the stream decoder."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class StopReason(str, Enum):
    """Why the model stopped producing output."""

    END_TURN = "end_turn"
    MAX_TOKENS = "max_tokens"
    TOOL_USE = "tool_use"
    CONTENT_FILTER = "content_filter"
    UNKNOWN = "unknown"


class ErrorKind(str, Enum):
    """Category of a terminal stream failure."""

    TRANSPORT = "transport"
    HTTP_STATUS = "http_status"
    AUTHENTICATION = "authentication"
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    DECODE = "decode"
    PROVIDER = "provider"


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ToolCallStart:
    index: int
    id: str
    name: str


@dataclass(frozen=True)
class ToolCallArgumentsDelta:
    index: int
    fragment: str


@dataclass(frozen=True)
class ToolCallComplete:
    """Closes a tool call. ``arguments`` is the full, valid JSON text."""

    index: int
    id: str = ""
    name: str = ""
    arguments: str = "{}"


@dataclass(frozen=True)
class UsageUpdate:
    prompt_tokens: int
    completion_tokens: int

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass(frozen=True)
class Stop:
    reason: StopReason


@dataclass(frozen=True)
class Error:
    kind: ErrorKind
    message: str
    status_code: int | None = None


CompletionEvent = (
    TextDelta
    | ToolCallStart
    | ToolCallArgumentsDelta
    | ToolCallComplete
    | UsageUpdate
    | Stop
    | Error
)

TERMINAL_EVENTS: tuple[type, ...] = (Stop, Error)


def is_terminal(event: CompletionEvent) -> bool:
    """Return True for the single definitive outcome of a stream."""
    return isinstance(event, TERMINAL_EVENTS)


def collect_text(events: list[CompletionEvent]) -> str:
    """Concatenate every ``TextDelta`` in order."""
    return "".join(e.text for e in events if isinstance(e, TextDelta))
