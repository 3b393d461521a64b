"""Vendor adapter protocol: request building plus frame interpretation.

Each vendor gets its own adapter class. Adapters share no base class; they
only have to satisfy ``VendorAdapter``. The stream decoder owns all state,
so adapters stay pure: ``build`` turns a ``Request`` into a ``WirePayload``
and ``interpret`` turns one parsed frame into vendor-neutral fragments.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from lmstream.events import StopReason
    from lmstream.types import ModelDescriptor, Request


class Framing(str, Enum):
    """How a vendor delimits frames in a streamed body."""

    SSE = "sse"  # ``data: {...}`` lines, optional ``[DONE]`` sentinel
    NDJSON = "ndjson"  # one JSON object per line


@dataclass(frozen=True)
class WirePayload:
    """A vendor-specific HTTP request, minus the base URL and credential."""

    path: str
    body: dict[str, Any]
    headers: dict[str, str] = field(default_factory=dict)


# --- Fragments: what one frame means, before any stream state is applied ---


@dataclass(frozen=True)
class TextFragment:
    text: str


@dataclass(frozen=True)
class ToolCallFragment:
    """A piece of a tool call; any of id/name/arguments may be absent.

    ``index=None`` marks a whole call from a vendor that does not number its
    calls. The decoder gives it the next free index and completes it at once.
    """

    index: int | None
    id: str | None = None
    name: str | None = None
    arguments: str | None = None


@dataclass(frozen=True)
class ToolCallEnd:
    """The vendor closed a single tool call (e.g. Anthropic ``content_block_stop``)."""

    index: int


@dataclass(frozen=True)
class FinishFragment:
    reason: StopReason
    raw: str | None = None


@dataclass(frozen=True)
class UsageFragment:
    """Token usage; ``None`` fields leave previously reported values untouched."""

    prompt_tokens: int | None = None
    completion_tokens: int | None = None


@dataclass(frozen=True)
class VendorErrorFragment:
    """An error object the vendor sent in the middle of a stream."""

    message: str


@dataclass(frozen=True)
class EndOfStream:
    """The vendor's own end-of-stream marker (e.g. Anthropic ``message_stop``)."""


Fragment = (
    TextFragment
    | ToolCallFragment
    | ToolCallEnd
    | FinishFragment
    | UsageFragment
    | VendorErrorFragment
    | EndOfStream
)


@runtime_checkable
class VendorAdapter(Protocol):
    """Capability set every vendor adapter implements."""

    #: Short vendor label used in logs and errors.
    vendor: str
    framing: Framing

    def build(self, request: Request, model: ModelDescriptor) -> WirePayload:
        """Translate *request* for this vendor. Pure; raises ``BuildError``."""
        ...

    def interpret(self, frame: Any) -> list[Fragment]:
        """Map one parsed JSON frame to fragments.

        Raise ``DecodeError`` for frames that do not have the expected
        shape. The decoder skips those frames.
        """
        ...

    def interpret_response(self, body: Any) -> list[Fragment]:
        """Map a complete non-streaming response body to fragments."""
        ...

    def auth_headers(self, api_key: str) -> dict[str, str]:
        """Headers carrying the credential."""
        ...
