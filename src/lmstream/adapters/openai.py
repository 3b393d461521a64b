"""OpenAI Chat Completions adapter (also serves OpenAI-compatible proxies)."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from lmstream.adapters import _chat_completions as cc
from lmstream.adapters.base import Framing, Fragment, WirePayload

if TYPE_CHECKING:
    from lmstream.types import ModelDescriptor, Request


class OpenAIAdapter:
    """Plain Chat Completions over SSE with a ``[DONE]`` sentinel."""

    framing = Framing.SSE

    def __init__(self, vendor: str = "openai") -> None:
        self.vendor = vendor

    def build(self, request: Request, model: ModelDescriptor) -> WirePayload:
        """Build a ``/chat/completions`` payload."""
        cc.require_messages(request)
        messages = [cc.message_to_wire(m) for m in request.messages]
        body = cc.base_body(request, model, messages)
        if request.tools and model.capabilities.supports_parallel_tool_calls:
            body["parallel_tool_calls"] = True
        return WirePayload(path=cc.CHAT_COMPLETIONS_PATH, body=body)

    def interpret(self, frame: Any) -> list[Fragment]:
        return cc.interpret_chunk(frame)

    def interpret_response(self, body: Any) -> list[Fragment]:
        return cc.interpret_completion(body)

    def auth_headers(self, api_key: str) -> dict[str, str]:
        return cc.bearer_headers(api_key)
