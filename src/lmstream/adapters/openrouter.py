"""OpenRouter adapter."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from lmstream.adapters import _chat_completions as cc
from lmstream.adapters.base import Framing, Fragment, WirePayload

if TYPE_CHECKING:
    from lmstream.types import ModelDescriptor, Request


class OpenRouterAdapter:
    """Chat Completions routed through OpenRouter.

    OpenRouter interleaves SSE comment lines (``: OPENROUTER PROCESSING``)
    with data frames; the SSE framer drops them. ``parallel_tool_calls`` is
    only sent for models that accept it, since others reject the request.
    """

    vendor = "openrouter"
    framing = Framing.SSE

    def __init__(self, *, app_url: str | None = None, app_name: str | None = None) -> None:
        self.app_url = app_url
        self.app_name = app_name

    def build(self, request: Request, model: ModelDescriptor) -> WirePayload:
        cc.require_messages(request)
        messages = [cc.message_to_wire(m) for m in request.messages]
        body = cc.base_body(request, model, messages)
        if request.tools and model.capabilities.supports_parallel_tool_calls:
            body["parallel_tool_calls"] = True

        headers: dict[str, str] = {}
        if self.app_url:
            headers["HTTP-Referer"] = self.app_url
        if self.app_name:
            headers["X-Title"] = self.app_name
        return WirePayload(path=cc.CHAT_COMPLETIONS_PATH, body=body, headers=headers)

    def interpret(self, frame: Any) -> list[Fragment]:
        return cc.interpret_chunk(frame)

    def interpret_response(self, body: Any) -> list[Fragment]:
        return cc.interpret_completion(body)

    def auth_headers(self, api_key: str) -> dict[str, str]:
        return cc.bearer_headers(api_key)
