"""DeepSeek adapter.

DeepSeek speaks Chat Completions with two quirks: the reasoner model rejects
consecutive messages with the same role, and the API sometimes reports
``finish_reason="stop"`` after streaming tool calls. The decoder normalizes
the second quirk for every vendor, so only the first one is handled here.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from lmstream.adapters import _chat_completions as cc
from lmstream.adapters.base import Framing, Fragment, WirePayload
from lmstream.types import Role

if TYPE_CHECKING:
    from lmstream.types import Message, ModelDescriptor, Request

REASONER_MODEL_ID = "deepseek-reasoner"


class DeepSeekAdapter:
    """DeepSeek Chat Completions adapter."""

    vendor = "deepseek"
    framing = Framing.SSE

    def build(self, request: Request, model: ModelDescriptor) -> WirePayload:
        cc.require_messages(request)
        if model.id == REASONER_MODEL_ID:
            messages = _merge_same_role(request.messages)
        else:
            messages = [cc.message_to_wire(m) for m in request.messages]
        body = cc.base_body(request, model, messages)
        return WirePayload(path=cc.CHAT_COMPLETIONS_PATH, body=body)

    def interpret(self, frame: Any) -> list[Fragment]:
        return cc.interpret_chunk(frame)

    def interpret_response(self, body: Any) -> list[Fragment]:
        return cc.interpret_completion(body)

    def auth_headers(self, api_key: str) -> dict[str, str]:
        return cc.bearer_headers(api_key)


def _merge_same_role(messages: tuple[Message, ...]) -> list[dict[str, Any]]:
    """Join consecutive plain user or assistant turns with a single space."""
    wire: list[dict[str, Any]] = []
    previous: Role | None = None
    for message in messages:
        mergeable = message.role in (Role.USER, Role.ASSISTANT) and not message.tool_calls
        if (
            mergeable
            and wire
            and previous is message.role
            and not wire[-1].get("tool_calls")
        ):
            last = wire[-1]
            joined = " ".join(p for p in (last["content"], message.content) if p)
            if not joined and message.role is Role.ASSISTANT:
                last["content"] = None
            else:
                last["content"] = joined
            continue
        wire.append(cc.message_to_wire(message))
        previous = message.role
    return wire
