"""Ollama ``/api/chat`` adapter (newline-delimited JSON streaming)."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from lmstream.adapters import _chat_completions as cc
from lmstream.adapters.base import (
    EndOfStream,
    FinishFragment,
    Fragment,
    Framing,
    TextFragment,
    ToolCallEnd,
    ToolCallFragment,
    UsageFragment,
    VendorErrorFragment,
    WirePayload,
)
from lmstream.errors import BuildError, BuildErrorReason, DecodeError
from lmstream.events import StopReason
from lmstream.types import Role

if TYPE_CHECKING:
    from lmstream.types import Message, ModelDescriptor, Request

_DONE_REASONS: dict[str, StopReason] = {
    "stop": StopReason.END_TURN,
    "length": StopReason.MAX_TOKENS,
}


class OllamaAdapter:
    """Ollama chat over NDJSON.

    Ollama delivers each tool call whole, with arguments as an object, so
    a call opens and closes within a single frame.
    """

    vendor = "ollama"
    framing = Framing.NDJSON

    def build(self, request: Request, model: ModelDescriptor) -> WirePayload:
        cc.require_messages(request)
        cc.check_tools(request, model)

        body: dict[str, Any] = {
            "model": model.id,
            "messages": [_message_to_wire(m) for m in request.messages],
            "stream": request.stream and model.supports_streaming,
        }
        options: dict[str, Any] = {}
        if request.temperature is not None:
            options["temperature"] = request.temperature
        max_tokens = cc.effective_max_tokens(request, model)
        if max_tokens is not None:
            options["num_predict"] = max_tokens
        if request.stop:
            options["stop"] = list(request.stop)
        if options:
            body["options"] = options
        if request.tools:
            body["tools"] = [cc.tool_to_wire(t) for t in request.tools]
        if cc.wants_json_mode(request, model):
            body["format"] = "json"
        return WirePayload(path="/api/chat", body=body)

    def interpret(self, frame: Any) -> list[Fragment]:
        if not isinstance(frame, dict):
            raise DecodeError("Expected a chat response object")
        if "error" in frame:
            return [VendorErrorFragment(str(frame["error"]))]

        fragments: list[Fragment] = []
        message = frame.get("message")
        if message is not None:
            if not isinstance(message, dict):
                raise DecodeError("Expected 'message' to be an object")
            content = message.get("content")
            if content is not None and not isinstance(content, str):
                raise DecodeError("Expected 'content' to be a string")
            if content:
                fragments.append(TextFragment(content))
            fragments.extend(_tool_calls(message.get("tool_calls")))

        if frame.get("done") is True:
            raw = frame.get("done_reason")
            if isinstance(raw, str) and raw:
                reason = _DONE_REASONS.get(raw, StopReason.UNKNOWN)
                fragments.append(FinishFragment(reason, raw=raw))
            prompt = frame.get("prompt_eval_count")
            completion = frame.get("eval_count")
            if isinstance(prompt, int) or isinstance(completion, int):
                fragments.append(
                    UsageFragment(
                        prompt_tokens=prompt if isinstance(prompt, int) else None,
                        completion_tokens=completion if isinstance(completion, int) else None,
                    )
                )
            fragments.append(EndOfStream())
        return fragments

    def interpret_response(self, body: Any) -> list[Fragment]:
        return self.interpret(body)

    def auth_headers(self, api_key: str) -> dict[str, str]:
        return cc.bearer_headers(api_key)


def _tool_calls(raw: Any) -> list[Fragment]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise DecodeError("Expected 'tool_calls' to be a list")
    fragments: list[Fragment] = []
    for item in raw:
        function = item.get("function") if isinstance(item, dict) else None
        if not isinstance(function, dict):
            raise DecodeError("Tool call without a function object")
        # Older servers send no index; the decoder numbers those calls itself.
        index = function.get("index")
        if index is not None and not isinstance(index, int):
            raise DecodeError("Tool call index must be an integer")
        call_id = item.get("id") or (f"call_{index}" if index is not None else None)
        arguments = function.get("arguments") or {}
        fragments.append(
            ToolCallFragment(
                index=index,
                id=str(call_id) if call_id is not None else None,
                name=str(function.get("name") or ""),
                arguments=arguments if isinstance(arguments, str) else json.dumps(arguments),
            )
        )
        if index is not None:
            fragments.append(ToolCallEnd(index))
    return fragments


def _message_to_wire(message: Message) -> dict[str, Any]:
    if message.role is Role.TOOL:
        if not message.tool_call_id:
            raise BuildError(
                "Tool result message is missing tool_call_id",
                reason=BuildErrorReason.INVALID_REQUEST,
            )
        return {"role": "tool", "content": message.content}
    wire: dict[str, Any] = {"role": message.role.value, "content": message.content}
    if message.role is Role.ASSISTANT and message.tool_calls:
        calls = []
        for call in message.tool_calls:
            try:
                arguments = json.loads(call.arguments or "{}")
            except json.JSONDecodeError as e:
                raise BuildError(
                    f"Tool call {call.id} has invalid JSON arguments",
                    reason=BuildErrorReason.INVALID_REQUEST,
                ) from e
            calls.append({"function": {"name": call.name, "arguments": arguments}})
        wire["tool_calls"] = calls
    return wire
