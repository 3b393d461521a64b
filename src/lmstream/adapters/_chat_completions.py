"""Helpers for vendors that speak the OpenAI Chat Completions wire format.

These are plain functions; each adapter composes the ones it needs and
overrides behavior locally.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from lmstream.adapters.base import (
    FinishFragment,
    Fragment,
    TextFragment,
    ToolCallFragment,
    UsageFragment,
    VendorErrorFragment,
)
from lmstream.errors import BuildError, BuildErrorReason, DecodeError
from lmstream.events import StopReason
from lmstream.types import ResponseFormat, Role

if TYPE_CHECKING:
    from lmstream.types import Message, ModelDescriptor, Request, ToolDefinition

logger = logging.getLogger(__name__)

CHAT_COMPLETIONS_PATH = "/chat/completions"

_FINISH_REASONS: dict[str, StopReason] = {
    "stop": StopReason.END_TURN,
    "eos": StopReason.END_TURN,
    "length": StopReason.MAX_TOKENS,
    "tool_calls": StopReason.TOOL_USE,
    "function_call": StopReason.TOOL_USE,
    "content_filter": StopReason.CONTENT_FILTER,
}


def normalize_finish_reason(raw: str) -> StopReason:
    """Map a Chat Completions ``finish_reason`` to ``StopReason``."""
    reason = _FINISH_REASONS.get(raw.lower())
    if reason is None:
        logger.debug("Unrecognized finish_reason %r", raw)
        return StopReason.UNKNOWN
    return reason


def require_messages(request: Request) -> None:
    if not request.messages:
        raise BuildError(
            "Request has no messages",
            reason=BuildErrorReason.INVALID_REQUEST,
        )


def check_tools(request: Request, model: ModelDescriptor) -> None:
    """Fail when tools are sent to a model that cannot call them."""
    if request.tools and not model.supports_tools:
        raise BuildError(
            f"Model {model.id} does not support tool calls",
            reason=BuildErrorReason.UNSUPPORTED_FEATURE,
            feature="tools",
            hint="Remove tools from the request or pick a tool-capable model.",
        )


def wants_json_mode(request: Request, model: ModelDescriptor) -> bool:
    """Return True when ``response_format`` should be sent.

    Models without JSON mode drop the field silently, unless the caller
    insisted on it.
    """
    if request.response_format is not ResponseFormat.JSON_OBJECT:
        return False
    if model.supports_json_mode:
        return True
    if request.require_response_format:
        raise BuildError(
            f"Model {model.id} does not support JSON mode",
            reason=BuildErrorReason.UNSUPPORTED_FEATURE,
            feature="response_format",
        )
    logger.debug("Dropping response_format for %s (no JSON mode)", model.id)
    return False


def effective_max_tokens(request: Request, model: ModelDescriptor) -> int | None:
    """Caller's limit, clamped to what the model can produce."""
    if request.max_tokens is None:
        return model.max_output_tokens
    if model.max_output_tokens is None:
        return request.max_tokens
    return min(request.max_tokens, model.max_output_tokens)


def message_to_wire(message: Message) -> dict[str, Any]:
    if message.role is Role.TOOL:
        if not message.tool_call_id:
            raise BuildError(
                "Tool result message is missing tool_call_id",
                reason=BuildErrorReason.INVALID_REQUEST,
            )
        return {
            "role": "tool",
            "tool_call_id": message.tool_call_id,
            "content": message.content,
        }
    if message.role is Role.ASSISTANT:
        wire: dict[str, Any] = {
            "role": "assistant",
            "content": message.content or None,
        }
        if message.tool_calls:
            wire["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": call.arguments},
                }
                for call in message.tool_calls
            ]
        return wire
    return {"role": message.role.value, "content": message.content}


def tool_to_wire(tool: ToolDefinition) -> dict[str, Any]:
    function: dict[str, Any] = {"name": tool.name, "parameters": tool.json_schema}
    if tool.description:
        function["description"] = tool.description
    return {"type": "function", "function": function}


def base_body(
    request: Request,
    model: ModelDescriptor,
    messages: list[dict[str, Any]],
    *,
    include_usage: bool = True,
) -> dict[str, Any]:
    """Assemble the common Chat Completions body."""
    check_tools(request, model)
    stream = request.stream and model.supports_streaming
    body: dict[str, Any] = {
        "model": model.id,
        "messages": messages,
        "stream": stream,
    }
    if stream and include_usage:
        body["stream_options"] = {"include_usage": True}
    max_tokens = effective_max_tokens(request, model)
    if max_tokens is not None:
        body["max_tokens"] = max_tokens
    if request.temperature is not None:
        body["temperature"] = request.temperature
    if request.stop:
        body["stop"] = list(request.stop)
    if request.tools:
        body["tools"] = [tool_to_wire(t) for t in request.tools]
        if request.tool_choice is not None:
            body["tool_choice"] = request.tool_choice
    if wants_json_mode(request, model):
        body["response_format"] = {"type": "json_object"}
    return body


def bearer_headers(api_key: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {api_key}"}


# --- Decoding ---


def _as_dict(value: Any, what: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise DecodeError(f"Expected {what} to be an object, got {type(value).__name__}")
    return value


def _optional_str(container: dict[str, Any], key: str) -> str | None:
    value = container.get(key)
    if value is None or isinstance(value, str):
        return value
    raise DecodeError(f"Expected {key!r} to be a string")


def error_message(payload: Any) -> str | None:
    """Extract a human-readable message from a vendor error object, if any."""
    if not isinstance(payload, dict) or "error" not in payload:
        return None
    error = payload["error"]
    if isinstance(error, str):
        return error
    if isinstance(error, dict):
        message = error.get("message")
        if isinstance(message, str) and message:
            return message
        return str(error)
    return str(error)


def usage_fragment(usage: Any) -> UsageFragment | None:
    if not isinstance(usage, dict):
        return None
    prompt = usage.get("prompt_tokens")
    completion = usage.get("completion_tokens")
    return UsageFragment(
        prompt_tokens=prompt if isinstance(prompt, int) else None,
        completion_tokens=completion if isinstance(completion, int) else None,
    )


def interpret_chunk(frame: Any) -> list[Fragment]:
    """Interpret one ``chat.completion.chunk`` frame."""
    chunk = _as_dict(frame, "chunk")
    message = error_message(chunk)
    if message is not None:
        return [VendorErrorFragment(message)]

    fragments: list[Fragment] = []
    choices = chunk.get("choices") or []
    if not isinstance(choices, list):
        raise DecodeError("Expected 'choices' to be a list")
    for choice in choices:
        choice = _as_dict(choice, "choice")
        if choice.get("index", 0) != 0:
            continue
        delta = _as_dict(choice.get("delta") or {}, "delta")
        content = _optional_str(delta, "content")
        if content:
            fragments.append(TextFragment(content))
        fragments.extend(_tool_call_fragments(delta.get("tool_calls")))
        finish = _optional_str(choice, "finish_reason")
        if finish:
            fragments.append(FinishFragment(normalize_finish_reason(finish), raw=finish))

    usage = usage_fragment(chunk.get("usage"))
    if usage is not None:
        fragments.append(usage)
    return fragments


def _tool_call_fragments(raw: Any) -> list[Fragment]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise DecodeError("Expected 'tool_calls' to be a list")
    fragments: list[Fragment] = []
    for position, item in enumerate(raw):
        item = _as_dict(item, "tool call")
        index = item.get("index", position)
        if not isinstance(index, int):
            raise DecodeError("Tool call index must be an integer")
        function = _as_dict(item.get("function") or {}, "function")
        fragments.append(
            ToolCallFragment(
                index=index,
                id=_optional_str(item, "id") or None,
                name=_optional_str(function, "name") or None,
                arguments=_optional_str(function, "arguments"),
            )
        )
    return fragments


def interpret_completion(body: Any) -> list[Fragment]:
    """Interpret a complete, non-streaming ``chat.completion`` body."""
    completion = _as_dict(body, "completion")
    message = error_message(completion)
    if message is not None:
        return [VendorErrorFragment(message)]

    choices = completion.get("choices")
    if not isinstance(choices, list) or not choices:
        raise DecodeError("Completion has no choices")
    choice = _as_dict(choices[0], "choice")
    reply = _as_dict(choice.get("message") or {}, "message")

    fragments: list[Fragment] = []
    content = _optional_str(reply, "content")
    if content:
        fragments.append(TextFragment(content))
    tool_calls = reply.get("tool_calls") or []
    if not isinstance(tool_calls, list):
        raise DecodeError("Expected 'tool_calls' to be a list")
    for index, item in enumerate(tool_calls):
        item = _as_dict(item, "tool call")
        function = _as_dict(item.get("function") or {}, "function")
        fragments.append(
            ToolCallFragment(
                index=index,
                id=_optional_str(item, "id") or f"call_{index}",
                name=_optional_str(function, "name") or "",
                arguments=_optional_str(function, "arguments") or "{}",
            )
        )
    finish = _optional_str(choice, "finish_reason")
    if finish:
        fragments.append(FinishFragment(normalize_finish_reason(finish), raw=finish))
    usage = usage_fragment(completion.get("usage"))
    if usage is not None:
        fragments.append(usage)
    return fragments
