"""Anthropic Messages API adapter."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

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
from lmstream.types import ResponseFormat, Role

if TYPE_CHECKING:
    from lmstream.types import Message, ModelDescriptor, Request, ToolDefinition

ANTHROPIC_VERSION = "2023-06-01"
_DEFAULT_MAX_TOKENS = 8192

_STOP_REASONS: dict[str, StopReason] = {
    "end_turn": StopReason.END_TURN,
    "stop_sequence": StopReason.END_TURN,
    "max_tokens": StopReason.MAX_TOKENS,
    "tool_use": StopReason.TOOL_USE,
    "refusal": StopReason.CONTENT_FILTER,
}


class AnthropicAdapter:
    """Messages API over SSE.

    Streams are sequences of typed events (``message_start``,
    ``content_block_delta``, ...). Tool calls are content blocks, so a
    tool call's index is its content-block index and each call is closed
    by its own ``content_block_stop``.
    """

    vendor = "anthropic"
    framing = Framing.SSE

    def build(self, request: Request, model: ModelDescriptor) -> WirePayload:
        if not request.messages:
            raise BuildError("Request has no messages", reason=BuildErrorReason.INVALID_REQUEST)
        if request.tools and not model.supports_tools:
            raise BuildError(
                f"Model {model.id} does not support tool calls",
                reason=BuildErrorReason.UNSUPPORTED_FEATURE,
                feature="tools",
            )
        if (
            request.response_format is ResponseFormat.JSON_OBJECT
            and request.require_response_format
            and not model.supports_json_mode
        ):
            raise BuildError(
                f"Model {model.id} does not support JSON mode",
                reason=BuildErrorReason.UNSUPPORTED_FEATURE,
                feature="response_format",
            )

        system_parts = [m.content for m in request.messages if m.role is Role.SYSTEM and m.content]
        messages = _build_messages(request.messages)
        if not messages:
            raise BuildError(
                "Request needs at least one non-system message",
                reason=BuildErrorReason.INVALID_REQUEST,
            )

        max_tokens = request.max_tokens or model.max_output_tokens or _DEFAULT_MAX_TOKENS
        if model.max_output_tokens is not None:
            max_tokens = min(max_tokens, model.max_output_tokens)

        body: dict[str, Any] = {
            "model": model.id,
            "messages": messages,
            "max_tokens": max_tokens,
            "stream": request.stream and model.supports_streaming,
        }
        if system_parts:
            body["system"] = "\n\n".join(system_parts)
        if request.temperature is not None:
            body["temperature"] = request.temperature
        if request.stop:
            body["stop_sequences"] = list(request.stop)
        if request.tools:
            body["tools"] = [_tool_to_wire(t) for t in request.tools]
            mapped = _map_tool_choice(request.tool_choice)
            if mapped is not None:
                body["tool_choice"] = mapped

        return WirePayload(
            path="/messages",
            body=body,
            headers={"anthropic-version": ANTHROPIC_VERSION},
        )

    def interpret(self, frame: Any) -> list[Fragment]:
        if not isinstance(frame, dict):
            raise DecodeError("Expected an event object")
        event_type = frame.get("type")

        if event_type == "content_block_delta":
            index = _index(frame)
            delta = frame.get("delta")
            if not isinstance(delta, dict):
                raise DecodeError("content_block_delta without delta")
            delta_type = delta.get("type")
            if delta_type == "text_delta":
                text = delta.get("text")
                if not isinstance(text, str):
                    raise DecodeError("text_delta without text")
                return [TextFragment(text)] if text else []
            if delta_type == "input_json_delta":
                partial = delta.get("partial_json")
                if not isinstance(partial, str):
                    raise DecodeError("input_json_delta without partial_json")
                return [ToolCallFragment(index=index, arguments=partial)]
            # thinking_delta, signature_delta: not part of the completion text
            return []

        if event_type == "content_block_start":
            index = _index(frame)
            block = frame.get("content_block")
            if not isinstance(block, dict):
                raise DecodeError("content_block_start without content_block")
            if block.get("type") == "tool_use":
                return [
                    ToolCallFragment(
                        index=index,
                        id=str(block.get("id") or ""),
                        name=str(block.get("name") or ""),
                    )
                ]
            if block.get("type") == "text" and block.get("text"):
                return [TextFragment(str(block["text"]))]
            return []

        if event_type == "content_block_stop":
            return [ToolCallEnd(_index(frame))]

        if event_type == "message_start":
            message = frame.get("message")
            usage = message.get("usage") if isinstance(message, dict) else None
            fragment = _usage(usage)
            return [fragment] if fragment is not None else []

        if event_type == "message_delta":
            fragments: list[Fragment] = []
            delta = frame.get("delta")
            if isinstance(delta, dict) and isinstance(delta.get("stop_reason"), str):
                raw = delta["stop_reason"]
                fragments.append(FinishFragment(_normalize_stop_reason(raw), raw=raw))
            usage = _usage(frame.get("usage"))
            if usage is not None:
                fragments.append(usage)
            return fragments

        if event_type == "message_stop":
            return [EndOfStream()]

        if event_type == "error":
            error = frame.get("error")
            if isinstance(error, dict):
                return [VendorErrorFragment(str(error.get("message") or error))]
            return [VendorErrorFragment(str(error))]

        # ping and event types added after this adapter was written
        return []

    def interpret_response(self, body: Any) -> list[Fragment]:
        if not isinstance(body, dict):
            raise DecodeError("Expected a message object")
        if body.get("type") == "error":
            error = body.get("error")
            message = error.get("message") if isinstance(error, dict) else error
            return [VendorErrorFragment(str(message))]

        content = body.get("content")
        if not isinstance(content, list):
            raise DecodeError("Message has no content list")
        fragments: list[Fragment] = []
        for index, block in enumerate(content):
            if not isinstance(block, dict):
                continue
            if block.get("type") == "text" and block.get("text"):
                fragments.append(TextFragment(str(block["text"])))
            elif block.get("type") == "tool_use":
                fragments.append(
                    ToolCallFragment(
                        index=index,
                        id=str(block.get("id") or ""),
                        name=str(block.get("name") or ""),
                        arguments=json.dumps(block.get("input") or {}),
                    )
                )
                fragments.append(ToolCallEnd(index))
        stop_reason = body.get("stop_reason")
        if isinstance(stop_reason, str):
            fragments.append(FinishFragment(_normalize_stop_reason(stop_reason), raw=stop_reason))
        usage = _usage(body.get("usage"))
        if usage is not None:
            fragments.append(usage)
        return fragments

    def auth_headers(self, api_key: str) -> dict[str, str]:
        return {"x-api-key": api_key}


def _index(frame: dict[str, Any]) -> int:
    index = frame.get("index")
    if not isinstance(index, int):
        raise DecodeError("Content block event without an integer index")
    return index


def _usage(usage: Any) -> UsageFragment | None:
    if not isinstance(usage, dict):
        return None
    prompt = usage.get("input_tokens")
    completion = usage.get("output_tokens")
    return UsageFragment(
        prompt_tokens=prompt if isinstance(prompt, int) else None,
        completion_tokens=completion if isinstance(completion, int) else None,
    )


def _normalize_stop_reason(raw: str) -> StopReason:
    return _STOP_REASONS.get(raw.lower(), StopReason.UNKNOWN)


def _tool_to_wire(tool: ToolDefinition) -> dict[str, Any]:
    wire: dict[str, Any] = {"name": tool.name, "input_schema": tool.json_schema}
    if tool.description:
        wire["description"] = tool.description
    return wire


def _map_tool_choice(tool_choice: str | None) -> dict[str, str] | None:
    if tool_choice == "required":
        return {"type": "any"}
    if tool_choice in ("auto", "none"):
        return {"type": tool_choice}
    return None


def _build_messages(history: tuple[Message, ...]) -> list[dict[str, Any]]:
    """Convert non-system messages, merging same-role neighbours.

    Anthropic requires strict user/assistant alternation, and tool results
    travel as ``tool_result`` blocks inside a user message.
    """
    messages: list[dict[str, Any]] = []
    for item in history:
        if item.role is Role.SYSTEM:
            continue
        if item.role is Role.TOOL:
            if not item.tool_call_id:
                raise BuildError(
                    "Tool result message is missing tool_call_id",
                    reason=BuildErrorReason.INVALID_REQUEST,
                )
            _append_message(
                messages,
                {
                    "role": "user",
                    "content": [
                        {
                            "type": "tool_result",
                            "tool_use_id": item.tool_call_id,
                            "content": item.content,
                        }
                    ],
                },
            )
        elif item.role is Role.ASSISTANT:
            blocks: list[dict[str, Any]] = []
            if item.content:
                blocks.append({"type": "text", "text": item.content})
            for call in item.tool_calls:
                try:
                    arguments = json.loads(call.arguments or "{}")
                except json.JSONDecodeError as e:
                    raise BuildError(
                        f"Tool call {call.id} has invalid JSON arguments",
                        reason=BuildErrorReason.INVALID_REQUEST,
                    ) from e
                blocks.append(
                    {"type": "tool_use", "id": call.id, "name": call.name, "input": arguments}
                )
            if blocks:
                _append_message(messages, {"role": "assistant", "content": blocks})
        else:
            _append_message(messages, {"role": "user", "content": item.content})
    return messages


def _append_message(messages: list[dict[str, Any]], msg: dict[str, Any]) -> None:
    """Append *msg*, merging into the previous message when roles match."""
    if messages and messages[-1]["role"] == msg["role"]:
        prev = messages[-1]
        prev_content = prev["content"]
        new_content = msg["content"]
        if isinstance(prev_content, str):
            prev_content = [{"type": "text", "text": prev_content}]
        if isinstance(new_content, str):
            new_content = [{"type": "text", "text": new_content}]
        prev["content"] = prev_content + new_content
    else:
        messages.append(msg)
