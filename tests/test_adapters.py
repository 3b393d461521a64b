"""Request-builder behavior shared by every vendor adapter, plus vendor specifics."""

from __future__ import annotations

from typing import Any

import pytest

from lmstream.adapters import (
    AnthropicAdapter,
    DeepSeekAdapter,
    OllamaAdapter,
    OpenAIAdapter,
    OpenRouterAdapter,
    VendorAdapter,
)
from lmstream.errors import BuildError, BuildErrorReason
from lmstream.types import (
    Message,
    ModelCapabilities,
    ModelDescriptor,
    Request,
    ResponseFormat,
    Role,
    ToolDefinition,
    ToolUse,
)
from tests.helpers import GPT, PLAIN

ALL_ADAPTERS = [
    OpenAIAdapter(),
    OpenAIAdapter(vendor="litellm"),
    DeepSeekAdapter(),
    OpenRouterAdapter(),
    AnthropicAdapter(),
    OllamaAdapter(),
]

WEATHER = ToolDefinition(
    name="get_weather",
    description="Current weather for a city",
    json_schema={"type": "object", "properties": {"city": {"type": "string"}}},
)

CONVERSATION = (
    Message(Role.SYSTEM, "Be brief."),
    Message(Role.USER, "Hi"),
    Message(Role.ASSISTANT, "Hello! How can I help?"),
    Message(Role.USER, "Tell me a joke"),
)


def _text_of(content: Any) -> str:
    if isinstance(content, str) or content is None:
        return content or ""
    return "".join(block.get("text", "") for block in content)


def _role_content_pairs(body: dict[str, Any]) -> list[tuple[str, str]]:
    """Read the conversation back out of any vendor's request body."""
    pairs = []
    if "system" in body:
        pairs.append(("system", body["system"]))
    pairs.extend((m["role"], _text_of(m["content"])) for m in body["messages"])
    return pairs


@pytest.mark.contract
@pytest.mark.parametrize("adapter", ALL_ADAPTERS, ids=lambda a: a.vendor)
def test_adapter_satisfies_protocol(adapter) -> None:
    assert isinstance(adapter, VendorAdapter)


@pytest.mark.contract
@pytest.mark.parametrize("adapter", ALL_ADAPTERS, ids=lambda a: a.vendor)
def test_payload_preserves_role_and_content_order(adapter) -> None:
    payload = adapter.build(Request(messages=CONVERSATION), GPT)

    assert _role_content_pairs(payload.body) == [
        (m.role.value, m.content) for m in CONVERSATION
    ]
    assert payload.body["model"] == GPT.id
    assert payload.body["stream"] is True


@pytest.mark.contract
@pytest.mark.parametrize("adapter", ALL_ADAPTERS, ids=lambda a: a.vendor)
def test_tools_for_model_without_tool_support_fail(adapter) -> None:
    request = Request(messages=CONVERSATION, tools=[WEATHER])

    with pytest.raises(BuildError) as excinfo:
        adapter.build(request, PLAIN)

    assert excinfo.value.reason is BuildErrorReason.UNSUPPORTED_FEATURE
    assert excinfo.value.feature == "tools"


@pytest.mark.contract
@pytest.mark.parametrize("adapter", ALL_ADAPTERS, ids=lambda a: a.vendor)
def test_required_json_mode_on_unsupported_model_fails(adapter) -> None:
    request = Request(
        messages=CONVERSATION,
        response_format=ResponseFormat.JSON_OBJECT,
        require_response_format=True,
    )

    with pytest.raises(BuildError) as excinfo:
        adapter.build(request, PLAIN)

    assert excinfo.value.reason is BuildErrorReason.UNSUPPORTED_FEATURE


@pytest.mark.contract
@pytest.mark.parametrize("adapter", ALL_ADAPTERS, ids=lambda a: a.vendor)
def test_empty_request_fails(adapter) -> None:
    with pytest.raises(BuildError) as excinfo:
        adapter.build(Request(messages=()), GPT)
    assert excinfo.value.reason is BuildErrorReason.INVALID_REQUEST


@pytest.mark.contract
@pytest.mark.parametrize("adapter", ALL_ADAPTERS, ids=lambda a: a.vendor)
def test_non_streaming_model_requests_single_body(adapter) -> None:
    batch_only = ModelDescriptor(
        id="batch-only",
        display_name="Batch",
        max_tokens=8_192,
        capabilities=ModelCapabilities(supports_streaming=False),
    )
    payload = adapter.build(Request(messages=CONVERSATION), batch_only)
    assert payload.body["stream"] is False


# --- Chat Completions family ---


@pytest.mark.unit
def test_openai_body_shape() -> None:
    request = Request(
        messages=CONVERSATION,
        tools=[WEATHER],
        tool_choice="required",
        temperature=0.2,
        max_tokens=100_000,
        stop=["\n\n"],
        response_format=ResponseFormat.JSON_OBJECT,
    )

    payload = OpenAIAdapter().build(request, GPT)
    body = payload.body

    assert payload.path == "/chat/completions"
    assert body["stream_options"] == {"include_usage": True}
    assert body["max_tokens"] == GPT.max_output_tokens
    assert body["temperature"] == 0.2
    assert body["stop"] == ["\n\n"]
    assert body["tool_choice"] == "required"
    assert body["parallel_tool_calls"] is True
    assert body["response_format"] == {"type": "json_object"}
    assert body["tools"] == [
        {
            "type": "function",
            "function": {
                "name": "get_weather",
                "description": "Current weather for a city",
                "parameters": WEATHER.json_schema,
            },
        }
    ]


@pytest.mark.unit
def test_json_mode_is_dropped_silently_when_not_required() -> None:
    request = Request(messages=CONVERSATION, response_format=ResponseFormat.JSON_OBJECT)

    body = OpenAIAdapter().build(request, PLAIN).body

    assert "response_format" not in body


@pytest.mark.unit
def test_tool_round_trip_messages() -> None:
    call = ToolUse(id="call_1", name="get_weather", arguments='{"city": "Oslo"}')
    request = Request(
        messages=[
            Message(Role.USER, "Weather in Oslo?"),
            Message(Role.ASSISTANT, tool_calls=(call,)),
            Message(Role.TOOL, "-3C", tool_call_id="call_1"),
        ],
        tools=[WEATHER],
    )

    messages = OpenAIAdapter().build(request, GPT).body["messages"]

    assert messages[1] == {
        "role": "assistant",
        "content": None,
        "tool_calls": [
            {
                "id": "call_1",
                "type": "function",
                "function": {"name": "get_weather", "arguments": '{"city": "Oslo"}'},
            }
        ],
    }
    assert messages[2] == {"role": "tool", "tool_call_id": "call_1", "content": "-3C"}


@pytest.mark.unit
def test_tool_result_without_call_id_fails() -> None:
    request = Request(messages=[Message(Role.TOOL, "result")])
    with pytest.raises(BuildError):
        OpenAIAdapter().build(request, GPT)


@pytest.mark.unit
def test_bearer_auth_headers() -> None:
    assert OpenAIAdapter().auth_headers("sk-1") == {"Authorization": "Bearer sk-1"}


@pytest.mark.unit
def test_deepseek_reasoner_merges_consecutive_same_role_messages() -> None:
    reasoner = ModelDescriptor(
        id="deepseek-reasoner",
        display_name="DeepSeek Reasoner",
        max_tokens=32_768,
        max_output_tokens=4_096,
        capabilities=ModelCapabilities(supports_tools=False),
    )
    request = Request(
        messages=[
            Message(Role.SYSTEM, "Be brief."),
            Message(Role.USER, "First part."),
            Message(Role.USER, "Second part."),
            Message(Role.ASSISTANT, "Ok."),
            Message(Role.ASSISTANT, "Done."),
        ]
    )

    messages = DeepSeekAdapter().build(request, reasoner).body["messages"]

    assert messages == [
        {"role": "system", "content": "Be brief."},
        {"role": "user", "content": "First part. Second part."},
        {"role": "assistant", "content": "Ok. Done."},
    ]


@pytest.mark.unit
def test_deepseek_chat_keeps_messages_separate() -> None:
    chat = ModelDescriptor(id="deepseek-chat", display_name="DeepSeek Chat", max_tokens=32_768)
    request = Request(messages=[Message(Role.USER, "a"), Message(Role.USER, "b")])

    messages = DeepSeekAdapter().build(request, chat).body["messages"]

    assert [m["content"] for m in messages] == ["a", "b"]


@pytest.mark.unit
def test_openrouter_attribution_headers_and_parallel_flag() -> None:
    adapter = OpenRouterAdapter(app_url="https://example.org", app_name="Example")
    request = Request(messages=CONVERSATION, tools=[WEATHER])
    no_parallel = ModelDescriptor(id="qwen/qwen3-4b:free", display_name="Qwen", max_tokens=128_000)

    with_parallel = adapter.build(request, GPT)
    without_parallel = adapter.build(request, no_parallel)

    assert with_parallel.headers == {"HTTP-Referer": "https://example.org", "X-Title": "Example"}
    assert with_parallel.body["parallel_tool_calls"] is True
    assert "parallel_tool_calls" not in without_parallel.body


# --- Anthropic ---


@pytest.mark.unit
def test_anthropic_body_shape() -> None:
    claude = ModelDescriptor(id="claude-test", display_name="Claude", max_tokens=200_000, max_output_tokens=8_192)
    request = Request(
        messages=[
            Message(Role.SYSTEM, "Rule one."),
            Message(Role.SYSTEM, "Rule two."),
            Message(Role.USER, "Weather in Oslo?"),
            Message(
                Role.ASSISTANT,
                "Checking.",
                tool_calls=(ToolUse(id="toolu_1", name="get_weather", arguments='{"city":"Oslo"}'),),
            ),
            Message(Role.TOOL, "-3C", tool_call_id="toolu_1"),
        ],
        tools=[WEATHER],
        tool_choice="required",
        stop=["END"],
    )

    payload = AnthropicAdapter().build(request, claude)
    body = payload.body

    assert payload.path == "/messages"
    assert payload.headers == {"anthropic-version": "2023-06-01"}
    assert body["system"] == "Rule one.\n\nRule two."
    assert body["max_tokens"] == 8_192
    assert body["stop_sequences"] == ["END"]
    assert body["tool_choice"] == {"type": "any"}
    assert body["tools"][0]["input_schema"] == WEATHER.json_schema
    assert body["messages"][1] == {
        "role": "assistant",
        "content": [
            {"type": "text", "text": "Checking."},
            {"type": "tool_use", "id": "toolu_1", "name": "get_weather", "input": {"city": "Oslo"}},
        ],
    }
    assert body["messages"][2] == {
        "role": "user",
        "content": [{"type": "tool_result", "tool_use_id": "toolu_1", "content": "-3C"}],
    }


@pytest.mark.unit
def test_anthropic_merges_consecutive_user_turns() -> None:
    request = Request(messages=[Message(Role.USER, "a"), Message(Role.USER, "b")])

    messages = AnthropicAdapter().build(request, GPT).body["messages"]

    assert messages == [
        {"role": "user", "content": [{"type": "text", "text": "a"}, {"type": "text", "text": "b"}]}
    ]


@pytest.mark.unit
def test_anthropic_uses_api_key_header() -> None:
    assert AnthropicAdapter().auth_headers("sk-ant") == {"x-api-key": "sk-ant"}


# --- Ollama ---


@pytest.mark.unit
def test_ollama_body_shape() -> None:
    request = Request(
        messages=CONVERSATION,
        temperature=0.5,
        max_tokens=256,
        response_format=ResponseFormat.JSON_OBJECT,
    )

    payload = OllamaAdapter().build(request, GPT)

    assert payload.path == "/api/chat"
    assert payload.body["options"] == {"temperature": 0.5, "num_predict": 256}
    assert payload.body["format"] == "json"
