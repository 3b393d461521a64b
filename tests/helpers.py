"""Test helpers (small, reusable builders and doubles).

Keep this file tiny and purpose-built: wire-format builders for the vendors
under test, a scripted response body, and a model factory over
``httpx.MockTransport``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
import json
from typing import Any

import httpx

from lmstream.adapters import OpenAIAdapter
from lmstream.auth import AuthenticationState, CredentialSource
from lmstream.decoder import StreamDecoder
from lmstream.model import LanguageModel
from lmstream.rate_limit import RateLimiter
from lmstream.types import ModelCapabilities, ModelDescriptor

BASE_URL = "https://api.test/v1"

GPT = ModelDescriptor(
    id="gpt-test",
    display_name="GPT Test",
    max_tokens=128_000,
    max_output_tokens=4_096,
    capabilities=ModelCapabilities(supports_json_mode=True, supports_parallel_tool_calls=True),
)

PLAIN = ModelDescriptor(
    id="plain",
    display_name="Plain",
    max_tokens=8_192,
    capabilities=ModelCapabilities(supports_tools=False),
)

# --- wire builders ---


def sse(*frames: dict[str, Any] | str, done: bool = True) -> bytes:
    """SSE body: one ``data:`` line per frame, then ``[DONE]``."""
    lines = []
    for frame in frames:
        payload = frame if isinstance(frame, str) else json.dumps(frame)
        lines.append(f"data: {payload}\n\n")
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines).encode()


def anthropic_sse(*events: dict[str, Any]) -> bytes:
    return "".join(
        f"event: {e['type']}\ndata: {json.dumps(e)}\n\n" for e in events
    ).encode()


def ndjson(*frames: dict[str, Any]) -> bytes:
    return "".join(json.dumps(f) + "\n" for f in frames).encode()


def chunk(
    content: str | None = None,
    *,
    tool_calls: list[dict[str, Any]] | None = None,
    finish_reason: str | None = None,
    usage: dict[str, int] | None = None,
) -> dict[str, Any]:
    """A ``chat.completion.chunk`` frame."""
    delta: dict[str, Any] = {}
    if content is not None:
        delta["content"] = content
    if tool_calls is not None:
        delta["tool_calls"] = tool_calls
    frame: dict[str, Any] = {
        "object": "chat.completion.chunk",
        "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
    }
    if usage is not None:
        frame["usage"] = usage
    return frame


def tool_delta(
    index: int,
    *,
    id: str | None = None,
    name: str | None = None,
    arguments: str | None = None,
) -> dict[str, Any]:
    function: dict[str, Any] = {}
    if name is not None:
        function["name"] = name
    if arguments is not None:
        function["arguments"] = arguments
    item: dict[str, Any] = {"index": index, "function": function}
    if id is not None:
        item["id"] = id
        item["type"] = "function"
    return item


def split_every(data: bytes, size: int) -> list[bytes]:
    return [data[i : i + size] for i in range(0, len(data), size)]


def decode(chunks: list[bytes], adapter: Any | None = None) -> list[Any]:
    """Run a whole body through a fresh decoder."""
    decoder = StreamDecoder(adapter or OpenAIAdapter())
    events: list[Any] = []
    for part in chunks:
        events.extend(decoder.feed(part))
    events.extend(decoder.finish())
    return events


# --- transport doubles ---


class ScriptedBody(httpx.AsyncByteStream):
    """Response body that yields *chunks*, then optionally blocks forever.

    ``gate`` (if given) must be set before each chunk after the first is
    released, which lets a test interleave cancellation with reading.
    """

    def __init__(
        self,
        chunks: list[bytes],
        *,
        hang: bool = False,
        gate: asyncio.Event | None = None,
    ) -> None:
        self.chunks = chunks
        self.hang = hang
        self.gate = gate
        self.closed = False

    async def __aiter__(self):
        for i, part in enumerate(self.chunks):
            if self.gate is not None and i > 0:
                await self.gate.wait()
                self.gate.clear()
            yield part
        if self.hang:
            await asyncio.Event().wait()

    async def aclose(self) -> None:
        self.closed = True


class Recorder:
    """``MockTransport`` handler that records requests and replays responses."""

    def __init__(self, *responses: httpx.Response | Callable[[httpx.Request], httpx.Response]) -> None:
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        return item(request) if callable(item) else item

    @property
    def last_json(self) -> dict[str, Any]:
        return json.loads(self.requests[-1].content)


def streaming_response(body: bytes | list[bytes], **kwargs: Any) -> httpx.Response:
    chunks = body if isinstance(body, list) else [body]
    return httpx.Response(200, stream=ScriptedBody(chunks, **kwargs))


def make_model(
    handler: Callable[[httpx.Request], httpx.Response],
    *,
    descriptor: ModelDescriptor = GPT,
    adapter: Any | None = None,
    limiter: RateLimiter | None = None,
    idle_timeout_s: float | None = None,
    api_key: str | None = "sk-test",
) -> LanguageModel:
    auth = AuthenticationState("test", env_var="TEST_API_KEY")
    if api_key is not None:
        auth.set_credential(api_key, CredentialSource.EXPLICIT)
    client = httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(handler))
    return LanguageModel(
        descriptor,
        provider_id="test",
        adapter=adapter or OpenAIAdapter(),
        client=client,
        limiter=limiter or RateLimiter("test"),
        auth=auth,
        idle_timeout_s=idle_timeout_s,
    )
