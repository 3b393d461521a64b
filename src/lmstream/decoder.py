"""Incremental stream decoder: bytes in, ordered ``CompletionEvent``s out.

The decoder is an explicit state machine::

    IDLE --first chunk--> STREAMING --sentinel / close--> DRAINING --> DONE
      \\______________________ failure --> ERROR ___________________/

Framing (SSE lines or NDJSON lines) is handled by a framer that buffers
partial lines across chunk boundaries, so the event sequence never depends
on how the body was chunked. Each complete frame is parsed as JSON and
handed to the vendor adapter, which maps it to fragments. The decoder
applies those fragments to its own state (tool-call accumulators, pending
usage, finish reason) and emits events.

Malformed frames are skipped. Hard failures (an oversized frame, tool-call
arguments that are not valid JSON when the call completes) end the stream
with a single ``Error`` event.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
import json
import logging
from typing import TYPE_CHECKING, Any, Final

from lmstream.adapters.base import (
    EndOfStream,
    FinishFragment,
    Framing,
    TextFragment,
    ToolCallEnd,
    ToolCallFragment,
    UsageFragment,
    VendorErrorFragment,
)
from lmstream.errors import DecodeError
from lmstream.events import (
    Error,
    ErrorKind,
    Stop,
    StopReason,
    TextDelta,
    ToolCallArgumentsDelta,
    ToolCallComplete,
    ToolCallStart,
    UsageUpdate,
)

if TYPE_CHECKING:
    from lmstream.adapters.base import Fragment, VendorAdapter
    from lmstream.events import CompletionEvent

logger = logging.getLogger(__name__)

DEFAULT_MAX_FRAME_BYTES: Final = 8 * 1024 * 1024


class DecoderState(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    DRAINING = "draining"
    ERROR = "error"
    DONE = "done"


class _Sentinel:
    def __repr__(self) -> str:
        return "DONE_SENTINEL"


#: Yielded by a framer when the vendor signals the end of the stream in-band.
DONE_SENTINEL: Final = _Sentinel()

Frame = str | _Sentinel


class _LineBuffer:
    """Splits a byte stream into complete lines, keeping the partial tail."""

    def __init__(self, max_line_bytes: int) -> None:
        self._buffer = bytearray()
        self._max_line_bytes = max_line_bytes

    def feed(self, chunk: bytes) -> list[bytes]:
        self._buffer.extend(chunk)
        lines: list[bytes] = []
        start = 0
        while True:
            end = self._buffer.find(b"\n", start)
            if end == -1:
                break
            lines.append(bytes(self._buffer[start:end]).rstrip(b"\r"))
            start = end + 1
        del self._buffer[:start]
        if len(self._buffer) > self._max_line_bytes:
            raise DecodeError(
                f"Frame exceeds {self._max_line_bytes} bytes without a line break"
            )
        return lines

    def flush(self) -> list[bytes]:
        if not self._buffer:
            return []
        tail = bytes(self._buffer).rstrip(b"\r")
        self._buffer.clear()
        return [tail]


def _decode_line(line: bytes) -> str | None:
    try:
        return line.decode("utf-8")
    except UnicodeDecodeError:
        logger.debug("Skipping frame with invalid UTF-8 (%d bytes)", len(line))
        return None


class SSEFramer:
    """Server-Sent Events framing: one ``data:`` line per frame.

    ``event:``, ``id:``, ``retry:`` and comment lines carry nothing the
    adapters need. The payload ``[DONE]`` is the end-of-stream sentinel.
    """

    def __init__(self, max_frame_bytes: int = DEFAULT_MAX_FRAME_BYTES) -> None:
        self._lines = _LineBuffer(max_frame_bytes)

    def feed(self, chunk: bytes) -> list[Frame]:
        return self._frames(self._lines.feed(chunk))

    def flush(self) -> list[Frame]:
        return self._frames(self._lines.flush())

    def _frames(self, lines: list[bytes]) -> list[Frame]:
        frames: list[Frame] = []
        for raw in lines:
            line = _decode_line(raw)
            if not line or line.startswith(":"):
                continue
            if line.startswith("data:"):
                payload = line[5:]
                if payload.startswith(" "):
                    payload = payload[1:]
                if payload.strip() == "[DONE]":
                    frames.append(DONE_SENTINEL)
                elif payload.strip():
                    frames.append(payload)
                continue
            if line.startswith(("event:", "id:", "retry:")):
                continue
            logger.debug("Skipping non-SSE line: %.80s", line)
        return frames


class NDJSONFramer:
    """Newline-delimited JSON: every non-blank line is one frame."""

    def __init__(self, max_frame_bytes: int = DEFAULT_MAX_FRAME_BYTES) -> None:
        self._lines = _LineBuffer(max_frame_bytes)

    def feed(self, chunk: bytes) -> list[Frame]:
        return self._frames(self._lines.feed(chunk))

    def flush(self) -> list[Frame]:
        return self._frames(self._lines.flush())

    def _frames(self, lines: list[bytes]) -> list[Frame]:
        frames: list[Frame] = []
        for raw in lines:
            line = _decode_line(raw)
            if line is not None and line.strip():
                frames.append(line)
        return frames


def make_framer(
    framing: Framing, max_frame_bytes: int = DEFAULT_MAX_FRAME_BYTES
) -> SSEFramer | NDJSONFramer:
    if framing is Framing.NDJSON:
        return NDJSONFramer(max_frame_bytes)
    return SSEFramer(max_frame_bytes)


@dataclass
class ToolCallAccumulator:
    """In-progress tool call. Fragments are only joined, never parsed early."""

    index: int
    id: str
    name: str
    fragments: list[str] = field(default_factory=list)

    @property
    def arguments(self) -> str:
        return "".join(self.fragments)


class StreamDecoder:
    """Decode one HTTP response body for one vendor."""

    def __init__(
        self,
        adapter: VendorAdapter,
        *,
        max_frame_bytes: int = DEFAULT_MAX_FRAME_BYTES,
    ) -> None:
        self.adapter = adapter
        self.state = DecoderState.IDLE
        self._framer = make_framer(adapter.framing, max_frame_bytes)
        self._open: dict[int, ToolCallAccumulator] = {}
        self._closed: set[int] = set()
        self._finish_reason: StopReason | None = None
        self._prompt_tokens: int | None = None
        self._completion_tokens: int | None = None
        self.skipped_frames = 0
        #: The ``Stop`` or ``Error`` event that ended the stream.
        self.outcome: Stop | Error | None = None

    @property
    def done(self) -> bool:
        return self.state is DecoderState.DONE

    def feed(self, chunk: bytes) -> list[CompletionEvent]:
        """Consume one chunk of the body and return the events it completes."""
        if self.done:
            return []
        if self.state is DecoderState.IDLE:
            self.state = DecoderState.STREAMING
        try:
            frames = self._framer.feed(chunk)
        except DecodeError as e:
            return self.fail(ErrorKind.DECODE, str(e))
        return self._on_frames(frames)

    def finish(self) -> list[CompletionEvent]:
        """The transport closed the body: flush the tail, then drain."""
        if self.done:
            return []
        events = self._on_frames(self._framer.flush())
        if not self.done:
            events.extend(self._drain())
        return events

    def feed_response(self, body: bytes) -> list[CompletionEvent]:
        """Decode a complete non-streaming response body."""
        if self.done:
            return []
        self.state = DecoderState.STREAMING
        try:
            parsed = json.loads(body)
            fragments = self.adapter.interpret_response(parsed)
        except (ValueError, DecodeError) as e:
            return self.fail(ErrorKind.DECODE, f"Unreadable {self.adapter.vendor} response: {e}")
        events = self._apply(fragments)
        if not self.done:
            events.extend(self._drain())
        return events

    def fail(
        self, kind: ErrorKind, message: str, *, status_code: int | None = None
    ) -> list[CompletionEvent]:
        """Terminate with a single ``Error`` event (no-op once done)."""
        if self.done:
            return []
        if self._open:
            logger.debug("Discarding %d open tool call(s) on failure", len(self._open))
        self._open.clear()
        self.state = DecoderState.ERROR
        logger.debug("%s stream failed (%s): %s", self.adapter.vendor, kind.value, message)
        self.state = DecoderState.DONE
        error = Error(kind=kind, message=message, status_code=status_code)
        self.outcome = error
        return [error]

    # --- internals ---

    def _on_frames(self, frames: list[Frame]) -> list[CompletionEvent]:
        events: list[CompletionEvent] = []
        for frame in frames:
            if self.done:
                break
            if frame is DONE_SENTINEL:
                events.extend(self._drain())
                break
            events.extend(self._on_payload(frame))
        return events

    def _on_payload(self, payload: str) -> list[CompletionEvent]:
        try:
            parsed: Any = json.loads(payload)
            fragments = self.adapter.interpret(parsed)
        except (ValueError, DecodeError) as e:
            self.skipped_frames += 1
            logger.debug("Skipping malformed %s frame: %s", self.adapter.vendor, e)
            return []
        return self._apply(fragments)

    def _apply(self, fragments: list[Fragment]) -> list[CompletionEvent]:
        events: list[CompletionEvent] = []
        for fragment in fragments:
            if self.done:
                break
            if isinstance(fragment, TextFragment):
                events.append(TextDelta(fragment.text))
            elif isinstance(fragment, ToolCallFragment):
                events.extend(self._on_tool_fragment(fragment))
            elif isinstance(fragment, ToolCallEnd):
                if fragment.index in self._open:
                    events.extend(self._complete(fragment.index))
            elif isinstance(fragment, FinishFragment):
                self._finish_reason = fragment.reason
                for index in sorted(self._open):
                    events.extend(self._complete(index))
                    if self.done:
                        break
            elif isinstance(fragment, UsageFragment):
                if fragment.prompt_tokens is not None:
                    self._prompt_tokens = fragment.prompt_tokens
                if fragment.completion_tokens is not None:
                    self._completion_tokens = fragment.completion_tokens
            elif isinstance(fragment, VendorErrorFragment):
                events.extend(self.fail(ErrorKind.PROVIDER, fragment.message))
            elif isinstance(fragment, EndOfStream):
                events.extend(self._drain())
        return events

    def _on_tool_fragment(self, fragment: ToolCallFragment) -> list[CompletionEvent]:
        if fragment.index is None:
            return self._on_whole_tool_call(fragment)
        events: list[CompletionEvent] = []
        accumulator = self._open.get(fragment.index)
        if accumulator is None:
            if fragment.index in self._closed:
                self.skipped_frames += 1
                logger.debug("Ignoring fragment for completed tool call %d", fragment.index)
                return []
            if fragment.id is None and fragment.name is None:
                self.skipped_frames += 1
                logger.debug("Ignoring arguments for unknown tool call %d", fragment.index)
                return []
            accumulator = ToolCallAccumulator(
                index=fragment.index, id=fragment.id or "", name=fragment.name or ""
            )
            self._open[fragment.index] = accumulator
            logger.info(
                "%s tool call started: %s (index=%d)",
                self.adapter.vendor,
                accumulator.name,
                fragment.index,
            )
            events.append(ToolCallStart(fragment.index, accumulator.id, accumulator.name))
        else:
            # Some vendors send the id and name in separate fragments.
            if fragment.id and not accumulator.id:
                accumulator.id = fragment.id
            if fragment.name and not accumulator.name:
                accumulator.name = fragment.name

        if fragment.arguments:
            accumulator.fragments.append(fragment.arguments)
            events.append(ToolCallArgumentsDelta(fragment.index, fragment.arguments))
        return events

    def _on_whole_tool_call(self, fragment: ToolCallFragment) -> list[CompletionEvent]:
        index = max(self._open.keys() | self._closed, default=-1) + 1
        numbered = replace(fragment, index=index, id=fragment.id or f"call_{index}")
        events = self._on_tool_fragment(numbered)
        events.extend(self._complete(index))
        return events

    def _complete(self, index: int) -> list[CompletionEvent]:
        accumulator = self._open.pop(index)
        self._closed.add(index)
        arguments = accumulator.arguments or "{}"
        try:
            json.loads(arguments)
        except ValueError:
            logger.debug(
                "Tool call %d closed with incomplete arguments: %.200s", index, arguments
            )
            return self.fail(
                ErrorKind.DECODE,
                f"Tool call {accumulator.name or index} ended before its arguments "
                "formed valid JSON",
            )
        return [
            ToolCallComplete(
                index=index, id=accumulator.id, name=accumulator.name, arguments=arguments
            )
        ]

    def _drain(self) -> list[CompletionEvent]:
        self.state = DecoderState.DRAINING
        events: list[CompletionEvent] = []
        for index in sorted(self._open):
            events.extend(self._complete(index))
            if self.done:
                return events

        if self._prompt_tokens is not None or self._completion_tokens is not None:
            events.append(
                UsageUpdate(
                    prompt_tokens=self._prompt_tokens or 0,
                    completion_tokens=self._completion_tokens or 0,
                )
            )

        reason = self._finish_reason or StopReason.UNKNOWN
        if reason is StopReason.END_TURN and self._closed:
            # DeepSeek reports "stop" after streaming tool calls.
            logger.debug("Normalizing END_TURN to TOOL_USE after tool calls")
            reason = StopReason.TOOL_USE
        stop = Stop(reason)
        events.append(stop)
        self.outcome = stop
        self.state = DecoderState.DONE
        return events
