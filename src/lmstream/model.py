"""Language models and the completion streams they produce."""

from __future__ import annotations

import asyncio
from contextlib import aclosing
import logging
from typing import TYPE_CHECKING, Final

import httpx

from lmstream import tokens
from lmstream._http import (
    error_kind_for_exception,
    error_kind_for_status,
    map_transport_error,
    parse_error_body,
)
from lmstream.adapters._chat_completions import effective_max_tokens
from lmstream.decoder import DEFAULT_MAX_FRAME_BYTES, StreamDecoder
from lmstream.errors import RateLimitError, RequestCancelledError
from lmstream.events import ErrorKind

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from types import TracebackType

    from lmstream.adapters.base import VendorAdapter, WirePayload
    from lmstream.auth import AuthenticationState
    from lmstream.events import CompletionEvent
    from lmstream.rate_limit import RateLimiter
    from lmstream.types import ModelDescriptor, Request

logger = logging.getLogger(__name__)


class _Signal:
    def __init__(self, name: str) -> None:
        self.name = name

    def __repr__(self) -> str:
        return self.name


_CANCELLED: Final = _Signal("CANCELLED")
_TIMED_OUT: Final = _Signal("TIMED_OUT")


async def _read(chunks: AsyncIterator[bytes]) -> bytes | None:
    """Next chunk, or ``None`` at end of body."""
    try:
        return await chunks.__anext__()
    except StopAsyncIteration:
        return None


class LanguageModel:
    """One model of one provider.

    Instances are cheap views over the provider's shared state
    (credentials, limiter, HTTP client); ask the provider for a fresh one
    after its settings change.
    """

    def __init__(
        self,
        descriptor: ModelDescriptor,
        *,
        provider_id: str,
        adapter: VendorAdapter,
        client: httpx.AsyncClient,
        limiter: RateLimiter,
        auth: AuthenticationState | None = None,
        idle_timeout_s: float | None = None,
        tokenizer_model: str | None = None,
        max_frame_bytes: int = DEFAULT_MAX_FRAME_BYTES,
    ) -> None:
        self.descriptor = descriptor
        self.provider_id = provider_id
        self.adapter = adapter
        self.auth = auth
        self._client = client
        self._limiter = limiter
        self._idle_timeout_s = idle_timeout_s
        self._tokenizer_model = tokenizer_model or descriptor.id
        self._max_frame_bytes = max_frame_bytes

    @property
    def id(self) -> str:
        return self.descriptor.id

    @property
    def name(self) -> str:
        return self.descriptor.display_name

    @property
    def limiter(self) -> RateLimiter:
        return self._limiter

    def max_token_count(self) -> int:
        return self.descriptor.max_tokens

    def max_output_tokens(self) -> int | None:
        return self.descriptor.max_output_tokens

    def supports_tools(self) -> bool:
        return self.descriptor.supports_tools

    def count_tokens(self, text: str) -> int:
        """Tokens in *text*; raises ``TokenError`` if no tokenizer can be loaded."""
        return tokens.count_tokens(text, model_name=self._tokenizer_model)

    def count_request_tokens(self, request: Request) -> int:
        return tokens.count_request_tokens(request, model_name=self._tokenizer_model)

    def stream_completion(
        self, request: Request, *, cancel: asyncio.Event | None = None
    ) -> CompletionStream:
        """Start a completion and return its event stream.

        Credentials and the wire payload are checked here, so ``AuthError``
        and ``BuildError`` surface immediately. Nothing touches the network
        until the stream is iterated; from then on every failure arrives as
        a terminal ``Error`` event.
        """
        headers: dict[str, str] = {}
        if self.auth is not None:
            self.auth.authenticate()
            if self.auth.api_key is not None:
                headers.update(self.adapter.auth_headers(self.auth.api_key))
        payload = self.adapter.build(request, self.descriptor)
        headers.update(payload.headers)

        budget = 0
        if self._limiter.tokens_per_minute is not None:
            budget = self.count_request_tokens(request)
            budget += effective_max_tokens(request, self.descriptor) or 0

        logger.debug(
            "%s/%s: %d message(s), %d tool(s), stream=%s",
            self.provider_id,
            self.id,
            len(request.messages),
            len(request.tools),
            payload.body.get("stream"),
        )
        return CompletionStream(self, payload, headers, tokens=budget, cancel=cancel)

    def __repr__(self) -> str:
        return f"LanguageModel(provider_id={self.provider_id!r}, id={self.id!r})"


class CompletionStream:
    """Async iterator over the ``CompletionEvent``s of one completion.

    Use it with ``async with`` (or call ``aclose()``) so an abandoned stream
    releases its rate-limit permit and connection promptly. Setting the
    cancel event, calling ``cancel()`` or cancelling the consuming task ends
    the stream without a ``Stop`` event.
    """

    def __init__(
        self,
        model: LanguageModel,
        payload: WirePayload,
        headers: dict[str, str],
        *,
        tokens: int = 0,
        cancel: asyncio.Event | None = None,
    ) -> None:
        self.model = model
        self._payload = payload
        self._headers = headers
        self._tokens = tokens
        self._cancel = cancel if cancel is not None else asyncio.Event()
        self._streaming = bool(payload.body.get("stream", True))
        self.decoder = StreamDecoder(model.adapter, max_frame_bytes=model._max_frame_bytes)
        self._events = self._run()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def cancel(self) -> None:
        self._cancel.set()

    def __aiter__(self) -> CompletionStream:
        return self

    async def __anext__(self) -> CompletionEvent:
        return await self._events.__anext__()

    async def aclose(self) -> None:
        await self._events.aclose()

    async def __aenter__(self) -> CompletionStream:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    async def collect(self) -> list[CompletionEvent]:
        """Drain the stream into a list."""
        return [event async for event in self]

    async def _run(self) -> AsyncIterator[CompletionEvent]:
        provider = self.model.provider_id
        try:
            permit = await self.model.limiter.admit(tokens=self._tokens, cancel=self._cancel)
        except RequestCancelledError:
            logger.debug("%s request cancelled before admission", provider)
            return
        except RateLimitError as e:
            for event in self.decoder.fail(ErrorKind.RATE_LIMITED, str(e)):
                yield event
            return

        try:
            async with aclosing(self._exchange()) as events:
                async for event in events:
                    yield event
        finally:
            permit.release()

    async def _exchange(self) -> AsyncIterator[CompletionEvent]:
        provider = self.model.provider_id
        decoder = self.decoder
        try:
            async with self.model._client.stream(
                "POST",
                self._payload.path,
                json=self._payload.body,
                headers=self._headers,
            ) as response:
                if not response.is_success:
                    body = await response.aread()
                    status = response.status_code
                    message = parse_error_body(body) or f"HTTP {status}"
                    logger.warning("%s returned HTTP %d: %.200s", provider, status, message)
                    for event in decoder.fail(
                        error_kind_for_status(status), message, status_code=status
                    ):
                        yield event
                    return

                chunks = response.aiter_bytes()
                body_parts: list[bytes] = []
                while not decoder.done:
                    chunk = await self._next_chunk(chunks)
                    if chunk is _CANCELLED or self.cancelled:
                        logger.debug("%s stream cancelled by caller", provider)
                        return
                    if chunk is _TIMED_OUT:
                        events = decoder.fail(
                            ErrorKind.TIMEOUT,
                            f"No data from {provider} for {self.model._idle_timeout_s}s",
                        )
                    elif chunk is None:
                        if self._streaming:
                            events = decoder.finish()
                        else:
                            events = decoder.feed_response(b"".join(body_parts))
                    elif self._streaming:
                        events = decoder.feed(chunk)
                    else:
                        body_parts.append(chunk)
                        continue
                    for event in events:
                        yield event
        except httpx.HTTPError as e:
            mapped = map_transport_error(e, provider=provider)
            logger.debug("%s transport failure: %s", provider, mapped)
            for event in decoder.fail(error_kind_for_exception(e), str(mapped)):
                yield event

    async def _next_chunk(self, chunks: AsyncIterator[bytes]) -> bytes | None | _Signal:
        """Wait for the next chunk, the caller's cancel event, or the idle timeout."""
        read = asyncio.ensure_future(_read(chunks))
        cancelled = asyncio.ensure_future(self._cancel.wait())
        try:
            done, _ = await asyncio.wait(
                {read, cancelled},
                timeout=self.model._idle_timeout_s,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            read.cancel()
            cancelled.cancel()
            raise
        cancelled.cancel()
        if read in done:
            return read.result()
        read.cancel()
        await asyncio.gather(read, return_exceptions=True)
        return _CANCELLED if self._cancel.is_set() else _TIMED_OUT

    def __repr__(self) -> str:
        return (
            f"CompletionStream(model={self.model!r}, state={self.decoder.state.value!r}, "
            f"cancelled={self.cancelled})"
        )