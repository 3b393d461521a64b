"""Exception hierarchy for lmstream."""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator


class LmstreamError(Exception):
    """Base exception for all lmstream errors."""

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        self.hint = hint


class ConfigurationError(LmstreamError):
    """Settings validation or resolution failed."""


class AuthErrorReason(str, Enum):
    """Why a provider could not be authenticated."""

    MISSING_CREDENTIAL = "missing_credential"
    INVALID_CREDENTIAL = "invalid_credential"


class AuthError(LmstreamError):
    """Missing or invalid credential.

    Never retried automatically; callers should prompt for a new key.
    """

    def __init__(
        self,
        message: str,
        *,
        reason: AuthErrorReason = AuthErrorReason.MISSING_CREDENTIAL,
        provider: str | None = None,
        hint: str | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.reason = reason
        self.provider = provider


class BuildErrorReason(str, Enum):
    """Why a request could not be translated for a vendor."""

    UNSUPPORTED_FEATURE = "unsupported_feature"
    INVALID_REQUEST = "invalid_request"


class BuildError(LmstreamError):
    """A request could not be serialized for the target vendor."""

    def __init__(
        self,
        message: str,
        *,
        reason: BuildErrorReason = BuildErrorReason.INVALID_REQUEST,
        feature: str | None = None,
        hint: str | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.reason = reason
        self.feature = feature


class TransportError(LmstreamError):
    """Connection failure or non-2xx response.

    Retried by the caller's policy (see ``lmstream.retry``), never by the
    streaming path itself.
    """

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        retryable: bool | None = None,
        status_code: int | None = None,
        retry_after_s: float | None = None,
        provider: str | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.retryable = retryable
        self.status_code = status_code
        self.retry_after_s = retry_after_s
        self.provider = provider


class RateLimitError(TransportError):
    """Admission refused, locally by the rate limiter or remotely (HTTP 429)."""


class RequestCancelledError(LmstreamError):
    """The caller's cancellation signal fired before admission."""


class DecodeError(LmstreamError):
    """A streamed response could not be decoded."""


class TokenError(LmstreamError):
    """The tokenizer for a model could not be loaded."""


class UnknownProviderError(LmstreamError):
    """No provider with the requested id is registered."""


class UnknownModelError(LmstreamError):
    """A provider does not offer the requested model id."""


def _walk_exception_chain(exc: BaseException) -> Iterator[BaseException]:
    """Yield *exc* and its ``__cause__``/``__context__`` chain, with cycle protection."""
    seen: set[int] = set()
    stack: list[BaseException] = [exc]
    while stack:
        cur = stack.pop()
        if id(cur) in seen:
            continue
        seen.add(id(cur))
        yield cur

        cause = cur.__cause__
        if isinstance(cause, BaseException):
            stack.append(cause)
        context = cur.__context__
        if isinstance(context, BaseException):
            stack.append(context)
