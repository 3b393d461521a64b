from __future__ import annotations

import asyncio

import httpx
import pytest

from lmstream import _http
from lmstream.errors import RateLimitError, TransportError
from lmstream.events import ErrorKind
from lmstream.retry import RetryPolicy, _compute_backoff_delay, retry_async, should_retry_request

pytestmark = pytest.mark.unit

NO_WAIT = RetryPolicy(max_attempts=3, initial_delay_s=0, jitter=False)


class Flaky:
    """Raise the scripted errors in order, then return ``"ok"``."""

    def __init__(self, *errors: BaseException) -> None:
        self.errors = list(errors)
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return "ok"


@pytest.mark.asyncio
async def test_retries_retryable_errors_until_success() -> None:
    factory = Flaky(
        TransportError("busy", status_code=503),
        httpx.ConnectError("reset"),
    )

    assert await retry_async(factory, policy=NO_WAIT) == "ok"
    assert factory.calls == 3


@pytest.mark.asyncio
async def test_gives_up_after_max_attempts() -> None:
    factory = Flaky(*(TransportError("busy", retryable=True) for _ in range(5)))

    with pytest.raises(TransportError):
        await retry_async(factory, policy=NO_WAIT)
    assert factory.calls == 3


@pytest.mark.asyncio
async def test_non_retryable_error_raises_immediately() -> None:
    factory = Flaky(TransportError("bad request", status_code=400, retryable=False))

    with pytest.raises(TransportError):
        await retry_async(factory, policy=NO_WAIT)
    assert factory.calls == 1


@pytest.mark.asyncio
async def test_retry_after_extends_the_backoff(monkeypatch) -> None:
    slept: list[float] = []

    async def fake_sleep(delay: float) -> None:
        slept.append(delay)

    monkeypatch.setattr(asyncio, "sleep", fake_sleep)
    factory = Flaky(RateLimitError("slow down", status_code=429, retry_after_s=2.0))

    await retry_async(factory, policy=NO_WAIT)

    assert slept == [2.0]


@pytest.mark.parametrize(
    ("exc", "expected"),
    [
        (TransportError("x", status_code=502), True),
        (TransportError("x", status_code=404), False),
        (TransportError("x", status_code=503, retryable=False), False),
        (TransportError("x", retryable=True), True),
        (httpx.ReadTimeout("slow"), True),
        (asyncio.CancelledError(), False),
        (ValueError("bug"), False),
    ],
)
def test_should_retry_request(exc: BaseException, expected: bool) -> None:
    assert should_retry_request(exc) is expected


def test_timeout_in_cause_chain_is_retried() -> None:
    wrapper = RuntimeError("wrapped")
    wrapper.__cause__ = TimeoutError()
    assert should_retry_request(wrapper)


def test_backoff_grows_and_is_capped() -> None:
    policy = RetryPolicy(initial_delay_s=1.0, backoff_multiplier=2.0, max_delay_s=3.0, jitter=False)

    delays = [_compute_backoff_delay(policy, retry_index=i) for i in (1, 2, 3)]

    assert delays == [1.0, 2.0, 3.0]


def test_policy_validation() -> None:
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)
    with pytest.raises(ValueError):
        RetryPolicy(backoff_multiplier=0)


# --- HTTP error mapping ---


def test_status_error_classifies_by_status() -> None:
    limited = _http.status_error(
        429, b'{"error": {"message": "quota"}}', provider="openai", headers={"retry-after": "7"}
    )
    broken = _http.status_error(500, b"", provider="openai")
    denied = _http.status_error(401, b"nope", provider="openai")

    assert isinstance(limited, RateLimitError)
    assert limited.retry_after_s == 7.0
    assert "quota" in str(limited)
    assert broken.retryable is True
    assert "HTTP 500" in str(broken)
    assert denied.retryable is False


def test_retry_after_header_parsing() -> None:
    assert _http.parse_retry_after({"retry-after": "1.5"}) == 1.5
    assert _http.parse_retry_after({"retry-after": "Wed, 21 Oct 2015 07:28:00 GMT"}) is None
    assert _http.parse_retry_after({}) is None


def test_error_kinds() -> None:
    assert _http.error_kind_for_status(403) is ErrorKind.AUTHENTICATION
    assert _http.error_kind_for_status(429) is ErrorKind.RATE_LIMITED
    assert _http.error_kind_for_status(404) is ErrorKind.HTTP_STATUS
    assert _http.error_kind_for_exception(httpx.ReadTimeout("slow")) is ErrorKind.TIMEOUT
    assert _http.error_kind_for_exception(httpx.ConnectError("down")) is ErrorKind.TRANSPORT


def test_map_transport_error_marks_network_failures_retryable() -> None:
    mapped = _http.map_transport_error(httpx.ConnectError("refused"), provider="ollama")

    assert isinstance(mapped, TransportError)
    assert mapped.retryable is True
    assert mapped.provider == "ollama"
