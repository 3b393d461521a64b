"""Per-provider credential state."""

from __future__ import annotations

from enum import Enum
import logging
import os
import threading
from typing import TYPE_CHECKING

from lmstream.errors import AuthError, AuthErrorReason

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)


class CredentialSource(str, Enum):
    """Where the current credential came from."""

    NONE = "none"
    ENVIRONMENT = "environment"
    EXPLICIT = "explicit"


class AuthenticationState:
    """Credential holder for a single provider.

    Exactly one source is authoritative at a time: the key and its source are
    always written together, and ``reset()`` clears both. Every mutation
    notifies subscribers; nothing here touches the network.
    """

    def __init__(self, provider_id: str, *, env_var: str | None = None) -> None:
        self.provider_id = provider_id
        self.env_var = env_var
        self._api_key: str | None = None
        self._source = CredentialSource.NONE
        self._lock = threading.Lock()
        self._observers: list[Callable[[AuthenticationState], None]] = []

    @property
    def api_key(self) -> str | None:
        return self._api_key

    @property
    def source(self) -> CredentialSource:
        return self._source

    def is_authenticated(self) -> bool:
        return self._api_key is not None

    def subscribe(
        self, callback: Callable[[AuthenticationState], None]
    ) -> Callable[[], None]:
        """Register *callback* for every mutation; returns an unsubscribe function."""
        self._observers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._observers:
                self._observers.remove(callback)

        return _unsubscribe

    def set_credential(self, value: str, source: CredentialSource) -> None:
        """Replace the credential and its source together."""
        value = value.strip()
        if not value:
            raise AuthError(
                f"Empty API key for {self.provider_id}",
                reason=AuthErrorReason.INVALID_CREDENTIAL,
                provider=self.provider_id,
            )
        if source is CredentialSource.NONE:
            raise ValueError("A credential must come from ENVIRONMENT or EXPLICIT")
        with self._lock:
            self._api_key = value
            self._source = source
        logger.debug("Credential set for %s (source=%s)", self.provider_id, source.value)
        self._notify()

    def reset(self) -> None:
        """Forget the credential and its source."""
        with self._lock:
            self._api_key = None
            self._source = CredentialSource.NONE
        logger.debug("Credential reset for %s", self.provider_id)
        self._notify()

    def authenticate(self) -> None:
        """Ensure a credential is present.

        A no-op when already authenticated. Otherwise the provider's
        environment variable is consulted; if that is unset too, raise
        ``AuthError`` with ``MISSING_CREDENTIAL``.
        """
        if self.is_authenticated():
            return
        if self.env_var:
            value = os.environ.get(self.env_var, "").strip()
            if value:
                self.set_credential(value, CredentialSource.ENVIRONMENT)
                return
        hint = (
            f"Set {self.env_var} or provide an API key explicitly."
            if self.env_var
            else "Provide an API key explicitly."
        )
        raise AuthError(
            f"No API key configured for {self.provider_id}",
            reason=AuthErrorReason.MISSING_CREDENTIAL,
            provider=self.provider_id,
            hint=hint,
        )

    def _notify(self) -> None:
        for callback in list(self._observers):
            callback(self)

    def __repr__(self) -> str:
        return (
            f"AuthenticationState(provider_id={self.provider_id!r}, "
            f"api_key={'[REDACTED]' if self._api_key else None}, "
            f"source={self._source.value!r})"
        )
