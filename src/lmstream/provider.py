"""Providers: one vendor endpoint with its credentials, limits and models."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

import httpx

from lmstream._http import build_client, map_transport_error, status_error
from lmstream.auth import AuthenticationState, CredentialSource
from lmstream.config import ProviderSettings
from lmstream.errors import DecodeError, UnknownModelError
from lmstream.model import LanguageModel
from lmstream.rate_limit import RateLimiter
from lmstream.retry import RetryPolicy, retry_async

if TYPE_CHECKING:
    from collections.abc import Callable

    from lmstream.catalog import ProviderInfo
    from lmstream.types import ModelDescriptor

logger = logging.getLogger(__name__)


class Provider:
    """A configured vendor endpoint.

    Owns the provider's ``AuthenticationState``, ``RateLimiter`` and HTTP
    client. Models handed out by ``model()`` share all three, so every
    concurrent stream against this provider counts against one limiter.

    Example:
        provider = Provider(catalog.OPENAI)
        model = provider.default_model()
        async with model.stream_completion(request) as stream:
            async for event in stream:
                ...
    """

    def __init__(
        self,
        info: ProviderInfo,
        *,
        settings: ProviderSettings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.info = info
        self.auth = AuthenticationState(info.id, env_var=info.env_var)
        self.adapter = info.adapter_factory()
        self.retry_policy = retry_policy or RetryPolicy()
        self._transport = transport
        self._observers: list[Callable[[Provider], None]] = []
        self._client: httpx.AsyncClient | None = None
        self._retired_clients: list[httpx.AsyncClient] = []
        self._fetched: dict[str, ModelDescriptor] = {}
        self._custom: dict[str, ModelDescriptor] = {}
        self._limiter: RateLimiter | None = None
        self.settings = ProviderSettings()
        self.auth.subscribe(lambda _state: self._notify())
        self.apply_settings(settings or ProviderSettings())

    @property
    def id(self) -> str:
        return self.info.id

    @property
    def name(self) -> str:
        return self.info.name

    @property
    def api_url(self) -> str:
        return self.settings.api_url or self.info.api_url

    @property
    def limiter(self) -> RateLimiter:
        assert self._limiter is not None
        return self._limiter

    # --- configuration ---

    def apply_settings(self, settings: ProviderSettings) -> None:
        """Adopt new settings; in-flight streams keep the limiter they were admitted by."""
        previous = self.settings
        self.settings = settings

        if (
            self._limiter is None
            or settings.max_concurrent_requests != previous.max_concurrent_requests
            or settings.tokens_per_minute != previous.tokens_per_minute
            or settings.overflow != previous.overflow
        ):
            self._limiter = RateLimiter(
                self.id,
                max_concurrent=settings.max_concurrent_requests,
                tokens_per_minute=settings.tokens_per_minute,
                overflow=settings.overflow,
            )

        if self._client is not None and (
            settings.api_url != previous.api_url
            or settings.idle_timeout_s != previous.idle_timeout_s
            or settings.connect_timeout_s != previous.connect_timeout_s
        ):
            self._retired_clients.append(self._client)
            self._client = None
            self._fetched.clear()

        self._custom = {m.name: m.to_descriptor() for m in settings.available_models}

        if settings.api_key is not None:
            key = settings.api_key.get_secret_value()
            if key != self.auth.api_key or self.auth.source is not CredentialSource.EXPLICIT:
                self.auth.set_credential(key, CredentialSource.EXPLICIT)
        elif previous.api_key is not None and self.auth.source is CredentialSource.EXPLICIT:
            self.auth.reset()

        logger.debug("Applied settings for %s (api_url=%s)", self.id, self.api_url)
        self._notify()

    # --- credentials ---

    def is_authenticated(self) -> bool:
        return not self.info.requires_api_key or self.auth.is_authenticated()

    def authenticate(self) -> None:
        """Resolve a credential from the environment if none is set.

        Raises ``AuthError`` when the provider needs a key and none is found.
        """
        if self.info.requires_api_key:
            self.auth.authenticate()

    def set_api_key(self, key: str) -> None:
        self.auth.set_credential(key, CredentialSource.EXPLICIT)

    def reset_credentials(self) -> None:
        self.auth.reset()

    # --- models ---

    def provided_models(self) -> list[ModelDescriptor]:
        """Built-in, fetched and configured models merged by id, ordered by id."""
        merged = {m.id: m for m in self.info.models}
        merged.update(self._fetched)
        merged.update(self._custom)
        return [merged[model_id] for model_id in sorted(merged)]

    def model(self, model_id: str) -> LanguageModel:
        for descriptor in self.provided_models():
            if descriptor.id == model_id:
                return self._language_model(descriptor)
        raise UnknownModelError(
            f"{self.name} has no model {model_id!r}",
            hint="Add it under available_models in the provider's settings "
            "or call refresh_models().",
        )

    def default_model(self) -> LanguageModel | None:
        return self._model_or_first(self.info.default_model_id)

    def default_fast_model(self) -> LanguageModel | None:
        return self._model_or_first(self.info.default_fast_model_id)

    def _model_or_first(self, model_id: str) -> LanguageModel | None:
        models = self.provided_models()
        for descriptor in models:
            if descriptor.id == model_id:
                return self._language_model(descriptor)
        return self._language_model(models[0]) if models else None

    def _language_model(self, descriptor: ModelDescriptor) -> LanguageModel:
        return LanguageModel(
            descriptor,
            provider_id=self.id,
            adapter=self.adapter,
            client=self._get_client(),
            limiter=self.limiter,
            auth=self.auth if self.info.requires_api_key else None,
            idle_timeout_s=self.settings.idle_timeout_s,
            tokenizer_model=self.info.tokenizer_model,
        )

    async def refresh_models(self) -> list[ModelDescriptor]:
        """Fetch the provider's live model list and merge it into the catalog.

        Providers without a listing endpoint return their current catalog.
        Transient failures are retried under ``retry_policy``.
        """
        if self.info.models_endpoint is None or self.info.parse_models is None:
            return self.provided_models()
        fetched = await retry_async(
            self._fetch_models,
            policy=self.retry_policy,
            operation=f"{self.id} model list",
        )
        self._fetched = {m.id: m for m in fetched}
        logger.info("Fetched %d model(s) from %s", len(fetched), self.id)
        self._notify()
        return self.provided_models()

    async def _fetch_models(self) -> list[ModelDescriptor]:
        assert self.info.models_endpoint is not None and self.info.parse_models is not None
        headers: dict[str, str] = {}
        if self.info.requires_api_key:
            self.auth.authenticate()
        if self.auth.api_key is not None:
            headers.update(self.adapter.auth_headers(self.auth.api_key))
        try:
            response = await self._get_client().get(self.info.models_endpoint, headers=headers)
        except httpx.HTTPError as e:
            raise map_transport_error(e, provider=self.id) from e
        if not response.is_success:
            raise status_error(
                response.status_code, response.content, provider=self.id, headers=response.headers
            )
        try:
            payload = response.json()
        except ValueError as e:
            raise DecodeError(f"{self.name} returned an unreadable model list") from e
        return self.info.parse_models(payload)

    # --- observers and lifecycle ---

    def subscribe(self, callback: Callable[[Provider], None]) -> Callable[[], None]:
        """Call *callback* on credential, settings or catalog changes."""
        self._observers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._observers:
                self._observers.remove(callback)

        return _unsubscribe

    def _notify(self) -> None:
        for callback in list(self._observers):
            callback(self)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = build_client(
                self.api_url,
                connect_timeout_s=self.settings.connect_timeout_s,
                idle_timeout_s=self.settings.idle_timeout_s,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        clients = [*self._retired_clients, *([self._client] if self._client else [])]
        self._retired_clients.clear()
        self._client = None
        for client in clients:
            try:
                await client.aclose()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("Closing HTTP client for %s failed: %s", self.id, exc)

    def __repr__(self) -> str:
        return (
            f"Provider(id={self.id!r}, api_url={self.api_url!r}, "
            f"authenticated={self.is_authenticated()})"
        )
