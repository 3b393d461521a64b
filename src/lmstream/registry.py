"""Provider registry: the set of configured providers and the active selection."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from lmstream.catalog import BUILTIN_PROVIDERS
from lmstream.config import Settings
from lmstream.errors import UnknownModelError, UnknownProviderError
from lmstream.provider import Provider

if TYPE_CHECKING:
    from collections.abc import Callable

    import httpx

    from lmstream.model import LanguageModel

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Owns providers and tracks which provider/model is active.

    Subscribers receive every provider notification (credential, settings
    and catalog changes) plus selection changes, each as the ``Provider``
    concerned.
    """

    def __init__(self) -> None:
        self._providers: dict[str, Provider] = {}
        self._unsubscribers: dict[str, Callable[[], None]] = {}
        self._observers: list[Callable[[Provider], None]] = []
        self._active: tuple[str, str] | None = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> ProviderRegistry:
        """Register every built-in provider configured by *settings*."""
        settings = settings or Settings()
        registry = cls()
        for info in BUILTIN_PROVIDERS:
            registry.register(
                Provider(info, settings=settings.for_provider(info.id), transport=transport)
            )
        registry._apply_selection(settings)
        return registry

    def register(self, provider: Provider) -> None:
        """Add *provider*, replacing any provider with the same id."""
        previous = self._providers.get(provider.id)
        if previous is not None and previous is not provider:
            self._unsubscribers.pop(provider.id)()
            logger.debug("Replacing provider %s", provider.id)
        self._providers[provider.id] = provider
        if provider.id not in self._unsubscribers:
            self._unsubscribers[provider.id] = provider.subscribe(self._notify)
        self._notify(provider)

    def provider(self, provider_id: str) -> Provider:
        try:
            return self._providers[provider_id]
        except KeyError:
            raise UnknownProviderError(
                f"No provider registered as {provider_id!r}",
                hint=f"Registered: {', '.join(sorted(self._providers)) or 'none'}",
            ) from None

    def providers(self) -> list[Provider]:
        return list(self._providers.values())

    def active_provider(self) -> Provider | None:
        if self._active is None:
            return None
        return self._providers.get(self._active[0])

    def active_model(self) -> LanguageModel | None:
        """The selected model, or ``None`` if nothing (valid) is selected."""
        provider = self.active_provider()
        if provider is None or self._active is None:
            return None
        try:
            return provider.model(self._active[1])
        except UnknownModelError:
            logger.debug("Active model %s/%s is no longer offered", *self._active)
            return None

    def set_active(self, provider_id: str, model_id: str | None = None) -> LanguageModel:
        """Select a provider and model; defaults to the provider's default model."""
        provider = self.provider(provider_id)
        if model_id is None:
            model = provider.default_model()
            if model is None:
                raise UnknownModelError(f"{provider.name} offers no models")
        else:
            model = provider.model(model_id)
        self._active = (provider.id, model.id)
        logger.info("Active model set to %s/%s", provider.id, model.id)
        self._notify(provider)
        return model

    def apply_settings(self, settings: Settings) -> None:
        """Push new settings to every registered provider, then reselect."""
        for provider in self._providers.values():
            provider.apply_settings(settings.for_provider(provider.id))
        self._apply_selection(settings)

    def _apply_selection(self, settings: Settings) -> None:
        if settings.active_provider is None:
            return
        self.set_active(settings.active_provider, settings.active_model)

    def subscribe(self, callback: Callable[[Provider], None]) -> Callable[[], None]:
        self._observers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._observers:
                self._observers.remove(callback)

        return _unsubscribe

    def _notify(self, provider: Provider) -> None:
        for callback in list(self._observers):
            callback(provider)

    async def aclose(self) -> None:
        """Close every provider's HTTP clients."""
        results = await asyncio.gather(
            *(provider.aclose() for provider in self._providers.values()),
            return_exceptions=True,
        )
        for provider, result in zip(self._providers.values(), results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                logger.warning("Closing provider %s failed: %s", provider.id, result)

    def __repr__(self) -> str:
        active = "/".join(self._active) if self._active else None
        return f"ProviderRegistry(providers={list(self._providers)}, active={active!r})"
