"""Provider registry: provider id to AuthProvider."""

import logging
import threading

from authbroker.oauth2.exceptions import ProviderNotFoundError
from authbroker.oauth2.models import ProviderConfig
from authbroker.oauth2.providers import AuthProvider

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """
    Thread-safe registry of account providers.

    Providers are plug-ins: anything with the AuthProvider capabilities can be
    registered at runtime, including from host extensions running on other
    threads.

    Usage:
        registry = ProviderRegistry()
        registry.register(OAuthProvider(builtin_provider_config("github", client_id="...")))
        provider = registry.get("github")
    """

    def __init__(self):
        self._providers: dict[str, AuthProvider] = {}
        self._lock = threading.Lock()

    def register(self, provider: AuthProvider) -> None:
        """
        Register a provider.

        Raises:
            ValueError: If a provider with the same id already exists
        """
        provider_id = provider.config.id
        with self._lock:
            if provider_id in self._providers:
                raise ValueError(f"Provider '{provider_id}' already exists")
            self._providers[provider_id] = provider

        logger.info(
            "Registered provider '%s' (%s)",
            provider_id,
            provider.__class__.__name__,
            extra={"provider_id": provider_id},
        )

    def unregister(self, provider_id: str) -> AuthProvider | None:
        """Remove a provider, returning it if it was registered."""
        with self._lock:
            provider = self._providers.pop(provider_id, None)
        if provider is not None:
            logger.info("Unregistered provider '%s'", provider_id, extra={"provider_id": provider_id})
        return provider

    def get(self, provider_id: str) -> AuthProvider:
        """
        Get provider by id.

        Raises:
            ProviderNotFoundError: If provider not found
        """
        with self._lock:
            provider = self._providers.get(provider_id)
            available = list(self._providers)
        if provider is None:
            raise ProviderNotFoundError(
                f"Provider '{provider_id}' not found. Available: {available}",
                context={"provider_id": provider_id},
            )
        return provider

    def __contains__(self, provider_id: str) -> bool:
        with self._lock:
            return provider_id in self._providers

    def list_providers(self) -> list[str]:
        """Get list of registered provider ids."""
        with self._lock:
            return list(self._providers)

    def configs(self) -> list[ProviderConfig]:
        with self._lock:
            return [p.config for p in self._providers.values()]

    async def close(self) -> None:
        """Close every provider that owns resources."""
        with self._lock:
            providers = list(self._providers.values())

        for provider in providers:
            close = getattr(provider, "close", None)
            if close is None:
                continue
            try:
                await close()
            except Exception as e:
                logger.warning(
                    "Error closing provider '%s': %s",
                    provider.config.id,
                    e,
                    extra={"provider_id": provider.config.id},
                )


__all__ = ["ProviderRegistry"]
