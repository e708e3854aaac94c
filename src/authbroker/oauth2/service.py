"""
Public API for host applications.

AuthenticationService wires the provider registry, the session store and a
shared token client together, and owns their teardown.

Usage:
    async with AuthenticationService.from_config() as service:
        session = await service.acquire_session("github", ["repo"])
        for s in await service.get_sessions("github"):
            print(s.account, s.scopes)
        await service.remove_session(session.id)
"""

import logging
from collections.abc import Iterable

from authbroker.config import AuthBrokerConfig, load_config
from authbroker.oauth2.device_code import DEFAULT_DEVICE_CODE_TIMEOUT_SECONDS
from authbroker.oauth2.interaction import InteractionHandler
from authbroker.oauth2.loopback import DEFAULT_CALLBACK_TIMEOUT_SECONDS
from authbroker.oauth2.models import ProviderConfig, Session
from authbroker.oauth2.providers import AuthProvider, OAuthProvider
from authbroker.oauth2.registry import ProviderRegistry
from authbroker.oauth2.store import AUTO_FLOW, DEFAULT_REFRESH_LEAD_SECONDS, SessionStore
from authbroker.oauth2.token_client import TokenClient
from authbroker.resilience.retry import RetryConfig
from authbroker.types import FlowKind, SecretStorage

logger = logging.getLogger(__name__)


class AuthenticationService:
    """
    Sign-in service exposed to the host application.

    Args:
        storage: Secure storage for sessions; None keeps them in memory only
        interaction: Host UI for device codes and browser sign-in
        registry: Provider registry; a new one is created when omitted
        default_flow: "auto", "loopback" or "device_code"
        refresh_lead_seconds: Refresh this many seconds before expiry
        refresh_retry: Backoff policy for background refresh
        loopback_timeout_seconds: Browser callback timeout for registered configs
        device_code_timeout_seconds: Device-code polling budget for registered configs
    """

    def __init__(
        self,
        storage: SecretStorage | None = None,
        interaction: InteractionHandler | None = None,
        registry: ProviderRegistry | None = None,
        default_flow: str | FlowKind = AUTO_FLOW,
        refresh_lead_seconds: float = DEFAULT_REFRESH_LEAD_SECONDS,
        refresh_retry: RetryConfig | None = None,
        loopback_timeout_seconds: float = DEFAULT_CALLBACK_TIMEOUT_SECONDS,
        device_code_timeout_seconds: float = DEFAULT_DEVICE_CODE_TIMEOUT_SECONDS,
    ):
        self.registry = registry or ProviderRegistry()
        self.client = TokenClient()
        self.loopback_timeout_seconds = loopback_timeout_seconds
        self.device_code_timeout_seconds = device_code_timeout_seconds
        self.store = SessionStore(
            self.registry,
            storage=storage,
            interaction=interaction,
            default_flow=default_flow,
            refresh_lead_seconds=refresh_lead_seconds,
            refresh_retry=refresh_retry,
        )

    @classmethod
    def from_config(
        cls,
        config: AuthBrokerConfig | None = None,
        storage: SecretStorage | None = None,
        interaction: InteractionHandler | None = None,
    ) -> "AuthenticationService":
        """Build a service and register every configured provider."""
        config = config or load_config()
        service = cls(
            storage=storage if storage is not None else config.build_storage(),
            interaction=interaction,
            default_flow=config.default_flow,
            refresh_lead_seconds=config.refresh_lead_seconds,
            refresh_retry=config.refresh_retry,
            loopback_timeout_seconds=config.loopback_timeout_seconds,
            device_code_timeout_seconds=config.device_code_timeout_seconds,
        )
        for provider_config in config.providers:
            service.register_provider(provider_config)
        return service

    def register_provider(self, provider: AuthProvider | ProviderConfig) -> AuthProvider:
        """
        Register a provider plug-in, or a plain config served by OAuthProvider.

        Raises:
            ValueError: Provider id already registered
        """
        if isinstance(provider, ProviderConfig):
            provider = OAuthProvider(
                provider,
                client=self.client,
                device_code_timeout_seconds=self.device_code_timeout_seconds,
                loopback_timeout_seconds=self.loopback_timeout_seconds,
            )
        self.registry.register(provider)
        return provider

    def list_providers(self) -> list[ProviderConfig]:
        return self.registry.configs()

    async def acquire_session(
        self,
        provider_id: str,
        scopes: str | Iterable[str] | None = None,
        interactive: bool = True,
        account: str | None = None,
        flow: str | FlowKind | None = None,
    ) -> Session:
        """
        Get a session for the provider and scopes, signing in when allowed.

        Raises:
            InteractionRequiredError: interactive=False and no reusable session
            AuthBrokerError subclasses for scope, flow and provider failures
        """
        return await self.store.acquire(
            provider_id,
            account,
            scopes,
            interactive=interactive,
            flow=flow,
        )

    async def get_sessions(self, provider_id: str | None = None) -> list[Session]:
        return await self.store.get_sessions(provider_id)

    async def remove_session(self, session_id: str) -> bool:
        """Sign out a session. Returns False if no such session exists."""
        session = await self.store.get_session(session_id)
        if session is None:
            logger.info("No session %s to remove", session_id, extra={"session_id": session_id})
            return False
        await self.store.revoke(session)
        return True

    async def close(self) -> None:
        """Cancel pending sign-ins and refreshes, then close HTTP clients."""
        await self.store.close()
        await self.registry.close()
        await self.client.close()
        logger.info("AuthenticationService closed")

    async def __aenter__(self) -> "AuthenticationService":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


__all__ = ["AuthenticationService"]
