"""
Account providers.

A provider is any object satisfying the AuthProvider capability protocol.
OAuthProvider is the standard implementation built from a ProviderConfig; it
runs the loopback or device-code flow and redeems refresh tokens through a
TokenClient.
"""

import asyncio
import logging
from typing import Any, Protocol, runtime_checkable

from authbroker.oauth2.authorization_code import LoopbackFlow
from authbroker.oauth2.device_code import DEFAULT_DEVICE_CODE_TIMEOUT_SECONDS, DeviceCodeFlow
from authbroker.oauth2.exceptions import InvalidConfigurationError
from authbroker.oauth2.interaction import InteractionHandler
from authbroker.oauth2.loopback import DEFAULT_CALLBACK_TIMEOUT_SECONDS
from authbroker.oauth2.models import FlowResult, OAuth2Token, ProviderConfig, ScopeSet
from authbroker.oauth2.token_client import TokenClient
from authbroker.types import FlowKind

logger = logging.getLogger(__name__)


@runtime_checkable
class AuthProvider(Protocol):
    """Capabilities a provider plug-in offers to the session store."""

    @property
    def config(self) -> ProviderConfig: ...

    async def start_flow(
        self,
        kind: FlowKind,
        scope_set: ScopeSet,
        interaction: InteractionHandler,
    ) -> FlowResult: ...

    async def refresh_token(self, scope_set: ScopeSet, refresh_token: str) -> OAuth2Token: ...

    async def revoke_token(self, scope_set: ScopeSet, token: str) -> bool: ...


class OAuthProvider:
    """
    Standard provider: device-code and loopback flows against the endpoints
    in its ProviderConfig.

    Args:
        config: Provider configuration
        client: Shared token client; a private one is created (and closed by
            close()) when omitted
        device_code_timeout_seconds: Absolute device-code polling budget
        loopback_timeout_seconds: Time to wait for the browser callback
    """

    def __init__(
        self,
        config: ProviderConfig,
        client: TokenClient | None = None,
        device_code_timeout_seconds: float = DEFAULT_DEVICE_CODE_TIMEOUT_SECONDS,
        loopback_timeout_seconds: float = DEFAULT_CALLBACK_TIMEOUT_SECONDS,
    ):
        self._config = config
        self._owns_client = client is None
        self.client = client or TokenClient()
        self.device_flow = DeviceCodeFlow(self.client, timeout_seconds=device_code_timeout_seconds)
        self.loopback_flow = LoopbackFlow(self.client, timeout_seconds=loopback_timeout_seconds)

        logger.debug(
            "Initialized provider '%s'",
            config.id,
            extra={"provider_id": config.id, "flow": [f.value for f in config.supported_flows]},
        )

    @property
    def config(self) -> ProviderConfig:
        return self._config

    async def start_flow(
        self,
        kind: FlowKind,
        scope_set: ScopeSet,
        interaction: InteractionHandler,
    ) -> FlowResult:
        """
        Run one interactive flow and resolve the signed-in account.

        Raises:
            InvalidConfigurationError: Flow not supported by this provider
        """
        if not self._config.supports(kind):
            raise InvalidConfigurationError(
                f"Provider '{self._config.id}' does not support the {kind.value} flow"
            )

        if kind is FlowKind.DEVICE_CODE:
            token = await self._run_device_code(scope_set, interaction)
        else:
            token = await self.loopback_flow.run(self._config, scope_set, interaction.open_url)

        account = await self.client.resolve_account(self._config, scope_set, token)
        return FlowResult(token=token, account=account)

    async def _run_device_code(
        self,
        scope_set: ScopeSet,
        interaction: InteractionHandler,
    ) -> OAuth2Token:
        authorization, poll_task = await self.device_flow.begin(self._config, scope_set)
        try:
            await interaction.present_device_code(authorization, self._config)
            return await poll_task
        finally:
            if not poll_task.done():
                poll_task.cancel()
                await asyncio.gather(poll_task, return_exceptions=True)

    async def refresh_token(self, scope_set: ScopeSet, refresh_token: str) -> OAuth2Token:
        return await self.client.refresh(self._config, scope_set, refresh_token)

    async def revoke_token(self, scope_set: ScopeSet, token: str) -> bool:
        return await self.client.revoke(self._config, scope_set, token)

    async def close(self) -> None:
        if self._owns_client:
            await self.client.close()


# Endpoint templates for well-known providers; deployments supply client_id.
BUILTIN_PROVIDER_TEMPLATES: dict[str, dict[str, Any]] = {
    "github": {
        "id": "github",
        "label": "GitHub",
        "authorization_endpoint": "https://github.com/login/oauth/authorize",
        "token_endpoint": "https://github.com/login/oauth/access_token",
        "device_code_endpoint": "https://github.com/login/device/code",
        "userinfo_endpoint": "https://api.github.com/user",
        "account_claim": "login",
    },
    "microsoft": {
        "id": "microsoft",
        "label": "Microsoft",
        "authorization_endpoint": "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/authorize",
        "token_endpoint": "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token",
        "device_code_endpoint": "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/devicecode",
        "tenant_template": "organizations",
        "default_scopes": ("email", "offline_access", "openid", "profile"),
        "account_claim": "preferred_username",
    },
}


def builtin_provider_config(provider_id: str, **overrides: Any) -> ProviderConfig:
    """
    Build a ProviderConfig from a built-in template.

    Example:
        config = builtin_provider_config("github", client_id=os.environ["GITHUB_CLIENT_ID"])
    """
    if provider_id not in BUILTIN_PROVIDER_TEMPLATES:
        raise KeyError(
            f"No built-in provider '{provider_id}'. "
            f"Available: {sorted(BUILTIN_PROVIDER_TEMPLATES)}"
        )
    data = {**BUILTIN_PROVIDER_TEMPLATES[provider_id], **overrides}
    return ProviderConfig.from_dict(data)


__all__ = [
    "AuthProvider",
    "OAuthProvider",
    "BUILTIN_PROVIDER_TEMPLATES",
    "builtin_provider_config",
]
