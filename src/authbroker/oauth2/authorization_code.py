"""Authorization-code flow with PKCE over a loopback redirect (RFC 8252, RFC 7636)."""

import base64
import hashlib
import logging
import secrets
from collections.abc import Awaitable, Callable
from urllib.parse import urlencode

from authbroker.oauth2.exceptions import InvalidConfigurationError
from authbroker.oauth2.loopback import (
    DEFAULT_CALLBACK_TIMEOUT_SECONDS,
    LoopbackCallbackServer,
)
from authbroker.oauth2.models import OAuth2Token, ProviderConfig, ScopeSet
from authbroker.oauth2.token_client import TokenClient

logger = logging.getLogger(__name__)


def generate_pkce_pair() -> tuple[str, str]:
    """Return (code_verifier, S256 code_challenge)."""
    verifier = secrets.token_urlsafe(64)
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    challenge = base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    return verifier, challenge


def build_authorization_url(
    config: ProviderConfig,
    scope_set: ScopeSet,
    redirect_uri: str,
    state: str,
    code_challenge: str,
) -> str:
    endpoint = config.endpoint("authorization", scope_set.tenant)
    if not endpoint:
        raise InvalidConfigurationError(f"Provider '{config.id}' has no authorization_endpoint")

    params = {
        "response_type": "code",
        "client_id": config.client_id_for(scope_set),
        "redirect_uri": redirect_uri,
        "state": state,
        "code_challenge": code_challenge,
        "code_challenge_method": "S256",
    }
    if scope_set.canonical:
        params["scope"] = scope_set.canonical
    separator = "&" if "?" in endpoint else "?"
    return f"{endpoint}{separator}{urlencode(params)}"


class LoopbackFlow:
    """
    Browser sign-in: start a loopback server, open /signin, await the code,
    exchange it. The server is stopped on every exit path, including
    cancellation.
    """

    def __init__(
        self,
        client: TokenClient,
        timeout_seconds: float = DEFAULT_CALLBACK_TIMEOUT_SECONDS,
        server_factory: Callable[..., LoopbackCallbackServer] = LoopbackCallbackServer,
    ):
        self.client = client
        self.timeout_seconds = timeout_seconds
        self._server_factory = server_factory

    async def run(
        self,
        config: ProviderConfig,
        scope_set: ScopeSet,
        open_url: Callable[[str], Awaitable[None]],
    ) -> OAuth2Token:
        """
        Run the flow to completion.

        Args:
            config: Provider configuration
            scope_set: Canonical scopes to request
            open_url: Coroutine that shows a URL to the user (opens a browser)

        Raises:
            LoopbackBindError, MissingParameterError, DeniedError, TimeoutError,
            TokenAcquisitionError, NetworkError
        """
        server = self._server_factory(timeout_seconds=self.timeout_seconds)
        verifier, challenge = generate_pkce_pair()

        redirect_uri, result = await server.start()
        try:
            server.set_authorization_url(
                build_authorization_url(config, scope_set, redirect_uri, server.nonce, challenge)
            )
            logger.info(
                "Waiting for browser sign-in for '%s'",
                config.id,
                extra={"provider_id": config.id, "redirect_uri": redirect_uri},
            )
            await open_url(server.signin_uri)
            code = await result
        finally:
            await server.stop()

        return await self.client.exchange_code(config, scope_set, code, redirect_uri, verifier)


__all__ = ["LoopbackFlow", "build_authorization_url", "generate_pkce_pair"]
