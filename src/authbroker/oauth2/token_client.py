"""HTTP client for provider token, device, revocation and userinfo endpoints."""

import asyncio
import base64
import json
import logging
from typing import Any

import aiohttp
from pydantic import ValidationError

from authbroker.errors.exceptions import NetworkError, ThrottlingError, classify_http_status
from authbroker.oauth2.exceptions import (
    InvalidConfigurationError,
    TokenAcquisitionError,
    TokenRefreshError,
)
from authbroker.oauth2.models import OAuth2Token, ProviderConfig, ScopeSet
from authbroker.oauth2.schemas import (
    DeviceCodeResponse,
    TokenErrorResponse,
    TokenResponse,
)
from authbroker.types import ErrorCategory

logger = logging.getLogger(__name__)

DEVICE_CODE_GRANT = "urn:ietf:params:oauth:grant-type:device_code"
DEFAULT_TIMEOUT_SECONDS = 30

# RFC 6749 section 5.2 error codes that report a provider-side outage
TRANSIENT_TOKEN_ERRORS = frozenset({"server_error", "temporarily_unavailable"})


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def decode_jwt_claims(token: str) -> dict[str, Any]:
    """
    Decode the payload of a JWT without verifying it.

    Only used to read display claims (account name) from an id token that
    was received directly from the token endpoint over TLS.
    """
    if not token or token.count(".") != 2:
        return {}
    payload_b64 = token.split(".")[1]
    payload_b64 += "=" * (-len(payload_b64) % 4)
    try:
        decoded = base64.urlsafe_b64decode(payload_b64.encode("ascii"))
        claims = json.loads(decoded.decode("utf-8"))
    except (ValueError, UnicodeDecodeError):
        return {}
    return claims if isinstance(claims, dict) else {}


class TokenClient:
    """
    Async client for the provider endpoints used by both flows and refresh.

    Requests are form-encoded with Accept: application/json. Error bodies are
    understood both on HTTP 400 (RFC 6749) and on HTTP 200 (GitHub).
    """

    def __init__(self, timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS):
        self.timeout_seconds = timeout_seconds
        self._session: aiohttp.ClientSession | None = None

    async def _ensure_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP client session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(headers={"Accept": "application/json"})
        return self._session

    def _client_fields(self, config: ProviderConfig, scope_set: ScopeSet) -> dict[str, str]:
        fields = {"client_id": config.client_id_for(scope_set)}
        if config.client_secret and not scope_set.client_id:
            fields["client_secret"] = config.client_secret
        return fields

    async def _post_form(
        self,
        url: str,
        data: dict[str, str],
        operation: str,
    ) -> tuple[int, dict[str, Any] | None, str | None]:
        """
        POST a form and return (status, json payload or None, Retry-After).

        Raises:
            NetworkError: Connection failure or timeout
        """
        session = await self._ensure_session()
        try:
            async with session.post(
                url,
                data=data,
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
            ) as response:
                try:
                    payload = await response.json(content_type=None)
                except (ValueError, aiohttp.ContentTypeError):
                    payload = None
                if payload is not None and not isinstance(payload, dict):
                    payload = None
                retry_after = response.headers.get("Retry-After") if response.headers else None
                return response.status, payload, retry_after
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(
                "HTTP error during %s: %s",
                operation,
                e,
                extra={"operation": operation, "endpoint": url},
            )
            raise NetworkError(f"{operation} failed: {e}", cause=e) from e

    @staticmethod
    def _raise_for_transient(
        status: int,
        retry_after: str | None,
        operation: str,
    ) -> None:
        if status == 429:
            raise ThrottlingError(
                f"{operation} rate limited (HTTP 429)",
                retry_after=_parse_retry_after(retry_after),
            )
        if classify_http_status(status) is ErrorCategory.TRANSIENT:
            raise NetworkError(f"{operation} failed: HTTP {status}")

    async def request_device_code(
        self,
        config: ProviderConfig,
        scope_set: ScopeSet,
    ) -> DeviceCodeResponse:
        """
        Request a device and user code pair (RFC 8628 section 3.1).

        Raises:
            InvalidConfigurationError: Provider has no device endpoint
            TokenAcquisitionError: Provider rejected the request
            NetworkError: Transport failure or server error
        """
        url = config.endpoint("device_code", scope_set.tenant)
        if not url:
            raise InvalidConfigurationError(
                f"Provider '{config.id}' has no device_code_endpoint"
            )

        data = self._client_fields(config, scope_set)
        data["scope"] = scope_set.canonical

        status, payload, retry_after = await self._post_form(url, data, "device code request")
        self._raise_for_transient(status, retry_after, "device code request")

        if status != 200 or payload is None or "error" in payload:
            error = (payload or {}).get("error", f"HTTP {status}")
            raise TokenAcquisitionError(
                f"Device code request rejected by '{config.id}': {error}",
                context={"http_status": status},
            )

        try:
            return DeviceCodeResponse.from_payload(payload)
        except ValidationError as e:
            raise TokenAcquisitionError(
                f"Malformed device code response from '{config.id}'", cause=e
            ) from e

    async def poll_device_token(
        self,
        config: ProviderConfig,
        scope_set: ScopeSet,
        device_code: str,
    ) -> TokenResponse | TokenErrorResponse:
        """
        Poll the token endpoint once for a device code.

        Returns:
            TokenResponse on approval, TokenErrorResponse while pending or on
            a protocol error

        Raises:
            ThrottlingError: HTTP 429
            NetworkError: Transport failure or server error
            TokenAcquisitionError: Unparseable response
        """
        url = config.endpoint("token", scope_set.tenant)
        data = self._client_fields(config, scope_set)
        data.update({"grant_type": DEVICE_CODE_GRANT, "device_code": device_code})

        status, payload, retry_after = await self._post_form(url, data, "device token poll")
        self._raise_for_transient(status, retry_after, "device token poll")

        if payload is None:
            raise TokenAcquisitionError(
                f"Unparseable device token response from '{config.id}' (HTTP {status})"
            )

        try:
            if "error" in payload:
                return TokenErrorResponse.model_validate(payload)
            return TokenResponse.model_validate(payload)
        except ValidationError as e:
            raise TokenAcquisitionError(
                f"Malformed device token response from '{config.id}'", cause=e
            ) from e

    async def _token_request(
        self,
        config: ProviderConfig,
        scope_set: ScopeSet,
        data: dict[str, str],
        operation: str,
        error_cls: type[Exception],
    ) -> OAuth2Token:
        url = config.endpoint("token", scope_set.tenant)
        status, payload, retry_after = await self._post_form(url, data, operation)
        self._raise_for_transient(status, retry_after, operation)

        if status != 200 or payload is None or "error" in payload:
            error = (payload or {}).get("error") or f"HTTP {status}"
            if error in TRANSIENT_TOKEN_ERRORS:
                raise NetworkError(f"{operation} failed at '{config.id}': {error}")
            logger.error(
                "%s failed for '%s': %s",
                operation,
                config.id,
                error,
                extra={"provider_id": config.id, "http_status": status, "error": error},
            )
            raise error_cls(
                f"{operation} rejected by '{config.id}': {error}",
                context={"http_status": status, "error": error},
            )

        try:
            parsed = TokenResponse.model_validate(payload)
        except ValidationError as e:
            raise error_cls(f"Malformed token response from '{config.id}'", cause=e) from e

        logger.debug(
            "%s succeeded for '%s'",
            operation,
            config.id,
            extra={"provider_id": config.id, "expires_in": parsed.expires_in},
        )
        return OAuth2Token.from_response(parsed.model_dump())

    async def exchange_code(
        self,
        config: ProviderConfig,
        scope_set: ScopeSet,
        code: str,
        redirect_uri: str,
        code_verifier: str,
    ) -> OAuth2Token:
        """
        Exchange an authorization code for tokens (RFC 6749 section 4.1.3).

        Raises:
            TokenAcquisitionError: Provider rejected the code
            NetworkError: Transport failure or server error
        """
        data = self._client_fields(config, scope_set)
        data.update(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
                "code_verifier": code_verifier,
            }
        )
        return await self._token_request(
            config, scope_set, data, "authorization code exchange", TokenAcquisitionError
        )

    async def refresh(
        self,
        config: ProviderConfig,
        scope_set: ScopeSet,
        refresh_token: str,
    ) -> OAuth2Token:
        """
        Redeem a refresh token (RFC 6749 section 6).

        Raises:
            TokenRefreshError: Refresh token rejected (not retryable)
            ThrottlingError / NetworkError: Transient failure (retryable)
        """
        data = self._client_fields(config, scope_set)
        data.update({"grant_type": "refresh_token", "refresh_token": refresh_token})
        if scope_set.canonical:
            data["scope"] = scope_set.canonical
        return await self._token_request(
            config, scope_set, data, "token refresh", TokenRefreshError
        )

    async def revoke(
        self,
        config: ProviderConfig,
        scope_set: ScopeSet,
        token: str,
        token_type_hint: str = "refresh_token",
    ) -> bool:
        """
        Revoke a token (RFC 7009). Returns False if the provider has no
        revocation endpoint.

        Raises:
            NetworkError: Transport failure or non-200 response
        """
        url = config.endpoint("revocation", scope_set.tenant)
        if not url:
            return False

        data = self._client_fields(config, scope_set)
        data.update({"token": token, "token_type_hint": token_type_hint})

        status, _, _ = await self._post_form(url, data, "token revocation")
        if status != 200:
            raise NetworkError(f"Token revocation failed for '{config.id}': HTTP {status}")
        return True

    async def resolve_account(
        self,
        config: ProviderConfig,
        scope_set: ScopeSet,
        token: OAuth2Token,
    ) -> str | None:
        """
        Determine the signed-in account name.

        Reads config.account_claim from the id token when present, otherwise
        from the userinfo endpoint. Returns None if neither yields a value.
        """
        if token.id_token:
            claims = decode_jwt_claims(token.id_token)
            value = claims.get(config.account_claim)
            if value:
                return str(value)

        url = config.endpoint("userinfo", scope_set.tenant)
        if not url:
            return None

        session = await self._ensure_session()
        try:
            async with session.get(
                url,
                headers={"Authorization": f"{token.token_type} {token.access_token}"},
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
            ) as response:
                if response.status != 200:
                    logger.warning(
                        "Userinfo request failed for '%s': HTTP %s",
                        config.id,
                        response.status,
                        extra={"provider_id": config.id, "http_status": response.status},
                    )
                    return None
                payload = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.warning(
                "Userinfo request failed for '%s': %s",
                config.id,
                e,
                extra={"provider_id": config.id},
            )
            return None

        value = payload.get(config.account_claim) if isinstance(payload, dict) else None
        return str(value) if value else None

    async def close(self) -> None:
        """Close HTTP client session."""
        if self._session and not self._session.closed:
            await self._session.close()
            await asyncio.sleep(0)


__all__ = ["TokenClient", "decode_jwt_claims", "DEVICE_CODE_GRANT"]
