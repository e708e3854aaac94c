"""
Device authorization grant (RFC 8628).

The provider issues a device code and a short user code. The caller shows
the user code and verification URI; this flow polls the token endpoint until
the user approves, denies, or the code expires.

Usage:
    flow = DeviceCodeFlow(token_client)
    authorization = await flow.start(config, scope_set)
    print(f"Enter {authorization.user_code} at {authorization.verification_uri}")
    token = await flow.poll(config, scope_set, authorization)
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

from authbroker.errors.exceptions import ThrottlingError, TimeoutError
from authbroker.oauth2.exceptions import (
    DeniedError,
    ExpiredError,
    TokenAcquisitionError,
)
from authbroker.oauth2.models import (
    DeviceAuthorization,
    OAuth2Token,
    ProviderConfig,
    ScopeSet,
)
from authbroker.oauth2.schemas import TokenErrorResponse
from authbroker.oauth2.token_client import TokenClient

logger = logging.getLogger(__name__)

DEFAULT_DEVICE_CODE_TIMEOUT_SECONDS = 15 * 60
DEFAULT_POLL_INTERVAL_SECONDS = 5.0
# RFC 8628 section 3.5: slow_down adds 5 seconds to the interval
SLOW_DOWN_INCREMENT_SECONDS = 5.0


class DeviceCodeFlow:
    """
    Runs the device-code protocol for one provider request at a time.

    Args:
        client: Token endpoint client
        timeout_seconds: Absolute polling budget, independent of the
            device code's own expiry
        sleep: Awaitable sleep used between polls
        clock: Monotonic clock in seconds
    """

    def __init__(
        self,
        client: TokenClient,
        timeout_seconds: float = DEFAULT_DEVICE_CODE_TIMEOUT_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.timeout_seconds = timeout_seconds
        self._sleep = sleep
        self._clock = clock

    async def start(self, config: ProviderConfig, scope_set: ScopeSet) -> DeviceAuthorization:
        """Request a device code; the returned authorization is shown to the user."""
        response = await self.client.request_device_code(config, scope_set)
        authorization = DeviceAuthorization(
            device_code=response.device_code,
            user_code=response.user_code,
            verification_uri=response.verification_uri,
            verification_uri_complete=response.verification_uri_complete,
            expires_at=self._clock() + response.expires_in,
            interval=float(response.interval or DEFAULT_POLL_INTERVAL_SECONDS),
        )
        logger.info(
            "Device code issued for '%s'",
            config.id,
            extra={
                "provider_id": config.id,
                "expires_in": response.expires_in,
                "interval_seconds": authorization.interval,
            },
        )
        return authorization

    async def begin(
        self,
        config: ProviderConfig,
        scope_set: ScopeSet,
    ) -> tuple[DeviceAuthorization, "asyncio.Task[OAuth2Token]"]:
        """
        Request a device code and start polling in the background.

        Returns:
            The authorization to present and the polling task; cancelling
            the task stops polling.
        """
        authorization = await self.start(config, scope_set)
        task = asyncio.create_task(
            self.poll(config, scope_set, authorization),
            name=f"device-code-poll-{config.id}",
        )
        return authorization, task

    @staticmethod
    def _slowed_interval(current: float, error: TokenErrorResponse | None) -> float:
        proposed = current + SLOW_DOWN_INCREMENT_SECONDS
        if error is not None and error.interval is not None:
            proposed = max(proposed, float(error.interval))
        return proposed

    async def poll(
        self,
        config: ProviderConfig,
        scope_set: ScopeSet,
        authorization: DeviceAuthorization,
    ) -> OAuth2Token:
        """
        Poll until approval or a terminal outcome.

        Raises:
            ExpiredError: Device code expired (reported or by deadline)
            DeniedError: User denied the request
            TimeoutError: Absolute polling budget exhausted
            NetworkError: Transport failure
            TokenAcquisitionError: Any other provider error
        """
        interval = authorization.interval
        budget_deadline = self._clock() + self.timeout_seconds

        while True:
            deadline = min(authorization.expires_at, budget_deadline)
            if self._clock() + interval > deadline:
                break

            await self._sleep(interval)

            try:
                result = await self.client.poll_device_token(
                    config, scope_set, authorization.device_code
                )
            except ThrottlingError:
                interval = self._slowed_interval(interval, None)
                logger.info(
                    "Device token endpoint throttled, slowing down",
                    extra={"provider_id": config.id, "interval_seconds": interval},
                )
                continue

            if not isinstance(result, TokenErrorResponse):
                logger.info("Device code approved for '%s'", config.id, extra={"provider_id": config.id})
                return OAuth2Token.from_response(result.model_dump())

            error = result.error
            if error == "authorization_pending":
                continue
            if error == "slow_down":
                interval = self._slowed_interval(interval, result)
                logger.info(
                    "Provider requested slower polling",
                    extra={"provider_id": config.id, "interval_seconds": interval},
                )
                continue
            if error == "expired_token":
                raise ExpiredError(f"Device code for '{config.id}' expired")
            if error == "access_denied":
                raise DeniedError(f"Device authorization for '{config.id}' was denied")
            raise TokenAcquisitionError(
                f"Device authorization for '{config.id}' failed: {error}",
                context={"error": error, "error_description": result.error_description},
            )

        if authorization.expires_at <= budget_deadline:
            raise ExpiredError(f"Device code for '{config.id}' expired before approval")
        raise TimeoutError(
            f"Device authorization for '{config.id}' timed out after {self.timeout_seconds}s"
        )


__all__ = [
    "DeviceCodeFlow",
    "DEFAULT_DEVICE_CODE_TIMEOUT_SECONDS",
    "SLOW_DOWN_INCREMENT_SECONDS",
]
