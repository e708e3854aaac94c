"""Host UI collaborator: presents device codes and opens sign-in URLs."""

import asyncio
import logging
import webbrowser
from typing import Protocol

from authbroker.oauth2.models import DeviceAuthorization, ProviderConfig

logger = logging.getLogger(__name__)


class InteractionHandler(Protocol):
    """Implemented by the host application's UI layer."""

    async def present_device_code(
        self,
        authorization: DeviceAuthorization,
        provider: ProviderConfig,
    ) -> None:
        """Show the user code and verification URI. Must not block on the user."""
        ...

    async def open_url(self, url: str) -> None:
        """Open a sign-in URL in the user's browser."""
        ...


class LoggingInteractionHandler:
    """
    Default handler for hosts without a UI: logs the device code and opens
    URLs with the system browser.
    """

    def __init__(self, open_browser: bool = True):
        self.open_browser = open_browser

    async def present_device_code(
        self,
        authorization: DeviceAuthorization,
        provider: ProviderConfig,
    ) -> None:
        logger.warning(
            "To sign in to %s, open %s and enter the code %s",
            provider.label,
            authorization.verification_uri,
            authorization.user_code,
            extra={"provider_id": provider.id},
        )

    async def open_url(self, url: str) -> None:
        if self.open_browser:
            opened = await asyncio.to_thread(webbrowser.open, url)
            if opened:
                return
        logger.warning("Open this URL in a browser to sign in: %s", url)


__all__ = ["InteractionHandler", "LoggingInteractionHandler"]
