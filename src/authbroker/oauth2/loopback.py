"""
Loopback redirect server for the authorization-code flow (RFC 8252).

A short-lived aiohttp server bound to 127.0.0.1 on an ephemeral port:

- GET /signin    302 redirect to the provider's authorization URL
- GET /callback  receives ?code=&state= from the provider redirect
- anything else  404

Callback handling is an explicit state machine:

    WAITING --valid code+state--> MATCHED --stop()--> CLOSED
    WAITING --missing param / provider error / timeout--> REJECTED --stop()--> CLOSED
    WAITING --state mismatch--> WAITING (request rejected, flow keeps waiting)

Usage:
    server = LoopbackCallbackServer()
    redirect_uri, result = await server.start()
    server.set_authorization_url(build_url(redirect_uri))
    try:
        code = await result
    finally:
        await server.stop()
"""

import asyncio
import hmac
import logging
import secrets
from dataclasses import dataclass, field
from enum import Enum

from aiohttp import web

from authbroker.errors.exceptions import TimeoutError
from authbroker.oauth2.exceptions import (
    CSRFMismatchError,
    DeniedError,
    LoopbackBindError,
    MissingParameterError,
)

logger = logging.getLogger(__name__)

LOOPBACK_HOST = "127.0.0.1"
CALLBACK_PATH = "/callback"
SIGNIN_PATH = "/signin"
DEFAULT_CALLBACK_TIMEOUT_SECONDS = 5 * 60

SUCCESS_PAGE = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Signed in</title></head>
<body>
<h1>You are signed in</h1>
<p>You can close this window and return to your application.</p>
</body>
</html>
"""


class CallbackPhase(Enum):
    WAITING = "waiting"
    MATCHED = "matched"
    REJECTED = "rejected"
    CLOSED = "closed"


@dataclass
class CallbackState:
    """Per-invocation callback record: nonce, expected path and result channel."""

    nonce: str
    expected_path: str = CALLBACK_PATH
    phase: CallbackPhase = CallbackPhase.WAITING
    result: "asyncio.Future[str] | None" = field(default=None, repr=False)

    @property
    def resolved(self) -> bool:
        return self.phase in (CallbackPhase.MATCHED, CallbackPhase.REJECTED)


class LoopbackCallbackServer:
    """
    Captures exactly one OAuth redirect on a local port.

    Args:
        timeout_seconds: Time to wait for a valid callback before the result
            resolves with TimeoutError
        nonce: State value to expect; generated when omitted
        host: Interface to bind (loopback only)
        port: Port to bind, 0 for an ephemeral port
    """

    def __init__(
        self,
        timeout_seconds: float = DEFAULT_CALLBACK_TIMEOUT_SECONDS,
        nonce: str | None = None,
        host: str = LOOPBACK_HOST,
        port: int = 0,
    ):
        self.timeout_seconds = timeout_seconds
        self.host = host
        self.port = port
        self.state = CallbackState(nonce=nonce or secrets.token_urlsafe(32))
        self._authorization_url: str | None = None
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None
        self._actual_port: int | None = None
        self._timeout_handle: asyncio.TimerHandle | None = None
        self._stop_task: asyncio.Task | None = None
        self._last_rejection: CSRFMismatchError | None = None

    @property
    def nonce(self) -> str:
        return self.state.nonce

    @property
    def phase(self) -> CallbackPhase:
        return self.state.phase

    @property
    def actual_port(self) -> int | None:
        """Bound port, or None when not listening."""
        return self._actual_port

    @property
    def redirect_uri(self) -> str:
        return f"http://{self.host}:{self._actual_port}{self.state.expected_path}"

    @property
    def signin_uri(self) -> str:
        return f"http://{self.host}:{self._actual_port}{SIGNIN_PATH}"

    def set_authorization_url(self, url: str) -> None:
        """Register the provider URL that /signin redirects to."""
        self._authorization_url = url

    def create_app(self) -> web.Application:
        """Create aiohttp application with sign-in and callback routes."""
        app = web.Application()
        app.router.add_get(SIGNIN_PATH, self.handle_signin)
        app.router.add_get(self.state.expected_path, self.handle_callback)
        return app

    async def start(self) -> tuple[str, "asyncio.Future[str]"]:
        """
        Bind the listener and arm the timeout.

        Returns:
            (redirect_uri, result) where result resolves to the authorization
            code or fails with MissingParameterError, DeniedError or TimeoutError

        Raises:
            LoopbackBindError: The port could not be bound
        """
        if self._runner is not None:
            raise RuntimeError("Loopback server already started")

        loop = asyncio.get_running_loop()
        self.state.result = loop.create_future()

        self._runner = web.AppRunner(self.create_app(), access_log=None)
        await self._runner.setup()
        try:
            self._site = web.TCPSite(self._runner, self.host, self.port)
            await self._site.start()
        except OSError as e:
            await self._runner.cleanup()
            self._runner = None
            self._site = None
            self.state.phase = CallbackPhase.CLOSED
            logger.error(
                "Loopback server failed to bind: %s",
                e,
                extra={"port": self.port},
            )
            raise LoopbackBindError(f"Could not bind {self.host}:{self.port}: {e}", cause=e) from e

        server = self._site._server
        if server is not None and server.sockets:
            self._actual_port = server.sockets[0].getsockname()[1]
        else:
            self._actual_port = self.port

        self._timeout_handle = loop.call_later(self.timeout_seconds, self._on_timeout)

        logger.info(
            "Loopback server listening",
            extra={"port": self._actual_port, "timeout_seconds": self.timeout_seconds},
        )
        return self.redirect_uri, self.state.result

    def _resolve(self, phase: CallbackPhase, code: str | None = None, error: Exception | None = None) -> None:
        result = self.state.result
        self.state.phase = phase
        if result is not None and not result.done():
            if error is not None:
                result.set_exception(error)
            else:
                result.set_result(code)
        if self._timeout_handle is not None:
            self._timeout_handle.cancel()
            self._timeout_handle = None

    def _schedule_stop(self) -> None:
        if self._stop_task is None:
            self._stop_task = asyncio.get_running_loop().create_task(self._shutdown())

    def _on_timeout(self) -> None:
        self._timeout_handle = None
        if self.state.phase is not CallbackPhase.WAITING:
            return
        logger.warning(
            "Loopback callback timed out",
            extra={"timeout_seconds": self.timeout_seconds},
        )
        self._resolve(
            CallbackPhase.REJECTED,
            error=TimeoutError(
                f"No OAuth callback within {self.timeout_seconds}s",
                cause=self._last_rejection,
            ),
        )
        self._schedule_stop()

    async def handle_signin(self, request: web.Request) -> web.StreamResponse:
        """Handle GET /signin - redirect to the authorization URL."""
        if self._authorization_url is None or self.state.resolved:
            return web.Response(status=404, text="Not found")
        raise web.HTTPFound(self._authorization_url)

    async def handle_callback(self, request: web.Request) -> web.Response:
        """Handle GET /callback - validate state and capture the code."""
        if self.state.phase is not CallbackPhase.WAITING:
            return web.Response(status=400, text="Sign-in already completed.")

        code = request.query.get("code")
        state = request.query.get("state")
        error = request.query.get("error")

        if state and not hmac.compare_digest(state.encode(), self.state.nonce.encode()):
            self._last_rejection = CSRFMismatchError("Callback state does not match the issued nonce")
            logger.warning("Loopback callback rejected: state mismatch", extra={"path": request.path})
            return web.Response(status=400, text="Invalid state.")

        if state and error:
            description = request.query.get("error_description", "")
            logger.warning(
                "Provider returned error to loopback callback: %s",
                error,
                extra={"error": error},
            )
            self._resolve(
                CallbackPhase.REJECTED,
                error=DeniedError(f"Authorization failed: {error} {description}".strip()),
            )
            self._schedule_stop()
            return web.Response(status=400, text=f"Sign-in failed: {error}")

        if not code or not state:
            missing = [name for name, value in (("code", code), ("state", state)) if not value]
            logger.warning(
                "Loopback callback missing parameters",
                extra={"error": ",".join(missing)},
            )
            self._resolve(
                CallbackPhase.REJECTED,
                error=MissingParameterError(f"Callback missing parameter(s): {', '.join(missing)}"),
            )
            self._schedule_stop()
            return web.Response(status=400, text=f"Missing parameter(s): {', '.join(missing)}")

        self._resolve(CallbackPhase.MATCHED, code=code)
        self._schedule_stop()
        logger.info("Loopback callback accepted", extra={"port": self._actual_port})
        return web.Response(status=200, text=SUCCESS_PAGE, content_type="text/html")

    async def stop(self) -> None:
        """
        Stop listening and release the port. Safe to call repeatedly and from
        any exit path; concurrent callers wait for the same shutdown.
        """
        if self._stop_task is None:
            self._stop_task = asyncio.get_running_loop().create_task(self._shutdown())
        await asyncio.shield(self._stop_task)

    async def _shutdown(self) -> None:
        if self._timeout_handle is not None:
            self._timeout_handle.cancel()
            self._timeout_handle = None

        result = self.state.result
        if result is not None and not result.done():
            result.cancel()

        runner, self._runner = self._runner, None
        self._site = None
        if runner is not None:
            try:
                await runner.cleanup()
            finally:
                logger.debug("Loopback server stopped", extra={"port": self._actual_port})
                self._actual_port = None
        self.state.phase = CallbackPhase.CLOSED


__all__ = [
    "LoopbackCallbackServer",
    "CallbackPhase",
    "CallbackState",
    "CALLBACK_PATH",
    "SIGNIN_PATH",
    "DEFAULT_CALLBACK_TIMEOUT_SECONDS",
]
