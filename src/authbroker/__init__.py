"""
authbroker: multi-provider OAuth sign-in client for developer tools.

Obtains, caches, refreshes and serves identity tokens for several account
providers. Two acquisition protocols are supported:

    - Device-code flow (RFC 8628) for headless and CLI contexts
    - Authorization-code flow with a loopback redirect server (RFC 8252)

Modules:
    oauth2      - Scopes, flows, provider registry, session store, public API
    storage     - Secure-storage protocol and backends
    resilience  - Retry with exponential backoff
    logging     - Structured JSON logging with context propagation
    errors      - Exception hierarchy and error classification
    config      - YAML configuration loading

Basic Usage:
    from authbroker import AuthenticationService

    async with AuthenticationService() as service:
        session = await service.acquire_session("github", ["repo"])
        headers = {"Authorization": f"Bearer {session.access_token}"}
"""

from .types import ErrorCategory, FlowKind
from .oauth2.service import AuthenticationService

__version__ = "0.1.0"

__all__ = [
    "AuthenticationService",
    "ErrorCategory",
    "FlowKind",
]
