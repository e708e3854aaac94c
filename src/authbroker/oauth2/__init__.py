"""
OAuth2 sign-in for account providers.

Provides scope canonicalization, the device-code and loopback flows, the
provider registry and the session store. The public entry point,
AuthenticationService, lives in authbroker.oauth2.service.
"""

from authbroker.oauth2.exceptions import (
    CSRFMismatchError,
    DeniedError,
    ExpiredError,
    InteractionRequiredError,
    InvalidConfigurationError,
    InvalidScopeError,
    LoopbackBindError,
    MissingParameterError,
    OAuth2Error,
    ProviderNotFoundError,
    SessionInvalidError,
    TokenAcquisitionError,
    TokenRefreshError,
)
from authbroker.oauth2.interaction import InteractionHandler, LoggingInteractionHandler
from authbroker.oauth2.models import (
    DeviceAuthorization,
    FlowResult,
    OAuth2Token,
    ProviderConfig,
    ScopeSet,
    Session,
)
from authbroker.oauth2.providers import (
    AuthProvider,
    OAuthProvider,
    builtin_provider_config,
)
from authbroker.oauth2.registry import ProviderRegistry
from authbroker.oauth2.scopes import normalize
from authbroker.oauth2.store import SessionStore

__all__ = [
    # Models
    "ProviderConfig",
    "ScopeSet",
    "OAuth2Token",
    "Session",
    "DeviceAuthorization",
    "FlowResult",
    # Components
    "normalize",
    "AuthProvider",
    "OAuthProvider",
    "builtin_provider_config",
    "ProviderRegistry",
    "SessionStore",
    "InteractionHandler",
    "LoggingInteractionHandler",
    # Exceptions
    "OAuth2Error",
    "InvalidScopeError",
    "MissingParameterError",
    "CSRFMismatchError",
    "ExpiredError",
    "DeniedError",
    "TokenAcquisitionError",
    "TokenRefreshError",
    "InvalidConfigurationError",
    "ProviderNotFoundError",
    "InteractionRequiredError",
    "SessionInvalidError",
    "LoopbackBindError",
]
