"""OAuth2-specific exceptions."""

from authbroker.errors.exceptions import (
    AuthBrokerError,
    AuthError,
    PermanentError,
    TransientError,
)


class OAuth2Error(AuthBrokerError):
    """Base exception for OAuth2 operations."""

    pass


class InvalidScopeError(OAuth2Error, PermanentError):
    """A requested scope is malformed or names an unknown reserved segment."""

    pass


class MissingParameterError(OAuth2Error, PermanentError):
    """Loopback callback arrived without code or state."""

    pass


class CSRFMismatchError(OAuth2Error, PermanentError):
    """Loopback callback carried a state that does not match the issued nonce."""

    pass


class ExpiredError(OAuth2Error, PermanentError):
    """Device code expired before the user approved it."""

    pass


class DeniedError(OAuth2Error, PermanentError):
    """The user or the provider refused the authorization request."""

    pass


class TokenAcquisitionError(OAuth2Error, PermanentError):
    """Token could not be acquired from the provider."""

    pass


class TokenRefreshError(OAuth2Error, AuthError):
    """Refresh token was rejected; interactive sign-in is required."""

    pass


class InvalidConfigurationError(OAuth2Error, PermanentError):
    """OAuth2 provider configuration is invalid."""

    pass


class ProviderNotFoundError(OAuth2Error, PermanentError):
    """No provider is registered under the requested id."""

    pass


class InteractionRequiredError(OAuth2Error, AuthError):
    """No reusable session exists and the caller disallowed interaction."""

    pass


class SessionInvalidError(OAuth2Error, AuthError):
    """Session was demoted after refresh failures or removed."""

    pass


class LoopbackBindError(OAuth2Error, TransientError):
    """Loopback callback server could not bind a local port."""

    pass


__all__ = [
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
