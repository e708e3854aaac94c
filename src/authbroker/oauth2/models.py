"""OAuth2 data models and provider configuration."""

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from authbroker.oauth2.exceptions import InvalidConfigurationError
from authbroker.types import FlowKind

TENANT_PLACEHOLDER = "{tenant}"

# Lifetime assumed for refreshable tokens issued without expires_in
DEFAULT_EXPIRES_IN_SECONDS = 3600
# Expiry of tokens issued with neither expires_in nor a refresh token
NO_EXPIRY = datetime(9999, 1, 1, tzinfo=UTC)


@dataclass(frozen=True)
class ProviderConfig:
    """
    Immutable account-provider configuration.

    Endpoint URLs may contain a "{tenant}" placeholder which is filled from
    the ScopeSet's tenant, falling back to tenant_template.

    Attributes:
        id: Unique provider identifier ("github", "microsoft", ...)
        token_endpoint: Token endpoint URL
        client_id: OAuth2 client ID (public client)
        label: Human-readable name
        authorization_endpoint: Authorization endpoint for the loopback flow
        device_code_endpoint: Device authorization endpoint
        client_secret: Optional client secret for confidential clients
        default_scopes: Scopes always requested, in declaration order
        tenant_template: Default tenant for "{tenant}" placeholders
        internal_scopes: Tool-only scopes never sent to the provider
        revocation_endpoint: Optional RFC 7009 revocation endpoint
        userinfo_endpoint: Optional endpoint used to resolve the account name
        account_claim: Id-token or userinfo field naming the account
        supported_flows: Flows this provider can run (derived from endpoints)
    """

    id: str
    token_endpoint: str
    client_id: str
    label: str = ""
    authorization_endpoint: str | None = None
    device_code_endpoint: str | None = None
    client_secret: str | None = field(default=None, repr=False)
    default_scopes: tuple[str, ...] = ()
    tenant_template: str | None = None
    internal_scopes: frozenset[str] = frozenset()
    revocation_endpoint: str | None = None
    userinfo_endpoint: str | None = None
    account_claim: str = "login"
    supported_flows: tuple[FlowKind, ...] = ()

    def __post_init__(self):
        if not self.id:
            raise InvalidConfigurationError("Provider id is required")
        if not self.client_id or not self.token_endpoint:
            raise InvalidConfigurationError(
                f"Provider '{self.id}': client_id and token_endpoint are required"
            )
        if not self.authorization_endpoint and not self.device_code_endpoint:
            raise InvalidConfigurationError(
                f"Provider '{self.id}': authorization_endpoint or "
                "device_code_endpoint is required"
            )
        if TENANT_PLACEHOLDER in self.token_endpoint and not self.tenant_template:
            raise InvalidConfigurationError(
                f"Provider '{self.id}': endpoints use {TENANT_PLACEHOLDER} "
                "but no tenant_template is set"
            )

        # Ordered de-duplication of default scopes
        object.__setattr__(self, "default_scopes", tuple(dict.fromkeys(self.default_scopes)))
        object.__setattr__(self, "internal_scopes", frozenset(self.internal_scopes))
        object.__setattr__(self, "label", self.label or self.id)

        derived = []
        if self.authorization_endpoint:
            derived.append(FlowKind.LOOPBACK)
        if self.device_code_endpoint:
            derived.append(FlowKind.DEVICE_CODE)
        flows = tuple(FlowKind(f) for f in self.supported_flows) or tuple(derived)
        unsupported = [f for f in flows if f not in derived]
        if unsupported:
            raise InvalidConfigurationError(
                f"Provider '{self.id}': flows {[f.value for f in unsupported]} "
                "have no endpoint configured"
            )
        object.__setattr__(self, "supported_flows", flows)

    def endpoint(self, name: str, tenant: str | None = None) -> str | None:
        """Return an endpoint URL with the tenant placeholder resolved."""
        url = getattr(self, f"{name}_endpoint")
        if url is None:
            return None
        return url.replace(TENANT_PLACEHOLDER, tenant or self.tenant_template or "")

    def endpoints_for(self, tenant: str | None = None) -> dict[str, str]:
        """All configured endpoint URLs with the tenant substituted."""
        urls = {}
        for name in ("authorization", "token", "device_code", "revocation", "userinfo"):
            url = self.endpoint(name, tenant)
            if url:
                urls[name] = url
        return urls

    def client_id_for(self, scope_set: "ScopeSet") -> str:
        """Client id to present for a scope set (reserved-scope override wins)."""
        return scope_set.client_id or self.client_id

    def supports(self, flow: FlowKind) -> bool:
        return flow in self.supported_flows

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProviderConfig":
        """Build a config from a YAML mapping."""
        data = dict(data)
        if "default_scopes" in data:
            scopes = data["default_scopes"]
            data["default_scopes"] = tuple(scopes.split() if isinstance(scopes, str) else scopes)
        if "internal_scopes" in data:
            data["internal_scopes"] = frozenset(data["internal_scopes"])
        if "supported_flows" in data:
            data["supported_flows"] = tuple(FlowKind(f) for f in data["supported_flows"])
        known = set(cls.__dataclass_fields__)
        unknown = set(data) - known
        if unknown:
            raise InvalidConfigurationError(
                f"Unknown provider settings for '{data.get('id')}': {sorted(unknown)}"
            )
        return cls(**data)

    def merged(self, overrides: dict[str, Any]) -> "ProviderConfig":
        """Return a copy with the given settings replaced."""
        base = {name: getattr(self, name) for name in self.__dataclass_fields__}
        base.update(overrides)
        base["supported_flows"] = overrides.get("supported_flows", ())
        return ProviderConfig.from_dict(base)


@dataclass(frozen=True)
class ScopeSet:
    """
    Canonical, deduplicated, lexicographically ordered scopes.

    Attributes:
        scopes: Scopes sent to the provider, sorted and unique
        client_id: Client id override extracted from a reserved scope
        tenant: Tenant override extracted from a reserved scope
    """

    scopes: tuple[str, ...]
    client_id: str | None = None
    tenant: str | None = None

    @property
    def canonical(self) -> str:
        """Space-joined scope string; identical for equal permission sets."""
        return " ".join(self.scopes)

    @property
    def key(self) -> tuple[str, str, str]:
        """Cache key: canonical scopes plus client and tenant overrides."""
        return (self.canonical, self.client_id or "", self.tenant or "")

    def issuperset(self, other: "ScopeSet") -> bool:
        """True if this set grants everything other asks for, same client and tenant."""
        return (
            self.client_id == other.client_id
            and self.tenant == other.tenant
            and set(self.scopes) >= set(other.scopes)
        )

    def __str__(self) -> str:
        return self.canonical


@dataclass
class OAuth2Token:
    """
    OAuth2 access token with expiration tracking.

    Attributes:
        access_token: The access token string
        token_type: Token type (typically "Bearer")
        expires_at: UTC timestamp when token expires
        scope: Space-separated scopes granted
        refresh_token: Optional refresh token for token renewal
        id_token: Optional OpenID Connect id token
    """

    access_token: str = field(repr=False)
    token_type: str
    expires_at: datetime
    scope: str | None = None
    refresh_token: str | None = field(default=None, repr=False)
    id_token: str | None = field(default=None, repr=False)

    @classmethod
    def from_response(cls, response: dict, expires_in: int | None = None) -> "OAuth2Token":
        """
        Create token from an OAuth2 token response.

        A response without expires_in is assumed to last an hour when it
        carries a refresh token. Without one the token never expires and
        stays valid until revoked (GitHub OAuth-app tokens).

        Args:
            response: OAuth2 token response dict
            expires_in: Optional override for expires_in (seconds)
        """
        expires_in = expires_in or response.get("expires_in")
        if expires_in:
            expires_at = datetime.now(UTC) + timedelta(seconds=int(expires_in))
        elif response.get("refresh_token"):
            expires_at = datetime.now(UTC) + timedelta(seconds=DEFAULT_EXPIRES_IN_SECONDS)
        else:
            expires_at = NO_EXPIRY

        return cls(
            access_token=response["access_token"],
            token_type=response.get("token_type") or "Bearer",
            expires_at=expires_at,
            scope=response.get("scope"),
            refresh_token=response.get("refresh_token"),
            id_token=response.get("id_token"),
        )

    def is_expired(self, buffer_seconds: int = 0) -> bool:
        return datetime.now(UTC) >= self.expires_at - timedelta(seconds=buffer_seconds)

    @property
    def remaining_lifetime(self) -> timedelta:
        """Get remaining time before token expires."""
        return self.expires_at - datetime.now(UTC)


@dataclass
class FlowResult:
    """Outcome of an interactive flow: the token and the signed-in account."""

    token: OAuth2Token
    account: str | None = None


@dataclass(frozen=True)
class DeviceAuthorization:
    """
    Device authorization issued by the provider (RFC 8628 section 3.2).

    expires_at is a time.monotonic() deadline.
    """

    device_code: str = field(repr=False)
    user_code: str
    verification_uri: str
    expires_at: float
    interval: float
    verification_uri_complete: str | None = None


@dataclass
class Session:
    """
    Signed-in identity for one provider, account and scope set.

    Owned by SessionStore. Mutated only by refresh (apply_token) and by
    demotion (invalidate).
    """

    provider_id: str
    account: str
    scope_set: ScopeSet
    access_token: str = field(repr=False)
    expires_at: datetime
    refresh_token: str | None = field(default=None, repr=False)
    id_token: str | None = field(default=None, repr=False)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    valid: bool = True

    @classmethod
    def from_token(
        cls,
        provider_id: str,
        account: str,
        scope_set: ScopeSet,
        token: OAuth2Token,
    ) -> "Session":
        return cls(
            provider_id=provider_id,
            account=account,
            scope_set=scope_set,
            access_token=token.access_token,
            expires_at=token.expires_at,
            refresh_token=token.refresh_token,
            id_token=token.id_token,
        )

    @property
    def scopes(self) -> tuple[str, ...]:
        return self.scope_set.scopes

    @property
    def expires(self) -> bool:
        return self.expires_at < NO_EXPIRY

    def is_expired(self, buffer_seconds: int = 0) -> bool:
        return datetime.now(UTC) >= self.expires_at - timedelta(seconds=buffer_seconds)

    def apply_token(self, token: OAuth2Token) -> None:
        """Install a refreshed token; keeps the old refresh token if none was rotated in."""
        self.access_token = token.access_token
        self.expires_at = token.expires_at
        if token.refresh_token:
            self.refresh_token = token.refresh_token
        if token.id_token:
            self.id_token = token.id_token

    def invalidate(self) -> None:
        self.valid = False


__all__ = [
    "ProviderConfig",
    "ScopeSet",
    "OAuth2Token",
    "FlowResult",
    "DeviceAuthorization",
    "Session",
    "TENANT_PLACEHOLDER",
    "DEFAULT_EXPIRES_IN_SECONDS",
    "NO_EXPIRY",
]
