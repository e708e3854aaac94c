"""
Scope canonicalization.

Requested scopes are normalized into a ScopeSet before any token request.
The canonical form doubles as the session cache key, so normalization must
be deterministic: the same logical permissions always produce the same
ordering and the same string.

Reserved scopes carry tool-side settings and are never sent to the provider:

    AUTHBROKER_CLIENT_ID:<client id>   use another registered client id
    AUTHBROKER_TENANT:<tenant>         sign in against a specific tenant

Example:
    >>> normalize(github_config, "b c a")      # default_scopes = ("a",)
    ScopeSet(scopes=('a', 'b', 'c'), client_id=None, tenant=None)
"""

import re
from collections.abc import Iterable

from authbroker.oauth2.exceptions import InvalidScopeError
from authbroker.oauth2.models import ProviderConfig, ScopeSet

RESERVED_PREFIX = "AUTHBROKER_"
CLIENT_ID_SEGMENT = "CLIENT_ID"
TENANT_SEGMENT = "TENANT"
RESERVED_SEGMENTS = frozenset({CLIENT_ID_SEGMENT, TENANT_SEGMENT})

# RFC 6749 section 3.3: scope-token = 1*( %x21 / %x23-5B / %x5D-7E )
_SCOPE_TOKEN = re.compile(r"^[\x21\x23-\x5B\x5D-\x7E]+$")

# Separators that indicate a caller joined several scopes incorrectly
_DISALLOWED_SEPARATORS = (",", ";")


def _tokenize(requested: str | Iterable[str] | None) -> list[str]:
    if requested is None:
        return []
    if isinstance(requested, str):
        return requested.split()

    tokens = []
    for item in requested:
        if not isinstance(item, str):
            raise InvalidScopeError(f"Scope must be a string, got {type(item).__name__}")
        item = item.strip()
        if not item:
            continue
        if any(ch.isspace() for ch in item):
            raise InvalidScopeError(f"Scope {item!r} contains whitespace")
        tokens.append(item)
    return tokens


def _validate(token: str) -> None:
    for sep in _DISALLOWED_SEPARATORS:
        if sep in token:
            raise InvalidScopeError(f"Scope {token!r} contains disallowed separator {sep!r}")
    if not _SCOPE_TOKEN.match(token):
        raise InvalidScopeError(f"Scope {token!r} contains disallowed characters")


def _parse_reserved(token: str) -> tuple[str, str]:
    body = token[len(RESERVED_PREFIX):]
    segment, sep, value = body.partition(":")
    if segment not in RESERVED_SEGMENTS:
        raise InvalidScopeError(f"Unknown reserved scope segment {segment!r} in {token!r}")
    if not sep or not value:
        raise InvalidScopeError(f"Reserved scope {token!r} has no value")
    return segment, value


def normalize(
    provider_config: ProviderConfig,
    requested_scopes: str | Iterable[str] | None,
) -> ScopeSet:
    """
    Canonicalize requested scopes against a provider's rules.

    Args:
        provider_config: Provider whose defaults and internal scopes apply
        requested_scopes: Space-separated string or iterable of scopes

    Returns:
        ScopeSet with sorted, unique scopes and any client/tenant override

    Raises:
        InvalidScopeError: Malformed scope or unknown reserved segment
    """
    tokens = _tokenize(requested_scopes)
    for token in tokens:
        _validate(token)

    overrides: dict[str, str] = {}
    outgoing: set[str] = set()

    for token in [*tokens, *provider_config.default_scopes]:
        if token in provider_config.internal_scopes:
            continue
        if token.startswith(RESERVED_PREFIX):
            segment, value = _parse_reserved(token)
            existing = overrides.setdefault(segment, value)
            if existing != value:
                raise InvalidScopeError(
                    f"Conflicting values for reserved scope {segment}: {existing!r}, {value!r}"
                )
            continue
        outgoing.add(token)

    return ScopeSet(
        scopes=tuple(sorted(outgoing)),
        client_id=overrides.get(CLIENT_ID_SEGMENT),
        tenant=overrides.get(TENANT_SEGMENT),
    )


__all__ = [
    "normalize",
    "RESERVED_PREFIX",
    "CLIENT_ID_SEGMENT",
    "TENANT_SEGMENT",
]
