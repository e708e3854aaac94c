"""
Wire schemas for provider responses and persisted sessions.

Provider responses are untrusted input: every payload is validated through
one of these models before any field is used.
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class DeviceCodeResponse(BaseModel):
    """RFC 8628 section 3.2 device authorization response."""

    model_config = ConfigDict(extra="ignore")

    device_code: str = Field(min_length=1)
    user_code: str = Field(min_length=1)
    verification_uri: str = Field(min_length=1)
    verification_uri_complete: str | None = None
    expires_in: int = Field(gt=0)
    interval: int = Field(default=5, ge=0)

    @classmethod
    def from_payload(cls, payload: dict) -> "DeviceCodeResponse":
        if "verification_uri" not in payload and "verification_url" in payload:
            payload = {**payload, "verification_uri": payload["verification_url"]}
        return cls.model_validate(payload)


class TokenResponse(BaseModel):
    """RFC 6749 section 5.1 successful token response."""

    model_config = ConfigDict(extra="ignore")

    access_token: str = Field(min_length=1)
    token_type: str = "Bearer"
    expires_in: int | None = Field(default=None, ge=0)
    refresh_token: str | None = None
    scope: str | None = None
    id_token: str | None = None


class TokenErrorResponse(BaseModel):
    """RFC 6749 section 5.2 error response (also used by device polling)."""

    model_config = ConfigDict(extra="ignore")

    error: str = Field(min_length=1)
    error_description: str | None = None
    interval: int | None = Field(default=None, ge=0)


class PersistedSession(BaseModel):
    """Session record as written to secure storage."""

    id: str
    provider_id: str
    account: str
    scopes: list[str]
    client_id: str | None = None
    tenant: str | None = None
    access_token: str
    refresh_token: str | None = None
    id_token: str | None = None
    expires_at: datetime
    created_at: datetime


class PersistedSessionList(BaseModel):
    """All persisted sessions of one provider."""

    version: int = 1
    sessions: list[PersistedSession] = Field(default_factory=list)


__all__ = [
    "DeviceCodeResponse",
    "TokenResponse",
    "TokenErrorResponse",
    "PersistedSession",
    "PersistedSessionList",
]
