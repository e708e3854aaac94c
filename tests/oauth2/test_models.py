"""Tests for OAuth2 data models."""

from datetime import UTC, datetime, timedelta

import pytest

from authbroker.oauth2.exceptions import InvalidConfigurationError
from authbroker.oauth2.models import NO_EXPIRY, OAuth2Token, ProviderConfig, ScopeSet, Session
from authbroker.types import FlowKind
from conftest import make_provider_config


class TestProviderConfig:
    def test_supported_flows_derived_from_endpoints(self):
        config = make_provider_config(authorization_endpoint=None)

        assert config.supported_flows == (FlowKind.DEVICE_CODE,)
        assert config.supports(FlowKind.DEVICE_CODE)
        assert not config.supports(FlowKind.LOOPBACK)

    def test_label_defaults_to_id(self, provider_config):
        assert provider_config.label == "test"

    def test_default_scopes_deduplicated_in_order(self):
        config = make_provider_config(default_scopes=("openid", "email", "openid"))

        assert config.default_scopes == ("openid", "email")

    def test_requires_an_interactive_endpoint(self):
        with pytest.raises(InvalidConfigurationError, match="authorization_endpoint or"):
            make_provider_config(authorization_endpoint=None, device_code_endpoint=None)

    def test_requires_client_id(self):
        with pytest.raises(InvalidConfigurationError, match="client_id"):
            make_provider_config(client_id="")

    def test_flow_without_endpoint_rejected(self):
        with pytest.raises(InvalidConfigurationError, match="no endpoint"):
            make_provider_config(
                device_code_endpoint=None,
                supported_flows=(FlowKind.DEVICE_CODE,),
            )

    def test_tenant_placeholder_needs_template(self):
        with pytest.raises(InvalidConfigurationError, match="tenant_template"):
            make_provider_config(token_endpoint="https://login.example.com/{tenant}/token")

    def test_endpoint_substitutes_tenant(self):
        config = make_provider_config(
            token_endpoint="https://login.example.com/{tenant}/token",
            tenant_template="common",
        )

        assert config.endpoint("token") == "https://login.example.com/common/token"
        assert config.endpoint("token", "contoso") == "https://login.example.com/contoso/token"
        assert config.endpoint("revocation") is None

    def test_endpoints_for(self):
        config = make_provider_config(
            token_endpoint="https://login.example.com/{tenant}/token",
            tenant_template="common",
        )

        endpoints = config.endpoints_for("contoso")

        assert endpoints["token"] == "https://login.example.com/contoso/token"
        assert set(endpoints) == {"authorization", "token", "device_code"}

    def test_client_id_override(self, provider_config):
        assert provider_config.client_id_for(ScopeSet(scopes=())) == "test-client"
        assert provider_config.client_id_for(ScopeSet(scopes=(), client_id="other")) == "other"

    def test_client_secret_hidden_from_repr(self):
        config = make_provider_config(client_secret="s3cret")

        assert "s3cret" not in repr(config)

    def test_from_dict(self):
        config = ProviderConfig.from_dict(
            {
                "id": "corp",
                "client_id": "abc",
                "token_endpoint": "https://corp.example.com/token",
                "device_code_endpoint": "https://corp.example.com/device",
                "default_scopes": "openid profile",
                "internal_scopes": ["tool:x"],
                "supported_flows": ["device_code"],
            }
        )

        assert config.default_scopes == ("openid", "profile")
        assert config.internal_scopes == frozenset({"tool:x"})
        assert config.supported_flows == (FlowKind.DEVICE_CODE,)

    def test_from_dict_rejects_unknown_keys(self):
        with pytest.raises(InvalidConfigurationError, match="Unknown provider settings"):
            ProviderConfig.from_dict(
                {
                    "id": "corp",
                    "client_id": "abc",
                    "token_endpoint": "https://corp.example.com/token",
                    "device_code_endpoint": "https://corp.example.com/device",
                    "colour": "blue",
                }
            )

    def test_merged_rederives_flows(self, provider_config):
        merged = provider_config.merged({"authorization_endpoint": None})

        assert merged.supported_flows == (FlowKind.DEVICE_CODE,)
        assert merged.client_id == "test-client"


class TestScopeSet:
    def test_superset_requires_same_client_and_tenant(self):
        wide = ScopeSet(scopes=("a", "b", "c"))
        narrow = ScopeSet(scopes=("a", "b"))

        assert wide.issuperset(narrow)
        assert not narrow.issuperset(wide)
        assert not ScopeSet(scopes=("a", "b", "c"), tenant="t").issuperset(narrow)

    def test_str_is_canonical(self):
        assert str(ScopeSet(scopes=("a", "b"))) == "a b"


class TestOAuth2Token:
    def test_from_response(self):
        token = OAuth2Token.from_response(
            {
                "access_token": "at",
                "token_type": "bearer",
                "expires_in": 120,
                "refresh_token": "rt",
            }
        )

        assert token.token_type == "bearer"
        assert token.refresh_token == "rt"
        assert 110 < token.remaining_lifetime.total_seconds() <= 120

    def test_default_lifetime_for_refreshable_token(self):
        token = OAuth2Token.from_response({"access_token": "at", "refresh_token": "rt"})

        assert token.token_type == "Bearer"
        assert 3590 < token.remaining_lifetime.total_seconds() <= 3600

    def test_no_expiry_without_refresh_token(self):
        token = OAuth2Token.from_response({"access_token": "gho_abc", "scope": "repo"})

        assert token.expires_at == NO_EXPIRY
        assert not token.is_expired()

    def test_is_expired_with_buffer(self):
        token = OAuth2Token(
            access_token="at",
            token_type="Bearer",
            expires_at=datetime.now(UTC) + timedelta(seconds=60),
        )

        assert not token.is_expired()
        assert token.is_expired(buffer_seconds=120)

    def test_tokens_hidden_from_repr(self):
        token = OAuth2Token(
            access_token="secret-at",
            token_type="Bearer",
            expires_at=datetime.now(UTC),
            refresh_token="secret-rt",
        )

        assert "secret" not in repr(token)


class TestSession:
    def _session(self):
        token = OAuth2Token(
            access_token="at-1",
            token_type="Bearer",
            expires_at=datetime.now(UTC) + timedelta(hours=1),
            refresh_token="rt-1",
        )
        return Session.from_token("test", "octocat", ScopeSet(scopes=("repo",)), token)

    def test_from_token(self):
        session = self._session()

        assert session.valid
        assert session.scopes == ("repo",)
        assert session.refresh_token == "rt-1"
        assert len(session.id) == 32

    def test_apply_token_keeps_refresh_token_when_not_rotated(self):
        session = self._session()
        new_expiry = datetime.now(UTC) + timedelta(hours=2)

        session.apply_token(OAuth2Token(access_token="at-2", token_type="Bearer", expires_at=new_expiry))

        assert session.access_token == "at-2"
        assert session.refresh_token == "rt-1"
        assert session.expires_at == new_expiry

    def test_apply_token_rotates_refresh_token(self):
        session = self._session()

        session.apply_token(
            OAuth2Token(
                access_token="at-2",
                token_type="Bearer",
                expires_at=datetime.now(UTC) + timedelta(hours=1),
                refresh_token="rt-2",
            )
        )

        assert session.refresh_token == "rt-2"

    def test_expires(self):
        assert self._session().expires

        token = OAuth2Token.from_response({"access_token": "gho_abc"})
        session = Session.from_token("github", "octocat", ScopeSet(scopes=("repo",)), token)

        assert not session.expires
        assert not session.is_expired()

    def test_invalidate(self):
        session = self._session()
        session.invalidate()

        assert session.valid is False
