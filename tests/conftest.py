"""
pytest configuration for authbroker tests.

Adds src directory to Python path for imports and provides shared provider
fixtures.
"""

import asyncio
import sys
from pathlib import Path

import pytest

# Add src directory to Python path
src_dir = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_dir))

from authbroker.oauth2.models import FlowResult, OAuth2Token, ProviderConfig  # noqa: E402


def make_provider_config(**overrides) -> ProviderConfig:
    defaults = {
        "id": "test",
        "client_id": "test-client",
        "token_endpoint": "https://auth.example.com/token",
        "authorization_endpoint": "https://auth.example.com/authorize",
        "device_code_endpoint": "https://auth.example.com/device",
    }
    defaults.update(overrides)
    return ProviderConfig(**defaults)


class FakeProvider:
    """AuthProvider whose flows complete on demand, without network or browser."""

    def __init__(self, config=None, account="alice"):
        self._config = config or make_provider_config()
        self.account = account
        self.block = False
        self.release = asyncio.Event()
        self.flow_error = None
        self.refresh_error = None
        self.revoke_error = None
        self.flow_calls = []
        self.refresh_calls = 0
        self.revoked = []
        self.cancelled = False

    @property
    def config(self):
        return self._config

    async def start_flow(self, kind, scope_set, interaction):
        self.flow_calls.append((kind, scope_set))
        number = len(self.flow_calls)
        try:
            if self.block:
                await self.release.wait()
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        if self.flow_error is not None:
            raise self.flow_error
        token = OAuth2Token.from_response(
            {"access_token": f"at-{number}", "refresh_token": f"rt-{number}", "expires_in": 3600}
        )
        return FlowResult(token=token, account=self.account)

    async def refresh_token(self, scope_set, refresh_token):
        self.refresh_calls += 1
        if self.refresh_error is not None:
            raise self.refresh_error
        return OAuth2Token.from_response(
            {"access_token": f"refreshed-{self.refresh_calls}", "expires_in": 3600}
        )

    async def revoke_token(self, scope_set, token):
        if self.revoke_error is not None:
            raise self.revoke_error
        self.revoked.append(token)
        return True


@pytest.fixture
def provider_config():
    return make_provider_config()
