"""
Tests for SessionStore.

Covers request dedup, waiter cancellation, scope-subset reuse, refresh and
demotion, persistence, revocation and flow selection. Providers are replaced
by FakeProvider so no network or browser is involved.
"""

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from authbroker.errors.exceptions import NetworkError, StorageError
from authbroker.oauth2.exceptions import (
    DeniedError,
    InteractionRequiredError,
    InvalidConfigurationError,
    InvalidScopeError,
    ProviderNotFoundError,
    SessionInvalidError,
    TokenRefreshError,
)
from authbroker.oauth2.models import FlowResult, OAuth2Token
from authbroker.oauth2.registry import ProviderRegistry
from authbroker.oauth2.schemas import PersistedSession, PersistedSessionList
from authbroker.oauth2.store import DEFAULT_ACCOUNT, SessionStore, is_headless, storage_key
from authbroker.resilience.retry import RetryConfig
from authbroker.storage import InMemorySecretStorage
from authbroker.types import FlowKind
from conftest import FakeProvider, make_provider_config

FAST_RETRY = RetryConfig(max_attempts=2, base_delay=0.0, max_delay=0.0)


async def _until(predicate, attempts=200):
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def registry(provider):
    registry = ProviderRegistry()
    registry.register(provider)
    return registry


@pytest.fixture
def storage():
    return InMemorySecretStorage()


@pytest_asyncio.fixture
async def store(registry, storage):
    store = SessionStore(
        registry,
        storage=storage,
        headless=lambda: False,
        refresh_retry=FAST_RETRY,
    )
    yield store
    await store.close()


def _expire(session):
    session.expires_at = datetime.now(UTC) - timedelta(seconds=1)


class TestAcquireDedup:
    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_flow(self, store, provider):
        provider.block = True
        first = asyncio.create_task(store.acquire("test", scopes="read write"))
        second = asyncio.create_task(store.acquire("test", scopes=["write", "read", "read"]))
        await _until(lambda: any(p.waiters == 2 for p in store._pending.values()))

        provider.release.set()
        s1, s2 = await asyncio.gather(first, second)

        assert s1 is s2
        assert len(provider.flow_calls) == 1
        assert store._pending == {}

    @pytest.mark.asyncio
    async def test_different_scopes_run_separate_flows(self, store, provider):
        provider.block = True
        first = asyncio.create_task(store.acquire("test", scopes=["read"]))
        second = asyncio.create_task(store.acquire("test", scopes=["write"]))
        await _until(lambda: len(provider.flow_calls) == 2)

        provider.release.set()
        s1, s2 = await asyncio.gather(first, second)

        assert s1 is not s2

    @pytest.mark.asyncio
    async def test_failure_is_shared_and_cleared(self, store, provider):
        provider.block = True
        provider.flow_error = DeniedError("access_denied")
        first = asyncio.create_task(store.acquire("test", scopes=["read"]))
        second = asyncio.create_task(store.acquire("test", scopes=["read"]))
        await _until(lambda: any(p.waiters == 2 for p in store._pending.values()))

        provider.release.set()
        results = await asyncio.gather(first, second, return_exceptions=True)

        assert all(isinstance(r, DeniedError) for r in results)
        assert store._pending == {}

        provider.flow_error = None
        session = await store.acquire("test", scopes=["read"])
        assert session.access_token == "at-2"
        assert len(provider.flow_calls) == 2

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_affect_others(self, store, provider):
        provider.block = True
        first = asyncio.create_task(store.acquire("test", scopes=["read"]))
        second = asyncio.create_task(store.acquire("test", scopes=["read"]))
        await _until(lambda: any(p.waiters == 2 for p in store._pending.values()))

        first.cancel()
        with pytest.raises(asyncio.CancelledError):
            await first

        provider.release.set()
        session = await second

        assert session.access_token == "at-1"
        assert provider.cancelled is False

    @pytest.mark.asyncio
    async def test_last_waiter_cancels_flow(self, store, provider):
        provider.block = True
        task = asyncio.create_task(store.acquire("test", scopes=["read"]))
        await _until(lambda: provider.flow_calls)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        await _until(lambda: provider.cancelled)
        assert store._pending == {}
        assert await store.get_sessions() == []

    @pytest.mark.asyncio
    async def test_request_after_cancellation_starts_new_flow(self, store, provider):
        provider.block = True
        task = asyncio.create_task(store.acquire("test", scopes=["read"]))
        await _until(lambda: provider.flow_calls)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        provider.block = False
        session = await store.acquire("test", scopes=["read"])

        assert len(provider.flow_calls) == 2
        assert session.valid


class TestAcquireReuse:
    @pytest.mark.asyncio
    async def test_exact_match_reused(self, store, provider):
        s1 = await store.acquire("test", scopes=["read"])
        s2 = await store.acquire("test", scopes=" read ")

        assert s1 is s2
        assert len(provider.flow_calls) == 1

    @pytest.mark.asyncio
    async def test_superset_reused_for_subset(self, store, provider):
        wide = await store.acquire("test", scopes=["read", "write"])
        narrow = await store.acquire("test", scopes=["read"])

        assert narrow is wide
        assert len(provider.flow_calls) == 1

    @pytest.mark.asyncio
    async def test_widening_runs_new_flow(self, store, provider):
        narrow = await store.acquire("test", scopes=["read"])
        wide = await store.acquire("test", scopes=["read", "write"])

        assert wide is not narrow
        assert wide.scopes == ("read", "write")
        assert len(provider.flow_calls) == 2

    @pytest.mark.asyncio
    async def test_narrowest_superset_wins(self, store, provider):
        middle = await store.acquire("test", scopes=["read", "write"])
        await store.acquire("test", scopes=["admin", "read", "write"])

        assert await store.acquire("test", scopes=["read"]) is middle

    @pytest.mark.asyncio
    async def test_client_override_not_reused_across_clients(self, store, provider):
        await store.acquire("test", scopes=["read", "write"])
        other = await store.acquire("test", scopes=["read", "AUTHBROKER_CLIENT_ID:other"])

        assert other.scope_set.client_id == "other"
        assert len(provider.flow_calls) == 2

    @pytest.mark.asyncio
    async def test_account_hint(self, store, provider):
        alice = await store.acquire("test", scopes=["read"])
        assert alice.account == "alice"

        assert await store.acquire("test", account_hint="alice", scopes=["read"]) is alice

        provider.account = "bob"
        bob = await store.acquire("test", account_hint="bob", scopes=["read"])
        assert bob is not alice
        assert len(provider.flow_calls) == 2

    @pytest.mark.asyncio
    async def test_account_falls_back_to_hint_then_default(self, store, provider):
        provider.account = None

        hinted = await store.acquire("test", account_hint="carol", scopes=["a"])
        anonymous = await store.acquire("test", scopes=["b"])

        assert hinted.account == "carol"
        assert anonymous.account == DEFAULT_ACCOUNT

    @pytest.mark.asyncio
    async def test_token_without_expiry_is_kept(self, store, provider, storage):
        async def oauth_app_flow(kind, scope_set, interaction):
            provider.flow_calls.append((kind, scope_set))
            token = OAuth2Token.from_response({"access_token": "gho_abc", "scope": "repo"})
            return FlowResult(token=token, account="octocat")

        provider.start_flow = oauth_app_flow

        session = await store.acquire("test", scopes=["repo"])

        assert not session.expires
        assert session.id not in store._refresh_timers
        assert await store.acquire("test", scopes=["repo"], interactive=False) is session
        assert len(provider.flow_calls) == 1

        restarted = SessionStore(store._registry, storage=storage, headless=lambda: False)
        restored = await restarted.get_sessions("test")
        assert [s.id for s in restored] == [session.id]
        assert not restored[0].expires
        await restarted.close()

    @pytest.mark.asyncio
    async def test_non_interactive_without_session(self, store, provider):
        with pytest.raises(InteractionRequiredError):
            await store.acquire("test", scopes=["read"], interactive=False)

        assert provider.flow_calls == []

    @pytest.mark.asyncio
    async def test_non_interactive_reuses_session(self, store):
        session = await store.acquire("test", scopes=["read", "write"])

        assert await store.acquire("test", scopes=["write"], interactive=False) is session

    @pytest.mark.asyncio
    async def test_unknown_provider(self, store):
        with pytest.raises(ProviderNotFoundError):
            await store.acquire("nope")

    @pytest.mark.asyncio
    async def test_invalid_scope(self, store, provider):
        with pytest.raises(InvalidScopeError):
            await store.acquire("test", scopes=['bad"scope'])

        assert provider.flow_calls == []


class TestFlowSelection:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "headless, expected",
        [(False, FlowKind.LOOPBACK), (True, FlowKind.DEVICE_CODE)],
    )
    async def test_auto(self, registry, provider, headless, expected):
        store = SessionStore(registry, headless=lambda: headless)

        await store.acquire("test")
        await store.close()

        assert provider.flow_calls[0][0] is expected

    @pytest.mark.asyncio
    async def test_auto_device_only_provider(self):
        provider = FakeProvider(make_provider_config(authorization_endpoint=None))
        registry = ProviderRegistry()
        registry.register(provider)
        store = SessionStore(registry, headless=lambda: False)

        await store.acquire("test")
        await store.close()

        assert provider.flow_calls[0][0] is FlowKind.DEVICE_CODE

    @pytest.mark.asyncio
    async def test_explicit_flow(self, store, provider):
        await store.acquire("test", flow="device_code")

        assert provider.flow_calls[0][0] is FlowKind.DEVICE_CODE

    @pytest.mark.asyncio
    async def test_default_flow(self, registry, provider):
        store = SessionStore(registry, default_flow=FlowKind.DEVICE_CODE, headless=lambda: False)

        await store.acquire("test")
        await store.close()

        assert provider.flow_calls[0][0] is FlowKind.DEVICE_CODE

    @pytest.mark.asyncio
    async def test_unknown_flow(self, store):
        with pytest.raises(InvalidConfigurationError, match="Unknown flow"):
            await store.acquire("test", flow="implicit")

    @pytest.mark.asyncio
    async def test_unsupported_flow(self):
        provider = FakeProvider(make_provider_config(device_code_endpoint=None))
        registry = ProviderRegistry()
        registry.register(provider)
        store = SessionStore(registry)

        with pytest.raises(InvalidConfigurationError, match="does not support"):
            await store.acquire("test", flow=FlowKind.DEVICE_CODE)
        await store.close()


class TestIsHeadless:
    @pytest.mark.parametrize(
        "environ, platform, expected",
        [
            ({"SSH_CONNECTION": "10.0.0.1 22 10.0.0.2 22"}, "darwin", True),
            ({"SSH_TTY": "/dev/pts/0", "DISPLAY": ":0"}, "linux", True),
            ({}, "linux", True),
            ({"DISPLAY": ":0"}, "linux", False),
            ({"WAYLAND_DISPLAY": "wayland-0"}, "linux", False),
            ({}, "darwin", False),
            ({}, "win32", False),
        ],
    )
    def test_is_headless(self, environ, platform, expected):
        assert is_headless(environ, platform) is expected


class TestRefresh:
    @pytest.mark.asyncio
    async def test_expired_session_refreshed_silently(self, store, provider):
        session = await store.acquire("test", scopes=["read"])
        _expire(session)

        again = await store.acquire("test", scopes=["read"])

        assert again is session
        assert session.access_token == "refreshed-1"
        assert session.refresh_token == "rt-1"
        assert not session.is_expired()
        assert len(provider.flow_calls) == 1

    @pytest.mark.asyncio
    async def test_concurrent_refreshes_share_one_attempt(self, store, provider):
        session = await store.acquire("test", scopes=["read"])

        s1, s2 = await asyncio.gather(store.refresh(session), store.refresh(session))

        assert s1 is s2 is session
        assert provider.refresh_calls == 1

    @pytest.mark.asyncio
    async def test_transient_failure_retried(self, store, provider):
        session = await store.acquire("test", scopes=["read"])
        calls = []
        original = provider.refresh_token

        async def flaky(scope_set, refresh_token):
            calls.append(refresh_token)
            if len(calls) == 1:
                raise NetworkError("connection reset")
            return await original(scope_set, refresh_token)

        provider.refresh_token = flaky

        await store.refresh(session)

        assert len(calls) == 2
        assert session.valid

    @pytest.mark.asyncio
    async def test_exhausted_refresh_demotes_session(self, store, provider):
        session = await store.acquire("test", scopes=["read"])
        provider.refresh_error = NetworkError("unreachable")

        with pytest.raises(TokenRefreshError):
            await store.refresh(session)

        assert provider.refresh_calls == FAST_RETRY.max_attempts
        assert session.valid is False
        assert await store.get_sessions() == []

        with pytest.raises(SessionInvalidError):
            await store.refresh(session)

    @pytest.mark.asyncio
    async def test_rejected_refresh_not_retried(self, store, provider):
        session = await store.acquire("test", scopes=["read"])
        provider.refresh_error = TokenRefreshError("invalid_grant")

        with pytest.raises(TokenRefreshError, match="invalid_grant"):
            await store.refresh(session)

        assert provider.refresh_calls == 1
        assert session.valid is False

    @pytest.mark.asyncio
    async def test_demoted_session_triggers_new_flow(self, store, provider):
        session = await store.acquire("test", scopes=["read"])
        _expire(session)
        provider.refresh_error = TokenRefreshError("invalid_grant")

        replacement = await store.acquire("test", scopes=["read"])

        assert replacement is not session
        assert replacement.access_token == "at-2"
        assert len(provider.flow_calls) == 2

    @pytest.mark.asyncio
    async def test_demoted_session_with_non_interactive_caller(self, store, provider):
        session = await store.acquire("test", scopes=["read"])
        _expire(session)
        provider.refresh_error = TokenRefreshError("invalid_grant")

        with pytest.raises(InteractionRequiredError):
            await store.acquire("test", scopes=["read"], interactive=False)

    @pytest.mark.asyncio
    async def test_refresh_without_refresh_token(self, store, provider):
        session = await store.acquire("test", scopes=["read"])
        session.refresh_token = None

        with pytest.raises(SessionInvalidError, match="no refresh token"):
            await store.refresh(session)

    def _session_expiring_in(self, store, seconds):
        session = MagicMock()
        session.expires_at = datetime.now(UTC) + timedelta(seconds=seconds)
        return store._refresh_delay(session)

    @pytest.mark.asyncio
    async def test_refresh_delay(self, store):
        assert self._session_expiring_in(store, 3600) == pytest.approx(3300, abs=2)
        assert self._session_expiring_in(store, 60) == pytest.approx(30, abs=2)
        assert self._session_expiring_in(store, 8) == pytest.approx(5, abs=1)
        assert self._session_expiring_in(store, 3) == pytest.approx(2.4, abs=0.5)
        assert self._session_expiring_in(store, 3) < 3
        assert self._session_expiring_in(store, -10) == 0.0

    @pytest.mark.asyncio
    async def test_background_refresh_of_loaded_session(self, registry, provider, storage):
        record = PersistedSession(
            id="persisted",
            provider_id="test",
            account="alice",
            scopes=["read"],
            access_token="stale",
            refresh_token="rt-old",
            expires_at=datetime.now(UTC) - timedelta(minutes=1),
            created_at=datetime.now(UTC) - timedelta(days=1),
        )
        await storage.set(storage_key("test"), PersistedSessionList(sessions=[record]).model_dump_json())
        store = SessionStore(registry, storage=storage, refresh_retry=FAST_RETRY)

        sessions = await store.get_sessions("test")
        await _until(lambda: provider.refresh_calls == 1)
        await _until(lambda: sessions[0].access_token == "refreshed-1")

        assert sessions[0].id == "persisted"
        assert sessions[0].refresh_token == "rt-old"
        await store.close()


class TestPersistence:
    @pytest.mark.asyncio
    async def test_sessions_survive_restart(self, store, registry, provider, storage):
        session = await store.acquire("test", scopes=["read", "write"])
        await store.close()

        restarted = SessionStore(registry, storage=storage)
        loaded = await restarted.get_sessions()
        reused = await restarted.acquire("test", scopes=["read"], interactive=False)
        await restarted.close()

        assert [s.id for s in loaded] == [session.id]
        assert reused.id == session.id
        assert reused.access_token == session.access_token
        assert reused.scope_set == session.scope_set
        assert len(provider.flow_calls) == 1

    @pytest.mark.asyncio
    async def test_expired_sessions_without_refresh_token_skipped(self, registry, storage):
        record = PersistedSession(
            id="dead",
            provider_id="test",
            account="alice",
            scopes=["read"],
            access_token="stale",
            expires_at=datetime.now(UTC) - timedelta(minutes=1),
            created_at=datetime.now(UTC) - timedelta(days=1),
        )
        await storage.set(storage_key("test"), PersistedSessionList(sessions=[record]).model_dump_json())
        store = SessionStore(registry, storage=storage)

        assert await store.get_sessions() == []
        await store.close()

    @pytest.mark.asyncio
    async def test_malformed_storage_ignored(self, registry, provider):
        storage = InMemorySecretStorage({storage_key("test"): "{not json"})
        store = SessionStore(registry, storage=storage, headless=lambda: False)

        assert await store.get_sessions() == []
        session = await store.acquire("test", scopes=["read"])
        await store.close()

        assert session.valid

    @pytest.mark.asyncio
    async def test_storage_failure_is_not_fatal(self, registry, provider):
        storage = MagicMock()
        storage.get = AsyncMock(side_effect=StorageError("keyring locked"))
        storage.set = AsyncMock(side_effect=StorageError("keyring locked"))
        storage.delete = AsyncMock(side_effect=StorageError("keyring locked"))
        store = SessionStore(registry, storage=storage, headless=lambda: False)

        session = await store.acquire("test", scopes=["read"])
        assert await store.get_sessions() == [session]

        await store.revoke(session)
        await store.close()

        storage.set.assert_awaited()
        storage.delete.assert_awaited()

    @pytest.mark.asyncio
    async def test_storage_holds_no_demoted_sessions(self, store, provider, storage):
        session = await store.acquire("test", scopes=["read"])
        provider.refresh_error = TokenRefreshError("invalid_grant")

        with pytest.raises(TokenRefreshError):
            await store.refresh(session)

        assert await storage.get(storage_key("test")) is None

    @pytest.mark.asyncio
    async def test_stored_document_format(self, store, storage):
        session = await store.acquire("test", scopes=["write", "read"])

        document = PersistedSessionList.model_validate_json(await storage.get(storage_key("test")))

        assert document.version == 1
        assert document.sessions[0].id == session.id
        assert document.sessions[0].scopes == ["read", "write"]


class TestQueriesAndRemoval:
    @pytest.mark.asyncio
    async def test_get_sessions_ordered_and_filtered(self, store, registry):
        other = FakeProvider(make_provider_config(id="other"))
        registry.register(other)

        first = await store.acquire("test", scopes=["a"])
        second = await store.acquire("other", scopes=["a"])
        third = await store.acquire("test", scopes=["b"])

        assert await store.get_sessions() == [first, second, third]
        assert await store.get_sessions("test") == [first, third]
        assert await store.get_session(second.id) is second
        assert await store.get_session("missing") is None

    @pytest.mark.asyncio
    async def test_revoke(self, store, provider, storage):
        session = await store.acquire("test", scopes=["read"])

        await store.revoke(session)

        assert provider.revoked == ["rt-1"]
        assert session.valid is False
        assert await store.get_sessions() == []
        assert await storage.get(storage_key("test")) is None

    @pytest.mark.asyncio
    async def test_revoke_failure_still_removes(self, store, provider):
        session = await store.acquire("test", scopes=["read"])
        provider.revoke_error = NetworkError("offline")

        await store.revoke(session)

        assert await store.get_sessions() == []

    @pytest.mark.asyncio
    async def test_acquire_after_revoke_runs_new_flow(self, store, provider):
        session = await store.acquire("test", scopes=["read"])
        await store.revoke(session)

        replacement = await store.acquire("test", scopes=["read"])

        assert replacement is not session
        assert len(provider.flow_calls) == 2

    def _block_refresh(self, provider):
        started = asyncio.Event()

        async def stalled(scope_set, refresh_token):
            started.set()
            await asyncio.Event().wait()

        provider.refresh_token = stalled
        return started

    @pytest.mark.asyncio
    async def test_revoke_during_silent_refresh_restarts_sign_in(self, store, provider):
        session = await store.acquire("test", scopes=["read"])
        _expire(session)
        started = self._block_refresh(provider)

        caller = asyncio.create_task(store.acquire("test", scopes=["read"]))
        await started.wait()
        await store.revoke(session)
        replacement = await caller

        assert replacement is not session
        assert replacement.access_token == "at-2"
        assert provider.revoked == ["rt-1"]

    @pytest.mark.asyncio
    async def test_revoke_during_silent_refresh_non_interactive(self, store, provider):
        session = await store.acquire("test", scopes=["read"])
        _expire(session)
        started = self._block_refresh(provider)

        caller = asyncio.create_task(store.acquire("test", scopes=["read"], interactive=False))
        await started.wait()
        await store.revoke(session)

        with pytest.raises(InteractionRequiredError):
            await caller
        assert len(provider.flow_calls) == 1

    @pytest.mark.asyncio
    async def test_cancelled_caller_during_refresh_still_cancelled(self, store, provider):
        session = await store.acquire("test", scopes=["read"])
        _expire(session)
        started = self._block_refresh(provider)

        caller = asyncio.create_task(store.acquire("test", scopes=["read"]))
        await started.wait()
        caller.cancel()

        with pytest.raises(asyncio.CancelledError):
            await caller
        assert len(provider.flow_calls) == 1


class TestClose:
    @pytest.mark.asyncio
    async def test_close_cancels_pending_flows(self, registry, provider):
        provider.block = True
        store = SessionStore(registry, headless=lambda: False)
        task = asyncio.create_task(store.acquire("test", scopes=["read"]))
        await _until(lambda: provider.flow_calls)

        await store.close()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert provider.cancelled is True

    @pytest.mark.asyncio
    async def test_acquire_after_close(self, registry):
        store = SessionStore(registry)
        await store.close()

        with pytest.raises(RuntimeError, match="closed"):
            await store.acquire("test")

    @pytest.mark.asyncio
    async def test_close_cancels_refresh_timers(self, store):
        await store.acquire("test", scopes=["read"])
        timers = list(store._refresh_timers.values())
        assert timers

        await store.close()

        assert all(t.done() for t in timers)
