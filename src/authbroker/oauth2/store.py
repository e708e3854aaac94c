"""
Session store: the single owner of signed-in sessions.

Responsibilities:
- Reuse of cached sessions (exact scope match first, then the narrowest
  valid superset of the same provider, account, client and tenant)
- At most one in-flight interactive acquisition per
  (provider, account hint, scope set); concurrent callers share its result
- Background refresh shortly before expiry, retried with backoff; a
  session whose refresh is exhausted is demoted and never reused
- Persistence of sessions per provider through a SecretStorage backend;
  storage failures are logged and never abort an acquisition

All mutations of the session and pending tables happen under one
asyncio.Lock. Network I/O and user interaction run in tasks outside it.
"""

import asyncio
import logging
import os
import sys
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime

from pydantic import ValidationError

from authbroker.errors.exceptions import AuthBrokerError
from authbroker.logging import LogContext, generate_flow_id, log_exception
from authbroker.oauth2.exceptions import (
    InteractionRequiredError,
    InvalidConfigurationError,
    SessionInvalidError,
    TokenRefreshError,
)
from authbroker.oauth2.interaction import InteractionHandler, LoggingInteractionHandler
from authbroker.oauth2.models import ScopeSet, Session
from authbroker.oauth2.providers import AuthProvider
from authbroker.oauth2.registry import ProviderRegistry
from authbroker.oauth2.schemas import PersistedSession, PersistedSessionList
from authbroker.oauth2.scopes import normalize
from authbroker.resilience.retry import DEFAULT_RETRY, RetryConfig, with_retry_async
from authbroker.types import FlowKind, SecretStorage

logger = logging.getLogger(__name__)

# Refresh this long before the access token expires (5 minutes)
DEFAULT_REFRESH_LEAD_SECONDS = 300
# Lower bound between refreshes for tokens shorter-lived than the lead time
MIN_REFRESH_DELAY_SECONDS = 5.0
# The floor never exceeds this share of the remaining lifetime
MAX_REFRESH_FRACTION = 0.8

AUTO_FLOW = "auto"
DEFAULT_ACCOUNT = "default"
STORAGE_KEY_PREFIX = "authbroker.sessions."

PendingKey = tuple[str, str, tuple[str, str, str]]


def storage_key(provider_id: str) -> str:
    return f"{STORAGE_KEY_PREFIX}{provider_id}"


def is_headless(environ: dict | None = None, platform: str | None = None) -> bool:
    """True when no local browser can be opened (SSH session or no display on Linux)."""
    env = os.environ if environ is None else environ
    if env.get("SSH_CONNECTION") or env.get("SSH_TTY"):
        return True
    platform = sys.platform if platform is None else platform
    if platform.startswith("linux"):
        return not (env.get("DISPLAY") or env.get("WAYLAND_DISPLAY"))
    return False


@dataclass
class PendingRequest:
    """In-flight acquisition shared by every caller asking for the same key."""

    key: PendingKey
    future: "asyncio.Future[Session]"
    task: "asyncio.Task[Session] | None" = None
    waiters: int = 0


def _to_record(session: Session) -> PersistedSession:
    return PersistedSession(
        id=session.id,
        provider_id=session.provider_id,
        account=session.account,
        scopes=list(session.scopes),
        client_id=session.scope_set.client_id,
        tenant=session.scope_set.tenant,
        access_token=session.access_token,
        refresh_token=session.refresh_token,
        id_token=session.id_token,
        expires_at=session.expires_at,
        created_at=session.created_at,
    )


def _from_record(record: PersistedSession) -> Session:
    return Session(
        id=record.id,
        provider_id=record.provider_id,
        account=record.account,
        scope_set=ScopeSet(
            scopes=tuple(sorted(set(record.scopes))),
            client_id=record.client_id,
            tenant=record.tenant,
        ),
        access_token=record.access_token,
        refresh_token=record.refresh_token,
        id_token=record.id_token,
        expires_at=record.expires_at,
        created_at=record.created_at,
    )


class SessionStore:
    """
    Process-scoped session table with request dedup, refresh and persistence.

    Args:
        registry: Providers available for acquisition
        storage: Secure storage for persisted sessions; None keeps sessions
            in memory only
        interaction: Host UI used to present device codes and open URLs
        default_flow: "auto", "loopback" or "device_code"
        refresh_lead_seconds: Refresh this many seconds before expiry
        refresh_retry: Backoff policy for refresh attempts
        headless: Predicate used by "auto" flow selection

    Usage:
        store = SessionStore(registry, storage=InMemorySecretStorage())
        session = await store.acquire("github", scopes=["repo"])
        ...
        await store.close()
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        storage: SecretStorage | None = None,
        interaction: InteractionHandler | None = None,
        default_flow: str | FlowKind = AUTO_FLOW,
        refresh_lead_seconds: float = DEFAULT_REFRESH_LEAD_SECONDS,
        refresh_retry: RetryConfig | None = None,
        headless: Callable[[], bool] = is_headless,
    ):
        self._registry = registry
        self._storage = storage
        self._interaction = interaction or LoggingInteractionHandler()
        self.default_flow = default_flow
        self.refresh_lead_seconds = refresh_lead_seconds
        self.refresh_retry = refresh_retry or DEFAULT_RETRY
        self._headless = headless

        self._lock = asyncio.Lock()
        self._sessions: dict[str, Session] = {}
        self._pending: dict[PendingKey, PendingRequest] = {}
        self._refresh_tasks: dict[str, asyncio.Task] = {}
        self._refresh_timers: dict[str, asyncio.Task] = {}

        self._loaded: set[str] = set()
        self._load_locks: dict[str, asyncio.Lock] = {}
        self._persist_locks: dict[str, asyncio.Lock] = {}
        self._closed = False

    # =========================================================================
    # Acquisition
    # =========================================================================

    async def acquire(
        self,
        provider_id: str,
        account_hint: str | None = None,
        scopes: str | Iterable[str] | None = None,
        *,
        interactive: bool = True,
        flow: str | FlowKind | None = None,
    ) -> Session:
        """
        Return a session for (provider, account, scopes), signing in if needed.

        Raises:
            ProviderNotFoundError: Unknown provider
            InvalidScopeError: Malformed scopes
            InteractionRequiredError: interactive=False and no reusable session
            InvalidConfigurationError: Requested flow not supported
            Flow errors (DeniedError, ExpiredError, TimeoutError, ...) shared
            by every caller attached to the same acquisition
        """
        if self._closed:
            raise RuntimeError("SessionStore is closed")

        provider = self._registry.get(provider_id)
        scope_set = normalize(provider.config, scopes)
        await self._ensure_loaded(provider_id)
        key: PendingKey = (provider_id, account_hint or "", scope_set.key)

        while True:
            async with self._lock:
                session = self._find_reusable(provider_id, account_hint, scope_set)
                pending = None
                if session is None:
                    pending = self._pending.get(key)
                    if pending is None:
                        if not interactive:
                            raise InteractionRequiredError(
                                f"No session for '{provider_id}' with scopes "
                                f"'{scope_set}' and interaction is not allowed",
                                context={"provider_id": provider_id},
                            )
                        kind = self._select_flow(provider.config, flow)
                        pending = self._start_pending(key, provider, scope_set, account_hint, kind)
                    pending.waiters += 1

            if pending is not None:
                return await self._wait(pending)

            if not session.is_expired():
                logger.debug(
                    "Reusing session %s",
                    session.id,
                    extra={"provider_id": provider_id, "session_id": session.id},
                )
                return session

            try:
                return await self.refresh(session)
            except asyncio.CancelledError:
                if self._closed or asyncio.current_task().cancelling():
                    raise
                # The shared refresh was cancelled by a sign-out, not this caller
                logger.info(
                    "Refresh of session %s cancelled by sign-out",
                    session.id,
                    extra={"provider_id": provider_id, "session_id": session.id},
                )
            except AuthBrokerError as e:
                # Refresh failure demotes the session; look again
                logger.info(
                    "Expired session could not be refreshed: %s",
                    e,
                    extra={"provider_id": provider_id, "session_id": session.id},
                )

    def _find_reusable(
        self,
        provider_id: str,
        account_hint: str | None,
        scope_set: ScopeSet,
    ) -> Session | None:
        """
        Narrowest valid session covering scope_set.

        An exact match always has the fewest scopes among covering sessions,
        so it wins; remaining ties go to the newest session.
        """
        candidates = [
            s
            for s in self._sessions.values()
            if s.valid
            and s.provider_id == provider_id
            and (account_hint is None or s.account == account_hint)
            and s.scope_set.issuperset(scope_set)
            and (s.refresh_token or not s.is_expired())
        ]
        if not candidates:
            return None
        return min(candidates, key=lambda s: (len(s.scopes), -s.created_at.timestamp()))

    def _select_flow(self, config, flow: str | FlowKind | None) -> FlowKind:
        requested = flow or self.default_flow
        if requested == AUTO_FLOW:
            if config.supports(FlowKind.DEVICE_CODE) and (
                not config.supports(FlowKind.LOOPBACK) or self._headless()
            ):
                return FlowKind.DEVICE_CODE
            return FlowKind.LOOPBACK

        try:
            kind = FlowKind(requested)
        except ValueError as e:
            raise InvalidConfigurationError(f"Unknown flow '{requested}'", cause=e) from e
        if not config.supports(kind):
            raise InvalidConfigurationError(
                f"Provider '{config.id}' does not support the {kind.value} flow"
            )
        return kind

    def _start_pending(
        self,
        key: PendingKey,
        provider: AuthProvider,
        scope_set: ScopeSet,
        account_hint: str | None,
        kind: FlowKind,
    ) -> PendingRequest:
        pending = PendingRequest(key=key, future=asyncio.get_running_loop().create_future())
        pending.task = asyncio.create_task(
            self._run_flow(provider, scope_set, account_hint, kind),
            name=f"acquire-{provider.config.id}-{kind.value}",
        )
        pending.task.add_done_callback(lambda task: self._release(pending, task))
        self._pending[key] = pending
        return pending

    async def _wait(self, pending: PendingRequest) -> Session:
        try:
            return await asyncio.shield(pending.future)
        except asyncio.CancelledError:
            if not pending.future.done():
                pending.waiters -= 1
                if pending.waiters <= 0:
                    # Last waiter gone: detach the key and tear the flow down
                    if self._pending.get(pending.key) is pending:
                        del self._pending[pending.key]
                    pending.task.cancel()
                    logger.info(
                        "Acquisition cancelled by last waiter",
                        extra={"provider_id": pending.key[0]},
                    )
            raise

    def _release(self, pending: PendingRequest, task: asyncio.Task) -> None:
        """Resolve every waiter with the flow task's outcome."""
        if self._pending.get(pending.key) is pending:
            del self._pending[pending.key]
        if pending.future.done():
            return

        if task.cancelled():
            pending.future.cancel()
            return
        error = task.exception()
        if error is not None:
            pending.future.set_exception(error)
            # Each waiter re-raises it; the shared future itself counts as retrieved
            pending.future.exception()
        else:
            pending.future.set_result(task.result())

    async def _run_flow(
        self,
        provider: AuthProvider,
        scope_set: ScopeSet,
        account_hint: str | None,
        kind: FlowKind,
    ) -> Session:
        config = provider.config
        with LogContext(provider_id=config.id, flow_id=generate_flow_id(), account=account_hint):
            logger.info(
                "Starting %s sign-in for '%s'",
                kind.value,
                config.id,
                extra={"provider_id": config.id, "flow": kind.value, "scopes": scope_set.canonical},
            )
            try:
                result = await provider.start_flow(kind, scope_set, self._interaction)
            except asyncio.CancelledError:
                logger.info("Sign-in for '%s' cancelled", config.id, extra={"provider_id": config.id})
                raise
            except Exception as e:
                log_exception(
                    logger,
                    e,
                    f"Sign-in for '{config.id}' failed",
                    level=logging.WARNING,
                    include_traceback=False,
                    provider_id=config.id,
                    flow=kind.value,
                )
                raise

            account = result.account or account_hint or DEFAULT_ACCOUNT
            session = Session.from_token(config.id, account, scope_set, result.token)
            async with self._lock:
                self._install(session)
            await self._persist(config.id)

            logger.info(
                "Signed in to '%s' as %s",
                config.id,
                account,
                extra={
                    "provider_id": config.id,
                    "session_id": session.id,
                    "account": account,
                    "expires_at": session.expires_at.isoformat(),
                },
            )
            return session

    def _install(self, session: Session) -> None:
        """Add a session, replacing any with the same provider, account and scopes."""
        replaced = [
            s
            for s in self._sessions.values()
            if s.provider_id == session.provider_id
            and s.account == session.account
            and s.scope_set.key == session.scope_set.key
        ]
        for old in replaced:
            old.invalidate()
            self._drop(old)
        self._sessions[session.id] = session
        self._schedule_refresh(session)

    def _drop(self, session: Session) -> None:
        self._sessions.pop(session.id, None)
        timer = self._refresh_timers.pop(session.id, None)
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()

    # =========================================================================
    # Refresh
    # =========================================================================

    async def refresh(self, session: Session) -> Session:
        """
        Refresh a session's access token.

        Concurrent calls for one session share a single attempt. Transient
        failures are retried with backoff; exhaustion or rejection demotes
        the session.

        Raises:
            SessionInvalidError: Session already demoted or has no refresh token
            TokenRefreshError: Refresh failed; session demoted
        """
        if not session.valid:
            raise SessionInvalidError(f"Session {session.id} is no longer valid")
        if not session.refresh_token:
            raise SessionInvalidError(f"Session {session.id} has no refresh token")

        async with self._lock:
            task = self._refresh_tasks.get(session.id)
            if task is None:
                task = asyncio.create_task(
                    self._refresh_with_retry(session),
                    name=f"refresh-{session.provider_id}-{session.id}",
                )
                self._refresh_tasks[session.id] = task
                task.add_done_callback(
                    lambda t, sid=session.id: self._refresh_done(sid, t)
                )
        return await asyncio.shield(task)

    def _refresh_done(self, session_id: str, task: asyncio.Task) -> None:
        if self._refresh_tasks.get(session_id) is task:
            del self._refresh_tasks[session_id]
        if not task.cancelled():
            # Callers re-raise; the timer path may have none
            task.exception()

    async def _refresh_with_retry(self, session: Session) -> Session:
        @with_retry_async(config=self.refresh_retry)
        async def refresh_session_token():
            provider = self._registry.get(session.provider_id)
            return await provider.refresh_token(session.scope_set, session.refresh_token)

        with LogContext(
            provider_id=session.provider_id,
            flow_id=generate_flow_id(),
            account=session.account,
        ):
            try:
                token = await refresh_session_token()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                await self._demote(session, e)
                if isinstance(e, TokenRefreshError):
                    raise
                raise TokenRefreshError(
                    f"Refresh failed for session {session.id}",
                    cause=e,
                    context={"provider_id": session.provider_id},
                ) from e

            async with self._lock:
                if not session.valid:
                    raise SessionInvalidError(f"Session {session.id} was removed during refresh")
                session.apply_token(token)
                self._schedule_refresh(session)
            await self._persist(session.provider_id)

            logger.info(
                "Refreshed session %s",
                session.id,
                extra={
                    "provider_id": session.provider_id,
                    "session_id": session.id,
                    "expires_at": session.expires_at.isoformat(),
                },
            )
            return session

    async def _demote(self, session: Session, error: Exception) -> None:
        async with self._lock:
            session.invalidate()
            self._drop(session)
        log_exception(
            logger,
            error,
            f"Session {session.id} demoted after refresh failure",
            level=logging.WARNING,
            include_traceback=False,
            provider_id=session.provider_id,
            session_id=session.id,
        )
        await self._persist(session.provider_id)

    def _refresh_delay(self, session: Session) -> float:
        remaining = (session.expires_at - datetime.now(UTC)).total_seconds()
        if remaining <= 0:
            return 0.0
        delay = remaining - self.refresh_lead_seconds
        if delay < MIN_REFRESH_DELAY_SECONDS:
            delay = max(
                remaining / 2,
                min(MIN_REFRESH_DELAY_SECONDS, remaining * MAX_REFRESH_FRACTION),
            )
        return delay

    def _schedule_refresh(self, session: Session) -> None:
        old = self._refresh_timers.pop(session.id, None)
        if old is not None and old is not asyncio.current_task():
            old.cancel()
        if not session.refresh_token or not session.expires or self._closed:
            return

        delay = self._refresh_delay(session)
        self._refresh_timers[session.id] = asyncio.create_task(
            self._refresh_timer(session, delay),
            name=f"refresh-timer-{session.id}",
        )
        logger.debug(
            "Scheduled refresh for session %s",
            session.id,
            extra={"session_id": session.id, "refresh_in_seconds": round(delay, 1)},
        )

    async def _refresh_timer(self, session: Session, delay: float) -> None:
        await asyncio.sleep(delay)
        if self._refresh_timers.get(session.id) is asyncio.current_task():
            del self._refresh_timers[session.id]
        try:
            await self.refresh(session)
        except AuthBrokerError:
            # Already logged and demoted by the refresh task
            pass

    # =========================================================================
    # Queries and removal
    # =========================================================================

    async def get_sessions(self, provider_id: str | None = None) -> list[Session]:
        """Valid sessions, oldest first; all providers when provider_id is None."""
        provider_ids = [provider_id] if provider_id else self._registry.list_providers()
        for pid in provider_ids:
            await self._ensure_loaded(pid)
        async with self._lock:
            sessions = [
                s
                for s in self._sessions.values()
                if s.valid and (provider_id is None or s.provider_id == provider_id)
            ]
        return sorted(sessions, key=lambda s: s.created_at)

    async def get_session(self, session_id: str) -> Session | None:
        for session in await self.get_sessions():
            if session.id == session_id:
                return session
        return None

    async def revoke(self, session: Session) -> None:
        """
        Sign a session out: remove it, revoke it at the provider when
        supported (best effort) and update storage.
        """
        async with self._lock:
            session.invalidate()
            self._drop(session)
            refresh_task = self._refresh_tasks.pop(session.id, None)
        if refresh_task is not None:
            refresh_task.cancel()

        token = session.refresh_token or session.access_token
        try:
            provider = self._registry.get(session.provider_id)
            revoked = await provider.revoke_token(session.scope_set, token)
        except AuthBrokerError as e:
            log_exception(
                logger,
                e,
                f"Revocation of session {session.id} failed",
                level=logging.WARNING,
                include_traceback=False,
                provider_id=session.provider_id,
                session_id=session.id,
            )
            revoked = False

        await self._persist(session.provider_id)
        logger.info(
            "Removed session %s",
            session.id,
            extra={"provider_id": session.provider_id, "session_id": session.id, "revoked": revoked},
        )

    # =========================================================================
    # Persistence
    # =========================================================================

    async def _ensure_loaded(self, provider_id: str) -> None:
        if provider_id in self._loaded:
            return
        lock = self._load_locks.setdefault(provider_id, asyncio.Lock())
        async with lock:
            if provider_id in self._loaded:
                return
            records = await self._load_records(provider_id)
            async with self._lock:
                for record in records:
                    session = _from_record(record)
                    if session.id in self._sessions:
                        continue
                    if not session.refresh_token and session.is_expired():
                        continue
                    self._sessions[session.id] = session
                    self._schedule_refresh(session)
            self._loaded.add(provider_id)

        if records:
            logger.info(
                "Loaded %d persisted sessions for '%s'",
                len(records),
                provider_id,
                extra={"provider_id": provider_id, "session_count": len(records)},
            )

    async def _load_records(self, provider_id: str) -> list[PersistedSession]:
        if self._storage is None:
            return []
        try:
            raw = await self._storage.get(storage_key(provider_id))
        except Exception as e:
            log_exception(
                logger,
                e,
                f"Failed to load sessions for '{provider_id}'",
                level=logging.WARNING,
                include_traceback=False,
                provider_id=provider_id,
            )
            return []
        if not raw:
            return []
        try:
            document = PersistedSessionList.model_validate_json(raw)
        except ValidationError as e:
            logger.warning(
                "Ignoring malformed persisted sessions for '%s'",
                provider_id,
                extra={"provider_id": provider_id, "error_message": str(e)[:200]},
            )
            return []
        return [r for r in document.sessions if r.provider_id == provider_id]

    async def _persist(self, provider_id: str) -> None:
        """Write the provider's valid sessions to storage; failures are logged."""
        if self._storage is None:
            return
        lock = self._persist_locks.setdefault(provider_id, asyncio.Lock())
        async with lock:
            async with self._lock:
                document = PersistedSessionList(
                    sessions=[
                        _to_record(s)
                        for s in self._sessions.values()
                        if s.valid and s.provider_id == provider_id
                    ]
                )
            key = storage_key(provider_id)
            try:
                if document.sessions:
                    await self._storage.set(key, document.model_dump_json())
                else:
                    await self._storage.delete(key)
            except Exception as e:
                log_exception(
                    logger,
                    e,
                    f"Failed to persist sessions for '{provider_id}'; keeping them in memory",
                    level=logging.WARNING,
                    include_traceback=False,
                    provider_id=provider_id,
                )

    # =========================================================================
    # Teardown
    # =========================================================================

    async def close(self) -> None:
        """Cancel every pending flow, refresh and timer; release all ports."""
        self._closed = True
        async with self._lock:
            tasks = [p.task for p in self._pending.values() if p.task is not None]
            tasks += list(self._refresh_tasks.values())
            tasks += list(self._refresh_timers.values())
            self._refresh_timers.clear()

        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        logger.info(
            "SessionStore closed",
            extra={"session_count": len(self._sessions)},
        )


__all__ = [
    "SessionStore",
    "PendingRequest",
    "is_headless",
    "storage_key",
    "AUTO_FLOW",
    "DEFAULT_ACCOUNT",
    "DEFAULT_REFRESH_LEAD_SECONDS",
]
