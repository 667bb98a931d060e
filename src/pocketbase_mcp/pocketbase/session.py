"""Session holder for the PocketBase connection.

Pattern: Single Owner, Lazy Renewal
------------------------------------
Exactly one component, the ``SessionHolder``, owns the live PocketBase
handle and its authentication state.  Callers never build or mutate a handle
themselves; they ask the holder for the current ``Session`` and the holder
decides, on every access, whether the session is still fresh.

Renewal policy:

  - A session authenticated less than ``SESSION_TTL`` ago is reused as is.
  - A stale or invalidated session is re-authenticated with the configured
    superuser credentials.
  - Without credentials, or when authentication fails, the session runs in
    *public-only* mode (``is_initialized`` but not ``is_valid``) so that
    collection rules allowing anonymous access keep working.

Two teardown paths exist: ``invalidate()`` keeps the handle and forces a
re-auth on next access; ``reset()`` closes and drops the handle entirely.
"""

from __future__ import annotations

import asyncio
import dataclasses
import datetime
import logging
from typing import Any, Callable, Mapping

import httpx

from pocketbase_mcp.errors import ConfigurationError, ServiceError, UnavailableError
from pocketbase_mcp.pocketbase.client import ADMIN_COLLECTION, PocketBaseClient
from pocketbase_mcp.pocketbase.credentials import URL_REQUIRED, ConnectionConfig, resolve

logger = logging.getLogger(__name__)

SESSION_TTL = datetime.timedelta(minutes=30)

Clock = Callable[[], datetime.datetime]
ClientFactory = Callable[[str], PocketBaseClient]


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)


@dataclasses.dataclass
class Session:
    """Live, possibly-authenticated handle to the PocketBase backend.

    Attributes:
        handle:           The REST client used for every call.
        authenticated_at: When superuser authentication last succeeded.
        is_valid:         Whether the handle carries a usable admin token.
        is_initialized:   Whether the renewal policy has run at least once.
                          ``is_initialized and not is_valid`` is public-only mode.
        subscriptions:    Realtime subscriptions registered on this session.
    """

    handle: PocketBaseClient
    authenticated_at: datetime.datetime | None = None
    is_valid: bool = False
    is_initialized: bool = False
    subscriptions: dict[str, dict[str, Any]] = dataclasses.field(default_factory=dict)

    @property
    def is_public_only(self) -> bool:
        return self.is_initialized and not self.is_valid

    def age(self, now: datetime.datetime) -> datetime.timedelta | None:
        if self.authenticated_at is None:
            return None
        return now - self.authenticated_at

    def describe(self, now: datetime.datetime) -> dict[str, Any]:
        age = self.age(now)
        return {
            "initialized": self.is_initialized,
            "authenticated": self.is_valid,
            "publicOnly": self.is_public_only,
            "lastAuth": self.authenticated_at.isoformat() if self.authenticated_at else None,
            "authAgeSeconds": round(age.total_seconds(), 1) if age is not None else None,
            "subscriptions": len(self.subscriptions),
        }


class SessionHolder:
    """Owns at most one PocketBase ``Session`` at a time."""

    def __init__(
        self,
        config: ConnectionConfig | None,
        *,
        config_error: ConfigurationError | None = None,
        ttl: datetime.timedelta = SESSION_TTL,
        clock: Clock = utcnow,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self._config = config
        self._config_error = config_error
        self._ttl = ttl
        self._clock = clock
        self._client_factory: ClientFactory = client_factory or PocketBaseClient
        self._session: Session | None = None
        self._lock = asyncio.Lock()
        self.auth_attempts = 0

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any], **kwargs: Any) -> SessionHolder:
        """Build a holder from an unresolved settings bag.

        A bag without any URL yields an *unavailable* holder; any other
        violation is kept and raised on every access.
        """
        try:
            config = resolve(raw)
        except ConfigurationError as exc:
            if exc.violations == [URL_REQUIRED]:
                logger.warning("POCKETBASE_URL not configured; PocketBase tools are unavailable")
            else:
                logger.error("PocketBase configuration rejected: %s", exc.violations)
            return cls(None, config_error=exc, **kwargs)
        return cls(config, **kwargs)

    @property
    def config(self) -> ConnectionConfig | None:
        return self._config

    @property
    def is_configured(self) -> bool:
        return self._config is not None

    @property
    def current(self) -> Session | None:
        """The held session, without triggering creation or renewal."""
        return self._session

    async def get_session(self) -> Session:
        """Return a usable session, creating or renewing it as needed.

        Raises ``UnavailableError`` when no base URL is configured and the
        stored ``ConfigurationError`` for any other invalid configuration.
        Never raises because authentication failed.
        """
        config = self._require_config()
        async with self._lock:
            if self._session is None:
                logger.info("Creating new PocketBase session for %s", config.base_url)
                self._session = Session(handle=self._client_factory(config.base_url))
            session = self._session
            if self._needs_renewal(session):
                await self._renew(session, config)
            return session

    async def refresh(self) -> Session:
        """Extend the admin token through ``auth-refresh`` instead of a full login.

        A session that is not authenticated is renewed the regular way.
        """
        session = await self.get_session()
        if not session.is_valid:
            return session
        async with self._lock:
            await session.handle.auth_refresh()
            session.authenticated_at = self._clock()
        logger.info("PocketBase admin token refreshed")
        return session

    def subscribe(self, topic: str, info: dict[str, Any]) -> None:
        """Register a realtime subscription on the held session."""
        if self._session is None:
            raise UnavailableError("No active PocketBase session to subscribe on")
        self._session.subscriptions[topic] = info

    def unsubscribe(self, topic: str | None = None) -> list[str]:
        """Drop *topic* (or every subscription) and return the removed topics."""
        if self._session is None:
            return []
        subs = self._session.subscriptions
        if topic is None:
            removed = list(subs)
        else:
            removed = [topic] if topic in subs else []
        for name in removed:
            subs.pop(name, None)
        return removed

    def invalidate(self) -> None:
        """Force re-authentication on next access, keeping the handle."""
        if self._session is not None:
            self._session.is_valid = False
            logger.debug("PocketBase session invalidated")

    async def reset(self, stale: Session | None = None) -> bool:
        """Discard the held session and close its handle.

        With *stale* given, only that exact session is discarded; a session
        already replaced by a concurrent caller is left alone.  Returns
        whether a session was torn down.
        """
        session = self._session
        if session is None or (stale is not None and session is not stale):
            return False
        self._session = None
        released = len(session.subscriptions)
        session.subscriptions.clear()
        session.is_valid = False
        session.is_initialized = False
        session.authenticated_at = None
        await session.handle.aclose()
        logger.info("PocketBase session reset (released %d subscriptions)", released)
        return True

    # -- private helpers -----------------------------------------------------

    def _require_config(self) -> ConnectionConfig:
        if self._config is not None:
            return self._config
        error = self._config_error
        if error is None or error.violations == [URL_REQUIRED]:
            raise UnavailableError(
                "PocketBase instance not available - check POCKETBASE_URL configuration"
            )
        raise error

    def _needs_renewal(self, session: Session) -> bool:
        if not session.is_initialized or not session.is_valid:
            return True
        age = session.age(self._clock())
        return age is None or age > self._ttl

    async def _renew(self, session: Session, config: ConnectionConfig) -> None:
        if not config.has_admin_credentials:
            if not session.is_initialized:
                logger.info("No admin credentials provided, using unauthenticated access")
            session.is_valid = False
            session.is_initialized = True
            return

        logger.info("Authenticating with PocketBase as %s", config.admin_identity)
        self.auth_attempts += 1
        try:
            await session.handle.auth_with_password(
                ADMIN_COLLECTION, config.admin_identity, config.admin_secret
            )
        except (ServiceError, httpx.HTTPError) as exc:
            logger.warning(
                "PocketBase authentication failed (%s); continuing with public access only",
                exc,
            )
            session.handle.clear_auth()
            session.is_valid = False
            session.is_initialized = True
            return

        session.authenticated_at = self._clock()
        session.is_valid = True
        session.is_initialized = True
        logger.info("PocketBase authentication successful")
