"""Storage Connector — the single supervised connection to the shared store.

Invariants:
    - ConnectionState moves Disconnected → Connecting → Connected | Failed
    - The only backwards move is Connected → Disconnected on a detected drop
    - ready is set exactly while the store is Connected
    - Every session auto-rolls-back on exception; SQLAlchemy errors surface as UpstreamError

Design Decisions:
    - connect() probes with SELECT 1 and creates the counter table if missing:
      the engine is lazy, so without a probe a bad URL would only fail on the
      first rate-limit check (ADR: fail at boot, not at first request)
    - Pool sizing only for server databases; SQLite uses SQLAlchemy's defaults
    - expire_on_commit=False: prevents lazy-load issues in async context
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from enum import Enum
from typing import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)

import gatehouse.models  # noqa: F401 - registers tables on Base.metadata
from gatehouse.core.errors import UpstreamError
from gatehouse.db.base import Base
from gatehouse.infrastructure.observability import log_event

logger = logging.getLogger(__name__)


def is_disconnect(exc: BaseException) -> bool:
    """True when exc means the store itself is unreachable, not a bad statement."""
    if isinstance(exc, (OperationalError, OSError)):
        return True
    return isinstance(exc, DBAPIError) and exc.connection_invalidated


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


_ALLOWED_TRANSITIONS: dict[ConnectionState, frozenset[ConnectionState]] = {
    ConnectionState.DISCONNECTED: frozenset({ConnectionState.CONNECTING}),
    ConnectionState.CONNECTING: frozenset({
        ConnectionState.CONNECTED, ConnectionState.FAILED,
        ConnectionState.DISCONNECTED,
    }),
    ConnectionState.CONNECTED: frozenset({ConnectionState.DISCONNECTED}),
    ConnectionState.FAILED: frozenset(),
}


class StorageConnector:
    """Owns the async engine and reports connection state and readiness."""

    def __init__(
        self,
        database_url: str,
        pool_size: int = 20,
        max_overflow: int = 10,
        connect_timeout: float = 10.0,
    ):
        self.database_url = database_url
        self.connect_timeout = connect_timeout
        engine_kwargs: dict = {"pool_pre_ping": True}
        if not database_url.startswith("sqlite"):
            engine_kwargs.update(
                pool_size=pool_size, max_overflow=max_overflow, pool_recycle=3600,
            )
        self.engine: AsyncEngine = create_async_engine(database_url, **engine_kwargs)
        self._session_factory = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False,
        )
        self._state = ConnectionState.DISCONNECTED
        self.ready = asyncio.Event()

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    def _transition(self, target: ConnectionState) -> None:
        if target not in _ALLOWED_TRANSITIONS[self._state]:
            raise RuntimeError(
                f"Illegal storage transition {self._state.value} -> {target.value}",
            )
        previous, self._state = self._state, target
        if target is ConnectionState.CONNECTED:
            self.ready.set()
        else:
            self.ready.clear()
        level = logging.INFO if target is not ConnectionState.FAILED else logging.ERROR
        log_event(
            logger, level, f"Storage {previous.value} -> {target.value}",
            state=target.value,
        )

    async def _establish(self) -> None:
        async with self.engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
            await conn.run_sync(Base.metadata.create_all)

    async def connect(self) -> ConnectionState:
        """Connect and ensure the counter table exists.

        Raises UpstreamError (after moving to Failed) when the store is
        unreachable within connect_timeout.
        """
        self._transition(ConnectionState.CONNECTING)
        try:
            await asyncio.wait_for(self._establish(), timeout=self.connect_timeout)
        except (SQLAlchemyError, OSError, asyncio.TimeoutError) as e:
            self._transition(ConnectionState.FAILED)
            raise UpstreamError(
                "Storage connection failed",
                context={"exception_type": type(e).__name__, "detail": str(e)},
            ) from e
        self._transition(ConnectionState.CONNECTED)
        return self._state

    async def probe(self) -> bool:
        """Liveness probe; a failure while Connected marks the store Disconnected."""
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except (SQLAlchemyError, OSError) as e:
            log_event(logger, logging.WARNING, f"Storage probe failed: {e}")
            if self._state is ConnectionState.CONNECTED:
                self._transition(ConnectionState.DISCONNECTED)
            return False

    async def reconnect(self) -> bool:
        """Disconnected → Connecting → Connected, or back to Disconnected."""
        if self._state is not ConnectionState.DISCONNECTED:
            return self.is_connected
        self._transition(ConnectionState.CONNECTING)
        try:
            await asyncio.wait_for(self._establish(), timeout=self.connect_timeout)
        except (SQLAlchemyError, OSError, asyncio.TimeoutError) as e:
            log_event(logger, logging.WARNING, f"Storage reconnect failed: {e}")
            self._transition(ConnectionState.DISCONNECTED)
            return False
        self._transition(ConnectionState.CONNECTED)
        return True

    def mark_disconnected(self) -> None:
        """Record a drop observed outside probe() (e.g. by a failing query)."""
        if self._state is ConnectionState.CONNECTED:
            self._transition(ConnectionState.DISCONNECTED)

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Provide session with auto-rollback on exception."""
        session = self._session_factory()
        try:
            yield session
        except SQLAlchemyError as e:
            await session.rollback()
            log_event(logger, logging.ERROR, f"Storage session error: {e}")
            raise UpstreamError(
                "Storage operation failed",
                context={"exception_type": type(e).__name__},
            ) from e
        finally:
            await session.close()

    async def dispose(self) -> None:
        await self.engine.dispose()
        if self._state is ConnectionState.CONNECTED:
            self._transition(ConnectionState.DISCONNECTED)
