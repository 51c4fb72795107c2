"""Rate Limiter — fixed-window admission control backed by the shared store.

Invariants:
    - Constructed only from a Connected StorageConnector (init raises otherwise)
    - Admitted requests per identity never exceed max_requests within a window
    - Each check is ONE atomic upsert statement; no read-then-write in Python,
      so concurrent processes sharing the store cannot over-admit
    - Stored count saturates at max_requests + 1 (denials stop incrementing)
    - Store failures follow fail_open: allow (and log) or deny, never raise
    - A connection-class failure marks the connector Disconnected, so health
      and the storage supervisor see the drop before the next probe
    - Identities are bounded before they reach the counter table

Design Decisions:
    - INSERT ... ON CONFLICT DO UPDATE ... RETURNING: supported by PostgreSQL
      and SQLite >= 3.35, the two dialects the service runs on
    - Expired windows reset lazily inside the same statement (no sweeper)
    - Clock injectable for tests; the caller's clock is authoritative for
      window arithmetic (ADR: no dependency on store-side time functions)
"""

import logging
import math
import time
from dataclasses import dataclass
from typing import Callable

from sqlalchemy import case
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError

from gatehouse.core.errors import ErrorModel, RateLimitedError
from gatehouse.core.request_context import bounded_identity
from gatehouse.infrastructure.database import StorageConnector, is_disconnect
from gatehouse.infrastructure.observability import log_event
from gatehouse.models.rate_limit_window import RateLimitWindow

logger = logging.getLogger(__name__)

_INSERT_BY_DIALECT = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of one admission check."""
    allowed: bool
    limit: int
    count: int
    reset_after: float
    degraded: bool = False

    @property
    def remaining(self) -> int:
        return max(self.limit - self.count, 0)

    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(math.ceil(self.reset_after)),
        }

    def to_error(self) -> ErrorModel | None:
        """None when allowed, else the RateLimited error for this decision."""
        if self.allowed:
            return None
        return RateLimitedError(
            "Too many requests, please try again later",
            retry_after=max(math.ceil(self.reset_after), 1),
            context={"limit": str(self.limit)},
        )


class RateLimiter:
    """Fixed-window counter per client identity."""

    def __init__(
        self,
        connector: StorageConnector,
        window_seconds: int,
        max_requests: int,
        fail_open: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        if window_seconds <= 0 or max_requests <= 0:
            raise ValueError("window_seconds and max_requests must be positive")
        insert = _INSERT_BY_DIALECT.get(connector.dialect)
        if insert is None:
            raise ValueError(
                f"Rate limiting needs atomic upsert; unsupported dialect {connector.dialect!r}",
            )
        self._connector = connector
        self._insert = insert
        self.window_seconds = window_seconds
        self.max_requests = max_requests
        self.fail_open = fail_open
        self._clock = clock

    @classmethod
    def init(
        cls,
        connector: StorageConnector,
        window_seconds: int,
        max_requests: int,
        fail_open: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> "RateLimiter":
        """Build a limiter over a Connected store; raises RuntimeError otherwise."""
        if not connector.is_connected:
            raise RuntimeError(
                f"Rate limiter requires a connected store (state={connector.state.value})",
            )
        limiter = cls(connector, window_seconds, max_requests, fail_open, clock)
        log_event(
            logger, logging.INFO,
            f"Rate limiter ready: {max_requests} requests / {window_seconds}s "
            f"(fail_open={fail_open})",
        )
        return limiter

    def _upsert(self, identity: str, now: float):
        table = RateLimitWindow.__table__
        expired = table.c.window_start <= now - self.window_seconds
        stmt = self._insert(table).values(identity=identity, count=1, window_start=now)
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.identity],
            set_={
                "count": case(
                    (expired, 1),
                    (table.c.count > self.max_requests, table.c.count),
                    else_=table.c.count + 1,
                ),
                "window_start": case(
                    (expired, now),
                    else_=table.c.window_start,
                ),
            },
        )
        return stmt.returning(table.c.count, table.c.window_start)

    async def check(self, identity: str) -> RateLimitDecision:
        """Count one request for identity and decide whether to admit it."""
        identity = bounded_identity(identity)
        now = self._clock()
        try:
            async with self._connector.engine.begin() as conn:
                row = (await conn.execute(self._upsert(identity, now))).one()
        except (SQLAlchemyError, OSError) as e:
            return self._on_store_failure(identity, e)

        count, window_start = int(row[0]), float(row[1])
        reset_after = max(window_start + self.window_seconds - now, 0.0)
        return RateLimitDecision(
            allowed=count <= self.max_requests,
            limit=self.max_requests,
            count=min(count, self.max_requests),
            reset_after=reset_after,
        )

    def _on_store_failure(self, identity: str, exc: Exception) -> RateLimitDecision:
        if is_disconnect(exc):
            self._connector.mark_disconnected()
        log_event(
            logger, logging.WARNING,
            f"Rate limit store unavailable, failing {'open' if self.fail_open else 'closed'}: {exc}",
            identity=identity,
        )
        return RateLimitDecision(
            allowed=self.fail_open,
            limit=self.max_requests,
            count=0 if self.fail_open else self.max_requests,
            reset_after=float(self.window_seconds),
            degraded=True,
        )

    async def reset(self, identity: str) -> None:
        """Forget the window for identity (admin/test helper)."""
        table = RateLimitWindow.__table__
        async with self._connector.engine.begin() as conn:
            await conn.execute(table.delete().where(table.c.identity == identity))
