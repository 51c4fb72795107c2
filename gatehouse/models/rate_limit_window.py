"""RateLimitWindow ORM — fixed-window counter per client identity.

Invariants:
    - One row per identity (primary key), shared by every process instance
    - window_start is epoch seconds; a window is expired once
      now - window_start >= window size
    - count saturates at ceiling + 1 (the first denial), never grows past it

Design Decisions:
    - Float epoch instead of DateTime: compared arithmetically inside the
      atomic upsert on both PostgreSQL and SQLite
    - No sweeper: expired rows are reset lazily by the next check
"""

from sqlalchemy import Float, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from gatehouse.db.base import Base


class RateLimitWindow(Base):
    """Counter state for one client identity."""
    __tablename__ = "rate_limit_windows"

    identity: Mapped[str] = mapped_column(String(255), primary_key=True)
    count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    window_start: Mapped[float] = mapped_column(Float, nullable=False)
