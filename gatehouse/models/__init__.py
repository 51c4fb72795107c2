"""ORM Models — tables the service keeps in the shared store.

Design Decisions:
    - Models imported here so Base.metadata is complete before create_all runs
"""

from gatehouse.models.rate_limit_window import RateLimitWindow  # noqa: F401
