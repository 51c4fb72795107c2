"""Request Context — per-request state carried through the pipeline stages.

Invariants:
    - Created once at pipeline entry, dropped when the response is flushed
    - The error slot is written at most once: first error wins
    - Later errors are logged and discarded, never replace the first

Design Decisions:
    - Plain dataclass stored on request.state: stages receive it explicitly
      instead of reaching into framework globals (ADR: explicit stage inputs)
"""

import hashlib
import logging
import time
import uuid
from dataclasses import dataclass, field

from starlette.requests import Request

from gatehouse.core.errors import ErrorModel
from gatehouse.infrastructure.observability import log_event

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-Id"

# Fits rate_limit_windows.identity (String(255)) with room for the digest prefix
MAX_IDENTITY_LENGTH = 128


@dataclass
class RequestContext:
    """Per-request state: identity, timing, and the first recorded error."""

    request_id: str
    client_identity: str
    method: str = "GET"
    path: str = "/"
    started_at: float = field(default_factory=time.monotonic)
    _error: ErrorModel | None = field(default=None, repr=False)

    @classmethod
    def from_request(
        cls, request: Request, trust_forwarded_for: bool = False,
        proxy_hops: int = 1,
    ) -> "RequestContext":
        return cls(
            request_id=request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex,
            client_identity=client_identity(request, trust_forwarded_for, proxy_hops),
            method=request.method,
            path=request.url.path,
        )

    @property
    def error(self) -> ErrorModel | None:
        return self._error

    def record_error(self, error: ErrorModel) -> ErrorModel:
        """Record error if the slot is empty; return the error that won."""
        if self._error is None:
            self._error = error
            return error
        if error is not self._error:
            log_event(
                logger, logging.WARNING,
                f"Discarding secondary error: {error.message}",
                request_id=self.request_id,
                error_kind=error.kind.value,
            )
        return self._error

    def elapsed_ms(self) -> float:
        return round((time.monotonic() - self.started_at) * 1000, 2)


def client_identity(
    request: Request, trust_forwarded_for: bool = False, proxy_hops: int = 1,
) -> str:
    """Rate-limit key for the caller.

    With trust_forwarded_for, the address proxy_hops entries from the right
    of X-Forwarded-For: the entry the outermost trusted proxy appended. Entries
    to its left are client-supplied and ignored. Otherwise the peer address.
    """
    if trust_forwarded_for:
        hops = [h.strip() for h in request.headers.get("X-Forwarded-For", "").split(",")]
        hops = [h for h in hops if h]
        if proxy_hops >= 1 and len(hops) >= proxy_hops:
            return bounded_identity(hops[-proxy_hops])
    if request.client and request.client.host:
        return bounded_identity(request.client.host)
    return "unknown"


def bounded_identity(identity: str) -> str:
    """Identities longer than MAX_IDENTITY_LENGTH are replaced by their digest."""
    if len(identity) <= MAX_IDENTITY_LENGTH:
        return identity
    return "sha256:" + hashlib.sha256(identity.encode("utf-8")).hexdigest()
