"""Error Model — the single failure shape every request path is reduced to.

Invariants:
    - Every error has a kind drawn from ErrorKind
    - http_status is derived from kind via HTTP_STATUS_BY_KIND (never set directly)
    - cause chains form a tree: attaching a cause that closes a cycle raises ValueError
    - to_error() never raises, whatever it is given

Design Decisions:
    - ErrorModel subclasses Exception: route handlers signal errors by raising,
      the centralized handler catches (ADR: single error funnel)
    - Kind-specific subclasses are thin constructors over one class, so
      isinstance(err, ErrorModel) covers every typed error
"""

import asyncio
from enum import Enum
from typing import Any

from fastapi.exceptions import RequestValidationError
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException


class ErrorKind(str, Enum):
    """Fixed error taxonomy."""
    VALIDATION = "ValidationError"
    NOT_FOUND = "NotFound"
    UNAUTHORIZED = "Unauthorized"
    RATE_LIMITED = "RateLimited"
    INTERNAL = "Internal"
    UPSTREAM = "Upstream"


HTTP_STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.INTERNAL: 500,
    ErrorKind.UPSTREAM: 502,
}

# Kinds whose message is safe (and useful) to return to the client
CLIENT_CORRECTABLE_KINDS = frozenset({
    ErrorKind.VALIDATION,
    ErrorKind.NOT_FOUND,
    ErrorKind.UNAUTHORIZED,
    ErrorKind.RATE_LIMITED,
})

GENERIC_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.INTERNAL: "An unexpected error occurred",
    ErrorKind.UPSTREAM: "A downstream dependency is unavailable",
}


class ErrorModel(Exception):
    """Canonical representation of a request-handling failure."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        cause: "ErrorModel | None" = None,
        context: dict[str, str] | None = None,
    ):
        super().__init__(message)
        self.kind = ErrorKind(kind)
        self.message = message
        self.context: dict[str, str] = {
            str(k): str(v) for k, v in (context or {}).items()
        }
        self._cause: ErrorModel | None = None
        self.cause = cause

    @property
    def http_status(self) -> int:
        return HTTP_STATUS_BY_KIND[self.kind]

    @property
    def cause(self) -> "ErrorModel | None":
        return self._cause

    @cause.setter
    def cause(self, value: "ErrorModel | None") -> None:
        node = value
        while node is not None:
            if node is self:
                raise ValueError("error cause chain would form a cycle")
            node = node.cause
        self._cause = value

    @property
    def is_client_correctable(self) -> bool:
        return self.kind in CLIENT_CORRECTABLE_KINDS

    def chain(self) -> list["ErrorModel"]:
        """This error followed by its causes, outermost first."""
        out: list[ErrorModel] = []
        node: ErrorModel | None = self
        while node is not None:
            out.append(node)
            node = node.cause
        return out

    def to_client_body(self) -> dict[str, str]:
        """Client-visible body; never includes cause or context."""
        message = (
            self.message if self.is_client_correctable
            else GENERIC_MESSAGES[self.kind]
        )
        return {"kind": self.kind.value, "message": message}

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind.value!r}, message={self.message!r})"


# ─── Kind-specific constructors ─────────────────────────────────

class ValidationError(ErrorModel):
    def __init__(self, message: str = "Invalid request data", **kwargs: Any):
        super().__init__(ErrorKind.VALIDATION, message, **kwargs)


class NotFoundError(ErrorModel):
    def __init__(self, message: str = "Resource not found", **kwargs: Any):
        super().__init__(ErrorKind.NOT_FOUND, message, **kwargs)


class UnauthorizedError(ErrorModel):
    def __init__(self, message: str = "Unauthorized", **kwargs: Any):
        super().__init__(ErrorKind.UNAUTHORIZED, message, **kwargs)


class RateLimitedError(ErrorModel):
    """Too many requests; retry_after is whole seconds until the window resets."""

    def __init__(
        self, message: str = "Too many requests", retry_after: int | None = None,
        **kwargs: Any,
    ):
        super().__init__(ErrorKind.RATE_LIMITED, message, **kwargs)
        self.retry_after = retry_after


class InternalError(ErrorModel):
    def __init__(self, message: str = "Internal error", **kwargs: Any):
        super().__init__(ErrorKind.INTERNAL, message, **kwargs)


class UpstreamError(ErrorModel):
    """Failure in storage or another downstream dependency."""

    def __init__(self, message: str = "Upstream dependency failed", **kwargs: Any):
        super().__init__(ErrorKind.UPSTREAM, message, **kwargs)


# ─── Normalization ──────────────────────────────────────────────

def _kind_for_status(status_code: int) -> ErrorKind:
    if status_code == 404:
        return ErrorKind.NOT_FOUND
    if status_code in (401, 403):
        return ErrorKind.UNAUTHORIZED
    if status_code == 429:
        return ErrorKind.RATE_LIMITED
    if 400 <= status_code < 500:
        return ErrorKind.VALIDATION
    if status_code in (502, 503, 504):
        return ErrorKind.UPSTREAM
    return ErrorKind.INTERNAL


def _describe_validation(exc: RequestValidationError) -> str:
    parts = []
    for err in exc.errors():
        field = ".".join(str(loc) for loc in err.get("loc", ()))
        parts.append(f"{field}: {err.get('msg', 'invalid')}" if field else str(err.get("msg")))
    return "; ".join(parts) or "Invalid request data"


def _convert_exception(exc: BaseException) -> ErrorModel:
    if isinstance(exc, ErrorModel):
        return exc
    if isinstance(exc, RequestValidationError):
        return ValidationError(_describe_validation(exc))
    if isinstance(exc, StarletteHTTPException):
        kind = _kind_for_status(exc.status_code)
        detail = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
        return ErrorModel(kind, detail, context={"status_code": str(exc.status_code)})
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError)):
        return UpstreamError(
            f"Operation timed out: {exc}" if str(exc) else "Operation timed out",
            context={"exception_type": type(exc).__name__},
        )
    if isinstance(exc, SQLAlchemyError):
        return UpstreamError(
            "Storage operation failed",
            context={"exception_type": type(exc).__name__, "detail": str(exc)},
        )
    return InternalError(
        str(exc) or type(exc).__name__,
        context={"exception_type": type(exc).__name__},
    )


def to_error(value: Any) -> ErrorModel:
    """Normalize any raised or rejected value into an ErrorModel.

    Strings become Internal errors carrying that message; exceptions are
    mapped by type; Python ``__cause__`` chains become ``cause`` chains.
    An ErrorModel is returned as is, its ``__cause__`` chain linked in only
    when it has no explicit ``cause`` yet.
    Unknown shapes default to Internal/500. Never raises.
    """
    try:
        if isinstance(value, BaseException):
            return _convert_with_causes(value)
        if isinstance(value, str):
            return InternalError(value or "Internal error")
        return InternalError(
            "Unrecognized error value",
            context={"value_type": type(value).__name__},
        )
    except Exception:  # noqa: BLE001 - normalization is the last line
        return InternalError("Unrecognized error value")


def _convert_with_causes(exc: BaseException) -> ErrorModel:
    root = _convert_exception(exc)
    if root.cause is not None:
        return root

    seen = {id(exc)}
    tail = root
    original = exc.__cause__
    while original is not None and id(original) not in seen:
        seen.add(id(original))
        converted = _convert_exception(original)
        if converted is root or converted in root.chain():
            break
        try:
            tail.cause = converted
        except ValueError:
            break
        tail = converted
        if converted.cause is not None:
            break
        original = original.__cause__
    return root
