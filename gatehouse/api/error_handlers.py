"""Error Handlers — the one exit path for every request-handling failure.

Invariants:
    - Every error reaches handle() exactly once per response and yields one JSON response
    - Body is {kind, message}; cause and context are never serialized
    - Internal/Upstream messages are replaced by generic text (no leakage of internals)
    - handle() is deterministic: same (error, context) → byte-identical body
    - Logging is enqueue-only; the response never waits on the log sink

Design Decisions:
    - Framework exceptions (HTTPException incl. unmatched routes,
      RequestValidationError) and domain ErrorModel share one handler
    - No handler registered for bare Exception: Starlette routes that one to
      ServerErrorMiddleware, which re-raises; the pipeline middleware catches
      it instead and calls the same handle()
"""

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from gatehouse.core.errors import ErrorKind, ErrorModel, NotFoundError, to_error
from gatehouse.core.request_context import REQUEST_ID_HEADER, RequestContext
from gatehouse.infrastructure.observability import log_event

logger = logging.getLogger(__name__)


def handle(error: ErrorModel, context: RequestContext) -> JSONResponse:
    """Turn an error into the client response and log it."""
    error = context.record_error(error)
    _log_error(error, context)

    headers = {REQUEST_ID_HEADER: context.request_id}
    retry_after = getattr(error, "retry_after", None)
    if error.kind is ErrorKind.RATE_LIMITED and retry_after:
        headers["Retry-After"] = str(retry_after)
    return JSONResponse(
        status_code=error.http_status,
        content=error.to_client_body(),
        headers=headers,
    )


def _log_error(error: ErrorModel, context: RequestContext) -> None:
    server_side = not error.is_client_correctable
    exc_info = None
    if server_side and error.__traceback__ is not None:
        exc_info = (type(error), error, error.__traceback__)
    log_event(
        logger,
        logging.ERROR if server_side else logging.WARNING,
        f"{error.kind.value}: {error.message}",
        exc_info=exc_info,
        request_id=context.request_id,
        method=context.method,
        path=context.path,
        error_kind=error.kind.value,
        context=dict(error.context) or None,
        stack=[f"{e.kind.value}: {e.message}" for e in error.chain()[1:]] or None,
    )


def context_for(request: Request) -> RequestContext:
    """Pipeline context for request, created on the spot if the pipeline did not run."""
    ctx = getattr(request.state, "ctx", None)
    if ctx is None:
        ctx = RequestContext.from_request(request)
        request.state.ctx = ctx
    return ctx


def register_error_handlers(app: FastAPI) -> None:
    """Route every framework and domain error into handle()."""

    @app.exception_handler(ErrorModel)
    async def error_model_handler(request: Request, exc: ErrorModel):
        return handle(exc, context_for(request))

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return handle(to_error(exc), context_for(request))

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        ctx = context_for(request)
        if exc.status_code == 404 and exc.detail == "Not Found":
            return handle(
                NotFoundError(f"Route {ctx.method} {ctx.path} not found"), ctx,
            )
        return handle(to_error(exc), ctx)
