"""Request Pipeline — fixed, ordered stages between the listener and the routes.

Order (outermost first):
    security headers → CORS → request context → serving gate → rate limit
    → route dispatch → not-found conversion → centralized error handler

Invariants:
    - Stage order is fixed at app construction (install_pipeline is the only installer)
    - Admission stages return None (continue) or an ErrorModel (terminate)
    - A request arriving before Serving never reaches the rate-limit stage
    - Liveness routes bypass admission and are always servable
    - Every exception escaping route dispatch ends in error_handlers.handle()

Design Decisions:
    - Admission stages are plain async callables in a tuple, not nested
      middlewares: the order is data that can be read and tested
    - CORS is Starlette's CORSMiddleware (preflights answered before admission)
"""

import logging
from typing import Awaitable, Callable

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

from gatehouse.api.error_handlers import handle
from gatehouse.core.errors import ErrorModel, UpstreamError, to_error
from gatehouse.core.request_context import REQUEST_ID_HEADER, RequestContext
from gatehouse.infrastructure.observability import log_event
from gatehouse.lifecycle import Bootstrapper

logger = logging.getLogger(__name__)

Stage = Callable[[Request, RequestContext], Awaitable[ErrorModel | None]]

LIVENESS_PATHS = frozenset({"/api/v1/self", "/api/v1/health"})

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
    "Strict-Transport-Security": "max-age=15552000; includeSubDomains",
    "Cross-Origin-Opener-Policy": "same-origin",
    "Cross-Origin-Resource-Policy": "same-origin",
    "X-DNS-Prefetch-Control": "off",
    "X-Permitted-Cross-Domain-Policies": "none",
}


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Adds hardening headers to every response, errors included."""

    async def dispatch(self, request: Request, call_next) -> Response:
        response = await call_next(request)
        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        return response


# ─── Admission stages ───────────────────────────────────────────

def make_serving_gate(bootstrapper: Bootstrapper) -> Stage:
    """Reject store-dependent requests until the Bootstrapper is Serving."""

    async def serving_gate(request: Request, ctx: RequestContext) -> ErrorModel | None:
        if bootstrapper.is_serving:
            return None
        return UpstreamError(
            "Service is starting; storage is not ready",
            context={"phase": bootstrapper.phase.value},
        )

    return serving_gate


def make_rate_limit_stage(bootstrapper: Bootstrapper) -> Stage:
    """Count the request against its client's window; deny past the ceiling."""

    async def rate_limit(request: Request, ctx: RequestContext) -> ErrorModel | None:
        limiter = bootstrapper.rate_limiter
        if limiter is None:
            return UpstreamError("Rate limiter is not initialized")
        decision = await limiter.check(ctx.client_identity)
        request.state.rate_limit = decision
        return decision.to_error()

    return rate_limit


def _is_preflight(request: Request) -> bool:
    # A bare OPTIONS without Access-Control-Request-Method is an ordinary request
    return (
        request.method == "OPTIONS"
        and "access-control-request-method" in request.headers
    )


class RequestPipelineMiddleware(BaseHTTPMiddleware):
    """Creates the RequestContext, runs admission stages, dispatches, funnels errors."""

    def __init__(
        self,
        app: ASGIApp,
        stages: tuple[Stage, ...] = (),
        exempt_paths: frozenset[str] = LIVENESS_PATHS,
        trust_forwarded_for: bool = False,
        proxy_hops: int = 1,
    ):
        super().__init__(app)
        self.stages = stages
        self.exempt_paths = exempt_paths
        self.trust_forwarded_for = trust_forwarded_for
        self.proxy_hops = proxy_hops

    async def dispatch(self, request: Request, call_next) -> Response:
        ctx = RequestContext.from_request(
            request, self.trust_forwarded_for, self.proxy_hops,
        )
        request.state.ctx = ctx

        response = await self._admit(request, ctx)
        if response is None:
            try:
                response = await call_next(request)
            except Exception as exc:  # noqa: BLE001 - funnelled, not swallowed
                response = handle(to_error(exc), ctx)

        decision = getattr(request.state, "rate_limit", None)
        if decision is not None:
            for name, value in decision.headers().items():
                response.headers.setdefault(name, value)
        response.headers.setdefault(REQUEST_ID_HEADER, ctx.request_id)
        self._log_access(ctx, response)
        return response

    async def _admit(self, request: Request, ctx: RequestContext) -> Response | None:
        if ctx.path in self.exempt_paths or _is_preflight(request):
            return None
        for stage in self.stages:
            try:
                error = await stage(request, ctx)
            except Exception as exc:  # noqa: BLE001 - funnelled, not swallowed
                error = to_error(exc)
            if error is not None:
                return handle(error, ctx)
        return None

    @staticmethod
    def _log_access(ctx: RequestContext, response: Response) -> None:
        log_event(
            logger, logging.INFO,
            f"{ctx.method} {ctx.path} {response.status_code}",
            request_id=ctx.request_id,
            client=ctx.client_identity,
            method=ctx.method,
            path=ctx.path,
            status_code=response.status_code,
            duration_ms=ctx.elapsed_ms(),
            error_kind=ctx.error.kind.value if ctx.error else None,
        )


def install_pipeline(
    app: FastAPI,
    bootstrapper: Bootstrapper,
    cors_origins: list[str],
    trust_forwarded_for: bool = False,
    proxy_hops: int = 1,
) -> None:
    """Install the pipeline middlewares; add_middleware wraps, so innermost goes first."""
    app.add_middleware(
        RequestPipelineMiddleware,
        stages=(make_serving_gate(bootstrapper), make_rate_limit_stage(bootstrapper)),
        trust_forwarded_for=trust_forwarded_for,
        proxy_hops=proxy_hops,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[
            REQUEST_ID_HEADER, "Retry-After",
            "X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset",
        ],
    )
    app.add_middleware(SecurityHeadersMiddleware)
