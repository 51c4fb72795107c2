"""Bootstrapper — strict startup ordering and graceful shutdown.

Invariants:
    - Phases only move forward:
      Idle → ListenerBound → StorageConnecting → StorageConnected
           → RateLimiterReady → Serving, with terminal Failed / Stopped
    - Every transition is logged
    - The rate limiter exists only after storage is Connected
    - Serving is the only phase in which store-dependent requests are admitted
    - A storage failure during StorageConnecting is fatal (Failed + BootstrapError)

Design Decisions:
    - Boot runs after the listener is bound so liveness probes answer while
      storage connects (ADR: observable startup)
    - on_fatal callback lets the runner stop uvicorn; the Bootstrapper never
      calls sys.exit itself
    - Post-boot storage drops are supervised here (probe + reconnect), not fatal;
      a failing supervisor tick is logged and the loop keeps running
    - Any exception escaping the boot sequence is fatal and reaches on_fatal,
      not only BootstrapError
"""

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable

from gatehouse.config import Settings
from gatehouse.core.errors import ErrorModel, UpstreamError, to_error
from gatehouse.infrastructure.database import StorageConnector
from gatehouse.infrastructure.observability import log_event, shutdown_logging
from gatehouse.services.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


class BootPhase(str, Enum):
    IDLE = "idle"
    LISTENER_BOUND = "listener_bound"
    STORAGE_CONNECTING = "storage_connecting"
    STORAGE_CONNECTED = "storage_connected"
    RATE_LIMITER_READY = "rate_limiter_ready"
    SERVING = "serving"
    FAILED = "failed"
    STOPPED = "stopped"


_ORDER = [
    BootPhase.IDLE,
    BootPhase.LISTENER_BOUND,
    BootPhase.STORAGE_CONNECTING,
    BootPhase.STORAGE_CONNECTED,
    BootPhase.RATE_LIMITER_READY,
    BootPhase.SERVING,
]


class BootstrapError(Exception):
    """Startup could not complete; the process must exit non-zero."""

    def __init__(self, phase: BootPhase, cause: ErrorModel | Exception):
        super().__init__(f"Startup failed during {phase.value}: {cause}")
        self.phase = phase
        self.cause = cause


class Bootstrapper:
    """Owns the storage connector, the rate limiter, and the boot phase."""

    def __init__(
        self,
        settings: Settings,
        connector: StorageConnector | None = None,
        on_fatal: Callable[[BootstrapError], None] | None = None,
        flush_logs_on_shutdown: bool = False,
    ):
        self.settings = settings
        self.connector = connector or StorageConnector(
            settings.database_url,
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            connect_timeout=settings.database_connect_timeout_seconds,
        )
        self.rate_limiter: RateLimiter | None = None
        self.error: BootstrapError | None = None
        self._phase = BootPhase.IDLE
        self._on_fatal = on_fatal
        self._flush_logs = flush_logs_on_shutdown
        self._boot_task: asyncio.Task | None = None
        self._supervisor: asyncio.Task | None = None

    # ─── Phase bookkeeping ──────────────────────────────────────

    @property
    def phase(self) -> BootPhase:
        return self._phase

    @property
    def is_serving(self) -> bool:
        return self._phase is BootPhase.SERVING

    @property
    def failed(self) -> bool:
        return self._phase is BootPhase.FAILED

    def _advance(self, target: BootPhase) -> None:
        terminal = target in (BootPhase.FAILED, BootPhase.STOPPED)
        if not terminal:
            if self._phase not in _ORDER or _ORDER.index(target) != _ORDER.index(self._phase) + 1:
                raise RuntimeError(
                    f"Illegal boot transition {self._phase.value} -> {target.value}",
                )
        previous, self._phase = self._phase, target
        log_event(
            logger, logging.ERROR if target is BootPhase.FAILED else logging.INFO,
            f"Boot phase {previous.value} -> {target.value}",
            phase=target.value, previous_phase=previous.value,
        )

    # ─── Startup ────────────────────────────────────────────────

    def bind_listener(self) -> None:
        """Mark the HTTP listener as bound (liveness routes now answer)."""
        if self._phase is BootPhase.IDLE:
            self._advance(BootPhase.LISTENER_BOUND)

    def log_configuration(self) -> None:
        for option, value in self.settings.describe().items():
            log_event(logger, logging.INFO, f"config {option}={value}", option=option)

    async def start(
        self, wait_for_listener: Callable[[], Awaitable[None]] | None = None,
    ) -> None:
        """Run the ordered boot sequence; raises BootstrapError on fatal failure."""
        if wait_for_listener is not None:
            await wait_for_listener()
        self.bind_listener()

        self._advance(BootPhase.STORAGE_CONNECTING)
        try:
            await self.connector.connect()
            await asyncio.wait_for(
                self.connector.ready.wait(), timeout=self.connector.connect_timeout,
            )
        except ErrorModel as e:
            self._fail(BootPhase.STORAGE_CONNECTING, e)
        except asyncio.TimeoutError as e:
            self._fail(
                BootPhase.STORAGE_CONNECTING,
                UpstreamError("Storage never reported ready", cause=to_error(e)),
            )
        self._advance(BootPhase.STORAGE_CONNECTED)

        try:
            self.rate_limiter = RateLimiter.init(
                self.connector,
                window_seconds=self.settings.rate_limit_window_seconds,
                max_requests=self.settings.rate_limit_max_requests,
                fail_open=self.settings.rate_limit_fail_open,
            )
        except (RuntimeError, ValueError) as e:
            self._fail(BootPhase.STORAGE_CONNECTED, e)
        self._advance(BootPhase.RATE_LIMITER_READY)

        if self.settings.storage_probe_interval_seconds > 0:
            self._supervisor = asyncio.create_task(self._supervise_storage())
        self._advance(BootPhase.SERVING)
        log_event(logger, logging.INFO, "Gatehouse API ready", phase=self._phase.value)

    def _fail(self, phase: BootPhase, cause: Exception) -> None:
        self.error = BootstrapError(phase, cause)
        self._advance(BootPhase.FAILED)
        raise self.error from cause

    def launch(
        self, wait_for_listener: Callable[[], Awaitable[None]] | None = None,
    ) -> asyncio.Task:
        """Start boot in the background; fatal errors go to on_fatal."""
        self._boot_task = asyncio.create_task(self._run_boot(wait_for_listener))
        return self._boot_task

    async def _run_boot(self, wait_for_listener) -> None:
        try:
            await self.start(wait_for_listener)
        except BootstrapError as e:
            self._report_fatal(e)
        except Exception as e:
            # Unexpected failure outside the phase checks; boot cannot continue
            error = BootstrapError(self._phase, e)
            self.error = error
            if self._phase not in (BootPhase.FAILED, BootPhase.STOPPED):
                self._advance(BootPhase.FAILED)
            self._report_fatal(error, exc_info=e)

    def _report_fatal(self, error: BootstrapError, exc_info=None) -> None:
        log_event(
            logger, logging.CRITICAL, str(error),
            exc_info=exc_info, phase=error.phase.value,
        )
        if self._on_fatal is not None:
            self._on_fatal(error)

    async def _supervise_storage(self) -> None:
        interval = self.settings.storage_probe_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                if self.connector.is_connected:
                    await self.connector.probe()
                else:
                    await self.connector.reconnect()
            except Exception as e:  # noqa: BLE001 - logged; the next tick retries
                log_event(
                    logger, logging.ERROR, f"Storage supervisor tick failed: {e}",
                    exc_info=e, state=self.connector.state.value,
                )

    # ─── Shutdown ───────────────────────────────────────────────

    async def shutdown(self) -> None:
        """Stop background work, release the store, flush logs."""
        for task in (self._supervisor, self._boot_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._supervisor = self._boot_task = None
        await self.connector.dispose()
        if self._phase not in (BootPhase.FAILED, BootPhase.STOPPED):
            self._advance(BootPhase.STOPPED)
        log_event(logger, logging.INFO, "Gatehouse API shutdown complete")
        if self._flush_logs:
            shutdown_logging()
