"""Process Runner — `python -m gatehouse`.

Invariants:
    - Configuration errors exit with status 2 before anything is bound
    - A fatal boot failure stops uvicorn and exits with status 1
    - Boot starts only after uvicorn reports the listener bound
    - SIGINT/SIGTERM use uvicorn's graceful shutdown, which runs the
      Bootstrapper's shutdown from the lifespan

Design Decisions:
    - uvicorn.Server driven directly (not uvicorn.run): the runner needs the
      server handle to ask it to exit from the boot task
"""

import asyncio
import logging
import sys

import uvicorn

from gatehouse.config import ConfigurationError, load_settings
from gatehouse.infrastructure.observability import (
    log_event, setup_logging, shutdown_logging,
)
from gatehouse.lifecycle import Bootstrapper, BootstrapError
from gatehouse.main import create_app

logger = logging.getLogger(__name__)

EXIT_BOOT_FAILURE = 1
EXIT_CONFIG_ERROR = 2


def main() -> int:
    try:
        settings = load_settings()
    except ConfigurationError as e:
        setup_logging()
        log_event(logger, logging.CRITICAL, str(e))
        shutdown_logging()
        return EXIT_CONFIG_ERROR

    setup_logging(settings.log_level, settings.log_format, settings.log_destination)
    server: uvicorn.Server | None = None

    def stop_server(error: BootstrapError) -> None:
        if server is not None:
            server.should_exit = True

    async def listener_bound() -> None:
        while server is not None and not server.started:
            if server.should_exit:
                return
            await asyncio.sleep(0.05)

    boot = Bootstrapper(settings, on_fatal=stop_server, flush_logs_on_shutdown=True)
    boot.log_configuration()
    app = create_app(settings, boot, wait_for_listener=listener_bound)

    config = uvicorn.Config(
        app,
        host=settings.host,
        port=settings.port,
        log_config=None,
        access_log=False,
    )
    server = uvicorn.Server(config)
    server.run()

    if boot.failed:
        return EXIT_BOOT_FAILURE
    return 0


if __name__ == "__main__":
    sys.exit(main())
