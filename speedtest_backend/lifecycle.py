import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from .config import Settings

logger = logging.getLogger("speedtest-backend")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    logger.info(f"Speed Test Backend running on port {settings.port}")
    logger.debug(f"Allowed origin: {settings.allowed_origin}")
    yield
    logger.info("Server closed")


class SpeedTestServer:
    """Owns the listening server for the lifetime of the process.

    ``run()`` blocks until shutdown. SIGINT and SIGTERM stop the listener,
    let in-flight responses finish (up to ``graceful_shutdown_timeout`` when
    set) and then return.
    """

    def __init__(self, app: FastAPI, settings: Settings):
        self.app = app
        self.settings = settings
        self.config = uvicorn.Config(
            app,
            host=settings.host,
            port=settings.port,
            log_level=settings.log_level.lower(),
            timeout_graceful_shutdown=settings.graceful_shutdown_timeout,
        )
        self.server = uvicorn.Server(self.config)

    @property
    def started(self) -> bool:
        return self.server.started

    def run(self) -> None:
        self.server.run()

    def stop(self) -> None:
        if not self.server.should_exit:
            logger.info("Shutdown requested, waiting for in-flight responses")
        self.server.should_exit = True
