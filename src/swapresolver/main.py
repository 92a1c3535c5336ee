"""Process entry point for the swap resolver.

Serves the HTTP API with uvicorn. The API lifespan owns the order store
and orchestrator, so interrupted flows and recoveries are resumed as soon
as the server starts, and background flows are cancelled (keeping their
persisted status) when it stops.
"""

import asyncio
import logging
import signal
from typing import Optional

import uvicorn

from swapresolver import __version__
from swapresolver.api.app import create_app
from swapresolver.config import Settings, get_settings

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format=LOG_FORMAT,
    )


class Application:
    """Resolver process: one uvicorn server plus a stop signal."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.server: Optional[uvicorn.Server] = None
        self._stop = asyncio.Event()

    def _warn_about_mode(self) -> None:
        if self.settings.dry_run:
            logger.warning("DRY_RUN enabled - chains are simulated, no funds move")
        elif self.settings.is_production() and self.settings.debug:
            logger.warning("DEBUG is on in production - CORS is open to every origin")
        if not self.settings.telegram_bot_token:
            logger.warning("TELEGRAM_BOT_TOKEN not set - operator alerts go to the log only")

    def _build_server(self) -> uvicorn.Server:
        config = uvicorn.Config(
            create_app(self.settings),
            host=self.settings.api_host,
            port=self.settings.api_port,
            log_level="debug" if self.settings.debug else "info",
        )
        return uvicorn.Server(config)

    async def start(self) -> None:
        """Serve until the server exits or a stop is requested."""
        configure_logging(self.settings)
        logger.info(f"Swap resolver {__version__} ({self.settings.environment})")
        self._warn_about_mode()

        self.server = self._build_server()
        logger.info(f"Listening on {self.settings.api_host}:{self.settings.api_port}")

        serve = asyncio.create_task(self.server.serve(), name="api")
        stop = asyncio.create_task(self._stop.wait(), name="stop")
        done, _ = await asyncio.wait({serve, stop}, return_when=asyncio.FIRST_COMPLETED)

        if serve not in done:
            # Graceful exit runs the lifespan shutdown.
            self.server.should_exit = True
        stop.cancel()
        try:
            await serve
        except Exception as e:
            logger.error(f"API server failed: {e}")
            raise
        finally:
            logger.info("Swap resolver stopped")

    def shutdown(self) -> None:
        logger.info("Stop requested")
        self._stop.set()


def run() -> None:
    """Console script entry point."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    app = Application()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, app.shutdown)

    try:
        loop.run_until_complete(app.start())
    except KeyboardInterrupt:
        logger.info("Interrupted")
    finally:
        loop.close()


if __name__ == "__main__":
    run()
