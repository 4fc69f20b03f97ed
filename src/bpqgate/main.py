"""Main entry point for the BPQ gateway server."""

import asyncio
import signal
import sys

import structlog

from bpqgate.config import get_settings
from bpqgate.logging import configure_logging
from bpqgate.network import GatewayServer

logger = structlog.get_logger(__name__)


async def main() -> None:
    """
    Main async entry point for the gateway.

    Starts the server and runs until a shutdown signal arrives.
    """
    settings = get_settings()
    server = GatewayServer(settings)
    stop_event = asyncio.Event()

    def signal_handler(sig: int) -> None:
        """Handle shutdown signals."""
        logger.info("shutdown_signal_received", signal=signal.Signals(sig).name)
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, signal_handler, sig)
        except (NotImplementedError, ValueError):
            # Not available on this platform
            pass

    await server.start()
    logger.info(
        "bpqgate_running",
        listen_port=server.port,
        remote=f"{settings.remote_host}:{settings.remote_port}",
    )

    try:
        await stop_event.wait()
    finally:
        await server.stop()


def run() -> None:
    """
    Synchronous entry point that runs the async main function.

    This is the function that should be called from the command line.
    """
    try:
        configure_logging(get_settings())
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("server_stopped_by_user")
    except Exception as e:
        logger.error("server_fatal_error", error=str(e), exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    run()
