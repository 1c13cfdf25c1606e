"""Entry point for the WhatsApp Web gateway.

Serves the HTTP API and the /ws status stream on GATEWAY_HOST:PORT until
SIGINT or SIGTERM, then closes observers and the browser session.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

from aiohttp.web import AppRunner, TCPSite

from .config import GATEWAY_HOST, LOG_LEVEL, PORT, ensure_dirs
from .session_manager.manager import create_app

logging.basicConfig(
    stream=sys.stderr,
    level=LOG_LEVEL,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)
logger = logging.getLogger("wa-gateway")


async def serve():
    """Run the gateway until a shutdown signal arrives."""
    ensure_dirs()
    app = create_app()
    runner = AppRunner(app)
    await runner.setup()
    site = TCPSite(runner, GATEWAY_HOST, PORT)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops do not support signal handlers
            pass

    try:
        await site.start()
        logger.info(f"Gateway listening on http://{GATEWAY_HOST}:{PORT}")
        await stop.wait()
        logger.info("Shutdown signal received, closing gateway...")
    finally:
        await runner.cleanup()


def main():
    try:
        asyncio.run(serve())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
