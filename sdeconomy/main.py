"""
Standalone Economy Runner

Starts the economy service against the configured database and keeps it
running until SIGINT/SIGTERM. Item types to populate are read from the
command line.

Usage:
    sdeconomy [ITEM_TYPE ...]
"""

import asyncio
import signal
import sys
from typing import List, Optional

import structlog

from sdeconomy.config import get_settings
from sdeconomy.config.logging import bind_service_context, configure_logging
from sdeconomy.database.connection import check_database_health
from sdeconomy.service import EconomyService

logger = structlog.get_logger(__name__)


async def main(item_types: Optional[List[str]] = None) -> None:
    settings = get_settings()
    configure_logging(settings=settings)
    bind_service_context(settings)

    logger.info("Starting economy service")
    service = await EconomyService.from_settings(settings)
    logger.info("Database health", **await check_database_health(service.engine))

    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, shutdown.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            pass

    try:
        await service.start(item_types or [])
    except Exception as e:
        logger.error("Economy service failed to start", error=str(e))
        await service.stop()
        raise

    await shutdown.wait()
    logger.info("Shutting down...")
    await service.stop()


def run() -> None:
    asyncio.run(main(sys.argv[1:]))


if __name__ == "__main__":
    run()
