"""
Entry point for running the background workers as a module.
Runs the sync job poller, the monitoring/aging loops, and the alert notifier.
Usage: python -m catalog_sync.workers
"""
import asyncio

import structlog

from catalog_sync.config import settings
from catalog_sync.container import build_container
from catalog_sync.utils.logger import configure_logging

logger = structlog.get_logger()


async def run_workers():
    container = await build_container(settings)
    try:
        await asyncio.gather(
            container.orchestrator.start(),
            container.monitoring_worker.start(),
            container.notifier.start(),
        )
    finally:
        await container.close()


if __name__ == "__main__":
    configure_logging()
    try:
        asyncio.run(run_workers())
    except KeyboardInterrupt:
        logger.info("Workers interrupted")
