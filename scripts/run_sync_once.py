"""
Single-pass full sync for a cron trigger.
Creates one full sync job, runs it to completion in this process, drains the
alert outbox, then exits non-zero if the job failed.

Reuses SyncJobOrchestrator.run(), so there is no duplicated sync logic.
"""

import asyncio
import sys

import structlog

from catalog_sync.config import settings
from catalog_sync.container import build_container
from catalog_sync.utils.logger import configure_logging

configure_logging()
logger = structlog.get_logger()


async def main() -> int:
    container = await build_container(settings)
    exit_code = 0

    try:
        job = await container.orchestrator.create_job("full")
        logger.info("Cron sync: starting full sync", job_id=job.job_id)

        final = await container.orchestrator.run(job.job_id)
        status = await container.orchestrator.get_job_status(job.job_id)
        logger.info(
            "Cron sync: done",
            job_id=job.job_id,
            status=status["status"],
            progress=status["progress"],
            execution_time_ms=status["execution_time_ms"],
        )
        if final is None or final.status.value == "failed":
            exit_code = 1

        await container.notifier.drain()

    except Exception as e:
        logger.error("Cron sync failed", error=str(e))
        exit_code = 1

    finally:
        await container.close()

    return exit_code


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
