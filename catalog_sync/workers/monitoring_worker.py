"""
Background worker that runs the monitoring cycle and the alert aging sweep
on independent cadences.
"""
import asyncio

import structlog

logger = structlog.get_logger()


class MonitoringWorker:
    """Runs MonitoringService.run_cycle and AlertService.sweep periodically."""

    def __init__(
        self,
        monitoring_service,
        alert_service,
        interval_seconds: float = 60,
        sweep_interval_seconds: float = 300,
    ):
        self.monitoring_service = monitoring_service
        self.alert_service = alert_service
        self.interval_seconds = interval_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self.running = False

    async def _loop(self, name: str, step, interval: float):
        while self.running:
            try:
                await step()
            except Exception as e:
                logger.error("Error in monitoring loop", loop=name, error=str(e))

            await asyncio.sleep(interval)

    async def start(self):
        """Start both loops and run until stopped."""
        self.running = True
        logger.info(
            "Monitoring worker started",
            interval_seconds=self.interval_seconds,
            sweep_interval_seconds=self.sweep_interval_seconds,
        )
        await asyncio.gather(
            self._loop("sampling", self.monitoring_service.run_cycle, self.interval_seconds),
            self._loop("aging", self.alert_service.sweep, self.sweep_interval_seconds),
        )

    async def stop(self):
        self.running = False
        logger.info("Monitoring worker stopped")
