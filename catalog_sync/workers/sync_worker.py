"""
Sync job orchestrator and background worker.
Creates bulk/partial sync jobs, runs them batch by batch through the
reconciliation engine, and polls Supabase for pending jobs created elsewhere.
"""
import asyncio
from datetime import datetime
from typing import Any, Dict, List, Optional, Union
from uuid import uuid4

import structlog
from pydantic import ValidationError as PydanticValidationError

from catalog_sync.errors import ErrorAction, FatalSetupError, JobNotFoundError, ValidationError, policy_for
from catalog_sync.models.alerts import AlertSeverity, AlertType
from catalog_sync.models.database import (
    ExchangeRateSource,
    JobStatus,
    JobType,
    PriceRule,
    RoundingStrategy,
    SyncJob,
    SyncJobError,
    SyncJobOptions,
)
from catalog_sync.utils.batch import run_in_batches
from catalog_sync.utils.clock import Clock, ensure_utc, utc_now

logger = structlog.get_logger()


class SyncJobOrchestrator:
    """Drives sync jobs through pending -> running -> completed/failed/cancelled."""

    def __init__(
        self,
        store,
        engine,
        exchange_rates,
        alert_service=None,
        batch_size: int = 10,
        concurrency: int = 5,
        pause_seconds: float = 1.0,
        poll_interval_seconds: float = 5,
        default_rounding_strategy: RoundingStrategy = RoundingStrategy.NEAREST,
        clock: Clock = utc_now,
    ):
        """
        Initialize the orchestrator.

        Args:
            store: SupabaseService (or a compatible double)
            engine: ReconciliationService
            exchange_rates: ExchangeRateService
            alert_service: AlertService for sync_failed alerts
            batch_size: SKUs per batch
            concurrency: Concurrent SKUs inside a batch
            pause_seconds: Pause between batches
            poll_interval_seconds: Poll interval for pending jobs
            default_rounding_strategy: Rounding used when a job does not choose one
            clock: Time source
        """
        self.store = store
        self.engine = engine
        self.exchange_rates = exchange_rates
        self.alert_service = alert_service
        self.batch_size = batch_size
        self.concurrency = concurrency
        self.pause_seconds = pause_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.default_rounding_strategy = RoundingStrategy(default_rounding_strategy)
        self.clock = clock
        self.running = False
        self._tasks: set = set()
        self._active: set = set()

    # Job control

    async def create_job(
        self,
        job_type: Optional[Union[JobType, str]] = None,
        options: Optional[Union[SyncJobOptions, Dict[str, Any]]] = None,
    ) -> SyncJob:
        """
        Validate options and persist a pending job.

        Args:
            job_type: 'full' or 'partial'; inferred from options.skus when omitted
            options: SyncJobOptions or a raw dict

        Returns:
            The persisted SyncJob

        Raises:
            ValidationError: Invalid type or options
        """
        try:
            if not isinstance(options, SyncJobOptions):
                data = {"rounding_strategy": self.default_rounding_strategy, **(options or {})}
                options = SyncJobOptions(**data)
            if job_type is not None:
                job_type = JobType(job_type)
        except (PydanticValidationError, ValueError, TypeError) as e:
            raise ValidationError(f"Invalid sync job options: {e}") from e

        if job_type is None:
            job_type = JobType.PARTIAL if options.skus else JobType.FULL
        if job_type == JobType.PARTIAL and not options.skus:
            raise ValidationError("A partial sync job requires at least one SKU")
        if not options.sync_inventory and not options.sync_prices:
            raise ValidationError("A sync job must sync inventory, prices, or both")
        if options.exchange_rate_source == ExchangeRateSource.MANUAL:
            rate = options.custom_exchange_rate
            if rate is None or not (0 < rate <= 1):
                raise ValidationError("custom_exchange_rate must be in (0, 1] for a manual rate source")

        now = self.clock()
        job = SyncJob(
            job_id=f"sync_{int(now.timestamp() * 1000)}_{uuid4().hex[:8]}",
            type=job_type,
            status=JobStatus.PENDING,
            options=options,
            total_items=len(options.skus) if options.skus else 0,
            created_at=now,
        )
        job = await self.store.create_sync_job(job)
        logger.info("Sync job created", job_id=job.job_id, type=job.type.value)
        return job

    async def submit(
        self,
        job_type: Optional[Union[JobType, str]] = None,
        options: Optional[Union[SyncJobOptions, Dict[str, Any]]] = None,
    ) -> SyncJob:
        """Create a job and start running it in the background."""
        job = await self.create_job(job_type, options)
        self.launch(job.job_id)
        return job

    def launch(self, job_id: str) -> asyncio.Task:
        task = asyncio.create_task(self._run_logged(job_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run_logged(self, job_id: str):
        try:
            await self.run(job_id)
        except Exception as e:
            logger.error("Sync job run crashed", job_id=job_id, error=str(e))

    async def cancel(self, job_id: str) -> bool:
        """
        Request cancellation. Takes effect at the next batch boundary.

        Returns:
            True if the job moved to cancelled, False if it had already finished

        Raises:
            JobNotFoundError: Unknown job id
        """
        job = await self.store.get_sync_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if job.status.is_terminal:
            return False
        updated = await self.store.transition_sync_job(
            job_id, JobStatus.CANCELLED, {"completed_at": self.clock()}
        )
        if updated is not None:
            logger.info("Sync job cancelled", job_id=job_id)
        return updated is not None

    async def retry(self, job_id: str, launch: bool = True) -> SyncJob:
        """
        Create a new job for the SKUs that failed in a finished job.
        A job that failed during setup is re-run with its original options.

        Raises:
            JobNotFoundError: Unknown job id
            ValidationError: Job still active or nothing to retry
        """
        job = await self.store.get_sync_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if not job.status.is_terminal:
            raise ValidationError("Only finished jobs can be retried")

        failed_skus = job.failed_skus
        if failed_skus:
            job_type = JobType.PARTIAL
            options = job.options.model_copy(update={"skus": failed_skus, "parent_job_id": job.job_id})
        elif job.status == JobStatus.FAILED:
            job_type = job.type
            options = job.options.model_copy(update={"parent_job_id": job.job_id})
        else:
            raise ValidationError("Job has no failed SKUs to retry")

        new_job = await self.create_job(job_type, options)
        logger.info("Sync job retried", job_id=job_id, new_job_id=new_job.job_id, skus=len(failed_skus))
        if launch:
            self.launch(new_job.job_id)
        return new_job

    async def get_job_status(self, job_id: str) -> Dict[str, Any]:
        """
        Progress view of a job.

        Raises:
            JobNotFoundError: Unknown job id
        """
        job = await self.store.get_sync_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        percent = round(job.processed_items / job.total_items * 100) if job.total_items else 0
        return {
            "job_id": job.job_id,
            "type": job.type.value,
            "status": job.status.value,
            "progress": {
                "total": job.total_items,
                "processed": job.processed_items,
                "success": job.success_count,
                "failed": job.failed_count,
                "percent": percent,
            },
            "errors": [error.model_dump(mode="json") for error in job.errors],
            "options": job.options.model_dump(mode="json", exclude_none=True),
            "started_at": job.started_at.isoformat() if job.started_at else None,
            "completed_at": job.completed_at.isoformat() if job.completed_at else None,
            "execution_time_ms": job.execution_time_ms,
        }

    # Execution

    async def run(self, job_id: str) -> Optional[SyncJob]:
        """
        Run a pending job to completion.

        Setup (SKU set, price rules, exchange rate) failures fail the job.
        Per-SKU failures are recorded and counted but never abort the job.

        Returns:
            Final job state, or the current state if the job was not pending
        """
        started_at = self.clock()
        job = await self.store.transition_sync_job(
            job_id, JobStatus.RUNNING, {"started_at": started_at}
        )
        if job is None:
            current = await self.store.get_sync_job(job_id)
            logger.info(
                "Sync job not pending, skipping run",
                job_id=job_id,
                status=current.status.value if current else None,
            )
            return current

        self._active.add(job_id)
        structlog.contextvars.bind_contextvars(job_id=job_id)
        try:
            logger.info("Sync job started", type=job.type.value)
            try:
                skus = await self._resolve_skus(job)
                rules = await self._load_rules(job)
                rate = await self._resolve_rate(job)
            except Exception as e:
                if policy_for(e) is not ErrorAction.JOB_FAILURE:
                    raise
                return await self._fail(job, started_at, e, [])

            return await self._process(job, started_at, skus, rules, rate)
        finally:
            self._active.discard(job_id)
            structlog.contextvars.unbind_contextvars("job_id")

    async def _resolve_skus(self, job: SyncJob) -> List[str]:
        if job.options.skus:
            return list(job.options.skus)
        try:
            mappings = await self.store.list_active_mappings()
        except Exception as e:
            raise FatalSetupError(f"Failed to resolve target SKUs: {e}") from e
        return [mapping.sku for mapping in mappings]

    async def _load_rules(self, job: SyncJob) -> List[PriceRule]:
        if not (job.options.sync_prices and job.options.apply_rules):
            return []
        try:
            return await self.store.list_price_rules(enabled_only=True)
        except Exception as e:
            raise FatalSetupError(f"Failed to load price rules: {e}") from e

    async def _resolve_rate(self, job: SyncJob) -> Optional[float]:
        if not job.options.sync_prices:
            return None
        try:
            return await self.exchange_rates.resolve_rate(job.options)
        except Exception as e:
            raise FatalSetupError(f"Failed to resolve exchange rate: {e}") from e

    async def _process_sku(self, job: SyncJob, sku: str, rules: List[PriceRule], rate: Optional[float]):
        if job.options.sync_inventory:
            await self.engine.reconcile_inventory(sku)
        if job.options.sync_prices:
            await self.engine.sync_price(
                sku,
                rules,
                rate,
                rounding_strategy=job.options.rounding_strategy,
                margin=job.options.margin,
                job_id=job.job_id,
            )
        return sku

    async def _process(
        self,
        job: SyncJob,
        started_at: datetime,
        skus: List[str],
        rules: List[PriceRule],
        rate: Optional[float],
    ) -> Optional[SyncJob]:
        counters = {"processed": 0, "success": 0, "failed": 0}
        errors: List[SyncJobError] = []

        async def save_progress():
            await self.store.update_sync_job_progress(
                job.job_id,
                total_items=len(skus),
                processed_items=counters["processed"],
                success_count=counters["success"],
                failed_count=counters["failed"],
                errors=errors,
            )

        async def on_batch_complete(pairs):
            fatal = None
            for sku, outcome in pairs:
                counters["processed"] += 1
                if isinstance(outcome, BaseException):
                    if fatal is None and policy_for(outcome).within_job() is ErrorAction.JOB_FAILURE:
                        fatal = outcome
                    counters["failed"] += 1
                    errors.append(
                        SyncJobError(
                            sku=sku,
                            error=str(outcome),
                            error_type=type(outcome).__name__,
                            timestamp=self.clock(),
                        )
                    )
                else:
                    counters["success"] += 1
            await save_progress()
            if fatal is not None:
                raise fatal

        async def should_continue() -> bool:
            current = await self.store.get_sync_job(job.job_id)
            return current is not None and current.status == JobStatus.RUNNING

        try:
            await save_progress()
            result = await run_in_batches(
                skus,
                lambda sku: self._process_sku(job, sku, rules, rate),
                batch_size=self.batch_size,
                concurrency=self.concurrency,
                pause_seconds=self.pause_seconds,
                should_continue=should_continue,
                on_batch_complete=on_batch_complete,
            )
        except Exception as e:
            return await self._fail(job, started_at, e, errors)

        if result.stopped_early:
            logger.info("Sync job stopped after cancellation", processed=counters["processed"])
            return await self.store.get_sync_job(job.job_id)

        finished_at = self.clock()
        final = await self.store.transition_sync_job(
            job.job_id,
            JobStatus.COMPLETED,
            {
                "completed_at": finished_at,
                "execution_time_ms": self._elapsed_ms(started_at, finished_at),
            },
        )
        if final is None:
            # Cancelled while the last batch was running
            return await self.store.get_sync_job(job.job_id)

        logger.info(
            "Sync job completed",
            total=len(skus),
            success=counters["success"],
            failed=counters["failed"],
            execution_time_ms=final.execution_time_ms,
        )
        return final

    async def _fail(
        self, job: SyncJob, started_at: datetime, error: Exception, errors: List[SyncJobError]
    ) -> Optional[SyncJob]:
        logger.error("Sync job failed", error=str(error), error_type=type(error).__name__)
        finished_at = self.clock()
        errors = errors + [
            SyncJobError(sku="*", error=str(error), error_type=type(error).__name__, timestamp=finished_at)
        ]
        final = await self.store.transition_sync_job(
            job.job_id,
            JobStatus.FAILED,
            {
                "completed_at": finished_at,
                "execution_time_ms": self._elapsed_ms(started_at, finished_at),
                "errors": [entry.model_dump(mode="json") for entry in errors],
            },
        )
        if self.alert_service is not None:
            try:
                await self.alert_service.create_alert(
                    AlertType.SYNC_FAILED,
                    AlertSeverity.CRITICAL,
                    "*",
                    f"Sync job {job.job_id} failed: {error}",
                    details={"job_id": job.job_id, "error_type": type(error).__name__},
                )
            except Exception as e:
                logger.error("Failed to raise sync_failed alert", error=str(e))
        return final or await self.store.get_sync_job(job.job_id)

    @staticmethod
    def _elapsed_ms(started_at: datetime, finished_at: datetime) -> int:
        return max(0, int((ensure_utc(finished_at) - ensure_utc(started_at)).total_seconds() * 1000))

    # Worker loop

    async def process_pending_jobs(self):
        """Run every pending job not already running in this process."""
        pending = await self.store.list_sync_jobs(status=JobStatus.PENDING)
        if not pending:
            return
        logger.info("Processing pending sync jobs", count=len(pending))
        for job in pending:
            if job.job_id in self._active:
                continue
            await self.run(job.job_id)

    async def start(self):
        """Start the sync worker loop."""
        self.running = True
        logger.info("Sync worker started")

        while self.running:
            try:
                await self.process_pending_jobs()
            except Exception as e:
                logger.error("Error in sync worker loop", error=str(e))

            # Wait before next poll
            await asyncio.sleep(self.poll_interval_seconds)

    async def stop(self):
        """Stop the sync worker and wait for in-flight jobs."""
        self.running = False
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        logger.info("Sync worker stopped")
