"""
Periodic dunning sweeps: expired grace periods, failed payment retries and
overdue subscription suspension
"""
from typing import Optional, List, Dict, Callable, Awaitable, Any
from datetime import datetime, timezone
import asyncio
import logging

from config.dunning_config import DUNNING_SWEEP_INTERVAL_SECONDS
from models.job import JobResult, JobStatus
from services.account_state_service import AccountStateService
from services.billing_service import BillingService

logger = logging.getLogger(__name__)

EXPIRE_GRACE_PERIODS = "expire-grace-periods"
RETRY_FAILED_PAYMENTS = "retry-failed-payments"
SUSPEND_OVERDUE_SUBSCRIPTIONS = "suspend-overdue-subscriptions"


class DunningScheduler:
    def __init__(self, account_state_service: AccountStateService, billing_service: BillingService):
        self.account_states = account_state_service
        self.billing = billing_service
        self.stop_event = asyncio.Event()
        self.last_run_at: Optional[datetime] = None
        self.last_results: List[JobResult] = []
        self._task: Optional[asyncio.Task] = None

    def _jobs(self, stop_event: Optional[asyncio.Event]) -> Dict[str, Callable[[], Awaitable[Any]]]:
        return {
            EXPIRE_GRACE_PERIODS: lambda: self.account_states.process_expired_grace_periods(stop_event=stop_event),
            RETRY_FAILED_PAYMENTS: lambda: self.billing.process_failed_payments(stop_event=stop_event),
            SUSPEND_OVERDUE_SUBSCRIPTIONS: lambda: self.billing.suspend_overdue_subscriptions(stop_event=stop_event),
        }

    @property
    def job_names(self) -> List[str]:
        return list(self._jobs(None).keys())

    async def run_once(self, stop_event: Optional[asyncio.Event] = None) -> List[JobResult]:
        """Run every sweep in order. A failing job is recorded and the next one still runs."""
        stop_event = stop_event or self.stop_event
        results = []
        for job_name, job in self._jobs(stop_event).items():
            if stop_event.is_set():
                logger.info(f"Dunning run stopped before {job_name}")
                break
            results.append(await self._run_job(job_name, job))

        self.last_run_at = datetime.now(timezone.utc)
        self.last_results = results
        return results

    async def trigger_job(self, job_name: str) -> JobResult:
        jobs = self._jobs(self.stop_event)
        if job_name not in jobs:
            raise ValueError(f"Unknown job: {job_name}")
        return await self._run_job(job_name, jobs[job_name])

    async def _run_job(self, job_name: str, job: Callable[[], Awaitable[Any]]) -> JobResult:
        started_at = datetime.now(timezone.utc)
        logger.info(f"Starting job: {job_name}")

        try:
            outcome = await job()
            finished_at = datetime.now(timezone.utc)
            duration_ms = int((finished_at - started_at).total_seconds() * 1000)
            logger.info(f"Job {job_name} completed successfully in {duration_ms}ms")
            return JobResult(
                job_name=job_name,
                status=JobStatus.SUCCESS,
                started_at=started_at,
                finished_at=finished_at,
                duration_ms=duration_ms,
                results=outcome.model_dump() if hasattr(outcome, "model_dump") else outcome,
            )
        except Exception as e:
            finished_at = datetime.now(timezone.utc)
            duration_ms = int((finished_at - started_at).total_seconds() * 1000)
            logger.error(f"Job {job_name} failed after {duration_ms}ms: {str(e)}")
            return JobResult(
                job_name=job_name,
                status=JobStatus.FAILURE,
                started_at=started_at,
                finished_at=finished_at,
                duration_ms=duration_ms,
                errors=[str(e)],
            )

    async def run_forever(
        self,
        interval_seconds: float = DUNNING_SWEEP_INTERVAL_SECONDS,
        stop_event: Optional[asyncio.Event] = None,
    ) -> None:
        stop_event = stop_event or self.stop_event
        logger.info(f"Dunning scheduler started, interval {interval_seconds}s")

        while not stop_event.is_set():
            await self.run_once(stop_event)
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
            except asyncio.TimeoutError:
                pass

        logger.info("Dunning scheduler stopped")

    def start(self, interval_seconds: float = DUNNING_SWEEP_INTERVAL_SECONDS) -> asyncio.Task:
        if self._task is None or self._task.done():
            self.stop_event.clear()
            self._task = asyncio.create_task(self.run_forever(interval_seconds, self.stop_event))
        return self._task

    async def stop(self) -> None:
        """Ask the loop to stop; the item in progress finishes first."""
        self.stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self._task is not None and not self._task.done(),
            "jobs": self.job_names,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_results": [result.model_dump(mode="json") for result in self.last_results],
        }
