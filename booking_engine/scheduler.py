"""
Job Runner
==========

Runs the scheduled sweeps with single-flight execution and a manual
"run now" hook. Each run is logged as STARTED and then COMPLETED, FAILED
(the job reported success=False) or CRASHED (the job raised).
"""

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional

import structlog
from prometheus_client import Counter

from .exceptions import NotFound
from .locks import JobLock
from .schemas import JobRunResult, JobStatus, SweepSummary

logger = structlog.get_logger(__name__)

JOB_RUNS = Counter(
    "booking_job_runs_total",
    "Scheduled job runs by outcome",
    ["job", "outcome"],  # outcome: completed, failed, crashed, skipped
)


@dataclass
class Job:
    name: str
    schedule: str
    func: Callable[[], Awaitable[SweepSummary]]
    last_started_at: Optional[datetime] = None
    last_finished_at: Optional[datetime] = None
    last_outcome: Optional[str] = None


class JobRunner:
    def __init__(self, lock: JobLock):
        self.lock = lock
        self._jobs: Dict[str, Job] = {}

    def register(self, name: str, schedule: str, func: Callable[[], Awaitable[SweepSummary]]) -> None:
        self._jobs[name] = Job(name=name, schedule=schedule, func=func)

    def _get(self, name: str) -> Job:
        job = self._jobs.get(name)
        if job is None:
            raise NotFound("Job", name)
        return job

    async def run_now(self, name: str) -> JobRunResult:
        """
        Run a job immediately unless a run of the same job is in flight.

        Raises:
            NotFound: Unknown job name
        """
        job = self._get(name)

        if not await self.lock.acquire(name):
            JOB_RUNS.labels(job=name, outcome="skipped").inc()
            logger.warning("Job skipped, previous run still in progress", job=name)
            return JobRunResult(name=name, outcome="skipped")

        started = time.monotonic()
        job.last_started_at = datetime.now(timezone.utc)
        logger.info("Job STARTED", job=name)
        outcome = "crashed"

        try:
            summary = await job.func()
        except Exception as e:
            duration = time.monotonic() - started
            logger.exception("Job CRASHED", job=name, duration_seconds=round(duration, 3))
            return JobRunResult(name=name, outcome=outcome, duration_seconds=duration, error=str(e))
        else:
            duration = time.monotonic() - started
            if summary.success:
                outcome = "completed"
                logger.info("Job COMPLETED", job=name, duration_seconds=round(duration, 3))
            else:
                outcome = "failed"
                logger.error("Job FAILED", job=name, duration_seconds=round(duration, 3), error=summary.error)
            return JobRunResult(
                name=name,
                outcome=outcome,
                duration_seconds=duration,
                result=summary.model_dump(),
                error=summary.error,
            )
        finally:
            await self.lock.release(name)
            job.last_finished_at = datetime.now(timezone.utc)
            job.last_outcome = outcome
            JOB_RUNS.labels(job=name, outcome=outcome).inc()

    async def status(self) -> List[JobStatus]:
        return [
            JobStatus(
                name=job.name,
                schedule=job.schedule,
                running=await self.lock.is_locked(job.name),
                last_started_at=job.last_started_at,
                last_finished_at=job.last_finished_at,
                last_outcome=job.last_outcome,
            )
            for job in self._jobs.values()
        ]
