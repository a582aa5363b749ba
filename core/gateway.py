"""Persistence Gateway boundary.

The engine never talks to a database directly; it goes through an object
that satisfies :class:`PersistenceGateway`. Two implementations ship with the
repo: :class:`InMemoryGateway` here (tests and the CLI one-shot mode) and
``tools.postgres_tools.PostgresGateway`` for a real deployment.

All methods are coroutines so that a blocking driver can be pushed onto a
worker thread without changing callers.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime
from typing import Dict, List, Optional, Protocol, runtime_checkable

from core.errors import NotFoundError
from core.models import (
    Execution,
    ExecutionOutcome,
    ExtractedRecord,
    Job,
    JobStatus,
)

logger = logging.getLogger(__name__)

__all__ = ["PersistenceGateway", "InMemoryGateway"]


@runtime_checkable
class PersistenceGateway(Protocol):
    async def get_job(self, job_id: str) -> Job:
        """Return the job or raise :class:`NotFoundError`."""
        ...

    async def create_execution(self, job_id: str) -> str:
        ...

    async def finalize_execution(self, execution_id: str, outcome: ExecutionOutcome) -> None:
        ...

    async def update_job_status(
        self, job_id: str, status: JobStatus, last_run_at: Optional[datetime] = None
    ) -> None:
        ...

    async def append_records(self, job_id: str, records: List[ExtractedRecord]) -> None:
        ...

    async def update_job_schedule(self, job_id: str, next_run_at: Optional[datetime]) -> None:
        ...

    async def list_scheduled_jobs(self) -> List[Job]:
        """Jobs with a cron schedule that are not PAUSED."""
        ...


class InMemoryGateway:
    """Dict-backed gateway. Finalizing an execution twice is an error."""

    def __init__(self, jobs: Optional[List[Job]] = None) -> None:
        self.jobs: Dict[str, Job] = {}
        self.executions: Dict[str, Execution] = {}
        self.records: Dict[str, List[ExtractedRecord]] = {}
        self._lock = asyncio.Lock()
        for job in jobs or []:
            self.save_job(job)

    def save_job(self, job: Job) -> Job:
        self.jobs[job.id] = job
        return job

    async def get_job(self, job_id: str) -> Job:
        job = self.jobs.get(job_id)
        if job is None:
            raise NotFoundError("Job", job_id)
        return job

    async def create_execution(self, job_id: str) -> str:
        if job_id not in self.jobs:
            raise NotFoundError("Job", job_id)
        execution = Execution(id=f"exec-{uuid.uuid4().hex[:12]}", job_id=job_id)
        async with self._lock:
            self.executions[execution.id] = execution
        return execution.id

    async def finalize_execution(self, execution_id: str, outcome: ExecutionOutcome) -> None:
        async with self._lock:
            execution = self.executions.get(execution_id)
            if execution is None:
                raise NotFoundError("Execution", execution_id)
            if execution.finalized:
                raise ValueError(f"Execution {execution_id} already finalized")
            execution.status = outcome.status
            execution.completed_at = outcome.completed_at
            execution.duration_ms = outcome.duration_ms
            execution.pages_scraped = outcome.pages_scraped
            execution.data_points = outcome.data_points
            execution.error = outcome.error
            execution.artifact_log = outcome.artifact_log

    async def update_job_status(
        self, job_id: str, status: JobStatus, last_run_at: Optional[datetime] = None
    ) -> None:
        job = await self.get_job(job_id)
        update: Dict[str, object] = {"status": status}
        if last_run_at is not None:
            update["last_run_at"] = last_run_at
        self.jobs[job_id] = job.model_copy(update=update)

    async def append_records(self, job_id: str, records: List[ExtractedRecord]) -> None:
        if not records:
            return
        async with self._lock:
            self.records.setdefault(job_id, []).extend(records)
        logger.debug("Stored %d records for job %s", len(records), job_id)

    async def update_job_schedule(self, job_id: str, next_run_at: Optional[datetime]) -> None:
        job = await self.get_job(job_id)
        self.jobs[job_id] = job.model_copy(update={"next_run_at": next_run_at})

    async def list_scheduled_jobs(self) -> List[Job]:
        return [j for j in self.jobs.values() if j.schedule and j.status is not JobStatus.PAUSED]

    def executions_for(self, job_id: str) -> List[Execution]:
        return [e for e in self.executions.values() if e.job_id == job_id]
