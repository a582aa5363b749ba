"""
core/scheduler.py

SCHEDULER / QUEUE
=================

Owns the priority queue of pending runs and the cron registrations that feed
it.

Queue order:
- strictly by priority, highest first
- FIFO among equal priorities (a new entry goes after existing equals)
- ``pop_eligible`` takes the first entry whose ``not_before`` has passed;
  delayed retries never block eligible work behind them

A job id appears at most once across the queue and the worker's active set.

Recurring jobs are APScheduler ``CronTrigger`` registrations (standard
5-field crontab, UTC). Each fire enqueues the job at RECURRING_PRIORITY and
stores the following fire time through the persistence gateway.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from apscheduler.events import EVENT_JOB_ERROR, JobExecutionEvent
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from config.settings import EngineConfig, engine_config
from core.errors import DuplicateJobError, InvalidScheduleError
from core.gateway import PersistenceGateway
from core.models import QueueEntry, utcnow

if TYPE_CHECKING:
    from core.worker import WorkerLoop

LOG = logging.getLogger(__name__)

__all__ = ["JobScheduler", "parse_cron", "RECURRING_PRIORITY"]

RECURRING_PRIORITY = 1


def parse_cron(expression: str) -> CronTrigger:
    """Validate a 5-field crontab expression and build its UTC trigger."""
    if not expression or not expression.strip():
        raise InvalidScheduleError(expression or "", "empty expression")
    try:
        return CronTrigger.from_crontab(expression.strip(), timezone=timezone.utc)
    except ValueError as e:
        raise InvalidScheduleError(expression, str(e)) from e


class JobScheduler:
    """Priority queue + cron registrations.

    Attributes:
        gateway: Persistence gateway used to store next-run times.
        config: Engine configuration (priorities, retry ceiling).
        clock: Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        config: EngineConfig = engine_config,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.gateway = gateway
        self.config = config
        self.clock = clock
        self._queue: List[QueueEntry] = []
        self._recurring: Dict[str, str] = {}
        self._worker: Optional["WorkerLoop"] = None
        self._cron = AsyncIOScheduler(timezone=timezone.utc)
        self._cron.add_listener(self._on_cron_error, EVENT_JOB_ERROR)

    def attach_worker(self, worker: "WorkerLoop") -> None:
        self._worker = worker

    # ------------------------------------------------------------------ #
    # QUEUE
    # ------------------------------------------------------------------ #

    def _is_queued(self, job_id: str) -> bool:
        return any(e.job_id == job_id for e in self._queue)

    def _is_active(self, job_id: str) -> bool:
        return self._worker is not None and self._worker.is_active(job_id)

    def ensure_not_pending(self, job_id: str) -> None:
        """Raise DuplicateJobError if ``job_id`` is already queued or running."""
        if self._is_queued(job_id):
            raise DuplicateJobError(job_id, "queued")
        if self._is_active(job_id):
            raise DuplicateJobError(job_id, "running")

    def _insert(self, entry: QueueEntry) -> None:
        for index, existing in enumerate(self._queue):
            if existing.priority < entry.priority:
                self._queue.insert(index, entry)
                return
        self._queue.append(entry)

    def enqueue(
        self,
        job_id: str,
        user_id: str,
        priority: int = 0,
        not_before: Optional[datetime] = None,
        max_retries: Optional[int] = None,
    ) -> QueueEntry:
        """Queue a fresh run. Raises DuplicateJobError if already queued or running."""
        self.ensure_not_pending(job_id)

        entry = QueueEntry(
            job_id=job_id,
            user_id=user_id,
            priority=priority,
            not_before=not_before or self.clock(),
            max_retries=self.config.max_retries if max_retries is None else max_retries,
        )
        self._insert(entry)
        LOG.info(
            "Job %s enqueued | priority=%d | not_before=%s | queue_length=%d",
            job_id,
            priority,
            entry.not_before.isoformat(),
            len(self._queue),
        )
        return entry

    def requeue(self, entry: QueueEntry, not_before: datetime, retries: int) -> QueueEntry:
        """Put a failed run back at its original priority with delayed eligibility."""
        if self._is_queued(entry.job_id):
            raise DuplicateJobError(entry.job_id, "queued")
        retry = replace(entry, not_before=not_before, retries=retries)
        self._insert(retry)
        return retry

    def pop_eligible(self, now: Optional[datetime] = None) -> Optional[QueueEntry]:
        now = now or self.clock()
        for index, entry in enumerate(self._queue):
            if entry.is_eligible(now):
                return self._queue.pop(index)
        return None

    def list_queued(self) -> List[QueueEntry]:
        return list(self._queue)

    def clear(self) -> int:
        dropped = len(self._queue)
        self._queue.clear()
        if dropped:
            LOG.info("Queue cleared (%d entries dropped)", dropped)
        return dropped

    async def cancel(self, job_id: str) -> bool:
        """Drop a queued entry, or abort the live run. True if anything was cancelled."""
        for index, entry in enumerate(self._queue):
            if entry.job_id == job_id:
                del self._queue[index]
                LOG.info("Job %s removed from queue", job_id)
                return True
        if self._is_active(job_id):
            return await self._worker.abort(job_id)
        LOG.info("Cancel requested for job %s, but it is neither queued nor running", job_id)
        return False

    def status(self) -> Dict[str, Any]:
        worker = self._worker
        return {
            "queue_length": len(self._queue),
            "active_count": worker.active_count if worker else 0,
            "max_concurrency": self.config.max_concurrency,
            "dispatching": worker.dispatching if worker else False,
        }

    # ------------------------------------------------------------------ #
    # RECURRING
    # ------------------------------------------------------------------ #

    def next_trigger_time(self, expression: str, after: Optional[datetime] = None) -> datetime:
        """Next fire time of ``expression`` at or after ``after`` (default: now)."""
        trigger = parse_cron(expression)
        fire_time = trigger.get_next_fire_time(None, after or self.clock())
        if fire_time is None:
            raise InvalidScheduleError(expression, "expression never fires")
        return fire_time

    async def schedule_recurring(self, job_id: str, user_id: str, expression: str) -> datetime:
        """Register (or replace) the cron trigger for ``job_id``; returns the first fire time."""
        trigger = parse_cron(expression)
        next_run = self.next_trigger_time(expression)
        await self.gateway.update_job_schedule(job_id, next_run)

        if job_id in self._recurring:
            try:
                self._cron.remove_job(job_id)
            except JobLookupError:
                LOG.debug("No previous cron registration for %s", job_id)
        self._cron.add_job(
            self.trigger_recurring,
            trigger=trigger,
            args=[job_id, user_id, expression],
            id=job_id,
            name=f"recurring:{job_id}",
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        self._recurring[job_id] = expression
        LOG.info("Job %s scheduled %r | next run %s", job_id, expression, next_run.isoformat())
        return next_run

    async def trigger_recurring(self, job_id: str, user_id: str, expression: str) -> Optional[QueueEntry]:
        """Cron fire: enqueue at the elevated priority and store the following fire time."""
        entry: Optional[QueueEntry] = None
        try:
            entry = self.enqueue(job_id, user_id, priority=self.config.recurring_priority)
        except DuplicateJobError as e:
            LOG.warning("Skipping scheduled run: %s", e)

        following = self.next_trigger_time(expression, self.clock() + timedelta(seconds=1))
        await self.gateway.update_job_schedule(job_id, following)
        return entry

    async def unschedule(self, job_id: str) -> bool:
        if self._recurring.pop(job_id, None) is None:
            return False
        try:
            self._cron.remove_job(job_id)
        except JobLookupError:
            LOG.debug("Cron registration for %s already gone", job_id)
        await self.gateway.update_job_schedule(job_id, None)
        LOG.info("Job %s unscheduled", job_id)
        return True

    def recurring_jobs(self) -> Dict[str, str]:
        return dict(self._recurring)

    def _on_cron_error(self, event: JobExecutionEvent) -> None:
        LOG.error("Recurring trigger %s failed: %s", event.job_id, event.exception)

    # ------------------------------------------------------------------ #
    # LIFECYCLE
    # ------------------------------------------------------------------ #

    def start(self) -> None:
        """Start cron timers. Must be called from inside the running event loop."""
        if not self._cron.running:
            self._cron.start()
            LOG.info("Cron scheduler started (%d registrations)", len(self._recurring))

    def shutdown(self) -> None:
        if self._cron.running:
            self._cron.shutdown(wait=False)
            LOG.info("Cron scheduler stopped")
