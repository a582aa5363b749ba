"""
core/worker.py

EXECUTION WORKER LOOP
=====================

Fixed-tick dispatcher. Each tick, while the single ``dispatching`` flag is
held, it starts up to ``starts_per_tick`` eligible queue entries (default 1)
as long as fewer than ``max_concurrency`` runs are in flight. Runs are
asyncio tasks; the dispatcher never awaits a run.

Run outcomes:
    success         -> nothing further
    failure         -> retries += 1; re-enqueued at the same priority with
                       not_before = now + retries * backoff while
                       retries <= max_retries, else ExhaustedRetriesError (logged)
    job not found   -> dropped, logged, not retried
    cancelled       -> finalized CANCELLED by the runner, never retried

A job id joins the active set before its task starts and leaves it only
once the task has fully finished.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Set

from config.settings import EngineConfig, engine_config
from core.errors import ExhaustedRetriesError, JobCancelledError, NotFoundError
from core.models import QueueEntry, utcnow
from core.runner import JobRunner
from core.scheduler import JobScheduler

LOG = logging.getLogger(__name__)

__all__ = ["WorkerLoop", "CANCEL_GRACE_SECONDS"]

# upper bound on how long abort() waits for the cancelled task to finalize
CANCEL_GRACE_SECONDS = 10.0


class WorkerLoop:
    """Dispatches queue entries to the job runner under the concurrency bound."""

    def __init__(
        self,
        scheduler: JobScheduler,
        runner: JobRunner,
        config: EngineConfig = engine_config,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.scheduler = scheduler
        self.runner = runner
        self.config = config
        self.clock = clock
        self.dispatching = False
        self._lock = asyncio.Lock()
        self._active: Dict[str, asyncio.Task] = {}
        self._cancelled: Set[str] = set()
        self._stop_event = asyncio.Event()
        scheduler.attach_worker(self)

    # ------------------------------------------------------------------ #
    # STATE
    # ------------------------------------------------------------------ #

    @property
    def active_count(self) -> int:
        return len(self._active)

    @property
    def active_job_ids(self) -> List[str]:
        return list(self._active)

    def is_active(self, job_id: str) -> bool:
        return job_id in self._active

    # ------------------------------------------------------------------ #
    # DISPATCH
    # ------------------------------------------------------------------ #

    async def tick(self) -> List[asyncio.Task]:
        """One dispatch decision. Returns the tasks started during this tick."""
        if self.dispatching:
            return []
        started: List[asyncio.Task] = []
        async with self._lock:
            self.dispatching = True
            try:
                while (
                    len(started) < max(self.config.starts_per_tick, 1)
                    and self.active_count < self.config.max_concurrency
                ):
                    entry = self.scheduler.pop_eligible(self.clock())
                    if entry is None:
                        break
                    started.append(self._start(entry))
            finally:
                self.dispatching = False
        return started

    def _start(self, entry: QueueEntry) -> asyncio.Task:
        task = asyncio.create_task(self._run_entry(entry), name=f"run:{entry.job_id}")
        self._active[entry.job_id] = task
        task.add_done_callback(lambda t, job_id=entry.job_id: self._release(job_id, t))
        LOG.info(
            "Dispatching job %s (attempt %d, active %d/%d)",
            entry.job_id,
            entry.retries + 1,
            self.active_count,
            self.config.max_concurrency,
        )
        return task

    async def _run_entry(self, entry: QueueEntry) -> None:
        job_id = entry.job_id
        failure: Optional[Exception] = None
        try:
            await self.runner.run(entry, is_cancelled=lambda: job_id in self._cancelled)
        except NotFoundError as e:
            LOG.warning("Dropping queue entry for job %s: %s", job_id, e)
        except JobCancelledError:
            LOG.info("Job %s cancelled", job_id)
        except asyncio.CancelledError:
            if job_id not in self._cancelled:
                raise
            LOG.info("Job %s cancelled before it could finalize", job_id)
        except Exception as e:  # any run failure is retryable
            failure = e
        finally:
            # leave the active set before any retry entry exists
            self._release(job_id, asyncio.current_task())
        if failure is not None:
            self._schedule_retry(entry, failure)

    def _release(self, job_id: str, task: Optional[asyncio.Task]) -> None:
        if task is not None and self._active.get(job_id) is task:
            del self._active[job_id]
            self._cancelled.discard(job_id)

    def _schedule_retry(self, entry: QueueEntry, error: BaseException) -> Optional[QueueEntry]:
        retries = entry.retries + 1
        if retries > entry.max_retries:
            LOG.error("%s", ExhaustedRetriesError(entry.job_id, entry.retries, str(error)))
            return None

        delay = timedelta(seconds=retries * self.config.backoff_seconds)
        retry = self.scheduler.requeue(entry, not_before=self.clock() + delay, retries=retries)
        LOG.warning(
            "Job %s failed (%s); retry %d/%d in %.0fs",
            entry.job_id,
            error,
            retries,
            entry.max_retries,
            delay.total_seconds(),
        )
        return retry

    # ------------------------------------------------------------------ #
    # CANCELLATION
    # ------------------------------------------------------------------ #

    async def abort(self, job_id: str) -> bool:
        """Cancel a running job. Its session closes as the cancellation unwinds the run."""
        task = self._active.get(job_id)
        if task is None:
            return False
        self._cancelled.add(job_id)
        task.cancel()
        await asyncio.wait({task}, timeout=CANCEL_GRACE_SECONDS)
        await self.runner.abort(job_id)
        LOG.info("Job %s aborted", job_id)
        return True

    # ------------------------------------------------------------------ #
    # LIFECYCLE
    # ------------------------------------------------------------------ #

    async def run_forever(self) -> None:
        LOG.info(
            "Worker loop started | tick=%.2fs | max_concurrency=%d | starts_per_tick=%d",
            self.config.tick_seconds,
            self.config.max_concurrency,
            self.config.starts_per_tick,
        )
        self._stop_event.clear()
        while not self._stop_event.is_set():
            await self.tick()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.config.tick_seconds)
            except asyncio.TimeoutError:
                continue
        LOG.info("Worker loop stopped")

    async def drain(self) -> None:
        """Wait for every in-flight run to finish."""
        tasks = list(self._active.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def stop(self, cancel_running: bool = False) -> None:
        self._stop_event.set()
        if cancel_running:
            for job_id in list(self._active):
                await self.abort(job_id)
        await self.drain()
