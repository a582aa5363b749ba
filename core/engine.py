"""
core/engine.py

EXECUTION ENGINE (command surface)
==================================

Wires the scheduler, worker loop, job runner, session driver, proxy pools
and structured-API fallback together and exposes the commands the outside
world uses:

    engine = ExecutionEngine(gateway, notifier)
    await engine.start()
    await engine.submit(job, priority=5)
    await engine.submit_recurring(job, "*/30 * * * *")
    await engine.cancel(job.id)
    engine.queue_status()
    engine.list_queued()
    await engine.shutdown()

Every collaborator can be passed in; anything omitted is built from the
module-level configuration in ``config.settings``.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from config.settings import (
    BrowserConfig,
    EngineConfig,
    ProviderConfig,
    ProxyConfig,
    browser_config,
    engine_config,
    provider_config,
    proxy_config,
)
from core.errors import InvalidScheduleError
from core.gateway import PersistenceGateway
from core.models import Job, JobStatus, QueueEntry, RunResult, utcnow
from core.notifications import LoggingChannel, NotificationChannel
from core.runner import JobRunner
from core.scheduler import JobScheduler
from core.worker import WorkerLoop
from scrapers.extraction import ExtractionEngine
from scrapers.proxy_pool import ProxyPoolManager
from scrapers.session_driver import SessionDriver
from scrapers.structured_api import StructuredApiFallback

LOG = logging.getLogger(__name__)

__all__ = ["ExecutionEngine"]


class ExecutionEngine:
    """Facade over the Job Execution Engine components."""

    def __init__(
        self,
        gateway: PersistenceGateway,
        notifier: Optional[NotificationChannel] = None,
        proxy_manager: Optional[ProxyPoolManager] = None,
        session_driver: Optional[SessionDriver] = None,
        fallback: Optional[StructuredApiFallback] = None,
        extraction: Optional[ExtractionEngine] = None,
        config: EngineConfig = engine_config,
        browser: BrowserConfig = browser_config,
        proxies: ProxyConfig = proxy_config,
        providers: ProviderConfig = provider_config,
        clock: Callable[[], datetime] = utcnow,
        use_fallback: bool = True,
    ) -> None:
        self.gateway = gateway
        self.notifier = notifier or LoggingChannel()
        self.config = config
        self.proxy_manager = proxy_manager or ProxyPoolManager.from_config(proxies)
        self.session_driver = session_driver or SessionDriver(self.proxy_manager, browser)
        if fallback is None and use_fallback:
            fallback = StructuredApiFallback(providers)
        self.runner = JobRunner(
            gateway,
            self.notifier,
            self.session_driver,
            extraction=extraction or ExtractionEngine(),
            fallback=fallback,
            clock=clock,
        )
        self.scheduler = JobScheduler(gateway, config, clock)
        self.worker = WorkerLoop(self.scheduler, self.runner, config, clock)
        self._loop_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------ #
    # COMMANDS
    # ------------------------------------------------------------------ #

    async def submit(self, job: Job, priority: int = 0, max_retries: Optional[int] = None) -> QueueEntry:
        """Queue a one-off run of a persisted job."""
        await self.gateway.get_job(job.id)
        self.scheduler.ensure_not_pending(job.id)
        # PENDING must land before the worker can write RUNNING
        await self.gateway.update_job_status(job.id, JobStatus.PENDING)
        return self.scheduler.enqueue(job.id, job.user_id, priority=priority, max_retries=max_retries)

    async def submit_recurring(self, job: Job, cron_expr: str) -> datetime:
        """Register a cron trigger for a persisted job; returns the first fire time."""
        await self.gateway.get_job(job.id)
        return await self.scheduler.schedule_recurring(job.id, job.user_id, cron_expr)

    async def restore_schedules(self) -> int:
        """Re-register the cron trigger of every stored job that carries one."""
        restored = 0
        for job in await self.gateway.list_scheduled_jobs():
            try:
                await self.scheduler.schedule_recurring(job.id, job.user_id, job.schedule)
            except InvalidScheduleError as e:
                LOG.warning("Not restoring schedule of job %s: %s", job.id, e)
                continue
            restored += 1
        LOG.info("Restored %d recurring job(s) from storage", restored)
        return restored

    async def unschedule(self, job_id: str) -> bool:
        return await self.scheduler.unschedule(job_id)

    async def cancel(self, job_id: str) -> bool:
        return await self.scheduler.cancel(job_id)

    def queue_status(self) -> Dict[str, Any]:
        status = self.scheduler.status()
        status["active_jobs"] = self.worker.active_job_ids
        status["recurring_jobs"] = len(self.scheduler.recurring_jobs())
        return status

    def list_queued(self) -> List[QueueEntry]:
        return self.scheduler.list_queued()

    async def run_now(self, job: Job) -> RunResult:
        """Run a job once in the caller's task, bypassing the queue (CLI mode)."""
        return await self.runner.run(QueueEntry(job_id=job.id, user_id=job.user_id))

    # ------------------------------------------------------------------ #
    # LIFECYCLE
    # ------------------------------------------------------------------ #

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    async def start(self) -> None:
        if self.running:
            return
        self.scheduler.start()
        self._loop_task = asyncio.create_task(self.worker.run_forever(), name="worker-loop")
        LOG.info("Execution engine started")

    async def shutdown(self, cancel_running: bool = True) -> None:
        self.scheduler.shutdown()
        await self.worker.stop(cancel_running=cancel_running)
        if self._loop_task is not None:
            await self._loop_task
            self._loop_task = None
        await self.session_driver.shutdown()
        LOG.info("Execution engine stopped")
