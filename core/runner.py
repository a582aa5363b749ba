"""One run attempt of a job, from execution record to final event.

    get job -> create execution -> status RUNNING -> job_started
      -> structured-API fallback, or browser session + paginated extraction
         (scraping_progress after every page)
      -> append records -> finalize execution -> status -> job_completed

Failures finalize the execution as FAILED, emit ``job_failed`` and re-raise
so the worker loop can apply its retry policy. An observed cancel finalizes
the execution as CANCELLED and raises :class:`JobCancelledError`.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from core.errors import JobCancelledError, NotFoundError
from core.gateway import PersistenceGateway
from core.models import (
    ExecutionOutcome,
    ExecutionStatus,
    Job,
    JobStatus,
    QueueEntry,
    RunResult,
    utcnow,
)
from core.notifications import (
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_STARTED,
    SCRAPING_PROGRESS,
    NotificationChannel,
)
from scrapers.extraction import ExtractionEngine
from scrapers.session_driver import SessionDriver
from scrapers.structured_api import StructuredApiFallback

logger = logging.getLogger(__name__)

__all__ = ["JobRunner"]


def _never_cancelled() -> bool:
    return False


class JobRunner:
    """Executes a single queue entry against the gateway, browser and channel."""

    def __init__(
        self,
        gateway: PersistenceGateway,
        notifier: NotificationChannel,
        session_driver: SessionDriver,
        extraction: Optional[ExtractionEngine] = None,
        fallback: Optional[StructuredApiFallback] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.gateway = gateway
        self.notifier = notifier
        self.session_driver = session_driver
        self.extraction = extraction or ExtractionEngine()
        self.fallback = fallback
        self.clock = clock

    async def _publish(self, user_id: str, event_type: str, data: Dict[str, Any]) -> None:
        try:
            await self.notifier.publish(user_id, event_type, data)
        except Exception as e:  # channels must not fail a run
            logger.warning("Dropping %s event for user %s: %s", event_type, user_id, e)

    async def run(
        self,
        entry: QueueEntry,
        is_cancelled: Callable[[], bool] = _never_cancelled,
    ) -> RunResult:
        job = await self.gateway.get_job(entry.job_id)
        if job.user_id != entry.user_id:
            raise NotFoundError("Job", f"{entry.job_id} (user {entry.user_id})")

        execution_id = await self.gateway.create_execution(job.id)
        started = time.monotonic()

        # everything after create_execution must end in exactly one finalize
        try:
            await self.gateway.update_job_status(job.id, JobStatus.RUNNING, last_run_at=self.clock())
            await self._publish(job.user_id, JOB_STARTED, {"jobId": job.id, "executionId": execution_id})
            result = await self._produce(job, execution_id, is_cancelled)
            if is_cancelled():
                raise JobCancelledError(job.id)
            await self.gateway.append_records(job.id, result.records)
        except asyncio.CancelledError:
            await self._finish_cancelled(job, execution_id, started)
            if is_cancelled():
                raise JobCancelledError(job.id) from None
            raise
        except Exception as e:
            if is_cancelled() or isinstance(e, JobCancelledError):
                await self._finish_cancelled(job, execution_id, started)
                raise JobCancelledError(job.id) from e
            await self._finish_failed(job, execution_id, started, e)
            raise

        await self.gateway.finalize_execution(
            execution_id,
            ExecutionOutcome(
                status=ExecutionStatus.COMPLETED,
                completed_at=self.clock(),
                duration_ms=self._elapsed_ms(started),
                pages_scraped=result.pages_scraped,
                data_points=result.data_points,
                artifact_log=self._artifact_log(result),
            ),
        )
        await self.gateway.update_job_status(job.id, JobStatus.COMPLETED)
        await self._publish(
            job.user_id,
            JOB_COMPLETED,
            {
                "jobId": job.id,
                "executionId": execution_id,
                "success": True,
                "pagesScraped": result.pages_scraped,
                "dataPoints": result.data_points,
            },
        )
        logger.info(
            "Job %s completed | source=%s | pages=%d | records=%d",
            job.id,
            result.source,
            result.pages_scraped,
            result.data_points,
        )
        return result

    async def _produce(self, job: Job, execution_id: str, is_cancelled: Callable[[], bool]) -> RunResult:
        if self.fallback is not None:
            result = await self.fallback.try_run(job)
            if result is not None:
                return result

        async def on_page(current_page: int, max_pages: int, data_points: int) -> None:
            await self._publish(
                job.user_id,
                SCRAPING_PROGRESS,
                {
                    "jobId": job.id,
                    "executionId": execution_id,
                    "currentPage": current_page,
                    "maxPages": max_pages,
                    "dataPoints": data_points,
                },
            )
            if is_cancelled():
                raise JobCancelledError(job.id)

        async with self.session_driver.open_session(job) as session:
            await self.session_driver.navigate(session, job)
            return await self.extraction.paginate(session.page, job.config, on_page=on_page)

    async def abort(self, job_id: str) -> bool:
        """Close the live browser session of ``job_id``, if any."""
        return await self.session_driver.close_session(job_id)

    # ------------------------------------------------------------------ #
    # FINALIZATION
    # ------------------------------------------------------------------ #

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.monotonic() - started) * 1000)

    @staticmethod
    def _artifact_log(result: RunResult) -> Dict[str, Any]:
        log: Dict[str, Any] = {"source": result.source}
        if result.screenshots:
            log["screenshots"] = list(result.screenshots)
        return log

    async def _finish_failed(self, job: Job, execution_id: str, started: float, error: BaseException) -> None:
        message = str(error) or type(error).__name__
        logger.error("Job %s failed: %s", job.id, message)
        await self.gateway.finalize_execution(
            execution_id,
            ExecutionOutcome(
                status=ExecutionStatus.FAILED,
                completed_at=self.clock(),
                duration_ms=self._elapsed_ms(started),
                error=message,
            ),
        )
        await self.gateway.update_job_status(job.id, JobStatus.FAILED)
        await self._publish(job.user_id, JOB_FAILED, {"jobId": job.id, "error": message})

    async def _finish_cancelled(self, job: Job, execution_id: str, started: float) -> None:
        await self.gateway.finalize_execution(
            execution_id,
            ExecutionOutcome(
                status=ExecutionStatus.CANCELLED,
                completed_at=self.clock(),
                duration_ms=self._elapsed_ms(started),
                error="Job cancelled",
            ),
        )
        await self.gateway.update_job_status(job.id, JobStatus.CANCELLED)
        await self._publish(
            job.user_id,
            JOB_FAILED,
            {"jobId": job.id, "executionId": execution_id, "error": "Job cancelled", "cancelled": True},
        )
