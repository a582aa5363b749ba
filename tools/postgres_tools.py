"""
Postgres implementation of the Persistence Gateway.

The relational schema belongs to the CRUD layer; this module only reads and
writes the columns the engine needs:

    jobs            (id, user_id, name, url, description, config, status,
                     schedule, next_run_at, last_run_at)
    job_executions  (id, job_id, status, started_at, completed_at,
                     duration_ms, pages_scraped, data_points, error, logs)
    scraped_data    (job_id, url, data, metadata, scraped_at)

psycopg2 is blocking, so every gateway coroutine runs its statement on a
worker thread (``asyncio.to_thread``). Transient connection errors are
retried with exponential backoff; everything else propagates.
"""

import asyncio
import json
import logging
import time
import uuid
from datetime import datetime
from functools import wraps
from typing import Any, Callable, Dict, List, Optional

import psycopg2
import psycopg2.errors
import psycopg2.extras
from psycopg2.extensions import connection as PgConnection

from config.settings import server_config
from core.errors import NotFoundError
from core.models import ExecutionOutcome, ExtractedRecord, Job, JobStatus, utcnow

logger = logging.getLogger(__name__)

__all__ = ["PostgresGateway"]

TRANSIENT_ERRORS = (psycopg2.OperationalError, psycopg2.InterfaceError)


def _with_retry(max_retries: int = 3) -> Callable:
    """
    Decorator that retries a database call on transient connection errors.

    Args:
        max_retries: Maximum number of attempts (default: 3).

    Returns:
        Decorated function with retry logic.
    """

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            for attempt in range(max_retries):
                try:
                    return func(*args, **kwargs)
                except TRANSIENT_ERRORS as e:
                    if attempt == max_retries - 1:
                        logger.critical(
                            "%s failed after %d attempts: %s", func.__name__, max_retries, e
                        )
                        raise
                    sleep_time = 2**attempt
                    logger.warning(
                        "%s failed (attempt %d/%d): %s. Retrying in %ds...",
                        func.__name__,
                        attempt + 1,
                        max_retries,
                        e,
                        sleep_time,
                    )
                    time.sleep(sleep_time)

        return wrapper

    return decorator


def _row_to_job(row: Dict[str, Any]) -> Job:
    config = row.get("config") or {}
    if isinstance(config, str):
        config = json.loads(config)
    return Job.model_validate(
        {
            "id": str(row["id"]),
            "user_id": str(row["user_id"]),
            "name": row.get("name") or "",
            "url": row["url"],
            "description": row.get("description") or "",
            "config": config,
            "status": row.get("status") or JobStatus.PENDING.value,
            "schedule": row.get("schedule"),
            "next_run_at": row.get("next_run_at"),
            "last_run_at": row.get("last_run_at"),
        }
    )


class PostgresGateway:
    """Persistence Gateway backed by a Postgres DSN (``DATABASE_URL``)."""

    def __init__(self, dsn: Optional[str] = None, max_retries: int = 3) -> None:
        self.dsn = dsn or server_config.database_url
        self.max_retries = max_retries
        if not self.dsn:
            raise RuntimeError("Database URL not configured. Set DATABASE_URL in .env")

    def _get_conn(self) -> PgConnection:
        conn = psycopg2.connect(self.dsn)
        conn.autocommit = False
        return conn

    def _execute(self, operation: Callable[[Any], Any]) -> Any:
        """Run ``operation(cursor)`` in one transaction, with retries."""

        @_with_retry(max_retries=self.max_retries)
        def _run() -> Any:
            conn = self._get_conn()
            try:
                with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cursor:
                    result = operation(cursor)
                conn.commit()
                return result
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()

        return _run()

    async def _call(self, operation: Callable[[Any], Any]) -> Any:
        return await asyncio.to_thread(self._execute, operation)

    # ------------------------------------------------------------------ #
    # GATEWAY
    # ------------------------------------------------------------------ #

    async def get_job(self, job_id: str) -> Job:
        def op(cursor: Any) -> Optional[Dict[str, Any]]:
            cursor.execute(
                """
                SELECT id, user_id, name, url, description, config, status,
                       schedule, next_run_at, last_run_at
                FROM jobs WHERE id = %s
                """,
                (job_id,),
            )
            return cursor.fetchone()

        row = await self._call(op)
        if row is None:
            raise NotFoundError("Job", job_id)
        return _row_to_job(row)

    async def create_execution(self, job_id: str) -> str:
        execution_id = str(uuid.uuid4())

        def op(cursor: Any) -> None:
            cursor.execute(
                """
                INSERT INTO job_executions (id, job_id, status, started_at)
                VALUES (%s, %s, 'RUNNING', %s)
                """,
                (execution_id, job_id, utcnow()),
            )

        try:
            await self._call(op)
        except psycopg2.errors.ForeignKeyViolation as e:
            raise NotFoundError("Job", job_id) from e
        logger.info("Execution %s created for job %s", execution_id, job_id)
        return execution_id

    async def finalize_execution(self, execution_id: str, outcome: ExecutionOutcome) -> None:
        def op(cursor: Any) -> int:
            cursor.execute(
                """
                UPDATE job_executions
                SET status = %s, completed_at = %s, duration_ms = %s,
                    pages_scraped = %s, data_points = %s, error = %s, logs = %s
                WHERE id = %s AND completed_at IS NULL
                """,
                (
                    outcome.status.value,
                    outcome.completed_at,
                    outcome.duration_ms,
                    outcome.pages_scraped,
                    outcome.data_points,
                    outcome.error,
                    psycopg2.extras.Json(outcome.artifact_log) if outcome.artifact_log else None,
                    execution_id,
                ),
            )
            if cursor.rowcount:
                return cursor.rowcount
            cursor.execute("SELECT 1 FROM job_executions WHERE id = %s", (execution_id,))
            return -1 if cursor.fetchone() else 0

        updated = await self._call(op)
        if updated == 0:
            raise NotFoundError("Execution", execution_id)
        if updated < 0:
            raise ValueError(f"Execution {execution_id} already finalized")

    async def update_job_status(
        self, job_id: str, status: JobStatus, last_run_at: Optional[datetime] = None
    ) -> None:
        def op(cursor: Any) -> int:
            cursor.execute(
                """
                UPDATE jobs SET status = %s, last_run_at = COALESCE(%s, last_run_at)
                WHERE id = %s
                """,
                (status.value, last_run_at, job_id),
            )
            return cursor.rowcount

        if not await self._call(op):
            raise NotFoundError("Job", job_id)

    async def append_records(self, job_id: str, records: List[ExtractedRecord]) -> None:
        if not records:
            return

        rows = [
            (
                job_id,
                r.source_url,
                psycopg2.extras.Json(r.data),
                psycopg2.extras.Json({"source": r.source, "page": r.page_index}),
                r.captured_at,
            )
            for r in records
        ]

        def op(cursor: Any) -> None:
            psycopg2.extras.execute_values(
                cursor,
                "INSERT INTO scraped_data (job_id, url, data, metadata, scraped_at) VALUES %s",
                rows,
            )

        await self._call(op)
        logger.info("Stored %d records for job %s", len(records), job_id)

    async def update_job_schedule(self, job_id: str, next_run_at: Optional[datetime]) -> None:
        def op(cursor: Any) -> int:
            cursor.execute("UPDATE jobs SET next_run_at = %s WHERE id = %s", (next_run_at, job_id))
            return cursor.rowcount

        if not await self._call(op):
            raise NotFoundError("Job", job_id)

    async def list_scheduled_jobs(self) -> List[Job]:
        def op(cursor: Any) -> List[Dict[str, Any]]:
            cursor.execute(
                """
                SELECT id, user_id, name, url, description, config, status,
                       schedule, next_run_at, last_run_at
                FROM jobs
                WHERE schedule IS NOT NULL AND schedule <> '' AND status <> %s
                ORDER BY id
                """,
                (JobStatus.PAUSED.value,),
            )
            return cursor.fetchall()

        jobs: List[Job] = []
        for row in await self._call(op):
            try:
                jobs.append(_row_to_job(row))
            except ValueError as e:
                logger.warning("Skipping unreadable scheduled job %s: %s", row.get("id"), e)
        return jobs

    async def ping(self) -> bool:
        """Connectivity check used by the health endpoint."""

        def op(cursor: Any) -> bool:
            cursor.execute("SELECT 1 AS ok")
            return bool(cursor.fetchone())

        try:
            return await self._call(op)
        except psycopg2.Error as e:
            logger.error("Database ping failed: %s", e)
            return False
