# tests/test_gateway.py
# In-memory gateway semantics and the Postgres gateway's pure helpers

import asyncio
from datetime import datetime, timezone

import psycopg2
import pytest

from config.settings import ServerConfig
from core.errors import NotFoundError
from core.gateway import InMemoryGateway, PersistenceGateway
from core.models import ExecutionOutcome, ExecutionStatus, ExtractedRecord, JobStatus
from tools import postgres_tools
from tools.postgres_tools import PostgresGateway, _row_to_job, _with_retry

from conftest import make_job

WHEN = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def outcome(status=ExecutionStatus.COMPLETED):
    return ExecutionOutcome(status=status, completed_at=WHEN, duration_ms=1200, pages_scraped=2, data_points=2)


def test_in_memory_gateway_satisfies_protocol():
    assert isinstance(InMemoryGateway(), PersistenceGateway)


def test_execution_lifecycle():
    gateway = InMemoryGateway([make_job("a")])

    async def scenario():
        execution_id = await gateway.create_execution("a")
        await gateway.finalize_execution(execution_id, outcome())
        with pytest.raises(ValueError):
            await gateway.finalize_execution(execution_id, outcome(ExecutionStatus.FAILED))
        return execution_id

    execution_id = asyncio.run(scenario())

    execution = gateway.executions[execution_id]
    assert execution.status is ExecutionStatus.COMPLETED
    assert execution.pages_scraped == 2
    assert execution.finalized


def test_unknown_ids_raise_not_found():
    gateway = InMemoryGateway()

    with pytest.raises(NotFoundError):
        asyncio.run(gateway.get_job("nope"))
    with pytest.raises(NotFoundError):
        asyncio.run(gateway.create_execution("nope"))
    with pytest.raises(NotFoundError):
        asyncio.run(gateway.finalize_execution("exec-x", outcome()))
    with pytest.raises(NotFoundError):
        asyncio.run(gateway.update_job_status("nope", JobStatus.RUNNING))


def test_status_schedule_and_records():
    gateway = InMemoryGateway([make_job("a")])

    async def scenario():
        await gateway.update_job_status("a", JobStatus.RUNNING, last_run_at=WHEN)
        await gateway.update_job_status("a", JobStatus.COMPLETED)
        await gateway.update_job_schedule("a", WHEN)
        await gateway.append_records("a", [ExtractedRecord(data={"k": 1}, source_url="https://example.com")])
        await gateway.append_records("a", [])

    asyncio.run(scenario())

    job = gateway.jobs["a"]
    assert job.status is JobStatus.COMPLETED
    assert job.last_run_at == WHEN
    assert job.next_run_at == WHEN
    assert [r.data for r in gateway.records["a"]] == [{"k": 1}]


def test_row_to_job_accepts_json_text_config():
    job = _row_to_job(
        {
            "id": 12,
            "user_id": 3,
            "name": None,
            "url": "https://example.com",
            "description": None,
            "config": '{"selectors": [{"name": "t", "selector": "h1"}], "waitFor": "#main"}',
            "status": "PAUSED",
            "schedule": "0 * * * *",
            "next_run_at": None,
            "last_run_at": None,
        }
    )

    assert job.id == "12"
    assert job.user_id == "3"
    assert job.status is JobStatus.PAUSED
    assert job.config.selectors[0].name == "t"
    assert job.config.wait_for == "#main"


def test_with_retry_retries_transient_errors(monkeypatch):
    monkeypatch.setattr(postgres_tools.time, "sleep", lambda seconds: None)
    calls = []

    @_with_retry(max_retries=3)
    def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise psycopg2.OperationalError("server closed the connection")
        return "ok"

    assert flaky() == "ok"
    assert len(calls) == 3


def test_with_retry_gives_up_and_skips_other_errors(monkeypatch):
    monkeypatch.setattr(postgres_tools.time, "sleep", lambda seconds: None)
    calls = []

    @_with_retry(max_retries=2)
    def always_down():
        calls.append(1)
        raise psycopg2.InterfaceError("connection already closed")

    @_with_retry(max_retries=5)
    def bad_sql():
        calls.append(1)
        raise psycopg2.ProgrammingError("syntax error")

    with pytest.raises(psycopg2.InterfaceError):
        always_down()
    assert len(calls) == 2

    with pytest.raises(psycopg2.ProgrammingError):
        bad_sql()
    assert len(calls) == 3


def test_postgres_gateway_requires_dsn(monkeypatch):
    monkeypatch.setattr(postgres_tools, "server_config", ServerConfig(database_url=""))

    with pytest.raises(RuntimeError):
        PostgresGateway()
    assert PostgresGateway("postgresql://localhost/engine").dsn == "postgresql://localhost/engine"


def test_list_scheduled_jobs_skips_paused_and_unscheduled():
    gateway = InMemoryGateway(
        [
            make_job("cron", schedule="*/15 * * * *"),
            make_job("paused", schedule="0 * * * *", status="PAUSED"),
            make_job("once"),
        ]
    )

    jobs = asyncio.run(gateway.list_scheduled_jobs())

    assert [j.id for j in jobs] == ["cron"]
