"""Job Execution Engine - single CLI entry point.

Modes:
    --mode serve   start the HTTP/WebSocket server (default)
    --mode run     run the jobs of a YAML file through the queue and exit
    --health-check launch the browser, probe proxies and the database, exit

Job files look like::

    jobs:
      - id: hn-front
        userId: local
        url: https://news.ycombinator.com
        priority: 5
        schedule: "*/30 * * * *"      # serve mode only
        config:
          selectors:
            - {name: titles, selector: ".titleline > a", multiple: true}
          pagination: {nextPageSelector: "a.morelink", maxPages: 2}

No engine logic lives here. This module is intentionally thin.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml
from rich.logging import RichHandler

from config.settings import browser_config, proxy_config, server_config

logger: logging.Logger = logging.getLogger("main")

__all__ = ["main", "load_job_file", "setup_logging"]


# ---------------------------------------------------------------------------
# LOGGING
# ---------------------------------------------------------------------------


def setup_logging(level: Optional[str] = None, log_file: Optional[str] = None) -> None:
    """Rich console output plus an append-mode log file."""
    log_file = log_file or server_config.log_file
    Path(log_file).parent.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
    file_handler.setFormatter(
        logging.Formatter(
            "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    logging.basicConfig(
        level=(level or server_config.log_level).upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True), file_handler],
        force=True,
    )


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Job Execution Engine")
    parser.add_argument(
        "--mode",
        choices=["serve", "run"],
        default="serve",
        help="serve: HTTP/WebSocket server; run: execute a job file and exit",
    )
    parser.add_argument("--jobs", type=Path, help="YAML job file (required for --mode run)")
    parser.add_argument("--output", type=Path, help="Write extracted records as JSON (run mode)")
    parser.add_argument(
        "--max-retries",
        type=int,
        default=None,
        help="Override the retry ceiling for jobs queued from the file",
    )
    parser.add_argument(
        "--health-check",
        action="store_true",
        help="Launch the browser, probe proxies and database, then exit",
    )
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    return parser.parse_args(argv)


# ---------------------------------------------------------------------------
# JOB FILES
# ---------------------------------------------------------------------------


def load_job_file(path: Path):
    """Parse a YAML job file into ``[(job, priority)]``.

    Validation errors propagate as pydantic ``ValidationError``.
    """
    from core.models import Job

    raw = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
    items = raw.get("jobs", []) if isinstance(raw, dict) else raw
    loaded: List[Tuple[Job, int]] = []
    for item in items or []:
        item = dict(item)
        priority = int(item.pop("priority", 0))
        item.setdefault("userId", item.pop("user_id", "local"))
        loaded.append((Job.model_validate(item), priority))
    return loaded


# ---------------------------------------------------------------------------
# MODES
# ---------------------------------------------------------------------------


async def run_jobs(path: Path, output: Optional[Path], max_retries: Optional[int]) -> Dict[str, Any]:
    from core.engine import ExecutionEngine
    from core.gateway import InMemoryGateway

    jobs = load_job_file(path)
    gateway = InMemoryGateway([job for job, _ in jobs])
    engine = ExecutionEngine(gateway)

    await engine.start()
    try:
        for job, priority in jobs:
            await engine.submit(job, priority=priority, max_retries=max_retries)
        while engine.list_queued() or engine.worker.active_count:
            await asyncio.sleep(0.5)
    finally:
        await engine.shutdown()

    report: Dict[str, Any] = {"jobs": []}
    for job, _ in jobs:
        executions = gateway.executions_for(job.id)
        report["jobs"].append(
            {
                "job_id": job.id,
                "status": gateway.jobs[job.id].status.value,
                "attempts": len(executions),
                "pages_scraped": sum(e.pages_scraped for e in executions),
                "records": len(gateway.records.get(job.id, [])),
                "last_error": next((e.error for e in reversed(executions) if e.error), None),
            }
        )

    if output is not None:
        payload = {
            job_id: [r.to_dict() for r in records] for job_id, records in gateway.records.items()
        }
        output.write_text(json.dumps(payload, indent=2, default=str), encoding="utf-8")
        logger.info("Records written to %s", output)
    return report


def serve(jobs_path: Optional[Path]) -> None:
    import uvicorn

    from api.api_server import create_app
    from api.websocket_hub import WebSocketHub
    from core.engine import ExecutionEngine
    from core.gateway import InMemoryGateway

    hub = WebSocketHub()
    jobs = load_job_file(jobs_path) if jobs_path else []

    if server_config.database_url:
        from tools.postgres_tools import PostgresGateway

        gateway = PostgresGateway(server_config.database_url)
    else:
        gateway = InMemoryGateway([job for job, _ in jobs])

    async def bootstrap(engine: ExecutionEngine) -> None:
        await engine.restore_schedules()
        restored = engine.scheduler.recurring_jobs()
        for job, _ in jobs:
            if job.schedule and restored.get(job.id) != job.schedule:
                await engine.submit_recurring(job, job.schedule)

    app = create_app(ExecutionEngine(gateway, notifier=hub), hub=hub, bootstrap=bootstrap)
    uvicorn.run(
        app,
        host=server_config.host,
        port=server_config.port,
        log_level=server_config.log_level.lower(),
        workers=1,
    )


async def health_check() -> bool:
    from scrapers.proxy_pool import ProxyPoolManager
    from scrapers.session_driver import SessionDriver

    passed = True
    manager = ProxyPoolManager.from_config(proxy_config)
    for stats in manager.all_pools():
        healthy = await manager.healthy_endpoints(stats["name"])
        logger.info("Proxy pool %s: %d/%d healthy", stats["name"], len(healthy), stats["total_proxies"])

    driver = SessionDriver(manager, browser_config)
    try:
        await driver.initialize()
        logger.info("Browser launch: OK")
    except Exception as exc:
        logger.error("Browser launch failed: %s", exc)
        passed = False
    finally:
        await driver.shutdown()

    if server_config.database_url:
        from tools.postgres_tools import PostgresGateway

        db_ok = await PostgresGateway(server_config.database_url).ping()
        logger.info("Database ping: %s", "OK" if db_ok else "FAILED")
        passed = passed and db_ok
    return passed


# ---------------------------------------------------------------------------
# MAIN
# ---------------------------------------------------------------------------


def main(argv: Optional[List[str]] = None) -> int:
    """Returns ``0`` on success, ``1`` on failure, ``130`` on KeyboardInterrupt."""
    args = parse_args(argv)
    setup_logging(args.log_level)

    if args.health_check:
        ok = asyncio.run(health_check())
        print("HEALTH CHECK PASSED" if ok else "HEALTH CHECK FAILED")
        return 0 if ok else 1

    logger.info("=" * 70)
    logger.info("JOB EXECUTION ENGINE | mode=%s | pid=%d | %s", args.mode, os.getpid(), datetime.now().isoformat())
    logger.info("=" * 70)

    try:
        if args.mode == "run":
            if not args.jobs:
                logger.critical("--mode run requires --jobs")
                return 1
            report = asyncio.run(run_jobs(args.jobs, args.output, args.max_retries))
            print(json.dumps(report, indent=2))
            return 0 if all(j["status"] == "COMPLETED" for j in report["jobs"]) else 1
        serve(args.jobs)
    except KeyboardInterrupt:
        logger.warning("Interrupted by user")
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
