"""
scrapers/__init__.py

JOB EXECUTION ENGINE - SCRAPERS PACKAGE
=======================================

Purpose:
    Everything that touches a target site: the shared headless browser and
    per-job sessions, selector extraction and pagination, proxy pools, and
    the structured-API shortcut for feeds and job-search requests.

    This package does NOT write to storage and does NOT decide retries.
    Those belong to the job runner and worker loop in ``core``.

Public API:

    from scrapers import SessionDriver, ExtractionEngine, ProxyPoolManager

    manager = ProxyPoolManager.from_config(proxy_config)
    driver = SessionDriver(manager)
    async with driver.open_session(job) as session:
        await driver.navigate(session, job)
        result = await ExtractionEngine().paginate(session.page, job.config)

    from scrapers import StructuredApiFallback
    result = await StructuredApiFallback().try_run(job)   # None -> use DOM
"""

from scrapers.extraction import ExtractionEngine
from scrapers.proxy_pool import ProxyEndpoint, ProxyPoolManager, RotationStrategy
from scrapers.session_driver import FingerprintProfile, SessionDriver, apply_profile
from scrapers.structured_api import StructuredApiFallback, classify

__all__ = [
    # Extraction + pagination over a live page
    "ExtractionEngine",
    # Browser lifecycle
    "SessionDriver",
    "FingerprintProfile",
    "apply_profile",
    # Egress rotation
    "ProxyPoolManager",
    "ProxyEndpoint",
    "RotationStrategy",
    # JSON API shortcut
    "StructuredApiFallback",
    "classify",
]
