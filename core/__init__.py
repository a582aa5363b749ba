"""
=============================================================================
JOB EXECUTION ENGINE - CORE MODULE INITIALIZATION
=============================================================================
Core module for the Job Execution Engine.

This module exposes:
- Data model and typed job configuration (core.models)
- Error taxonomy (core.errors)
- Persistence Gateway and Notification Channel boundaries
- Scheduler/Queue, Worker Loop and Job Runner
- ExecutionEngine facade (command surface)

Heavy components are imported lazily so that ``core.models`` and
``core.errors`` can be used without pulling in Playwright.
=============================================================================
"""

import logging
from typing import Any, Dict

logger = logging.getLogger(__name__)

# =============================================================================
# VERSION AND METADATA
# =============================================================================

__version__ = "1.0.0"
__description__ = "Concurrency-bounded job execution engine for browser-based extraction"

# =============================================================================
# LAZY FACTORIES
# =============================================================================


def create_engine(gateway: Any = None, **kwargs: Any):
    """Build an ExecutionEngine (lazy import to avoid circular imports).

    Args:
        gateway: Persistence gateway; an empty ``InMemoryGateway`` if omitted.
        **kwargs: Passed through to :class:`core.engine.ExecutionEngine`.
    """
    from .engine import ExecutionEngine
    from .gateway import InMemoryGateway

    engine = ExecutionEngine(gateway or InMemoryGateway(), **kwargs)
    logger.info("Execution engine created (gateway=%s)", type(engine.gateway).__name__)
    return engine


def get_system_info() -> Dict[str, Any]:
    """Core package metadata."""
    return {
        "version": __version__,
        "description": __description__,
        "components": [
            "scheduler",
            "worker_loop",
            "job_runner",
            "session_driver",
            "extraction_engine",
            "structured_api_fallback",
            "proxy_pool_manager",
        ],
    }


__all__ = ["__version__", "create_engine", "get_system_info"]
