"""Notification Channel boundary.

Events are addressed to the owning user and delivered at most once; a
channel that has no live connection for that user simply drops the event.
A channel must never raise into the engine.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Protocol, runtime_checkable

from core.models import utcnow

logger = logging.getLogger(__name__)

__all__ = [
    "JOB_STARTED",
    "SCRAPING_PROGRESS",
    "JOB_COMPLETED",
    "JOB_FAILED",
    "NotificationChannel",
    "build_event",
    "LoggingChannel",
    "RecordingChannel",
    "SentEvent",
]

JOB_STARTED = "job_started"
SCRAPING_PROGRESS = "scraping_progress"
JOB_COMPLETED = "job_completed"
JOB_FAILED = "job_failed"


@runtime_checkable
class NotificationChannel(Protocol):
    async def publish(self, user_id: str, event_type: str, data: Dict[str, Any]) -> None:
        ...


def build_event(event_type: str, data: Dict[str, Any]) -> Dict[str, Any]:
    """Wire shape shared by every channel implementation."""
    return {"type": event_type, "data": data, "timestamp": utcnow().isoformat()}


class LoggingChannel:
    """Writes events to the log only. Used when no client transport exists."""

    async def publish(self, user_id: str, event_type: str, data: Dict[str, Any]) -> None:
        logger.info("event %s -> user=%s %s", event_type, user_id, data)


@dataclass
class SentEvent:
    user_id: str
    type: str
    data: Dict[str, Any]
    sent_at: datetime = field(default_factory=utcnow)


class RecordingChannel:
    """Keeps every published event in memory, in order."""

    def __init__(self) -> None:
        self.events: List[SentEvent] = []

    async def publish(self, user_id: str, event_type: str, data: Dict[str, Any]) -> None:
        self.events.append(SentEvent(user_id=user_id, type=event_type, data=dict(data)))

    def of_type(self, event_type: str) -> List[SentEvent]:
        return [e for e in self.events if e.type == event_type]
