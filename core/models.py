"""Data model for the Job Execution Engine.

Job configuration is expressed as pydantic models so that it is validated
once, when a job is submitted, rather than when a worker first touches it.
Runtime bookkeeping (queue entries, executions, extracted records) uses plain
dataclasses.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from config.settings import browser_config

__all__ = [
    "utcnow",
    "JobStatus",
    "ExecutionStatus",
    "ValueKind",
    "LOAD_STATES",
    "SelectorConfig",
    "PaginationConfig",
    "Viewport",
    "ScrapingConfig",
    "Job",
    "QueueEntry",
    "ExecutionOutcome",
    "Execution",
    "ExtractedRecord",
    "RunResult",
]

# wait_for values that name a load state rather than a locator
LOAD_STATES = frozenset(
    {"load", "domcontentloaded", "networkidle", "networkidle0", "networkidle2", "commit"}
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    PAUSED = "PAUSED"
    CANCELLED = "CANCELLED"


class ExecutionStatus(str, Enum):
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class ValueKind(str, Enum):
    """How a matched element is turned into a field value."""

    TEXT = "text"
    HTML = "html"
    ATTRIBUTE = "attribute"
    LINK = "link"
    IMAGE = "image"
    NUMBER = "number"
    DATE = "date"
    EMAIL = "email"
    PHONE = "phone"


# ---------------------------------------------------------------------------
# Typed job configuration
# ---------------------------------------------------------------------------


class _ConfigModel(BaseModel):
    """Accepts both snake_case and the camelCase keys used by the web client."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )


class SelectorConfig(_ConfigModel):
    """One field to capture from every page.

    Attributes:
        name: Key of the field in the extracted record.
        selector: CSS (or Playwright) locator expression.
        type: Conversion applied to each matched element.
        attribute: Attribute to read; required when ``type`` is ``attribute``.
        required: Absence aborts the page and fails the run.
        multiple: Keep every match as an ordered list instead of the first.
    """

    name: str = Field(..., min_length=1)
    selector: str = Field(..., min_length=1)
    type: ValueKind = ValueKind.TEXT
    attribute: Optional[str] = None
    required: bool = False
    multiple: bool = False

    @model_validator(mode="after")
    def _attribute_needs_name(self) -> "SelectorConfig":
        if self.type is ValueKind.ATTRIBUTE and not self.attribute:
            raise ValueError(
                f"selector {self.name!r} has type 'attribute' but no attribute name"
            )
        return self


class PaginationConfig(_ConfigModel):
    """How to advance from one result page to the next.

    Attributes:
        next_button_selector: Button clicked to advance; skipped while disabled.
        next_page_selector: Link clicked when no usable button is present.
        max_pages: Hard cap on pages visited, including the first.
        settle_delay_ms: Pause after each successful transition; defaults to
            ``PAGE_SETTLE_DELAY_MS``.
    """

    next_button_selector: Optional[str] = None
    next_page_selector: Optional[str] = None
    max_pages: int = Field(default=1, ge=1)
    settle_delay_ms: int = Field(default_factory=lambda: browser_config.settle_delay_ms, ge=0)


class Viewport(_ConfigModel):
    width: int = Field(default=1920, ge=320)
    height: int = Field(default=1080, ge=240)


class ScrapingConfig(_ConfigModel):
    """Per-job extraction configuration.

    Attributes:
        selectors: Fields to capture on every page.
        pagination: Optional pagination rule; absent means a single page.
        wait_for: Locator to wait for after load. Load-state keywords such as
            ``networkidle2`` are accepted and ignored.
        timeout: Navigation timeout in milliseconds; defaults to
            ``NAVIGATION_TIMEOUT_MS``.
        user_agent: Overrides the profile's desktop user agent.
        headers: Extra request headers merged over the realistic defaults.
        cookies: Name/value pairs scoped to the target host.
        viewport: Base viewport; a small random jitter is added per session.
        screenshot: Capture a full-page screenshot per page.
        delay: Extra pause between pages in milliseconds.
        proxy_pool: Name of the proxy pool sessions draw from.
    """

    selectors: List[SelectorConfig] = Field(default_factory=list)
    pagination: Optional[PaginationConfig] = None
    wait_for: Optional[str] = None
    timeout: int = Field(default_factory=lambda: browser_config.navigation_timeout_ms, gt=0)
    user_agent: Optional[str] = None
    headers: Dict[str, str] = Field(default_factory=dict)
    cookies: Dict[str, str] = Field(default_factory=dict)
    viewport: Viewport = Field(default_factory=Viewport)
    screenshot: bool = False
    delay: int = Field(default=0, ge=0)
    proxy_pool: str = "default"

    @field_validator("selectors")
    @classmethod
    def _unique_names(cls, v: List[SelectorConfig]) -> List[SelectorConfig]:
        seen: set[str] = set()
        for sel in v:
            if sel.name in seen:
                raise ValueError(f"duplicate selector name {sel.name!r}")
            seen.add(sel.name)
        return v

    @property
    def max_pages(self) -> int:
        return self.pagination.max_pages if self.pagination else 1

    @property
    def waits_for_locator(self) -> bool:
        return bool(self.wait_for) and self.wait_for not in LOAD_STATES


class Job(BaseModel):
    """A user-defined extraction job as handed over by the persistence layer."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    user_id: str
    name: str = ""
    url: str
    description: str = ""
    config: ScrapingConfig = Field(default_factory=ScrapingConfig)
    status: JobStatus = JobStatus.PENDING
    schedule: Optional[str] = None
    next_run_at: Optional[datetime] = None
    last_run_at: Optional[datetime] = None

    @field_validator("url")
    @classmethod
    def _http_url(cls, v: str) -> str:
        v = v.strip()
        if not v.startswith(("http://", "https://")):
            raise ValueError("url must be a valid HTTP/HTTPS URL")
        return v


# ---------------------------------------------------------------------------
# Runtime records
# ---------------------------------------------------------------------------


@dataclass
class QueueEntry:
    """Schedulable wrapper around a job awaiting execution."""

    job_id: str
    user_id: str
    priority: int = 0
    not_before: datetime = field(default_factory=utcnow)
    retries: int = 0
    max_retries: int = 3
    enqueued_at: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=lambda: f"entry-{uuid.uuid4().hex[:12]}")

    def is_eligible(self, now: datetime) -> bool:
        return self.not_before <= now

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["not_before"] = self.not_before.isoformat()
        data["enqueued_at"] = self.enqueued_at.isoformat()
        return data


@dataclass
class ExecutionOutcome:
    """Everything written when an execution is finalized."""

    status: ExecutionStatus
    completed_at: datetime
    duration_ms: int
    pages_scraped: int = 0
    data_points: int = 0
    error: Optional[str] = None
    artifact_log: Optional[Dict[str, Any]] = None


@dataclass
class Execution:
    """One run attempt of a job."""

    id: str
    job_id: str
    status: ExecutionStatus = ExecutionStatus.RUNNING
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    pages_scraped: int = 0
    data_points: int = 0
    error: Optional[str] = None
    artifact_log: Optional[Dict[str, Any]] = None

    @property
    def finalized(self) -> bool:
        return self.completed_at is not None


@dataclass
class ExtractedRecord:
    """One structured record plus where and when it was captured."""

    data: Dict[str, Any]
    source_url: str
    page_index: int = 1
    source: str = "dom"
    captured_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "data": self.data,
            "source_url": self.source_url,
            "page_index": self.page_index,
            "source": self.source,
            "captured_at": self.captured_at.isoformat(),
        }


@dataclass
class RunResult:
    """Outcome of the extraction part of one run."""

    records: List[ExtractedRecord] = field(default_factory=list)
    pages_scraped: int = 0
    screenshots: List[str] = field(default_factory=list)
    source: str = "dom"

    @property
    def data_points(self) -> int:
        return len(self.records)
