"""
scrapers/structured_api.py

STRUCTURED-API FALLBACK
=======================

Some jobs are better served by a public JSON API than by driving a browser.
Before a run touches the Session Driver, the job is classified:

    StructuredFeed  -> reddit.com URL; fetched from the ``.json`` listing
    SearchIntent    -> free-text description mentions job-search terms;
                       fanned out to the job-board providers below
    GenericPage     -> everything else; DOM scraping

Providers:
  - Remotive        (public, no key)
  - Adzuna          (skipped unless ADZUNA_APP_ID / ADZUNA_APP_KEY are set)
  - The Muse        (public, no key)

Provider failures are absorbed one by one (logged as
ProviderPartialFailureError). ``try_run`` tries the reddit feed, then the
job-search APIs when the description asks for jobs; a path that raises
before producing data moves on to the next, and ``None`` sends the caller
to DOM scraping.
"""

from __future__ import annotations

import asyncio
import logging
import random
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple, Union
from urllib.parse import urlparse

import httpx

from config.settings import ProviderConfig, provider_config
from core.errors import ProviderPartialFailureError
from core.models import ExtractedRecord, Job, RunResult
from Utils.text_cleaning import clean_description

LOG = logging.getLogger(__name__)

__all__ = [
    "StructuredFeed",
    "SearchIntent",
    "GenericPage",
    "classify",
    "is_reddit_url",
    "is_job_query",
    "parse_job_query",
    "reddit_json_url",
    "BaseJobProvider",
    "RemotiveProvider",
    "AdzunaProvider",
    "TheMuseProvider",
    "StructuredApiFallback",
    "JOB_KEYWORDS",
]

JOB_KEYWORDS = (
    "job", "jobs", "career", "position", "hiring", "employment",
    "developer", "engineer", "manager", "analyst", "designer",
    "remote", "work from home", "salary", "full-time", "part-time",
    "internship", "contractor", "freelance",
)

REDDIT_HOSTS = frozenset({"reddit.com", "www.reddit.com", "old.reddit.com"})
REDDIT_USER_AGENT = "Mozilla/5.0 (compatible; WebScraperPro/1.0)"

_LOCATION_PATTERNS = (
    re.compile(r"\bin\s+([a-z][a-z\s]*)", re.IGNORECASE),
    re.compile(r"\bat\s+([a-z][a-z\s]*)", re.IGNORECASE),
    re.compile(r"\blocation[:\s]+([a-z][a-z\s]*)", re.IGNORECASE),
)
_QUERY_NOISE = (
    re.compile(r"\b(extract|get|find|search|scrape|list)\b", re.IGNORECASE),
    re.compile(r"\b(jobs|job|positions|position)\b", re.IGNORECASE),
    re.compile(r"\b(with|and|or|the)\b", re.IGNORECASE),
)


# ================================================================================
# CLASSIFICATION
# ================================================================================


@dataclass(frozen=True)
class StructuredFeed:
    url: str


@dataclass(frozen=True)
class SearchIntent:
    query: str
    location: str


@dataclass(frozen=True)
class GenericPage:
    url: str


JobKind = Union[StructuredFeed, SearchIntent, GenericPage]


def is_reddit_url(url: str) -> bool:
    host = (urlparse(url).hostname or "").lower()
    return host in REDDIT_HOSTS


def is_job_query(description: str) -> bool:
    lowered = (description or "").lower()
    return any(keyword in lowered for keyword in JOB_KEYWORDS)


def parse_job_query(description: str) -> Tuple[str, str]:
    """
    Split a free-text request into ``(query, location)``.

    "Find python developer jobs in new york" -> ("python developer", "new york")
    Location defaults to "remote", the query to "developer".
    """
    text = description or ""
    location = "remote"
    for pattern in _LOCATION_PATTERNS:
        match = pattern.search(text)
        if match and match.group(1).strip():
            location = match.group(1).strip()
            text = text[: match.start()] + text[match.end():]
            break

    query = text
    for pattern in _QUERY_NOISE:
        query = pattern.sub(" ", query)
    query = re.sub(r"\s+", " ", query).strip()
    return query or "developer", location


def classify(job: Job) -> JobKind:
    if is_reddit_url(job.url):
        return StructuredFeed(url=job.url)
    if job.description and is_job_query(job.description):
        query, location = parse_job_query(job.description)
        return SearchIntent(query=query, location=location)
    return GenericPage(url=job.url)


def reddit_json_url(url: str) -> str:
    """Rewrite any reddit listing URL to its ``www.reddit.com/....json`` form."""
    parsed = urlparse(url)
    path = parsed.path.rstrip("/") or ""
    if not path.endswith(".json"):
        path = f"{path}.json"
    return f"https://www.reddit.com{path}"


# ================================================================================
# PROVIDERS
# ================================================================================


class BaseJobProvider:
    """One job-board API. Subclasses map the provider payload to flat dicts."""

    name: str = "base_provider"

    def __init__(self, config: ProviderConfig = provider_config) -> None:
        self.config = config

    @property
    def enabled(self) -> bool:
        return True

    async def search(self, client: httpx.AsyncClient, query: str, location: str) -> List[Dict[str, Any]]:
        raise NotImplementedError


class RemotiveProvider(BaseJobProvider):
    """Remotive public API."""

    name = "Remotive"
    endpoint = "https://remotive.com/api/remote-jobs"

    async def search(self, client: httpx.AsyncClient, query: str, location: str) -> List[Dict[str, Any]]:
        limit = self.config.results_per_provider
        response = await client.get(self.endpoint, params={"search": query, "limit": limit})
        response.raise_for_status()
        jobs = response.json().get("jobs") or []
        return [
            {
                "title": j.get("title", ""),
                "company": j.get("company_name", ""),
                "location": "Remote",
                "salary": j.get("salary") or "Not specified",
                "type": j.get("job_type") or "Full-time",
                "description": clean_description(j.get("description") or ""),
                "url": j.get("url", ""),
                "source": self.name,
                "posted_date": j.get("publication_date"),
            }
            for j in jobs[:limit]
        ]


class AdzunaProvider(BaseJobProvider):
    """Adzuna search API (requires an application id and key)."""

    name = "Adzuna"
    endpoint = "https://api.adzuna.com/v1/api/jobs/us/search/1"

    @property
    def enabled(self) -> bool:
        return bool(self.config.adzuna_app_id and self.config.adzuna_app_key)

    async def search(self, client: httpx.AsyncClient, query: str, location: str) -> List[Dict[str, Any]]:
        params = {
            "app_id": self.config.adzuna_app_id,
            "app_key": self.config.adzuna_app_key,
            "what": query,
            "where": location,
            "results_per_page": self.config.results_per_provider,
        }
        response = await client.get(self.endpoint, params=params)
        response.raise_for_status()
        results: List[Dict[str, Any]] = []
        for j in response.json().get("results") or []:
            salary_min = j.get("salary_min")
            results.append(
                {
                    "title": j.get("title", ""),
                    "company": (j.get("company") or {}).get("display_name", ""),
                    "location": (j.get("location") or {}).get("display_name", location),
                    "salary": f"${salary_min} - ${j.get('salary_max')}" if salary_min else "Not specified",
                    "type": j.get("contract_time") or "Full-time",
                    "description": clean_description(j.get("description") or ""),
                    "url": j.get("redirect_url", ""),
                    "source": self.name,
                    "posted_date": j.get("created"),
                }
            )
        return results


class TheMuseProvider(BaseJobProvider):
    """The Muse public jobs API."""

    name = "The Muse"
    endpoint = "https://www.themuse.com/api/public/jobs"

    async def search(self, client: httpx.AsyncClient, query: str, location: str) -> List[Dict[str, Any]]:
        params = {"keyword": query, "location": location, "page": 0, "descending": "true"}
        response = await client.get(self.endpoint, params=params)
        response.raise_for_status()
        jobs = response.json().get("results") or []
        results: List[Dict[str, Any]] = []
        for j in jobs[: self.config.results_per_provider]:
            locations = j.get("locations") or []
            results.append(
                {
                    "title": j.get("name", ""),
                    "company": (j.get("company") or {}).get("name") or "Unknown",
                    "location": locations[0].get("name", location) if locations else location,
                    "salary": "Not specified",
                    "type": j.get("type") or "Full-time",
                    "description": clean_description(j.get("contents") or ""),
                    "url": f"https://www.themuse.com/jobs/{j.get('id')}",
                    "source": self.name,
                    "posted_date": j.get("publication_date"),
                }
            )
        return results


# ================================================================================
# FALLBACK
# ================================================================================


ClientFactory = Callable[[], httpx.AsyncClient]


class StructuredApiFallback:
    """Classifies a job and, where possible, serves it from a JSON API."""

    def __init__(
        self,
        config: ProviderConfig = provider_config,
        providers: Optional[List[BaseJobProvider]] = None,
        client_factory: Optional[ClientFactory] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.config = config
        self.providers = providers if providers is not None else [
            RemotiveProvider(config),
            AdzunaProvider(config),
            TheMuseProvider(config),
        ]
        self._client_factory = client_factory or self._default_client
        self._rng = rng or random.Random()

    def _default_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.config.timeout, follow_redirects=True)

    async def fetch_reddit_feed(self, url: str) -> List[Dict[str, Any]]:
        """Posts of a subreddit/listing URL. HTTP errors propagate."""
        api_url = reddit_json_url(url)
        async with self._client_factory() as client:
            response = await client.get(
                api_url,
                params={"limit": self.config.reddit_limit},
                headers={"User-Agent": REDDIT_USER_AGENT},
            )
            response.raise_for_status()
            payload = response.json()

        # post pages return [post listing, comment listing]
        if isinstance(payload, list):
            payload = next((p for p in payload if isinstance(p, dict)), {})
        posts = ((payload or {}).get("data") or {}).get("children") or []
        records: List[Dict[str, Any]] = []
        for post in posts:
            data = post.get("data") or {}
            created = data.get("created_utc")
            records.append(
                {
                    "title": data.get("title"),
                    "author": data.get("author"),
                    "subreddit": data.get("subreddit"),
                    "upvotes": data.get("ups"),
                    "comments": data.get("num_comments"),
                    "url": f"https://reddit.com{data.get('permalink', '')}",
                    "external_url": data.get("url"),
                    "selftext": (data.get("selftext") or "")[:300],
                    "created": (
                        datetime.fromtimestamp(created, tz=timezone.utc).isoformat()
                        if created is not None
                        else None
                    ),
                    "source": "Reddit JSON API",
                }
            )
        LOG.info("Reddit feed %s returned %d posts", api_url, len(records))
        return records

    async def search_jobs(self, query: str, location: str = "remote") -> List[Dict[str, Any]]:
        """Fan out to every enabled provider; a failing provider contributes nothing."""
        active = [p for p in self.providers if p.enabled]
        for provider in self.providers:
            if not provider.enabled:
                LOG.info("%s: no credentials, skipping", provider.name)
        if not active:
            return []

        async with self._client_factory() as client:
            batches = await asyncio.gather(
                *[p.search(client, query, location) for p in active],
                return_exceptions=True,
            )

        results: List[Dict[str, Any]] = []
        for provider, batch in zip(active, batches):
            if isinstance(batch, BaseException):
                LOG.warning("%s", ProviderPartialFailureError(provider.name, batch))
                continue
            LOG.info("%s returned %d jobs", provider.name, len(batch))
            results.extend(batch)

        self._rng.shuffle(results)
        LOG.info("Found %d jobs from APIs for %r in %r", len(results), query, location)
        return results

    async def try_run(self, job: Job) -> Optional[RunResult]:
        """
        A finished RunResult, or None when DOM scraping should handle the job.

        Paths are tried in order: reddit JSON feed, then job-search APIs. A path
        that raises is logged and the next one is tried.
        """
        kind = classify(job)
        if isinstance(kind, GenericPage):
            return None

        if isinstance(kind, StructuredFeed):
            LOG.info("Job %s: reddit URL, using JSON feed", job.id)
            try:
                rows = await self.fetch_reddit_feed(kind.url)
            except Exception as e:
                LOG.warning("Reddit feed failed for job %s: %s", job.id, e)
            else:
                return self._to_result(job, rows, "reddit-json")

        if job.description and is_job_query(job.description):
            query, location = parse_job_query(job.description)
            LOG.info(
                "Job %s: job-search intent (query=%r, location=%r), using job APIs",
                job.id,
                query,
                location,
            )
            try:
                rows = await self.search_jobs(query, location)
            except Exception as e:
                LOG.warning("Job APIs failed for job %s: %s", job.id, e)
            else:
                return self._to_result(job, rows, "job-apis")

        LOG.info("Job %s: structured paths exhausted, falling back to DOM", job.id)
        return None

    @staticmethod
    def _to_result(job: Job, rows: List[Dict[str, Any]], source: str) -> RunResult:
        records = [
            ExtractedRecord(
                data=row,
                source_url=row.get("url") or job.url,
                page_index=1,
                source=str(row.get("source") or source),
            )
            for row in rows
        ]
        return RunResult(records=records, pages_scraped=1, source=source)
