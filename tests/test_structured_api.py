# tests/test_structured_api.py
# Job classification, reddit feed mapping and provider fan-out via MockTransport

import asyncio
import random

import httpx

from config.settings import ProviderConfig
from scrapers.structured_api import (
    AdzunaProvider,
    GenericPage,
    RemotiveProvider,
    SearchIntent,
    StructuredApiFallback,
    StructuredFeed,
    TheMuseProvider,
    classify,
    is_job_query,
    is_reddit_url,
    parse_job_query,
    reddit_json_url,
)

from conftest import make_job

REMOTIVE_PAYLOAD = {
    "jobs": [
        {
            "title": "Python Developer",
            "company_name": "Acme",
            "job_type": "full_time",
            "description": "<p>Build &amp; ship</p>",
            "url": "https://remotive.com/jobs/1",
            "publication_date": "2024-03-01T00:00:00",
        }
    ]
}
MUSE_PAYLOAD = {
    "results": [
        {
            "id": 77,
            "name": "Data Engineer",
            "company": {"name": "Globex"},
            "locations": [{"name": "New York, NY"}],
            "contents": "<b>Pipelines</b>",
            "publication_date": "2024-02-28T00:00:00Z",
        }
    ]
}
REDDIT_PAYLOAD = {
    "data": {
        "children": [
            {
                "data": {
                    "title": "Show HN style post",
                    "author": "someone",
                    "subreddit": "python",
                    "ups": 42,
                    "num_comments": 7,
                    "permalink": "/r/python/comments/abc/post/",
                    "url": "https://example.org/article",
                    "selftext": "x" * 500,
                    "created_utc": 1709251200,
                }
            }
        ]
    }
}


def client_factory(handler):
    return lambda: httpx.AsyncClient(transport=httpx.MockTransport(handler))


def test_reddit_detection_and_json_url():
    assert is_reddit_url("https://www.reddit.com/r/python/")
    assert is_reddit_url("https://old.reddit.com/r/python")
    assert not is_reddit_url("https://notreddit.com/r/python")
    assert reddit_json_url("https://old.reddit.com/r/python/") == "https://www.reddit.com/r/python.json"
    assert reddit_json_url("https://reddit.com/r/python/top.json") == "https://www.reddit.com/r/python/top.json"


def test_job_query_parsing():
    assert is_job_query("Find remote python jobs")
    assert not is_job_query("Collect product prices")
    assert parse_job_query("Find python developer jobs in new york") == ("python developer", "new york")
    assert parse_job_query("get data scientist positions") == ("data scientist", "remote")
    assert parse_job_query("jobs") == ("developer", "remote")


def test_classify():
    assert classify(make_job(url="https://www.reddit.com/r/jobs")) == StructuredFeed("https://www.reddit.com/r/jobs")
    assert classify(make_job(description="Find python jobs in berlin")) == SearchIntent("python", "berlin")
    assert isinstance(classify(make_job(description="Collect product prices")), GenericPage)


def test_reddit_feed_mapping():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["agent"] = request.headers["user-agent"]
        return httpx.Response(200, json=REDDIT_PAYLOAD)

    fallback = StructuredApiFallback(ProviderConfig(), providers=[], client_factory=client_factory(handler))
    result = asyncio.run(fallback.try_run(make_job(url="https://www.reddit.com/r/python/")))

    assert seen["url"] == "https://www.reddit.com/r/python.json?limit=25"
    assert "Mozilla" in seen["agent"]
    assert result.source == "reddit-json"
    assert result.pages_scraped == 1
    (record,) = result.records
    assert record.data["url"] == "https://reddit.com/r/python/comments/abc/post/"
    assert record.data["upvotes"] == 42
    assert len(record.data["selftext"]) == 300
    assert record.data["created"] == "2024-03-01T00:00:00+00:00"
    assert record.source == "Reddit JSON API"


def test_reddit_error_falls_back_to_dom():
    fallback = StructuredApiFallback(
        ProviderConfig(),
        providers=[],
        client_factory=client_factory(lambda request: httpx.Response(429, json={})),
    )

    assert asyncio.run(fallback.try_run(make_job(url="https://www.reddit.com/r/python"))) is None


def test_generic_page_is_not_handled():
    fallback = StructuredApiFallback(ProviderConfig(), providers=[])

    assert asyncio.run(fallback.try_run(make_job(description="Collect product prices"))) is None


def test_search_fans_out_and_survives_provider_failure():
    config = ProviderConfig(adzuna_app_id="", adzuna_app_key="")
    requested = []

    def handler(request):
        requested.append(request.url.host)
        if request.url.host == "remotive.com":
            assert request.url.params["search"] == "python"
            return httpx.Response(200, json=REMOTIVE_PAYLOAD)
        if request.url.host == "www.themuse.com":
            return httpx.Response(200, json=MUSE_PAYLOAD)
        return httpx.Response(500)

    class BrokenProvider(RemotiveProvider):
        name = "Broken"
        endpoint = "https://broken.example.com/api"

    fallback = StructuredApiFallback(
        config,
        providers=[RemotiveProvider(config), AdzunaProvider(config), TheMuseProvider(config), BrokenProvider(config)],
        client_factory=client_factory(handler),
        rng=random.Random(1),
    )

    result = asyncio.run(fallback.try_run(make_job(description="Find python jobs in berlin")))

    assert "api.adzuna.com" not in requested
    assert result.source == "job-apis"
    by_source = {r.source: r.data for r in result.records}
    assert set(by_source) == {"Remotive", "The Muse"}
    assert by_source["Remotive"]["description"] == "Build & ship"
    assert by_source["Remotive"]["location"] == "Remote"
    assert by_source["The Muse"]["url"] == "https://www.themuse.com/jobs/77"
    assert by_source["The Muse"]["location"] == "New York, NY"


def test_adzuna_needs_credentials():
    assert not AdzunaProvider(ProviderConfig(adzuna_app_id="", adzuna_app_key="")).enabled
    assert AdzunaProvider(ProviderConfig(adzuna_app_id="id", adzuna_app_key="key")).enabled


def test_adzuna_mapping():
    config = ProviderConfig(adzuna_app_id="id", adzuna_app_key="key")
    payload = {
        "results": [
            {
                "title": "Backend Engineer",
                "company": {"display_name": "Initech"},
                "location": {"display_name": "Austin, TX"},
                "salary_min": 100000,
                "salary_max": 140000,
                "description": "APIs",
                "redirect_url": "https://adzuna.example/1",
            }
        ]
    }

    def handler(request):
        assert request.url.params["app_id"] == "id"
        assert request.url.params["what"] == "backend"
        return httpx.Response(200, json=payload)

    async def scenario():
        async with client_factory(handler)() as client:
            return await AdzunaProvider(config).search(client, "backend", "austin")

    (row,) = asyncio.run(scenario())

    assert row["company"] == "Initech"
    assert row["salary"] == "$100000 - $140000"
    assert row["source"] == "Adzuna"


POST_PAYLOAD = [
    {"kind": "Listing", "data": {"children": [{"kind": "t3", "data": {"title": "A post", "permalink": "/r/python/comments/abc123/some_post/"}}]}},
    {"kind": "Listing", "data": {"children": []}},
]


def test_reddit_post_page_reads_first_listing():
    fallback = StructuredApiFallback(
        ProviderConfig(),
        providers=[],
        client_factory=client_factory(lambda request: httpx.Response(200, json=POST_PAYLOAD)),
    )

    result = asyncio.run(fallback.try_run(make_job(url="https://www.reddit.com/r/python/comments/abc123/some_post/")))

    (record,) = result.records
    assert record.data["title"] == "A post"
    assert record.data["url"] == "https://reddit.com/r/python/comments/abc123/some_post/"


def test_unexpected_reddit_payload_falls_back_to_dom():
    fallback = StructuredApiFallback(
        ProviderConfig(),
        providers=[],
        client_factory=client_factory(lambda request: httpx.Response(200, json={"data": ["not", "a", "listing"]})),
    )

    assert asyncio.run(fallback.try_run(make_job(url="https://www.reddit.com/r/python/"))) is None


def test_failed_reddit_feed_tries_job_apis_next():
    def handler(request):
        if request.url.host == "www.reddit.com":
            return httpx.Response(503)
        return httpx.Response(200, json=REMOTIVE_PAYLOAD)

    config = ProviderConfig()
    fallback = StructuredApiFallback(config, providers=[RemotiveProvider(config)], client_factory=client_factory(handler))

    result = asyncio.run(
        fallback.try_run(make_job(url="https://www.reddit.com/r/forhire", description="Find python jobs"))
    )

    assert result.source == "job-apis"
    assert [r.source for r in result.records] == ["Remotive"]


def test_search_error_falls_back_to_dom():
    fallback = StructuredApiFallback(ProviderConfig(), providers=[])

    async def boom(query, location="remote"):
        raise KeyError("results")

    fallback.search_jobs = boom

    assert asyncio.run(fallback.try_run(make_job(description="Find python jobs"))) is None
