# tests/test_extraction.py
# Selector conversion, required fields and pagination controls

import asyncio

import pytest

from core.errors import RequiredSelectorMissingError
from core.models import PaginationConfig, ScrapingConfig, SelectorConfig
from scrapers.extraction import (
    ExtractionEngine,
    convert_date,
    convert_number,
    extract_email,
    extract_phone,
)

from conftest import FakeElement, FakePage, paged_site


def selector(name, css, **kwargs):
    return SelectorConfig(name=name, selector=css, **kwargs)


def extract(page, selectors):
    return asyncio.run(ExtractionEngine().extract_page(page, selectors))


def test_convert_number():
    assert convert_number("$1,299.00") == 1299
    assert convert_number("1-2") == ""
    assert convert_number("-12.25") == -12.25
    assert convert_number("n/a") == ""


def test_convert_date():
    assert convert_date("2024-03-01 10:30") == "2024-03-01T10:30:00+00:00"
    assert convert_date("March 5, 2024") == "2024-03-05T00:00:00+00:00"
    assert convert_date("sometime soon") == "sometime soon"
    assert convert_date("") == ""


def test_extract_email_and_phone():
    assert extract_email("Contact: jobs@example.com today") == "jobs@example.com"
    assert extract_email("Write to us", "mailto:hr@example.org") == "hr@example.org"
    assert extract_email("nothing here") == ""
    assert extract_phone("Call (555) 123-4567 now") == "(555) 123-4567"
    assert extract_phone("no digits") == ""


def test_extract_page_value_kinds():
    page = FakePage(
        snapshots=[
            {
                "h1": [FakeElement(text="  Senior Engineer  ")],
                ".body": [FakeElement(text="x", html="<p>Hello</p>")],
                "a.apply": [FakeElement(text="Apply", attrs={"href": "/apply/42"})],
                "img.logo": [FakeElement(attrs={"data-src": "/img/logo.png"})],
                ".salary": [FakeElement(text="$120,000")],
                ".posted": [FakeElement(text="2024-01-15")],
                ".contact": [FakeElement(text="Email", attrs={"href": "mailto:team@acme.io"})],
                ".phone": [FakeElement(text="+1 555 010 9999")],
                ".tag": [FakeElement(text="python"), FakeElement(text=""), FakeElement(text="remote")],
                "[data-id]": [FakeElement(attrs={"data-id": "job-42"})],
            }
        ],
        url="https://jobs.example.com/listing/42",
    )
    record = extract(
        page,
        [
            selector("title", "h1"),
            selector("body", ".body", type="html"),
            selector("apply", "a.apply", type="link"),
            selector("logo", "img.logo", type="image"),
            selector("salary", ".salary", type="number"),
            selector("posted", ".posted", type="date"),
            selector("email", ".contact", type="email"),
            selector("phone", ".phone", type="phone"),
            selector("tags", ".tag", multiple=True),
            selector("id", "[data-id]", type="attribute", attribute="data-id"),
        ],
    )

    assert record == {
        "title": "Senior Engineer",
        "body": "<p>Hello</p>",
        "apply": "https://jobs.example.com/apply/42",
        "logo": "https://jobs.example.com/img/logo.png",
        "salary": 120000,
        "posted": "2024-01-15T00:00:00+00:00",
        "email": "team@acme.io",
        "phone": "+1 555 010 9999",
        "tags": ["python", "remote"],
        "id": "job-42",
    }


def test_single_value_takes_first_non_empty_match():
    page = FakePage(snapshots=[{".name": [FakeElement(text=""), FakeElement(text="Second")]}])

    assert extract(page, [selector("name", ".name")]) == {"name": "Second"}


def test_optional_selector_omitted_and_required_raises():
    page = FakePage(snapshots=[{"h1": [FakeElement(text="Title")]}])

    assert extract(page, [selector("title", "h1"), selector("price", ".price")]) == {"title": "Title"}
    with pytest.raises(RequiredSelectorMissingError) as excinfo:
        extract(page, [selector("price", ".price", required=True)])
    assert excinfo.value.field_name == "price"


def test_attribute_kind_requires_attribute_name():
    with pytest.raises(ValueError):
        SelectorConfig(name="id", selector="div", type="attribute")


def test_next_page_prefers_enabled_button():
    page = FakePage()
    button = FakeElement(text="Next", on_click=page.advance)
    link = FakeElement(text="more")
    page.snapshots = [{"button.next": [button], "a.more": [link]}, {}]
    pagination = PaginationConfig(next_button_selector="button.next", next_page_selector="a.more", settle_delay_ms=0)

    assert asyncio.run(ExtractionEngine().next_page(page, pagination)) is True
    assert button.clicks == 1
    assert link.clicks == 0


def test_disabled_button_falls_back_to_link():
    page = FakePage()
    button = FakeElement(text="Next", disabled=True)
    aria = FakeElement(text="Next", attrs={"aria-disabled": "true"})
    link = FakeElement(text="more", on_click=page.advance)
    page.snapshots = [{"button.next": [button], "a.more": [link]}, {}]
    pagination = PaginationConfig(next_button_selector="button.next", next_page_selector="a.more", settle_delay_ms=0)

    assert asyncio.run(ExtractionEngine().next_page(page, pagination)) is True
    assert button.clicks == 0
    assert link.clicks == 1

    page.index = 0
    page.snapshots[0]["button.next"] = [aria]
    assert asyncio.run(ExtractionEngine().next_page(page, pagination)) is True
    assert aria.clicks == 0


def test_next_page_without_controls():
    page = FakePage(snapshots=[{}])

    assert asyncio.run(ExtractionEngine().next_page(page, None)) is False
    assert asyncio.run(ExtractionEngine().next_page(page, PaginationConfig(next_page_selector="a.next"))) is False


def test_paginate_respects_page_cap_and_reports_progress():
    page = paged_site([["a"], ["b"], ["c"], ["d"]])
    config = ScrapingConfig(
        selectors=[selector("items", ".item", multiple=True)],
        pagination=PaginationConfig(next_page_selector="a.next", max_pages=3, settle_delay_ms=0),
    )
    progress = []

    async def on_page(current, maximum, data_points):
        progress.append((current, maximum, data_points))

    result = asyncio.run(ExtractionEngine().paginate(page, config, on_page=on_page))

    assert result.pages_scraped == 3
    assert [r.data for r in result.records] == [{"items": ["a"]}, {"items": ["b"]}, {"items": ["c"]}]
    assert progress == [(1, 3, 1), (2, 3, 2), (3, 3, 3)]


def test_paginate_halts_at_missing_control():
    page = paged_site([["a"], ["b"]])
    config = ScrapingConfig(
        selectors=[selector("items", ".item", multiple=True)],
        pagination=PaginationConfig(next_page_selector="a.next", max_pages=10, settle_delay_ms=0),
    )

    result = asyncio.run(ExtractionEngine().paginate(page, config))

    assert result.pages_scraped == 2


def test_paginate_without_pagination_is_single_page():
    page = paged_site([["a"], ["b"]])
    config = ScrapingConfig(selectors=[selector("items", ".item", multiple=True)])

    result = asyncio.run(ExtractionEngine().paginate(page, config))

    assert result.pages_scraped == 1
    assert result.source == "dom"


def test_empty_page_still_yields_a_record():
    page = FakePage(snapshots=[{}])
    config = ScrapingConfig(selectors=[selector("items", ".item", multiple=True)])

    result = asyncio.run(ExtractionEngine().paginate(page, config))

    assert result.records[0].data == {}
    assert result.data_points == 1
