"""
scrapers/extraction.py

SELECTOR EXTRACTION + PAGINATION
================================

Turns a live Playwright page plus a job's typed selectors into one combined
record per page, and walks pagination controls until the page cap is hit or
no control advances.

Selector semantics:
- zero matches on a ``required`` selector raises RequiredSelectorMissingError
  (fails the run); zero matches on an optional selector omits the field
- each match is converted according to its ValueKind; empty results are
  dropped
- ``multiple`` keeps every value in document order, otherwise the first

The value converters are plain functions so they can be exercised without a
browser.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import re
from datetime import timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union
from urllib.parse import urljoin

from dateutil import parser as date_parser
from playwright.async_api import ElementHandle, Page
from playwright.async_api import Error as PlaywrightError

from core.errors import RequiredSelectorMissingError
from core.models import (
    ExtractedRecord,
    PaginationConfig,
    RunResult,
    ScrapingConfig,
    SelectorConfig,
    ValueKind,
)

LOG = logging.getLogger(__name__)

__all__ = [
    "ExtractionEngine",
    "convert_number",
    "convert_date",
    "extract_email",
    "extract_phone",
]

EMAIL_RE = re.compile(r"([a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,})")
PHONE_RE = re.compile(r"(\+?1?[-.\s]?)?\(?([0-9]{3})\)?[-.\s]?([0-9]{3})[-.\s]?([0-9]{4})")
LAZY_IMAGE_ATTRS = ("data-src", "data-lazy-src", "data-original")

ProgressCallback = Callable[[int, int, int], Awaitable[None]]


# =================================================================================
# VALUE CONVERTERS
# =================================================================================


def convert_number(text: str) -> Union[int, float, str]:
    """Strip everything but digits, '.' and '-', then parse; '' if unparsable."""
    cleaned = re.sub(r"[^0-9.\-]", "", text or "")
    try:
        value = float(cleaned)
    except ValueError:
        return ""
    return int(value) if value.is_integer() else value


def convert_date(text: str) -> str:
    """ISO-8601 timestamp (UTC when no zone is given), or the raw text."""
    text = (text or "").strip()
    if not text:
        return ""
    try:
        dt = date_parser.parse(text)
    except (ValueError, OverflowError):
        return text
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


def extract_email(text: str, href: Optional[str] = None) -> str:
    for candidate in (text, href):
        match = EMAIL_RE.search(candidate or "")
        if match:
            return match.group(1)
    return ""


def extract_phone(text: str, href: Optional[str] = None) -> str:
    for candidate in (text, href):
        match = PHONE_RE.search(candidate or "")
        if match:
            return match.group(0).strip()
    return ""


# =================================================================================
# ENGINE
# =================================================================================


class ExtractionEngine:
    """Selector evaluation and pagination over a single page handle."""

    def __init__(self, screenshot_full_page: bool = True) -> None:
        self.screenshot_full_page = screenshot_full_page

    async def extract_page(self, page: Page, selectors: List[SelectorConfig]) -> Dict[str, Any]:
        """Build the combined record for the page currently loaded."""
        record: Dict[str, Any] = {}
        base_url = page.url

        for selector in selectors:
            elements = await page.query_selector_all(selector.selector)
            values: List[Any] = []
            for element in elements:
                try:
                    value = await self._convert(element, selector, base_url)
                except PlaywrightError as e:
                    LOG.warning(
                        "Error extracting value for %s (%s): %s",
                        selector.name,
                        selector.selector,
                        e,
                    )
                    continue
                if value is None or value == "":
                    continue
                values.append(value)
                if not selector.multiple:
                    break

            if not values:
                if selector.required:
                    raise RequiredSelectorMissingError(selector.name, selector.selector)
                LOG.debug("Optional selector %s matched nothing", selector.name)
                continue

            record[selector.name] = values if selector.multiple else values[0]

        return record

    async def _convert(self, element: ElementHandle, selector: SelectorConfig, base_url: str) -> Any:
        kind = selector.type

        if kind is ValueKind.HTML:
            return await element.inner_html()
        if kind is ValueKind.ATTRIBUTE:
            return await element.get_attribute(selector.attribute or "") or ""
        if kind is ValueKind.LINK:
            href = await element.get_attribute("href")
            return urljoin(base_url, href) if href else ""
        if kind is ValueKind.IMAGE:
            src = await element.get_attribute("src")
            if not src:
                for attr in LAZY_IMAGE_ATTRS:
                    src = await element.get_attribute(attr)
                    if src:
                        break
            return urljoin(base_url, src) if src else ""

        text = ((await element.text_content()) or "").strip()
        if kind is ValueKind.NUMBER:
            return convert_number(text)
        if kind is ValueKind.DATE:
            return convert_date(text)
        if kind is ValueKind.EMAIL:
            return extract_email(text, await element.get_attribute("href"))
        if kind is ValueKind.PHONE:
            return extract_phone(text, await element.get_attribute("href"))
        return text

    # ------------------------------------------------------------------ #
    # PAGINATION
    # ------------------------------------------------------------------ #

    async def next_page(self, page: Page, pagination: Optional[PaginationConfig]) -> bool:
        """Advance one page. Returns False when no usable control was found."""
        if pagination is None:
            return False
        try:
            if pagination.next_button_selector:
                button = await page.query_selector(pagination.next_button_selector)
                if button is not None and not await self._is_disabled(button):
                    await button.click()
                    await asyncio.sleep(pagination.settle_delay_ms / 1000)
                    return True

            if pagination.next_page_selector:
                link = await page.query_selector(pagination.next_page_selector)
                if link is not None:
                    await link.click()
                    await asyncio.sleep(pagination.settle_delay_ms / 1000)
                    return True
        except PlaywrightError as e:
            LOG.error("Error navigating to next page: %s", e)
        return False

    @staticmethod
    async def _is_disabled(element: ElementHandle) -> bool:
        if await element.get_attribute("aria-disabled") == "true":
            return True
        return await element.is_disabled()

    async def paginate(
        self,
        page: Page,
        config: ScrapingConfig,
        on_page: Optional[ProgressCallback] = None,
    ) -> RunResult:
        """Extract every page up to ``config.max_pages``."""
        result = RunResult(source="dom")
        max_pages = config.max_pages
        current_page = 1

        while current_page <= max_pages:
            LOG.info("Scraping page %d of %d", current_page, max_pages)

            if config.screenshot:
                result.screenshots.append(await self.screenshot(page))

            data = await self.extract_page(page, config.selectors)
            result.records.append(
                ExtractedRecord(data=data, source_url=page.url, page_index=current_page)
            )
            result.pages_scraped += 1

            if on_page is not None:
                await on_page(current_page, max_pages, result.data_points)

            if current_page >= max_pages:
                break
            if not await self.next_page(page, config.pagination):
                LOG.info("No more pages found, stopping pagination")
                break

            current_page += 1
            if config.delay:
                await asyncio.sleep(config.delay / 1000)

        return result

    async def screenshot(self, page: Page) -> str:
        raw = await page.screenshot(full_page=self.screenshot_full_page)
        return base64.b64encode(raw).decode("ascii")
