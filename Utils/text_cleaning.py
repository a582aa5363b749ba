"""Text helpers for structured-API payloads.
Called by scrapers/structured_api.py before provider listings become records."""

import html
import logging
import re

logger = logging.getLogger(__name__)

__all__ = ["strip_html", "truncate", "clean_description"]


def strip_html(text: str) -> str:
    """Strip HTML tags, decode entities and collapse whitespace."""
    if not text:
        return ""
    text = re.sub(r'<[^>]+>', ' ', str(text))
    text = html.unescape(text).replace('\xa0', ' ')
    text = re.sub(r'\s+', ' ', text)
    return text.strip()


def truncate(text: str, max_length: int = 200) -> str:
    """Cut ``text`` to ``max_length`` characters, marking the cut with '...'."""
    if not text or len(text) <= max_length:
        return text or ""
    return text[:max_length].rstrip() + '...'


def clean_description(text: str, max_length: int = 500) -> str:
    """Plain-text, length-capped description for a provider listing."""
    cleaned = strip_html(text)
    if not cleaned:
        return "No description"
    return truncate(cleaned, max_length)
