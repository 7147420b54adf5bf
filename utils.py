#!/usr/bin/env python3
"""
Utility functions for the ingestion service.

This module contains shared helpers used by the fetcher and the pipeline:
the content fingerprint used as a storage-level dedup backstop, HTML cleanup,
reading-time estimation and small formatting helpers.
"""

from hashlib import sha256
from math import ceil
from typing import Optional
import re
from urllib.parse import urljoin

from bs4 import BeautifulSoup
from markdownify import markdownify as md

from config import get_logger

# Module-specific logger
logger = get_logger("utils")

WORDS_PER_MINUTE = 200
SUMMARY_MAX_LENGTH = 500


def compute_content_hash(title: str, body: str, link: str) -> str:
    """Compute the SHA-256 fingerprint of an item's title, body and link.

    Each field is length-prefixed before hashing so that moving characters
    across a field boundary yields a different digest.

    Raises:
        TypeError: if any input is not a string.
    """
    digest = sha256()
    for name, value in (("title", title), ("body", body), ("link", link)):
        if not isinstance(value, str):
            raise TypeError(f"{name} must be str, got {type(value).__name__}")
        encoded = value.encode("utf-8")
        digest.update(f"{len(encoded)}:".encode("ascii"))
        digest.update(encoded)
    return digest.hexdigest()


def validate_url(url: str) -> bool:
    """Validate if a string is a properly formatted http(s) URL."""
    if not url or not isinstance(url, str):
        return False

    url = url.strip()
    if not url:
        return False

    return url.startswith(('http://', 'https://')) and '.' in url


def html_to_text(html_content: Optional[str], max_length: Optional[int] = SUMMARY_MAX_LENGTH) -> str:
    """Strip markup from an HTML fragment and collapse whitespace.

    Pass ``max_length=None`` to keep the full text.
    """
    if not html_content:
        return ""
    text = BeautifulSoup(html_content, 'html.parser').get_text(" ")
    text = re.sub(r"\s+", " ", text).strip()
    if max_length is None:
        return text
    return truncate_string(text, max_length)


def calculate_reading_time(text: Optional[str]) -> int:
    """Estimate reading time in whole minutes (at least one)."""
    words = len(re.findall(r"\w+", text or ""))
    return max(1, ceil(words / WORDS_PER_MINUTE))


def truncate_string(text: str, max_length: int, suffix: str = "...") -> str:
    """Truncate a string to a maximum length, adding a suffix if truncated."""
    if not text or len(text) <= max_length:
        return text

    if len(suffix) >= max_length:
        return text[:max_length]

    return text[:max_length - len(suffix)] + suffix


def clean_html_to_markdown(html_content: str, base_url: Optional[str] = None) -> str:
    """Sanitize HTML content and convert it to Markdown.

    Args:
        html_content: Raw HTML to sanitize
        base_url: Optional base URL used to resolve relative href/src values

    Behavior:
    - Removes dangerous elements (script/style/iframe/etc.)
    - Strips inline event handlers and javascript: URLs
    - Removes common tracking pixels
    - Resolves relative href/src to absolute URLs when ``base_url`` is provided; otherwise
      non-absolute references are neutralized (links -> ``#``, images removed)
    - Converts resulting HTML to Markdown with markdownify
    """
    if not html_content:
        return ""

    soup = BeautifulSoup(html_content, 'html.parser')

    for tag in soup([
        "script", "style", "iframe", "form", "object", "embed", "noscript",
        "frame", "frameset", "applet", "meta", "base", "link"
    ]):
        tag.decompose()

    for tag in soup.find_all(True):
        for attr in list(tag.attrs):
            if attr.lower().startswith('on'):
                del tag[attr]
            elif attr.lower() in ('href', 'src') and str(tag[attr]).lower().startswith('javascript:'):
                del tag[attr]

    for img in soup.find_all('img'):
        src = img.get('src', '')
        if re.search(r'(pixel|tracker|counter|spacer|blank|trans)', src, re.I) or \
           (re.search(r'\.(gif|png)$', src, re.I) and (img.get('height') in ('0', '1'))):
            img.decompose()

    def _rewrite_url(value: str, attr: str) -> Optional[str]:
        if attr == 'href' and value.startswith('mailto:'):
            return value
        if value.startswith(('http://', 'https://')):
            return value
        if base_url:
            resolved = urljoin(base_url, value)
            if resolved.startswith(('http://', 'https://')):
                return resolved
        return None

    for tag in soup.find_all(['a', 'img']):
        for attr in ('href', 'src'):
            if not tag.has_attr(attr):
                continue
            val = str(tag[attr])
            if not val:
                continue
            rewritten = _rewrite_url(val, attr)
            if rewritten:
                tag[attr] = rewritten
            elif attr == 'href':
                tag[attr] = '#'
            else:
                del tag[attr]

    # wrap_width=0 keeps long URLs on one line
    return md(str(soup), heading_style="ATX", wrap_width=0).strip()
