"""Job posting fetcher.

Turns a job posting URL into readable page text. The orchestrator only
sees ``fetch(url) -> str`` and ``UpstreamFetchFailed``.
"""

import logging
import os
import re
from typing import Optional, Protocol
from urllib.parse import urlparse

import httpx
from bs4 import BeautifulSoup

from tailor.executor.errors import UpstreamFetchFailed

logger = logging.getLogger(__name__)

SCRAPING_TIMEOUT = float(os.environ.get("SCRAPING_TIMEOUT", "10"))  # seconds
MAX_CONTENT_LENGTH = int(os.environ.get("MAX_CONTENT_LENGTH", "50000"))  # characters
MAX_RESPONSE_BYTES = 5 * 1024 * 1024

USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"

# Tried in order; the first with a meaningful amount of text wins
CONTENT_SELECTORS = [
    ".job-description",
    "#job-description",
    "[data-job-description]",
    "main",
    "article",
    ".content",
    "#content",
    "body",
]
MIN_CONTENT_CHARS = 100

_WHITESPACE_RE = re.compile(r"\s+")


def is_url(text: Optional[str]) -> bool:
    """True if the input is an http(s) URL rather than pasted posting text."""
    if not text:
        return False
    candidate = text.strip()
    if not candidate.startswith(("http://", "https://")) or any(c.isspace() for c in candidate):
        return False
    parsed = urlparse(candidate)
    return bool(parsed.netloc) and "." in parsed.netloc


def html_to_text(html: str) -> str:
    """Strip page chrome and return the posting's visible text, whitespace-collapsed."""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "nav", "header", "footer", "noscript"]):
        tag.decompose()

    content = ""
    for selector in CONTENT_SELECTORS:
        element = soup.select_one(selector)
        if element is None:
            continue
        content = element.get_text(" ", strip=True)
        if len(content) > MIN_CONTENT_CHARS:
            break

    if len(content) < MIN_CONTENT_CHARS:
        content = soup.get_text(" ", strip=True)

    return _WHITESPACE_RE.sub(" ", content[:MAX_CONTENT_LENGTH]).strip()


def _read_capped(response: httpx.Response, url: str, limit: int = MAX_RESPONSE_BYTES) -> bytes:
    """Read a streamed body, stopping as soon as it passes ``limit`` bytes."""
    declared = response.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > limit:
        raise UpstreamFetchFailed(f"Response from {url} exceeds {limit} bytes")

    body = bytearray()
    for chunk in response.iter_bytes():
        body.extend(chunk)
        if len(body) > limit:
            raise UpstreamFetchFailed(f"Response from {url} exceeds {limit} bytes")
    return bytes(body)


class LinkResolver(Protocol):
    def fetch(self, url: str) -> str:
        ...


class HttpLinkResolver:
    """Fetches a URL over httpx and reduces the page to text."""

    def __init__(
        self,
        timeout: float = SCRAPING_TIMEOUT,
        transport: Optional[httpx.BaseTransport] = None,
        max_bytes: int = MAX_RESPONSE_BYTES,
    ):
        self.timeout = timeout
        self.max_bytes = max_bytes
        self.transport = transport

    def fetch(self, url: str) -> str:
        if not is_url(url):
            raise UpstreamFetchFailed(f"Not a fetchable URL: {url}")

        try:
            with httpx.Client(
                timeout=self.timeout,
                follow_redirects=True,
                headers={"User-Agent": USER_AGENT},
                transport=self.transport,
            ) as client:
                with client.stream("GET", url) as response:
                    response.raise_for_status()
                    body = _read_capped(response, url, self.max_bytes)
                    content_type = response.headers.get("content-type", "")
                    encoding = response.encoding or "utf-8"
        except httpx.HTTPStatusError as e:
            raise UpstreamFetchFailed(
                f"Failed to fetch URL: {url} returned HTTP {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise UpstreamFetchFailed(f"Failed to fetch URL: {e}") from e

        raw_text = body.decode(encoding, errors="replace")
        if "html" in content_type or not content_type:
            text = html_to_text(raw_text)
        else:
            text = _WHITESPACE_RE.sub(" ", raw_text[:MAX_CONTENT_LENGTH]).strip()

        if not text:
            raise UpstreamFetchFailed(f"No readable content at {url}")

        logger.info(f"Fetched {len(text)} chars from {url}")
        return text
