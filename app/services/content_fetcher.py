# =============================================================================
# Content Fetcher — Web Page / PDF / Text Extraction
# =============================================================================
#
# Downloads a discovered source and reduces it to clean text for scoring
# (depth) and for the agent's query_documents tool.
#
#   text/html        → BeautifulSoup: drop script/style/nav/footer/header/
#                      aside, take the first main-content container, fall
#                      back to <body> when it holds < 200 chars
#   application/pdf  → not parsed inline; recorded as an available PDF
#                      reference the agent reaches through web search
#   text/plain       → whitespace-normalised pass-through
#   anything else    → treated as HTML
#
# Quality flags (heuristics, not verdicts):
#   is_probably_paywalled  known paywall domain, or paywall phrases in a
#                          short page
#   is_probably_truncated  < 800 chars with no paywall signal
#   is_low_quality         abnormal sentence structure or "enable
#                          javascript" boilerplate
#   requires_web_search    content must be reached another way
#
# DESIGN DECISION: Never raises for malformed URLs or HTTP and network
# failures. Every error becomes a FetchResult with fetchable=False and a
# user-readable message, so one dead link cannot fail a batch.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from urllib.parse import urlparse

import httpx
from bs4 import BeautifulSoup

from app.config import settings

logger = logging.getLogger(__name__)

_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "Cache-Control": "no-cache",
}
_ALLOWED_SCHEMES = {"https", "http"}
_MAX_REDIRECTS = 5

_STRIP_TAGS = ["script", "style", "nav", "footer", "header", "aside", "noscript"]
_STRIP_SELECTORS = ".ad, .advertisement, .sidebar"
_MAIN_SELECTORS = ("main", "article", '[role="main"]', ".content", "#content", ".main")

PAYWALL_INDICATORS = (
    "sign in", "log in", "login", "create account", "register", "create a free account",
    "subscribe", "subscription required", "subscribers only", "subscriber exclusive",
    "become a subscriber", "get unlimited access", "subscribe to continue", "subscribe now",
    "premium content", "premium article", "members only", "member exclusive",
    "this content is available to", "available to premium members", "upgrade to read",
    "paywall", "you have reached your", "article limit", "free articles remaining",
    "unlock this article", "continue reading with", "read more with",
    "complete your purchase", "add payment method", "billing information",
    "start your free trial", "free trial", "trial period",
)
PAYWALL_DOMAINS = (
    "wsj.com", "bloomberg.com", "ft.com", "nytimes.com", "economist.com",
    "barrons.com", "marketwatch.com", "businessinsider.com", "reuters.com",
)
LOW_QUALITY_INDICATORS = (
    "this article requires javascript",
    "please enable javascript",
    "browser not supported",
    "update your browser",
)

_SENTENCE_END_RE = re.compile(r"[.!?]+\s")
_WHITESPACE_RE = re.compile(r"\s+")


@dataclass
class FetchResult:
    url: str
    content: str | None
    content_length: int
    content_type: str  # html | pdf | text | error
    fetchable: bool
    error: str | None = None
    is_probably_paywalled: bool = False
    is_probably_truncated: bool = False
    is_low_quality: bool = False
    requires_web_search: bool = False
    status_code: int | None = None


class ContentTooLargeError(ValueError):
    """The response body exceeded the download cap."""


def clean_text(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", text).strip()


def format_fetch_error(exc: Exception) -> str:
    """Map transport and HTTP failures to messages a reviewer can act on."""
    if isinstance(exc, httpx.TimeoutException):
        return "Request timeout - site took too long to respond"
    if isinstance(exc, httpx.ConnectError):
        return "Could not connect - domain not found or refusing connections"
    if isinstance(exc, httpx.TooManyRedirects):
        return "Too many redirects"
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status == 401:
            return "Authentication required - content behind paywall"
        if status == 403:
            return "Access forbidden - site blocked our request"
        if status == 404:
            return "Page not found - URL may be outdated"
        if status >= 500:
            return "Server error - site is temporarily unavailable"
        return f"HTTP error {status}"
    if isinstance(exc, ContentTooLargeError):
        return str(exc)
    if isinstance(exc, (httpx.InvalidURL, ValueError)):
        return f"Invalid URL - {exc}"
    return str(exc) or type(exc).__name__


class ContentFetcher:
    def __init__(
        self,
        timeout: float | None = None,
        max_download_bytes: int | None = None,
        max_content_length: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.timeout = timeout or settings.fetch_timeout_seconds
        self.max_download_bytes = max_download_bytes or settings.fetch_max_download_bytes
        self.max_content_length = max_content_length or settings.fetch_max_content_length
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout,
            headers=_HEADERS,
            follow_redirects=True,
            max_redirects=_MAX_REDIRECTS,
            transport=self._transport,
        )

    async def fetch_and_parse(self, url: str) -> FetchResult:
        try:
            scheme = urlparse(url).scheme
        except ValueError as exc:
            return self._failed(url, exc)
        if scheme not in _ALLOWED_SCHEMES:
            return FetchResult(
                url=url, content=None, content_length=0, content_type="error",
                fetchable=False, error=f"Unsupported URL scheme '{scheme}'",
            )

        logger.info("Fetching content from %s", url)
        try:
            async with self._client() as client:
                async with client.stream("GET", url) as response:
                    response.raise_for_status()
                    content_type = response.headers.get("content-type", "").lower()
                    body = await self._read_capped(response)
                    encoding = response.encoding or "utf-8"
        except (httpx.HTTPError, httpx.InvalidURL, ValueError) as exc:
            return self._failed(url, exc)

        if "application/pdf" in content_type:
            return self._handle_pdf(url)

        text = body.decode(encoding, errors="replace")
        if "text/plain" in content_type:
            return self._handle_plain_text(url, text)
        return self._handle_html(url, text)

    def _failed(self, url: str, exc: Exception) -> FetchResult:
        message = format_fetch_error(exc)
        status = exc.response.status_code if isinstance(exc, httpx.HTTPStatusError) else None
        logger.warning("Fetch failed for %s: %s", url, message)
        return FetchResult(
            url=url, content=None, content_length=0, content_type="error",
            fetchable=False, error=message, status_code=status,
        )

    async def _read_capped(self, response: httpx.Response) -> bytes:
        chunks: list[bytes] = []
        total = 0
        async for chunk in response.aiter_bytes():
            total += len(chunk)
            if total > self.max_download_bytes:
                raise ContentTooLargeError(
                    f"Response exceeds {self.max_download_bytes // 1_000_000} MB download limit"
                )
            chunks.append(chunk)
        return b"".join(chunks)

    # -- content handlers ----------------------------------------------------

    def _handle_pdf(self, url: str) -> FetchResult:
        message = (
            "[PDF Document Available]\n\n"
            f"This source is a PDF file.\n\nDirect URL: {url}\n\n"
            "Use web search or PDF processing to read its contents."
        )
        return FetchResult(
            url=url, content=message, content_length=len(message), content_type="pdf",
            fetchable=True, requires_web_search=True,
        )

    def _handle_plain_text(self, url: str, text: str) -> FetchResult:
        content = clean_text(text)
        return FetchResult(
            url=url,
            content=content[: self.max_content_length],
            content_length=len(content),
            content_type="text",
            fetchable=True,
        )

    def _handle_html(self, url: str, html: str) -> FetchResult:
        soup = BeautifulSoup(html, "html.parser")
        for tag in soup.find_all(_STRIP_TAGS):
            tag.decompose()
        for tag in soup.select(_STRIP_SELECTORS):
            tag.decompose()

        content = ""
        for selector in _MAIN_SELECTORS:
            element = soup.select_one(selector)
            if element is not None:
                content = element.get_text(" ")
                break
        if len(content.strip()) < 200:
            body = soup.body or soup
            content = body.get_text(" ")

        content = clean_text(content)
        lowered = content.lower()
        url_lower = url.lower()

        has_paywall_indicator = any(ind in lowered for ind in PAYWALL_INDICATORS)
        is_paywall_domain = any(domain in url_lower for domain in PAYWALL_DOMAINS)

        if len(content) < 100:
            message = (
                "[Limited Content Extracted]\n\n"
                "This page may be JavaScript-rendered or block automated access.\n\n"
                f"URL: {url}\n\nExtracted text ({len(content)} chars): {content}"
            )
            return FetchResult(
                url=url, content=message, content_length=len(message), content_type="html",
                fetchable=True, error="Insufficient content - may be JavaScript-rendered",
                is_probably_paywalled=is_paywall_domain, is_probably_truncated=True,
                requires_web_search=True,
            )

        is_paywalled = is_paywall_domain or (has_paywall_indicator and len(content) < 1500)
        is_truncated = len(content) < 800 and not has_paywall_indicator and not is_paywall_domain

        sentence_count = len(_SENTENCE_END_RE.findall(content))
        avg_sentence = len(content) / sentence_count if sentence_count else 0
        normal_structure = 30 < avg_sentence < 300
        is_low_quality = not normal_structure or any(ind in lowered for ind in LOW_QUALITY_INDICATORS)

        logger.info(
            "Extracted %d chars from %s (paywalled=%s, truncated=%s, low_quality=%s)",
            len(content), url, is_paywalled, is_truncated, is_low_quality,
        )
        return FetchResult(
            url=url,
            content=content[: self.max_content_length],
            content_length=len(content),
            content_type="html",
            fetchable=True,
            is_probably_paywalled=is_paywalled,
            is_probably_truncated=is_truncated,
            is_low_quality=is_low_quality,
            requires_web_search=is_paywalled or is_truncated,
        )

    async def batch_fetch(self, urls: list[str], concurrency: int | None = None) -> list[FetchResult]:
        """Fetch many URLs with at most `concurrency` requests in flight."""
        semaphore = asyncio.Semaphore(max(1, concurrency or settings.fetch_concurrency))

        async def _one(url: str) -> FetchResult:
            async with semaphore:
                return await self.fetch_and_parse(url)

        return list(await asyncio.gather(*(_one(u) for u in urls)))
