"""Fetch search pages through the rendering provider and retry when blocked."""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Protocol, Sequence, Tuple

import requests
from bs4 import BeautifulSoup

from .models import INTENSITY_FULL, ScrapedListing, ScrapedPage
from .router import (
    MARKTPLAATS,
    build_paginated_url,
    detect_total_pages,
    parse_search_page,
    select_parser_by_hostname,
)

logger = logging.getLogger(__name__)

ZYTE_ENDPOINT = "https://api.zyte.com/v1/extract"
DEFAULT_MAX_RETRIES = 2
DEFAULT_RETRY_DELAYS: Tuple[float, ...] = (1.0, 3.0)
MAX_PROFILE_LEVEL = 3
PROFILE_WAIT_SECONDS = 2.0
# Wait actions are expressed in seconds; anything larger is almost certainly milliseconds.
MAX_WAIT_SECONDS = 60.0

# Marketplaces whose bot protection warrants escalating profiles, with the
# geolocation each one expects.
ESCALATING_MARKETPLACES: Dict[str, str] = {MARKTPLAATS: "NL"}

BLOCKED_KEYWORDS = (
    "captcha",
    "recaptcha",
    "hcaptcha",
    "access denied",
    "blocked",
    "bot detection",
    "unusual traffic",
    "not a robot",
    "security check",
    "verify you are human",
    "cloudflare",
)
SUSPICIOUS_KEYWORDS = ("robot", "access denied", "blocked", "security", "verification")
SUSPICIOUS_PAGE_LENGTH = 50_000
SNIPPET_LENGTH = 800
_WEBSITE_BAN = re.compile(r"/download/website-ban|website ban", re.IGNORECASE)
_SCRIPT_BODY = re.compile(r"<script\b[^>]*>.*?</script>", re.IGNORECASE | re.DOTALL)
_STYLE_BODY = re.compile(r"<style\b[^>]*>.*?</style>", re.IGNORECASE | re.DOTALL)

SCRAPE_SUCCESS = "success"
SCRAPE_BLOCKED = "blocked"
SCRAPE_ZERO_LISTINGS = "zero_listings"
SCRAPE_FAILED = "failed"


class FetchError(Exception):
    """Raised when the provider cannot return a page."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class FetchProfile:
    """Escalating request characteristics sent to the rendering provider."""

    level: int = 1
    geolocation: str | None = None
    javascript: bool = False
    wait_seconds: float | None = None

    def __post_init__(self) -> None:
        if self.wait_seconds is not None and not 0 < self.wait_seconds <= MAX_WAIT_SECONDS:
            raise ValueError(
                f"wait_seconds must be in (0, {MAX_WAIT_SECONDS:g}] seconds, "
                f"got {self.wait_seconds!r}; was a millisecond value passed?"
            )

    def to_request(self, url: str) -> Dict[str, Any]:
        body: Dict[str, Any] = {"url": url, "browserHtml": True}
        if self.geolocation:
            body["geolocation"] = self.geolocation
        if self.javascript:
            body["javascript"] = True
        if self.wait_seconds is not None:
            body["actions"] = [{"action": "waitForTimeout", "timeout": self.wait_seconds}]
        return body


@dataclass(frozen=True)
class FetchResponse:
    html: str | None
    status_code: int | None = None


class HtmlFetcher(Protocol):
    """Provider contract: render ``url`` with ``profile`` and return its HTML."""

    def fetch(self, url: str, profile: FetchProfile) -> FetchResponse:
        ...


class ZyteClient:
    """Thin wrapper around the Zyte extract API."""

    def __init__(
        self,
        api_key: str,
        endpoint: str = ZYTE_ENDPOINT,
        timeout: float = 120.0,
        session: requests.Session | None = None,
    ):
        if not api_key:
            raise ValueError("A Zyte API key is required")
        self.api_key = api_key
        self.endpoint = endpoint
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"Accept": "application/json"})

    def fetch(self, url: str, profile: FetchProfile) -> FetchResponse:
        try:
            response = self.session.post(
                self.endpoint,
                json=profile.to_request(url),
                auth=(self.api_key, ""),
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise FetchError(f"Request to provider failed: {exc}") from exc
        if response.status_code >= 400:
            raise FetchError(
                f"Provider returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise FetchError("Provider returned invalid JSON", response.status_code) from exc
        return FetchResponse(
            html=payload.get("browserHtml") if isinstance(payload, dict) else None,
            status_code=response.status_code,
        )


def build_profile(parser_id: str, level: int) -> FetchProfile:
    """Return the request profile for ``level`` on the given marketplace."""
    geolocation = ESCALATING_MARKETPLACES.get(parser_id)
    if geolocation is None or level <= 1:
        return FetchProfile(level=1)
    if level == 2:
        return FetchProfile(level=2, geolocation=geolocation, javascript=True)
    return FetchProfile(
        level=MAX_PROFILE_LEVEL,
        geolocation=geolocation,
        javascript=True,
        wait_seconds=PROFILE_WAIT_SECONDS,
    )


@dataclass(frozen=True)
class BlockDetection:
    is_blocked: bool
    matched_keyword: str | None = None
    reason: str | None = None


def _visible_text(html: str) -> str:
    soup = BeautifulSoup(html, "html.parser")
    for node in soup(["script", "style", "noscript"]):
        node.decompose()
    return " ".join(soup.get_text(" ").split()).lower()


def detect_blocked_content(html: str, has_listings: bool) -> BlockDetection:
    """Decide whether a page is a bot wall rather than search results."""
    if not html:
        return BlockDetection(is_blocked=False)
    ban = _WEBSITE_BAN.search(html)
    if ban:
        return BlockDetection(
            is_blocked=True,
            matched_keyword=ban.group(0).lower(),
            reason="Provider reported a website ban",
        )
    text = _visible_text(html)
    for keyword in BLOCKED_KEYWORDS:
        if keyword in text:
            return BlockDetection(
                is_blocked=True,
                matched_keyword=keyword,
                reason=f'Blocked keyword "{keyword}" found in page',
            )
    if not has_listings and len(html) < SUSPICIOUS_PAGE_LENGTH:
        for keyword in SUSPICIOUS_KEYWORDS:
            if keyword in text:
                return BlockDetection(
                    is_blocked=True,
                    matched_keyword=keyword,
                    reason=f'Small page without listings mentions "{keyword}"',
                )
    return BlockDetection(is_blocked=False)


def extract_diagnostics(
    html: str | None,
    parser_id: str,
    strategy: str | None = None,
    profile_level: int = 1,
    retry_count: int = 0,
    detection: BlockDetection | None = None,
) -> Dict[str, Any]:
    """Summarize a fetched page for post-mortem debugging of blocked runs."""
    html = html or ""
    snippet = _STYLE_BODY.sub("<style>…</style>", _SCRIPT_BODY.sub("<script>…</script>", html))
    detection = detection or BlockDetection(is_blocked=False)
    return {
        "marketplace": parser_id,
        "html_length": len(html),
        "html_snippet": snippet[:SNIPPET_LENGTH],
        "has_next_data": "__NEXT_DATA__" in html,
        "detected_blocked": detection.is_blocked,
        "matched_keyword": detection.matched_keyword,
        "block_reason": detection.reason,
        "strategy": strategy,
        "profile_level": profile_level,
        "retry_count": retry_count,
    }


@dataclass(frozen=True)
class ScrapeOutcome:
    """Terminal state of fetching and parsing one search URL."""

    status: str
    url: str
    listings: Tuple[ScrapedListing, ...] = ()
    method: str | None = None
    profile_level: int = 1
    retry_count: int = 0
    reason: str | None = None
    diagnostics: Dict[str, Any] = field(default_factory=dict)
    pages: int = 0
    total_pages: int = 1
    page_log: Tuple[ScrapedPage, ...] = ()

    @property
    def ok(self) -> bool:
        return self.status == SCRAPE_SUCCESS


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = DEFAULT_MAX_RETRIES
    delays: Sequence[float] = DEFAULT_RETRY_DELAYS

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def delay_before(self, attempt: int) -> float:
        """Seconds to wait before the zero-based ``attempt``."""
        if attempt <= 0 or not self.delays:
            return 0.0
        return self.delays[min(attempt - 1, len(self.delays) - 1)]


@dataclass
class SearchScraper:
    """Fetch and parse search pages, escalating profiles when blocked."""

    client: HtmlFetcher
    policy: RetryPolicy = field(default_factory=RetryPolicy)
    max_pages: int = 5
    sleep: Callable[[float], None] = time.sleep

    def scrape_page(self, url: str) -> ScrapeOutcome:
        parser_id = select_parser_by_hostname(url)
        escalates = parser_id in ESCALATING_MARKETPLACES
        last_error = "no attempt made"
        last_diagnostics: Dict[str, Any] = {}
        last_profile = 1

        for attempt in range(self.policy.max_attempts):
            final_attempt = attempt == self.policy.max_attempts - 1
            delay = self.policy.delay_before(attempt)
            if delay:
                logger.info("Retrying %s in %.1fs (attempt %d)", url, delay, attempt + 1)
                self.sleep(delay)
            profile = build_profile(parser_id, attempt + 1 if escalates else 1)
            last_profile = profile.level

            try:
                response = self.client.fetch(url, profile)
            except FetchError as exc:
                last_error = str(exc)
                logger.warning("Fetch failed for %s (attempt %d): %s", url, attempt + 1, exc)
                continue
            html = response.html or ""
            if not html:
                last_error = f"Empty page (HTTP {response.status_code})"
                logger.warning("Empty page for %s (attempt %d)", url, attempt + 1)
                continue

            page = parse_search_page(html, url)
            detection = detect_blocked_content(html, bool(page.listings))
            diagnostics = extract_diagnostics(
                html,
                parser_id,
                strategy=page.strategy,
                profile_level=profile.level,
                retry_count=attempt,
                detection=detection,
            )
            last_diagnostics = diagnostics
            can_retry = escalates and not final_attempt

            if detection.is_blocked:
                if can_retry:
                    logger.warning("Blocked on %s at profile %d: %s", url, profile.level, detection.reason)
                    continue
                return ScrapeOutcome(
                    status=SCRAPE_BLOCKED,
                    url=url,
                    profile_level=profile.level,
                    retry_count=attempt,
                    reason=detection.reason,
                    diagnostics=diagnostics,
                )
            if not page.listings:
                if can_retry:
                    logger.warning("No listings on %s at profile %d", url, profile.level)
                    continue
                return ScrapeOutcome(
                    status=SCRAPE_ZERO_LISTINGS,
                    url=url,
                    profile_level=profile.level,
                    retry_count=attempt,
                    reason="No listings extracted",
                    diagnostics=diagnostics,
                )

            logger.info(
                "Extracted %d listings from %s via %s/%s (profile %d, retries %d)",
                len(page.listings),
                url,
                parser_id,
                page.strategy,
                profile.level,
                attempt,
            )
            return ScrapeOutcome(
                status=SCRAPE_SUCCESS,
                url=url,
                listings=page.listings,
                method=f"{parser_id}:{page.strategy}",
                profile_level=profile.level,
                retry_count=attempt,
                diagnostics=diagnostics,
                pages=1,
                total_pages=detect_total_pages(html),
            )

        retry_count = self.policy.max_retries
        if last_diagnostics:
            diagnostics = dict(
                last_diagnostics, profile_level=last_profile, retry_count=retry_count
            )
        else:
            diagnostics = extract_diagnostics(
                None, parser_id, profile_level=last_profile, retry_count=retry_count
            )
        return ScrapeOutcome(
            status=SCRAPE_FAILED,
            url=url,
            profile_level=last_profile,
            retry_count=retry_count,
            reason=f"Fetch failed after {self.policy.max_attempts} attempts: {last_error}",
            diagnostics=diagnostics,
        )

    def search(self, url: str, intensity: str = "fast") -> ScrapeOutcome:
        """Scrape a search, following pagination when ``intensity`` is full.

        Every page that yielded listings is reported in ``page_log`` with how
        many listings it added that earlier pages had not already produced.
        """
        first = self.scrape_page(url)
        if not first.ok:
            return first

        listings: List[ScrapedListing] = []
        seen: set = set()
        for listing in first.listings:
            if listing.listing_url not in seen:
                seen.add(listing.listing_url)
                listings.append(listing)
        page_log = [ScrapedPage(1, url, len(first.listings), len(listings))]
        if intensity != INTENSITY_FULL or self.max_pages <= 1:
            return replace(first, page_log=tuple(page_log))

        last_page = self.max_pages
        if first.total_pages > 1:
            last_page = min(last_page, first.total_pages)
        pages = 1
        for page_number in range(2, last_page + 1):
            page_url = build_paginated_url(url, page_number)
            outcome = self.scrape_page(page_url)
            if not outcome.ok:
                logger.info("Stopping pagination of %s at page %d: %s", url, page_number, outcome.status)
                break
            fresh = [listing for listing in outcome.listings if listing.listing_url not in seen]
            page_log.append(
                ScrapedPage(page_number, page_url, len(outcome.listings), len(fresh))
            )
            if not fresh:
                break
            seen.update(listing.listing_url for listing in fresh)
            listings.extend(fresh)
            pages += 1

        return ScrapeOutcome(
            status=SCRAPE_SUCCESS,
            url=url,
            listings=tuple(listings),
            method=first.method,
            profile_level=first.profile_level,
            retry_count=first.retry_count,
            diagnostics=first.diagnostics,
            pages=pages,
            total_pages=first.total_pages,
            page_log=tuple(page_log),
        )
