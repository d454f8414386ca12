"""Route marketplace URLs to their parsers and build search page URLs."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from types import ModuleType
from typing import Dict, List, Optional, Tuple
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from bs4 import BeautifulSoup

from .models import ScrapedListing
from .parsers import bilbasen, gaspedaal, generic, leboncoin, marktplaats
from .parsers.shared import normalize_listing_url, run_strategies

logger = logging.getLogger(__name__)

MARKTPLAATS = "MARKTPLAATS"
LEBONCOIN = "LEBONCOIN"
GASPEDAAL = "GASPEDAAL"
BILBASEN = "BILBASEN"
GENERIC = "GENERIC"
PARSER_IDS = (MARKTPLAATS, LEBONCOIN, GASPEDAAL, BILBASEN, GENERIC)

_HOSTS: Dict[str, str] = {
    "marktplaats.nl": MARKTPLAATS,
    "leboncoin.fr": LEBONCOIN,
    "gaspedaal.nl": GASPEDAAL,
    "bilbasen.dk": BILBASEN,
}
_PARSERS: Dict[str, ModuleType] = {
    MARKTPLAATS: marktplaats,
    LEBONCOIN: leboncoin,
    GASPEDAAL: gaspedaal,
    BILBASEN: bilbasen,
    GENERIC: generic,
}
_PAGE_PARAM = re.compile(r"[?&#]page=(\d+)", re.IGNORECASE)
_PAGE_PATH = re.compile(r"/p/(\d+)/?")

__all__ = [
    "PARSER_IDS",
    "ParsedPage",
    "apply_trim",
    "build_paginated_url",
    "core_parse_search_page",
    "detect_total_pages",
    "normalize_listing_url",
    "parse_search_page",
    "select_parser_by_hostname",
]


@dataclass(frozen=True)
class ParsedPage:
    """Listings parsed from one search page and how they were found."""

    parser: str
    strategy: Optional[str]
    listings: Tuple[ScrapedListing, ...]


def select_parser_by_hostname(url: str) -> str:
    """Return the parser identifier for ``url``, falling back to GENERIC."""
    try:
        hostname = (urlsplit(url).hostname or "").lower()
    except ValueError:
        return GENERIC
    if hostname.startswith("www."):
        hostname = hostname[len("www."):]
    return _HOSTS.get(hostname, GENERIC)


def parse_search_page(html: str, url: str) -> ParsedPage:
    parser_id = select_parser_by_hostname(url)
    module = _PARSERS[parser_id]
    listings, strategy = run_strategies(module.STRATEGIES, html, url)
    if not listings:
        logger.debug("Parser %s found no listings on %s", parser_id, url)
    return ParsedPage(parser=parser_id, strategy=strategy, listings=tuple(listings))


def core_parse_search_page(html: str, url: str) -> List[ScrapedListing]:
    return list(parse_search_page(html, url).listings)


def build_paginated_url(base_url: str, page: int) -> str:
    """Set the ``page`` query parameter, leaving page one untouched."""
    if page <= 1:
        return base_url
    parts = urlsplit(base_url)
    query = [
        (key, value)
        for key, value in parse_qsl(parts.query, keep_blank_values=True)
        if key != "page"
    ]
    query.append(("page", str(page)))
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


def detect_total_pages(html: str) -> int:
    """Guess the number of result pages from pagination links."""
    if not html:
        return 1
    soup = BeautifulSoup(html, "html.parser")
    highest = 1
    for anchor in soup.find_all("a", href=True):
        for pattern in (_PAGE_PARAM, _PAGE_PATH):
            match = pattern.search(anchor["href"])
            if match:
                highest = max(highest, int(match.group(1)))
    return highest


def _set_query_param(url: str, key: str, value: str) -> str:
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    if any(existing == key for existing, _ in query):
        query = [
            (existing, value if existing == key else current)
            for existing, current in query
        ]
    else:
        kst_index = next(
            (index for index, (existing, _) in enumerate(query) if existing == "kst"),
            None,
        )
        if kst_index is None:
            query.append((key, value))
        else:
            query.insert(kst_index, (key, value))
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


def apply_trim(url: str, trim: str | None) -> str:
    """Narrow a search URL with a free-text trim keyword for marketplaces that support it."""
    trim = (trim or "").strip()
    if not trim or not url:
        return url
    parser_id = select_parser_by_hostname(url)
    if parser_id == LEBONCOIN:
        return _set_query_param(url, "text", trim)
    if parser_id == BILBASEN:
        return _set_query_param(url, "free", trim)
    if parser_id == MARKTPLAATS:
        parts = urlsplit(url)
        if not parts.fragment:
            return url
        segments = [segment for segment in parts.fragment.split("|") if not segment.startswith("q:")]
        fragment = "|".join([f"q:{trim}", *segments])
        return urlunsplit((parts.scheme, parts.netloc, parts.path, parts.query, fragment))
    return url
