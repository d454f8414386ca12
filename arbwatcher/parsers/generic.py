"""Fallback parser for marketplaces without a dedicated implementation."""

from __future__ import annotations

import re
from typing import List

from bs4 import BeautifulSoup, Tag

from ..models import CURRENCY_EUR, ScrapedListing
from .shared import (
    build_listing,
    extract_euro_price,
    leaf_cards,
    listings_from_cards,
    run_strategies,
    text_of,
)

_CARD_PATTERNS = (
    (("article",), None),
    (
        ("div", "li"),
        re.compile(
            r"listing|search-result|result-item|vehicle|car-item|ad-item|offer",
            re.IGNORECASE,
        ),
    ),
    (("div", "li", "article"), re.compile(r"card|item|product", re.IGNORECASE)),
)
_ASSET_HREF = re.compile(r"\.(?:jpe?g|png|gif|svg|webp|css|js)(?:\?|$)", re.IGNORECASE)
_ACCOUNT_HREF = re.compile(r"login|logout|register|signup|sign-up|account", re.IGNORECASE)
_MIN_TITLE_LENGTH = 5


def _parse_cards(soup: BeautifulSoup, html: str, url: str) -> List[ScrapedListing]:
    """Try every card pattern and keep the one that yields the most listings."""
    best: List[ScrapedListing] = []
    for tags, pattern in _CARD_PATTERNS:
        cards = leaf_cards(soup, tags, pattern)
        listings = listings_from_cards(cards, url, CURRENCY_EUR, extract_euro_price)
        if len(listings) > len(best):
            best = listings
    return best


def _in_page_chrome(anchor: Tag) -> bool:
    return anchor.find_parent(["header", "footer", "nav"]) is not None


def _parse_anchors(soup: BeautifulSoup, html: str, url: str) -> List[ScrapedListing]:
    listings: List[ScrapedListing] = []
    for anchor in soup.find_all("a", href=True):
        href = anchor["href"].strip()
        if (
            not href
            or href.startswith(("#", "javascript:", "mailto:"))
            or _ASSET_HREF.search(href)
            or _ACCOUNT_HREF.search(href)
            or _in_page_chrome(anchor)
        ):
            continue
        title = anchor.get("title") or text_of(anchor)
        if len(title) < _MIN_TITLE_LENGTH:
            continue
        text = text_of(anchor)
        price = extract_euro_price(text)
        if price is None and anchor.parent is not None:
            text = text_of(anchor.parent)
            price = extract_euro_price(text)
        listing = build_listing(
            title=title[:100],
            price=price,
            currency=CURRENCY_EUR,
            href=href,
            source_url=url,
            text=text,
        )
        if listing:
            listings.append(listing)
    return listings


STRATEGIES = (
    ("html_cards", _parse_cards),
    ("anchors", _parse_anchors),
)


def parse_listings(html: str, url: str) -> List[ScrapedListing]:
    listings, _ = run_strategies(STRATEGIES, html, url)
    return listings
