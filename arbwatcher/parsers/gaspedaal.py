"""Parser for gaspedaal.nl, an aggregator of Dutch used-car dealers."""

from __future__ import annotations

import re
from typing import Any, List, Optional

from bs4 import BeautifulSoup

from ..models import CURRENCY_EUR, ScrapedListing
from .shared import (
    build_listing,
    coerce_mileage,
    coerce_number,
    coerce_year,
    extract_euro_price,
    first_list,
    iter_script_json,
    leaf_cards,
    listings_from_cards,
    run_strategies,
    text_of,
)

_CARD_TAGS = ("article", "div", "li")
_CARD_CLASS = re.compile(r"occasion|listing|result|car-?card|vehicle", re.IGNORECASE)
# Navigation links back into the search itself.
_SEARCH_HREF = re.compile(r"zoek|filter|category|tot-", re.IGNORECASE)
_JSON_PATHS = (
    "props.pageProps.listings",
    "props.pageProps.results",
    "props.pageProps.occasions",
    "props.pageProps.initialState.results",
    "results",
    "listings",
    "occasions",
)


def _parse_cards(soup: BeautifulSoup, html: str, url: str) -> List[ScrapedListing]:
    cards = leaf_cards(soup, _CARD_TAGS, _CARD_CLASS)
    return listings_from_cards(
        cards, url, CURRENCY_EUR, extract_euro_price, skip_href=_SEARCH_HREF
    )


def _listing_from_json(item: Any, url: str) -> Optional[ScrapedListing]:
    if not isinstance(item, dict):
        return None
    title = item.get("title") or " ".join(
        str(part) for part in (item.get("make"), item.get("model"), item.get("version")) if part
    )
    description = str(item.get("description") or "")
    return build_listing(
        title=str(title or ""),
        price=coerce_number(item.get("price")),
        currency=CURRENCY_EUR,
        href=item.get("url") or item.get("link") or item.get("detailUrl"),
        source_url=url,
        text=description,
        description=description,
        mileage=coerce_mileage(item.get("mileage") or item.get("km")),
        year=coerce_year(item.get("year") or item.get("buildYear")),
    )


def _parse_embedded_json(soup: BeautifulSoup, html: str, url: str) -> List[ScrapedListing]:
    for payload in iter_script_json(soup):
        items = first_list(payload, _JSON_PATHS)
        listings = [
            listing
            for listing in (_listing_from_json(item, url) for item in items)
            if listing is not None
        ]
        if listings:
            return listings
    return []


def _parse_anchors(soup: BeautifulSoup, html: str, url: str) -> List[ScrapedListing]:
    listings: List[ScrapedListing] = []
    for anchor in soup.find_all("a", href=True):
        href = anchor["href"]
        if href.startswith(("#", "javascript:")) or _SEARCH_HREF.search(href):
            continue
        text = text_of(anchor)
        price = extract_euro_price(text)
        if price is None and anchor.parent is not None:
            text = text_of(anchor.parent)
            price = extract_euro_price(text)
        listing = build_listing(
            title=anchor.get("title") or text_of(anchor)[:100],
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
    ("embedded_json", _parse_embedded_json),
    ("anchors", _parse_anchors),
)


def parse_listings(html: str, url: str) -> List[ScrapedListing]:
    listings, _ = run_strategies(STRATEGIES, html, url)
    return listings
