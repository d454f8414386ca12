"""Parser for leboncoin.fr search result pages.

Leboncoin renders its results client side, so the Next.js data island is the
reliable source and no card markup is parsed. Anchors to ad pages are kept as
a weaker fallback for the server-rendered variant.
"""

from __future__ import annotations

import re
from typing import Any, List, Optional

from bs4 import BeautifulSoup

from ..models import CURRENCY_EUR, ScrapedListing
from .shared import (
    attribute_value,
    build_listing,
    coerce_mileage,
    coerce_number,
    coerce_year,
    extract_euro_price,
    extract_title,
    first_list,
    next_data,
    run_strategies,
    text_of,
)

_AD_PATHS = (
    "props.pageProps.searchData.ads",
    "props.pageProps.ads",
    "props.pageProps.listings",
)
_AD_HREF = re.compile(r"/(?:ad/)?voitures/\d+")


def _listing_from_ad(ad: Any, url: str) -> Optional[ScrapedListing]:
    if not isinstance(ad, dict):
        return None
    raw_price = ad.get("price")
    if isinstance(raw_price, list):
        raw_price = raw_price[0] if raw_price else None
    attributes = ad.get("attributes")
    body = str(ad.get("body") or "")
    return build_listing(
        title=str(ad.get("subject") or ad.get("title") or ""),
        price=coerce_number(raw_price),
        currency=CURRENCY_EUR,
        href=ad.get("url") or ad.get("link"),
        source_url=url,
        text=body,
        description=body,
        mileage=coerce_mileage(attribute_value(attributes, "mileage")),
        year=coerce_year(attribute_value(attributes, "regdate", "year")),
    )


def _parse_next_data(soup: BeautifulSoup, html: str, url: str) -> List[ScrapedListing]:
    ads = first_list(next_data(soup), _AD_PATHS)
    return [
        listing
        for listing in (_listing_from_ad(ad, url) for ad in ads)
        if listing is not None
    ]


def _parse_ad_anchors(soup: BeautifulSoup, html: str, url: str) -> List[ScrapedListing]:
    listings: List[ScrapedListing] = []
    for anchor in soup.find_all("a", href=_AD_HREF):
        text = text_of(anchor)
        listing = build_listing(
            title=extract_title(anchor) or anchor.get("title") or text[:100],
            price=extract_euro_price(text),
            currency=CURRENCY_EUR,
            href=anchor.get("href"),
            source_url=url,
            text=text,
        )
        if listing:
            listings.append(listing)
    return listings


STRATEGIES = (
    ("next_data", _parse_next_data),
    ("ad_anchors", _parse_ad_anchors),
)


def parse_listings(html: str, url: str) -> List[ScrapedListing]:
    listings, _ = run_strategies(STRATEGIES, html, url)
    return listings
