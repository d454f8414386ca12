"""Parser for marktplaats.nl search result pages.

Listing cards are read first, then the embedded search JSON. There is no
anchor fallback: bare links on marktplaats carry no price to compare.
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
    first_list,
    iter_script_json,
    run_strategies,
    text_of,
)

_DETAIL_HREF = re.compile(r"(?:^|marktplaats\.nl)/[va]/")
_JSON_PATHS = (
    "listings",
    "items",
    "props.pageProps.listings",
    "props.pageProps.searchRequestAndResponse.listings",
)


def _parse_cards(soup: BeautifulSoup, html: str, url: str) -> List[ScrapedListing]:
    listings: List[ScrapedListing] = []
    for card in soup.find_all("li", class_="hz-Listing--list-item"):
        if "hz-Listing" not in (card.get("class") or []):
            continue
        link = card.find("a", class_="hz-Listing-coverLink") or card.find(
            "a", href=_DETAIL_HREF
        )
        if link is None:
            continue
        text = text_of(card)
        title_node = card.find(class_="hz-Listing-title")
        if title_node is not None:
            title = text_of(title_node)
        else:
            title = link.get("title") or text[:100]
        price_node = card.find(class_="hz-Listing-price")
        price = None
        if price_node is not None:
            price = extract_euro_price(text_of(price_node))
        if price is None:
            price = extract_euro_price(text)
        description_node = card.find(class_="hz-Listing-description")
        listing = build_listing(
            title=title,
            price=price,
            currency=CURRENCY_EUR,
            href=link.get("href"),
            source_url=url,
            text=text,
            description=text_of(description_node) if description_node else None,
        )
        if listing:
            listings.append(listing)
    return listings


def _listing_from_json(item: Any, url: str) -> Optional[ScrapedListing]:
    if not isinstance(item, dict):
        return None
    price_info = item.get("priceInfo")
    price = None
    if isinstance(price_info, dict):
        cents = coerce_number(price_info.get("priceCents"))
        if cents:
            price = cents / 100
    if price is None:
        price = coerce_number(item.get("price"))
    attributes = item.get("attributes")
    description = str(item.get("description") or item.get("categorySpecificDescription") or "")
    return build_listing(
        title=str(item.get("title") or ""),
        price=price,
        currency=CURRENCY_EUR,
        href=item.get("vipUrl") or item.get("url"),
        source_url=url,
        text=description,
        description=description,
        mileage=coerce_mileage(attribute_value(attributes, "mileage", "kilometerstand")),
        year=coerce_year(attribute_value(attributes, "constructionYear", "year", "bouwjaar")),
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


STRATEGIES = (
    ("html_cards", _parse_cards),
    ("embedded_json", _parse_embedded_json),
)


def parse_listings(html: str, url: str) -> List[ScrapedListing]:
    listings, _ = run_strategies(STRATEGIES, html, url)
    return listings
