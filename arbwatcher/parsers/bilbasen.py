"""Parser for bilbasen.dk search result pages. Prices are in Danish kroner."""

from __future__ import annotations

import re
from typing import List

from bs4 import BeautifulSoup, Tag

from ..models import CURRENCY_DKK, ScrapedListing
from .shared import (
    build_listing,
    extract_dkk_price,
    extract_title,
    normalize_text,
    run_strategies,
    text_of,
)

_DETAIL_HREF = re.compile(r"/brugt/bil/")
_RAW_DETAIL_LINK = re.compile(
    r"""<a\b[^>]*href=["']([^"']*/brugt/bil/[^"']*)["'][^>]*>(.*?)</a>""",
    re.IGNORECASE | re.DOTALL,
)
_RELATED_MARKER = "RelatedListings_"
_CONTEXT_WINDOW = 2000


def _in_related_block(node: Tag) -> bool:
    for parent in [node, *node.parents]:
        classes = parent.get("class") or []
        if any(_RELATED_MARKER in name for name in classes):
            return True
    return False


def _parse_article_cards(soup: BeautifulSoup, html: str, url: str) -> List[ScrapedListing]:
    listings: List[ScrapedListing] = []
    for article in soup.find_all("article"):
        link = article.find("a", href=_DETAIL_HREF)
        if link is None or _in_related_block(article):
            continue
        text = text_of(article)
        listing = build_listing(
            title=extract_title(article) or text_of(link),
            price=extract_dkk_price(text),
            currency=CURRENCY_DKK,
            href=link["href"],
            source_url=url,
            text=text,
        )
        if listing:
            listings.append(listing)
    return listings


def _strip_tags(fragment: str) -> str:
    return normalize_text(BeautifulSoup(fragment, "html.parser").get_text(" "))


def _parse_link_context(soup: BeautifulSoup, html: str, url: str) -> List[ScrapedListing]:
    """Read each detail link together with the markup that follows it.

    The price usually sits after the link inside the same card, so the text
    after the link is preferred over the text before it.
    """
    listings: List[ScrapedListing] = []
    seen = set()
    for match in _RAW_DETAIL_LINK.finditer(html):
        href = match.group(1)
        if href in seen:
            continue
        seen.add(href)
        start = max(0, match.start() - _CONTEXT_WINDOW)
        end = match.end() + _CONTEXT_WINDOW
        if _RELATED_MARKER in html[start:end]:
            continue
        after = _strip_tags(html[match.end():end])
        before = _strip_tags(html[start:match.start()])
        price = extract_dkk_price(after) or extract_dkk_price(before)
        title = _strip_tags(match.group(2)) or extract_title(html[match.start():end])
        listing = build_listing(
            title=title,
            price=price,
            currency=CURRENCY_DKK,
            href=href,
            source_url=url,
            text=after,
        )
        if listing:
            listings.append(listing)
    return listings


STRATEGIES = (
    ("article_cards", _parse_article_cards),
    ("link_context", _parse_link_context),
)


def parse_listings(html: str, url: str) -> List[ScrapedListing]:
    listings, _ = run_strategies(STRATEGIES, html, url)
    return listings
