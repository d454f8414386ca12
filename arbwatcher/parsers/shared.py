"""Extraction primitives shared by every marketplace parser."""

from __future__ import annotations

import datetime as dt
import json
import logging
import re
from typing import Any, Callable, Iterable, Iterator, List, Optional, Sequence, Tuple
from urllib.parse import urlsplit

from bs4 import BeautifulSoup, Tag

from ..models import PRICE_ONE_OFF, PRICE_PER_MONTH, ScrapedListing

logger = logging.getLogger(__name__)

MIN_PRICE = 100
MAX_EUR_PRICE = 500_000
MAX_DKK_PRICE = 5_000_000
MAX_MILEAGE = 1_000_000
MIN_YEAR = 2000

_NUMBER = r"(?<![\d.,])(\d{1,3}(?:(?P<sep>[ .])\d{3})(?:(?P=sep)\d{3})*|\d+)(?!\d)"
_DKK_NUMBER = (
    r"(?<![\d.,])(\d{1,3}(?:(?P<sep>[ .,'])\d{3})(?:(?P=sep)\d{3})*|\d+)(?!\d)(?:,\d{2})?"
)

_EURO_PATTERNS = (
    re.compile(r"€\s*" + _NUMBER + r"(?:,-|,\d{1,2})?"),
    re.compile(_NUMBER + r"(?:,-|,\d{1,2})?\s*€"),
    re.compile(_NUMBER + r"\s*EUR\b", re.IGNORECASE),
    re.compile(_NUMBER + r"\s*euros?\b", re.IGNORECASE),
    re.compile(r"prix\s*:?\s*" + _NUMBER, re.IGNORECASE),
)
_DKK_PATTERNS = (
    re.compile(_DKK_NUMBER + r"\s*kr\b\.?", re.IGNORECASE),
    re.compile(r"\bkr\.?\s*" + _DKK_NUMBER, re.IGNORECASE),
    re.compile(_DKK_NUMBER + r"\s*DKK\b", re.IGNORECASE),
)
_MILEAGE_NUMBER = r"(\d{1,3}(?:(?P<sep>[ .,'])\d{3})(?:(?P=sep)\d{3})*|\d+)(?!\d)"
_MILEAGE_PATTERNS = (
    re.compile(r"(?<![\d.,])" + _MILEAGE_NUMBER + r"\s*km\b", re.IGNORECASE),
    re.compile(r"kilom[eéè]trage\s*:?\s*" + _MILEAGE_NUMBER, re.IGNORECASE),
)
_YEAR_PATTERN = re.compile(r"(?<!\d)(20[0-2]\d)(?!\d)")
_MONTHLY_PATTERN = re.compile(
    r"/\s*(?:mois|maand|mnd|month|md)\b|\bper\s+(?:maand|month)\b|\bpar\s+mois\b|\bpr\.?\s*md\b",
    re.IGNORECASE,
)
_INLINE_STATE_PATTERN = re.compile(r"=\s*(\{.*\})\s*;?\s*$", re.DOTALL)

ListingStrategy = Callable[[BeautifulSoup, str, str], List[ScrapedListing]]


def normalize_text(text: str) -> str:
    """Collapse whitespace and decode the entities marketplaces leave in prices."""
    cleaned = (
        text.replace("\u00a0", " ")
        .replace("\u202f", " ")
        .replace("&nbsp;", " ")
        .replace("&euro;", "€")
    )
    return " ".join(cleaned.split())


def _amount(raw: str) -> Optional[int]:
    digits = re.sub(r"[ .,']", "", raw)
    if not digits.isdigit():
        return None
    return int(digits)


def extract_euro_price(text: str) -> Optional[int]:
    """Return the first plausible EUR amount found in ``text``."""
    if not text:
        return None
    normalized = normalize_text(text)
    for pattern in _EURO_PATTERNS:
        for match in pattern.finditer(normalized):
            value = _amount(match.group(1))
            if value is not None and MIN_PRICE < value < MAX_EUR_PRICE:
                return value
    return None


def extract_dkk_price(text: str) -> Optional[int]:
    """Return the first plausible amount in Danish kroner found in ``text``."""
    if not text:
        return None
    normalized = normalize_text(text)
    for pattern in _DKK_PATTERNS:
        for match in pattern.finditer(normalized):
            value = _amount(match.group(1))
            if value is not None and MIN_PRICE < value < MAX_DKK_PRICE:
                return value
    return None


def extract_year(text: str) -> Optional[int]:
    if not text:
        return None
    current_year = dt.date.today().year
    for match in _YEAR_PATTERN.finditer(text):
        year = int(match.group(1))
        if MIN_YEAR <= year <= current_year:
            return year
    return None


def extract_mileage(text: str) -> Optional[int]:
    if not text:
        return None
    normalized = normalize_text(text)
    for pattern in _MILEAGE_PATTERNS:
        for match in pattern.finditer(normalized):
            value = _amount(match.group(1))
            if value is not None and 0 < value < MAX_MILEAGE:
                return value
    return None


def extract_title(markup: str | Tag) -> Optional[str]:
    """Pick a heading, then a ``title`` attribute, then the document title."""
    node = markup if isinstance(markup, Tag) else BeautifulSoup(markup or "", "html.parser")
    heading = node.find(["h1", "h2", "h3", "h4", "h5", "h6"])
    if heading is not None:
        text = text_of(heading)
        if text:
            return text
    titled = node.find(attrs={"title": True})
    if titled is not None and titled.get("title", "").strip():
        return normalize_text(titled["title"])
    title_tag = node.find("title")
    if title_tag is not None:
        text = text_of(title_tag)
        if text:
            return text
    return None


def detect_price_type(text: str) -> str:
    if text and _MONTHLY_PATTERN.search(text):
        return PRICE_PER_MONTH
    return PRICE_ONE_OFF


def text_of(node: Tag) -> str:
    return normalize_text(node.get_text(" "))


def normalize_listing_url(url: str, source_url: str) -> str:
    """Resolve a relative listing link against the origin of the search page."""
    if not url:
        return ""
    parsed = urlsplit(url)
    if parsed.scheme and parsed.netloc:
        return url
    base = urlsplit(source_url)
    if url.startswith("//"):
        return f"{base.scheme or 'https'}:{url}"
    if not url.startswith("/"):
        url = "/" + url
    return f"{base.scheme}://{base.netloc}{url}"


def dedupe_listings(listings: Iterable[ScrapedListing]) -> List[ScrapedListing]:
    seen = set()
    unique: List[ScrapedListing] = []
    for listing in listings:
        if listing.listing_url:
            if listing.listing_url in seen:
                continue
            seen.add(listing.listing_url)
        unique.append(listing)
    return unique


def run_strategies(
    strategies: Sequence[Tuple[str, ListingStrategy]],
    html: str,
    url: str,
) -> Tuple[List[ScrapedListing], Optional[str]]:
    """Run extraction strategies in order and return the first non-empty result.

    Each strategy is isolated: an exception inside one falls through to the
    next, so a page shape change degrades to a weaker extraction path instead of
    breaking the whole parse.
    """
    if not html:
        return [], None
    soup = BeautifulSoup(html, "html.parser")
    for name, strategy in strategies:
        try:
            listings = strategy(soup, html, url)
        except Exception as exc:  # noqa: BLE001
            logger.debug("Strategy %s failed on %s: %s", name, url, exc)
            continue
        listings = dedupe_listings(listings)
        if listings:
            logger.debug("Strategy %s extracted %d listings from %s", name, len(listings), url)
            return listings, name
    return [], None


def iter_script_json(soup: BeautifulSoup) -> Iterator[Any]:
    """Yield decoded JSON payloads embedded in script tags."""
    for script in soup.find_all("script"):
        content = script.string or script.get_text()
        if not content or not content.strip():
            continue
        script_type = (script.get("type") or "").lower()
        if script.get("id") == "__NEXT_DATA__" or script_type in (
            "application/json",
            "application/ld+json",
        ):
            try:
                yield json.loads(content)
            except ValueError:
                continue
            continue
        match = _INLINE_STATE_PATTERN.search(content)
        if match:
            try:
                yield json.loads(match.group(1))
            except ValueError:
                continue


def next_data(soup: BeautifulSoup) -> Any:
    script = soup.find("script", id="__NEXT_DATA__")
    if script is None:
        return None
    try:
        return json.loads(script.string or script.get_text())
    except ValueError:
        return None


def dig(data: Any, path: str) -> Any:
    """Follow a dotted key path through nested dicts, returning None on a miss."""
    current = data
    for key in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def first_list(data: Any, paths: Sequence[str]) -> List[Any]:
    for path in paths:
        value = dig(data, path)
        if isinstance(value, list) and value:
            return value
    return []


def coerce_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        digits = re.sub(r"[^\d]", "", value.split(",")[0])
        if digits:
            return float(digits)
    return None


def coerce_year(value: Any) -> Optional[int]:
    if value is None:
        return None
    return extract_year(str(value))


def coerce_mileage(value: Any) -> Optional[int]:
    number = coerce_number(value)
    if number is None or not 0 < number < MAX_MILEAGE:
        return None
    return int(number)


def attribute_value(attributes: Any, *keys: str) -> Any:
    """Read an attribute from either a mapping or a ``[{key, value}]`` list."""
    if isinstance(attributes, dict):
        for key in keys:
            if attributes.get(key) not in (None, ""):
                return attributes[key]
        return None
    if isinstance(attributes, list):
        for key in keys:
            for entry in attributes:
                if isinstance(entry, dict) and entry.get("key") == key:
                    value = entry.get("value")
                    if value in (None, ""):
                        value = entry.get("value_label")
                    if value not in (None, ""):
                        return value
    return None


def build_listing(
    *,
    title: str | None,
    price: float | None,
    currency: str,
    href: str | None,
    source_url: str,
    text: str = "",
    description: str | None = None,
    mileage: int | None = None,
    year: int | None = None,
) -> Optional[ScrapedListing]:
    """Assemble a listing, filling gaps from the surrounding card text.

    Returns None when the title, price or link is missing.
    """
    title = normalize_text(title or "")
    if not title or not price or price <= 0 or not href:
        return None
    listing_url = normalize_listing_url(href, source_url)
    if not listing_url:
        return None
    if description is None:
        description = text[:300]
    context = f"{title} {text} {description}"
    return ScrapedListing(
        title=title,
        price=float(price),
        currency=currency,
        listing_url=listing_url,
        description=normalize_text(description),
        mileage=mileage if mileage is not None else extract_mileage(text),
        year=year if year is not None else extract_year(text),
        price_type=detect_price_type(context),
    )


def leaf_cards(
    soup: BeautifulSoup, tags: Sequence[str], class_pattern: re.Pattern | None = None
) -> List[Tag]:
    """Find elements whose class matches ``class_pattern`` and that hold no nested match."""
    kwargs = {"class_": class_pattern} if class_pattern is not None else {}
    cards = soup.find_all(list(tags), **kwargs)
    return [card for card in cards if card.find(list(tags), **kwargs) is None]


def listings_from_cards(
    cards: Iterable[Tag],
    url: str,
    currency: str,
    extract_price: Callable[[str], Optional[int]],
    skip_href: re.Pattern | None = None,
) -> List[ScrapedListing]:
    listings: List[ScrapedListing] = []
    for card in cards:
        link = None
        for anchor in card.find_all("a", href=True):
            href = anchor["href"]
            if href.startswith(("#", "javascript:")):
                continue
            if skip_href is not None and skip_href.search(href):
                continue
            link = anchor
            break
        if link is None:
            continue
        text = text_of(card)
        listing = build_listing(
            title=extract_title(card) or link.get("title") or text_of(link),
            price=extract_price(text),
            currency=currency,
            href=link["href"],
            source_url=url,
            text=text,
        )
        if listing:
            listings.append(listing)
    return listings
