"""Pure business rules: filtering, price statistics and opportunity detection.

Every comparison happens in EUR. Exchange rates come from a plain mapping so a
caller can plug in a different table without touching the rules.
"""

from __future__ import annotations

import hashlib
import json
import math
import re
from typing import Iterable, List, Mapping, Optional, Sequence

from .models import (
    CURRENCY_DKK,
    CURRENCY_EUR,
    CURRENCY_UNKNOWN,
    PRICE_PER_MONTH,
    RESULT_NULL,
    RESULT_OPPORTUNITIES,
    BrandModelMatch,
    MarketStats,
    OpportunityResult,
    ScrapedListing,
    StudyAnalysis,
    StudyCriteria,
)

DEFAULT_FX_RATES: Mapping[str, float] = {
    CURRENCY_EUR: 1.0,
    CURRENCY_DKK: 0.13,
    CURRENCY_UNKNOWN: 1.0,
}
PRICE_FLOOR_EUR = 2000
MAX_TARGET_LISTINGS = 6
MAX_INTERESTING_LISTINGS = 5

MONTHLY_KEYWORDS = (
    "/mois",
    "€/mois",
    "€ / mois",
    "par mois",
    "per month",
    "€/month",
    "/month",
    "p/m",
    "/maand",
    "€/mnd",
    "per maand",
    "maandelijkse betaling",
    "lease",
    "privé lease",
    "private lease",
    "operational lease",
    "leasing",
    "loa",
    "lld",
    "pr. md",
    "pr. måned",
)
DAMAGE_KEYWORDS = (
    "accidenté",
    "véhicule accidenté",
    "épave",
    "choc",
    "réparé suite à choc",
    "châssis tordu",
    "non roulant",
    "pour pièces",
    "hors service",
    "moteur hs",
    "hs",
    "dépanneuse",
    "damaged",
    "accident damage",
    "salvage",
    "cat c",
    "cat d",
    "cat s",
    "cat n",
    "written off",
    "write off",
    "total loss",
    "for parts",
    "parts only",
    "not running",
    "as is",
    "schade",
    "ongeval",
    "schadeauto",
    "skadet",
    "skade",
    "kollisionsskade",
    "ulykke",
)


def _vocabulary_pattern(keywords: Iterable[str]) -> re.Pattern:
    # Longest first so multi-word phrases win over their fragments. A digit may
    # precede a keyword, as in "299/mois" or "199p/m"; a letter may not.
    ordered = sorted(set(keywords), key=len, reverse=True)
    return re.compile(
        r"(?<![^\W\d_])(?:" + "|".join(re.escape(keyword) for keyword in ordered) + r")(?!\w)",
        re.IGNORECASE,
    )


_MONTHLY_PATTERN = _vocabulary_pattern(MONTHLY_KEYWORDS)
_DAMAGE_PATTERN = _vocabulary_pattern(DAMAGE_KEYWORDS)


def to_eur(price: float, currency: str, rates: Mapping[str, float] | None = None) -> float:
    table = DEFAULT_FX_RATES if rates is None else rates
    rate = table.get(currency, table.get(CURRENCY_UNKNOWN, 1.0))
    return price * rate


def _listing_text(listing: ScrapedListing) -> str:
    return f"{listing.title} {listing.description or ''}"


def should_filter_listing(
    listing: ScrapedListing, rates: Mapping[str, float] | None = None
) -> bool:
    """Return True when the listing is a lease, a damaged car or implausibly cheap."""
    return _prefilter_reason(listing, rates) is not None


def _prefilter_reason(
    listing: ScrapedListing, rates: Mapping[str, float] | None
) -> Optional[str]:
    price_eur = to_eur(listing.price, listing.currency, rates)
    if price_eur <= PRICE_FLOOR_EUR:
        return f"Price {price_eur:.0f} EUR at or below floor of {PRICE_FLOOR_EUR} EUR"
    if listing.price_type == PRICE_PER_MONTH:
        return "Monthly price"
    text = _listing_text(listing)
    match = _MONTHLY_PATTERN.search(text)
    if match:
        return f'Leasing or monthly wording "{match.group(0).lower()}"'
    match = _DAMAGE_PATTERN.search(text)
    if match:
        return f'Damage wording "{match.group(0).lower()}"'
    return None


def match_brand_model(title: str, brand: str, model: str) -> BrandModelMatch:
    """Check that the brand and every model token appear in the title."""
    lowered = (title or "").lower()
    brand_lower = (brand or "").lower().strip()
    if brand_lower and brand_lower not in lowered:
        return BrandModelMatch(matches=False, reason=f'Brand "{brand}" not found in title')
    tokens = re.sub(r"[^a-z0-9]+", " ", (model or "").lower()).split()
    missing = [token for token in tokens if token not in lowered]
    if missing:
        return BrandModelMatch(
            matches=False, reason=f"Model tokens missing: {', '.join(missing)}"
        )
    return BrandModelMatch(matches=True)


def explain_rejection(
    listing: ScrapedListing,
    criteria: StudyCriteria,
    rates: Mapping[str, float] | None = None,
) -> Optional[str]:
    """Return why ``listing`` fails the study, or None when it passes.

    Checks run cheapest first: the pre-filter, then year, mileage and finally
    the brand/model match.
    """
    reason = _prefilter_reason(listing, rates)
    if reason:
        return reason
    if listing.year and criteria.min_year and listing.year < criteria.min_year:
        return f"Year {listing.year} below minimum {criteria.min_year}"
    if criteria.max_mileage > 0 and listing.mileage and listing.mileage > criteria.max_mileage:
        return f"Mileage {listing.mileage} above maximum {criteria.max_mileage}"
    match = match_brand_model(listing.title, criteria.brand, criteria.model)
    if not match.matches:
        return match.reason
    return None


def filter_listings_by_study(
    listings: Sequence[ScrapedListing],
    criteria: StudyCriteria,
    rates: Mapping[str, float] | None = None,
) -> List[ScrapedListing]:
    return [
        listing
        for listing in listings
        if explain_rejection(listing, criteria, rates) is None
    ]


def _percentile(sorted_prices: Sequence[float], percentile: float) -> float:
    index = max(0, math.ceil(len(sorted_prices) * percentile / 100) - 1)
    return sorted_prices[index]


def compute_target_market_stats(
    listings: Sequence[ScrapedListing], rates: Mapping[str, float] | None = None
) -> MarketStats:
    """Compute EUR statistics over the six cheapest listings."""
    if not listings:
        return MarketStats()
    prices = sorted(to_eur(listing.price, listing.currency, rates) for listing in listings)
    capped = prices[:MAX_TARGET_LISTINGS]
    count = len(capped)
    middle = count // 2
    if count % 2:
        median = capped[middle]
    else:
        median = (capped[middle - 1] + capped[middle]) / 2
    return MarketStats(
        median=median,
        average=sum(capped) / count,
        min=capped[0],
        max=capped[-1],
        count=count,
        percentile_25=_percentile(capped, 25),
        percentile_75=_percentile(capped, 75),
    )


def detect_opportunity(
    target_listings: Sequence[ScrapedListing],
    source_listings: Sequence[ScrapedListing],
    threshold: float,
    rates: Mapping[str, float] | None = None,
) -> OpportunityResult:
    stats = compute_target_market_stats(target_listings, rates)
    if stats.median == 0 or not source_listings:
        return OpportunityResult(
            has_opportunity=False,
            target_median_price=stats.median,
            best_source_price=0.0,
            price_difference=0.0,
            interesting_listings=(),
            target_stats=stats,
        )

    priced = [(to_eur(listing.price, listing.currency, rates), listing) for listing in source_listings]
    best_source_price = min(price for price, _ in priced)
    price_difference = stats.median - best_source_price
    ceiling = stats.median - threshold
    # sorted() is stable, so equal prices keep their page order.
    interesting = sorted(
        ((price, listing) for price, listing in priced if price <= ceiling),
        key=lambda pair: pair[0],
    )[:MAX_INTERESTING_LISTINGS]
    return OpportunityResult(
        has_opportunity=price_difference >= threshold,
        target_median_price=stats.median,
        best_source_price=best_source_price,
        price_difference=price_difference,
        interesting_listings=tuple(listing for _, listing in interesting),
        target_stats=stats,
    )


def execute_study_analysis(
    target_listings: Sequence[ScrapedListing],
    source_listings: Sequence[ScrapedListing],
    criteria: StudyCriteria,
    threshold: float,
    rates: Mapping[str, float] | None = None,
) -> StudyAnalysis:
    """Filter both markets and turn them into a single verdict."""
    filtered_target = filter_listings_by_study(target_listings, criteria, rates)
    filtered_source = filter_listings_by_study(source_listings, criteria, rates)
    counts = dict(
        raw_target_count=len(target_listings),
        raw_source_count=len(source_listings),
        filtered_target_count=len(filtered_target),
        filtered_source_count=len(filtered_source),
    )
    if not filtered_target:
        return StudyAnalysis(
            status=RESULT_NULL,
            target_stats=MarketStats(),
            target_median_price=0.0,
            best_source_price=None,
            price_difference=None,
            interesting_listings=(),
            **counts,
        )

    stats = compute_target_market_stats(filtered_target, rates)
    if not filtered_source:
        return StudyAnalysis(
            status=RESULT_NULL,
            target_stats=stats,
            target_median_price=stats.median,
            best_source_price=None,
            price_difference=None,
            interesting_listings=(),
            **counts,
        )

    opportunity = detect_opportunity(filtered_target, filtered_source, threshold, rates)
    return StudyAnalysis(
        status=RESULT_OPPORTUNITIES if opportunity.has_opportunity else RESULT_NULL,
        target_stats=opportunity.target_stats,
        target_median_price=opportunity.target_median_price,
        best_source_price=opportunity.best_source_price,
        price_difference=opportunity.price_difference,
        interesting_listings=opportunity.interesting_listings,
        **counts,
    )


def _rounded(value: Optional[float]) -> Optional[float]:
    return None if value is None else round(value, 2)


def hash_study_result(analysis: StudyAnalysis) -> str:
    """Return a stable SHA-256 digest of the decision carried by ``analysis``."""
    payload = {
        "status": analysis.status,
        "target_median_price": _rounded(analysis.target_median_price),
        "best_source_price": _rounded(analysis.best_source_price),
        "price_difference": _rounded(analysis.price_difference),
        "target_stats": {
            key: _rounded(value) if isinstance(value, float) else value
            for key, value in analysis.target_stats.to_dict().items()
        },
        "raw_target_count": analysis.raw_target_count,
        "raw_source_count": analysis.raw_source_count,
        "filtered_target_count": analysis.filtered_target_count,
        "filtered_source_count": analysis.filtered_source_count,
        "interesting_listings": [
            listing.listing_url for listing in analysis.interesting_listings
        ],
    }
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()
