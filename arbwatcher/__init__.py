"""ArbWatcher package initialization."""

from .analysis import (
    compute_target_market_stats,
    detect_opportunity,
    execute_study_analysis,
    filter_listings_by_study,
    hash_study_result,
    match_brand_model,
    should_filter_listing,
    to_eur,
)
from .config import Settings
from .db import Database
from .fetch import SearchScraper, ZyteClient
from .models import (
    MarketStats,
    OpportunityResult,
    ScheduledJob,
    ScrapedListing,
    ScrapedPage,
    StudyAnalysis,
    StudyCriteria,
)
from .router import core_parse_search_page, select_parser_by_hostname
from .runner import StudyRunner

__all__ = [
    "Database",
    "MarketStats",
    "OpportunityResult",
    "ScheduledJob",
    "ScrapedListing",
    "ScrapedPage",
    "SearchScraper",
    "Settings",
    "StudyAnalysis",
    "StudyCriteria",
    "StudyRunner",
    "ZyteClient",
    "compute_target_market_stats",
    "core_parse_search_page",
    "detect_opportunity",
    "execute_study_analysis",
    "filter_listings_by_study",
    "hash_study_result",
    "match_brand_model",
    "select_parser_by_hostname",
    "should_filter_listing",
    "to_eur",
]
