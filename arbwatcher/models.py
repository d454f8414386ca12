"""Core data models for ArbWatcher."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

CURRENCY_EUR = "EUR"
CURRENCY_DKK = "DKK"
CURRENCY_UNKNOWN = "UNKNOWN"

PRICE_ONE_OFF = "one-off"
PRICE_PER_MONTH = "per-month"
PRICE_UNKNOWN = "unknown"

RESULT_NULL = "NULL"
RESULT_OPPORTUNITIES = "OPPORTUNITIES"
RESULT_BLOCKED = "BLOCKED"

JOB_PENDING = "pending"
JOB_RUNNING = "running"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"
JOB_CANCELLED = "cancelled"
JOB_STATUSES = (JOB_PENDING, JOB_RUNNING, JOB_COMPLETED, JOB_FAILED, JOB_CANCELLED)

RUN_INSTANT = "instant"
RUN_SCHEDULED = "scheduled"
RUN_RUNNING = "running"
RUN_COMPLETED = "completed"
RUN_FAILED = "failed"

CANDIDATE_STATUSES = ("NEW", "APPROVED", "REJECTED", "COMPLETED", "DELETED")

INTENSITY_FAST = "fast"
INTENSITY_FULL = "full"


@dataclass(frozen=True)
class ScrapedListing:
    """A single vehicle advert extracted from a marketplace search page."""

    title: str
    price: float
    currency: str
    listing_url: str
    description: str = ""
    mileage: Optional[int] = None
    year: Optional[int] = None
    trim: Optional[str] = None
    price_type: str = PRICE_UNKNOWN


@dataclass(frozen=True)
class ScrapedPage:
    """Progress of one fetched search page within a paginated scrape."""

    page_number: int
    fetched_url: str
    extracted_count: int
    new_unique_count: int


@dataclass(frozen=True)
class StudyCriteria:
    """A monitored vehicle pattern and the two markets it is compared across."""

    id: str
    brand: str
    model: str
    target_url: str
    source_url: str
    min_year: int = 0
    max_mileage: int = 0
    target_country: str = ""
    source_country: str = ""
    trim_target: Optional[str] = None
    trim_source: Optional[str] = None


@dataclass(frozen=True)
class MarketStats:
    """Price statistics in EUR over the capped target listing set."""

    median: float = 0.0
    average: float = 0.0
    min: float = 0.0
    max: float = 0.0
    count: int = 0
    percentile_25: float = 0.0
    percentile_75: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "median": self.median,
            "average": self.average,
            "min": self.min,
            "max": self.max,
            "count": self.count,
            "percentile_25": self.percentile_25,
            "percentile_75": self.percentile_75,
        }


@dataclass(frozen=True)
class BrandModelMatch:
    matches: bool
    reason: str = ""


@dataclass(frozen=True)
class OpportunityResult:
    """Verdict for one study comparing target and source markets."""

    has_opportunity: bool
    target_median_price: float
    best_source_price: float
    price_difference: float
    interesting_listings: Tuple[ScrapedListing, ...]
    target_stats: MarketStats


@dataclass(frozen=True)
class StudyAnalysis:
    """Outcome of filtering and scoring one study's listings."""

    status: str
    target_stats: MarketStats
    target_median_price: float
    best_source_price: Optional[float]
    price_difference: Optional[float]
    interesting_listings: Tuple[ScrapedListing, ...]
    raw_target_count: int
    raw_source_count: int
    filtered_target_count: int
    filtered_source_count: int


@dataclass(frozen=True)
class JobPayload:
    """Opaque work description carried by a scheduled job."""

    study_ids: Tuple[str, ...]
    threshold: float
    scrape_intensity: str = INTENSITY_FAST

    def to_dict(self) -> Dict[str, Any]:
        return {
            "study_ids": list(self.study_ids),
            "threshold": self.threshold,
            "scrape_intensity": self.scrape_intensity,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobPayload":
        return cls(
            study_ids=tuple(str(value) for value in data.get("study_ids") or ()),
            threshold=float(data.get("threshold") or 0),
            scrape_intensity=data.get("scrape_intensity") or INTENSITY_FAST,
        )


@dataclass
class ScheduledJob:
    """Persisted representation of a queued job."""

    id: str
    created_at: str
    scheduled_at: str
    status: str
    payload: JobPayload
    last_run_at: str | None = None
    last_heartbeat_at: str | None = None
    last_error: str | None = None
    run_id: str | None = None
    execution_duration_ms: int | None = None
    idempotency_key: str | None = None


@dataclass
class RunRecord:
    """Persisted representation of an execution batch."""

    id: str
    run_type: str
    executed_at: str
    status: str
    total_studies: int
    null_count: int
    opportunities_count: int
    blocked_count: int
    price_diff_threshold_eur: float
    scrape_intensity: str
    last_heartbeat_at: str | None = None
    error_message: str | None = None
    completed_at: str | None = None


@dataclass
class ResultRecord:
    """Persisted per-study verdict within a run."""

    id: int
    run_id: str
    study_id: str
    status: str
    target_market_price: float | None
    best_source_price: float | None
    price_difference: float | None
    target_stats: Dict[str, Any]
    error_reason: str | None
    decision_hash: str | None
    created_at: str


@dataclass
class CandidateRecord:
    """Persisted interesting source listing attached to a result."""

    id: int
    result_id: int
    listing_url: str
    title: str
    price: float
    mileage: int | None
    year: int | None
    trim: str | None
    status: str
    full_description: str | None = None


@dataclass
class ExecutionSummary:
    """Counters returned by a single execute-studies call."""

    run_id: str
    processed: int = 0
    opportunities: int = 0
    null: int = 0
    blocked: int = 0
    statuses: Dict[str, str] = field(default_factory=dict)


@dataclass
class JobBatchSummary:
    """Counters returned by one pass over due scheduled jobs."""

    claimed: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    job_ids: List[str] = field(default_factory=list)


@dataclass
class ScrapePageRecord:
    """Persisted page progress for one market of a study within a run."""

    id: int
    run_id: str
    study_id: str
    market: str
    domain: str
    base_url: str
    page_number: int
    fetched_url: str
    extracted_count: int
    new_unique_count: int
    created_at: str
