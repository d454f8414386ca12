"""Core execution workflow for ArbWatcher.

Instant runs and scheduled jobs both go through ``StudyRunner.execute_studies``
so the verdict for a study never depends on how the run was triggered.
"""

from __future__ import annotations

import datetime as dt
import logging
import sqlite3
import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from .analysis import (
    execute_study_analysis,
    explain_rejection,
    hash_study_result,
    to_eur,
)
from .config import Settings
from .db import Database, utc_now
from .fetch import (
    SCRAPE_BLOCKED,
    RetryPolicy,
    ScrapeOutcome,
    SearchScraper,
    ZyteClient,
)
from .models import (
    INTENSITY_FAST,
    RESULT_BLOCKED,
    RESULT_NULL,
    RESULT_OPPORTUNITIES,
    RUN_INSTANT,
    RUN_SCHEDULED,
    ExecutionSummary,
    JobBatchSummary,
    ScheduledJob,
    ScrapedListing,
    StudyAnalysis,
    StudyCriteria,
)
from .router import apply_trim, select_parser_by_hostname

logger = logging.getLogger(__name__)

Scraper = Callable[[str, str], ScrapeOutcome]


class Heartbeat:
    """Background thread that keeps a job and its run visibly alive."""

    def __init__(
        self,
        database: Database,
        interval: float,
        run_id: str | None = None,
        job_id: str | None = None,
    ):
        self.database = database
        self.interval = interval
        self.run_id = run_id
        self.job_id = job_id
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def beat(self) -> None:
        if self.job_id:
            self.database.record_job_heartbeat(self.job_id)
        if self.run_id:
            self.database.record_run_heartbeat(self.run_id)

    def _loop(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.beat()
            except sqlite3.Error:
                logger.exception(
                    "Heartbeat write failed for job=%s run=%s", self.job_id, self.run_id
                )

    def __enter__(self) -> "Heartbeat":
        self._thread = threading.Thread(
            target=self._loop,
            name=f"heartbeat-{self.job_id or self.run_id}",
            daemon=True,
        )
        self._thread.start()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join()


@dataclass
class StudyRunner:
    """Coordinates scraping, analysis and persistence for a batch of studies."""

    database: Database
    settings: Settings = field(default_factory=Settings)
    scraper: Optional[Scraper] = None
    clock: Callable[[], dt.datetime] = utc_now

    def init(self) -> None:
        """Initialize required persistence structures."""
        logger.info("Initializing database at %s", self.database.path)
        self.database.initialize()

    def _scrape(self, url: str, intensity: str) -> ScrapeOutcome:
        if self.scraper is None:
            client = ZyteClient(
                api_key=self.settings.zyte_api_key,
                endpoint=self.settings.zyte_endpoint,
                timeout=self.settings.fetch_timeout_seconds,
            )
            search = SearchScraper(
                client=client,
                policy=RetryPolicy(
                    max_retries=self.settings.max_retries,
                    delays=self.settings.retry_delays_seconds,
                ),
                max_pages=self.settings.max_pages,
            )
            self.scraper = search.search
        return self.scraper(url, intensity)

    # Trigger boundary ------------------------------------------------------

    def execute_studies(
        self,
        run_id: str,
        study_ids: Sequence[str],
        threshold: float,
        scrape_intensity: str = INTENSITY_FAST,
        heartbeat: Heartbeat | None = None,
    ) -> ExecutionSummary:
        """Run every study sequentially and record one result row per study."""

        def beat() -> None:
            if heartbeat is not None:
                heartbeat.beat()
            else:
                self.database.record_run_heartbeat(run_id)

        studies = self.database.fetch_studies(study_ids)
        summary = ExecutionSummary(run_id=run_id)
        logger.info(
            "Executing %d studies for run %s (threshold %.0f EUR, %s scrape)",
            len(studies),
            run_id,
            threshold,
            scrape_intensity,
        )

        for study in studies:
            beat()
            try:
                status, inserted = self._execute_study(
                    run_id, study, threshold, scrape_intensity, beat
                )
            except Exception as exc:  # noqa: BLE001
                logger.exception("Study %s failed in run %s", study.id, run_id)
                self.database.add_run_log(
                    run_id,
                    stage="study",
                    status="error",
                    study_id=study.id,
                    error_message=str(exc),
                )
                status, inserted = self._store(
                    run_id, study, RESULT_NULL, error_reason=f"Error: {exc}"
                )

            summary.processed += 1
            summary.statuses[study.id] = status
            if inserted:
                if status == RESULT_OPPORTUNITIES:
                    summary.opportunities += 1
                elif status == RESULT_BLOCKED:
                    summary.blocked += 1
                else:
                    summary.null += 1
            beat()

        self.database.complete_run(run_id)
        logger.info(
            "Run %s completed: %d processed, %d opportunities, %d null, %d blocked",
            run_id,
            summary.processed,
            summary.opportunities,
            summary.null,
            summary.blocked,
        )
        return summary

    def run_instant(
        self,
        study_ids: Sequence[str],
        threshold: float,
        scrape_intensity: str = INTENSITY_FAST,
    ) -> ExecutionSummary:
        """Execute studies right away while the caller waits."""
        run_id = self.database.create_run(
            RUN_INSTANT, len(study_ids), threshold, scrape_intensity, executed_at=self.clock()
        )
        heartbeat = Heartbeat(
            self.database, self.settings.heartbeat_interval_seconds, run_id=run_id
        )
        with heartbeat:
            try:
                return self.execute_studies(
                    run_id, study_ids, threshold, scrape_intensity, heartbeat
                )
            except Exception as exc:
                logger.exception("Instant run %s failed", run_id)
                self.database.fail_run(run_id, str(exc) or type(exc).__name__)
                raise

    # Scheduled jobs --------------------------------------------------------

    def process_due_jobs(self, now: dt.datetime | None = None) -> JobBatchSummary:
        """Claim and execute pending jobs whose scheduled time has passed."""
        now = now or self.clock()
        summary = JobBatchSummary()
        jobs = self.database.fetch_due_jobs(now, limit=self.settings.due_job_limit)
        if jobs:
            logger.info("Found %d due job(s)", len(jobs))
        for job in jobs:
            if not self.database.claim_job(job.id, now):
                logger.info("Job %s was claimed by another worker", job.id)
                summary.skipped += 1
                continue
            summary.claimed += 1
            summary.job_ids.append(job.id)
            if self._run_job(job):
                summary.completed += 1
            else:
                summary.failed += 1
        return summary

    def _run_job(self, job: ScheduledJob) -> bool:
        started = time.monotonic()
        payload = job.payload
        if not payload.study_ids:
            logger.warning("Job %s has no studies", job.id)
            self.database.fail_job(job.id, "No studies in payload", duration_ms=0)
            return False

        run_id = None
        try:
            run_id = self.database.create_run(
                RUN_SCHEDULED,
                len(payload.study_ids),
                payload.threshold,
                payload.scrape_intensity,
                executed_at=self.clock(),
            )
            self.database.link_job_run(job.id, run_id)
            with Heartbeat(
                self.database,
                self.settings.heartbeat_interval_seconds,
                run_id=run_id,
                job_id=job.id,
            ) as heartbeat:
                self.execute_studies(
                    run_id,
                    payload.study_ids,
                    payload.threshold,
                    payload.scrape_intensity,
                    heartbeat,
                )
        except Exception as exc:  # noqa: BLE001
            logger.exception("Job %s failed", job.id)
            error = str(exc) or type(exc).__name__
            self.database.fail_job(job.id, error, duration_ms=_elapsed_ms(started))
            if run_id:
                self.database.fail_run(run_id, error)
            return False

        if not self.database.complete_job(job.id, _elapsed_ms(started)):
            logger.warning("Job %s was no longer running when it finished", job.id)
            return False
        logger.info("Job %s completed with run %s", job.id, run_id)
        return True

    def reap(self, now: dt.datetime | None = None) -> Tuple[List[str], List[str]]:
        """Fail jobs and orphaned runs whose workers stopped sending heartbeats."""
        now = now or self.clock()
        jobs = self.database.reap_stale_jobs(
            now,
            heartbeat_timeout=self.settings.heartbeat_timeout_seconds,
            max_runtime=self.settings.max_runtime_seconds,
        )
        runs = self.database.reap_orphaned_runs(
            now, heartbeat_timeout=self.settings.heartbeat_timeout_seconds
        )
        return jobs, runs

    def serve(
        self,
        stop_event: threading.Event | None = None,
        max_cycles: int | None = None,
    ) -> int:
        """Poll the queue until stopped; returns the number of completed cycles."""
        stop_event = stop_event or threading.Event()
        cycles = 0
        logger.info("Polling for due jobs every %.0fs", self.settings.poll_interval_seconds)
        while not stop_event.is_set():
            try:
                self.reap()
                self.process_due_jobs()
            except sqlite3.Error:
                logger.exception("Queue poll failed")
            cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                break
            stop_event.wait(self.settings.poll_interval_seconds)
        return cycles

    # Per-study pipeline ----------------------------------------------------

    def _execute_study(
        self,
        run_id: str,
        study: StudyCriteria,
        threshold: float,
        intensity: str,
        beat: Callable[[], Any],
    ) -> Tuple[str, bool]:
        rates = self.settings.fx_rates
        target_url = apply_trim(study.target_url, study.trim_target)
        source_url = apply_trim(study.source_url, study.trim_source)
        market_urls = {"target_market_url": target_url, "source_market_url": source_url}

        target = self._scrape(target_url, intensity)
        self._record_pages(run_id, study, "target", target)
        if not target.ok:
            self._log_scrape(run_id, study, "target_scrape", target)
            return self._store(
                run_id,
                study,
                RESULT_BLOCKED if target.status == SCRAPE_BLOCKED else RESULT_NULL,
                error_reason=f"Target market: {target.reason}",
                extra_stats=market_urls,
            )

        baseline = execute_study_analysis(target.listings, (), study, threshold, rates)
        if baseline.filtered_target_count == 0:
            self.database.add_run_log(
                run_id,
                stage="target_filter",
                status="empty",
                study_id=study.id,
                error_message="No valid target listings after filtering",
                details={
                    "raw_count": len(target.listings),
                    "rejections": _rejections(target.listings, study, rates),
                },
            )
            return self._store(
                run_id,
                study,
                RESULT_NULL,
                analysis=baseline,
                error_reason="No valid target listings after filtering",
                extra_stats=market_urls,
            )

        beat()
        source = self._scrape(source_url, intensity)
        self._record_pages(run_id, study, "source", source)
        if not source.ok:
            self._log_scrape(run_id, study, "source_scrape", source)
            return self._store(
                run_id,
                study,
                RESULT_BLOCKED if source.status == SCRAPE_BLOCKED else RESULT_NULL,
                analysis=baseline,
                error_reason=f"Source market: {source.reason}",
                extra_stats=market_urls,
            )

        analysis = execute_study_analysis(target.listings, source.listings, study, threshold, rates)
        error_reason = None
        if analysis.filtered_source_count == 0:
            error_reason = "No valid source listings after filtering"
            self.database.add_run_log(
                run_id,
                stage="source_filter",
                status="empty",
                study_id=study.id,
                error_message=error_reason,
                details={
                    "raw_count": len(source.listings),
                    "rejections": _rejections(source.listings, study, rates),
                },
            )
        elif analysis.status == RESULT_NULL:
            error_reason = (
                f"Price difference {analysis.price_difference:.0f} EUR "
                f"below threshold {threshold:.0f} EUR"
            )
        status, inserted = self._store(
            run_id,
            study,
            analysis.status,
            analysis=analysis,
            error_reason=error_reason,
            extra_stats=market_urls,
        )
        return status, inserted

    def _store(
        self,
        run_id: str,
        study: StudyCriteria,
        status: str,
        analysis: StudyAnalysis | None = None,
        error_reason: str | None = None,
        extra_stats: Dict[str, Any] | None = None,
    ) -> Tuple[str, bool]:
        target_stats: Dict[str, Any] = dict(extra_stats or {})
        fields: Dict[str, Any] = {}
        candidates: List[Tuple[ScrapedListing, float]] = []
        if analysis is not None:
            target_stats.update(analysis.target_stats.to_dict())
            target_stats.update(
                raw_target_count=analysis.raw_target_count,
                raw_source_count=analysis.raw_source_count,
                filtered_target_count=analysis.filtered_target_count,
                filtered_source_count=analysis.filtered_source_count,
            )
            fields = dict(
                target_market_price=analysis.target_median_price or None,
                best_source_price=analysis.best_source_price,
                price_difference=analysis.price_difference,
                decision_hash=hash_study_result(analysis),
            )
            rates = self.settings.fx_rates
            candidates = [
                (listing, to_eur(listing.price, listing.currency, rates))
                for listing in analysis.interesting_listings
            ]
        result_id = self.database.record_result(
            run_id,
            study.id,
            status,
            target_stats=target_stats,
            error_reason=error_reason,
            candidates=candidates,
            **fields,
        )
        if result_id is None:
            return status, False
        logger.info("Study %s in run %s: %s", study.id, run_id, status)
        return status, True

    def _record_pages(
        self, run_id: str, study: StudyCriteria, market: str, outcome: ScrapeOutcome
    ) -> None:
        if not outcome.page_log:
            return
        self.database.record_scrape_pages(
            run_id,
            study.id,
            market,
            select_parser_by_hostname(outcome.url),
            outcome.url,
            outcome.page_log,
        )

    def _log_scrape(
        self, run_id: str, study: StudyCriteria, stage: str, outcome: ScrapeOutcome
    ) -> None:
        logger.warning(
            "Study %s %s ended %s: %s", study.id, stage, outcome.status, outcome.reason
        )
        self.database.add_run_log(
            run_id,
            stage=stage,
            status=outcome.status,
            study_id=study.id,
            error_message=outcome.reason,
            details=dict(outcome.diagnostics, url=outcome.url),
        )


def _rejections(
    listings: Sequence[ScrapedListing], study: StudyCriteria, rates: Mapping[str, float]
) -> Dict[str, int]:
    """Count why listings were rejected, most common first."""
    reasons = Counter(
        reason
        for reason in (explain_rejection(listing, study, rates) for listing in listings)
        if reason
    )
    return dict(reasons.most_common(10))


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
