"""SQLite-backed persistence for studies, runs, results and the job queue.

Every write is either insert-once, guarded by a uniqueness constraint, or a
conditional update guarded by a status precondition. No other locking is used,
so several orchestrators can share one database file.
"""

from __future__ import annotations

import datetime as dt
import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from .models import (
    CANDIDATE_STATUSES,
    JOB_CANCELLED,
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_PENDING,
    JOB_RUNNING,
    RESULT_BLOCKED,
    RESULT_NULL,
    RESULT_OPPORTUNITIES,
    RUN_COMPLETED,
    RUN_FAILED,
    RUN_RUNNING,
    CandidateRecord,
    JobPayload,
    ResultRecord,
    RunRecord,
    ScheduledJob,
    ScrapedListing,
    ScrapedPage,
    ScrapePageRecord,
    StudyCriteria,
)

logger = logging.getLogger(__name__)

SQLITE_PREFIX = "sqlite://"
MAX_ERROR_LENGTH = 1000
STALE_RUN_MESSAGE = "Marked as stale due to parent scheduled job timeout"

_RESULT_COUNTERS = {
    RESULT_NULL: "null_count",
    RESULT_OPPORTUNITIES: "opportunities_count",
    RESULT_BLOCKED: "blocked_count",
}

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS studies (
        id TEXT PRIMARY KEY,
        brand TEXT NOT NULL,
        model TEXT NOT NULL,
        min_year INTEGER NOT NULL DEFAULT 0,
        max_mileage INTEGER NOT NULL DEFAULT 0,
        target_url TEXT NOT NULL,
        target_country TEXT,
        source_url TEXT NOT NULL,
        source_country TEXT,
        trim_target TEXT,
        trim_source TEXT,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS runs (
        id TEXT PRIMARY KEY,
        run_type TEXT NOT NULL CHECK (run_type IN ('instant', 'scheduled')),
        executed_at TEXT NOT NULL,
        status TEXT NOT NULL CHECK (status IN ('running', 'completed', 'failed')),
        total_studies INTEGER NOT NULL DEFAULT 0,
        null_count INTEGER NOT NULL DEFAULT 0,
        opportunities_count INTEGER NOT NULL DEFAULT 0,
        blocked_count INTEGER NOT NULL DEFAULT 0,
        price_diff_threshold_eur REAL NOT NULL,
        scrape_intensity TEXT NOT NULL DEFAULT 'fast',
        last_heartbeat_at TEXT,
        error_message TEXT,
        completed_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS results (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        run_id TEXT NOT NULL,
        study_id TEXT NOT NULL,
        status TEXT NOT NULL CHECK (status IN ('NULL', 'OPPORTUNITIES', 'BLOCKED')),
        target_market_price REAL,
        best_source_price REAL,
        price_difference REAL,
        target_stats TEXT,
        error_reason TEXT,
        decision_hash TEXT,
        created_at TEXT NOT NULL,
        UNIQUE (run_id, study_id),
        FOREIGN KEY(run_id) REFERENCES runs(id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS candidate_listings (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        result_id INTEGER NOT NULL,
        listing_url TEXT NOT NULL,
        title TEXT NOT NULL,
        price REAL NOT NULL,
        mileage INTEGER,
        year INTEGER,
        trim TEXT,
        full_description TEXT,
        status TEXT NOT NULL DEFAULT 'NEW'
            CHECK (status IN ('NEW', 'APPROVED', 'REJECTED', 'COMPLETED', 'DELETED')),
        created_at TEXT NOT NULL,
        UNIQUE (listing_url, result_id),
        FOREIGN KEY(result_id) REFERENCES results(id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS scheduled_jobs (
        id TEXT PRIMARY KEY,
        created_at TEXT NOT NULL,
        scheduled_at TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending'
            CHECK (status IN ('pending', 'running', 'completed', 'failed', 'cancelled')),
        payload TEXT NOT NULL,
        last_run_at TEXT,
        last_heartbeat_at TEXT,
        last_error TEXT,
        run_id TEXT,
        execution_duration_ms INTEGER,
        idempotency_key TEXT UNIQUE,
        FOREIGN KEY(run_id) REFERENCES runs(id)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_scheduled_jobs_due
    ON scheduled_jobs (status, scheduled_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS run_logs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        run_id TEXT NOT NULL,
        study_id TEXT,
        stage TEXT NOT NULL,
        status TEXT NOT NULL,
        error_message TEXT,
        details TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS scrape_pages (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        run_id TEXT NOT NULL,
        study_id TEXT NOT NULL,
        market TEXT NOT NULL CHECK (market IN ('target', 'source')),
        domain TEXT NOT NULL,
        base_url TEXT NOT NULL,
        page_number INTEGER NOT NULL,
        fetched_url TEXT NOT NULL,
        extracted_count INTEGER NOT NULL DEFAULT 0,
        new_unique_count INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        UNIQUE (run_id, study_id, market, page_number),
        FOREIGN KEY(run_id) REFERENCES runs(id)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_scrape_pages_domain
    ON scrape_pages (domain, created_at)
    """,
)


def resolve_sqlite_path(database_url: str) -> Path:
    """Translate a DATABASE_URL such as ``sqlite:///data/arb.db`` into a path."""
    if not database_url:
        raise ValueError("DATABASE_URL must not be empty")
    if database_url.startswith(SQLITE_PREFIX):
        raw_path = database_url[len(SQLITE_PREFIX):]
        # sqlite:///relative.db and sqlite:////absolute.db
        if raw_path.startswith("/"):
            raw_path = raw_path[1:]
        if not raw_path:
            raise ValueError(f"DATABASE_URL has no path: {database_url!r}")
        path = Path(raw_path)
    elif "://" in database_url:
        raise ValueError(f"Only sqlite DATABASE_URLs are supported, got {database_url!r}")
    else:
        path = Path(database_url)
    path = path.expanduser()
    if not path.is_absolute():
        path = Path.cwd() / path
    return path.resolve()


def utc_now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def format_timestamp(value: dt.datetime) -> str:
    """Render a timestamp in the single UTC format used for text comparisons in SQL."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc).isoformat(timespec="microseconds")


def _stamp(value: dt.datetime | None) -> str:
    return format_timestamp(value or utc_now())


def _truncate(message: str) -> str:
    return message[:MAX_ERROR_LENGTH]


@dataclass
class Database:
    """Thin wrapper around sqlite3 for the job queue and study results."""

    path: Path

    def connect(self) -> sqlite3.Connection:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.path, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def session(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection that commits on success and is always closed."""
        conn = self.connect()
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def initialize(self) -> None:
        with self.session() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    # Studies ---------------------------------------------------------------

    def upsert_study(self, study: StudyCriteria) -> None:
        with self.session() as conn:
            conn.execute(
                """
                INSERT INTO studies (
                    id, brand, model, min_year, max_mileage, target_url, target_country,
                    source_url, source_country, trim_target, trim_source, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    brand=excluded.brand,
                    model=excluded.model,
                    min_year=excluded.min_year,
                    max_mileage=excluded.max_mileage,
                    target_url=excluded.target_url,
                    target_country=excluded.target_country,
                    source_url=excluded.source_url,
                    source_country=excluded.source_country,
                    trim_target=excluded.trim_target,
                    trim_source=excluded.trim_source,
                    updated_at=excluded.updated_at
                """,
                (
                    study.id,
                    study.brand,
                    study.model,
                    study.min_year,
                    study.max_mileage,
                    study.target_url,
                    study.target_country,
                    study.source_url,
                    study.source_country,
                    study.trim_target,
                    study.trim_source,
                    _stamp(None),
                ),
            )

    def fetch_studies(self, study_ids: Sequence[str] | None = None) -> List[StudyCriteria]:
        """Return studies in the requested order, skipping unknown ids."""
        with self.session() as conn:
            if study_ids is None:
                rows = conn.execute("SELECT * FROM studies ORDER BY id").fetchall()
                return [_study_from_row(row) for row in rows]
            if not study_ids:
                return []
            placeholders = ", ".join("?" for _ in study_ids)
            rows = conn.execute(
                f"SELECT * FROM studies WHERE id IN ({placeholders})",
                tuple(study_ids),
            ).fetchall()
        by_id = {row["id"]: _study_from_row(row) for row in rows}
        missing = [study_id for study_id in study_ids if study_id not in by_id]
        if missing:
            logger.warning("Unknown study ids skipped: %s", ", ".join(missing))
        return [by_id[study_id] for study_id in study_ids if study_id in by_id]

    # Runs ------------------------------------------------------------------

    def create_run(
        self,
        run_type: str,
        total_studies: int,
        threshold: float,
        scrape_intensity: str,
        executed_at: dt.datetime | None = None,
    ) -> str:
        run_id = str(uuid.uuid4())
        stamp = _stamp(executed_at)
        with self.session() as conn:
            conn.execute(
                """
                INSERT INTO runs (
                    id, run_type, executed_at, status, total_studies,
                    price_diff_threshold_eur, scrape_intensity, last_heartbeat_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    run_id,
                    run_type,
                    stamp,
                    RUN_RUNNING,
                    total_studies,
                    threshold,
                    scrape_intensity,
                    stamp,
                ),
            )
        return run_id

    def get_run(self, run_id: str) -> Optional[RunRecord]:
        with self.session() as conn:
            row = conn.execute("SELECT * FROM runs WHERE id = ?", (run_id,)).fetchone()
        return _run_from_row(row) if row else None

    def record_run_heartbeat(self, run_id: str, at: dt.datetime | None = None) -> bool:
        with self.session() as conn:
            cursor = conn.execute(
                "UPDATE runs SET last_heartbeat_at = ? WHERE id = ? AND status = ?",
                (_stamp(at), run_id, RUN_RUNNING),
            )
            return cursor.rowcount == 1

    def complete_run(self, run_id: str, at: dt.datetime | None = None) -> bool:
        with self.session() as conn:
            cursor = conn.execute(
                """
                UPDATE runs SET status = ?, completed_at = ?
                WHERE id = ? AND status = ?
                """,
                (RUN_COMPLETED, _stamp(at), run_id, RUN_RUNNING),
            )
            return cursor.rowcount == 1

    def fail_run(self, run_id: str, error: str, at: dt.datetime | None = None) -> bool:
        with self.session() as conn:
            cursor = conn.execute(
                """
                UPDATE runs SET status = ?, error_message = ?, completed_at = ?
                WHERE id = ? AND status = ?
                """,
                (RUN_FAILED, _truncate(error), _stamp(at), run_id, RUN_RUNNING),
            )
            return cursor.rowcount == 1

    # Results ---------------------------------------------------------------

    def record_result(
        self,
        run_id: str,
        study_id: str,
        status: str,
        *,
        target_market_price: float | None = None,
        best_source_price: float | None = None,
        price_difference: float | None = None,
        target_stats: Dict[str, Any] | None = None,
        error_reason: str | None = None,
        decision_hash: str | None = None,
        candidates: Sequence[Tuple[ScrapedListing, float]] = (),
    ) -> Optional[int]:
        """Store a study verdict, bump the run counter and attach candidates.

        The three writes share one transaction: either all of them land or
        none do. A second call for the same run and study is a no-op that
        returns None and leaves the first row untouched.
        """
        column = _RESULT_COUNTERS[status]
        try:
            with self.session() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO results (
                        run_id, study_id, status, target_market_price, best_source_price,
                        price_difference, target_stats, error_reason, decision_hash, created_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        run_id,
                        study_id,
                        status,
                        target_market_price,
                        best_source_price,
                        price_difference,
                        json.dumps(target_stats or {}, sort_keys=True),
                        _truncate(error_reason) if error_reason else None,
                        decision_hash,
                        _stamp(None),
                    ),
                )
                result_id = cursor.lastrowid
                conn.execute(
                    f"UPDATE runs SET {column} = {column} + 1 WHERE id = ?",
                    (run_id,),
                )
                _insert_candidates(conn, result_id, candidates)
                return result_id
        except sqlite3.IntegrityError as exc:
            if "UNIQUE constraint failed: results" not in str(exc):
                raise
            logger.info("Result for study %s in run %s already recorded", study_id, run_id)
            return None

    def fetch_results(self, run_id: str) -> List[ResultRecord]:
        with self.session() as conn:
            rows = conn.execute(
                "SELECT * FROM results WHERE run_id = ? ORDER BY id", (run_id,)
            ).fetchall()
        return [_result_from_row(row) for row in rows]

    def fetch_candidates(self, result_id: int) -> List[CandidateRecord]:
        with self.session() as conn:
            rows = conn.execute(
                "SELECT * FROM candidate_listings WHERE result_id = ? ORDER BY price, id",
                (result_id,),
            ).fetchall()
        return [
            CandidateRecord(
                id=row["id"],
                result_id=row["result_id"],
                listing_url=row["listing_url"],
                title=row["title"],
                price=row["price"],
                mileage=row["mileage"],
                year=row["year"],
                trim=row["trim"],
                status=row["status"],
                full_description=row["full_description"],
            )
            for row in rows
        ]

    def update_candidate_status(self, candidate_id: int, status: str) -> bool:
        if status not in CANDIDATE_STATUSES:
            raise ValueError(f"Unknown candidate status: {status!r}")
        with self.session() as conn:
            cursor = conn.execute(
                "UPDATE candidate_listings SET status = ? WHERE id = ?",
                (status, candidate_id),
            )
            return cursor.rowcount == 1

    # Run logs --------------------------------------------------------------

    def add_run_log(
        self,
        run_id: str,
        stage: str,
        status: str,
        study_id: str | None = None,
        error_message: str | None = None,
        details: Dict[str, Any] | None = None,
    ) -> None:
        with self.session() as conn:
            conn.execute(
                """
                INSERT INTO run_logs (run_id, study_id, stage, status, error_message, details, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    run_id,
                    study_id,
                    stage,
                    status,
                    _truncate(error_message) if error_message else None,
                    json.dumps(details or {}, sort_keys=True, default=str),
                    _stamp(None),
                ),
            )

    def fetch_run_logs(self, run_id: str) -> List[Dict[str, Any]]:
        with self.session() as conn:
            rows = conn.execute(
                "SELECT * FROM run_logs WHERE run_id = ? ORDER BY id", (run_id,)
            ).fetchall()
        entries = []
        for row in rows:
            entry = dict(row)
            entry["details"] = json.loads(row["details"] or "{}")
            entries.append(entry)
        return entries

    # Scrape progress -------------------------------------------------------

    def record_scrape_pages(
        self,
        run_id: str,
        study_id: str,
        market: str,
        domain: str,
        base_url: str,
        pages: Sequence[ScrapedPage],
    ) -> int:
        """Store per-page pagination progress; pages already stored are skipped."""
        inserted = 0
        stamp = _stamp(None)
        with self.session() as conn:
            for page in pages:
                cursor = conn.execute(
                    """
                    INSERT INTO scrape_pages (
                        run_id, study_id, market, domain, base_url, page_number,
                        fetched_url, extracted_count, new_unique_count, created_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(run_id, study_id, market, page_number) DO NOTHING
                    """,
                    (
                        run_id,
                        study_id,
                        market,
                        domain,
                        base_url,
                        page.page_number,
                        page.fetched_url,
                        page.extracted_count,
                        page.new_unique_count,
                        stamp,
                    ),
                )
                inserted += cursor.rowcount
        return inserted

    def fetch_scrape_pages(
        self, run_id: str, study_id: str | None = None
    ) -> List[ScrapePageRecord]:
        query = "SELECT * FROM scrape_pages WHERE run_id = ?"
        params: List[Any] = [run_id]
        if study_id is not None:
            query += " AND study_id = ?"
            params.append(study_id)
        with self.session() as conn:
            rows = conn.execute(query + " ORDER BY id", params).fetchall()
        return [ScrapePageRecord(**dict(row)) for row in rows]

    # Job queue -------------------------------------------------------------

    def schedule_job(
        self,
        payload: JobPayload,
        scheduled_at: dt.datetime,
        idempotency_key: str | None = None,
    ) -> str:
        """Queue a job, returning the existing id when the idempotency key was seen."""
        job_id = str(uuid.uuid4())
        try:
            with self.session() as conn:
                conn.execute(
                    """
                    INSERT INTO scheduled_jobs (id, created_at, scheduled_at, status, payload, idempotency_key)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        job_id,
                        _stamp(None),
                        format_timestamp(scheduled_at),
                        JOB_PENDING,
                        json.dumps(payload.to_dict(), sort_keys=True),
                        idempotency_key,
                    ),
                )
        except sqlite3.IntegrityError:
            if idempotency_key is None:
                raise
            with self.session() as conn:
                row = conn.execute(
                    "SELECT id FROM scheduled_jobs WHERE idempotency_key = ?",
                    (idempotency_key,),
                ).fetchone()
            if row is None:
                raise
            logger.info("Job with idempotency key %s already scheduled", idempotency_key)
            return row["id"]
        return job_id

    def get_job(self, job_id: str) -> Optional[ScheduledJob]:
        with self.session() as conn:
            row = conn.execute("SELECT * FROM scheduled_jobs WHERE id = ?", (job_id,)).fetchone()
        return _job_from_row(row) if row else None

    def fetch_due_jobs(self, now: dt.datetime | None = None, limit: int = 5) -> List[ScheduledJob]:
        with self.session() as conn:
            rows = conn.execute(
                """
                SELECT * FROM scheduled_jobs
                WHERE status = ? AND scheduled_at <= ?
                ORDER BY scheduled_at, created_at
                LIMIT ?
                """,
                (JOB_PENDING, _stamp(now), limit),
            ).fetchall()
        return [_job_from_row(row) for row in rows]

    def claim_job(self, job_id: str, now: dt.datetime | None = None) -> bool:
        """Atomically move a pending job to running. Only one claimant can win."""
        stamp = _stamp(now)
        with self.session() as conn:
            cursor = conn.execute(
                """
                UPDATE scheduled_jobs
                SET status = ?, last_run_at = ?, last_heartbeat_at = ?
                WHERE id = ? AND status = ?
                """,
                (JOB_RUNNING, stamp, stamp, job_id, JOB_PENDING),
            )
            return cursor.rowcount == 1

    def record_job_heartbeat(self, job_id: str, at: dt.datetime | None = None) -> bool:
        with self.session() as conn:
            cursor = conn.execute(
                "UPDATE scheduled_jobs SET last_heartbeat_at = ? WHERE id = ? AND status = ?",
                (_stamp(at), job_id, JOB_RUNNING),
            )
            return cursor.rowcount == 1

    def link_job_run(self, job_id: str, run_id: str) -> bool:
        with self.session() as conn:
            cursor = conn.execute(
                "UPDATE scheduled_jobs SET run_id = ? WHERE id = ? AND status = ?",
                (run_id, job_id, JOB_RUNNING),
            )
            return cursor.rowcount == 1

    def complete_job(self, job_id: str, duration_ms: int) -> bool:
        with self.session() as conn:
            cursor = conn.execute(
                """
                UPDATE scheduled_jobs
                SET status = ?, execution_duration_ms = ?, last_error = NULL
                WHERE id = ? AND status = ?
                """,
                (JOB_COMPLETED, duration_ms, job_id, JOB_RUNNING),
            )
            return cursor.rowcount == 1

    def fail_job(self, job_id: str, error: str, duration_ms: int | None = None) -> bool:
        with self.session() as conn:
            cursor = conn.execute(
                """
                UPDATE scheduled_jobs
                SET status = ?, last_error = ?, execution_duration_ms = ?
                WHERE id = ? AND status = ?
                """,
                (JOB_FAILED, _truncate(error), duration_ms, job_id, JOB_RUNNING),
            )
            return cursor.rowcount == 1

    def cancel_job(self, job_id: str) -> bool:
        """Cancel a job that has not been claimed yet."""
        with self.session() as conn:
            cursor = conn.execute(
                "UPDATE scheduled_jobs SET status = ? WHERE id = ? AND status = ?",
                (JOB_CANCELLED, job_id, JOB_PENDING),
            )
            return cursor.rowcount == 1

    def reschedule_job(self, job_id: str, scheduled_at: dt.datetime) -> bool:
        """Move the execution time of a job that has not been claimed yet."""
        with self.session() as conn:
            cursor = conn.execute(
                "UPDATE scheduled_jobs SET scheduled_at = ? WHERE id = ? AND status = ?",
                (format_timestamp(scheduled_at), job_id, JOB_PENDING),
            )
            return cursor.rowcount == 1

    def reap_stale_jobs(
        self,
        now: dt.datetime | None = None,
        heartbeat_timeout: float = 600,
        max_runtime: float = 7200,
    ) -> List[str]:
        """Fail running jobs whose heartbeat went silent or that ran too long.

        The staleness test is repeated inside each UPDATE, so a job that beats
        between the scan and the write is left alone.
        """
        now = now or utc_now()
        heartbeat_cutoff = format_timestamp(now - dt.timedelta(seconds=heartbeat_timeout))
        runtime_cutoff = format_timestamp(now - dt.timedelta(seconds=max_runtime))
        stale_clause = """
            status = 'running' AND (
                COALESCE(last_heartbeat_at, last_run_at, created_at) < ?
                OR COALESCE(last_run_at, created_at) < ?
            )
        """
        reaped: List[str] = []
        with self.session() as conn:
            rows = conn.execute(
                f"SELECT id, run_id, last_run_at, created_at FROM scheduled_jobs WHERE {stale_clause}",
                (heartbeat_cutoff, runtime_cutoff),
            ).fetchall()
        for row in rows:
            started = row["last_run_at"] or row["created_at"]
            if started < runtime_cutoff:
                message = f"Job exceeded maximum runtime of {int(max_runtime)} seconds"
            else:
                message = f"Job marked as stale - no heartbeat for {int(heartbeat_timeout)} seconds"
            with self.session() as conn:
                cursor = conn.execute(
                    f"""
                    UPDATE scheduled_jobs SET status = 'failed', last_error = ?
                    WHERE id = ? AND {stale_clause}
                    """,
                    (message, row["id"], heartbeat_cutoff, runtime_cutoff),
                )
                if cursor.rowcount != 1:
                    continue
            reaped.append(row["id"])
            logger.warning("Reaped stale job %s: %s", row["id"], message)
            if row["run_id"]:
                self.fail_run(row["run_id"], STALE_RUN_MESSAGE, at=now)
        return reaped

    def reap_orphaned_runs(
        self,
        now: dt.datetime | None = None,
        heartbeat_timeout: float = 600,
    ) -> List[str]:
        """Fail running runs with a silent heartbeat that no running job owns."""
        now = now or utc_now()
        cutoff = format_timestamp(now - dt.timedelta(seconds=heartbeat_timeout))
        with self.session() as conn:
            rows = conn.execute(
                """
                SELECT r.id FROM runs r
                WHERE r.status = 'running'
                  AND COALESCE(r.last_heartbeat_at, r.executed_at) < ?
                  AND NOT EXISTS (
                      SELECT 1 FROM scheduled_jobs j
                      WHERE j.run_id = r.id AND j.status = 'running'
                  )
                """,
                (cutoff,),
            ).fetchall()
        reaped = []
        message = f"Marked as stale - no heartbeat for {int(heartbeat_timeout)} seconds"
        for row in rows:
            if self.fail_run(row["id"], message, at=now):
                logger.warning("Reaped orphaned run %s", row["id"])
                reaped.append(row["id"])
        return reaped


def _insert_candidates(
    conn: sqlite3.Connection,
    result_id: int,
    candidates: Sequence[Tuple[ScrapedListing, float]],
) -> int:
    """Store interesting listings with their EUR price; duplicates are skipped."""
    inserted = 0
    stamp = _stamp(None)
    for listing, price_eur in candidates:
        if not listing.listing_url:
            continue
        cursor = conn.execute(
            """
            INSERT INTO candidate_listings (
                result_id, listing_url, title, price, mileage, year, trim,
                full_description, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(listing_url, result_id) DO NOTHING
            """,
            (
                result_id,
                listing.listing_url,
                listing.title,
                price_eur,
                listing.mileage,
                listing.year,
                listing.trim,
                listing.description or None,
                stamp,
            ),
        )
        inserted += cursor.rowcount
    return inserted


def _study_from_row(row: sqlite3.Row) -> StudyCriteria:
    return StudyCriteria(
        id=row["id"],
        brand=row["brand"],
        model=row["model"],
        min_year=row["min_year"] or 0,
        max_mileage=row["max_mileage"] or 0,
        target_url=row["target_url"],
        target_country=row["target_country"] or "",
        source_url=row["source_url"],
        source_country=row["source_country"] or "",
        trim_target=row["trim_target"],
        trim_source=row["trim_source"],
    )


def _run_from_row(row: sqlite3.Row) -> RunRecord:
    return RunRecord(
        id=row["id"],
        run_type=row["run_type"],
        executed_at=row["executed_at"],
        status=row["status"],
        total_studies=row["total_studies"],
        null_count=row["null_count"],
        opportunities_count=row["opportunities_count"],
        blocked_count=row["blocked_count"],
        price_diff_threshold_eur=row["price_diff_threshold_eur"],
        scrape_intensity=row["scrape_intensity"],
        last_heartbeat_at=row["last_heartbeat_at"],
        error_message=row["error_message"],
        completed_at=row["completed_at"],
    )


def _result_from_row(row: sqlite3.Row) -> ResultRecord:
    return ResultRecord(
        id=row["id"],
        run_id=row["run_id"],
        study_id=row["study_id"],
        status=row["status"],
        target_market_price=row["target_market_price"],
        best_source_price=row["best_source_price"],
        price_difference=row["price_difference"],
        target_stats=json.loads(row["target_stats"] or "{}"),
        error_reason=row["error_reason"],
        decision_hash=row["decision_hash"],
        created_at=row["created_at"],
    )


def _job_from_row(row: sqlite3.Row) -> ScheduledJob:
    return ScheduledJob(
        id=row["id"],
        created_at=row["created_at"],
        scheduled_at=row["scheduled_at"],
        status=row["status"],
        payload=JobPayload.from_dict(json.loads(row["payload"] or "{}")),
        last_run_at=row["last_run_at"],
        last_heartbeat_at=row["last_heartbeat_at"],
        last_error=row["last_error"],
        run_id=row["run_id"],
        execution_duration_ms=row["execution_duration_ms"],
        idempotency_key=row["idempotency_key"],
    )
