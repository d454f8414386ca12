"""CLI entrypoint for the ArbWatcher agent."""

from __future__ import annotations

import argparse
import datetime as dt
import json
import logging
import sys
from pathlib import Path
from typing import List

from arbwatcher.config import Settings
from arbwatcher.db import Database, resolve_sqlite_path
from arbwatcher.models import INTENSITY_FAST, INTENSITY_FULL, JobPayload, StudyCriteria
from arbwatcher.runner import StudyRunner

logger = logging.getLogger(__name__)


def configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="ArbWatcher vehicle price arbitrage agent")
    parser.add_argument("--init", action="store_true", help="initialize storage and exit")
    parser.add_argument(
        "--load-studies",
        metavar="FILE",
        type=Path,
        help="insert or update studies from a JSON list",
    )
    parser.add_argument(
        "--run-now",
        nargs="+",
        metavar="STUDY_ID",
        help="execute the given studies immediately",
    )
    parser.add_argument(
        "--schedule",
        nargs="+",
        metavar="STUDY_ID",
        help="queue the given studies for later execution (see --at)",
    )
    parser.add_argument("--cancel", metavar="JOB_ID", help="cancel a pending job")
    parser.add_argument("--reschedule", metavar="JOB_ID", help="move a pending job to --at")
    parser.add_argument(
        "--at",
        type=_parse_when,
        help="ISO-8601 execution time for --schedule/--reschedule (default: now)",
    )
    parser.add_argument("--idempotency-key", help="deduplicate repeated --schedule requests")
    parser.add_argument("--process-due", action="store_true", help="run due jobs once")
    parser.add_argument("--reap", action="store_true", help="fail jobs and runs with stale heartbeats")
    parser.add_argument("--serve", action="store_true", help="poll the job queue until interrupted")
    parser.add_argument(
        "--threshold",
        type=float,
        default=5000.0,
        help="minimum price difference in EUR to report an opportunity",
    )
    parser.add_argument(
        "--intensity",
        choices=(INTENSITY_FAST, INTENSITY_FULL),
        default=INTENSITY_FAST,
        help="scrape only the first result page (fast) or paginate (full)",
    )
    parser.add_argument("--verbose", action="store_true", help="enable debug logging")
    return parser


def _parse_when(value: str) -> dt.datetime:
    try:
        when = dt.datetime.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid ISO-8601 time: {value!r}") from exc
    if when.tzinfo is None:
        when = when.replace(tzinfo=dt.timezone.utc)
    return when


def load_studies(path: Path) -> List[StudyCriteria]:
    """Read study definitions from a JSON list of objects."""
    records = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(records, list):
        raise ValueError(f"{path} must contain a JSON list of studies")
    studies = []
    for record in records:
        studies.append(
            StudyCriteria(
                id=str(record["id"]),
                brand=record["brand"],
                model=record["model"],
                target_url=record["target_url"],
                source_url=record["source_url"],
                min_year=int(record.get("min_year") or 0),
                max_mileage=int(record.get("max_mileage") or 0),
                target_country=record.get("target_country", ""),
                source_country=record.get("source_country", ""),
                trim_target=record.get("trim_target") or record.get("trim"),
                trim_source=record.get("trim_source") or record.get("trim"),
            )
        )
    return studies


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    settings = Settings.from_env()
    database = Database(path=resolve_sqlite_path(settings.database_url))
    runner = StudyRunner(database=database, settings=settings)
    runner.init()

    if args.init:
        return 0

    if args.load_studies:
        studies = load_studies(args.load_studies)
        for study in studies:
            database.upsert_study(study)
        logger.info("Loaded %d studies from %s", len(studies), args.load_studies)
        return 0

    if args.run_now:
        summary = runner.run_instant(args.run_now, args.threshold, args.intensity)
        for result in database.fetch_results(summary.run_id):
            logger.info(
                "%s | %s | target %s EUR | best source %s EUR | diff %s EUR%s",
                result.study_id,
                result.status,
                _money(result.target_market_price),
                _money(result.best_source_price),
                _money(result.price_difference),
                f" | {result.error_reason}" if result.error_reason else "",
            )
        return 0

    if args.schedule:
        payload = JobPayload(
            study_ids=tuple(args.schedule),
            threshold=args.threshold,
            scrape_intensity=args.intensity,
        )
        job_id = database.schedule_job(
            payload,
            args.at or dt.datetime.now(dt.timezone.utc),
            idempotency_key=args.idempotency_key,
        )
        print(job_id)
        return 0

    if args.cancel:
        if not database.cancel_job(args.cancel):
            logger.error("Job %s is not pending and cannot be cancelled", args.cancel)
            return 1
        logger.info("Cancelled job %s", args.cancel)
        return 0

    if args.reschedule:
        if args.at is None:
            parser.error("--reschedule requires --at")
        if not database.reschedule_job(args.reschedule, args.at):
            logger.error("Job %s is not pending and cannot be rescheduled", args.reschedule)
            return 1
        logger.info("Rescheduled job %s to %s", args.reschedule, args.at.isoformat())
        return 0

    if args.reap:
        jobs, runs = runner.reap()
        logger.info("Reaped %d job(s) and %d orphaned run(s)", len(jobs), len(runs))
        return 0

    if args.process_due:
        batch = runner.process_due_jobs()
        logger.info(
            "Processed due jobs: %d claimed, %d completed, %d failed, %d skipped",
            batch.claimed,
            batch.completed,
            batch.failed,
            batch.skipped,
        )
        return 0 if batch.failed == 0 else 1

    if args.serve:
        try:
            runner.serve()
        except KeyboardInterrupt:
            logger.info("Stopping on interrupt")
        return 0

    parser.print_help()
    return 1


def _money(value: float | None) -> str:
    return "N/A" if value is None else f"{value:,.0f}"


if __name__ == "__main__":
    sys.exit(main())
