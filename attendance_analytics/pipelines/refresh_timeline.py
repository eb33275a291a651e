#!/usr/bin/env python3
"""
Timeline refresh pipeline

Recomputes grade and district timeline summaries for a date range:
1. Check the database connection (optionally create the schema)
2. Aggregate, roll up and accumulate each school day
3. Report per-date results

Usage:
    refresh-timeline --start-date 2024-08-15 --end-date 2024-08-30 [--school-year 2024-2025]

Example:
    refresh-timeline --start-date 2024-09-03 --end-date 2024-09-03 --school-id SCH-001 --force
    python -m attendance_analytics.pipelines.refresh_timeline --start-date 2024-08-15 --end-date 2025-06-12
"""

import argparse
import logging
import signal
import sys
import threading
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from sqlalchemy.orm import sessionmaker

from ..calculators.results import RefreshResult
from ..calculators.timeline_service import AttendanceTimelineService
from ..database.connection import get_engine, get_session_factory, init_db, test_connection
from ..exceptions import AttendanceAnalyticsError
from ..utilities.common import format_number, setup_logging
from ..utilities.config import TimelineSettings, load_settings

logger = logging.getLogger(__name__)


class RefreshPipelineRunner:
    """
    Run a timeline refresh and summarize the outcome
    """

    def __init__(
        self,
        start_date: str,
        end_date: str,
        school_year: Optional[str] = None,
        school_ids: Optional[List[str]] = None,
        force_refresh: bool = False,
        create_schema: bool = False,
        settings: Optional[TimelineSettings] = None,
        session_factory: Optional[sessionmaker] = None,
    ):
        """
        Initialize pipeline

        Args:
            start_date: First date (YYYY-MM-DD)
            end_date: Last date (YYYY-MM-DD)
            school_year: School year (e.g., "2024-2025"); derived from start_date if omitted
            school_ids: Optional school filter
            force_refresh: Delete existing summaries before recomputing
            create_schema: Create missing tables before running
            settings: Loaded TimelineSettings
            session_factory: Optional session factory (global database if omitted)
        """
        self.start_date = start_date
        self.end_date = end_date
        self.school_year = school_year
        self.school_ids = school_ids
        self.force_refresh = force_refresh
        self.create_schema = create_schema
        self.settings = settings or load_settings()
        self.session_factory = session_factory

        self.cancel_event = threading.Event()
        self.result: Optional[RefreshResult] = None

    def step_connect(self) -> bool:
        """
        Step 1: Check the database (and create tables if requested)

        Returns:
            True if the database is reachable
        """
        logger.info("\n" + "=" * 60)
        logger.info("STEP 1: CONNECT")
        logger.info("=" * 60)

        engine = self.session_factory.kw["bind"] if self.session_factory else get_engine()
        if not test_connection(engine):
            return False
        if self.create_schema:
            init_db(engine)
            logger.info("Schema created (existing tables untouched)")
        return True

    def step_refresh(self) -> bool:
        """
        Step 2: Refresh every school day in the range

        Returns:
            True if every date was processed without errors
        """
        logger.info("\n" + "=" * 60)
        logger.info("STEP 2: REFRESH TIMELINE SUMMARIES")
        logger.info("=" * 60)

        service = AttendanceTimelineService(
            session_factory=self.session_factory or get_session_factory(),
            settings=self.settings,
        )
        self.result = service.refresh_timeline(
            self.start_date,
            self.end_date,
            school_year=self.school_year,
            school_ids=self.school_ids,
            force_refresh=self.force_refresh,
            cancel_event=self.cancel_event,
        )
        return self.result.success

    def cancel(self, signum=None, frame=None) -> None:
        """Stop after the date currently being processed."""
        logger.warning("Cancellation requested; stopping after the current date")
        self.cancel_event.set()

    def log_summary(self) -> None:
        logger.info("\n" + "=" * 60)
        logger.info("REFRESH SUMMARY")
        logger.info("=" * 60)

        if self.result is None:
            logger.info("No refresh was run")
            return

        result = self.result
        logger.info(f"Run: {result.run_id}")
        logger.info(f"School year: {result.school_year}")
        logger.info(f"School days processed: {format_number(result.school_days_processed)}")
        logger.info(f"Rows written: {format_number(result.records_written)}")
        if result.cancelled:
            logger.info("Run was cancelled before the end of the range")

        failed_days = [day for day in result.days if not day.success]
        if failed_days:
            logger.info(f"\n✗ {len(failed_days)} date(s) with errors:")
            for day in failed_days:
                for error in day.errors:
                    logger.info(f"  - {day.date}: {error}")

    def run(self) -> bool:
        """
        Run the refresh pipeline

        Returns:
            True if the refresh completed without errors
        """
        start_time = datetime.now()

        logger.info("=" * 60)
        logger.info("ATTENDANCE TIMELINE REFRESH")
        logger.info("=" * 60)
        logger.info(f"Range: {self.start_date} to {self.end_date}")
        logger.info(f"School year: {self.school_year or '(from start date)'}")
        logger.info(f"Schools: {', '.join(self.school_ids) if self.school_ids else 'all'}")
        logger.info(f"Force refresh: {self.force_refresh}")

        success = False
        try:
            if self.step_connect():
                logger.info("✓ Connect completed")
                success = self.step_refresh()
            else:
                logger.error("✗ Connect failed")
        except AttendanceAnalyticsError as e:
            logger.error(f"✗ Refresh failed: {e.message}")
            success = False

        self.log_summary()
        duration = datetime.now() - start_time
        logger.info(f"\nDuration: {duration}")
        if success:
            logger.info("✓ REFRESH COMPLETED SUCCESSFULLY")
        else:
            logger.info("✗ REFRESH COMPLETED WITH ERRORS")
        return success


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Recompute attendance timeline summaries for a date range",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--start-date", required=True, help="First date (YYYY-MM-DD)")
    parser.add_argument("--end-date", required=True, help="Last date (YYYY-MM-DD)")
    parser.add_argument(
        "--school-year",
        help="School year (e.g., 2024-2025); defaults to the year containing --start-date",
    )
    parser.add_argument(
        "--school-id",
        action="append",
        dest="school_ids",
        help="Only refresh this school (repeatable)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Delete existing summaries for each date before recomputing",
    )
    parser.add_argument(
        "--init-db",
        action="store_true",
        help="Create missing tables before refreshing",
    )
    parser.add_argument("--config", type=Path, help="Alternate timeline.yaml")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )
    parser.add_argument("--log-file", type=Path, help="Save log to file")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    setup_logging(log_level=args.log_level, log_file=args.log_file)

    try:
        settings = load_settings(args.config)
    except AttendanceAnalyticsError as e:
        logger.error(f"Invalid configuration: {e.message}")
        return 1

    pipeline = RefreshPipelineRunner(
        start_date=args.start_date,
        end_date=args.end_date,
        school_year=args.school_year,
        school_ids=args.school_ids,
        force_refresh=args.force,
        create_schema=args.init_db,
        settings=settings,
    )
    signal.signal(signal.SIGINT, pipeline.cancel)

    success = pipeline.run()

    return 0 if success else 1


if __name__ == "__main__":
    sys.exit(main())
