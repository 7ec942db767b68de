#!/usr/bin/env python3
"""Re-run PDF ingestion for stored editions over a date range."""

import argparse
import asyncio
import logging
from datetime import datetime, timedelta

from extractor.config import Settings
from extractor.database import ContentStore
from extractor.observability import setup_logging
from extractor.processor import create_coordinator

logger = logging.getLogger(__name__)


def parse_date(value: str) -> datetime.date:
    return datetime.strptime(value, "%Y-%m-%d").date()


async def process_range(start: datetime.date, end: datetime.date, settings: Settings) -> int:
    """Ingest every stored PDF in the range; returns the number of failed runs."""
    store = ContentStore(settings.database_url, settings.db_pool_size, settings.log_retention_days)
    coordinator = create_coordinator(settings, store)
    await store.initialize()
    failures = 0
    try:
        current = start
        while current <= end:
            pdf_path = settings.pdf_storage_dir / f"{current.isoformat()}.pdf"
            if not pdf_path.exists():
                logger.warning(f"No stored PDF for {current}, skipping")
            else:
                summary = await coordinator.run_pdf_ingestion(pdf_path, current)
                failures += summary.failed
            current += timedelta(days=1)
    finally:
        await store.close()
    return failures


def main():
    parser = argparse.ArgumentParser(description="Re-ingest stored PDF editions")
    parser.add_argument("start", type=parse_date, help="Start date (YYYY-MM-DD)")
    parser.add_argument("end", type=parse_date, help="End date (YYYY-MM-DD)")
    args = parser.parse_args()
    if args.start > args.end:
        parser.error("Start date must be before end date")
    setup_logging()
    failures = asyncio.run(process_range(args.start, args.end, Settings()))
    raise SystemExit(1 if failures else 0)


if __name__ == "__main__":
    main()
