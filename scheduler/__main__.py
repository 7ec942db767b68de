"""Entry point for running the scheduler module directly"""
import argparse
import asyncio
import logging

from extractor.config import Settings
from extractor.database import ContentStore
from extractor.observability import Metrics, setup_logging
from extractor.processor import create_coordinator
from scheduler.service import Scheduler

logger = logging.getLogger(__name__)


async def run(args) -> None:
    settings = Settings()
    metrics = Metrics.init()
    store = ContentStore(settings.database_url, settings.db_pool_size, settings.log_retention_days)
    coordinator = create_coordinator(settings, store, metrics=metrics)
    scheduler = Scheduler(coordinator, store, settings, metrics=metrics)

    await store.initialize()
    try:
        if args.once:
            await scheduler.run_once()
            metrics.push()
        else:
            await scheduler.run_forever(args.poll)
    finally:
        await store.close()


def main():
    parser = argparse.ArgumentParser(description="Press-clipping ingestion scheduler")
    parser.add_argument("--once", action="store_true", help="Run due jobs once and exit")
    parser.add_argument("--poll", type=float, help="Seconds between schedule checks")
    args = parser.parse_args()

    setup_logging()
    try:
        asyncio.run(run(args))
    except KeyboardInterrupt:
        logger.info("Scheduler stopped")


if __name__ == "__main__":
    main()
