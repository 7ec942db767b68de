"""
Ingestion coordinator for the press-clipping pipeline.

This module coordinates a single ingestion run by:
- Running PDF extraction or an external fetch off the event loop
- Persisting candidates in per-page / per-fetch transactions
- Counting new, duplicate and revised records
- Writing exactly one log row per run
"""

import asyncio
import logging
from collections import defaultdict
from contextlib import nullcontext
from datetime import date, datetime
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Union

from feeds.fetcher import ExternalSourceFetcher

from .config import Settings
from .database import ContentStore
from .errors import FetchError, FetchErrorKind, IngestionError, PersistenceError
from .heuristics import ExtractionConfig, load_extraction_config
from .models import Candidate, ExternalSource, ExtractionResult, FetchResult, RunSummary
from .normalize import TextNormalizer
from .observability import Metrics
from .pdf_extractor import PDFExtractor

logger = logging.getLogger(__name__)

FetchCallable = Callable[[ExternalSource], Awaitable[FetchResult]]


class IngestionCoordinator:
    """Run one ingestion target end to end and record the outcome."""

    def __init__(self,
                 store: ContentStore,
                 pdf_extractor: PDFExtractor,
                 fetcher: Optional[ExternalSourceFetcher] = None,
                 metrics: Optional[Metrics] = None,
                 fetch_deadline: Optional[float] = 120.0):
        self.store = store
        self.pdf_extractor = pdf_extractor
        self.fetcher = fetcher
        self.metrics = metrics
        self.fetch_deadline = fetch_deadline

    async def run_pdf_ingestion(self, pdf_path: Union[str, Path], publication_date: date) -> RunSummary:
        """
        Extract a PDF and persist its candidates.

        Each page is committed in its own transaction, so a store failure
        midway keeps the pages already committed and fails the run.

        Returns:
            Run summary; ``error`` is set when the run failed
        """
        pdf_path = Path(pdf_path)
        summary = RunSummary(target=f"pdf:{publication_date.isoformat()}")
        logger.info(f"Starting PDF ingestion of {pdf_path} for {publication_date}")

        with self._timer("pdf"):
            try:
                result = await asyncio.to_thread(self.pdf_extractor.extract, pdf_path, publication_date)
                summary.warnings.extend(result.warnings)
                for page_number, batch in self._page_batches(result).items():
                    logger.debug(f"Storing {len(batch)} candidates from page {page_number}")
                    summary.add(await self.store.store_batch(batch))
            except IngestionError as e:
                logger.error(f"PDF ingestion for {publication_date} failed: {e}")
                summary.error = str(e)

        await self._finish(summary, "pdf",
                           f"PDF ingestion for {publication_date.isoformat()}",
                           {"pdf_path": str(pdf_path)})
        return summary

    async def run_source_ingestion(self,
                                   source: ExternalSource,
                                   fetch: Optional[FetchCallable] = None) -> RunSummary:
        """
        Fetch one external source and persist its articles in one transaction.

        ``fetch`` defaults to a single attempt with the configured fetcher;
        the scheduler passes its retrying variant. The source's last fetch
        time only moves after the batch has committed.
        """
        fetch = fetch or self.fetch_source
        summary = RunSummary(target=f"source:{source.id}")
        logger.info(f"Starting ingestion of source {source.id} ({source.name})")

        with self._timer("source"):
            try:
                result = await fetch(source)
                summary.warnings.extend(result.warnings)
                summary.add(await self.store.store_batch(result.articles, revise_by_url=True))
                await self.store.mark_source_fetched(source.id)
            except IngestionError as e:
                logger.error(f"Ingestion of source {source.name} failed: {e}")
                summary.error = str(e)

        await self._finish(summary, "source",
                           f"External source ingestion for {source.name}",
                           {"source_id": source.id, "source_name": source.name})
        return summary

    async def fetch_source(self, source: ExternalSource) -> FetchResult:
        """
        Single fetch attempt in a worker thread.

        The HTTP timeout bounds each socket read, not the whole response, so
        the attempt as a whole is bounded by ``fetch_deadline``. The worker
        thread cannot be interrupted; it finishes in the background and its
        result is discarded.
        """
        if self.fetcher is None:
            raise RuntimeError("No external source fetcher configured")
        try:
            return await asyncio.wait_for(asyncio.to_thread(self.fetcher.fetch, source),
                                          timeout=self.fetch_deadline)
        except asyncio.TimeoutError:
            raise FetchError(FetchErrorKind.NETWORK,
                             f"{source.name}: no complete response within {self.fetch_deadline}s")

    @staticmethod
    def _page_batches(result: ExtractionResult) -> Dict[int, List[Candidate]]:
        """Group candidates by page, articles keyed by their start page."""
        batches: Dict[int, List[Candidate]] = defaultdict(list)
        for candidate in [*result.articles, *result.images]:
            batches[candidate.page_number or 0].append(candidate)
        return dict(sorted(batches.items()))

    async def _finish(self, summary: RunSummary, kind: str, message: str, extra: Dict) -> None:
        if summary.failed:
            message = f"{message} failed: {summary.error}"
        else:
            message = (f"{message}: {summary.created} new, {summary.skipped_duplicate} duplicates, "
                       f"{summary.updated} revised, {len(summary.warnings)} warnings")
        details = {**summary.to_dict(), **extra}

        try:
            await self.store.append_log(summary.level, message, details)
        except PersistenceError as e:
            logger.error(f"Run log row for {summary.target} was not written: {e}")
        logger.info(message)

        if self.metrics:
            self.metrics.observe_run(kind, summary)

    def _timer(self, kind: str):
        return self.metrics.timer(kind) if self.metrics else nullcontext()


def create_coordinator(settings: Settings,
                       store: ContentStore,
                       config: Optional[ExtractionConfig] = None,
                       metrics: Optional[Metrics] = None) -> IngestionCoordinator:
    """Wire the extractor, fetcher and store from settings."""
    config = config or load_extraction_config(settings.heuristics_path)
    normalizer = TextNormalizer(config)
    fetcher = ExternalSourceFetcher(
        config,
        normalizer,
        timeout=settings.fetch_timeout_seconds,
        user_agent=settings.user_agent,
    )
    return IngestionCoordinator(store, PDFExtractor(config, normalizer), fetcher, metrics,
                                fetch_deadline=settings.fetch_deadline_seconds)


async def main():
    """CLI interface for one-off ingestion runs."""
    import argparse

    from .observability import setup_logging

    parser = argparse.ArgumentParser(description="Run one ingestion target")
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--pdf", type=str, help="Ingest a clipping PDF")
    target.add_argument("--source-id", type=int, help="Ingest an external source by id")
    parser.add_argument("--date", type=str, help="Publication date for --pdf (YYYY-MM-DD)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")

    args = parser.parse_args()

    setup_logging()
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    settings = Settings()
    store = ContentStore(settings.database_url, settings.db_pool_size, settings.log_retention_days)
    coordinator = create_coordinator(settings, store)

    try:
        await store.initialize()

        if args.pdf:
            if not args.date:
                parser.error("--date is required with --pdf")
            try:
                target_date = datetime.strptime(args.date, "%Y-%m-%d").date()
            except ValueError:
                parser.error(f"Invalid date format: {args.date}. Use YYYY-MM-DD")
            summary = await coordinator.run_pdf_ingestion(Path(args.pdf), target_date)
        else:
            source = await store.get_source(args.source_id)
            if source is None:
                parser.error(f"No external source with id {args.source_id}")
            summary = await coordinator.run_source_ingestion(source)

        print(f"Ingestion Results for {summary.target}:")
        print(f"  New records: {summary.created}")
        print(f"  Duplicates: {summary.skipped_duplicate}")
        print(f"  Revised: {summary.updated}")
        print(f"  Warnings: {len(summary.warnings)}")
        for warning in summary.warnings:
            print(f"    {warning}")
        if summary.failed:
            print(f"  Error: {summary.error}")

    finally:
        await store.close()


if __name__ == "__main__":
    asyncio.run(main())
