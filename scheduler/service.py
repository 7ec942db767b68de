"""
Scheduler for unattended ingestion.

This module provides:
- A daily PDF job at a configured wall-clock time and timezone
- Per-source jobs driven by each source's fetch frequency
- At most one concurrent run per target (IDLE -> RUNNING -> IDLE)
- Exponential-backoff retry of transient external fetch failures
"""

import asyncio
import logging
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Set, Union
from zoneinfo import ZoneInfo

from extractor.config import Settings
from extractor.database import ContentStore
from extractor.errors import DownloadError, FetchError
from extractor.models import ExternalSource, FetchResult, LogLevel, RunSummary
from extractor.observability import Metrics
from extractor.processor import IngestionCoordinator
from feeds.fetcher import download_pdf

logger = logging.getLogger(__name__)


class TargetState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Scheduler:
    """Trigger PDF and external source ingestion on schedule or on demand."""

    def __init__(self,
                 coordinator: IngestionCoordinator,
                 store: ContentStore,
                 settings: Settings,
                 metrics: Optional[Metrics] = None,
                 clock: Callable[[], datetime] = _utcnow,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
                 downloader: Callable[..., Path] = download_pdf):
        """
        Initialize the scheduler.

        Args:
            coordinator: Runs a single target and writes its log row
            store: Source of active external sources and log writes
            settings: Job time, timezone, retry and storage settings
            metrics: Optional prometheus counters
            clock: Returns the current aware datetime
            sleep: Awaited between fetch retries
            downloader: Fetches the daily PDF when it is not stored yet
        """
        self.coordinator = coordinator
        self.store = store
        self.settings = settings
        self.metrics = metrics
        self.tz = ZoneInfo(settings.timezone)
        self.job_hour, self.job_minute = settings.pdf_job_hour_minute()

        self._clock = clock
        self._sleep = sleep
        self._downloader = downloader
        self._states: Dict[str, TargetState] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._last_pdf_date: Optional[date] = None
        # Running targets whose dropped trigger is already logged
        self._dropped_while_running: Set[str] = set()

    def state(self, target: str) -> TargetState:
        return self._states.get(target, TargetState.IDLE)

    def local_now(self, now: Optional[datetime] = None) -> datetime:
        return (now or self._clock()).astimezone(self.tz)

    def pdf_path_for(self, publication_date: date) -> Path:
        return Path(self.settings.pdf_storage_dir) / f"{publication_date.isoformat()}.pdf"

    # ---- due checks ---------------------------------------------------

    def pdf_due(self, now: Optional[datetime] = None) -> bool:
        """Due once per local day, at or after the configured time."""
        local = self.local_now(now)
        if self._last_pdf_date == local.date():
            return False
        return (local.hour, local.minute) >= (self.job_hour, self.job_minute)

    def source_due(self, source: ExternalSource, now: Optional[datetime] = None) -> bool:
        if not source.is_active:
            return False
        if source.last_fetch is None:
            return True
        now = now or self._clock()
        last_fetch = source.last_fetch
        if last_fetch.tzinfo is None:
            last_fetch = last_fetch.replace(tzinfo=timezone.utc)
        return now - last_fetch >= timedelta(minutes=source.fetch_frequency_minutes)

    # ---- triggers -----------------------------------------------------

    async def trigger(self,
                      target: str,
                      job: Callable[[], Awaitable[RunSummary]],
                      kind: str = "source") -> Optional[RunSummary]:
        """
        Run ``job`` unless ``target`` is already running.

        A trigger for a running target is dropped and recorded as a warning.
        Any exception escaping the job is recorded as an error; none
        propagates to the caller.
        """
        if self._states.get(target) is TargetState.RUNNING:
            await self._drop(target, kind)
            return None

        self._states[target] = TargetState.RUNNING
        try:
            return await job()
        except Exception as e:
            logger.exception(f"Run for {target} crashed")
            await self._safe_log(LogLevel.ERROR, f"Run for {target} crashed: {e}",
                                 {"target": target, "error": repr(e)})
            return None
        finally:
            self._states[target] = TargetState.IDLE
            self._dropped_while_running.discard(target)

    async def trigger_pdf(self, publication_date: date,
                          pdf_path: Optional[Union[str, Path]] = None) -> Optional[RunSummary]:
        """Ingest the PDF for a date, from ``pdf_path`` or the storage directory."""
        return await self.trigger(f"pdf:{publication_date.isoformat()}",
                                  lambda: self._run_pdf(publication_date, pdf_path),
                                  kind="pdf")

    async def trigger_source(self, source: ExternalSource) -> Optional[RunSummary]:
        return await self.trigger(f"source:{source.id}",
                                  lambda: self.coordinator.run_source_ingestion(
                                      source, fetch=self._fetch_with_retry),
                                  kind="source")

    async def _run_pdf(self, publication_date: date,
                       pdf_path: Optional[Union[str, Path]]) -> RunSummary:
        if pdf_path is not None:
            return await self.coordinator.run_pdf_ingestion(Path(pdf_path), publication_date)

        path = self.pdf_path_for(publication_date)
        if not path.exists() and self.settings.pdf_url:
            url = self.settings.pdf_url.format(date=publication_date.isoformat())
            try:
                await asyncio.to_thread(self._downloader, url, path,
                                        timeout=self.settings.fetch_timeout_seconds,
                                        user_agent=self.settings.user_agent)
            except DownloadError as e:
                logger.error(f"PDF download for {publication_date} failed: {e}")
                summary = RunSummary(target=f"pdf:{publication_date.isoformat()}", error=str(e))
                await self._safe_log(
                    LogLevel.ERROR,
                    f"PDF ingestion for {publication_date.isoformat()} failed: {e}",
                    {**summary.to_dict(), "pdf_url": url},
                )
                if self.metrics:
                    self.metrics.observe_run("pdf", summary)
                return summary
        return await self.coordinator.run_pdf_ingestion(path, publication_date)

    async def _fetch_with_retry(self, source: ExternalSource) -> FetchResult:
        """Fetch with exponential backoff on NETWORK and HTTP_STATUS failures."""
        attempts = max(1, self.settings.fetch_max_attempts)
        for attempt in range(1, attempts + 1):
            try:
                result = await self.coordinator.fetch_source(source)
            except FetchError as e:
                if self.metrics:
                    self.metrics.inc_fetch_attempt(e.kind.value)
                if not e.retryable or attempt == attempts:
                    raise
                delay = self.settings.retry_base_delay_seconds * 2 ** (attempt - 1)
                logger.warning(f"Fetch of {source.name} failed (attempt {attempt}/{attempts}): {e}; "
                               f"retrying in {delay:.1f}s")
                await self._sleep(delay)
            else:
                if self.metrics:
                    self.metrics.inc_fetch_attempt("ok")
                return result

    # ---- loop ---------------------------------------------------------

    async def tick(self) -> List[asyncio.Task]:
        """
        Start every due job and return their tasks.

        A due source still running from an earlier tick is not re-triggered;
        its dropped trigger is logged once per run.
        Sources are reloaded each tick so configuration changes apply
        without a restart.
        """
        now = self._clock()
        started: List[asyncio.Task] = []

        if self.pdf_due(now):
            today = self.local_now(now).date()
            self._last_pdf_date = today
            logger.info(f"Daily PDF job due for {today}")
            started.append(self._spawn(self.trigger_pdf(today)))

        try:
            sources = await self.store.list_active_sources()
        except Exception as e:
            logger.error(f"Could not load external sources: {e}")
            sources = []

        for source in sources:
            if not self.source_due(source, now):
                continue
            target = f"source:{source.id}"
            if self.state(target) is TargetState.RUNNING:
                # once per run, not once per poll
                if target not in self._dropped_while_running:
                    await self._drop(target, "source")
                continue
            started.append(self._spawn(self.trigger_source(source)))

        return started

    async def run_once(self) -> None:
        tasks = await self.tick()
        if tasks:
            await asyncio.gather(*tasks)

    async def run_forever(self, poll_seconds: Optional[float] = None) -> None:
        poll = poll_seconds or self.settings.scheduler_poll_seconds
        logger.info(f"Scheduler started: PDF job at {self.job_hour:02d}:{self.job_minute:02d} "
                    f"{self.settings.timezone}, polling every {poll}s")
        try:
            while True:
                await self.tick()
                if self.metrics:
                    await asyncio.to_thread(self.metrics.push)
                await asyncio.sleep(poll)
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        """Wait for in-flight runs to finish."""
        if self._tasks:
            logger.info(f"Waiting for {len(self._tasks)} running jobs")
            await asyncio.gather(*self._tasks, return_exceptions=True)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _drop(self, target: str, kind: str) -> None:
        message = f"Trigger for {target} dropped: a run is already in progress"
        logger.warning(message)
        self._dropped_while_running.add(target)
        if self.metrics:
            self.metrics.inc_dropped_trigger(kind)
        await self._safe_log(LogLevel.WARN, message, {"target": target})

    async def _safe_log(self, level: LogLevel, message: str, details: Dict) -> None:
        try:
            await self.store.append_log(level, message, details)
        except Exception:
            logger.exception(f"Could not write log row: {message}")
