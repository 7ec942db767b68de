import json
import logging
import os
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Iterator, Optional

from prometheus_client import CollectorRegistry, Counter, Histogram, push_to_gateway

logger = logging.getLogger(__name__)

# LogRecord attributes that are not caller-supplied extras
_RECORD_FIELDS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}


class JsonFormatter(logging.Formatter):
    """One JSON object per line; ``extra={...}`` keys become top-level fields."""

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        payload.update({k: v for k, v in record.__dict__.items()
                        if k not in _RECORD_FIELDS and not k.startswith("_")})
        return json.dumps(payload, ensure_ascii=False, default=str)


def setup_logging(level: Optional[str] = None) -> None:
    """Configure the root logger from LOG_LEVEL and LOG_FORMAT (text or json)."""
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(level=getattr(logging, level, logging.INFO),
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    if os.getenv("LOG_FORMAT", "text").lower() == "json":
        for handler in logging.getLogger().handlers:
            handler.setFormatter(JsonFormatter())


@dataclass
class Metrics:
    registry: CollectorRegistry
    pushgateway: Optional[str]
    job: str
    grouping_key: Dict[str, str]
    runs: Optional[Counter] = None
    records: Optional[Counter] = None
    dropped_triggers: Optional[Counter] = None
    fetch_attempts: Optional[Counter] = None
    run_seconds: Optional[Histogram] = None

    @classmethod
    def init(cls) -> "Metrics":
        pushgateway = os.getenv("METRICS_PUSHGATEWAY_URL")
        job = os.getenv("METRICS_JOB_NAME", "sintesis_ingest")
        grouping = {}
        # labels may come as JSON in env
        extra = os.getenv("METRICS_LABELS_JSON")
        if extra:
            try:
                grouping.update(json.loads(extra))
            except ValueError:
                logger.warning("Ignoring malformed METRICS_LABELS_JSON")

        registry = CollectorRegistry()
        m = cls(registry, pushgateway, job, grouping)
        # "kind" is pdf or source; source names stay out of labels
        m.runs = Counter("ingest_runs_total", "Ingestion runs by outcome",
                         labelnames=("kind", "outcome"), registry=registry)
        m.records = Counter("ingest_records_total", "Candidate records by store outcome",
                            labelnames=("kind", "outcome"), registry=registry)
        m.dropped_triggers = Counter("ingest_dropped_triggers_total",
                                     "Triggers dropped because the target was running",
                                     labelnames=("kind",), registry=registry)
        m.fetch_attempts = Counter("ingest_fetch_attempts_total", "External fetch attempts",
                                   labelnames=("outcome",), registry=registry)
        m.run_seconds = Histogram(
            "ingest_run_seconds", "Duration of ingestion runs", labelnames=("kind",),
            buckets=(0.5, 1, 2, 5, 10, 30, 60, 120, 300), registry=registry
        )
        return m

    def push(self) -> None:
        if not self.pushgateway:
            return
        try:
            push_to_gateway(self.pushgateway, job=self.job, registry=self.registry, grouping_key=self.grouping_key)
        except Exception:
            logger.debug("pushgateway failed", exc_info=True)

    # ---- convenience helpers with labels ----
    def observe_run(self, kind: str, summary) -> None:
        outcome = summary.level.value
        self.runs.labels(kind, outcome).inc()
        self.records.labels(kind, "created").inc(summary.created)
        self.records.labels(kind, "duplicate").inc(summary.skipped_duplicate)
        self.records.labels(kind, "updated").inc(summary.updated)

    def inc_dropped_trigger(self, kind: str) -> None:
        self.dropped_triggers.labels(kind).inc()

    def inc_fetch_attempt(self, outcome: str) -> None:
        self.fetch_attempts.labels(outcome).inc()

    @contextmanager
    def timer(self, kind: str) -> Iterator[None]:
        start = time.perf_counter()
        try:
            yield
        finally:
            self.run_seconds.labels(kind).observe(max(0.0, time.perf_counter() - start))
