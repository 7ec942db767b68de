from datetime import datetime, timezone
from typing import Dict, List, Optional

import pytest

from extractor.errors import PersistenceError
from extractor.heuristics import load_extraction_config
from extractor.models import BatchResult, ExternalSource, ImageCandidate, LogEntry, LogLevel
from extractor.normalize import TextNormalizer


class InMemoryContentStore:
    """ContentStore stand-in with the same dedup and transaction semantics."""

    def __init__(self, sources: Optional[List[ExternalSource]] = None):
        self.articles: Dict[tuple, object] = {}
        self.images: Dict[tuple, object] = {}
        self.logs: List[LogEntry] = []
        self.sources = {s.id: s for s in sources or []}
        self.batches = 0
        self.fail_on_batch: Optional[int] = None

    async def store_batch(self, candidates, revise_by_url=False) -> BatchResult:
        self.batches += 1
        if self.fail_on_batch == self.batches:
            raise PersistenceError("Failed to store batch: connection lost")

        articles, images = dict(self.articles), dict(self.images)
        result = BatchResult()
        for candidate in candidates:
            table = images if isinstance(candidate, ImageCandidate) else articles
            if candidate.dedup_key in table:
                result.skipped_duplicate += 1
                continue
            if revise_by_url and not isinstance(candidate, ImageCandidate) and candidate.url:
                previous = next(
                    (key for key, stored in articles.items()
                     if stored.url == candidate.url
                     and key[:2] == candidate.dedup_key[:2]),
                    None,
                )
                if previous is not None:
                    del articles[previous]
                    articles[candidate.dedup_key] = candidate
                    result.updated += 1
                    continue
            table[candidate.dedup_key] = candidate
            result.created += 1

        self.articles, self.images = articles, images
        return result

    async def append_log(self, level, message, details=None) -> int:
        entry = LogEntry(
            level=LogLevel(level),
            message=message,
            details=details,
            created_at=datetime.now(timezone.utc),
            id=len(self.logs) + 1,
        )
        self.logs.append(entry)
        return entry.id

    async def recent_logs(self, limit: int = 1000) -> List[LogEntry]:
        return list(reversed(self.logs))[:limit]

    async def list_active_sources(self) -> List[ExternalSource]:
        return [s for s in self.sources.values() if s.is_active]

    async def get_source(self, source_id: int) -> Optional[ExternalSource]:
        return self.sources.get(source_id)

    async def mark_source_fetched(self, source_id: int, when=None) -> None:
        self.sources[source_id].last_fetch = when or datetime.now(timezone.utc)


@pytest.fixture
def extraction_config():
    return load_extraction_config()


@pytest.fixture
def normalizer(extraction_config):
    return TextNormalizer(extraction_config)


@pytest.fixture
def store():
    return InMemoryContentStore()
