"""
Data model for the ingestion pipeline.

Holds the static section catalog, the candidate records produced by the
extractors, and the records the Content Store reads and writes.
"""

import hashlib
from dataclasses import dataclass, field, asdict
from datetime import date, datetime
from enum import Enum
from typing import Dict, List, Optional, Union


class RenderType(str, Enum):
    ARTICLE = "article"
    IMAGE = "image"


@dataclass(frozen=True)
class Section:
    """A fixed content category and how its content is rendered."""
    id: str
    name: str
    render_type: RenderType


SECTIONS: Dict[str, Section] = {
    s.id: s for s in (
        Section("ocho-columnas", "Ocho Columnas", RenderType.ARTICLE),
        Section("primeras-planas", "Primeras Planas", RenderType.IMAGE),
        Section("columnas-politicas", "Columnas Políticas", RenderType.IMAGE),
        Section("informacion-general", "Información General", RenderType.ARTICLE),
        Section("cartones", "Cartones", RenderType.IMAGE),
        Section("suprema-corte", "Suprema Corte de Justicia de la Nación", RenderType.ARTICLE),
        Section("tribunal-electoral", "Tribunal Electoral del Poder Judicial de la Federación", RenderType.ARTICLE),
        Section("dof", "DOF (Diario Oficial)", RenderType.ARTICLE),
        Section("consejo-judicatura", "Consejo de la Judicatura Federal", RenderType.ARTICLE),
    )
}


def get_section(section_id: str) -> Section:
    """Look up a section, raising ValueError for unknown ids."""
    try:
        return SECTIONS[section_id]
    except KeyError:
        raise ValueError(f"Unknown section id: {section_id!r}") from None


def _require_render_type(section_id: str, expected: RenderType) -> None:
    section = get_section(section_id)
    if section.render_type is not expected:
        raise ValueError(
            f"Section {section_id!r} renders {section.render_type.value}, "
            f"not {expected.value}"
        )


def text_fingerprint(title: str, content: str) -> str:
    return hashlib.md5(f"{title}{content}".encode("utf-8")).hexdigest()


@dataclass
class ArticleCandidate:
    """An extracted article not yet checked against the Content Store."""
    title: str
    content: str
    section_id: str
    publication_date: date
    summary: Optional[str] = None
    source: Optional[str] = None
    url: Optional[str] = None
    page_number: Optional[int] = None
    fingerprint: Optional[str] = None
    # external articles only
    external_source_id: Optional[int] = None
    image_url: Optional[str] = None

    def __post_init__(self):
        _require_render_type(self.section_id, RenderType.ARTICLE)
        if isinstance(self.publication_date, datetime):
            self.publication_date = self.publication_date.date()
        if not self.fingerprint:
            self.fingerprint = text_fingerprint(self.title, self.content)

    @property
    def dedup_key(self) -> tuple:
        return (self.section_id, self.publication_date, self.fingerprint)


@dataclass
class ImageCandidate:
    """A page rendered as an image in an image-type section."""
    section_id: str
    publication_date: date
    file_path: str
    fingerprint: str
    page_number: Optional[int] = None

    def __post_init__(self):
        _require_render_type(self.section_id, RenderType.IMAGE)
        if isinstance(self.publication_date, datetime):
            self.publication_date = self.publication_date.date()

    @property
    def dedup_key(self) -> tuple:
        return (self.section_id, self.publication_date, self.fingerprint)


Candidate = Union[ArticleCandidate, ImageCandidate]


@dataclass
class ExtractionResult:
    articles: List[ArticleCandidate] = field(default_factory=list)
    images: List[ImageCandidate] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


@dataclass
class FetchResult:
    articles: List[ArticleCandidate] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


@dataclass
class ExternalSource:
    """A configured external news feed or API."""
    id: int
    name: str
    base_url: str
    rss_url: Optional[str] = None
    logo_url: Optional[str] = None
    api_key: Optional[str] = None
    is_active: bool = True
    fetch_frequency_minutes: int = 60
    last_fetch: Optional[datetime] = None

    def __post_init__(self):
        if not 15 <= self.fetch_frequency_minutes <= 1440:
            raise ValueError(
                f"fetch_frequency_minutes must be within 15..1440, "
                f"got {self.fetch_frequency_minutes}"
            )


class LogLevel(str, Enum):
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


@dataclass
class LogEntry:
    level: LogLevel
    message: str
    details: Optional[Dict] = None
    created_at: Optional[datetime] = None
    id: Optional[int] = None


@dataclass
class BatchResult:
    created: int = 0
    skipped_duplicate: int = 0
    updated: int = 0


@dataclass
class RunSummary:
    """Outcome of one ingestion run for a single target."""
    target: str
    created: int = 0
    skipped_duplicate: int = 0
    updated: int = 0
    warnings: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error is not None

    @property
    def level(self) -> LogLevel:
        if self.error is not None:
            return LogLevel.ERROR
        if self.warnings:
            return LogLevel.WARN
        return LogLevel.INFO

    def add(self, batch: BatchResult) -> None:
        self.created += batch.created
        self.skipped_duplicate += batch.skipped_duplicate
        self.updated += batch.updated

    def to_dict(self) -> Dict:
        return asdict(self)
