"""
Heuristic tables used by the normalizer and the PDF extractor.

The tables are plain data (JSON) validated into a frozen pydantic model,
loaded once at process start and handed to the components that need them.
Fixing a bad extraction means editing the JSON and re-running ingestion
for the affected dates.
"""

import logging
from pathlib import Path
from typing import Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .models import SECTIONS, RenderType

logger = logging.getLogger(__name__)

DEFAULT_HEURISTICS_PATH = Path(__file__).parent / "data" / "heuristics.json"


class SectionRule(BaseModel):
    """Maps an inclusive page range (and optional header texts) to a section."""
    model_config = ConfigDict(frozen=True)

    section_id: str
    first_page: int = Field(ge=1)
    last_page: int = Field(ge=1)
    headers: Tuple[str, ...] = ()

    @field_validator("section_id")
    @classmethod
    def known_section(cls, v: str) -> str:
        if v not in SECTIONS:
            raise ValueError(f"Unknown section id: {v}")
        return v

    @model_validator(mode="after")
    def ordered_range(self) -> "SectionRule":
        if self.first_page > self.last_page:
            raise ValueError(
                f"{self.section_id}: first_page {self.first_page} > last_page {self.last_page}"
            )
        return self

    def covers(self, page_number: int) -> bool:
        return self.first_page <= page_number <= self.last_page


class EncodingRepair(BaseModel):
    model_config = ConfigDict(frozen=True)

    corrupted: str = Field(min_length=1)
    canonical: str


class ExtractionConfig(BaseModel):
    """Immutable heuristic tables."""
    model_config = ConfigDict(frozen=True)

    index_pages: Tuple[int, ...] = (1,)
    section_map: Tuple[SectionRule, ...] = ()
    banners: Tuple[str, ...] = ()
    encoding_repairs: Tuple[EncodingRepair, ...] = ()
    known_titles: Tuple[str, ...] = ()
    known_sources: Dict[str, str] = Field(default_factory=dict)
    category_sections: Dict[str, str] = Field(default_factory=dict)
    external_default_section: str = "informacion-general"
    title_match_threshold: float = Field(0.88, ge=0.0, le=1.0)
    min_title_length: int = 8
    max_title_length: int = 200

    @field_validator("external_default_section")
    @classmethod
    def article_section(cls, v: str) -> str:
        section = SECTIONS.get(v)
        if section is None or section.render_type is not RenderType.ARTICLE:
            raise ValueError(f"{v!r} is not an article section")
        return v

    @field_validator("category_sections")
    @classmethod
    def article_sections(cls, v: Dict[str, str]) -> Dict[str, str]:
        for category, section_id in v.items():
            section = SECTIONS.get(section_id)
            if section is None or section.render_type is not RenderType.ARTICLE:
                raise ValueError(f"Category {category!r} maps to non-article section {section_id!r}")
        return v

    def rules_for_page(self, page_number: int) -> Tuple[SectionRule, ...]:
        return tuple(rule for rule in self.section_map if rule.covers(page_number))


def load_extraction_config(path: Optional[Path] = None) -> ExtractionConfig:
    """Load and validate heuristic tables from JSON."""
    path = Path(path) if path else DEFAULT_HEURISTICS_PATH
    logger.info(f"Loading heuristic tables from {path}")
    return ExtractionConfig.model_validate_json(path.read_text(encoding="utf-8"))
