"""
PDF text extraction module for the daily press-clipping compilation.

This module handles:
- Per-page text extraction (1-based page numbers)
- Section segmentation from the configured page-range/header map
- Article boundary detection from title lines, across page breaks
- One image candidate per page for image sections
- Newspaper attribution when a known source name is printed with the title
"""

import hashlib
import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

from pdfminer.converter import PDFPageAggregator
from pdfminer.layout import LAParams, LTImage, LTTextContainer
from pdfminer.pdfinterp import PDFPageInterpreter, PDFResourceManager
from pdfminer.pdfpage import PDFPage
from pdfminer.pdftypes import stream_value

from .errors import ParseError
from .heuristics import ExtractionConfig, load_extraction_config
from .models import (
    ArticleCandidate,
    ExtractionResult,
    ImageCandidate,
    RenderType,
    get_section,
)
from .normalize import QUOTE_CHARS, TextNormalizer, fold, line_key

logger = logging.getLogger(__name__)

URL_RE = re.compile(r"https?://[^\s<>\"”]+")
TITLE_UPPER_RATIO = 0.85
TITLE_MIN_LETTERS = 4


@dataclass
class PageText:
    """Raw text and content digest of one PDF page."""
    number: int
    text: str
    digest: Optional[str] = None
    has_images: bool = False
    error: Optional[str] = None

    @property
    def has_content(self) -> bool:
        return bool(self.text.strip()) or self.has_images


@dataclass
class Segment:
    """Contiguous run of page text belonging to one section."""
    section_id: str
    chunks: List[Tuple[PageText, str]] = field(default_factory=list)

    @property
    def last_page(self) -> int:
        return self.chunks[-1][0].number


@dataclass
class _Block:
    title_lines: List[str]
    page_number: int
    source: Optional[str] = None
    body: List[str] = field(default_factory=list)

    def has_body(self) -> bool:
        return any(line for line in self.body)


class PDFExtractor:
    """Extract article and image candidates from a clipping PDF."""

    def __init__(self,
                 config: ExtractionConfig,
                 normalizer: Optional[TextNormalizer] = None):
        """
        Initialize PDF extractor.

        Args:
            config: Heuristic tables (section map, banners, titles, sources)
            normalizer: Shared normalizer; built from ``config`` when omitted
        """
        self.config = config
        self.normalizer = normalizer or TextNormalizer(config)
        self._source_names: Dict[str, str] = {fold(name): name for name in config.known_sources}
        self._title_keys = frozenset(fold(t) for t in config.known_titles)

        self.laparams = LAParams(
            boxes_flow=0.5,
            word_margin=0.1,
            char_margin=2.0,
            line_margin=0.5,
            detect_vertical=True
        )

    def extract(self, pdf_path: Union[str, Path], publication_date: date) -> ExtractionResult:
        """
        Extract candidates from a PDF file.

        Args:
            pdf_path: Path to the PDF
            publication_date: Date the compilation was published

        Returns:
            Article and image candidates plus non-fatal warnings

        Raises:
            ParseError: the file cannot be opened or no page has content
        """
        pdf_path = Path(pdf_path)
        logger.info(f"Extracting PDF {pdf_path} for {publication_date}")

        pages, warnings = self.read_pages(pdf_path)
        result = self.extract_from_pages(pages, publication_date, source_file=str(pdf_path))
        result.warnings[:0] = warnings

        logger.info(f"Extracted {len(result.articles)} articles, {len(result.images)} images "
                    f"and {len(result.warnings)} warnings from {pdf_path}")
        return result

    def read_pages(self, pdf_path: Path) -> Tuple[List[PageText], List[str]]:
        """Read every page; unreadable pages come back with ``error`` set."""
        if not pdf_path.exists():
            raise ParseError(f"PDF file not found: {pdf_path}")

        pages: List[PageText] = []
        warnings: List[str] = []
        try:
            with open(pdf_path, 'rb') as file:
                rsrcmgr = PDFResourceManager()
                device = PDFPageAggregator(rsrcmgr, laparams=self.laparams)
                interpreter = PDFPageInterpreter(rsrcmgr, device)
                for page_num, page in enumerate(PDFPage.get_pages(file), 1):
                    pages.append(self._read_page(page_num, page, interpreter, device))
        except Exception as e:
            if not pages:
                logger.error(f"Failed to open PDF {pdf_path}: {e}")
                raise ParseError(f"Cannot open PDF {pdf_path}: {e}") from e
            logger.warning(f"Page tree of {pdf_path} broke after page {len(pages)}: {e}")
            warnings.append(f"pages after {len(pages)}: unreadable ({e})")

        return pages, warnings

    def _read_page(self, page_num: int, page: PDFPage,
                   interpreter: PDFPageInterpreter,
                   device: PDFPageAggregator) -> PageText:
        try:
            interpreter.process_page(page)
            layout = device.get_result()
        except Exception as e:
            logger.warning(f"Failed to read page {page_num}: {e}")
            return PageText(number=page_num, text="", error=str(e))

        texts: List[str] = []
        images: List[LTImage] = []

        def collect(element):
            if isinstance(element, LTTextContainer):
                texts.append(element.get_text())
            elif isinstance(element, LTImage):
                images.append(element)
            elif hasattr(element, '__iter__'):
                for child in element:
                    collect(child)

        collect(layout)
        text = "".join(texts)
        return PageText(
            number=page_num,
            text=text,
            digest=self._page_digest(page, text, images),
            has_images=bool(images),
        )

    def _page_digest(self, page: PDFPage, text: str, images: List[LTImage]) -> str:
        """Hash of the page's content streams, embedded images and text."""
        digest = hashlib.md5()
        for ref in page.contents:
            try:
                digest.update(stream_value(ref).get_data())
            except Exception:
                logger.debug("Unreadable content stream on page", exc_info=True)
        for image in images:
            try:
                digest.update(image.stream.get_data())
            except Exception:
                logger.debug("Unreadable image stream %s", image.name, exc_info=True)
        digest.update(text.encode('utf-8'))
        return digest.hexdigest()

    def extract_from_pages(self,
                           pages: List[PageText],
                           publication_date: date,
                           source_file: str = "document.pdf") -> ExtractionResult:
        """Segment already-read pages and build candidates."""
        if not any(page.has_content for page in pages):
            raise ParseError(f"No page of {source_file} produced any content")

        result = ExtractionResult()
        for segment in self.segment(pages, result.warnings):
            section = get_section(segment.section_id)
            if section.render_type is RenderType.IMAGE:
                result.images.extend(
                    self._image_candidates(segment, publication_date, source_file))
            else:
                result.articles.extend(
                    self._article_candidates(segment, publication_date, result.warnings))
        return result

    # ---- segmentation -------------------------------------------------

    def segment(self, pages: List[PageText], warnings: List[str]) -> List[Segment]:
        """
        Assign page text to sections, in ascending page order.

        A header line of a rule covering the page opens that section from
        that line on. Text before the first header goes to a header-less
        rule whose range starts on this page; failing that it continues the
        previous page's section when its rule covers this page, otherwise
        falls to a header-less covering rule. Anything left unassigned is a
        warning.
        """
        segments: List[Segment] = []
        previous: Optional[str] = None

        for page in sorted(pages, key=lambda p: p.number):
            if page.number in self.config.index_pages:
                previous = None
                continue
            if page.error:
                warnings.append(f"page {page.number}: unreadable ({page.error})")
                continue
            if not page.has_content:
                warnings.append(f"page {page.number}: no content")
                continue

            rules = self.config.rules_for_page(page.number)
            if not rules:
                warnings.append(f"page {page.number}: no configured section covers this page")
                previous = None
                continue

            chunks = self._split_on_headers(page, rules, previous)
            if all(section_id is None for section_id, _ in chunks):
                warnings.append(f"page {page.number}: no configured section pattern matches")
                previous = None
                continue

            for section_id, text in chunks:
                if section_id is None:
                    if self.normalizer.normalize(text):
                        warnings.append(
                            f"page {page.number}: text before first section header "
                            f"matches no configured section")
                    continue
                self._append_chunk(segments, section_id, page, text)
                previous = section_id

        return segments

    def _split_on_headers(self, page: PageText, rules, previous: Optional[str]):
        headers: Dict[str, str] = {}
        for rule in rules:
            for header in rule.headers:
                headers.setdefault(fold(header), rule.section_id)

        starting = next((rule.section_id for rule in rules
                         if not rule.headers and rule.first_page == page.number), None)
        if starting:
            current = starting
        elif previous and any(rule.section_id == previous for rule in rules):
            current = previous
        else:
            current = next((rule.section_id for rule in rules if not rule.headers), None)

        lines = page.text.splitlines()
        chunks: List[Tuple[Optional[str], str]] = []
        start = 0
        for index, line in enumerate(lines):
            section_id = headers.get(line_key(line))
            if section_id is None:
                continue
            if index > start:
                chunks.append((current, "\n".join(lines[start:index])))
            current = section_id
            start = index
        chunks.append((current, "\n".join(lines[start:])))
        return chunks

    @staticmethod
    def _append_chunk(segments: List[Segment], section_id: str, page: PageText, text: str) -> None:
        if segments:
            last = segments[-1]
            if last.section_id == section_id and last.last_page in (page.number, page.number - 1):
                last.chunks.append((page, text))
                return
        segments.append(Segment(section_id=section_id, chunks=[(page, text)]))

    # ---- candidates ---------------------------------------------------

    def _image_candidates(self, segment: Segment, publication_date: date,
                          source_file: str) -> List[ImageCandidate]:
        images: List[ImageCandidate] = []
        seen_pages = set()
        for page, _ in segment.chunks:
            if page.number in seen_pages:
                continue
            seen_pages.add(page.number)
            fingerprint = page.digest or hashlib.md5(page.text.encode('utf-8')).hexdigest()
            images.append(ImageCandidate(
                section_id=segment.section_id,
                publication_date=publication_date,
                file_path=f"{source_file}#page={page.number}",
                fingerprint=fingerprint,
                page_number=page.number,
            ))
        return images

    def _article_candidates(self, segment: Segment, publication_date: date,
                            warnings: List[str]) -> List[ArticleCandidate]:
        blocks, preamble_page = self._split_blocks(segment)
        if preamble_page is not None:
            warnings.append(
                f"page {preamble_page}: {segment.section_id} text before the first title skipped")

        articles: List[ArticleCandidate] = []
        for block in blocks:
            title = " ".join(block.title_lines)
            prefix_source, title = self._split_source_prefix(title)
            source = block.source or prefix_source
            title = self.normalizer.match_known_title(title)[:self.config.max_title_length]

            content = self.normalizer.collapse_whitespace("\n".join(block.body))
            if not content:
                warnings.append(f"page {block.page_number}: title {title!r} has no body")
                continue

            url_match = URL_RE.search(content)
            url = url_match.group(0).rstrip(".,;:)") if url_match else None
            if url is None and source:
                url = self.config.known_sources.get(source)

            articles.append(ArticleCandidate(
                title=title,
                content=content,
                section_id=segment.section_id,
                publication_date=publication_date,
                source=source,
                url=url,
                page_number=block.page_number,
            ))
        return articles

    def _split_blocks(self, segment: Segment) -> Tuple[List[_Block], Optional[int]]:
        """Walk normalized lines of all chunks, carrying the open article across pages."""
        blocks: List[_Block] = []
        current: Optional[_Block] = None
        pending_source: Optional[str] = None
        preamble_page: Optional[int] = None

        for page, raw in segment.chunks:
            for line in self.normalizer.normalize(raw).split("\n"):
                if not line:
                    if current is not None:
                        current.body.append("")
                    continue

                source = self._source_names.get(fold(line))
                if source:
                    pending_source = source
                    continue

                if self.is_title_line(line):
                    if current is not None and not current.has_body():
                        current.title_lines.append(line)
                        continue
                    if current is not None:
                        blocks.append(current)
                    current = _Block(title_lines=[line], page_number=page.number,
                                     source=pending_source)
                    pending_source = None
                    continue

                if current is None:
                    if preamble_page is None:
                        preamble_page = page.number
                    continue
                current.body.append(line)

        if current is not None:
            blocks.append(current)
        return blocks, preamble_page

    def is_title_line(self, line: str) -> bool:
        """Capitalized leading line: mostly uppercase letters, title-sized."""
        line = line.strip()
        if fold(line) in self._title_keys:
            return True
        if not (self.config.min_title_length <= len(line) <= self.config.max_title_length):
            return False
        if not (line[0].isupper() or line[0].isdigit() or line[0] in QUOTE_CHARS):
            return False
        letters = [c for c in line if c.isalpha()]
        if len(letters) < TITLE_MIN_LETTERS:
            return False
        upper = sum(1 for c in letters if c.isupper())
        return upper / len(letters) >= TITLE_UPPER_RATIO

    def _split_source_prefix(self, title: str) -> Tuple[Optional[str], str]:
        """Split ``"REFORMA: TITLE"`` into the known source and the title."""
        if ":" not in title:
            return None, title
        prefix, rest = title.split(":", 1)
        source = self._source_names.get(fold(prefix))
        if source and rest.strip():
            return source, rest.strip()
        return None, title


def main():
    """CLI interface for PDF extraction."""
    import argparse
    import json

    parser = argparse.ArgumentParser(description="Extract candidates from a clipping PDF")
    parser.add_argument("pdf_file", help="Path to PDF file")
    parser.add_argument("--date", required=True, help="Publication date (YYYY-MM-DD)")
    parser.add_argument("--heuristics", help="Heuristic tables JSON (default: packaged)")
    parser.add_argument("--output", "-o", help="Output JSON file (default: stdout)")
    parser.add_argument("--verbose", "-v", action="store_true",
                        help="Enable verbose logging")

    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)

    publication_date = datetime.strptime(args.date, "%Y-%m-%d").date()
    extractor = PDFExtractor(load_extraction_config(args.heuristics))
    result = extractor.extract(Path(args.pdf_file), publication_date)

    output_data = {
        'source_file': str(args.pdf_file),
        'publication_date': publication_date.isoformat(),
        'extraction_time': datetime.now(timezone.utc).isoformat(),
        'articles': [
            {
                'title': a.title,
                'content': a.content,
                'section_id': a.section_id,
                'source': a.source,
                'url': a.url,
                'page_number': a.page_number,
                'fingerprint': a.fingerprint,
            }
            for a in result.articles
        ],
        'images': [
            {
                'section_id': i.section_id,
                'file_path': i.file_path,
                'page_number': i.page_number,
                'fingerprint': i.fingerprint,
            }
            for i in result.images
        ],
        'warnings': result.warnings,
    }

    if args.output:
        with open(args.output, 'w', encoding='utf-8') as f:
            json.dump(output_data, f, indent=2, ensure_ascii=False)
        print(f"Extracted {len(result.articles)} articles and {len(result.images)} images to {args.output}")
    else:
        print(json.dumps(output_data, indent=2, ensure_ascii=False))


if __name__ == "__main__":
    main()
