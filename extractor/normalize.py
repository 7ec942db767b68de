"""Normalization helpers for extracted press-clipping text.

Cleaning is an explicit, ordered sequence of named passes (``PASS_ORDER``).
Encoding repair always runs first: later passes collapse whitespace and
strip patterns, which can split the corrupted sequences it looks for.
Banner removal runs before page-marker removal because a banner line may
carry a page marker or footer on the same line.
"""

import difflib
import logging
import re
import unicodedata
from typing import List, Optional, Tuple, Union

from .heuristics import ExtractionConfig

logger = logging.getLogger(__name__)

PASS_ORDER: Tuple[str, ...] = (
    "repair_encoding",
    "strip_banners",
    "strip_date_lines",
    "strip_page_footers",
    "strip_page_markers",
    "collapse_whitespace",
)

WEEKDAYS = "lunes|martes|miércoles|miercoles|jueves|viernes|sábado|sabado|domingo"
MONTHS = (
    "enero|febrero|marzo|abril|mayo|junio|julio|agosto|"
    "septiembre|setiembre|octubre|noviembre|diciembre"
)

DATE_RE = rf"(?:{WEEKDAYS}),?\s+\d{{1,2}}\s+de\s+(?:{MONTHS})\s+(?:del?\s+)?\d{{4}}"
FOOTER_RE = r"P[áa]gina\s+\d+(?:\s+de\s+\d+)?"

# Whole lines only; dates and page references inside sentences are content
DATE_LINE_RE = re.compile(rf"^[^\S\n]*{DATE_RE}\.?[^\S\n]*$", re.IGNORECASE | re.MULTILINE)
PAGE_FOOTER_LINE_RE = re.compile(rf"^[^\S\n]*{FOOTER_RE}[^\S\n]*$", re.IGNORECASE | re.MULTILINE)
# Footer riding on a banner line, only used to build line keys
PAGE_FOOTER_RE = re.compile(rf"\b{FOOTER_RE}\b", re.IGNORECASE)
PAGE_MARKER_RE = re.compile(r"\[PAGE\s+\d+\]", re.IGNORECASE)
RULE_LINE_RE = re.compile(r"[-_]{5,}")
BLANK_LINES_RE = re.compile(r"\n{3,}")

QUOTE_CHARS = "\"'`´“”‘’«»„"
_QUOTE_TABLE = str.maketrans("", "", QUOTE_CHARS)

# Substring title matches must cover most of the longer string
MIN_SUBSTRING_KEY = 12
MIN_SUBSTRING_COVERAGE = 0.6


def fold(text: str) -> str:
    """Comparison key: uppercase, no accents, no quotes, single spaces."""
    decomposed = unicodedata.normalize("NFKD", text)
    stripped = "".join(c for c in decomposed if not unicodedata.combining(c))
    return " ".join(stripped.translate(_QUOTE_TABLE).upper().split())


def line_key(line: str) -> str:
    """Fold a line after dropping page markers and footers riding on it."""
    return fold(PAGE_MARKER_RE.sub(" ", PAGE_FOOTER_RE.sub(" ", line)))


class TextNormalizer:
    """Clean raw page text and repair titles against the canonical list."""

    def __init__(self, config: ExtractionConfig):
        self.config = config
        # Longest corrupted sequences first so a prefix entry cannot pre-empt them
        self._repairs: List[Tuple[str, str]] = sorted(
            ((r.corrupted, r.canonical) for r in config.encoding_repairs),
            key=lambda pair: len(pair[0]),
            reverse=True,
        )
        self._byte_repairs: List[Tuple[bytes, bytes]] = [
            (corrupted.encode("utf-8"), canonical.encode("utf-8"))
            for corrupted, canonical in self._repairs
        ]
        self._banner_keys = frozenset(fold(b) for b in config.banners)
        self._titles: List[Tuple[str, str]] = [(fold(t), t) for t in config.known_titles]

    # ---- passes -------------------------------------------------------

    def repair_encoding(self, text: str) -> str:
        for corrupted, canonical in self._repairs:
            if corrupted in text:
                text = text.replace(corrupted, canonical)
        return text

    def strip_banners(self, text: str) -> str:
        kept = []
        for line in text.split("\n"):
            if self.is_banner(line):
                continue
            kept.append(line)
        return "\n".join(kept)

    def strip_date_lines(self, text: str) -> str:
        return DATE_LINE_RE.sub("", text)

    def strip_page_footers(self, text: str) -> str:
        return PAGE_FOOTER_LINE_RE.sub("", text)

    def strip_page_markers(self, text: str) -> str:
        return RULE_LINE_RE.sub("", PAGE_MARKER_RE.sub("", text))

    def collapse_whitespace(self, text: str) -> str:
        text = text.replace("\r\n", "\n").replace("\r", "\n")
        text = "\n".join(" ".join(line.split()) for line in text.split("\n"))
        return BLANK_LINES_RE.sub("\n\n", text).strip()

    # ---- public API ---------------------------------------------------

    def is_banner(self, line: str) -> bool:
        key = line_key(line)
        return bool(key) and key in self._banner_keys

    def apply_passes(self, text: str, passes: Tuple[str, ...] = PASS_ORDER) -> str:
        for name in passes:
            text = getattr(self, name)(text)
        return text

    def normalize(self, raw: Union[str, bytes, None]) -> str:
        """
        Clean raw extracted text.

        Accepts text or raw UTF-8 bytes. Bytes are repaired at the byte
        level before decoding. The pass sequence is repeated until the text
        stops changing, so ``normalize(normalize(x)) == normalize(x)``.
        Never raises.
        """
        text = self._to_text(raw)
        while True:
            cleaned = self.apply_passes(text)
            if cleaned == text:
                return cleaned
            text = cleaned

    def match_known_title(self, candidate: Optional[str]) -> Optional[str]:
        """
        Return the canonical form of a known title, or the input unchanged.

        Comparison ignores case, accents and quote characters. Exact key
        matches win, then containment of most of the longer key, then the
        closest fuzzy match above the configured threshold.
        """
        if not candidate or not isinstance(candidate, str):
            return candidate
        key = fold(candidate)
        if not key:
            return candidate

        for title_key, canonical in self._titles:
            if key == title_key:
                return canonical

        if len(key) >= MIN_SUBSTRING_KEY:
            for title_key, canonical in self._titles:
                shorter, longer = sorted((key, title_key), key=len)
                if (len(shorter) >= MIN_SUBSTRING_KEY
                        and shorter in longer
                        and len(shorter) / len(longer) >= MIN_SUBSTRING_COVERAGE):
                    return canonical

        best, best_ratio = None, self.config.title_match_threshold
        for title_key, canonical in self._titles:
            ratio = difflib.SequenceMatcher(None, key, title_key).ratio()
            if ratio >= best_ratio:
                best, best_ratio = canonical, ratio
        if best is not None:
            logger.debug(f"Fuzzy title match {candidate!r} -> {best!r} ({best_ratio:.2f})")
            return best
        return candidate

    def _to_text(self, raw) -> str:
        if raw is None:
            return ""
        if isinstance(raw, (bytes, bytearray)):
            data = bytes(raw)
            for corrupted, canonical in self._byte_repairs:
                if corrupted in data:
                    data = data.replace(corrupted, canonical)
            return data.decode("utf-8", errors="replace")
        if isinstance(raw, str):
            return raw
        try:
            return str(raw)
        except Exception:
            logger.debug("Could not coerce %r to text", type(raw), exc_info=True)
            return ""
