"""External news source fetching (RSS and JSON APIs)."""

import logging
import re
from datetime import date, datetime
from pathlib import Path
from typing import Dict, List, Optional

import feedparser
import requests
from requests.adapters import HTTPAdapter
from bs4 import BeautifulSoup

from extractor.errors import DownloadError, FetchError, FetchErrorKind
from extractor.heuristics import ExtractionConfig
from extractor.models import ArticleCandidate, ExternalSource, FetchResult
from extractor.normalize import TextNormalizer, fold

logger = logging.getLogger(__name__)

SUMMARY_MAX_CHARS = 500
RSS_ACCEPT = "application/rss+xml, application/atom+xml, application/xml;q=0.9, text/xml;q=0.8"
JSON_ACCEPT = "application/json"
BLOCK_TAGS = ["p", "div", "li", "h1", "h2", "h3", "h4", "blockquote"]
_SENTENCE_END_RE = re.compile(r"(?<=[.!?])\s")


def build_session(user_agent: str) -> requests.Session:
    session = requests.Session()
    adapter = HTTPAdapter(pool_connections=4, pool_maxsize=8)
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    session.headers.update({"User-Agent": user_agent})
    return session


def html_to_text(html: Optional[str]) -> str:
    if not html:
        return ""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style"]):
        tag.decompose()
    for br in soup.find_all("br"):
        br.replace_with("\n")
    for block in soup.find_all(BLOCK_TAGS):
        block.append("\n")
    return soup.get_text()


def truncate_summary(text: str, limit: int = SUMMARY_MAX_CHARS) -> str:
    """Cut at a sentence or word boundary within ``limit`` characters."""
    text = " ".join(text.split())
    if len(text) <= limit:
        return text
    cut = text[:limit]
    sentence_ends = [m.start() for m in _SENTENCE_END_RE.finditer(cut)]
    if sentence_ends and sentence_ends[-1] > limit // 2:
        return cut[:sentence_ends[-1]]
    return cut[:limit - 1].rsplit(" ", 1)[0].rstrip(",;:") + "…"


class ExternalSourceFetcher:
    """One request per call against a source's RSS feed or JSON API."""

    def __init__(self,
                 config: ExtractionConfig,
                 normalizer: TextNormalizer,
                 timeout: float = 30.0,
                 user_agent: str = "sintesis-ingest/0.1",
                 session: Optional[requests.Session] = None):
        self.config = config
        self.normalizer = normalizer
        self.timeout = timeout
        self.session = session or build_session(user_agent)
        self._category_sections: Dict[str, str] = {
            fold(category): section_id for category, section_id in config.category_sections.items()
        }

    def fetch(self, source: ExternalSource) -> FetchResult:
        """
        Fetch a source and normalize its entries into article candidates.

        Raises:
            FetchError: NETWORK for transport failures and timeouts,
                HTTP_STATUS for non-2xx responses, PARSE for payloads that
                cannot be read
        """
        if source.rss_url:
            logger.info(f"Fetching RSS feed for {source.name}: {source.rss_url}")
            response = self._get(source.rss_url, source, RSS_ACCEPT)
            result = self._parse_rss(response.content, source)
        else:
            logger.info(f"Fetching API for {source.name}: {source.base_url}")
            response = self._get(source.base_url, source, JSON_ACCEPT)
            result = self._parse_api(response, source)

        logger.info(f"Fetched {len(result.articles)} articles from {source.name} "
                    f"({len(result.warnings)} warnings)")
        return result

    def _get(self, url: str, source: ExternalSource, accept: str) -> requests.Response:
        headers = {"Accept": accept}
        if source.api_key:
            headers["X-Api-Key"] = source.api_key
        try:
            response = self.session.get(url, headers=headers, timeout=self.timeout)
            response.raise_for_status()
        except requests.HTTPError as e:
            raise FetchError(FetchErrorKind.HTTP_STATUS, f"{url}: {e}") from e
        except requests.RequestException as e:
            raise FetchError(FetchErrorKind.NETWORK, f"{url}: {e}") from e
        return response

    def _parse_rss(self, payload: bytes, source: ExternalSource) -> FetchResult:
        feed = feedparser.parse(payload)
        if feed.bozo and not feed.entries:
            raise FetchError(FetchErrorKind.PARSE,
                             f"Invalid feed from {source.name}: {feed.get('bozo_exception')}")

        result = FetchResult()
        for index, entry in enumerate(feed.entries):
            title = entry.get("title")
            link = entry.get("link")
            if not title or not link:
                result.warnings.append(f"{source.name}: entry {index} has no title or link, skipped")
                continue

            body = ""
            if entry.get("content"):
                body = entry.content[0].get("value", "")
            body = body or entry.get("summary") or entry.get("description") or ""

            categories = [tag.get("term") for tag in entry.get("tags", []) if tag.get("term")]
            published = entry.get("published_parsed") or entry.get("updated_parsed")
            publication_date = date(*published[:3]) if published else date.today()

            candidate = self._candidate(source, title, link, body, categories, publication_date,
                                        image_url=self._rss_image_url(entry))
            if candidate is None:
                result.warnings.append(f"{source.name}: entry {index} has an empty title, skipped")
                continue
            result.articles.append(candidate)
        return result

    @staticmethod
    def _rss_image_url(entry) -> Optional[str]:
        for media in entry.get("media_content", []) + entry.get("media_thumbnail", []):
            if media.get("url"):
                return media["url"]
        for enclosure in entry.get("enclosures", []):
            if enclosure.get("type", "").startswith("image/") and enclosure.get("href"):
                return enclosure["href"]
        return None

    def _parse_api(self, response: requests.Response, source: ExternalSource) -> FetchResult:
        try:
            payload = response.json()
        except ValueError as e:
            raise FetchError(FetchErrorKind.PARSE, f"Invalid JSON from {source.name}: {e}") from e

        items = payload.get("articles") if isinstance(payload, dict) else None
        if not isinstance(items, list):
            raise FetchError(FetchErrorKind.PARSE, f"No 'articles' list in response from {source.name}")

        result = FetchResult()
        for index, item in enumerate(items):
            if not isinstance(item, dict):
                result.warnings.append(f"{source.name}: item {index} is not an object, skipped")
                continue
            title = item.get("title")
            link = item.get("url")
            if not title or not link:
                result.warnings.append(f"{source.name}: item {index} has no title or link, skipped")
                continue

            body = item.get("content") or item.get("description") or ""
            category = item.get("category")
            categories = category if isinstance(category, list) else [category] if category else []
            publication_date = self._parse_iso_date(item.get("publishedAt")) or date.today()

            image_url = item.get("urlToImage")
            image_url = image_url if isinstance(image_url, str) and image_url else None
            candidate = self._candidate(source, title, link, body, categories, publication_date,
                                        image_url=image_url)
            if candidate is None:
                result.warnings.append(f"{source.name}: item {index} has an empty title, skipped")
                continue
            result.articles.append(candidate)
        return result

    def _candidate(self, source: ExternalSource, title: str, link: str, body_html: str,
                   categories: List[str], publication_date: date,
                   image_url: Optional[str] = None) -> Optional[ArticleCandidate]:
        """Build an article candidate, or None when the title has no text."""
        title = self.normalizer.normalize(html_to_text(title)).replace("\n", " ").strip()
        if not title:
            return None
        content = self.normalizer.normalize(html_to_text(body_html)) or title
        return ArticleCandidate(
            title=title,
            content=content,
            summary=truncate_summary(content),
            section_id=self._section_for(categories),
            publication_date=publication_date,
            source=source.name,
            url=link,
            external_source_id=source.id,
            image_url=image_url,
        )

    def _section_for(self, categories: List[str]) -> str:
        for category in categories:
            section_id = self._category_sections.get(fold(category))
            if section_id:
                return section_id
        return self.config.external_default_section

    @staticmethod
    def _parse_iso_date(value) -> Optional[date]:
        if not value or not isinstance(value, str):
            return None
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00")).date()
        except ValueError:
            return None


def download_pdf(url: str, dest: Path, timeout: float = 60.0,
                 session: Optional[requests.Session] = None,
                 user_agent: str = "sintesis-ingest/0.1") -> Path:
    """
    Download the daily PDF to ``dest``.

    Writes to a temporary sibling first so a failed download never leaves
    a truncated file where the scheduler looks for the PDF.

    Raises:
        DownloadError: transport failure, non-2xx response, or a body that
            is not a PDF
    """
    session = session or build_session(user_agent)
    dest = Path(dest)
    dest.parent.mkdir(parents=True, exist_ok=True)
    tmp = dest.with_suffix(dest.suffix + ".part")

    logger.info(f"Downloading {url} -> {dest}")
    try:
        with session.get(url, timeout=timeout, stream=True) as response:
            response.raise_for_status()
            with open(tmp, "wb") as fh:
                for chunk in response.iter_content(chunk_size=64 * 1024):
                    if chunk:
                        fh.write(chunk)
    except requests.RequestException as e:
        tmp.unlink(missing_ok=True)
        raise DownloadError(f"Failed to download {url}: {e}") from e

    with open(tmp, "rb") as fh:
        magic = fh.read(5)
    if magic != b"%PDF-":
        tmp.unlink(missing_ok=True)
        raise DownloadError(f"Downloaded file from {url} is not a PDF")

    tmp.replace(dest)
    logger.info(f"Downloaded {dest.stat().st_size} bytes to {dest}")
    return dest
