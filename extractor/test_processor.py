import asyncio
import time
from datetime import date

import pytest

from extractor.errors import FetchError, FetchErrorKind, ParseError, PersistenceError
from extractor.models import ArticleCandidate, ExternalSource, FetchResult, LogLevel, text_fingerprint
from extractor.pdf_extractor import PageText, PDFExtractor
from extractor.processor import IngestionCoordinator

PUB_DATE = date(2025, 6, 5)

PAGES = [
    PageText(1, "ÍNDICE"),
    PageText(2, "OCHO COLUMNAS\nREFORMA\nATRACO A LA NACIÓN\nEl informe de la auditoría.\n"
                "OFRECE MÉXICO ACUERDO DE SEGURIDAD\nLa propuesta se presentó ayer."),
    PageText(3, "NUEVOS SIGNOS DEL FRENÓN ECONÓMICO\nLa inversión cae por tercer mes."),
    PageText(5, "", digest="0cc175b9c0f1b6a831c399e269772661", has_images=True),
]


class PagesExtractor:
    """Runs the real segmentation over canned pages instead of a PDF file."""

    def __init__(self, config, pages, error=None):
        self.extractor = PDFExtractor(config)
        self.pages = pages
        self.error = error
        self.calls = 0

    def extract(self, pdf_path, publication_date):
        self.calls += 1
        if self.error:
            raise self.error
        return self.extractor.extract_from_pages(self.pages, publication_date, source_file=str(pdf_path))


def make_source(**overrides):
    values = dict(id=7, name="Agencia de Prueba", base_url="https://news.example.com/api")
    values.update(overrides)
    return ExternalSource(**values)


def article(title, content, url, publication_date=PUB_DATE):
    return ArticleCandidate(
        title=title,
        content=content,
        section_id="informacion-general",
        publication_date=publication_date,
        source="Agencia de Prueba",
        url=url,
    )


def fetch_returning(*results):
    queue = list(results)

    async def fetch(source):
        outcome = queue.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    return fetch


@pytest.fixture
def coordinator(extraction_config, store):
    return IngestionCoordinator(store, PagesExtractor(extraction_config, PAGES))


def test_pdf_ingestion_is_idempotent(coordinator, store):
    first = asyncio.run(coordinator.run_pdf_ingestion("2025-06-05.pdf", PUB_DATE))
    second = asyncio.run(coordinator.run_pdf_ingestion("2025-06-05.pdf", PUB_DATE))

    assert first.error is None
    assert first.created == 4
    assert first.skipped_duplicate == 0
    assert second.created == 0
    assert second.skipped_duplicate == first.created
    assert len(store.articles) == 3
    assert len(store.images) == 1


def test_one_batch_per_page(coordinator, store):
    asyncio.run(coordinator.run_pdf_ingestion("2025-06-05.pdf", PUB_DATE))
    # articles starting on pages 2 and 3, image on page 5
    assert store.batches == 3


def test_one_info_log_per_successful_run(coordinator, store):
    summary = asyncio.run(coordinator.run_pdf_ingestion("2025-06-05.pdf", PUB_DATE))
    assert summary.warnings == []
    assert len(store.logs) == 1
    log = store.logs[0]
    assert log.level is LogLevel.INFO
    assert log.details["created"] == 4
    assert log.details["target"] == "pdf:2025-06-05"


def test_warnings_make_a_warn_log(extraction_config, store):
    pages = PAGES + [PageText(99, "PÁGINA FUERA DEL MAPA\ncontenido")]
    coordinator = IngestionCoordinator(store, PagesExtractor(extraction_config, pages))
    summary = asyncio.run(coordinator.run_pdf_ingestion("2025-06-05.pdf", PUB_DATE))
    assert summary.created == 4
    assert len(summary.warnings) == 1
    assert [log.level for log in store.logs] == [LogLevel.WARN]


def test_parse_error_makes_an_error_log(extraction_config, store):
    extractor = PagesExtractor(extraction_config, PAGES, error=ParseError("Cannot open PDF"))
    coordinator = IngestionCoordinator(store, extractor)
    summary = asyncio.run(coordinator.run_pdf_ingestion("2025-06-05.pdf", PUB_DATE))

    assert summary.failed
    assert "Cannot open PDF" in summary.error
    assert len(store.logs) == 1
    assert store.logs[0].level is LogLevel.ERROR
    assert store.articles == {}


def test_persistence_error_keeps_committed_pages(coordinator, store):
    store.fail_on_batch = 2
    summary = asyncio.run(coordinator.run_pdf_ingestion("2025-06-05.pdf", PUB_DATE))

    assert summary.failed
    assert summary.created == 2
    assert len(store.articles) == 2
    assert [log.level for log in store.logs] == [LogLevel.ERROR]

    # re-running after the outage completes the day without duplicating page 2
    store.fail_on_batch = None
    rerun = asyncio.run(coordinator.run_pdf_ingestion("2025-06-05.pdf", PUB_DATE))
    assert rerun.created == 2
    assert rerun.skipped_duplicate == 2


def test_dedup_key_is_stable_across_dates(store):
    coordinator = IngestionCoordinator(store, pdf_extractor=None)
    source = make_source()
    store.sources[source.id] = source
    same_text = ("ATRACO A LA NACIÓN", "El informe de la auditoría.")
    fetch = fetch_returning(
        FetchResult(articles=[article(*same_text, url="https://news.example.com/a")]),
        FetchResult(articles=[article(*same_text, url="https://news.example.com/a",
                                      publication_date=date(2025, 6, 6))]),
    )
    first = asyncio.run(coordinator.run_source_ingestion(source, fetch=fetch))
    second = asyncio.run(coordinator.run_source_ingestion(source, fetch=fetch))

    assert first.created == 1
    assert second.created == 1
    fingerprints = {key[2] for key in store.articles}
    assert fingerprints == {text_fingerprint(*same_text)}


def test_source_ingestion_updates_last_fetch(store):
    source = make_source()
    store.sources[source.id] = source
    coordinator = IngestionCoordinator(store, pdf_extractor=None)
    fetch = fetch_returning(FetchResult(articles=[
        article("REFORMA JUDICIAL AVANZA", "El Senado aprobó.", "https://news.example.com/1"),
        article("ARANCELES EN DEBATE", "La Secretaría respondió.", "https://news.example.com/2"),
    ]))

    summary = asyncio.run(coordinator.run_source_ingestion(source, fetch=fetch))

    assert summary.created == 2
    assert source.last_fetch is not None
    assert store.logs[0].level is LogLevel.INFO
    assert store.logs[0].details["source_id"] == source.id


def test_failed_fetch_leaves_last_fetch(store):
    source = make_source()
    store.sources[source.id] = source
    coordinator = IngestionCoordinator(store, pdf_extractor=None)
    fetch = fetch_returning(FetchError(FetchErrorKind.HTTP_STATUS, "503 Server Error"))

    summary = asyncio.run(coordinator.run_source_ingestion(source, fetch=fetch))

    assert summary.failed
    assert source.last_fetch is None
    assert [log.level for log in store.logs] == [LogLevel.ERROR]


def test_failed_batch_leaves_last_fetch(store):
    source = make_source()
    store.sources[source.id] = source
    store.fail_on_batch = 1
    coordinator = IngestionCoordinator(store, pdf_extractor=None)
    fetch = fetch_returning(FetchResult(articles=[
        article("REFORMA JUDICIAL AVANZA", "El Senado aprobó.", "https://news.example.com/1"),
    ]))

    summary = asyncio.run(coordinator.run_source_ingestion(source, fetch=fetch))

    assert summary.failed
    assert source.last_fetch is None


def test_revised_article_is_updated(store):
    source = make_source()
    store.sources[source.id] = source
    coordinator = IngestionCoordinator(store, pdf_extractor=None)
    url = "https://news.example.com/1"
    fetch = fetch_returning(
        FetchResult(articles=[article("REFORMA JUDICIAL AVANZA", "El Senado aprobó.", url)]),
        FetchResult(articles=[article("REFORMA JUDICIAL AVANZA",
                                      "El Senado aprobó en lo general y en lo particular.", url)]),
    )

    asyncio.run(coordinator.run_source_ingestion(source, fetch=fetch))
    revised = asyncio.run(coordinator.run_source_ingestion(source, fetch=fetch))

    assert revised.updated == 1
    assert revised.created == 0
    stored, = store.articles.values()
    assert stored.content.endswith("en lo particular.")


def test_fetch_warnings_are_reported(store):
    source = make_source()
    store.sources[source.id] = source
    coordinator = IngestionCoordinator(store, pdf_extractor=None)
    fetch = fetch_returning(FetchResult(
        articles=[article("REFORMA JUDICIAL AVANZA", "El Senado aprobó.", "https://news.example.com/1")],
        warnings=["Agencia de Prueba: entry 1 has no title or link, skipped"],
    ))

    summary = asyncio.run(coordinator.run_source_ingestion(source, fetch=fetch))

    assert summary.created == 1
    assert store.logs[0].level is LogLevel.WARN
    assert source.last_fetch is not None


def test_fetch_source_uses_fetcher(store):
    class Fetcher:
        def fetch(self, source):
            return FetchResult(articles=[article("REFORMA JUDICIAL AVANZA", "El Senado aprobó.",
                                                 "https://news.example.com/1")])

    source = make_source()
    store.sources[source.id] = source
    coordinator = IngestionCoordinator(store, pdf_extractor=None, fetcher=Fetcher())
    summary = asyncio.run(coordinator.run_source_ingestion(source))
    assert summary.created == 1


def test_last_fetch_update_failure_fails_the_run(store):
    source = make_source()
    store.sources[source.id] = source

    async def lost_connection(source_id, when=None):
        raise PersistenceError("Failed to update last_fetch of source 7: connection reset")

    store.mark_source_fetched = lost_connection
    coordinator = IngestionCoordinator(store, pdf_extractor=None)
    fetch = fetch_returning(FetchResult(articles=[
        article("REFORMA JUDICIAL AVANZA", "El Senado aprobó.", "https://news.example.com/1"),
    ]))

    summary = asyncio.run(coordinator.run_source_ingestion(source, fetch=fetch))

    assert summary.failed
    assert "connection reset" in summary.error
    assert [log.level for log in store.logs] == [LogLevel.ERROR]
    assert source.last_fetch is None


def test_unwritable_log_row_does_not_fail_the_caller(coordinator, store):
    async def log_store_down(level, message, details=None):
        raise PersistenceError("Failed to write log row: connection reset")

    store.append_log = log_store_down
    summary = asyncio.run(coordinator.run_pdf_ingestion("2025-06-05.pdf", PUB_DATE))

    assert summary.created == 4
    assert not summary.failed


def test_slow_fetch_hits_the_deadline(store):
    class TricklingFetcher:
        def fetch(self, source):
            time.sleep(0.3)
            return FetchResult()

    source = make_source()
    coordinator = IngestionCoordinator(store, pdf_extractor=None, fetcher=TricklingFetcher(),
                                       fetch_deadline=0.05)

    with pytest.raises(FetchError) as exc_info:
        asyncio.run(coordinator.fetch_source(source))
    assert exc_info.value.kind is FetchErrorKind.NETWORK
    assert exc_info.value.retryable
