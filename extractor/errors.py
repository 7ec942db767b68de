"""Error types raised by the ingestion pipeline.

Only transport and source problems fail a run. Segmentation and title
matching problems are reported as warning strings on the run summary.
"""

from enum import Enum


class IngestionError(Exception):
    """Base class for failures that end an ingestion run."""


class DownloadError(IngestionError):
    """A PDF or feed could not be obtained over the network."""


class ParseError(IngestionError):
    """A PDF or feed payload could not be parsed."""


class PersistenceError(IngestionError):
    """A Content Store write failed and its batch was rolled back."""


class FetchErrorKind(str, Enum):
    NETWORK = "network"
    HTTP_STATUS = "http_status"
    PARSE = "parse"


class FetchError(DownloadError):
    """Failure of a single external-source fetch."""

    def __init__(self, kind: FetchErrorKind, detail: str):
        super().__init__(f"{kind.value}: {detail}")
        self.kind = kind
        self.detail = detail

    @property
    def retryable(self) -> bool:
        return self.kind in (FetchErrorKind.NETWORK, FetchErrorKind.HTTP_STATUS)
