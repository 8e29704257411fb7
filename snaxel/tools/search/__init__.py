from .schema import (
    Envelope,
    FailureKind,
    FailureReason,
    ResultItem,
    SourceResult,
    Summary,
)
from .sources import CANONICAL_ORDER, LookupOptions, Source, normalize_sources
from .base import (
    SourceProvider,
    SearchError,
    SourceTimeoutError,
    SourceUnavailableError,
    InvalidResponseError,
)
from .factory import SearchFactory
from .simulated import SimulatedSourceProvider
from .remote import RemoteQueryEngineProvider

__all__ = [
    "Envelope",
    "FailureKind",
    "FailureReason",
    "ResultItem",
    "SourceResult",
    "Summary",
    "CANONICAL_ORDER",
    "LookupOptions",
    "Source",
    "normalize_sources",
    "SourceProvider",
    "SearchError",
    "SourceTimeoutError",
    "SourceUnavailableError",
    "InvalidResponseError",
    "SearchFactory",
    "SimulatedSourceProvider",
    "RemoteQueryEngineProvider",
]
