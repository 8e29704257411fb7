import abc
from typing import List

from .schema import FailureKind, ResultItem
from .sources import LookupOptions, Source


class SourceProvider(abc.ABC):
    """Abstract Base Class for per-source result providers.

    One provider serves exactly one Source. The aggregator only relies on
    `lookup`; how the provider fetches and parses its data is its own business.
    """

    # Safety cap to keep a misbehaving provider from flooding the envelope
    HARD_LIMIT_RESULTS = 50

    def __init__(self, source: Source):
        self.source = source

    @abc.abstractmethod
    def lookup(self, query: str, options: LookupOptions) -> List[ResultItem]:
        """Fetch results for `query` from this provider's source.

        Args:
            query: The trimmed search text.
            options: Lookup options; `options.limit` is already adjusted for the source.

        Returns:
            Ordered list of ResultItem, at most `options.limit` long.

        Raises:
            SearchError: If the downstream source fails. Any other exception is
                treated by the aggregator as a generic failure.
        """
        pass

    def _validate_limit(self, requested: int) -> int:
        """Clamps the requested limit to the provider hard cap."""
        if requested < 1:
            return 1
        return min(requested, self.HARD_LIMIT_RESULTS)

    @abc.abstractmethod
    def health_check(self) -> bool:
        """Verify provider connectivity or configuration."""
        pass


class SearchError(Exception):
    """Base exception for provider lookup failures."""
    kind = FailureKind.ERROR


class SourceTimeoutError(SearchError):
    """The provider did not answer in time."""
    kind = FailureKind.TIMEOUT


class SourceUnavailableError(SearchError):
    """The provider is misconfigured or cannot be reached."""
    kind = FailureKind.UNAVAILABLE


class InvalidResponseError(SearchError):
    """The provider answered with something that could not be parsed."""
    kind = FailureKind.INVALID_RESPONSE
