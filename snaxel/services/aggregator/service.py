import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, wait
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

from pydantic import ValidationError

from snaxel.services.aggregator.cache import ResultCache
from snaxel.services.shared.errors import (
    InfrastructureError,
    InvalidOptionsError,
    InvalidQueryError,
    NoSourcesError,
    UnknownSourceError,
)
from snaxel.services.shared.logger import SearchLogger
from snaxel.services.shared.telemetry import record_cache_lookup, record_source_lookup
from snaxel.tools.search.base import SearchError, SourceProvider
from snaxel.tools.search.schema import (
    Envelope,
    FailureKind,
    ResultItem,
    SourceResult,
    Summary,
)
from snaxel.tools.search.sources import (
    CANONICAL_ORDER,
    LookupOptions,
    Source,
    normalize_sources,
    options_for,
    parse_source,
    source_ids,
)


def summarize(envelope: Envelope) -> Summary:
    """Counts per source and aggregate totals, derived purely from the envelope."""
    return Summary(
        total_results=envelope.total_results,
        source_counts={source: result.count for source, result in envelope.sources.items()},
        succeeded=[source for source, result in envelope.sources.items() if result.ok],
        failed=[source for source, result in envelope.sources.items() if not result.ok],
    )


class _LookupTicket:
    """Lets exactly one party (the worker or the deadline) report a lookup."""

    def __init__(self):
        self._lock = threading.Lock()
        self._claimed = False

    def claim(self) -> bool:
        with self._lock:
            if self._claimed:
                return False
            self._claimed = True
            return True


class AggregatorService:
    """Turns one search request into a merged, cached Envelope.

    Each requested source is looked up concurrently on that source's own
    worker pool, so lookups left hanging by one source can only exhaust that
    source's workers. A source that raises or exceeds `source_timeout_seconds`
    is recorded as a failure inside the envelope; it never affects the other
    sources. Only an invalid request or an infrastructure problem makes `run`
    raise.
    """

    def __init__(
        self,
        providers: Mapping[Source, SourceProvider],
        cache: ResultCache,
        max_workers: Optional[int] = None,
        source_timeout_seconds: Optional[float] = None,
        default_limit: Optional[int] = None,
    ):
        if max_workers is None or source_timeout_seconds is None or default_limit is None:
            from snaxel.services.shared.settings import get_settings
            settings = get_settings()
            max_workers = max_workers or settings.concurrency.max_workers
            source_timeout_seconds = source_timeout_seconds or settings.concurrency.source_timeout_seconds
            default_limit = default_limit or settings.search.default_limit

        self.providers: Dict[Source, SourceProvider] = dict(providers)
        self.cache = cache
        self.max_workers = max_workers
        self.source_timeout_seconds = source_timeout_seconds
        self.default_limit = default_limit
        self.logger = SearchLogger("aggregator")
        # One bounded pool per source; max_workers applies to each.
        self._executors: Dict[Source, ThreadPoolExecutor] = {
            source: ThreadPoolExecutor(
                max_workers=max_workers, thread_name_prefix=f"snaxel-{source.value}"
            )
            for source in self.providers
        }

    def __enter__(self) -> "AggregatorService":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        """Stop accepting work. Lookups still running are left to finish on their own."""
        for executor in self._executors.values():
            executor.shutdown(wait=False, cancel_futures=True)

    def health_check(self) -> Dict[str, bool]:
        return {
            source.value: source in self.providers and self.providers[source].health_check()
            for source in CANONICAL_ORDER
        }

    def run(
        self,
        query: str,
        sources: Iterable[Any],
        limit: Optional[int] = None,
        source_options: Optional[Mapping[str, Mapping[str, Any]]] = None,
    ) -> Envelope:
        """Return the envelope for `query` over `sources`, from cache when fresh.

        A cache hit returns the stored envelope as is, so its `query` is the
        trimmed text of the request that populated the entry.

        Args:
            query: Search text; surrounding whitespace is ignored.
            sources: Source identifiers. Unknown ones are dropped.
            limit: Base result count per source, before per-source multipliers.
            source_options: Per-source option overrides keyed by identifier.

        Raises:
            InvalidQueryError: The query is empty after trimming.
            NoSourcesError: No known source identifier was given.
            InvalidOptionsError: The limit or an override is out of range.
            InfrastructureError: The cache or worker pool failed.
        """
        request_id = str(uuid.uuid4())
        log = self.logger.bind(request_id)

        text = self._validate_query(query, request_id)
        sources = list(sources)
        requested = normalize_sources(sources)
        if not requested:
            log.log("request_rejected", {"reason": "no_sources", "requested": [str(s) for s in sources]})
            raise NoSourcesError(request_id=request_id)

        base_limit = self.default_limit if limit is None else limit
        plan = {
            source: self._lookup_options(source, base_limit, source_options, request_id, log)
            for source in requested
        }

        try:
            cached = self.cache.get(text, requested)
        except Exception as e:
            raise InfrastructureError(f"Result cache lookup failed: {e}", request_id=request_id) from e

        record_cache_lookup(cached is not None)
        if cached is not None:
            log.log("cache_hit", {"query": text, "sources": source_ids(requested)})
            return cached

        log.log("cache_miss", {"query": text, "sources": source_ids(requested)})
        start_time = time.time()

        outcomes = self._dispatch(text, plan, request_id, log)
        envelope = Envelope(
            query=text,
            sources={source.value: outcomes[source] for source in requested},
        )

        try:
            self.cache.put(text, requested, envelope)
        except Exception as e:
            raise InfrastructureError(f"Result cache store failed: {e}", request_id=request_id) from e

        log.log("aggregation_complete", {
            "query": text,
            "sources": source_ids(requested),
            "total_results": envelope.total_results,
            "failed": [s for s, r in envelope.sources.items() if not r.ok],
            "latency_ms": round((time.time() - start_time) * 1000.0, 2),
        })
        return envelope

    def run_all(self, query: str, limit: Optional[int] = None) -> Tuple[Envelope, Summary]:
        """`run` over every known source, plus its summary."""
        envelope = self.run(query, CANONICAL_ORDER, limit=limit)
        return envelope, summarize(envelope)

    def search_single(self, source: Any, query: str, limit: Optional[int] = None) -> SourceResult:
        """Look up exactly one source, bypassing the cache.

        When `limit` is omitted the source default applies (doubled for images);
        an explicit `limit` is passed through unchanged.
        """
        request_id = str(uuid.uuid4())
        log = self.logger.bind(request_id)

        text = self._validate_query(query, request_id)
        parsed = parse_source(source)
        if parsed is None:
            raise UnknownSourceError(f"Unknown source '{source}'", request_id=request_id, source=str(source))

        overrides = {parsed.value: {"limit": limit}} if limit is not None else None
        options = self._lookup_options(parsed, self.default_limit, overrides, request_id, log)

        provider = self.providers.get(parsed)
        if provider is None:
            return self._missing_provider(parsed, log)

        ticket = _LookupTicket()
        future = self._submit(parsed, provider, text, options, ticket, request_id, log)
        try:
            return future.result(timeout=self.source_timeout_seconds)
        except FutureTimeoutError:
            return self._abandon(future, parsed, ticket, log)

    def _validate_query(self, query: Optional[str], request_id: str) -> str:
        if not isinstance(query, str) or not query.strip():
            raise InvalidQueryError(request_id=request_id)
        return query.strip()

    def _lookup_options(
        self,
        source: Source,
        base_limit: int,
        overrides: Optional[Mapping[str, Mapping[str, Any]]],
        request_id: str,
        log: SearchLogger,
    ) -> LookupOptions:
        try:
            return options_for(source, base_limit, overrides)
        except (TypeError, ValueError) as e:
            if isinstance(e, ValidationError):
                detail = "; ".join(err["msg"] for err in e.errors())
            else:
                detail = str(e)
            log.log("request_rejected", {"reason": "invalid_options", "source": source.value, "error": detail})
            raise InvalidOptionsError(
                f"Invalid options for source '{source.value}': {detail}",
                request_id=request_id,
                source=source.value,
            ) from e

    def _dispatch(
        self,
        text: str,
        plan: Mapping[Source, LookupOptions],
        request_id: str,
        log: SearchLogger,
    ) -> Dict[Source, SourceResult]:
        outcomes: Dict[Source, SourceResult] = {}
        pending: Dict[Future, Tuple[Source, _LookupTicket]] = {}

        for source, options in plan.items():
            provider = self.providers.get(source)
            if provider is None:
                outcomes[source] = self._missing_provider(source, log)
                continue
            ticket = _LookupTicket()
            try:
                future = self._submit(source, provider, text, options, ticket, request_id, log)
            except InfrastructureError:
                for submitted, (_, submitted_ticket) in pending.items():
                    submitted.cancel()
                    submitted_ticket.claim()
                raise
            pending[future] = (source, ticket)

        if pending:
            done, not_done = wait(pending, timeout=self.source_timeout_seconds)
            for future in done:
                outcomes[pending[future][0]] = future.result()
            for future in not_done:
                source, ticket = pending[future]
                outcomes[source] = self._abandon(future, source, ticket, log)

        return outcomes

    def _submit(
        self,
        source: Source,
        provider: SourceProvider,
        text: str,
        options: LookupOptions,
        ticket: _LookupTicket,
        request_id: str,
        log: SearchLogger,
    ) -> Future:
        try:
            return self._executors[source].submit(self._lookup, provider, text, options, ticket, log)
        except RuntimeError as e:
            raise InfrastructureError(
                f"Unable to schedule provider lookups: {e}", request_id=request_id
            ) from e

    def _lookup(
        self,
        provider: SourceProvider,
        text: str,
        options: LookupOptions,
        ticket: _LookupTicket,
        log: SearchLogger,
    ) -> SourceResult:
        """Run one provider lookup; every failure becomes a SourceResult failure."""
        source = provider.source.value
        start_time = time.time()
        try:
            items = provider.lookup(text, options)
            result = SourceResult.success([
                item if isinstance(item, ResultItem) else ResultItem.model_validate(item)
                for item in items
            ])
        except SearchError as e:
            result = SourceResult.failed(e.kind, str(e) or type(e).__name__)
        except ValidationError as e:
            result = SourceResult.failed(
                FailureKind.INVALID_RESPONSE, f"{source} provider returned malformed items: {e.error_count()} errors"
            )
        except Exception as e:
            result = SourceResult.failed(FailureKind.ERROR, str(e) or type(e).__name__)

        # Already reported as a timeout.
        if not ticket.claim():
            return result

        duration = time.time() - start_time
        if result.ok:
            record_source_lookup(source, "success", duration)
            log.log("source_complete", {
                "source": source,
                "count": result.count,
                "latency_ms": round(duration * 1000.0, 2),
            })
        else:
            record_source_lookup(source, result.failure.kind.value, duration)
            log.log("source_failed", {
                "source": source,
                "kind": result.failure.kind.value,
                "error": result.failure.message,
            })
        return result

    def _abandon(
        self,
        future: Future,
        source: Source,
        ticket: _LookupTicket,
        log: SearchLogger,
    ) -> SourceResult:
        """Settle a lookup that missed the deadline."""
        future.cancel()
        if not ticket.claim():
            # The worker finished right at the deadline and already reported.
            return future.result()
        return self._timed_out(source, log)

    def _timed_out(self, source: Source, log: SearchLogger) -> SourceResult:
        record_source_lookup(source.value, FailureKind.TIMEOUT.value)
        log.log("source_failed", {
            "source": source.value,
            "kind": FailureKind.TIMEOUT.value,
            "timeout_seconds": self.source_timeout_seconds,
        })
        return SourceResult.failed(
            FailureKind.TIMEOUT,
            f"{source.value} did not respond within {self.source_timeout_seconds}s",
        )

    def _missing_provider(self, source: Source, log: SearchLogger) -> SourceResult:
        record_source_lookup(source.value, FailureKind.UNAVAILABLE.value)
        log.log("source_failed", {"source": source.value, "kind": FailureKind.UNAVAILABLE.value})
        return SourceResult.failed(
            FailureKind.UNAVAILABLE, f"No provider configured for source '{source.value}'"
        )


def build_aggregator(settings=None) -> AggregatorService:
    """Wire providers, cache and worker pools from settings."""
    if settings is None:
        from snaxel.services.shared.settings import get_settings
        settings = get_settings()

    from snaxel.tools.search.factory import SearchFactory

    cache = ResultCache(
        ttl_seconds=settings.cache.ttl_seconds,
        max_entries=settings.cache.max_entries,
    )
    return AggregatorService(
        SearchFactory.from_settings(settings),
        cache,
        max_workers=settings.concurrency.max_workers,
        source_timeout_seconds=settings.concurrency.source_timeout_seconds,
        default_limit=settings.search.default_limit,
    )
