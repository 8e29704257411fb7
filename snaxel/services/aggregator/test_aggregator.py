import threading
import time
import unittest
from typing import List, Optional
from unittest.mock import MagicMock

from snaxel.services.aggregator.cache import ResultCache
from snaxel.services.aggregator.service import AggregatorService, _LookupTicket, summarize
from snaxel.services.aggregator.test_cache import FakeClock
from snaxel.services.shared.errors import (
    InfrastructureError,
    InvalidOptionsError,
    InvalidQueryError,
    NoSourcesError,
    UnknownSourceError,
)
from snaxel.services.shared.telemetry import METRICS_REGISTRY
from snaxel.tools.search.base import SearchError, SourceProvider, SourceTimeoutError
from snaxel.tools.search.schema import FailureKind, ResultItem
from snaxel.tools.search.sources import CANONICAL_ORDER, LookupOptions, Source


def make_items(source: Source, count: int) -> List[ResultItem]:
    return [
        ResultItem(title=f"{source.value} {i}", url=f"https://{source.value}.example.com/{i}")
        for i in range(count)
    ]


class RecordingProvider(SourceProvider):
    """Provider double that records every lookup it receives."""

    def __init__(
        self,
        source: Source,
        items: Optional[list] = None,
        error: Optional[Exception] = None,
        delay: float = 0.0,
        release: Optional[threading.Event] = None,
    ):
        super().__init__(source)
        self.items = make_items(source, 3) if items is None else items
        self.error = error
        self.delay = delay
        self.release = release
        self.calls: List[tuple] = []

    def lookup(self, query: str, options: LookupOptions):
        self.calls.append((query, options))
        if self.release is not None:
            self.release.wait(5)
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.items

    def health_check(self) -> bool:
        return self.error is None


class AggregatorTestCase(unittest.TestCase):

    def setUp(self):
        self.clock = FakeClock()
        self.cache = ResultCache(ttl_seconds=300, clock=self.clock)
        self.providers = {source: RecordingProvider(source) for source in CANONICAL_ORDER}
        self.service = self.make_service()

    def tearDown(self):
        self.service.close()

    def make_service(self, providers=None, timeout: float = 2.0, max_workers: int = 8) -> AggregatorService:
        return AggregatorService(
            providers if providers is not None else self.providers,
            self.cache,
            max_workers=max_workers,
            source_timeout_seconds=timeout,
            default_limit=10,
        )

    def total_calls(self) -> int:
        return sum(len(p.calls) for p in self.providers.values())


class TestRunEnvelope(AggregatorTestCase):

    def test_one_result_per_requested_source(self):
        envelope = self.service.run("cats", ["web", "news"])

        self.assertEqual(set(envelope.sources), {"web", "news"})
        self.assertEqual(len(self.providers[Source.WEB].calls), 1)
        self.assertEqual(len(self.providers[Source.NEWS].calls), 1)
        self.assertEqual(len(self.providers[Source.IMAGES].calls), 0)

    def test_query_is_trimmed_in_envelope_and_lookup(self):
        envelope = self.service.run("  Cats  ", ["web"])

        self.assertEqual(envelope.query, "Cats")
        self.assertEqual(self.providers[Source.WEB].calls[0][0], "Cats")

    def test_sources_presented_in_canonical_order(self):
        # web finishes last, books first
        self.providers[Source.WEB].delay = 0.2
        self.providers[Source.IMAGES].delay = 0.1

        envelope = self.service.run("cats", ["books", "web", "images"])

        self.assertEqual(list(envelope.sources), ["web", "images", "books"])

    def test_provider_order_preserved(self):
        items = list(reversed(make_items(Source.NEWS, 5)))
        self.providers[Source.NEWS].items = items

        envelope = self.service.run("cats", ["news"])

        self.assertEqual(envelope.sources["news"].results, items)

    def test_total_results_sums_successes_only(self):
        self.providers[Source.WEB].items = make_items(Source.WEB, 4)
        self.providers[Source.IMAGES].items = make_items(Source.IMAGES, 7)
        self.providers[Source.NEWS].error = SearchError("news down")
        self.providers[Source.BOOKS].items = []

        envelope = self.service.run("cats", ["web", "images", "news", "books"])

        self.assertEqual(envelope.total_results, 11)
        self.assertEqual(envelope.sources["books"].results, [])
        self.assertTrue(envelope.sources["books"].ok)

    def test_envelope_is_frozen(self):
        envelope = self.service.run("cats", ["web"])
        with self.assertRaises(Exception):
            envelope.query = "dogs"


class TestFailureIsolation(AggregatorTestCase):

    def test_failed_source_does_not_drop_other_results(self):
        self.providers[Source.WEB].error = SearchError("web exploded")
        images = make_items(Source.IMAGES, 6)
        self.providers[Source.IMAGES].items = images

        envelope = self.service.run("cats", ["web", "images"])

        self.assertIsNone(envelope.sources["web"].results)
        self.assertEqual(envelope.sources["web"].failure.message, "web exploded")
        self.assertEqual(envelope.sources["web"].failure.kind, FailureKind.ERROR)
        self.assertEqual(envelope.sources["images"].results, images)
        self.assertEqual(envelope.total_results, 6)

    def test_unexpected_exception_becomes_error_failure(self):
        self.providers[Source.NEWS].error = RuntimeError("boom")

        envelope = self.service.run("cats", ["news"])

        self.assertEqual(envelope.sources["news"].failure.kind, FailureKind.ERROR)
        self.assertEqual(envelope.sources["news"].failure.message, "boom")

    def test_search_error_kind_is_preserved(self):
        self.providers[Source.VIDEOS].error = SourceTimeoutError("engine slow")

        envelope = self.service.run("cats", ["videos"])

        self.assertEqual(envelope.sources["videos"].failure.kind, FailureKind.TIMEOUT)

    def test_every_source_failing_still_returns_envelope(self):
        for provider in self.providers.values():
            provider.error = SearchError("down")

        envelope, summary = self.service.run_all("cats")

        self.assertEqual(envelope.total_results, 0)
        self.assertEqual(summary.failed, [s.value for s in CANONICAL_ORDER])

    def test_dict_items_are_validated(self):
        self.providers[Source.WEB].items = [{"title": "A", "url": "https://a.example"}]
        self.providers[Source.NEWS].items = [{"title": "missing url"}]

        envelope = self.service.run("cats", ["web", "news"])

        self.assertEqual(envelope.sources["web"].results[0].title, "A")
        self.assertEqual(envelope.sources["news"].failure.kind, FailureKind.INVALID_RESPONSE)

    def test_missing_provider_is_unavailable(self):
        service = self.make_service(providers={Source.WEB: self.providers[Source.WEB]})
        try:
            envelope = service.run("cats", ["web", "news"])
        finally:
            service.close()

        self.assertTrue(envelope.sources["web"].ok)
        self.assertEqual(envelope.sources["news"].failure.kind, FailureKind.UNAVAILABLE)


class TestConcurrency(AggregatorTestCase):

    def test_sources_are_looked_up_concurrently(self):
        for source in (Source.WEB, Source.IMAGES, Source.NEWS):
            self.providers[source].delay = 0.4

        start = time.time()
        self.service.run("cats", ["web", "images", "news"])
        elapsed = time.time() - start

        self.assertLess(elapsed, 1.0)

    def test_hanging_source_times_out_without_blocking_others(self):
        release = threading.Event()
        self.providers[Source.VIDEOS].release = release
        service = self.make_service(timeout=0.3)
        try:
            start = time.time()
            envelope = service.run("cats", ["web", "videos"])
            elapsed = time.time() - start
        finally:
            release.set()
            service.close()

        self.assertLess(elapsed, 2.0)
        self.assertTrue(envelope.sources["web"].ok)
        self.assertEqual(envelope.sources["videos"].failure.kind, FailureKind.TIMEOUT)

    def test_hung_lookups_of_one_source_do_not_starve_others(self):
        release = threading.Event()
        self.providers[Source.WEB].release = release
        service = self.make_service(timeout=0.2, max_workers=2)
        try:
            # Leave every web worker stuck, plus one queued lookup.
            for query in ("first", "second", "third"):
                stuck = service.run(query, ["web"])
                self.assertEqual(stuck.sources["web"].failure.kind, FailureKind.TIMEOUT)

            alone = service.run("cats", ["news"])
            mixed = service.run("dogs", ["web", "news", "images"])
        finally:
            release.set()
            service.close()

        self.assertTrue(alone.sources["news"].ok)
        self.assertEqual(mixed.sources["web"].failure.kind, FailureKind.TIMEOUT)
        self.assertTrue(mixed.sources["news"].ok)
        self.assertTrue(mixed.sources["images"].ok)

    def test_fewer_workers_than_sources(self):
        for provider in self.providers.values():
            provider.delay = 0.2
        service = self.make_service(timeout=1.0, max_workers=1)
        try:
            envelope, summary = service.run_all("cats")
        finally:
            service.close()

        self.assertFalse(summary.has_failures)
        self.assertEqual(envelope.total_results, 15)

    def test_timed_out_lookup_is_counted_once(self):
        def sample(status):
            value = METRICS_REGISTRY.get_sample_value(
                "snaxel_source_lookups_total", {"source": "books", "status": status}
            )
            return value or 0.0

        release = threading.Event()
        self.providers[Source.BOOKS].release = release
        service = self.make_service(timeout=0.2)
        timeouts_before, successes_before = sample("timeout"), sample("success")
        try:
            envelope = service.run("late books", ["books"])
        finally:
            release.set()
            # Let the abandoned worker finish before reading the counters.
            service._executors[Source.BOOKS].shutdown(wait=True)
            service.close()

        self.assertEqual(envelope.sources["books"].failure.kind, FailureKind.TIMEOUT)
        self.assertEqual(sample("timeout") - timeouts_before, 1)
        self.assertEqual(sample("success") - successes_before, 0)

    def test_lookup_ticket_is_claimed_once(self):
        ticket = _LookupTicket()
        self.assertTrue(ticket.claim())
        self.assertFalse(ticket.claim())


class TestCaching(AggregatorTestCase):

    def test_second_run_within_ttl_is_served_from_cache(self):
        first = self.service.run("cats", ["web", "images"])
        self.clock.advance(120)
        second = self.service.run("cats", ["web", "images"])

        self.assertIs(second, first)
        self.assertEqual(second.model_dump_json(), first.model_dump_json())
        self.assertEqual(self.total_calls(), 2)

    def test_run_after_ttl_dispatches_again(self):
        self.service.run("cats", ["web"])
        self.clock.advance(301)
        self.service.run("cats", ["web"])

        self.assertEqual(len(self.providers[Source.WEB].calls), 2)

    def test_cache_hit_is_independent_of_source_order(self):
        self.service.run("cats", ["news", "web"])
        self.service.run("cats", ["web", "news"])

        self.assertEqual(len(self.providers[Source.WEB].calls), 1)
        self.assertEqual(len(self.providers[Source.NEWS].calls), 1)

    def test_cache_hit_is_case_insensitive(self):
        self.service.run("Cats", ["web"])
        self.service.run("  cats ", ["web"])

        self.assertEqual(len(self.providers[Source.WEB].calls), 1)

    def test_cache_hit_keeps_stored_query_text(self):
        first = self.service.run("cats", ["web"])
        second = self.service.run("  CATS ", ["web"])

        self.assertIs(second, first)
        self.assertEqual(second.query, "cats")

    def test_failures_are_cached_with_the_envelope(self):
        self.providers[Source.WEB].error = SearchError("down")
        self.service.run("cats", ["web"])
        self.service.run("cats", ["web"])

        self.assertEqual(len(self.providers[Source.WEB].calls), 1)

    def test_cache_failure_is_infrastructure_error(self):
        broken_cache = MagicMock()
        broken_cache.get.side_effect = OSError("cache offline")
        service = AggregatorService(
            self.providers, broken_cache, max_workers=2, source_timeout_seconds=1, default_limit=10
        )
        try:
            with self.assertRaises(InfrastructureError):
                service.run("cats", ["web"])
        finally:
            service.close()


class TestPreconditions(AggregatorTestCase):

    def test_blank_query_rejected_without_dispatch(self):
        with self.assertRaises(InvalidQueryError):
            self.service.run("   ", ["web"])
        self.assertEqual(self.total_calls(), 0)

    def test_none_query_rejected(self):
        with self.assertRaises(InvalidQueryError):
            self.service.run(None, ["web"])

    def test_unknown_sources_are_ignored(self):
        filtered = self.service.run("cats", ["web", "carrierpigeon"])
        plain = self.service.run("cats", ["web"])

        self.assertIs(plain, filtered)
        self.assertEqual(list(filtered.sources), ["web"])
        self.assertEqual(len(self.providers[Source.WEB].calls), 1)

    def test_only_unknown_sources_rejected(self):
        with self.assertRaises(NoSourcesError):
            self.service.run("cats", ["carrierpigeon"])
        with self.assertRaises(NoSourcesError):
            self.service.run("cats", [])
        self.assertEqual(self.total_calls(), 0)

    def test_closed_service_raises_infrastructure_error(self):
        self.service.close()
        with self.assertRaises(InfrastructureError):
            self.service.run("cats", ["web"])


class TestLookupOptions(AggregatorTestCase):

    def test_default_limits_double_for_images(self):
        self.service.run("cats", ["web", "images"])

        self.assertEqual(self.providers[Source.WEB].calls[0][1].limit, 10)
        self.assertEqual(self.providers[Source.IMAGES].calls[0][1].limit, 20)

    def test_explicit_limit_is_scaled_per_source(self):
        self.service.run("cats", ["web", "images"], limit=5)

        self.assertEqual(self.providers[Source.WEB].calls[0][1].limit, 5)
        self.assertEqual(self.providers[Source.IMAGES].calls[0][1].limit, 10)

    def test_source_options_override(self):
        self.service.run(
            "cats", ["videos"], source_options={"videos": {"limit": 3, "safe_search": True}}
        )

        options = self.providers[Source.VIDEOS].calls[0][1]
        self.assertEqual(options.limit, 3)
        self.assertEqual(options.extra, {"safe_search": True})

    def test_invalid_override_rejected_before_dispatch(self):
        with self.assertRaises(InvalidOptionsError) as ctx:
            self.service.run("cats", ["web", "news"], source_options={"news": {"limit": 0}})

        self.assertEqual(ctx.exception.kind, "bad_request")
        self.assertEqual(ctx.exception.source, "news")
        self.assertEqual(self.total_calls(), 0)
        self.assertEqual(self.cache.size(), 0)

    def test_malformed_override_rejected(self):
        with self.assertRaises(InvalidOptionsError):
            self.service.run("cats", ["web"], source_options={"web": 5})
        self.assertEqual(self.total_calls(), 0)


class TestRunAll(AggregatorTestCase):

    def test_run_all_covers_every_source(self):
        self.providers[Source.NEWS].error = SearchError("down")

        envelope, summary = self.service.run_all("cats")

        self.assertEqual(list(envelope.sources), [s.value for s in CANONICAL_ORDER])
        self.assertEqual(summary.total_results, envelope.total_results)
        self.assertEqual(summary.source_counts["news"], 0)
        self.assertEqual(summary.source_counts["web"], 3)
        self.assertEqual(summary.failed, ["news"])
        self.assertNotIn("news", summary.succeeded)
        self.assertTrue(summary.has_failures)

    def test_summary_is_pure_projection(self):
        envelope = self.service.run("cats", ["web"])
        self.assertEqual(summarize(envelope), summarize(envelope))
        self.assertEqual(self.total_calls(), 1)


class TestSearchSingle(AggregatorTestCase):

    def test_images_default_to_double_limit(self):
        self.service.search_single("images", "cats")
        self.assertEqual(self.providers[Source.IMAGES].calls[0][1].limit, 20)

    def test_explicit_limit_passes_through(self):
        self.service.search_single("images", "cats", limit=7)
        self.assertEqual(self.providers[Source.IMAGES].calls[0][1].limit, 7)

    def test_bypasses_cache(self):
        self.service.search_single("web", "cats")
        self.service.search_single("web", "cats")

        self.assertEqual(len(self.providers[Source.WEB].calls), 2)
        self.assertEqual(self.cache.size(), 0)

    def test_failure_is_returned_not_raised(self):
        self.providers[Source.BOOKS].error = SearchError("no books")

        result = self.service.search_single("books", "cats")

        self.assertFalse(result.ok)
        self.assertEqual(result.failure.message, "no books")

    def test_unknown_source_rejected(self):
        with self.assertRaises(UnknownSourceError):
            self.service.search_single("carrierpigeon", "cats")

    def test_blank_query_rejected(self):
        with self.assertRaises(InvalidQueryError):
            self.service.search_single("web", "")

    def test_out_of_range_limit_rejected(self):
        with self.assertRaises(InvalidOptionsError):
            self.service.search_single("web", "cats", limit=0)
        self.assertEqual(self.total_calls(), 0)


class TestHealthCheck(AggregatorTestCase):

    def test_reports_each_source(self):
        self.providers[Source.NEWS].error = SearchError("down")
        health = self.service.health_check()

        self.assertEqual(list(health), [s.value for s in CANONICAL_ORDER])
        self.assertFalse(health["news"])
        self.assertTrue(health["web"])


if __name__ == "__main__":
    unittest.main()
