import time
import random
from typing import Any, Dict, List, Optional
from urllib.parse import quote_plus

from .base import SourceProvider, SearchError
from .schema import ResultItem
from .sources import LookupOptions, Source


class SimulatedSourceProvider(SourceProvider):
    """A deterministic provider for development, testing, and offline environments.

    It returns plausible-looking items shaped like the real source (thumbnails
    for images, channel and duration for videos, and so on) so the aggregator
    and the request surface can be exercised without network access.
    """

    _DOMAINS = {
        Source.WEB: ["example.com", "test.org", "sample.net", "benchmark.io", "mock.co"],
        Source.IMAGES: ["images.example.com", "photos.test.org", "cdn.sample.net"],
        Source.VIDEOS: ["video.example.com", "clips.test.org"],
        Source.NEWS: ["news.example.com", "daily.test.org", "wire.sample.net"],
        Source.BOOKS: ["books.example.com", "library.test.org"],
    }

    def __init__(
        self,
        source: Source,
        latency_mean: float = 0.1,
        fail_with: Optional[SearchError] = None,
    ):
        super().__init__(source)
        self.latency_mean = latency_mean
        self.fail_with = fail_with

    def health_check(self) -> bool:
        return self.fail_with is None

    def lookup(self, query: str, options: LookupOptions) -> List[ResultItem]:
        safe_limit = self._validate_limit(options.limit)

        # Simulate network latency
        if self.latency_mean > 0:
            time.sleep(max(0.0, random.gauss(self.latency_mean, self.latency_mean / 4)))

        if self.fail_with is not None:
            raise self.fail_with

        return [self._make_item(query, i) for i in range(safe_limit)]

    def _make_item(self, query: str, index: int) -> ResultItem:
        domains = self._DOMAINS[self.source]
        domain = domains[index % len(domains)]
        url = f"https://{domain}/{self.source.value}?q={quote_plus(query)}&id={index}"
        title = f"{self.source.value.title()} result {index + 1} for '{query}'"
        snippet = f"This is a simulated {self.source.value} result for the query '{query}'."
        thumbnail = None
        metadata: Dict[str, Any] = {}

        if self.source is Source.IMAGES:
            thumbnail = f"https://{domain}/thumb/{index}.jpg"
            metadata = {"width": 640, "height": 480}
            snippet = None
        elif self.source is Source.VIDEOS:
            thumbnail = f"https://{domain}/thumb/{index}.jpg"
            metadata = {
                "channel": f"Channel {index % 3 + 1}",
                "duration": f"{3 + index}:{(index * 7) % 60:02d}",
            }
        elif self.source is Source.NEWS:
            metadata = {
                "publisher": domain.split(".")[0].title(),
                "published_date": f"2024-01-{index % 28 + 1:02d}",
            }
        elif self.source is Source.BOOKS:
            metadata = {
                "authors": [f"Author {index + 1}"],
                "rating": round(3.0 + (index % 20) / 10, 1),
            }

        return ResultItem(
            title=title,
            url=url,
            snippet=snippet,
            thumbnail=thumbnail,
            metadata=metadata,
        )
