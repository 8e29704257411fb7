from .cache import ResultCache
from .service import AggregatorService, build_aggregator, summarize

__all__ = ["ResultCache", "AggregatorService", "build_aggregator", "summarize"]
