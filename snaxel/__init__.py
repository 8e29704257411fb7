"""Snaxel: multi-source search aggregation with a TTL result cache."""

__version__ = "1.0.0"
