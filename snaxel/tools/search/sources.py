"""Source identifiers, canonical presentation order and per-source lookup policy."""

import logging
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)


class Source(str, Enum):
    """Fixed domain of result sources. Declaration order is presentation order."""
    WEB = "web"
    IMAGES = "images"
    VIDEOS = "videos"
    NEWS = "news"
    BOOKS = "books"


CANONICAL_ORDER: Tuple[Source, ...] = tuple(Source)

DEFAULT_LIMIT = 10

# Image grids show more tiles per page than the list-style sources.
LIMIT_MULTIPLIERS: Dict[Source, int] = {Source.IMAGES: 2}


class LookupOptions(BaseModel):
    """Options handed to a provider for one lookup."""
    model_config = ConfigDict(frozen=True)

    limit: int = Field(DEFAULT_LIMIT, ge=1)
    extra: Dict[str, Any] = Field(default_factory=dict)


def parse_source(value: Any) -> Optional[Source]:
    """Return the Source for `value`, or None if it is not a known identifier."""
    if isinstance(value, Source):
        return value
    if not isinstance(value, str):
        return None
    try:
        return Source(value.strip().lower())
    except ValueError:
        return None


def normalize_sources(requested: Iterable[Any]) -> Tuple[Source, ...]:
    """Drop unknown identifiers and duplicates, return the rest in canonical order."""
    known = set()
    for value in requested:
        source = parse_source(value)
        if source is None:
            logger.info("Ignoring unknown source identifier %r", value)
            continue
        known.add(source)
    return tuple(source for source in CANONICAL_ORDER if source in known)


def effective_limit(source: Source, limit: Optional[int] = None) -> int:
    """Apply the per-source multiplier to the requested (or default) limit."""
    base = DEFAULT_LIMIT if limit is None else limit
    return max(1, base) * LIMIT_MULTIPLIERS.get(source, 1)


def options_for(
    source: Source,
    limit: Optional[int] = None,
    overrides: Optional[Mapping[str, Mapping[str, Any]]] = None,
) -> LookupOptions:
    """Build the lookup options for one source.

    `overrides` maps source identifiers to option dicts; a `limit` key there
    replaces the computed limit verbatim, anything else lands in `extra`.
    """
    values: Dict[str, Any] = dict((overrides or {}).get(source.value) or {})
    source_limit = values.pop("limit", None)
    if source_limit is None:
        source_limit = effective_limit(source, limit)
    return LookupOptions(limit=source_limit, extra=values)


def source_ids(sources: Iterable[Source]) -> List[str]:
    return [source.value for source in sources]
