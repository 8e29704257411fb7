from enum import Enum
from typing import Any, Dict, List, Optional
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator


class FailureKind(str, Enum):
    """Why a single source lookup did not produce results."""
    ERROR = "error"
    TIMEOUT = "timeout"
    UNAVAILABLE = "unavailable"
    INVALID_RESPONSE = "invalid_response"


class ResultItem(BaseModel):
    """Normalized data model for a single retrieved item."""
    model_config = ConfigDict(frozen=True)

    title: str = Field(..., description="Display title of the item")
    url: str = Field(..., description="Target link of the item")
    snippet: Optional[str] = Field(None, description="Short description, if the source has one")
    thumbnail: Optional[str] = Field(None, description="Preview image URL, if available")
    metadata: Dict[str, Any] = Field(
        default_factory=dict,
        description="Source-specific extras (channel, duration, rating, published date...)",
    )


class FailureReason(BaseModel):
    """Structured description of a failed source lookup."""
    model_config = ConfigDict(frozen=True)

    kind: FailureKind = FailureKind.ERROR
    message: str


class SourceResult(BaseModel):
    """Outcome of one source: either an ordered result list or a failure, never both."""
    model_config = ConfigDict(frozen=True)

    results: Optional[List[ResultItem]] = None
    failure: Optional[FailureReason] = None

    @model_validator(mode="after")
    def _exactly_one_outcome(self) -> "SourceResult":
        if (self.results is None) == (self.failure is None):
            raise ValueError("SourceResult requires exactly one of 'results' or 'failure'")
        return self

    @classmethod
    def success(cls, results: List[ResultItem]) -> "SourceResult":
        return cls(results=list(results))

    @classmethod
    def failed(cls, kind: FailureKind, message: str) -> "SourceResult":
        return cls(failure=FailureReason(kind=kind, message=message))

    @property
    def ok(self) -> bool:
        return self.failure is None

    @property
    def count(self) -> int:
        """Number of successful results; failed sources count as zero."""
        return len(self.results) if self.results is not None else 0


class Envelope(BaseModel):
    """Merged response for one aggregation request.

    `sources` is keyed by source identifier and kept in canonical presentation
    order by whoever builds the envelope. `total_results` is derived.
    """
    model_config = ConfigDict(frozen=True)

    query: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    sources: Dict[str, SourceResult] = Field(default_factory=dict)

    @computed_field
    @property
    def total_results(self) -> int:
        return sum(result.count for result in self.sources.values())


class Summary(BaseModel):
    """Read-only projection of an Envelope."""
    model_config = ConfigDict(frozen=True)

    total_results: int = 0
    source_counts: Dict[str, int] = Field(default_factory=dict)
    succeeded: List[str] = Field(default_factory=list)
    failed: List[str] = Field(default_factory=list)

    @computed_field
    @property
    def has_failures(self) -> bool:
        return bool(self.failed)
