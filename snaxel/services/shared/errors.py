"""Shared error handling infrastructure for Snaxel services.

Provides the request/infrastructure exception taxonomy, HTTP status mapping,
user-facing error payloads, and Sentry integration with request context.
Per-source provider failures are not part of this hierarchy: they are
recorded inside the envelope (see ``snaxel.tools.search.base.SearchError``).
"""

import logging
import os
from typing import Optional, Dict, Any

import sentry_sdk

logger = logging.getLogger(__name__)

_sentry_initialized = False


def init_sentry(dsn: Optional[str] = None) -> bool:
    """Initialize Sentry SDK with configuration.

    Args:
        dsn: Sentry DSN. If not provided, reads from centralized settings.

    Returns:
        True if Sentry is active after the call.
    """
    global _sentry_initialized

    if _sentry_initialized:
        return True

    from snaxel.services.shared.settings import get_settings

    sentry_settings = get_settings().observability.sentry

    effective_dsn = dsn
    if not effective_dsn and sentry_settings.dsn:
        effective_dsn = sentry_settings.dsn.get_secret_value()
    if not effective_dsn:
        effective_dsn = os.getenv("SENTRY_DSN")

    if not effective_dsn:
        logger.debug("Sentry DSN not configured, error tracking disabled")
        return False

    sentry_sdk.init(
        dsn=effective_dsn,
        traces_sample_rate=sentry_settings.traces_sample_rate,
        environment=sentry_settings.environment,
    )
    _sentry_initialized = True
    logger.info("Sentry error tracking initialized")
    return True


class SnaxelError(Exception):
    """Base exception for all request-level Snaxel errors.

    All Snaxel errors include:
    - request_id: Identifier of the aggregation request
    - source: Source identifier involved, if any
    - metadata: Additional context for debugging
    """

    kind = "internal"

    def __init__(
        self,
        message: str,
        request_id: Optional[str] = None,
        source: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        user_message: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.request_id = request_id
        self.source = source
        self.metadata = metadata or {}
        self.user_message = user_message or message

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "kind": self.kind,
            "message": self.message,
            "request_id": self.request_id,
            "source": self.source,
            "metadata": self.metadata,
        }


class RequestError(SnaxelError):
    """The caller asked for something that cannot be served. Never retried."""
    kind = "bad_request"


class InvalidQueryError(RequestError):
    """Query is empty or whitespace-only."""

    def __init__(self, message: str = "Query parameter is required", **kwargs):
        super().__init__(message, **kwargs)


class NoSourcesError(RequestError):
    """No recognized source identifier is left after filtering."""

    def __init__(self, message: str = "At least one known source is required", **kwargs):
        super().__init__(message, **kwargs)


class UnknownSourceError(RequestError):
    """A single-source request named a source outside the fixed domain."""


class InvalidOptionsError(RequestError):
    """Lookup options for a source (limit or overrides) are out of range."""


class InfrastructureError(SnaxelError):
    """The aggregator itself could not complete (worker pool, cache...)."""
    kind = "internal"


def report_error(
    error: Exception,
    request_id: Optional[str] = None,
    extra_context: Optional[Dict[str, Any]] = None,
) -> None:
    """Report error to Sentry with structured context, or log it when Sentry is off."""
    if not init_sentry():
        logger.error("Unhandled error: %s", error, exc_info=error)
        return

    with sentry_sdk.new_scope() as scope:
        if request_id:
            scope.set_tag("request_id", request_id)
        elif isinstance(error, SnaxelError) and error.request_id:
            scope.set_tag("request_id", error.request_id)

        if extra_context:
            for key, value in extra_context.items():
                scope.set_context(key, value)

        if isinstance(error, SnaxelError):
            scope.set_context("snaxel_error", error.to_dict())

        sentry_sdk.capture_exception(error)


def format_user_error(error: Exception, include_details: bool = False) -> str:
    """Convert exception to user-facing error message (no stack traces)."""
    if isinstance(error, RequestError):
        return error.user_message
    if isinstance(error, InfrastructureError):
        if include_details:
            return f"Search failed: {error.message}"
        return "Search failed. Please try again shortly."
    if isinstance(error, SnaxelError):
        return error.user_message

    if isinstance(error, ValueError):
        return f"Invalid input: {error}"
    if isinstance(error, TimeoutError):
        return "Request took too long to process. Please try again."

    if include_details:
        return f"Error ({type(error).__name__}): {error}"
    return "An unexpected error occurred."


def error_kind(error: Exception) -> str:
    """Tag used by the request surface: 'bad_request' or 'internal'."""
    if isinstance(error, SnaxelError):
        return error.kind
    if isinstance(error, ValueError):
        return "bad_request"
    return "internal"


def map_to_http_status(error: Exception) -> int:
    """Map exception to the HTTP status returned by the request surface."""
    if error_kind(error) == "bad_request":
        return 400
    if isinstance(error, TimeoutError):
        return 504
    return 500


def to_error_payload(error: Exception, include_details: bool = False) -> Dict[str, Any]:
    """Tagged failure object returned to callers instead of silent empty results."""
    return {
        "success": False,
        "error": {
            "kind": error_kind(error),
            "message": format_user_error(error, include_details=include_details),
        },
    }
