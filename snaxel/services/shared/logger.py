import json
import logging
import os
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

TEXT_FORMAT = "%(asctime)s %(levelname)s [%(component)s] %(request_id)s %(event)s %(payload)s"


class JsonFormatter(logging.Formatter):
    """
    Formatter to output logs as JSON Lines, one object per event.
    """
    def format(self, record):
        log_record = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "component": getattr(record, "component", "unknown"),
            "request_id": getattr(record, "request_id", "unknown"),
            "event": getattr(record, "event", record.getMessage()),
            "payload": getattr(record, "payload", {}),
        }
        return json.dumps(log_record, default=str)


def _build_formatter(fmt: str) -> logging.Formatter:
    if fmt == "text":
        return logging.Formatter(TEXT_FORMAT)
    return JsonFormatter()


class SearchLogger:
    """Event logger for one component, tagged with a request id.

    Events go to stderr and, when a log directory is configured, to
    ``<log_dir>/<component>.jsonl``.
    """

    def __init__(
        self,
        component_name: str,
        request_id: Optional[str] = None,
        log_dir: Optional[str] = None,
        fmt: Optional[str] = None,
        level: Optional[str] = None,
    ):
        self.component = component_name
        self.request_id = request_id or str(uuid.uuid4())

        if log_dir is None or fmt is None or level is None:
            from snaxel.services.shared.settings import get_settings
            logging_settings = get_settings().observability.logging
            log_dir = log_dir if log_dir is not None else logging_settings.directory
            fmt = fmt or logging_settings.format
            level = level or logging_settings.level

        self.logger = logging.getLogger(f"snaxel.{component_name}")
        self.logger.setLevel(level.upper())

        # Ensure we don't add multiple handlers if initialized multiple times
        if not self.logger.handlers:
            formatter = _build_formatter(fmt)

            if log_dir:
                os.makedirs(log_dir, exist_ok=True)
                file_handler = logging.FileHandler(os.path.join(log_dir, f"{component_name}.jsonl"))
                file_handler.setFormatter(JsonFormatter())
                self.logger.addHandler(file_handler)

            stream_handler = logging.StreamHandler()
            stream_handler.setFormatter(formatter)
            self.logger.addHandler(stream_handler)
            self.logger.propagate = False

    def log(self, event: str, payload: Optional[Dict[str, Any]] = None, level: int = logging.INFO):
        """
        Log a specific search event.

        :param event: The name of the event (e.g., 'cache_hit', 'source_failed')
        :param payload: Dictionary containing the specific data
        """
        extra = {
            "component": self.component,
            "request_id": self.request_id,
            "event": event,
            "payload": payload or {},
        }
        self.logger.log(level, event, extra=extra)

    def bind(self, request_id: str) -> "SearchLogger":
        """Return a logger for the same component tagged with another request id."""
        bound = SearchLogger.__new__(SearchLogger)
        bound.component = self.component
        bound.request_id = request_id
        bound.logger = self.logger
        return bound
