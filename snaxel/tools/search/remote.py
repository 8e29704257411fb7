from __future__ import annotations

import os
from typing import Any, Dict, List, Optional

import requests

from .base import (
    SourceProvider,
    SearchError,
    SourceTimeoutError,
    SourceUnavailableError,
    InvalidResponseError,
)
from .schema import ResultItem
from .sources import LookupOptions, Source


_CORE_FIELDS = ("title", "url", "link", "snippet", "description", "thumbnail", "image")


class RemoteQueryEngineProvider(SourceProvider):
    """Provider backed by an external HTTP query engine.

    The engine exposes one endpoint per source: `POST {base_url}/search/{source}`
    with a JSON body `{"query": ..., "limit": ...}` and answers with
    `{"results": [...]}`. Anything other than `title`/`url`/`snippet`/`thumbnail`
    on an item is preserved in `metadata`.
    """

    def __init__(
        self,
        source: Source,
        base_url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        super().__init__(source)
        self.base_url = (base_url or os.getenv("SNAXEL_QUERY_ENGINE_URL", "")).rstrip("/")
        self.timeout_seconds = float(
            timeout_seconds or os.getenv("SNAXEL_QUERY_ENGINE_TIMEOUT_SECONDS", "8")
        )
        self.session = session or requests.Session()

    def health_check(self) -> bool:
        """Only validates local configuration; no request is sent."""
        return bool(self.base_url)

    def lookup(self, query: str, options: LookupOptions) -> List[ResultItem]:
        if not self.base_url:
            raise SourceUnavailableError(
                "RemoteQueryEngineProvider is misconfigured: missing base URL. "
                "Set SNAXEL_QUERY_ENGINE_URL or search.engine_url."
            )

        safe_limit = self._validate_limit(options.limit)
        payload: Dict[str, Any] = {**options.extra, "query": query, "limit": safe_limit}

        try:
            response = self.session.post(
                f"{self.base_url}/search/{self.source.value}",
                json=payload,
                timeout=self.timeout_seconds,
            )
            response.raise_for_status()
        except requests.Timeout as e:
            raise SourceTimeoutError(
                f"{self.source.value} engine timed out after {self.timeout_seconds}s"
            ) from e
        except requests.ConnectionError as e:
            raise SourceUnavailableError(f"{self.source.value} engine connection error: {e}") from e
        except requests.HTTPError as e:
            status = e.response.status_code if e.response is not None else "unknown"
            raise SearchError(f"{self.source.value} engine HTTP error: {status}") from e
        except requests.RequestException as e:
            raise SearchError(f"{self.source.value} engine request failed: {e}") from e

        try:
            body = response.json()
        except ValueError as e:
            raise InvalidResponseError(f"{self.source.value} engine returned invalid JSON") from e

        if isinstance(body, dict) and "data" in body and isinstance(body["data"], dict):
            # Engines that wrap responses as {"success": ..., "data": {...}}
            body = body["data"]
        if not isinstance(body, dict) or not isinstance(body.get("results", []), list):
            raise InvalidResponseError(f"{self.source.value} engine returned an unexpected payload")

        results: List[ResultItem] = []
        for item in body.get("results") or []:
            if not isinstance(item, dict):
                # Skip malformed entries rather than failing the entire source.
                continue
            url = item.get("url") or item.get("link")
            if not url:
                continue
            results.append(
                ResultItem(
                    title=item.get("title") or "Untitled result",
                    url=url,
                    snippet=item.get("snippet") or item.get("description"),
                    thumbnail=item.get("thumbnail") or item.get("image"),
                    metadata={k: v for k, v in item.items() if k not in _CORE_FIELDS},
                )
            )

        return results[:safe_limit]
