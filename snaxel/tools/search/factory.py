from typing import Dict, Iterable, Optional

from .base import SourceProvider
from .remote import RemoteQueryEngineProvider
from .simulated import SimulatedSourceProvider
from .sources import CANONICAL_ORDER, Source


class SearchFactory:
    """Factory to instantiate source providers based on configuration."""

    @staticmethod
    def get_provider(
        provider_type: str,
        source: Source,
        engine_url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ) -> SourceProvider:
        provider_type = (provider_type or "").strip().lower()
        if provider_type == "simulated":
            return SimulatedSourceProvider(source)
        elif provider_type == "remote":
            return RemoteQueryEngineProvider(
                source, base_url=engine_url, timeout_seconds=timeout_seconds
            )
        else:
            raise ValueError(f"Unknown provider type: {provider_type}")

    @staticmethod
    def build_registry(
        provider_type: str = "simulated",
        sources: Iterable[Source] = CANONICAL_ORDER,
        engine_url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ) -> Dict[Source, SourceProvider]:
        """One provider per source, all of the same kind."""
        return {
            source: SearchFactory.get_provider(
                provider_type, source, engine_url=engine_url, timeout_seconds=timeout_seconds
            )
            for source in sources
        }

    @staticmethod
    def from_settings(settings=None) -> Dict[Source, SourceProvider]:
        """Build the provider registry described by the `search` settings group."""
        if settings is None:
            from snaxel.services.shared.settings import get_settings
            settings = get_settings()

        search = settings.search
        return SearchFactory.build_registry(
            search.provider,
            engine_url=search.engine_url,
            timeout_seconds=search.engine_timeout_seconds,
        )
