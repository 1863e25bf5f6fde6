"""Source registry with JSON persistence."""

import json
from pathlib import Path
from typing import Dict, Optional

from vocabimages.config import Settings
from vocabimages.utils.logger import logger as LOGGER

from .clients.http import RateLimiter
from .clients.pexels import PexelsClient
from .clients.pixabay import PixabayClient
from .clients.unsplash import UnsplashClient
from .filesystem_source import FilesystemSource
from .source import ImageSourceClient

SOURCE_TYPES = ("filesystem", "pexels", "pixabay", "unsplash")

HTTP_CLIENTS = {
    "pexels": (PexelsClient, "pexels_api_key"),
    "pixabay": (PixabayClient, "pixabay_api_key"),
    "unsplash": (UnsplashClient, "unsplash_api_key"),
}


class SourceRegistry:
    """Registered image sources, in priority order, stored as JSON.

    Each entry maps a source name to ``{"type": ..., "priority": ..., **config}``.
    Lower priority values are searched first.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> Dict[str, dict]:
        """Load source registry from disk.

        Returns:
            Dict mapping source name to source config
        """
        if not self.path.exists():
            return {}

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            LOGGER.warning(f"Failed to load source registry: {e}")
            return {}

    def save(self, sources: Dict[str, dict]) -> None:
        """Save source registry to disk.

        Args:
            sources: Dict mapping source name to source config
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)

        try:
            with open(self.path, "w", encoding="utf-8") as f:
                json.dump(sources, f, indent=2, ensure_ascii=False)
        except OSError as e:
            LOGGER.error(f"Failed to save source registry: {e}")
            raise

    def add(self, name: str, source_type: str, priority: Optional[int] = None, **kwargs) -> None:
        """Add or update a source in the registry.

        Args:
            name: Unique identifier for the source
            source_type: Type of source client (filesystem, pexels, pixabay, unsplash)
            priority: Search order; appended after existing sources when omitted
            **kwargs: Additional source-specific configuration

        Raises:
            ValueError: If the source type is unknown
        """
        if source_type not in SOURCE_TYPES:
            raise ValueError(f"Unknown source type: {source_type}")

        sources = self.load()
        if priority is None:
            existing = [cfg.get("priority", 0) for n, cfg in sources.items() if n != name]
            priority = max(existing, default=0) + 1

        sources[name] = {"type": source_type, "priority": priority, **kwargs}
        self.save(sources)

    def remove(self, name: str) -> bool:
        """Remove a source from the registry.

        Returns:
            True if source was removed, False if not found
        """
        sources = self.load()

        if name in sources:
            del sources[name]
            self.save(sources)
            return True

        return False

    def get(self, name: str) -> Optional[dict]:
        return self.load().get(name)

    def list_sources(self) -> Dict[str, dict]:
        """List all registered sources ordered by priority."""
        sources = self.load()
        return dict(sorted(sources.items(), key=lambda kv: (kv[1].get("priority", 0), kv[0])))


def build_client(name: str, config: dict, settings: Settings) -> Optional[ImageSourceClient]:
    """Instantiate the client for a registry entry.

    Returns:
        Client instance, or None if the entry is unusable
    """
    source_type = config.get("type")

    if source_type == "filesystem":
        path = config.get("path")
        if not path:
            LOGGER.error(f"Filesystem source {name} missing path")
            return None
        return FilesystemSource(name, Path(path))
    elif source_type in HTTP_CLIENTS:
        client_class, key_setting = HTTP_CLIENTS[source_type]
        limit = config.get("rate_limit")
        client = client_class(
            config.get("api_key") or getattr(settings, key_setting),
            timeout=settings.request_timeout,
            max_retries=settings.request_retries,
            retry_delay=settings.request_retry_delay,
            rate_limiter=RateLimiter(int(limit)) if limit else None,
        )
        client.source_name = name
        return client
    else:
        LOGGER.error(f"Unknown source type: {source_type}")
        return None


def build_clients(registry: SourceRegistry, settings: Settings) -> list[ImageSourceClient]:
    """Instantiate every registered source in priority order."""
    clients = []
    for name, config in registry.list_sources().items():
        client = build_client(name, config, settings)
        if client is not None:
            clients.append(client)
    return clients
