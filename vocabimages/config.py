"""Runtime settings read from the environment."""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value else default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value else default


@dataclass
class Settings:
    """Pipeline configuration.

    Every field can be overridden with a ``VOCABIMAGES_*`` environment
    variable; API keys use the provider's conventional variable names.
    """
    data_dir: Path = Path("data")
    blob_base_url: Optional[str] = None
    fallback_blob_dir: Optional[Path] = None
    pexels_api_key: Optional[str] = None
    pixabay_api_key: Optional[str] = None
    unsplash_api_key: Optional[str] = None
    target_count: int = 3
    max_retries: int = 3
    retry_interval_hours: float = 24.0
    max_candidates: int = 30
    min_quality_threshold: float = 5.0
    auto_approval_threshold: float = 8.5
    request_timeout: float = 20.0
    request_retries: int = 3
    request_retry_delay: float = 1.0
    collection_concurrency: int = 3
    collection_attempts: int = 3
    collection_backoff: float = 5.0
    stall_timeout: float = 300.0
    batch_size: int = 3
    batch_delay: float = 1.0
    log_level: str = "INFO"

    @property
    def db_path(self) -> Path:
        return self.data_dir / "vocabimages.db"

    @property
    def blob_dir(self) -> Path:
        return self.data_dir / "blobs"

    @property
    def registry_path(self) -> Path:
        return self.data_dir / "sources.json"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables, falling back to defaults."""
        defaults = cls()
        fallback = os.getenv("VOCABIMAGES_FALLBACK_BLOB_DIR")
        return cls(
            data_dir=Path(os.getenv("VOCABIMAGES_DATA_DIR", str(defaults.data_dir))),
            blob_base_url=os.getenv("VOCABIMAGES_BLOB_BASE_URL") or None,
            fallback_blob_dir=Path(fallback) if fallback else None,
            pexels_api_key=os.getenv("PEXELS_API_KEY") or None,
            pixabay_api_key=os.getenv("PIXABAY_API_KEY") or None,
            unsplash_api_key=os.getenv("UNSPLASH_ACCESS_KEY") or None,
            target_count=_env_int("VOCABIMAGES_TARGET_COUNT", defaults.target_count),
            max_retries=_env_int("VOCABIMAGES_MAX_RETRIES", defaults.max_retries),
            retry_interval_hours=_env_float("VOCABIMAGES_RETRY_INTERVAL_HOURS", defaults.retry_interval_hours),
            max_candidates=_env_int("VOCABIMAGES_MAX_CANDIDATES", defaults.max_candidates),
            min_quality_threshold=_env_float("VOCABIMAGES_MIN_QUALITY", defaults.min_quality_threshold),
            auto_approval_threshold=_env_float("VOCABIMAGES_AUTO_APPROVE", defaults.auto_approval_threshold),
            request_timeout=_env_float("VOCABIMAGES_REQUEST_TIMEOUT", defaults.request_timeout),
            request_retries=_env_int("VOCABIMAGES_REQUEST_RETRIES", defaults.request_retries),
            request_retry_delay=_env_float("VOCABIMAGES_REQUEST_RETRY_DELAY", defaults.request_retry_delay),
            collection_concurrency=_env_int("VOCABIMAGES_CONCURRENCY", defaults.collection_concurrency),
            collection_attempts=_env_int("VOCABIMAGES_JOB_ATTEMPTS", defaults.collection_attempts),
            collection_backoff=_env_float("VOCABIMAGES_JOB_BACKOFF", defaults.collection_backoff),
            stall_timeout=_env_float("VOCABIMAGES_STALL_TIMEOUT", defaults.stall_timeout),
            batch_size=_env_int("VOCABIMAGES_BATCH_SIZE", defaults.batch_size),
            batch_delay=_env_float("VOCABIMAGES_BATCH_DELAY", defaults.batch_delay),
            log_level=os.getenv("VOCABIMAGES_LOG_LEVEL", defaults.log_level),
        )
