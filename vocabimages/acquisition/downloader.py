"""In-memory candidate downloads with exponential backoff."""

import random
import time
from typing import Callable

from vocabimages.errors import DownloadFailed
from vocabimages.utils.logger import logger as LOGGER

from .source import ImageSourceClient, SourceCandidate

MAX_DOWNLOAD_BYTES = 50 * 1024 * 1024


class Downloader:
    """Fetches candidate bytes through their source client.

    Args:
        max_retries: Total attempts per candidate
        backoff_base: Seconds for the first backoff, doubled per attempt
        max_bytes: Abort downloads larger than this
    """

    def __init__(self, max_retries: int = 3, backoff_base: float = 1.0, max_bytes: int = MAX_DOWNLOAD_BYTES,
                 sleep: Callable[[float], None] = time.sleep):
        self.max_retries = max(1, max_retries)
        self.backoff_base = backoff_base
        self.max_bytes = max_bytes
        self._sleep = sleep

    def download(self, client: ImageSourceClient, candidate: SourceCandidate) -> bytes:
        """Download a candidate with exponential backoff retry.

        Raises:
            DownloadFailed: After the last attempt failed or the payload is unusable
        """
        last_error = None
        for attempt in range(self.max_retries):
            try:
                return self._fetch(client, candidate)
            except DownloadFailed as e:
                last_error = e
            except Exception as e:
                last_error = DownloadFailed(f"{candidate.source}/{candidate.id}: {e}")

            if attempt < self.max_retries - 1:
                # Exponential backoff with jitter
                backoff = self.backoff_base * (2**attempt) + random.uniform(0, self.backoff_base)
                LOGGER.debug(f"Retrying {candidate.source}/{candidate.id} in {backoff:.1f}s: {last_error}")
                self._sleep(backoff)

        raise last_error

    def _fetch(self, client: ImageSourceClient, candidate: SourceCandidate) -> bytes:
        buffer = bytearray()
        for chunk in client.download(candidate):
            buffer.extend(chunk)
            if len(buffer) > self.max_bytes:
                raise DownloadFailed(f"{candidate.source}/{candidate.id}: exceeds {self.max_bytes} bytes")

        if not buffer:
            raise DownloadFailed(f"{candidate.source}/{candidate.id}: empty response")
        return bytes(buffer)
