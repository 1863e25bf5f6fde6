"""Shared HTTP plumbing for web image sources."""

import threading
import time
from collections import deque
from typing import Callable, Iterator, Optional

import requests

from vocabimages.errors import DownloadFailed, SourceError, SourceRateLimited, SourceTimeout, SourceUnavailable
from vocabimages.utils.logger import logger as LOGGER

from ..source import SourceCandidate

USER_AGENT = "vocabimages/0.1 (+https://github.com/vocabimages/vocabimages)"
CHUNK_SIZE = 64 * 1024
RETRY_STATUSES = (429, 500, 502, 503, 504)


class RateLimiter:
    """At most ``max_requests`` calls per sliding ``period`` seconds.

    Safe to share between the threads of one client.
    """

    def __init__(self, max_requests: int, period: float = 3600.0, clock: Callable[[], float] = time.monotonic):
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        self.max_requests = max_requests
        self.period = period
        self._clock = clock
        self._lock = threading.Lock()
        self._calls: deque = deque()

    def try_acquire(self) -> bool:
        """Take a slot if one is free in the current window."""
        with self._lock:
            now = self._clock()
            while self._calls and now - self._calls[0] >= self.period:
                self._calls.popleft()
            if len(self._calls) >= self.max_requests:
                return False
            self._calls.append(now)
            return True

    def retry_after(self) -> float:
        """Seconds until the oldest call in the window expires."""
        with self._lock:
            if len(self._calls) < self.max_requests:
                return 0.0
            return max(0.0, self._calls[0] + self.period - self._clock())


class HttpSourceClient:
    """Base class for JSON search APIs with streamed downloads.

    Searches go through a per-client rate limiter and are retried with
    exponential backoff on 429, 5xx and connection errors.
    """

    source_name = "http"
    requests_per_hour = 100

    def __init__(self, api_key: Optional[str], timeout: float = 20.0, session: Optional[requests.Session] = None,
                 max_retries: int = 3, retry_delay: float = 1.0, rate_limiter: Optional[RateLimiter] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.api_key = api_key
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": USER_AGENT})
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.rate_limiter = rate_limiter or RateLimiter(self.requests_per_hour)
        self._sleep = sleep

    @property
    def name(self) -> str:
        return self.source_name

    def _require_key(self) -> str:
        if not self.api_key:
            raise SourceUnavailable(f"{self.name}: API key not configured")
        return self.api_key

    def _get_json(self, url: str, params: dict, headers: Optional[dict] = None) -> dict:
        attempt = 1
        while True:
            try:
                return self._request_json(url, params, headers)
            except SourceError as e:
                if not e.transient or attempt >= self.max_retries:
                    raise
                delay = self.retry_delay * (2 ** (attempt - 1))
                LOGGER.warning(f"{self.name}: attempt {attempt}/{self.max_retries} failed, retrying in {delay:.1f}s: {e}")
                self._sleep(delay)
                attempt += 1

    def _request_json(self, url: str, params: dict, headers: Optional[dict]) -> dict:
        if not self.rate_limiter.try_acquire():
            raise SourceRateLimited(
                f"{self.name}: rate limit of {self.rate_limiter.max_requests} requests reached, "
                f"next slot in {self.rate_limiter.retry_after():.0f}s"
            )
        try:
            response = self.session.get(url, params=params, headers=headers, timeout=self.timeout)
            response.raise_for_status()
            return response.json()
        except requests.Timeout as e:
            raise SourceTimeout(f"{self.name}: request timed out: {e}") from e
        except requests.ConnectionError as e:
            raise _transient(SourceUnavailable(f"{self.name}: connection failed: {e}")) from e
        except requests.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            if status in (401, 403):
                raise SourceUnavailable(f"{self.name}: credentials rejected ({status})") from e
            error = SourceError(f"{self.name}: search failed: {e}")
            raise (_transient(error) if status in RETRY_STATUSES else error) from e
        except (requests.RequestException, ValueError) as e:
            raise SourceError(f"{self.name}: search failed: {e}") from e

    def download(self, candidate: SourceCandidate) -> Iterator[bytes]:
        """Stream candidate bytes from its download URL."""
        try:
            response = self.session.get(candidate.download_url, stream=True, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise DownloadFailed(f"{self.name}: failed to download {candidate.id}: {e}") from e

        LOGGER.debug(f"Downloading {candidate.download_url}")
        try:
            for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                if chunk:
                    yield chunk
        except requests.RequestException as e:
            raise DownloadFailed(f"{self.name}: download of {candidate.id} interrupted: {e}") from e
        finally:
            response.close()


def _transient(error: SourceError) -> SourceError:
    error.transient = True
    return error
