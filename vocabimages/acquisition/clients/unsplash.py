"""Unsplash photo search source.

API: https://unsplash.com/documentation
Auth: access key in the ``Authorization: Client-ID <key>`` header

Unsplash asks clients to hit a photo's ``download_location`` whenever the
photo is actually used, so :meth:`UnsplashClient.download` does that before
streaming the file.
"""

from typing import Iterator

import requests

from vocabimages.catalog.models import LicenseInfo
from vocabimages.utils.logger import logger as LOGGER

from ..source import SearchOptions, SourceCandidate
from .http import HttpSourceClient

API_URL = "https://api.unsplash.com/search/photos"
MAX_PER_PAGE = 30


class UnsplashClient(HttpSourceClient):
    """Client for the Unsplash search API."""

    source_name = "unsplash"
    requests_per_hour = 50

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._download_locations: dict[str, str] = {}

    def _auth_headers(self) -> dict:
        return {"Authorization": f"Client-ID {self._require_key()}", "Accept-Version": "v1"}

    def search(self, term: str, options: SearchOptions) -> list[SourceCandidate]:
        data = self._get_json(
            API_URL,
            params={
                "query": term,
                "page": 1,
                "per_page": max(1, min(options.per_page, MAX_PER_PAGE)),
                "order_by": "relevant",
                "content_filter": "high" if options.safe_search else "low",
            },
            headers=self._auth_headers(),
        )

        candidates = []
        for photo in data.get("results", []):
            width = photo.get("width") or 0
            height = photo.get("height") or 0
            urls = photo.get("urls") or {}
            download_url = urls.get("regular") or urls.get("full")
            if not download_url or width < options.min_width or height < options.min_height:
                continue

            photo_id = str(photo.get("id", ""))
            links = photo.get("links") or {}
            if links.get("download_location"):
                self._download_locations[photo_id] = links["download_location"]

            user = photo.get("user") or {}
            candidates.append(
                SourceCandidate(
                    source=self.name,
                    id=photo_id,
                    url=links.get("html"),
                    download_url=download_url,
                    width=width,
                    height=height,
                    tags=[t["title"] for t in photo.get("tags") or [] if t.get("title")],
                    description=photo.get("description") or photo.get("alt_description") or None,
                    license=LicenseInfo(
                        type="unsplash",
                        attribution=f"Photo by {user.get('name') or 'Unknown'} on Unsplash",
                        commercial=True,
                        url=links.get("html") or "https://unsplash.com/license",
                    ),
                    search_term=term,
                    position=len(candidates),
                )
            )
        return candidates

    def download(self, candidate: SourceCandidate) -> Iterator[bytes]:
        location = self._download_locations.pop(candidate.id, None)
        if location:
            try:
                self.session.get(location, headers=self._auth_headers(), timeout=self.timeout).close()
            except requests.RequestException as e:
                LOGGER.warning(f"{self.name}: download tracking failed for {candidate.id}: {e}")
        yield from super().download(candidate)
