"""Pexels photo search source.

API: https://www.pexels.com/api/documentation/
Auth: API key in the Authorization header
"""

from vocabimages.catalog.models import LicenseInfo

from ..source import SearchOptions, SourceCandidate
from .http import HttpSourceClient

API_URL = "https://api.pexels.com/v1/search"
MAX_PER_PAGE = 80


class PexelsClient(HttpSourceClient):
    """Client for the Pexels search API."""

    source_name = "pexels"
    requests_per_hour = 200

    def search(self, term: str, options: SearchOptions) -> list[SourceCandidate]:
        """Search photos for a term.

        Args:
            term: Search query
            options: Page size and filters

        Returns:
            Candidates in the order Pexels ranked them
        """
        api_key = self._require_key()
        data = self._get_json(
            API_URL,
            params={"query": term, "per_page": min(options.per_page, MAX_PER_PAGE), "page": 1},
            headers={"Authorization": api_key},
        )

        candidates = []
        for position, photo in enumerate(data.get("photos", [])):
            src = photo.get("src") or {}
            download_url = src.get("large") or src.get("original")
            if not download_url:
                continue

            photographer = photo.get("photographer") or "Unknown"
            candidates.append(
                SourceCandidate(
                    source=self.name,
                    id=str(photo.get("id", "")),
                    url=photo.get("url"),
                    download_url=download_url,
                    width=photo.get("width") or 0,
                    height=photo.get("height") or 0,
                    tags=[],
                    description=photo.get("alt") or None,
                    license=LicenseInfo(
                        type="pexels",
                        attribution=f"Photo by {photographer} from Pexels",
                        commercial=True,
                        url="https://www.pexels.com/license/",
                    ),
                    search_term=term,
                    position=position,
                )
            )
        return candidates
