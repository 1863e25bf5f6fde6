"""Pixabay image search source.

API: https://pixabay.com/api/docs/
Auth: API key as the ``key`` query parameter
"""

from vocabimages.catalog.models import LicenseInfo

from ..source import SearchOptions, SourceCandidate
from .http import HttpSourceClient

API_URL = "https://pixabay.com/api/"
MIN_PER_PAGE = 3
MAX_PER_PAGE = 200


class PixabayClient(HttpSourceClient):
    """Client for the Pixabay search API."""

    source_name = "pixabay"
    requests_per_hour = 100

    def search(self, term: str, options: SearchOptions) -> list[SourceCandidate]:
        api_key = self._require_key()
        data = self._get_json(
            API_URL,
            params={
                "key": api_key,
                "q": term,
                "image_type": "photo",
                "safesearch": "true" if options.safe_search else "false",
                "min_width": options.min_width,
                "min_height": options.min_height,
                "per_page": max(MIN_PER_PAGE, min(options.per_page, MAX_PER_PAGE)),
            },
        )

        candidates = []
        for position, hit in enumerate(data.get("hits", [])):
            download_url = hit.get("largeImageURL") or hit.get("webformatURL")
            if not download_url:
                continue

            tags = [t.strip() for t in (hit.get("tags") or "").split(",") if t.strip()]
            candidates.append(
                SourceCandidate(
                    source=self.name,
                    id=str(hit.get("id", "")),
                    url=hit.get("pageURL"),
                    download_url=download_url,
                    width=hit.get("imageWidth") or 0,
                    height=hit.get("imageHeight") or 0,
                    tags=tags,
                    description=None,
                    license=LicenseInfo(
                        type="pixabay",
                        attribution=f"Image by {hit.get('user') or 'Unknown'} from Pixabay",
                        commercial=True,
                        url="https://pixabay.com/service/license-summary/",
                    ),
                    search_term=term,
                    position=position,
                )
            )
        return candidates
