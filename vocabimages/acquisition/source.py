"""Image source protocol and data structures for candidate acquisition."""

from dataclasses import dataclass, field
from typing import Iterable, Optional, Protocol

from vocabimages.catalog.models import LicenseInfo

MIN_SOURCE_DIMENSION = 300


@dataclass
class SearchOptions:
    """Per-request search parameters passed to a source."""
    per_page: int = 20
    safe_search: bool = True
    min_width: int = MIN_SOURCE_DIMENSION
    min_height: int = MIN_SOURCE_DIMENSION


@dataclass
class SourceCandidate:
    """An image a source returned for a search term, not yet downloaded."""
    source: str
    id: str
    url: Optional[str]
    download_url: str
    width: int = 0
    height: int = 0
    tags: list[str] = field(default_factory=list)
    description: Optional[str] = None
    license: LicenseInfo = field(default_factory=LicenseInfo)
    search_term: Optional[str] = None
    source_rank: int = 0
    position: int = 0

    @property
    def filename(self) -> str:
        return self.download_url.rsplit("/", 1)[-1].split("?", 1)[0]


class ImageSourceClient(Protocol):
    """Protocol for implementing image search sources."""

    @property
    def name(self) -> str:
        """Return unique identifier for this source."""
        ...

    def search(self, term: str, options: SearchOptions) -> list[SourceCandidate]:
        """Search images for a term.

        Raises SourceUnavailable when the source cannot be used at all and
        SourceTimeout/SourceError for a failed request.
        """
        ...

    def download(self, candidate: SourceCandidate) -> Iterable[bytes]:
        """Return the candidate's bytes as a chunk stream."""
        ...


def is_valid_candidate(candidate: SourceCandidate, options: SearchOptions) -> bool:
    """Reject candidates without id or URL, or with known dimensions below the minimum."""
    if not candidate.id or not candidate.download_url:
        return False
    if not candidate.download_url.startswith(("http://", "https://", "file://", "/")):
        return False
    if candidate.width and candidate.width < options.min_width:
        return False
    if candidate.height and candidate.height < options.min_height:
        return False
    return True
