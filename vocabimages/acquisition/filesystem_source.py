"""Filesystem-based image source for testing and local image libraries."""

from pathlib import Path
from typing import Iterator

from PIL import Image

from vocabimages.catalog.models import LicenseInfo
from vocabimages.errors import DownloadFailed, SourceUnavailable

from .source import SearchOptions, SourceCandidate

IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".webp", ".bmp", ".tiff"}
CHUNK_SIZE = 64 * 1024


class FilesystemSource:
    """Source that matches image files under a local directory by name.

    A file matches a term when every word of the term appears in its path
    relative to the root (directory names act as tags).
    """

    def __init__(self, name: str, root_path: Path, license_type: str = "local"):
        """Initialize filesystem source with name and root directory."""
        self._name = name
        self.root_path = Path(root_path)
        self.license_type = license_type

    @property
    def name(self) -> str:
        return self._name

    def search(self, term: str, options: SearchOptions) -> list[SourceCandidate]:
        """Search for images whose relative path contains every word of term."""
        if not self.root_path.is_dir():
            raise SourceUnavailable(f"Source directory does not exist: {self.root_path}")

        words = [w for w in term.lower().split() if w]
        results = []
        for path in sorted(self.root_path.rglob("*")):
            if path.suffix.lower() not in IMAGE_EXTENSIONS or not path.is_file():
                continue

            relative = path.relative_to(self.root_path)
            haystack = " ".join(relative.with_suffix("").parts).lower().replace("_", " ").replace("-", " ")
            if not all(w in haystack for w in words):
                continue

            try:
                with Image.open(path) as img:
                    width, height = img.size
            except OSError:
                continue

            results.append(
                SourceCandidate(
                    source=self.name,
                    id=str(relative.as_posix()),
                    url=path.resolve().as_uri(),
                    download_url=str(path),
                    width=width,
                    height=height,
                    tags=list(relative.parent.parts),
                    description=path.stem.replace("_", " ").replace("-", " "),
                    license=LicenseInfo(type=self.license_type, commercial=True),
                    search_term=term,
                    position=len(results),
                )
            )
            if len(results) >= options.per_page:
                break
        return results

    def download(self, candidate: SourceCandidate) -> Iterator[bytes]:
        """Stream a file from the local directory."""
        path = Path(candidate.download_url)
        if not path.is_file():
            raise DownloadFailed(f"File not found: {path}")

        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
                yield chunk
