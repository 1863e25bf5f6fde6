"""Blob storage boundary and deterministic object key layout."""

import hashlib
import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Protocol

from vocabimages.catalog.models import utcnow
from vocabimages.errors import BlobNotFound, StorageFailed

CACHE_CONTROL = "max-age=31536000"
META_SUFFIX = ".meta.json"


@dataclass
class PutResult:
    key: str
    url: str
    etag: str


@dataclass
class BlobInfo:
    key: str
    size_bytes: int
    content_type: str
    etag: str
    cache_control: Optional[str] = None
    metadata: dict[str, str] = field(default_factory=dict)


class BlobStore(Protocol):
    """Protocol for object storage backends."""

    def put(self, key: str, data: bytes, content_type: str, cache_control: Optional[str] = None,
            metadata: Optional[dict[str, str]] = None) -> PutResult:
        """Store bytes under key, replacing any previous object."""
        ...

    def get(self, key: str) -> bytes:
        """Read a stored object. Raises BlobNotFound when absent."""
        ...

    def head(self, key: str) -> BlobInfo:
        """Describe a stored object. Raises BlobNotFound when absent."""
        ...

    def delete(self, key: str) -> None:
        """Remove an object; missing keys are ignored."""
        ...


def clean_name(value: str) -> str:
    """Lowercase and replace anything outside [a-z0-9] with underscores."""
    return re.sub(r"[^a-z0-9]", "_", value.lower())


def get_item_prefix(category: str, letter: str, item_name: str) -> str:
    """Return deterministic key prefix for an item."""
    return f"categories/{category.lower()}/{letter.upper()}/{clean_name(item_name)}"


def get_blob_filename(item_name: str, source: str, source_id: str, timestamp: int, size: str, extension: str) -> str:
    """Return deterministic filename for one derivative."""
    source = re.sub(r"[^A-Za-z0-9-]", "_", source)
    source_id = re.sub(r"[^A-Za-z0-9-]", "_", source_id)
    return f"{clean_name(item_name)}_{source}_{source_id}_{timestamp}_{size}.{extension}"


def get_blob_key(category: str, letter: str, item_name: str, source: str, source_id: str, timestamp: int,
                 size: str, extension: str) -> str:
    """Return the full object key for one derivative."""
    filename = get_blob_filename(item_name, source, source_id, timestamp, size, extension)
    return f"{get_item_prefix(category, letter, item_name)}/{size}/{filename}"


class FilesystemBlobStore:
    """Blob store that mirrors the key layout under a local directory.

    Content type, cache control and metadata are kept in a JSON sidecar next
    to each object.
    """

    def __init__(self, root_path: Path, base_url: Optional[str] = None):
        self.root_path = Path(root_path)
        self.base_url = base_url.rstrip("/") if base_url else None

    def _path(self, key: str) -> Path:
        if key.startswith("/") or ".." in key.split("/"):
            raise StorageFailed(f"Invalid blob key: {key}")
        return self.root_path / key

    def url_for(self, key: str) -> str:
        if self.base_url:
            return f"{self.base_url}/{key}"
        return self._path(key).resolve().as_uri()

    def put(self, key: str, data: bytes, content_type: str, cache_control: Optional[str] = CACHE_CONTROL,
            metadata: Optional[dict[str, str]] = None) -> PutResult:
        path = self._path(key)
        etag = hashlib.sha256(data).hexdigest()
        sidecar = {
            "content_type": content_type,
            "cache_control": cache_control,
            "etag": etag,
            "size_bytes": len(data),
            "metadata": {k: str(v) for k, v in (metadata or {}).items()},
            "stored_at": utcnow().isoformat(),
        }

        part_file = path.with_suffix(path.suffix + ".part")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            part_file.write_bytes(data)
            part_file.replace(path)
            with open(path.with_name(path.name + META_SUFFIX), "w", encoding="utf-8") as f:
                json.dump(sidecar, f, indent=2)
        except OSError as e:
            raise StorageFailed(f"Failed to store {key}: {e}") from e

        return PutResult(key=key, url=self.url_for(key), etag=etag)

    def get(self, key: str) -> bytes:
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError as e:
            raise BlobNotFound(key) from e
        except OSError as e:
            raise StorageFailed(f"Failed to read {key}: {e}") from e

    def head(self, key: str) -> BlobInfo:
        path = self._path(key)
        meta_path = path.with_name(path.name + META_SUFFIX)
        if not path.exists():
            raise BlobNotFound(key)

        sidecar = {}
        if meta_path.exists():
            with open(meta_path, "r", encoding="utf-8") as f:
                sidecar = json.load(f)

        return BlobInfo(
            key=key,
            size_bytes=path.stat().st_size,
            content_type=sidecar.get("content_type", "application/octet-stream"),
            etag=sidecar.get("etag", ""),
            cache_control=sidecar.get("cache_control"),
            metadata=sidecar.get("metadata", {}),
        )

    def delete(self, key: str) -> None:
        path = self._path(key)
        try:
            path.unlink(missing_ok=True)
            path.with_name(path.name + META_SUFFIX).unlink(missing_ok=True)
        except OSError as e:
            raise StorageFailed(f"Failed to delete {key}: {e}") from e
