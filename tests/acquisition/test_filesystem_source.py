"""Tests for the filesystem image source."""

import tempfile
from pathlib import Path

import pytest
from PIL import Image

from vocabimages.acquisition.filesystem_source import FilesystemSource
from vocabimages.acquisition.source import SearchOptions
from vocabimages.errors import DownloadFailed, SourceUnavailable


@pytest.fixture
def temp_library():
    """Create a temporary image library."""
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        (root / "fruits").mkdir()
        (root / "animals").mkdir()

        Image.new("RGB", (400, 300), color=(255, 0, 0)).save(root / "fruits" / "red_apple.jpg")
        Image.new("RGB", (500, 500), color=(0, 255, 0)).save(root / "fruits" / "green-apple.png")
        Image.new("RGB", (500, 500), color=(0, 0, 255)).save(root / "animals" / "bear.png")
        (root / "fruits" / "notes.txt").write_text("not an image")

        yield root


def test_search_matches_words_in_path(temp_library):
    source = FilesystemSource("local", temp_library)

    results = source.search("apple", SearchOptions())

    assert [r.id for r in results] == ["fruits/green-apple.png", "fruits/red_apple.jpg"]
    assert results[1].width == 400
    assert results[1].height == 300
    assert results[1].tags == ["fruits"]
    assert results[1].description == "red apple"
    assert results[1].source == "local"


def test_search_uses_directory_as_context(temp_library):
    source = FilesystemSource("local", temp_library)

    assert [r.id for r in source.search("apple fruits", SearchOptions())] == [
        "fruits/green-apple.png",
        "fruits/red_apple.jpg",
    ]
    assert source.search("apple animals", SearchOptions()) == []


def test_search_respects_page_size(temp_library):
    source = FilesystemSource("local", temp_library)

    assert len(source.search("apple", SearchOptions(per_page=1))) == 1


def test_missing_root_is_unavailable():
    source = FilesystemSource("local", Path("/nonexistent/library"))

    with pytest.raises(SourceUnavailable):
        source.search("apple", SearchOptions())


def test_download_streams_file(temp_library):
    source = FilesystemSource("local", temp_library)
    candidate = source.search("bear", SearchOptions())[0]

    data = b"".join(source.download(candidate))

    assert data == (temp_library / "animals" / "bear.png").read_bytes()


def test_download_missing_file(temp_library):
    source = FilesystemSource("local", temp_library)
    candidate = source.search("bear", SearchOptions())[0]
    (temp_library / "animals" / "bear.png").unlink()

    with pytest.raises(DownloadFailed):
        b"".join(source.download(candidate))
