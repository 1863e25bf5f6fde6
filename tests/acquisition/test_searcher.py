"""Tests for multi-source search."""

import threading

from vocabimages.acquisition.searcher import SourceSearcher, build_search_terms, resolution_rank
from vocabimages.acquisition.source import SourceCandidate
from vocabimages.errors import SourceTimeout, SourceUnavailable


class FakeClient:
    """Source returning a fixed number of candidates per term."""

    def __init__(self, name, per_term=2, width=800, height=800, error=None):
        self._name = name
        self.per_term = per_term
        self.width = width
        self.height = height
        self.error = error
        self.calls = []

    @property
    def name(self):
        return self._name

    def search(self, term, options):
        self.calls.append(term)
        if self.error:
            raise self.error
        return [
            SourceCandidate(
                source=self.name,
                id=f"{term}-{i}",
                url=None,
                download_url=f"https://img.example.com/{self.name}/{term}-{i}.jpg",
                width=self.width,
                height=self.height,
                search_term=term,
                position=i,
            )
            for i in range(self.per_term)
        ]

    def download(self, candidate):
        yield b""


def test_build_search_terms():
    assert build_search_terms("apple", "fruits") == ["apple", "apple fruits", "apples"]
    assert build_search_terms("Grapes", "") == ["Grapes", "Grape"]
    assert build_search_terms("ice  cream", "food") == ["ice cream", "ice cream food", "ice creams"]
    assert build_search_terms("", "food") == []


def test_resolution_rank():
    assert resolution_rank(SourceCandidate("s", "1", None, "https://x/1.jpg", 1920, 1080)) == 1.0
    assert resolution_rank(SourceCandidate("s", "1", None, "https://x/1.jpg", 1280, 720)) == 0.8
    assert resolution_rank(SourceCandidate("s", "1", None, "https://x/1.jpg", 800, 600)) == 0.6
    assert resolution_rank(SourceCandidate("s", "1", None, "https://x/1.jpg", 400, 400)) == 0.3


def test_sources_searched_in_priority_order():
    first, second = FakeClient("first"), FakeClient("second")
    searcher = SourceSearcher([first, second])

    outcome = searcher.search("apple", "fruits")

    assert [c.source for c in outcome.candidates] == ["first"] * 6 + ["second"] * 6
    assert outcome.candidates[0].search_term == "apple"
    assert outcome.terms == ["apple", "apple fruits", "apples"]
    assert outcome.sources["first"].found == 6
    searcher.close()


def test_stops_at_max_candidates():
    first, second = FakeClient("first", per_term=5), FakeClient("second")
    searcher = SourceSearcher([first, second])

    outcome = searcher.search("apple", "fruits", max_candidates=7)

    assert len(outcome.candidates) == 7
    assert first.calls == ["apple", "apple fruits"]
    assert second.calls == []
    searcher.close()


def test_timeouts_on_every_term_fall_through_to_next_source():
    slow = FakeClient("slow", error=SourceTimeout("slow: timed out"))
    backup = FakeClient("backup")
    searcher = SourceSearcher([slow, backup])

    outcome = searcher.search("apple", "fruits")

    assert len(slow.calls) == 3
    assert outcome.sources["slow"].failed
    assert len(outcome.sources["slow"].errors) == 3
    assert {c.source for c in outcome.candidates} == {"backup"}
    searcher.close()


def test_unavailable_source_is_skipped_after_first_failure():
    broken = FakeClient("broken", error=SourceUnavailable("broken: API key not configured"))
    searcher = SourceSearcher([broken, FakeClient("ok")])

    outcome = searcher.search("apple", "fruits")

    assert broken.calls == ["apple"]
    assert outcome.errors == [("broken", "broken: API key not configured")]
    assert len(outcome.candidates) == 6
    searcher.close()


def test_unexpected_client_error_is_recorded():
    searcher = SourceSearcher([FakeClient("weird", error=KeyError("photos")), FakeClient("ok")])

    outcome = searcher.search("apple")

    assert outcome.sources["weird"].failed
    assert outcome.candidates
    searcher.close()


def test_explicit_source_selection_and_unknown_source():
    first, second = FakeClient("first"), FakeClient("second")
    searcher = SourceSearcher([first, second])

    outcome = searcher.search("apple", "fruits", sources=["second", "missing"])

    assert first.calls == []
    assert {c.source for c in outcome.candidates} == {"second"}
    assert outcome.sources["missing"].errors == ["Source not configured: missing (configured: first, second)"]
    assert outcome.sources["missing"].failed
    searcher.close()


def test_excludes_known_and_undersized_candidates():
    searcher = SourceSearcher([FakeClient("small", width=200, height=200), FakeClient("ok")])

    outcome = searcher.search("apple", "", exclude={("ok", "apple-0")})

    ids = [(c.source, c.id) for c in outcome.candidates]
    assert ("ok", "apple-0") not in ids
    assert all(source == "ok" for source, _ in ids)
    searcher.close()


def test_ranking_prefers_larger_images_within_a_term():
    class Mixed(FakeClient):
        def search(self, term, options):
            results = super().search(term, options)
            results[0].width, results[0].height = 400, 400
            results[1].width, results[1].height = 1920, 1080
            return results

    searcher = SourceSearcher([Mixed("mixed")])

    outcome = searcher.search("apple")

    assert outcome.candidates[0].id == "apple-1"
    searcher.close()


def test_search_timeout_enforced():
    release = threading.Event()

    class Hanging(FakeClient):
        def search(self, term, options):
            release.wait(5)
            return []

    searcher = SourceSearcher([Hanging("hang"), FakeClient("ok")], timeout=0.05)
    try:
        outcome = searcher.search("apple")
    finally:
        release.set()
        searcher.close()

    assert outcome.sources["hang"].failed
    assert "exceeded" in outcome.sources["hang"].errors[0]
    assert outcome.candidates
