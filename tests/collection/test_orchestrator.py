"""Tests for per-item collection runs."""

import io
import tempfile
from pathlib import Path
from unittest.mock import patch

import pytest
from PIL import Image

from vocabimages.acquisition.downloader import Downloader
from vocabimages.acquisition.searcher import SourceSearcher
from vocabimages.acquisition.source import SourceCandidate
from vocabimages.catalog.models import CandidateStatus, ItemKey, ProgressStatus, QualityScore
from vocabimages.collection.generator import GeneratedImage, GenerationResult
from vocabimages.collection.orchestrator import CollectionOrchestrator, CollectOptions
from vocabimages.errors import InvalidCollectOptions, ItemNotFound, SourceTimeout, StorageFailed
from vocabimages.processing.derivatives import DerivativeGenerator
from vocabimages.quality.scorer import DEFAULT_WEIGHTS
from vocabimages.storage.blob import FilesystemBlobStore
from vocabimages.storage.item_store import ItemStore


def _jpeg(size=(400, 400)) -> bytes:
    image = Image.linear_gradient("L").resize(size).convert("RGB")
    buf = io.BytesIO()
    image.save(buf, format="JPEG")
    return buf.getvalue()


IMAGE = _jpeg()


class FakeSource:
    """Source returning fixed candidates and serving the same JPEG for each."""

    def __init__(self, name, ids, fail_search=None, fail_download=()):
        self.name = name
        self.ids = list(ids)
        self.fail_search = fail_search
        self.fail_download = set(fail_download)
        self.searches = 0

    def search(self, term, options):
        self.searches += 1
        if self.fail_search is not None:
            raise self.fail_search
        return [
            SourceCandidate(
                source=self.name,
                id=image_id,
                url=f"https://img.example.com/{image_id}",
                download_url=f"https://img.example.com/{image_id}.jpg",
                width=400,
                height=400,
                position=position,
            )
            for position, image_id in enumerate(self.ids)
        ]

    def download(self, candidate):
        if candidate.id in self.fail_download:
            raise ConnectionError(f"reset while fetching {candidate.id}")
        yield IMAGE


class FakeScorer:
    """Scores images by the source id they came from."""

    weights = dict(DEFAULT_WEIGHTS)

    def __init__(self, scores, error=None):
        self.scores = scores
        self.error = error

    def score(self, image_bytes, info, context):
        if self.error is not None:
            raise self.error
        value = self.scores[context.source_id]
        return QualityScore(
            overall=value,
            technical=value,
            relevance=value,
            aesthetic=value,
            usability=value,
            weights=dict(self.weights),
        )


class BrokenBlobStore:
    def put(self, key, data, content_type, cache_control=None, metadata=None):
        raise StorageFailed("bucket unreachable")

    def head(self, key):
        raise StorageFailed("bucket unreachable")

    def delete(self, key):
        raise StorageFailed("bucket unreachable")


class FlakyBlobStore(FilesystemBlobStore):
    """Filesystem store whose n-th put fails."""

    def __init__(self, root_path, fail_on):
        super().__init__(root_path)
        self.fail_on = fail_on
        self.puts = 0

    def put(self, key, data, content_type, cache_control=None, metadata=None):
        self.puts += 1
        if self.puts == self.fail_on:
            raise StorageFailed("disk full")
        return super().put(key, data, content_type, cache_control, metadata)


class FakeGenerator:
    available = True

    def __init__(self, ids):
        self.ids = ids
        self.calls = []

    def generate(self, item_name, category, count, style=None):
        self.calls.append((item_name, count, style))
        return GenerationResult(
            images=[GeneratedImage(data=IMAGE, prompt=f"A {item_name}", provider="imagegen", id=i) for i in self.ids]
        )


class FailingGenerator:
    available = True

    def __init__(self, error):
        self.error = error

    def generate(self, item_name, category, count, style=None):
        raise self.error


SCENARIO = {"a": 9.0, "b": 8.0, "c": 6.0, "d": 4.0, "e": 9.2}


@pytest.fixture
def workspace():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        items = ItemStore(root / "items.db")
        yield root, items
        items.close()


def _orchestrator(workspace, sources, scorer, **kwargs):
    root, items = workspace
    searcher = SourceSearcher(sources, timeout=5)
    defaults = dict(
        items=items,
        searcher=searcher,
        downloader=Downloader(max_retries=1, backoff_base=0),
        derivatives=DerivativeGenerator(),
        scorer=scorer,
        blob_store=FilesystemBlobStore(root / "blobs", "https://cdn.example.com"),
    )
    defaults.update(kwargs)
    return CollectionOrchestrator(**defaults)


def test_partial_collection_stays_pending(workspace):
    root, items = workspace
    item = items.add_item("fruits", "Apple")
    orchestrator = _orchestrator(workspace, [FakeSource("stock", "abcde")], FakeScorer(SCENARIO))
    reported = []

    result = orchestrator.collect(item.key, progress=reported.append)

    assert result.status == ProgressStatus.PENDING
    assert (result.approved, result.manual_review, result.rejected) == (2, 2, 1)
    assert result.new_candidates == 5
    assert reported[0] == 10
    assert reported[-1] == 100

    stored = items.load_item(item.key)
    assert stored.progress.next_attempt is not None
    assert stored.progress.search_attempts == 1
    assert stored.progress.average_quality_score == 9.1
    assert stored.progress.best_quality_score == 9.2
    assert stored.progress.sources["stock"].approved == 2

    statuses = {c.source_id: c.status for c in stored.candidates}
    assert statuses == {
        "a": CandidateStatus.APPROVED,
        "b": CandidateStatus.MANUAL_REVIEW,
        "c": CandidateStatus.MANUAL_REVIEW,
        "d": CandidateStatus.REJECTED,
        "e": CandidateStatus.APPROVED,
    }
    assert [c.source_id for c in stored.candidates if c.is_primary] == ["a"]


def test_only_kept_candidates_are_stored(workspace):
    root, items = workspace
    item = items.add_item("fruits", "Apple")
    store = FilesystemBlobStore(root / "blobs", "https://cdn.example.com")
    orchestrator = _orchestrator(workspace, [FakeSource("stock", "abcde")], FakeScorer(SCENARIO), blob_store=store)

    orchestrator.collect(item.key)

    stored = {c.source_id: c for c in items.load_item(item.key).candidates}
    assert stored["d"].files == {}
    assert "below" in stored["d"].rejection_reason
    thumbnail = stored["a"].files["thumbnail"]
    assert thumbnail.url.startswith("https://cdn.example.com/categories/fruits/A/apple/")
    assert store.head(thumbnail.key).metadata["purpose"] == "thumbnail"
    assert store.head(thumbnail.key).metadata["sourceProvider"] == "stock"


def test_completes_on_target(workspace):
    _, items = workspace
    item = items.add_item("fruits", "Apple")
    orchestrator = _orchestrator(workspace, [FakeSource("stock", "abcde")], FakeScorer(SCENARIO))

    result = orchestrator.collect(item.key, CollectOptions(target_count=1))

    assert result.status == ProgressStatus.COMPLETED
    assert result.collected == 1
    assert items.load_item(item.key).progress.completed_at is not None


def test_completed_item_is_skipped(workspace):
    _, items = workspace
    item = items.add_item("fruits", "Apple")
    source = FakeSource("stock", "a")
    orchestrator = _orchestrator(workspace, [source], FakeScorer(SCENARIO), target_count=1)
    orchestrator.collect(item.key)
    searches = source.searches

    result = orchestrator.collect(item.key)

    assert result.skipped is True
    assert result.status == ProgressStatus.COMPLETED
    assert source.searches == searches


def test_force_restart_resets_attempts(workspace):
    _, items = workspace
    item = items.add_item("fruits", "Apple")
    orchestrator = _orchestrator(workspace, [FakeSource("stock", "a")], FakeScorer(SCENARIO), target_count=1)
    orchestrator.collect(item.key)

    result = orchestrator.collect(item.key, CollectOptions(force_restart=True))

    assert result.skipped is False
    assert result.search_attempts == 1
    assert result.status == ProgressStatus.COMPLETED
    assert result.collected == 1


def test_fails_after_max_retries(workspace):
    _, items = workspace
    item = items.add_item("fruits", "Apple")
    orchestrator = _orchestrator(workspace, [FakeSource("stock", "d")], FakeScorer(SCENARIO))

    result = orchestrator.collect(item.key, CollectOptions(max_retries=1))

    assert result.status == ProgressStatus.FAILED
    assert result.exhausted is True
    assert result.error is None
    assert items.load_item(item.key).progress.next_attempt is None


def test_min_quality_override(workspace):
    _, items = workspace
    item = items.add_item("fruits", "Apple")
    orchestrator = _orchestrator(workspace, [FakeSource("stock", "bc")], FakeScorer(SCENARIO))

    result = orchestrator.collect(item.key, CollectOptions(min_quality_score=7.0))

    assert (result.manual_review, result.rejected) == (1, 1)


def test_timed_out_source_falls_through(workspace):
    _, items = workspace
    item = items.add_item("fruits", "Apple")
    slow = FakeSource("slow", "x", fail_search=SourceTimeout("slow: search exceeded 5s"))
    orchestrator = _orchestrator(workspace, [slow, FakeSource("stock", "a")], FakeScorer(SCENARIO), target_count=1)

    result = orchestrator.collect(item.key)

    assert result.status == ProgressStatus.COMPLETED
    progress = items.load_item(item.key).progress
    assert progress.sources["slow"].errors >= 1
    assert progress.sources["slow"].found == 0
    assert any(e.source == "slow" for e in progress.errors)


def test_download_failure_skips_candidate(workspace):
    _, items = workspace
    item = items.add_item("fruits", "Apple")
    source = FakeSource("stock", "ae", fail_download={"a"})
    orchestrator = _orchestrator(workspace, [source], FakeScorer(SCENARIO), target_count=1)

    result = orchestrator.collect(item.key)

    assert result.status == ProgressStatus.COMPLETED
    stored = items.load_item(item.key)
    assert [c.source_id for c in stored.candidates] == ["e"]
    assert stored.progress.errors[-1].details == "a"


def test_error_log_is_bounded(workspace):
    _, items = workspace
    item = items.add_item("fruits", "Apple")
    ids = [f"img{i:02d}" for i in range(15)]
    orchestrator = _orchestrator(workspace, [FakeSource("stock", ids, fail_download=ids)], FakeScorer({}))

    orchestrator.collect(item.key)

    errors = items.load_item(item.key).progress.errors
    assert len(errors) == 10
    assert errors[-1].details == "img14"


def test_storage_fallback(workspace):
    root, items = workspace
    item = items.add_item("fruits", "Apple")
    orchestrator = _orchestrator(
        workspace,
        [FakeSource("stock", "a")],
        FakeScorer(SCENARIO),
        blob_store=BrokenBlobStore(),
        fallback_store=FilesystemBlobStore(root / "fallback"),
        target_count=1,
    )

    result = orchestrator.collect(item.key)

    assert result.status == ProgressStatus.COMPLETED
    files = items.load_item(item.key).candidates[0].files
    assert (root / "fallback" / files["small"].key).is_file()


def test_storage_failure_without_fallback_drops_candidate(workspace):
    _, items = workspace
    item = items.add_item("fruits", "Apple")
    orchestrator = _orchestrator(
        workspace, [FakeSource("stock", "a")], FakeScorer(SCENARIO), blob_store=BrokenBlobStore()
    )

    result = orchestrator.collect(item.key)

    assert result.status == ProgressStatus.PENDING
    assert result.collected == 0
    assert "bucket unreachable" in items.load_item(item.key).progress.errors[-1].message


def test_scorer_failure_uses_neutral_score(workspace):
    _, items = workspace
    item = items.add_item("fruits", "Apple")
    orchestrator = _orchestrator(workspace, [FakeSource("stock", "a")], FakeScorer({}, error=RuntimeError("model down")))

    result = orchestrator.collect(item.key)

    assert result.manual_review == 1
    candidate = items.load_item(item.key).candidates[0]
    assert candidate.quality_score.overall == 5.0
    assert candidate.quality_score.details["error"] == "model down"


def test_generation_fills_shortfall(workspace):
    _, items = workspace
    item = items.add_item("fruits", "Apple")
    generator = FakeGenerator(["g1"])
    orchestrator = _orchestrator(
        workspace,
        [FakeSource("stock", "a")],
        FakeScorer({**SCENARIO, "g1": 8.8}),
        generator=generator,
        target_count=2,
    )

    result = orchestrator.collect(item.key, CollectOptions(style="cartoon"))

    assert result.status == ProgressStatus.COMPLETED
    assert generator.calls == [("Apple", 1, "cartoon")]
    stored = items.load_item(item.key)
    assert stored.candidates[-1].source_provider == "imagegen"
    assert stored.candidates[-1].license.type == "generated"
    assert stored.progress.sources["generated"].approved == 1


def test_generation_can_be_disabled(workspace):
    _, items = workspace
    item = items.add_item("fruits", "Apple")
    generator = FakeGenerator(["g1"])
    orchestrator = _orchestrator(
        workspace, [FakeSource("stock", "a")], FakeScorer(SCENARIO), generator=generator, target_count=2
    )

    orchestrator.collect(item.key, CollectOptions(use_ai_generation=False))

    assert generator.calls == []


def test_unexpected_failure_marks_item_failed(workspace):
    _, items = workspace
    item = items.add_item("fruits", "Apple")
    orchestrator = _orchestrator(workspace, [FakeSource("stock", "a")], FakeScorer(SCENARIO))

    with patch.object(orchestrator.searcher, "search", side_effect=RuntimeError("index corrupted")):
        result = orchestrator.collect(item.key)

    assert result.status == ProgressStatus.FAILED
    assert result.error == "index corrupted"
    assert result.exhausted is False
    progress = items.load_item(item.key).progress
    assert progress.status == ProgressStatus.FAILED
    assert progress.errors[-1].message == "Collection failed: index corrupted"


def test_unknown_item(workspace):
    orchestrator = _orchestrator(workspace, [FakeSource("stock", "a")], FakeScorer(SCENARIO))

    with pytest.raises(ItemNotFound):
        orchestrator.collect(ItemKey("fruits", "Z", "zucchini"))


def test_manual_selection_is_approved(workspace):
    _, items = workspace
    item = items.add_item("fruits", "Apple")
    orchestrator = _orchestrator(workspace, [FakeSource("stock", "m")], FakeScorer({}), target_count=1)
    chosen = FakeSource("stock", "m").search("apple", None)[0]

    candidate = orchestrator.select_manually(item.key, chosen)

    assert candidate.status == CandidateStatus.APPROVED
    assert candidate.quality_score is None
    assert candidate.review_notes == "Manually selected"
    stored = items.load_item(item.key)
    assert stored.primary.candidate_id == candidate.candidate_id
    assert stored.progress.status == ProgressStatus.COMPLETED


def test_one_primary_across_restarts_and_manual_selection(workspace):
    _, items = workspace
    item = items.add_item("fruits", "Apple")
    source = FakeSource("stock", "abcde")
    orchestrator = _orchestrator(workspace, [source], FakeScorer(SCENARIO))

    orchestrator.collect(item.key, CollectOptions(target_count=1))
    orchestrator.collect(item.key, CollectOptions(target_count=3, force_restart=True))
    chosen = FakeSource("stock", "m").search("apple", None)[0]
    orchestrator.select_manually(item.key, chosen)

    stored = items.load_item(item.key)
    primaries = [c for c in stored.candidates if c.is_primary and c.is_approved]
    assert [c.source_id for c in primaries] == ["a"]
    assert [c.source_id for c in stored.approved_candidates] == ["a", "e", "m"]
    assert stored.progress.status == ProgressStatus.COMPLETED


def test_partial_upload_is_removed_before_fallback(workspace):
    root, items = workspace
    item = items.add_item("fruits", "Apple")
    primary = FlakyBlobStore(root / "primary", fail_on=3)
    orchestrator = _orchestrator(
        workspace,
        [FakeSource("stock", "a")],
        FakeScorer(SCENARIO),
        blob_store=primary,
        fallback_store=FilesystemBlobStore(root / "fallback"),
        target_count=1,
    )

    result = orchestrator.collect(item.key)

    assert result.status == ProgressStatus.COMPLETED
    assert [p for p in (root / "primary").rglob("*") if p.is_file()] == []
    files = items.load_item(item.key).candidates[0].files
    assert all((root / "fallback" / f.key).is_file() for f in files.values())


def test_partial_upload_is_removed_without_fallback(workspace):
    root, items = workspace
    item = items.add_item("fruits", "Apple")
    primary = FlakyBlobStore(root / "primary", fail_on=2)
    orchestrator = _orchestrator(workspace, [FakeSource("stock", "a")], FakeScorer(SCENARIO), blob_store=primary)

    result = orchestrator.collect(item.key)

    assert result.collected == 0
    assert [p for p in (root / "primary").rglob("*") if p.is_file()] == []


def test_generation_failure_is_recorded(workspace):
    _, items = workspace
    item = items.add_item("fruits", "Apple")
    generator = FailingGenerator(RuntimeError("quota exceeded"))
    orchestrator = _orchestrator(
        workspace, [FakeSource("stock", "a")], FakeScorer(SCENARIO), generator=generator, target_count=2
    )

    result = orchestrator.collect(item.key)

    assert result.status == ProgressStatus.PENDING
    assert result.error is None
    error = items.load_item(item.key).progress.errors[-1]
    assert error.source == "generated"
    assert error.message == "Generation failed: quota exceeded"


def test_reanalyze_replaces_scores_and_keeps_decisions(workspace):
    _, items = workspace
    item = items.add_item("fruits", "Apple")
    scorer = FakeScorer(dict(SCENARIO))
    orchestrator = _orchestrator(workspace, [FakeSource("stock", "abd")], scorer)
    orchestrator.collect(item.key)
    before = {c.source_id: c for c in items.load_item(item.key).candidates}

    scorer.scores.update({"a": 9.6, "b": 7.0})
    rescored = orchestrator.reanalyze(item.key)

    assert sorted(c.source_id for c in rescored) == ["a", "b"]
    after = {c.source_id: c for c in items.load_item(item.key).candidates}
    assert after["a"].quality_score.overall == 9.6
    assert after["b"].quality_score.overall == 7.0
    assert after["b"].status == CandidateStatus.MANUAL_REVIEW
    assert after["a"].candidate_id == before["a"].candidate_id
    assert before["a"].quality_score.overall == 9.0
    assert items.load_item(item.key).progress.best_quality_score == 9.6


def test_reanalyze_skips_missing_files(workspace):
    root, items = workspace
    item = items.add_item("fruits", "Apple")
    orchestrator = _orchestrator(workspace, [FakeSource("stock", "a")], FakeScorer(SCENARIO))
    orchestrator.collect(item.key)
    original = items.load_item(item.key).candidates[0].files["original"]
    (root / "blobs" / original.key).unlink()

    assert orchestrator.reanalyze(item.key) == []
    assert "Reanalysis skipped" in items.load_item(item.key).progress.errors[-1].message


@pytest.mark.parametrize(
    "options",
    [dict(min_quality_score=11), dict(min_quality_score=-1), dict(target_count=0), dict(max_retries=0)],
)
def test_out_of_range_options_are_rejected(options):
    with pytest.raises(InvalidCollectOptions):
        CollectOptions(**options)
    assert InvalidCollectOptions.retryable is False


def test_unknown_option_is_rejected():
    with pytest.raises(InvalidCollectOptions):
        CollectOptions.from_dict({"min_quality": 7})
