"""Per-item collection: search, acquire, score, decide, persist, finalize."""

import time
from dataclasses import asdict, dataclass, field
from datetime import timedelta
from typing import Callable, Optional

from vocabimages.acquisition.downloader import Downloader
from vocabimages.acquisition.searcher import SourceSearcher
from vocabimages.acquisition.source import SourceCandidate
from vocabimages.catalog.models import (
    CandidateStatus,
    CollectionProgress,
    ImageCandidate,
    Item,
    ItemKey,
    LicenseInfo,
    ProgressStatus,
    StoredFile,
    utcnow,
)
from vocabimages.errors import (
    BlobNotFound,
    DownloadFailed,
    GenerationFailed,
    InvalidCollectOptions,
    ProcessingFailed,
    StorageFailed,
)
from vocabimages.processing.derivatives import DerivativeGenerator, DerivativeSet
from vocabimages.quality.policy import ApprovalPolicy
from vocabimages.quality.scorer import QualityScorer, ScoringContext, neutral_score
from vocabimages.storage.blob import CACHE_CONTROL, BlobStore, get_blob_key
from vocabimages.storage.item_store import ItemStore
from vocabimages.utils.logger import logger as LOGGER

from .generator import DisabledImageGenerator, ImageGenerator

CANDIDATE_ERRORS = (DownloadFailed, ProcessingFailed, StorageFailed)
GENERATED_PROVIDER = "generated"

ProgressCallback = Callable[[object], None]


@dataclass
class CollectOptions:
    """Overrides for one collection run; None falls back to orchestrator defaults."""
    target_count: Optional[int] = None
    sources: Optional[list[str]] = None
    min_quality_score: Optional[float] = None
    use_ai_generation: bool = True
    max_retries: Optional[int] = None
    force_restart: bool = False
    style: Optional[str] = None

    def __post_init__(self):
        if self.target_count is not None and self.target_count < 1:
            raise InvalidCollectOptions(f"target_count must be at least 1, got {self.target_count}")
        if self.max_retries is not None and self.max_retries < 1:
            raise InvalidCollectOptions(f"max_retries must be at least 1, got {self.max_retries}")
        if self.min_quality_score is not None and not 0 <= self.min_quality_score <= 10:
            raise InvalidCollectOptions(f"min_quality_score must lie in [0, 10], got {self.min_quality_score}")

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "CollectOptions":
        try:
            return cls(**(data or {}))
        except TypeError as e:
            raise InvalidCollectOptions(f"Unknown collect option: {e}") from e


@dataclass
class CollectionResult:
    """Summary of one collection run for an item."""
    key: ItemKey
    status: ProgressStatus
    target_count: int = 0
    collected: int = 0
    approved: int = 0
    rejected: int = 0
    manual_review: int = 0
    new_candidates: int = 0
    search_attempts: int = 0
    skipped: bool = False
    error: Optional[str] = None
    errors: list[str] = field(default_factory=list)

    @property
    def exhausted(self) -> bool:
        """True when the item failed because it ran out of attempts."""
        return self.status == ProgressStatus.FAILED and self.error is None

    @classmethod
    def from_item(cls, item: Item, new_candidates: int = 0, skipped: bool = False,
                  error: Optional[str] = None) -> "CollectionResult":
        progress = item.progress
        return cls(
            key=item.key,
            status=progress.status if progress else ProgressStatus.PENDING,
            target_count=progress.target_count if progress else 0,
            collected=progress.collected_count if progress else 0,
            approved=progress.approved_count if progress else 0,
            rejected=progress.rejected_count if progress else 0,
            manual_review=progress.manual_review_count if progress else 0,
            new_candidates=new_candidates,
            search_attempts=progress.search_attempts if progress else 0,
            skipped=skipped,
            error=error,
            errors=[e.message for e in progress.errors] if progress else [],
        )

    def to_dict(self) -> dict:
        return {
            "key": list(self.key),
            "status": self.status.value,
            "target_count": self.target_count,
            "collected": self.collected,
            "approved": self.approved,
            "rejected": self.rejected,
            "manual_review": self.manual_review,
            "new_candidates": self.new_candidates,
            "search_attempts": self.search_attempts,
            "skipped": self.skipped,
            "error": self.error,
        }


def _approved_count(item: Item) -> int:
    return len(item.approved_candidates)


def _remove_blobs(store: BlobStore, keys: list[str]) -> None:
    for key in keys:
        try:
            store.delete(key)
        except StorageFailed as e:
            LOGGER.error(f"Could not remove partial upload {key}: {e}")


class CollectionOrchestrator:
    """Drives one item toward its target number of approved images.

    Each call to ``collect`` loads the item once, runs the search,
    acquisition and fallback phases, then saves it once.
    """

    def __init__(
        self,
        items: ItemStore,
        searcher: SourceSearcher,
        downloader: Downloader,
        derivatives: DerivativeGenerator,
        scorer: QualityScorer,
        blob_store: BlobStore,
        policy: Optional[ApprovalPolicy] = None,
        generator: Optional[ImageGenerator] = None,
        fallback_store: Optional[BlobStore] = None,
        target_count: int = 3,
        max_retries: int = 3,
        max_candidates: int = 30,
        retry_interval: timedelta = timedelta(hours=24),
    ):
        self.items = items
        self.searcher = searcher
        self.downloader = downloader
        self.derivatives = derivatives
        self.scorer = scorer
        self.blob_store = blob_store
        self.policy = policy or ApprovalPolicy()
        self.generator = generator or DisabledImageGenerator()
        self.fallback_store = fallback_store
        self.target_count = target_count
        self.max_retries = max_retries
        self.max_candidates = max_candidates
        self.retry_interval = retry_interval

    def collect(self, key: ItemKey, options: Optional[CollectOptions] = None,
                progress: Optional[ProgressCallback] = None) -> CollectionResult:
        """Run one collection attempt for an item.

        Args:
            key: Item to collect for
            options: Per-run overrides
            progress: Called with a percentage at phase boundaries

        Returns:
            CollectionResult. Unexpected failures during the run are recorded
            on the item (status ``failed``) and reported in ``error``.

        Raises:
            ItemNotFound: If the item does not exist
            StorageFailed: If the item could not be saved
        """
        options = options or CollectOptions()
        report = progress or (lambda value: None)
        item = self.items.load_item(key)

        if item.progress and item.progress.status == ProgressStatus.COMPLETED and not options.force_restart:
            LOGGER.info(f"Item {key} already completed, skipping")
            return CollectionResult.from_item(item, skipped=True)

        target = options.target_count or (item.progress.target_count if item.progress else self.target_count)
        max_retries = options.max_retries or self.max_retries
        policy = self.policy.with_min_quality(options.min_quality_score)

        if item.progress is None:
            item.progress = CollectionProgress(target_count=target)
        state = item.progress
        now = utcnow()
        if options.force_restart:
            state.search_attempts = 0
            state.completed_at = None
        state.target_count = target
        state.status = ProgressStatus.COLLECTING
        state.search_attempts += 1
        state.last_attempt = now
        state.started_at = state.started_at or now
        state.next_attempt = None

        LOGGER.info(f"Collecting {key} '{item.name}' (attempt {state.search_attempts}, target {target})")
        report(10)

        before = len(item.candidates)
        error = None
        try:
            self._acquire(item, options, policy, report)
            report(80)
            if _approved_count(item) < target and options.use_ai_generation:
                self._generate(item, options, policy)
        except Exception as e:
            LOGGER.exception(f"Collection of {key} failed: {e}")
            state.add_error("collection", f"Collection failed: {e}", type(e).__name__)
            error = str(e)

        self._finalize(item, max_retries, error)
        report(90)
        self.items.save_item(item)
        report(100)

        result = CollectionResult.from_item(item, new_candidates=len(item.candidates) - before, error=error)
        LOGGER.info(
            f"Finished {key}: {result.status.value}, {result.approved}/{target} approved, "
            f"{result.new_candidates} new candidates"
        )
        return result

    def select_manually(self, key: ItemKey, candidate: SourceCandidate) -> ImageCandidate:
        """Download a chosen source image and force-approve it without scoring.

        Raises:
            ItemNotFound: If the item does not exist
            DownloadFailed, ProcessingFailed, StorageFailed: If the image cannot be stored
        """
        item = self.items.load_item(key)
        client = self.searcher.get_client(candidate.source)
        if client is None:
            raise DownloadFailed(f"Source not configured: {candidate.source}")

        data = self.downloader.download(client, candidate)
        image = self._process(
            item,
            data,
            provider=candidate.source,
            source_id=candidate.id,
            source_url=candidate.url,
            license=candidate.license,
            search_term=candidate.search_term,
            context=None,
            policy=self.policy,
            manually_selected=True,
        )
        item.candidates.append(image)

        if item.progress is None:
            item.progress = CollectionProgress(target_count=self.target_count)
        item.ensure_primary()
        item.progress.recompute(item.candidates)
        if item.progress.approved_count >= item.progress.target_count:
            item.progress.status = ProgressStatus.COMPLETED
            item.progress.completed_at = item.progress.completed_at or utcnow()
            item.progress.next_attempt = None

        self.items.save_item(item)
        return image

    def reanalyze(self, key: ItemKey) -> list[ImageCandidate]:
        """Score every stored, scored candidate of an item again.

        Each candidate is replaced by a copy carrying the new score; review
        decisions are kept. Candidates whose original file cannot be read are
        skipped and logged on the item, as are files that no longer decode.

        Returns:
            The rescored candidates
        """
        item = self.items.load_item(key)
        rescored = []
        for index, candidate in enumerate(item.candidates):
            original = candidate.files.get("original")
            if candidate.quality_score is None or original is None:
                continue
            context = ScoringContext(
                item_name=item.name,
                category=item.category_id,
                description=candidate.search_term,
                source_id=candidate.source_id,
            )
            try:
                score = self.scorer.score(self._read_blob(original.key), None, context)
            except (BlobNotFound, StorageFailed, ProcessingFailed) as e:
                LOGGER.warning(f"Cannot reanalyze {candidate.source_provider}/{candidate.source_id}: {e}")
                if item.progress:
                    item.progress.add_error(candidate.source_provider, f"Reanalysis skipped: {e}", candidate.source_id)
                continue

            item.candidates[index] = candidate.rescored(score)
            rescored.append(item.candidates[index])

        if item.progress:
            item.progress.recompute(item.candidates)
        self.items.save_item(item)
        LOGGER.info(f"Reanalyzed {len(rescored)} candidates of {key}")
        return rescored

    def _read_blob(self, key: str) -> bytes:
        try:
            return self.blob_store.get(key)
        except (BlobNotFound, StorageFailed):
            if self.fallback_store is None:
                raise
            return self.fallback_store.get(key)

    def _acquire(self, item: Item, options: CollectOptions, policy: ApprovalPolicy, report: ProgressCallback):
        state = item.progress
        outcome = self.searcher.search(
            item.name,
            item.category_id,
            sources=options.sources,
            max_candidates=self.max_candidates,
            exclude={c.source_key for c in item.candidates},
        )
        state.last_search_terms = list(outcome.terms)

        for name, source_report in outcome.sources.items():
            stats = state.source_stats(name)
            stats.found += source_report.found
            stats.last_searched = source_report.searched_at or utcnow()
        for name, message in outcome.errors:
            state.add_error(name, message)

        total = len(outcome.candidates)
        for index, found in enumerate(outcome.candidates):
            if _approved_count(item) >= state.target_count:
                break

            client = self.searcher.get_client(found.source)
            context = ScoringContext(
                item_name=item.name,
                category=item.category_id,
                filename=found.filename,
                tags=found.tags,
                description=found.description,
                source_id=found.id,
            )
            try:
                data = self.downloader.download(client, found)
                candidate = self._process(
                    item,
                    data,
                    provider=found.source,
                    source_id=found.id,
                    source_url=found.url,
                    license=found.license,
                    search_term=found.search_term,
                    context=context,
                    policy=policy,
                )
            except CANDIDATE_ERRORS as e:
                LOGGER.warning(f"Candidate {found.source}/{found.id} for {item.key} dropped: {e}")
                state.add_error(found.source, str(e), found.id)
                continue

            item.candidates.append(candidate)
            if candidate.is_approved:
                state.source_stats(found.source).approved += 1
            report(10 + int(70 * (index + 1) / total))

    def _generate(self, item: Item, options: CollectOptions, policy: ApprovalPolicy):
        state = item.progress
        if not self.generator.available:
            return

        shortfall = state.target_count - _approved_count(item)
        try:
            result = self._request_images(item, shortfall, options.style)
        except GenerationFailed as e:
            LOGGER.warning(f"Image generation for {item.key} failed: {e}")
            state.add_error(GENERATED_PROVIDER, str(e))
            return

        stats = state.source_stats(GENERATED_PROVIDER)
        stats.found += len(result.images)
        stats.last_searched = utcnow()

        for image in result.images:
            if _approved_count(item) >= state.target_count:
                break
            context = ScoringContext(
                item_name=item.name,
                category=item.category_id,
                description=image.prompt,
                source_id=image.id,
            )
            try:
                candidate = self._process(
                    item,
                    image.data,
                    provider=image.provider or GENERATED_PROVIDER,
                    source_id=image.id,
                    source_url=None,
                    license=LicenseInfo(type="generated", attribution=f"Generated by {image.provider}", commercial=True),
                    search_term=None,
                    context=context,
                    policy=policy,
                )
            except CANDIDATE_ERRORS as e:
                state.add_error(GENERATED_PROVIDER, str(e), image.id)
                continue

            item.candidates.append(candidate)
            if candidate.is_approved:
                stats.approved += 1

    def _request_images(self, item: Item, count: int, style: Optional[str]):
        try:
            return self.generator.generate(item.name, item.category_id, count, style)
        except Exception as e:
            raise GenerationFailed(f"Generation failed: {e}") from e

    def _process(
        self,
        item: Item,
        data: bytes,
        provider: str,
        source_id: str,
        source_url: Optional[str],
        license: LicenseInfo,
        search_term: Optional[str],
        context: Optional[ScoringContext],
        policy: ApprovalPolicy,
        manually_selected: bool = False,
    ) -> ImageCandidate:
        derivatives = self.derivatives.generate(data)

        score = None
        if not manually_selected:
            try:
                score = self.scorer.score(data, derivatives.info, context)
            except Exception as e:
                LOGGER.warning(f"Scoring {provider}/{source_id} failed, using default score: {e}")
                score = neutral_score(self.scorer.weights, reason=str(e))

        status = policy.decide(score, manually_selected=manually_selected)
        candidate = ImageCandidate(
            source_provider=provider,
            source_id=source_id,
            source_url=source_url,
            width=derivatives.info.width,
            height=derivatives.info.height,
            size_bytes=derivatives.info.size_bytes,
            format=derivatives.info.format,
            status=status,
            quality_score=score,
            license=license,
            search_term=search_term,
        )

        if status == CandidateStatus.REJECTED:
            candidate.rejection_reason = f"Quality score {score.overall} below {policy.min_quality_threshold}"
            return candidate

        candidate.files = self._persist(item, candidate, derivatives)
        if manually_selected:
            candidate.review_notes = "Manually selected"
        if status == CandidateStatus.APPROVED:
            candidate.approved_at = utcnow()
            if item.primary is None:
                candidate.is_primary = True
        return candidate

    def _persist(self, item: Item, candidate: ImageCandidate, derivatives: DerivativeSet) -> dict[str, StoredFile]:
        try:
            return self._upload(self.blob_store, item, candidate, derivatives)
        except StorageFailed as e:
            if self.fallback_store is None:
                raise
            LOGGER.warning(f"Primary blob store failed for {candidate.source_id}, using fallback: {e}")
            return self._upload(self.fallback_store, item, candidate, derivatives)

    def _upload(self, store: BlobStore, item: Item, candidate: ImageCandidate,
                derivatives: DerivativeSet) -> dict[str, StoredFile]:
        """Store every derivative, or none: a failed put removes what this call already wrote."""
        timestamp = int(time.time() * 1000)
        files = {}
        for name, derivative in derivatives.derivatives.items():
            key = get_blob_key(
                item.category_id,
                item.letter,
                item.name,
                candidate.source_provider,
                candidate.source_id,
                timestamp,
                name,
                derivative.extension,
            )
            try:
                result = store.put(
                    key,
                    derivative.data,
                    content_type=derivative.content_type,
                    cache_control=CACHE_CONTROL,
                    metadata={
                        "category": item.category_id,
                        "letter": item.letter,
                        "itemName": item.name,
                        "purpose": name,
                        "sourceProvider": candidate.source_provider,
                        "sourceId": candidate.source_id,
                        "timestamp": str(timestamp),
                    },
                )
            except StorageFailed:
                _remove_blobs(store, [f.key for f in files.values()])
                raise
            files[name] = StoredFile(
                key=result.key,
                url=result.url,
                width=derivative.width,
                height=derivative.height,
                size_bytes=derivative.size_bytes,
                format=derivative.format,
                etag=result.etag,
            )
        return files

    def _finalize(self, item: Item, max_retries: int, error: Optional[str]):
        state = item.progress
        item.ensure_primary()
        state.recompute(item.candidates)
        now = utcnow()

        if error is not None:
            state.status = ProgressStatus.FAILED
        elif state.approved_count >= state.target_count:
            state.status = ProgressStatus.COMPLETED
            state.completed_at = now
        elif state.search_attempts >= max_retries:
            state.status = ProgressStatus.FAILED
        else:
            state.status = ProgressStatus.PENDING
            state.next_attempt = now + self.retry_interval
