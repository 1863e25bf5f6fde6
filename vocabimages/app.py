"""Composition root wiring stores, sources, scoring, orchestration and queues."""

from datetime import timedelta
from typing import Optional

from vocabimages.acquisition.downloader import Downloader
from vocabimages.acquisition.registry import SourceRegistry, build_clients
from vocabimages.acquisition.searcher import SourceSearcher
from vocabimages.collection.generator import DisabledImageGenerator, ImageGenerator
from vocabimages.collection.orchestrator import CollectionOrchestrator
from vocabimages.config import Settings
from vocabimages.jobs.handlers import CATEGORY_QUEUE, ITEM_QUEUE, default_queues, make_item_handler
from vocabimages.jobs.planner import CategoryBatchPlanner, make_category_handler
from vocabimages.jobs.scheduler import JobScheduler
from vocabimages.processing.derivatives import DerivativeGenerator
from vocabimages.quality.policy import ApprovalPolicy
from vocabimages.quality.scorer import QualityScorer
from vocabimages.storage.blob import FilesystemBlobStore
from vocabimages.storage.item_store import ItemStore


class Pipeline:
    """Every long-lived component of a running collection service."""

    def __init__(self, settings: Settings, generator: Optional[ImageGenerator] = None):
        self.settings = settings
        self.items = ItemStore(settings.db_path)
        self.registry = SourceRegistry(settings.registry_path)
        self.searcher = SourceSearcher(build_clients(self.registry, settings), timeout=settings.request_timeout)
        self.policy = ApprovalPolicy(
            auto_approval_threshold=settings.auto_approval_threshold,
            min_quality_threshold=settings.min_quality_threshold,
        )
        fallback = FilesystemBlobStore(settings.fallback_blob_dir) if settings.fallback_blob_dir else None
        self.orchestrator = CollectionOrchestrator(
            items=self.items,
            searcher=self.searcher,
            downloader=Downloader(),
            derivatives=DerivativeGenerator(),
            scorer=QualityScorer(),
            blob_store=FilesystemBlobStore(settings.blob_dir, settings.blob_base_url),
            policy=self.policy,
            generator=generator or DisabledImageGenerator(),
            fallback_store=fallback,
            target_count=settings.target_count,
            max_retries=settings.max_retries,
            max_candidates=settings.max_candidates,
            retry_interval=timedelta(hours=settings.retry_interval_hours),
        )

        self.scheduler = JobScheduler()
        for config in default_queues(settings):
            self.scheduler.register_queue(config)
        self.planner = CategoryBatchPlanner(self.items, self.scheduler)
        self.scheduler.register_worker(ITEM_QUEUE, make_item_handler(self.orchestrator))
        self.scheduler.register_worker(CATEGORY_QUEUE, make_category_handler(self.planner))

    def start(self):
        return self.scheduler.start()

    def close(self):
        self.scheduler.shutdown()
        self.searcher.close()
        self.items.close()

    def __enter__(self) -> "Pipeline":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
