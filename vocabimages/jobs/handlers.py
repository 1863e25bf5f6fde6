"""Queue definitions and the worker handlers bound to them."""

from typing import Callable

from vocabimages.collection.orchestrator import CollectionOrchestrator, CollectOptions
from vocabimages.config import Settings
from vocabimages.errors import ItemCollectionFailed

from .models import (
    BackoffKind,
    CategoryCollectionPayload,
    ItemCollectionPayload,
    QueueConfig,
    RetryPolicy,
)

ITEM_QUEUE = "image-collection"
CATEGORY_QUEUE = "category-collection"


def default_queues(settings: Settings) -> list[QueueConfig]:
    """Queues the pipeline runs on."""
    return [
        QueueConfig(
            name=ITEM_QUEUE,
            concurrency=settings.collection_concurrency,
            retry=RetryPolicy(
                kind=BackoffKind.EXPONENTIAL,
                base_delay=settings.collection_backoff,
                max_attempts=settings.collection_attempts,
            ),
            payload_types=(ItemCollectionPayload,),
            remove_on_complete=100,
            remove_on_fail=50,
            stall_timeout=settings.stall_timeout,
        ),
        QueueConfig(
            name=CATEGORY_QUEUE,
            concurrency=1,
            retry=RetryPolicy(kind=BackoffKind.FIXED, base_delay=settings.collection_backoff, max_attempts=1),
            payload_types=(CategoryCollectionPayload,),
            remove_on_complete=50,
            remove_on_fail=50,
            stall_timeout=settings.stall_timeout,
        ),
    ]


def make_item_handler(orchestrator: CollectionOrchestrator) -> Callable:
    """Build the handler for item collection jobs.

    The job result is the run summary. A run that crashed is raised as a
    retryable ItemCollectionFailed; an item that ran out of attempts is raised
    as a terminal one.
    """

    def handle(payload: ItemCollectionPayload, progress: Callable) -> dict:
        options = CollectOptions.from_dict(payload.options)
        result = orchestrator.collect(payload.key, options, progress=progress)

        if result.error is not None:
            raise ItemCollectionFailed(f"Collection of {payload.key} failed: {result.error}")
        if result.exhausted:
            raise ItemCollectionFailed(
                f"Collection of {payload.key} gave up after {result.search_attempts} attempts "
                f"({result.approved}/{result.target_count} approved)",
                retryable=False,
            )
        return result.to_dict()

    return handle
