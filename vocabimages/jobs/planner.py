"""Category-level planning: pick pending items and feed them to the item queue in batches."""

import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from vocabimages.catalog.models import Item, ItemKey, ProgressStatus
from vocabimages.collection.orchestrator import CollectOptions
from vocabimages.errors import CollectionAlreadyActive, CollectionError, NoPendingItems, SchedulerError
from vocabimages.storage.item_store import ItemStore
from vocabimages.utils.logger import logger as LOGGER

from .handlers import CATEGORY_QUEUE, ITEM_QUEUE
from .models import CategoryCollectionPayload, ItemCollectionPayload, Job, JobOptions, JobState
from .scheduler import JobScheduler

SELECTABLE_STATUSES = (None, ProgressStatus.PENDING)


@dataclass
class PlanOptions:
    """How a category collection is selected and paced."""
    item_ids: Optional[list[str]] = None
    force_restart: bool = False
    batch_size: int = 3
    batch_delay: float = 1.0
    priority: int = 5
    collect: CollectOptions = field(default_factory=CollectOptions)


@dataclass
class BatchTicket:
    """Handle on a planned category collection."""
    category_id: str
    job: Job
    items: list[ItemKey]

    @property
    def job_id(self) -> str:
        return self.job.id

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self.job.wait(timeout)


def collection_priority(item: Item) -> int:
    """Higher values are collected first.

    Items without any image come first, items that keep failing sink, and
    easy items are preferred over hard ones.
    """
    priority = 100
    if not item.candidates:
        priority += 50
    attempts = item.progress.search_attempts if item.progress else 0
    if attempts > 3:
        priority -= 10 * attempts
    if item.difficulty <= 1:
        priority += 20
    elif item.difficulty >= 3:
        priority -= 20
    return priority


def plan_batches(items: list, batch_size: int) -> list[list]:
    """Split items into consecutive batches of at most ``batch_size``."""
    if batch_size < 1:
        raise ValueError("batch_size must be positive")
    return [items[i:i + batch_size] for i in range(0, len(items), batch_size)]


def _category_of(job: Job) -> Optional[str]:
    return getattr(job.payload, "category_id", None)


class CategoryBatchPlanner:
    """Plans and runs collections for whole categories.

    Args:
        items: Item store to select from
        scheduler: Scheduler with the item and category queues registered
        batch_timeout: Seconds to wait for one item job before counting it failed
        sleep: Pause between batches
    """

    def __init__(self, items: ItemStore, scheduler: JobScheduler, batch_timeout: Optional[float] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.items = items
        self.scheduler = scheduler
        self.batch_timeout = batch_timeout
        self._sleep = sleep

    def select_items(self, category_id: str, options: PlanOptions) -> list[Item]:
        """Items to collect, highest collection priority first.

        Items left in ``collecting`` with no queued or running job belong to a
        run that died before saving its outcome and are selected again.
        """
        selected = []
        wanted = set(options.item_ids) if options.item_ids else None
        for item in self.items.list_items(category_id):
            if wanted is not None and item.item_id not in wanted:
                continue
            status = item.progress.status if item.progress else None
            if not options.force_restart and status not in SELECTABLE_STATUSES:
                if status != ProgressStatus.COLLECTING or self.has_live_job(item.key):
                    continue
                LOGGER.warning(f"Recovering {item.key}: collecting without a live job")
            selected.append(item)
        return sorted(selected, key=collection_priority, reverse=True)

    def has_live_job(self, key: ItemKey) -> bool:
        """True if an item job or category job covering ``key`` is queued or running."""
        item_key = ItemCollectionPayload(key.category_id, key.letter, key.item_id).job_key
        if self.scheduler.active_jobs(ITEM_QUEUE, lambda job: job.job_key == item_key):
            return True
        return bool(
            self.scheduler.active_jobs(CATEGORY_QUEUE, lambda job: key in getattr(job.payload, "items", ()))
        )

    def is_active(self, category_id: str) -> bool:
        """True if a collection for the category is queued or running."""
        def same_category(job: Job) -> bool:
            return _category_of(job) == category_id

        return bool(
            self.scheduler.active_jobs(CATEGORY_QUEUE, same_category)
            or self.scheduler.active_jobs(ITEM_QUEUE, same_category)
        )

    def plan_category_collection(self, category_id: str, options: Optional[PlanOptions] = None) -> BatchTicket:
        """Queue a collection for every pending item of a category.

        Raises:
            CollectionAlreadyActive: If the category is already being collected and
                force_restart is not set
            NoPendingItems: If no item qualifies
        """
        options = options or PlanOptions()
        if not options.force_restart and self.is_active(category_id):
            raise CollectionAlreadyActive(f"Collection already running for category {category_id}")

        selected = self.select_items(category_id, options)
        if not selected:
            raise NoPendingItems(f"No pending items in category {category_id}")

        collect = CollectOptions(**{**options.collect.to_dict(), "force_restart": options.force_restart})
        payload = CategoryCollectionPayload(
            category_id=category_id,
            items=[item.key for item in selected],
            options=collect.to_dict(),
            batch_size=options.batch_size,
            batch_delay=options.batch_delay,
        )
        job = self.scheduler.enqueue(
            CATEGORY_QUEUE, payload.kind, payload, JobOptions(priority=options.priority)
        )
        LOGGER.info(f"Planned collection of {len(selected)} items in {category_id} as job {job.id}")
        return BatchTicket(category_id=category_id, job=job, items=list(payload.items))

    def run_category(self, payload: CategoryCollectionPayload, progress: Callable) -> dict:
        """Enqueue item jobs batch by batch, waiting for each batch to settle.

        Returns:
            Summary with processed/successful/failed counts, batch sizes and
            the final status of every item
        """
        batches = plan_batches(list(payload.items), payload.batch_size)
        total = len(payload.items)
        summary = {"percent": 0, "processed": 0, "successful": 0, "failed": 0, "total": total}
        statuses: dict[str, str] = {}

        progress(dict(summary))

        for index, batch in enumerate(batches):
            jobs: list[tuple[ItemKey, Job]] = []
            for key in batch:
                item_payload = ItemCollectionPayload(
                    category_id=key.category_id,
                    letter=key.letter,
                    item_id=key.item_id,
                    options=dict(payload.options),
                )
                try:
                    jobs.append((key, self.scheduler.enqueue(ITEM_QUEUE, item_payload.kind, item_payload)))
                except (SchedulerError, CollectionError) as e:
                    LOGGER.error(f"Could not enqueue {key}: {e}")
                    summary["failed"] += 1
                    summary["processed"] += 1
                    statuses[str(key)] = "failed"

            for key, job in jobs:
                self._wait(job, lambda: progress(dict(summary)))
                summary["processed"] += 1
                if job.state == JobState.COMPLETED:
                    summary["successful"] += 1
                    statuses[str(key)] = (job.result or {}).get("status", "completed")
                else:
                    summary["failed"] += 1
                    statuses[str(key)] = "failed" if job.is_finished else "timed-out"

            summary["percent"] = round(100 * summary["processed"] / total) if total else 100
            progress(dict(summary))

            if index < len(batches) - 1 and payload.batch_delay > 0:
                self._sleep(payload.batch_delay)

        LOGGER.info(
            f"Category {payload.category_id}: {summary['successful']} successful, "
            f"{summary['failed']} failed of {total} items"
        )
        return {
            "category_id": payload.category_id,
            "total": total,
            "processed": summary["processed"],
            "successful": summary["successful"],
            "failed": summary["failed"],
            "batches": [len(b) for b in batches],
            "items": statuses,
        }

    def _wait(self, job: Job, heartbeat: Callable[[], None]) -> None:
        deadline = None if self.batch_timeout is None else time.monotonic() + self.batch_timeout
        while not job.wait(1.0):
            # Children can run longer than the parent's stall timeout.
            heartbeat()
            if deadline is not None and time.monotonic() >= deadline:
                LOGGER.warning(f"Timed out waiting for job {job.id}")
                return


def make_category_handler(planner: CategoryBatchPlanner) -> Callable:
    """Build the handler for category collection jobs."""

    def handle(payload: CategoryCollectionPayload, progress: Callable) -> dict:
        return planner.run_category(payload, progress)

    return handle
