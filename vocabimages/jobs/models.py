"""Job records, queue configuration, retry policy and typed payloads."""

import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Optional

from vocabimages.catalog.models import ItemKey, utcnow
from vocabimages.errors import InvalidJobPayload


class JobState(str, Enum):
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


PENDING_STATES = (JobState.WAITING, JobState.DELAYED, JobState.ACTIVE)
TERMINAL_STATES = (JobState.COMPLETED, JobState.FAILED)


class BackoffKind(str, Enum):
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


@dataclass(frozen=True)
class RetryPolicy:
    """How often and how late a failed job is retried.

    ``max_attempts`` counts every run including the first. The delay before
    retry ``n`` (1-based) is ``base_delay`` for fixed backoff and
    ``base_delay * 2 ** (n - 1)`` for exponential backoff.
    """
    kind: BackoffKind = BackoffKind.EXPONENTIAL
    base_delay: float = 5.0
    max_attempts: int = 3

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must not be negative")

    def delay_for(self, attempts_made: int) -> float:
        """Seconds to wait after ``attempts_made`` failed runs."""
        if self.kind == BackoffKind.FIXED:
            return self.base_delay
        return self.base_delay * (2 ** max(0, attempts_made - 1))


@dataclass(frozen=True)
class QueueConfig:
    """Named queue with its own worker concurrency and retention."""
    name: str
    concurrency: int = 1
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    payload_types: tuple = ()
    remove_on_complete: int = 100
    remove_on_fail: int = 50
    stall_timeout: float = 300.0


@dataclass
class JobOptions:
    """Per-job overrides; lower ``priority`` runs first."""
    priority: int = 5
    delay: float = 0.0
    attempts: Optional[int] = None
    backoff: Optional[RetryPolicy] = None
    job_key: Optional[str] = None


@dataclass
class ItemCollectionPayload:
    """Collect images for one item."""
    kind: ClassVar[str] = "item-collection"
    category_id: str
    letter: str
    item_id: str
    options: dict = field(default_factory=dict)

    @property
    def key(self) -> ItemKey:
        return ItemKey(self.category_id, self.letter, self.item_id)

    @property
    def job_key(self) -> str:
        return f"item:{self.category_id}:{self.letter}:{self.item_id}"

    def validate(self) -> None:
        if not self.category_id or not self.letter or not self.item_id:
            raise InvalidJobPayload(f"Item payload needs category, letter and item id: {self}")


@dataclass
class CategoryCollectionPayload:
    """Collect images for many items of one category in batches."""
    kind: ClassVar[str] = "category-collection"
    category_id: str
    items: list[ItemKey] = field(default_factory=list)
    options: dict = field(default_factory=dict)
    batch_size: int = 3
    batch_delay: float = 1.0

    @property
    def job_key(self) -> str:
        return f"category:{self.category_id}"

    def validate(self) -> None:
        if not self.category_id:
            raise InvalidJobPayload("Category payload needs a category id")
        if self.batch_size < 1:
            raise InvalidJobPayload(f"Batch size must be positive, got {self.batch_size}")
        if not self.items:
            raise InvalidJobPayload(f"Category payload for {self.category_id} has no items")


@dataclass
class Job:
    """A unit of work owned by the scheduler."""
    queue: str
    job_type: str
    payload: Any
    priority: int = 5
    max_attempts: int = 1
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    job_key: Optional[str] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: JobState = JobState.WAITING
    attempts_made: int = 0
    stall_count: int = 0
    progress: Any = 0
    result: Any = None
    error: Optional[str] = None
    ready_at: float = 0.0
    heartbeat: float = 0.0
    run_token: int = 0
    seq: int = 0
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    done: threading.Event = field(default_factory=threading.Event, repr=False, compare=False)

    @property
    def is_finished(self) -> bool:
        return self.state in TERMINAL_STATES

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the job reaches a terminal state."""
        return self.done.wait(timeout)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "queue": self.queue,
            "job_type": self.job_type,
            "state": self.state.value,
            "priority": self.priority,
            "attempts_made": self.attempts_made,
            "max_attempts": self.max_attempts,
            "progress": self.progress,
            "result": self.result,
            "error": self.error,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


@dataclass
class JobEvent:
    """Notification delivered to scheduler listeners."""
    name: str
    job: Job
    data: dict = field(default_factory=dict)
