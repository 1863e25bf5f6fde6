"""Exceptions raised across the collection pipeline."""


class CollectionError(Exception):
    """Base class for pipeline errors.

    ``retryable`` tells the job scheduler whether a failed attempt may be
    retried under the queue's retry policy.
    """

    retryable = True


class SourceError(CollectionError):
    """A search source failed for a term.

    ``transient`` marks failures where repeating the request may succeed.
    """

    transient = False


class SourceUnavailable(SourceError):
    """Source is missing credentials or cannot be reached at all."""
    pass


class SourceRateLimited(SourceUnavailable):
    """Source used up its request allowance for the current window."""
    pass


class SourceTimeout(SourceError):
    """Source did not answer within the request timeout."""
    pass


class DownloadFailed(CollectionError):
    """Candidate bytes could not be fetched."""
    pass


class ProcessingFailed(CollectionError):
    """Image could not be decoded or resized."""
    pass


class StorageFailed(CollectionError):
    """Blob or item storage write failed."""
    pass


class BlobNotFound(CollectionError):
    """No blob stored under the requested key."""

    retryable = False


class ItemNotFound(CollectionError):
    """Item is not present in the item store."""

    retryable = False


class GenerationFailed(CollectionError):
    """Fallback image generation failed."""
    pass


class InvalidCollectOptions(CollectionError):
    """Collection options are out of range; retrying cannot help."""

    retryable = False


class ItemCollectionFailed(CollectionError):
    """A collection run for one item ended in failure."""

    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


class SchedulerError(Exception):
    """Base class for job scheduler errors."""

    retryable = False


class UnknownQueue(SchedulerError):
    """Queue name was never registered."""
    pass


class JobNotFound(SchedulerError):
    """No job record for the given id (never existed or already pruned)."""
    pass


class InvalidJobPayload(SchedulerError):
    """Payload does not match any variant accepted by the queue."""
    pass


class JobStalled(SchedulerError):
    """Job stopped heartbeating twice and was given up."""
    pass


class NoPendingItems(CollectionError):
    """Category has no items left to collect."""

    retryable = False


class CollectionAlreadyActive(CollectionError):
    """A collection for the category is already queued or running."""

    retryable = False
