"""Thread-based job scheduler with named queues, retries and stall recovery.

Each registered queue owns ``concurrency`` worker threads. Workers pick the
ready job with the lowest priority value (FIFO within a priority), run the
queue's handler as ``handler(payload, progress)`` and apply the job's retry
policy when it raises. While a handler runs, a side thread renews the job's
heartbeat; a watchdog thread requeues active jobs whose heartbeat went stale
(their worker is gone), at most once per job.
"""

import itertools
import threading
import time
from collections import defaultdict
from concurrent.futures import Future
from datetime import timedelta
from typing import Any, Callable, Iterable, Optional

from vocabimages.catalog.models import utcnow
from vocabimages.errors import InvalidJobPayload, JobNotFound, JobStalled, UnknownQueue
from vocabimages.utils.logger import logger as LOGGER

from .models import (
    PENDING_STATES,
    TERMINAL_STATES,
    Job,
    JobEvent,
    JobOptions,
    JobState,
    QueueConfig,
)

EVENTS = ("enqueued", "started", "progress", "completed", "failed", "stalled")

Handler = Callable[[Any, Callable[[Any], None]], Any]
Listener = Callable[[JobEvent], None]


class _Queue:
    """Scheduler-internal state of one named queue."""

    def __init__(self, config: QueueConfig):
        self.config = config
        self.concurrency = config.concurrency
        self.handler: Optional[Handler] = None
        self.jobs: dict[str, Job] = {}
        self.paused = False
        self.active = 0
        self.workers: list[threading.Thread] = []


class _Heartbeat:
    """Renews an active run's heartbeat on a side thread while its handler runs.

    Renewal ends when the run is superseded or finished, or when the worker
    thread that owns it is gone, so the watchdog still catches lost workers.
    """

    def __init__(self, scheduler: "JobScheduler", job: Job, token: int, interval: float):
        self._scheduler = scheduler
        self._job = job
        self._token = token
        self.interval = interval
        self._owner = threading.current_thread()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        self._thread = threading.Thread(
            target=self._heartbeat_loop,
            name=f"{self._job.queue}-heartbeat-{self._job.id[:8]}",
            daemon=True,
        )
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=5)

    def _heartbeat_loop(self) -> None:
        while not self._stop.wait(self.interval):
            if not self._owner.is_alive() or not self._scheduler._renew(self._job, self._token):
                return


class JobScheduler:
    """Runs jobs on named, independently configured queues.

    Args:
        watchdog_interval: Seconds between stall checks
        clock: Monotonic time source used for delays and heartbeats
        heartbeat_interval: Seconds between heartbeat renewals of a running
            job. Defaults to a third of the queue's stall timeout.
    """

    def __init__(self, watchdog_interval: float = 1.0, clock: Callable[[], float] = time.monotonic,
                 heartbeat_interval: Optional[float] = None):
        if heartbeat_interval is not None and heartbeat_interval <= 0:
            raise ValueError("heartbeat_interval must be positive")
        self.watchdog_interval = watchdog_interval
        self.heartbeat_interval = heartbeat_interval
        self._clock = clock
        self._cond = threading.Condition()
        self._queues: dict[str, _Queue] = {}
        self._jobs: dict[str, Job] = {}
        self._listeners: dict[str, list[Listener]] = defaultdict(list)
        self._seq = itertools.count()
        self._worker_ids = itertools.count(1)
        self._start_lock = threading.Lock()
        self._started: Optional[Future] = None
        self._stopping = False
        self._stop_event = threading.Event()
        self._watchdog: Optional[threading.Thread] = None

    # Registration

    def register_queue(self, config: QueueConfig) -> None:
        with self._cond:
            if config.name in self._queues:
                raise ValueError(f"Queue already registered: {config.name}")
            self._queues[config.name] = _Queue(config)
        LOGGER.debug(f"Registered queue {config.name} (concurrency {config.concurrency})")

    def register_worker(self, queue_name: str, handler: Handler, concurrency: Optional[int] = None) -> None:
        """Attach the handler that processes a queue's jobs.

        Raises:
            UnknownQueue: If the queue was never registered
        """
        with self._cond:
            queue = self._get_queue(queue_name)
            queue.handler = handler
            if concurrency:
                queue.concurrency = concurrency
            running = self._started is not None and not self._stopping
            if running:
                self._spawn_workers(queue)

    def on(self, event: str, listener: Listener) -> None:
        """Subscribe to a job event, or to every event with ``"*"``."""
        if event != "*" and event not in EVENTS:
            raise ValueError(f"Unknown event: {event}")
        with self._cond:
            self._listeners[event].append(listener)

    # Lifecycle

    def start(self) -> Future:
        """Start workers and the watchdog.

        Safe to call repeatedly and concurrently: every caller gets the same
        future, resolved once initialization finished.
        """
        with self._start_lock:
            if self._started is not None:
                return self._started

            future: Future = Future()
            self._started = future
            try:
                with self._cond:
                    self._stopping = False
                    self._stop_event.clear()
                    for queue in self._queues.values():
                        self._spawn_workers(queue)
                self._watchdog = threading.Thread(target=self._watchdog_loop, name="job-watchdog", daemon=True)
                self._watchdog.start()
            except Exception as e:
                self._started = None
                future.set_exception(e)
                raise

            future.set_result(True)
            LOGGER.info(f"Job scheduler started with queues: {', '.join(self._queues)}")
            return future

    def shutdown(self, wait: bool = True, timeout: Optional[float] = None) -> None:
        """Stop accepting work and let workers exit after their current job."""
        with self._start_lock:
            with self._cond:
                self._stopping = True
                self._cond.notify_all()
            self._stop_event.set()

            if wait:
                threads = [t for q in self._queues.values() for t in q.workers]
                if self._watchdog:
                    threads.append(self._watchdog)
                for thread in threads:
                    if thread is not threading.current_thread():
                        thread.join(timeout)

            with self._cond:
                for queue in self._queues.values():
                    queue.workers = [t for t in queue.workers if t.is_alive()]
            self._started = None
        LOGGER.info("Job scheduler stopped")

    def __enter__(self) -> "JobScheduler":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.shutdown()

    # Producing

    def enqueue(self, queue_name: str, job_type: str, payload: Any, options: Optional[JobOptions] = None) -> Job:
        """Add a job to a queue.

        A job whose uniqueness key matches a waiting, delayed or active job of
        the same queue is not added; the existing job is returned instead.

        Raises:
            UnknownQueue: If the queue was never registered
            InvalidJobPayload: If the payload is not accepted by the queue
        """
        options = options or JobOptions()
        with self._cond:
            queue = self._get_queue(queue_name)
        self._validate_payload(queue, job_type, payload)

        job_key = options.job_key or getattr(payload, "job_key", None)
        with self._cond:
            if job_key:
                for existing in queue.jobs.values():
                    if existing.job_key == job_key and existing.state in PENDING_STATES:
                        LOGGER.debug(f"Job {job_key} already queued as {existing.id}")
                        return existing

            retry = options.backoff or queue.config.retry
            now = self._clock()
            job = Job(
                queue=queue_name,
                job_type=job_type,
                payload=payload,
                priority=options.priority,
                max_attempts=options.attempts or retry.max_attempts,
                retry=retry,
                job_key=job_key,
                seq=next(self._seq),
                state=JobState.DELAYED if options.delay > 0 else JobState.WAITING,
                ready_at=now + max(0.0, options.delay),
            )
            queue.jobs[job.id] = job
            self._jobs[job.id] = job
            self._cond.notify_all()

        self._emit("enqueued", job)
        return job

    # Introspection and control

    def get_job(self, job_id: str) -> Job:
        with self._cond:
            job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    def jobs(self, queue_name: str, states: Optional[Iterable[JobState]] = None,
             predicate: Optional[Callable[[Job], bool]] = None) -> list[Job]:
        states = tuple(states) if states else tuple(JobState)
        with self._cond:
            queue = self._get_queue(queue_name)
            selected = [j for j in queue.jobs.values() if j.state in states]
        if predicate:
            selected = [j for j in selected if predicate(j)]
        return sorted(selected, key=lambda j: (j.priority, j.seq))

    def active_jobs(self, queue_name: str, predicate: Optional[Callable[[Job], bool]] = None) -> list[Job]:
        """Jobs not yet finished (waiting, delayed or running), optionally filtered."""
        return self.jobs(queue_name, PENDING_STATES, predicate)

    def counts(self, queue_name: str) -> dict[str, int]:
        with self._cond:
            queue = self._get_queue(queue_name)
            counts = {state.value: 0 for state in JobState}
            for job in queue.jobs.values():
                counts[job.state.value] += 1
            counts["paused"] = counts["waiting"] + counts["delayed"] if queue.paused else 0
            counts["total"] = len(queue.jobs)
        return counts

    def pause(self, queue_name: str) -> None:
        """Stop starting new jobs on a queue; running jobs finish normally."""
        with self._cond:
            self._get_queue(queue_name).paused = True
        LOGGER.info(f"Queue {queue_name} paused")

    def resume(self, queue_name: str) -> None:
        with self._cond:
            self._get_queue(queue_name).paused = False
            self._cond.notify_all()
        LOGGER.info(f"Queue {queue_name} resumed")

    def is_paused(self, queue_name: str) -> bool:
        with self._cond:
            return self._get_queue(queue_name).paused

    def remove(self, job_id: str) -> bool:
        """Cancel a job that has not started yet.

        Returns:
            True if removed, False if the job is already running or finished

        Raises:
            JobNotFound: If no such job exists
        """
        with self._cond:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFound(job_id)
            if job.state not in (JobState.WAITING, JobState.DELAYED):
                return False
            queue = self._queues[job.queue]
            del queue.jobs[job_id]
            del self._jobs[job_id]
            job.state = JobState.FAILED
            job.error = "removed"
            job.finished_at = utcnow()
            job.done.set()
        return True

    def clean(self, queue_name: str, max_age: float = 24 * 3600,
              states: Iterable[JobState] = TERMINAL_STATES) -> int:
        """Drop finished jobs older than ``max_age`` seconds.

        Returns:
            Number of job records removed
        """
        states = tuple(states)
        cutoff = utcnow() - timedelta(seconds=max_age)
        with self._cond:
            queue = self._get_queue(queue_name)
            expired = [
                job_id
                for job_id, job in queue.jobs.items()
                if job.state in states and job.state in TERMINAL_STATES and job.finished_at and job.finished_at <= cutoff
            ]
            for job_id in expired:
                del queue.jobs[job_id]
                self._jobs.pop(job_id, None)
        if expired:
            LOGGER.info(f"Cleaned {len(expired)} jobs from {queue_name}")
        return len(expired)

    def retry_failed(self, queue_name: str, max_jobs: int = 10) -> int:
        """Put up to ``max_jobs`` permanently failed jobs back on the queue."""
        with self._cond:
            queue = self._get_queue(queue_name)
            failed = [j for j in queue.jobs.values() if j.state == JobState.FAILED][:max_jobs]
            now = self._clock()
            for job in failed:
                job.state = JobState.WAITING
                job.attempts_made = 0
                job.stall_count = 0
                job.error = None
                job.result = None
                job.finished_at = None
                job.ready_at = now
                job.done.clear()
            self._cond.notify_all()
        if failed:
            LOGGER.info(f"Retrying {len(failed)} failed jobs on {queue_name}")
        return len(failed)

    def drain(self, timeout: Optional[float] = None) -> bool:
        """Block until no queue has waiting, delayed or active jobs.

        Paused queues are ignored. Returns False on timeout.
        """
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                pending = any(
                    job.state in PENDING_STATES
                    for queue in self._queues.values()
                    if not queue.paused
                    for job in queue.jobs.values()
                )
                if not pending:
                    return True
                remaining = None if deadline is None else deadline - self._clock()
                if remaining is not None and remaining <= 0:
                    return False
                self._cond.wait(0.05 if remaining is None else min(0.05, remaining))

    def check_stalled(self) -> list[Job]:
        """Requeue or fail active jobs whose heartbeat is older than the queue's stall timeout."""
        now = self._clock()
        stalled: list[tuple[Job, bool]] = []
        with self._cond:
            for queue in self._queues.values():
                for job in queue.jobs.values():
                    if job.state != JobState.ACTIVE or now - job.heartbeat <= queue.config.stall_timeout:
                        continue

                    job.run_token += 1
                    job.stall_count += 1
                    queue.active -= 1
                    terminal = job.stall_count > 1
                    if terminal:
                        job.state = JobState.FAILED
                        error = JobStalled(f"Job {job.id} stalled {job.stall_count} times")
                        job.error = f"{type(error).__name__}: {error}"
                        job.finished_at = utcnow()
                        job.done.set()
                    else:
                        job.state = JobState.WAITING
                        job.ready_at = now
                    stalled.append((job, terminal))

                    if self._started is not None and not self._stopping:
                        self._spawn_worker(queue)
                self._prune(queue)
            self._cond.notify_all()

        for job, terminal in stalled:
            LOGGER.warning(f"Job {job.id} on {job.queue} stalled ({'failed' if terminal else 'requeued'})")
            self._emit("stalled", job, {"requeued": not terminal})
            if terminal:
                self._emit("failed", job, {"error": job.error, "terminal": True})
        return [job for job, _ in stalled]

    # Internals

    def _get_queue(self, queue_name: str) -> _Queue:
        queue = self._queues.get(queue_name)
        if queue is None:
            raise UnknownQueue(queue_name)
        return queue

    def _validate_payload(self, queue: _Queue, job_type: str, payload: Any) -> None:
        accepted = queue.config.payload_types
        if accepted and not isinstance(payload, accepted):
            raise InvalidJobPayload(
                f"Queue {queue.config.name} does not accept {type(payload).__name__} payloads"
            )
        kind = getattr(payload, "kind", None)
        if kind is not None and kind != job_type:
            raise InvalidJobPayload(f"Job type {job_type} does not match payload kind {kind}")
        validate = getattr(payload, "validate", None)
        if callable(validate):
            validate()

    def _spawn_workers(self, queue: _Queue) -> None:
        if queue.handler is None:
            return
        queue.workers = [t for t in queue.workers if t.is_alive()]
        while len(queue.workers) < queue.concurrency:
            self._spawn_worker(queue)

    def _spawn_worker(self, queue: _Queue) -> None:
        thread = threading.Thread(
            target=self._worker_loop,
            args=(queue,),
            name=f"{queue.config.name}-worker-{next(self._worker_ids)}",
            daemon=True,
        )
        queue.workers.append(thread)
        thread.start()

    def _next_ready(self, queue: _Queue) -> tuple[Optional[Job], Optional[float]]:
        now = self._clock()
        best = None
        next_wake = None
        for job in queue.jobs.values():
            if job.state not in (JobState.WAITING, JobState.DELAYED):
                continue
            if job.ready_at > now:
                wait = job.ready_at - now
                next_wake = wait if next_wake is None else min(next_wake, wait)
                continue
            if best is None or (job.priority, job.seq) < (best.priority, best.seq):
                best = job
        return best, next_wake

    def _worker_loop(self, queue: _Queue) -> None:
        while True:
            with self._cond:
                while True:
                    if self._stopping:
                        return
                    wait = None
                    if not queue.paused:
                        job, wait = self._next_ready(queue)
                        if job is not None:
                            break
                    self._cond.wait(min(wait, 1.0) if wait is not None else 1.0)

                job.state = JobState.ACTIVE
                job.started_at = utcnow()
                job.heartbeat = self._clock()
                job.run_token += 1
                token = job.run_token
                queue.active += 1
                handler = queue.handler

            self._emit("started", job, {"attempt": job.attempts_made + 1})

            heartbeat = _Heartbeat(self, job, token, self.heartbeat_interval or queue.config.stall_timeout / 3)
            heartbeat.start()
            try:
                result = handler(job.payload, lambda value, j=job, t=token: self._report(j, t, value))
            except Exception as e:
                heartbeat.stop()
                current = self._on_failure(queue, job, token, e)
            else:
                heartbeat.stop()
                current = self._on_success(queue, job, token, result)

            if not current:
                # A replacement worker took over when this job was declared stalled.
                return

    def _report(self, job: Job, token: int, value: Any) -> None:
        with self._cond:
            if job.run_token != token or job.state != JobState.ACTIVE:
                return
            job.progress = value
            job.heartbeat = self._clock()
        self._emit("progress", job, {"progress": value})

    def _renew(self, job: Job, token: int) -> bool:
        with self._cond:
            if job.run_token != token or job.state != JobState.ACTIVE:
                return False
            job.heartbeat = self._clock()
        return True

    def _on_success(self, queue: _Queue, job: Job, token: int, result: Any) -> bool:
        with self._cond:
            if job.run_token != token:
                LOGGER.warning(f"Discarding result of stalled job {job.id}")
                return False
            job.state = JobState.COMPLETED
            job.result = result
            job.error = None
            job.finished_at = utcnow()
            queue.active -= 1
            job.done.set()
            self._prune(queue)
            self._cond.notify_all()

        self._emit("completed", job, {"result": result})
        return True

    def _on_failure(self, queue: _Queue, job: Job, token: int, error: Exception) -> bool:
        with self._cond:
            if job.run_token != token:
                LOGGER.warning(f"Discarding failure of stalled job {job.id}: {error}")
                return False
            job.attempts_made += 1
            job.error = f"{type(error).__name__}: {error}"
            queue.active -= 1

            retryable = getattr(error, "retryable", True)
            terminal = not retryable or job.attempts_made >= job.max_attempts
            if terminal:
                job.state = JobState.FAILED
                job.finished_at = utcnow()
                job.done.set()
                self._prune(queue)
                delay = None
            else:
                delay = job.retry.delay_for(job.attempts_made)
                job.state = JobState.DELAYED if delay > 0 else JobState.WAITING
                job.ready_at = self._clock() + delay
            self._cond.notify_all()

        if terminal:
            LOGGER.error(f"Job {job.id} ({job.job_type}) failed after {job.attempts_made} attempts: {job.error}")
        else:
            LOGGER.warning(
                f"Job {job.id} ({job.job_type}) attempt {job.attempts_made} failed, retrying in {delay:.1f}s: {job.error}"
            )
        self._emit("failed", job, {"error": job.error, "terminal": terminal})
        return True

    def _prune(self, queue: _Queue) -> None:
        for state, keep in ((JobState.COMPLETED, queue.config.remove_on_complete),
                            (JobState.FAILED, queue.config.remove_on_fail)):
            finished = [j for j in queue.jobs.values() if j.state == state]
            excess = len(finished) - keep
            if excess <= 0:
                continue
            finished.sort(key=lambda j: j.finished_at or j.created_at)
            for job in finished[:excess]:
                del queue.jobs[job.id]
                self._jobs.pop(job.id, None)

    def _emit(self, name: str, job: Job, data: Optional[dict] = None) -> None:
        with self._cond:
            listeners = list(self._listeners.get(name, ())) + list(self._listeners.get("*", ()))
        event = JobEvent(name=name, job=job, data=data or {})
        for listener in listeners:
            try:
                listener(event)
            except Exception as e:
                LOGGER.exception(f"Listener for {name} failed: {e}")

    def _watchdog_loop(self) -> None:
        while not self._stop_event.wait(self.watchdog_interval):
            self.check_stalled()
