"""In-memory priority job queue owned by a single actor thread.

Every operation is sent to the actor as a request message and answered through
a one-shot reply queue, so enqueue, dequeue and cancellation never race: the
request the actor reads first wins. Concurrency limiting is a separate permit
pool and does not touch the priority tiers.
"""

from __future__ import annotations

import logging
import queue
import threading
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from jobflow.config import DEFAULT_CONCURRENT_JOBS
from jobflow.jobs.errors import QueueUnavailable
from jobflow.jobs.models import Job, JobPriority
from jobflow.storage.common import utc_now

logger = logging.getLogger(__name__)

_ATTENTION_LOG_LIMIT = 10


class Permit:
    """One concurrency slot. Releasing twice is a no-op."""

    __slots__ = ("_pool", "_released")

    def __init__(self, pool: _PermitPool) -> None:
        self._pool = pool
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        self._pool.release(self)

    def __enter__(self) -> Permit:
        return self

    def __exit__(self, *_exc: object) -> None:
        self.release()


class _PermitPool:
    def __init__(self, size: int) -> None:
        if size <= 0:
            raise ValueError(f"Permit pool size must be positive, got {size}.")
        self.size = size
        self._available = size
        self._closed = False
        self._condition = threading.Condition()

    @property
    def available(self) -> int:
        with self._condition:
            return self._available

    def acquire(self, timeout: float | None) -> Permit | None:
        with self._condition:
            ready = self._condition.wait_for(
                lambda: self._closed or self._available > 0,
                timeout=timeout,
            )
            if not ready or self._closed:
                return None
            self._available -= 1
            return Permit(self)

    def release(self, permit: Permit) -> None:
        with self._condition:
            if permit._released:  # noqa: SLF001
                return
            permit._released = True  # noqa: SLF001
            self._available += 1
            self._condition.notify()

    def close(self) -> None:
        with self._condition:
            self._closed = True
            self._condition.notify_all()


@dataclass(slots=True)
class _QueuedEntry:
    job: Job
    priority: JobPriority
    enqueued_at: datetime


@dataclass(slots=True)
class _Reply:
    value: Any = None
    error: BaseException | None = None


@dataclass(slots=True)
class _Request:
    operation: str
    arguments: dict[str, Any]
    reply: queue.Queue[_Reply] = field(default_factory=lambda: queue.Queue(maxsize=1))


@dataclass(slots=True)
class QueueStats:
    """Point-in-time queue counters."""

    queued_by_priority: dict[str, int]
    total_queued: int
    delayed: int
    tracked_retries: int
    permits_available: int
    max_concurrent_jobs: int


class JobQueue:
    """Priority-ordered, concurrency-bounded queue of pending jobs.

    Construct once at process start and call :meth:`shutdown` once at process
    stop. Permits handed out before shutdown stay valid until released.
    """

    def __init__(
        self,
        *,
        max_concurrent_jobs: int = DEFAULT_CONCURRENT_JOBS,
        attention_after_seconds: float = 1_800,
        attention_check_interval_seconds: float = 300,
    ) -> None:
        self.max_concurrent_jobs = max_concurrent_jobs
        self.attention_after_seconds = attention_after_seconds
        self.attention_check_interval_seconds = attention_check_interval_seconds
        self._permits = _PermitPool(max_concurrent_jobs)

        # Owned by the actor thread only.
        self._tiers: dict[JobPriority, deque[_QueuedEntry]] = {
            priority: deque() for priority in JobPriority
        }
        self._retry_counts: dict[str, int] = {}

        self._requests: queue.Queue[_Request | None] = queue.Queue()
        self._intake_lock = threading.Lock()
        self._closed = False
        self._wakeup = threading.Condition()
        self._generation = 0
        self._handlers: dict[str, Callable[..., Any]] = {
            "enqueue": self._handle_enqueue,
            "dequeue": self._handle_dequeue,
            "cancel_job": self._handle_cancel_job,
            "cancel_session_jobs": self._handle_cancel_session_jobs,
            "increment_retry_count": self._handle_increment_retry_count,
            "get_retry_count": self._handle_get_retry_count,
            "reset_retry_count": self._handle_reset_retry_count,
            "stats": self._handle_stats,
        }
        self._actor = threading.Thread(target=self._run_actor, daemon=True, name="job-queue")
        self._actor.start()

    @property
    def is_shut_down(self) -> bool:
        with self._intake_lock:
            return self._closed

    @property
    def enqueue_generation(self) -> int:
        """Counter bumped on every enqueue; pair with :meth:`wait_for_job`."""

        with self._wakeup:
            return self._generation

    def enqueue(self, job: Job, priority: JobPriority | None = None) -> None:
        """Append the job to the tail of its priority tier."""

        self._call("enqueue", job=job, priority=job.priority if priority is None else priority)

    def dequeue(self) -> Job | None:
        """Pop the oldest ready job from the highest non-empty tier."""

        return self._call("dequeue")

    def cancel_job(self, job_id: str) -> bool:
        """Remove a still-queued job; return whether it was found."""

        return self._call("cancel_job", job_id=job_id)

    def cancel_session_jobs(self, session_id: str) -> int:
        """Remove every still-queued job of the session; return the count."""

        return self._call("cancel_session_jobs", session_id=session_id)

    def increment_retry_count(self, job_id: str) -> int:
        return self._call("increment_retry_count", job_id=job_id)

    def get_retry_count(self, job_id: str) -> int:
        return self._call("get_retry_count", job_id=job_id)

    def reset_retry_count(self, job_id: str) -> None:
        self._call("reset_retry_count", job_id=job_id)

    def stats(self) -> QueueStats:
        return self._call("stats")

    def get_permit(self, timeout: float | None = None) -> Permit | None:
        """Block until a concurrency slot is free; ``None`` after shutdown or timeout."""

        return self._permits.acquire(timeout)

    def wait_for_job(self, seen_generation: int, timeout: float | None = None) -> bool:
        """Sleep until something was enqueued after ``seen_generation`` or shutdown."""

        with self._wakeup:
            return self._wakeup.wait_for(
                lambda: self._generation != seen_generation or self._closed,
                timeout=timeout,
            )

    def shutdown(self, timeout: float = 5.0) -> None:
        """Stop accepting operations and wake every blocked waiter."""

        with self._intake_lock:
            if self._closed:
                return
            self._closed = True
            self._requests.put(None)
        self._permits.close()
        with self._wakeup:
            self._wakeup.notify_all()
        if threading.current_thread() is not self._actor:
            self._actor.join(timeout=timeout)
        logger.info("Job queue shut down")

    def _call(self, operation: str, **arguments: Any) -> Any:
        request = _Request(operation=operation, arguments=arguments)
        with self._intake_lock:
            if self._closed:
                raise QueueUnavailable(operation.replace("_", " "))
            self._requests.put(request)
        reply = request.reply.get()
        if reply.error is not None:
            raise reply.error
        return reply.value

    # -- actor ----------------------------------------------------------------

    def _run_actor(self) -> None:
        next_check = utc_now() + timedelta(seconds=self.attention_check_interval_seconds)
        while True:
            wait_seconds = max((next_check - utc_now()).total_seconds(), 0.0)
            try:
                request = self._requests.get(timeout=wait_seconds)
            except queue.Empty:
                self._check_jobs_requiring_attention()
                next_check = utc_now() + timedelta(seconds=self.attention_check_interval_seconds)
                continue
            if request is None:
                break
            handler = self._handlers[request.operation]
            try:
                request.reply.put(_Reply(value=handler(**request.arguments)))
            except Exception as error:  # noqa: BLE001
                request.reply.put(_Reply(error=error))
        logger.debug("Job queue actor stopped")

    def _handle_enqueue(self, *, job: Job, priority: JobPriority) -> None:
        self._tiers[priority].append(
            _QueuedEntry(job=job, priority=priority, enqueued_at=utc_now()),
        )
        logger.debug(
            "Enqueued job %s (%s, priority=%s)",
            job.id,
            job.task_type.value,
            priority.name,
        )
        with self._wakeup:
            self._generation += 1
            self._wakeup.notify_all()

    def _handle_dequeue(self) -> Job | None:
        now = utc_now()
        for priority in sorted(JobPriority, reverse=True):
            tier = self._tiers[priority]
            for index, entry in enumerate(tier):
                if entry.job.is_ready(now):
                    del tier[index]
                    return entry.job
        return None

    def _handle_cancel_job(self, *, job_id: str) -> bool:
        for tier in self._tiers.values():
            for index, entry in enumerate(tier):
                if entry.job.id == job_id:
                    del tier[index]
                    logger.info("Canceled queued job %s", job_id)
                    return True
        return False

    def _handle_cancel_session_jobs(self, *, session_id: str) -> int:
        removed = 0
        for priority, tier in self._tiers.items():
            kept = deque(entry for entry in tier if entry.job.session_id != session_id)
            removed += len(tier) - len(kept)
            self._tiers[priority] = kept
        if removed:
            logger.info("Canceled %d queued jobs for session %s", removed, session_id)
        return removed

    def _handle_increment_retry_count(self, *, job_id: str) -> int:
        count = self._retry_counts.get(job_id, 0) + 1
        self._retry_counts[job_id] = count
        return count

    def _handle_get_retry_count(self, *, job_id: str) -> int:
        return self._retry_counts.get(job_id, 0)

    def _handle_reset_retry_count(self, *, job_id: str) -> None:
        self._retry_counts.pop(job_id, None)

    def _handle_stats(self) -> QueueStats:
        now = utc_now()
        by_priority = {priority.name.lower(): len(tier) for priority, tier in self._tiers.items()}
        delayed = sum(
            1 for tier in self._tiers.values() for entry in tier if not entry.job.is_ready(now)
        )
        return QueueStats(
            queued_by_priority=by_priority,
            total_queued=sum(by_priority.values()),
            delayed=delayed,
            tracked_retries=len(self._retry_counts),
            permits_available=self._permits.available,
            max_concurrent_jobs=self.max_concurrent_jobs,
        )

    def _check_jobs_requiring_attention(self) -> None:
        threshold = utc_now() - timedelta(seconds=self.attention_after_seconds)
        stale = [
            entry
            for tier in self._tiers.values()
            for entry in tier
            if entry.enqueued_at < threshold
        ]
        if not stale:
            return
        logger.warning(
            "%d jobs queued longer than %ss: %s",
            len(stale),
            int(self.attention_after_seconds),
            ", ".join(
                f"{entry.job.id}({entry.job.task_type.value})"
                for entry in stale[:_ATTENTION_LOG_LIMIT]
            ),
        )
