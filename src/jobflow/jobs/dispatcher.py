"""Worker pool that routes dequeued jobs to processors and records outcomes."""

from __future__ import annotations

import json
import logging
import random
import threading
from dataclasses import dataclass, replace
from datetime import timedelta
from enum import Enum
from typing import Any, Protocol

from jobflow.events import EventBus, JobStatusEvent
from jobflow.jobs.errors import NoProcessorFound, QueueUnavailable
from jobflow.jobs.models import (
    Job,
    JobCanceled,
    JobFailure,
    JobResult,
    JobStatus,
    JobSuccess,
    TokenUsage,
)
from jobflow.jobs.processors import ProcessorRegistry
from jobflow.jobs.queue import JobQueue
from jobflow.jobs.repository import JobStore
from jobflow.storage.common import utc_now

logger = logging.getLogger(__name__)

_RETRY_JITTER_RATIO = 0.2
_NOT_QUEUED_MESSAGE = "Job was no longer queued when a worker picked it up"
_FINISHED_ELSEWHERE_MESSAGE = "Job reached a final status elsewhere while it was running"


class WorkflowStageListener(Protocol):
    """Receives terminal outcomes of workflow-tagged jobs."""

    def handle_stage_completed(self, job: Job, result: JobSuccess) -> None: ...

    def handle_stage_failed(self, job: Job, message: str, status: JobStatus) -> None: ...


class DispatchOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"
    RETRIED = "retried"
    SKIPPED = "skipped"


@dataclass(slots=True)
class DispatchSummary:
    """Aggregate dispatcher counters."""

    processed: int = 0
    completed: int = 0
    failed: int = 0
    canceled: int = 0
    retried: int = 0
    skipped: int = 0


class Dispatcher:
    """Pulls permits and jobs from the queue and executes them one at a time per worker."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        queue: JobQueue,
        registry: ProcessorRegistry,
        store: JobStore,
        events: EventBus | None = None,
        worker_count: int | None = None,
        max_retries: int = 3,
        retry_base_seconds: float = 2.0,
        retry_max_seconds: float = 60.0,
        poll_interval_seconds: float = 0.5,
    ) -> None:
        self.queue = queue
        self.registry = registry
        self.store = store
        self.events = events or EventBus()
        self.worker_count = worker_count or queue.max_concurrent_jobs
        self.max_retries = max_retries
        self.retry_base_seconds = retry_base_seconds
        self.retry_max_seconds = retry_max_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self._random = random.Random()  # noqa: S311
        self._listener: WorkflowStageListener | None = None
        self._stop = threading.Event()
        self._workers: list[threading.Thread] = []
        self._summary = DispatchSummary()
        self._summary_lock = threading.Lock()

    def set_workflow_listener(self, listener: WorkflowStageListener) -> None:
        self._listener = listener

    def enqueue(self, job: Job) -> None:
        self.queue.enqueue(job)

    def cancel_job(self, job_id: str) -> bool:
        return self.queue.cancel_job(job_id)

    @property
    def is_running(self) -> bool:
        return any(worker.is_alive() for worker in self._workers)

    def summary(self) -> DispatchSummary:
        with self._summary_lock:
            return replace(self._summary)

    def start(self) -> None:
        """Spawn worker threads."""

        if self.is_running:
            return
        self._stop.clear()
        self._workers = [
            threading.Thread(target=self.run_worker, daemon=True, name=f"job-worker-{index}")
            for index in range(self.worker_count)
        ]
        for worker in self._workers:
            worker.start()
        logger.info("Dispatcher started %d workers", self.worker_count)

    def stop(self, timeout: float = 30.0) -> None:
        """Ask workers to exit after their current job and wait for them."""

        self._stop.set()
        for worker in self._workers:
            worker.join(timeout=timeout)
            if worker.is_alive():
                logger.warning("Worker %s did not stop within %.1fs", worker.name, timeout)
        self._workers = []
        logger.info("Dispatcher stopped")

    def run_worker(self) -> None:
        """Worker loop: permit, dequeue, process, release."""

        while not self._stop.is_set():
            permit = self.queue.get_permit(timeout=self.poll_interval_seconds)
            if permit is None:
                if self.queue.is_shut_down:
                    break
                continue
            with permit:
                job = self._next_job()
                if job is None:
                    continue
                try:
                    self.process_job(job)
                except Exception:
                    logger.exception("Dispatcher failed while handling job %s", job.id)

    def process_job(self, job: Job) -> DispatchOutcome:
        """Execute one job to a terminal status or a scheduled retry."""

        try:
            processor = self.registry.find(job)
        except NoProcessorFound as error:
            logger.error("%s", error)
            return self._finish_failed(job, str(error), usage=None)

        if not self.store.mark_job_running(job.id):
            return self._skip(job)
        self._emit(job, JobStatus.RUNNING)

        try:
            result = processor.process(job)
        except Exception as error:
            logger.exception("Processor %s raised for job %s", type(processor).__name__, job.id)
            result = JobFailure(message=f"{type(error).__name__}: {error}")
        if not isinstance(result, JobSuccess | JobFailure | JobCanceled):
            result = JobFailure(
                message=f"Processor returned unsupported result type {type(result).__name__}",
                retryable=False,
            )
        return self._apply_result(job, result)

    def _apply_result(self, job: Job, result: JobResult) -> DispatchOutcome:
        if isinstance(result, JobSuccess):
            return self._finish_completed(job, result)
        if isinstance(result, JobCanceled):
            return self._finish_canceled(job, result.message)
        if isinstance(result, JobFailure):
            if result.retryable:
                retried = self._schedule_retry(job, result)
                if retried is not None:
                    return retried
            return self._finish_failed(
                job,
                result.message,
                usage=result.usage,
                metadata=result.metadata,
            )
        raise TypeError(f"Unsupported job result: {type(result).__name__}")

    def _next_job(self) -> Job | None:
        while not self._stop.is_set():
            seen = self.queue.enqueue_generation
            try:
                job = self.queue.dequeue()
            except QueueUnavailable:
                return None
            if job is not None:
                return job
            self.queue.wait_for_job(seen, timeout=self.poll_interval_seconds)
        return None

    def _finish_completed(self, job: Job, result: JobSuccess) -> DispatchOutcome:
        stored = self.store.mark_job_completed(
            job.id,
            response=_serialize_response(result.response),
            metadata=result.metadata,
            usage=result.usage,
        )
        self._reset_retry_count(job.id)
        if not stored:
            return self._skip(job, _FINISHED_ELSEWHERE_MESSAGE)
        self._count(DispatchOutcome.COMPLETED)
        self._emit(job, JobStatus.COMPLETED)
        logger.info("Job %s (%s) completed", job.id, job.task_type.value)
        if job.is_workflow_stage and self._listener is not None:
            self._listener.handle_stage_completed(job, result)
        return DispatchOutcome.COMPLETED

    def _finish_failed(
        self,
        job: Job,
        message: str,
        *,
        usage: TokenUsage | None,
        metadata: dict[str, Any] | None = None,
    ) -> DispatchOutcome:
        stored = self.store.mark_job_failed(job.id, error=message, metadata=metadata, usage=usage)
        self._reset_retry_count(job.id)
        if not stored:
            return self._skip(job, _FINISHED_ELSEWHERE_MESSAGE)
        self._count(DispatchOutcome.FAILED)
        self._emit(job, JobStatus.FAILED, message)
        logger.warning("Job %s (%s) failed: %s", job.id, job.task_type.value, message)
        if job.is_workflow_stage and self._listener is not None:
            self._listener.handle_stage_failed(job, message, JobStatus.FAILED)
        return DispatchOutcome.FAILED

    def _finish_canceled(self, job: Job, message: str) -> DispatchOutcome:
        stored = self.store.mark_job_canceled(job.id, reason=message)
        self._reset_retry_count(job.id)
        if not stored:
            return self._skip(job, _FINISHED_ELSEWHERE_MESSAGE)
        self._count(DispatchOutcome.CANCELED)
        self._emit(job, JobStatus.CANCELED, message)
        logger.info("Job %s (%s) canceled: %s", job.id, job.task_type.value, message)
        if job.is_workflow_stage and self._listener is not None:
            self._listener.handle_stage_failed(job, message, JobStatus.CANCELED)
        return DispatchOutcome.CANCELED

    def _skip(self, job: Job, reason: str = _NOT_QUEUED_MESSAGE) -> DispatchOutcome:
        stored = self.store.get_job_by_id(job.id)
        status = stored.status if stored is not None else None
        logger.info(
            "Skipping job %s: stored status is %s (%s)",
            job.id,
            status.value if status is not None else "missing",
            reason,
        )
        self._count(DispatchOutcome.SKIPPED)
        if job.is_workflow_stage and self._listener is not None:
            self._listener.handle_stage_failed(
                job,
                reason,
                JobStatus.FAILED if status == JobStatus.FAILED else JobStatus.CANCELED,
            )
        return DispatchOutcome.SKIPPED

    def _schedule_retry(self, job: Job, failure: JobFailure) -> DispatchOutcome | None:
        """Requeue a failed job; ``None`` means retries are used up."""

        try:
            retry_count = self.queue.get_retry_count(job.id)
            if retry_count >= self.max_retries:
                return None
            attempt = self.queue.increment_retry_count(job.id)
        except QueueUnavailable:
            return None
        process_after = utc_now() + timedelta(
            seconds=self._compute_retry_delay(retry_number=retry_count),
        )
        requeued = self.store.update_job_status(
            job.id,
            JobStatus.QUEUED,
            f"Retry {attempt}/{self.max_retries} after error: {failure.message}",
            process_after=process_after,
        )
        if not requeued:
            self._reset_retry_count(job.id)
            return self._skip(job, _FINISHED_ELSEWHERE_MESSAGE)
        try:
            self.queue.enqueue(replace(job, process_after=process_after))
        except QueueUnavailable:
            logger.warning(
                "Job %s left queued in the store; queue shut down before retry %d",
                job.id,
                attempt,
            )
            return DispatchOutcome.RETRIED
        self._count(DispatchOutcome.RETRIED)
        self._emit(job, JobStatus.QUEUED, f"retry {attempt}")
        logger.info(
            "Job %s retry %d/%d scheduled at %s",
            job.id,
            attempt,
            self.max_retries,
            process_after.isoformat(),
        )
        return DispatchOutcome.RETRIED

    def _compute_retry_delay(self, *, retry_number: int) -> float:
        delay = min(self.retry_max_seconds, self.retry_base_seconds * (2**retry_number))
        jitter = self._random.uniform(0, delay * _RETRY_JITTER_RATIO)
        return min(self.retry_max_seconds, delay + jitter)

    def _reset_retry_count(self, job_id: str) -> None:
        try:
            self.queue.reset_retry_count(job_id)
        except QueueUnavailable:
            logger.debug("Queue shut down; retry counter for %s not reset", job_id)

    def _count(self, outcome: DispatchOutcome) -> None:
        with self._summary_lock:
            self._summary.processed += 1
            setattr(self._summary, outcome.value, getattr(self._summary, outcome.value) + 1)

    def _emit(self, job: Job, status: JobStatus, message: str | None = None) -> None:
        self.events.emit(
            JobStatusEvent(
                job_id=job.id,
                status=status.value,
                message=message,
                workflow_id=job.workflow_id,
                stage_name=job.stage_name,
            ),
        )


def _serialize_response(response: object) -> str:
    if isinstance(response, str):
        return response
    return json.dumps(response, ensure_ascii=False, default=str)
