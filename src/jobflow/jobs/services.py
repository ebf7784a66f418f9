"""Job creation facade and startup recovery of durable jobs."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from jobflow.jobs.dispatcher import Dispatcher
from jobflow.jobs.errors import JobNotFound, QueueUnavailable
from jobflow.jobs.models import Job, JobPayload, JobPriority, JobStatus, TaskType
from jobflow.jobs.repository import JobRepository
from jobflow.storage.common import utc_now

logger = logging.getLogger(__name__)

INTERRUPTED_MESSAGE = "Interrupted by process restart"
ORPHANED_STAGE_MESSAGE = "Workflow state lost on restart"
_SESSION_CANCEL_SCAN_LIMIT = 10_000


@dataclass(slots=True)
class RecoveryReport:
    """Counts of durable jobs handled at startup."""

    requeued: int = 0
    interrupted: int = 0
    orphaned_stages: int = 0


class JobService:
    """Single entry point that persists a job and enqueues it."""

    def __init__(self, *, repository: JobRepository, dispatcher: Dispatcher) -> None:
        self.repository = repository
        self.dispatcher = dispatcher

    def create_job(  # noqa: PLR0913
        self,
        *,
        task_type: TaskType,
        payload: JobPayload,
        session_id: str,
        priority: JobPriority = JobPriority.NORMAL,
        workflow_id: str | None = None,
        stage_name: str | None = None,
        delay_ms: int | None = None,
    ) -> Job:
        """Persist a queued job record, then hand it to the live queue.

        If the queue refuses the job the record stays ``queued`` and is picked up
        by the next startup recovery; the error is re-raised to the caller.
        """

        job = Job(
            task_type=task_type,
            payload=payload,
            session_id=session_id,
            priority=priority,
            process_after=utc_now() + timedelta(milliseconds=delay_ms) if delay_ms else None,
            workflow_id=workflow_id,
            stage_name=stage_name,
        )
        self.repository.create_job(job)
        try:
            self.dispatcher.enqueue(job)
        except QueueUnavailable:
            logger.error(
                "Job %s persisted as queued but was not enqueued; it will not run until re-queued",
                job.id,
            )
            raise
        logger.info(
            "Created job %s (%s, priority=%s, session=%s)",
            job.id,
            task_type.value,
            priority.name.lower(),
            session_id,
        )
        return job

    def cancel_job(self, job_id: str, *, reason: str = "Canceled by user") -> bool:
        """Cancel a queued job and mark its durable record canceled.

        Returns whether the job was removed from the live queue. A running job is
        only marked canceled in the store; stopping it is up to its processor.
        """

        stored = self.repository.get_job_by_id(job_id)
        if stored is None:
            raise JobNotFound(job_id)
        try:
            removed = self.dispatcher.cancel_job(job_id)
        except QueueUnavailable:
            removed = False
        if not stored.status.is_terminal:
            self.repository.mark_job_canceled(job_id, reason=reason)
        return removed

    def cancel_session_jobs(self, session_id: str, *, reason: str = "Session canceled") -> int:
        """Cancel every queued job of a session; return how many left the live queue."""

        removed = self.dispatcher.queue.cancel_session_jobs(session_id)
        for record in self.repository.list_jobs(
            status=JobStatus.QUEUED,
            session_id=session_id,
            limit=_SESSION_CANCEL_SCAN_LIMIT,
        ):
            self.repository.mark_job_canceled(record.job_id, reason=reason)
        return removed

    def recover_unfinished_jobs(self) -> RecoveryReport:
        """Resolve jobs a previous process left queued or running.

        Running jobs are failed rather than replayed because their side effects
        are unknown. Queued standalone jobs are re-enqueued. Queued workflow
        stages are canceled since workflow state is not persisted.
        """

        report = RecoveryReport()
        for record in self.repository.list_unfinished_jobs():
            if record.status == JobStatus.RUNNING:
                self.repository.mark_job_failed(record.job_id, error=INTERRUPTED_MESSAGE)
                report.interrupted += 1
                continue
            if record.workflow_id is not None:
                self.repository.mark_job_canceled(record.job_id, reason=ORPHANED_STAGE_MESSAGE)
                report.orphaned_stages += 1
                continue
            try:
                job = record.to_job()
            except (TypeError, ValueError) as error:
                self.repository.mark_job_failed(
                    record.job_id,
                    error=f"Stored payload could not be restored: {error}",
                )
                report.interrupted += 1
                continue
            self.dispatcher.enqueue(job)
            report.requeued += 1
        if report.requeued or report.interrupted or report.orphaned_stages:
            logger.warning(
                "Recovered durable jobs: requeued=%d interrupted=%d orphaned_stages=%d",
                report.requeued,
                report.interrupted,
                report.orphaned_stages,
            )
        return report
