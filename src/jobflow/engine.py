"""Composition root: wires the store, queue, dispatcher and orchestrator together."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from types import TracebackType

from jobflow.config import Settings
from jobflow.events import EventBus
from jobflow.jobs.dispatcher import Dispatcher
from jobflow.jobs.models import Job, JobPayload, JobPriority, TaskType
from jobflow.jobs.processors import JobProcessor, ProcessorRegistry
from jobflow.jobs.queue import JobQueue
from jobflow.jobs.repository import JobRepository
from jobflow.jobs.services import JobService, RecoveryReport
from jobflow.workflows.models import WorkflowDefinition, WorkflowParams, WorkflowState
from jobflow.workflows.orchestrator import WorkflowOrchestrator

logger = logging.getLogger(__name__)


class JobEngine:
    """Owns every long-lived component for one process.

    Construct it, call :meth:`start` once and :meth:`shutdown` once, or use it
    as a context manager.
    """

    def __init__(
        self,
        settings: Settings,
        processors: Sequence[JobProcessor],
        definitions: dict[str, WorkflowDefinition] | None = None,
    ) -> None:
        settings.validate()
        self.settings = settings
        self.events = EventBus()
        self.repository = JobRepository(
            settings.db_path,
            busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        )
        self.registry = ProcessorRegistry(processors)
        self.queue = JobQueue(
            max_concurrent_jobs=settings.queue.max_concurrent_jobs,
            attention_after_seconds=settings.queue.attention_after_seconds,
            attention_check_interval_seconds=settings.queue.attention_check_interval_seconds,
        )
        self.dispatcher = Dispatcher(
            queue=self.queue,
            registry=self.registry,
            store=self.repository,
            events=self.events,
            worker_count=settings.dispatcher.effective_worker_count(
                settings.queue.max_concurrent_jobs,
            ),
            max_retries=settings.dispatcher.max_retries,
            retry_base_seconds=settings.dispatcher.retry_base_seconds,
            retry_max_seconds=settings.dispatcher.retry_max_seconds,
            poll_interval_seconds=settings.dispatcher.poll_interval_seconds,
        )
        self.job_service = JobService(repository=self.repository, dispatcher=self.dispatcher)
        self.orchestrator = WorkflowOrchestrator(
            job_service=self.job_service,
            settings=settings.workflow,
            definitions=definitions,
            events=self.events,
        )
        self.dispatcher.set_workflow_listener(self.orchestrator)
        self._started = False
        self._stopped = False

    def start(self) -> RecoveryReport | None:
        """Migrate the schema, check processors, recover old jobs and start workers."""

        if self._started:
            return None
        self.repository.init_schema()
        self.registry.ensure_unique()
        missing = self.registry.missing_task_types()
        if missing:
            logger.warning(
                "No processor registered for task types: %s",
                ", ".join(task_type.value for task_type in missing),
            )
        report = None
        if self.settings.recover_on_start:
            report = self.job_service.recover_unfinished_jobs()
        self.dispatcher.start()
        self._started = True
        logger.info(
            "Job engine started (db=%s, max_concurrent_jobs=%d)",
            self.settings.db_path,
            self.settings.queue.max_concurrent_jobs,
        )
        return report

    def shutdown(self) -> None:
        """Stop workers, close the queue and release the database."""

        if self._stopped:
            return
        self._stopped = True
        self.queue.shutdown()
        self.dispatcher.stop(timeout=self.settings.dispatcher.shutdown_timeout_seconds)
        self.orchestrator.close()
        self.repository.close()
        logger.info("Job engine shut down")

    def __enter__(self) -> JobEngine:
        self.start()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.shutdown()

    def submit_job(  # noqa: PLR0913
        self,
        *,
        task_type: TaskType,
        payload: JobPayload,
        session_id: str,
        priority: JobPriority = JobPriority.NORMAL,
        delay_ms: int | None = None,
    ) -> Job:
        return self.job_service.create_job(
            task_type=task_type,
            payload=payload,
            session_id=session_id,
            priority=priority,
            delay_ms=delay_ms,
        )

    def start_workflow(
        self,
        definition_name: str,
        session_id: str,
        params: WorkflowParams,
    ) -> WorkflowState:
        return self.orchestrator.start_workflow(definition_name, session_id, params)
