"""Error taxonomy for queueing, dispatch and workflow orchestration."""

from __future__ import annotations


class JobflowError(RuntimeError):
    """Base class for engine errors."""


class QueueUnavailable(JobflowError):
    """Raised for queue operations after shutdown."""

    def __init__(self, operation: str) -> None:
        super().__init__(f"Job queue is shut down; cannot {operation}.")
        self.operation = operation


class NoProcessorFound(JobflowError):
    """No registered processor accepts the job."""

    def __init__(self, job_id: str, task_type: str) -> None:
        super().__init__(f"No processor found for job {job_id} (task_type={task_type}).")
        self.job_id = job_id
        self.task_type = task_type


class ProcessorConfigurationError(JobflowError):
    """Processor registry is ambiguous or incomplete."""


class JobNotFound(JobflowError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class WorkflowNotFound(JobflowError):
    def __init__(self, workflow_id: str) -> None:
        super().__init__(f"Workflow not found: {workflow_id}")
        self.workflow_id = workflow_id


class ExtractionError(JobflowError):
    """Completed stage output could not be merged into intermediate data."""

    def __init__(self, task_type: str, message: str) -> None:
        super().__init__(f"[{task_type}] {message}")
        self.task_type = task_type
        self.message = message


class StageCreationError(JobflowError):
    """A scheduled stage could not be persisted or enqueued."""

    def __init__(self, stage_name: str, message: str) -> None:
        super().__init__(f"[{stage_name}] {message}")
        self.stage_name = stage_name
        self.message = message


class WorkflowStateError(JobflowError):
    """Requested workflow operation does not fit its current status."""

    def __init__(self, workflow_id: str, message: str) -> None:
        super().__init__(f"Workflow {workflow_id}: {message}")
        self.workflow_id = workflow_id
        self.message = message
