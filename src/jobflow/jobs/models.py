"""Domain models for jobs, payload variants and processing results."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any, ClassVar
from uuid import uuid4

from jobflow.storage.common import utc_now


class TaskType(str, Enum):
    """Closed set of task types, one processor each."""

    REGEX_PATTERN_GENERATION = "regex_pattern_generation"
    REGEX_FILE_FILTER = "regex_file_filter"
    FILE_RELEVANCE_ASSESSMENT = "file_relevance_assessment"
    EXTENDED_PATH_FINDER = "extended_path_finder"
    PATH_CORRECTION = "path_correction"
    IMPLEMENTATION_PLAN = "implementation_plan"
    TASK_REFINEMENT = "task_refinement"
    TEXT_IMPROVEMENT = "text_improvement"
    WEB_SEARCH_PROMPTS_GENERATION = "web_search_prompts_generation"
    WEB_SEARCH_EXECUTION = "web_search_execution"
    GENERIC_LLM_STREAM = "generic_llm_stream"


class JobPriority(IntEnum):
    """Dequeue tiers; higher value is served first."""

    LOW = 0
    NORMAL = 1
    HIGH = 2


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_JOB_STATUSES


TERMINAL_JOB_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELED})


@dataclass(frozen=True, slots=True)
class RegexPatternGenerationPayload:
    TASK_TYPE: ClassVar[TaskType] = TaskType.REGEX_PATTERN_GENERATION

    task_description: str
    directory_tree: str | None = None


@dataclass(frozen=True, slots=True)
class RegexFileFilterPayload:
    TASK_TYPE: ClassVar[TaskType] = TaskType.REGEX_FILE_FILTER

    task_description: str
    root_directories: tuple[str, ...]
    excluded_paths: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class FileRelevanceAssessmentPayload:
    TASK_TYPE: ClassVar[TaskType] = TaskType.FILE_RELEVANCE_ASSESSMENT

    task_description: str
    locally_filtered_files: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class ExtendedPathFinderPayload:
    TASK_TYPE: ClassVar[TaskType] = TaskType.EXTENDED_PATH_FINDER

    task_description: str
    initial_paths: tuple[str, ...]
    selected_root_directories: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class PathCorrectionPayload:
    TASK_TYPE: ClassVar[TaskType] = TaskType.PATH_CORRECTION

    task_description: str
    paths_to_correct: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class ImplementationPlanPayload:
    TASK_TYPE: ClassVar[TaskType] = TaskType.IMPLEMENTATION_PLAN

    task_description: str
    relevant_files: tuple[str, ...]
    include_project_structure: bool = True


@dataclass(frozen=True, slots=True)
class TaskRefinementPayload:
    TASK_TYPE: ClassVar[TaskType] = TaskType.TASK_REFINEMENT

    task_description: str
    relevant_files: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class TextImprovementPayload:
    TASK_TYPE: ClassVar[TaskType] = TaskType.TEXT_IMPROVEMENT

    text_to_improve: str
    original_transcription_job_id: str | None = None


@dataclass(frozen=True, slots=True)
class WebSearchPromptsGenerationPayload:
    TASK_TYPE: ClassVar[TaskType] = TaskType.WEB_SEARCH_PROMPTS_GENERATION

    task_description: str


@dataclass(frozen=True, slots=True)
class WebSearchExecutionPayload:
    TASK_TYPE: ClassVar[TaskType] = TaskType.WEB_SEARCH_EXECUTION

    prompts: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class GenericLlmStreamPayload:
    TASK_TYPE: ClassVar[TaskType] = TaskType.GENERIC_LLM_STREAM

    prompt_text: str
    system_prompt: str | None = None


JobPayload = (
    RegexPatternGenerationPayload
    | RegexFileFilterPayload
    | FileRelevanceAssessmentPayload
    | ExtendedPathFinderPayload
    | PathCorrectionPayload
    | ImplementationPlanPayload
    | TaskRefinementPayload
    | TextImprovementPayload
    | WebSearchPromptsGenerationPayload
    | WebSearchExecutionPayload
    | GenericLlmStreamPayload
)

PAYLOAD_TYPES: dict[TaskType, type[Any]] = {
    payload_type.TASK_TYPE: payload_type
    for payload_type in (
        RegexPatternGenerationPayload,
        RegexFileFilterPayload,
        FileRelevanceAssessmentPayload,
        ExtendedPathFinderPayload,
        PathCorrectionPayload,
        ImplementationPlanPayload,
        TaskRefinementPayload,
        TextImprovementPayload,
        WebSearchPromptsGenerationPayload,
        WebSearchExecutionPayload,
        GenericLlmStreamPayload,
    )
}


def payload_to_dict(payload: JobPayload) -> dict[str, Any]:
    """JSON-friendly form of a payload (tuples become lists)."""

    return {
        key: list(value) if isinstance(value, tuple) else value
        for key, value in asdict(payload).items()
    }


def payload_from_dict(task_type: TaskType, data: dict[str, Any]) -> JobPayload:
    """Rebuild a payload from its stored form."""

    payload_type = PAYLOAD_TYPES.get(task_type)
    if payload_type is None:
        raise ValueError(f"Unsupported task type: {task_type!r}")
    kwargs: dict[str, Any] = {}
    for item in fields(payload_type):
        if item.name not in data:
            continue
        value = data[item.name]
        kwargs[item.name] = tuple(value) if isinstance(value, list) else value
    return payload_type(**kwargs)


@dataclass(frozen=True, slots=True)
class Job:
    """One schedulable unit of work."""

    task_type: TaskType
    payload: JobPayload
    session_id: str
    id: str = field(default_factory=lambda: uuid4().hex)
    priority: JobPriority = JobPriority.NORMAL
    process_after: datetime | None = None
    workflow_id: str | None = None
    stage_name: str | None = None
    created_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        if self.payload.TASK_TYPE != self.task_type:
            raise ValueError(
                f"Payload {type(self.payload).__name__} does not match task type "
                f"{self.task_type.value}.",
            )
        if (self.workflow_id is None) != (self.stage_name is None):
            raise ValueError("workflow_id and stage_name must be set together.")

    @property
    def is_workflow_stage(self) -> bool:
        return self.workflow_id is not None

    def is_ready(self, now: datetime) -> bool:
        """Whether the job may be dequeued at ``now``."""

        return self.process_after is None or self.process_after <= now


@dataclass(frozen=True, slots=True)
class TokenUsage:
    """Token and cost accounting reported by a processor."""

    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None
    cost_usd: float | None = None


@dataclass(frozen=True, slots=True)
class JobSuccess:
    response: Any
    metadata: dict[str, Any] = field(default_factory=dict)
    usage: TokenUsage | None = None


@dataclass(frozen=True, slots=True)
class JobFailure:
    message: str
    retryable: bool = True
    metadata: dict[str, Any] = field(default_factory=dict)
    usage: TokenUsage | None = None


@dataclass(frozen=True, slots=True)
class JobCanceled:
    message: str = "Job canceled"


JobResult = JobSuccess | JobFailure | JobCanceled


@dataclass(slots=True)
class JobRecordView:
    """Readable durable job view for CLI and recovery."""

    job_id: str
    session_id: str
    task_type: TaskType
    priority: JobPriority
    status: JobStatus
    payload: dict[str, Any]
    workflow_id: str | None
    stage_name: str | None
    process_after: datetime | None
    status_message: str | None
    response: str | None
    error_message: str | None
    metadata: dict[str, Any]
    usage: TokenUsage | None
    started_at: datetime | None
    finished_at: datetime | None
    created_at: datetime
    updated_at: datetime

    def to_job(self) -> Job:
        """Rebuild the in-memory job from the stored row."""

        return Job(
            id=self.job_id,
            task_type=self.task_type,
            payload=payload_from_dict(self.task_type, self.payload),
            session_id=self.session_id,
            priority=self.priority,
            process_after=self.process_after,
            workflow_id=self.workflow_id,
            stage_name=self.stage_name,
            created_at=self.created_at,
        )


@dataclass(slots=True)
class JobEventView:
    """Job event entry for audit trail."""

    event_id: int
    job_id: str
    event_type: str
    status_from: JobStatus | None
    status_to: JobStatus | None
    created_at: datetime
    details: dict[str, object]


@dataclass(slots=True)
class JobDetails:
    job: JobRecordView
    events: list[JobEventView]
