"""Job processor contract and the startup-time processor registry."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import Protocol, runtime_checkable

from jobflow.jobs.errors import NoProcessorFound, ProcessorConfigurationError
from jobflow.jobs.models import (
    ExtendedPathFinderPayload,
    FileRelevanceAssessmentPayload,
    GenericLlmStreamPayload,
    ImplementationPlanPayload,
    Job,
    JobPayload,
    JobResult,
    PathCorrectionPayload,
    RegexFileFilterPayload,
    RegexPatternGenerationPayload,
    TaskRefinementPayload,
    TaskType,
    TextImprovementPayload,
    WebSearchExecutionPayload,
    WebSearchPromptsGenerationPayload,
)


@runtime_checkable
class JobProcessor(Protocol):
    """Protocol implemented once per task type."""

    def can_handle(self, job: Job) -> bool: ...

    def process(self, job: Job) -> JobResult: ...


class TaskTypeProcessor:
    """Base processor that accepts exactly one task type."""

    task_type: TaskType

    def can_handle(self, job: Job) -> bool:
        return job.task_type == self.task_type

    def process(self, job: Job) -> JobResult:
        raise NotImplementedError


class ProcessorRegistry:
    """Ordered processor collection; the first matching processor wins."""

    def __init__(self, processors: Sequence[JobProcessor] = ()) -> None:
        self._processors: list[JobProcessor] = list(processors)

    def __len__(self) -> int:
        return len(self._processors)

    def register(self, processor: JobProcessor) -> None:
        self._processors.append(processor)

    def find(self, job: Job) -> JobProcessor:
        for processor in self._processors:
            if processor.can_handle(job):
                return processor
        raise NoProcessorFound(job.id, job.task_type.value)

    def ensure_unique(self, task_types: Iterable[TaskType] = tuple(TaskType)) -> None:
        """Raise if any task type is accepted by more than one processor."""

        for job in _sample_jobs(task_types):
            matches = [
                type(processor).__name__
                for processor in self._processors
                if processor.can_handle(job)
            ]
            if len(matches) > 1:
                raise ProcessorConfigurationError(
                    f"Task type {job.task_type.value} is handled by several processors: "
                    f"{', '.join(matches)}",
                )

    def missing_task_types(
        self,
        task_types: Iterable[TaskType] = tuple(TaskType),
    ) -> list[TaskType]:
        return [
            job.task_type
            for job in _sample_jobs(task_types)
            if not any(processor.can_handle(job) for processor in self._processors)
        ]


_SAMPLE_PAYLOADS: dict[TaskType, JobPayload] = {
    TaskType.REGEX_PATTERN_GENERATION: RegexPatternGenerationPayload(task_description=""),
    TaskType.REGEX_FILE_FILTER: RegexFileFilterPayload(task_description="", root_directories=()),
    TaskType.FILE_RELEVANCE_ASSESSMENT: FileRelevanceAssessmentPayload(
        task_description="",
        locally_filtered_files=(),
    ),
    TaskType.EXTENDED_PATH_FINDER: ExtendedPathFinderPayload(task_description="", initial_paths=()),
    TaskType.PATH_CORRECTION: PathCorrectionPayload(task_description="", paths_to_correct=()),
    TaskType.IMPLEMENTATION_PLAN: ImplementationPlanPayload(task_description="", relevant_files=()),
    TaskType.TASK_REFINEMENT: TaskRefinementPayload(task_description=""),
    TaskType.TEXT_IMPROVEMENT: TextImprovementPayload(text_to_improve=""),
    TaskType.WEB_SEARCH_PROMPTS_GENERATION: WebSearchPromptsGenerationPayload(task_description=""),
    TaskType.WEB_SEARCH_EXECUTION: WebSearchExecutionPayload(prompts=()),
    TaskType.GENERIC_LLM_STREAM: GenericLlmStreamPayload(prompt_text=""),
}


def _sample_jobs(task_types: Iterable[TaskType]) -> list[Job]:
    return [
        Job(task_type=task_type, payload=_SAMPLE_PAYLOADS[task_type], session_id="registry-check")
        for task_type in task_types
    ]
