"""Workflow definitions, live workflow state and run results."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from jobflow.jobs.models import JobPayload, JobStatus, TaskType
from jobflow.storage.common import utc_now


class WorkflowStatus(str, Enum):
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in {WorkflowStatus.COMPLETED, WorkflowStatus.FAILED}


@dataclass(slots=True)
class IntermediateData:
    """Outputs accumulated from completed stages; ``None`` means not produced yet."""

    raw_regex_patterns: dict[str, Any] | None = None
    locally_filtered_files: list[str] | None = None
    ai_filtered_files: list[str] | None = None
    ai_filtered_files_token_count: int | None = None
    extended_verified_paths: list[str] | None = None
    extended_unverified_paths: list[str] | None = None
    extended_corrected_paths: list[str] | None = None
    web_search_prompts: list[str] | None = None
    web_search_results: list[Any] | None = None
    raw_outputs: dict[str, Any] = field(default_factory=dict)

    def final_selected_files(self) -> list[str]:
        """Sorted, de-duplicated verified and corrected paths."""

        return sorted(
            {*(self.extended_verified_paths or ()), *(self.extended_corrected_paths or ())},
        )


@dataclass(frozen=True, slots=True)
class WorkflowParams:
    """Initial parameters of one workflow run."""

    task_description: str
    project_directory: str = ""
    excluded_paths: tuple[str, ...] = ()
    extra: dict[str, Any] = field(default_factory=dict)


EligibilityPredicate = Callable[[IntermediateData], bool]
PayloadBuilder = Callable[[WorkflowParams, IntermediateData], JobPayload]


def always_eligible(_data: IntermediateData) -> bool:
    return True


@dataclass(frozen=True, slots=True)
class StageDefinition:
    """One named step of a workflow.

    ``is_eligible`` must be a pure function of the intermediate data; the
    orchestrator re-evaluates it on every scheduling pass. ``dependencies``
    names stages that must have completed first.
    """

    stage_name: str
    task_type: TaskType
    is_eligible: EligibilityPredicate = always_eligible
    dependencies: tuple[str, ...] = ()
    required: bool = True
    allow_parallel_execution: bool = False
    build_payload: PayloadBuilder | None = None


@dataclass(frozen=True, slots=True)
class WorkflowDefinition:
    name: str
    stages: tuple[StageDefinition, ...]
    description: str = ""

    @property
    def stage_names(self) -> tuple[str, ...]:
        return tuple(stage.stage_name for stage in self.stages)

    def stage(self, stage_name: str) -> StageDefinition | None:
        for stage in self.stages:
            if stage.stage_name == stage_name:
                return stage
        return None

    def downstream_of(self, stage_name: str) -> set[str]:
        """``stage_name`` plus every stage that depends on it, directly or not."""

        names = {stage_name}
        pending = [stage_name]
        while pending:
            current = pending.pop()
            for stage in self.stages:
                if current in stage.dependencies and stage.stage_name not in names:
                    names.add(stage.stage_name)
                    pending.append(stage.stage_name)
        return names

    def validate(self) -> None:
        """Raise ``ValueError`` for structural problems."""

        if not self.stages:
            raise ValueError(f"Workflow {self.name!r} has no stages.")
        seen: set[str] = set()
        for stage in self.stages:
            if stage.stage_name in seen:
                raise ValueError(f"Workflow {self.name!r}: duplicate stage {stage.stage_name!r}.")
            seen.add(stage.stage_name)
        for stage in self.stages:
            for dependency in stage.dependencies:
                if dependency == stage.stage_name:
                    raise ValueError(
                        f"Workflow {self.name!r}: stage {stage.stage_name!r} depends on itself.",
                    )
                if dependency not in seen:
                    raise ValueError(
                        f"Workflow {self.name!r}: stage {stage.stage_name!r} depends on "
                        f"unknown stage {dependency!r}.",
                    )


@dataclass(slots=True)
class StageJob:
    """One scheduled stage instance; mutated only by the orchestrator."""

    stage_name: str
    job_id: str
    task_type: TaskType
    status: JobStatus = JobStatus.QUEUED
    error_message: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    completed_at: datetime | None = None

    @property
    def in_flight(self) -> bool:
        return not self.status.is_terminal


@dataclass(slots=True)
class WorkflowState:
    """Live record of one workflow run."""

    workflow_id: str
    workflow_definition_name: str
    session_id: str
    params: WorkflowParams
    status: WorkflowStatus = WorkflowStatus.RUNNING
    stage_jobs: list[StageJob] = field(default_factory=list)
    intermediate_data: IntermediateData = field(default_factory=IntermediateData)
    cancel_requested: bool = False
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    completed_at: datetime | None = None
    error_message: str | None = None

    def stage_job(self, job_id: str) -> StageJob | None:
        for stage_job in self.stage_jobs:
            if stage_job.job_id == job_id:
                return stage_job
        return None

    def latest_stage_job(self, stage_name: str) -> StageJob | None:
        for stage_job in reversed(self.stage_jobs):
            if stage_job.stage_name == stage_name:
                return stage_job
        return None

    def completed_stage_names(self) -> set[str]:
        return {
            stage_job.stage_name
            for stage_job in self.stage_jobs
            if stage_job.status == JobStatus.COMPLETED
        }

    def scheduled_stage_names(self) -> set[str]:
        return {stage_job.stage_name for stage_job in self.stage_jobs}

    def running_stage_count(self) -> int:
        return sum(1 for stage_job in self.stage_jobs if stage_job.in_flight)

    def running_task_types(self) -> set[TaskType]:
        return {stage_job.task_type for stage_job in self.stage_jobs if stage_job.in_flight}

    def first_unsuccessful_stage(self) -> StageJob | None:
        for stage_job in self.stage_jobs:
            if stage_job.status in {JobStatus.FAILED, JobStatus.CANCELED}:
                return stage_job
        return None

    def progress_percentage(self, total_stages: int) -> float:
        if total_stages <= 0:
            return 0.0
        completed = len(self.completed_stage_names())
        return min(100.0, completed / total_stages * 100.0)

    def touch(self, now: datetime | None = None) -> None:
        """Advance ``updated_at`` without ever moving it backwards."""

        moment = now or utc_now()
        if moment > self.updated_at:
            self.updated_at = moment


@dataclass(slots=True)
class WorkflowResult:
    """Summary of a finished or running workflow."""

    workflow_id: str
    status: WorkflowStatus
    success: bool
    selected_files: list[str]
    total_stages: int
    completed_stages: int
    failed_stages: int
    total_duration_ms: int | None
    error_message: str | None
    intermediate_data: IntermediateData

    @classmethod
    def from_state(cls, state: WorkflowState, definition: WorkflowDefinition) -> WorkflowResult:
        duration_ms = None
        if state.completed_at is not None:
            duration_ms = int((state.completed_at - state.created_at).total_seconds() * 1000)
        return cls(
            workflow_id=state.workflow_id,
            status=state.status,
            success=state.status == WorkflowStatus.COMPLETED,
            selected_files=state.intermediate_data.final_selected_files(),
            total_stages=len(definition.stages),
            completed_stages=len(state.completed_stage_names()),
            failed_stages=sum(
                1
                for stage_job in state.stage_jobs
                if stage_job.status in {JobStatus.FAILED, JobStatus.CANCELED}
            ),
            total_duration_ms=duration_ms,
            error_message=state.error_message,
            intermediate_data=state.intermediate_data,
        )
