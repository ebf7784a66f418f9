"""Sequence workflow stages as background jobs and track live workflow state.

Every workflow has its own lock, held for a whole handler pass: locate the
workflow, merge the stage output, decide what comes next and schedule it.
Handlers for different workflows run in parallel. The map lock only guards
insertion, lookup and removal of workflow entries.
"""

from __future__ import annotations

import copy
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import timedelta
from functools import partial
from uuid import uuid4

from jobflow.config import WorkflowSettings
from jobflow.events import Event, EventBus, JobStatusEvent, WorkflowStatusEvent
from jobflow.jobs.errors import (
    ExtractionError,
    JobflowError,
    JobNotFound,
    StageCreationError,
    WorkflowNotFound,
    WorkflowStateError,
)
from jobflow.jobs.models import Job, JobPriority, JobStatus, JobSuccess, TaskType
from jobflow.jobs.services import JobService
from jobflow.storage.common import utc_now
from jobflow.workflows.definitions import default_definitions
from jobflow.workflows.merge import discard_stage_output, merge_stage_output
from jobflow.workflows.models import (
    StageDefinition,
    StageJob,
    WorkflowDefinition,
    WorkflowParams,
    WorkflowResult,
    WorkflowState,
    WorkflowStatus,
)
from jobflow.workflows.payloads import default_payload_builder

logger = logging.getLogger(__name__)

CANCELED_BY_USER_MESSAGE = "Workflow canceled by user"
STALLED_MESSAGE = "Workflow stalled: no stage can progress"
LARGE_CONTEXT_MESSAGE = "Completed early: selected files exceed the large-context token threshold"
_SUPERSEDED_STAGE_MESSAGE = "Workflow finished before this stage ran"


@dataclass(slots=True)
class _WorkflowEntry:
    state: WorkflowState
    definition: WorkflowDefinition
    lock: threading.RLock = field(default_factory=threading.RLock)


class WorkflowOrchestrator:
    """Drives workflows by reacting to stage job outcomes."""

    def __init__(
        self,
        *,
        job_service: JobService,
        settings: WorkflowSettings | None = None,
        definitions: dict[str, WorkflowDefinition] | None = None,
        events: EventBus | None = None,
    ) -> None:
        self.job_service = job_service
        self.settings = settings or WorkflowSettings()
        self.events = events or EventBus()
        self._definitions = dict(default_definitions() if definitions is None else definitions)
        for definition in self._definitions.values():
            definition.validate()
        self._workflows: dict[str, _WorkflowEntry] = {}
        self._map_lock = threading.Lock()
        self._unsubscribe = self.events.subscribe(self._on_event)

    def close(self) -> None:
        self._unsubscribe()

    def definitions(self) -> dict[str, WorkflowDefinition]:
        return dict(self._definitions)

    def start_workflow(
        self,
        definition_name: str,
        session_id: str,
        params: WorkflowParams,
    ) -> WorkflowState:
        """Register a new workflow run and schedule its first stages."""

        definition = self._definitions.get(definition_name)
        if definition is None:
            raise WorkflowNotFound(definition_name)
        state = WorkflowState(
            workflow_id=uuid4().hex,
            workflow_definition_name=definition.name,
            session_id=session_id,
            params=params,
        )
        entry = _WorkflowEntry(state=state, definition=definition)
        with self._map_lock:
            self._workflows[state.workflow_id] = entry
        with entry.lock:
            logger.info(
                "Started workflow %s (%s) for session %s",
                state.workflow_id,
                definition.name,
                session_id,
            )
            self._emit_progress(entry, "Workflow started")
            self._run_guarded(entry, self._advance)
            return copy.deepcopy(state)

    def handle_stage_completed(self, job: Job, result: JobSuccess) -> None:
        entry, stage_job = self._locate(job)
        if entry is None or stage_job is None:
            return
        with entry.lock:
            self._run_guarded(
                entry,
                partial(self._on_stage_completed, stage_job=stage_job, result=result),
            )

    def handle_stage_failed(self, job: Job, message: str, status: JobStatus) -> None:
        entry, stage_job = self._locate(job)
        if entry is None or stage_job is None:
            return
        terminal = status if status in {JobStatus.FAILED, JobStatus.CANCELED} else JobStatus.FAILED
        with entry.lock:
            self._run_guarded(
                entry,
                partial(
                    self._on_stage_failed,
                    stage_job=stage_job,
                    message=message,
                    status=terminal,
                ),
            )

    def cancel_workflow(self, workflow_id: str) -> bool:
        """Cancel in-flight stage jobs and fail the workflow.

        Returns ``False`` when the workflow had already finished.
        """

        entry = self._require_entry(workflow_id)
        with entry.lock:
            if entry.state.status.is_terminal:
                return False
            entry.state.cancel_requested = True
            entry.state.touch()
            logger.info("Cancel requested for workflow %s", workflow_id)
            self._finalize(entry, WorkflowStatus.FAILED, CANCELED_BY_USER_MESSAGE)
            return True

    def pause_workflow(self, workflow_id: str) -> WorkflowState:
        """Stop scheduling new stages; stages already in flight still report back."""

        entry = self._require_entry(workflow_id)
        with entry.lock:
            state = entry.state
            if state.status != WorkflowStatus.RUNNING:
                raise WorkflowStateError(
                    workflow_id,
                    f"cannot pause while status is {state.status.value}",
                )
            state.status = WorkflowStatus.PAUSED
            state.touch()
            logger.info("Paused workflow %s", workflow_id)
            self._emit_progress(entry, "Workflow paused")
            return copy.deepcopy(state)

    def resume_workflow(self, workflow_id: str) -> WorkflowState:
        entry = self._require_entry(workflow_id)
        with entry.lock:
            state = entry.state
            if state.status != WorkflowStatus.PAUSED:
                raise WorkflowStateError(
                    workflow_id,
                    f"cannot resume while status is {state.status.value}",
                )
            state.status = WorkflowStatus.RUNNING
            state.touch()
            logger.info("Resumed workflow %s", workflow_id)
            self._emit_progress(entry, "Workflow resumed")
            self._run_guarded(entry, self._advance)
            return copy.deepcopy(state)

    def retry_workflow_stage(self, workflow_id: str, stage_name: str) -> WorkflowState:
        """Re-run a finished stage together with every stage after it.

        Stage jobs of the retried stage and of all stages that depend on it,
        directly or transitively, are dropped and the intermediate fields they
        wrote are cleared. None of those stages may still be in flight. A failed
        workflow goes back to running; workflows canceled by the user or already
        completed cannot be retried.
        """

        entry = self._require_entry(workflow_id)
        with entry.lock:
            state = entry.state
            if entry.definition.stage(stage_name) is None:
                raise WorkflowStateError(workflow_id, f"unknown stage {stage_name!r}")
            if state.cancel_requested or state.status == WorkflowStatus.COMPLETED:
                raise WorkflowStateError(
                    workflow_id,
                    f"cannot retry stage {stage_name!r} after the workflow "
                    f"{'was canceled' if state.cancel_requested else 'completed'}",
                )
            latest = state.latest_stage_job(stage_name)
            if latest is None or latest.in_flight:
                raise WorkflowStateError(
                    workflow_id,
                    f"stage {stage_name!r} has not finished and cannot be retried",
                )
            downstream = entry.definition.downstream_of(stage_name)
            in_flight = {job.stage_name for job in state.stage_jobs if job.in_flight}
            busy = sorted(in_flight & downstream)
            if busy:
                raise WorkflowStateError(
                    workflow_id,
                    f"cannot retry stage {stage_name!r} while {', '.join(busy)} in flight",
                )
            self._reset_stages(entry, downstream)
            if state.status == WorkflowStatus.FAILED:
                state.status = WorkflowStatus.RUNNING
                state.completed_at = None
                state.error_message = None
            state.touch()
            logger.info("Retrying stage %s of workflow %s", stage_name, workflow_id)
            self._emit_progress(entry, f"Retrying stage '{stage_name}'")
            self._run_guarded(entry, self._advance)
            return copy.deepcopy(state)

    def get_workflow_state(self, workflow_id: str) -> WorkflowState | None:
        entry = self._get_entry(workflow_id)
        if entry is None:
            return None
        with entry.lock:
            return copy.deepcopy(entry.state)

    def get_workflow_result(self, workflow_id: str) -> WorkflowResult | None:
        entry = self._get_entry(workflow_id)
        if entry is None:
            return None
        with entry.lock:
            return WorkflowResult.from_state(copy.deepcopy(entry.state), entry.definition)

    def list_workflows(self, status: WorkflowStatus | None = None) -> list[WorkflowState]:
        with self._map_lock:
            entries = list(self._workflows.values())
        snapshots: list[WorkflowState] = []
        for entry in entries:
            with entry.lock:
                if status is None or entry.state.status == status:
                    snapshots.append(copy.deepcopy(entry.state))
        return sorted(snapshots, key=lambda state: state.created_at)

    def cleanup_completed_workflows(self, max_age_hours: float | None = None) -> int:
        """Drop finished workflows older than ``max_age_hours``; return how many."""

        hours = self.settings.retention_hours if max_age_hours is None else max_age_hours
        cutoff = utc_now() - timedelta(hours=hours)
        with self._map_lock:
            expired = [
                workflow_id
                for workflow_id, entry in self._workflows.items()
                if entry.state.status.is_terminal
                and entry.state.completed_at is not None
                and entry.state.completed_at <= cutoff
            ]
            for workflow_id in expired:
                del self._workflows[workflow_id]
        if expired:
            logger.info("Removed %d finished workflows older than %sh", len(expired), hours)
        return len(expired)

    def _locate(self, job: Job) -> tuple[_WorkflowEntry | None, StageJob | None]:
        if job.workflow_id is None:
            return None, None
        entry = self._get_entry(job.workflow_id)
        if entry is None:
            logger.warning("%s (stage job %s)", WorkflowNotFound(job.workflow_id), job.id)
            return None, None
        with entry.lock:
            stage_job = entry.state.stage_job(job.id)
        if stage_job is None:
            logger.warning("%s in workflow %s", JobNotFound(job.id), job.workflow_id)
            return entry, None
        return entry, stage_job

    def _get_entry(self, workflow_id: str) -> _WorkflowEntry | None:
        with self._map_lock:
            return self._workflows.get(workflow_id)

    def _require_entry(self, workflow_id: str) -> _WorkflowEntry:
        entry = self._get_entry(workflow_id)
        if entry is None:
            raise WorkflowNotFound(workflow_id)
        return entry

    def _reset_stages(self, entry: _WorkflowEntry, stage_names: set[str]) -> None:
        state = entry.state
        data = state.intermediate_data
        for stage in entry.definition.stages:
            if stage.stage_name in stage_names:
                data = discard_stage_output(stage.task_type, data, stage_name=stage.stage_name)
        state.intermediate_data = data
        dropped = [job for job in state.stage_jobs if job.stage_name in stage_names]
        state.stage_jobs = [job for job in state.stage_jobs if job.stage_name not in stage_names]
        logger.info(
            "Workflow %s: reset stages %s (%d stage jobs dropped)",
            state.workflow_id,
            ", ".join(sorted(stage_names)),
            len(dropped),
        )

    def _run_guarded(self, entry: _WorkflowEntry, step: Callable[[_WorkflowEntry], None]) -> None:
        try:
            step(entry)
        except Exception as error:
            logger.exception("Orchestration failed for workflow %s", entry.state.workflow_id)
            if not entry.state.status.is_terminal:
                self._finalize(
                    entry,
                    WorkflowStatus.FAILED,
                    f"Internal orchestration error: {type(error).__name__}: {error}",
                )

    def _on_stage_completed(
        self,
        entry: _WorkflowEntry,
        stage_job: StageJob,
        result: JobSuccess,
    ) -> None:
        state = entry.state
        if state.status.is_terminal:
            if stage_job.in_flight:
                self._record(stage_job, JobStatus.COMPLETED)
                state.touch()
            return
        if not stage_job.in_flight:
            logger.info("Ignoring repeated outcome for stage job %s", stage_job.job_id)
            return
        try:
            merged = merge_stage_output(
                stage_job.task_type,
                state.intermediate_data,
                result.response,
                stage_name=stage_job.stage_name,
            )
        except ExtractionError as error:
            logger.warning(
                "Stage %s of workflow %s produced unusable output: %s",
                stage_job.stage_name,
                state.workflow_id,
                error,
            )
            self._record(stage_job, JobStatus.FAILED, str(error))
            state.touch()
            self._advance(entry)
            return

        state.intermediate_data = merged
        self._record(stage_job, JobStatus.COMPLETED)
        state.touch()
        logger.info("Workflow %s stage %s completed", state.workflow_id, stage_job.stage_name)
        self._emit_progress(entry, f"Stage '{stage_job.stage_name}' completed")

        if state.first_unsuccessful_stage() is None and self._exceeds_large_context(
            entry,
            stage_job,
        ):
            state.intermediate_data = replace(
                merged,
                extended_verified_paths=list(merged.ai_filtered_files or ()),
            )
            logger.info(
                "Workflow %s: %d tokens exceed threshold %d; skipping remaining stages",
                state.workflow_id,
                merged.ai_filtered_files_token_count or 0,
                self.settings.large_context_token_threshold,
            )
            self._finalize(entry, WorkflowStatus.COMPLETED, LARGE_CONTEXT_MESSAGE)
            return
        self._advance(entry)

    def _on_stage_failed(
        self,
        entry: _WorkflowEntry,
        stage_job: StageJob,
        message: str,
        status: JobStatus,
    ) -> None:
        state = entry.state
        if not stage_job.in_flight:
            logger.info("Ignoring repeated outcome for stage job %s", stage_job.job_id)
            return
        self._record(stage_job, status, message)
        state.touch()
        if state.status.is_terminal:
            return
        logger.warning(
            "Workflow %s stage %s %s: %s",
            state.workflow_id,
            stage_job.stage_name,
            status.value,
            message,
        )
        self._advance(entry)

    def _exceeds_large_context(self, entry: _WorkflowEntry, stage_job: StageJob) -> bool:
        if stage_job.task_type != TaskType.FILE_RELEVANCE_ASSESSMENT:
            return False
        token_count = entry.state.intermediate_data.ai_filtered_files_token_count
        return token_count is not None and token_count > self.settings.large_context_token_threshold

    def _advance(self, entry: _WorkflowEntry) -> None:
        state = entry.state
        while state.status == WorkflowStatus.RUNNING:
            eligible = self._eligible_stages(entry)
            if not eligible:
                self._settle(entry)
                return
            available_slots = self.settings.max_concurrent_stages - state.running_stage_count()
            if available_slots <= 0:
                return
            for stage in eligible[:available_slots]:
                self._schedule_stage(entry, stage)
            if state.running_stage_count() > 0:
                return

    def _eligible_stages(self, entry: _WorkflowEntry) -> list[StageDefinition]:
        state = entry.state
        if state.cancel_requested or state.first_unsuccessful_stage() is not None:
            return []
        scheduled = state.scheduled_stage_names()
        completed = state.completed_stage_names()
        busy_task_types = state.running_task_types()
        eligible: list[StageDefinition] = []
        for stage in entry.definition.stages:
            if stage.stage_name in scheduled:
                continue
            if not all(dependency in completed for dependency in stage.dependencies):
                continue
            if not stage.is_eligible(state.intermediate_data):
                continue
            if stage.task_type in busy_task_types and not stage.allow_parallel_execution:
                continue
            eligible.append(stage)
            busy_task_types.add(stage.task_type)
        return eligible

    def _settle(self, entry: _WorkflowEntry) -> None:
        state = entry.state
        if state.cancel_requested:
            self._finalize(entry, WorkflowStatus.FAILED, CANCELED_BY_USER_MESSAGE)
            return
        if state.running_stage_count() > 0:
            return
        unsuccessful = state.first_unsuccessful_stage()
        if unsuccessful is not None:
            self._finalize(
                entry,
                WorkflowStatus.FAILED,
                f"Stage '{unsuccessful.stage_name}' failed: "
                f"{unsuccessful.error_message or unsuccessful.status.value}",
            )
            return
        required = {stage.stage_name for stage in entry.definition.stages if stage.required}
        if required <= state.completed_stage_names():
            self._finalize(entry, WorkflowStatus.COMPLETED, "All required stages completed")
            return
        self._finalize(entry, WorkflowStatus.FAILED, STALLED_MESSAGE)

    def _schedule_stage(self, entry: _WorkflowEntry, stage: StageDefinition) -> None:
        state = entry.state
        try:
            job = self._create_stage_job(entry, stage)
        except StageCreationError as error:
            logger.error("Workflow %s: %s", state.workflow_id, error)
            state.stage_jobs.append(
                StageJob(
                    stage_name=stage.stage_name,
                    job_id=f"unscheduled-{uuid4().hex}",
                    task_type=stage.task_type,
                    status=JobStatus.FAILED,
                    error_message=error.message,
                    completed_at=utc_now(),
                ),
            )
            state.touch()
            return
        state.stage_jobs.append(
            StageJob(stage_name=stage.stage_name, job_id=job.id, task_type=stage.task_type),
        )
        state.touch()
        logger.info(
            "Workflow %s scheduled stage %s as job %s",
            state.workflow_id,
            stage.stage_name,
            job.id,
        )

    def _create_stage_job(self, entry: _WorkflowEntry, stage: StageDefinition) -> Job:
        state = entry.state
        builder = stage.build_payload or default_payload_builder(stage.task_type)
        try:
            payload = builder(state.params, state.intermediate_data)
            return self.job_service.create_job(
                task_type=stage.task_type,
                payload=payload,
                session_id=state.session_id,
                priority=JobPriority.HIGH,
                workflow_id=state.workflow_id,
                stage_name=stage.stage_name,
            )
        except (JobflowError, ValueError, TypeError, KeyError) as error:
            raise StageCreationError(stage.stage_name, str(error)) from error

    def _finalize(self, entry: _WorkflowEntry, status: WorkflowStatus, message: str) -> None:
        state = entry.state
        if state.status.is_terminal:
            return
        now = utc_now()
        state.status = status
        if state.completed_at is None:
            state.completed_at = max(now, state.created_at)
        if status == WorkflowStatus.FAILED:
            state.error_message = message
        state.touch(now)
        self._cancel_in_flight_stages(entry, message)
        if status == WorkflowStatus.COMPLETED:
            logger.info("Workflow %s completed: %s", state.workflow_id, message)
        else:
            logger.warning("Workflow %s failed: %s", state.workflow_id, message)
        self._emit_progress(entry, message, finalized=True)

    def _cancel_in_flight_stages(self, entry: _WorkflowEntry, message: str) -> None:
        reason = message if entry.state.cancel_requested else _SUPERSEDED_STAGE_MESSAGE
        for stage_job in entry.state.stage_jobs:
            if not stage_job.in_flight:
                continue
            try:
                self.job_service.cancel_job(stage_job.job_id, reason=reason)
            except JobflowError as error:
                logger.warning("Could not cancel stage job %s: %s", stage_job.job_id, error)
            self._record(stage_job, JobStatus.CANCELED, reason)

    def _record(self, stage_job: StageJob, status: JobStatus, message: str | None = None) -> None:
        stage_job.status = status
        if message is not None:
            stage_job.error_message = message
        if status.is_terminal and stage_job.completed_at is None:
            stage_job.completed_at = utc_now()

    def _emit_progress(
        self,
        entry: _WorkflowEntry,
        message: str,
        *,
        finalized: bool = False,
    ) -> None:
        state = entry.state
        self.events.emit(
            WorkflowStatusEvent(
                workflow_id=state.workflow_id,
                status=state.status.value,
                message=message,
                progress_percentage=state.progress_percentage(len(entry.definition.stages)),
                finalized=finalized,
            ),
        )

    def _on_event(self, event: Event) -> None:
        if not isinstance(event, JobStatusEvent) or event.workflow_id is None:
            return
        if event.status not in {JobStatus.QUEUED.value, JobStatus.RUNNING.value}:
            return
        entry = self._get_entry(event.workflow_id)
        if entry is None:
            return
        with entry.lock:
            stage_job = entry.state.stage_job(event.job_id)
            if stage_job is not None and stage_job.in_flight:
                stage_job.status = JobStatus(event.status)
                entry.state.touch()
