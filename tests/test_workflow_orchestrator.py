from __future__ import annotations

import logging
from datetime import timedelta

import allure
import pytest

from jobflow.config import WorkflowSettings
from jobflow.events import EventBus, JobStatusEvent, WorkflowStatusEvent
from jobflow.jobs.errors import QueueUnavailable, WorkflowNotFound, WorkflowStateError
from jobflow.jobs.models import (
    GenericLlmStreamPayload,
    Job,
    JobPayload,
    JobPriority,
    JobStatus,
    JobSuccess,
    TaskType,
)
from jobflow.workflows.definitions import (
    EXTENDED_PATH_FINDER_STAGE,
    FILE_FINDER_WORKFLOW,
    FILE_RELEVANCE_STAGE,
    PATH_CORRECTION_STAGE,
    REGEX_FILE_FILTER_STAGE,
    WEB_SEARCH_EXECUTION_STAGE,
    WEB_SEARCH_PROMPTS_STAGE,
    WEB_SEARCH_WORKFLOW,
)
from jobflow.workflows.models import (
    IntermediateData,
    StageDefinition,
    WorkflowDefinition,
    WorkflowParams,
    WorkflowState,
    WorkflowStatus,
)
from jobflow.workflows.orchestrator import (
    CANCELED_BY_USER_MESSAGE,
    LARGE_CONTEXT_MESSAGE,
    STALLED_MESSAGE,
    WorkflowOrchestrator,
)

pytestmark = [
    allure.epic("Workflows"),
    allure.feature("Orchestrator"),
]


class FakeJobService:
    """Records created and canceled jobs without a queue behind it."""

    def __init__(self, *, fail_stages: set[str] | None = None) -> None:
        self.jobs: dict[str, Job] = {}
        self.canceled: list[tuple[str, str]] = []
        self.fail_stages = fail_stages or set()

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
        del delay_ms
        if stage_name in self.fail_stages:
            raise QueueUnavailable("enqueue")
        job = Job(
            task_type=task_type,
            payload=payload,
            session_id=session_id,
            priority=priority,
            workflow_id=workflow_id,
            stage_name=stage_name,
        )
        self.jobs[job.id] = job
        return job

    def cancel_job(self, job_id: str, *, reason: str = "Canceled by user") -> bool:
        self.canceled.append((job_id, reason))
        return True

    def job_for(self, state: WorkflowState, stage_name: str) -> Job:
        for stage_job in reversed(state.stage_jobs):
            if stage_job.stage_name == stage_name:
                return self.jobs[stage_job.job_id]
        raise AssertionError(f"stage {stage_name} was never scheduled")


def _stage(
    name: str,
    *dependencies: str,
    task_type: TaskType = TaskType.GENERIC_LLM_STREAM,
    **options: object,
) -> StageDefinition:
    return StageDefinition(
        stage_name=name,
        task_type=task_type,
        dependencies=dependencies,
        **options,  # type: ignore[arg-type]
    )


def _orchestrator(
    service: FakeJobService,
    *stages: StageDefinition,
    settings: WorkflowSettings | None = None,
    events: EventBus | None = None,
) -> WorkflowOrchestrator:
    definitions = None
    if stages:
        definitions = {"test": WorkflowDefinition(name="test", stages=stages)}
    return WorkflowOrchestrator(
        job_service=service,  # type: ignore[arg-type]
        settings=settings,
        definitions=definitions,
        events=events,
    )


def _params() -> WorkflowParams:
    return WorkflowParams(task_description="fix the login bug", project_directory="/repo")


def _state(orchestrator: WorkflowOrchestrator, workflow_id: str) -> WorkflowState:
    state = orchestrator.get_workflow_state(workflow_id)
    assert state is not None
    return state


def _complete(
    orchestrator: WorkflowOrchestrator,
    service: FakeJobService,
    workflow_id: str,
    stage_name: str,
    response: object = "done",
) -> WorkflowState:
    job = service.job_for(_state(orchestrator, workflow_id), stage_name)
    orchestrator.handle_stage_completed(job, JobSuccess(response=response))
    return _state(orchestrator, workflow_id)


def _in_flight(state: WorkflowState) -> list[str]:
    return [stage_job.stage_name for stage_job in state.stage_jobs if stage_job.in_flight]


def test_linear_workflow_runs_stages_in_order() -> None:
    service = FakeJobService()
    orchestrator = _orchestrator(service, _stage("A"), _stage("B", "A"), _stage("C", "B"))

    started = orchestrator.start_workflow("test", "s1", _params())

    assert started.status == WorkflowStatus.RUNNING
    assert _in_flight(started) == ["A"]
    assert _in_flight(_complete(orchestrator, service, started.workflow_id, "A")) == ["B"]
    assert _in_flight(_complete(orchestrator, service, started.workflow_id, "B")) == ["C"]
    final = _complete(orchestrator, service, started.workflow_id, "C")

    assert final.status == WorkflowStatus.COMPLETED
    assert final.completed_at is not None
    assert final.error_message is None
    assert final.intermediate_data.raw_outputs == {"A": "done", "B": "done", "C": "done"}
    assert all(job.priority == JobPriority.HIGH for job in service.jobs.values())
    assert {job.workflow_id for job in service.jobs.values()} == {started.workflow_id}


def test_failed_stage_fails_workflow() -> None:
    service = FakeJobService()
    orchestrator = _orchestrator(service, _stage("A"), _stage("B", "A"), _stage("C", "B"))
    workflow_id = orchestrator.start_workflow("test", "s1", _params()).workflow_id
    _complete(orchestrator, service, workflow_id, "A")

    job = service.job_for(_state(orchestrator, workflow_id), "B")
    orchestrator.handle_stage_failed(job, "boom", JobStatus.FAILED)

    state = _state(orchestrator, workflow_id)
    assert state.status == WorkflowStatus.FAILED
    assert state.error_message == "Stage 'B' failed: boom"
    assert "C" not in state.scheduled_stage_names()
    result = orchestrator.get_workflow_result(workflow_id)
    assert result is not None
    assert result.success is False
    assert result.completed_stages == 1
    assert result.failed_stages == 1


def test_failed_stage_waits_for_running_siblings() -> None:
    service = FakeJobService()
    orchestrator = _orchestrator(
        service,
        _stage("X", allow_parallel_execution=True),
        _stage("Y", allow_parallel_execution=True),
        _stage("Z", "X", "Y"),
        settings=WorkflowSettings(max_concurrent_stages=2),
    )
    started = orchestrator.start_workflow("test", "s1", _params())
    assert _in_flight(started) == ["X", "Y"]

    failed_job = service.job_for(started, "X")
    orchestrator.handle_stage_failed(failed_job, "boom", JobStatus.FAILED)

    waiting = _state(orchestrator, started.workflow_id)
    assert waiting.status == WorkflowStatus.RUNNING
    assert service.canceled == []
    assert _in_flight(waiting) == ["Y"]

    final = _complete(orchestrator, service, started.workflow_id, "Y")

    assert final.status == WorkflowStatus.FAILED
    assert final.error_message == "Stage 'X' failed: boom"
    assert final.intermediate_data.raw_outputs == {"Y": "done"}
    assert "Z" not in final.scheduled_stage_names()
    assert service.canceled == []


def test_large_context_exit_is_ignored_after_a_stage_failure() -> None:
    service = FakeJobService()
    orchestrator = _orchestrator(
        service,
        _stage("rank", task_type=TaskType.FILE_RELEVANCE_ASSESSMENT),
        _stage("side", allow_parallel_execution=True),
        settings=WorkflowSettings(large_context_token_threshold=10),
    )
    workflow_id = orchestrator.start_workflow("test", "s1", _params()).workflow_id
    side = service.job_for(_state(orchestrator, workflow_id), "side")
    orchestrator.handle_stage_failed(side, "boom", JobStatus.FAILED)

    state = _complete(
        orchestrator,
        service,
        workflow_id,
        "rank",
        {"relevantFiles": ["a.py"], "tokenCount": 11},
    )

    assert state.status == WorkflowStatus.FAILED
    assert state.error_message == "Stage 'side' failed: boom"

def test_unexpected_status_on_failure_is_treated_as_failed() -> None:
    service = FakeJobService()
    orchestrator = _orchestrator(service, _stage("A"))
    workflow_id = orchestrator.start_workflow("test", "s1", _params()).workflow_id

    job = service.job_for(_state(orchestrator, workflow_id), "A")
    orchestrator.handle_stage_failed(job, "odd", JobStatus.RUNNING)

    state = _state(orchestrator, workflow_id)
    assert state.stage_jobs[0].status == JobStatus.FAILED
    assert state.error_message == "Stage 'A' failed: odd"


def test_workflow_stalls_when_nothing_is_eligible() -> None:
    service = FakeJobService()
    never = _stage("B", "A", is_eligible=lambda data: False)
    orchestrator = _orchestrator(service, _stage("A"), never)
    workflow_id = orchestrator.start_workflow("test", "s1", _params()).workflow_id

    state = _complete(orchestrator, service, workflow_id, "A")

    assert state.status == WorkflowStatus.FAILED
    assert state.error_message == STALLED_MESSAGE


def test_stage_concurrency_limit() -> None:
    service = FakeJobService()
    orchestrator = _orchestrator(
        service,
        _stage("X", task_type=TaskType.TEXT_IMPROVEMENT),
        _stage("Y", task_type=TaskType.TASK_REFINEMENT),
        settings=WorkflowSettings(max_concurrent_stages=1),
    )

    started = orchestrator.start_workflow("test", "s1", _params())

    assert _in_flight(started) == ["X"]
    after_x = _complete(orchestrator, service, started.workflow_id, "X")
    assert _in_flight(after_x) == ["Y"]
    assert _complete(orchestrator, service, started.workflow_id, "Y").status == (
        WorkflowStatus.COMPLETED
    )


def test_same_task_type_runs_serially_unless_parallel_allowed() -> None:
    service = FakeJobService()
    serial = _orchestrator(service, _stage("P"), _stage("Q"))
    assert _in_flight(serial.start_workflow("test", "s1", _params())) == ["P"]

    parallel = _orchestrator(
        FakeJobService(),
        _stage("P", allow_parallel_execution=True),
        _stage("Q", allow_parallel_execution=True),
    )
    assert _in_flight(parallel.start_workflow("test", "s1", _params())) == ["P", "Q"]


def _file_finder_until_relevance(
    orchestrator: WorkflowOrchestrator,
    service: FakeJobService,
) -> str:
    workflow_id = orchestrator.start_workflow(FILE_FINDER_WORKFLOW, "s1", _params()).workflow_id
    _complete(
        orchestrator,
        service,
        workflow_id,
        REGEX_FILE_FILTER_STAGE,
        '{"filteredFiles": ["src/auth.py", "src/login.py", "README.md"]}',
    )
    return workflow_id


def test_large_relevance_output_completes_workflow_early() -> None:
    service = FakeJobService()
    orchestrator = _orchestrator(service)
    workflow_id = _file_finder_until_relevance(orchestrator, service)

    state = _complete(
        orchestrator,
        service,
        workflow_id,
        FILE_RELEVANCE_STAGE,
        {"relevantFiles": ["src/login.py", "src/auth.py"], "tokenCount": 150_000},
    )

    assert state.status == WorkflowStatus.COMPLETED
    assert state.error_message is None
    assert EXTENDED_PATH_FINDER_STAGE not in state.scheduled_stage_names()
    assert state.intermediate_data.extended_verified_paths == ["src/login.py", "src/auth.py"]
    result = orchestrator.get_workflow_result(workflow_id)
    assert result is not None
    assert result.success is True
    assert result.selected_files == ["src/auth.py", "src/login.py"]


def test_file_finder_with_path_correction() -> None:
    service = FakeJobService()
    orchestrator = _orchestrator(service)
    workflow_id = _file_finder_until_relevance(orchestrator, service)
    relevance_job = service.job_for(_state(orchestrator, workflow_id), FILE_RELEVANCE_STAGE)
    assert relevance_job.payload.locally_filtered_files == (  # type: ignore[union-attr]
        "src/auth.py",
        "src/login.py",
        "README.md",
    )

    _complete(
        orchestrator,
        service,
        workflow_id,
        FILE_RELEVANCE_STAGE,
        {"relevantFiles": ["src/auth.py"], "tokenCount": 900},
    )
    state = _complete(
        orchestrator,
        service,
        workflow_id,
        EXTENDED_PATH_FINDER_STAGE,
        {"verifiedPaths": ["src/auth.py", "src/session.py"], "unverifiedPaths": ["src/tokn.py"]},
    )
    assert _in_flight(state) == [PATH_CORRECTION_STAGE]
    correction_job = service.job_for(state, PATH_CORRECTION_STAGE)
    assert correction_job.payload.paths_to_correct == ("src/tokn.py",)  # type: ignore[union-attr]

    final = _complete(
        orchestrator,
        service,
        workflow_id,
        PATH_CORRECTION_STAGE,
        {"correctedPaths": ["src/token.py", "src/auth.py"]},
    )

    assert final.status == WorkflowStatus.COMPLETED
    result = orchestrator.get_workflow_result(workflow_id)
    assert result is not None
    assert result.selected_files == ["src/auth.py", "src/session.py", "src/token.py"]
    assert result.completed_stages == 4
    assert result.total_stages == 4
    assert result.total_duration_ms is not None


def test_path_correction_is_skipped_without_unverified_paths() -> None:
    service = FakeJobService()
    orchestrator = _orchestrator(service)
    workflow_id = _file_finder_until_relevance(orchestrator, service)
    _complete(
        orchestrator,
        service,
        workflow_id,
        FILE_RELEVANCE_STAGE,
        {"relevantFiles": ["src/auth.py"], "tokenCount": 900},
    )

    state = _complete(
        orchestrator,
        service,
        workflow_id,
        EXTENDED_PATH_FINDER_STAGE,
        {"verifiedPaths": ["src/auth.py"]},
    )

    assert state.status == WorkflowStatus.COMPLETED
    assert PATH_CORRECTION_STAGE not in state.scheduled_stage_names()


def test_unusable_stage_output_fails_workflow() -> None:
    service = FakeJobService()
    orchestrator = _orchestrator(service)
    workflow_id = orchestrator.start_workflow(FILE_FINDER_WORKFLOW, "s1", _params()).workflow_id

    state = _complete(orchestrator, service, workflow_id, REGEX_FILE_FILTER_STAGE, "not json")

    assert state.status == WorkflowStatus.FAILED
    assert state.error_message is not None
    assert state.error_message.startswith("Stage 'regex_file_filter' failed: [regex_file_filter]")
    assert state.intermediate_data == IntermediateData()


def test_cancel_workflow_cancels_in_flight_stages() -> None:
    service = FakeJobService()
    orchestrator = _orchestrator(
        service,
        _stage("P", allow_parallel_execution=True),
        _stage("Q", allow_parallel_execution=True),
    )
    started = orchestrator.start_workflow("test", "s1", _params())

    assert orchestrator.cancel_workflow(started.workflow_id) is True

    state = _state(orchestrator, started.workflow_id)
    assert state.status == WorkflowStatus.FAILED
    assert state.cancel_requested is True
    assert state.error_message == CANCELED_BY_USER_MESSAGE
    assert [reason for _, reason in service.canceled] == [CANCELED_BY_USER_MESSAGE] * 2
    assert all(stage_job.status == JobStatus.CANCELED for stage_job in state.stage_jobs)
    assert orchestrator.cancel_workflow(started.workflow_id) is False
    with pytest.raises(WorkflowNotFound):
        orchestrator.cancel_workflow("missing")


def test_outcome_after_workflow_finished_is_ignored() -> None:
    service = FakeJobService()
    orchestrator = _orchestrator(service, _stage("A"), _stage("B", "A"))
    workflow_id = orchestrator.start_workflow("test", "s1", _params()).workflow_id
    job = service.job_for(_state(orchestrator, workflow_id), "A")
    orchestrator.cancel_workflow(workflow_id)

    orchestrator.handle_stage_completed(job, JobSuccess(response="late"))
    orchestrator.handle_stage_failed(job, "late failure", JobStatus.FAILED)

    state = _state(orchestrator, workflow_id)
    assert state.status == WorkflowStatus.FAILED
    assert state.error_message == CANCELED_BY_USER_MESSAGE
    assert state.intermediate_data.raw_outputs == {}
    assert state.scheduled_stage_names() == {"A"}


def test_unknown_workflow_and_stage_job_are_logged(caplog: pytest.LogCaptureFixture) -> None:
    service = FakeJobService()
    orchestrator = _orchestrator(service, _stage("A"))
    workflow_id = orchestrator.start_workflow("test", "s1", _params()).workflow_id
    stray = Job(
        task_type=TaskType.GENERIC_LLM_STREAM,
        payload=GenericLlmStreamPayload(prompt_text="x"),
        session_id="s1",
        workflow_id="ghost",
        stage_name="A",
    )
    foreign = Job(
        task_type=TaskType.GENERIC_LLM_STREAM,
        payload=GenericLlmStreamPayload(prompt_text="x"),
        session_id="s1",
        workflow_id=workflow_id,
        stage_name="A",
    )

    with caplog.at_level(logging.WARNING, logger="jobflow.workflows.orchestrator"):
        orchestrator.handle_stage_completed(stray, JobSuccess(response="x"))
        orchestrator.handle_stage_failed(foreign, "x", JobStatus.FAILED)

    assert "Workflow not found: ghost" in caplog.text
    assert f"Job not found: {foreign.id}" in caplog.text
    assert _state(orchestrator, workflow_id).status == WorkflowStatus.RUNNING
    assert orchestrator.get_workflow_state("ghost") is None
    assert orchestrator.get_workflow_result("ghost") is None


def test_stage_creation_failure_fails_workflow() -> None:
    service = FakeJobService(fail_stages={"A"})
    orchestrator = _orchestrator(service, _stage("A"), _stage("B", "A"))

    state = orchestrator.start_workflow("test", "s1", _params())

    assert state.status == WorkflowStatus.FAILED
    assert state.error_message == "Stage 'A' failed: Job queue is shut down; cannot enqueue."
    assert state.stage_jobs[0].job_id.startswith("unscheduled-")
    assert service.jobs == {}


def test_unknown_definition_is_rejected() -> None:
    orchestrator = _orchestrator(FakeJobService())

    with pytest.raises(WorkflowNotFound, match="nope"):
        orchestrator.start_workflow("nope", "s1", _params())


def test_cleanup_removes_only_old_finished_workflows() -> None:
    service = FakeJobService()
    orchestrator = _orchestrator(service, _stage("A"))
    finished = orchestrator.start_workflow("test", "s1", _params()).workflow_id
    running = orchestrator.start_workflow("test", "s1", _params()).workflow_id
    _complete(orchestrator, service, finished, "A")

    assert orchestrator.cleanup_completed_workflows() == 0
    assert orchestrator.cleanup_completed_workflows(max_age_hours=0) == 1

    assert orchestrator.get_workflow_state(finished) is None
    assert orchestrator.get_workflow_state(running) is not None
    assert [state.workflow_id for state in orchestrator.list_workflows()] == [running]


def test_list_workflows_filters_by_status() -> None:
    service = FakeJobService()
    orchestrator = _orchestrator(service, _stage("A"))
    done = orchestrator.start_workflow("test", "s1", _params()).workflow_id
    orchestrator.start_workflow("test", "s2", _params())
    _complete(orchestrator, service, done, "A")

    completed = orchestrator.list_workflows(WorkflowStatus.COMPLETED)

    assert [state.workflow_id for state in completed] == [done]
    assert len(orchestrator.list_workflows()) == 2


def test_returned_state_is_a_snapshot() -> None:
    service = FakeJobService()
    orchestrator = _orchestrator(service, _stage("A"))
    workflow_id = orchestrator.start_workflow("test", "s1", _params()).workflow_id

    snapshot = _state(orchestrator, workflow_id)
    snapshot.stage_jobs.clear()
    snapshot.intermediate_data.raw_outputs["A"] = "tampered"

    fresh = _state(orchestrator, workflow_id)
    assert len(fresh.stage_jobs) == 1
    assert fresh.intermediate_data.raw_outputs == {}


def test_progress_events_and_job_status_mirroring() -> None:
    events = EventBus()
    received: list[WorkflowStatusEvent] = []
    events.subscribe(
        lambda event: received.append(event) if isinstance(event, WorkflowStatusEvent) else None,
    )
    service = FakeJobService()
    orchestrator = _orchestrator(service, _stage("A"), _stage("B", "A"), events=events)
    workflow_id = orchestrator.start_workflow("test", "s1", _params()).workflow_id
    job = service.job_for(_state(orchestrator, workflow_id), "A")

    events.emit(JobStatusEvent(job_id=job.id, status="running", workflow_id=workflow_id))
    assert _state(orchestrator, workflow_id).stage_jobs[0].status == JobStatus.RUNNING

    _complete(orchestrator, service, workflow_id, "A")
    _complete(orchestrator, service, workflow_id, "B")

    assert [event.finalized for event in received] == [False, False, False, True]
    assert received[-1].status == "completed"
    assert received[-1].progress_percentage == 100.0
    assert received[1].progress_percentage == 50.0


def test_superseded_stage_jobs_are_canceled_on_early_completion() -> None:
    service = FakeJobService()
    orchestrator = _orchestrator(
        service,
        _stage("rank", task_type=TaskType.FILE_RELEVANCE_ASSESSMENT),
        _stage("side", allow_parallel_execution=True),
        settings=WorkflowSettings(large_context_token_threshold=10),
    )
    workflow_id = orchestrator.start_workflow("test", "s1", _params()).workflow_id

    state = _complete(
        orchestrator,
        service,
        workflow_id,
        "rank",
        {"relevantFiles": ["a.py"], "tokenCount": 11},
    )

    assert state.status == WorkflowStatus.COMPLETED
    side = service.job_for(state, "side")
    assert service.canceled == [(side.id, "Workflow finished before this stage ran")]
    assert _in_flight(state) == []


def test_completed_at_never_precedes_created_at() -> None:
    service = FakeJobService()
    orchestrator = _orchestrator(service, _stage("A"))
    workflow_id = orchestrator.start_workflow("test", "s1", _params()).workflow_id

    state = _complete(orchestrator, service, workflow_id, "A")

    assert state.completed_at is not None
    assert state.completed_at - state.created_at >= timedelta(0)
    assert state.updated_at >= state.created_at


def test_pause_holds_new_stages_until_resume() -> None:
    events = EventBus()
    messages: list[str] = []
    events.subscribe(
        lambda event: messages.append(event.message)
        if isinstance(event, WorkflowStatusEvent)
        else None,
    )
    service = FakeJobService()
    orchestrator = _orchestrator(service, _stage("A"), _stage("B", "A"), events=events)
    workflow_id = orchestrator.start_workflow("test", "s1", _params()).workflow_id

    paused = orchestrator.pause_workflow(workflow_id)
    assert paused.status == WorkflowStatus.PAUSED
    assert not paused.status.is_terminal

    state = _complete(orchestrator, service, workflow_id, "A")
    assert state.status == WorkflowStatus.PAUSED
    assert state.intermediate_data.raw_outputs == {"A": "done"}
    assert "B" not in state.scheduled_stage_names()
    assert orchestrator.cleanup_completed_workflows(max_age_hours=0) == 0

    resumed = orchestrator.resume_workflow(workflow_id)
    assert resumed.status == WorkflowStatus.RUNNING
    assert _in_flight(resumed) == ["B"]
    assert _complete(orchestrator, service, workflow_id, "B").status == WorkflowStatus.COMPLETED
    assert "Workflow paused" in messages
    assert "Workflow resumed" in messages


def test_paused_workflow_with_failed_stage_fails_on_resume() -> None:
    service = FakeJobService()
    orchestrator = _orchestrator(service, _stage("A"), _stage("B", "A"))
    workflow_id = orchestrator.start_workflow("test", "s1", _params()).workflow_id
    orchestrator.pause_workflow(workflow_id)

    job = service.job_for(_state(orchestrator, workflow_id), "A")
    orchestrator.handle_stage_failed(job, "boom", JobStatus.FAILED)
    assert _state(orchestrator, workflow_id).status == WorkflowStatus.PAUSED

    resumed = orchestrator.resume_workflow(workflow_id)

    assert resumed.status == WorkflowStatus.FAILED
    assert resumed.error_message == "Stage 'A' failed: boom"


def test_pause_and_resume_reject_wrong_status() -> None:
    service = FakeJobService()
    orchestrator = _orchestrator(service, _stage("A"))
    workflow_id = orchestrator.start_workflow("test", "s1", _params()).workflow_id

    with pytest.raises(WorkflowStateError, match="cannot resume while status is running"):
        orchestrator.resume_workflow(workflow_id)
    orchestrator.pause_workflow(workflow_id)
    with pytest.raises(WorkflowStateError, match="cannot pause while status is paused"):
        orchestrator.pause_workflow(workflow_id)

    assert orchestrator.cancel_workflow(workflow_id) is True
    with pytest.raises(WorkflowStateError, match="cannot pause while status is failed"):
        orchestrator.pause_workflow(workflow_id)
    with pytest.raises(WorkflowNotFound):
        orchestrator.pause_workflow("missing")


def test_retry_failed_stage_reruns_it_and_later_stages() -> None:
    service = FakeJobService()
    orchestrator = _orchestrator(service)
    workflow_id = _file_finder_until_relevance(orchestrator, service)
    _complete(
        orchestrator,
        service,
        workflow_id,
        FILE_RELEVANCE_STAGE,
        {"relevantFiles": ["src/auth.py"], "tokenCount": 900},
    )
    failed_job = service.job_for(_state(orchestrator, workflow_id), EXTENDED_PATH_FINDER_STAGE)
    orchestrator.handle_stage_failed(failed_job, "provider down", JobStatus.FAILED)
    assert _state(orchestrator, workflow_id).status == WorkflowStatus.FAILED

    retried = orchestrator.retry_workflow_stage(workflow_id, EXTENDED_PATH_FINDER_STAGE)

    assert retried.status == WorkflowStatus.RUNNING
    assert retried.completed_at is None
    assert retried.error_message is None
    assert _in_flight(retried) == [EXTENDED_PATH_FINDER_STAGE]
    new_job = service.job_for(retried, EXTENDED_PATH_FINDER_STAGE)
    assert new_job.id != failed_job.id
    assert retried.intermediate_data.ai_filtered_files == ["src/auth.py"]

    final = _complete(
        orchestrator,
        service,
        workflow_id,
        EXTENDED_PATH_FINDER_STAGE,
        {"verifiedPaths": ["src/auth.py"]},
    )
    assert final.status == WorkflowStatus.COMPLETED
    assert final.completed_at is not None
    result = orchestrator.get_workflow_result(workflow_id)
    assert result is not None
    assert result.failed_stages == 0
    assert result.selected_files == ["src/auth.py"]


def test_retry_clears_outputs_of_dependent_stages() -> None:
    service = FakeJobService()
    orchestrator = _orchestrator(service)
    workflow_id = _file_finder_until_relevance(orchestrator, service)
    _complete(
        orchestrator,
        service,
        workflow_id,
        FILE_RELEVANCE_STAGE,
        {"relevantFiles": ["src/auth.py"], "tokenCount": 900},
    )
    job = service.job_for(_state(orchestrator, workflow_id), EXTENDED_PATH_FINDER_STAGE)
    orchestrator.handle_stage_failed(job, "provider down", JobStatus.FAILED)

    retried = orchestrator.retry_workflow_stage(workflow_id, FILE_RELEVANCE_STAGE)

    data = retried.intermediate_data
    assert data.locally_filtered_files == ["src/auth.py", "src/login.py", "README.md"]
    assert data.ai_filtered_files is None
    assert data.ai_filtered_files_token_count is None
    assert data.extended_verified_paths is None
    assert [stage_job.stage_name for stage_job in retried.stage_jobs] == [
        REGEX_FILE_FILTER_STAGE,
        FILE_RELEVANCE_STAGE,
    ]
    assert _in_flight(retried) == [FILE_RELEVANCE_STAGE]
    assert retried.status == WorkflowStatus.RUNNING


def test_retry_is_rejected_for_unfinished_or_busy_stages() -> None:
    service = FakeJobService()
    orchestrator = _orchestrator(service, _stage("A"), _stage("B", "A"))
    workflow_id = orchestrator.start_workflow("test", "s1", _params()).workflow_id

    with pytest.raises(WorkflowStateError, match="has not finished"):
        orchestrator.retry_workflow_stage(workflow_id, "A")
    with pytest.raises(WorkflowStateError, match="has not finished"):
        orchestrator.retry_workflow_stage(workflow_id, "B")
    with pytest.raises(WorkflowStateError, match="unknown stage 'nope'"):
        orchestrator.retry_workflow_stage(workflow_id, "nope")
    _complete(orchestrator, service, workflow_id, "A")
    with pytest.raises(WorkflowStateError, match="while B in flight"):
        orchestrator.retry_workflow_stage(workflow_id, "A")

    orchestrator.cancel_workflow(workflow_id)
    with pytest.raises(WorkflowStateError, match="was canceled"):
        orchestrator.retry_workflow_stage(workflow_id, "A")
    with pytest.raises(WorkflowNotFound):
        orchestrator.retry_workflow_stage("missing", "A")

def test_web_search_workflow_turns_prompts_into_searches() -> None:
    service = FakeJobService()
    orchestrator = _orchestrator(service)
    started = orchestrator.start_workflow(WEB_SEARCH_WORKFLOW, "s1", _params())
    prompts_job = service.job_for(started, WEB_SEARCH_PROMPTS_STAGE)
    assert prompts_job.payload.task_description == "fix the login bug"  # type: ignore[union-attr]

    state = _complete(
        orchestrator,
        service,
        started.workflow_id,
        WEB_SEARCH_PROMPTS_STAGE,
        "<research_task>login bug causes</research_task>"
        "<research_task>session cookie flags</research_task>",
    )
    search_job = service.job_for(state, WEB_SEARCH_EXECUTION_STAGE)
    assert search_job.payload.prompts == (  # type: ignore[union-attr]
        "login bug causes",
        "session cookie flags",
    )

    final = _complete(
        orchestrator,
        service,
        started.workflow_id,
        WEB_SEARCH_EXECUTION_STAGE,
        {"searchResults": [{"title": "Cookie flags", "url": "https://example.org/c"}]},
    )

    assert final.status == WorkflowStatus.COMPLETED
    assert final.intermediate_data.web_search_results == [
        {"title": "Cookie flags", "url": "https://example.org/c"},
    ]


def test_web_search_without_prompts_fails() -> None:
    service = FakeJobService()
    orchestrator = _orchestrator(service)
    workflow_id = orchestrator.start_workflow(WEB_SEARCH_WORKFLOW, "s1", _params()).workflow_id

    state = _complete(
        orchestrator,
        service,
        workflow_id,
        WEB_SEARCH_PROMPTS_STAGE,
        "<research_tasks></research_tasks>",
    )

    assert state.status == WorkflowStatus.FAILED
    assert state.error_message is not None
    assert "No research prompts found" in state.error_message
    assert WEB_SEARCH_EXECUTION_STAGE not in state.scheduled_stage_names()
