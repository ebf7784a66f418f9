"""Controllers for operator CLI commands over the durable job store."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from jobflow.config import Settings
from jobflow.jobs.models import JobStatus
from jobflow.jobs.repository import JobRepository
from jobflow.storage.common import utc_now
from jobflow.workflows.definitions import default_definitions


@dataclass(slots=True)
class JobsListCommand:
    """CLI input for job listing."""

    db_path: Path | None
    status: str | None
    session_id: str | None
    workflow_id: str | None
    limit: int


@dataclass(slots=True)
class JobInspectCommand:
    db_path: Path | None
    job_id: str
    show_payload: bool = False


@dataclass(slots=True)
class JobCancelCommand:
    db_path: Path | None
    job_id: str
    reason: str


@dataclass(slots=True)
class JobsStatsCommand:
    db_path: Path | None


@dataclass(slots=True)
class JobsPruneCommand:
    """CLI input for deleting old finished jobs."""

    db_path: Path | None
    older_than_days: int
    dry_run: bool


class JobsCliController:
    """Coordinates inspection and maintenance commands; returns printable lines."""

    def list_jobs(self, command: JobsListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with _repository(settings) as repository:
            jobs = repository.list_jobs(
                status=status_filter,
                session_id=command.session_id,
                workflow_id=command.workflow_id,
                limit=command.limit,
            )

        lines = [f"Jobs: {len(jobs)}"]
        for job in jobs:
            stage = f" workflow={job.workflow_id} stage={job.stage_name}" if job.workflow_id else ""
            lines.append(
                f"  {job.job_id} type={job.task_type.value} status={job.status.value} "
                f"priority={job.priority.name.lower()} session={job.session_id}"
                f"{stage} created_at={job.created_at.isoformat()}",
            )
        return lines

    def inspect_job(self, command: JobInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            details = repository.get_job_details(command.job_id)
        if details is None:
            return [f"Job not found: {command.job_id}"]

        job = details.job
        usage = job.usage
        lines = [
            f"Job: {job.job_id}",
            f"Type: {job.task_type.value}",
            f"Status: {job.status.value}",
            f"Priority: {job.priority.name.lower()}",
            f"Session: {job.session_id}",
            f"Workflow: {job.workflow_id or '-'} stage={job.stage_name or '-'}",
            f"Process after: {job.process_after.isoformat() if job.process_after else '-'}",
            f"Message: {job.status_message or '-'}",
            f"Error: {job.error_message or '-'}",
            (
                "Tokens: "
                f"prompt={_or_dash(usage.prompt_tokens if usage else None)} "
                f"completion={_or_dash(usage.completion_tokens if usage else None)} "
                f"total={_or_dash(usage.total_tokens if usage else None)} "
                f"cost_usd={_or_dash(usage.cost_usd if usage else None)}"
            ),
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        if command.show_payload:
            lines.append("Payload:")
            lines.append(json.dumps(job.payload, indent=2, ensure_ascii=False))
        return lines

    def cancel_job(self, command: JobCancelCommand) -> list[str]:
        """Mark a stored job canceled; a running process skips it when dequeued."""

        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            job = repository.require_job(command.job_id)
            if job.status.is_terminal:
                return [f"Job already finished: {job.job_id} status={job.status.value}"]
            repository.mark_job_canceled(job.job_id, reason=command.reason)
        return [f"Job canceled: {command.job_id}"]

    def stats(self, command: JobsStatsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            counts = repository.job_stats()
        total = sum(counts.values())
        lines = [f"Jobs total: {total}"]
        lines.extend(f"  {status.value}: {counts[status]}" for status in JobStatus)
        return lines

    def prune(self, command: JobsPruneCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        cutoff = utc_now() - timedelta(days=command.older_than_days)
        with _repository(settings) as repository:
            count = repository.prune_finished_jobs(older_than=cutoff, dry_run=command.dry_run)
        if command.dry_run:
            return [f"Dry run: {count} finished jobs older than {command.older_than_days}d"]
        return [f"Pruned finished jobs: {count}"]

    def list_workflows(self) -> list[str]:
        definitions = default_definitions()
        lines = [f"Workflows: {len(definitions)}"]
        for definition in definitions.values():
            lines.append(f"  {definition.name}: {definition.description}")
            for stage in definition.stages:
                depends = ", ".join(stage.dependencies) or "-"
                flags = "" if stage.required else " (optional)"
                lines.append(
                    f"    {stage.stage_name} type={stage.task_type.value} "
                    f"depends_on={depends}{flags}",
                )
        return lines


@contextmanager
def _repository(settings: Settings) -> Iterator[JobRepository]:
    repository = JobRepository(settings.db_path, busy_timeout_ms=settings.sqlite_busy_timeout_ms)
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


def _parse_status(value: str | None) -> JobStatus | None:
    if value is None:
        return None
    try:
        return JobStatus(value.strip().lower())
    except ValueError as error:
        raise ValueError(f"Unsupported job status: {value!r}") from error


def _or_dash(value: object) -> str:
    return "-" if value is None else str(value)
