"""Durable job store backed by SQLModel + SQLite."""

from __future__ import annotations

import json
from collections import Counter
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from jobflow.jobs.errors import JobNotFound
from jobflow.jobs.models import (
    TERMINAL_JOB_STATUSES,
    Job,
    JobDetails,
    JobEventView,
    JobPriority,
    JobRecordView,
    JobStatus,
    TaskType,
    TokenUsage,
    payload_to_dict,
)
from jobflow.storage.alembic_runner import upgrade_head
from jobflow.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from jobflow.storage.sqlmodel_models import BackgroundJob, BackgroundJobEvent

_ACTIVE_STATUS_VALUES = (JobStatus.QUEUED.value, JobStatus.RUNNING.value)


class JobStore(Protocol):
    """Persistence operations the dispatcher and services depend on."""

    def create_job(self, job: Job) -> JobRecordView: ...

    def update_job_status(
        self,
        job_id: str,
        status: JobStatus,
        message: str | None = None,
        *,
        process_after: datetime | None = None,
    ) -> bool: ...

    def mark_job_running(self, job_id: str) -> bool: ...

    def mark_job_completed(
        self,
        job_id: str,
        *,
        response: str,
        metadata: dict[str, Any] | None = None,
        usage: TokenUsage | None = None,
    ) -> bool: ...

    def mark_job_failed(
        self,
        job_id: str,
        *,
        error: str,
        metadata: dict[str, Any] | None = None,
        usage: TokenUsage | None = None,
    ) -> bool: ...

    def mark_job_canceled(self, job_id: str, *, reason: str) -> bool: ...

    def get_job_by_id(self, job_id: str) -> JobRecordView | None: ...


class JobRepository:
    """Job persistence facade; every status change also writes an audit event."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def create_job(self, job: Job) -> JobRecordView:
        """Persist a new queued job."""

        now = utc_now()
        with Session(self.engine) as session:
            row = BackgroundJob(
                job_id=job.id,
                session_id=job.session_id,
                task_type=job.task_type.value,
                priority=int(job.priority),
                status=JobStatus.QUEUED.value,
                payload_json=json.dumps(payload_to_dict(job.payload), ensure_ascii=False),
                workflow_id=job.workflow_id,
                stage_name=job.stage_name,
                process_after=(
                    to_db_datetime(job.process_after) if job.process_after is not None else None
                ),
                created_at=to_db_datetime(job.created_at),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            self._add_event(
                session=session,
                job_id=job.id,
                event_type="created",
                status_from=None,
                status_to=JobStatus.QUEUED,
                details={
                    "task_type": job.task_type.value,
                    "priority": job.priority.name.lower(),
                    "workflow_id": job.workflow_id,
                    "stage_name": job.stage_name,
                },
            )
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def update_job_status(
        self,
        job_id: str,
        status: JobStatus,
        message: str | None = None,
        *,
        process_after: datetime | None = None,
    ) -> bool:
        """Move a non-terminal job to another status; terminal rows are never changed."""

        now = utc_now()
        values: dict[str, Any] = {
            "status": status.value,
            "status_message": message,
            "updated_at": to_db_datetime(now),
        }
        if status == JobStatus.QUEUED:
            values["started_at"] = None
            values["process_after"] = (
                to_db_datetime(process_after) if process_after is not None else None
            )
        if status == JobStatus.RUNNING:
            values["started_at"] = to_db_datetime(now)
        if status.is_terminal:
            values["finished_at"] = to_db_datetime(now)
        return self._transition(
            job_id=job_id,
            allowed_from=(JobStatus.QUEUED, JobStatus.RUNNING),
            status_to=status,
            values=values,
            event_type="status_changed",
            details={"message": message} if message else {},
        )

    def mark_job_running(self, job_id: str) -> bool:
        now = utc_now()
        return self._transition(
            job_id=job_id,
            allowed_from=(JobStatus.QUEUED,),
            status_to=JobStatus.RUNNING,
            values={
                "status": JobStatus.RUNNING.value,
                "status_message": None,
                "started_at": to_db_datetime(now),
                "updated_at": to_db_datetime(now),
            },
            event_type="started",
            details={},
        )

    def mark_job_completed(
        self,
        job_id: str,
        *,
        response: str,
        metadata: dict[str, Any] | None = None,
        usage: TokenUsage | None = None,
    ) -> bool:
        now = utc_now()
        return self._transition(
            job_id=job_id,
            allowed_from=(JobStatus.RUNNING,),
            status_to=JobStatus.COMPLETED,
            values={
                "status": JobStatus.COMPLETED.value,
                "response": response,
                "metadata_json": _dump_json(metadata),
                "finished_at": to_db_datetime(now),
                "updated_at": to_db_datetime(now),
                **_usage_values(usage),
            },
            event_type="completed",
            details={"response_chars": len(response)},
        )

    def mark_job_failed(
        self,
        job_id: str,
        *,
        error: str,
        metadata: dict[str, Any] | None = None,
        usage: TokenUsage | None = None,
    ) -> bool:
        now = utc_now()
        return self._transition(
            job_id=job_id,
            allowed_from=(JobStatus.QUEUED, JobStatus.RUNNING),
            status_to=JobStatus.FAILED,
            values={
                "status": JobStatus.FAILED.value,
                "error_message": error,
                "metadata_json": _dump_json(metadata),
                "finished_at": to_db_datetime(now),
                "updated_at": to_db_datetime(now),
                **_usage_values(usage),
            },
            event_type="failed",
            details={"error": error},
        )

    def mark_job_canceled(self, job_id: str, *, reason: str) -> bool:
        now = utc_now()
        return self._transition(
            job_id=job_id,
            allowed_from=(JobStatus.QUEUED, JobStatus.RUNNING),
            status_to=JobStatus.CANCELED,
            values={
                "status": JobStatus.CANCELED.value,
                "status_message": reason,
                "finished_at": to_db_datetime(now),
                "updated_at": to_db_datetime(now),
            },
            event_type="canceled",
            details={"reason": reason},
        )

    def get_job_by_id(self, job_id: str) -> JobRecordView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(BackgroundJob).where(BackgroundJob.job_id == job_id),
            ).one_or_none()
        return _to_job_view(row) if row is not None else None

    def require_job(self, job_id: str) -> JobRecordView:
        job = self.get_job_by_id(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        session_id: str | None = None,
        workflow_id: str | None = None,
        limit: int = 50,
    ) -> list[JobRecordView]:
        """List recent jobs, newest first."""

        with Session(self.engine) as session:
            statement = select(BackgroundJob)
            if status is not None:
                statement = statement.where(BackgroundJob.status == status.value)
            if session_id is not None:
                statement = statement.where(BackgroundJob.session_id == session_id)
            if workflow_id is not None:
                statement = statement.where(BackgroundJob.workflow_id == workflow_id)
            rows = session.exec(
                statement.order_by(col(BackgroundJob.created_at).desc()).limit(limit),
            ).all()
        return [_to_job_view(row) for row in rows]

    def list_unfinished_jobs(self) -> list[JobRecordView]:
        """Queued and running jobs, oldest first."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(BackgroundJob)
                .where(col(BackgroundJob.status).in_(_ACTIVE_STATUS_VALUES))
                .order_by(col(BackgroundJob.created_at).asc()),
            ).all()
        return [_to_job_view(row) for row in rows]

    def job_stats(self) -> dict[JobStatus, int]:
        with Session(self.engine) as session:
            statuses = session.exec(select(BackgroundJob.status)).all()
        counts = Counter(JobStatus(value) for value in statuses)
        return {status: counts.get(status, 0) for status in JobStatus}

    def get_job_details(self, job_id: str) -> JobDetails | None:
        """Return job with its event stream."""

        with Session(self.engine) as session:
            row = session.exec(
                select(BackgroundJob).where(BackgroundJob.job_id == job_id),
            ).one_or_none()
            if row is None:
                return None
            event_rows = session.exec(
                select(BackgroundJobEvent)
                .where(BackgroundJobEvent.job_id == job_id)
                .order_by(
                    col(BackgroundJobEvent.created_at).asc(),
                    col(BackgroundJobEvent.id).asc(),
                ),
            ).all()

        events = [
            JobEventView(
                event_id=event.id or 0,
                job_id=event.job_id,
                event_type=event.event_type,
                status_from=JobStatus(event.status_from) if event.status_from else None,
                status_to=JobStatus(event.status_to) if event.status_to else None,
                created_at=to_utc_aware_datetime(event.created_at),
                details=_load_json(event.details_json),
            )
            for event in event_rows
        ]
        return JobDetails(job=_to_job_view(row), events=events)

    def prune_finished_jobs(self, *, older_than: datetime, dry_run: bool = False) -> int:
        """Delete terminal jobs finished before ``older_than``; return the count."""

        terminal_values = tuple(status.value for status in TERMINAL_JOB_STATUSES)
        with Session(self.engine) as session:
            job_ids = session.exec(
                select(BackgroundJob.job_id).where(
                    col(BackgroundJob.status).in_(terminal_values),
                    col(BackgroundJob.finished_at) < to_db_datetime(older_than),
                ),
            ).all()
            if dry_run or not job_ids:
                return len(job_ids)
            session.exec(
                sa_delete(BackgroundJobEvent).where(col(BackgroundJobEvent.job_id).in_(job_ids)),
            )
            session.exec(sa_delete(BackgroundJob).where(col(BackgroundJob.job_id).in_(job_ids)))
            session.commit()
        return len(job_ids)

    def _transition(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        allowed_from: tuple[JobStatus, ...],
        status_to: JobStatus,
        values: dict[str, Any],
        event_type: str,
        details: dict[str, object],
    ) -> bool:
        with Session(self.engine) as session:
            row = session.exec(
                select(BackgroundJob).where(BackgroundJob.job_id == job_id),
            ).one_or_none()
            if row is None:
                raise JobNotFound(job_id)
            status_from = JobStatus(row.status)
            if status_from not in allowed_from:
                return False
            result = session.exec(
                sa_update(BackgroundJob)
                .where(
                    col(BackgroundJob.job_id) == job_id,
                    col(BackgroundJob.status) == status_from.value,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type=event_type,
                status_from=status_from,
                status_to=status_to,
                details=details,
            )
            session.commit()
            return True

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        event_type: str,
        status_from: JobStatus | None,
        status_to: JobStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            BackgroundJobEvent(
                job_id=job_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=_dump_json(details),
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _dump_json(value: dict[str, Any] | None) -> str | None:
    if not value:
        return None
    return json.dumps(value, ensure_ascii=False, sort_keys=True, default=str)


def _load_json(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    parsed = json.loads(raw)
    return parsed if isinstance(parsed, dict) else {}


def _usage_values(usage: TokenUsage | None) -> dict[str, Any]:
    if usage is None:
        return {}
    return {
        "prompt_tokens": usage.prompt_tokens,
        "completion_tokens": usage.completion_tokens,
        "total_tokens": usage.total_tokens,
        "cost_usd": usage.cost_usd,
    }


def _to_job_view(row: BackgroundJob) -> JobRecordView:
    has_usage = any(
        value is not None
        for value in (row.prompt_tokens, row.completion_tokens, row.total_tokens, row.cost_usd)
    )
    return JobRecordView(
        job_id=row.job_id,
        session_id=row.session_id,
        task_type=TaskType(row.task_type),
        priority=JobPriority(row.priority),
        status=JobStatus(row.status),
        payload=_load_json(row.payload_json),
        workflow_id=row.workflow_id,
        stage_name=row.stage_name,
        process_after=(
            to_utc_aware_datetime(row.process_after) if row.process_after is not None else None
        ),
        status_message=row.status_message,
        response=row.response,
        error_message=row.error_message,
        metadata=_load_json(row.metadata_json),
        usage=(
            TokenUsage(
                prompt_tokens=row.prompt_tokens,
                completion_tokens=row.completion_tokens,
                total_tokens=row.total_tokens,
                cost_usd=row.cost_usd,
            )
            if has_usage
            else None
        ),
        started_at=to_utc_aware_datetime(row.started_at) if row.started_at is not None else None,
        finished_at=(
            to_utc_aware_datetime(row.finished_at) if row.finished_at is not None else None
        ),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
