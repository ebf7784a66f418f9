"""Runtime configuration for the job queue, dispatcher and workflow orchestrator."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_CONCURRENT_JOBS = 20


@dataclass(slots=True)
class QueueSettings:
    """In-memory queue settings."""

    max_concurrent_jobs: int = DEFAULT_CONCURRENT_JOBS
    attention_after_seconds: int = 1_800
    attention_check_interval_seconds: int = 300


@dataclass(slots=True)
class DispatcherSettings:
    """Worker pool and retry policy settings."""

    worker_count: int = 0
    max_retries: int = 3
    retry_base_seconds: float = 2.0
    retry_max_seconds: float = 60.0
    poll_interval_seconds: float = 0.5
    shutdown_timeout_seconds: float = 30.0

    def effective_worker_count(self, max_concurrent_jobs: int) -> int:
        """Worker threads to start; zero means one per concurrency permit."""

        return self.worker_count or max_concurrent_jobs


@dataclass(slots=True)
class WorkflowSettings:
    """Workflow orchestrator settings."""

    max_concurrent_stages: int = 3
    large_context_token_threshold: int = 100_000
    retention_hours: int = 24


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".jobflow.db")
    sqlite_busy_timeout_ms: int = 5_000
    recover_on_start: bool = True
    queue: QueueSettings = field(default_factory=QueueSettings)
    dispatcher: DispatcherSettings = field(default_factory=DispatcherSettings)
    workflow: WorkflowSettings = field(default_factory=WorkflowSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("JOBFLOW_DB_PATH", ".jobflow.db")),
            sqlite_busy_timeout_ms=int(os.getenv("JOBFLOW_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            recover_on_start=_env_bool("JOBFLOW_RECOVER_ON_START", default=True),
            queue=QueueSettings(
                max_concurrent_jobs=int(
                    os.getenv("JOBFLOW_MAX_CONCURRENT_JOBS", str(DEFAULT_CONCURRENT_JOBS)),
                ),
                attention_after_seconds=int(
                    os.getenv("JOBFLOW_QUEUE_ATTENTION_AFTER_SECONDS", "1800"),
                ),
                attention_check_interval_seconds=int(
                    os.getenv("JOBFLOW_QUEUE_ATTENTION_CHECK_INTERVAL_SECONDS", "300"),
                ),
            ),
            dispatcher=DispatcherSettings(
                worker_count=int(os.getenv("JOBFLOW_WORKER_COUNT", "0")),
                max_retries=int(os.getenv("JOBFLOW_MAX_RETRIES", "3")),
                retry_base_seconds=float(os.getenv("JOBFLOW_RETRY_BASE_SECONDS", "2.0")),
                retry_max_seconds=float(os.getenv("JOBFLOW_RETRY_MAX_SECONDS", "60.0")),
                poll_interval_seconds=float(os.getenv("JOBFLOW_POLL_INTERVAL_SECONDS", "0.5")),
                shutdown_timeout_seconds=float(
                    os.getenv("JOBFLOW_SHUTDOWN_TIMEOUT_SECONDS", "30"),
                ),
            ),
            workflow=WorkflowSettings(
                max_concurrent_stages=int(os.getenv("JOBFLOW_MAX_CONCURRENT_STAGES", "3")),
                large_context_token_threshold=int(
                    os.getenv("JOBFLOW_LARGE_CONTEXT_TOKEN_THRESHOLD", "100000"),
                ),
                retention_hours=int(os.getenv("JOBFLOW_WORKFLOW_RETENTION_HOURS", "24")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if any limit is out of range."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("JOBFLOW_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.queue.max_concurrent_jobs <= 0:
            raise ValueError("JOBFLOW_MAX_CONCURRENT_JOBS must be a positive integer.")
        if self.queue.attention_after_seconds <= 0:
            raise ValueError("JOBFLOW_QUEUE_ATTENTION_AFTER_SECONDS must be > 0.")
        if self.queue.attention_check_interval_seconds <= 0:
            raise ValueError("JOBFLOW_QUEUE_ATTENTION_CHECK_INTERVAL_SECONDS must be > 0.")
        if self.dispatcher.worker_count < 0:
            raise ValueError("JOBFLOW_WORKER_COUNT must be >= 0.")
        if self.dispatcher.max_retries < 0:
            raise ValueError("JOBFLOW_MAX_RETRIES must be >= 0.")
        if self.dispatcher.retry_base_seconds < 0:
            raise ValueError("JOBFLOW_RETRY_BASE_SECONDS must be >= 0.")
        if self.dispatcher.retry_max_seconds < self.dispatcher.retry_base_seconds:
            raise ValueError(
                "JOBFLOW_RETRY_MAX_SECONDS must be >= JOBFLOW_RETRY_BASE_SECONDS.",
            )
        if self.dispatcher.poll_interval_seconds <= 0:
            raise ValueError("JOBFLOW_POLL_INTERVAL_SECONDS must be > 0.")
        if self.workflow.max_concurrent_stages <= 0:
            raise ValueError("JOBFLOW_MAX_CONCURRENT_STAGES must be a positive integer.")
        if self.workflow.large_context_token_threshold <= 0:
            raise ValueError("JOBFLOW_LARGE_CONTEXT_TOKEN_THRESHOLD must be > 0.")
        if self.workflow.retention_hours < 0:
            raise ValueError("JOBFLOW_WORKFLOW_RETENTION_HOURS must be >= 0.")


def _env_bool(name: str, *, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {raw!r}")
