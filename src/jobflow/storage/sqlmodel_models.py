"""SQLModel ORM tables for durable job storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel


class BackgroundJob(SQLModel, table=True):
    __tablename__ = "background_jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_background_jobs_status_created", "status", "created_at"),
        Index("idx_background_jobs_workflow", "workflow_id", "stage_name"),
    )

    job_id: str = Field(primary_key=True)
    session_id: str = Field(index=True)
    task_type: str = Field(index=True)
    priority: int = Field(default=1)
    status: str = Field(index=True)
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    workflow_id: str | None = Field(default=None)
    stage_name: str | None = Field(default=None)
    process_after: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    status_message: str | None = Field(default=None, sa_column=Column(Text))
    response: str | None = Field(default=None, sa_column=Column(Text))
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    metadata_json: str | None = Field(default=None, sa_column=Column(Text))
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None
    cost_usd: float | None = None
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class BackgroundJobEvent(SQLModel, table=True):
    __tablename__ = "background_job_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_background_job_events_job_time", "job_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("background_jobs.job_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    event_type: str
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
