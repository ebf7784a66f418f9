"""Shared test fixtures."""

from __future__ import annotations

import os
from collections.abc import Iterator
from pathlib import Path

import pytest

from jobflow.jobs.queue import JobQueue
from jobflow.jobs.repository import JobRepository


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[JobRepository]:
    """Migrated job store in a temporary SQLite file."""
    repo = JobRepository(tmp_path / "jobs.db")
    repo.init_schema()
    yield repo
    repo.close()


@pytest.fixture()
def job_queue() -> Iterator[JobQueue]:
    queue = JobQueue(max_concurrent_jobs=2)
    yield queue
    queue.shutdown()


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Keep developer JOBFLOW_* variables out of tests."""
    for name in list(os.environ):
        if name.startswith("JOBFLOW_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("JOBFLOW_DB_PATH", str(tmp_path / "default.db"))
