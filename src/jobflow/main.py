"""CLI entrypoint for jobflow."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from jobflow import __version__
from jobflow.controllers import (
    JobCancelCommand,
    JobInspectCommand,
    JobsCliController,
    JobsListCommand,
    JobsPruneCommand,
    JobsStatsCommand,
)
from jobflow.jobs.errors import JobflowError
from jobflow.jobs.models import JobStatus

click.rich_click.USE_MARKDOWN = True
JOBS_CONTROLLER = JobsCliController()

_DB_PATH_HELP = "SQLite DB path. Defaults to JOBFLOW_DB_PATH or .jobflow.db."


@click.group()
@click.version_option(version=__version__, prog_name="jobflow")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging verbosity.",
)
def jobflow(log_level: str) -> None:
    """Background job and workflow engine CLI."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@jobflow.group()
def jobs() -> None:
    """Inspect and maintain stored jobs."""


@jobs.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option(
    "--status",
    type=click.Choice([status.value for status in JobStatus]),
    default=None,
    help="Only jobs in this status.",
)
@click.option("--session", "session_id", default=None, help="Only jobs of this session.")
@click.option("--workflow", "workflow_id", default=None, help="Only stages of this workflow.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Maximum number of jobs.",
)
def jobs_list(  # noqa: PLR0913
    db_path: Path | None,
    status: str | None,
    session_id: str | None,
    workflow_id: str | None,
    limit: int,
) -> None:
    """List recent jobs, newest first."""

    _run(
        lambda: JOBS_CONTROLLER.list_jobs(
            JobsListCommand(
                db_path=db_path,
                status=status,
                session_id=session_id,
                workflow_id=workflow_id,
                limit=limit,
            ),
        ),
    )


@jobs.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--payload", "show_payload", is_flag=True, help="Also print the stored payload.")
@click.argument("job_id")
def jobs_inspect(db_path: Path | None, show_payload: bool, job_id: str) -> None:
    """Show one job with its audit events."""

    _run(
        lambda: JOBS_CONTROLLER.inspect_job(
            JobInspectCommand(db_path=db_path, job_id=job_id, show_payload=show_payload),
        ),
    )


@jobs.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--reason", default="Canceled by operator", show_default=True)
@click.argument("job_id")
def jobs_cancel(db_path: Path | None, reason: str, job_id: str) -> None:
    """Cancel a queued or running job."""

    _run(
        lambda: JOBS_CONTROLLER.cancel_job(
            JobCancelCommand(db_path=db_path, job_id=job_id, reason=reason),
        ),
    )


@jobs.command("stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
def jobs_stats(db_path: Path | None) -> None:
    """Count stored jobs per status."""

    _run(lambda: JOBS_CONTROLLER.stats(JobsStatsCommand(db_path=db_path)))


@jobs.command("prune")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option(
    "--older-than-days",
    type=click.IntRange(min=0),
    default=30,
    show_default=True,
    help="Delete finished jobs older than this many days.",
)
@click.option("--dry-run", is_flag=True, help="Only count matching jobs.")
def jobs_prune(db_path: Path | None, older_than_days: int, dry_run: bool) -> None:
    """Delete old completed, failed and canceled jobs."""

    _run(
        lambda: JOBS_CONTROLLER.prune(
            JobsPruneCommand(db_path=db_path, older_than_days=older_than_days, dry_run=dry_run),
        ),
    )


@jobflow.group()
def workflows() -> None:
    """Workflow definitions."""


@workflows.command("list")
def workflows_list() -> None:
    """List built-in workflow definitions and their stages."""

    _run(JOBS_CONTROLLER.list_workflows)


def _run(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except (JobflowError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    jobflow()
