"""CLI entrypoint for maintainer-brief."""

import logging
from pathlib import Path

import rich_click as click

from maintainer_brief import __version__
from maintainer_brief.controllers import (
    AnalyzeCommand,
    JobListCommand,
    JobMutateCommand,
    JobStatusCommand,
    MaintainerBriefCliController,
    QueueCommand,
    QueueListCommand,
    RepoAddCommand,
    RepoListCommand,
    RepoScheduleCommand,
    SchedulerCommand,
    WorkerCommand,
)
from maintainer_brief.jobs.models import (
    AnalysisDepth,
    JobStatus,
    OutputTone,
    RecurrencePolicy,
    TriggerKind,
)
from maintainer_brief.queue.repository import QueueEntryStatus

click.rich_click.USE_MARKDOWN = True
CONTROLLER = MaintainerBriefCliController()

DB_PATH_HELP = "SQLite DB path."
LOG_LEVELS = ("debug", "info", "warning", "error")


@click.group()
@click.version_option(version=__version__, prog_name="maintainer-brief")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="warning",
    show_default=True,
    help="Root logger level.",
)
def maintainer_brief(log_level: str) -> None:
    """Repository analysis orchestration CLI."""

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@maintainer_brief.group()
def repos() -> None:
    """Tracked repository commands."""


@repos.command("add")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--owner", required=True, help="Repository owner (user or organization).")
@click.option("--name", required=True, help="Repository name.")
@click.option("--repo-id", "repository_id", default=None, help="Explicit repository id.")
@click.option("--branch", default="main", show_default=True, help="Branch to analyze.")
@click.option(
    "--depth",
    type=click.Choice([depth.value for depth in AnalysisDepth]),
    default=AnalysisDepth.FAST.value,
    show_default=True,
    help="Analysis depth.",
)
@click.option(
    "--tone",
    type=click.Choice([tone.value for tone in OutputTone]),
    default=None,
    help="Output tone (defaults to MAINTAINER_BRIEF_DEFAULT_TONE).",
)
@click.option(
    "--ignore-path",
    "ignore_paths",
    multiple=True,
    help="Glob of changed files to ignore. Can be repeated.",
)
@click.option(
    "--recurrence",
    type=click.Choice([policy.value for policy in RecurrencePolicy]),
    default=RecurrencePolicy.MANUAL.value,
    show_default=True,
    help="Scheduled analysis policy.",
)
@click.option("--notify-email", default=None, help="Email address notified on success.")
@click.option("--slack-webhook-url", default=None, help="Slack webhook notified on success.")
def repos_add(  # noqa: PLR0913
    db_path: Path | None,
    owner: str,
    name: str,
    repository_id: str | None,
    branch: str,
    depth: str,
    tone: str | None,
    ignore_paths: tuple[str, ...],
    recurrence: str,
    notify_email: str | None,
    slack_webhook_url: str | None,
) -> None:
    """Register a repository for analysis."""

    _emit_lines(
        CONTROLLER.add_repository(
            RepoAddCommand(
                db_path=db_path,
                owner=owner,
                name=name,
                repository_id=repository_id,
                branch=branch,
                depth=depth,
                tone=tone,
                ignore_paths=ignore_paths,
                recurrence=recurrence,
                notify_email=notify_email,
                slack_webhook_url=slack_webhook_url,
            ),
        ),
    )


@repos.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
def repos_list(db_path: Path | None) -> None:
    """List tracked repositories."""

    _emit_lines(CONTROLLER.list_repositories(RepoListCommand(db_path=db_path)))


@repos.command("set-schedule")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--repo-id", "repository_id", required=True, help="Repository id.")
@click.option(
    "--recurrence",
    type=click.Choice([policy.value for policy in RecurrencePolicy]),
    required=True,
    help="New recurrence policy.",
)
def repos_set_schedule(db_path: Path | None, repository_id: str, recurrence: str) -> None:
    """Change the recurrence policy of a repository."""

    _emit_lines(
        CONTROLLER.set_schedule(
            RepoScheduleCommand(
                db_path=db_path,
                repository_id=repository_id,
                recurrence=recurrence,
            ),
        ),
    )


@maintainer_brief.group()
def analyze() -> None:
    """Analysis request commands."""


@analyze.command("request")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--repo-id", "repository_id", required=True, help="Repository id.")
@click.option("--user-id", default=None, help="Requesting user id.")
@click.option(
    "--commit",
    default=None,
    help="Reference commit SHA. When omitted, the branch head is resolved through GitHub.",
)
@click.option(
    "--trigger",
    type=click.Choice([trigger.value for trigger in TriggerKind]),
    default=TriggerKind.MANUAL.value,
    show_default=True,
    help="Trigger kind recorded on the job.",
)
def analyze_request(
    db_path: Path | None,
    repository_id: str,
    user_id: str | None,
    commit: str | None,
    trigger: str,
) -> None:
    """Request an analysis; reuses a recent successful job for the same input."""

    _emit_lines(
        CONTROLLER.request_analysis(
            AnalyzeCommand(
                db_path=db_path,
                repository_id=repository_id,
                commit=commit,
                user_id=user_id,
                trigger=trigger,
            ),
        ),
    )


@maintainer_brief.group()
def jobs() -> None:
    """Analysis job commands."""


@jobs.command("status")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--job-id", required=True, help="Job id.")
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"]),
    default="table",
    show_default=True,
    help="Output format.",
)
def jobs_status(db_path: Path | None, job_id: str, output_format: str) -> None:
    """Show the polling projection of one job."""

    _emit_lines(
        CONTROLLER.job_status(
            JobStatusCommand(db_path=db_path, job_id=job_id, output_format=output_format),
        ),
    )


@jobs.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--repo-id", "repository_id", default=None, help="Filter by repository id.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in JobStatus]),
    default=None,
    help="Filter by job status.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max rows to display.",
)
def jobs_list(
    db_path: Path | None,
    repository_id: str | None,
    status: str | None,
    limit: int,
) -> None:
    """List recent analysis jobs."""

    _emit_lines(
        CONTROLLER.list_jobs(
            JobListCommand(
                db_path=db_path,
                repository_id=repository_id,
                status=status,
                limit=limit,
            ),
        ),
    )


@jobs.command("outputs")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--job-id", required=True, help="Job id.")
def jobs_outputs(db_path: Path | None, job_id: str) -> None:
    """Print the outputs of a succeeded job."""

    _emit_lines(CONTROLLER.job_outputs(JobMutateCommand(db_path=db_path, job_id=job_id)))


@jobs.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--job-id", required=True, help="Job id.")
def jobs_cancel(db_path: Path | None, job_id: str) -> None:
    """Cancel a job that no worker has picked up yet."""

    _emit_lines(CONTROLLER.cancel_job(JobMutateCommand(db_path=db_path, job_id=job_id)))


@maintainer_brief.group()
def worker() -> None:
    """Queue worker commands."""


@worker.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--once", is_flag=True, default=False, help="Process at most one entry.")
@click.option(
    "--max-jobs",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many deliveries.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=0),
    default=None,
    help="Exit after N consecutive empty polls (0 = run until stopped).",
)
@click.option(
    "--concurrency",
    type=click.IntRange(min=1),
    default=None,
    help="Deliveries in flight (defaults to MAINTAINER_BRIEF_WORKER_CONCURRENCY).",
)
def worker_run(
    db_path: Path | None,
    once: bool,
    max_jobs: int | None,
    max_idle_polls: int | None,
    concurrency: int | None,
) -> None:
    """Run the queue worker."""

    _emit_lines(
        CONTROLLER.run_worker(
            WorkerCommand(
                db_path=db_path,
                once=once,
                max_jobs=max_jobs,
                max_idle_polls=max_idle_polls or None,
                concurrency=concurrency,
            ),
        ),
    )


@maintainer_brief.group()
def scheduler() -> None:
    """Recurring analysis scheduler commands."""


@scheduler.command("sweep")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
def scheduler_sweep(db_path: Path | None) -> None:
    """Run one scheduler sweep now."""

    _emit_lines(CONTROLLER.sweep(SchedulerCommand(db_path=db_path)))


@scheduler.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option(
    "--max-sweeps",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many sweeps.",
)
@click.option(
    "--via-queue",
    is_flag=True,
    default=False,
    help="Enqueue sweeps for workers instead of running them in-process.",
)
def scheduler_run(db_path: Path | None, max_sweeps: int | None, via_queue: bool) -> None:
    """Run sweeps every MAINTAINER_BRIEF_SCHEDULER_INTERVAL_SECONDS."""

    _emit_lines(
        CONTROLLER.run_scheduler(
            SchedulerCommand(db_path=db_path, max_sweeps=max_sweeps, via_queue=via_queue),
        ),
    )


@maintainer_brief.group()
def queue() -> None:
    """Durable queue maintenance commands."""


@queue.command("stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
def queue_stats(db_path: Path | None) -> None:
    """Show queue entry counts per status."""

    _emit_lines(CONTROLLER.queue_stats(QueueCommand(db_path=db_path)))


@queue.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option(
    "--status",
    type=click.Choice([status.value for status in QueueEntryStatus]),
    default=None,
    help="Filter by entry status.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max rows to display.",
)
def queue_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List recent queue entries with their delivery attempts."""

    _emit_lines(
        CONTROLLER.queue_list(QueueListCommand(db_path=db_path, status=status, limit=limit)),
    )


@queue.command("purge")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
def queue_purge(db_path: Path | None) -> None:
    """Apply the retention policy to finished entries."""

    _emit_lines(CONTROLLER.queue_purge(QueueCommand(db_path=db_path)))


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    maintainer_brief()
