"""Controllers for maintainer-brief CLI commands."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from maintainer_brief.config import Settings
from maintainer_brief.generation.generator import SnapshotOutputGenerator
from maintainer_brief.generation.openai_client import OpenAITextClient
from maintainer_brief.github.client import GitHubClient
from maintainer_brief.jobs.idempotency import IdempotencyGate
from maintainer_brief.jobs.models import (
    AnalysisDepth,
    JobStatus,
    OutputTone,
    RecurrencePolicy,
    RepositoryCreate,
    TriggerKind,
)
from maintainer_brief.jobs.repository import JobStore
from maintainer_brief.jobs.services import AnalysisService, RequestAnalysis
from maintainer_brief.notifications.channels import ChannelNotifier
from maintainer_brief.pipeline.executor import PipelineExecutor
from maintainer_brief.queue.payloads import (
    AnalyzeRepositoryPayload,
    QueuePayload,
    SchedulerSweepPayload,
)
from maintainer_brief.queue.repository import DurableQueue, QueueEntryStatus, RetentionPolicy
from maintainer_brief.queue.worker import (
    Delivery,
    DeliveryResult,
    QueueWorker,
    default_delivery_policy,
)
from maintainer_brief.scheduler.sweeper import Scheduler, SweepSummary

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RepoAddCommand:
    """CLI input for registering a tracked repository."""

    db_path: Path | None
    owner: str
    name: str
    branch: str
    depth: str
    tone: str | None
    ignore_paths: tuple[str, ...]
    recurrence: str
    notify_email: str | None
    slack_webhook_url: str | None
    repository_id: str | None = None


@dataclass(slots=True)
class RepoListCommand:
    db_path: Path | None


@dataclass(slots=True)
class RepoScheduleCommand:
    """CLI input for changing a repository recurrence policy."""

    db_path: Path | None
    repository_id: str
    recurrence: str


@dataclass(slots=True)
class AnalyzeCommand:
    """CLI input for a manual analysis request."""

    db_path: Path | None
    repository_id: str
    commit: str | None
    user_id: str | None
    trigger: str = TriggerKind.MANUAL.value


@dataclass(slots=True)
class JobStatusCommand:
    db_path: Path | None
    job_id: str
    output_format: str = "table"


@dataclass(slots=True)
class JobListCommand:
    """CLI input for job listing."""

    db_path: Path | None
    repository_id: str | None
    status: str | None
    limit: int


@dataclass(slots=True)
class JobMutateCommand:
    """CLI input for job outputs and cancel operations."""

    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    once: bool
    max_jobs: int | None
    max_idle_polls: int | None = 1
    concurrency: int | None = None


@dataclass(slots=True)
class SchedulerCommand:
    """CLI input for scheduler sweeps."""

    db_path: Path | None
    max_sweeps: int | None = None
    via_queue: bool = False


@dataclass(slots=True)
class QueueCommand:
    db_path: Path | None


@dataclass(slots=True)
class QueueListCommand:
    """CLI input for queue entry listing."""

    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class Runtime:
    """Stores and services opened for one CLI invocation."""

    settings: Settings
    store: JobStore
    queue: DurableQueue
    service: AnalysisService


class MaintainerBriefCliController:
    """Coordinates repository, analysis, worker, scheduler, and queue CLI operations."""

    def add_repository(self, command: RepoAddCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _runtime(settings) as runtime:
            repository = runtime.store.add_repository(
                RepositoryCreate(
                    owner=command.owner,
                    name=command.name,
                    repository_id=command.repository_id,
                    branch=command.branch,
                    depth=_parse_enum(AnalysisDepth, command.depth, "depth"),
                    tone=_parse_enum(
                        OutputTone,
                        command.tone or settings.generation.default_tone,
                        "tone",
                    ),
                    ignore_paths=list(command.ignore_paths),
                    recurrence=_parse_enum(RecurrencePolicy, command.recurrence, "recurrence"),
                    notify_email=command.notify_email,
                    slack_webhook_url=command.slack_webhook_url,
                ),
            )
        return [
            "Repository added: "
            f"repository_id={repository.repository_id} name={repository.full_name} "
            f"branch={repository.branch} depth={repository.depth.value} "
            f"recurrence={repository.recurrence.value}",
        ]

    def list_repositories(self, command: RepoListCommand) -> list[str]:
        with _runtime(_settings(command.db_path)) as runtime:
            repositories = runtime.store.list_repositories()
        lines = [f"Repositories: {len(repositories)}"]
        for repository in repositories:
            channels = [
                name
                for name, value in (
                    ("email", repository.notify_email),
                    ("slack", repository.slack_webhook_url),
                )
                if value
            ]
            lines.append(
                f"  {repository.repository_id} {repository.full_name}@{repository.branch} "
                f"depth={repository.depth.value} tone={repository.tone.value} "
                f"recurrence={repository.recurrence.value} "
                f"notify={','.join(channels) or '-'}",
            )
        return lines

    def set_schedule(self, command: RepoScheduleCommand) -> list[str]:
        recurrence = _parse_enum(RecurrencePolicy, command.recurrence, "recurrence")
        with _runtime(_settings(command.db_path)) as runtime:
            updated = runtime.store.set_recurrence(command.repository_id, recurrence)
        if not updated:
            raise RuntimeError(f"Repository not found: {command.repository_id}")
        return [f"Recurrence updated: {command.repository_id} -> {recurrence.value}"]

    def request_analysis(self, command: AnalyzeCommand) -> list[str]:
        settings = _settings(command.db_path)
        trigger = _parse_enum(TriggerKind, command.trigger, "trigger")
        with _runtime(settings) as runtime:
            commit = command.commit
            if commit is None:
                repository = runtime.store.get_repository(command.repository_id)
                if repository is None:
                    raise RuntimeError(f"Repository not found: {command.repository_id}")
                with GitHubClient.from_settings(settings.github) as github:
                    commit = github.latest_commit_sha(
                        repository.owner,
                        repository.name,
                        repository.branch,
                    )
            result = runtime.service.request_analysis(
                RequestAnalysis(
                    repository_id=command.repository_id,
                    reference_commit=commit,
                    trigger=trigger,
                    user_id=command.user_id,
                ),
            )
        if result.created:
            return [f"Analysis queued: job_id={result.job_id} fingerprint={result.fingerprint}"]
        return [
            "Recent analysis reused: "
            f"job_id={result.job_id} fingerprint={result.fingerprint} "
            f"(within {settings.idempotency.window_hours}h window)",
        ]

    def job_status(self, command: JobStatusCommand) -> list[str]:
        with _runtime(_settings(command.db_path)) as runtime:
            status = runtime.service.job_status(command.job_id)
        if status is None:
            return [f"Job not found: {command.job_id}"]
        if command.output_format == "json":
            return [json.dumps(status.to_dict(), ensure_ascii=False, sort_keys=True)]
        return [
            f"Job: {status.id}",
            f"Status: {status.status.value}",
            f"Progress: {status.progress}",
            f"Started: {status.started_at.isoformat() if status.started_at else '-'}",
            f"Finished: {status.finished_at.isoformat() if status.finished_at else '-'}",
            f"Error: {status.error_message or '-'}",
        ]

    def list_jobs(self, command: JobListCommand) -> list[str]:
        status_filter = _parse_enum(JobStatus, command.status, "status") if command.status else None
        with _runtime(_settings(command.db_path)) as runtime:
            jobs = runtime.store.list_jobs(
                repository_id=command.repository_id,
                status=status_filter,
                limit=command.limit,
            )
            total = runtime.store.count_jobs(
                repository_id=command.repository_id,
                status=status_filter,
            )
        lines = [f"Jobs: {len(jobs)} of {total}"]
        for job in jobs:
            lines.append(
                f"  {job.job_id} repo={job.repository_id} status={job.status.value} "
                f"progress={job.progress} trigger={job.trigger.value} "
                f"commit={job.reference_commit[:12]} created={job.created_at.isoformat()}",
            )
        return lines

    def job_outputs(self, command: JobMutateCommand) -> list[str]:
        with _runtime(_settings(command.db_path)) as runtime:
            job = runtime.store.get_job(command.job_id)
            outputs = runtime.store.list_outputs(command.job_id)
        if job is None:
            return [f"Job not found: {command.job_id}"]
        if job.status is not JobStatus.SUCCEEDED:
            return [f"Job {job.job_id} is {job.status.value}; outputs are available on success."]
        lines = [f"Outputs: {len(outputs)}"]
        for output in outputs:
            lines.append(
                f"## {output.kind.value} (confidence={output.confidence:.2f}, "
                f"commits={len(output.sources.commits)} prs={len(output.sources.prs)} "
                f"issues={len(output.sources.issues)})",
            )
            lines.append(output.content)
        return lines

    def cancel_job(self, command: JobMutateCommand) -> list[str]:
        with _runtime(_settings(command.db_path)) as runtime:
            canceled = runtime.service.cancel_job(command.job_id)
        if not canceled:
            return [f"Job not canceled (already picked up or finished): {command.job_id}"]
        return [f"Job canceled: {command.job_id}"]

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _runtime(settings) as runtime, _collaborators(settings) as collaborators:
            github, generator, notifier = collaborators
            executor = PipelineExecutor(
                jobs=runtime.store,
                repositories=runtime.store,
                fetcher=github,
                generator=generator,
                notifier=notifier,
                frontend_url=settings.notifications.frontend_url,
                min_commits=settings.generation.min_commits,
            )
            scheduler = _scheduler(runtime, commits=github)
            worker = QueueWorker(
                queue=runtime.queue,
                handlers={
                    AnalyzeRepositoryPayload.KIND: analysis_handler(executor),
                    SchedulerSweepPayload.KIND: scheduler.handle,
                },
                worker_id=settings.queue.worker_id,
                retry_policy=default_delivery_policy(
                    max_attempts=settings.queue.max_attempts,
                    base_delay=settings.queue.backoff_base_seconds,
                    max_delay=settings.queue.backoff_max_seconds,
                ),
                concurrency=command.concurrency or settings.queue.worker_concurrency,
                poll_interval_seconds=settings.queue.poll_interval_seconds,
                stale_after_seconds=settings.queue.stale_after_seconds,
                retention=_retention(settings),
            )
            summary = (
                worker.run_once()
                if command.once
                else worker.run_loop(
                    max_jobs=command.max_jobs,
                    max_idle_polls=command.max_idle_polls,
                )
            )

        return [
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} retried={summary.retried} "
            f"dead_lettered={summary.dead_lettered} idle_polls={summary.idle_polls}",
        ]

    def sweep(self, command: SchedulerCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _runtime(settings) as runtime, GitHubClient.from_settings(settings.github) as github:
            summary = _scheduler(runtime, commits=github).sweep()
        return _render_sweep(summary)

    def run_scheduler(self, command: SchedulerCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _runtime(settings) as runtime, GitHubClient.from_settings(settings.github) as github:
            scheduler = _scheduler(runtime, commits=github)
            if command.via_queue:
                sweeps = scheduler.run_loop(
                    max_sweeps=command.max_sweeps,
                    sweep=lambda: scheduler.enqueue_sweep(runtime.queue),
                )
                return [f"Scheduler stopped: sweeps_enqueued={sweeps}"]
            sweeps = scheduler.run_loop(max_sweeps=command.max_sweeps)
        return [f"Scheduler stopped: sweeps_run={sweeps}"]

    def queue_stats(self, command: QueueCommand) -> list[str]:
        with _runtime(_settings(command.db_path)) as runtime:
            counts = runtime.queue.stats()
        return [
            "Queue: " + " ".join(f"{status.value}={counts[status]}" for status in QueueEntryStatus),
        ]

    def queue_list(self, command: QueueListCommand) -> list[str]:
        status_filter = (
            _parse_enum(QueueEntryStatus, command.status, "status") if command.status else None
        )
        with _runtime(_settings(command.db_path)) as runtime:
            entries = runtime.queue.list_entries(status=status_filter, limit=command.limit)
        lines = [f"Entries: {len(entries)}"]
        for entry in entries:
            line = (
                f"  {entry.entry_id} kind={entry.kind} status={entry.status.value} "
                f"attempt={entry.attempt}/{entry.max_attempts} "
                f"run_after={entry.run_after.isoformat()}"
            )
            if entry.last_error:
                line += f" error={entry.last_error}"
            lines.append(line)
        return lines

    def queue_purge(self, command: QueueCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _runtime(settings) as runtime:
            removed = runtime.queue.apply_retention(_retention(settings))
        return [f"Queue retention applied: removed={removed}"]


def analysis_handler(executor: PipelineExecutor):
    """Adapt the executor to the queue handler contract.

    Transient stage failures propagate while deliveries remain, so the queue
    retry policy decides whether the stage sequence runs again.
    """

    def _handle(payload: QueuePayload, delivery: Delivery) -> DeliveryResult:
        if not isinstance(payload, AnalyzeRepositoryPayload):
            raise TypeError(f"Unexpected payload for analysis: {payload.kind}")
        outcome = executor.execute(payload, final_attempt=delivery.is_last_attempt)
        if outcome.skipped:
            return DeliveryResult(succeeded=True, detail=f"skipped: job {outcome.status.value}")
        return DeliveryResult(succeeded=outcome.succeeded, detail=outcome.error_message)

    return _handle


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


def _parse_enum(enum_type, value: str, label: str):
    try:
        return enum_type(value.strip().lower())
    except ValueError as error:
        allowed = ", ".join(member.value for member in enum_type)
        raise ValueError(f"Unsupported {label}: {value!r}. Expected one of: {allowed}") from error


def _retention(settings: Settings) -> RetentionPolicy:
    return RetentionPolicy(
        keep_completed_age=timedelta(hours=settings.queue.keep_completed_hours),
        keep_completed_count=settings.queue.keep_completed_count,
        keep_failed_age=timedelta(days=settings.queue.keep_failed_days),
        keep_failed_count=settings.queue.keep_failed_count,
    )


def _scheduler(runtime: Runtime, *, commits: GitHubClient) -> Scheduler:
    return Scheduler(
        store=runtime.store,
        service=runtime.service,
        commits=commits,
        settings=runtime.settings.scheduler,
    )


def _render_sweep(summary: SweepSummary) -> list[str]:
    if not summary.window_open:
        return ["Sweep skipped: outside the configured hour window."]
    lines = [
        "Sweep summary: "
        f"evaluated={summary.evaluated} enqueued={len(summary.enqueued)} "
        f"reused={len(summary.reused)} skipped={len(summary.skipped)} "
        f"errors={len(summary.errors)}",
    ]
    lines.extend(f"  queued {job_id}" for job_id in summary.enqueued)
    lines.extend(f"  error {repo_id}: {message}" for repo_id, message in summary.errors.items())
    return lines


@contextmanager
def _runtime(settings: Settings) -> Iterator[Runtime]:
    store = JobStore(settings.db_path, busy_timeout_ms=settings.sqlite_busy_timeout_ms)
    queue = DurableQueue(
        settings.db_path,
        max_attempts=settings.queue.max_attempts,
        busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    try:
        store.init_schema()
        gate = IdempotencyGate(store=store, window_hours=settings.idempotency.window_hours)
        yield Runtime(
            settings=settings,
            store=store,
            queue=queue,
            service=AnalysisService(store=store, queue=queue, gate=gate),
        )
    finally:
        queue.close()
        store.close()


@contextmanager
def _collaborators(
    settings: Settings,
) -> Iterator[tuple[GitHubClient, SnapshotOutputGenerator, ChannelNotifier]]:
    github = GitHubClient.from_settings(settings.github)
    completion = OpenAITextClient.from_settings(settings.generation)
    notifier = ChannelNotifier.from_settings(settings.notifications)
    try:
        yield (
            github,
            SnapshotOutputGenerator(
                client=completion,
                min_commits=settings.generation.min_commits,
            ),
            notifier,
        )
    finally:
        notifier.close()
        completion.close()
        github.close()
