"""Pipeline executor: Fetch, Generate, Persist, Notify for one analysis job."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from maintainer_brief.jobs.models import (
    PROGRESS_DONE,
    PROGRESS_FETCHED,
    PROGRESS_GENERATED,
    PROGRESS_PERSISTED,
    PROGRESS_STARTED,
    JobStatus,
    RepositoryView,
)
from maintainer_brief.pipeline.contracts import (
    InsufficientDataError,
    JobPersistence,
    NotificationPayload,
    Notifier,
    OutputGenerator,
    RepositoryLookup,
    RepositorySnapshot,
    SnapshotFetcher,
    TransientCollaboratorError,
)
from maintainer_brief.queue.payloads import AnalyzeRepositoryPayload

logger = logging.getLogger(__name__)

EMAIL_CHANNEL = "email"
SLACK_CHANNEL = "slack"


@dataclass(slots=True)
class NotifyResult:
    """Outcome of one best-effort notification attempt."""

    channel: str
    delivered: bool
    error: str | None = None


@dataclass(slots=True)
class ExecutionOutcome:
    """Terminal result of one executor invocation."""

    job_id: str
    status: JobStatus
    progress: int
    error_message: str | None = None
    outputs_saved: int = 0
    notifications: list[NotifyResult] = field(default_factory=list)
    skipped: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status is JobStatus.SUCCEEDED


def ensure_sufficient_data(snapshot: RepositorySnapshot, *, min_commits: int) -> None:
    """Fail fast before generation when the snapshot is too sparse."""

    if len(snapshot.commits) < min_commits:
        raise InsufficientDataError(
            f"Insufficient data: need at least {min_commits} commits for analysis",
        )


def attempt_notify(notifier: Notifier, channel: str, payload: NotificationPayload) -> NotifyResult:
    """Deliver through one channel; failures are logged and returned, never raised."""

    try:
        notifier.notify(channel, payload)
    except Exception as error:  # noqa: BLE001
        logger.warning(
            "Notification via %s failed for job %s: %s",
            channel,
            payload.job_id,
            error,
        )
        return NotifyResult(channel=channel, delivered=False, error=str(error) or type(error).__name__)
    return NotifyResult(channel=channel, delivered=True)


def notification_targets(repository: RepositoryView) -> list[tuple[str, str]]:
    """Channels enabled by repository settings, with their recipient."""

    targets: list[tuple[str, str]] = []
    if repository.notify_email:
        targets.append((EMAIL_CHANNEL, repository.notify_email))
    if repository.slack_webhook_url:
        targets.append((SLACK_CHANNEL, repository.slack_webhook_url))
    return targets


class PipelineExecutor:
    """Runs one job's stage sequence and records progress and terminal state.

    Any error in Fetch, Generate, or Persist is caught once, recorded as the
    job's ``error_message``, and the job becomes ``failed``. The exception is a
    ``TransientCollaboratorError`` on a delivery that is not the last one: the
    job stays ``running`` and the error propagates so the queue redelivers.
    Notify runs only after Persist and can never change the outcome. Errors
    raised while recording state also propagate to the caller.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        jobs: JobPersistence,
        repositories: RepositoryLookup,
        fetcher: SnapshotFetcher,
        generator: OutputGenerator,
        notifier: Notifier,
        frontend_url: str,
        min_commits: int = 5,
    ) -> None:
        self.jobs = jobs
        self.repositories = repositories
        self.fetcher = fetcher
        self.generator = generator
        self.notifier = notifier
        self.frontend_url = frontend_url.rstrip("/")
        self.min_commits = min_commits

    def execute(
        self,
        payload: AnalyzeRepositoryPayload,
        *,
        final_attempt: bool = True,
    ) -> ExecutionOutcome:
        job = self.jobs.get_job(payload.job_id)
        if job is None:
            logger.warning("Job %s not found; dropping delivery", payload.job_id)
            return ExecutionOutcome(
                job_id=payload.job_id,
                status=JobStatus.FAILED,
                progress=0,
                error_message="Job not found",
                skipped=True,
            )
        if job.status.is_terminal:
            logger.info("Job %s already %s; redelivery ignored", job.job_id, job.status.value)
            return ExecutionOutcome(
                job_id=job.job_id,
                status=job.status,
                progress=job.progress,
                error_message=job.error_message,
                skipped=True,
            )

        if not self.jobs.update_job_status(
            job.job_id,
            status=JobStatus.RUNNING,
            progress=PROGRESS_STARTED,
        ):
            current = self.jobs.get_job(job.job_id)
            logger.info("Job %s left runnable state before start", job.job_id)
            return ExecutionOutcome(
                job_id=job.job_id,
                status=current.status if current else JobStatus.FAILED,
                progress=current.progress if current else 0,
                error_message=current.error_message if current else None,
                skipped=True,
            )

        logger.info(
            "Running job %s for %s/%s@%s (%s)",
            job.job_id,
            payload.owner,
            payload.repo,
            payload.branch,
            payload.depth.value,
        )
        progress = max(PROGRESS_STARTED, job.progress)
        try:
            snapshot = self.fetcher.fetch_snapshot(
                payload.owner,
                payload.repo,
                payload.branch,
                payload.depth,
                list(payload.ignore_paths),
            )
            progress = self._advance(job.job_id, PROGRESS_FETCHED, current=progress)

            ensure_sufficient_data(snapshot, min_commits=self.min_commits)
            outputs = self.generator.generate(snapshot, payload.tone)
            progress = self._advance(job.job_id, PROGRESS_GENERATED, current=progress)

            saved = self.jobs.save_outputs(job.job_id, payload.repository_id, outputs)
            progress = self._advance(job.job_id, PROGRESS_PERSISTED, current=progress)
        except Exception as error:  # noqa: BLE001
            message = str(error) or type(error).__name__
            if isinstance(error, TransientCollaboratorError) and not final_attempt:
                logger.warning(
                    "Job %s hit a transient failure at progress %d, leaving it for redelivery: %s",
                    job.job_id,
                    progress,
                    message,
                )
                raise
            logger.error("Job %s failed at progress %d: %s", job.job_id, progress, message)
            self.jobs.update_job_status(
                job.job_id,
                status=JobStatus.FAILED,
                progress=progress,
                error_message=message,
            )
            return ExecutionOutcome(
                job_id=job.job_id,
                status=JobStatus.FAILED,
                progress=progress,
                error_message=message,
            )

        notifications = self._notify(
            job_id=job.job_id,
            repository_id=payload.repository_id,
            repository_name=f"{payload.owner}/{payload.repo}",
            output_kinds=[output.kind.value for output in outputs],
        )
        self.jobs.update_job_status(job.job_id, status=JobStatus.SUCCEEDED, progress=PROGRESS_DONE)
        logger.info("Job %s succeeded with %d outputs", job.job_id, saved)
        return ExecutionOutcome(
            job_id=job.job_id,
            status=JobStatus.SUCCEEDED,
            progress=PROGRESS_DONE,
            outputs_saved=saved,
            notifications=notifications,
        )

    def _advance(self, job_id: str, progress: int, *, current: int) -> int:
        self.jobs.update_job_status(job_id, status=JobStatus.RUNNING, progress=progress)
        return max(progress, current)

    def _notify(
        self,
        *,
        job_id: str,
        repository_id: str,
        repository_name: str,
        output_kinds: list[str],
    ) -> list[NotifyResult]:
        try:
            repository = self.repositories.get_repository(repository_id)
        except Exception as error:  # noqa: BLE001
            logger.warning("Skipping notifications for job %s: %s", job_id, error)
            return []
        if repository is None:
            return []

        link = f"{self.frontend_url}/repos/{repository_id}/outputs"
        return [
            attempt_notify(
                self.notifier,
                channel,
                NotificationPayload(
                    job_id=job_id,
                    repository_id=repository_id,
                    repository_name=repository_name,
                    output_kinds=output_kinds,
                    link=link,
                    recipient=recipient,
                ),
            )
            for channel, recipient in notification_targets(repository)
        ]
