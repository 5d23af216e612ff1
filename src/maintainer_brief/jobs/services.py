"""Use-case services: request an analysis through the idempotency gate, poll, cancel."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from maintainer_brief.jobs.idempotency import (
    IdempotencyGate,
    compute_fingerprint,
    normalize_reference_commit,
)
from maintainer_brief.jobs.models import JobStatus, JobStatusView, TriggerKind
from maintainer_brief.jobs.repository import JobStore
from maintainer_brief.pipeline.contracts import RepositoryNotFoundError
from maintainer_brief.queue.payloads import AnalyzeRepositoryPayload
from maintainer_brief.queue.repository import DurableQueue

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RequestAnalysis:
    """Command to analyze one tracked repository at a reference commit."""

    repository_id: str
    reference_commit: str
    trigger: TriggerKind = TriggerKind.MANUAL
    user_id: str | None = None


@dataclass(slots=True)
class AnalysisRequestResult:
    job_id: str
    created: bool
    fingerprint: str

    @property
    def deduplicated(self) -> bool:
        return not self.created


class AnalysisService:
    """Coordinates the idempotency gate, job creation, and queue insert."""

    def __init__(self, *, store: JobStore, queue: DurableQueue, gate: IdempotencyGate) -> None:
        self.store = store
        self.queue = queue
        self.gate = gate

    def request_analysis(self, command: RequestAnalysis) -> AnalysisRequestResult:
        """Return the recent successful job for this snapshot, or create and enqueue one."""

        repository = self.store.get_repository(command.repository_id)
        if repository is None:
            raise RepositoryNotFoundError(f"Repository not tracked: {command.repository_id}")
        reference_commit = normalize_reference_commit(command.reference_commit)
        fingerprint = compute_fingerprint(
            repository.repository_id,
            repository.branch,
            reference_commit,
            repository.depth,
        )

        existing = self.gate.find_recent_success(repository.repository_id, fingerprint)
        if existing is not None:
            logger.info(
                "Reusing succeeded job %s for %s@%s",
                existing,
                repository.full_name,
                reference_commit,
            )
            return AnalysisRequestResult(job_id=existing, created=False, fingerprint=fingerprint)

        job_id = self.gate.create_job(
            repository.repository_id,
            command.user_id or repository.user_id,
            fingerprint,
            command.trigger,
            branch=repository.branch,
            reference_commit=reference_commit,
            depth=repository.depth,
        )
        self.queue.enqueue(
            job_id,
            AnalyzeRepositoryPayload(
                job_id=job_id,
                repository_id=repository.repository_id,
                owner=repository.owner,
                repo=repository.name,
                branch=repository.branch,
                reference_commit=reference_commit,
                depth=repository.depth,
                tone=repository.tone,
                ignore_paths=list(repository.ignore_paths),
            ),
        )
        logger.info(
            "Queued %s job %s for %s@%s",
            command.trigger.value,
            job_id,
            repository.full_name,
            reference_commit,
        )
        return AnalysisRequestResult(job_id=job_id, created=True, fingerprint=fingerprint)

    def job_status(self, job_id: str) -> JobStatusView | None:
        job = self.store.get_job(job_id)
        return JobStatusView.from_job(job) if job is not None else None

    def cancel_job(self, job_id: str) -> bool:
        """Cancel a job that no worker has picked up yet."""

        job = self.store.get_job(job_id)
        if job is None:
            raise RuntimeError(f"Job not found: {job_id}")
        if job.status is not JobStatus.QUEUED:
            return False
        if not self.queue.remove(job_id):
            return False
        return self.store.cancel_queued_job(job_id)
