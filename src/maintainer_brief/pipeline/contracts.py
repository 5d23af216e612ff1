"""Collaborator contracts and snapshot types consumed by the pipeline executor."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

from maintainer_brief.jobs.models import (
    AnalysisDepth,
    GeneratedOutput,
    JobStatus,
    JobView,
    OutputTone,
    RepositoryView,
)


@dataclass(slots=True)
class AnalysisError(Exception):
    """Base error for a failed analysis stage."""

    message: str
    code: str = "analysis_error"

    def __str__(self) -> str:
        return self.message


@dataclass(slots=True)
class InsufficientDataError(AnalysisError):
    """Snapshot is too sparse to spend generation cost on."""

    code: str = "insufficient_data"


@dataclass(slots=True)
class RepositoryNotFoundError(AnalysisError):
    code: str = "repository_not_found"


@dataclass(slots=True)
class AccessDeniedError(AnalysisError):
    code: str = "access_denied"


@dataclass(slots=True)
class TransientCollaboratorError(AnalysisError):
    """Rate limit, 5xx, or timeout that outlived the collaborator's retries."""

    code: str = "transient"
    retry_after: float | None = None


@dataclass(slots=True)
class PersistenceError(AnalysisError):
    code: str = "persistence_error"


@dataclass(slots=True)
class NotificationError(AnalysisError):
    code: str = "notification_error"


@dataclass(slots=True)
class CommitInfo:
    sha: str
    message: str
    author: str
    committed_at: datetime | None = None
    files: list[str] = field(default_factory=list)


@dataclass(slots=True)
class PullRequestInfo:
    number: int
    title: str
    author: str
    merged_at: datetime | None = None
    labels: list[str] = field(default_factory=list)


@dataclass(slots=True)
class IssueInfo:
    number: int
    title: str
    labels: list[str] = field(default_factory=list)
    url: str = ""


@dataclass(slots=True)
class ReleaseInfo:
    tag_name: str
    name: str
    body: str = ""
    published_at: datetime | None = None


@dataclass(slots=True)
class RepositorySnapshot:
    """Point-in-time view of repository activity fed to generation."""

    owner: str
    repo: str
    branch: str
    depth: AnalysisDepth
    commits: list[CommitInfo] = field(default_factory=list)
    pull_requests: list[PullRequestInfo] = field(default_factory=list)
    issues: list[IssueInfo] = field(default_factory=list)
    releases: list[ReleaseInfo] = field(default_factory=list)
    readme: str | None = None
    contributing: str | None = None
    description: str | None = None
    language: str | None = None

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"


@dataclass(slots=True)
class NotificationPayload:
    """Message handed to each notification channel after a successful analysis."""

    job_id: str
    repository_id: str
    repository_name: str
    output_kinds: list[str]
    link: str
    recipient: str

    @property
    def subject(self) -> str:
        return f"Repository analysis ready: {self.repository_name}"

    @property
    def text(self) -> str:
        kinds = ", ".join(self.output_kinds) if self.output_kinds else "no outputs"
        return (
            f"Analysis for {self.repository_name} is complete ({kinds}). "
            f"View the results: {self.link}"
        )


class SnapshotFetcher(Protocol):
    """Fetch capability for repository activity."""

    def fetch_snapshot(
        self,
        owner: str,
        repo: str,
        branch: str,
        depth: AnalysisDepth,
        ignore_paths: list[str],
    ) -> RepositorySnapshot:
        """Fetch a snapshot, raising on unrecoverable collaborator errors."""
        raise NotImplementedError


class ReferenceCommitSource(Protocol):
    """Resolves the content-derived reference commit of a branch."""

    def latest_commit_sha(self, owner: str, repo: str, branch: str) -> str:
        raise NotImplementedError


class OutputGenerator(Protocol):
    """Generation capability producing the fixed output set."""

    def generate(self, snapshot: RepositorySnapshot, tone: OutputTone) -> list[GeneratedOutput]:
        """Generate outputs, raising InsufficientDataError for sparse snapshots."""
        raise NotImplementedError


class Notifier(Protocol):
    """Delivers a notification payload through a named channel."""

    def notify(self, channel: str, payload: NotificationPayload) -> None:
        raise NotImplementedError


class JobPersistence(Protocol):
    """Job store operations used by the executor."""

    def get_job(self, job_id: str) -> JobView | None:
        raise NotImplementedError

    def update_job_status(
        self,
        job_id: str,
        *,
        status: JobStatus,
        progress: int,
        error_message: str | None = None,
    ) -> bool:
        raise NotImplementedError

    def save_outputs(
        self,
        job_id: str,
        repository_id: str,
        outputs: list[GeneratedOutput],
    ) -> int:
        raise NotImplementedError


class RepositoryLookup(Protocol):
    def get_repository(self, repository_id: str) -> RepositoryView | None:
        raise NotImplementedError
