"""Domain models for analysis jobs, tracked repositories, and generated outputs."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    """Analysis job lifecycle states."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in {JobStatus.SUCCEEDED, JobStatus.FAILED}


class TriggerKind(str, Enum):
    MANUAL = "manual"
    SCHEDULE = "schedule"


class RecurrencePolicy(str, Enum):
    """Per-repository automatic re-analysis cadence."""

    MANUAL = "manual"
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"


class AnalysisDepth(str, Enum):
    FAST = "fast"
    DEEP = "deep"


class OutputTone(str, Enum):
    CONCISE = "concise"
    DETAILED = "detailed"


class OutputKind(str, Enum):
    """Fixed set of outputs produced for every successful analysis."""

    MAINTAINER_BRIEF = "maintainer_brief"
    CONTRIBUTOR_QUICKSTART = "contributor_quickstart"
    RELEASE_SUMMARY = "release_summary"
    GOOD_FIRST_ISSUES = "good_first_issues"


PROGRESS_STARTED = 0
PROGRESS_FETCHED = 25
PROGRESS_GENERATED = 85
PROGRESS_PERSISTED = 95
PROGRESS_DONE = 100


@dataclass(slots=True)
class RepositoryCreate:
    """Input payload for registering a tracked repository."""

    owner: str
    name: str
    repository_id: str | None = None
    user_id: str | None = None
    branch: str = "main"
    depth: AnalysisDepth = AnalysisDepth.FAST
    tone: OutputTone = OutputTone.CONCISE
    ignore_paths: list[str] = field(default_factory=list)
    recurrence: RecurrencePolicy = RecurrencePolicy.MANUAL
    notify_email: str | None = None
    slack_webhook_url: str | None = None


@dataclass(slots=True)
class RepositoryView:
    """Readable tracked repository view for scheduler, worker, and CLI."""

    repository_id: str
    user_id: str
    owner: str
    name: str
    branch: str
    depth: AnalysisDepth
    tone: OutputTone
    ignore_paths: list[str]
    recurrence: RecurrencePolicy
    active: bool
    notify_email: str | None
    slack_webhook_url: str | None
    created_at: datetime
    updated_at: datetime

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


@dataclass(slots=True)
class JobCreate:
    """Input payload for creating a queued analysis job."""

    repository_id: str
    user_id: str
    fingerprint: str
    trigger: TriggerKind
    branch: str
    reference_commit: str
    depth: AnalysisDepth
    job_id: str | None = None


@dataclass(slots=True)
class JobView:
    """Readable job view for worker logic and polling clients."""

    job_id: str
    repository_id: str
    user_id: str
    fingerprint: str
    trigger: TriggerKind
    branch: str
    reference_commit: str
    depth: AnalysisDepth
    status: JobStatus
    progress: int
    error_message: str | None
    created_at: datetime
    started_at: datetime | None
    finished_at: datetime | None
    updated_at: datetime


@dataclass(slots=True)
class JobStatusView:
    """Read-only projection consumed by polling clients."""

    id: str
    status: JobStatus
    progress: int
    started_at: datetime | None
    finished_at: datetime | None
    error_message: str | None

    @classmethod
    def from_job(cls, job: JobView) -> JobStatusView:
        return cls(
            id=job.job_id,
            status=job.status,
            progress=job.progress,
            started_at=job.started_at,
            finished_at=job.finished_at,
            error_message=job.error_message,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "progress": self.progress,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
            "errorMessage": self.error_message,
        }


@dataclass(slots=True)
class JobEventView:
    """Job event entry for audit trail."""

    event_id: int
    job_id: str
    event_type: str
    status_from: JobStatus | None
    status_to: JobStatus | None
    progress: int | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class JobDetails:
    """Job details with event stream."""

    job: JobView
    events: list[JobEventView]


@dataclass(slots=True)
class OutputSources:
    """Source references a generated output was derived from."""

    commits: list[str] = field(default_factory=list)
    prs: list[int] = field(default_factory=list)
    issues: list[int] = field(default_factory=list)

    def to_dict(self) -> dict[str, list[Any]]:
        return {"commits": list(self.commits), "prs": list(self.prs), "issues": list(self.issues)}

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> OutputSources:
        return cls(
            commits=[str(item) for item in payload.get("commits", [])],
            prs=[int(item) for item in payload.get("prs", [])],
            issues=[int(item) for item in payload.get("issues", [])],
        )


@dataclass(slots=True)
class GeneratedOutput:
    """One named output produced by the generation stage."""

    kind: OutputKind
    content: str
    confidence: float
    sources: OutputSources


@dataclass(slots=True)
class OutputView:
    """Persisted output owned by a job."""

    output_id: int
    job_id: str
    repository_id: str
    kind: OutputKind
    content: str
    confidence: float
    sources: OutputSources
    created_at: datetime
