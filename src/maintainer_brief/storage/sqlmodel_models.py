"""SQLModel ORM tables for repositories, analysis jobs, outputs, and the durable queue."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint, text
from sqlmodel import Field, SQLModel

DEFAULT_USER_ID = "default_user"


class TrackedRepository(SQLModel, table=True):
    __tablename__ = "tracked_repositories"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("owner", "name", name="uq_tracked_repositories_owner_name"),
    )

    repository_id: str = Field(primary_key=True)
    user_id: str = Field(default=DEFAULT_USER_ID, index=True)
    owner: str
    name: str
    branch: str = "main"
    depth: str = "fast"
    tone: str = "concise"
    ignore_paths_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    recurrence: str = Field(default="manual", index=True)
    active: bool = Field(default=True, sa_column_kwargs={"server_default": text("1")})
    notify_email: str | None = None
    slack_webhook_url: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AnalysisJob(SQLModel, table=True):
    __tablename__ = "analysis_jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index(
            "idx_analysis_jobs_dedup",
            "repository_id",
            "fingerprint",
            "status",
            "created_at",
        ),
        Index("idx_analysis_jobs_repository_time", "repository_id", "created_at"),
    )

    job_id: str = Field(primary_key=True)
    repository_id: str = Field(
        sa_column=Column(
            ForeignKey("tracked_repositories.repository_id"),
            nullable=False,
            index=True,
        ),
    )
    user_id: str = Field(default=DEFAULT_USER_ID, index=True)
    fingerprint: str = Field(index=True)
    trigger: str
    branch: str
    reference_commit: str
    depth: str
    status: str = Field(index=True)
    progress: int = 0
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AnalysisJobEvent(SQLModel, table=True):
    __tablename__ = "analysis_job_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_analysis_job_events_job_time", "job_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("analysis_jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    progress: int | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AnalysisOutputRow(SQLModel, table=True):
    __tablename__ = "analysis_outputs"  # type: ignore[bad-override]
    __table_args__ = (UniqueConstraint("job_id", "kind", name="uq_analysis_outputs_job_kind"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("analysis_jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    repository_id: str = Field(index=True)
    kind: str
    content: str = Field(sa_column=Column(Text, nullable=False))
    confidence: float
    sources_json: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class QueueEntry(SQLModel, table=True):
    __tablename__ = "queue_entries"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_queue_entries_ready", "status", "run_after", "created_at"),
        Index("idx_queue_entries_retention", "status", "finished_at"),
    )

    entry_id: str = Field(primary_key=True)
    kind: str = Field(index=True)
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    status: str
    attempt: int = 0
    max_attempts: int = 3
    run_after: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    worker_id: str | None = None
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    heartbeat_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    last_error: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
