"""Initial schema: tracked repositories, analysis jobs, outputs, and queue entries."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261012_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "tracked_repositories",
        sa.Column("repository_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), server_default="default_user", nullable=False),
        sa.Column("owner", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("branch", sa.String(), server_default="main", nullable=False),
        sa.Column("depth", sa.String(), server_default="fast", nullable=False),
        sa.Column("tone", sa.String(), server_default="concise", nullable=False),
        sa.Column("ignore_paths_json", sa.Text(), server_default="[]", nullable=False),
        sa.Column("recurrence", sa.String(), server_default="manual", nullable=False),
        sa.Column("active", sa.Boolean(), server_default=sa.text("1"), nullable=False),
        sa.Column("notify_email", sa.String(), nullable=True),
        sa.Column("slack_webhook_url", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("repository_id"),
        sa.UniqueConstraint("owner", "name", name="uq_tracked_repositories_owner_name"),
    )
    op.create_index(
        "ix_tracked_repositories_user_id",
        "tracked_repositories",
        ["user_id"],
        unique=False,
    )
    op.create_index(
        "ix_tracked_repositories_recurrence",
        "tracked_repositories",
        ["recurrence"],
        unique=False,
    )

    op.create_table(
        "analysis_jobs",
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("repository_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), server_default="default_user", nullable=False),
        sa.Column("fingerprint", sa.String(), nullable=False),
        sa.Column("trigger", sa.String(), nullable=False),
        sa.Column("branch", sa.String(), nullable=False),
        sa.Column("reference_commit", sa.String(), nullable=False),
        sa.Column("depth", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("progress", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["repository_id"], ["tracked_repositories.repository_id"]),
        sa.PrimaryKeyConstraint("job_id"),
    )
    op.create_index(
        "ix_analysis_jobs_repository_id",
        "analysis_jobs",
        ["repository_id"],
        unique=False,
    )
    op.create_index("ix_analysis_jobs_user_id", "analysis_jobs", ["user_id"], unique=False)
    op.create_index(
        "ix_analysis_jobs_fingerprint",
        "analysis_jobs",
        ["fingerprint"],
        unique=False,
    )
    op.create_index("ix_analysis_jobs_status", "analysis_jobs", ["status"], unique=False)
    op.create_index(
        "idx_analysis_jobs_dedup",
        "analysis_jobs",
        ["repository_id", "fingerprint", "status", "created_at"],
        unique=False,
    )
    op.create_index(
        "idx_analysis_jobs_repository_time",
        "analysis_jobs",
        ["repository_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "analysis_job_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("progress", sa.Integer(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["analysis_jobs.job_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_analysis_job_events_job_id",
        "analysis_job_events",
        ["job_id"],
        unique=False,
    )
    op.create_index(
        "ix_analysis_job_events_event_type",
        "analysis_job_events",
        ["event_type"],
        unique=False,
    )
    op.create_index(
        "idx_analysis_job_events_job_time",
        "analysis_job_events",
        ["job_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "analysis_outputs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("repository_id", sa.String(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("confidence", sa.Float(), nullable=False),
        sa.Column("sources_json", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["analysis_jobs.job_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("job_id", "kind", name="uq_analysis_outputs_job_kind"),
    )
    op.create_index("ix_analysis_outputs_job_id", "analysis_outputs", ["job_id"], unique=False)
    op.create_index(
        "ix_analysis_outputs_repository_id",
        "analysis_outputs",
        ["repository_id"],
        unique=False,
    )

    op.create_table(
        "queue_entries",
        sa.Column("entry_id", sa.String(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("attempt", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("max_attempts", sa.Integer(), server_default=sa.text("3"), nullable=False),
        sa.Column("run_after", sa.DateTime(timezone=True), nullable=False),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("heartbeat_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("entry_id"),
    )
    op.create_index("ix_queue_entries_kind", "queue_entries", ["kind"], unique=False)
    op.create_index(
        "idx_queue_entries_ready",
        "queue_entries",
        ["status", "run_after", "created_at"],
        unique=False,
    )
    op.create_index(
        "idx_queue_entries_retention",
        "queue_entries",
        ["status", "finished_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("idx_queue_entries_retention", table_name="queue_entries")
    op.drop_index("idx_queue_entries_ready", table_name="queue_entries")
    op.drop_index("ix_queue_entries_kind", table_name="queue_entries")
    op.drop_table("queue_entries")

    op.drop_index("ix_analysis_outputs_repository_id", table_name="analysis_outputs")
    op.drop_index("ix_analysis_outputs_job_id", table_name="analysis_outputs")
    op.drop_table("analysis_outputs")

    op.drop_index("idx_analysis_job_events_job_time", table_name="analysis_job_events")
    op.drop_index("ix_analysis_job_events_event_type", table_name="analysis_job_events")
    op.drop_index("ix_analysis_job_events_job_id", table_name="analysis_job_events")
    op.drop_table("analysis_job_events")

    op.drop_index("idx_analysis_jobs_repository_time", table_name="analysis_jobs")
    op.drop_index("idx_analysis_jobs_dedup", table_name="analysis_jobs")
    op.drop_index("ix_analysis_jobs_status", table_name="analysis_jobs")
    op.drop_index("ix_analysis_jobs_fingerprint", table_name="analysis_jobs")
    op.drop_index("ix_analysis_jobs_user_id", table_name="analysis_jobs")
    op.drop_index("ix_analysis_jobs_repository_id", table_name="analysis_jobs")
    op.drop_table("analysis_jobs")

    op.drop_index("ix_tracked_repositories_recurrence", table_name="tracked_repositories")
    op.drop_index("ix_tracked_repositories_user_id", table_name="tracked_repositories")
    op.drop_table("tracked_repositories")
