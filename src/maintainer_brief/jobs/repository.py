"""Job store: tracked repositories, analysis jobs, their event trail, and outputs."""

from __future__ import annotations

import json
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, col, select

from maintainer_brief.jobs.models import (
    PROGRESS_DONE,
    AnalysisDepth,
    GeneratedOutput,
    JobCreate,
    JobDetails,
    JobEventView,
    JobStatus,
    JobView,
    OutputKind,
    OutputSources,
    OutputTone,
    OutputView,
    RecurrencePolicy,
    RepositoryCreate,
    RepositoryView,
    TriggerKind,
)
from maintainer_brief.pipeline.contracts import PersistenceError
from maintainer_brief.storage.alembic_runner import upgrade_head
from maintainer_brief.storage.common import (
    build_sqlite_engine,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from maintainer_brief.storage.sqlmodel_models import (
    DEFAULT_USER_ID,
    AnalysisJob,
    AnalysisJobEvent,
    AnalysisOutputRow,
    TrackedRepository,
)

_ACTIVE_STATUSES = (JobStatus.QUEUED.value, JobStatus.RUNNING.value)


class JobStore:
    """Persistence facade backed by SQLModel + SQLite.

    Every job mutation is a conditional update scoped to one job id; its
    ``rowcount`` decides whether the transition was accepted. Terminal jobs
    never change again.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        busy_timeout_ms: int = 5_000,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)
        self._clock = clock

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def __enter__(self) -> JobStore:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    # -- tracked repositories -------------------------------------------------

    def add_repository(self, payload: RepositoryCreate) -> RepositoryView:
        """Register a repository for analysis."""

        now = self._clock()
        row = TrackedRepository(
            repository_id=payload.repository_id or str(uuid4()),
            user_id=payload.user_id or DEFAULT_USER_ID,
            owner=payload.owner,
            name=payload.name,
            branch=payload.branch,
            depth=payload.depth.value,
            tone=payload.tone.value,
            ignore_paths_json=json.dumps(list(payload.ignore_paths)),
            recurrence=payload.recurrence.value,
            active=True,
            notify_email=payload.notify_email,
            slack_webhook_url=payload.slack_webhook_url,
            created_at=to_db_datetime(now),
            updated_at=to_db_datetime(now),
        )
        with Session(self.engine) as session:
            session.add(row)
            try:
                session.commit()
            except IntegrityError as error:
                session.rollback()
                raise ValueError(
                    f"Repository already tracked: {payload.owner}/{payload.name}",
                ) from error
            session.refresh(row)
            return _to_repository_view(row)

    def get_repository(self, repository_id: str) -> RepositoryView | None:
        with Session(self.engine) as session:
            row = session.get(TrackedRepository, repository_id)
            return _to_repository_view(row) if row is not None else None

    def list_repositories(
        self,
        *,
        recurrence: RecurrencePolicy | None = None,
        active_only: bool = False,
    ) -> list[RepositoryView]:
        with Session(self.engine) as session:
            statement = select(TrackedRepository).order_by(
                col(TrackedRepository.owner).asc(),
                col(TrackedRepository.name).asc(),
            )
            if recurrence is not None:
                statement = statement.where(TrackedRepository.recurrence == recurrence.value)
            if active_only:
                statement = statement.where(col(TrackedRepository.active).is_(True))
            rows = session.exec(statement).all()
        return [_to_repository_view(row) for row in rows]

    def list_scheduled_repositories(self) -> list[RepositoryView]:
        """Active repositories whose recurrence policy is not ``manual``."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(TrackedRepository)
                .where(
                    col(TrackedRepository.active).is_(True),
                    TrackedRepository.recurrence != RecurrencePolicy.MANUAL.value,
                )
                .order_by(col(TrackedRepository.created_at).asc()),
            ).all()
        return [_to_repository_view(row) for row in rows]

    def set_recurrence(self, repository_id: str, recurrence: RecurrencePolicy) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(TrackedRepository)
                .where(col(TrackedRepository.repository_id) == repository_id)
                .values(
                    recurrence=recurrence.value,
                    updated_at=to_db_datetime(self._clock()),
                ),
            )
            session.commit()
            return result.rowcount == 1

    # -- jobs -----------------------------------------------------------------

    def create_job(self, payload: JobCreate) -> JobView:
        """Insert a job in ``queued`` state. No deduplication happens here."""

        now = self._clock()
        job_id = payload.job_id or str(uuid4())
        row = AnalysisJob(
            job_id=job_id,
            repository_id=payload.repository_id,
            user_id=payload.user_id,
            fingerprint=payload.fingerprint,
            trigger=payload.trigger.value,
            branch=payload.branch,
            reference_commit=payload.reference_commit,
            depth=payload.depth.value,
            status=JobStatus.QUEUED.value,
            progress=0,
            created_at=to_db_datetime(now),
            updated_at=to_db_datetime(now),
        )
        with Session(self.engine) as session:
            session.add(row)
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="created",
                status_from=None,
                status_to=JobStatus.QUEUED,
                progress=0,
                details={
                    "trigger": payload.trigger.value,
                    "fingerprint": payload.fingerprint,
                    "reference_commit": payload.reference_commit,
                },
            )
            try:
                session.commit()
            except SQLAlchemyError as error:
                session.rollback()
                raise PersistenceError(f"Failed to create job: {error}") from error
            session.refresh(row)
            return _to_job_view(row)

    def get_job(self, job_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.get(AnalysisJob, job_id)
            return _to_job_view(row) if row is not None else None

    def find_recent_success(
        self,
        *,
        repository_id: str,
        fingerprint: str,
        since: datetime,
    ) -> JobView | None:
        """Most recent succeeded job with this fingerprint created after ``since``."""

        with Session(self.engine) as session:
            row = session.exec(
                select(AnalysisJob)
                .where(
                    AnalysisJob.repository_id == repository_id,
                    AnalysisJob.fingerprint == fingerprint,
                    AnalysisJob.status == JobStatus.SUCCEEDED.value,
                    col(AnalysisJob.created_at) > to_db_datetime(since),
                )
                .order_by(col(AnalysisJob.created_at).desc())
                .limit(1),
            ).one_or_none()
            return _to_job_view(row) if row is not None else None

    def latest_job_for_repository(self, repository_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(AnalysisJob)
                .where(AnalysisJob.repository_id == repository_id)
                .order_by(col(AnalysisJob.created_at).desc())
                .limit(1),
            ).one_or_none()
            return _to_job_view(row) if row is not None else None

    def list_jobs(
        self,
        *,
        repository_id: str | None = None,
        status: JobStatus | None = None,
        limit: int = 50,
    ) -> list[JobView]:
        """List recent jobs, optionally filtered."""

        with Session(self.engine) as session:
            statement = select(AnalysisJob).order_by(col(AnalysisJob.created_at).desc()).limit(limit)
            if repository_id is not None:
                statement = statement.where(AnalysisJob.repository_id == repository_id)
            if status is not None:
                statement = statement.where(AnalysisJob.status == status.value)
            rows = session.exec(statement).all()
        return [_to_job_view(row) for row in rows]

    def count_jobs(
        self,
        *,
        repository_id: str | None = None,
        status: JobStatus | None = None,
    ) -> int:
        with Session(self.engine) as session:
            statement = select(func.count()).select_from(AnalysisJob)
            if repository_id is not None:
                statement = statement.where(AnalysisJob.repository_id == repository_id)
            if status is not None:
                statement = statement.where(AnalysisJob.status == status.value)
            return int(session.exec(statement).one())

    def update_job_status(
        self,
        job_id: str,
        *,
        status: JobStatus,
        progress: int,
        error_message: str | None = None,
    ) -> bool:
        """Apply one lifecycle transition; ``False`` when the job is terminal or unknown.

        ``running`` is accepted from ``queued`` or ``running`` and never lowers
        progress. ``succeeded`` is accepted from ``running`` only and pins
        progress to 100. ``failed`` is accepted from any non-terminal state and
        keeps the last known progress and drops any outputs an earlier delivery
        persisted, so a failed job never exposes an output set.
        """

        if not 0 <= progress <= PROGRESS_DONE:
            raise ValueError(f"progress must be within 0..100, got {progress}")
        now = to_db_datetime(self._clock())
        statement = sa_update(AnalysisJob).where(col(AnalysisJob.job_id) == job_id)
        if status is JobStatus.RUNNING:
            statement = statement.where(col(AnalysisJob.status).in_(_ACTIVE_STATUSES)).values(
                status=JobStatus.RUNNING.value,
                progress=func.max(col(AnalysisJob.progress), progress),
                started_at=func.coalesce(col(AnalysisJob.started_at), now),
                updated_at=now,
            )
        elif status is JobStatus.SUCCEEDED:
            statement = statement.where(
                col(AnalysisJob.status) == JobStatus.RUNNING.value,
            ).values(
                status=JobStatus.SUCCEEDED.value,
                progress=PROGRESS_DONE,
                error_message=None,
                finished_at=now,
                updated_at=now,
            )
        elif status is JobStatus.FAILED:
            statement = statement.where(col(AnalysisJob.status).in_(_ACTIVE_STATUSES)).values(
                status=JobStatus.FAILED.value,
                progress=func.max(col(AnalysisJob.progress), progress),
                error_message=error_message or "Analysis failed",
                finished_at=now,
                updated_at=now,
            )
        else:
            raise ValueError(f"Unsupported status transition target: {status.value}")

        with Session(self.engine) as session:
            previous = session.exec(
                select(AnalysisJob.status).where(AnalysisJob.job_id == job_id),
            ).one_or_none()
            try:
                result = session.exec(statement)
                if result.rowcount != 1:
                    session.rollback()
                    return False
                stored_progress = session.exec(
                    select(AnalysisJob.progress).where(AnalysisJob.job_id == job_id),
                ).one()
                details: dict[str, object] = {}
                if error_message and status is JobStatus.FAILED:
                    details["error_message"] = error_message
                if status is JobStatus.FAILED:
                    discarded = session.exec(
                        sa_delete(AnalysisOutputRow).where(col(AnalysisOutputRow.job_id) == job_id),
                    ).rowcount
                    if discarded:
                        details["outputs_discarded"] = discarded
                previous_status = JobStatus(previous) if previous is not None else None
                self._add_event(
                    session=session,
                    job_id=job_id,
                    event_type=_event_type_for(status=status, previous=previous_status),
                    status_from=previous_status,
                    status_to=status,
                    progress=stored_progress,
                    details=details,
                )
                session.commit()
            except SQLAlchemyError as error:
                session.rollback()
                raise PersistenceError(
                    f"Failed to update job {job_id} to {status.value}: {error}",
                ) from error
            return True

    def cancel_queued_job(self, job_id: str, *, reason: str = "Canceled before execution") -> bool:
        """Fail a job that never started so pollers see a terminal state."""

        now = to_db_datetime(self._clock())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(AnalysisJob)
                .where(
                    col(AnalysisJob.job_id) == job_id,
                    col(AnalysisJob.status) == JobStatus.QUEUED.value,
                )
                .values(
                    status=JobStatus.FAILED.value,
                    error_message=reason,
                    finished_at=now,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="canceled",
                status_from=JobStatus.QUEUED,
                status_to=JobStatus.FAILED,
                progress=0,
                details={"reason": reason},
            )
            session.commit()
            return True

    def get_job_details(self, job_id: str) -> JobDetails | None:
        """Return job details with event stream."""

        with Session(self.engine) as session:
            job = session.get(AnalysisJob, job_id)
            if job is None:
                return None
            event_rows = session.exec(
                select(AnalysisJobEvent)
                .where(AnalysisJobEvent.job_id == job_id)
                .order_by(col(AnalysisJobEvent.id).asc()),
            ).all()
            job_view = _to_job_view(job)

        events: list[JobEventView] = []
        for row in event_rows:
            details = {}
            if row.details_json:
                parsed = json.loads(row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                JobEventView(
                    event_id=row.id or 0,
                    job_id=row.job_id,
                    event_type=row.event_type,
                    status_from=JobStatus(row.status_from) if row.status_from else None,
                    status_to=JobStatus(row.status_to) if row.status_to else None,
                    progress=row.progress,
                    created_at=to_utc_aware_datetime(row.created_at),
                    details=details,
                ),
            )
        return JobDetails(job=job_view, events=events)

    # -- outputs --------------------------------------------------------------

    def save_outputs(
        self,
        job_id: str,
        repository_id: str,
        outputs: list[GeneratedOutput],
    ) -> int:
        """Replace the job's output set in one transaction: all outputs or none."""

        kinds = [output.kind for output in outputs]
        if len(set(kinds)) != len(kinds):
            raise PersistenceError(f"Duplicate output kinds for job {job_id}")
        now = to_db_datetime(self._clock())
        with Session(self.engine) as session:
            try:
                session.exec(
                    sa_delete(AnalysisOutputRow).where(col(AnalysisOutputRow.job_id) == job_id),
                )
                for output in outputs:
                    session.add(
                        AnalysisOutputRow(
                            job_id=job_id,
                            repository_id=repository_id,
                            kind=output.kind.value,
                            content=output.content,
                            confidence=output.confidence,
                            sources_json=json.dumps(output.sources.to_dict(), sort_keys=True),
                            created_at=now,
                        ),
                    )
                session.commit()
            except SQLAlchemyError as error:
                session.rollback()
                raise PersistenceError(
                    f"Failed to persist outputs for job {job_id}: {error}",
                ) from error
        return len(outputs)

    def list_outputs(self, job_id: str) -> list[OutputView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(AnalysisOutputRow)
                .where(AnalysisOutputRow.job_id == job_id)
                .order_by(col(AnalysisOutputRow.id).asc()),
            ).all()
        return [
            OutputView(
                output_id=row.id or 0,
                job_id=row.job_id,
                repository_id=row.repository_id,
                kind=OutputKind(row.kind),
                content=row.content,
                confidence=row.confidence,
                sources=OutputSources.from_dict(json.loads(row.sources_json)),
                created_at=to_utc_aware_datetime(row.created_at),
            )
            for row in rows
        ]

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        event_type: str,
        status_from: JobStatus | None,
        status_to: JobStatus | None,
        progress: int | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            AnalysisJobEvent(
                job_id=job_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                progress=progress,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=to_db_datetime(self._clock()),
            ),
        )


def _event_type_for(*, status: JobStatus, previous: JobStatus | None) -> str:
    if status is JobStatus.RUNNING:
        return "started" if previous is JobStatus.QUEUED else "progress"
    return status.value


def _to_repository_view(row: TrackedRepository) -> RepositoryView:
    ignore_paths = json.loads(row.ignore_paths_json or "[]")
    return RepositoryView(
        repository_id=row.repository_id,
        user_id=row.user_id,
        owner=row.owner,
        name=row.name,
        branch=row.branch,
        depth=AnalysisDepth(row.depth),
        tone=OutputTone(row.tone),
        ignore_paths=[str(item) for item in ignore_paths],
        recurrence=RecurrencePolicy(row.recurrence),
        active=bool(row.active),
        notify_email=row.notify_email,
        slack_webhook_url=row.slack_webhook_url,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_job_view(row: AnalysisJob) -> JobView:
    return JobView(
        job_id=row.job_id,
        repository_id=row.repository_id,
        user_id=row.user_id,
        fingerprint=row.fingerprint,
        trigger=TriggerKind(row.trigger),
        branch=row.branch,
        reference_commit=row.reference_commit,
        depth=AnalysisDepth(row.depth),
        status=JobStatus(row.status),
        progress=row.progress,
        error_message=row.error_message,
        created_at=to_utc_aware_datetime(row.created_at),
        started_at=optional_utc(row.started_at),
        finished_at=optional_utc(row.finished_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
