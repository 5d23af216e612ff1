"""Durable queue persisted in SQLite: enqueue, claim, retry with backoff, retention."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import NamedTuple

from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from maintainer_brief.queue.payloads import QueuePayload, dump_payload
from maintainer_brief.storage.alembic_runner import upgrade_head
from maintainer_brief.storage.common import (
    build_sqlite_engine,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from maintainer_brief.storage.sqlmodel_models import QueueEntry

logger = logging.getLogger(__name__)

_ERROR_LIMIT = 2_000


class QueueEntryStatus(str, Enum):
    """Delivery states of one queue entry."""

    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(slots=True)
class QueueEntryView:
    """Readable queue entry for the worker and CLI."""

    entry_id: str
    kind: str
    payload_json: str
    status: QueueEntryStatus
    attempt: int
    max_attempts: int
    run_after: datetime
    worker_id: str | None
    started_at: datetime | None
    heartbeat_at: datetime | None
    finished_at: datetime | None
    last_error: str | None
    created_at: datetime
    updated_at: datetime

    @property
    def attempts_left(self) -> int:
        return max(0, self.max_attempts - self.attempt)


class EnqueueResult(NamedTuple):
    entry: QueueEntryView
    created: bool


@dataclass(slots=True)
class RetentionPolicy:
    """How long and how many finished entries are kept."""

    keep_completed_age: timedelta = timedelta(hours=24)
    keep_completed_count: int = 100
    keep_failed_age: timedelta = timedelta(days=7)
    keep_failed_count: int = 1_000


@dataclass(slots=True)
class StaleRecovery:
    requeued: list[str]
    failed: list[str]


class DurableQueue:
    """At-least-once work queue backed by SQLModel + SQLite.

    Entries are keyed by a caller-chosen id; enqueueing an id that already
    exists is a no-op. A claimed entry stays ``active`` with a heartbeat until
    the worker completes, retries, or fails it. Entries whose heartbeat goes
    stale are redelivered while attempts remain.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        max_attempts: int = 3,
        busy_timeout_ms: int = 5_000,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.db_path = db_path
        self.max_attempts = max_attempts
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)
        self._clock = clock

    def close(self) -> None:
        self.engine.dispose()

    def __enter__(self) -> DurableQueue:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def init_schema(self) -> None:
        upgrade_head(self.db_path)

    def now(self) -> datetime:
        """Current time on the queue clock."""

        return self._clock()

    def enqueue(
        self,
        entry_id: str,
        payload: QueuePayload,
        *,
        max_attempts: int | None = None,
        delay: timedelta | None = None,
    ) -> EnqueueResult:
        """Add a waiting entry unless one with ``entry_id`` already exists."""

        now = self._clock()
        with Session(self.engine) as session:
            existing = session.get(QueueEntry, entry_id)
            if existing is not None:
                return EnqueueResult(entry=_to_entry_view(existing), created=False)
            row = QueueEntry(
                entry_id=entry_id,
                kind=payload.kind,
                payload_json=dump_payload(payload),
                status=QueueEntryStatus.WAITING.value,
                attempt=0,
                max_attempts=max_attempts or self.max_attempts,
                run_after=to_db_datetime(now + (delay or timedelta(0))),
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                existing = session.get(QueueEntry, entry_id)
                if existing is None:
                    raise
                return EnqueueResult(entry=_to_entry_view(existing), created=False)
            session.refresh(row)
            logger.info("Enqueued %s entry %s", payload.kind, entry_id)
            return EnqueueResult(entry=_to_entry_view(row), created=True)

    def claim_next(self, *, worker_id: str) -> QueueEntryView | None:
        """Atomically claim one entry ready for delivery."""

        while True:
            now = to_db_datetime(self._clock())
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(QueueEntry)
                    .where(
                        QueueEntry.status == QueueEntryStatus.WAITING.value,
                        col(QueueEntry.run_after) <= now,
                    )
                    .order_by(
                        col(QueueEntry.run_after).asc(),
                        col(QueueEntry.created_at).asc(),
                    )
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                result = session.exec(
                    sa_update(QueueEntry)
                    .where(
                        col(QueueEntry.entry_id) == candidate.entry_id,
                        col(QueueEntry.status) == QueueEntryStatus.WAITING.value,
                    )
                    .values(
                        status=QueueEntryStatus.ACTIVE.value,
                        attempt=candidate.attempt + 1,
                        worker_id=worker_id,
                        started_at=now,
                        heartbeat_at=now,
                        finished_at=None,
                        updated_at=now,
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                session.commit()
                claimed = session.get(QueueEntry, candidate.entry_id, populate_existing=True)
                if claimed is None:
                    continue
                return _to_entry_view(claimed)

    def touch(self, entry_id: str) -> bool:
        """Refresh the heartbeat of an active entry."""

        now = to_db_datetime(self._clock())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(QueueEntry)
                .where(
                    col(QueueEntry.entry_id) == entry_id,
                    col(QueueEntry.status) == QueueEntryStatus.ACTIVE.value,
                )
                .values(heartbeat_at=now, updated_at=now),
            )
            session.commit()
            return result.rowcount == 1

    def complete(self, entry_id: str) -> bool:
        return self._finish(entry_id, status=QueueEntryStatus.COMPLETED, error=None)

    def fail(self, entry_id: str, *, error: str) -> bool:
        """Move an active entry to ``failed`` with no further deliveries."""

        return self._finish(entry_id, status=QueueEntryStatus.FAILED, error=error)

    def schedule_retry(self, entry_id: str, *, run_after: datetime, error: str) -> bool:
        """Return an active entry to ``waiting`` for redelivery after ``run_after``."""

        now = to_db_datetime(self._clock())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(QueueEntry)
                .where(
                    col(QueueEntry.entry_id) == entry_id,
                    col(QueueEntry.status) == QueueEntryStatus.ACTIVE.value,
                )
                .values(
                    status=QueueEntryStatus.WAITING.value,
                    run_after=to_db_datetime(run_after),
                    worker_id=None,
                    heartbeat_at=None,
                    last_error=error[:_ERROR_LIMIT],
                    updated_at=now,
                ),
            )
            session.commit()
            return result.rowcount == 1

    def remove(self, entry_id: str) -> bool:
        """Delete an entry that has not been picked up by a worker yet."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(QueueEntry).where(
                    col(QueueEntry.entry_id) == entry_id,
                    col(QueueEntry.status) == QueueEntryStatus.WAITING.value,
                ),
            )
            session.commit()
            removed = result.rowcount == 1
        if removed:
            logger.info("Removed waiting queue entry %s", entry_id)
        return removed

    def recover_stale(self, *, stale_after: timedelta) -> StaleRecovery:
        """Redeliver active entries whose worker stopped heartbeating."""

        if stale_after.total_seconds() <= 0:
            raise ValueError("stale_after must be > 0")
        cutoff = to_db_datetime(self._clock() - stale_after)
        recovery = StaleRecovery(requeued=[], failed=[])
        with Session(self.engine) as session:
            stale_rows = session.exec(
                select(QueueEntry).where(
                    QueueEntry.status == QueueEntryStatus.ACTIVE.value,
                    col(QueueEntry.heartbeat_at) < cutoff,
                ),
            ).all()
            stale = [(row.entry_id, row.attempt, row.max_attempts) for row in stale_rows]

        for entry_id, attempt, max_attempts in stale:
            message = f"Worker heartbeat stale for more than {int(stale_after.total_seconds())}s"
            if attempt < max_attempts:
                if self.schedule_retry(entry_id, run_after=self._clock(), error=message):
                    recovery.requeued.append(entry_id)
                    logger.warning("Requeued stale queue entry %s (attempt %d)", entry_id, attempt)
            elif self.fail(entry_id, error=message):
                recovery.failed.append(entry_id)
                logger.warning("Failed stale queue entry %s after %d attempts", entry_id, attempt)
        return recovery

    def apply_retention(self, policy: RetentionPolicy) -> int:
        """Drop finished entries beyond the age and count limits."""

        removed = 0
        removed += self._trim(
            status=QueueEntryStatus.COMPLETED,
            max_age=policy.keep_completed_age,
            max_count=policy.keep_completed_count,
        )
        removed += self._trim(
            status=QueueEntryStatus.FAILED,
            max_age=policy.keep_failed_age,
            max_count=policy.keep_failed_count,
        )
        return removed

    def get(self, entry_id: str) -> QueueEntryView | None:
        with Session(self.engine) as session:
            row = session.get(QueueEntry, entry_id)
            return _to_entry_view(row) if row is not None else None

    def list_entries(
        self,
        *,
        status: QueueEntryStatus | None = None,
        limit: int = 50,
    ) -> list[QueueEntryView]:
        with Session(self.engine) as session:
            statement = select(QueueEntry).order_by(col(QueueEntry.created_at).desc()).limit(limit)
            if status is not None:
                statement = statement.where(QueueEntry.status == status.value)
            rows = session.exec(statement).all()
        return [_to_entry_view(row) for row in rows]

    def stats(self) -> dict[QueueEntryStatus, int]:
        """Entry counts per status, zero-filled."""

        counts = {status: 0 for status in QueueEntryStatus}
        with Session(self.engine) as session:
            rows = session.exec(
                select(QueueEntry.status, func.count()).group_by(QueueEntry.status),
            ).all()
        for status, count in rows:
            counts[QueueEntryStatus(status)] = int(count)
        return counts

    def _finish(self, entry_id: str, *, status: QueueEntryStatus, error: str | None) -> bool:
        now = to_db_datetime(self._clock())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(QueueEntry)
                .where(
                    col(QueueEntry.entry_id) == entry_id,
                    col(QueueEntry.status) == QueueEntryStatus.ACTIVE.value,
                )
                .values(
                    status=status.value,
                    finished_at=now,
                    heartbeat_at=now,
                    last_error=error[:_ERROR_LIMIT] if error is not None else None,
                    updated_at=now,
                ),
            )
            session.commit()
            return result.rowcount == 1

    def _trim(self, *, status: QueueEntryStatus, max_age: timedelta, max_count: int) -> int:
        cutoff = to_db_datetime(self._clock() - max_age)
        with Session(self.engine) as session:
            expired = session.exec(
                sa_delete(QueueEntry).where(
                    col(QueueEntry.status) == status.value,
                    col(QueueEntry.finished_at) < cutoff,
                ),
            ).rowcount
            keep_ids = (
                select(QueueEntry.entry_id)
                .where(QueueEntry.status == status.value)
                .order_by(col(QueueEntry.finished_at).desc())
                .limit(max(0, max_count))
            )
            overflow = session.exec(
                sa_delete(QueueEntry).where(
                    col(QueueEntry.status) == status.value,
                    col(QueueEntry.entry_id).not_in(keep_ids),
                ),
            ).rowcount
            session.commit()
        return int(expired or 0) + int(overflow or 0)


def _to_entry_view(row: QueueEntry) -> QueueEntryView:
    return QueueEntryView(
        entry_id=row.entry_id,
        kind=row.kind,
        payload_json=row.payload_json,
        status=QueueEntryStatus(row.status),
        attempt=row.attempt,
        max_attempts=row.max_attempts,
        run_after=to_utc_aware_datetime(row.run_after),
        worker_id=row.worker_id,
        started_at=optional_utc(row.started_at),
        heartbeat_at=optional_utc(row.heartbeat_at),
        finished_at=optional_utc(row.finished_at),
        last_error=row.last_error,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
