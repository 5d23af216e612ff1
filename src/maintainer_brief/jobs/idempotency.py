"""Idempotency gate: snapshot fingerprints and recent-success lookup."""

from __future__ import annotations

import hashlib
import json
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol

from maintainer_brief.jobs.models import AnalysisDepth, JobCreate, JobView, TriggerKind
from maintainer_brief.storage.common import utc_now

_COMMIT_PATTERN = re.compile(r"^[0-9a-f]{6,64}$")
_FULL_DIGEST_LENGTHS = frozenset({40, 64})


@dataclass(slots=True)
class ReferenceCommitError(ValueError):
    """Reference commit is not a content-derived identifier."""

    message: str

    def __str__(self) -> str:
        return self.message


def normalize_reference_commit(value: str) -> str:
    """Return the lower-cased commit id, rejecting values that do not identify content.

    Accepts abbreviated or full hex object ids (6..64 chars). All-digit values
    shorter than a full digest are rejected: they are indistinguishable from
    epoch timestamps.
    """

    normalized = value.strip().lower()
    if not _COMMIT_PATTERN.fullmatch(normalized):
        raise ReferenceCommitError(
            f"Reference commit must be a hex commit id (6..64 chars), got {value!r}",
        )
    if normalized.isdigit() and len(normalized) not in _FULL_DIGEST_LENGTHS:
        raise ReferenceCommitError(
            f"Reference commit {value!r} looks like a timestamp, not a commit id",
        )
    return normalized


def compute_fingerprint(
    repository_id: str,
    branch: str,
    reference_commit: str,
    depth: AnalysisDepth | str,
) -> str:
    """SHA-256 hex digest over the logical request tuple.

    Components are JSON-encoded as a list so no separator inside a value can
    make two different tuples collide.
    """

    depth_value = depth.value if isinstance(depth, AnalysisDepth) else str(depth)
    encoded = json.dumps(
        [repository_id, branch, reference_commit, depth_value],
        ensure_ascii=False,
        separators=(",", ":"),
    )
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


class GateStore(Protocol):
    def find_recent_success(
        self,
        *,
        repository_id: str,
        fingerprint: str,
        since: datetime,
    ) -> JobView | None:
        raise NotImplementedError

    def create_job(self, payload: JobCreate) -> JobView:
        raise NotImplementedError


class IdempotencyGate:
    """Decides whether a requested analysis duplicates recent successful work."""

    def __init__(
        self,
        *,
        store: GateStore,
        window_hours: int = 24,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if window_hours <= 0:
            raise ValueError("window_hours must be > 0")
        self.store = store
        self.window_hours = window_hours
        self._clock = clock

    def find_recent_success(
        self,
        repository_id: str,
        fingerprint: str,
        window_hours: int | None = None,
    ) -> str | None:
        """Job id of the newest succeeded job with ``fingerprint`` inside the window."""

        hours = window_hours if window_hours is not None else self.window_hours
        since = self._clock() - timedelta(hours=hours)
        job = self.store.find_recent_success(
            repository_id=repository_id,
            fingerprint=fingerprint,
            since=since,
        )
        return job.job_id if job is not None else None

    def create_job(  # noqa: PLR0913
        self,
        repository_id: str,
        user_id: str,
        fingerprint: str,
        trigger: TriggerKind,
        *,
        branch: str,
        reference_commit: str,
        depth: AnalysisDepth,
    ) -> str:
        """Insert a queued job; callers check ``find_recent_success`` first."""

        job = self.store.create_job(
            JobCreate(
                repository_id=repository_id,
                user_id=user_id,
                fingerprint=fingerprint,
                trigger=trigger,
                branch=branch,
                reference_commit=reference_commit,
                depth=depth,
            ),
        )
        return job.job_id
