"""Shared test fixtures and in-memory collaborators."""

from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from maintainer_brief.jobs.idempotency import IdempotencyGate
from maintainer_brief.jobs.models import (
    AnalysisDepth,
    GeneratedOutput,
    OutputKind,
    OutputSources,
    OutputTone,
    RepositoryCreate,
    RepositoryView,
)
from maintainer_brief.jobs.repository import JobStore
from maintainer_brief.jobs.services import AnalysisService
from maintainer_brief.pipeline.contracts import (
    CommitInfo,
    NotificationPayload,
    RepositorySnapshot,
)
from maintainer_brief.queue.repository import DurableQueue

COMMIT_SHA = "abc123"


class FrozenClock:
    """Manually advanced UTC clock shared by stores under test."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


def make_snapshot(
    *,
    owner: str = "acme",
    repo: str = "widgets",
    commits: int = 12,
    depth: AnalysisDepth = AnalysisDepth.FAST,
) -> RepositorySnapshot:
    return RepositorySnapshot(
        owner=owner,
        repo=repo,
        branch="main",
        depth=depth,
        commits=[
            CommitInfo(sha=f"{index:040x}", message=f"commit {index}", author="dev")
            for index in range(commits)
        ],
        readme="# Widgets",
    )


class FakeFetcher:
    def __init__(
        self,
        snapshot: RepositorySnapshot | None = None,
        error: Exception | None = None,
        *,
        failures: list[Exception] | None = None,
    ) -> None:
        self.snapshot = snapshot or make_snapshot()
        self.error = error
        # raised one per call before the snapshot is returned
        self.failures = list(failures or [])
        self.calls: list[tuple[str, str, str, AnalysisDepth, list[str]]] = []

    def fetch_snapshot(self, owner, repo, branch, depth, ignore_paths):
        self.calls.append((owner, repo, branch, depth, list(ignore_paths)))
        if self.failures:
            raise self.failures.pop(0)
        if self.error is not None:
            raise self.error
        return self.snapshot


class FakeGenerator:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.calls = 0

    def generate(self, snapshot: RepositorySnapshot, tone: OutputTone) -> list[GeneratedOutput]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return [
            GeneratedOutput(
                kind=kind,
                content=f"{kind.value} for {snapshot.full_name} ({tone.value})",
                confidence=0.7,
                sources=OutputSources(commits=[commit.sha for commit in snapshot.commits[:3]]),
            )
            for kind in OutputKind
        ]


class FakeNotifier:
    def __init__(self, failing_channels: tuple[str, ...] = ()) -> None:
        self.failing_channels = failing_channels
        self.sent: list[tuple[str, NotificationPayload]] = []
        self._lock = threading.Lock()

    def notify(self, channel: str, payload: NotificationPayload) -> None:
        if channel in self.failing_channels:
            raise RuntimeError(f"{channel} unavailable")
        with self._lock:
            self.sent.append((channel, payload))


class FakeCommits:
    def __init__(self, sha: str = "0123456789abcdef0123456789abcdef01234567") -> None:
        self.sha = sha
        self.calls: list[tuple[str, str, str]] = []

    def latest_commit_sha(self, owner: str, repo: str, branch: str) -> str:
        self.calls.append((owner, repo, branch))
        return self.sha


@pytest.fixture()
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "maintainer_brief.db"


@pytest.fixture()
def store(db_path: Path, clock: FrozenClock):
    job_store = JobStore(db_path, clock=clock)
    job_store.init_schema()
    yield job_store
    job_store.close()


@pytest.fixture()
def queue(db_path: Path, clock: FrozenClock, store: JobStore):
    durable_queue = DurableQueue(db_path, clock=clock)
    yield durable_queue
    durable_queue.close()


@pytest.fixture()
def service(store: JobStore, queue: DurableQueue, clock: FrozenClock) -> AnalysisService:
    return AnalysisService(
        store=store,
        queue=queue,
        gate=IdempotencyGate(store=store, window_hours=24, clock=clock),
    )


@pytest.fixture()
def repository(store: JobStore) -> RepositoryView:
    return store.add_repository(
        RepositoryCreate(
            owner="acme",
            name="widgets",
            repository_id="repo-1",
            branch="main",
            depth=AnalysisDepth.FAST,
            ignore_paths=["docs/**"],
            notify_email="team@example.com",
            slack_webhook_url="https://hooks.slack.test/T000/B000",
        ),
    )
