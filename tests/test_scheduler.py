from __future__ import annotations

from datetime import UTC, datetime, timedelta

import allure
import pytest

from conftest import FakeCommits
from maintainer_brief.config import SchedulerSettings
from maintainer_brief.jobs.models import JobStatus, RecurrencePolicy, RepositoryCreate, TriggerKind
from maintainer_brief.jobs.services import RequestAnalysis
from maintainer_brief.queue.payloads import SchedulerSweepPayload
from maintainer_brief.queue.repository import QueueEntryStatus
from maintainer_brief.queue.worker import Delivery
from maintainer_brief.scheduler.policy import is_due, within_hour_window
from maintainer_brief.scheduler.sweeper import Scheduler

pytestmark = [
    allure.epic("Scheduling"),
    allure.feature("Recurring Analyses"),
]

MONDAY = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


def test_manual_policy_is_never_due() -> None:
    decision = is_due(RecurrencePolicy.MANUAL, now_local=MONDAY, last_created_at=None)

    assert decision.due is False
    assert decision.reason == "manual"


@pytest.mark.parametrize(
    ("recurrence", "last_created_at", "now_local", "expected"),
    [
        (RecurrencePolicy.WEEKLY, None, MONDAY, (True, "weekly")),
        (RecurrencePolicy.WEEKLY, None, MONDAY + timedelta(days=1), (False, "wrong_weekday")),
        (RecurrencePolicy.WEEKLY, MONDAY - timedelta(hours=2), MONDAY, (False, "recent_job")),
        (RecurrencePolicy.WEEKLY, MONDAY - timedelta(days=7), MONDAY, (True, "weekly")),
        (
            RecurrencePolicy.WEEKLY,
            MONDAY,
            MONDAY + timedelta(days=2),
            (False, "wrong_weekday"),
        ),
        (RecurrencePolicy.BIWEEKLY, None, MONDAY, (True, "biweekly")),
        (
            RecurrencePolicy.BIWEEKLY,
            MONDAY - timedelta(days=7),
            MONDAY,
            (False, "biweekly_interval"),
        ),
        (
            RecurrencePolicy.BIWEEKLY,
            MONDAY - timedelta(days=10),
            MONDAY,
            (False, "biweekly_interval"),
        ),
        (RecurrencePolicy.BIWEEKLY, MONDAY - timedelta(days=14), MONDAY, (True, "biweekly")),
    ],
)
def test_recurrence_decisions(recurrence, last_created_at, now_local, expected) -> None:
    decision = is_due(recurrence, now_local=now_local, last_created_at=last_created_at)

    assert (decision.due, decision.reason) == expected


def test_hour_window_is_inclusive() -> None:
    assert within_hour_window(MONDAY, start_hour=9, end_hour=17) is True
    assert within_hour_window(MONDAY.replace(hour=17), start_hour=9, end_hour=17) is True
    assert within_hour_window(MONDAY.replace(hour=18), start_hour=9, end_hour=17) is False


def _scheduler(store, service, clock, commits=None, **overrides) -> Scheduler:
    settings = SchedulerSettings(**overrides)
    return Scheduler(
        store=store,
        service=service,
        commits=commits or FakeCommits(),
        settings=settings,
        clock=clock,
    )


def test_sweep_enqueues_due_repositories_with_schedule_trigger(store, service, queue, clock) -> None:
    weekly = store.add_repository(
        RepositoryCreate(owner="acme", name="gears", recurrence=RecurrencePolicy.WEEKLY),
    )
    store.add_repository(RepositoryCreate(owner="acme", name="manual-only"))
    commits = FakeCommits()

    summary = _scheduler(store, service, clock, commits=commits).sweep()

    assert summary.evaluated == 1
    assert len(summary.enqueued) == 1
    job = store.get_job(summary.enqueued[0])
    assert job.repository_id == weekly.repository_id
    assert job.trigger is TriggerKind.SCHEDULE
    assert job.reference_commit == commits.sha
    assert commits.calls == [("acme", "gears", "main")]
    assert queue.get(job.job_id).status is QueueEntryStatus.WAITING


def test_sweep_skips_repository_with_recent_job(store, service, clock) -> None:
    store.add_repository(
        RepositoryCreate(owner="acme", name="gears", recurrence=RecurrencePolicy.WEEKLY),
    )
    scheduler = _scheduler(store, service, clock)
    first = scheduler.sweep()

    clock.advance(hours=1)
    second = scheduler.sweep()

    assert len(first.enqueued) == 1
    assert second.enqueued == []
    assert list(second.skipped.values()) == ["recent_job"]


def test_sweep_applies_biweekly_interval_on_matching_day(store, service, clock) -> None:
    ten_days = store.add_repository(
        RepositoryCreate(owner="acme", name="gears", recurrence=RecurrencePolicy.BIWEEKLY),
    )
    fourteen_days = store.add_repository(
        RepositoryCreate(owner="acme", name="cogs", recurrence=RecurrencePolicy.BIWEEKLY),
    )
    clock.now = MONDAY - timedelta(days=14)
    service.request_analysis(
        RequestAnalysis(repository_id=fourteen_days.repository_id, reference_commit="abc123"),
    )
    clock.now = MONDAY - timedelta(days=10)
    service.request_analysis(
        RequestAnalysis(repository_id=ten_days.repository_id, reference_commit="abc123"),
    )

    clock.now = MONDAY
    summary = _scheduler(store, service, clock).sweep()

    assert summary.skipped == {ten_days.repository_id: "biweekly_interval"}
    assert [store.get_job(job_id).repository_id for job_id in summary.enqueued] == [
        fourteen_days.repository_id,
    ]


def test_sweep_skips_weekly_repository_on_other_weekday(store, service, clock) -> None:
    weekly = store.add_repository(
        RepositoryCreate(owner="acme", name="gears", recurrence=RecurrencePolicy.WEEKLY),
    )
    service.request_analysis(
        RequestAnalysis(repository_id=weekly.repository_id, reference_commit="abc123"),
    )

    clock.advance(days=2)
    summary = _scheduler(store, service, clock).sweep()

    assert summary.enqueued == []
    assert summary.skipped == {weekly.repository_id: "wrong_weekday"}
    assert store.count_jobs(repository_id=weekly.repository_id) == 1


def test_sweep_reuses_recent_success_for_unchanged_commit(store, service, queue, clock) -> None:
    store.add_repository(
        RepositoryCreate(owner="acme", name="gears", recurrence=RecurrencePolicy.WEEKLY),
    )
    scheduler = _scheduler(store, service, clock, min_hours_between_runs=0)
    first = scheduler.sweep()
    job_id = first.enqueued[0]
    queue.claim_next(worker_id="w1")
    store.update_job_status(job_id, status=JobStatus.RUNNING, progress=0)
    store.update_job_status(job_id, status=JobStatus.SUCCEEDED, progress=100)

    clock.advance(hours=1)
    second = scheduler.sweep()

    assert second.enqueued == []
    assert second.reused == [job_id]


def test_sweep_outside_hour_window_does_nothing(store, service, clock) -> None:
    store.add_repository(
        RepositoryCreate(owner="acme", name="gears", recurrence=RecurrencePolicy.WEEKLY),
    )

    summary = _scheduler(store, service, clock, start_hour=10, end_hour=18).sweep()

    assert summary.window_open is False
    assert summary.evaluated == 0
    assert store.count_jobs() == 0


def test_sweep_uses_configured_timezone_for_weekday(store, service, clock) -> None:
    store.add_repository(
        RepositoryCreate(owner="acme", name="gears", recurrence=RecurrencePolicy.WEEKLY),
    )
    clock.now = datetime(2026, 3, 1, 23, 30, tzinfo=UTC)

    summary = _scheduler(store, service, clock, timezone="Europe/Berlin").sweep()

    assert len(summary.enqueued) == 1


def test_sweep_records_per_repository_errors(store, service, clock) -> None:
    store.add_repository(
        RepositoryCreate(owner="acme", name="gears", recurrence=RecurrencePolicy.WEEKLY),
    )
    healthy = store.add_repository(
        RepositoryCreate(owner="acme", name="sprockets", recurrence=RecurrencePolicy.WEEKLY),
    )

    class _FlakyCommits(FakeCommits):
        def latest_commit_sha(self, owner, repo, branch):
            if repo == "gears":
                raise RuntimeError("GitHub unavailable")
            return super().latest_commit_sha(owner, repo, branch)

    summary = _scheduler(store, service, clock, commits=_FlakyCommits()).sweep()

    assert list(summary.errors.values()) == ["GitHub unavailable"]
    assert [store.get_job(job_id).repository_id for job_id in summary.enqueued] == [
        healthy.repository_id,
    ]


def test_enqueue_sweep_is_idempotent_per_hour(store, service, queue, clock) -> None:
    scheduler = _scheduler(store, service, clock)

    first = scheduler.enqueue_sweep(queue)
    clock.advance(minutes=30)
    second = scheduler.enqueue_sweep(queue)
    clock.advance(minutes=31)
    third = scheduler.enqueue_sweep(queue)

    assert first.created is True
    assert second.created is False
    assert third.created is True
    assert first.entry.entry_id == "scheduler-sweep:2026030209"


def test_sweep_payload_handler_runs_a_sweep(store, service, clock) -> None:
    store.add_repository(
        RepositoryCreate(owner="acme", name="gears", recurrence=RecurrencePolicy.WEEKLY),
    )

    result = _scheduler(store, service, clock).handle(
        SchedulerSweepPayload(slot="2026030209"),
        Delivery(entry_id="scheduler-sweep:2026030209", attempt=1, max_attempts=3),
    )

    assert result.succeeded is True
    assert store.count_jobs() == 1


def test_run_loop_stops_after_max_sweeps(store, service, clock) -> None:
    scheduler = _scheduler(store, service, clock, interval_seconds=0)
    calls: list[int] = []

    assert scheduler.run_loop(max_sweeps=3, sweep=lambda: calls.append(1)) == 3
    assert len(calls) == 3
