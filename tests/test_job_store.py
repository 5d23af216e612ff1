from __future__ import annotations

import allure
import pytest

from maintainer_brief.jobs.models import (
    AnalysisDepth,
    GeneratedOutput,
    JobCreate,
    JobStatus,
    OutputKind,
    OutputSources,
    RecurrencePolicy,
    RepositoryCreate,
    TriggerKind,
)
from maintainer_brief.pipeline.contracts import PersistenceError

pytestmark = [
    allure.epic("Analysis Jobs"),
    allure.feature("Job Store"),
]


def _create_job(store, repository_id: str = "repo-1", fingerprint: str = "f" * 64) -> str:
    return store.create_job(
        JobCreate(
            repository_id=repository_id,
            user_id="u1",
            fingerprint=fingerprint,
            trigger=TriggerKind.MANUAL,
            branch="main",
            reference_commit="abc123",
            depth=AnalysisDepth.FAST,
        ),
    ).job_id


def _outputs(*kinds: OutputKind) -> list[GeneratedOutput]:
    return [
        GeneratedOutput(
            kind=kind,
            content=f"{kind.value} body",
            confidence=0.65,
            sources=OutputSources(commits=["abc123"], prs=[7], issues=[11, 12]),
        )
        for kind in kinds
    ]


def test_add_repository_rejects_duplicate_owner_and_name(store, repository) -> None:
    with pytest.raises(ValueError, match="already tracked"):
        store.add_repository(RepositoryCreate(owner="acme", name="widgets"))


def test_repository_round_trips_settings(store, repository) -> None:
    loaded = store.get_repository(repository.repository_id)

    assert loaded is not None
    assert loaded.full_name == "acme/widgets"
    assert loaded.ignore_paths == ["docs/**"]
    assert loaded.recurrence is RecurrencePolicy.MANUAL
    assert loaded.notify_email == "team@example.com"


def test_scheduled_repositories_exclude_manual_policy(store, repository) -> None:
    weekly = store.add_repository(
        RepositoryCreate(owner="acme", name="gears", recurrence=RecurrencePolicy.WEEKLY),
    )

    scheduled = store.list_scheduled_repositories()
    assert [item.repository_id for item in scheduled] == [weekly.repository_id]

    assert store.set_recurrence(repository.repository_id, RecurrencePolicy.BIWEEKLY) is True
    assert {item.repository_id for item in store.list_scheduled_repositories()} == {
        weekly.repository_id,
        repository.repository_id,
    }
    assert store.set_recurrence("missing", RecurrencePolicy.WEEKLY) is False


def test_new_job_is_queued_with_created_event(store, repository) -> None:
    job_id = _create_job(store)

    details = store.get_job_details(job_id)
    assert details is not None
    assert details.job.status is JobStatus.QUEUED
    assert details.job.progress == 0
    assert details.job.started_at is None
    assert [event.event_type for event in details.events] == ["created"]


def test_lifecycle_transitions_record_audit_trail(store, clock, repository) -> None:
    job_id = _create_job(store)

    assert store.update_job_status(job_id, status=JobStatus.RUNNING, progress=0)
    started_at = store.get_job(job_id).started_at
    clock.advance(seconds=5)
    assert store.update_job_status(job_id, status=JobStatus.RUNNING, progress=25)
    assert store.update_job_status(job_id, status=JobStatus.RUNNING, progress=85)
    assert store.update_job_status(job_id, status=JobStatus.SUCCEEDED, progress=100)

    details = store.get_job_details(job_id)
    assert details is not None
    assert details.job.status is JobStatus.SUCCEEDED
    assert details.job.progress == 100
    assert details.job.started_at == started_at
    assert details.job.finished_at is not None
    assert details.job.error_message is None
    assert [event.event_type for event in details.events] == [
        "created",
        "started",
        "progress",
        "progress",
        "succeeded",
    ]
    assert [event.progress for event in details.events] == [0, 0, 25, 85, 100]


def test_progress_never_decreases(store, repository) -> None:
    job_id = _create_job(store)
    store.update_job_status(job_id, status=JobStatus.RUNNING, progress=85)

    assert store.update_job_status(job_id, status=JobStatus.RUNNING, progress=25)
    assert store.get_job(job_id).progress == 85

    store.update_job_status(job_id, status=JobStatus.FAILED, progress=0, error_message="boom")
    failed = store.get_job(job_id)
    assert failed.progress == 85
    assert failed.error_message == "boom"


def test_terminal_jobs_reject_further_transitions(store, repository) -> None:
    job_id = _create_job(store)
    store.update_job_status(job_id, status=JobStatus.FAILED, progress=0, error_message="boom")

    assert store.update_job_status(job_id, status=JobStatus.RUNNING, progress=25) is False
    assert store.update_job_status(job_id, status=JobStatus.SUCCEEDED, progress=100) is False
    assert store.update_job_status(job_id, status=JobStatus.FAILED, progress=50) is False
    assert store.get_job(job_id).status is JobStatus.FAILED


def test_success_requires_running_state(store, repository) -> None:
    job_id = _create_job(store)

    assert store.update_job_status(job_id, status=JobStatus.SUCCEEDED, progress=100) is False
    assert store.get_job(job_id).status is JobStatus.QUEUED


def test_update_rejects_queued_target_and_out_of_range_progress(store, repository) -> None:
    job_id = _create_job(store)

    with pytest.raises(ValueError, match="Unsupported status"):
        store.update_job_status(job_id, status=JobStatus.QUEUED, progress=0)
    with pytest.raises(ValueError, match="progress"):
        store.update_job_status(job_id, status=JobStatus.RUNNING, progress=101)


def test_unknown_job_update_returns_false(store) -> None:
    assert store.update_job_status("missing", status=JobStatus.RUNNING, progress=0) is False


def test_save_outputs_replaces_previous_set(store, repository) -> None:
    job_id = _create_job(store)

    assert store.save_outputs(job_id, repository.repository_id, _outputs(*OutputKind)) == 4
    assert store.save_outputs(job_id, repository.repository_id, _outputs(*OutputKind)) == 4

    outputs = store.list_outputs(job_id)
    assert len(outputs) == 4
    assert {output.kind for output in outputs} == set(OutputKind)
    first = outputs[0]
    assert first.sources.commits == ["abc123"]
    assert first.sources.prs == [7]
    assert first.sources.issues == [11, 12]
    assert first.confidence == pytest.approx(0.65)


def test_save_outputs_with_duplicate_kinds_keeps_previous_set(store, repository) -> None:
    job_id = _create_job(store)
    store.save_outputs(job_id, repository.repository_id, _outputs(OutputKind.MAINTAINER_BRIEF))

    with pytest.raises(PersistenceError):
        store.save_outputs(
            job_id,
            repository.repository_id,
            _outputs(OutputKind.RELEASE_SUMMARY, OutputKind.RELEASE_SUMMARY),
        )

    assert [output.kind for output in store.list_outputs(job_id)] == [OutputKind.MAINTAINER_BRIEF]


def test_list_jobs_filters_by_status(store, clock, repository) -> None:
    first = _create_job(store)
    clock.advance(minutes=1)
    second = _create_job(store)
    store.update_job_status(first, status=JobStatus.FAILED, progress=0, error_message="boom")

    assert [job.job_id for job in store.list_jobs()] == [second, first]
    assert [job.job_id for job in store.list_jobs(status=JobStatus.FAILED)] == [first]
    assert store.latest_job_for_repository(repository.repository_id).job_id == second
