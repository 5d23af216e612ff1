from __future__ import annotations

import allure
import pytest

from conftest import FakeFetcher, FakeGenerator, FakeNotifier, make_snapshot
from maintainer_brief.jobs.models import JobStatus, OutputKind, OutputTone
from maintainer_brief.jobs.services import RequestAnalysis
from maintainer_brief.pipeline.contracts import (
    NotificationPayload,
    PersistenceError,
    TransientCollaboratorError,
)
from maintainer_brief.pipeline.executor import (
    EMAIL_CHANNEL,
    SLACK_CHANNEL,
    PipelineExecutor,
    attempt_notify,
)
from maintainer_brief.queue.payloads import parse_payload

pytestmark = [
    allure.epic("Analysis Pipeline"),
    allure.feature("Pipeline Executor"),
]


def _queued_payload(service, queue, repository):
    result = service.request_analysis(
        RequestAnalysis(repository_id=repository.repository_id, reference_commit="abc123"),
    )
    entry = queue.get(result.job_id)
    return parse_payload(entry.kind, entry.payload_json)


def _executor(store, *, fetcher=None, generator=None, notifier=None) -> PipelineExecutor:
    return PipelineExecutor(
        jobs=store,
        repositories=store,
        fetcher=fetcher or FakeFetcher(),
        generator=generator or FakeGenerator(),
        notifier=notifier or FakeNotifier(),
        frontend_url="https://brief.example.com/",
        min_commits=5,
    )


def test_successful_run_persists_outputs_and_notifies(service, store, queue, repository) -> None:
    payload = _queued_payload(service, queue, repository)
    fetcher = FakeFetcher()
    notifier = FakeNotifier()

    outcome = _executor(store, fetcher=fetcher, notifier=notifier).execute(payload)

    assert outcome.succeeded is True
    assert outcome.outputs_saved == 4
    job = store.get_job(payload.job_id)
    assert job.status is JobStatus.SUCCEEDED
    assert job.progress == 100
    assert {output.kind for output in store.list_outputs(payload.job_id)} == set(OutputKind)
    assert fetcher.calls == [("acme", "widgets", "main", payload.depth, ["docs/**"])]

    channels = [channel for channel, _ in notifier.sent]
    assert channels == [EMAIL_CHANNEL, SLACK_CHANNEL]
    email = notifier.sent[0][1]
    assert email.recipient == "team@example.com"
    assert email.link == "https://brief.example.com/repos/repo-1/outputs"
    assert email.output_kinds == [kind.value for kind in OutputKind]


def test_progress_events_are_monotonic(service, store, queue, repository) -> None:
    payload = _queued_payload(service, queue, repository)

    _executor(store).execute(payload)

    progress = [event.progress for event in store.get_job_details(payload.job_id).events]
    assert progress == [0, 0, 25, 85, 95, 100]
    assert progress == sorted(progress)


def test_fetch_failure_marks_job_failed_without_outputs(service, store, queue, repository) -> None:
    payload = _queued_payload(service, queue, repository)
    notifier = FakeNotifier()
    generator = FakeGenerator()

    outcome = _executor(
        store,
        fetcher=FakeFetcher(error=TransientCollaboratorError("GitHub API rate limit exceeded")),
        generator=generator,
        notifier=notifier,
    ).execute(payload)

    assert outcome.status is JobStatus.FAILED
    job = store.get_job(payload.job_id)
    assert job.status is JobStatus.FAILED
    assert job.progress == 0
    assert job.error_message == "GitHub API rate limit exceeded"
    assert store.list_outputs(payload.job_id) == []
    assert generator.calls == 0
    assert notifier.sent == []


def test_sparse_snapshot_fails_before_generation(service, store, queue, repository) -> None:
    payload = _queued_payload(service, queue, repository)
    generator = FakeGenerator()

    outcome = _executor(
        store,
        fetcher=FakeFetcher(snapshot=make_snapshot(commits=3)),
        generator=generator,
    ).execute(payload)

    assert outcome.status is JobStatus.FAILED
    assert outcome.progress == 25
    assert outcome.error_message == "Insufficient data: need at least 5 commits for analysis"
    assert generator.calls == 0
    assert store.get_job(payload.job_id).progress == 25


def test_generation_failure_keeps_fetch_progress(service, store, queue, repository) -> None:
    payload = _queued_payload(service, queue, repository)

    _executor(store, generator=FakeGenerator(error=RuntimeError("model overloaded"))).execute(payload)

    job = store.get_job(payload.job_id)
    assert job.status is JobStatus.FAILED
    assert job.progress == 25
    assert job.error_message == "model overloaded"


def test_notification_failure_does_not_fail_job(service, store, queue, repository) -> None:
    payload = _queued_payload(service, queue, repository)
    notifier = FakeNotifier(failing_channels=(EMAIL_CHANNEL,))

    outcome = _executor(store, notifier=notifier).execute(payload)

    assert outcome.succeeded is True
    assert [(result.channel, result.delivered) for result in outcome.notifications] == [
        (EMAIL_CHANNEL, False),
        (SLACK_CHANNEL, True),
    ]
    assert store.get_job(payload.job_id).status is JobStatus.SUCCEEDED


def test_redelivery_of_terminal_job_is_a_no_op(service, store, queue, repository) -> None:
    payload = _queued_payload(service, queue, repository)
    executor = _executor(store)
    executor.execute(payload)
    fetcher = FakeFetcher()

    outcome = _executor(store, fetcher=fetcher).execute(payload)

    assert outcome.skipped is True
    assert outcome.status is JobStatus.SUCCEEDED
    assert fetcher.calls == []
    assert len(store.list_outputs(payload.job_id)) == 4


def test_redelivery_of_running_job_does_not_regress_progress(
    service,
    store,
    queue,
    repository,
) -> None:
    payload = _queued_payload(service, queue, repository)
    store.update_job_status(payload.job_id, status=JobStatus.RUNNING, progress=85)

    outcome = _executor(store).execute(payload)

    assert outcome.succeeded is True
    progress = [event.progress for event in store.get_job_details(payload.job_id).events]
    assert progress == sorted(progress)


def test_failure_recording_error_propagates(service, store, queue, repository, monkeypatch) -> None:
    payload = _queued_payload(service, queue, repository)
    original = store.update_job_status

    def _update(job_id, *, status, progress, error_message=None):
        if status is JobStatus.FAILED:
            raise PersistenceError("database is locked")
        return original(job_id, status=status, progress=progress, error_message=error_message)

    monkeypatch.setattr(store, "update_job_status", _update)

    with pytest.raises(PersistenceError):
        _executor(store, fetcher=FakeFetcher(error=RuntimeError("boom"))).execute(payload)


def test_missing_job_is_skipped(store, repository, service, queue) -> None:
    payload = _queued_payload(service, queue, repository)
    payload.job_id = "does-not-exist"

    outcome = _executor(store).execute(payload)

    assert outcome.skipped is True


def test_attempt_notify_swallows_channel_errors() -> None:
    payload = NotificationPayload(
        job_id="job-1",
        repository_id="repo-1",
        repository_name="acme/widgets",
        output_kinds=["maintainer_brief"],
        link="https://brief.example.com/repos/repo-1/outputs",
        recipient="team@example.com",
    )

    result = attempt_notify(FakeNotifier(failing_channels=(SLACK_CHANNEL,)), SLACK_CHANNEL, payload)

    assert result.delivered is False
    assert result.error == "slack unavailable"


def test_transient_failure_before_last_delivery_leaves_job_running(
    service,
    store,
    queue,
    repository,
) -> None:
    payload = _queued_payload(service, queue, repository)
    generator = FakeGenerator()
    fetcher = FakeFetcher(error=TransientCollaboratorError("GitHub API rate limit exceeded"))

    with pytest.raises(TransientCollaboratorError, match="rate limit exceeded"):
        _executor(store, fetcher=fetcher, generator=generator).execute(
            payload,
            final_attempt=False,
        )

    job = store.get_job(payload.job_id)
    assert job.status is JobStatus.RUNNING
    assert job.error_message is None
    assert generator.calls == 0


def test_permanent_failure_is_recorded_before_last_delivery(
    service,
    store,
    queue,
    repository,
) -> None:
    payload = _queued_payload(service, queue, repository)

    outcome = _executor(
        store,
        generator=FakeGenerator(error=RuntimeError("model overloaded")),
    ).execute(payload, final_attempt=False)

    assert outcome.status is JobStatus.FAILED
    assert store.get_job(payload.job_id).status is JobStatus.FAILED


class _NullContentGenerator(FakeGenerator):
    """Returns a full output set whose third entry cannot be stored."""

    def generate(self, snapshot, tone):
        outputs = super().generate(snapshot, tone)
        outputs[2].content = None
        return outputs


def test_partial_output_write_fails_job_without_outputs(
    service,
    store,
    queue,
    repository,
) -> None:
    payload = _queued_payload(service, queue, repository)
    notifier = FakeNotifier()

    executor = _executor(store, generator=_NullContentGenerator(), notifier=notifier)
    outcome = executor.execute(payload)

    assert outcome.status is JobStatus.FAILED
    assert outcome.error_message.startswith(f"Failed to persist outputs for job {payload.job_id}")
    job = store.get_job(payload.job_id)
    assert job.status is JobStatus.FAILED
    assert job.progress == 85
    assert store.list_outputs(payload.job_id) == []
    assert notifier.sent == []


def test_failed_redelivery_reports_stored_progress(service, store, queue, repository) -> None:
    payload = _queued_payload(service, queue, repository)
    store.update_job_status(payload.job_id, status=JobStatus.RUNNING, progress=85)

    outcome = _executor(
        store,
        generator=FakeGenerator(error=RuntimeError("model overloaded")),
    ).execute(payload)

    assert outcome.status is JobStatus.FAILED
    assert outcome.progress == 85
    assert store.get_job(payload.job_id).progress == 85


def test_failed_redelivery_discards_outputs_of_earlier_delivery(
    service,
    store,
    queue,
    repository,
) -> None:
    payload = _queued_payload(service, queue, repository)
    store.update_job_status(payload.job_id, status=JobStatus.RUNNING, progress=95)
    earlier = FakeGenerator().generate(make_snapshot(), OutputTone.CONCISE)
    store.save_outputs(payload.job_id, repository.repository_id, earlier)
    assert len(store.list_outputs(payload.job_id)) == 4

    outcome = _executor(
        store,
        fetcher=FakeFetcher(error=RuntimeError("GitHub repository acme/widgets not found")),
    ).execute(payload)

    assert outcome.status is JobStatus.FAILED
    assert outcome.progress == 95
    assert store.list_outputs(payload.job_id) == []
    failed_event = store.get_job_details(payload.job_id).events[-1]
    assert failed_event.status_to is JobStatus.FAILED
    assert failed_event.details["outputs_discarded"] == 4
