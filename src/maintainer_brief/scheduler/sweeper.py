"""Periodic sweep that enqueues recurring analyses through the idempotency gate."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from maintainer_brief.config import SchedulerSettings
from maintainer_brief.jobs.models import TriggerKind
from maintainer_brief.jobs.repository import JobStore
from maintainer_brief.jobs.services import AnalysisService, RequestAnalysis
from maintainer_brief.pipeline.contracts import ReferenceCommitSource
from maintainer_brief.queue.payloads import QueuePayload, SchedulerSweepPayload
from maintainer_brief.queue.repository import DurableQueue, EnqueueResult
from maintainer_brief.queue.worker import Delivery, DeliveryResult
from maintainer_brief.scheduler.policy import is_due, within_hour_window
from maintainer_brief.storage.common import utc_now

logger = logging.getLogger(__name__)

SWEEP_ENTRY_PREFIX = "scheduler-sweep"


@dataclass(slots=True)
class SweepSummary:
    """Counters for one sweep."""

    window_open: bool = True
    evaluated: int = 0
    enqueued: list[str] = field(default_factory=list)
    reused: list[str] = field(default_factory=list)
    skipped: dict[str, str] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)


class Scheduler:
    """Evaluates recurrence policies and requests analyses for due repositories."""

    def __init__(
        self,
        *,
        store: JobStore,
        service: AnalysisService,
        commits: ReferenceCommitSource,
        settings: SchedulerSettings,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.service = service
        self.commits = commits
        self.settings = settings
        self._clock = clock
        self._stop_requested = False

    def sweep(self) -> SweepSummary:
        """Run one sweep over every active, non-manual repository."""

        now_local = self._clock().astimezone(self.settings.tzinfo)
        summary = SweepSummary()
        if not within_hour_window(
            now_local,
            start_hour=self.settings.start_hour,
            end_hour=self.settings.end_hour,
        ):
            logger.info(
                "Skipping sweep: hour %d outside window %d..%d (%s)",
                now_local.hour,
                self.settings.start_hour,
                self.settings.end_hour,
                self.settings.timezone,
            )
            summary.window_open = False
            return summary

        for repository in self.store.list_scheduled_repositories():
            summary.evaluated += 1
            try:
                latest = self.store.latest_job_for_repository(repository.repository_id)
                decision = is_due(
                    repository.recurrence,
                    now_local=now_local,
                    last_created_at=latest.created_at if latest is not None else None,
                    weekday=self.settings.weekday,
                    min_hours_between_runs=self.settings.min_hours_between_runs,
                    biweekly_min_days=self.settings.biweekly_min_days,
                )
                if not decision.due:
                    summary.skipped[repository.repository_id] = decision.reason
                    continue

                reference_commit = self.commits.latest_commit_sha(
                    repository.owner,
                    repository.name,
                    repository.branch,
                )
                result = self.service.request_analysis(
                    RequestAnalysis(
                        repository_id=repository.repository_id,
                        reference_commit=reference_commit,
                        trigger=TriggerKind.SCHEDULE,
                        user_id=repository.user_id,
                    ),
                )
            except Exception as error:  # noqa: BLE001
                logger.exception("Failed to schedule %s", repository.full_name)
                summary.errors[repository.repository_id] = str(error) or type(error).__name__
                continue

            if result.created:
                summary.enqueued.append(result.job_id)
                logger.info(
                    "Scheduled %s analysis for %s: job %s",
                    repository.recurrence.value,
                    repository.full_name,
                    result.job_id,
                )
            else:
                summary.reused.append(result.job_id)
        return summary

    def handle(self, payload: QueuePayload, delivery: Delivery) -> DeliveryResult:
        """Queue handler for sweeps delivered through the durable queue."""

        if not isinstance(payload, SchedulerSweepPayload):
            raise TypeError(f"Unexpected payload for scheduler: {payload.kind}")
        summary = self.sweep()
        return DeliveryResult(
            succeeded=True,
            detail=f"enqueued={len(summary.enqueued)} errors={len(summary.errors)}",
        )

    def enqueue_sweep(self, queue: DurableQueue) -> EnqueueResult:
        """Enqueue one sweep per hour slot; repeated calls in the same hour are no-ops."""

        slot = self._clock().strftime("%Y%m%d%H")
        return queue.enqueue(f"{SWEEP_ENTRY_PREFIX}:{slot}", SchedulerSweepPayload(slot=slot))

    def run_loop(
        self,
        *,
        max_sweeps: int | None = None,
        sweep: Callable[[], object] | None = None,
    ) -> int:
        """Call ``sweep`` every ``interval_seconds`` until stopped; returns sweeps run."""

        action = sweep or self.sweep
        count = 0
        while not self._stop_requested:
            action()
            count += 1
            if max_sweeps is not None and count >= max_sweeps:
                break
            self._sleep_with_stop(self.settings.interval_seconds)
        return count

    def request_stop(self) -> None:
        self._stop_requested = True

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.5, max(0.0, deadline - time.monotonic())))

