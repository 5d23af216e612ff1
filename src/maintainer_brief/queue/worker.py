"""Queue worker runtime: bounded-concurrency, at-least-once delivery to handlers."""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Callable, Iterator
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta

from maintainer_brief.queue.payloads import PayloadValidationError, QueuePayload, parse_payload
from maintainer_brief.queue.repository import (
    DurableQueue,
    QueueEntryView,
    RetentionPolicy,
)
from maintainer_brief.resilience import RetryPolicy

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DeliveryResult:
    """What a handler reports for one delivery it processed without raising."""

    succeeded: bool
    detail: str | None = None


@dataclass(slots=True)
class Delivery:
    """Attempt bookkeeping passed to a handler with its payload."""

    entry_id: str
    attempt: int
    max_attempts: int

    @property
    def is_last_attempt(self) -> bool:
        return self.attempt >= self.max_attempts


Handler = Callable[[QueuePayload, Delivery], DeliveryResult]


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    dead_lettered: int = 0
    idle_polls: int = 0

    def merge(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.retried += other.retried
        self.dead_lettered += other.dead_lettered
        self.idle_polls += other.idle_polls


def _retry_any_infrastructure_error(error: BaseException) -> bool:
    return not isinstance(error, PayloadValidationError)


def default_delivery_policy(
    *,
    max_attempts: int = 3,
    base_delay: float = 5.0,
    max_delay: float = 300.0,
) -> RetryPolicy:
    """Exponential redelivery backoff without jitter: 5s, 10s, 20s..."""

    return RetryPolicy(
        max_attempts=max_attempts,
        base_delay=base_delay,
        backoff_multiplier=2.0,
        max_delay=max_delay,
        jitter=False,
        should_retry=_retry_any_infrastructure_error,
    )


class QueueWorker:
    """Consumes queue entries and dispatches each validated payload to its handler.

    A handler that returns normally acknowledges the delivery. A handler that
    raises gets the entry redelivered with backoff until ``max_attempts`` is
    used up. The ``Delivery`` passed alongside the payload tells the handler
    whether this is the last try. Payloads that fail validation are
    dead-lettered immediately.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        queue: DurableQueue,
        handlers: dict[str, Handler],
        worker_id: str,
        retry_policy: RetryPolicy | None = None,
        concurrency: int = 5,
        poll_interval_seconds: float = 2.0,
        stale_after_seconds: int = 1_800,
        retention: RetentionPolicy | None = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.queue = queue
        self.handlers = dict(handlers)
        self.worker_id = worker_id
        self.retry_policy = retry_policy or default_delivery_policy(
            max_attempts=queue.max_attempts,
        )
        self.concurrency = concurrency
        self.poll_interval_seconds = poll_interval_seconds
        self.stale_after_seconds = stale_after_seconds
        self.retention = retention or RetentionPolicy()
        self._stop_requested = False
        self._retention_lock = threading.Lock()

    def run_once(self) -> WorkerRunSummary:
        """Claim and process at most one entry."""

        if self._stop_requested:
            return WorkerRunSummary(idle_polls=1)
        entry = self._claim_entry()
        if entry is None:
            return WorkerRunSummary(idle_polls=1)
        return self._deliver(entry)

    def run_loop(
        self,
        *,
        max_jobs: int | None = None,
        max_idle_polls: int | None = 1,
    ) -> WorkerRunSummary:
        """Deliver entries with up to ``concurrency`` in flight.

        Args:
            max_jobs: Stop claiming after this many deliveries (None = unlimited).
            max_idle_polls: Consecutive empty polls before exiting (None = run until stopped).
        """

        aggregate = WorkerRunSummary()
        claimed = 0
        consecutive_idle = 0
        in_flight: set[Future[WorkerRunSummary]] = set()
        with self._signal_handlers(), ThreadPoolExecutor(
            max_workers=self.concurrency,
            thread_name_prefix="queue-worker",
        ) as pool:
            while True:
                in_flight = self._collect_finished(in_flight, aggregate)
                if self._stop_requested:
                    break
                budget_left = max_jobs is None or claimed < max_jobs
                if not budget_left and not in_flight:
                    break

                claimed_now = 0
                while budget_left and len(in_flight) < self.concurrency:
                    entry = self._claim_entry()
                    if entry is None:
                        break
                    in_flight.add(pool.submit(self._deliver, entry))
                    claimed += 1
                    claimed_now += 1
                    budget_left = max_jobs is None or claimed < max_jobs

                if claimed_now == 0 and not in_flight:
                    consecutive_idle += 1
                    aggregate.idle_polls += 1
                    if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                        break
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue
                if claimed_now:
                    consecutive_idle = 0
                if in_flight:
                    wait(in_flight, timeout=self.poll_interval_seconds, return_when=FIRST_COMPLETED)

            wait(in_flight)
            self._collect_finished(in_flight, aggregate)
        return aggregate

    def request_stop(self) -> None:
        self._stop_requested = True

    def _claim_entry(self) -> QueueEntryView | None:
        if self.stale_after_seconds > 0:
            self.queue.recover_stale(stale_after=timedelta(seconds=self.stale_after_seconds))
        if self._stop_requested:
            return None
        return self.queue.claim_next(worker_id=self.worker_id)

    def _deliver(self, entry: QueueEntryView) -> WorkerRunSummary:
        summary = WorkerRunSummary(processed=1)
        try:
            payload = parse_payload(entry.kind, entry.payload_json)
            handler = self.handlers.get(entry.kind)
            if handler is None:
                raise PayloadValidationError(f"No handler registered for kind {entry.kind!r}")
        except PayloadValidationError as error:
            logger.error("Dead-lettering queue entry %s: %s", entry.entry_id, error)
            self.queue.fail(entry.entry_id, error=str(error))
            summary.dead_lettered = 1
            summary.failed = 1
            self._apply_retention()
            return summary

        logger.info(
            "Delivering %s entry %s (attempt %d/%d)",
            entry.kind,
            entry.entry_id,
            entry.attempt,
            entry.max_attempts,
        )
        try:
            with self._heartbeat(entry.entry_id):
                result = handler(payload, self._delivery_for(entry))
        except Exception as error:  # noqa: BLE001
            self._handle_delivery_error(entry=entry, error=error, summary=summary)
        else:
            if result.succeeded:
                self.queue.complete(entry.entry_id)
                summary.succeeded = 1
            else:
                self.queue.fail(entry.entry_id, error=result.detail or "Handler reported failure")
                summary.failed = 1
        self._apply_retention()
        return summary

    def _delivery_for(self, entry: QueueEntryView) -> Delivery:
        return Delivery(
            entry_id=entry.entry_id,
            attempt=entry.attempt,
            max_attempts=min(entry.max_attempts, self.retry_policy.max_attempts),
        )

    def _handle_delivery_error(
        self,
        *,
        entry: QueueEntryView,
        error: Exception,
        summary: WorkerRunSummary,
    ) -> None:
        message = str(error) or type(error).__name__
        attempt = min(entry.attempt, entry.max_attempts)
        policy_allows = self.retry_policy.can_retry(attempt=attempt, error=error)
        if policy_allows and entry.attempt < entry.max_attempts:
            delay = self.retry_policy.delay_for(entry.attempt)
            run_after = self.queue.now() + timedelta(seconds=delay)
            if self.queue.schedule_retry(entry.entry_id, run_after=run_after, error=message):
                logger.warning(
                    "Delivery of %s failed (attempt %d/%d), retrying in %.1fs: %s",
                    entry.entry_id,
                    entry.attempt,
                    entry.max_attempts,
                    delay,
                    message,
                )
                summary.retried = 1
                return
        logger.error(
            "Delivery of %s failed permanently after %d attempts: %s",
            entry.entry_id,
            entry.attempt,
            message,
        )
        self.queue.fail(entry.entry_id, error=message)
        summary.failed = 1

    def _apply_retention(self) -> None:
        if not self._retention_lock.acquire(blocking=False):
            return
        try:
            self.queue.apply_retention(self.retention)
        finally:
            self._retention_lock.release()

    @contextmanager
    def _heartbeat(self, entry_id: str) -> Iterator[None]:
        interval = max(1.0, self.stale_after_seconds / 3)
        stop = threading.Event()

        def _beat() -> None:
            while not stop.wait(interval):
                self.queue.touch(entry_id)

        thread = threading.Thread(target=_beat, name=f"heartbeat-{entry_id}", daemon=True)
        thread.start()
        try:
            yield
        finally:
            stop.set()
            thread.join()

    @staticmethod
    def _collect_finished(
        in_flight: set[Future[WorkerRunSummary]],
        aggregate: WorkerRunSummary,
    ) -> set[Future[WorkerRunSummary]]:
        pending: set[Future[WorkerRunSummary]] = set()
        for future in in_flight:
            if future.done():
                aggregate.merge(future.result())
            else:
                pending.add(future)
        return pending

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.info("Received %s; finishing in-flight deliveries", name)
            self.request_stop()

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
