"""Runtime configuration for the analysis queue, scheduler, and collaborators."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

WEEKDAY_NAMES: tuple[str, ...] = (
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
    "sunday",
)


@dataclass(slots=True)
class IdempotencySettings:
    """Deduplication window for repeated analysis requests."""

    window_hours: int = 24


@dataclass(slots=True)
class QueueSettings:
    """Durable queue delivery, concurrency, and retention settings."""

    max_attempts: int = 3
    backoff_base_seconds: float = 5.0
    backoff_max_seconds: float = 300.0
    worker_concurrency: int = 5
    poll_interval_seconds: float = 2.0
    stale_after_seconds: int = 1_800
    worker_id: str = field(default_factory=lambda: f"worker-{socket.gethostname()}-{os.getpid()}")
    keep_completed_hours: int = 24
    keep_completed_count: int = 100
    keep_failed_days: int = 7
    keep_failed_count: int = 1_000


@dataclass(slots=True)
class SchedulerSettings:
    """Recurring sweep window and recurrence thresholds."""

    start_hour: int = 0
    end_hour: int = 23
    timezone: str = "UTC"
    weekday: int = 0
    interval_seconds: float = 3_600.0
    min_hours_between_runs: float = 23.0
    biweekly_min_days: float = 13.0

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


@dataclass(slots=True)
class GitHubSettings:
    """GitHub REST API access settings."""

    token: str = ""
    api_url: str = "https://api.github.com"
    timeout_seconds: float = 30.0
    max_attempts: int = 3
    retry_delay_seconds: float = 2.0
    rate_capacity: int = 10
    rate_per_second: float = 1.5


@dataclass(slots=True)
class GenerationSettings:
    """Text generation backend settings."""

    api_key: str = ""
    base_url: str = "https://api.openai.com/v1"
    model: str = "gpt-4o-mini"
    timeout_seconds: float = 120.0
    min_commits: int = 5
    default_tone: str = "concise"


@dataclass(slots=True)
class NotificationSettings:
    """Email and Slack delivery settings."""

    frontend_url: str = "http://localhost:3000"
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_from: str = "noreply@maintainer-brief.local"
    smtp_use_tls: bool = True
    slack_timeout_seconds: float = 10.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".maintainer_brief.db")
    sqlite_busy_timeout_ms: int = 5_000
    idempotency: IdempotencySettings = field(default_factory=IdempotencySettings)
    queue: QueueSettings = field(default_factory=QueueSettings)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    github: GitHubSettings = field(default_factory=GitHubSettings)
    generation: GenerationSettings = field(default_factory=GenerationSettings)
    notifications: NotificationSettings = field(default_factory=NotificationSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        defaults = QueueSettings()
        return cls(
            db_path=db_path or Path(os.getenv("MAINTAINER_BRIEF_DB_PATH", ".maintainer_brief.db")),
            sqlite_busy_timeout_ms=int(
                os.getenv("MAINTAINER_BRIEF_SQLITE_BUSY_TIMEOUT_MS", "5000"),
            ),
            idempotency=IdempotencySettings(
                window_hours=int(os.getenv("MAINTAINER_BRIEF_IDEMPOTENCY_WINDOW_HOURS", "24")),
            ),
            queue=QueueSettings(
                max_attempts=int(os.getenv("MAINTAINER_BRIEF_QUEUE_MAX_ATTEMPTS", "3")),
                backoff_base_seconds=float(
                    os.getenv("MAINTAINER_BRIEF_QUEUE_BACKOFF_BASE_SECONDS", "5.0"),
                ),
                backoff_max_seconds=float(
                    os.getenv("MAINTAINER_BRIEF_QUEUE_BACKOFF_MAX_SECONDS", "300.0"),
                ),
                worker_concurrency=int(os.getenv("MAINTAINER_BRIEF_WORKER_CONCURRENCY", "5")),
                poll_interval_seconds=float(
                    os.getenv("MAINTAINER_BRIEF_WORKER_POLL_INTERVAL_SECONDS", "2.0"),
                ),
                stale_after_seconds=int(
                    os.getenv("MAINTAINER_BRIEF_WORKER_STALE_AFTER_SECONDS", "1800"),
                ),
                worker_id=os.getenv("MAINTAINER_BRIEF_WORKER_ID", defaults.worker_id),
                keep_completed_hours=int(
                    os.getenv("MAINTAINER_BRIEF_QUEUE_KEEP_COMPLETED_HOURS", "24"),
                ),
                keep_completed_count=int(
                    os.getenv("MAINTAINER_BRIEF_QUEUE_KEEP_COMPLETED_COUNT", "100"),
                ),
                keep_failed_days=int(os.getenv("MAINTAINER_BRIEF_QUEUE_KEEP_FAILED_DAYS", "7")),
                keep_failed_count=int(
                    os.getenv("MAINTAINER_BRIEF_QUEUE_KEEP_FAILED_COUNT", "1000"),
                ),
            ),
            scheduler=SchedulerSettings(
                start_hour=int(os.getenv("MAINTAINER_BRIEF_SCHEDULER_START_HOUR", "0")),
                end_hour=int(os.getenv("MAINTAINER_BRIEF_SCHEDULER_END_HOUR", "23")),
                timezone=os.getenv("MAINTAINER_BRIEF_SCHEDULER_TIMEZONE", "UTC"),
                weekday=_parse_weekday(os.getenv("MAINTAINER_BRIEF_SCHEDULER_WEEKDAY", "monday")),
                interval_seconds=float(
                    os.getenv("MAINTAINER_BRIEF_SCHEDULER_INTERVAL_SECONDS", "3600"),
                ),
                min_hours_between_runs=float(
                    os.getenv("MAINTAINER_BRIEF_SCHEDULER_MIN_HOURS_BETWEEN_RUNS", "23"),
                ),
                biweekly_min_days=float(
                    os.getenv("MAINTAINER_BRIEF_SCHEDULER_BIWEEKLY_MIN_DAYS", "13"),
                ),
            ),
            github=GitHubSettings(
                token=os.getenv("MAINTAINER_BRIEF_GITHUB_TOKEN", "").strip(),
                api_url=os.getenv("MAINTAINER_BRIEF_GITHUB_API_URL", "https://api.github.com"),
                timeout_seconds=float(os.getenv("MAINTAINER_BRIEF_GITHUB_TIMEOUT_SECONDS", "30")),
                max_attempts=int(os.getenv("MAINTAINER_BRIEF_GITHUB_MAX_ATTEMPTS", "3")),
                retry_delay_seconds=float(
                    os.getenv("MAINTAINER_BRIEF_GITHUB_RETRY_DELAY_SECONDS", "2.0"),
                ),
                rate_capacity=int(os.getenv("MAINTAINER_BRIEF_GITHUB_RATE_CAPACITY", "10")),
                rate_per_second=float(os.getenv("MAINTAINER_BRIEF_GITHUB_RATE_PER_SECOND", "1.5")),
            ),
            generation=GenerationSettings(
                api_key=os.getenv("MAINTAINER_BRIEF_OPENAI_API_KEY", "").strip(),
                base_url=os.getenv(
                    "MAINTAINER_BRIEF_OPENAI_BASE_URL",
                    "https://api.openai.com/v1",
                ),
                model=os.getenv("MAINTAINER_BRIEF_OPENAI_MODEL", "gpt-4o-mini"),
                timeout_seconds=float(
                    os.getenv("MAINTAINER_BRIEF_OPENAI_TIMEOUT_SECONDS", "120"),
                ),
                min_commits=int(os.getenv("MAINTAINER_BRIEF_GENERATION_MIN_COMMITS", "5")),
                default_tone=os.getenv("MAINTAINER_BRIEF_DEFAULT_TONE", "concise").strip().lower(),
            ),
            notifications=NotificationSettings(
                frontend_url=os.getenv("MAINTAINER_BRIEF_FRONTEND_URL", "http://localhost:3000"),
                smtp_host=os.getenv("MAINTAINER_BRIEF_SMTP_HOST", "").strip(),
                smtp_port=int(os.getenv("MAINTAINER_BRIEF_SMTP_PORT", "587")),
                smtp_user=os.getenv("MAINTAINER_BRIEF_SMTP_USER", ""),
                smtp_password=os.getenv("MAINTAINER_BRIEF_SMTP_PASSWORD", ""),
                smtp_from=os.getenv(
                    "MAINTAINER_BRIEF_SMTP_FROM",
                    "noreply@maintainer-brief.local",
                ),
                smtp_use_tls=_env_bool("MAINTAINER_BRIEF_SMTP_USE_TLS", default=True),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the runtime cannot operate with."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("MAINTAINER_BRIEF_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.idempotency.window_hours <= 0:
            raise ValueError("MAINTAINER_BRIEF_IDEMPOTENCY_WINDOW_HOURS must be > 0.")
        if self.queue.max_attempts < 1:
            raise ValueError("MAINTAINER_BRIEF_QUEUE_MAX_ATTEMPTS must be >= 1.")
        if self.queue.backoff_base_seconds < 0:
            raise ValueError("MAINTAINER_BRIEF_QUEUE_BACKOFF_BASE_SECONDS must be >= 0.")
        if self.queue.worker_concurrency < 1:
            raise ValueError("MAINTAINER_BRIEF_WORKER_CONCURRENCY must be >= 1.")
        if self.queue.stale_after_seconds <= 0:
            raise ValueError("MAINTAINER_BRIEF_WORKER_STALE_AFTER_SECONDS must be > 0.")

        scheduler = self.scheduler
        for name, hour in (("START_HOUR", scheduler.start_hour), ("END_HOUR", scheduler.end_hour)):
            if not 0 <= hour <= 23:
                raise ValueError(f"MAINTAINER_BRIEF_SCHEDULER_{name} must be within 0..23.")
        if scheduler.start_hour > scheduler.end_hour:
            raise ValueError(
                "MAINTAINER_BRIEF_SCHEDULER_START_HOUR must not be after "
                "MAINTAINER_BRIEF_SCHEDULER_END_HOUR.",
            )
        try:
            ZoneInfo(scheduler.timezone)
        except (ZoneInfoNotFoundError, ValueError) as error:
            raise ValueError(
                f"Invalid MAINTAINER_BRIEF_SCHEDULER_TIMEZONE: {scheduler.timezone!r}",
            ) from error
        if scheduler.interval_seconds <= 0:
            raise ValueError("MAINTAINER_BRIEF_SCHEDULER_INTERVAL_SECONDS must be > 0.")

        if self.generation.min_commits < 0:
            raise ValueError("MAINTAINER_BRIEF_GENERATION_MIN_COMMITS must be >= 0.")
        if self.generation.default_tone not in {"concise", "detailed"}:
            raise ValueError(
                "MAINTAINER_BRIEF_DEFAULT_TONE must be 'concise' or 'detailed', "
                f"got {self.generation.default_tone!r}.",
            )
        _validate_http_url("MAINTAINER_BRIEF_GITHUB_API_URL", self.github.api_url)
        _validate_http_url("MAINTAINER_BRIEF_OPENAI_BASE_URL", self.generation.base_url)
        _validate_http_url("MAINTAINER_BRIEF_FRONTEND_URL", self.notifications.frontend_url)


def _parse_weekday(value: str) -> int:
    normalized = value.strip().lower()
    if normalized.isdigit():
        index = int(normalized)
        if 0 <= index <= 6:
            return index
    elif normalized in WEEKDAY_NAMES:
        return WEEKDAY_NAMES.index(normalized)
    raise ValueError(
        "Invalid MAINTAINER_BRIEF_SCHEDULER_WEEKDAY: "
        f"{value!r}. Expected a weekday name or 0..6 (0 = Monday).",
    )


def _validate_http_url(name: str, value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            f"Invalid {name}: {value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
