"""Runtime configuration for the task planner, dispatcher, and workers."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path

_DISABLED_TOKENS = {"", "none", "off", "unbounded"}


@dataclass(slots=True)
class QueueSettings:
    """Queue substrate settings."""

    prefix: str = "report"
    remove_on_complete: bool | int = 1000
    remove_on_fail: bool | int = 5000
    stale_job_seconds: int = 1_800


@dataclass(slots=True)
class DispatcherSettings:
    """Scheduling and verify/autofix protocol settings."""

    task_timeout_seconds: int = 1_800
    autofix_timeout_seconds: int = 600
    max_autofix_attempts: int | None = 3


@dataclass(slots=True)
class WorkerSettings:
    """Local worker pool settings."""

    worker_id: str = field(default_factory=lambda: f"{socket.gethostname()}:{os.getpid()}")
    concurrency: int = 2
    poll_interval_seconds: float = 1.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".report_pipeline.db")
    busy_timeout_ms: int = 5_000
    queue: QueueSettings = field(default_factory=QueueSettings)
    dispatcher: DispatcherSettings = field(default_factory=DispatcherSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        defaults = WorkerSettings()
        return cls(
            db_path=db_path or Path(os.getenv("REPORT_PIPELINE_DB_PATH", ".report_pipeline.db")),
            busy_timeout_ms=int(os.getenv("REPORT_PIPELINE_BUSY_TIMEOUT_MS", "5000")),
            queue=QueueSettings(
                prefix=os.getenv("REPORT_PIPELINE_QUEUE_PREFIX", "report").strip(),
                remove_on_complete=_env_retention("REPORT_PIPELINE_REMOVE_ON_COMPLETE", 1000),
                remove_on_fail=_env_retention("REPORT_PIPELINE_REMOVE_ON_FAIL", 5000),
                stale_job_seconds=int(os.getenv("REPORT_PIPELINE_STALE_JOB_SECONDS", "1800")),
            ),
            dispatcher=DispatcherSettings(
                task_timeout_seconds=int(
                    os.getenv("REPORT_PIPELINE_TASK_TIMEOUT_SECONDS", "1800"),
                ),
                autofix_timeout_seconds=int(
                    os.getenv("REPORT_PIPELINE_AUTOFIX_TIMEOUT_SECONDS", "600"),
                ),
                max_autofix_attempts=_env_optional_int(
                    "REPORT_PIPELINE_MAX_AUTOFIX_ATTEMPTS",
                    default=3,
                ),
            ),
            worker=WorkerSettings(
                worker_id=os.getenv("REPORT_PIPELINE_WORKER_ID", defaults.worker_id),
                concurrency=int(os.getenv("REPORT_PIPELINE_WORKER_CONCURRENCY", "2")),
                poll_interval_seconds=float(
                    os.getenv("REPORT_PIPELINE_POLL_INTERVAL_SECONDS", "1.0"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error on out-of-range values."""

        if not self.queue.prefix:
            raise ValueError("REPORT_PIPELINE_QUEUE_PREFIX must not be empty.")
        if self.busy_timeout_ms <= 0:
            raise ValueError("REPORT_PIPELINE_BUSY_TIMEOUT_MS must be > 0.")
        if self.dispatcher.task_timeout_seconds <= 0:
            raise ValueError("REPORT_PIPELINE_TASK_TIMEOUT_SECONDS must be > 0.")
        if self.dispatcher.autofix_timeout_seconds <= 0:
            raise ValueError("REPORT_PIPELINE_AUTOFIX_TIMEOUT_SECONDS must be > 0.")
        if self.worker.concurrency <= 0:
            raise ValueError("REPORT_PIPELINE_WORKER_CONCURRENCY must be a positive integer.")
        if self.worker.poll_interval_seconds < 0:
            raise ValueError("REPORT_PIPELINE_POLL_INTERVAL_SECONDS must be >= 0.")
        if self.queue.stale_job_seconds < 0:
            raise ValueError("REPORT_PIPELINE_STALE_JOB_SECONDS must be >= 0.")


def _env_optional_int(name: str, default: int | None) -> int | None:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in _DISABLED_TOKENS:
        return None
    try:
        parsed = int(normalized)
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error
    if parsed < 0:
        raise ValueError(f"{name} must be >= 0, got {parsed}.")
    return parsed


def _env_retention(name: str, default: bool | int) -> bool | int:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"true", "yes", "on"}:
        return True
    if normalized in {"false", "no", "off"}:
        return False
    try:
        parsed = int(normalized)
    except ValueError as error:
        raise ValueError(f"Invalid retention value for {name}: {value!r}") from error
    if parsed < 0:
        raise ValueError(f"{name} must be >= 0, got {parsed}.")
    return parsed

