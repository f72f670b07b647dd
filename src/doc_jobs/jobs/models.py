import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from .errors import InvalidTransitionError, JobError


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({JobStatus.SUCCEEDED, JobStatus.FAILED})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass
class JobRecord:
    """One unit of asynchronous conversion work and its lifecycle state.

    Status changes go through the ``mark_*`` methods, which enforce
    ``queued -> running -> succeeded | failed`` and keep the timestamp and
    outcome invariants. Records are mutated only inside ``JobStore.update``.
    """

    id: str
    kind: str
    options: dict[str, Any] = field(default_factory=dict)
    inputs: list[str] = field(default_factory=list)
    filename: str | None = None
    status: JobStatus = JobStatus.QUEUED
    progress: float = 0.0
    output_path: str | None = None
    error: JobError | None = None
    created_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    cancel_requested: bool = False
    client_key: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def mark_running(self, now: datetime | None = None) -> None:
        if self.status is not JobStatus.QUEUED:
            raise InvalidTransitionError(f"job {self.id}: cannot start from {self.status.value}")
        self.status = JobStatus.RUNNING
        # wall clock may step backwards; keep createdAt <= startedAt
        self.started_at = max(now or utcnow(), self.created_at)
        self.progress = 0.0

    def mark_succeeded(self, output_path: str, now: datetime | None = None) -> None:
        self._finish(JobStatus.SUCCEEDED, now)
        self.output_path = output_path
        self.progress = 100.0

    def mark_failed(self, error: JobError, now: datetime | None = None) -> None:
        self._finish(JobStatus.FAILED, now)
        self.error = error

    def _finish(self, status: JobStatus, now: datetime | None) -> None:
        if self.status is not JobStatus.RUNNING:
            raise InvalidTransitionError(
                f"job {self.id}: cannot move to {status.value} from {self.status.value}"
            )
        assert self.started_at is not None
        self.status = status
        self.finished_at = max(now or utcnow(), self.started_at)

    def advance_progress(self, value: float) -> bool:
        """Raise progress to ``value``; lower values and terminal jobs are ignored."""
        if self.status is not JobStatus.RUNNING:
            return False
        value = min(max(float(value), 0.0), 100.0)
        if value <= self.progress:
            return False
        self.progress = value
        return True

    def reference_time(self) -> datetime:
        """Timestamp the retention window is measured from."""
        return self.finished_at or self.created_at

    def copy(self) -> "JobRecord":
        return copy.deepcopy(self)

    def public_view(self, download_url: str | None = None) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "status": self.status.value,
            "progress": round(self.progress, 2),
            "error": self.error.to_dict() if self.error else None,
            "downloadUrl": download_url if self.status is JobStatus.SUCCEEDED else None,
            "createdAt": isoformat(self.created_at),
            "startedAt": isoformat(self.started_at),
            "finishedAt": isoformat(self.finished_at),
        }
