from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        match self:
            case JobStatus.COMPLETED | JobStatus.FAILED:
                return True
            case JobStatus.PENDING | JobStatus.RUNNING:
                return False


class QueueStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_live(self) -> bool:
        match self:
            case QueueStatus.PENDING | QueueStatus.PROCESSING:
                return True
            case QueueStatus.COMPLETED | QueueStatus.FAILED:
                return False


class NotificationState(str, Enum):
    UNSET = "unset"
    RESERVED = "reserved"
    CONFIRMED = "confirmed"


@dataclass(slots=True)
class ReportArtifact:
    html: str
    text: str
    findings: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None


@dataclass(slots=True)
class JobRecord:
    id: str
    status: JobStatus
    target: str
    recipient: str
    created_at: datetime
    completed_at: datetime | None = None
    report: ReportArtifact | None = None
    error_log: str | None = None
    notification_confirmed: bool = False
    notification_reserved_at: datetime | None = None
    notification_confirmed_at: datetime | None = None

    @property
    def notification_state(self) -> NotificationState:
        if self.notification_confirmed:
            return NotificationState.CONFIRMED
        if self.notification_reserved_at is not None:
            return NotificationState.RESERVED
        return NotificationState.UNSET


@dataclass(slots=True)
class QueueEntryRecord:
    id: str
    job_id: str
    status: QueueStatus
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    retry_count: int = 0
    last_error: str | None = None


@dataclass(slots=True)
class RepairReport:
    requeued_orphans: int = 0
    reset_stuck: int = 0
    failed_stuck: int = 0
    completed_stuck: int = 0
    job_ids: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.requeued_orphans + self.reset_stuck + self.failed_stuck + self.completed_stuck


@dataclass(slots=True)
class QueueSummary:
    counts: dict[str, int]
    stuck_entries: list[QueueEntryRecord]
