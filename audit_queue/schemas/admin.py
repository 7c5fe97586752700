from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from audit_queue.services.records import JobRecord, QueueEntryRecord


class QueueEntryOut(BaseModel):
    id: str
    job_id: str
    status: str
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    retry_count: int = 0
    last_error: str | None = None

    @classmethod
    def from_record(cls, record: QueueEntryRecord) -> "QueueEntryOut":
        return cls(
            id=record.id,
            job_id=record.job_id,
            status=record.status.value,
            created_at=record.created_at,
            started_at=record.started_at,
            completed_at=record.completed_at,
            retry_count=record.retry_count,
            last_error=record.last_error,
        )


class JobOut(BaseModel):
    id: str
    status: str
    target: str
    recipient: str
    created_at: datetime
    completed_at: datetime | None = None
    has_report: bool = False
    findings: dict[str, Any] = Field(default_factory=dict)
    error_log: str | None = None
    notification_state: str
    notification_reserved_at: datetime | None = None
    notification_confirmed_at: datetime | None = None

    @classmethod
    def from_record(cls, record: JobRecord) -> "JobOut":
        return cls(
            id=record.id,
            status=record.status.value,
            target=record.target,
            recipient=record.recipient,
            created_at=record.created_at,
            completed_at=record.completed_at,
            has_report=record.report is not None,
            findings=dict(record.report.findings) if record.report is not None else {},
            error_log=record.error_log,
            notification_state=record.notification_state.value,
            notification_reserved_at=record.notification_reserved_at,
            notification_confirmed_at=record.notification_confirmed_at,
        )


class JobCreateRequest(BaseModel):
    target: str = Field(min_length=1, max_length=2048)
    recipient: str = Field(min_length=3, max_length=320)


class JobCreateOut(BaseModel):
    job: JobOut
    queue_entry: QueueEntryOut


class JobRetryOut(BaseModel):
    job_id: str
    queue_entry: QueueEntryOut


class ReservationReleaseOut(BaseModel):
    job_id: str
    released: bool


class QueueStatusOut(BaseModel):
    counts: dict[str, int]
    stuck_entries: list[QueueEntryOut] = Field(default_factory=list)


class RepairOut(BaseModel):
    requeued_orphans: int
    reset_stuck: int
    failed_stuck: int
    completed_stuck: int = 0
    job_ids: list[str] = Field(default_factory=list)
