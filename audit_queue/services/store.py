from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from audit_queue.services.records import (
    JobRecord,
    JobStatus,
    QueueEntryRecord,
    QueueStatus,
    QueueSummary,
    ReportArtifact,
)
from audit_queue.services.repository import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryValidationError,
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryRepository:
    """Process-local queue store for development and tests.

    Every public coroutine runs its whole read-modify-write under one lock, which
    gives it the same atomicity as the single SQL statement it stands in for.
    Reads with ``fresh=False`` come from a replica snapshot that only advances
    when ``sync_replica`` is called while ``replica_lag`` is enabled.
    """

    def __init__(self, clock: Callable[[], datetime] = _utc_now) -> None:
        self.clock = clock
        self.jobs: dict[str, JobRecord] = {}
        self.queue: dict[str, QueueEntryRecord] = {}
        self.events: list[dict[str, Any]] = []
        self.replica_lag = False
        self._replica_jobs: dict[str, JobRecord] = {}
        self._lock = asyncio.Lock()

    async def close(self) -> None:
        return None

    async def ping(self) -> None:
        return None

    def sync_replica(self) -> None:
        self._replica_jobs = {job_id: replace(job) for job_id, job in self.jobs.items()}

    async def create_job(self, *, target: str, recipient: str) -> JobRecord:
        target = target.strip()
        recipient = recipient.strip()
        if not target or not recipient:
            raise RepositoryValidationError("target and recipient must be non-empty strings")

        async with self._lock:
            now = self.clock()
            job = JobRecord(
                id=str(uuid4()),
                status=JobStatus.PENDING,
                target=target,
                recipient=recipient,
                created_at=now,
            )
            self.jobs[job.id] = job
            entry = self._insert_entry(job.id, now)
            self._add_event("job", job.id, "created", {"queue_entry_id": entry.id})
            return replace(job)

    async def get_job(self, job_id: str, *, fresh: bool = True) -> JobRecord | None:
        async with self._lock:
            source = self._replica_jobs if (self.replica_lag and not fresh) else self.jobs
            job = source.get(job_id)
            return replace(job) if job is not None else None

    async def get_queue_entry(self, entry_id: str) -> QueueEntryRecord | None:
        async with self._lock:
            entry = self.queue.get(entry_id)
            return replace(entry) if entry is not None else None

    async def list_queue_entries(self, *, job_id: str) -> list[QueueEntryRecord]:
        async with self._lock:
            rows = [entry for entry in self.queue.values() if entry.job_id == job_id]
            return [replace(entry) for entry in sorted(rows, key=lambda entry: entry.created_at)]

    async def claim_oldest_pending(self) -> QueueEntryRecord | None:
        async with self._lock:
            pending = [entry for entry in self.queue.values() if entry.status is QueueStatus.PENDING]
            if not pending:
                return None
            entry = min(pending, key=lambda row: row.created_at)
            entry.status = QueueStatus.PROCESSING
            entry.started_at = self.clock()
            entry.completed_at = None
            entry.retry_count += 1

            job = self.jobs.get(entry.job_id)
            if job is not None and job.status is JobStatus.PENDING:
                job.status = JobStatus.RUNNING
            self._add_event("queue_entry", entry.id, "claimed", {"job_id": entry.job_id, "retry_count": entry.retry_count})
            return replace(entry)

    async def save_report(self, job_id: str, report: ReportArtifact) -> None:
        async with self._lock:
            job = self._require_job(job_id)
            job.report = ReportArtifact(
                html=report.html,
                text=report.text,
                findings=dict(report.findings),
                created_at=self.clock(),
            )
            self._add_event("job", job_id, "report_saved", {})

    async def try_reserve_notification(self, job_id: str) -> bool:
        async with self._lock:
            job = self.jobs.get(job_id)
            if job is None or job.notification_confirmed or job.notification_reserved_at is not None:
                return False
            job.notification_reserved_at = self.clock()
            self._add_event("job", job_id, "notification_reserved", {})
            return True

    async def confirm_notification(self, job_id: str) -> bool:
        async with self._lock:
            job = self.jobs.get(job_id)
            if job is None or job.notification_confirmed or job.notification_reserved_at is None:
                return False
            job.notification_confirmed = True
            job.notification_confirmed_at = self.clock()
            self._add_event("job", job_id, "notification_confirmed", {})
            return True

    async def release_notification_reservation(self, job_id: str, *, older_than_seconds: float) -> bool:
        async with self._lock:
            job = self.jobs.get(job_id)
            if job is None or job.notification_confirmed or job.notification_reserved_at is None:
                return False
            if job.notification_reserved_at > self.clock() - timedelta(seconds=older_than_seconds):
                return False
            job.notification_reserved_at = None
            self._add_event(
                "job",
                job_id,
                "notification_reservation_released",
                {"older_than_seconds": older_than_seconds},
            )
            return True

    async def complete_job(self, job_id: str, queue_entry_id: str | None) -> None:
        async with self._lock:
            now = self.clock()
            entry = self.queue.get(queue_entry_id) if queue_entry_id is not None else None
            if entry is not None and entry.status.is_live:
                entry.status = QueueStatus.COMPLETED
                entry.completed_at = now
            job = self._require_job(job_id)
            if job.status is not JobStatus.COMPLETED:
                job.status = JobStatus.COMPLETED
                job.completed_at = job.completed_at or now
                job.error_log = None
            self._add_event("job", job_id, "completed", {"queue_entry_id": queue_entry_id})

    async def fail_job(self, job_id: str, queue_entry_id: str | None, *, error: str) -> None:
        async with self._lock:
            entry = self.queue.get(queue_entry_id) if queue_entry_id is not None else None
            if entry is not None and entry.status.is_live:
                entry.status = QueueStatus.FAILED
                entry.completed_at = self.clock()
                entry.last_error = error[:1000]
            job = self.jobs.get(job_id)
            if job is not None and not job.status.is_terminal:
                job.status = JobStatus.FAILED
                job.error_log = error
            self._add_event("job", job_id, "failed", {"queue_entry_id": queue_entry_id, "error": error[:1000]})

    async def requeue_entry(self, queue_entry_id: str, *, error: str) -> bool:
        async with self._lock:
            entry = self.queue.get(queue_entry_id)
            if entry is None or entry.status is not QueueStatus.PROCESSING:
                return False
            entry.status = QueueStatus.PENDING
            entry.started_at = None
            entry.last_error = error[:1000]
            self._add_event("queue_entry", queue_entry_id, "requeued", {"error": error[:1000]})
            return True

    async def defer_entry(self, queue_entry_id: str, *, error: str, refund_attempt: bool = False) -> bool:
        async with self._lock:
            entry = self.queue.get(queue_entry_id)
            if entry is None or entry.status is not QueueStatus.PROCESSING:
                return False
            entry.status = QueueStatus.PENDING
            entry.started_at = None
            entry.created_at = self.clock()
            # Re-insert so ties on created_at still resolve behind existing entries.
            self.queue[queue_entry_id] = self.queue.pop(queue_entry_id)
            entry.last_error = error[:1000]
            if refund_attempt:
                entry.retry_count = max(entry.retry_count - 1, 0)
            self._add_event(
                "queue_entry",
                queue_entry_id,
                "deferred",
                {"error": error[:1000], "retry_count": entry.retry_count},
            )
            return True

    async def insert_missing_queue_entries(self, *, limit: int) -> list[str]:
        bounded_limit = max(1, min(limit, 1000))
        async with self._lock:
            live_job_ids = {entry.job_id for entry in self.queue.values() if entry.status.is_live}
            orphaned = sorted(
                (job for job in self.jobs.values() if not job.status.is_terminal and job.id not in live_job_ids),
                key=lambda job: job.created_at,
            )[:bounded_limit]
            now = self.clock()
            for job in orphaned:
                self._insert_entry(job.id, now)
                self._add_event("job", job.id, "orphan_requeued", {})
            return [job.id for job in orphaned]

    async def reset_stuck_entries(self, *, stuck_after_seconds: float, max_retries: int, limit: int) -> list[str]:
        async with self._lock:
            reset_ids: list[str] = []
            for entry in self._stuck(stuck_after_seconds, limit, lambda row: row.retry_count < max_retries):
                entry.status = QueueStatus.PENDING
                entry.retry_count += 1
                entry.started_at = None
                entry.last_error = "processing exceeded stuck threshold"
                reset_ids.append(entry.job_id)
                self._add_event("queue_entry", entry.id, "stuck_reset", {"job_id": entry.job_id})
            return reset_ids

    async def list_exhausted_entries(
        self,
        *,
        stuck_after_seconds: float,
        max_retries: int,
        limit: int,
    ) -> list[QueueEntryRecord]:
        async with self._lock:
            exhausted = self._stuck(stuck_after_seconds, limit, lambda row: row.retry_count >= max_retries)
            return [replace(entry) for entry in exhausted]

    async def requeue_job(self, job_id: str) -> QueueEntryRecord:
        async with self._lock:
            job = self._require_job(job_id)
            if job.status is not JobStatus.FAILED:
                raise RepositoryConflictError(f"only failed jobs can be retried, got {job.status.value}")
            job.status = JobStatus.RUNNING
            job.error_log = None
            entry = self._live_entry(job_id) or self._insert_entry(job_id, self.clock())
            self._add_event("job", job_id, "manual_retry", {"queue_entry_id": entry.id})
            return replace(entry)

    async def summarize_queue(self, *, stuck_after_seconds: float, limit: int = 50) -> QueueSummary:
        async with self._lock:
            counts = {status.value: 0 for status in QueueStatus}
            for entry in self.queue.values():
                counts[entry.status.value] += 1
            stuck = self._stuck(stuck_after_seconds, limit, lambda _: True)
            return QueueSummary(counts=counts, stuck_entries=[replace(entry) for entry in stuck])

    def _insert_entry(self, job_id: str, now: datetime) -> QueueEntryRecord:
        if self._live_entry(job_id) is not None:
            raise RepositoryConflictError("job already has a live queue entry")
        entry = QueueEntryRecord(id=str(uuid4()), job_id=job_id, status=QueueStatus.PENDING, created_at=now)
        self.queue[entry.id] = entry
        return entry

    def _live_entry(self, job_id: str) -> QueueEntryRecord | None:
        return next(
            (entry for entry in self.queue.values() if entry.job_id == job_id and entry.status.is_live),
            None,
        )

    def _stuck(
        self,
        stuck_after_seconds: float,
        limit: int,
        predicate: Callable[[QueueEntryRecord], bool],
    ) -> list[QueueEntryRecord]:
        now = self.clock()
        cutoff = now - timedelta(seconds=stuck_after_seconds)
        stuck = [
            entry
            for entry in self.queue.values()
            if entry.status is QueueStatus.PROCESSING
            and entry.started_at is not None
            and entry.started_at <= cutoff
            and predicate(entry)
        ]
        stuck.sort(key=lambda entry: entry.started_at or now)
        return stuck[: max(1, min(limit, 1000))]

    def _require_job(self, job_id: str) -> JobRecord:
        job = self.jobs.get(job_id)
        if job is None:
            raise RepositoryNotFoundError("job not found")
        return job

    def _add_event(self, entity_type: str, entity_id: str, event_type: str, payload: dict[str, Any]) -> None:
        self.events.append(
            {
                "entity_type": entity_type,
                "entity_id": entity_id,
                "event_type": event_type,
                "payload": payload,
                "created_at": self.clock(),
            }
        )
