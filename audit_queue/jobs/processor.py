from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

import httpx

from audit_queue.jobs.checks import Checker
from audit_queue.jobs.errors import ConsistencyAmbiguousError, NotificationError, TransientInfraError
from audit_queue.jobs.notify import Notifier
from audit_queue.jobs.reconciler import ConsistencyReconciler, has_confirmed_notification, has_partial_success
from audit_queue.jobs.reservation import ReservationAge, ReservationGuard
from audit_queue.services.records import JobRecord, NotificationState, QueueEntryRecord, ReportArtifact
from audit_queue.services.repository import JobRepository, RepositoryError, RepositoryUnavailableError

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (TransientInfraError, RepositoryUnavailableError, httpx.TransportError)


class ProcessOutcome(str, Enum):
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"
    REQUEUED = "requeued"
    DEADLINE_EXCEEDED = "deadline_exceeded"


@dataclass(slots=True)
class ProcessResult:
    outcome: ProcessOutcome
    job_id: str
    queue_entry_id: str
    reason: str | None = None
    notified: bool = False


class JobProcessor:
    """Drives one claimed queue entry to a terminal (or explicitly requeued) state."""

    def __init__(
        self,
        repository: JobRepository,
        *,
        checker: Checker,
        notifier: Notifier,
        guard: ReservationGuard,
        reconciler: ConsistencyReconciler,
        max_retries: int,
        send_failure_notifications: bool = False,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.repository = repository
        self.checker = checker
        self.notifier = notifier
        self.guard = guard
        self.reconciler = reconciler
        self.max_retries = max_retries
        self.send_failure_notifications = send_failure_notifications
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def process(self, entry: QueueEntryRecord) -> ProcessResult:
        try:
            return await self._run(entry)
        except Exception as exc:
            try:
                return await self._handle_failure(entry, exc)
            except RepositoryError:
                logger.exception(
                    "could not record failure job_id=%s queue_entry_id=%s attempt=%s",
                    entry.job_id,
                    entry.id,
                    entry.retry_count,
                )
                return self._result(entry, ProcessOutcome.SKIPPED, "storage_unavailable")

    async def _run(self, entry: QueueEntryRecord) -> ProcessResult:
        # The claim locked only the queue entry; the job must be read from the primary.
        job = await self.repository.get_job(entry.job_id, fresh=True)
        if job is None:
            await self.repository.fail_job(entry.job_id, entry.id, error="job not found")
            return self._result(entry, ProcessOutcome.FAILED, "job_not_found")

        if job.notification_state is NotificationState.CONFIRMED:
            logger.info("job already notified; completing queue entry job_id=%s queue_entry_id=%s", job.id, entry.id)
            await self.repository.complete_job(job.id, entry.id)
            return self._result(entry, ProcessOutcome.SKIPPED, "already_notified")

        match self.guard.classify(job, self._clock()):
            case ReservationAge.EXPIRED:
                await self.guard.force_clear_expired(job.id)
                raise NotificationError("notification reservation expired without confirmation")
            case ReservationAge.LIVE:
                await self.repository.defer_entry(
                    entry.id,
                    error="notification reservation still in flight",
                    refund_attempt=True,
                )
                return self._result(entry, ProcessOutcome.REQUEUED, "notification_in_flight")
            case ReservationAge.ABANDONED:
                await self.guard.release_abandoned(job.id)
            case ReservationAge.NONE:
                pass

        report = job.report
        if report is None:
            report = await self.checker.run(job.target)
            await self.repository.save_report(job.id, report)
            logger.info("report saved job_id=%s score=%s", job.id, report.findings.get("score"))
        else:
            logger.info("reusing persisted report job_id=%s", job.id)

        return await self._deliver(entry, job, report)

    async def _deliver(self, entry: QueueEntryRecord, job: JobRecord, report: ReportArtifact) -> ProcessResult:
        if not await self.guard.try_reserve(job.id):
            if await self.reconciler.confirm_fresh(job.id, has_confirmed_notification):
                await self.repository.complete_job(job.id, entry.id)
                return self._result(entry, ProcessOutcome.SKIPPED, "already_notified")
            await self.repository.defer_entry(
                entry.id,
                error="notification reserved by another attempt",
                refund_attempt=True,
            )
            return self._result(entry, ProcessOutcome.REQUEUED, "notification_in_flight")

        try:
            await self.notifier.send(job.recipient, job, report)
        except NotificationError as exc:
            logger.warning(
                "notification failed job_id=%s queue_entry_id=%s attempt=%s: %s",
                job.id,
                entry.id,
                entry.retry_count,
                exc,
            )
            if entry.retry_count < self.max_retries:
                await self.repository.defer_entry(entry.id, error=f"notification failed: {exc}")
                return self._result(entry, ProcessOutcome.REQUEUED, "notification_failed")
            logger.error(
                "notification retries exhausted; completing with report only job_id=%s queue_entry_id=%s",
                job.id,
                entry.id,
            )
            await self.repository.complete_job(job.id, entry.id)
            return self._result(entry, ProcessOutcome.COMPLETED, "notification_failed")

        await self.guard.confirm(job.id)
        await self.repository.complete_job(job.id, entry.id)
        logger.info("job completed job_id=%s queue_entry_id=%s attempt=%s", job.id, entry.id, entry.retry_count)
        return self._result(entry, ProcessOutcome.COMPLETED, "completed", notified=True)

    async def _handle_failure(self, entry: QueueEntryRecord, exc: Exception) -> ProcessResult:
        error = f"{type(exc).__name__}: {exc}"
        logger.error(
            "job processing failed job_id=%s queue_entry_id=%s attempt=%s: %s",
            entry.job_id,
            entry.id,
            entry.retry_count,
            error,
            exc_info=not isinstance(exc, TRANSIENT_ERRORS),
        )

        if isinstance(exc, TRANSIENT_ERRORS) and entry.retry_count < self.max_retries:
            if await self.repository.requeue_entry(entry.id, error=error):
                return self._result(entry, ProcessOutcome.REQUEUED, "transient_error")

        try:
            already_done = await self.reconciler.confirm_fresh(entry.job_id, has_partial_success)
        except ConsistencyAmbiguousError as ambiguous:
            logger.error(
                "job state ambiguous; skipping terminal decision for manual review job_id=%s queue_entry_id=%s attempt=%s: %s",
                entry.job_id,
                entry.id,
                entry.retry_count,
                ambiguous,
            )
            try:
                await self.repository.requeue_entry(entry.id, error=f"consistency ambiguous: {error}")
            except RepositoryUnavailableError:
                # Still processing; the orphan detector re-offers it after the stuck threshold.
                logger.warning("could not requeue ambiguous entry queue_entry_id=%s", entry.id)
            return self._result(entry, ProcessOutcome.SKIPPED, "consistency_ambiguous")

        if already_done:
            logger.warning("prior attempt already produced results; treating as success job_id=%s", entry.job_id)
            await self.repository.complete_job(entry.job_id, entry.id)
            return self._result(entry, ProcessOutcome.COMPLETED, "recovered_partial_success")

        await self.repository.fail_job(entry.job_id, entry.id, error=error)
        await self._send_failure_notice(entry, error)
        return self._result(entry, ProcessOutcome.FAILED, "failed")

    async def _send_failure_notice(self, entry: QueueEntryRecord, error: str) -> None:
        if not self.send_failure_notifications:
            return
        try:
            job = await self.repository.get_job(entry.job_id, fresh=True)
            if job is not None:
                await self.notifier.send_failure(job.recipient, job, error)
        except (NotificationError, RepositoryError) as exc:
            logger.warning("failure notice not sent job_id=%s: %s", entry.job_id, exc)

    @staticmethod
    def _result(
        entry: QueueEntryRecord,
        outcome: ProcessOutcome,
        reason: str,
        *,
        notified: bool = False,
    ) -> ProcessResult:
        return ProcessResult(
            outcome=outcome,
            job_id=entry.job_id,
            queue_entry_id=entry.id,
            reason=reason,
            notified=notified,
        )
