from __future__ import annotations

import logging

from audit_queue.jobs.errors import ConsistencyAmbiguousError
from audit_queue.jobs.reconciler import ConsistencyReconciler, has_partial_success
from audit_queue.services.records import QueueEntryRecord, RepairReport
from audit_queue.services.repository import JobRepository

logger = logging.getLogger(__name__)

STUCK_EXHAUSTED_ERROR = "processing exceeded stuck threshold; retries exhausted"


class OrphanDetector:
    """Repairs queue drift: jobs with no live entry and entries stuck in processing."""

    def __init__(
        self,
        repository: JobRepository,
        *,
        reconciler: ConsistencyReconciler,
        stuck_after_seconds: float,
        max_retries: int,
        batch_size: int = 100,
    ) -> None:
        self.repository = repository
        self.reconciler = reconciler
        self.stuck_after_seconds = stuck_after_seconds
        self.max_retries = max_retries
        self.batch_size = batch_size

    async def repair(self) -> RepairReport:
        report = RepairReport()

        requeued = await self.repository.insert_missing_queue_entries(limit=self.batch_size)
        report.requeued_orphans = len(requeued)
        report.job_ids.extend(requeued)
        if requeued:
            logger.warning("requeued orphaned jobs: %s", ", ".join(requeued))

        reset_ids = await self.repository.reset_stuck_entries(
            stuck_after_seconds=self.stuck_after_seconds,
            max_retries=self.max_retries,
            limit=self.batch_size,
        )
        report.reset_stuck = len(reset_ids)
        report.job_ids.extend(reset_ids)
        if reset_ids:
            logger.warning("reset stuck queue entries for jobs: %s", ", ".join(reset_ids))

        exhausted = await self.repository.list_exhausted_entries(
            stuck_after_seconds=self.stuck_after_seconds,
            max_retries=self.max_retries,
            limit=self.batch_size,
        )
        for entry in exhausted:
            await self._settle(entry, report)
        return report

    async def _settle(self, entry: QueueEntryRecord, report: RepairReport) -> None:
        try:
            succeeded = await self.reconciler.confirm_fresh(entry.job_id, has_partial_success)
        except ConsistencyAmbiguousError as exc:
            # Left in processing; the next pass sees it again.
            logger.error(
                "stuck job state ambiguous; leaving for a later pass job_id=%s queue_entry_id=%s: %s",
                entry.job_id,
                entry.id,
                exc,
            )
            return

        if succeeded:
            await self.repository.complete_job(entry.job_id, entry.id)
            report.completed_stuck += 1
            logger.warning(
                "stuck job already produced results; completed job_id=%s queue_entry_id=%s",
                entry.job_id,
                entry.id,
            )
        else:
            await self.repository.fail_job(entry.job_id, entry.id, error=STUCK_EXHAUSTED_ERROR)
            report.failed_stuck += 1
            logger.error(
                "failed stuck job after %s retries job_id=%s queue_entry_id=%s",
                self.max_retries,
                entry.job_id,
                entry.id,
            )
        report.job_ids.append(entry.job_id)
