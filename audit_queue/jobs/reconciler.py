from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from audit_queue.jobs.errors import ConsistencyAmbiguousError
from audit_queue.services.records import JobRecord, NotificationState
from audit_queue.services.repository import JobRepository, RepositoryUnavailableError

logger = logging.getLogger(__name__)

JobPredicate = Callable[[JobRecord], bool]
Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_seconds: tuple[float, ...] = (0.5, 1.0, 2.0)
    final_check_delay_seconds: float = 3.0
    settled_after_seconds: float = 60.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number ``attempt`` (1-based); the last step repeats."""

        if not self.backoff_seconds:
            return 0.0
        index = min(max(attempt, 1), len(self.backoff_seconds)) - 1
        return max(0.0, self.backoff_seconds[index])


def has_confirmed_notification(job: JobRecord) -> bool:
    return job.notification_state is NotificationState.CONFIRMED


def has_partial_success(job: JobRecord) -> bool:
    return job.report is not None or has_confirmed_notification(job)


class ConsistencyReconciler:
    """Re-verifies job state against the primary before any terminal decision."""

    def __init__(
        self,
        repository: JobRepository,
        policy: RetryPolicy | None = None,
        *,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.repository = repository
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def confirm_fresh(self, job_id: str, predicate: JobPredicate) -> bool:
        last_job: JobRecord | None = None
        read_failures = 0

        for attempt in range(1, self.policy.max_attempts + 1):
            try:
                job = await self.repository.get_job(job_id, fresh=True)
            except RepositoryUnavailableError as exc:
                read_failures += 1
                logger.warning(
                    "primary read failed job_id=%s attempt=%s/%s: %s",
                    job_id,
                    attempt,
                    self.policy.max_attempts,
                    exc,
                )
            else:
                if job is not None:
                    last_job = job
                    if predicate(job):
                        return True

            if attempt < self.policy.max_attempts:
                await self._sleep(self.policy.delay_for(attempt))

        if read_failures == self.policy.max_attempts:
            raise ConsistencyAmbiguousError(
                f"primary store unreachable for job {job_id} after {read_failures} attempts"
            )

        if last_job is not None and self._is_settled(last_job):
            await self._sleep(self.policy.final_check_delay_seconds)
            try:
                job = await self.repository.get_job(job_id, fresh=True)
            except RepositoryUnavailableError as exc:
                raise ConsistencyAmbiguousError(f"final primary check failed for job {job_id}") from exc
            if job is not None and predicate(job):
                logger.info("final settled check confirmed job_id=%s", job_id)
                return True

        return False

    def _is_settled(self, job: JobRecord) -> bool:
        """Whether the job's own report/notification data is old enough for lag to have cleared."""

        markers = [
            job.report.created_at if job.report is not None else None,
            job.notification_reserved_at,
            job.notification_confirmed_at,
        ]
        stamps = [stamp for stamp in markers if stamp is not None]
        if not stamps:
            return False
        cutoff = self._clock() - timedelta(seconds=self.policy.settled_after_seconds)
        return min(stamps) <= cutoff
