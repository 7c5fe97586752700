from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from enum import Enum

from audit_queue.services.records import JobRecord, NotificationState
from audit_queue.services.repository import JobRepository

logger = logging.getLogger(__name__)


class ReservationAge(str, Enum):
    NONE = "none"
    LIVE = "live"
    ABANDONED = "abandoned"
    EXPIRED = "expired"


class ReservationGuard:
    """At-most-one-sender guard for the report notification.

    Every mutation is a single conditional update in the store; the affected row
    count is the only success signal, so exactly one concurrent caller wins.
    """

    def __init__(
        self,
        repository: JobRepository,
        *,
        liveness_seconds: float,
        hard_ceiling_seconds: float,
    ) -> None:
        if hard_ceiling_seconds <= liveness_seconds:
            raise ValueError("reservation hard ceiling must exceed the liveness window")
        self.repository = repository
        self.liveness_seconds = liveness_seconds
        self.hard_ceiling_seconds = hard_ceiling_seconds

    async def try_reserve(self, job_id: str) -> bool:
        reserved = await self.repository.try_reserve_notification(job_id)
        if not reserved:
            logger.info("notification reservation not acquired job_id=%s", job_id)
        return reserved

    async def confirm(self, job_id: str) -> bool:
        confirmed = await self.repository.confirm_notification(job_id)
        if not confirmed:
            logger.warning("notification confirm found no open reservation job_id=%s", job_id)
        return confirmed

    async def release_abandoned(self, job_id: str) -> bool:
        released = await self.repository.release_notification_reservation(
            job_id,
            older_than_seconds=self.liveness_seconds,
        )
        if released:
            logger.warning(
                "released abandoned notification reservation job_id=%s liveness_seconds=%s",
                job_id,
                self.liveness_seconds,
            )
        return released

    async def force_clear_expired(self, job_id: str) -> bool:
        cleared = await self.repository.release_notification_reservation(
            job_id,
            older_than_seconds=self.hard_ceiling_seconds,
        )
        if cleared:
            logger.error(
                "force-cleared expired notification reservation job_id=%s hard_ceiling_seconds=%s",
                job_id,
                self.hard_ceiling_seconds,
            )
        return cleared

    def classify(self, job: JobRecord, now: datetime | None = None) -> ReservationAge:
        match job.notification_state:
            case NotificationState.UNSET | NotificationState.CONFIRMED:
                return ReservationAge.NONE
            case NotificationState.RESERVED:
                pass

        reserved_at = job.notification_reserved_at
        if reserved_at is None:
            return ReservationAge.NONE
        age = (now or datetime.now(timezone.utc)) - reserved_at
        if age >= timedelta(seconds=self.hard_ceiling_seconds):
            return ReservationAge.EXPIRED
        if age >= timedelta(seconds=self.liveness_seconds):
            return ReservationAge.ABANDONED
        return ReservationAge.LIVE
