from collections.abc import Iterator
from contextlib import contextmanager

from fastapi import APIRouter, Depends, HTTPException, Query, status

from audit_queue.api.routes.queue import get_pipeline
from audit_queue.core.config import Settings, get_settings
from audit_queue.core.security import require_admin_secret
from audit_queue.jobs.reservation import ReservationGuard
from audit_queue.schemas.admin import (
    JobCreateOut,
    JobCreateRequest,
    JobOut,
    JobRetryOut,
    QueueEntryOut,
    QueueStatusOut,
    RepairOut,
    ReservationReleaseOut,
)
from audit_queue.services.repository import (
    RepositoryConflictError,
    RepositoryError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)
from audit_queue.worker import Pipeline

router = APIRouter(dependencies=[Depends(require_admin_secret)])

_ERROR_STATUS: tuple[tuple[type[RepositoryError], int], ...] = (
    (RepositoryNotFoundError, status.HTTP_404_NOT_FOUND),
    (RepositoryConflictError, status.HTTP_409_CONFLICT),
    (RepositoryValidationError, status.HTTP_422_UNPROCESSABLE_CONTENT),
    (RepositoryUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


@contextmanager
def repository_errors() -> Iterator[None]:
    try:
        yield
    except RepositoryError as exc:
        for error_type, status_code in _ERROR_STATUS:
            if isinstance(exc, error_type):
                raise HTTPException(status_code=status_code, detail=str(exc)) from exc
        raise


@router.get("/queue", response_model=QueueStatusOut)
async def queue_status(
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
    limit: int = Query(default=50, ge=1, le=500),
) -> QueueStatusOut:
    with repository_errors():
        summary = await repository.summarize_queue(stuck_after_seconds=settings.stuck_threshold_seconds, limit=limit)
    return QueueStatusOut(
        counts=summary.counts,
        stuck_entries=[QueueEntryOut.from_record(entry) for entry in summary.stuck_entries],
    )


@router.post("/repair", response_model=RepairOut)
async def repair_queue(pipeline: Pipeline = Depends(get_pipeline)) -> RepairOut:
    with repository_errors():
        report = await pipeline.detector.repair()
    return RepairOut(
        requeued_orphans=report.requeued_orphans,
        reset_stuck=report.reset_stuck,
        failed_stuck=report.failed_stuck,
        completed_stuck=report.completed_stuck,
        job_ids=report.job_ids,
    )


@router.post("/jobs", response_model=JobCreateOut, status_code=status.HTTP_201_CREATED)
async def create_job(payload: JobCreateRequest, repository=Depends(get_repository)) -> JobCreateOut:
    """Queue a one-off audit; intake normally happens upstream of this service."""

    with repository_errors():
        job = await repository.create_job(target=payload.target, recipient=payload.recipient)
        entries = await repository.list_queue_entries(job_id=job.id)
    return JobCreateOut(job=JobOut.from_record(job), queue_entry=QueueEntryOut.from_record(entries[-1]))


@router.get("/jobs/{job_id}", response_model=JobOut)
async def get_job(
    job_id: str,
    fresh: bool = Query(default=False, description="Read from the primary instead of the replica."),
    repository=Depends(get_repository),
) -> JobOut:
    with repository_errors():
        job = await repository.get_job(job_id, fresh=fresh)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="job not found")
    return JobOut.from_record(job)


@router.post("/jobs/{job_id}/retry", response_model=JobRetryOut)
async def retry_job(job_id: str, repository=Depends(get_repository)) -> JobRetryOut:
    with repository_errors():
        entry = await repository.requeue_job(job_id)
    return JobRetryOut(job_id=job_id, queue_entry=QueueEntryOut.from_record(entry))


@router.post("/jobs/{job_id}/release-reservation", response_model=ReservationReleaseOut)
async def release_reservation(
    job_id: str,
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
) -> ReservationReleaseOut:
    # Only the abandonment window applies here; live reservations are never cleared by hand.
    guard = ReservationGuard(
        repository,
        liveness_seconds=settings.reservation_liveness_seconds,
        hard_ceiling_seconds=settings.reservation_hard_ceiling_seconds,
    )
    with repository_errors():
        job = await repository.get_job(job_id, fresh=True)
        if job is None:
            raise RepositoryNotFoundError("job not found")
        released = await guard.release_abandoned(job_id)
    return ReservationReleaseOut(job_id=job_id, released=released)
