from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from opentelemetry import trace

from audit_queue.core.config import Settings, get_settings
from audit_queue.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from audit_queue.jobs.checks import Checker, HttpSiteChecker
from audit_queue.jobs.deadline import TimeoutSupervisor
from audit_queue.jobs.notify import LogNotifier, Notifier, ResendNotifier
from audit_queue.jobs.orphans import OrphanDetector
from audit_queue.jobs.processor import JobProcessor, ProcessOutcome
from audit_queue.jobs.reconciler import ConsistencyReconciler, RetryPolicy, Sleep
from audit_queue.jobs.reservation import ReservationGuard
from audit_queue.schemas.queue import ProcessQueueOut
from audit_queue.services.records import QueueEntryRecord
from audit_queue.services.repository import JobRepository, RepositoryError, get_repository

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass(slots=True)
class Pipeline:
    processor: JobProcessor
    detector: OrphanDetector
    supervisor: TimeoutSupervisor
    repair_on_invocation: bool = True


def build_notifier(settings: Settings, *, timeout_seconds: float | None = None) -> Notifier:
    if not settings.resend_api_key:
        logger.warning("AQ_RESEND_API_KEY is not set; report e-mails will only be logged")
        return LogNotifier()
    return ResendNotifier(
        api_key=settings.resend_api_key,
        api_url=settings.resend_api_url,
        sender=settings.mail_from,
        site_url=settings.site_url,
        timeout_seconds=timeout_seconds or settings.notify_timeout_seconds,
    )


def build_pipeline(
    settings: Settings,
    repository: JobRepository,
    *,
    checker: Checker | None = None,
    notifier: Notifier | None = None,
    sleep: Sleep = asyncio.sleep,
    clock: Callable[[], datetime] | None = None,
) -> Pipeline:
    policy = RetryPolicy(
        max_attempts=settings.reconcile_max_attempts,
        backoff_seconds=settings.reconcile_backoff_seconds,
        final_check_delay_seconds=settings.reconcile_final_check_delay_seconds,
        settled_after_seconds=settings.reconcile_settled_after_seconds,
    )
    supervisor = TimeoutSupervisor(
        settings.host_limit_seconds,
        settings.safety_margin_seconds,
        allow_background=settings.allow_background_after_deadline,
    )
    # The send and its confirm must both land inside the deadline.
    notify_timeout = min(settings.notify_timeout_seconds, supervisor.deadline_seconds / 2)
    reconciler = ConsistencyReconciler(repository, policy, sleep=sleep, clock=clock)
    processor = JobProcessor(
        repository,
        checker=checker or HttpSiteChecker(timeout_seconds=settings.check_timeout_seconds),
        notifier=notifier or build_notifier(settings, timeout_seconds=notify_timeout),
        guard=ReservationGuard(
            repository,
            liveness_seconds=settings.reservation_liveness_seconds,
            hard_ceiling_seconds=settings.reservation_hard_ceiling_seconds,
        ),
        reconciler=reconciler,
        max_retries=settings.max_retries,
        send_failure_notifications=settings.send_failure_notifications,
        clock=clock,
    )
    detector = OrphanDetector(
        repository,
        reconciler=reconciler,
        stuck_after_seconds=settings.stuck_threshold_seconds,
        max_retries=settings.max_retries,
        batch_size=settings.repair_batch_size,
    )
    return Pipeline(
        processor=processor,
        detector=detector,
        supervisor=supervisor,
        repair_on_invocation=settings.repair_on_invocation,
    )


async def run_invocation(pipeline: Pipeline, repository: JobRepository) -> ProcessQueueOut:
    """Repair drift, then claim and process at most one queue entry inside the deadline."""

    claimed: list[QueueEntryRecord] = []

    async def invoke() -> ProcessQueueOut:
        if pipeline.repair_on_invocation:
            with tracer.start_as_current_span("worker.repair"):
                try:
                    await pipeline.detector.repair()
                except RepositoryError as exc:
                    logger.warning("orphan repair skipped: %s", exc)

        entry = await repository.claim_oldest_pending()
        if entry is None:
            return ProcessQueueOut(processed=False, reason="queue_empty")
        claimed.append(entry)

        with tracer.start_as_current_span("worker.process_job") as job_span:
            job_span.set_attribute("job.id", entry.job_id)
            job_span.set_attribute("queue_entry.id", entry.id)
            job_span.set_attribute("queue_entry.retry_count", entry.retry_count)
            result = await pipeline.processor.process(entry)
            job_span.set_attribute("job.outcome", result.outcome.value)

        return ProcessQueueOut(
            processed=result.outcome is not ProcessOutcome.SKIPPED,
            job_id=result.job_id,
            reason=result.reason,
        )

    with tracer.start_as_current_span("worker.invocation"):
        supervised = await pipeline.supervisor.run(invoke())

    if supervised.deadline_exceeded:
        job_id = claimed[0].job_id if claimed else None
        logger.warning(
            "invocation stopped at deadline job_id=%s elapsed=%.2fs",
            job_id,
            supervised.elapsed_seconds,
        )
        return ProcessQueueOut(
            processed=job_id is not None,
            job_id=job_id,
            reason=ProcessOutcome.DEADLINE_EXCEEDED.value,
        )
    if supervised.value is None:
        raise RuntimeError("supervised invocation finished without a result")
    return supervised.value


async def run_once() -> ProcessQueueOut:
    settings = get_settings()
    configure_logging(settings.log_level)
    telemetry_runtime = setup_telemetry(settings)
    repository = get_repository()
    pipeline = build_pipeline(settings, repository)
    try:
        result = await run_invocation(pipeline, repository)
        await pipeline.supervisor.drain()
        return result
    finally:
        await repository.close()
        get_repository.cache_clear()
        shutdown_telemetry(telemetry_runtime)


def main() -> None:
    try:
        result = asyncio.run(run_once())
    except RepositoryError as exc:
        logger.error("queue invocation failed: %s", exc)
        raise SystemExit(1) from exc
    print(result.model_dump_json(exclude_none=True))


if __name__ == "__main__":
    main()
