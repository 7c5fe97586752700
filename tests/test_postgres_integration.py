from __future__ import annotations

import asyncio
import os
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TypeVar

import asyncpg  # type: ignore[import-untyped]
import pytest

from audit_queue.jobs.orphans import OrphanDetector
from audit_queue.jobs.reconciler import ConsistencyReconciler, RetryPolicy
from audit_queue.jobs.reservation import ReservationGuard
from audit_queue.services.records import JobStatus, NotificationState, QueueStatus
from audit_queue.services.repository import PostgresRepository

MIGRATION = Path(__file__).resolve().parents[1] / "db" / "migrations" / "0001_audit_queue.sql"

T = TypeVar("T")


@pytest.fixture(scope="session")
def database_url() -> str:
    url = os.getenv("AQ_DATABASE_URL") or os.getenv("DATABASE_URL")
    if not url:
        pytest.skip("integration tests require AQ_DATABASE_URL or DATABASE_URL")
    return url


@pytest.fixture(autouse=True)
def reset_tables(database_url: str) -> None:
    asyncio.run(_reset(database_url))


async def _reset(database_url: str) -> None:
    conn = await asyncpg.connect(database_url)
    try:
        await conn.execute(MIGRATION.read_text())
        await conn.execute("truncate table job_events, queue_entries, jobs restart identity cascade")
    finally:
        await conn.close()


def _with_repository(database_url: str, scenario: Callable[[PostgresRepository], Awaitable[T]]) -> T:
    async def run() -> T:
        repository = PostgresRepository(database_url, min_pool_size=1, max_pool_size=10)
        try:
            return await scenario(repository)
        finally:
            await repository.close()

    return asyncio.run(run())


def test_concurrent_reservations_have_one_winner(database_url: str) -> None:
    async def scenario(repository: PostgresRepository) -> list[bool]:
        guard = ReservationGuard(repository, liveness_seconds=120, hard_ceiling_seconds=1800)
        job = await repository.create_job(target="https://example.com", recipient="owner@example.com")
        results = await asyncio.gather(*(guard.try_reserve(job.id) for _ in range(20)))
        assert await guard.confirm(job.id) is True
        refreshed = await repository.get_job(job.id)
        assert refreshed is not None and refreshed.notification_state is NotificationState.CONFIRMED
        return list(results)

    results = _with_repository(database_url, scenario)
    assert results.count(True) == 1


def test_concurrent_claims_skip_locked_rows(database_url: str) -> None:
    async def scenario(repository: PostgresRepository) -> None:
        job = await repository.create_job(target="https://example.com", recipient="owner@example.com")
        claims = await asyncio.gather(repository.claim_oldest_pending(), repository.claim_oldest_pending())

        winners = [entry for entry in claims if entry is not None]
        assert len(winners) == 1
        assert winners[0].job_id == job.id
        assert winners[0].retry_count == 1
        refreshed = await repository.get_job(job.id)
        assert refreshed is not None and refreshed.status is JobStatus.RUNNING

    _with_repository(database_url, scenario)


def test_repair_is_idempotent_against_live_entry_index(database_url: str) -> None:
    async def scenario(repository: PostgresRepository) -> None:
        job = await repository.create_job(target="https://example.com", recipient="owner@example.com")
        entry = await repository.claim_oldest_pending()
        assert entry is not None
        await repository.complete_job(job.id, entry.id)

        pool = await repository._get_pool()
        await pool.execute("update jobs set status = 'running' where id = $1::uuid", job.id)

        detector = OrphanDetector(
            repository,
            reconciler=ConsistencyReconciler(repository, RetryPolicy(backoff_seconds=())),
            stuck_after_seconds=600,
            max_retries=3,
            batch_size=10,
        )
        reports = await asyncio.gather(detector.repair(), detector.repair())

        assert sum(report.requeued_orphans for report in reports) == 1
        live = [row for row in await repository.list_queue_entries(job_id=job.id) if row.status is QueueStatus.PENDING]
        assert len(live) == 1

    _with_repository(database_url, scenario)


def test_failed_job_retry_and_stuck_recovery(database_url: str) -> None:
    async def scenario(repository: PostgresRepository) -> None:
        job = await repository.create_job(target="https://example.com", recipient="owner@example.com")
        entry = await repository.claim_oldest_pending()
        assert entry is not None
        await repository.fail_job(job.id, entry.id, error="target responded with 404")

        retried = await repository.requeue_job(job.id)
        assert retried.status is QueueStatus.PENDING

        claimed = await repository.claim_oldest_pending()
        assert claimed is not None and claimed.id == retried.id
        pool = await repository._get_pool()
        await pool.execute(
            "update queue_entries set started_at = now() - interval '20 minutes' where id = $1::uuid",
            claimed.id,
        )

        reset_ids = await repository.reset_stuck_entries(stuck_after_seconds=600, max_retries=3, limit=10)
        assert reset_ids == [job.id]
        assert await repository.list_exhausted_entries(stuck_after_seconds=600, max_retries=3, limit=10) == []
        recovered = await repository.get_queue_entry(claimed.id)
        assert recovered is not None and recovered.retry_count == 2

    _with_repository(database_url, scenario)


def test_deferred_entry_goes_behind_pending_work(database_url: str) -> None:
    async def scenario(repository: PostgresRepository) -> None:
        first = await repository.create_job(target="https://a.example.com", recipient="a@example.com")
        second = await repository.create_job(target="https://b.example.com", recipient="b@example.com")

        claimed = await repository.claim_oldest_pending()
        assert claimed is not None and claimed.job_id == first.id
        assert await repository.defer_entry(claimed.id, error="notification in flight", refund_attempt=True) is True

        following = await repository.claim_oldest_pending()
        assert following is not None and following.job_id == second.id
        deferred = await repository.get_queue_entry(claimed.id)
        assert deferred is not None
        assert deferred.status is QueueStatus.PENDING
        assert deferred.retry_count == 0

    _with_repository(database_url, scenario)
