from __future__ import annotations

import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Any, Protocol

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from audit_queue.core.config import get_settings
from audit_queue.services.records import (
    JobRecord,
    JobStatus,
    QueueEntryRecord,
    QueueStatus,
    QueueSummary,
    ReportArtifact,
)


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""


class JobRepository(Protocol):
    async def close(self) -> None: ...

    async def ping(self) -> None: ...

    async def create_job(self, *, target: str, recipient: str) -> JobRecord: ...

    async def get_job(self, job_id: str, *, fresh: bool = True) -> JobRecord | None: ...

    async def get_queue_entry(self, entry_id: str) -> QueueEntryRecord | None: ...

    async def list_queue_entries(self, *, job_id: str) -> list[QueueEntryRecord]: ...

    async def claim_oldest_pending(self) -> QueueEntryRecord | None: ...

    async def save_report(self, job_id: str, report: ReportArtifact) -> None: ...

    async def try_reserve_notification(self, job_id: str) -> bool: ...

    async def confirm_notification(self, job_id: str) -> bool: ...

    async def release_notification_reservation(self, job_id: str, *, older_than_seconds: float) -> bool: ...

    async def complete_job(self, job_id: str, queue_entry_id: str | None) -> None: ...

    async def fail_job(self, job_id: str, queue_entry_id: str | None, *, error: str) -> None: ...

    async def requeue_entry(self, queue_entry_id: str, *, error: str) -> bool: ...

    async def defer_entry(self, queue_entry_id: str, *, error: str, refund_attempt: bool = False) -> bool: ...

    async def insert_missing_queue_entries(self, *, limit: int) -> list[str]: ...

    async def reset_stuck_entries(self, *, stuck_after_seconds: float, max_retries: int, limit: int) -> list[str]: ...

    async def list_exhausted_entries(
        self,
        *,
        stuck_after_seconds: float,
        max_retries: int,
        limit: int,
    ) -> list[QueueEntryRecord]: ...

    async def requeue_job(self, job_id: str) -> QueueEntryRecord: ...

    async def summarize_queue(self, *, stuck_after_seconds: float, limit: int = 50) -> QueueSummary: ...


JOB_COLUMNS = """
  id::text as id,
  status,
  target,
  recipient,
  created_at,
  completed_at,
  report_html,
  report_text,
  findings_json,
  report_created_at,
  error_log,
  notification_confirmed,
  notification_reserved_at,
  notification_confirmed_at
"""

QUEUE_COLUMNS = """
  id::text as id,
  job_id::text as job_id,
  status,
  created_at,
  started_at,
  completed_at,
  retry_count,
  last_error
"""

_CONNECTION_ERRORS = (
    OSError,
    TimeoutError,
    asyncpg.InterfaceError,
    pg_exc.PostgresConnectionError,
    pg_exc.CannotConnectNowError,
    pg_exc.TooManyConnectionsError,
)


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
        replica_database_url: str | None = None,
    ) -> None:
        self.database_url = database_url
        self.replica_database_url = replica_database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None
        self._replica_pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
        if self._replica_pool is not None:
            await self._replica_pool.close()
            self._replica_pool = None

    async def ping(self) -> None:
        async with self._connection() as conn:
            await conn.fetchval("select 1")

    async def create_job(self, *, target: str, recipient: str) -> JobRecord:
        target = target.strip()
        recipient = recipient.strip()
        if not target or not recipient:
            raise RepositoryValidationError("target and recipient must be non-empty strings")

        async with self._connection() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"""
                    insert into jobs (target, recipient)
                    values ($1, $2)
                    returning {JOB_COLUMNS}
                    """,
                    target,
                    recipient,
                )
                entry_id = await conn.fetchval(
                    "insert into queue_entries (job_id) values ($1::uuid) returning id::text",
                    row["id"],
                )
                await self._add_event(conn, "job", row["id"], "created", {"queue_entry_id": entry_id})
                return self._job_row_to_record(row)

    async def get_job(self, job_id: str, *, fresh: bool = True) -> JobRecord | None:
        """Read one job; ``fresh=False`` may be served by the replica."""

        pool = await self._get_pool() if fresh or not self.replica_database_url else await self._get_replica_pool()
        try:
            row = await pool.fetchrow(f"select {JOB_COLUMNS} from jobs where id = $1::uuid", job_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return None
        except _CONNECTION_ERRORS as exc:
            raise RepositoryUnavailableError("database unavailable") from exc
        if row is None:
            return None
        return self._job_row_to_record(row)

    async def get_queue_entry(self, entry_id: str) -> QueueEntryRecord | None:
        async with self._connection() as conn:
            try:
                row = await conn.fetchrow(
                    f"select {QUEUE_COLUMNS} from queue_entries where id = $1::uuid",
                    entry_id,
                )
            except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
                return None
        return self._queue_row_to_record(row) if row else None

    async def list_queue_entries(self, *, job_id: str) -> list[QueueEntryRecord]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"""
                select {QUEUE_COLUMNS}
                from queue_entries
                where job_id = $1::uuid
                order by created_at asc
                """,
                job_id,
            )
        return [self._queue_row_to_record(row) for row in rows]

    async def claim_oldest_pending(self) -> QueueEntryRecord | None:
        """Atomically move the oldest pending entry to processing.

        Rows locked by a concurrent claimer are skipped, never waited on.
        """

        async with self._connection() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"""
                    update queue_entries
                    set
                      status = 'processing',
                      started_at = now(),
                      completed_at = null,
                      retry_count = retry_count + 1
                    where id = (
                      select id
                      from queue_entries
                      where status = 'pending'
                      order by created_at asc
                      limit 1
                      for update skip locked
                    )
                    returning {QUEUE_COLUMNS}
                    """
                )
                if row is None:
                    return None

                await conn.execute(
                    "update jobs set status = 'running' where id = $1::uuid and status = 'pending'",
                    row["job_id"],
                )
                await self._add_event(
                    conn,
                    "queue_entry",
                    row["id"],
                    "claimed",
                    {"job_id": row["job_id"], "retry_count": row["retry_count"]},
                )
                return self._queue_row_to_record(row)

    async def save_report(self, job_id: str, report: ReportArtifact) -> None:
        async with self._connection() as conn:
            async with conn.transaction():
                result = await conn.execute(
                    """
                    update jobs
                    set
                      report_html = $2,
                      report_text = $3,
                      findings_json = $4::jsonb,
                      report_created_at = now()
                    where id = $1::uuid
                    """,
                    job_id,
                    report.html,
                    report.text,
                    json.dumps(report.findings),
                )
                if _affected(result) != 1:
                    raise RepositoryNotFoundError("job not found")
                await self._add_event(conn, "job", job_id, "report_saved", {})

    async def try_reserve_notification(self, job_id: str) -> bool:
        async with self._connection() as conn:
            async with conn.transaction():
                result = await conn.execute(
                    """
                    update jobs
                    set notification_reserved_at = now()
                    where id = $1::uuid
                      and not notification_confirmed
                      and notification_reserved_at is null
                    """,
                    job_id,
                )
                reserved = _affected(result) == 1
                if reserved:
                    await self._add_event(conn, "job", job_id, "notification_reserved", {})
                return reserved

    async def confirm_notification(self, job_id: str) -> bool:
        async with self._connection() as conn:
            async with conn.transaction():
                result = await conn.execute(
                    """
                    update jobs
                    set
                      notification_confirmed = true,
                      notification_confirmed_at = now()
                    where id = $1::uuid
                      and notification_reserved_at is not null
                      and not notification_confirmed
                    """,
                    job_id,
                )
                confirmed = _affected(result) == 1
                if confirmed:
                    await self._add_event(conn, "job", job_id, "notification_confirmed", {})
                return confirmed

    async def release_notification_reservation(self, job_id: str, *, older_than_seconds: float) -> bool:
        async with self._connection() as conn:
            async with conn.transaction():
                result = await conn.execute(
                    """
                    update jobs
                    set notification_reserved_at = null
                    where id = $1::uuid
                      and not notification_confirmed
                      and notification_reserved_at is not null
                      and notification_reserved_at <= now() - ($2::float8 * interval '1 second')
                    """,
                    job_id,
                    float(older_than_seconds),
                )
                released = _affected(result) == 1
                if released:
                    await self._add_event(
                        conn,
                        "job",
                        job_id,
                        "notification_reservation_released",
                        {"older_than_seconds": older_than_seconds},
                    )
                return released

    async def complete_job(self, job_id: str, queue_entry_id: str | None) -> None:
        async with self._connection() as conn:
            async with conn.transaction():
                if queue_entry_id is not None:
                    await conn.execute(
                        """
                        update queue_entries
                        set status = 'completed', completed_at = now()
                        where id = $1::uuid and status in ('pending', 'processing')
                        """,
                        queue_entry_id,
                    )
                await conn.execute(
                    """
                    update jobs
                    set status = 'completed', completed_at = coalesce(completed_at, now()), error_log = null
                    where id = $1::uuid and status <> 'completed'
                    """,
                    job_id,
                )
                await self._add_event(conn, "job", job_id, "completed", {"queue_entry_id": queue_entry_id})

    async def fail_job(self, job_id: str, queue_entry_id: str | None, *, error: str) -> None:
        async with self._connection() as conn:
            async with conn.transaction():
                if queue_entry_id is not None:
                    await conn.execute(
                        """
                        update queue_entries
                        set status = 'failed', completed_at = now(), last_error = $2
                        where id = $1::uuid and status in ('pending', 'processing')
                        """,
                        queue_entry_id,
                        error[:1000],
                    )
                await conn.execute(
                    """
                    update jobs
                    set status = 'failed', error_log = $2
                    where id = $1::uuid and status in ('pending', 'running')
                    """,
                    job_id,
                    error,
                )
                await self._add_event(
                    conn,
                    "job",
                    job_id,
                    "failed",
                    {"queue_entry_id": queue_entry_id, "error": error[:1000]},
                )

    async def requeue_entry(self, queue_entry_id: str, *, error: str) -> bool:
        async with self._connection() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    update queue_entries
                    set status = 'pending', started_at = null, last_error = $2
                    where id = $1::uuid and status = 'processing'
                    returning job_id::text as job_id
                    """,
                    queue_entry_id,
                    error[:1000],
                )
                if row is None:
                    return False
                await self._add_event(conn, "queue_entry", queue_entry_id, "requeued", {"error": error[:1000]})
                return True

    async def defer_entry(self, queue_entry_id: str, *, error: str, refund_attempt: bool = False) -> bool:
        """Return a processing entry to pending behind everything already queued.

        With ``refund_attempt`` the retry increment taken by the claim is given back.
        """

        async with self._connection() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    update queue_entries
                    set
                      status = 'pending',
                      started_at = null,
                      created_at = now(),
                      last_error = $2,
                      retry_count = case when $3::boolean then greatest(retry_count - 1, 0) else retry_count end
                    where id = $1::uuid and status = 'processing'
                    returning retry_count
                    """,
                    queue_entry_id,
                    error[:1000],
                    refund_attempt,
                )
                if row is None:
                    return False
                await self._add_event(
                    conn,
                    "queue_entry",
                    queue_entry_id,
                    "deferred",
                    {"error": error[:1000], "retry_count": row["retry_count"]},
                )
                return True

    async def insert_missing_queue_entries(self, *, limit: int) -> list[str]:
        bounded_limit = max(1, min(limit, 1000))
        async with self._connection() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    """
                    with orphaned as (
                      select j.id
                      from jobs j
                      where j.status in ('pending', 'running')
                        and not exists (
                          select 1
                          from queue_entries q
                          where q.job_id = j.id
                            and q.status in ('pending', 'processing')
                        )
                      order by j.created_at asc
                      limit $1
                    )
                    insert into queue_entries (job_id)
                    select id from orphaned
                    on conflict (job_id) where status in ('pending', 'processing') do nothing
                    returning job_id::text as job_id
                    """,
                    bounded_limit,
                )
                for row in rows:
                    await self._add_event(conn, "job", row["job_id"], "orphan_requeued", {})
                return [row["job_id"] for row in rows]

    async def reset_stuck_entries(self, *, stuck_after_seconds: float, max_retries: int, limit: int) -> list[str]:
        """Put stuck entries that still have retry budget back to pending; returns their job ids."""

        bounded_limit = max(1, min(limit, 1000))
        async with self._connection() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    """
                    with stuck as (
                      select id
                      from queue_entries
                      where status = 'processing'
                        and retry_count < $3
                        and started_at <= now() - ($1::float8 * interval '1 second')
                      order by started_at asc
                      limit $2
                      for update skip locked
                    )
                    update queue_entries q
                    set
                      status = 'pending',
                      retry_count = q.retry_count + 1,
                      started_at = null,
                      last_error = 'processing exceeded stuck threshold'
                    from stuck s
                    where q.id = s.id
                    returning q.id::text as id, q.job_id::text as job_id
                    """,
                    float(stuck_after_seconds),
                    bounded_limit,
                    max_retries,
                )
                for row in rows:
                    await self._add_event(conn, "queue_entry", row["id"], "stuck_reset", {"job_id": row["job_id"]})
                return [row["job_id"] for row in rows]

    async def list_exhausted_entries(
        self,
        *,
        stuck_after_seconds: float,
        max_retries: int,
        limit: int,
    ) -> list[QueueEntryRecord]:
        """Stuck entries with no retry budget left; the caller decides their terminal state."""

        bounded_limit = max(1, min(limit, 1000))
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"""
                select {QUEUE_COLUMNS}
                from queue_entries
                where status = 'processing'
                  and retry_count >= $3
                  and started_at <= now() - ($1::float8 * interval '1 second')
                order by started_at asc
                limit $2
                """,
                float(stuck_after_seconds),
                bounded_limit,
                max_retries,
            )
        return [self._queue_row_to_record(row) for row in rows]

    async def requeue_job(self, job_id: str) -> QueueEntryRecord:
        """Put a failed job back on the queue without breaking the one-live-entry rule."""

        async with self._connection() as conn:
            async with conn.transaction():
                try:
                    status = await conn.fetchval("select status from jobs where id = $1::uuid for update", job_id)
                except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
                    raise RepositoryNotFoundError("job not found") from exc
                if status is None:
                    raise RepositoryNotFoundError("job not found")
                if status != JobStatus.FAILED.value:
                    raise RepositoryConflictError(f"only failed jobs can be retried, got {status}")

                await conn.execute(
                    "update jobs set status = 'running', error_log = null where id = $1::uuid",
                    job_id,
                )
                await conn.execute(
                    """
                    insert into queue_entries (job_id)
                    values ($1::uuid)
                    on conflict (job_id) where status in ('pending', 'processing') do nothing
                    """,
                    job_id,
                )
                row = await conn.fetchrow(
                    f"""
                    select {QUEUE_COLUMNS}
                    from queue_entries
                    where job_id = $1::uuid and status in ('pending', 'processing')
                    """,
                    job_id,
                )
                await self._add_event(conn, "job", job_id, "manual_retry", {"queue_entry_id": row["id"]})
                return self._queue_row_to_record(row)

    async def summarize_queue(self, *, stuck_after_seconds: float, limit: int = 50) -> QueueSummary:
        async with self._connection() as conn:
            count_rows = await conn.fetch("select status, count(*) as total from queue_entries group by status")
            stuck_rows = await conn.fetch(
                f"""
                select {QUEUE_COLUMNS}
                from queue_entries
                where status = 'processing'
                  and started_at <= now() - ($1::float8 * interval '1 second')
                order by started_at asc
                limit $2
                """,
                float(stuck_after_seconds),
                limit,
            )
        counts = {status.value: 0 for status in QueueStatus}
        for row in count_rows:
            counts[row["status"]] = int(row["total"])
        return QueueSummary(counts=counts, stuck_entries=[self._queue_row_to_record(row) for row in stuck_rows])

    async def _add_event(
        self,
        conn: asyncpg.Connection,
        entity_type: str,
        entity_id: str,
        event_type: str,
        payload: dict[str, Any],
    ) -> None:
        await conn.execute(
            """
            insert into job_events (entity_type, entity_id, event_type, payload)
            values ($1, $2::uuid, $3, $4::jsonb)
            """,
            entity_type,
            entity_id,
            event_type,
            json.dumps(payload),
        )

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[asyncpg.Connection]:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                yield conn
        except _CONNECTION_ERRORS as exc:
            raise RepositoryUnavailableError("database unavailable") from exc

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("AQ_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        self._pool = await self._create_pool(self.database_url)
        return self._pool

    async def _get_replica_pool(self) -> asyncpg.Pool:
        if self._replica_pool is not None:
            return self._replica_pool

        self._replica_pool = await self._create_pool(self.replica_database_url)
        return self._replica_pool

    async def _create_pool(self, dsn: str | None) -> asyncpg.Pool:
        try:
            return await asyncpg.create_pool(
                dsn=dsn,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @staticmethod
    def _job_row_to_record(row: asyncpg.Record) -> JobRecord:
        report: ReportArtifact | None = None
        if row["report_html"] is not None:
            findings = row["findings_json"]
            if isinstance(findings, str):
                try:
                    findings = json.loads(findings)
                except json.JSONDecodeError:
                    findings = {}
            report = ReportArtifact(
                html=row["report_html"],
                text=row["report_text"] or "",
                findings=findings if isinstance(findings, dict) else {},
                created_at=row["report_created_at"],
            )
        return JobRecord(
            id=row["id"],
            status=JobStatus(row["status"]),
            target=row["target"],
            recipient=row["recipient"],
            created_at=row["created_at"],
            completed_at=row["completed_at"],
            report=report,
            error_log=row["error_log"],
            notification_confirmed=bool(row["notification_confirmed"]),
            notification_reserved_at=row["notification_reserved_at"],
            notification_confirmed_at=row["notification_confirmed_at"],
        )

    @staticmethod
    def _queue_row_to_record(row: asyncpg.Record) -> QueueEntryRecord:
        return QueueEntryRecord(
            id=row["id"],
            job_id=row["job_id"],
            status=QueueStatus(row["status"]),
            created_at=row["created_at"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            retry_count=int(row["retry_count"]),
            last_error=row["last_error"],
        )


def _affected(command_status: str) -> int:
    # asyncpg returns e.g. "UPDATE 1"
    try:
        return int(command_status.rsplit(" ", 1)[-1])
    except (AttributeError, ValueError):
        return 0


@lru_cache
def get_repository() -> JobRepository:
    settings = get_settings()
    if settings.storage_backend == "memory":
        from audit_queue.services.store import InMemoryRepository

        return InMemoryRepository()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        replica_database_url=settings.replica_database_url,
    )
