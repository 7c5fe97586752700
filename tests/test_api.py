from __future__ import annotations

from collections.abc import Iterator

import pytest
from fastapi.testclient import TestClient

from audit_queue.api.routes.queue import get_pipeline
from audit_queue.core.config import Settings, get_settings
from audit_queue.main import app
from audit_queue.services.records import JobRecord, QueueStatus, ReportArtifact
from audit_queue.services.repository import RepositoryUnavailableError, get_repository
from audit_queue.services.store import InMemoryRepository
from audit_queue.worker import build_pipeline

QUEUE_HEADERS = {"Authorization": "Bearer queue-secret"}
ADMIN_HEADERS = {"Authorization": "Bearer admin-secret"}


class StaticChecker:
    async def run(self, target: str) -> ReportArtifact:
        return ReportArtifact(html="<p>ok</p>", text="ok", findings={"score": 95})


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: list[str] = []

    async def send(self, recipient: str, job: JobRecord, report: ReportArtifact) -> None:
        self.sent.append(job.id)

    async def send_failure(self, recipient: str, job: JobRecord, reason: str) -> None:
        return None


class UnavailableRepository:
    async def close(self) -> None:
        return None

    def __getattr__(self, name: str):
        async def unavailable(*args, **kwargs):
            raise RepositoryUnavailableError("database unavailable")

        return unavailable


@pytest.fixture
def settings() -> Settings:
    return Settings(
        storage_backend="memory",
        queue_secret="queue-secret",
        admin_secret="admin-secret",
        otel_enabled=False,
    )


@pytest.fixture
def store() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def client(settings: Settings, store: InMemoryRepository, notifier: RecordingNotifier) -> Iterator[TestClient]:
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_repository] = lambda: store
    app.dependency_overrides[get_pipeline] = lambda: build_pipeline(
        settings,
        store,
        checker=StaticChecker(),
        notifier=notifier,
    )
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_healthz(client: TestClient) -> None:
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}

    ready = client.get("/readyz")
    assert ready.status_code == 200
    assert ready.json() == {"status": "ready"}


def test_process_queue_requires_secret(client: TestClient) -> None:
    assert client.post("/process-queue").status_code == 401
    assert client.post("/process-queue", headers={"Authorization": "Bearer wrong"}).status_code == 401
    assert client.get("/process-queue?secret=wrong").status_code == 401


def test_process_queue_accepts_bearer_or_query_secret(client: TestClient) -> None:
    by_header = client.post("/process-queue", headers=QUEUE_HEADERS)
    by_query = client.get("/process-queue?secret=queue-secret")

    assert by_header.status_code == 200
    assert by_header.json() == {"processed": False, "reason": "queue_empty"}
    assert by_query.status_code == 200


def test_process_queue_is_open_without_configured_secret(client: TestClient, settings: Settings) -> None:
    settings.queue_secret = None
    assert client.post("/process-queue").status_code == 200


def test_admin_intake_then_trigger_completes_job(client: TestClient, notifier: RecordingNotifier) -> None:
    created = client.post(
        "/admin/jobs",
        json={"target": "https://example.com", "recipient": "owner@example.com"},
        headers=ADMIN_HEADERS,
    )
    assert created.status_code == 201
    job_id = created.json()["job"]["id"]
    assert created.json()["queue_entry"]["status"] == "pending"

    processed = client.post("/process-queue", headers=QUEUE_HEADERS)
    assert processed.status_code == 200
    assert processed.json() == {"processed": True, "job_id": job_id, "reason": "completed"}
    assert notifier.sent == [job_id]

    again = client.post("/process-queue", headers=QUEUE_HEADERS)
    assert again.json() == {"processed": False, "reason": "queue_empty"}

    job = client.get(f"/admin/jobs/{job_id}", headers=ADMIN_HEADERS).json()
    assert job["status"] == "completed"
    assert job["notification_state"] == "confirmed"
    assert job["findings"] == {"score": 95}


def test_admin_job_view_reads_replica_unless_fresh(client: TestClient, store: InMemoryRepository) -> None:
    store.replica_lag = True
    created = client.post(
        "/admin/jobs",
        json={"target": "https://example.com", "recipient": "owner@example.com"},
        headers=ADMIN_HEADERS,
    ).json()
    job_id = created["job"]["id"]

    assert client.get(f"/admin/jobs/{job_id}", headers=ADMIN_HEADERS).status_code == 404
    primary = client.get(f"/admin/jobs/{job_id}", params={"fresh": "true"}, headers=ADMIN_HEADERS)
    assert primary.status_code == 200
    assert primary.json()["status"] == "pending"

    store.sync_replica()
    assert client.get(f"/admin/jobs/{job_id}", headers=ADMIN_HEADERS).status_code == 200


def test_admin_routes_require_bearer_secret(client: TestClient) -> None:
    assert client.get("/admin/queue").status_code == 401
    assert client.post("/admin/repair", headers={"Authorization": "Bearer nope"}).status_code == 401


def test_admin_queue_status_and_repair(client: TestClient, store: InMemoryRepository) -> None:
    client.post("/admin/jobs", json={"target": "https://a.example", "recipient": "a@example.com"}, headers=ADMIN_HEADERS)

    status_response = client.get("/admin/queue", headers=ADMIN_HEADERS)
    assert status_response.status_code == 200
    assert status_response.json()["counts"]["pending"] == 1
    assert status_response.json()["stuck_entries"] == []

    for entry in store.queue.values():
        entry.status = QueueStatus.COMPLETED

    repair_response = client.post("/admin/repair", headers=ADMIN_HEADERS)
    assert repair_response.status_code == 200
    assert repair_response.json()["requeued_orphans"] == 1


def test_admin_retry_maps_repository_errors(client: TestClient) -> None:
    created = client.post(
        "/admin/jobs",
        json={"target": "https://example.com", "recipient": "owner@example.com"},
        headers=ADMIN_HEADERS,
    ).json()

    conflict = client.post(f"/admin/jobs/{created['job']['id']}/retry", headers=ADMIN_HEADERS)
    missing = client.post("/admin/jobs/not-a-job/retry", headers=ADMIN_HEADERS)

    assert conflict.status_code == 409
    assert missing.status_code == 404


def test_admin_intake_validates_payload(client: TestClient) -> None:
    response = client.post("/admin/jobs", json={"target": "", "recipient": "owner@example.com"}, headers=ADMIN_HEADERS)
    assert response.status_code == 422


def test_release_reservation_follows_abandonment_rule(client: TestClient) -> None:
    created = client.post(
        "/admin/jobs",
        json={"target": "https://example.com", "recipient": "owner@example.com"},
        headers=ADMIN_HEADERS,
    ).json()
    job_id = created["job"]["id"]

    released = client.post(f"/admin/jobs/{job_id}/release-reservation", headers=ADMIN_HEADERS)
    missing = client.post("/admin/jobs/ghost/release-reservation", headers=ADMIN_HEADERS)

    assert released.status_code == 200
    assert released.json() == {"job_id": job_id, "released": False}
    assert missing.status_code == 404


def test_unavailable_store_maps_to_503(client: TestClient, settings: Settings) -> None:
    repository = UnavailableRepository()
    app.dependency_overrides[get_repository] = lambda: repository
    app.dependency_overrides[get_pipeline] = lambda: build_pipeline(
        settings,
        repository,
        checker=StaticChecker(),
        notifier=RecordingNotifier(),
    )

    assert client.post("/process-queue", headers=QUEUE_HEADERS).status_code == 503
    assert client.get("/admin/queue", headers=ADMIN_HEADERS).status_code == 503
    assert client.get("/readyz").status_code == 503
