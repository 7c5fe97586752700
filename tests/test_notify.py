from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from typing import Any

import httpx
import pytest

from audit_queue.jobs.errors import NotificationError
from audit_queue.jobs.notify import ResendNotifier
from audit_queue.services.records import JobRecord, JobStatus, ReportArtifact

JOB = JobRecord(
    id="job-1",
    status=JobStatus.RUNNING,
    target="https://example.com",
    recipient="owner@example.com",
    created_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
)
REPORT = ReportArtifact(html="<p>report</p>", text="report")


def _notifier(client: httpx.AsyncClient) -> ResendNotifier:
    return ResendNotifier(
        api_key="re_test",
        api_url="https://mail.test/emails",
        sender="Audit <audit@example.com>",
        site_url="https://audit.example.com/",
        client=client,
    )


def test_send_posts_report_with_bearer_key() -> None:
    captured: dict[str, Any] = {}

    async def handler(request: httpx.Request) -> httpx.Response:
        captured["authorization"] = request.headers.get("authorization")
        captured["payload"] = json.loads(request.content)
        return httpx.Response(status_code=200, json={"id": "msg-1"}, request=request)

    async def run() -> None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            await _notifier(client).send("owner@example.com", JOB, REPORT)

    asyncio.run(run())

    assert captured["authorization"] == "Bearer re_test"
    assert captured["payload"]["to"] == ["owner@example.com"]
    assert captured["payload"]["html"] == "<p>report</p>"
    assert captured["payload"]["text"].endswith("Full report: https://audit.example.com/report/job-1")


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(status_code=500, text="upstream"),
        httpx.Response(status_code=200, json={}),
    ],
)
def test_send_raises_notification_error_on_rejected_delivery(response: httpx.Response) -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return response

    async def run() -> None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            await _notifier(client).send("owner@example.com", JOB, REPORT)

    with pytest.raises(NotificationError):
        asyncio.run(run())


def test_send_failure_wraps_transport_errors() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    async def run() -> None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            await _notifier(client).send_failure("owner@example.com", JOB, "target responded with 404")

    with pytest.raises(NotificationError):
        asyncio.run(run())
