from __future__ import annotations

import logging
from typing import Protocol

import httpx

from audit_queue.jobs.errors import NotificationError
from audit_queue.services.records import JobRecord, ReportArtifact

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def send(self, recipient: str, job: JobRecord, report: ReportArtifact) -> None: ...

    async def send_failure(self, recipient: str, job: JobRecord, reason: str) -> None: ...


class ResendNotifier:
    """Sends report e-mails through the Resend HTTP API."""

    def __init__(
        self,
        *,
        api_key: str,
        api_url: str,
        sender: str,
        site_url: str,
        timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_key = api_key
        self.api_url = api_url
        self.sender = sender
        self.site_url = site_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.client = client

    async def send(self, recipient: str, job: JobRecord, report: ReportArtifact) -> None:
        footer = f"\n\nFull report: {self.site_url}/report/{job.id}"
        message_id = await self._post(
            {
                "from": self.sender,
                "to": [recipient],
                "subject": f"Your site audit for {job.target}",
                "html": report.html,
                "text": report.text + footer,
            }
        )
        logger.info("report e-mail accepted job_id=%s message_id=%s", job.id, message_id)

    async def send_failure(self, recipient: str, job: JobRecord, reason: str) -> None:
        await self._post(
            {
                "from": self.sender,
                "to": [recipient],
                "subject": f"We could not complete your site audit for {job.target}",
                "text": (
                    "Your audit could not be completed. Our team has been notified "
                    f"and will follow up.\n\nReference: {job.id}\nReason: {reason}"
                ),
            }
        )

    async def _post(self, payload: dict[str, object]) -> str:
        headers = {"Authorization": f"Bearer {self.api_key}"}
        try:
            if self.client is not None:
                response = await self.client.post(self.api_url, json=payload, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    response = await client.post(self.api_url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            raise NotificationError(f"e-mail API request failed: {exc}") from exc

        if response.status_code >= 400:
            raise NotificationError(f"e-mail API returned {response.status_code}: {response.text[:200]}")
        message_id = response.json().get("id")
        if not message_id:
            raise NotificationError("e-mail API returned no message id")
        return str(message_id)


class LogNotifier:
    """Logs instead of sending; used when no e-mail API key is configured."""

    async def send(self, recipient: str, job: JobRecord, report: ReportArtifact) -> None:
        logger.warning("e-mail delivery not configured; report for job_id=%s not sent to %s", job.id, recipient)

    async def send_failure(self, recipient: str, job: JobRecord, reason: str) -> None:
        logger.warning("e-mail delivery not configured; failure notice for job_id=%s not sent: %s", job.id, reason)
