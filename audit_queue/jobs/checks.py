from __future__ import annotations

from html.parser import HTMLParser
from pathlib import Path
from typing import Any, Protocol
from urllib.parse import urlparse

import httpx
from jinja2 import Environment, FileSystemLoader, select_autoescape

from audit_queue.jobs.errors import ContentCheckError, TransientInfraError
from audit_queue.services.records import ReportArtifact

USER_AGENT = "audit-queue-checker/1.0"
SEVERITY_PENALTY = {"high": 25, "medium": 10, "low": 5}

TEMPLATE_DIR = Path(__file__).resolve().parents[1] / "templates"
# HTML templates autoescape; the plaintext one does not.
_jinja_env = Environment(
    loader=FileSystemLoader(TEMPLATE_DIR),
    autoescape=select_autoescape(["html"]),
    trim_blocks=True,
    lstrip_blocks=True,
)


class Checker(Protocol):
    async def run(self, target: str) -> ReportArtifact: ...


class _PageScanner(HTMLParser):
    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self.title: str | None = None
        self.meta_description: str | None = None
        self.h1_count = 0
        self.image_count = 0
        self.images_missing_alt = 0
        self._in_title = False
        self._title_parts: list[str] = []

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        attributes = {key.lower(): value for key, value in attrs}
        if tag == "title":
            self._in_title = True
        elif tag == "h1":
            self.h1_count += 1
        elif tag == "img":
            self.image_count += 1
            src = attributes.get("src") or ""
            if "alt" not in attributes and not src.startswith("data:"):
                self.images_missing_alt += 1
        elif tag == "meta" and (attributes.get("name") or "").lower() == "description":
            content = (attributes.get("content") or "").strip()
            self.meta_description = content or None

    def handle_endtag(self, tag: str) -> None:
        if tag == "title" and self._in_title:
            self._in_title = False
            title = "".join(self._title_parts).strip()
            self.title = title or None

    def handle_data(self, data: str) -> None:
        if self._in_title:
            self._title_parts.append(data)


class HttpSiteChecker:
    def __init__(self, *, timeout_seconds: float = 6.0, client: httpx.AsyncClient | None = None) -> None:
        self.timeout_seconds = timeout_seconds
        self.client = client

    async def run(self, target: str) -> ReportArtifact:
        parsed = urlparse(target)
        if parsed.scheme.lower() not in {"http", "https"} or not parsed.netloc:
            raise ContentCheckError(f"unsupported target url: {target!r}")

        if self.client is not None:
            response = await self._fetch(self.client, target)
        else:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, follow_redirects=True) as client:
                response = await self._fetch(client, target)

        if response.status_code >= 500:
            raise TransientInfraError(f"target responded with {response.status_code}")
        if response.status_code >= 400:
            raise ContentCheckError(f"target responded with {response.status_code}")

        findings = inspect_page(target=target, final_url=str(response.url), body=response.text)
        findings["http_status"] = response.status_code
        html_report, text_report = render_report(findings)
        return ReportArtifact(html=html_report, text=text_report, findings=findings)

    async def _fetch(self, client: httpx.AsyncClient, target: str) -> httpx.Response:
        try:
            return await client.get(target, headers={"User-Agent": USER_AGENT})
        except httpx.TimeoutException as exc:
            raise TransientInfraError(f"timed out fetching {target}") from exc
        except httpx.TransportError as exc:
            raise TransientInfraError(f"could not fetch {target}: {exc}") from exc


def inspect_page(*, target: str, final_url: str, body: str) -> dict[str, Any]:
    scanner = _PageScanner()
    scanner.feed(body)
    scanner.close()

    issues: list[dict[str, str]] = []
    if not final_url.startswith("https://"):
        issues.append({"severity": "high", "title": "Page is not served over HTTPS"})
    if scanner.title is None:
        issues.append({"severity": "high", "title": "Missing <title> element"})
    elif len(scanner.title) > 60:
        issues.append({"severity": "low", "title": "Title is longer than 60 characters"})
    if scanner.meta_description is None:
        issues.append({"severity": "medium", "title": "Missing meta description"})
    if scanner.h1_count == 0:
        issues.append({"severity": "medium", "title": "No <h1> heading"})
    elif scanner.h1_count > 1:
        issues.append({"severity": "low", "title": f"{scanner.h1_count} <h1> headings found"})
    if scanner.images_missing_alt:
        issues.append({"severity": "medium", "title": f"{scanner.images_missing_alt} image(s) without alt text"})

    score = max(0, 100 - sum(SEVERITY_PENALTY[issue["severity"]] for issue in issues))
    return {
        "url": target,
        "final_url": final_url,
        "has_redirect": final_url.rstrip("/") != target.rstrip("/"),
        "title": scanner.title,
        "meta_description": scanner.meta_description,
        "h1_count": scanner.h1_count,
        "image_count": scanner.image_count,
        "images_missing_alt": scanner.images_missing_alt,
        "issues": issues,
        "score": score,
    }


def render_report(findings: dict[str, Any]) -> tuple[str, str]:
    context = {
        "url": str(findings.get("url") or ""),
        "score": findings.get("score", 0),
        "title": findings.get("title"),
        "issues": findings.get("issues") or [],
    }
    html_report = _jinja_env.get_template("report.html").render(**context)
    text_report = _jinja_env.get_template("report.txt").render(**context)
    return html_report, text_report.rstrip("\n")
