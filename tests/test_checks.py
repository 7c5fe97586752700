from __future__ import annotations

import asyncio
from typing import Any

import httpx
import pytest

from audit_queue.jobs.checks import USER_AGENT, HttpSiteChecker, inspect_page, render_report
from audit_queue.jobs.errors import ContentCheckError, TransientInfraError
from audit_queue.services.records import ReportArtifact

GOOD_PAGE = """
<html>
  <head>
    <title>Example Clinic</title>
    <meta name="description" content="Family clinic in town">
  </head>
  <body>
    <h1>Welcome</h1>
    <img src="/logo.png" alt="Logo">
  </body>
</html>
"""


def _run_with(handler, target: str = "https://example.com/") -> ReportArtifact:
    async def run() -> ReportArtifact:
        transport = httpx.MockTransport(handler)
        async with httpx.AsyncClient(transport=transport, follow_redirects=True) as client:
            return await HttpSiteChecker(client=client).run(target)

    return asyncio.run(run())


def test_checker_builds_report_from_page() -> None:
    seen: dict[str, Any] = {}

    async def handler(request: httpx.Request) -> httpx.Response:
        seen["user_agent"] = request.headers.get("user-agent")
        return httpx.Response(status_code=200, text=GOOD_PAGE, request=request)

    report = _run_with(handler)

    assert seen["user_agent"] == USER_AGENT
    assert report.findings["score"] == 100
    assert report.findings["title"] == "Example Clinic"
    assert report.findings["http_status"] == 200
    assert report.findings["issues"] == []
    assert "No issues found." in report.text
    assert "<h1>Site audit for https://example.com/</h1>" in report.html


def test_checker_maps_server_errors_to_transient() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code=503, request=request)

    with pytest.raises(TransientInfraError):
        _run_with(handler)


def test_checker_maps_client_errors_to_content_failure() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code=404, request=request)

    with pytest.raises(ContentCheckError):
        _run_with(handler)


def test_checker_maps_transport_errors_to_transient() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timed out", request=request)

    with pytest.raises(TransientInfraError):
        _run_with(handler)


def test_checker_rejects_non_http_targets() -> None:
    with pytest.raises(ContentCheckError):
        asyncio.run(HttpSiteChecker().run("ftp://example.com/file"))


def test_inspect_page_scores_missing_elements() -> None:
    body = '<html><body><h1>A</h1><h1>B</h1><img src="/a.png"><img src="data:image/png;base64,xx"></body></html>'

    findings = inspect_page(target="http://example.com", final_url="http://example.com/", body=body)

    titles = [issue["title"] for issue in findings["issues"]]
    assert "Page is not served over HTTPS" in titles
    assert "Missing <title> element" in titles
    assert "Missing meta description" in titles
    assert "2 <h1> headings found" in titles
    assert "1 image(s) without alt text" in titles
    assert findings["score"] == 100 - 25 - 25 - 10 - 5 - 10
    assert findings["has_redirect"] is False


def test_render_report_escapes_markup() -> None:
    html_report, text_report = render_report(
        {"url": "https://example.com/?q=<x>", "score": 90, "issues": [{"severity": "low", "title": "<script>"}]}
    )

    assert "&lt;script&gt;" in html_report
    assert "<script>" not in html_report
    assert "- [low] <script>" in text_report
    assert text_report.startswith("Site audit for https://example.com/?q=<x>\nScore: 90/100")
    assert "&lt;x&gt;" in html_report
