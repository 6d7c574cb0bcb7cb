from __future__ import annotations

import json
import logging

import allure
import httpx
import pytest

from agent_handoff.integrations.github import GitHubIssueStatusResolver
from agent_handoff.integrations.notifications import (
    CompositeNotificationSink,
    HttpNotificationSink,
    LoggingNotificationSink,
)
from agent_handoff.orchestrator.models import ExternalIssueState
from tests.fakes import FailingSink, RecordingSink

pytestmark = [
    allure.epic("Integrations"),
    allure.feature("Issue Tracker and Notifications"),
]


def _github(handler) -> GitHubIssueStatusResolver:
    return GitHubIssueStatusResolver(token="ghp_test", transport=httpx.MockTransport(handler))


@pytest.mark.parametrize(
    ("status_code", "body", "expected"),
    [
        (200, {"state": "open"}, ExternalIssueState.OPEN),
        (200, {"state": "closed"}, ExternalIssueState.CLOSED),
        (200, {"state": "locked"}, ExternalIssueState.ERROR),
        (404, {"message": "Not Found"}, ExternalIssueState.NOT_FOUND),
        (500, {"message": "boom"}, ExternalIssueState.ERROR),
    ],
)
def test_github_maps_issue_state(status_code: int, body: dict, expected: ExternalIssueState) -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(status_code, json=body)

    with _github(handler) as resolver:
        assert resolver.status("org/repo#150") is expected

    assert seen[0].url.path == "/repos/org/repo/issues/150"
    assert seen[0].headers["Authorization"] == "Bearer ghp_test"


def test_github_accepts_issue_urls() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/repos/acme/api/issues/9"
        return httpx.Response(200, json={"state": "open"})

    with _github(handler) as resolver:
        assert resolver.status("https://github.com/acme/api/issues/9") is ExternalIssueState.OPEN


def test_github_non_json_and_transport_errors_are_error_state() -> None:
    with _github(lambda request: httpx.Response(200, text="<html>")) as resolver:
        assert resolver.status("org/repo#1") is ExternalIssueState.ERROR

    def unreachable(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with _github(unreachable) as resolver:
        assert resolver.status("org/repo#1") is ExternalIssueState.ERROR


def test_github_malformed_ref_skips_request() -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={"state": "open"})

    with _github(handler) as resolver:
        assert resolver.status("not an issue") is ExternalIssueState.ERROR
    assert calls == []


def test_http_sink_posts_text_and_source() -> None:
    payloads: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        payloads.append(json.loads(request.content))
        return httpx.Response(204)

    sink = HttpNotificationSink(
        "http://localhost:8765/notify",
        transport=httpx.MockTransport(handler),
    )
    sink.notify("claude finished task: fix bug #150")
    sink.close()

    assert payloads == [{"text": "claude finished task: fix bug #150", "source": "agent-handoff"}]


def test_http_sink_swallows_delivery_errors(caplog: pytest.LogCaptureFixture) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("speaker offline", request=request)

    sink = HttpNotificationSink("http://localhost:8765/notify", transport=httpx.MockTransport(handler))
    with caplog.at_level(logging.WARNING):
        sink.notify("hello")
    sink.close()

    assert "Notification to http://localhost:8765/notify failed" in caplog.text


def test_composite_sink_continues_past_failures(caplog: pytest.LogCaptureFixture) -> None:
    recording = RecordingSink()
    composite = CompositeNotificationSink([FailingSink(), recording, LoggingNotificationSink()])

    with caplog.at_level(logging.WARNING):
        composite.notify("Task 3 sent to claude.")

    assert recording.messages == ["Task 3 sent to claude."]
    assert "Notification sink FailingSink failed" in caplog.text
    assert "Notification: Task 3 sent to claude." in caplog.text
