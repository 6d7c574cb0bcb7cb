"""GitHub issue state lookups over the REST API."""

from __future__ import annotations

import logging

import httpx

from agent_handoff.orchestrator.errors import ValidationError
from agent_handoff.orchestrator.issue_refs import parse_issue_ref
from agent_handoff.orchestrator.models import ExternalIssueState

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.github.com"
DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_MAX_RETRIES = 2


class GitHubIssueStatusResolver:
    """Resolve ``owner/repo#N`` to open/closed/not_found/error."""

    def __init__(
        self,
        *,
        api_url: str = DEFAULT_API_URL,
        token: str | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        headers = {
            "Accept": "application/vnd.github+json",
            "User-Agent": "agent-handoff",
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.Client(
            base_url=api_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds, connect=5.0),
            headers=headers,
            transport=transport or httpx.HTTPTransport(retries=max_retries),
            follow_redirects=True,
        )

    def status(self, issue_ref: str) -> ExternalIssueState:
        try:
            ref = parse_issue_ref(issue_ref)
        except ValidationError:
            logger.warning("Cannot look up malformed issue reference %r", issue_ref)
            return ExternalIssueState.ERROR

        path = f"/repos/{ref.owner}/{ref.repo}/issues/{ref.number}"
        try:
            response = self._client.get(path)
        except httpx.TimeoutException:
            logger.warning("Timeout looking up %s", ref)
            return ExternalIssueState.ERROR
        except httpx.HTTPError as exc:
            logger.warning("HTTP error looking up %s: %s", ref, exc)
            return ExternalIssueState.ERROR

        if response.status_code == httpx.codes.NOT_FOUND:
            return ExternalIssueState.NOT_FOUND
        if not response.is_success:
            logger.warning("GitHub returned HTTP %s for %s", response.status_code, ref)
            return ExternalIssueState.ERROR
        try:
            payload = response.json()
        except ValueError:
            logger.warning("GitHub returned non-JSON body for %s", ref)
            return ExternalIssueState.ERROR
        state = str(payload.get("state", "")).lower() if isinstance(payload, dict) else ""
        if state == "open":
            return ExternalIssueState.OPEN
        if state == "closed":
            return ExternalIssueState.CLOSED
        return ExternalIssueState.ERROR

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> GitHubIssueStatusResolver:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()
