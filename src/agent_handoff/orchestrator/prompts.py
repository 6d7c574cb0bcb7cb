"""Prompt rendering for tasks handed to agents."""

from __future__ import annotations

from agent_handoff.orchestrator.models import TaskView

_IMPLEMENTER_TEMPLATE = (
    "New task to implement: {summary}\n"
    "\n"
    "Issue: {issue}\n"
    "\n"
    "Read the issue for details, implement, test, deploy."
)
_TESTER_TEMPLATE = (
    "Implementation finished for: {summary}\n"
    "\n"
    "Issue: {issue}\n"
    "\n"
    "Read the issue, verify the change works end to end and test it with the user."
)
_GENERIC_TEMPLATE = "Task: {summary}\n\nIssue: {issue}"

AGENT_PROMPT_TEMPLATES = {
    "claude": _IMPLEMENTER_TEMPLATE,
    "opencode": _TESTER_TEMPLATE,
}


def render_task_prompt(task: TaskView, *, agent_name: str | None = None) -> str:
    """Render the prompt a target agent receives for ``task``."""

    target = (agent_name or task.target_agent or "").lower()
    template = AGENT_PROMPT_TEMPLATES.get(target, _GENERIC_TEMPLATE)
    return template.format(
        summary=task.summary.strip(),
        issue=issue_url(task.issue_ref) if task.issue_ref else "-",
    )


def issue_url(issue_ref: str) -> str:
    """``owner/repo#N`` to its GitHub web URL; other values pass through."""

    repo, separator, number = issue_ref.partition("#")
    if not separator or "/" not in repo or not number.isdigit():
        return issue_ref
    return f"https://github.com/{repo}/issues/{number}"
