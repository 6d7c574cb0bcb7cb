"""External collaborators: issue tracker lookups and operator notifications."""

from agent_handoff.integrations.base import IssueStatusResolver, NotificationSink
from agent_handoff.integrations.github import GitHubIssueStatusResolver
from agent_handoff.integrations.notifications import (
    CompositeNotificationSink,
    HttpNotificationSink,
    LoggingNotificationSink,
)

__all__ = [
    "CompositeNotificationSink",
    "GitHubIssueStatusResolver",
    "HttpNotificationSink",
    "IssueStatusResolver",
    "LoggingNotificationSink",
    "NotificationSink",
]
