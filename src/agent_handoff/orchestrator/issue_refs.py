"""Issue reference parsing and normalization."""

from __future__ import annotations

import re
from dataclasses import dataclass

from agent_handoff.orchestrator.errors import ValidationError

_SHORT_REF = re.compile(r"^(?P<owner>[\w.-]+)/(?P<repo>[\w.-]+)#(?P<number>\d+)$")
_URL_REF = re.compile(
    r"^https?://(?:www\.)?github\.com/(?P<owner>[\w.-]+)/(?P<repo>[\w.-]+)"
    r"/(?:issues|pull)/(?P<number>\d+)/?(?:[?#].*)?$",
)
_NUMBER_REF = re.compile(r"^#?(?P<number>\d+)$")


@dataclass(slots=True, frozen=True)
class IssueRef:
    owner: str
    repo: str
    number: int

    def __str__(self) -> str:
        return f"{self.owner}/{self.repo}#{self.number}"


def parse_issue_ref(value: str, *, default_repo: str | None = None) -> IssueRef:
    """Parse ``owner/repo#N``, a GitHub issue URL, or ``#N`` against ``default_repo``."""

    raw = value.strip()
    match = _SHORT_REF.match(raw) or _URL_REF.match(raw)
    if match is not None:
        return IssueRef(
            owner=match.group("owner").lower(),
            repo=match.group("repo").lower(),
            number=_issue_number(match.group("number"), raw),
        )

    number_match = _NUMBER_REF.match(raw)
    if number_match is not None:
        if not default_repo:
            raise ValidationError(
                f"Issue reference {value!r} has no repository and no default repo is configured.",
            )
        owner, _, repo = default_repo.strip().partition("/")
        if not owner or not repo:
            raise ValidationError(f"Invalid default repository: {default_repo!r}")
        return IssueRef(
            owner=owner.lower(),
            repo=repo.lower(),
            number=_issue_number(number_match.group("number"), raw),
        )

    raise ValidationError(
        f"Invalid issue reference: {value!r}. Expected 'owner/repo#123' or an issue URL.",
    )


def normalize_issue_ref(value: str | None, *, default_repo: str | None = None) -> str | None:
    """Canonical ``owner/repo#N`` form, or None for empty input."""

    if value is None or not value.strip():
        return None
    return str(parse_issue_ref(value, default_repo=default_repo))


def _issue_number(raw_number: str, raw: str) -> int:
    number = int(raw_number)
    if number <= 0:
        raise ValidationError(f"Issue number must be positive: {raw!r}")
    return number
