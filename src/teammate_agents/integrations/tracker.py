"""Issue tracker interface consumed by the coordinator."""

from datetime import datetime
from typing import List, Optional, Protocol, runtime_checkable

from pydantic import BaseModel, Field

STATUS_LABEL_PREFIX = "status:"
AGENT_LABEL_PREFIX = "agent:"
EPIC_STATE_LABEL_PREFIX = "epic-state:"
BLOCKED_LABEL = "blocked"
NEEDS_HUMAN_LABEL = "needs-human"


class TrackerIssue(BaseModel):
    """Issue as read from the tracking platform."""
    number: int
    title: str
    body: str = ""
    labels: List[str] = Field(default_factory=list)
    state: str = "open"
    assignees: List[str] = Field(default_factory=list)
    updated_at: Optional[datetime] = None


def status_label(status: str) -> str:
    return f"{STATUS_LABEL_PREFIX}{status.replace('_', '-')}"


def agent_label(agent_id: str) -> str:
    return f"{AGENT_LABEL_PREFIX}{agent_id}"


@runtime_checkable
class IssueTracker(Protocol):
    """Read/write operations on the tracking platform.

    Implementations raise on transport failure; the coordinator wraps
    every call in ``RetryHandler`` and degrades to local state.
    """

    def get_issue(self, number: int) -> TrackerIssue: ...

    def list_issues(self, label: Optional[str] = None, since: Optional[datetime] = None) -> List[TrackerIssue]: ...

    def create_issue(self, title: str, body: str = "", labels: Optional[List[str]] = None) -> int: ...

    def mirror_claim(self, number: int, agent_id: str) -> None: ...

    def release_claim(self, number: int, agent_id: str) -> None: ...

    def set_status(self, number: int, status: str) -> None: ...

    def add_comment(self, number: int, body: str) -> None: ...

    def mark_blocked(self, number: int, reason: str) -> None: ...

    def mark_needs_human(self, number: int, report: str) -> None: ...

    def set_epic_state(self, number: int, state: str) -> None: ...
