"""Exception taxonomy for coordination failures.

Contention and transport errors are ``retryable``: callers may retry with a
fresh candidate list or after backoff. Structural errors signal a caller bug
or missing data and are surfaced immediately.
"""

from typing import Iterable, Optional


class TeammateError(Exception):
    """Base class for all coordination errors."""

    retryable = False


class InvalidTransition(TeammateError):
    """Requested epic state is not reachable from the current state."""

    def __init__(self, epic_id: str, current: str, target: str, allowed: Iterable[str] = ()):
        self.epic_id = epic_id
        self.current = current
        self.target = target
        self.allowed = sorted(allowed)
        allowed_str = ", ".join(self.allowed) or "none (terminal)"
        super().__init__(
            f"Epic {epic_id}: cannot transition {current} -> {target} (allowed: {allowed_str})"
        )


class VersionConflict(TeammateError):
    """Optimistic version check failed; re-read the epic and retry."""

    def __init__(self, epic_id: str, expected: int, actual: int):
        self.epic_id = epic_id
        self.expected = expected
        self.actual = actual
        super().__init__(f"Epic {epic_id}: expected version {expected}, found {actual}")


class AlreadyClaimed(TeammateError):
    """Another agent won the claim; re-run selection."""

    retryable = True

    def __init__(self, issue_id: str, holder: Optional[str] = None, status: Optional[str] = None):
        self.issue_id = issue_id
        self.holder = holder
        self.status = status
        detail = f" by {holder}" if holder else ""
        if status:
            detail += f" (status: {status})"
        super().__init__(f"Issue {issue_id} already claimed{detail}")


class LockTimeout(TeammateError):
    """Bounded wait on a per-issue lock expired."""

    retryable = True

    def __init__(self, resource_id: str, timeout: float):
        self.resource_id = resource_id
        self.timeout = timeout
        super().__init__(f"Timed out after {timeout:.1f}s waiting for lock on {resource_id}")


class NoCapacity(TeammateError):
    """No eligible agent has room for the issue right now."""

    retryable = True

    def __init__(self, issue_id: str, reason: str = "no eligible agent with free capacity"):
        self.issue_id = issue_id
        self.reason = reason
        super().__init__(f"No capacity for issue {issue_id}: {reason}")


class ReviewerUnavailable(TeammateError):
    """No reviewer qualified in the epic or the wider pool."""

    def __init__(self, issue_id: str, author_id: str):
        self.issue_id = issue_id
        self.author_id = author_id
        super().__init__(f"No qualified reviewer for issue {issue_id} (author: {author_id})")


class StaleEvent(TeammateError):
    """Inbound event is a duplicate or older than state already processed."""

    def __init__(self, event_id: str, reason: str = "duplicate"):
        self.event_id = event_id
        self.reason = reason
        super().__init__(f"Discarding event {event_id}: {reason}")


class ExternalSyncFailure(TeammateError):
    """Issue tracker call failed (network, rate limit, platform error)."""

    retryable = True

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        self.operation = operation
        self.cause = cause
        msg = f"External sync failed during {operation}"
        if cause is not None:
            msg += f": {cause}"
        super().__init__(msg)


class NotFoundError(TeammateError):
    """Referenced epic, issue or agent does not exist."""

    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind.capitalize()} not found: {identifier}")


class EpicNotActive(TeammateError):
    """Epic state does not permit the requested operation."""

    def __init__(self, epic_id: str, state: str, operation: str):
        self.epic_id = epic_id
        self.state = state
        self.operation = operation
        super().__init__(f"Epic {epic_id} is {state}; {operation} not permitted")


class DependenciesNotMet(TeammateError):
    """Issue still has dependencies that are not done."""

    def __init__(self, issue_id: str, pending: Iterable[str]):
        self.issue_id = issue_id
        self.pending = sorted(pending)
        super().__init__(f"Issue {issue_id} waiting on: {', '.join(self.pending)}")


class NotAssignee(TeammateError):
    """Agent reported on an issue it does not hold."""

    def __init__(self, issue_id: str, agent_id: str, assignee: Optional[str]):
        self.issue_id = issue_id
        self.agent_id = agent_id
        self.assignee = assignee
        super().__init__(
            f"Agent {agent_id} is not the assignee of issue {issue_id} (assignee: {assignee or 'none'})"
        )
