"""Diagnostic reports for stalls escalated to a human."""

import re
from collections import Counter
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from ..core.models import AgentProfile, BlockedTaskRecord, ErrorRecord, Issue, utcnow

ERROR_PATTERNS: Dict[str, List[str]] = {
    "network": [
        r"connection.*refused",
        r"timeout|timed out",
        r"network.*unreachable",
        r"dns.*fail",
        r"could not resolve host",
    ],
    "authentication": [
        r"unauthorized",
        r"authentication.*fail",
        r"invalid.*credential",
        r"permission.*denied",
        r"\b40[13]\b",
    ],
    "validation": [
        r"validation.*error",
        r"invalid.*input",
        r"schema.*mismatch",
        r"type.*error",
        r"missing required",
    ],
    "resource": [
        r"out of memory",
        r"disk.*full",
        r"too many.*open files",
        r"resource.*exhausted",
    ],
    "logic": [
        r"null.*reference",
        r"index.*out of.*range",
        r"assertion.*fail",
        r"unexpected.*state",
    ],
}

INTERVENTIONS: Dict[str, List[str]] = {
    "network": [
        "Check network connectivity from the agent host",
        "Verify the issue tracker and APIs are reachable",
        "Review rate limiting and retry backoff settings",
    ],
    "authentication": [
        "Verify the agent's credentials are valid and not expired",
        "Review permission levels for the repository",
    ],
    "validation": [
        "Review the issue's requirements and acceptance criteria for ambiguity",
        "Check for recent API or contract changes",
    ],
    "resource": [
        "Check memory, disk and file descriptors on the agent host",
        "Lower max_concurrent_tasks for this agent",
        "Scale the agent pool",
    ],
    "logic": [
        "Inspect the agent's last output for a reasoning loop",
        "Split the issue into smaller pieces",
    ],
}

REASON_INTERVENTIONS: Dict[str, List[str]] = {
    "no_activity": [
        "Confirm the agent process is alive",
        "Check whether the issue is underspecified",
    ],
    "dependency_wait": [
        "Check the status of the blocking issues",
        "Remove or re-order dependencies if they no longer apply",
    ],
    "error_threshold": [
        "Review the agent's recent errors below",
    ],
    "resource_exhaustion": [
        "Free resources on the agent host or reduce its load",
    ],
}


class EscalationReport(BaseModel):
    """Full diagnostic context handed to a human."""
    issue_id: str
    epic_id: str
    issue_title: str
    agent_id: str
    reason: str
    stall_minutes: float
    detected_at: datetime
    error_categories: Dict[str, int] = Field(default_factory=dict)
    failure_pattern: str
    root_cause_hypothesis: str
    suggested_interventions: List[str] = Field(default_factory=list)
    ladder: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)


def categorize_error(message: str) -> Optional[str]:
    """Return network, authentication, validation, resource, logic or unknown. None for empty input."""
    if not message:
        return None
    lowered = message.lower()
    for category, patterns in ERROR_PATTERNS.items():
        for pattern in patterns:
            if re.search(pattern, lowered):
                return category
    return "unknown"


def analyze_failure_pattern(errors: List[ErrorRecord]) -> str:
    categories = [e.category or categorize_error(e.message) for e in errors if e.is_failure]
    categories = [c for c in categories if c]
    if not categories:
        return "silent"
    if len(set(categories)) == 1:
        return "consistent"
    if categories.count("network") > len(categories) / 2:
        return "intermittent_network"
    return "varied"


class EscalationReporter:
    """Builds ``EscalationReport``s from a blocked record and the agent's history."""

    def build(self, record: BlockedTaskRecord, issue: Issue, agent: Optional[AgentProfile]) -> EscalationReport:
        errors = list(agent.recent_errors) if agent else []
        categories = Counter(
            e.category or categorize_error(e.message) or "unknown"
            for e in errors if e.is_failure
        )
        pattern = analyze_failure_pattern(errors)
        most_common = categories.most_common(1)[0][0] if categories else None

        return EscalationReport(
            issue_id=issue.id,
            epic_id=issue.epic_id,
            issue_title=issue.title,
            agent_id=record.agent_id,
            reason=record.reason.value,
            stall_minutes=round(record.stall_minutes, 1),
            detected_at=record.detected_at,
            error_categories=dict(categories),
            failure_pattern=pattern,
            root_cause_hypothesis=self._hypothesis(record, pattern, most_common),
            suggested_interventions=self._interventions(record, most_common),
            ladder=[
                f"level {int(step.level)}: {step.action} ({'ok' if step.succeeded else 'failed'})"
                + (f" - {step.detail}" if step.detail else "")
                for step in record.history
            ],
        )

    def _hypothesis(self, record: BlockedTaskRecord, pattern: str, most_common: Optional[str]) -> str:
        reason = record.reason.value
        if reason == "dependency_wait":
            return "Work is waiting on dependencies that have not completed; the agent cannot make progress."
        if reason == "resource_exhaustion":
            return "The agent host is starved of resources; recovery attempts did not restore capacity."
        if pattern == "consistent":
            return (
                f"Consistent {most_common} errors suggest a fundamental problem that "
                f"restarts and reassignment will not resolve."
            )
        if pattern == "intermittent_network":
            return "Intermittent network failures suggest infrastructure issues rather than the work itself."
        if pattern == "varied":
            return "Different error types suggest environmental instability or an underspecified issue."
        return (
            f"No errors were recorded during {record.stall_minutes:.0f} minutes of silence; "
            f"the agent may be hung or the issue may need clarification."
        )

    def _interventions(self, record: BlockedTaskRecord, most_common: Optional[str]) -> List[str]:
        suggestions = list(REASON_INTERVENTIONS.get(record.reason.value, []))
        if most_common:
            suggestions.extend(INTERVENTIONS.get(most_common, [
                "Review error messages and agent logs",
            ]))
        return suggestions[:5]

    def render(self, report: EscalationReport) -> str:
        """Markdown body for the tracker comment."""
        desc = (
            f"## Escalated to human: {report.issue_title}\n\n"
            f"Issue `{report.issue_id}` (epic `{report.epic_id}`) stalled for "
            f"{report.stall_minutes:.0f} minutes with agent `{report.agent_id}`. "
            f"Automated recovery did not resolve it.\n\n"
            f"**Reason**: {report.reason}\n\n"
            f"## Root Cause Analysis\n"
            f"**Failure Pattern**: {report.failure_pattern}\n\n"
            f"**Hypothesis**: {report.root_cause_hypothesis}\n\n"
        )
        if report.error_categories:
            desc += "## Agent Errors\n"
            for category, count in sorted(report.error_categories.items(), key=lambda kv: -kv[1]):
                desc += f"- {category}: {count}\n"
            desc += "\n"
        if report.ladder:
            desc += "## Recovery Attempts\n"
            for line in report.ladder:
                desc += f"- {line}\n"
            desc += "\n"
        desc += "## Suggested Interventions\n"
        for i, intervention in enumerate(report.suggested_interventions, 1):
            desc += f"{i}. {intervention}\n"
        return desc
