"""Read-only progress analytics per epic."""

import logging
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

from .models import (
    BlockedTaskRecord,
    Epic,
    EpicState,
    EscalationLevel,
    Issue,
    IssueStatus,
    Priority,
    ReviewDecision,
    ReviewRecord,
    utcnow,
)

logger = logging.getLogger(__name__)

VELOCITY_WINDOW_DAYS = 7
HIGH_REWORK_CYCLES = 2


class ProgressReport(BaseModel):
    epic_id: str
    epic_state: EpicState
    total: int
    counts: Dict[str, int] = Field(default_factory=dict)
    completion_percent: float
    velocity_per_day: float
    eta_days: Optional[float] = None
    stalled: int = 0
    escalated: int = 0
    risks: List[str] = Field(default_factory=list)
    generated_at: datetime = Field(default_factory=utcnow)


class ProgressAggregator:
    """Derives completion, velocity and risk flags from coordinator state."""

    def __init__(self, window_days: int = VELOCITY_WINDOW_DAYS):
        self.window_days = window_days

    def report(
        self,
        epic: Epic,
        issues: List[Issue],
        blocked: Iterable[BlockedTaskRecord] = (),
        reviews: Iterable[ReviewRecord] = (),
        now: Optional[datetime] = None,
    ) -> ProgressReport:
        now = now or utcnow()
        counts = {status.value: 0 for status in IssueStatus}
        for issue in issues:
            counts[issue.status.value] += 1

        # Externally closed issues count as resolved scope, not completed work
        closed = counts[IssueStatus.CLOSED.value]
        done = counts[IssueStatus.DONE.value]
        scope = len(issues) - closed
        completion = round(100.0 * done / scope, 1) if scope else 0.0

        window_start = now - timedelta(days=self.window_days)
        recent_done = sum(
            1 for i in issues
            if i.status == IssueStatus.DONE and i.completed_at and i.completed_at >= window_start
        )
        velocity = round(recent_done / self.window_days, 3)
        remaining = scope - done
        eta = round(remaining / velocity, 1) if velocity > 0 and remaining > 0 else None

        blocked = [b for b in blocked if b.epic_id == epic.id]
        escalated = sum(1 for b in blocked if b.level == EscalationLevel.ESCALATED_TO_HUMAN)
        escalated += sum(
            1 for r in reviews
            if r.epic_id == epic.id and r.decision is ReviewDecision.ESCALATED
        )
        needs_human = sum(1 for i in issues if i.needs_human)

        risks = []
        if blocked:
            risks.append("stalled_issues")
        if escalated or needs_human:
            risks.append("human_escalations")
        if any(i.priority is Priority.CRITICAL and not i.is_terminal for i in issues):
            risks.append("critical_open")
        if remaining > 0 and velocity == 0 and epic.state is EpicState.ACTIVE:
            risks.append("no_velocity")
        if any(i.review_cycles >= HIGH_REWORK_CYCLES for i in issues):
            risks.append("high_rework")
        if epic.state is EpicState.BLOCKED:
            risks.append("blocked_epic")

        return ProgressReport(
            epic_id=epic.id,
            epic_state=epic.state,
            total=len(issues),
            counts=counts,
            completion_percent=completion,
            velocity_per_day=velocity,
            eta_days=eta,
            stalled=len(blocked),
            escalated=max(escalated, needs_human),
            risks=risks,
        )
