"""Domain models for epics, issues, agents, assignments, reviews and stalls."""

from datetime import UTC, datetime
from enum import Enum, IntEnum
from typing import Any, Dict, FrozenSet, List, Optional, Set
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .capabilities import normalize_tag, normalize_tags, parse_labels, priority_from_labels


def utcnow() -> datetime:
    return datetime.now(UTC)


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid4().hex[:12]}"


class EpicState(str, Enum):
    """Epic lifecycle states."""
    UNINITIALIZED = "uninitialized"
    ACTIVE = "active"
    PAUSED = "paused"
    BLOCKED = "blocked"
    REVIEW = "review"
    COMPLETED = "completed"
    ARCHIVED = "archived"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        """Sort key: critical first."""
        return {"critical": 0, "high": 1, "medium": 2, "low": 3}[self.value]


class Complexity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class IssueStatus(str, Enum):
    """Issue workflow status."""
    OPEN = "open"
    CLAIMED = "claimed"
    IN_PROGRESS = "in_progress"
    IN_REVIEW = "in_review"
    APPROVED = "approved"
    CHANGES_REQUESTED = "changes_requested"
    DONE = "done"
    CLOSED = "closed"  # closed externally without completing


TERMINAL_STATUSES = frozenset({IssueStatus.DONE, IssueStatus.CLOSED})
IN_FLIGHT_STATUSES = frozenset({IssueStatus.IN_PROGRESS, IssueStatus.IN_REVIEW})
HELD_STATUSES = frozenset({
    IssueStatus.CLAIMED,
    IssueStatus.IN_PROGRESS,
    IssueStatus.IN_REVIEW,
    IssueStatus.APPROVED,
    IssueStatus.CHANGES_REQUESTED,
})


class StateTransitionRecord(BaseModel):
    """One committed epic transition."""
    from_state: EpicState
    to_state: EpicState
    event_id: Optional[str] = None
    reason: str = ""
    triggered_by: str = "system"
    version: int
    at: datetime = Field(default_factory=utcnow)


class Epic(BaseModel):
    """Long-lived project container.

    Mutated only through ``EpicStateMachine``; every mutation bumps
    ``version`` for optimistic conflict detection.
    """

    id: str
    title: str
    description: str = ""
    state: EpicState = EpicState.UNINITIALIZED
    objectives: List[str] = Field(default_factory=list)
    constraints: List[str] = Field(default_factory=list)
    repository: Optional[str] = None  # owner/repo
    external_issue: Optional[int] = None  # linked tracker issue number
    current_phase: Optional[str] = None
    assignments_frozen: bool = False
    version: int = 0
    labels: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    state_history: List[StateTransitionRecord] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class WorkRequirements(BaseModel):
    """Structured requirements produced by the work-requirement extractor."""

    model_config = ConfigDict(frozen=True)

    required_capabilities: FrozenSet[str] = frozenset()
    preferred_capabilities: FrozenSet[str] = frozenset()
    languages: FrozenSet[str] = frozenset()
    frameworks: FrozenSet[str] = frozenset()
    domains: FrozenSet[str] = frozenset()
    issue_type: Optional[str] = None  # e.g. backend, frontend, bugfix
    priority: Priority = Priority.MEDIUM
    complexity: Complexity = Complexity.MEDIUM
    estimated_minutes: Optional[float] = None
    dependencies: List[str] = Field(default_factory=list)

    @field_validator(
        "required_capabilities", "preferred_capabilities", "languages", "frameworks", "domains",
        mode="before",
    )
    @classmethod
    def normalize(cls, v: Any) -> FrozenSet[str]:
        return normalize_tags(v)

    @field_validator("issue_type", mode="before")
    @classmethod
    def normalize_type(cls, v: Any) -> Optional[str]:
        return normalize_tag(v) if v else None

    @property
    def requirement_count(self) -> int:
        return len(self.required_capabilities) + len(self.languages) + len(self.frameworks)

    @classmethod
    def from_labels(cls, labels: List[str], **overrides: Any) -> "WorkRequirements":
        """Build requirements from tracker labels (``lang:python``, ``priority:high``...)."""
        parsed = parse_labels(labels)
        data: Dict[str, Any] = {
            "required_capabilities": parsed["skills"] | parsed["domains"],
            "languages": parsed["languages"],
            "frameworks": parsed["frameworks"],
            "domains": parsed["domains"],
        }
        priority = priority_from_labels(labels)
        if priority:
            data["priority"] = priority
        data.update(overrides)
        return cls(**data)


class Issue(BaseModel):
    """Unit of work inside an epic."""

    id: str
    epic_id: str
    title: str
    description: str = ""
    number: Optional[int] = None  # tracker issue number
    requirements: WorkRequirements = Field(default_factory=WorkRequirements)
    priority: Priority = Priority.MEDIUM
    status: IssueStatus = IssueStatus.OPEN
    dependencies: Set[str] = Field(default_factory=set)
    assignee: Optional[str] = None
    claimed_at: Optional[datetime] = None
    last_activity_at: Optional[datetime] = None
    acceptance_criteria: List[str] = Field(default_factory=list)
    labels: List[str] = Field(default_factory=list)
    needs_human: bool = False
    review_cycles: int = 0
    external_updated_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def touch(self, at: Optional[datetime] = None) -> None:
        at = at or utcnow()
        self.last_activity_at = at
        self.updated_at = at


class PerformanceMetrics(BaseModel):
    """Rolling outcome metrics for an agent."""
    success_rate: float = Field(default=0.5, ge=0.0, le=1.0)
    tasks_completed: int = 0
    tasks_failed: int = 0
    average_duration_minutes: Optional[float] = None


class ErrorRecord(BaseModel):
    """Error reported by or about an agent."""
    timestamp: datetime = Field(default_factory=utcnow)
    message: str
    is_failure: bool = True  # False for recovered/transient warnings
    category: Optional[str] = None


class AgentProfile(BaseModel):
    """Autonomous worker with a capability and performance profile."""

    id: str
    agent_type: str = "generalist"
    capabilities: FrozenSet[str] = frozenset()
    languages: FrozenSet[str] = frozenset()
    frameworks: FrozenSet[str] = frozenset()
    domains: FrozenSet[str] = frozenset()
    workload: float = Field(default=0.0, ge=0.0, le=1.0)
    health: float = Field(default=1.0, ge=0.0, le=1.0)
    resource_health: float = Field(default=1.0, ge=0.0, le=1.0)
    max_concurrent_tasks: int = Field(default=3, ge=1)
    active_issue_ids: Set[str] = Field(default_factory=set)
    performance: PerformanceMetrics = Field(default_factory=PerformanceMetrics)
    recent_errors: List[ErrorRecord] = Field(default_factory=list)
    registered_seq: int = 0
    registered_at: datetime = Field(default_factory=utcnow)

    @field_validator("capabilities", "languages", "frameworks", "domains", mode="before")
    @classmethod
    def normalize(cls, v: Any) -> FrozenSet[str]:
        return normalize_tags(v)

    @field_validator("agent_type", mode="before")
    @classmethod
    def normalize_type(cls, v: Any) -> str:
        return normalize_tag(v) or "generalist"

    @property
    def all_tags(self) -> FrozenSet[str]:
        return self.capabilities | self.languages | self.frameworks | self.domains

    @property
    def active_task_count(self) -> int:
        return len(self.active_issue_ids)


class ScoreBreakdown(BaseModel):
    """Points contributed by each scoring factor."""
    capability_match: float
    performance: float
    availability: float
    specialization: float
    experience: float

    @property
    def total(self) -> float:
        return (
            self.capability_match + self.performance + self.availability
            + self.specialization + self.experience
        )


class Assignment(BaseModel):
    """Agent's claim on an issue. One active assignment per issue."""

    id: str = Field(default_factory=lambda: new_id("asg"))
    issue_id: str
    epic_id: str
    agent_id: str
    score: float
    breakdown: Optional[ScoreBreakdown] = None
    combined_score: Optional[float] = None
    claimed_at: datetime = Field(default_factory=utcnow)
    closed_at: Optional[datetime] = None
    close_reason: Optional[str] = None
    sync_pending: bool = False

    @property
    def active(self) -> bool:
        return self.closed_at is None


class ReviewDecision(str, Enum):
    APPROVED = "approved"
    CHANGES_REQUESTED = "changes_requested"
    ESCALATED = "escalated"


class AutomatedCheck(BaseModel):
    """Result ingested from an external lint/test/security/coverage run."""
    name: str
    passed: bool
    blocking: bool = False
    details: str = ""


class ManualScores(BaseModel):
    """Reviewer's manual assessment; sub-scores are 0-5."""
    code_quality: float = Field(ge=0.0, le=5.0)
    design_alignment: float = Field(ge=0.0, le=5.0)
    completeness: float = Field(ge=0.0, le=5.0)
    criteria_met: List[str] = Field(default_factory=list)
    undecided: bool = False
    comments: str = ""

    @property
    def composite(self) -> float:
        """Normalized 0-1 average of the three sub-scores."""
        return (self.code_quality + self.design_alignment + self.completeness) / 15.0


class ReviewRecord(BaseModel):
    """Immutable review outcome; a re-review creates a superseding record."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: new_id("rev"))
    issue_id: str
    epic_id: str
    reviewer_id: Optional[str]
    author_id: str
    checks: List[AutomatedCheck] = Field(default_factory=list)
    manual: Optional[ManualScores] = None
    composite: Optional[float] = None
    criteria_coverage: Optional[float] = None
    decision: ReviewDecision
    reason: str = ""
    attempts: int = 1
    supersedes: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    decided_at: datetime = Field(default_factory=utcnow)


class StallReason(str, Enum):
    NO_ACTIVITY = "no_activity"
    ERROR_THRESHOLD = "error_threshold"
    DEPENDENCY_WAIT = "dependency_wait"
    RESOURCE_EXHAUSTION = "resource_exhaustion"


class EscalationLevel(IntEnum):
    """Named escalation states; the int value is the ladder level (0-4)."""
    DETECTED = 0
    NOTIFIED = 1
    AUTO_RECOVERY_ATTEMPTED = 2
    REASSIGNED = 3
    ESCALATED_TO_HUMAN = 4

    @property
    def next_level(self) -> Optional["EscalationLevel"]:
        if self is EscalationLevel.ESCALATED_TO_HUMAN:
            return None
        return EscalationLevel(self.value + 1)


class EscalationStep(BaseModel):
    """Action taken when a record moved to ``level``."""
    level: EscalationLevel
    action: str
    succeeded: bool
    detail: str = ""
    at: datetime = Field(default_factory=utcnow)


class BlockedTaskRecord(BaseModel):
    """Stall tracked by the detector and advanced by the escalation ladder."""

    issue_id: str
    epic_id: str
    agent_id: str
    reason: StallReason
    level: EscalationLevel = EscalationLevel.DETECTED
    stall_minutes: float = 0.0
    detected_at: datetime = Field(default_factory=utcnow)
    last_checked_at: datetime = Field(default_factory=utcnow)
    history: List[EscalationStep] = Field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.level is EscalationLevel.ESCALATED_TO_HUMAN

    def advance(self, action: str, succeeded: bool, detail: str = "") -> EscalationLevel:
        """Move exactly one level up. Raises ValueError at the top of the ladder."""
        nxt = EscalationLevel(self.level).next_level
        if nxt is None:
            raise ValueError(f"Blocked record for {self.issue_id} is already escalated to a human")
        self.level = nxt
        self.history.append(EscalationStep(level=nxt, action=action, succeeded=succeeded, detail=detail))
        return nxt
