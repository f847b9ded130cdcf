"""Configuration loading and validation."""

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import AgentProfile, PerformanceMetrics

logger = logging.getLogger(__name__)

ENABLE_ENV_VARS = ("TEAMMATE_MODE", "CLAUDE_FLOW_TEAMMATE_MODE")


class ScoringWeights(BaseModel):
    """Factor weights for agent/issue scoring. Must sum to 100."""
    capability_match: float = 40.0
    performance: float = 20.0
    availability: float = 20.0
    specialization: float = 10.0
    experience: float = 10.0

    @model_validator(mode="after")
    def validate_sum(self) -> "ScoringWeights":
        total = (
            self.capability_match + self.performance + self.availability
            + self.specialization + self.experience
        )
        if abs(total - 100.0) > 1e-6:
            raise ValueError(f"Scoring weights must sum to 100, got {total}")
        for name, value in self.model_dump().items():
            if value < 0:
                raise ValueError(f"Scoring weight '{name}' must be non-negative, got {value}")
        return self


class ScoringConfig(BaseModel):
    weights: ScoringWeights = Field(default_factory=ScoringWeights)
    min_score: float = 50.0
    partial_credit: float = 0.8  # language/framework overlap credit
    neutral_capability_ratio: float = 0.5  # used when an issue specifies no requirements
    missing_required_penalty: float = 0.5  # confidence discount at 100% required missing
    confidence_boost: float = 0.1

    @field_validator("min_score")
    @classmethod
    def validate_min_score(cls, v: float) -> float:
        if not 0 <= v <= 100:
            raise ValueError(f"min_score must be 0-100, got {v}")
        return v


class BalancerConfig(BaseModel):
    """Fairness balancer settings."""
    max_workload: float = 0.9
    match_weight: float = 0.7
    fairness_weight: float = 0.3
    fairness_step: float = 10.0  # points per task below pool average
    overload_threshold: float = 0.9
    underload_threshold: float = 0.3
    rebalance_interval: int = 300

    @model_validator(mode="after")
    def validate_weights(self) -> "BalancerConfig":
        if abs(self.match_weight + self.fairness_weight - 1.0) > 1e-6:
            raise ValueError("match_weight + fairness_weight must equal 1.0")
        if self.underload_threshold >= self.overload_threshold:
            raise ValueError("underload_threshold must be below overload_threshold")
        return self


class CoordinatorConfig(BaseModel):
    lock_timeout: float = 10.0
    lock_poll_interval: float = 0.05
    max_claim_attempts: int = 3


class SyncConfig(BaseModel):
    """Retry policy for issue tracker calls."""
    max_retries: int = 3
    backoff_initial: float = 1.0
    backoff_max: float = 30.0
    backoff_multiplier: float = 2.0


class ReviewConfig(BaseModel):
    approval_threshold: float = 0.85
    reviewer_min_score: float = 40.0
    preferred_overlap: float = 0.5
    recent_pair_penalty: float = 0.9
    recent_pair_window_hours: int = 24
    max_decision_attempts: int = 2  # first attempt plus one retry

    @field_validator("approval_threshold")
    @classmethod
    def normalize_threshold(cls, v: float) -> float:
        """Accept either a 0-1 fraction or a 0-100 score."""
        if v > 1.0:
            v = v / 100.0
        if not 0 < v <= 1.0:
            raise ValueError(f"approval_threshold must be in (0, 1] or (1, 100], got {v}")
        return v


class ConsensusConfig(BaseModel):
    default_threshold: float = 0.6
    critical_threshold: float = 0.66
    lead_weight: float = 3.0
    class_thresholds: Dict[str, float] = Field(default_factory=dict)

    @field_validator("class_thresholds")
    @classmethod
    def validate_thresholds(cls, v: Dict[str, float]) -> Dict[str, float]:
        for name, threshold in v.items():
            if not 0 < threshold <= 1.0:
                raise ValueError(f"Consensus threshold for '{name}' must be in (0, 1], got {threshold}")
        return v


class StallConfig(BaseModel):
    """Stall detector settings. Thresholds are minutes since last activity."""
    check_interval: int = 60
    thresholds: Dict[str, float] = Field(default_factory=lambda: {
        "critical": 15,
        "high": 30,
        "medium": 60,
        "low": 120,
    })
    error_window: int = 5
    error_failure_ratio: float = 0.6
    resource_health_floor: float = 0.3

    @field_validator("thresholds")
    @classmethod
    def validate_thresholds(cls, v: Dict[str, float]) -> Dict[str, float]:
        missing = {"critical", "high", "medium", "low"} - set(v)
        if missing:
            raise ValueError(f"Stall thresholds missing priorities: {sorted(missing)}")
        return v


class GitHubConfig(BaseModel):
    """GitHub configuration."""
    token: Optional[str] = None
    owner: Optional[str] = None
    repo: Optional[str] = None
    webhook_secret: Optional[str] = None
    poll_interval: int = 60
    webhook_port: Optional[int] = None  # serve /webhooks/github from the monitor when set
    epic_label_prefix: str = "epic:"

    @property
    def configured(self) -> bool:
        return bool(self.token and self.owner and self.repo)


class AgentDefinition(BaseModel):
    """Agent definition from agents.yaml."""
    id: str
    agent_type: str = "generalist"
    capabilities: List[str] = Field(default_factory=list)
    languages: List[str] = Field(default_factory=list)
    frameworks: List[str] = Field(default_factory=list)
    domains: List[str] = Field(default_factory=list)
    max_concurrent_tasks: int = 3
    success_rate: float = 0.5
    tasks_completed: int = 0
    average_duration_minutes: Optional[float] = None
    enabled: bool = True

    def to_profile(self) -> AgentProfile:
        return AgentProfile(
            id=self.id,
            agent_type=self.agent_type,
            capabilities=self.capabilities,
            languages=self.languages,
            frameworks=self.frameworks,
            domains=self.domains,
            max_concurrent_tasks=self.max_concurrent_tasks,
            performance=PerformanceMetrics(
                success_rate=self.success_rate,
                tasks_completed=self.tasks_completed,
                average_duration_minutes=self.average_duration_minutes,
            ),
        )


class TeammateConfig(BaseSettings):
    """Root configuration."""

    model_config = SettingsConfigDict(env_prefix="TEAMMATE_", env_file=".env", extra="allow")

    enabled: bool = False
    workspace: Path = Field(default=Path("."))
    context_dir: str = ".teammate/context"
    lock_dir: str = ".teammate/locks"
    scoring: ScoringConfig = Field(default_factory=ScoringConfig)
    balancer: BalancerConfig = Field(default_factory=BalancerConfig)
    coordinator: CoordinatorConfig = Field(default_factory=CoordinatorConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    review: ReviewConfig = Field(default_factory=ReviewConfig)
    consensus: ConsensusConfig = Field(default_factory=ConsensusConfig)
    stall: StallConfig = Field(default_factory=StallConfig)
    github: GitHubConfig = Field(default_factory=GitHubConfig)

    @property
    def context_path(self) -> Path:
        return Path(self.workspace) / self.context_dir

    @property
    def lock_path(self) -> Path:
        return Path(self.workspace) / self.lock_dir


# Module-level mtime-based config cache: path -> (parsed_config, file_mtime)
_config_cache: Dict[str, tuple] = {}


def _get_cached_or_load(resolved_path: Path, loader):
    """Return cached config if file mtime unchanged, else reload."""
    key = str(resolved_path)
    try:
        current_mtime = resolved_path.stat().st_mtime
    except FileNotFoundError:
        _config_cache.pop(key, None)
        return None

    cached = _config_cache.get(key)
    if cached is not None:
        cached_result, cached_mtime = cached
        if cached_mtime == current_mtime:
            return cached_result

    result = loader(resolved_path)
    _config_cache[key] = (result, current_mtime)
    return result


def clear_config_cache() -> None:
    """Clear the module-level config cache. Useful for tests."""
    _config_cache.clear()


def _load_config_from_file(config_path: Path) -> TeammateConfig:
    with open(config_path) as f:
        data = yaml.safe_load(f) or {}
    data = _expand_env_vars(data)
    return TeammateConfig(**data)


def load_config(config_path: Path = Path("config/teammate.yaml")) -> TeammateConfig:
    """Load configuration from YAML file.

    Uses mtime-based caching; the cached config is returned if the file hasn't changed.
    """
    if not config_path.exists():
        logger.warning(
            f"Config file not found: {config_path}. Using default configuration."
        )
        return TeammateConfig()

    result = _get_cached_or_load(config_path.resolve(), _load_config_from_file)
    return result if result is not None else TeammateConfig()


def _load_agents_from_file(agents_path: Path) -> List[AgentDefinition]:
    with open(agents_path) as f:
        data = yaml.safe_load(f) or {}
    return [AgentDefinition(**agent) for agent in data.get("agents", [])]


def load_agents(agents_path: Path = Path("config/agents.yaml")) -> List[AgentDefinition]:
    """Load agent pool definitions. Missing file means an empty pool."""
    if not agents_path.exists():
        logger.warning(f"Agents config not found: {agents_path}")
        return []
    result = _get_cached_or_load(agents_path.resolve(), _load_agents_from_file)
    return [a for a in (result or []) if a.enabled]


def is_teammate_mode_enabled(flag: Optional[bool] = None, config: Optional[TeammateConfig] = None) -> bool:
    """Resolve the master enable switch: flag, then environment, then config."""
    if flag is not None:
        return flag
    for var in ENABLE_ENV_VARS:
        value = os.environ.get(var)
        if value:
            return value.strip().lower() in ("true", "1", "yes", "on")
    return bool(config and config.enabled)


def _expand_env_vars(data: Any, _path: str = "") -> Any:
    """Recursively expand ``${VAR}`` references in config data."""
    if isinstance(data, dict):
        return {k: _expand_env_vars(v, f"{_path}.{k}" if _path else k) for k, v in data.items()}
    elif isinstance(data, list):
        return [_expand_env_vars(item, f"{_path}[{i}]") for i, item in enumerate(data)]
    elif isinstance(data, str) and data.startswith("${") and data.endswith("}"):
        env_var = data[2:-1]
        value = os.environ.get(env_var)
        if value is None:
            logger.warning(
                f"Environment variable '{env_var}' not set (referenced at config path: {_path or 'root'}). "
                f"The literal string '{data}' will be used, which may cause errors."
            )
            return data
        return value
    return data
