"""Schemas for configuration variants, A/B experiments and their runs."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class VariantType(str, Enum):
    PROMPT = "prompt"
    TOOL = "tool"
    CONFIG = "config"


class Variant(BaseModel):
    """A versioned, content-addressed snapshot of one configuration artifact."""

    variant_id: str
    variant_type: VariantType
    target_file: str
    name: str
    description: str = ""
    content: str
    content_hash: str
    baseline_variant_id: Optional[str] = None
    source_fix_id: Optional[str] = None
    is_baseline: bool = False
    created_by: str = "manual"
    created_at: datetime = Field(default_factory=_utcnow)


class ExperimentStatus(str, Enum):
    DRAFT = "draft"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    ABORTED = "aborted"


class VariantRole(str, Enum):
    CONTROL = "control"
    TREATMENT = "treatment"


class ExperimentVariant(BaseModel):
    variant_id: str
    role: VariantRole
    weight: float


class Experiment(BaseModel):
    experiment_id: str
    name: str
    hypothesis: str = ""
    status: ExperimentStatus = ExperimentStatus.DRAFT
    experiment_type: VariantType
    variants: list[ExperimentVariant]
    test_ids: list[str] = Field(default_factory=list)
    traffic_split: dict[str, float]
    min_sample_size: int
    max_sample_size: int
    significance_threshold: float
    winning_variant_id: Optional[str] = None
    conclusion: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def control_variant_id(self) -> str:
        return next(v.variant_id for v in self.variants if v.role == VariantRole.CONTROL)

    @property
    def treatment_variant_ids(self) -> list[str]:
        return [v.variant_id for v in self.variants if v.role == VariantRole.TREATMENT]

    def role_of(self, variant_id: str) -> Optional[VariantRole]:
        for v in self.variants:
            if v.variant_id == variant_id:
                return v.role
        return None


class CreateExperimentInput(BaseModel):
    name: str
    hypothesis: str = ""
    experiment_type: VariantType
    control_variant_id: str
    treatment_variant_ids: list[str]
    test_ids: list[str] = Field(default_factory=list)
    traffic_split: Optional[dict[str, float]] = None
    min_sample_size: Optional[int] = None
    max_sample_size: Optional[int] = None
    significance_threshold: Optional[float] = None


class ExperimentMetrics(BaseModel):
    """Outcome measurements of a single test executed under an experiment."""

    passed: bool
    goals_completed: int = 0
    goals_total: int = 0
    goal_completion_rate: float = 0.0
    turn_count: int = 0
    duration_ms: float = 0.0
    avg_turn_duration_ms: float = 0.0
    constraint_violations: int = 0
    issues_detected: int = 0
    error_occurred: bool = False
    error_message: Optional[str] = None


class ExperimentRun(BaseModel):
    experiment_id: str
    run_id: str
    test_id: str
    variant_id: str
    variant_role: VariantRole
    started_at: datetime
    completed_at: Optional[datetime] = None
    metrics: ExperimentMetrics


class VariantSelection(BaseModel):
    """Which variant a test should run against, and the content to apply."""

    experiment_id: str
    variant_id: str
    variant_role: VariantRole
    target_file: str
    content: str
