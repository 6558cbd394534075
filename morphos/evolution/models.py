"""Data model for evolution cycles, mutations and their results."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator

from morphos.exceptions import ConfigurationError
from morphos.types import (
    RISK_SCORES,
    ChangeKind,
    CycleStatus,
    EvolutionPhase,
    MutationType,
    RiskLevel,
    RiskTolerance,
    RollbackAction,
    TestKind,
    CycleId,
    MutationId,
    TERMINAL_STATUSES,
    new_id,
    utcnow,
)


# ── Configuration ────────────────────────────────────────────────


class EvolutionConfig(BaseModel):
    """Every option the evolution loop recognises, with its default."""

    model_config = {"validate_assignment": True, "extra": "forbid"}

    enabled: bool = True
    evolution_interval: float = Field(default=24 * 3600.0, ge=0)  # seconds
    max_mutations_per_cycle: int = Field(default=5, ge=0)
    max_opportunities: int = Field(default=10, ge=0)
    safety_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    performance_threshold: float = 0.0  # percent
    thinking_budget: int = Field(default=25_000, ge=0)
    risk_tolerance: RiskTolerance = RiskTolerance.CONSERVATIVE
    backup_retention: int = Field(default=10, ge=1)
    rollback_timeout: float = Field(default=30.0, gt=0)
    stop_timeout: float = Field(default=30.0, ge=0)
    candidate_safety_floor: float = Field(default=0.8, ge=0.0, le=1.0)
    regression_tolerance: float = Field(default=10.0, ge=0.0)  # percent
    history_limit: int = Field(default=100, ge=1)
    coverage_floor: float = Field(default=0.5, ge=0.0, le=1.0)
    max_backup_files: int = Field(default=100, ge=0)

    def merged(self, partial: dict[str, Any]) -> EvolutionConfig:
        """Return a validated copy with `partial` merged over this config."""
        data = self.model_dump()
        data.update(partial)
        try:
            return EvolutionConfig.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid evolution configuration: {e}") from e


# ── Mutations ────────────────────────────────────────────────────


class CodeChange(BaseModel):
    """The content delta a mutation carries."""

    file_path: str
    old_code: str = ""
    new_code: str = ""
    change_type: ChangeKind = ChangeKind.MODIFICATION
    line_start: int = 1
    line_end: int = 1
    dependencies: list[str] = Field(default_factory=list)


class GeneratedTest(BaseModel):
    """A verification test bundled with a mutation (Python source)."""

    id: str = Field(default_factory=new_id)
    test_type: TestKind = TestKind.UNIT
    test_code: str
    expected_outcome: str = ""  # substring expected in stdout, if any
    coverage_target: float = 0.0


class RollbackStep(BaseModel):
    action: RollbackAction
    target: str
    command: str = ""
    verification: str = ""


class RollbackPlan(BaseModel):
    """Ordered reversal steps plus how to verify them."""

    steps: list[RollbackStep] = Field(default_factory=list)
    verification: list[str] = Field(default_factory=list)
    timeout: float = 300.0  # seconds
    safety_checks: list[str] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.steps


class PerformanceImpact(BaseModel):
    """Estimated deltas; negative latency/memory/cpu and positive throughput are good."""

    latency_delta: float = 0.0
    throughput_delta: float = 0.0
    memory_delta: float = 0.0
    cpu_delta: float = 0.0
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)


class Mutation(BaseModel):
    """A single proposed code change with the metadata needed to orchestrate it."""

    id: MutationId = Field(default_factory=new_id)
    type: MutationType = MutationType.OPTIMIZE
    target: str
    change: CodeChange
    tests: list[GeneratedTest] = Field(default_factory=list)
    rollback: RollbackPlan | None = None
    fitness_score: float = 0.0
    risk_level: RiskLevel = RiskLevel.MEDIUM
    estimated_impact: PerformanceImpact = Field(default_factory=PerformanceImpact)

    @property
    def has_rollback_plan(self) -> bool:
        return self.rollback is not None and not self.rollback.is_empty

    @property
    def risk_score(self) -> float:
        return RISK_SCORES[self.risk_level]


class ImprovementOpportunity(BaseModel):
    """Something the analyzer thinks is worth changing."""

    id: str = Field(default_factory=new_id)
    category: str = "performance"  # performance, maintainability, scalability, security, efficiency
    description: str
    implementation_complexity: float = Field(default=0.5, ge=0.0, le=1.0)
    expected_benefit: float = Field(default=0.5, ge=0.0, le=1.0)
    risk_assessment: float = Field(default=0.3, ge=0.0, le=1.0)
    code_locations: list[str] = Field(default_factory=list)


# ── Performance measurement ──────────────────────────────────────


class PerformanceMetrics(BaseModel):
    """The four dimensions the improvement blend is computed over."""

    latency_ms: float = Field(default=75.0, gt=0)
    throughput_rps: float = Field(default=1000.0, gt=0)
    memory_mb: float = Field(default=100.0, gt=0)
    error_rate: float = Field(default=0.01, gt=0)
    cpu_percent: float = 0.0
    captured_at: datetime = Field(default_factory=utcnow)


class PerformanceCharacteristics(BaseModel):
    """Runtime profile of a single component."""

    average_execution_time_ms: float = 0.0
    memory_mb: float = 0.0
    error_rate: float = 0.0
    usage_frequency: float = 0.0
    critical_path: bool = False
    measured: bool = False  # False when estimated from static metrics


# ── Cycles and results ───────────────────────────────────────────


class EvolutionCycle(BaseModel):
    """One pass through the pipeline."""

    id: CycleId
    start_time: datetime = Field(default_factory=utcnow)
    end_time: datetime | None = None
    phase: EvolutionPhase = EvolutionPhase.IDLE
    mutations_attempted: int = 0
    mutations_applied: int = 0
    performance_improvement: float = 0.0
    safety_score: float = 1.0
    cost_consumed: int = 0
    status: CycleStatus = CycleStatus.RUNNING
    error: str | None = None

    @field_validator("safety_score")
    @classmethod
    def _clamp_safety(cls, v: float) -> float:
        return max(0.0, min(1.0, v))

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def is_finished(self) -> bool:
        return self.status in TERMINAL_STATUSES


class ResultMetadata(BaseModel):
    analysis_depth: int = 0
    cost_consumed: int = 0
    mutations_tested: int = 0
    safety_score: float = 1.0


class EvolutionResult(BaseModel):
    """What a single evolve() call produced."""

    evolved: bool = False
    changes_applied: list[Mutation] = Field(default_factory=list)
    performance_improvement: float = 0.0
    next_evolution_scheduled: datetime | None = None
    metadata: ResultMetadata = Field(default_factory=ResultMetadata)


class EvolutionHistory(BaseModel):
    """Bounded log of past cycles plus rolling aggregates."""

    cycles: list[EvolutionCycle] = Field(default_factory=list)
    limit: int = 100
    total_improvements: float = 0.0
    successful_mutations: int = 0
    failed_mutations: int = 0
    average_improvement: float = 0.0
    completed_cycles: int = 0
    safety_incidents: int = 0
    rollback_count: int = 0

    def append(self, cycle: EvolutionCycle) -> None:
        """Archive a terminal cycle and fold it into the aggregates."""
        if not cycle.is_finished:
            raise ValueError(f"Cycle {cycle.id} is still {cycle.status.value}")
        self.cycles.append(cycle.model_copy(deep=True))

        if cycle.status == CycleStatus.COMPLETED:
            self.successful_mutations += cycle.mutations_applied
            self.total_improvements += cycle.performance_improvement
            self.completed_cycles += 1
            self.average_improvement = self.total_improvements / self.completed_cycles
        elif cycle.status == CycleStatus.FAILED:
            self.failed_mutations += cycle.mutations_attempted
            if cycle.error and "safety" in cycle.error.lower():
                self.safety_incidents += 1
        elif cycle.status == CycleStatus.ABORTED:
            self.rollback_count += 1

        if len(self.cycles) > self.limit:
            self.cycles = self.cycles[-self.limit:]

    def recent(self, n: int = 10) -> list[EvolutionCycle]:
        return self.cycles[-n:]
