"""Evolution metrics — per-cycle snapshots, trends, goals and insights.

EvolutionMetrics is the default MetricsRecorder. Every finished cycle adds
a MetricSnapshot (probe readings, code quality from the latest
self-analysis, the cycle's own numbers). Trends are least-squares fits over
the last ten snapshots; insights flag cycles worth a human look.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Literal

from pydantic import BaseModel, Field

from morphos.evolution.analysis import ArchitecturalAnalysis
from morphos.evolution.capabilities import MetricsRecorder
from morphos.evolution.models import EvolutionCycle, EvolutionResult, PerformanceMetrics
from morphos.evolution.probes import PerformanceProbe, StaticPerformanceProbe
from morphos.types import CycleStatus, Severity, utcnow

_logger = logging.getLogger(__name__)

TREND_WINDOW = 10
MIN_TREND_POINTS = 3


class QualitySnapshot(BaseModel):
    code_coverage: float = 0.0
    average_complexity: float = 0.0
    maintainability_index: float = 0.0
    code_quality_score: float = 0.0


class CycleSnapshot(BaseModel):
    cycle_id: str = ""
    status: CycleStatus = CycleStatus.COMPLETED
    mutations_attempted: int = 0
    mutations_applied: int = 0
    improvement: float = 0.0
    cost_consumed: int = 0
    safety_score: float = 1.0


class MetricSnapshot(BaseModel):
    timestamp: datetime = Field(default_factory=utcnow)
    performance: PerformanceMetrics = Field(default_factory=PerformanceMetrics)
    quality: QualitySnapshot = Field(default_factory=QualitySnapshot)
    evolution: CycleSnapshot = Field(default_factory=CycleSnapshot)


class TrendAnalysis(BaseModel):
    metric_name: str
    trend_direction: Literal["improving", "degrading", "stable"] = "stable"
    trend_strength: float = 0.0
    confidence: float = 0.0  # R²
    projected_value: float = 0.0
    recommendation: str = ""


class PerformanceGoal(BaseModel):
    id: str
    name: str
    metric: str
    target_value: float
    start_value: float
    current_value: float
    lower_is_better: bool = False
    progress: float = 0.0
    deadline: datetime | None = None
    priority: Severity = Severity.MEDIUM
    status: Literal["not_started", "in_progress", "achieved", "overdue"] = "not_started"


class EvolutionInsight(BaseModel):
    type: Literal["optimization", "warning", "achievement", "recommendation"]
    title: str
    description: str
    confidence: float = 0.5
    suggested_actions: list[str] = Field(default_factory=list)
    priority: int = 5
    cycle_id: str = ""
    data: dict[str, Any] = Field(default_factory=dict)


# (name, getter, higher_is_better)
_TREND_METRICS: list[tuple[str, Callable[[MetricSnapshot], float], bool]] = [
    ("latency", lambda s: s.performance.latency_ms, False),
    ("throughput", lambda s: s.performance.throughput_rps, True),
    ("memory_usage", lambda s: s.performance.memory_mb, False),
    ("error_rate", lambda s: s.performance.error_rate, False),
    ("code_coverage", lambda s: s.quality.code_coverage, True),
    ("maintainability", lambda s: s.quality.maintainability_index, True),
    ("safety_score", lambda s: s.evolution.safety_score, True),
]

_GOAL_METRICS: dict[str, Callable[[MetricSnapshot], float]] = {
    "latency_ms": lambda s: s.performance.latency_ms,
    "throughput_rps": lambda s: s.performance.throughput_rps,
    "error_rate": lambda s: s.performance.error_rate,
    "code_coverage": lambda s: s.quality.code_coverage,
}


def linear_trend(values: list[float], higher_is_better: bool) -> TrendAnalysis:
    """Least-squares fit over `values` (x = 0..n-1)."""
    n = len(values)
    if n < 2:
        return TrendAnalysis(metric_name="", projected_value=values[0] if values else 0.0)

    sum_x = n * (n - 1) / 2
    sum_y = sum(values)
    sum_xy = sum(i * y for i, y in enumerate(values))
    sum_xx = sum(i * i for i in range(n))
    slope = (n * sum_xy - sum_x * sum_y) / (n * sum_xx - sum_x * sum_x)
    intercept = (sum_y - slope * sum_x) / n

    mean = sum_y / n
    total_ss = sum((y - mean) ** 2 for y in values)
    residual_ss = sum((y - (slope * i + intercept)) ** 2 for i, y in enumerate(values))
    r_squared = 1 - residual_ss / total_ss if total_ss else 1.0

    if abs(slope) < 0.01:
        direction = "stable"
    elif (slope > 0) == higher_is_better:
        direction = "improving"
    else:
        direction = "degrading"

    return TrendAnalysis(
        metric_name="",
        trend_direction=direction,
        trend_strength=abs(slope),
        confidence=max(0.0, min(1.0, r_squared)),
        projected_value=slope * n + intercept,
    )


class EvolutionMetrics(MetricsRecorder):
    """Default MetricsRecorder. record() never raises."""

    def __init__(
        self,
        probe: PerformanceProbe | None = None,
        analysis_source: Callable[[], ArchitecturalAnalysis | None] | None = None,
        max_snapshots: int = 1000,
        max_insights: int = 50,
    ) -> None:
        self._probe = probe or StaticPerformanceProbe()
        self._analysis_source = analysis_source
        self._max_snapshots = max_snapshots
        self._max_insights = max_insights
        self._snapshots: list[MetricSnapshot] = []
        self._insights: list[EvolutionInsight] = []
        self._goals: dict[str, PerformanceGoal] = {}
        self._baseline: MetricSnapshot | None = None
        self._init_default_goals()

    @property
    def snapshots(self) -> list[MetricSnapshot]:
        return list(self._snapshots)

    @property
    def insights(self) -> list[EvolutionInsight]:
        return list(self._insights)

    @property
    def baseline(self) -> MetricSnapshot | None:
        return self._baseline

    async def record(self, cycle: EvolutionCycle, result: EvolutionResult) -> None:
        try:
            snapshot = await self.capture_snapshot()
            snapshot.evolution = CycleSnapshot(
                cycle_id=cycle.id,
                status=cycle.status,
                mutations_attempted=cycle.mutations_attempted,
                mutations_applied=cycle.mutations_applied,
                improvement=cycle.performance_improvement,
                cost_consumed=cycle.cost_consumed,
                safety_score=cycle.safety_score,
            )
            self._snapshots.append(snapshot)
            if self._baseline is None:
                self._baseline = snapshot
                _logger.info("Metrics baseline established")
            if len(self._snapshots) > self._max_snapshots:
                self._snapshots = self._snapshots[-self._max_snapshots:]

            self._update_goals(snapshot)
            self._insights.extend(self._generate_insights(cycle))
            if len(self._insights) > self._max_insights:
                self._insights = self._insights[-self._max_insights:]
        except Exception:
            _logger.exception("Failed to record metrics for cycle %s", cycle.id)

    async def capture_snapshot(self) -> MetricSnapshot:
        performance = await self._probe.measure()
        quality = QualitySnapshot()
        analysis = self._analysis_source() if self._analysis_source else None
        if analysis is not None and analysis.components:
            comps = analysis.components
            quality = QualitySnapshot(
                code_coverage=sum(c.test_coverage for c in comps) / len(comps),
                average_complexity=analysis.complexity.cyclomatic_complexity,
                maintainability_index=analysis.maintainability_index,
                code_quality_score=analysis.code_quality_score,
            )
        return MetricSnapshot(performance=performance, quality=quality)

    # ── Trends and goals ─────────────────────────────────────────

    def analyze_trends(self) -> list[TrendAnalysis]:
        if len(self._snapshots) < MIN_TREND_POINTS:
            return []
        recent = self._snapshots[-TREND_WINDOW:]
        trends = []
        for name, getter, higher_is_better in _TREND_METRICS:
            trend = linear_trend([getter(s) for s in recent], higher_is_better)
            trend.metric_name = name
            trend.recommendation = self._recommendation(name, trend.trend_direction)
            trends.append(trend)
        return trends

    def set_performance_goal(self, goal: PerformanceGoal) -> None:
        self._goals[goal.id] = goal
        _logger.info("Performance goal set: %s", goal.name)

    def goals(self) -> list[PerformanceGoal]:
        return list(self._goals.values())

    def _init_default_goals(self) -> None:
        for goal in (
            PerformanceGoal(
                id="latency_improvement", name="Reduce latency", metric="latency_ms",
                target_value=100.0, start_value=150.0, current_value=150.0,
                lower_is_better=True, priority=Severity.HIGH,
            ),
            PerformanceGoal(
                id="throughput_improvement", name="Increase throughput", metric="throughput_rps",
                target_value=2000.0, start_value=1000.0, current_value=1000.0,
            ),
            PerformanceGoal(
                id="error_rate_reduction", name="Reduce error rate", metric="error_rate",
                target_value=0.001, start_value=0.01, current_value=0.01,
                lower_is_better=True, priority=Severity.CRITICAL,
            ),
            PerformanceGoal(
                id="code_coverage_improvement", name="Improve code coverage", metric="code_coverage",
                target_value=0.9, start_value=0.75, current_value=0.75,
            ),
        ):
            self.set_performance_goal(goal)

    def _update_goals(self, snapshot: MetricSnapshot) -> None:
        for goal in self._goals.values():
            getter = _GOAL_METRICS.get(goal.metric)
            if getter is None:
                continue
            goal.current_value = getter(snapshot)
            if goal.lower_is_better:
                achieved = goal.current_value <= goal.target_value
                gained, needed = goal.start_value - goal.current_value, goal.start_value - goal.target_value
            else:
                achieved = goal.current_value >= goal.target_value
                gained, needed = goal.current_value - goal.start_value, goal.target_value - goal.start_value

            if achieved:
                goal.progress = 1.0
            elif needed > 0:
                goal.progress = max(0.0, min(1.0, gained / needed))
            else:
                goal.progress = 0.0

            if goal.progress >= 1.0:
                goal.status = "achieved"
            elif goal.deadline and utcnow() > goal.deadline:
                goal.status = "overdue"
            elif goal.progress > 0:
                goal.status = "in_progress"
            else:
                goal.status = "not_started"

    # ── Insights ─────────────────────────────────────────────────

    @staticmethod
    def _generate_insights(cycle: EvolutionCycle) -> list[EvolutionInsight]:
        found: list[EvolutionInsight] = []
        if cycle.performance_improvement > 10:
            found.append(EvolutionInsight(
                type="achievement",
                title="Significant performance improvement",
                description=f"Cycle achieved {cycle.performance_improvement:.1f}% performance improvement",
                confidence=0.9,
                suggested_actions=["Continue similar optimization patterns", "Monitor for regressions"],
                priority=1,
                cycle_id=cycle.id,
                data={"improvement": cycle.performance_improvement},
            ))
        if cycle.safety_score < 0.8:
            found.append(EvolutionInsight(
                type="warning",
                title="Low safety score",
                description=f"Cycle had a safety score of {cycle.safety_score:.2f}",
                confidence=0.95,
                suggested_actions=["Review safety rules", "Raise the safety threshold", "Audit mutation generation"],
                priority=2,
                cycle_id=cycle.id,
                data={"safety_score": cycle.safety_score},
            ))
        if cycle.cost_consumed > 20_000:
            found.append(EvolutionInsight(
                type="optimization",
                title="High analyzer cost",
                description=f"Cycle consumed {cycle.cost_consumed} budget units",
                confidence=0.8,
                suggested_actions=["Tighten prompts", "Lower the thinking budget", "Improve heuristics"],
                priority=3,
                cycle_id=cycle.id,
                data={"cost_consumed": cycle.cost_consumed},
            ))
        if cycle.mutations_attempted > 0:
            rate = cycle.mutations_applied / cycle.mutations_attempted
            if rate < 0.5:
                found.append(EvolutionInsight(
                    type="warning",
                    title="Low mutation success rate",
                    description=f"Only {rate * 100:.1f}% of tested mutations were applied",
                    confidence=0.85,
                    suggested_actions=["Improve mutation quality", "Strengthen bundled tests", "Review selection criteria"],
                    priority=4,
                    cycle_id=cycle.id,
                    data={"success_rate": rate},
                ))
        return found

    @staticmethod
    def _recommendation(metric: str, direction: str) -> str:
        if direction == "improving":
            return f"Continue current optimization strategies for {metric}"
        if direction == "degrading":
            return f"Address degradation in {metric} immediately"
        return f"Monitor {metric} for potential optimization opportunities"

    # ── Reporting ────────────────────────────────────────────────

    def evolution_stats(self) -> dict[str, Any]:
        evo = [s.evolution for s in self._snapshots]
        total_cycles = sum(1 for e in evo if e.status in (CycleStatus.COMPLETED, CycleStatus.FAILED))
        successful_cycles = sum(1 for e in evo if e.status == CycleStatus.COMPLETED)
        total_mutations = sum(e.mutations_attempted for e in evo)
        successful_mutations = sum(e.mutations_applied for e in evo)
        total_cost = sum(e.cost_consumed for e in evo)
        cumulative = sum(e.improvement for e in evo)
        return {
            "total_cycles": total_cycles,
            "successful_cycles": successful_cycles,
            "cycle_success_rate": successful_cycles / total_cycles if total_cycles else 0.0,
            "total_mutations": total_mutations,
            "successful_mutations": successful_mutations,
            "mutation_success_rate": successful_mutations / total_mutations if total_mutations else 0.0,
            "total_cost": total_cost,
            "average_cost_per_cycle": total_cost / total_cycles if total_cycles else 0.0,
            "cumulative_improvement": cumulative,
            "average_improvement_per_cycle": cumulative / total_cycles if total_cycles else 0.0,
        }

    def get_summary(self) -> dict[str, Any]:
        current = self._snapshots[-1] if self._snapshots else None
        return {
            "current": current.model_dump(mode="json") if current else None,
            "baseline": self._baseline.model_dump(mode="json") if self._baseline else None,
            "trends": [t.model_dump() for t in self.analyze_trends()],
            "goals": [g.model_dump(mode="json") for g in self._goals.values()],
            "insights": [i.model_dump() for i in self._insights],
            "evolution_stats": self.evolution_stats(),
        }
