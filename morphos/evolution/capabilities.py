"""Capability contracts the evolution loop consumes, plus heuristic fallbacks.

The loop never depends on a specific model or service. An Analyzer ranks
improvement opportunities, a Generator turns one opportunity into a
candidate Mutation, and a MetricsRecorder receives finished cycles. The
heuristic implementations are deterministic and cost nothing, so the
pipeline always has somewhere to fall back to.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

from morphos.evolution.models import (
    CodeChange,
    EvolutionCycle,
    EvolutionResult,
    ImprovementOpportunity,
    Mutation,
    PerformanceImpact,
    RollbackPlan,
    RollbackStep,
)
from morphos.types import ChangeKind, MutationType, RollbackAction, risk_level_for

if TYPE_CHECKING:
    from morphos.evolution.analysis import ArchitecturalAnalysis


class AnalyzerReport(BaseModel):
    """Ranked opportunities and what it cost to find them."""

    opportunities: list[ImprovementOpportunity] = Field(default_factory=list)
    cost_consumed: int = 0
    source: str = "heuristic"


class Analyzer(ABC):
    @abstractmethod
    async def analyze(self, analysis: ArchitecturalAnalysis, budget: int) -> AnalyzerReport:
        """Rank improvement opportunities, spending at most `budget` cost units."""


class Generator(ABC):
    """Turns opportunities into mutations.

    `cost_consumed` is a running total the pipeline reads before and after
    each generate() call to charge generation to the cycle.
    """

    cost_consumed: int = 0

    @abstractmethod
    async def generate(self, opportunity: ImprovementOpportunity) -> Mutation | None:
        """A candidate mutation for `opportunity`, or None."""


class MetricsRecorder(ABC):
    @abstractmethod
    async def record(self, cycle: EvolutionCycle, result: EvolutionResult) -> None:
        """Receive a finished cycle. Failures are ignored by the engine."""


CATEGORY_MUTATION_TYPES: dict[str, MutationType] = {
    "performance": MutationType.OPTIMIZE,
    "efficiency": MutationType.ALGORITHM_ENHANCEMENT,
    "maintainability": MutationType.REFACTOR,
    "scalability": MutationType.ARCHITECTURE_RESTRUCTURE,
    "security": MutationType.PATTERN_IMPROVEMENT,
    "dependency": MutationType.DEPENDENCY_UPGRADE,
}


def rank_opportunities(opportunities: list[ImprovementOpportunity]) -> list[ImprovementOpportunity]:
    """Highest expected benefit first; ties go to lower risk, then description."""
    return sorted(
        opportunities,
        key=lambda o: (-o.expected_benefit, o.risk_assessment, o.description),
    )


class HeuristicAnalyzer(Analyzer):
    """Ranks the opportunities self-analysis already derived. Costs nothing."""

    async def analyze(self, analysis: ArchitecturalAnalysis, budget: int) -> AnalyzerReport:
        return AnalyzerReport(
            opportunities=rank_opportunities(list(analysis.opportunities)),
            cost_consumed=0,
            source="heuristic",
        )


class HeuristicGenerator(Generator):
    """Builds a content-neutral mutation for an opportunity.

    The change leaves the target untouched (old == new), so it exercises
    the whole apply/verify path without altering behaviour. Real content
    comes from a model-backed generator.
    """

    async def generate(self, opportunity: ImprovementOpportunity) -> Mutation | None:
        if not opportunity.code_locations:
            return None
        target = opportunity.code_locations[0]
        benefit = opportunity.expected_benefit
        return Mutation(
            type=CATEGORY_MUTATION_TYPES.get(opportunity.category, MutationType.OPTIMIZE),
            target=target,
            change=CodeChange(
                file_path=target,
                change_type=ChangeKind.MODIFICATION,
            ),
            rollback=RollbackPlan(
                steps=[RollbackStep(action=RollbackAction.REVERT_FILE, target=target)],
                verification=["target content matches backup"],
                timeout=300.0,
                safety_checks=["backup exists"],
            ),
            fitness_score=benefit,
            risk_level=risk_level_for(opportunity.risk_assessment),
            estimated_impact=PerformanceImpact(
                latency_delta=-benefit * 10,
                throughput_delta=benefit * 100,
                confidence=0.7,
            ),
        )
