"""MutationPipeline — produce, test, select and apply mutations for one cycle.

evolve() runs seven steps in strict order:

  1. self-analysis           (read-only snapshot of the tree)
  2. opportunity discovery   (external analyzer, heuristic fallback)
  3. mutation generation     (external generator, heuristic fallback)
  4. sandbox testing         (every candidate in its own sandbox, joined)
  5. selection               (tests passed, safety over the floor, top-N)
  6. application             (backup, apply, verify, roll back on failure)
  7. measurement             (weighted improvement against the baseline)

Failures in steps 1-3 abort the call with PipelineError. Failures in
steps 4-6 only disqualify the candidate they belong to.
"""

from __future__ import annotations

import asyncio
import logging
import shlex
from typing import TYPE_CHECKING, Awaitable, Callable

from pydantic import BaseModel, Field

from morphos.events.bus import EventBus
from morphos.evolution.analysis import ArchitecturalAnalysis, SelfAnalyzer
from morphos.evolution.capabilities import (
    Analyzer,
    AnalyzerReport,
    Generator,
    HeuristicAnalyzer,
    HeuristicGenerator,
)
from morphos.evolution.files import FileStore
from morphos.evolution.models import (
    EvolutionConfig,
    EvolutionResult,
    ImprovementOpportunity,
    Mutation,
    PerformanceMetrics,
    ResultMetadata,
)
from morphos.evolution.patching import apply_change
from morphos.evolution.probes import PerformanceProbe
from morphos.evolution.sandbox import CandidateEvaluation, Sandbox
from morphos.exceptions import MutationApplyError, PipelineError
from morphos.safety.rules import is_critical_path
from morphos.types import TOLERATED_RISK, EvolutionPhase, RollbackAction

if TYPE_CHECKING:
    from morphos.safety.backup import BackupState

_logger = logging.getLogger(__name__)

BackupHook = Callable[[Mutation], Awaitable["BackupState"]]
PhaseCallback = Callable[[EvolutionPhase], None]

# Weights of the improvement blend
IMPROVEMENT_WEIGHTS = {
    "latency": 0.3,
    "throughput": 0.3,
    "memory": 0.2,
    "error_rate": 0.2,
}


def calculate_improvement(before: PerformanceMetrics, after: PerformanceMetrics) -> float:
    """Weighted percentage improvement from `before` to `after`."""
    latency = (before.latency_ms - after.latency_ms) / before.latency_ms
    throughput = (after.throughput_rps - before.throughput_rps) / before.throughput_rps
    memory = (before.memory_mb - after.memory_mb) / before.memory_mb
    error_rate = (before.error_rate - after.error_rate) / before.error_rate
    return (
        latency * IMPROVEMENT_WEIGHTS["latency"]
        + throughput * IMPROVEMENT_WEIGHTS["throughput"]
        + memory * IMPROVEMENT_WEIGHTS["memory"]
        + error_rate * IMPROVEMENT_WEIGHTS["error_rate"]
    ) * 100


class Rejection(BaseModel):
    mutation_id: str
    target: str
    reason: str


class CycleReport(BaseModel):
    """Diagnostics of the most recent evolve() call."""

    opportunities: list[ImprovementOpportunity] = Field(default_factory=list)
    analyzer_source: str = "heuristic"
    analysis_cost: int = 0
    generation_cost: int = 0
    rejected: list[Rejection] = Field(default_factory=list)
    evaluations: list[CandidateEvaluation] = Field(default_factory=list)
    selected: list[str] = Field(default_factory=list)
    rolled_back: list[str] = Field(default_factory=list)


class MutationPipeline:
    """One cycle's worth of mutation work. Never run concurrently with itself."""

    def __init__(
        self,
        config: EvolutionConfig,
        files: FileStore,
        analyzer: Analyzer | None = None,
        generator: Generator | None = None,
        self_analyzer: SelfAnalyzer | None = None,
        sandbox: Sandbox | None = None,
        backup_hook: BackupHook | None = None,
        probe: PerformanceProbe | None = None,
        event_bus: EventBus | None = None,
        is_protected: Callable[[str], bool] | None = None,
    ) -> None:
        self.config = config
        self._files = files
        self._analyzer = analyzer
        self._generator = generator
        self._heuristic_analyzer = HeuristicAnalyzer()
        self._heuristic_generator = HeuristicGenerator()
        self._self_analyzer = self_analyzer or SelfAnalyzer(
            files, probe=probe, coverage_floor=config.coverage_floor
        )
        self._sandbox = sandbox or Sandbox(files)
        self._backup_hook = backup_hook
        self._probe = probe or self._self_analyzer.probe
        self._event_bus = event_bus
        self._is_protected = is_protected or is_critical_path
        self._baseline: PerformanceMetrics | None = None
        self._last_analysis: ArchitecturalAnalysis | None = None
        self.last_report = CycleReport()

    @property
    def baseline(self) -> PerformanceMetrics | None:
        return self._baseline

    @property
    def last_analysis(self) -> ArchitecturalAnalysis | None:
        return self._last_analysis

    async def evolve(
        self,
        budget: int | None = None,
        on_phase: PhaseCallback | None = None,
    ) -> EvolutionResult:
        """Run steps 1-7 and return what was applied."""
        report = CycleReport()
        self.last_report = report

        def phase(p: EvolutionPhase) -> None:
            if on_phase:
                on_phase(p)

        try:
            phase(EvolutionPhase.ANALYSIS)
            analysis = await self._self_analyzer.analyze()
            self._last_analysis = analysis
            await self._emit("evolution.analysis_completed", {
                "components": len(analysis.components),
                "findings": len(analysis.findings),
                "code_quality_score": analysis.code_quality_score,
            })

            phase(EvolutionPhase.PLANNING)
            limit = self.config.thinking_budget if budget is None else min(budget, self.config.thinking_budget)
            found = await self._identify_opportunities(analysis, limit)
            report.opportunities = found.opportunities
            report.analyzer_source = found.source
            report.analysis_cost = found.cost_consumed

            phase(EvolutionPhase.MUTATION_GENERATION)
            top = found.opportunities[: self.config.max_opportunities]
            candidates = await self._generate_candidates(top, report)
        except PipelineError:
            raise
        except Exception as e:
            raise PipelineError(f"Mutation pipeline failed before testing: {e}") from e

        phase(EvolutionPhase.TESTING)
        evaluations = await self._evaluate_candidates(candidates)
        report.evaluations = evaluations

        phase(EvolutionPhase.SELECTION)
        selected = self._select(candidates, evaluations)
        report.selected = [m.id for m in selected]

        phase(EvolutionPhase.APPLICATION)
        applied = []
        for mutation in selected:
            if await self._apply_one(mutation):
                applied.append(mutation)
            else:
                report.rolled_back.append(mutation.id)

        phase(EvolutionPhase.VERIFICATION)
        improvement = await self._measure()

        safety_score = 1.0
        if applied:
            safety_score = 1.0 - sum(m.risk_score for m in applied) / len(applied)

        result = EvolutionResult(
            evolved=bool(applied),
            changes_applied=applied,
            performance_improvement=improvement,
            metadata=ResultMetadata(
                analysis_depth=len(analysis.components),
                cost_consumed=report.analysis_cost + report.generation_cost,
                mutations_tested=len(candidates),
                safety_score=safety_score,
            ),
        )
        _logger.info(
            "Pipeline finished: %d candidates, %d selected, %d applied, %.2f%% improvement",
            len(candidates), len(selected), len(applied), improvement,
        )
        return result

    # ── Step 2 ───────────────────────────────────────────────────

    async def _identify_opportunities(
        self, analysis: ArchitecturalAnalysis, budget: int
    ) -> AnalyzerReport:
        if self._analyzer is not None:
            try:
                found = await self._analyzer.analyze(analysis, budget)
                if found is not None:
                    await self._emit("evolution.opportunities_identified", {
                        "count": len(found.opportunities),
                        "source": found.source,
                    })
                    return found
                _logger.warning("Analyzer returned nothing; using heuristic ranking")
            except Exception as e:
                _logger.warning("Analyzer failed, using heuristic ranking: %s", e)

        found = await self._heuristic_analyzer.analyze(analysis, budget)
        await self._emit("evolution.opportunities_identified", {
            "count": len(found.opportunities),
            "source": found.source,
        })
        return found

    # ── Step 3 ───────────────────────────────────────────────────

    async def _generate_candidates(
        self, opportunities: list[ImprovementOpportunity], report: CycleReport
    ) -> list[Mutation]:
        tolerated = TOLERATED_RISK[self.config.risk_tolerance]
        candidates: list[Mutation] = []
        for opportunity in opportunities:
            spent_before = self._generator.cost_consumed if self._generator else 0
            mutation = await self._generate_one(opportunity)
            if self._generator is not None:
                report.generation_cost += max(0, self._generator.cost_consumed - spent_before)
            if mutation is None:
                continue

            reason = ""
            if not mutation.has_rollback_plan:
                reason = "missing rollback plan"
            elif mutation.risk_level not in tolerated:
                reason = f"risk {mutation.risk_level.value} exceeds {self.config.risk_tolerance.value} tolerance"
            elif self._touches_protected(mutation):
                reason = "targets a protected critical file"

            if reason:
                _logger.info("Rejected candidate %s (%s): %s", mutation.id, mutation.target, reason)
                report.rejected.append(
                    Rejection(mutation_id=mutation.id, target=mutation.target, reason=reason)
                )
                await self._emit("evolution.candidate_rejected", {
                    "mutation_id": mutation.id,
                    "target": mutation.target,
                    "reason": reason,
                })
                continue
            candidates.append(mutation)
        return candidates

    async def _generate_one(self, opportunity: ImprovementOpportunity) -> Mutation | None:
        if self._generator is not None:
            try:
                return await self._generator.generate(opportunity)
            except Exception as e:
                _logger.warning("Generator failed for %s: %s", opportunity.id, e)
                return None
        return await self._heuristic_generator.generate(opportunity)

    def _touches_protected(self, mutation: Mutation) -> bool:
        paths = {mutation.target, mutation.change.file_path}
        if mutation.rollback:
            paths.update(
                step.target for step in mutation.rollback.steps
                if step.action == RollbackAction.REVERT_FILE
            )
        return any(self._is_protected(p) for p in paths if p)

    # ── Steps 4 and 5 ────────────────────────────────────────────

    async def _evaluate_candidates(self, candidates: list[Mutation]) -> list[CandidateEvaluation]:
        evaluations = await asyncio.gather(*(self._sandbox.evaluate(m) for m in candidates))
        for evaluation in evaluations:
            await self._emit("evolution.candidate_evaluated", {
                "mutation_id": evaluation.mutation_id,
                "tests_passed": evaluation.tests_passed,
                "safety_score": evaluation.safety_score,
                "fitness_score": evaluation.fitness_score,
            })
        return list(evaluations)

    def _select(
        self, candidates: list[Mutation], evaluations: list[CandidateEvaluation]
    ) -> list[Mutation]:
        by_id = {e.mutation_id: e for e in evaluations}
        viable = [
            m for m in candidates
            if by_id[m.id].tests_passed
            and by_id[m.id].safety_score > self.config.candidate_safety_floor
        ]
        viable.sort(key=lambda m: by_id[m.id].fitness_score, reverse=True)
        return viable[: self.config.max_mutations_per_cycle]

    # ── Step 6 ───────────────────────────────────────────────────

    async def _apply_one(self, mutation: Mutation) -> bool:
        """Back up, apply and verify one mutation. False means it was rolled back."""
        if not mutation.has_rollback_plan:
            return False

        backup: BackupState | None = None
        prior: dict[str, str | None] = {}
        try:
            if self._backup_hook is not None:
                backup = await self._backup_hook(mutation)
            prior = await self._snapshot(mutation)
        except Exception as e:
            _logger.warning("Could not back up %s, skipping it: %s", mutation.id, e)
            return False

        path = mutation.change.file_path
        try:
            updated = apply_change(prior[path], mutation.change)
            if updated is None:
                await self._files.delete(path)
            else:
                await self._files.write(path, updated)
            await self._verify(mutation, updated)
        except Exception as e:
            _logger.warning("Mutation %s failed on %s, rolling back: %s", mutation.id, path, e)
            await self._rollback(mutation, prior, backup)
            await self._emit("evolution.mutation_rolled_back", {
                "mutation_id": mutation.id,
                "target": path,
                "error": str(e),
            })
            return False

        await self._emit("evolution.mutation_applied", {
            "mutation_id": mutation.id,
            "target": path,
            "type": mutation.type.value,
            "risk_level": mutation.risk_level.value,
        })
        return True

    async def _snapshot(self, mutation: Mutation) -> dict[str, str | None]:
        paths = {mutation.change.file_path}
        paths.update(
            step.target for step in mutation.rollback.steps
            if step.action in (RollbackAction.REVERT_FILE, RollbackAction.VALIDATE_STATE)
        )
        prior: dict[str, str | None] = {}
        for path in sorted(paths):
            prior[path] = await self._files.read(path) if await self._files.exists(path) else None
        return prior

    async def _verify(self, mutation: Mutation, expected: str | None) -> None:
        path = mutation.change.file_path
        if expected is None:
            if await self._files.exists(path):
                raise MutationApplyError(f"{path} still exists after deletion")
        elif await self._files.read(path) != expected:
            raise MutationApplyError(f"{path} does not hold the mutated content")

        if mutation.tests:
            report = await self._sandbox.verify_live(mutation)
            if not report.passed:
                failed = [r.error or r.output for r in report.results if not r.passed]
                raise MutationApplyError(f"Post-application tests failed: {failed[0][:200]}")

    async def _rollback(
        self,
        mutation: Mutation,
        prior: dict[str, str | None],
        backup: BackupState | None,
    ) -> None:
        """Execute the mutation's rollback plan, then make sure its target is restored."""
        timeout = min(mutation.rollback.timeout, self.config.rollback_timeout)
        try:
            await asyncio.wait_for(self._run_plan(mutation, prior, backup), timeout=timeout)
        except Exception as e:
            _logger.error("Rollback plan for %s failed: %s", mutation.id, e)

        path = mutation.change.file_path
        try:
            await self._restore_file(path, prior[path])
        except OSError as e:
            _logger.error("Could not restore %s after failed mutation %s: %s", path, mutation.id, e)
            await self._emit("evolution.rollback_failed", {
                "mutation_id": mutation.id,
                "target": path,
                "error": str(e),
            })

    async def _run_plan(
        self,
        mutation: Mutation,
        prior: dict[str, str | None],
        backup: BackupState | None,
    ) -> None:
        for step in mutation.rollback.steps:
            if step.action == RollbackAction.REVERT_FILE:
                await self._restore_file(step.target, prior.get(step.target))
            elif step.action == RollbackAction.RESTORE_BACKUP:
                if backup is None:
                    raise MutationApplyError("Rollback step needs a backup but none was taken")
                for path, content in backup.files.items():
                    await self._files.write(path, content)
                for path in backup.missing:
                    await self._files.delete(path)
            elif step.action == RollbackAction.RUN_COMMAND:
                await self._run_command(step.command)
            elif step.action == RollbackAction.VALIDATE_STATE:
                current = await self._files.read(step.target) if await self._files.exists(step.target) else None
                if current != prior.get(step.target):
                    raise MutationApplyError(f"{step.target} was not restored")

    async def _restore_file(self, path: str, content: str | None) -> None:
        if content is None:
            await self._files.delete(path)
        else:
            await self._files.write(path, content)

    async def _run_command(self, command: str) -> None:
        proc = await asyncio.create_subprocess_exec(
            *shlex.split(command),
            cwd=str(self._files.root),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        _, stderr = await proc.communicate()
        if proc.returncode != 0:
            raise MutationApplyError(
                f"Rollback command failed ({proc.returncode}): {stderr.decode(errors='replace')[:200]}"
            )

    # ── Step 7 ───────────────────────────────────────────────────

    async def _measure(self) -> float:
        current = await self._probe.measure()
        if self._baseline is None:
            self._baseline = current
            return 0.0
        improvement = calculate_improvement(self._baseline, current)
        self._baseline = current
        return improvement

    async def _emit(self, topic: str, data: dict) -> None:
        if self._event_bus:
            await self._event_bus.emit(topic, data, source="mutation_pipeline")
