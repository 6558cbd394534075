"""EvolutionEngine — top-level orchestrator of the self-modification loop.

Owns the per-cycle state machine, one-cycle-at-a-time scheduling, the
manual trigger, emergency stop and the bounded history. Each cycle:

    pre-check → system backup → pipeline.evolve() → post-check → completed

Any exception on that path moves the cycle to the rollback phase, marks it
failed, runs an emergency rollback and backs off the next cycle to twice
the adaptive interval. A cycle runs in its own task so stop() and
emergency_stop() can cancel it and wait until it has fully unwound.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Any

import structlog

from morphos.events.bus import EventBus
from morphos.evolution.capabilities import Analyzer, Generator, MetricsRecorder
from morphos.evolution.files import FileStore
from morphos.evolution.models import (
    EvolutionConfig,
    EvolutionCycle,
    EvolutionHistory,
    EvolutionResult,
    ResultMetadata,
)
from morphos.evolution.pipeline import MutationPipeline
from morphos.evolution.probes import PerformanceProbe
from morphos.exceptions import (
    CycleInProgressError,
    MorphosError,
    PipelineError,
    RollbackError,
    SafetyCheckError,
)
from morphos.safety.controller import SafetyController
from morphos.types import CycleStatus, EvolutionPhase, time_ordered_id, utcnow

logger = structlog.get_logger()

# Valid phase transitions within one cycle; rollback is reachable from anywhere
PHASE_TRANSITIONS: dict[EvolutionPhase, set[EvolutionPhase]] = {
    EvolutionPhase.IDLE: {EvolutionPhase.ANALYSIS, EvolutionPhase.ROLLBACK},
    EvolutionPhase.ANALYSIS: {EvolutionPhase.PLANNING, EvolutionPhase.ROLLBACK},
    EvolutionPhase.PLANNING: {EvolutionPhase.MUTATION_GENERATION, EvolutionPhase.ROLLBACK},
    EvolutionPhase.MUTATION_GENERATION: {EvolutionPhase.TESTING, EvolutionPhase.ROLLBACK},
    EvolutionPhase.TESTING: {EvolutionPhase.SELECTION, EvolutionPhase.ROLLBACK},
    EvolutionPhase.SELECTION: {EvolutionPhase.APPLICATION, EvolutionPhase.ROLLBACK},
    EvolutionPhase.APPLICATION: {EvolutionPhase.VERIFICATION, EvolutionPhase.ROLLBACK},
    EvolutionPhase.VERIFICATION: {EvolutionPhase.ROLLBACK},
    EvolutionPhase.ROLLBACK: set(),  # terminal
}

# Phases after which the live tree may already hold applied changes
_WRITING_PHASES = {EvolutionPhase.APPLICATION, EvolutionPhase.VERIFICATION}

STABILITY_WINDOW = 10


class EvolutionEngine:
    """Drives evolution cycles and keeps their history."""

    def __init__(
        self,
        files: FileStore,
        config: EvolutionConfig | None = None,
        safety: SafetyController | None = None,
        pipeline: MutationPipeline | None = None,
        recorder: MetricsRecorder | None = None,
        event_bus: EventBus | None = None,
        analyzer: Analyzer | None = None,
        generator: Generator | None = None,
        probe: PerformanceProbe | None = None,
    ) -> None:
        self._config = config or EvolutionConfig()
        self._files = files
        self._event_bus = event_bus
        self.safety = safety or SafetyController(
            files,
            config=self._config,
            performance_probe=probe,
            event_bus=event_bus,
        )
        self.pipeline = pipeline or MutationPipeline(
            self._config,
            files,
            analyzer=analyzer,
            generator=generator,
            backup_hook=self.safety.create_mutation_backup,
            probe=probe,
            event_bus=event_bus,
            is_protected=self.safety.is_protected,
        )
        self._recorder = recorder
        self._history = EvolutionHistory(limit=self._config.history_limit)
        self._current: EvolutionCycle | None = None
        self._cycle_task: asyncio.Task | None = None
        self._scheduler: asyncio.Task | None = None
        self._running = False
        self._next_run: datetime | None = None

    # ── Accessors ────────────────────────────────────────────────

    @property
    def config(self) -> EvolutionConfig:
        return self._config

    @property
    def history(self) -> EvolutionHistory:
        return self._history

    @property
    def current_cycle(self) -> EvolutionCycle | None:
        return self._current

    @property
    def is_running(self) -> bool:
        return self._running

    # ── Lifecycle ────────────────────────────────────────────────

    async def start(self) -> EvolutionResult | None:
        """Run one cycle now, then keep cycling if an interval is configured.

        A no-op when disabled. Never raises for "already running".
        """
        if not self._config.enabled:
            logger.info("evolution_disabled")
            return None
        if self._running:
            logger.warning("evolution_already_running")
            return None

        self._running = True
        logger.info("evolution_engine_started", interval=self._config.evolution_interval)
        await self._emit("evolution.engine_started", {"interval": self._config.evolution_interval})

        result: EvolutionResult | None = None
        try:
            result = await self.run_evolution_cycle()
        except CycleInProgressError:
            logger.warning("evolution_cycle_already_running")
        except RollbackError as e:
            logger.error("evolution_rollback_failed", error=str(e))

        if self._running and self._config.evolution_interval > 0:
            self._scheduler = asyncio.create_task(self._schedule_loop())
        return result

    async def stop(self) -> None:
        """Stop scheduling; give a running cycle `stop_timeout` to finish, then abort it."""
        self._running = False
        await self._cancel_scheduler()

        task = self._cycle_task
        if self._current is not None and task is not None and task is not asyncio.current_task():
            done, _ = await asyncio.wait({task}, timeout=self._config.stop_timeout)
            if not done and self._current is not None:
                logger.warning("evolution_cycle_stop_timeout", cycle_id=self._current.id)
                rollback = self._current.phase in _WRITING_PHASES
                await self._abort("Cycle aborted: stop timeout exceeded")
                if rollback:
                    await self.safety.emergency_rollback()

        logger.info("evolution_engine_stopped")
        await self._emit("evolution.engine_stopped", {})

    async def emergency_stop(self) -> None:
        """Disable scheduling, abort any running cycle, and always roll back."""
        logger.warning("evolution_emergency_stop")
        self._running = False
        await self._cancel_scheduler()
        if self._current is not None:
            await self._abort("Cycle aborted: emergency stop")
        await self._emit("evolution.emergency_stop", {})
        await self.safety.emergency_rollback()

    # ── Cycles ───────────────────────────────────────────────────

    async def trigger_evolution(self) -> EvolutionResult:
        """Manually run a cycle. Fails if one is already running."""
        logger.info("evolution_manual_trigger")
        return await self.run_evolution_cycle()

    async def run_evolution_cycle(self) -> EvolutionResult:
        """Run one complete cycle.

        Raises CycleInProgressError when a cycle is already running and
        RollbackError when the failure path could not restore the system.
        """
        if self._current is not None:
            raise CycleInProgressError(f"Evolution cycle {self._current.id} is already running")

        cycle = EvolutionCycle(id=time_ordered_id("cycle"))
        self._current = cycle
        task = asyncio.create_task(self._execute(cycle))
        self._cycle_task = task
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled() and cycle.status == CycleStatus.ABORTED:
                return self._zero_result(next_run=None, safety_score=cycle.safety_score)
            raise

    async def _execute(self, cycle: EvolutionCycle) -> EvolutionResult:
        logger.info("evolution_cycle_started", cycle_id=cycle.id)
        await self._emit("evolution.cycle_started", {"cycle_id": cycle.id})
        try:
            return await self._run_phases(cycle)
        except asyncio.CancelledError:
            await self._finalize_aborted(cycle)
            return self._zero_result(next_run=None, safety_score=cycle.safety_score)
        except Exception as e:
            return await self._fail(cycle, e)

    async def _run_phases(self, cycle: EvolutionCycle) -> EvolutionResult:
        if not len(self.safety.backups):
            await self.safety.create_system_backup()

        check = await self.safety.pre_evolution_check()
        if not check.safe:
            raise SafetyCheckError(
                f"Pre-evolution safety check failed: {', '.join(check.reasons)}", check.reasons
            )
        await self.safety.create_system_backup()

        result = await self.pipeline.evolve(
            budget=self._config.thinking_budget,
            on_phase=lambda phase: self._set_phase(cycle, phase),
        )
        cycle.mutations_attempted = result.metadata.mutations_tested
        cycle.mutations_applied = len(result.changes_applied)
        cycle.performance_improvement = result.performance_improvement
        cycle.safety_score = result.metadata.safety_score
        cycle.cost_consumed = result.metadata.cost_consumed

        if result.performance_improvement < self._config.performance_threshold:
            logger.warning(
                "evolution_below_performance_threshold",
                cycle_id=cycle.id,
                improvement=round(result.performance_improvement, 2),
                threshold=self._config.performance_threshold,
            )
            await self._emit("evolution.below_performance_threshold", {
                "cycle_id": cycle.id,
                "performance_improvement": result.performance_improvement,
                "threshold": self._config.performance_threshold,
            })

        post =await self.safety.post_evolution_check(result)
        if not post.safe:
            raise SafetyCheckError(
                f"Post-evolution safety check failed: {', '.join(post.reasons)}", post.reasons
            )

        cycle.status = CycleStatus.COMPLETED
        cycle.end_time = utcnow()
        self._archive(cycle)
        result.next_evolution_scheduled = self._schedule_next(failed=False)
        await self._record(cycle, result)

        logger.info(
            "evolution_cycle_completed",
            cycle_id=cycle.id,
            applied=cycle.mutations_applied,
            improvement=round(cycle.performance_improvement, 2),
            duration=cycle.duration_seconds,
        )
        await self._emit("evolution.cycle_completed", {
            "cycle_id": cycle.id,
            "mutations_applied": cycle.mutations_applied,
            "performance_improvement": cycle.performance_improvement,
        })
        return result

    async def _fail(self, cycle: EvolutionCycle, error: Exception) -> EvolutionResult:
        self._set_phase(cycle, EvolutionPhase.ROLLBACK)
        cycle.status = CycleStatus.FAILED
        cycle.error = str(error) if isinstance(error, MorphosError) else f"{type(error).__name__}: {error}"
        logger.error("evolution_cycle_failed", cycle_id=cycle.id, error=cycle.error)

        rollback_error: RollbackError | None = None
        try:
            await self.safety.emergency_rollback()
        except RollbackError as e:
            rollback_error = e
            cycle.error = f"{cycle.error}; rollback failed: {e}"
            logger.critical("evolution_rollback_failed", cycle_id=cycle.id, error=str(e))

        cycle.end_time = utcnow()
        self._archive(cycle)
        result = self._zero_result(next_run=self._schedule_next(failed=True), safety_score=0.0)
        await self._record(cycle, result)
        await self._emit("evolution.cycle_failed", {"cycle_id": cycle.id, "error": cycle.error})

        if rollback_error is not None:
            raise rollback_error
        return result

    async def _abort(self, reason: str) -> None:
        """Force the running cycle into `aborted` and wait until it has unwound."""
        cycle, task = self._current, self._cycle_task
        if cycle is None:
            return
        cycle.status = CycleStatus.ABORTED
        cycle.error = reason
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            await asyncio.wait({task})
        await self._finalize_aborted(cycle)

    async def _finalize_aborted(self, cycle: EvolutionCycle) -> None:
        if cycle.end_time is not None:
            return
        cycle.status = CycleStatus.ABORTED
        cycle.error = cycle.error or "Cycle aborted"
        cycle.end_time = utcnow()
        self._archive(cycle)
        logger.warning("evolution_cycle_aborted", cycle_id=cycle.id, phase=cycle.phase.value)
        await self._record(cycle, self._zero_result(next_run=None, safety_score=cycle.safety_score))
        await self._emit("evolution.cycle_aborted", {"cycle_id": cycle.id, "phase": cycle.phase.value})

    def _set_phase(self, cycle: EvolutionCycle, phase: EvolutionPhase) -> None:
        if phase not in PHASE_TRANSITIONS[cycle.phase]:
            raise PipelineError(f"Invalid phase transition {cycle.phase.value} -> {phase.value}")
        cycle.phase = phase

    def _archive(self, cycle: EvolutionCycle) -> None:
        self._history.append(cycle)
        self.safety.record_cycle_outcome(cycle.status)
        if self._current is cycle:
            self._current = None
            self._cycle_task = None

    async def _record(self, cycle: EvolutionCycle, result: EvolutionResult) -> None:
        if self._recorder is None:
            return
        try:
            await self._recorder.record(cycle, result)
        except Exception as e:
            logger.warning("metrics_record_failed", cycle_id=cycle.id, error=str(e))

    @staticmethod
    def _zero_result(next_run: datetime | None, safety_score: float) -> EvolutionResult:
        return EvolutionResult(
            evolved=False,
            changes_applied=[],
            performance_improvement=0.0,
            next_evolution_scheduled=next_run,
            metadata=ResultMetadata(safety_score=safety_score),
        )

    # ── Scheduling ───────────────────────────────────────────────

    def stability(self) -> float:
        recent = self._history.recent(STABILITY_WINDOW)
        if not recent:
            return 1.0
        return sum(1 for c in recent if c.status == CycleStatus.COMPLETED) / len(recent)

    def improvement_rate(self) -> float:
        recent = self._history.recent(STABILITY_WINDOW)
        if not recent:
            return 1.0
        return sum(1 for c in recent if c.performance_improvement > 0) / len(recent)

    def next_interval(self, failed: bool = False) -> float:
        """Adaptive delay in seconds before the next cycle."""
        delay = self._config.evolution_interval * (2 - self.stability()) * (2 - self.improvement_rate())
        return delay * 2 if failed else delay

    def _schedule_next(self, failed: bool) -> datetime | None:
        if self._config.evolution_interval <= 0:
            self._next_run = None
        else:
            self._next_run = utcnow() + timedelta(seconds=self.next_interval(failed))
        return self._next_run

    async def _schedule_loop(self) -> None:
        while self._running:
            if self._next_run is not None:
                delay = max(0.0, (self._next_run - utcnow()).total_seconds())
            else:
                delay = self.next_interval()
            try:
                await asyncio.sleep(delay)
            except asyncio.CancelledError:
                break
            if not self._running:
                break
            try:
                await self.run_evolution_cycle()
            except CycleInProgressError:
                logger.warning("evolution_cycle_skipped", reason="cycle in progress")
                self._next_run = None
            except RollbackError as e:
                logger.critical("evolution_scheduler_halted", error=str(e))
                self._running = False

    async def _cancel_scheduler(self) -> None:
        task = self._scheduler
        self._scheduler = None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    # ── Configuration and reporting ──────────────────────────────

    async def update_configuration(self, partial: dict[str, Any]) -> EvolutionConfig:
        """Merge `partial` into the configuration; disabling a running engine stops it."""
        config = self._config.merged(partial)
        self._config = config
        self.pipeline.config = config
        self._history.limit = config.history_limit
        await self.safety.update_config(config)
        logger.info("evolution_configuration_updated", changes=sorted(partial))

        if not config.enabled and self._running:
            await self.stop()
        return config

    def get_status(self) -> dict[str, Any]:
        current = self._current
        cycles = self._history.cycles
        completed = sum(1 for c in cycles if c.status == CycleStatus.COMPLETED)
        return {
            "running": self._running,
            "enabled": self._config.enabled,
            "current_cycle": current.model_dump(mode="json") if current else None,
            "next_evolution": self._next_run.isoformat() if self._next_run else None,
            "total_cycles": len(cycles),
            "success_rate": completed / len(cycles) if cycles else 0.0,
            "average_improvement": self._history.average_improvement,
            "emergency_mode": self.safety.emergency_mode,
        }

    def get_evolution_analytics(self) -> dict[str, Any]:
        history = self._history
        cycles = history.cycles
        counts = {status.value: 0 for status in CycleStatus}
        for c in cycles:
            counts[c.status.value] += 1
        return {
            "total_cycles": len(cycles),
            "completed_cycles": counts[CycleStatus.COMPLETED.value],
            "failed_cycles": counts[CycleStatus.FAILED.value],
            "aborted_cycles": counts[CycleStatus.ABORTED.value],
            "success_rate": counts[CycleStatus.COMPLETED.value] / len(cycles) if cycles else 0.0,
            "average_improvement": history.average_improvement,
            "total_improvement": history.total_improvements,
            "successful_mutations": history.successful_mutations,
            "failed_mutations": history.failed_mutations,
            "safety_incidents": history.safety_incidents,
            "rollback_count": history.rollback_count,
            "recent_trend": self._recent_trend(),
            "stability": self.stability(),
            "improvement_rate": self.improvement_rate(),
            "safety": self.safety.get_safety_status(),
        }

    def _recent_trend(self) -> str:
        improvements = [
            c.performance_improvement for c in self._history.recent(STABILITY_WINDOW)
            if c.status == CycleStatus.COMPLETED
        ]
        if len(improvements) < 2:
            return "stable"
        half = len(improvements) // 2
        earlier = sum(improvements[:half]) / half
        later = sum(improvements[half:]) / (len(improvements) - half)
        if later > earlier + 1.0:
            return "improving"
        if later < earlier - 1.0:
            return "declining"
        return "stable"

    async def _emit(self, topic: str, data: dict[str, Any]) -> None:
        if self._event_bus:
            await self._event_bus.emit(topic, data, source="evolution_engine")
