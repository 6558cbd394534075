"""SafetyController — the only component that can veto a cycle or restore files.

Pre-evolution gating runs a fixed battery of weighted checks plus every
enabled custom rule; post-evolution gating re-validates what was applied.
Both return a SafetyCheckResult that is safe only when no check failed and
the accumulated risk stays under 1 - safety_threshold.

Backups come in two scopes. A system backup (critical files plus a bounded
sample of sources) is taken once per cycle; mutation backups capture one
mutation's target right before it is applied. Emergency rollback first
unwinds mutation backups taken since the latest system backup, newest
first, then restores the system backup and verifies every file.
"""

from __future__ import annotations

import asyncio
import logging
import re
import tomllib
from collections import deque
from typing import Any

from pydantic import BaseModel, Field

from morphos.events.bus import EventBus
from morphos.evolution.analysis import SelfAnalyzer
from morphos.evolution.files import FileStore
from morphos.evolution.models import EvolutionConfig, EvolutionResult, Mutation
from morphos.evolution.probes import PerformanceProbe
from morphos.exceptions import BackupError, RollbackError, SafetyCheckError
from morphos.safety.backup import BackupMetadata, BackupState, BackupStore
from morphos.safety.incidents import IncidentLog
from morphos.safety.probes import SystemProbe
from morphos.safety.rules import (
    CRITICAL_FILES,
    RULE_ERROR_PENALTY,
    SafetyContext,
    SafetyRule,
    critical_file_protection,
    is_critical_path,
)
from morphos.types import ChangeKind, CycleStatus, RiskLevel, Severity

_logger = logging.getLogger(__name__)

INSTABILITY_INCIDENTS = 5  # incidents within 24h that make history "unstable"
INSTABILITY_FAILURES = 3  # consecutive failed cycles that do the same

_RISKY_CODE = re.compile(r"\b(?:eval|exec)\s*\(|pickle\.loads?\s*\(|shell\s*=\s*True")


class SafetyCheckResult(BaseModel):
    """Outcome of a gating evaluation. Never persisted."""

    safe: bool = True
    reasons: list[str] = Field(default_factory=list)
    risk_level: float = 0.0
    recommendations: list[str] = Field(default_factory=list)


class _Gate:
    """Accumulates failed checks for one gating pass."""

    def __init__(self) -> None:
        self.reasons: list[str] = []
        self.recommendations: list[str] = []
        self.risk = 0.0

    def fail(self, reason: str, weight: float, recommendation: str = "") -> None:
        self.reasons.append(reason)
        self.risk += weight
        if recommendation:
            self.recommendations.append(recommendation)

    def result(self, threshold: float) -> SafetyCheckResult:
        return SafetyCheckResult(
            safe=not self.reasons and self.risk < 1 - threshold,
            reasons=self.reasons,
            risk_level=self.risk,
            recommendations=self.recommendations,
        )


class SafetyController:
    """Gatekeeper: pre/post checks, backups, emergency rollback, rule registry."""

    def __init__(
        self,
        files: FileStore,
        config: EvolutionConfig | None = None,
        backups: BackupStore | None = None,
        incidents: IncidentLog | None = None,
        system_probe: SystemProbe | None = None,
        performance_probe: PerformanceProbe | None = None,
        analyzer: SelfAnalyzer | None = None,
        event_bus: EventBus | None = None,
        critical_files: set[str] | None = None,
    ) -> None:
        self._files = files
        self._config = config or EvolutionConfig()
        self._backups = backups or BackupStore(retention=self._config.backup_retention)
        self._incidents = incidents or IncidentLog()
        self._system_probe = system_probe or SystemProbe(files.root)
        self._performance_probe = performance_probe
        self._analyzer = analyzer or SelfAnalyzer(
            files, probe=performance_probe, coverage_floor=self._config.coverage_floor
        )
        self._event_bus = event_bus
        self._critical_files: set[str] = set(CRITICAL_FILES if critical_files is None else critical_files)
        self._rules: dict[str, SafetyRule] = {}
        self._mutation_backups: list[BackupState] = []
        self._outcomes: deque[CycleStatus] = deque(maxlen=10)
        self._emergency_mode = False

        self.add_safety_rule(critical_file_protection())

    # ── Accessors ────────────────────────────────────────────────

    @property
    def emergency_mode(self) -> bool:
        """True only while an emergency rollback is in progress."""
        return self._emergency_mode

    @property
    def backups(self) -> BackupStore:
        return self._backups

    @property
    def incidents(self) -> IncidentLog:
        return self._incidents

    @property
    def analyzer(self) -> SelfAnalyzer:
        return self._analyzer

    @property
    def safety_threshold(self) -> float:
        return self._config.safety_threshold

    async def update_config(self, config: EvolutionConfig) -> None:
        self._config = config
        if self._backups.retention != config.backup_retention:
            await self._backups.set_retention(config.backup_retention)

    # ── Rules and protection ─────────────────────────────────────

    def add_safety_rule(self, rule: SafetyRule) -> None:
        self._rules[rule.id] = rule
        _logger.info("Added safety rule: %s", rule.name)

    def remove_safety_rule(self, rule_id: str) -> bool:
        return self._rules.pop(rule_id, None) is not None

    def rules(self) -> list[SafetyRule]:
        return list(self._rules.values())

    def protect(self, path: str) -> None:
        self._critical_files.add(path)

    def unprotect(self, path: str) -> None:
        self._critical_files.discard(path)

    def is_protected(self, path: str) -> bool:
        return is_critical_path(path, self._critical_files)

    def record_cycle_outcome(self, status: CycleStatus) -> None:
        """Feed a finished cycle's status into the history-based instability check."""
        self._outcomes.append(status)

    # ── Gating ───────────────────────────────────────────────────

    async def pre_evolution_check(self) -> SafetyCheckResult:
        """Run the full pre-evolution battery. Deterministic for an unchanged environment."""
        gate = _Gate()
        try:
            snapshot = await self._system_probe.snapshot()
            if not self._system_probe.is_stable(snapshot):
                gate.fail(
                    "System stability below threshold", 0.3,
                    "Wait for system stabilization before evolution",
                )
            if not self._system_probe.has_resources(snapshot):
                gate.fail(
                    "Low resource availability", 0.2,
                    "Free up memory or disk space before evolution",
                )

            modified = await self._modified_critical_files()
            if modified:
                gate.fail(
                    "Critical files not properly protected", 0.4,
                    f"Re-baseline or restore modified critical files: {', '.join(modified)}",
                )
            if not await self._backups.check_writable():
                gate.fail(
                    "Backup system not operational", 0.5,
                    "Verify backup system before proceeding",
                )
            if self._history_unstable():
                gate.fail(
                    "Recent evolution history indicates instability", 0.2,
                    "Allow more time between evolution cycles",
                )
            coverage = await self._analyzer.estimate_coverage()
            if coverage is not None and coverage < self._config.coverage_floor:
                gate.fail(
                    "Test coverage below safety threshold", 0.3,
                    "Improve test coverage before evolution",
                )
            if not await self._dependencies_stable():
                gate.fail(
                    "External dependencies showing instability", 0.2,
                    "Fix the dependency manifest before evolution",
                )

            context = await self._context(modified=modified)
            await self._run_rules(gate, context)
        except Exception as e:
            _logger.exception("Pre-evolution safety check error")
            return SafetyCheckResult(
                safe=False,
                reasons=[f"Safety check system error: {e}"],
                risk_level=1.0,
                recommendations=["Fix safety check system before proceeding"],
            )

        result = gate.result(self._config.safety_threshold)
        if result.safe:
            _logger.info("Pre-evolution safety check passed")
        else:
            _logger.warning("Pre-evolution safety check failed: %s", ", ".join(result.reasons))
        return result

    async def post_evolution_check(self, result: EvolutionResult) -> SafetyCheckResult:
        """Re-validate after application. Failures are logged as incidents."""
        gate = _Gate()
        try:
            for mutation in result.changes_applied:
                if mutation.risk_level == RiskLevel.CRITICAL:
                    gate.fail(
                        f"Unsafe mutation applied: {mutation.id}", 0.3,
                        f"Review and potentially rollback mutation: {mutation.id}",
                    )
            if not await self._system_functional(result.changes_applied):
                gate.fail("System functionality compromised", 0.5, "Immediate rollback required")
            if result.performance_improvement < -self._config.regression_tolerance:
                gate.fail(
                    "Significant performance regression detected", 0.3,
                    "Consider rollback if performance critical",
                )
            if await self._modified_critical_files():
                gate.fail(
                    "Data integrity issues detected", 0.6,
                    "Immediate rollback and data verification required",
                )
            if any(self._degrades_security(m) for m in result.changes_applied):
                gate.fail(
                    "Security posture degraded", 0.4,
                    "Security review and potential rollback required",
                )
        except Exception as e:
            _logger.exception("Post-evolution safety check error")
            return SafetyCheckResult(
                safe=False,
                reasons=[f"Post-evolution safety check system error: {e}"],
                risk_level=1.0,
                recommendations=["Emergency rollback required"],
            )

        check = gate.result(self._config.safety_threshold)
        if check.safe:
            _logger.info("Post-evolution safety check passed")
        else:
            _logger.warning("Post-evolution safety check failed: %s", ", ".join(check.reasons))
            await self._incidents.log(
                "post_evolution_failure",
                "; ".join(check.reasons),
                severity=Severity.HIGH,
                risk_level=check.risk_level,
                applied=[m.id for m in result.changes_applied],
            )
            await self._emit("safety.post_check_failed", {
                "reasons": check.reasons,
                "risk_level": check.risk_level,
            })
        return check

    # ── Backups ──────────────────────────────────────────────────

    async def create_system_backup(self) -> BackupState:
        """Snapshot critical files plus a bounded sample of sources."""
        files: dict[str, str] = {}
        try:
            for name in sorted(self._critical_files):
                if await self._files.exists(name):
                    await self._sample(files, name)
            sources = await self._analyzer.discover_source_files()
            for rel in sources[: self._config.max_backup_files]:
                if rel not in files:
                    await self._sample(files, rel)

            baseline = await self._performance_probe.measure() if self._performance_probe else None
            snapshot = await self._system_probe.snapshot()
            backup = BackupState(
                files=files,
                metadata=BackupMetadata(
                    mutations_count=len(self._mutation_backups),
                    performance_baseline=baseline,
                    system_state=snapshot.model_dump(mode="json"),
                    scope="system",
                ),
            )
            await self._backups.add(backup)
        except BackupError:
            raise
        except Exception as e:
            raise BackupError(f"Backup creation failed: {e}") from e

        self._mutation_backups.clear()
        _logger.info("System backup created: %s (%d files)", backup.id, len(files))
        await self._emit("safety.backup_created", {"backup_id": backup.id, "files": len(files)})
        return backup

    async def _sample(self, files: dict[str, str], path: str) -> None:
        try:
            files[path] = await self._files.read(path)
        except (OSError, UnicodeDecodeError) as e:
            _logger.warning("Leaving unreadable file %s out of the backup: %s", path, e)

    async def create_mutation_backup(self, mutation: Mutation) -> BackupState:
        """Capture a mutation's target before it is applied.

        Refuses (SafetyCheckError) when a safety rule rejects the target.
        """
        gate = _Gate()
        await self._run_rules(gate, await self._context(pending=[mutation.change.file_path, mutation.target]))
        if gate.reasons:
            raise SafetyCheckError(f"Mutation {mutation.id} refused", gate.reasons)

        path = mutation.change.file_path
        backup = BackupState(metadata=BackupMetadata(scope="mutation", mutation_id=mutation.id))
        try:
            if await self._files.exists(path):
                backup.files[path] = await self._files.read(path)
            else:
                backup.missing.append(path)
        except (OSError, UnicodeDecodeError) as e:
            raise BackupError(f"Cannot back up {path}: {e}") from e
        self._mutation_backups.append(backup)
        return backup

    async def emergency_rollback(self) -> BackupState:
        """Restore the most recent system backup. Raises RollbackError when impossible.

        The whole restore is bounded by `rollback_timeout`; running out of
        time counts as a failed rollback.
        """
        _logger.warning("Performing emergency rollback")
        self._emergency_mode = True
        await self._emit("safety.rollback_started", {})
        timeout = self._config.rollback_timeout
        try:
            try:
                backup, restored = await asyncio.wait_for(self._restore_latest(), timeout=timeout)
            except asyncio.TimeoutError:
                raise RollbackError(f"Emergency rollback timed out after {timeout:g}s") from None
        except Exception as e:
            await self._incidents.log(
                "rollback_failure",
                "Emergency rollback failed",
                severity=Severity.CRITICAL,
                error=str(e),
            )
            await self._emit("safety.rollback_failed", {"error": str(e)})
            if isinstance(e, RollbackError):
                raise
            raise RollbackError(f"Emergency rollback failed: {e}") from e
        finally:
            self._emergency_mode = False

        self._mutation_backups.clear()
        _logger.info("Emergency rollback completed: %d files restored from %s", restored, backup.id)
        await self._incidents.log(
            "rollback",
            "Emergency rollback performed",
            severity=Severity.HIGH,
            backup_id=backup.id,
            files_restored=restored,
        )
        await self._emit("safety.rollback_completed", {"backup_id": backup.id, "files": restored})
        return backup

    async def _restore_latest(self) -> tuple[BackupState, int]:
        """Unwind mutation backups, restore the latest system backup, verify."""
        backup = self._backups.latest()
        if backup is None:
            raise RollbackError("No backups available for rollback")

        expected: dict[str, str | None] = {}
        for mutation_backup in reversed(self._mutation_backups):
            for path, content in mutation_backup.files.items():
                await self._files.write(path, content)
                expected[path] = content
            for path in mutation_backup.missing:
                await self._files.delete(path)
                expected[path] = None

        restored = 0
        for path, content in backup.files.items():
            try:
                await self._files.write(path, content)
                restored += 1
            except OSError as e:
                _logger.error("Failed to restore %s: %s", path, e)
            expected[path] = content

        issues = await self._verify(expected)
        if issues:
            raise RollbackError(f"Rollback verification failed: {', '.join(issues)}")
        return backup, restored

    # ── Status ───────────────────────────────────────────────────

    def get_safety_status(self) -> dict[str, Any]:
        return {
            "emergency_mode": self._emergency_mode,
            "safety_threshold": self._config.safety_threshold,
            "active_rules": sum(1 for r in self._rules.values() if r.enabled),
            "backup_count": len(self._backups),
            "recent_incidents": len(self._incidents.recent(24)),
            "critical_files_protected": len(self._critical_files),
        }

    # ── Internals ────────────────────────────────────────────────

    async def _context(
        self, pending: list[str] | None = None, modified: list[str] | None = None
    ) -> SafetyContext:
        latest = self._backups.latest()
        return SafetyContext(
            pending_targets=list(pending or []),
            critical_files=set(self._critical_files),
            modified_critical_files=list(modified or []),
            latest_backup_id=latest.id if latest else None,
        )

    async def _run_rules(self, gate: _Gate, context: SafetyContext) -> None:
        for rule in self._rules.values():
            if not rule.enabled:
                continue
            try:
                passed = await rule.check(context)
            except Exception as e:
                _logger.warning("Safety rule %s raised: %s", rule.id, e)
                gate.fail(f"Safety rule check failed: {rule.name}", RULE_ERROR_PENALTY)
                continue
            if not passed:
                gate.fail(
                    f"Safety rule violated: {rule.name}", rule.weight,
                    f"Address issue: {rule.description}",
                )

    async def _modified_critical_files(self) -> list[str]:
        """Critical files whose content differs from the latest system backup."""
        latest = self._backups.latest()
        if latest is None:
            return []
        modified = []
        for path, content in latest.files.items():
            if not self.is_protected(path):
                continue
            current = await self._files.read(path) if await self._files.exists(path) else None
            if current != content:
                modified.append(path)
        return modified

    def _history_unstable(self) -> bool:
        if len(self._incidents.recent(24)) >= INSTABILITY_INCIDENTS:
            return True
        recent = list(self._outcomes)[-INSTABILITY_FAILURES:]
        return len(recent) == INSTABILITY_FAILURES and all(s == CycleStatus.FAILED for s in recent)

    async def _dependencies_stable(self) -> bool:
        """The project's dependency manifest, if any, still parses."""
        if not await self._files.exists("pyproject.toml"):
            return True
        try:
            tomllib.loads(await self._files.read("pyproject.toml"))
        except (tomllib.TOMLDecodeError, UnicodeDecodeError):
            return False
        return True

    async def _system_functional(self, applied: list[Mutation]) -> bool:
        """Every applied target is present (unless deleted) and still compiles."""
        for mutation in applied:
            path = mutation.change.file_path
            exists = await self._files.exists(path)
            if mutation.change.change_type == ChangeKind.DELETION:
                continue
            if not exists:
                return False
            if path.endswith(".py"):
                try:
                    compile(await self._files.read(path), path, "exec")
                except (SyntaxError, ValueError):
                    return False
        return True

    @staticmethod
    def _degrades_security(mutation: Mutation) -> bool:
        before = len(_RISKY_CODE.findall(mutation.change.old_code))
        after = len(_RISKY_CODE.findall(mutation.change.new_code))
        return after > before

    async def _verify(self, expected: dict[str, str | None]) -> list[str]:
        issues = []
        for path, content in expected.items():
            exists = await self._files.exists(path)
            if content is None:
                if exists:
                    issues.append(f"{path} should not exist")
            elif not exists:
                issues.append(f"{path} missing")
            elif await self._files.read(path) != content:
                issues.append(f"{path} differs from backup")
        return issues

    async def _emit(self, topic: str, data: dict) -> None:
        if self._event_bus:
            await self._event_bus.emit(topic, data, source="safety_controller")
