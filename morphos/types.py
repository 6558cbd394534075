"""Core types shared across all morphos subsystems."""

from __future__ import annotations

import itertools
import time
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import TypeAlias

# ── ID Types ──────────────────────────────────────────────────────────────────

CycleId: TypeAlias = str
MutationId: TypeAlias = str
BackupId: TypeAlias = str

_sequence = itertools.count()


def new_id() -> str:
    return uuid.uuid4().hex[:12]


def time_ordered_id(prefix: str) -> str:
    """An id whose lexical order matches creation order within a process."""
    return f"{prefix}-{time.time_ns():020d}-{next(_sequence):06d}-{uuid.uuid4().hex[:6]}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Cycle lifecycle ──────────────────────────────────────────────────────────


class EvolutionPhase(str, Enum):
    IDLE = "idle"
    ANALYSIS = "analysis"
    PLANNING = "planning"
    MUTATION_GENERATION = "mutation_generation"
    TESTING = "testing"
    SELECTION = "selection"
    APPLICATION = "application"
    VERIFICATION = "verification"
    ROLLBACK = "rollback"


class CycleStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"


TERMINAL_STATUSES = {CycleStatus.COMPLETED, CycleStatus.FAILED, CycleStatus.ABORTED}


# ── Mutations ────────────────────────────────────────────────────────────────


class MutationType(str, Enum):
    OPTIMIZE = "optimize"
    REFACTOR = "refactor"
    PATTERN_IMPROVEMENT = "pattern_improvement"
    DEPENDENCY_UPGRADE = "dependency_upgrade"
    ALGORITHM_ENHANCEMENT = "algorithm_enhancement"
    ARCHITECTURE_RESTRUCTURE = "architecture_restructure"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


RISK_SCORES: dict[RiskLevel, float] = {
    RiskLevel.LOW: 0.1,
    RiskLevel.MEDIUM: 0.3,
    RiskLevel.HIGH: 0.7,
    RiskLevel.CRITICAL: 1.0,
}


def risk_level_for(estimate: float) -> RiskLevel:
    """Bucket a 0-1 risk estimate into a RiskLevel."""
    if estimate < 0.25:
        return RiskLevel.LOW
    if estimate < 0.5:
        return RiskLevel.MEDIUM
    if estimate < 0.75:
        return RiskLevel.HIGH
    return RiskLevel.CRITICAL


class RiskTolerance(str, Enum):
    CONSERVATIVE = "conservative"
    MODERATE = "moderate"
    AGGRESSIVE = "aggressive"


# Highest risk level each tolerance will let through generation
TOLERATED_RISK: dict[RiskTolerance, set[RiskLevel]] = {
    RiskTolerance.CONSERVATIVE: {RiskLevel.LOW, RiskLevel.MEDIUM},
    RiskTolerance.MODERATE: {RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH},
    RiskTolerance.AGGRESSIVE: set(RiskLevel),
}


class ChangeKind(str, Enum):
    ADDITION = "addition"
    MODIFICATION = "modification"
    DELETION = "deletion"
    REFACTOR = "refactor"


class TestKind(str, Enum):
    __test__ = False  # not a pytest class

    UNIT = "unit"
    INTEGRATION = "integration"
    PERFORMANCE = "performance"
    SECURITY = "security"


class RollbackAction(str, Enum):
    REVERT_FILE = "revert_file"
    RESTORE_BACKUP = "restore_backup"
    RUN_COMMAND = "run_command"
    VALIDATE_STATE = "validate_state"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"
