"""Safety rules — named, severity-weighted predicates folded into the pre-check.

A rule passes when its predicate returns True. Failing rules add their
severity weight to the accumulated risk; a predicate that raises counts
as a failure with a small fixed penalty.
"""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, Field

from morphos.types import Severity

SEVERITY_WEIGHTS: dict[Severity, float] = {
    Severity.LOW: 0.1,
    Severity.MEDIUM: 0.2,
    Severity.HIGH: 0.3,
    Severity.CRITICAL: 0.5,
}

RULE_ERROR_PENALTY = 0.1

# Build manifests, lockfiles, secrets, license/readme
CRITICAL_FILES: frozenset[str] = frozenset({
    "pyproject.toml",
    "setup.py",
    "setup.cfg",
    "requirements.txt",
    "poetry.lock",
    "uv.lock",
    "Pipfile.lock",
    ".env",
    ".env.local",
    "README.md",
    "LICENSE",
    ".gitignore",
    "Dockerfile",
    "docker-compose.yml",
})


def is_critical_path(path: str, critical_files: frozenset[str] | set[str] = CRITICAL_FILES) -> bool:
    """True if `path` (root-relative) is, or is named like, a protected file."""
    posix = PurePosixPath(path.replace("\\", "/"))
    return posix.as_posix() in critical_files or posix.name in critical_files


class SafetyContext(BaseModel):
    """What a rule predicate gets to look at."""

    pending_targets: list[str] = Field(default_factory=list)
    critical_files: set[str] = Field(default_factory=lambda: set(CRITICAL_FILES))
    modified_critical_files: list[str] = Field(default_factory=list)
    latest_backup_id: str | None = None
    extra: dict[str, Any] = Field(default_factory=dict)


RuleCheck = Callable[[SafetyContext], Awaitable[bool]]


class SafetyRule(BaseModel):
    """A registered check. `check` returns True when the system is safe."""

    model_config = {"arbitrary_types_allowed": True}

    id: str
    name: str
    description: str = ""
    severity: Severity = Severity.MEDIUM
    enabled: bool = True
    check: RuleCheck

    @property
    def weight(self) -> float:
        return SEVERITY_WEIGHTS[self.severity]


async def _protect_critical_files(context: SafetyContext) -> bool:
    return not any(is_critical_path(t, context.critical_files) for t in context.pending_targets)


def critical_file_protection() -> SafetyRule:
    """Built-in rule: no mutation may touch a protected file."""
    return SafetyRule(
        id="critical_file_protection",
        name="Critical File Protection",
        description="Prevent modification of build manifests, lockfiles, secrets and license files",
        severity=Severity.CRITICAL,
        check=_protect_critical_files,
    )
