"""Sandbox — disposable copy of the project for testing one mutation.

Each candidate gets its own temporary copy of the tree. The mutation is
applied to the copy only, its bundled tests run in a subprocess with a
strict timeout, and the copy is removed afterwards no matter how the
evaluation ended.

Security layers for bundled test code:
1. Static analysis — blocks dangerous imports and builtins
2. Subprocess isolation — tests run in a separate interpreter
3. Timeout — kills long-running tests
4. Output limits — truncates excessive output
"""

from __future__ import annotations

import ast
import asyncio
import hashlib
import logging
import os
import shutil
import sys
import tempfile
import time
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import AsyncIterator

from pydantic import BaseModel, Field

from morphos.evolution.files import FileStore
from morphos.evolution.models import GeneratedTest, Mutation, PerformanceImpact
from morphos.evolution.patching import apply_change
from morphos.exceptions import SandboxError
from morphos.types import new_id, utcnow

_logger = logging.getLogger(__name__)

# Modules that are NEVER allowed in bundled test code
BLOCKED_IMPORTS = {
    "os", "subprocess", "shutil", "sys", "ctypes",
    "signal", "socket", "http", "urllib",
    "multiprocessing", "threading",
}

BLOCKED_BUILTINS = {"exec", "eval", "compile", "__import__", "open"}

# Directories never copied into a sandbox
IGNORED_DIRS = (".git", ".hg", ".venv", "venv", "node_modules", "__pycache__", ".morphos", ".pytest_cache")

DEFAULT_TIMEOUT = 10  # seconds
MAX_OUTPUT_SIZE = 50_000  # chars


class SandboxResult(BaseModel):
    """Result from running one bundled test."""

    id: str = Field(default_factory=new_id)
    test_id: str = ""
    success: bool = False
    output: str = ""
    error: str = ""
    execution_time_ms: float = 0.0
    code_hash: str = ""
    blocked_imports: list[str] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=utcnow)

    @property
    def passed(self) -> bool:
        return self.success


class SandboxValidation(BaseModel):
    """Static validation result before execution."""

    safe: bool = True
    issues: list[str] = Field(default_factory=list)
    blocked_imports: list[str] = Field(default_factory=list)
    has_syntax_errors: bool = False


class SandboxEnvironment(BaseModel):
    """A live sandbox: where it is and which file was mutated."""

    id: str = Field(default_factory=new_id)
    path: Path
    target: str
    target_removed: bool = False


class MutationTestReport(BaseModel):
    passed: bool = False
    results: list[SandboxResult] = Field(default_factory=list)
    safety_score: float = 0.0

    @property
    def pass_fraction(self) -> float:
        if not self.results:
            return 1.0
        return sum(1 for r in self.results if r.passed) / len(self.results)


class CandidateEvaluation(BaseModel):
    """Everything selection needs to know about one candidate."""

    mutation_id: str
    tests_passed: bool = False
    safety_score: float = 0.0
    fitness_score: float = 0.0
    impact: PerformanceImpact = Field(default_factory=PerformanceImpact)
    results: list[SandboxResult] = Field(default_factory=list)
    error: str = ""


def impact_score(impact: PerformanceImpact) -> float:
    """Map an impact estimate onto 0-1, weighted by its confidence."""
    gain = (
        0.3 * (-impact.latency_delta) / 10
        + 0.3 * impact.throughput_delta / 100
        + 0.2 * (-impact.memory_delta) / 10
        + 0.2 * (-impact.cpu_delta) / 10
    )
    return impact.confidence * max(0.0, min(1.0, 0.5 + gain / 2))


def fitness_score(mutation: Mutation, report: MutationTestReport, impact: PerformanceImpact) -> float:
    if not report.passed:
        return 0.0
    prior = max(0.0, min(1.0, mutation.fitness_score))
    return 0.5 * report.safety_score + 0.3 * impact_score(impact) + 0.2 * prior


class Sandbox:
    """Isolated, disposable evaluation of single mutations."""

    def __init__(
        self,
        files: FileStore,
        timeout: int = DEFAULT_TIMEOUT,
        python: str | None = None,
    ) -> None:
        self._files = files
        self._timeout = timeout
        self._python = python or sys.executable
        self._active: set[str] = set()
        self._created = 0

    @property
    def active_count(self) -> int:
        """Sandboxes currently open (0 whenever no evaluation is in flight)."""
        return len(self._active)

    @property
    def created_count(self) -> int:
        return self._created

    def validate(self, code: str) -> SandboxValidation:
        """Static analysis: check if test code is safe to execute."""
        validation = SandboxValidation()

        try:
            tree = ast.parse(code)
        except SyntaxError as e:
            validation.safe = False
            validation.has_syntax_errors = True
            validation.issues.append(f"Syntax error: {e}")
            return validation

        for node in ast.walk(tree):
            modules: list[str] = []
            if isinstance(node, ast.Import):
                modules = [alias.name.split(".")[0] for alias in node.names]
            elif isinstance(node, ast.ImportFrom) and node.module and not node.level:
                modules = [node.module.split(".")[0]]
            elif isinstance(node, ast.Call):
                func = node.func
                if isinstance(func, ast.Name) and func.id in BLOCKED_BUILTINS:
                    validation.safe = False
                    validation.issues.append(f"Blocked builtin: {func.id}()")

            for module in modules:
                if module in BLOCKED_IMPORTS:
                    validation.safe = False
                    validation.blocked_imports.append(module)
                    validation.issues.append(f"Blocked import: {module}")

        return validation

    @asynccontextmanager
    async def open(self, mutation: Mutation) -> AsyncIterator[SandboxEnvironment]:
        """Copy the tree, apply `mutation` to the copy, and always clean up."""
        path = Path(await asyncio.to_thread(tempfile.mkdtemp, prefix="morphos_sandbox_"))
        env = SandboxEnvironment(path=path, target=mutation.change.file_path)
        self._active.add(env.id)
        self._created += 1
        try:
            await asyncio.to_thread(
                shutil.copytree,
                self._files.root,
                path,
                ignore=shutil.ignore_patterns(*IGNORED_DIRS),
                dirs_exist_ok=True,
            )
            target = self._target_path(env, mutation.change.file_path)
            original = await asyncio.to_thread(self._read_optional, target)
            updated = apply_change(original, mutation.change)
            if updated is None:
                await asyncio.to_thread(target.unlink, True)
                env.target_removed = True
            else:
                await asyncio.to_thread(self._write, target, updated)
            yield env
        finally:
            self._active.discard(env.id)
            try:
                await asyncio.to_thread(shutil.rmtree, path)
            except OSError as e:
                _logger.warning("Sandbox %s teardown left files behind: %s", env.id, e)

    async def run_tests(self, mutation: Mutation, env: SandboxEnvironment) -> MutationTestReport:
        """Run every bundled test inside the sandbox copy."""
        results = [await self.execute(test, env) for test in mutation.tests]
        report = MutationTestReport(results=results)
        report.passed = all(r.passed for r in results)
        report.safety_score = report.pass_fraction * (1 - 0.5 * mutation.risk_score)
        return report

    async def verify_live(self, mutation: Mutation) -> MutationTestReport:
        """Re-run the mutation's own tests against the live project tree."""
        env = SandboxEnvironment(path=self._files.root, target=mutation.change.file_path)
        return await self.run_tests(mutation, env)

    async def measure_impact(
        self, mutation: Mutation, report: MutationTestReport
    ) -> PerformanceImpact:
        """Estimated impact, with confidence scaled by how many tests held."""
        impact = mutation.estimated_impact.model_copy()
        impact.confidence = impact.confidence * report.pass_fraction
        return impact

    async def evaluate(self, mutation: Mutation) -> CandidateEvaluation:
        """Full isolated evaluation. Never raises; failures disqualify."""
        try:
            async with self.open(mutation) as env:
                report = await self.run_tests(mutation, env)
                impact = await self.measure_impact(mutation, report)
        except Exception as e:
            _logger.warning("Sandbox evaluation of %s failed: %s", mutation.id, e)
            return CandidateEvaluation(
                mutation_id=mutation.id,
                error=f"{type(e).__name__}: {e}",
            )

        return CandidateEvaluation(
            mutation_id=mutation.id,
            tests_passed=report.passed,
            safety_score=report.safety_score if report.passed else 0.0,
            fitness_score=fitness_score(mutation, report, impact),
            impact=impact,
            results=report.results,
        )

    async def execute(self, test: GeneratedTest, env: SandboxEnvironment) -> SandboxResult:
        """Validate and run one test in the sandbox directory."""
        code_hash = hashlib.sha256(test.test_code.encode()).hexdigest()[:16]

        validation = self.validate(test.test_code)
        if not validation.safe:
            return SandboxResult(
                test_id=test.id,
                success=False,
                error=f"Test failed safety check: {'; '.join(validation.issues)}",
                code_hash=code_hash,
                blocked_imports=validation.blocked_imports,
            )

        result = await self._run_isolated(test, env, code_hash)
        if result.success and test.expected_outcome and test.expected_outcome not in result.output:
            result.success = False
            result.error = result.error or f"Expected output not found: {test.expected_outcome!r}"
        return result

    # ── Internals ────────────────────────────────────────────────

    @staticmethod
    def _target_path(env: SandboxEnvironment, rel: str) -> Path:
        target = (env.path / rel).resolve()
        if env.path.resolve() not in target.parents:
            raise SandboxError(f"Mutation target escapes sandbox: {rel}")
        return target

    @staticmethod
    def _read_optional(path: Path) -> str | None:
        if not path.is_file():
            return None
        return path.read_text(encoding="utf-8")

    @staticmethod
    def _write_fd(fd: int, content: str) -> None:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(content)

    @staticmethod
    def _write(path: Path, content: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")

    async def _run_isolated(
        self, test: GeneratedTest, env: SandboxEnvironment, code_hash: str
    ) -> SandboxResult:
        start = time.monotonic()
        # Test scripts live outside the tree under test so live runs leave no trace
        fd, test_file = await asyncio.to_thread(tempfile.mkstemp, ".py", "morphos_test_")
        await asyncio.to_thread(self._write_fd, fd, test.test_code)

        child_env = dict(os.environ)
        child_env["PYTHONPATH"] = str(env.path)
        child_env["MUTATED_FILE"] = str(env.path / env.target)

        try:
            proc = await asyncio.create_subprocess_exec(
                self._python, test_file,
                cwd=str(env.path),
                env=child_env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            try:
                stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self._timeout)
            except asyncio.TimeoutError:
                proc.kill()
                await proc.wait()
                return SandboxResult(
                    test_id=test.id,
                    success=False,
                    error=f"Timeout: test exceeded {self._timeout}s limit",
                    execution_time_ms=(time.monotonic() - start) * 1000,
                    code_hash=code_hash,
                )
        except OSError as e:
            return SandboxResult(
                test_id=test.id,
                success=False,
                error=f"Sandbox error: {type(e).__name__}: {e}",
                execution_time_ms=(time.monotonic() - start) * 1000,
                code_hash=code_hash,
            )
        finally:
            await asyncio.to_thread(Path(test_file).unlink, True)

        return SandboxResult(
            test_id=test.id,
            success=proc.returncode == 0,
            output=stdout.decode("utf-8", errors="replace")[:MAX_OUTPUT_SIZE],
            error=stderr.decode("utf-8", errors="replace")[:MAX_OUTPUT_SIZE],
            execution_time_ms=(time.monotonic() - start) * 1000,
            code_hash=code_hash,
        )
