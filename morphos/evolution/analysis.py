"""Self-analysis — a read-only architectural snapshot of the project tree.

Walks the Python sources under the project root, measures each component
(size, cyclomatic complexity, estimated test coverage, imports and
dependents), pulls runtime profiles from the performance probe, and turns
what it finds into typed findings and ranked improvement opportunities.
Never writes to the tree.
"""

from __future__ import annotations

import ast
import logging
from pathlib import PurePosixPath
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field

from morphos.exceptions import PipelineError
from morphos.evolution.files import FileStore
from morphos.evolution.models import (
    ImprovementOpportunity,
    PerformanceCharacteristics,
    PerformanceMetrics,
)
from morphos.evolution.probes import PerformanceProbe, StaticPerformanceProbe
from morphos.types import Severity

_logger = logging.getLogger(__name__)

SKIP_DIRS = {"__pycache__", "build", "dist", "venv", ".venv", "node_modules", "site-packages"}

# AST nodes that open a new execution path
_BRANCH_NODES = (
    ast.If, ast.For, ast.AsyncFor, ast.While, ast.Try, ast.ExceptHandler,
    ast.With, ast.AsyncWith, ast.IfExp, ast.comprehension, ast.Assert,
    ast.match_case,
)

_DANGEROUS_CALLS = {"eval", "exec"}


class AnalysisThresholds(BaseModel):
    """Limits above which a component is reported as a bottleneck."""

    complexity: int = 25
    size_lines: int = 800
    execution_time_ms: float = 100.0
    memory_mb: float = 256.0
    error_rate: float = 0.05
    max_imports: int = 20


class Component(BaseModel):
    name: str
    kind: Literal["class", "function", "module"] = "module"
    path: str  # root-relative
    module: str  # dotted import path
    size: int = 0  # lines
    complexity: int = 1
    test_coverage: float = 0.0
    dependencies: list[str] = Field(default_factory=list)
    dependents: list[str] = Field(default_factory=list)
    performance: PerformanceCharacteristics = Field(default_factory=PerformanceCharacteristics)


class ComplexityMetrics(BaseModel):
    cyclomatic_complexity: float = 0.0
    cognitive_complexity: float = 0.0
    lines_of_code: int = 0
    technical_debt_ratio: float = 0.0
    maintainability_index: float = 100.0


# ── Findings (tagged by kind) ────────────────────────────────────


class BottleneckFinding(BaseModel):
    kind: Literal["bottleneck"] = "bottleneck"
    component: str
    bottleneck_type: Literal["performance", "memory", "cpu", "io", "reliability"]
    severity: float = Field(ge=0.0, le=1.0)
    description: str
    suggested_fix: str = ""
    estimated_improvement: float = 0.0


class DebtFinding(BaseModel):
    kind: Literal["debt"] = "debt"
    component: str
    debt_type: Literal["code_smell", "design_violation", "outdated_dependency", "missing_test", "documentation"]
    severity: Severity = Severity.MEDIUM
    description: str
    estimated_fix_hours: float = 4.0
    impact_on_evolution: float = 0.6


class StructuralFinding(BaseModel):
    kind: Literal["structural"] = "structural"
    component: str
    principle: str
    severity: float = Field(ge=0.0, le=1.0)
    description: str


class SecurityFinding(BaseModel):
    kind: Literal["security"] = "security"
    component: str
    line: int = 0
    severity: Severity = Severity.HIGH
    description: str


Finding = Annotated[
    Union[BottleneckFinding, DebtFinding, StructuralFinding, SecurityFinding],
    Field(discriminator="kind"),
]


class ArchitecturalAnalysis(BaseModel):
    """Read-only snapshot produced by one self-analysis pass."""

    root: str
    components: list[Component] = Field(default_factory=list)
    complexity: ComplexityMetrics = Field(default_factory=ComplexityMetrics)
    performance: PerformanceMetrics = Field(default_factory=PerformanceMetrics)
    findings: list[Finding] = Field(default_factory=list)
    opportunities: list[ImprovementOpportunity] = Field(default_factory=list)
    code_quality_score: float = 0.0
    maintainability_index: float = 100.0

    def findings_of(self, kind: str) -> list:
        return [f for f in self.findings if f.kind == kind]

    @property
    def bottlenecks(self) -> list[BottleneckFinding]:
        return self.findings_of("bottleneck")

    @property
    def technical_debt(self) -> list[DebtFinding]:
        return self.findings_of("debt")


def module_name(rel_path: str) -> str:
    """Dotted module path for a root-relative .py file."""
    parts = list(PurePosixPath(rel_path).with_suffix("").parts)
    if parts and parts[-1] == "__init__":
        parts = parts[:-1]
    return ".".join(parts)


def cyclomatic_complexity(tree: ast.AST) -> int:
    complexity = 1
    for node in ast.walk(tree):
        if isinstance(node, _BRANCH_NODES):
            complexity += 1
        elif isinstance(node, ast.BoolOp):
            complexity += len(node.values) - 1
    return complexity


def _is_test_file(rel_path: str) -> bool:
    name = PurePosixPath(rel_path).name
    parts = PurePosixPath(rel_path).parts
    return (
        name.startswith("test_")
        or name.endswith("_test.py")
        or name == "conftest.py"
        or "tests" in parts[:-1]
    )


def _has_test(rel_path: str, test_names: set[str]) -> bool:
    stem = PurePosixPath(rel_path).stem
    return f"test_{stem}.py" in test_names or f"{stem}_test.py" in test_names


class SelfAnalyzer:
    """Builds an ArchitecturalAnalysis of the tree behind a FileStore."""

    def __init__(
        self,
        files: FileStore,
        probe: PerformanceProbe | None = None,
        coverage_floor: float = 0.5,
        thresholds: AnalysisThresholds | None = None,
    ) -> None:
        self._files = files
        self._probe = probe or StaticPerformanceProbe()
        self._coverage_floor = coverage_floor
        self._thresholds = thresholds or AnalysisThresholds()

    @property
    def probe(self) -> PerformanceProbe:
        return self._probe

    async def discover_source_files(self) -> list[str]:
        """Root-relative .py files, skipping hidden and build directories."""
        if not self._files.root.is_dir():
            raise PipelineError(f"Project root is not a directory: {self._files.root}")
        try:
            candidates = await self._files.list("**/*.py")
        except OSError as e:
            raise PipelineError(f"Cannot scan project root: {e}") from e

        discovered = []
        for rel in candidates:
            dirs = PurePosixPath(rel).parts[:-1]
            if any(d in SKIP_DIRS or d.startswith(".") for d in dirs):
                continue
            discovered.append(rel)
        return discovered

    async def estimate_coverage(self) -> float | None:
        """Mean estimated test coverage over source modules, None if there are none."""
        sources = await self.discover_source_files()
        test_names = {PurePosixPath(p).name for p in sources if _is_test_file(p)}
        modules = [p for p in sources if not _is_test_file(p)]
        if not modules:
            return None
        covered = sum(1 for p in modules if _has_test(p, test_names))
        return (0.8 * covered + 0.1 * (len(modules) - covered)) / len(modules)

    async def analyze(self) -> ArchitecturalAnalysis:
        sources = await self.discover_source_files()
        test_names = {PurePosixPath(p).name for p in sources if _is_test_file(p)}

        components: list[Component] = []
        trees: dict[str, ast.AST] = {}
        for rel in sources:
            if _is_test_file(rel):
                continue
            try:
                content = await self._files.read(rel)
            except (OSError, UnicodeDecodeError) as e:
                _logger.warning("Skipping unreadable source %s: %s", rel, e)
                continue
            component, tree = self.analyze_component(rel, content, test_names)
            component.performance = await self._characteristics(component)
            components.append(component)
            if tree is not None:
                trees[rel] = tree

        self._link_dependents(components)

        findings: list = []
        findings.extend(self._find_bottlenecks(components))
        findings.extend(self._find_debt(components))
        findings.extend(self._find_structural(components))
        for comp in components:
            tree = trees.get(comp.path)
            if tree is not None:
                findings.extend(self._find_security(comp, tree))

        complexity = self._complexity_metrics(components)
        debt = [f for f in findings if f.kind == "debt"]
        analysis = ArchitecturalAnalysis(
            root=str(self._files.root),
            components=components,
            complexity=complexity,
            performance=await self._probe.measure(),
            findings=findings,
            opportunities=self._opportunities(findings),
            code_quality_score=self._quality_score(components, debt),
            maintainability_index=complexity.maintainability_index,
        )
        _logger.info(
            "Self-analysis: %d components, %d findings, quality %.1f",
            len(components), len(findings), analysis.code_quality_score,
        )
        return analysis

    def analyze_component(
        self, rel_path: str, content: str, test_names: set[str] | None = None
    ) -> tuple[Component, ast.AST | None]:
        """Static metrics for one file. Returns the component and its AST (if parseable)."""
        stem = PurePosixPath(rel_path).stem
        module = module_name(rel_path)
        has_test = _has_test(rel_path, test_names or set())

        component = Component(
            name=stem,
            path=rel_path,
            module=module,
            size=len(content.splitlines()),
            test_coverage=0.8 if has_test else 0.1,
        )
        try:
            tree = ast.parse(content)
        except SyntaxError as e:
            _logger.warning("Cannot parse %s: %s", rel_path, e)
            return component, None

        component.complexity = cyclomatic_complexity(tree)
        component.kind = self._component_kind(tree)
        component.dependencies = sorted(self._imports(tree, module, rel_path))
        return component, tree

    # ── Internals ────────────────────────────────────────────────

    @staticmethod
    def _component_kind(tree: ast.AST) -> Literal["class", "function", "module"]:
        body = getattr(tree, "body", [])
        if any(isinstance(n, ast.ClassDef) for n in body):
            return "class"
        if any(isinstance(n, (ast.FunctionDef, ast.AsyncFunctionDef)) for n in body):
            return "function"
        return "module"

    @staticmethod
    def _imports(tree: ast.AST, module: str, rel_path: str) -> set[str]:
        is_package = PurePosixPath(rel_path).name == "__init__.py"
        package = module if is_package else module.rpartition(".")[0]
        found: set[str] = set()
        for node in ast.walk(tree):
            if isinstance(node, ast.Import):
                for alias in node.names:
                    found.add(alias.name)
            elif isinstance(node, ast.ImportFrom):
                base = node.module or ""
                if node.level:
                    anchor = package.split(".") if package else []
                    if node.level > 1:
                        anchor = anchor[: len(anchor) - (node.level - 1)]
                    base = ".".join([*anchor, base] if base else anchor)
                if base:
                    found.add(base)
                for alias in node.names:
                    if alias.name != "*":
                        found.add(f"{base}.{alias.name}" if base else alias.name)
        return found

    async def _characteristics(self, component: Component) -> PerformanceCharacteristics:
        measured = await self._probe.profile(component.path)
        if measured is not None:
            return measured.model_copy(update={"measured": True})
        # Static estimate: cost grows with branching, footprint with size
        return PerformanceCharacteristics(
            average_execution_time_ms=component.complexity * 2.0,
            memory_mb=component.size * 0.01,
            error_rate=0.0,
            usage_frequency=0.0,
            critical_path=False,
            measured=False,
        )

    @staticmethod
    def _link_dependents(components: list[Component]) -> None:
        for target in components:
            for other in components:
                if other is target:
                    continue
                if any(
                    dep == target.module or dep.startswith(target.module + ".")
                    for dep in other.dependencies
                ):
                    target.dependents.append(other.path)
            target.dependents.sort()

    def _find_bottlenecks(self, components: list[Component]) -> list[BottleneckFinding]:
        t = self._thresholds
        findings: list[BottleneckFinding] = []
        for c in components:
            perf = c.performance
            checks = [
                ("performance", perf.average_execution_time_ms, t.execution_time_ms,
                 "Slow execution", "Cache or simplify the hot path"),
                ("memory", perf.memory_mb, t.memory_mb,
                 "High memory usage", "Stream data instead of materialising it"),
                ("reliability", perf.error_rate, t.error_rate,
                 "Elevated error rate", "Harden error handling"),
                ("cpu", float(c.complexity), float(t.complexity),
                 "High cyclomatic complexity", "Split into smaller functions"),
                ("io", float(c.size), float(t.size_lines),
                 "Oversized module", "Break the module apart"),
            ]
            for btype, value, limit, label, fix in checks:
                if limit <= 0 or value <= limit:
                    continue
                severity = min(1.0, value / limit / 2)
                findings.append(BottleneckFinding(
                    component=c.path,
                    bottleneck_type=btype,
                    severity=severity,
                    description=f"{label} in {c.name} ({value:.1f} > {limit:.1f})",
                    suggested_fix=fix,
                    estimated_improvement=round(severity * 0.5, 3),
                ))
        return findings

    def _find_debt(self, components: list[Component]) -> list[DebtFinding]:
        return [
            DebtFinding(
                component=c.path,
                debt_type="missing_test",
                description=f"Low test coverage ({c.test_coverage * 100:.1f}%) in {c.name}",
            )
            for c in components
            if c.test_coverage < self._coverage_floor
        ]

    def _find_structural(self, components: list[Component]) -> list[StructuralFinding]:
        limit = self._thresholds.max_imports
        return [
            StructuralFinding(
                component=c.path,
                principle="loose_coupling",
                severity=min(1.0, len(c.dependencies) / limit / 2),
                description=f"{c.name} imports {len(c.dependencies)} modules",
            )
            for c in components
            if len(c.dependencies) > limit
        ]

    @staticmethod
    def _find_security(component: Component, tree: ast.AST) -> list[SecurityFinding]:
        findings: list[SecurityFinding] = []
        for node in ast.walk(tree):
            if not isinstance(node, ast.Call):
                continue
            func = node.func
            if isinstance(func, ast.Name) and func.id in _DANGEROUS_CALLS:
                desc = f"Use of {func.id}() in {component.name}"
            elif (
                isinstance(func, ast.Attribute)
                and func.attr == "loads"
                and isinstance(func.value, ast.Name)
                and func.value.id == "pickle"
            ):
                desc = f"Unpickling untrusted data in {component.name}"
            elif any(
                kw.arg == "shell" and isinstance(kw.value, ast.Constant) and kw.value.value is True
                for kw in node.keywords
            ):
                desc = f"Shell invocation with shell=True in {component.name}"
            else:
                continue
            findings.append(SecurityFinding(
                component=component.path,
                line=getattr(node, "lineno", 0),
                description=desc,
            ))
        return findings

    @staticmethod
    def _opportunities(findings: list) -> list[ImprovementOpportunity]:
        opportunities: list[ImprovementOpportunity] = []
        for f in findings:
            if f.kind == "bottleneck":
                opportunities.append(ImprovementOpportunity(
                    category="performance" if f.bottleneck_type in ("performance", "memory", "cpu") else "efficiency",
                    description=f"{f.description}: {f.suggested_fix}",
                    implementation_complexity=0.6,
                    expected_benefit=min(1.0, 0.3 + f.estimated_improvement),
                    risk_assessment=0.3,
                    code_locations=[f.component],
                ))
            elif f.kind == "debt":
                opportunities.append(ImprovementOpportunity(
                    category="maintainability",
                    description=f.description,
                    implementation_complexity=0.3,
                    expected_benefit=0.4,
                    risk_assessment=0.1,
                    code_locations=[f.component],
                ))
            elif f.kind == "security":
                opportunities.append(ImprovementOpportunity(
                    category="security",
                    description=f.description,
                    implementation_complexity=0.5,
                    expected_benefit=0.7,
                    risk_assessment=0.4,
                    code_locations=[f.component],
                ))
            elif f.kind == "structural":
                opportunities.append(ImprovementOpportunity(
                    category="scalability",
                    description=f.description,
                    implementation_complexity=0.7,
                    expected_benefit=0.5,
                    risk_assessment=0.6,
                    code_locations=[f.component],
                ))
        return opportunities

    @staticmethod
    def _complexity_metrics(components: list[Component]) -> ComplexityMetrics:
        if not components:
            return ComplexityMetrics()
        n = len(components)
        total_complexity = sum(c.complexity for c in components)
        avg_complexity = total_complexity / n
        avg_coverage = sum(c.test_coverage for c in components) / n
        debt_ratio = 1 - avg_coverage
        return ComplexityMetrics(
            cyclomatic_complexity=avg_complexity,
            cognitive_complexity=total_complexity * 1.2,
            lines_of_code=sum(c.size for c in components),
            technical_debt_ratio=debt_ratio * 100,
            maintainability_index=max(0.0, min(100.0, 100 - avg_complexity * 2 - debt_ratio * 30)),
        )

    @staticmethod
    def _quality_score(components: list[Component], debt: list[DebtFinding]) -> float:
        if not components:
            return 0.0
        n = len(components)
        avg_coverage = sum(c.test_coverage for c in components) / n
        avg_complexity = sum(c.complexity for c in components) / n
        debt_penalty = len(debt) / n * 25
        score = avg_coverage * 50 + max(0.0, 20 - avg_complexity) * 2.5 - debt_penalty
        return max(0.0, min(100.0, score))
