"""Shared test fixtures — a small project tree and deterministic fakes."""

from __future__ import annotations

import pytest

from morphos.evolution.capabilities import Analyzer, AnalyzerReport, Generator, MetricsRecorder
from morphos.evolution.files import FileStore
from morphos.evolution.models import (
    CodeChange,
    EvolutionConfig,
    GeneratedTest,
    ImprovementOpportunity,
    Mutation,
    PerformanceMetrics,
    RollbackPlan,
    RollbackStep,
)
from morphos.evolution.pipeline import MutationPipeline
from morphos.evolution.probes import StaticPerformanceProbe
from morphos.evolution.sandbox import Sandbox
from morphos.llm.base import BaseLLMProvider, LLMResponse
from morphos.safety.backup import BackupStore
from morphos.safety.controller import SafetyController
from morphos.safety.incidents import IncidentLog
from morphos.safety.probes import StaticSystemProbe, SystemSnapshot
from morphos.types import ChangeKind, RiskLevel, RollbackAction

CALC_SOURCE = '''"""Tiny calculator."""


def add(a, b):
    return a + b


def scale(values, factor):
    result = []
    for v in values:
        result.append(v * factor)
    return result
'''

UTIL_SOURCE = '''"""Helpers."""


def clamp(x, lo, hi):
    if x < lo:
        return lo
    if x > hi:
        return hi
    return x
'''

PYPROJECT = '''[project]
name = "sample"
version = "0.1.0"
'''


class MockLLMProvider(BaseLLMProvider):
    """LLM provider that returns canned responses. No API calls."""

    def __init__(self, responses: list[LLMResponse] | None = None, error: Exception | None = None):
        self._responses = responses or []
        self._error = error
        self._call_count = 0
        self.calls: list[dict] = []

    async def complete(self, messages, system=None, max_tokens=4096):
        self.calls.append({"messages": messages, "system": system, "max_tokens": max_tokens})
        if self._error is not None:
            raise self._error
        if self._call_count < len(self._responses):
            resp = self._responses[self._call_count]
            self._call_count += 1
            return resp
        return LLMResponse(content="{}", stop_reason="end_turn", input_tokens=10, output_tokens=5)


class FakeAnalyzer(Analyzer):
    """Returns fixed opportunities and records the budget it was given."""

    def __init__(self, opportunities: list[ImprovementOpportunity], cost: int = 0, error: Exception | None = None):
        self.opportunities = opportunities
        self.cost = cost
        self.error = error
        self.budgets: list[int] = []

    async def analyze(self, analysis, budget):
        self.budgets.append(budget)
        if self.error is not None:
            raise self.error
        return AnalyzerReport(opportunities=list(self.opportunities), cost_consumed=self.cost, source="fake")


class FakeGenerator(Generator):
    """Maps each opportunity's first code location to a prepared mutation."""

    def __init__(self, mutations: dict[str, Mutation | None]):
        self.mutations = mutations
        self.calls: list[str] = []

    async def generate(self, opportunity):
        target = opportunity.code_locations[0]
        self.calls.append(target)
        mutation = self.mutations.get(target)
        return mutation.model_copy(deep=True) if mutation is not None else None


class RecordingRecorder(MetricsRecorder):
    def __init__(self, error: Exception | None = None):
        self.records = []
        self.error = error

    async def record(self, cycle, result):
        self.records.append((cycle.model_copy(deep=True), result))
        if self.error is not None:
            raise self.error


def opportunity_for(target: str, benefit: float = 0.6, risk: float = 0.1) -> ImprovementOpportunity:
    return ImprovementOpportunity(
        category="performance",
        description=f"Improve {target}",
        expected_benefit=benefit,
        risk_assessment=risk,
        code_locations=[target],
    )


def make_mutation(
    target: str,
    old_code: str = "",
    new_code: str = "",
    *,
    change_type: ChangeKind = ChangeKind.MODIFICATION,
    tests: list[str] | None = None,
    risk: RiskLevel = RiskLevel.LOW,
    rollback: bool = True,
    fitness: float = 0.5,
) -> Mutation:
    return Mutation(
        target=target,
        change=CodeChange(file_path=target, old_code=old_code, new_code=new_code, change_type=change_type),
        tests=[GeneratedTest(test_code=code) for code in (tests or [])],
        rollback=RollbackPlan(
            steps=[RollbackStep(action=RollbackAction.REVERT_FILE, target=target)],
            timeout=30.0,
        ) if rollback else None,
        fitness_score=fitness,
        risk_level=risk,
    )


@pytest.fixture
def project(tmp_path):
    root = tmp_path / "project"
    root.mkdir()
    (root / "pyproject.toml").write_text(PYPROJECT)
    (root / "calc.py").write_text(CALC_SOURCE)
    (root / "util.py").write_text(UTIL_SOURCE)
    (root / "test_calc.py").write_text("from calc import add\n\nassert add(1, 2) == 3\n")
    (root / "test_util.py").write_text("from util import clamp\n\nassert clamp(5, 0, 3) == 3\n")
    return root


@pytest.fixture
def files(project):
    return FileStore(project)


@pytest.fixture
def config():
    return EvolutionConfig(evolution_interval=0, stop_timeout=1.0)


@pytest.fixture
def system_probe():
    return StaticSystemProbe(SystemSnapshot(cpu_percent=10.0, load_per_cpu=0.2))


@pytest.fixture
def perf_probe():
    return StaticPerformanceProbe([PerformanceMetrics()])


@pytest.fixture
def safety(files, config, system_probe, perf_probe):
    return SafetyController(
        files,
        config=config,
        backups=BackupStore(retention=config.backup_retention),
        incidents=IncidentLog(),
        system_probe=system_probe,
        performance_probe=perf_probe,
    )


@pytest.fixture
def make_pipeline(files, config, safety, perf_probe):
    def _factory(analyzer=None, generator=None, **kwargs) -> MutationPipeline:
        kwargs.setdefault("backup_hook", safety.create_mutation_backup)
        kwargs.setdefault("is_protected", safety.is_protected)
        kwargs.setdefault("sandbox", Sandbox(files))
        return MutationPipeline(
            config,
            files,
            analyzer=analyzer,
            generator=generator,
            probe=perf_probe,
            **kwargs,
        )
    return _factory
