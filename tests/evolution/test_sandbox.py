"""Tests for the mutation Sandbox."""

import pytest

from morphos.evolution.models import GeneratedTest, PerformanceImpact
from morphos.evolution.sandbox import (
    BLOCKED_IMPORTS,
    MutationTestReport,
    Sandbox,
    SandboxResult,
    fitness_score,
    impact_score,
)
from morphos.types import ChangeKind, RiskLevel

from tests.conftest import CALC_SOURCE, make_mutation


# ── Static validation ───────────────────────────────────────────


def test_validate_safe_code(files):
    result = Sandbox(files).validate("from calc import add\nassert add(1, 1) == 2")
    assert result.safe is True
    assert result.issues == []


@pytest.mark.parametrize("module", ["os", "subprocess", "socket", "shutil"])
def test_validate_blocks_dangerous_imports(files, module):
    result = Sandbox(files).validate(f"import {module}")
    assert result.safe is False
    assert module in result.blocked_imports


def test_validate_blocks_from_import_and_builtins(files):
    sandbox = Sandbox(files)
    assert "os" in sandbox.validate("from os import path").blocked_imports
    assert not sandbox.validate("eval('1 + 1')").safe
    assert not sandbox.validate("open('/etc/passwd')").safe


def test_validate_reports_syntax_errors(files):
    result = Sandbox(files).validate("def broken(:\n")
    assert result.has_syntax_errors
    assert not result.safe


def test_blocked_imports_cover_process_control():
    assert {"os", "subprocess", "sys"} <= BLOCKED_IMPORTS


# ── Isolation and teardown ──────────────────────────────────────


@pytest.mark.asyncio
async def test_mutation_applies_only_to_the_copy(files, project):
    sandbox = Sandbox(files)
    mutation = make_mutation("calc.py", "return a + b", "return b + a")

    async with sandbox.open(mutation) as env:
        assert sandbox.active_count == 1
        assert "return b + a" in (env.path / "calc.py").read_text()
        assert (env.path / "util.py").exists()
        sandbox_path = env.path

    assert sandbox.active_count == 0
    assert sandbox.created_count == 1
    assert not sandbox_path.exists()
    assert (project / "calc.py").read_text() == CALC_SOURCE


@pytest.mark.asyncio
async def test_teardown_happens_when_body_raises(files):
    sandbox = Sandbox(files)

    with pytest.raises(RuntimeError):
        async with sandbox.open(make_mutation("calc.py")) as env:
            sandbox_path = env.path
            raise RuntimeError("evaluation crashed")

    assert sandbox.active_count == 0
    assert not sandbox_path.exists()


@pytest.mark.asyncio
async def test_deletion_is_reflected_in_the_copy(files, project):
    sandbox = Sandbox(files)
    mutation = make_mutation("util.py", change_type=ChangeKind.DELETION)

    async with sandbox.open(mutation) as env:
        assert env.target_removed
        assert not (env.path / "util.py").exists()

    assert (project / "util.py").exists()


# ── Evaluation ──────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_evaluate_passing_mutation(files):
    mutation = make_mutation(
        "calc.py", "return a + b", "return b + a",
        tests=["from calc import add\n\nassert add(2, 3) == 5\nprint('ok')\n"],
    )

    evaluation = await Sandbox(files).evaluate(mutation)

    assert evaluation.tests_passed
    assert evaluation.safety_score == pytest.approx(0.95)
    assert evaluation.fitness_score > 0
    assert evaluation.results[0].output.strip() == "ok"


@pytest.mark.asyncio
async def test_evaluate_failing_test(files):
    mutation = make_mutation(
        "calc.py", "return a + b", "return a - b",
        tests=["from calc import add\n\nassert add(2, 3) == 5\n"],
    )

    evaluation = await Sandbox(files).evaluate(mutation)

    assert not evaluation.tests_passed
    assert evaluation.safety_score == 0.0
    assert evaluation.fitness_score == 0.0
    assert "AssertionError" in evaluation.results[0].error


@pytest.mark.asyncio
async def test_blocked_test_code_never_runs(files):
    mutation = make_mutation("calc.py", tests=["import subprocess\nsubprocess.run(['true'])\n"])

    evaluation = await Sandbox(files).evaluate(mutation)

    assert not evaluation.tests_passed
    assert evaluation.results[0].blocked_imports == ["subprocess"]


@pytest.mark.asyncio
async def test_expected_outcome_is_checked(files):
    sandbox = Sandbox(files)
    mutation = make_mutation("calc.py")
    mutation.tests = [GeneratedTest(test_code="print('hello')", expected_outcome="goodbye")]

    evaluation = await sandbox.evaluate(mutation)

    assert not evaluation.tests_passed
    assert "Expected output not found" in evaluation.results[0].error


@pytest.mark.asyncio
async def test_timeout_kills_test(files):
    sandbox = Sandbox(files, timeout=1)
    mutation = make_mutation("calc.py", tests=["while True:\n    pass\n"])

    evaluation = await sandbox.evaluate(mutation)

    assert not evaluation.tests_passed
    assert "Timeout" in evaluation.results[0].error


@pytest.mark.asyncio
async def test_verify_live_runs_against_project(files, project):
    (project / "calc.py").write_text(CALC_SOURCE.replace("return a + b", "return a * b"))
    mutation = make_mutation("calc.py", tests=["from calc import add\n\nassert add(2, 3) == 6\n"])

    report = await Sandbox(files).verify_live(mutation)

    assert report.passed
    assert not any(p.name.startswith("morphos_test_") for p in project.iterdir())


# ── Scoring ─────────────────────────────────────────────────────


def test_impact_score_is_confidence_weighted():
    neutral = PerformanceImpact(confidence=1.0)
    better = PerformanceImpact(latency_delta=-10, throughput_delta=100, confidence=1.0)

    assert impact_score(neutral) == pytest.approx(0.5)
    assert impact_score(better) == pytest.approx(0.8)
    assert impact_score(better.model_copy(update={"confidence": 0.5})) == pytest.approx(0.4)


def test_fitness_is_zero_when_tests_fail():
    mutation = make_mutation("calc.py", risk=RiskLevel.LOW, fitness=1.0)
    failed = MutationTestReport(passed=False, results=[SandboxResult(success=False)])
    passed = MutationTestReport(passed=True, safety_score=0.9)

    assert fitness_score(mutation, failed, PerformanceImpact()) == 0.0
    assert fitness_score(mutation, passed, PerformanceImpact(confidence=1.0)) == pytest.approx(
        0.5 * 0.9 + 0.3 * 0.5 + 0.2 * 1.0
    )
