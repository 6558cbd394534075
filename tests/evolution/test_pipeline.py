"""Tests for the MutationPipeline — generation filters, selection, apply and rollback."""

import asyncio
import json
import time

import pytest

from morphos.events.bus import EventBus
from morphos.evolution.advisor import LLMAdvisor
from morphos.evolution.analysis import SelfAnalyzer
from morphos.evolution.capabilities import Generator
from morphos.evolution.files import FileStore
from morphos.evolution.models import PerformanceMetrics
from morphos.evolution.pipeline import MutationPipeline, calculate_improvement
from morphos.evolution.probes import StaticPerformanceProbe
from morphos.evolution.sandbox import MutationTestReport, Sandbox, SandboxResult
from morphos.exceptions import PipelineError, SafetyCheckError
from morphos.llm.base import LLMResponse
from morphos.types import EvolutionPhase, RiskLevel

from tests.conftest import (
    CALC_SOURCE,
    FakeAnalyzer,
    FakeGenerator,
    MockLLMProvider,
    make_mutation,
    opportunity_for,
)

ADD_TEST = "from calc import add\n\nassert add(2, 3) == 5\n"


class FailingLiveSandbox(Sandbox):
    """Passes every isolated evaluation, fails every live re-run."""

    async def verify_live(self, mutation):
        return MutationTestReport(
            passed=False,
            results=[SandboxResult(test_id="live", success=False, error="live check broke")],
        )


# ── Generation filters ──────────────────────────────────────────


@pytest.mark.asyncio
async def test_rejects_mutation_without_rollback_plan(make_pipeline, project):
    mutation = make_mutation("calc.py", "return a + b", "return b + a", rollback=False)
    pipeline = make_pipeline(
        analyzer=FakeAnalyzer([opportunity_for("calc.py")]),
        generator=FakeGenerator({"calc.py": mutation}),
    )

    result = await pipeline.evolve()

    assert not result.evolved
    assert result.metadata.mutations_tested == 0
    assert pipeline.last_report.rejected[0].reason == "missing rollback plan"
    assert (project / "calc.py").read_text() == CALC_SOURCE


@pytest.mark.asyncio
async def test_conservative_tolerance_rejects_high_risk(make_pipeline):
    mutation = make_mutation("calc.py", risk=RiskLevel.HIGH)
    pipeline = make_pipeline(
        analyzer=FakeAnalyzer([opportunity_for("calc.py")]),
        generator=FakeGenerator({"calc.py": mutation}),
    )

    result = await pipeline.evolve()

    assert result.changes_applied == []
    assert "exceeds conservative tolerance" in pipeline.last_report.rejected[0].reason


@pytest.mark.asyncio
async def test_aggressive_tolerance_admits_high_risk(make_pipeline, config):
    mutation = make_mutation("calc.py", risk=RiskLevel.HIGH)
    pipeline = make_pipeline(
        analyzer=FakeAnalyzer([opportunity_for("calc.py")]),
        generator=FakeGenerator({"calc.py": mutation}),
    )
    pipeline.config = config.merged({"risk_tolerance": "aggressive"})

    result = await pipeline.evolve()

    # admitted to testing, but 1 - 0.5 * 0.7 = 0.65 stays under the safety floor
    assert result.metadata.mutations_tested == 1
    assert pipeline.last_report.rejected == []
    assert result.changes_applied == []


@pytest.mark.asyncio
async def test_protected_file_never_becomes_a_candidate(make_pipeline, project):
    mutation = make_mutation("pyproject.toml", 'name = "sample"', 'name = "other"')
    pipeline = make_pipeline(
        analyzer=FakeAnalyzer([opportunity_for("pyproject.toml")]),
        generator=FakeGenerator({"pyproject.toml": mutation}),
    )

    result = await pipeline.evolve()

    assert result.changes_applied == []
    assert pipeline.last_report.rejected[0].reason == "targets a protected critical file"
    assert 'name = "sample"' in (project / "pyproject.toml").read_text()


@pytest.mark.asyncio
async def test_generator_exception_skips_opportunity(make_pipeline):
    class BrokenGenerator(Generator):
        async def generate(self, opportunity):
            raise RuntimeError("model unavailable")

    pipeline = make_pipeline(
        analyzer=FakeAnalyzer([opportunity_for("calc.py")]),
        generator=BrokenGenerator(),
    )

    result = await pipeline.evolve()

    assert not result.evolved
    assert result.metadata.mutations_tested == 0


# ── Testing, selection and application ──────────────────────────


@pytest.mark.asyncio
async def test_applies_mutation_whose_tests_pass(make_pipeline, project):
    bus = EventBus()
    mutation = make_mutation("calc.py", "return a + b", "return b + a", tests=[ADD_TEST])
    pipeline = make_pipeline(
        analyzer=FakeAnalyzer([opportunity_for("calc.py")], cost=1200),
        generator=FakeGenerator({"calc.py": mutation}),
        event_bus=bus,
    )

    result = await pipeline.evolve()

    assert result.evolved
    assert [m.target for m in result.changes_applied] == ["calc.py"]
    assert "return b + a" in (project / "calc.py").read_text()
    assert result.metadata.cost_consumed == 1200
    assert result.metadata.safety_score == pytest.approx(0.9)
    assert bus.history(topic_filter="evolution.mutation_applied")


@pytest.mark.asyncio
async def test_failing_sandbox_test_disqualifies_candidate(make_pipeline, project):
    wrong = "from calc import add\n\nassert add(2, 3) == 6\n"
    mutation = make_mutation("calc.py", "return a + b", "return a - b", tests=[wrong])
    pipeline = make_pipeline(
        analyzer=FakeAnalyzer([opportunity_for("calc.py")]),
        generator=FakeGenerator({"calc.py": mutation}),
    )

    result = await pipeline.evolve()

    assert result.changes_applied == []
    evaluation = pipeline.last_report.evaluations[0]
    assert not evaluation.tests_passed
    assert evaluation.fitness_score == 0.0
    assert (project / "calc.py").read_text() == CALC_SOURCE


@pytest.mark.asyncio
async def test_selection_keeps_highest_fitness_up_to_limit(make_pipeline, config):
    low = make_mutation("calc.py", fitness=0.1)
    high = make_mutation("util.py", fitness=0.9)
    pipeline = make_pipeline(
        analyzer=FakeAnalyzer([opportunity_for("calc.py"), opportunity_for("util.py")]),
        generator=FakeGenerator({"calc.py": low, "util.py": high}),
    )
    pipeline.config = config.merged({"max_mutations_per_cycle": 1})

    result = await pipeline.evolve()

    assert result.metadata.mutations_tested == 2
    assert [m.target for m in result.changes_applied] == ["util.py"]


@pytest.mark.asyncio
async def test_live_verification_failure_rolls_back(make_pipeline, files, project):
    bus = EventBus()
    mutation = make_mutation("calc.py", "return a + b", "return b + a", tests=[ADD_TEST])
    pipeline = make_pipeline(
        analyzer=FakeAnalyzer([opportunity_for("calc.py")]),
        generator=FakeGenerator({"calc.py": mutation}),
        sandbox=FailingLiveSandbox(files),
        event_bus=bus,
    )

    result = await pipeline.evolve()

    assert result.changes_applied == []
    assert len(pipeline.last_report.rolled_back) == 1
    assert (project / "calc.py").read_text() == CALC_SOURCE
    rolled = bus.history(topic_filter="evolution.mutation_rolled_back")
    assert "live check broke" in rolled[0].data["error"]


@pytest.mark.asyncio
async def test_unapplicable_change_is_rolled_back(make_pipeline, project):
    mutation = make_mutation("calc.py", "this text is not in the file", "x = 1")
    pipeline = make_pipeline(
        analyzer=FakeAnalyzer([opportunity_for("calc.py")]),
        generator=FakeGenerator({"calc.py": mutation}),
    )

    result = await pipeline.evolve()

    # the sandbox already fails to apply it, so it never reaches the live tree
    assert result.changes_applied == []
    assert pipeline.last_report.evaluations[0].error
    assert (project / "calc.py").read_text() == CALC_SOURCE


@pytest.mark.asyncio
async def test_backup_refusal_skips_mutation(make_pipeline, project):
    async def refuse(mutation):
        raise SafetyCheckError("refused", ["Safety rule violated: test"])

    mutation = make_mutation("calc.py", "return a + b", "return b + a")
    pipeline = make_pipeline(
        analyzer=FakeAnalyzer([opportunity_for("calc.py")]),
        generator=FakeGenerator({"calc.py": mutation}),
        backup_hook=refuse,
    )

    result = await pipeline.evolve()

    assert result.changes_applied == []
    assert (project / "calc.py").read_text() == CALC_SOURCE


@pytest.mark.asyncio
async def test_new_file_addition_is_applied(make_pipeline, project):
    from morphos.types import ChangeKind

    mutation = make_mutation("helpers.py", new_code="def double(x):\n    return 2 * x\n", change_type=ChangeKind.ADDITION)
    pipeline = make_pipeline(
        analyzer=FakeAnalyzer([opportunity_for("helpers.py")]),
        generator=FakeGenerator({"helpers.py": mutation}),
    )

    result = await pipeline.evolve()

    assert result.evolved
    assert (project / "helpers.py").read_text().startswith("def double")


# ── Analysis, budget and measurement ────────────────────────────


@pytest.mark.asyncio
async def test_analyzer_failure_falls_back_to_heuristics(make_pipeline):
    pipeline = make_pipeline(analyzer=FakeAnalyzer([], error=RuntimeError("rate limited")))

    result = await pipeline.evolve()

    assert pipeline.last_report.analyzer_source == "heuristic"
    assert result.metadata.cost_consumed == 0


@pytest.mark.asyncio
async def test_budget_is_capped_by_thinking_budget(make_pipeline):
    analyzer = FakeAnalyzer([])
    pipeline = make_pipeline(analyzer=analyzer)

    await pipeline.evolve(budget=1_000_000)
    await pipeline.evolve(budget=500)

    assert analyzer.budgets == [25_000, 500]


@pytest.mark.asyncio
async def test_phases_are_reported_in_order(make_pipeline):
    seen = []
    pipeline = make_pipeline(analyzer=FakeAnalyzer([]))

    await pipeline.evolve(on_phase=seen.append)

    assert seen == [
        EvolutionPhase.ANALYSIS,
        EvolutionPhase.PLANNING,
        EvolutionPhase.MUTATION_GENERATION,
        EvolutionPhase.TESTING,
        EvolutionPhase.SELECTION,
        EvolutionPhase.APPLICATION,
        EvolutionPhase.VERIFICATION,
    ]


@pytest.mark.asyncio
async def test_improvement_is_measured_against_previous_cycle(files, config):
    probe = StaticPerformanceProbe([
        PerformanceMetrics(latency_ms=100.0),
        PerformanceMetrics(latency_ms=50.0),
    ])
    pipeline = MutationPipeline(
        config,
        files,
        analyzer=FakeAnalyzer([]),
        self_analyzer=SelfAnalyzer(files),
        probe=probe,
    )

    first = await pipeline.evolve()
    second = await pipeline.evolve()

    assert first.performance_improvement == 0.0
    assert second.performance_improvement == pytest.approx(15.0)
    assert pipeline.baseline.latency_ms == 50.0


@pytest.mark.asyncio
async def test_missing_root_raises_pipeline_error(tmp_path, config):
    pipeline = MutationPipeline(config, FileStore(tmp_path / "missing"))

    with pytest.raises(PipelineError):
        await pipeline.evolve()


def test_calculate_improvement_weights():
    before = PerformanceMetrics(latency_ms=100, throughput_rps=1000, memory_mb=100, error_rate=0.01)
    after = PerformanceMetrics(latency_ms=100, throughput_rps=1500, memory_mb=50, error_rate=0.01)

    # 0.3 * 0.5 throughput + 0.2 * 0.5 memory
    assert calculate_improvement(before, after) == pytest.approx(25.0)
    assert calculate_improvement(before, before) == 0.0


# ── Cost accounting and rollback bounds ─────────────────────────


class MeteredGenerator(FakeGenerator):
    """FakeGenerator that charges a fixed cost per call."""

    def __init__(self, mutations, cost_per_call):
        super().__init__(mutations)
        self.cost_per_call = cost_per_call

    async def generate(self, opportunity):
        self.cost_consumed += self.cost_per_call
        return await super().generate(opportunity)


class StallingFileStore(FileStore):
    """The first write after `stall_next_write` is set hangs for seconds."""

    stall_next_write = False

    async def write(self, path, content):
        if self.stall_next_write:
            self.stall_next_write = False
            await asyncio.sleep(5)
        await super().write(path, content)


class StallOnLiveFailureSandbox(FailingLiveSandbox):
    def __init__(self, files):
        super().__init__(files)
        self._store = files

    async def verify_live(self, mutation):
        self._store.stall_next_write = True
        return await super().verify_live(mutation)


@pytest.mark.asyncio
async def test_generation_cost_is_added_to_analysis_cost(make_pipeline):
    generator = MeteredGenerator(
        {"calc.py": make_mutation("calc.py"), "util.py": None}, cost_per_call=400,
    )
    pipeline = make_pipeline(
        analyzer=FakeAnalyzer([opportunity_for("calc.py"), opportunity_for("util.py")], cost=50),
        generator=generator,
    )

    result = await pipeline.evolve()

    assert result.metadata.cost_consumed == 850
    assert pipeline.last_report.analysis_cost == 50
    assert pipeline.last_report.generation_cost == 800


@pytest.mark.asyncio
async def test_advisor_generation_tokens_reach_the_result(files, config):
    analysis_reply = LLMResponse(
        content=json.dumps({"opportunities": [{
            "category": "performance", "description": "Speed up add",
            "expected_benefit": 0.6, "code_locations": ["calc.py"],
        }]}),
        stop_reason="end_turn", input_tokens=30, output_tokens=20,
    )
    generation_reply = LLMResponse(content="{}", stop_reason="end_turn", input_tokens=600, output_tokens=400)
    advisor = LLMAdvisor(MockLLMProvider([analysis_reply, generation_reply]), files)
    pipeline = MutationPipeline(config, files, analyzer=advisor, generator=advisor)

    result = await pipeline.evolve()

    assert advisor.cost_consumed == 1050
    assert result.metadata.cost_consumed == 1050


@pytest.mark.asyncio
async def test_rollback_plan_is_cut_off_by_rollback_timeout(config, project):
    store = StallingFileStore(project)
    mutation = make_mutation("calc.py", "return a + b", "return b + a", tests=[ADD_TEST])
    assert mutation.rollback.timeout == 30.0
    pipeline = MutationPipeline(
        config.merged({"rollback_timeout": 0.2}),
        store,
        analyzer=FakeAnalyzer([opportunity_for("calc.py")]),
        generator=FakeGenerator({"calc.py": mutation}),
        sandbox=StallOnLiveFailureSandbox(store),
    )

    started = time.monotonic()
    result = await pipeline.evolve()
    elapsed = time.monotonic() - started

    assert result.changes_applied == []
    assert len(pipeline.last_report.rolled_back) == 1
    assert (project / "calc.py").read_text() == CALC_SOURCE
    assert elapsed < 4.0
