"""LLMAdvisor — model-backed Analyzer and Generator with heuristic fallback.

Sends a compact view of the self-analysis to an LLM, asks for ranked
improvement opportunities, and later for concrete mutations. Provider or
parse failures degrade to the heuristic result; they never propagate.
"""

from __future__ import annotations

import json
import logging

from pydantic import ValidationError

from morphos.evolution.analysis import ArchitecturalAnalysis
from morphos.evolution.capabilities import (
    CATEGORY_MUTATION_TYPES,
    Analyzer,
    AnalyzerReport,
    Generator,
    HeuristicAnalyzer,
    HeuristicGenerator,
    rank_opportunities,
)
from morphos.evolution.files import FileStore
from morphos.evolution.models import ImprovementOpportunity, Mutation
from morphos.llm.base import BaseLLMProvider
from morphos.types import MutationType, risk_level_for

_logger = logging.getLogger(__name__)

MAX_COMPONENTS_IN_PROMPT = 40
MAX_FINDINGS_IN_PROMPT = 30
MAX_SOURCE_CHARS = 8000

ANALYSIS_PROMPT = """You review a Python codebase and propose improvements.

Below is a static analysis of the project: components with size, cyclomatic
complexity and estimated test coverage, followed by findings.

Return ONLY a JSON object:
{{
  "opportunities": [
    {{
      "category": "performance|efficiency|maintainability|scalability|security",
      "description": "what to change and why",
      "implementation_complexity": 0.0-1.0,
      "expected_benefit": 0.0-1.0,
      "risk_assessment": 0.0-1.0,
      "code_locations": ["relative/path.py"]
    }}
  ]
}}

Propose at most {limit} opportunities, best first. Only reference paths
listed below.

{context}"""

GENERATION_PROMPT = """Propose ONE small, safe code change for this opportunity.

Opportunity ({category}): {description}
Target file: {target}

Current content of the target:
```python
{source}
```

Return ONLY a JSON object:
{{
  "change": {{
    "file_path": "{target}",
    "old_code": "exact snippet from the current content",
    "new_code": "replacement snippet",
    "change_type": "modification"
  }},
  "tests": [
    {{"test_type": "unit", "test_code": "standalone python script that exits non-zero on failure", "expected_outcome": ""}}
  ],
  "rollback": {{
    "steps": [{{"action": "revert_file", "target": "{target}"}}],
    "verification": ["target content matches backup"],
    "timeout": 300
  }},
  "fitness_score": 0.0-1.0,
  "estimated_impact": {{"latency_delta": 0, "throughput_delta": 0, "memory_delta": 0, "cpu_delta": 0, "confidence": 0.5}}
}}

Test scripts may import project modules but must not use os, sys,
subprocess, open() or eval."""


def parse_json_response(text: str | None) -> dict | None:
    """Extract a JSON object from an LLM response."""
    if not text:
        return None
    text = text.strip()

    # Strip markdown code fences
    if text.startswith("```"):
        lines = text.split("\n")[1:]
        if lines and lines[-1].strip() == "```":
            lines = lines[:-1]
        text = "\n".join(lines)

    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        start = text.find("{")
        end = text.rfind("}") + 1
        if start < 0 or end <= start:
            return None
        try:
            data = json.loads(text[start:end])
        except json.JSONDecodeError:
            return None
    return data if isinstance(data, dict) else None


class LLMAdvisor(Analyzer, Generator):
    """Implements both the Analyzer and the Generator contract."""

    def __init__(
        self,
        provider: BaseLLMProvider,
        files: FileStore,
        max_opportunities: int = 10,
        max_tokens_per_call: int = 4096,
    ) -> None:
        self._provider = provider
        self._files = files
        self._max_opportunities = max_opportunities
        self._max_tokens = max_tokens_per_call
        self._fallback_analyzer = HeuristicAnalyzer()
        self._fallback_generator = HeuristicGenerator()
        self._remaining = 0
        self.cost_consumed = 0

    async def analyze(self, analysis: ArchitecturalAnalysis, budget: int) -> AnalyzerReport:
        self._remaining = budget
        if budget <= 0:
            return await self._fallback_analyzer.analyze(analysis, budget)

        prompt = ANALYSIS_PROMPT.format(
            limit=self._max_opportunities,
            context=self._analysis_context(analysis),
        )
        try:
            response = await self._provider.ask(prompt, max_tokens=min(self._max_tokens, budget))
        except Exception as e:
            _logger.warning("LLM analysis failed, using heuristics: %s", e)
            return await self._fallback_analyzer.analyze(analysis, budget)

        cost = self._charge(response.total_tokens)
        data = parse_json_response(response.content)
        opportunities = []
        known = {c.path for c in analysis.components}
        for raw in (data or {}).get("opportunities", []):
            try:
                opportunity = ImprovementOpportunity.model_validate(raw)
            except ValidationError as e:
                _logger.debug("Dropping malformed opportunity: %s", e)
                continue
            opportunity.code_locations = [p for p in opportunity.code_locations if p in known]
            opportunities.append(opportunity)

        if not opportunities:
            fallback = await self._fallback_analyzer.analyze(analysis, budget)
            fallback.cost_consumed = cost
            return fallback

        return AnalyzerReport(
            opportunities=rank_opportunities(opportunities),
            cost_consumed=cost,
            source="llm",
        )

    async def generate(self, opportunity: ImprovementOpportunity) -> Mutation | None:
        if not opportunity.code_locations or self._remaining <= 0:
            return await self._fallback_generator.generate(opportunity)

        target = opportunity.code_locations[0]
        try:
            source = await self._files.read(target)
        except (OSError, UnicodeDecodeError, ValueError) as e:
            _logger.warning("Cannot read %s for generation: %s", target, e)
            return None

        prompt = GENERATION_PROMPT.format(
            category=opportunity.category,
            description=opportunity.description,
            target=target,
            source=source[:MAX_SOURCE_CHARS],
        )
        try:
            response = await self._provider.ask(prompt, max_tokens=min(self._max_tokens, self._remaining))
        except Exception as e:
            _logger.warning("LLM generation failed for %s: %s", opportunity.id, e)
            return await self._fallback_generator.generate(opportunity)

        self._charge(response.total_tokens)
        if response.truncated:
            _logger.debug("Generation reply for %s hit the token limit", opportunity.id)
        data = parse_json_response(response.content)
        if data is None:
            return await self._fallback_generator.generate(opportunity)

        data.setdefault("target", target)
        data.setdefault("type", CATEGORY_MUTATION_TYPES.get(opportunity.category, MutationType.OPTIMIZE))
        data.setdefault("risk_level", risk_level_for(opportunity.risk_assessment))
        data.setdefault("fitness_score", opportunity.expected_benefit)
        try:
            return Mutation.model_validate(data)
        except ValidationError as e:
            _logger.warning("LLM proposed a malformed mutation for %s: %s", opportunity.id, e)
            return await self._fallback_generator.generate(opportunity)

    def _charge(self, tokens: int) -> int:
        self._remaining -= tokens
        self.cost_consumed += tokens
        return tokens

    @staticmethod
    def _analysis_context(analysis: ArchitecturalAnalysis) -> str:
        parts = [
            f"Quality score: {analysis.code_quality_score:.1f}/100, "
            f"maintainability: {analysis.maintainability_index:.1f}/100",
            "",
            "=== Components ===",
        ]
        ranked = sorted(analysis.components, key=lambda c: c.complexity, reverse=True)
        for c in ranked[:MAX_COMPONENTS_IN_PROMPT]:
            parts.append(
                f"{c.path}: {c.size} lines, complexity {c.complexity}, "
                f"coverage {c.test_coverage:.1f}, {len(c.dependents)} dependents"
            )
        parts.append("")
        parts.append("=== Findings ===")
        for f in analysis.findings[:MAX_FINDINGS_IN_PROMPT]:
            parts.append(f"[{f.kind}] {f.component}: {f.description}")
        return "\n".join(parts)
