"""CLI runtime context — bridges sync CLI to the async evolution loop."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine

import structlog

from morphos.config import MorphosSettings, settings
from morphos.events.bus import EventBus
from morphos.evolution.advisor import LLMAdvisor
from morphos.evolution.engine import EvolutionEngine
from morphos.evolution.files import FileStore
from morphos.evolution.metrics import EvolutionMetrics
from morphos.evolution.probes import ProcessPerformanceProbe
from morphos.llm.anthropic import AnthropicProvider
from morphos.safety.backup import BackupStore
from morphos.safety.controller import SafetyController
from morphos.safety.incidents import IncidentLog
from morphos.safety.probes import SystemProbe


def configure_logging(level: str) -> None:
    """Route stdlib logging and structlog through the same level."""
    numeric = logging.getLevelName(level.upper())
    if not isinstance(numeric, int):
        numeric = logging.INFO
    logging.basicConfig(
        level=numeric,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )
    structlog.configure(wrapper_class=structlog.make_filtering_bound_logger(numeric))


class MorphosContext:
    """Holds every subsystem the CLI commands talk to."""

    _instance: MorphosContext | None = None

    def __init__(self, cfg: MorphosSettings | None = None) -> None:
        self.settings = cfg or settings
        self.files = FileStore(self.settings.project_root)
        self.event_bus = EventBus()
        self.probe = ProcessPerformanceProbe()
        self.config = self.settings.evolution_config()

        self.backups = BackupStore(
            retention=self.config.backup_retention,
            directory=self.settings.backup_dir,
        )
        self.incidents = IncidentLog(db_path=str(self.settings.incident_db_path))
        self.safety = SafetyController(
            self.files,
            config=self.config,
            backups=self.backups,
            incidents=self.incidents,
            system_probe=SystemProbe(self.files.root),
            performance_probe=self.probe,
            event_bus=self.event_bus,
        )

        self.advisor: LLMAdvisor | None = None
        if self.settings.anthropic_api_key:
            provider = AnthropicProvider(
                api_key=self.settings.anthropic_api_key,
                model=self.settings.default_model,
            )
            self.advisor = LLMAdvisor(
                provider,
                self.files,
                max_opportunities=self.config.max_opportunities,
            )

        self.metrics = EvolutionMetrics(
            probe=self.probe,
            analysis_source=lambda: self.engine.pipeline.last_analysis,
        )
        self.engine = EvolutionEngine(
            self.files,
            config=self.config,
            safety=self.safety,
            recorder=self.metrics,
            event_bus=self.event_bus,
            analyzer=self.advisor,
            generator=self.advisor,
            probe=self.probe,
        )
        self._initialized = False

    @classmethod
    def get(cls) -> MorphosContext:
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    async def ensure_ready(self) -> None:
        """Open the incident database and load persisted backups once."""
        if self._initialized:
            return
        self.settings.workspace_dir.mkdir(parents=True, exist_ok=True)
        await self.incidents.initialize()
        await self.backups.load()
        self._initialized = True

    async def close(self) -> None:
        await self.incidents.close()
        self._initialized = False


def run_async(coro: Coroutine) -> Any:
    """Run an async coroutine from sync CLI code."""
    return asyncio.run(coro)
