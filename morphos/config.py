"""Global configuration — loaded from environment variables."""

from pathlib import Path

from pydantic_settings import BaseSettings

from morphos.evolution.models import EvolutionConfig
from morphos.types import RiskTolerance


class MorphosSettings(BaseSettings):
    project_root: Path = Path(".")
    workspace_dir: Path = Path(".morphos")
    incident_db_path: Path = Path(".morphos/incidents.db")
    log_level: str = "INFO"

    # LLM advisor (optional; heuristics are used when no key is set)
    anthropic_api_key: str = ""
    default_model: str = "claude-sonnet-4-20250514"

    # Evolution settings
    evolution_enabled: bool = True
    evolution_interval_seconds: float = 24 * 3600.0  # daily
    evolution_max_mutations_per_cycle: int = 5
    evolution_max_opportunities: int = 10
    evolution_safety_threshold: float = 0.8
    evolution_performance_threshold: float = 0.0
    evolution_thinking_budget: int = 25_000
    evolution_risk_tolerance: RiskTolerance = RiskTolerance.CONSERVATIVE
    evolution_backup_retention: int = 10
    evolution_rollback_timeout: float = 30.0
    evolution_stop_timeout: float = 30.0

    model_config = {"env_prefix": "MORPHOS_"}

    @property
    def backup_dir(self) -> Path:
        return self.workspace_dir / "backups"

    def evolution_config(self) -> EvolutionConfig:
        """Build the validated evolution config from the flat env settings."""
        return EvolutionConfig(
            enabled=self.evolution_enabled,
            evolution_interval=self.evolution_interval_seconds,
            max_mutations_per_cycle=self.evolution_max_mutations_per_cycle,
            max_opportunities=self.evolution_max_opportunities,
            safety_threshold=self.evolution_safety_threshold,
            performance_threshold=self.evolution_performance_threshold,
            thinking_budget=self.evolution_thinking_budget,
            risk_tolerance=self.evolution_risk_tolerance,
            backup_retention=self.evolution_backup_retention,
            rollback_timeout=self.evolution_rollback_timeout,
            stop_timeout=self.evolution_stop_timeout,
        )


settings = MorphosSettings()
