"""Custom exception hierarchy for morphos."""


class MorphosError(Exception):
    """Base for all morphos errors."""


class ConfigurationError(MorphosError):
    """Configuration could not be validated or merged."""


class CycleInProgressError(MorphosError):
    """An evolution cycle is already running."""


class SafetyCheckError(MorphosError):
    """A pre- or post-evolution safety gate refused the cycle."""

    def __init__(self, message: str, reasons: list[str] | None = None) -> None:
        super().__init__(message)
        self.reasons = list(reasons or [])


class PipelineError(MorphosError):
    """Self-analysis, opportunity identification or generation failed."""


class SandboxError(MorphosError):
    """A sandbox could not be created or torn down."""


class MutationApplyError(MorphosError):
    """Failed to apply a mutation to the live tree."""


class BackupError(MorphosError):
    """Failed to capture or persist a backup."""


class RollbackError(MorphosError):
    """Emergency rollback could not restore the system."""
