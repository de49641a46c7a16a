"""Error taxonomy for the pipeline core."""


class ConductorError(Exception):
    """Base class for all pipeline errors."""


class ConfigurationError(ConductorError):
    """Missing or invalid stage configuration, or an unresolvable prerequisite.

    Fatal: surfaced immediately and never retried.
    """


class ValidationFailure(ConductorError):
    """Stage outputs failed their required checks."""

    def __init__(self, stage_id: str, failures: list[str]) -> None:
        self.stage_id = stage_id
        self.failures = failures
        detail = "; ".join(failures) if failures else "no detail"
        super().__init__(f"Stage {stage_id} failed validation: {detail}")


class CheckpointIOError(ConductorError):
    """Copy or write failure while creating or restoring a checkpoint."""

    def __init__(self, checkpoint_id: str, message: str) -> None:
        self.checkpoint_id = checkpoint_id
        super().__init__(f"[{checkpoint_id}] {message}")


class PipelineStateError(ConductorError):
    """A transition was requested that the current pipeline state forbids."""


class AvailabilitySourceFailure(ConductorError):
    """Model manifest could not be fetched or parsed. Always absorbed by fallback."""
