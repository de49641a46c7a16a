"""Abstract collaborators the pipeline core consumes but does not implement."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path

from conductor.models import ValidationSummary
from conductor.registry import ResolvedModels


class AvailabilitySource(ABC):
    """Reports which model tiers exist right now."""

    @abstractmethod
    def resolve(self) -> ResolvedModels:
        """Return the current tier table. Must never raise."""
        ...


class OutputValidator(ABC):
    """Boolean-plus-detail oracle over a stage's outputs."""

    @abstractmethod
    def validate(self, stage_id: str) -> ValidationSummary:
        """Run every check configured for the stage.

        Returns:
            ValidationSummary; the pipeline only reads required_checks_passed,
            failed_checks and score.
        """
        ...


@dataclass
class HandoffContext:
    stage_id: str
    stage_name: str
    completed_at: str
    next_stage: str | None
    skipped: bool = False
    reason: str | None = None
    outputs: list[str] = field(default_factory=list)
    validation_score: float | None = None
    notes: str = ""


class HandoffGenerator(ABC):
    """Writes the human-readable summary that carries context to the next stage."""

    @abstractmethod
    def generate(self, context: HandoffContext) -> Path | None:
        """Write the handoff and return where it went, or None if nothing was written."""
        ...
