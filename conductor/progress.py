"""Single-writer store for state/progress.json.

Only PipelineStateMachine calls save() and transition(); everything else reads
a snapshot from load().
"""

import json
import logging
import os
from collections.abc import Callable
from dataclasses import asdict
from datetime import datetime
from pathlib import Path

from config.config_loader import StageConfig
from conductor.errors import PipelineStateError
from conductor.models import PipelineState, ProjectState, StageProgress

logger = logging.getLogger(__name__)

PROGRESS_FILE = Path("state") / "progress.json"


def now_iso() -> str:
    return datetime.now().isoformat(timespec="seconds")


class ProgressStore:
    """JSON-backed ProjectState with load / save / transition."""

    def __init__(self, project_root: Path) -> None:
        self.path = Path(project_root) / PROGRESS_FILE

    def exists(self) -> bool:
        return self.path.is_file()

    def init(
        self,
        project_name: str,
        pipeline_version: str,
        stages: list[StageConfig],
        total_sprints: int = 3,
    ) -> ProjectState:
        """Write a fresh state with every stage pending and the first one current."""
        if not stages:
            raise PipelineStateError(f"Pipeline {pipeline_version} has no stages")
        timestamp = now_iso()
        state = ProjectState(
            project_name=project_name,
            pipeline_version=pipeline_version,
            pipeline=PipelineState(current_stage=stages[0].id),
            stages=[StageProgress(id=s.id) for s in stages],
            started_at=timestamp,
            last_updated=timestamp,
            total_sprints=total_sprints,
        )
        self.save(state)
        logger.info("Initialized %s (%s, %d stages)", project_name, pipeline_version, len(stages))
        return state

    def load(self) -> ProjectState:
        """Read the persisted state.

        Raises:
            PipelineStateError: If the project was never initialized or the
                file cannot be parsed.
        """
        if not self.path.is_file():
            raise PipelineStateError(f"No progress file at {self.path}; run 'conductor init' first")
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            return ProjectState.from_dict(raw)
        except (ValueError, KeyError, TypeError) as exc:
            raise PipelineStateError(f"Corrupt progress file {self.path}: {exc}") from exc

    def save(self, state: ProjectState) -> None:
        state.last_updated = now_iso()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(asdict(state), indent=2), encoding="utf-8")
        os.replace(tmp, self.path)

    def transition(self, mutate: Callable[[ProjectState], None]) -> ProjectState:
        """Load, apply `mutate` in place, save, and return the new state."""
        state = self.load()
        mutate(state)
        self.save(state)
        return state
