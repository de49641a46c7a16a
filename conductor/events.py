"""Append-only execution log (state/execution_log.jsonl) and the compliance audit over it."""

import json
import logging
from dataclasses import asdict
from datetime import datetime
from pathlib import Path

from conductor.models import DebateOutcome, ExecutionEvent

logger = logging.getLogger(__name__)

LOG_FILE = Path("state") / "execution_log.jsonl"


class ExecutionLog:
    def __init__(self, project_root: Path) -> None:
        self.path = Path(project_root) / LOG_FILE

    def append(self, event: ExecutionEvent) -> None:
        if not event.timestamp:
            event.timestamp = datetime.now().isoformat(timespec="seconds")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(asdict(event)) + "\n")

    def record(self, outcome: DebateOutcome) -> ExecutionEvent:
        """Log one finished debate, single-agent or sequential run."""
        event = ExecutionEvent(
            stage=outcome.stage_id,
            type=outcome.mode,
            count=len(outcome.rounds),
            agent_count=outcome.agent_count,
            contention_scores=[s.score for s in outcome.scores],
        )
        self.append(event)
        logger.debug("Logged %s event for %s (%d)", event.type, event.stage, event.count)
        return event

    def read(self) -> list[ExecutionEvent]:
        """Every event in append order. Malformed lines are skipped with a warning."""
        if not self.path.is_file():
            return []
        events: list[ExecutionEvent] = []
        with self.path.open("r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, start=1):
                if not line.strip():
                    continue
                try:
                    events.append(ExecutionEvent(**json.loads(line)))
                except (ValueError, TypeError) as exc:
                    logger.warning("Skipping malformed log line %d in %s: %s", lineno, self.path, exc)
        return events

    def compliance(self, stage_ids: list[str]) -> list[str]:
        """Stage ids, in pipeline order, with no recorded execution event."""
        seen = {e.stage for e in self.read()}
        return [stage_id for stage_id in stage_ids if stage_id not in seen]
