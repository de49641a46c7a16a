"""Pure dataclasses for the pipeline core. No logic beyond (de)serialisation helpers."""

from dataclasses import dataclass, field
from pathlib import Path

# Stage progress statuses
PENDING = "pending"
IN_PROGRESS = "in_progress"
COMPLETED = "completed"
SKIPPED = "skipped"
STAGE_STATUSES = (PENDING, IN_PROGRESS, COMPLETED, SKIPPED)

# Pipeline statuses
RUNNING = "running"
PAUSED = "paused"
FAILED = "failed"
PIPELINE_STATUSES = (RUNNING, PAUSED, COMPLETED, FAILED)

# Terminal marker for PipelineState.current_stage
PIPELINE_COMPLETE = "complete"

# Contention recommendations
EXTEND = "extend"
SYNTHESIZE = "synthesize"


@dataclass
class RetryState:
    stage: str
    attempt: int
    last_failures: list[str] = field(default_factory=list)


@dataclass
class PipelineState:
    current_stage: str
    status: str = RUNNING
    retry_state: RetryState | None = None
    pause_reason: str | None = None


@dataclass
class StageProgress:
    id: str
    status: str = PENDING
    started_at: str | None = None
    completed_at: str | None = None
    checkpoint_id: str | None = None


@dataclass
class CheckpointRef:
    id: str
    stage: str
    created_at: str
    description: str | None = None


@dataclass
class ProjectState:
    """Everything persisted in state/progress.json."""

    project_name: str
    pipeline_version: str
    pipeline: PipelineState
    stages: list[StageProgress]
    started_at: str
    last_updated: str
    current_sprint: int = 1
    total_sprints: int = 3
    current_cycle: int = 1
    total_cycles: int = 1
    checkpoints: list[CheckpointRef] = field(default_factory=list)

    def stage(self, stage_id: str) -> StageProgress:
        for entry in self.stages:
            if entry.id == stage_id:
                return entry
        raise KeyError(stage_id)

    @classmethod
    def from_dict(cls, raw: dict) -> "ProjectState":
        pipeline_raw = dict(raw["pipeline"])
        retry_raw = pipeline_raw.pop("retry_state", None)
        pipeline = PipelineState(
            **pipeline_raw,
            retry_state=RetryState(**retry_raw) if retry_raw else None,
        )
        return cls(
            project_name=raw["project_name"],
            pipeline_version=raw["pipeline_version"],
            pipeline=pipeline,
            stages=[StageProgress(**s) for s in raw["stages"]],
            started_at=raw["started_at"],
            last_updated=raw["last_updated"],
            current_sprint=int(raw.get("current_sprint", 1)),
            total_sprints=int(raw.get("total_sprints", 3)),
            current_cycle=int(raw.get("current_cycle", 1)),
            total_cycles=int(raw.get("total_cycles", 1)),
            checkpoints=[CheckpointRef(**c) for c in raw.get("checkpoints", [])],
        )


@dataclass
class AgentRequest:
    directive: str
    model_role: str        # "reasoning", "balanced" or "fast"
    agent_role: str        # debate role name, step name, or "synthesizer"
    stage_id: str
    round_number: int
    purpose: str           # produce, review, extend, evaluate, synthesize, step, single, compress


@dataclass
class AgentArtifact:
    agent_role: str
    model: str             # concrete model id used
    round_number: int
    content: str
    latency_sec: float
    token_count: int | None = None


@dataclass
class DebateRound:
    number: int
    kind: str              # "production", "review", "extension" or "step"
    artifacts: list[AgentArtifact] = field(default_factory=list)


@dataclass
class ContentionScore:
    score: float | None
    recommendation: str
    unresolved: list[str] = field(default_factory=list)


@dataclass
class DebateOutcome:
    stage_id: str
    mode: str              # "debate", "single_agent" or "sequential"
    rounds: list[DebateRound]
    synthesis: str
    scores: list[ContentionScore] = field(default_factory=list)
    agent_count: int = 0
    interrupted: bool = False
    output_path: Path | None = None


@dataclass
class StageDirective:
    stage_id: str
    directive: str
    persona: str | None
    model_role: str


@dataclass
class CheckpointMetadata:
    id: str
    stage: str
    created_at: str
    description: str | None = None
    files: list[str] = field(default_factory=list)

    @property
    def is_milestone(self) -> bool:
        return bool(self.description) and "milestone" in self.description.lower()


@dataclass
class ValidationCheck:
    name: str
    passed: bool
    message: str
    required: bool = True
    severity: str = "critical"   # "critical", "high" or "medium"


@dataclass
class ValidationSummary:
    stage_id: str
    checks: list[ValidationCheck] = field(default_factory=list)

    @property
    def required_checks_passed(self) -> bool:
        return all(c.passed for c in self.checks if c.required)

    @property
    def failed_checks(self) -> list[ValidationCheck]:
        return [c for c in self.checks if not c.passed]

    @property
    def score(self) -> float:
        if not self.checks:
            return 0.0
        return sum(1 for c in self.checks if c.passed) / len(self.checks)


@dataclass
class ExecutionEvent:
    stage: str
    type: str              # "debate", "single_agent" or "sequential"
    count: int             # rounds for debate, steps for sequential
    agent_count: int
    contention_scores: list[float | None] = field(default_factory=list)
    timestamp: str = ""


@dataclass
class FinalizeResult:
    success: bool
    validation: ValidationSummary
    next_stage: str | None
    pipeline_complete: bool = False


@dataclass
class StageExecutionResult:
    stage_id: str
    success: bool
    attempts: int
    validation_score: float
    duration_sec: float
    paused: bool = False
    error: str | None = None


@dataclass
class StageStatusLine:
    id: str
    name: str
    mode: str
    status: str
    checkpoint_id: str | None = None


@dataclass
class PipelineStatusReport:
    project_name: str
    pipeline_version: str
    current_stage: str
    status: str
    stages: list[StageStatusLine]
    progress_percent: int
    pause_reason: str | None = None
    retry_state: RetryState | None = None
    current_sprint: int = 1
    total_sprints: int = 1
