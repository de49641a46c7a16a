"""Pipeline state machine: the only writer of progress and checkpoint references.

Drives one stage at a time through prepare -> execute protocol -> validate ->
(retry | handoff and advance | pause). Everything else reads snapshots.
"""

import logging
import time
from collections.abc import Callable
from pathlib import Path

from config.config_loader import AppConfig, StageConfig
from conductor.agents.base import AgentExecutor, AgentFailure
from conductor.assigner import ModelAssignment, assign_models_to_roles
from conductor.checkpoint import CheckpointManager
from conductor.debate import DebateEngine
from conductor.errors import ConfigurationError, PipelineStateError, ValidationFailure
from conductor.events import ExecutionLog
from conductor.handoff import HANDOFF_FILE, MarkdownHandoffWriter, read_markdown
from conductor.interfaces import AvailabilitySource, HandoffContext, HandoffGenerator, OutputValidator
from conductor.models import (
    COMPLETED,
    IN_PROGRESS,
    PAUSED,
    PIPELINE_COMPLETE,
    RUNNING,
    SKIPPED,
    CheckpointMetadata,
    CheckpointRef,
    DebateRound,
    FinalizeResult,
    PipelineStatusReport,
    ProjectState,
    RetryState,
    StageDirective,
    StageExecutionResult,
    StageStatusLine,
)
from conductor.progress import ProgressStore, now_iso
from conductor.registry import builtin_models
from conductor.validator import ManifestValidator

logger = logging.getLogger(__name__)

# Fixed bound on automatic attempts per stage. Not configurable.
MAX_STAGE_ATTEMPTS = 3

MAX_REFERENCE_BYTES = 50_000
REFERENCE_EXTENSIONS = frozenset({
    ".md", ".txt", ".json", ".jsonc", ".yaml", ".yml", ".ts", ".js", ".tsx", ".jsx", ".css", ".html", ".py",
})

_SECTION_SEPARATOR = "\n\n---\n\n"


class PipelineStateMachine:
    """Owns progress.json for one project and runs its stages.

    Collaborators default to the bundled implementations; pass your own to
    swap agent execution, validation, handoffs or model availability.
    """

    def __init__(
        self,
        project_root: Path,
        config: AppConfig,
        agent: AgentExecutor | None = None,
        validator: OutputValidator | None = None,
        handoff: HandoffGenerator | None = None,
        availability: AvailabilitySource | None = None,
        checkpoints: CheckpointManager | None = None,
        on_round_complete: Callable[[str, DebateRound], None] | None = None,
    ) -> None:
        self.project_root = Path(project_root)
        self.config = config
        self.store = ProgressStore(self.project_root)
        self.log = ExecutionLog(self.project_root)
        self.checkpoints = checkpoints or CheckpointManager(self.project_root)
        self._agent = agent
        self._validator = validator
        self._handoff = handoff or MarkdownHandoffWriter(self.project_root)
        self._availability = availability
        self._on_round_complete = on_round_complete
        self._assignment: ModelAssignment | None = None

    # ------------------------------------------------------------- accessors

    def load(self) -> ProjectState:
        return self.store.load()

    def stages(self) -> list[StageConfig]:
        return self.config.stages(self.load().pipeline_version)

    def stage(self, stage_id: str) -> StageConfig:
        return self.config.stage(stage_id, self.load().pipeline_version)

    @property
    def validator(self) -> OutputValidator:
        if self._validator is None:
            self._validator = ManifestValidator(self.project_root, self.config, self.load().pipeline_version)
        return self._validator

    @property
    def assignment(self) -> ModelAssignment:
        """Role assignment for this run, resolved once against current availability."""
        if self._assignment is None:
            if self._availability is not None:
                resolved = self._availability.resolve()
            else:
                resolved = builtin_models(self.config.models.builtin_tiers, self.config.models.builtin_timestamp)
            self._assignment = assign_models_to_roles(resolved, self.stages())
            logger.debug("Model roles assigned from %s", self._assignment.source)
        return self._assignment

    def is_paused(self) -> bool:
        return self.load().pipeline.status == PAUSED

    # ------------------------------------------------------------------ init

    def init_project(
        self,
        project_name: str,
        pipeline_version: str | None = None,
        total_sprints: int = 3,
    ) -> ProjectState:
        """Create stages/<id>/outputs for every stage and a fresh progress file.

        Raises:
            PipelineStateError: If the project is already initialized.
            ConfigurationError: If the pipeline version is unknown.
        """
        if self.store.exists():
            raise PipelineStateError(f"Project already initialized at {self.project_root}")
        version = pipeline_version or self.config.defaults.pipeline_version
        stages = self.config.stages(version)
        for stage in stages:
            (self.project_root / "stages" / stage.id / "outputs").mkdir(parents=True, exist_ok=True)
        return self.store.init(project_name, version, stages, total_sprints=total_sprints)

    # --------------------------------------------------------------- prepare

    def check_prerequisites(self, stage: StageConfig, state: ProjectState) -> None:
        """Raise ConfigurationError naming the first prerequisite not completed or skipped."""
        for prereq in stage.prerequisites:
            status = state.stage(prereq).status
            if status not in (COMPLETED, SKIPPED):
                raise ConfigurationError(
                    f"Stage {stage.id} requires {prereq} to be completed or skipped (currently {status})"
                )

    def prepare_stage_execution(self, stage_id: str) -> StageDirective:
        """Mark the stage in_progress and assemble its directive. Invokes no agent.

        Raises:
            ConfigurationError: On an unknown stage or unmet prerequisite.
            PipelineStateError: If the stage is already completed or skipped.
        """
        stage = self.stage(stage_id)
        state = self.load()
        progress = state.stage(stage.id)
        if progress.status in (COMPLETED, SKIPPED):
            raise PipelineStateError(f"Stage {stage.id} is already {progress.status}")
        self.check_prerequisites(stage, state)

        directive, persona = self.assemble_directive(stage)

        def start(s: ProjectState) -> None:
            entry = s.stage(stage.id)
            entry.status = IN_PROGRESS
            entry.started_at = entry.started_at or now_iso()
            s.pipeline.current_stage = stage.id

        self.store.transition(start)
        model_role = self.assignment.stage_defaults.get(stage.id, stage.default_tier)
        logger.info("Prepared stage %s (%s) with model role %s", stage.id, stage.name, model_role)
        return StageDirective(stage_id=stage.id, directive=directive, persona=persona or None, model_role=model_role)

    def assemble_directive(self, stage: StageConfig) -> tuple[str, str]:
        """Instructions, persona, previous handoff, references, brief and output dir.

        Returns:
            (directive, persona)
        """
        parts: list[str] = []
        instructions_path = self.project_root / "stages" / stage.id / "CLAUDE.md"
        metadata: dict = {}
        if instructions_path.is_file():
            instructions, metadata = read_markdown(instructions_path)
        else:
            instructions = f"Execute stage {stage.id} ({stage.name})."
        parts.append(f"# Stage: {stage.id} ({stage.name})\n\n{instructions}")

        persona = str(metadata.get("persona") or stage.persona)
        if persona:
            parts.append(f"## Persona\n\n{persona}")

        handoff = self._previous_handoff(stage)
        if handoff:
            parts.append(f"## Context from Previous Stage\n\n{handoff}")

        references = self._references(stage)
        if references:
            section = ["## Reference Materials"]
            for name, content in references:
                section.append(f"### {name}\n```\n{content}\n```")
            parts.append("\n\n".join(section))

        stages = self.stages()
        if stage.id == stages[0].id:
            brief = self.project_root / "stages" / stage.id / "inputs" / "project_brief.md"
            if brief.is_file():
                parts.append(f"## Project Brief\n\n{brief.read_text(encoding='utf-8')}")

        parts.append(f"## Output Directory\nSave all outputs to: `stages/{stage.id}/outputs/`")
        return _SECTION_SEPARATOR.join(parts), persona

    def _previous_handoff(self, stage: StageConfig) -> str | None:
        ids = [s.id for s in self.stages()]
        index = ids.index(stage.id)
        if index == 0:
            return None
        path = self.project_root / "stages" / ids[index - 1] / HANDOFF_FILE
        if not path.is_file():
            path = self.project_root / HANDOFF_FILE
            if not path.is_file():
                return None
        return path.read_text(encoding="utf-8")

    def _references(self, stage: StageConfig) -> list[tuple[str, str]]:
        refs_dir = self.project_root / "references" / stage.id
        if not refs_dir.is_dir():
            return []
        references: list[tuple[str, str]] = []
        for path in sorted(refs_dir.iterdir()):
            if (
                path.is_file()
                and path.suffix.lower() in REFERENCE_EXTENSIONS
                and path.stat().st_size < MAX_REFERENCE_BYTES
            ):
                references.append((path.name, path.read_text(encoding="utf-8", errors="replace")))
        return references

    # --------------------------------------------------------------- retries

    def build_retry_directive(self, stage: StageConfig, directive: str, attempt: int, failures: list[str]) -> str:
        """Directive for a given attempt of the retry ladder.

        Attempt 1 is the assembled directive. Attempt 2 appends the specific
        validation failures. Attempt 3 replaces everything with an explicit
        file-by-file requirement list.
        """
        if attempt <= 1:
            return directive
        failure_lines = "\n".join(f"- {f}" for f in failures) or "- (no detail reported)"
        if attempt == 2:
            return self.config.prompts.retry_failures.format(directive=directive, failures=failure_lines)

        requirements: list[str] = []
        for name in stage.required_outputs:
            requirements.append(f"- stages/{stage.id}/outputs/{name}: non-empty")
        for name, headings in stage.required_sections.items():
            for heading in headings:
                requirements.append(f"- stages/{stage.id}/outputs/{name}: contains the heading '{heading}'")
        if stage.code_producing:
            requirements.append(f"- at least {stage.min_source_files} source files in the project")
            requirements.append("- a project manifest (package.json, pyproject.toml, Cargo.toml, go.mod or *.csproj)")
            requirements.append("- build and test commands that exit 0")
        requirements.extend(f"- fix: {f}" for f in failures)
        return self.config.prompts.retry_file_list.format(
            stage_name=stage.name, requirements="\n".join(requirements),
        )

    def record_validation_failure(self, stage_id: str, attempt: int, failures: list[str]) -> None:
        def mutate(s: ProjectState) -> None:
            s.pipeline.retry_state = RetryState(stage=stage_id, attempt=attempt, last_failures=list(failures))

        self.store.transition(mutate)

    # -------------------------------------------------------------- finalize

    def _next_stage_id(self, stage_id: str) -> str | None:
        ids = [s.id for s in self.stages()]
        index = ids.index(stage_id)
        return ids[index + 1] if index + 1 < len(ids) else None

    def finalize_stage(self, stage_id: str) -> FinalizeResult:
        """Validate; on success write the handoff, complete the stage and advance.

        On failure nothing is written and success is False.

        Raises:
            PipelineStateError: If the stage is not in_progress.
        """
        stage = self.stage(stage_id)
        status = self.load().stage(stage.id).status
        if status != IN_PROGRESS:
            raise PipelineStateError(f"Stage {stage.id} is {status}; prepare it before finalizing")
        validation = self.validator.validate(stage.id)
        if not validation.required_checks_passed:
            logger.error("Stage %s validation failed (score: %.2f)", stage.id, validation.score)
            return FinalizeResult(success=False, validation=validation, next_stage=None)

        next_stage = self._next_stage_id(stage.id)
        outputs_dir = self.project_root / "stages" / stage.id / "outputs"
        outputs = sorted(p.name for p in outputs_dir.iterdir() if p.is_file()) if outputs_dir.is_dir() else []
        handoff_path = self._handoff.generate(
            HandoffContext(
                stage_id=stage.id,
                stage_name=stage.name,
                completed_at=now_iso(),
                next_stage=next_stage,
                outputs=outputs,
                validation_score=validation.score,
            )
        )
        if handoff_path is None:
            logger.warning("Handoff generator produced nothing for %s", stage.id)

        def complete(s: ProjectState) -> None:
            entry = s.stage(stage.id)
            entry.status = COMPLETED
            entry.completed_at = now_iso()
            if s.pipeline.retry_state and s.pipeline.retry_state.stage == stage.id:
                s.pipeline.retry_state = None
            s.pipeline.current_stage = next_stage or PIPELINE_COMPLETE
            if next_stage is None:
                s.pipeline.status = COMPLETED

        self.store.transition(complete)

        if self.config.defaults.auto_checkpoint:
            self.create_checkpoint(stage.id, f"Milestone: {stage.name} completed")
            self.cleanup_checkpoints()

        if next_stage is None:
            logger.info("Pipeline complete. All stages finished.")
        else:
            logger.info("Stage %s completed; next stage: %s", stage.id, next_stage)
        return FinalizeResult(
            success=True, validation=validation, next_stage=next_stage, pipeline_complete=next_stage is None,
        )

    # ------------------------------------------------------------ transitions

    def pause_pipeline(self, reason: str) -> ProjectState:
        def mutate(s: ProjectState) -> None:
            s.pipeline.status = PAUSED
            s.pipeline.pause_reason = reason

        state = self.store.transition(mutate)
        logger.warning("Pipeline paused at %s: %s", state.pipeline.current_stage, reason)
        return state

    def resume_pipeline(self) -> ProjectState:
        """Clear the pause. The next run starts the current stage's retry ladder afresh.

        Raises:
            PipelineStateError: If the pipeline is not paused.
        """
        if not self.is_paused():
            raise PipelineStateError("Pipeline is not paused")

        def mutate(s: ProjectState) -> None:
            s.pipeline.status = RUNNING
            s.pipeline.pause_reason = None
            s.pipeline.retry_state = None

        state = self.store.transition(mutate)
        logger.info("Pipeline resumed at %s", state.pipeline.current_stage)
        return state

    def skip_stage(self, stage_id: str, reason: str) -> ProjectState:
        """Mark skipped, write a minimal handoff and advance past it whatever its outputs.

        Raises:
            PipelineStateError: If the stage is already completed.
        """
        stage = self.stage(stage_id)
        if self.load().stage(stage.id).status == COMPLETED:
            raise PipelineStateError(f"Stage {stage.id} is already completed")
        next_stage = self._next_stage_id(stage.id)

        self._handoff.generate(
            HandoffContext(
                stage_id=stage.id,
                stage_name=stage.name,
                completed_at=now_iso(),
                next_stage=next_stage,
                skipped=True,
                reason=reason,
            )
        )

        def mutate(s: ProjectState) -> None:
            entry = s.stage(stage.id)
            entry.status = SKIPPED
            entry.completed_at = now_iso()
            if s.pipeline.retry_state and s.pipeline.retry_state.stage == stage.id:
                s.pipeline.retry_state = None
            if s.pipeline.current_stage == stage.id:
                s.pipeline.current_stage = next_stage or PIPELINE_COMPLETE
            if all(e.status in (COMPLETED, SKIPPED) for e in s.stages):
                s.pipeline.current_stage = PIPELINE_COMPLETE
                s.pipeline.status = COMPLETED

        state = self.store.transition(mutate)
        logger.warning("Stage %s skipped: %s", stage.id, reason)
        return state

    def advance_sprint(self) -> ProjectState:
        """Raises PipelineStateError when already on the last sprint."""
        state = self.load()
        if state.current_sprint >= state.total_sprints:
            raise PipelineStateError(f"Already on the final sprint ({state.total_sprints})")

        def mutate(s: ProjectState) -> None:
            s.current_sprint += 1

        return self.store.transition(mutate)

    # ---------------------------------------------------------------- driver

    def _engine(self) -> DebateEngine:
        if self._agent is None:
            raise PipelineStateError("No agent executor configured")
        return DebateEngine(
            self._agent,
            self.config,
            self.assignment,
            project_root=self.project_root,
            on_round_complete=self._on_round_complete,
            is_paused=self.is_paused,
        )

    async def run_stage(self, stage_id: str) -> StageExecutionResult:
        """Prepare, execute and finalize one stage under the bounded retry ladder.

        A third failed attempt pauses the pipeline with the stage left
        in_progress and a resumable checkpoint. There is never a fourth.

        Raises:
            ConfigurationError: On an unmet prerequisite.
        """
        start = time.monotonic()
        prepared = self.prepare_stage_execution(stage_id)
        stage = self.stage(stage_id)
        engine = self._engine()
        failures: list[str] = []
        score = 0.0

        for attempt in range(1, MAX_STAGE_ATTEMPTS + 1):
            if self.is_paused():
                return StageExecutionResult(
                    stage.id, False, attempt - 1, score, time.monotonic() - start, paused=True,
                )
            logger.info("Stage %s attempt %d/%d", stage.id, attempt, MAX_STAGE_ATTEMPTS)
            directive = self.build_retry_directive(stage, prepared.directive, attempt, failures)
            try:
                outcome = await engine.execute(stage, directive)
            except AgentFailure as exc:
                failures = [f"Agent execution failed: {exc}"]
                logger.warning("Stage %s attempt %d: %s", stage.id, attempt, exc)
                self.record_validation_failure(stage.id, attempt, failures)
                continue

            if outcome.interrupted:
                return StageExecutionResult(
                    stage.id, False, attempt, score, time.monotonic() - start, paused=True,
                )
            self.log.record(outcome)

            result = self.finalize_stage(stage.id)
            score = result.validation.score
            if result.success:
                return StageExecutionResult(stage.id, True, attempt, score, time.monotonic() - start)

            failures = [c.message for c in result.validation.failed_checks if c.required]
            self.record_validation_failure(stage.id, attempt, failures)

        reason = f"Retries exhausted ({MAX_STAGE_ATTEMPTS} attempts). {ValidationFailure(stage.id, failures)}"
        self.pause_pipeline(reason)
        self.create_checkpoint(stage.id, f"Retries exhausted at {stage.id}")
        return StageExecutionResult(
            stage.id, False, MAX_STAGE_ATTEMPTS, score, time.monotonic() - start, paused=True, error=reason,
        )

    async def run_pipeline(self, start: str | None = None, stop_after: str | None = None) -> list[StageExecutionResult]:
        """Run stages in order from `start` (default: the current stage).

        Stops after `stop_after`, on the first unsuccessful stage, or when a
        pause is observed between stages. Runs the compliance check once the
        pipeline completes.

        Raises:
            PipelineStateError: If the pipeline is paused.
        """
        state = self.load()
        if state.pipeline.status == PAUSED:
            raise PipelineStateError(f"Pipeline is paused: {state.pipeline.pause_reason}. Resume it first.")
        if state.pipeline.current_stage == PIPELINE_COMPLETE and start is None:
            logger.info("Pipeline already complete")
            return []

        ids = [s.id for s in self.stages()]
        first = start or state.pipeline.current_stage
        if first not in ids:
            raise ConfigurationError(f"Unknown stage: {first}")

        results: list[StageExecutionResult] = []
        for stage_id in ids[ids.index(first):]:
            if self.is_paused():
                logger.info("Pause observed before %s", stage_id)
                break
            if self.load().stage(stage_id).status in (COMPLETED, SKIPPED):
                continue
            result = await self.run_stage(stage_id)
            results.append(result)
            if not result.success or stage_id == stop_after:
                break

        if self.load().pipeline.current_stage == PIPELINE_COMPLETE:
            missing, skipped = self.compliance()
            if missing:
                logger.warning(
                    "Compliance check: no execution event for %s%s",
                    ", ".join(missing),
                    f" (skipped: {', '.join(skipped)})" if skipped else "",
                )
        return results

    def compliance(self) -> tuple[list[str], list[str]]:
        """(stages with no execution event, the subset of those that were skipped)."""
        state = self.load()
        missing = self.log.compliance([s.id for s in state.stages])
        skipped = [stage_id for stage_id in missing if state.stage(stage_id).status == SKIPPED]
        return missing, skipped

    # ----------------------------------------------------------- checkpoints

    def list_checkpoints(self) -> list[CheckpointMetadata]:
        return self.checkpoints.list_all()

    def create_checkpoint(
        self,
        stage_id: str | None = None,
        description: str | None = None,
        include_config: bool = False,
    ) -> CheckpointMetadata:
        """Snapshot the project and record the reference in progress."""
        state = self.load()
        stage_id = stage_id or state.pipeline.current_stage
        metadata = self.checkpoints.create(stage_id, description, include_config=include_config)

        def record(s: ProjectState) -> None:
            s.checkpoints.append(
                CheckpointRef(
                    id=metadata.id, stage=metadata.stage,
                    created_at=metadata.created_at, description=metadata.description,
                )
            )
            for entry in s.stages:
                if entry.id == stage_id:
                    entry.checkpoint_id = metadata.id

        self.store.transition(record)
        return metadata

    def restore_checkpoint(
        self,
        checkpoint_id: str,
        safety_checkpoint: bool = False,
        restore_config: bool = False,
        partial: bool = False,
        files: list[str] | None = None,
    ) -> tuple[list[str], str | None]:
        """Roll the project back to a checkpoint.

        Refused while any stage is in_progress, paused or not. With
        `safety_checkpoint`, the current state is snapshotted first so a bad
        restore can itself be undone.

        Returns:
            (restored paths, safety checkpoint id or None)

        Raises:
            PipelineStateError: If a stage is executing.
            CheckpointIOError: If the checkpoint is missing or the copy fails.
        """
        state = self.load()
        busy = [e.id for e in state.stages if e.status == IN_PROGRESS]
        if busy:
            raise PipelineStateError(
                f"Cannot restore while stage {busy[0]} is in progress; skip it or let it finish first"
            )

        safety_id = None
        if safety_checkpoint:
            safety_id = self.create_checkpoint(description="Pre-restore safety snapshot").id
        try:
            restored = self.checkpoints.restore(
                checkpoint_id, restore_config=restore_config, partial=partial, files=files,
            )
        except Exception:
            if safety_id:
                logger.error("Restore failed; safety checkpoint %s holds the pre-restore state", safety_id)
            raise

        if self.store.exists():
            self._sync_checkpoint_refs()
        return restored, safety_id

    def delete_checkpoint(self, checkpoint_id: str) -> bool:
        deleted = self.checkpoints.delete(checkpoint_id)
        if deleted:
            self._sync_checkpoint_refs()
        return deleted

    def cleanup_checkpoints(
        self,
        max_retention: int | None = None,
        preserve_milestones: bool | None = None,
    ) -> list[str]:
        deleted = self.checkpoints.cleanup(
            self.config.defaults.checkpoint_retention if max_retention is None else max_retention,
            self.config.defaults.preserve_milestones if preserve_milestones is None else preserve_milestones,
        )
        if deleted:
            self._sync_checkpoint_refs()
        return deleted

    def _sync_checkpoint_refs(self) -> None:
        """Make progress reference exactly the checkpoints on disk, oldest first."""
        on_disk = list(reversed(self.checkpoints.list_all()))
        existing = {c.id for c in on_disk}

        def mutate(s: ProjectState) -> None:
            s.checkpoints = [
                CheckpointRef(id=c.id, stage=c.stage, created_at=c.created_at, description=c.description)
                for c in on_disk
            ]
            for entry in s.stages:
                if entry.checkpoint_id and entry.checkpoint_id not in existing:
                    entry.checkpoint_id = None

        self.store.transition(mutate)

    # ---------------------------------------------------------------- status

    def status(self) -> PipelineStatusReport:
        state = self.load()
        configured = {s.id: s for s in self.config.stages(state.pipeline_version)}
        lines = [
            StageStatusLine(
                id=entry.id,
                name=configured[entry.id].name if entry.id in configured else entry.id,
                mode=configured[entry.id].mode if entry.id in configured else "",
                status=entry.status,
                checkpoint_id=entry.checkpoint_id,
            )
            for entry in state.stages
        ]
        done = sum(1 for entry in state.stages if entry.status in (COMPLETED, SKIPPED))
        return PipelineStatusReport(
            project_name=state.project_name,
            pipeline_version=state.pipeline_version,
            current_stage=state.pipeline.current_stage,
            status=state.pipeline.status,
            stages=lines,
            progress_percent=round(100 * done / len(state.stages)) if state.stages else 0,
            pause_reason=state.pipeline.pause_reason,
            retry_state=state.pipeline.retry_state,
            current_sprint=state.current_sprint,
            total_sprints=state.total_sprints,
        )
