"""Debate orchestration: parallel agent rounds, cross-review, contention-driven extension, synthesis."""

import asyncio
import logging
from collections.abc import Callable
from pathlib import Path

from config.config_loader import AppConfig, RoleConfig, StageConfig
from conductor.agents.base import AgentExecutor, AgentFailure
from conductor.assigner import ModelAssignment
from conductor.contention import parse_contention, score_round
from conductor.fallback import aresolve_with_fallback
from conductor.models import (
    SYNTHESIZE,
    AgentArtifact,
    AgentRequest,
    ContentionScore,
    DebateOutcome,
    DebateRound,
)
from conductor.output import save_debate_record, save_round_artifacts, write_stage_output
from conductor.synthesis import format_full_transcript, format_round, synthesize

logger = logging.getLogger(__name__)

# Quality gate: warn when fewer than this many agents respond in Round 1
_MIN_QUALITY_RESPONSES = 2


async def _call_agent(agent: AgentExecutor, request: AgentRequest) -> AgentArtifact | AgentFailure:
    """Invoke a single agent. Never raises; returns AgentFailure on failure."""
    try:
        artifact = await agent.invoke(request)
    except AgentFailure as exc:
        logger.warning(
            "Agent %s failed in %s round %d: %s",
            request.agent_role, request.stage_id, request.round_number, exc,
        )
        return exc
    except Exception as exc:
        logger.warning(
            "Agent %s unexpected failure in %s round %d: %s",
            request.agent_role, request.stage_id, request.round_number, exc,
        )
        return AgentFailure(request.agent_role, f"Unexpected error: {exc}")
    if not artifact.content.strip():
        logger.warning("Agent %s returned empty content in %s", request.agent_role, request.stage_id)
        return AgentFailure(request.agent_role, "Empty content")
    return artifact


async def run_round(
    agent: AgentExecutor,
    requests: list[AgentRequest],
) -> tuple[list[AgentArtifact], list[AgentFailure]]:
    """Issue every request together and wait until all have settled."""
    results = await asyncio.gather(*(_call_agent(agent, r) for r in requests))
    artifacts = [r for r in results if isinstance(r, AgentArtifact)]
    failures = [r for r in results if isinstance(r, AgentFailure)]
    return artifacts, failures


class DebateEngine:
    """Produces a stage's final artifact via debate, sequential steps, or a single agent."""

    def __init__(
        self,
        agent: AgentExecutor,
        config: AppConfig,
        assignment: ModelAssignment,
        project_root: Path | None = None,
        on_round_complete: Callable[[str, DebateRound], None] | None = None,
        is_paused: Callable[[], bool] | None = None,
    ) -> None:
        self._agent = agent
        self._config = config
        self._assignment = assignment
        self._project_root = project_root
        self._on_round_complete = on_round_complete
        self._is_paused = is_paused or (lambda: False)

    async def execute(self, stage: StageConfig, directive: str) -> DebateOutcome:
        """Run the stage's configured execution mode."""
        if stage.mode == "sequential":
            outcome = await self.run_sequential(stage, directive)
        else:
            outcome = await self.run_debate(stage, directive)
        self._persist(stage, outcome)
        return outcome

    # ------------------------------------------------------------------ debate

    async def run_debate(self, stage: StageConfig, directive: str) -> DebateOutcome:
        """Run the full debate protocol for one stage.

        Falls back to a single agent when every Round 1 agent fails.

        Raises:
            AgentFailure: If the single-agent fallback or synthesis also fails.
        """
        profile = self._config.intensity[stage.intensity]
        threshold = self._config.defaults.contention_threshold
        participants = list(enumerate(stage.roles[: profile.agents]))

        logger.info(
            "Starting debate for %s: %d agents, intensity %s (rounds %d-%d)",
            stage.id, len(participants), stage.intensity, profile.min_rounds, profile.max_rounds,
        )

        requests = [
            self._request(stage, idx, role, 1, "produce", self._config.prompts.produce.format(
                persona=role.persona, role=role.name, directive=directive,
            ))
            for idx, role in participants
        ]
        artifacts, _ = await run_round(self._agent, requests)

        if not artifacts:
            logger.warning(
                "All %d agents failed in round 1 of %s; falling back to a single agent",
                len(participants), stage.id,
            )
            return await self.run_single_agent(stage, directive)

        if len(participants) >= _MIN_QUALITY_RESPONSES and len(artifacts) < len(participants):
            logger.warning(
                "Only %d/%d agents responded in round 1 of %s. Continuing with the available subset.",
                len(artifacts), len(participants), stage.id,
            )

        rounds = [DebateRound(number=1, kind="production", artifacts=artifacts)]
        self._round_done(stage, rounds[-1])
        participants = self._survivors(participants, artifacts)
        scores: list[ContentionScore] = []
        summaries: dict[int, str] = {}

        if stage.intensity != "light":
            previous_focus: list[str] | None = None
            while True:
                if self._is_paused():
                    logger.info("Pause requested; stopping %s after round %d", stage.id, len(rounds))
                    return DebateOutcome(
                        stage_id=stage.id, mode="debate", rounds=rounds, synthesis="",
                        scores=scores, agent_count=len(participants), interrupted=True,
                    )

                evaluation = await self._evaluate(stage, rounds[-1], threshold, previous_focus, summaries)
                scores.append(evaluation)
                logger.info(
                    "%s round %d contention %s -> %s",
                    stage.id, rounds[-1].number,
                    "n/a" if evaluation.score is None else f"{evaluation.score:.2f}",
                    evaluation.recommendation,
                )
                if evaluation.recommendation == SYNTHESIZE:
                    break

                number = len(rounds) + 1
                previous = await self._round_context(stage, rounds[-1], summaries)
                # Round 2 is the cross-review; later rounds only chase unresolved items.
                if number == 2:
                    kind, purpose, template = "review", "review", self._config.prompts.review
                else:
                    kind, purpose, template = "extension", "extend", self._config.prompts.extend
                focus = "\n".join(f"- {item}" for item in evaluation.unresolved) or "- (no items given)"

                requests = [
                    self._request(stage, idx, role, number, purpose, template.format(
                        persona=role.persona, role=role.name, round=number,
                        directive=directive, previous_artifacts=previous, focus=focus,
                    ))
                    for idx, role in participants
                ]
                artifacts, failures = await run_round(self._agent, requests)
                if not artifacts:
                    logger.warning(
                        "All agents failed in round %d of %s; synthesizing from %d completed round(s)",
                        number, stage.id, len(rounds),
                    )
                    break
                if failures:
                    logger.warning(
                        "%d agent(s) dropped in round %d of %s; continuing with %d",
                        len(failures), number, stage.id, len(artifacts),
                    )

                rounds.append(DebateRound(number=number, kind=kind, artifacts=artifacts))
                self._round_done(stage, rounds[-1])
                participants = self._survivors(participants, artifacts)
                previous_focus = evaluation.unresolved

        transcript = await self._transcript(stage, rounds, summaries)
        content = await synthesize(
            stage=stage,
            directive=directive,
            rounds=rounds,
            scores=scores,
            agent=self._agent,
            prompts=self._config.prompts,
            model_role=self._assignment.synthesizers.get(stage.id, stage.synthesizer_tier),
            transcript=transcript,
        )
        return DebateOutcome(
            stage_id=stage.id,
            mode="debate",
            rounds=rounds,
            synthesis=content,
            scores=scores,
            agent_count=len(rounds[0].artifacts),
        )

    async def _evaluate(
        self,
        stage: StageConfig,
        rnd: DebateRound,
        threshold: float,
        previous_focus: list[str] | None,
        summaries: dict[int, str],
    ) -> ContentionScore:
        prompt = self._config.prompts.evaluate.format(
            round=rnd.number, artifacts=await self._round_context(stage, rnd, summaries),
        )
        result = await _call_agent(
            self._agent,
            AgentRequest(
                directive=prompt,
                model_role=self._assignment.synthesizers.get(stage.id, stage.synthesizer_tier),
                agent_role="moderator",
                stage_id=stage.id,
                round_number=rnd.number,
                purpose="evaluate",
            ),
        )
        if isinstance(result, AgentFailure):
            score, unresolved = None, []
        else:
            score, unresolved = parse_contention(result.content)
        return score_round(
            rnd.number, score, unresolved,
            self._config.intensity[stage.intensity], threshold, previous_focus,
        )

    # -------------------------------------------------------------- sequential

    async def run_sequential(self, stage: StageConfig, directive: str) -> DebateOutcome:
        """Run the stage's named steps in order, each seeing every earlier step's output.

        Raises:
            AgentFailure: If any step fails.
        """
        model_role = self._assignment.stage_defaults.get(stage.id, stage.default_tier)
        rounds: list[DebateRound] = []

        for number, step in enumerate(stage.steps, start=1):
            if self._is_paused():
                logger.info("Pause requested; stopping %s before step %s", stage.id, step.name)
                return DebateOutcome(
                    stage_id=stage.id, mode="sequential", rounds=rounds, synthesis="",
                    agent_count=1, interrupted=True,
                )
            previous = "\n\n".join(
                f"### {r.artifacts[0].agent_role}\n{r.artifacts[0].content}" for r in rounds
            ) or "(first step)"
            prompt = self._config.prompts.step.format(
                step_name=step.name, instruction=step.instruction,
                directive=directive, previous_steps=previous,
            )
            logger.info("%s step %d/%d: %s", stage.id, number, len(stage.steps), step.name)
            artifact = await _call_agent(
                self._agent,
                AgentRequest(
                    directive=prompt,
                    model_role=model_role,
                    agent_role=step.name,
                    stage_id=stage.id,
                    round_number=number,
                    purpose="step",
                ),
            )
            if isinstance(artifact, AgentFailure):
                raise artifact
            rounds.append(DebateRound(number=number, kind="step", artifacts=[artifact]))
            self._round_done(stage, rounds[-1])

        content = "\n\n".join(f"## {r.artifacts[0].agent_role}\n\n{r.artifacts[0].content}" for r in rounds)
        return DebateOutcome(stage_id=stage.id, mode="sequential", rounds=rounds, synthesis=content + "\n", agent_count=1)

    # ------------------------------------------------------------ single agent

    async def run_single_agent(self, stage: StageConfig, directive: str) -> DebateOutcome:
        """Produce the stage deliverable with one agent, no debate.

        Raises:
            AgentFailure: If the agent fails.
        """
        artifact = await _call_agent(
            self._agent,
            AgentRequest(
                directive=self._config.prompts.single.format(directive=directive),
                model_role=self._assignment.stage_defaults.get(stage.id, stage.default_tier),
                agent_role="solo",
                stage_id=stage.id,
                round_number=1,
                purpose="single",
            ),
        )
        if isinstance(artifact, AgentFailure):
            raise artifact
        rnd = DebateRound(number=1, kind="production", artifacts=[artifact])
        self._round_done(stage, rnd)
        return DebateOutcome(
            stage_id=stage.id, mode="single_agent", rounds=[rnd], synthesis=artifact.content, agent_count=1,
        )

    # ----------------------------------------------------------------- helpers

    def _request(
        self, stage: StageConfig, idx: int, role: RoleConfig, number: int, purpose: str, prompt: str,
    ) -> AgentRequest:
        return AgentRequest(
            directive=prompt,
            model_role=self._assignment.role_for(stage.id, idx),
            agent_role=role.name,
            stage_id=stage.id,
            round_number=number,
            purpose=purpose,
        )

    @staticmethod
    def _survivors(
        participants: list[tuple[int, RoleConfig]],
        artifacts: list[AgentArtifact],
    ) -> list[tuple[int, RoleConfig]]:
        produced = {a.agent_role for a in artifacts}
        return [(idx, role) for idx, role in participants if role.name in produced]

    def _round_done(self, stage: StageConfig, rnd: DebateRound) -> None:
        if self._project_root is not None:
            save_round_artifacts(self._outputs_dir(stage), rnd)
        if self._on_round_complete:
            self._on_round_complete(stage.id, rnd)

    def _outputs_dir(self, stage: StageConfig) -> Path:
        return Path(self._project_root or ".") / "stages" / stage.id / "outputs"

    def _persist(self, stage: StageConfig, outcome: DebateOutcome) -> None:
        if self._project_root is None or outcome.interrupted:
            return
        outputs_dir = self._outputs_dir(stage)
        outcome.output_path = write_stage_output(outputs_dir, stage.synthesis_output, outcome.synthesis)
        save_debate_record(outcome, outputs_dir)

    # ------------------------------------------------------------- compression

    def _too_large(self, text: str) -> bool:
        return len(text) > self._config.defaults.max_context_chars

    async def _round_context(self, stage: StageConfig, rnd: DebateRound, summaries: dict[int, str]) -> str:
        text = format_round(rnd)
        if not self._too_large(text):
            return text
        return await self._summary(stage, rnd, summaries)

    async def _transcript(self, stage: StageConfig, rounds: list[DebateRound], summaries: dict[int, str]) -> str:
        """Full transcript, with every round but the latest compressed when it grows too large."""
        full = format_full_transcript(rounds)
        if not self._too_large(full):
            return full
        logger.info("Transcript for %s is %d chars; compressing prior rounds", stage.id, len(full))
        parts: list[str] = []
        for rnd in rounds[:-1]:
            parts.append(f"### Round {rnd.number} ({rnd.kind}, summarized)")
            parts.append(await self._summary(stage, rnd, summaries))
            parts.append("")
        parts.append(format_full_transcript(rounds[-1:]))
        return "\n\n".join(parts)

    async def _summary(self, stage: StageConfig, rnd: DebateRound, summaries: dict[int, str]) -> str:
        """Summary of one round, computed once per round. Rounds themselves are never rewritten."""
        if rnd.number in summaries:
            return summaries[rnd.number]

        async def via_agent() -> str | None:
            artifact = await self._agent.invoke(
                AgentRequest(
                    directive=self._config.prompts.compress.format(round=rnd.number, artifacts=format_round(rnd)),
                    model_role="fast",
                    agent_role="compressor",
                    stage_id=stage.id,
                    round_number=rnd.number,
                    purpose="compress",
                )
            )
            return artifact.content.strip() or None

        async def via_truncation() -> str:
            budget = max(200, self._config.defaults.max_context_chars // (2 * max(1, len(rnd.artifacts))))
            return "\n\n".join(
                f"**{a.agent_role}**\n{a.content[:budget]}" + (" [truncated]" if len(a.content) > budget else "")
                for a in rnd.artifacts
            )

        source, summary = await aresolve_with_fallback([("agent", via_agent), ("truncate", via_truncation)])
        logger.debug("Round %d of %s compressed via %s", rnd.number, stage.id, source)
        summaries[rnd.number] = summary
        return summary
