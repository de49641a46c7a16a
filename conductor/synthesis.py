"""Final synthesis: build transcript, call synthesizer, append the debate notes block."""

import logging
import re

from config.config_loader import PromptsConfig, StageConfig
from conductor.agents.base import AgentExecutor, AgentFailure
from conductor.fallback import FallbackExhausted, aresolve_with_fallback
from conductor.models import AgentRequest, ContentionScore, DebateRound
from conductor.registry import MID_ROLE

logger = logging.getLogger(__name__)

_HEADING = re.compile(r"^#{1,6}\s+(.*)$")
_BULLET = re.compile(r"^\s*[-*]\s+(.*)$")


def format_round(rnd: DebateRound) -> str:
    """Format one round's artifacts, keyed by agent role."""
    parts = [f"**{a.agent_role}**\n{a.content}" for a in rnd.artifacts]
    return "\n\n".join(parts)


def format_full_transcript(rounds: list[DebateRound]) -> str:
    """Format all rounds into a single transcript string for synthesis."""
    parts: list[str] = []
    for rnd in rounds:
        parts.append(f"### Round {rnd.number} ({rnd.kind})")
        parts.append(format_round(rnd))
        parts.append("")
    return "\n\n".join(parts)


def extract_section_bullets(text: str, title: str) -> list[str]:
    """Bullets directly under the first markdown heading containing `title` (case-insensitive)."""
    bullets: list[str] = []
    inside = False
    for line in text.splitlines():
        heading = _HEADING.match(line)
        if heading:
            if inside:
                break
            inside = title.lower() in heading.group(1).lower()
            continue
        if inside:
            bullet = _BULLET.match(line)
            if bullet:
                bullets.append(bullet.group(1).strip())
    return bullets


def build_debate_notes(
    rounds: list[DebateRound],
    scores: list[ContentionScore],
    consensus: list[str],
    raised: list[str],
) -> str:
    """Render the structured Debate Notes block appended to every debate synthesis.

    Args:
        rounds: Every round of the debate.
        scores: One entry per evaluated round, in order.
        consensus: All-agree items lifted from the synthesis.
        raised: Every disagreement any evaluation flagged, in first-seen order.
    """
    still_open = scores[-1].unresolved if scores else []
    resolved = [item for item in raised if item not in still_open]

    lines = [
        "## Debate Notes",
        "",
        f"- Rounds: {len(rounds)}",
        "- Agents per round: " + ", ".join(f"R{r.number}={len(r.artifacts)}" for r in rounds),
        "- Contention scores: "
        + (
            ", ".join(
                f"R{i}={'n/a' if s.score is None else f'{s.score:.2f}'}" for i, s in enumerate(scores, start=1)
            )
            or "not evaluated"
        ),
        "",
        "### Consensus",
    ]
    lines += [f"- {item}" for item in consensus] or ["- (none recorded)"]
    lines += ["", "### Resolved disagreements"]
    lines += [f"- {item}" for item in resolved] or ["- (none)"]
    lines += ["", "### Preserved minority opinions"]
    lines += [f"- {item}" for item in still_open] or ["- (none)"]
    return "\n".join(lines)


async def synthesize(
    stage: StageConfig,
    directive: str,
    rounds: list[DebateRound],
    scores: list[ContentionScore],
    agent: AgentExecutor,
    prompts: PromptsConfig,
    model_role: str,
    transcript: str | None = None,
) -> str:
    """Run synthesis and return the deliverable with its Debate Notes block.

    Args:
        stage: Stage being synthesized.
        directive: The stage directive every agent received.
        rounds: All completed debate rounds.
        scores: Contention evaluations, one per evaluated round.
        agent: Executor used for the synthesizer pass.
        prompts: Prompt templates from config.
        model_role: Resolved role for the synthesizer; the balanced role is tried next.
        transcript: Pre-built (possibly compressed) transcript; built from rounds when None.

    Raises:
        AgentFailure: If every synthesizer attempt fails or returns empty content.
    """
    prompt = prompts.synthesis.format(
        stage_name=stage.name,
        rounds=len(rounds),
        directive=directive,
        full_transcript=transcript if transcript is not None else format_full_transcript(rounds),
    )

    def attempt(role: str):
        async def run() -> str | None:
            artifact = await agent.invoke(
                AgentRequest(
                    directive=prompt,
                    model_role=role,
                    agent_role="synthesizer",
                    stage_id=stage.id,
                    round_number=len(rounds) + 1,
                    purpose="synthesize",
                )
            )
            return artifact.content.strip() or None
        return run

    candidates = [(model_role, attempt(model_role))]
    if model_role != MID_ROLE:
        candidates.append((MID_ROLE, attempt(MID_ROLE)))

    logger.info("Running synthesis for %s via %s", stage.id, agent.name())
    try:
        used_role, content = await aresolve_with_fallback(candidates)
    except FallbackExhausted as exc:
        raise AgentFailure("synthesizer", f"Synthesis failed for {stage.id}: {exc}") from exc
    if used_role != model_role:
        logger.warning("Synthesis for %s fell back to the %s role", stage.id, used_role)

    raised: list[str] = []
    for s in scores:
        for item in s.unresolved:
            if item not in raised:
                raised.append(item)
    notes = build_debate_notes(rounds, scores, extract_section_bullets(content, "consensus"), raised)
    return f"{content}\n\n{notes}\n"
