"""Tests for conductor/synthesis.py."""

import pytest

from conductor.agents.base import AgentFailure
from conductor.models import EXTEND, SYNTHESIZE, AgentArtifact, ContentionScore, DebateRound
from conductor.synthesis import build_debate_notes, extract_section_bullets, format_full_transcript, synthesize
from tests.conftest import SYNTHESIS_TEXT, MockAgent


def _round(number: int, kind: str, *roles: str) -> DebateRound:
    return DebateRound(
        number=number,
        kind=kind,
        artifacts=[AgentArtifact(role, "m", number, f"{role} says {number}", 0.1) for role in roles],
    )


def test_extract_section_bullets():
    text = "# Result\n- not me\n## Consensus\n- one\n* two\nprose\n## Plan\n- three"
    assert extract_section_bullets(text, "consensus") == ["one", "two"]
    assert extract_section_bullets(text, "missing") == []


def test_transcript_labels_rounds():
    transcript = format_full_transcript([_round(1, "production", "A"), _round(2, "review", "A")])
    assert "### Round 1 (production)" in transcript
    assert "### Round 2 (review)" in transcript
    assert "**A**\nA says 2" in transcript


def test_debate_notes_sections():
    rounds = [_round(1, "production", "A", "B", "C"), _round(2, "review", "A", "B")]
    scores = [
        ContentionScore(0.8, EXTEND, ["db choice", "caching"]),
        ContentionScore(None, SYNTHESIZE, ["caching"]),
    ]
    notes = build_debate_notes(rounds, scores, ["use Postgres"], ["db choice", "caching"])

    assert notes.startswith("## Debate Notes")
    assert "- Rounds: 2" in notes
    assert "R1=3, R2=2" in notes
    assert "R1=0.80, R2=n/a" in notes
    consensus = notes.split("### Consensus")[1].split("###")[0]
    resolved = notes.split("### Resolved disagreements")[1].split("###")[0]
    minority = notes.split("### Preserved minority opinions")[1]
    assert "- use Postgres" in consensus
    assert "- db choice" in resolved
    assert "- caching" in minority
    assert "caching" not in resolved


def test_debate_notes_placeholders():
    notes = build_debate_notes([_round(1, "production", "A")], [], [], [])
    assert "not evaluated" in notes
    assert "- (none recorded)" in notes
    assert "- (none)" in notes


async def test_synthesize_appends_notes(sample_stages, sample_prompts_config):
    agent = MockAgent()
    rounds = [_round(1, "production", "A", "B")]
    content = await synthesize(sample_stages[0], "Plan it", rounds, [], agent, sample_prompts_config, "reasoning")

    assert content.startswith(SYNTHESIS_TEXT)
    assert "- use PostgreSQL" in content.split("### Consensus")[1]
    assert agent.requests[0].model_role == "reasoning"
    assert agent.requests[0].round_number == 2
    assert "Synthesize Planning (1 rounds)" in agent.requests[0].directive


async def test_synthesize_falls_back_to_balanced(sample_stages, sample_prompts_config):
    agent = MockAgent(fail_when=lambda r: r.model_role == "reasoning")
    content = await synthesize(
        sample_stages[0], "Plan it", [_round(1, "production", "A")], [], agent, sample_prompts_config, "reasoning",
    )
    assert content.startswith(SYNTHESIS_TEXT)
    assert [r.model_role for r in agent.requests] == ["reasoning", "balanced"]


async def test_synthesize_empty_reply_counts_as_failure(sample_stages, sample_prompts_config):
    agent = MockAgent(content={"synthesize": "   "})
    with pytest.raises(AgentFailure, match="Synthesis failed"):
        await synthesize(
            sample_stages[0], "Plan it", [_round(1, "production", "A")], [], agent, sample_prompts_config, "reasoning",
        )
    assert len(agent.requests) == 2


async def test_synthesize_balanced_role_is_not_retried(sample_stages, sample_prompts_config):
    agent = MockAgent(fail_purposes={"synthesize"})
    with pytest.raises(AgentFailure):
        await synthesize(
            sample_stages[1], "Design", [_round(1, "production", "A")], [], agent, sample_prompts_config, "balanced",
        )
    assert len(agent.requests) == 1
