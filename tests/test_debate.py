"""Tests for conductor/debate.py."""

import dataclasses

import pytest

from conductor.agents.base import AgentFailure
from conductor.debate import DebateEngine, run_round
from conductor.models import EXTEND, SYNTHESIZE, AgentRequest
from tests.conftest import MockAgent


def _engine(agent, config, assignment, **kwargs) -> DebateEngine:
    return DebateEngine(agent, config, assignment, **kwargs)


def _stage(config, stage_id):
    return config.stage(stage_id)


async def test_run_round_collects_artifacts_and_failures():
    agent = MockAgent(fail_roles={"b"})
    requests = [
        AgentRequest("do it", "balanced", role, "01-plan", 1, "produce") for role in ("a", "b", "c")
    ]
    artifacts, failures = await run_round(agent, requests)
    assert sorted(a.agent_role for a in artifacts) == ["a", "c"]
    assert len(failures) == 1
    assert failures[0].agent_role == "b"


async def test_run_round_treats_empty_content_as_failure():
    agent = MockAgent(content={"produce": "   "})
    artifacts, failures = await run_round(agent, [AgentRequest("x", "fast", "a", "s", 1, "produce")])
    assert artifacts == []
    assert len(failures) == 1


async def test_light_intensity_is_one_round_then_synthesis(sample_app_config, sample_assignment):
    agent = MockAgent()
    engine = _engine(agent, sample_app_config, sample_assignment)
    outcome = await engine.run_debate(_stage(sample_app_config, "02-design"), "Design the UI")

    assert len(outcome.rounds) == 1
    assert outcome.scores == []
    assert agent.purposes().count("produce") == 2
    assert "review" not in agent.purposes()
    assert "evaluate" not in agent.purposes()
    assert agent.purposes().count("synthesize") == 1
    assert outcome.mode == "debate"


async def test_low_contention_still_runs_min_rounds(sample_app_config, sample_assignment):
    agent = MockAgent(scores=[0.0, 0.0])
    engine = _engine(agent, sample_app_config, sample_assignment)
    outcome = await engine.run_debate(_stage(sample_app_config, "01-plan"), "Plan it")

    assert [r.kind for r in outcome.rounds] == ["production", "review"]
    assert [s.recommendation for s in outcome.scores] == [EXTEND, SYNTHESIZE]
    assert agent.purposes().count("evaluate") == 2


async def test_high_contention_stops_at_max_rounds(sample_app_config, sample_assignment):
    agent = MockAgent(scores=[0.9] * 10)
    engine = _engine(agent, sample_app_config, sample_assignment)
    outcome = await engine.run_debate(_stage(sample_app_config, "01-plan"), "Plan it")

    assert len(outcome.rounds) == 4
    assert [r.kind for r in outcome.rounds] == ["production", "review", "extension", "extension"]
    assert outcome.scores[-1].recommendation == SYNTHESIZE
    assert agent.purposes().count("synthesize") == 1


async def test_extension_rounds_carry_only_unresolved_focus(sample_app_config, sample_assignment):
    agent = MockAgent(scores=[0.9, 0.9, 0.2], unresolved=["caching strategy"])
    engine = _engine(agent, sample_app_config, sample_assignment)
    await engine.run_debate(_stage(sample_app_config, "01-plan"), "Plan it")

    extend_directives = agent.directives("extend")
    assert extend_directives
    assert all("- caching strategy" in d for d in extend_directives)


async def test_review_round_receives_round_one_artifacts(sample_app_config, sample_assignment):
    agent = MockAgent(scores=[0.0, 0.0])
    engine = _engine(agent, sample_app_config, sample_assignment)
    await engine.run_debate(_stage(sample_app_config, "01-plan"), "Plan it")

    for directive in agent.directives("review"):
        assert "Architect produce for round 1" in directive
        assert "Critic produce for round 1" in directive


async def test_debate_continues_with_surviving_agents(sample_app_config, sample_assignment):
    agent = MockAgent(scores=[0.0, 0.0], fail_roles={"Critic"})
    engine = _engine(agent, sample_app_config, sample_assignment)
    outcome = await engine.run_debate(_stage(sample_app_config, "01-plan"), "Plan it")

    assert outcome.agent_count == 2
    assert len(outcome.rounds[0].artifacts) == 2
    # The failed role is not asked again in later rounds
    assert [r.agent_role for r in agent.requests if r.purpose == "review"] == ["Architect", "Pragmatist"]


async def test_all_round_one_failures_fall_back_to_single_agent(sample_app_config, sample_assignment):
    agent = MockAgent(fail_purposes={"produce"})
    engine = _engine(agent, sample_app_config, sample_assignment)
    outcome = await engine.run_debate(_stage(sample_app_config, "01-plan"), "Plan it")

    assert outcome.mode == "single_agent"
    assert outcome.agent_count == 1
    assert outcome.synthesis == "solo single for round 1"


async def test_single_agent_failure_raises(sample_app_config, sample_assignment):
    agent = MockAgent(fail_purposes={"produce", "single"})
    engine = _engine(agent, sample_app_config, sample_assignment)
    with pytest.raises(AgentFailure):
        await engine.run_debate(_stage(sample_app_config, "01-plan"), "Plan it")


async def test_failed_evaluation_counts_as_no_score(sample_app_config, sample_assignment):
    agent = MockAgent(fail_purposes={"evaluate"})
    engine = _engine(agent, sample_app_config, sample_assignment)
    outcome = await engine.run_debate(_stage(sample_app_config, "01-plan"), "Plan it")

    assert [s.score for s in outcome.scores] == [None, None]
    assert len(outcome.rounds) == 2


async def test_review_round_total_failure_goes_to_synthesis(sample_app_config, sample_assignment):
    agent = MockAgent(fail_purposes={"review"})
    engine = _engine(agent, sample_app_config, sample_assignment)
    outcome = await engine.run_debate(_stage(sample_app_config, "01-plan"), "Plan it")

    assert len(outcome.rounds) == 1
    assert outcome.synthesis.startswith("## Consensus")


async def test_synthesis_has_debate_notes(sample_app_config, sample_assignment):
    agent = MockAgent(scores=[0.0, 0.0])
    engine = _engine(agent, sample_app_config, sample_assignment)
    outcome = await engine.run_debate(_stage(sample_app_config, "01-plan"), "Plan it")

    assert "## Debate Notes" in outcome.synthesis
    assert "- use PostgreSQL" in outcome.synthesis
    assert "### Preserved minority opinions" in outcome.synthesis
    assert "- caching strategy" in outcome.synthesis


async def test_large_transcripts_are_compressed_once_per_round(sample_app_config, sample_assignment):
    config = dataclasses.replace(
        sample_app_config,
        defaults=dataclasses.replace(sample_app_config.defaults, max_context_chars=50),
    )
    agent = MockAgent(scores=[0.0, 0.0])
    engine = _engine(agent, config, sample_assignment)
    outcome = await engine.run_debate(_stage(config, "01-plan"), "Plan it")

    assert agent.purposes().count("compress") == 2
    assert all(r.model_role == "fast" for r in agent.requests if r.purpose == "compress")
    assert "summarized" in agent.directives("synthesize")[0]
    # Stored rounds are never rewritten
    assert outcome.rounds[0].artifacts[0].content == "Architect produce for round 1"


async def test_compression_falls_back_to_truncation(sample_app_config, sample_assignment):
    config = dataclasses.replace(
        sample_app_config,
        defaults=dataclasses.replace(sample_app_config.defaults, max_context_chars=50),
    )
    agent = MockAgent(scores=[0.0, 0.0], fail_purposes={"compress"})
    engine = _engine(agent, config, sample_assignment)
    outcome = await engine.run_debate(_stage(config, "01-plan"), "Plan it")

    assert len(outcome.rounds) == 2
    assert "## Debate Notes" in outcome.synthesis


async def test_pause_stops_after_current_round(sample_app_config, sample_assignment):
    agent = MockAgent()
    engine = _engine(agent, sample_app_config, sample_assignment, is_paused=lambda: True)
    outcome = await engine.run_debate(_stage(sample_app_config, "01-plan"), "Plan it")

    assert outcome.interrupted is True
    assert len(outcome.rounds) == 1
    assert "synthesize" not in agent.purposes()


async def test_sequential_steps_see_previous_outputs(sample_app_config, sample_assignment):
    agent = MockAgent()
    engine = _engine(agent, sample_app_config, sample_assignment)
    outcome = await engine.run_sequential(_stage(sample_app_config, "03-build"), "Build it")

    assert outcome.mode == "sequential"
    assert [r.artifacts[0].agent_role for r in outcome.rounds] == ["scaffold", "tests"]
    step_directives = agent.directives("step")
    assert "(first step)" in step_directives[0]
    assert "scaffold step for round 1" in step_directives[1]
    assert "## scaffold" in outcome.synthesis
    assert "## tests" in outcome.synthesis
    assert "evaluate" not in agent.purposes()


async def test_sequential_step_failure_raises(sample_app_config, sample_assignment):
    agent = MockAgent(fail_roles={"tests"})
    engine = _engine(agent, sample_app_config, sample_assignment)
    with pytest.raises(AgentFailure):
        await engine.run_sequential(_stage(sample_app_config, "03-build"), "Build it")


async def test_execute_writes_outputs(sample_app_config, sample_assignment, project_root):
    agent = MockAgent(scores=[0.0, 0.0])
    seen: list[int] = []
    engine = _engine(
        agent, sample_app_config, sample_assignment,
        project_root=project_root,
        on_round_complete=lambda stage_id, rnd: seen.append(rnd.number),
    )
    outcome = await engine.execute(_stage(sample_app_config, "01-plan"), "Plan it")

    outputs = project_root / "stages" / "01-plan" / "outputs"
    assert outcome.output_path == outputs / "plan.md"
    assert "## Debate Notes" in (outputs / "plan.md").read_text(encoding="utf-8")
    assert (outputs / "debate" / "round-1" / "architect.md").exists()
    assert list((outputs / "debate").glob("*_debate_record.md"))
    assert seen == [1, 2]


async def test_execute_interrupted_writes_no_deliverable(sample_app_config, sample_assignment, project_root):
    engine = _engine(
        MockAgent(), sample_app_config, sample_assignment,
        project_root=project_root, is_paused=lambda: True,
    )
    await engine.execute(_stage(sample_app_config, "01-plan"), "Plan it")
    assert not (project_root / "stages" / "01-plan" / "outputs" / "plan.md").exists()
