"""Shared pytest fixtures."""

import json
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from config.config_loader import (
    AgentConfig,
    AppConfig,
    DefaultsConfig,
    IntensityProfile,
    ModelsConfig,
    PromptsConfig,
    RoleConfig,
    StageConfig,
    StepConfig,
)
from conductor.agents.base import AgentExecutor, AgentFailure
from conductor.assigner import ModelAssignment, assign_models_to_roles
from conductor.checkpoint import CheckpointManager
from conductor.models import AgentArtifact, AgentRequest
from conductor.registry import builtin_models

BUILTIN_TIERS = {
    "opus": "claude-opus-test",
    "sonnet": "claude-sonnet-test",
    "haiku": "claude-haiku-test",
}

SYNTHESIS_TEXT = "## Consensus\n- use PostgreSQL\n- ship behind a feature flag\n\n## Plan\nFinal plan body."


class MockAgent(AgentExecutor):
    """Scripted AgentExecutor that records every request.

    Evaluations pop from `scores` (0.0 once exhausted) and always report
    `unresolved`. Any request matching fail_roles, fail_purposes or
    fail_when raises AgentFailure.
    """

    def __init__(
        self,
        scores: list[float] | None = None,
        unresolved: list[str] | None = None,
        fail_roles: set[str] | None = None,
        fail_purposes: set[str] | None = None,
        fail_when: Callable[[AgentRequest], bool] | None = None,
        content: dict[str, str] | None = None,
        on_invoke: Callable[[AgentRequest], None] | None = None,
    ) -> None:
        self.requests: list[AgentRequest] = []
        self._scores = list(scores or [])
        self._unresolved = ["caching strategy", "auth provider"] if unresolved is None else unresolved
        self.fail_roles = fail_roles or set()
        self.fail_purposes = fail_purposes or set()
        self._fail_when = fail_when
        self._content = content or {}
        self._on_invoke = on_invoke

    def name(self) -> str:
        return "mock"

    async def invoke(self, request: AgentRequest) -> AgentArtifact:
        self.requests.append(request)
        if self._on_invoke:
            self._on_invoke(request)
        if (
            request.agent_role in self.fail_roles
            or request.purpose in self.fail_purposes
            or (self._fail_when is not None and self._fail_when(request))
        ):
            raise AgentFailure(request.agent_role, "scripted failure")

        if request.purpose in self._content:
            text = self._content[request.purpose]
        elif request.purpose == "evaluate":
            score = self._scores.pop(0) if self._scores else 0.0
            text = "```json\n" + json.dumps({"score": score, "unresolved": self._unresolved}) + "\n```"
        elif request.purpose == "synthesize":
            text = SYNTHESIS_TEXT
        else:
            text = f"{request.agent_role} {request.purpose} for round {request.round_number}"

        return AgentArtifact(
            agent_role=request.agent_role,
            model=f"mock-{request.model_role}",
            round_number=request.round_number,
            content=text,
            latency_sec=0.01,
            token_count=10,
        )

    def purposes(self) -> list[str]:
        return [r.purpose for r in self.requests]

    def directives(self, purpose: str) -> list[str]:
        return [r.directive for r in self.requests if r.purpose == purpose]


class TickingClock:
    """Deterministic clock: one second later on every call."""

    def __init__(self) -> None:
        self.now = datetime(2025, 5, 1, 9, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


@pytest.fixture
def sample_prompts_config() -> PromptsConfig:
    return PromptsConfig(
        produce="{persona}\n{role}: {directive}",
        review="{role} round {round} review.\n{directive}\nPrevious:\n{previous_artifacts}",
        extend="{role} round {round} extend.\nFocus:\n{focus}\n{directive}\nPrevious:\n{previous_artifacts}",
        evaluate="Evaluate round {round}:\n{artifacts}",
        synthesis="Synthesize {stage_name} ({rounds} rounds)\n{directive}\n{full_transcript}",
        step="Step {step_name}: {instruction}\n{directive}\nPrevious:\n{previous_steps}",
        single="Solo: {directive}",
        compress="Compress round {round}:\n{artifacts}",
        retry_failures="{directive}\nFix:\n{failures}",
        retry_file_list="{stage_name} requirements:\n{requirements}",
    )


@pytest.fixture
def sample_intensity() -> dict[str, IntensityProfile]:
    return {
        "full": IntensityProfile(agents=3, min_rounds=2, max_rounds=4),
        "standard": IntensityProfile(agents=3, min_rounds=2, max_rounds=3),
        "light": IntensityProfile(agents=2, min_rounds=1, max_rounds=1),
    }


@pytest.fixture
def sample_stages() -> list[StageConfig]:
    return [
        StageConfig(
            id="01-plan",
            name="Planning",
            mode="debate",
            intensity="full",
            default_tier="reasoning",
            synthesizer_tier="reasoning",
            synthesis_output="plan.md",
            roles=[
                RoleConfig(name="Architect", tier="reasoning", persona="Thinks in systems."),
                RoleConfig(name="Critic", tier="balanced", persona="Finds the holes."),
                RoleConfig(name="Pragmatist", tier="fast", persona="Ships it."),
            ],
            required_outputs=["plan.md"],
            required_sections={"plan.md": ["## Debate Notes"]},
            persona="Lead architect",
        ),
        StageConfig(
            id="02-design",
            name="Design",
            mode="debate",
            intensity="light",
            default_tier="balanced",
            synthesizer_tier="balanced",
            synthesis_output="design.md",
            roles=[
                RoleConfig(name="Designer", tier="balanced"),
                RoleConfig(name="User Advocate", tier="fast"),
            ],
            prerequisites=["01-plan"],
            required_outputs=["design.md"],
        ),
        StageConfig(
            id="03-build",
            name="Build",
            mode="sequential",
            intensity="standard",
            default_tier="balanced",
            synthesizer_tier="balanced",
            synthesis_output="build.md",
            steps=[
                StepConfig(name="scaffold", instruction="Lay out the project."),
                StepConfig(name="tests", instruction="Write the tests."),
            ],
            required_outputs=["build.md"],
        ),
    ]


@pytest.fixture
def sample_models_config() -> ModelsConfig:
    return ModelsConfig(
        manifest_url="https://example.test/model-manifest.json",
        fetch_timeout_sec=0.5,
        cache_ttl_hours=24,
        builtin_tiers=dict(BUILTIN_TIERS),
        builtin_timestamp="2025-05-01",
    )


@pytest.fixture
def sample_app_config(
    sample_prompts_config: PromptsConfig,
    sample_intensity: dict[str, IntensityProfile],
    sample_stages: list[StageConfig],
    sample_models_config: ModelsConfig,
) -> AppConfig:
    return AppConfig(
        defaults=DefaultsConfig(
            pipeline_version="v2",
            contention_threshold=0.5,
            max_context_chars=60000,
            auto_checkpoint=True,
            checkpoint_retention=10,
            preserve_milestones=True,
        ),
        pipelines={"v2": sample_stages},
        intensity=sample_intensity,
        prompts=sample_prompts_config,
        models=sample_models_config,
        agent=AgentConfig(sdk="anthropic", api_key_env="ANTHROPIC_API_KEY", timeout_sec=60, max_tokens=1024),
    )


@pytest.fixture
def sample_assignment(sample_stages: list[StageConfig]) -> ModelAssignment:
    return assign_models_to_roles(builtin_models(dict(BUILTIN_TIERS)), sample_stages)


@pytest.fixture
def project_root(tmp_path: Path) -> Path:
    root = tmp_path / "project"
    root.mkdir()
    return root


@pytest.fixture
def clock() -> TickingClock:
    return TickingClock()


@pytest.fixture
def checkpoint_manager(project_root: Path, clock: TickingClock) -> CheckpointManager:
    return CheckpointManager(project_root, clock=clock)


@pytest.fixture
def mock_agent() -> MockAgent:
    return MockAgent()
