"""Load settings.yaml into typed dataclasses. Validates the stage tables at startup."""

import logging
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from conductor.errors import ConfigurationError
from conductor.registry import MODEL_ROLES, TIERS

logger = logging.getLogger(__name__)

_SETTINGS_PATH = Path(__file__).parent / "settings.yaml"

EXECUTION_MODES = ("debate", "sequential")
INTENSITIES = ("full", "standard", "light")


@dataclass
class RoleConfig:
    name: str
    tier: str
    persona: str = ""


@dataclass
class StepConfig:
    name: str
    instruction: str


@dataclass
class StageConfig:
    id: str
    name: str
    mode: str
    intensity: str
    default_tier: str
    synthesizer_tier: str
    synthesis_output: str
    roles: list[RoleConfig] = field(default_factory=list)
    steps: list[StepConfig] = field(default_factory=list)
    prerequisites: list[str] = field(default_factory=list)
    required_outputs: list[str] = field(default_factory=list)
    required_sections: dict[str, list[str]] = field(default_factory=dict)
    persona: str = ""
    code_producing: bool = False
    min_source_files: int = 0
    build_command: str | None = None
    test_command: str | None = None


@dataclass
class IntensityProfile:
    agents: int
    min_rounds: int
    max_rounds: int


@dataclass
class PromptsConfig:
    produce: str
    review: str
    extend: str
    evaluate: str
    synthesis: str
    step: str
    single: str
    compress: str
    retry_failures: str
    retry_file_list: str


@dataclass
class ModelsConfig:
    manifest_url: str
    fetch_timeout_sec: float
    cache_ttl_hours: float
    builtin_tiers: dict[str, str]
    builtin_timestamp: str


@dataclass
class AgentConfig:
    sdk: str
    api_key_env: str
    timeout_sec: int
    max_tokens: int


@dataclass
class DefaultsConfig:
    pipeline_version: str
    contention_threshold: float
    max_context_chars: int
    auto_checkpoint: bool = True
    checkpoint_retention: int = 10
    preserve_milestones: bool = True


@dataclass
class AppConfig:
    defaults: DefaultsConfig
    pipelines: dict[str, list[StageConfig]]
    intensity: dict[str, IntensityProfile]
    prompts: PromptsConfig
    models: ModelsConfig
    agent: AgentConfig

    def stages(self, version: str | None = None) -> list[StageConfig]:
        """Ordered stage list for a pipeline version (default version when None)."""
        key = version or self.defaults.pipeline_version
        if key not in self.pipelines:
            raise ConfigurationError(f"Unknown pipeline version: {key}")
        return self.pipelines[key]

    def stage(self, stage_id: str, version: str | None = None) -> StageConfig:
        for stage in self.stages(version):
            if stage.id == stage_id:
                return stage
        raise ConfigurationError(f"Unknown stage: {stage_id}")


def _parse_stage(raw: dict) -> StageConfig:
    try:
        return StageConfig(
            id=str(raw["id"]),
            name=str(raw["name"]),
            mode=str(raw["mode"]),
            intensity=str(raw.get("intensity", "standard")),
            default_tier=str(raw.get("default_tier", "balanced")),
            synthesizer_tier=str(raw.get("synthesizer_tier", raw.get("default_tier", "balanced"))),
            synthesis_output=str(raw.get("synthesis_output", "output.md")),
            roles=[
                RoleConfig(name=str(r["name"]), tier=str(r["tier"]), persona=str(r.get("persona", "")))
                for r in raw.get("roles", [])
            ],
            steps=[
                StepConfig(name=str(s["name"]), instruction=str(s["instruction"]))
                for s in raw.get("steps", [])
            ],
            prerequisites=[str(p) for p in raw.get("prerequisites", [])],
            required_outputs=[str(o) for o in raw.get("required_outputs", [])],
            required_sections={
                str(k): [str(h) for h in v] for k, v in (raw.get("required_sections") or {}).items()
            },
            persona=str(raw.get("persona", "")),
            code_producing=bool(raw.get("code_producing", False)),
            min_source_files=int(raw.get("min_source_files", 0)),
            build_command=raw.get("build_command"),
            test_command=raw.get("test_command"),
        )
    except KeyError as exc:
        raise ConfigurationError(f"Stage entry missing key {exc}: {raw!r}") from exc


def validate_pipeline(
    version: str,
    stages: list[StageConfig],
    intensity: dict[str, IntensityProfile],
) -> None:
    """Check one pipeline's stage table.

    Raises:
        ConfigurationError: On duplicate ids, unknown modes/intensities/tiers,
            too few roles or steps, or a prerequisite that is not an earlier stage.
    """
    seen: list[str] = []
    for stage in stages:
        where = f"pipeline {version}, stage {stage.id}"
        if stage.id in seen:
            raise ConfigurationError(f"{where}: duplicate stage id")
        if stage.mode not in EXECUTION_MODES:
            raise ConfigurationError(f"{where}: unknown execution mode '{stage.mode}'")
        if stage.intensity not in intensity:
            raise ConfigurationError(f"{where}: unknown intensity '{stage.intensity}'")
        for tier in [stage.default_tier, stage.synthesizer_tier] + [r.tier for r in stage.roles]:
            if tier not in MODEL_ROLES:
                raise ConfigurationError(f"{where}: unknown model role '{tier}'")
        if stage.mode == "debate" and len(stage.roles) < intensity[stage.intensity].agents:
            raise ConfigurationError(
                f"{where}: intensity '{stage.intensity}' needs "
                f"{intensity[stage.intensity].agents} roles, {len(stage.roles)} configured"
            )
        if stage.mode == "sequential" and not stage.steps:
            raise ConfigurationError(f"{where}: sequential stage has no steps")
        for prereq in stage.prerequisites:
            if prereq not in seen:
                raise ConfigurationError(
                    f"{where}: prerequisite '{prereq}' is not an earlier stage of this pipeline"
                )
        seen.append(stage.id)


def load_config(settings_path: Path = _SETTINGS_PATH) -> AppConfig:
    """Load and validate configuration from settings.yaml.

    Raises FileNotFoundError if settings file missing, ConfigurationError if
    any section is structurally invalid.
    """
    if not settings_path.exists():
        raise FileNotFoundError(f"Settings file not found: {settings_path}")

    with settings_path.open("r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    try:
        defaults_raw = raw["defaults"]
        defaults = DefaultsConfig(
            pipeline_version=str(defaults_raw["pipeline_version"]),
            contention_threshold=float(defaults_raw["contention_threshold"]),
            max_context_chars=int(defaults_raw["max_context_chars"]),
            auto_checkpoint=bool(defaults_raw.get("auto_checkpoint", True)),
            checkpoint_retention=int(defaults_raw.get("checkpoint_retention", 10)),
            preserve_milestones=bool(defaults_raw.get("preserve_milestones", True)),
        )

        intensity = {
            name: IntensityProfile(
                agents=int(p["agents"]),
                min_rounds=int(p["min_rounds"]),
                max_rounds=int(p["max_rounds"]),
            )
            for name, p in raw["intensity"].items()
        }

        prompts_raw = raw["prompts"]
        prompts = PromptsConfig(**{k: prompts_raw[k] for k in PromptsConfig.__dataclass_fields__})

        models_raw = raw["models"]
        models = ModelsConfig(
            manifest_url=str(models_raw["manifest_url"]),
            fetch_timeout_sec=float(models_raw["fetch_timeout_sec"]),
            cache_ttl_hours=float(models_raw.get("cache_ttl_hours", 24)),
            builtin_tiers={str(k): str(v) for k, v in models_raw["builtin_tiers"].items()},
            builtin_timestamp=str(models_raw.get("builtin_timestamp", "")),
        )

        agent_raw = raw["agent"]
        agent = AgentConfig(
            sdk=str(agent_raw["sdk"]),
            api_key_env=str(agent_raw["api_key_env"]),
            timeout_sec=int(agent_raw["timeout_sec"]),
            max_tokens=int(agent_raw["max_tokens"]),
        )

        pipelines = {
            str(version): [_parse_stage(s) for s in stages]
            for version, stages in raw["pipelines"].items()
        }
    except (KeyError, TypeError) as exc:
        raise ConfigurationError(f"Invalid settings file {settings_path}: missing {exc}") from exc

    for name, profile in intensity.items():
        if name not in INTENSITIES:
            raise ConfigurationError(f"Unknown intensity profile: {name}")
        if profile.agents < 1 or not 1 <= profile.min_rounds <= profile.max_rounds:
            raise ConfigurationError(
                f"Intensity '{name}' needs agents >= 1 and 1 <= min_rounds <= max_rounds"
            )
    if not 0.0 <= defaults.contention_threshold <= 1.0:
        raise ConfigurationError("contention_threshold must be within [0, 1]")
    if set(models.builtin_tiers) != set(TIERS):
        raise ConfigurationError(f"builtin_tiers must define exactly {', '.join(TIERS)}")
    if defaults.pipeline_version not in pipelines:
        raise ConfigurationError(f"Default pipeline version '{defaults.pipeline_version}' not defined")

    for version, stages in pipelines.items():
        validate_pipeline(version, stages, intensity)
        logger.debug("Pipeline %s: %d stages", version, len(stages))

    return AppConfig(
        defaults=defaults,
        pipelines=pipelines,
        intensity=intensity,
        prompts=prompts,
        models=models,
        agent=agent,
    )
