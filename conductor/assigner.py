"""Model assigner: maps each stage's ideal roles onto what is actually available.

Fallback is two-level only: ideal role if its tier is available, else the
balanced role (used even when reported unavailable, as the last resort).
"""

import logging
from dataclasses import dataclass, field

from config.config_loader import StageConfig
from conductor.fallback import resolve_with_fallback
from conductor.registry import MID_ROLE, ResolvedModels

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelAssignment:
    """Resolved roles for one run. Recompute when availability changes."""

    source: str
    # stage -> role index -> role name
    stage_roles: dict[str, dict[int, str]] = field(default_factory=dict)
    stage_defaults: dict[str, str] = field(default_factory=dict)
    synthesizers: dict[str, str] = field(default_factory=dict)

    def role_for(self, stage_id: str, index: int) -> str:
        roles = self.stage_roles.get(stage_id, {})
        if index in roles:
            return roles[index]
        return self.stage_defaults.get(stage_id, MID_ROLE)


def resolve_role(ideal: str, resolved: ResolvedModels) -> str:
    """Pick the role to use for an ideal role given current availability."""
    _, role = resolve_with_fallback(
        [
            ("ideal", lambda: ideal if resolved.is_available(ideal) else None),
            ("mid", lambda: MID_ROLE if resolved.is_available(MID_ROLE) else None),
        ],
        last_resort=MID_ROLE,
    )
    return role


def assign_models_to_roles(resolved: ResolvedModels, stages: list[StageConfig]) -> ModelAssignment:
    """Assign roles for every (stage, role-index) pair plus stage defaults."""
    stage_roles: dict[str, dict[int, str]] = {}
    stage_defaults: dict[str, str] = {}
    synthesizers: dict[str, str] = {}

    for stage in stages:
        stage_roles[stage.id] = {i: resolve_role(r.tier, resolved) for i, r in enumerate(stage.roles)}
        stage_defaults[stage.id] = resolve_role(stage.default_tier, resolved)
        synthesizers[stage.id] = resolve_role(stage.synthesizer_tier, resolved)

    downgraded = sum(
        1
        for stage in stages
        for i, r in enumerate(stage.roles)
        if stage_roles[stage.id][i] != r.tier
    )
    if downgraded:
        logger.warning("%d debate role(s) fell back to the %s tier", downgraded, MID_ROLE)

    return ModelAssignment(
        source=resolved.source,
        stage_roles=stage_roles,
        stage_defaults=stage_defaults,
        synthesizers=synthesizers,
    )
