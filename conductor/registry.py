"""Model roles, backing tiers, and the built-in tier table used when no manifest is reachable."""

from dataclasses import dataclass, field

# User-facing role names; the only values allowed in stage config.
MODEL_ROLES = ("reasoning", "balanced", "fast")

# Internal tier names understood by the agent service.
TIERS = ("opus", "sonnet", "haiku")

ROLE_TO_TIER: dict[str, str] = {
    "reasoning": "opus",
    "balanced": "sonnet",
    "fast": "haiku",
}
TIER_TO_ROLE: dict[str, str] = {tier: role for role, tier in ROLE_TO_TIER.items()}

# Always assumed present; the only fallback target.
MID_ROLE = "balanced"


@dataclass
class ModelTier:
    id: str
    available: bool


@dataclass
class ResolvedModels:
    source: str                # "manifest", "cache" or "builtin"
    tiers: dict[str, ModelTier] = field(default_factory=dict)
    timestamp: str = ""

    def model_id(self, role: str) -> str:
        """Concrete model id backing a user-facing role."""
        return self.tiers[ROLE_TO_TIER[role]].id

    def is_available(self, role: str) -> bool:
        tier = self.tiers.get(ROLE_TO_TIER[role])
        return tier is not None and tier.available

    def to_dict(self) -> dict:
        return {
            "source": self.source,
            "timestamp": self.timestamp,
            "tiers": {name: {"id": t.id, "available": t.available} for name, t in self.tiers.items()},
        }


def builtin_models(builtin_tiers: dict[str, str], timestamp: str = "") -> ResolvedModels:
    """Offline table: every configured tier, all marked available."""
    return ResolvedModels(
        source="builtin",
        tiers={name: ModelTier(id=model_id, available=True) for name, model_id in builtin_tiers.items()},
        timestamp=timestamp,
    )


def parse_tiers(raw_tiers: object) -> dict[str, ModelTier]:
    """Validate a {tier: {id, available}} payload.

    Raises:
        ValueError: If any tier is missing or malformed.
    """
    if not isinstance(raw_tiers, dict):
        raise ValueError("tiers is not an object")
    tiers: dict[str, ModelTier] = {}
    for name in TIERS:
        entry = raw_tiers.get(name)
        if not isinstance(entry, dict) or not isinstance(entry.get("id"), str):
            raise ValueError(f"tier '{name}' missing or malformed")
        tiers[name] = ModelTier(id=entry["id"], available=bool(entry.get("available", False)))
    return tiers
