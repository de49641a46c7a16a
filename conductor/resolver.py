"""Model availability with fallback: fresh cache, then remote manifest, then the built-in table.

The built-in table always succeeds, so resolve() never raises and failures
along the way are only visible at DEBUG level.
"""

import json
import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path

import httpx

from config.config_loader import ModelsConfig
from conductor.errors import AvailabilitySourceFailure
from conductor.fallback import resolve_with_fallback
from conductor.interfaces import AvailabilitySource
from conductor.registry import ResolvedModels, builtin_models, parse_tiers

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ManifestAvailabilitySource(AvailabilitySource):
    """Fetches the tier manifest over HTTP with a hard timeout."""

    def __init__(
        self,
        config: ModelsConfig,
        cache_path: Path | None = None,
        transport: httpx.BaseTransport | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._config = config
        self._cache_path = cache_path
        self._transport = transport
        self._clock = clock

    def resolve(self) -> ResolvedModels:
        providers = []
        if self._cache_path is not None:
            providers.append(("cache", self._from_cache))
        providers.append(("manifest", self._from_manifest))

        name, resolved = resolve_with_fallback(
            providers,
            last_resort=builtin_models(self._config.builtin_tiers, self._config.builtin_timestamp),
        )
        if name == "manifest":
            self._write_cache(resolved)
        logger.debug("Model tiers resolved from %s", resolved.source)
        return resolved

    def _from_manifest(self) -> ResolvedModels:
        try:
            with httpx.Client(timeout=self._config.fetch_timeout_sec, transport=self._transport) as client:
                response = client.get(self._config.manifest_url)
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise AvailabilitySourceFailure(f"Manifest fetch failed: {exc}") from exc

        if not isinstance(data, dict):
            raise AvailabilitySourceFailure("Manifest is not a JSON object")
        try:
            tiers = parse_tiers(data.get("tiers"))
        except ValueError as exc:
            raise AvailabilitySourceFailure(f"Invalid manifest structure: {exc}") from exc

        return ResolvedModels(source="manifest", tiers=tiers, timestamp=str(data.get("lastUpdated", "")))

    def _from_cache(self) -> ResolvedModels | None:
        if self._cache_path is None or not self._cache_path.exists():
            return None
        raw = json.loads(self._cache_path.read_text(encoding="utf-8"))
        fetched_at = datetime.fromisoformat(raw["fetched_at"])
        if self._clock() - fetched_at > timedelta(hours=self._config.cache_ttl_hours):
            logger.debug("Model cache is stale (fetched %s)", raw["fetched_at"])
            return None
        return ResolvedModels(
            source="cache",
            tiers=parse_tiers(raw["manifest"]["tiers"]),
            timestamp=str(raw["manifest"].get("timestamp", "")),
        )

    def _write_cache(self, resolved: ResolvedModels) -> None:
        if self._cache_path is None:
            return
        payload = {"fetched_at": self._clock().isoformat(), "manifest": resolved.to_dict()}
        try:
            self._cache_path.parent.mkdir(parents=True, exist_ok=True)
            self._cache_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        except OSError as exc:
            logger.debug("Could not write model cache %s: %s", self._cache_path, exc)


class StaticAvailabilitySource(AvailabilitySource):
    """Serves an already-resolved table, so one run sees one consistent answer."""

    def __init__(self, resolved: ResolvedModels) -> None:
        self._resolved = resolved

    def resolve(self) -> ResolvedModels:
        return self._resolved
