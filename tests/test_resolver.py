"""Tests for conductor/resolver.py. HTTP is served by httpx.MockTransport."""

import json
from datetime import datetime, timedelta, timezone

import httpx

from conductor.registry import ModelTier, ResolvedModels
from conductor.resolver import ManifestAvailabilitySource, StaticAvailabilitySource

NOW = datetime(2025, 5, 2, 12, 0, 0, tzinfo=timezone.utc)

MANIFEST = {
    "lastUpdated": "2025-05-02",
    "tiers": {
        "opus": {"id": "claude-opus-remote", "available": False},
        "sonnet": {"id": "claude-sonnet-remote", "available": True},
        "haiku": {"id": "claude-haiku-remote", "available": True},
    },
}


class CountingTransport(httpx.MockTransport):
    def __init__(self, handler) -> None:
        self.calls = 0

        def counted(request: httpx.Request) -> httpx.Response:
            self.calls += 1
            return handler(request)

        super().__init__(counted)


def _source(config, transport, cache_path=None, now=NOW) -> ManifestAvailabilitySource:
    return ManifestAvailabilitySource(config, cache_path=cache_path, transport=transport, clock=lambda: now)


def _write_cache(path, fetched_at: datetime) -> None:
    payload = {
        "fetched_at": fetched_at.isoformat(),
        "manifest": {
            "source": "manifest",
            "timestamp": "2025-05-01",
            "tiers": {
                "opus": {"id": "claude-opus-cached", "available": True},
                "sonnet": {"id": "claude-sonnet-cached", "available": True},
                "haiku": {"id": "claude-haiku-cached", "available": True},
            },
        },
    }
    path.write_text(json.dumps(payload), encoding="utf-8")


def test_manifest_is_used_and_cached(sample_models_config, tmp_path):
    transport = CountingTransport(lambda request: httpx.Response(200, json=MANIFEST))
    cache = tmp_path / "model_cache.json"

    resolved = _source(sample_models_config, transport, cache).resolve()

    assert resolved.source == "manifest"
    assert resolved.timestamp == "2025-05-02"
    assert resolved.model_id("balanced") == "claude-sonnet-remote"
    assert resolved.is_available("reasoning") is False
    assert transport.calls == 1
    cached = json.loads(cache.read_text(encoding="utf-8"))
    assert cached["manifest"]["tiers"]["opus"]["id"] == "claude-opus-remote"


def test_timeout_falls_back_to_builtin(sample_models_config):
    def handler(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    resolved = _source(sample_models_config, CountingTransport(handler)).resolve()

    assert resolved.source == "builtin"
    assert resolved.model_id("reasoning") == "claude-opus-test"
    assert all(tier.available for tier in resolved.tiers.values())


def test_server_error_falls_back_to_builtin(sample_models_config):
    transport = CountingTransport(lambda request: httpx.Response(503, text="down"))
    assert _source(sample_models_config, transport).resolve().source == "builtin"


def test_malformed_manifest_falls_back_to_builtin(sample_models_config):
    bad = {"tiers": {"opus": {"id": "x"}, "sonnet": "nope"}}
    transport = CountingTransport(lambda request: httpx.Response(200, json=bad))
    assert _source(sample_models_config, transport).resolve().source == "builtin"


def test_non_json_manifest_falls_back_to_builtin(sample_models_config):
    transport = CountingTransport(lambda request: httpx.Response(200, text="<html>"))
    assert _source(sample_models_config, transport).resolve().source == "builtin"


def test_fresh_cache_skips_network(sample_models_config, tmp_path):
    cache = tmp_path / "model_cache.json"
    _write_cache(cache, NOW - timedelta(hours=1))
    transport = CountingTransport(lambda request: httpx.Response(200, json=MANIFEST))

    resolved = _source(sample_models_config, transport, cache).resolve()

    assert resolved.source == "cache"
    assert resolved.model_id("fast") == "claude-haiku-cached"
    assert transport.calls == 0


def test_stale_cache_refetches(sample_models_config, tmp_path):
    cache = tmp_path / "model_cache.json"
    _write_cache(cache, NOW - timedelta(hours=48))
    transport = CountingTransport(lambda request: httpx.Response(200, json=MANIFEST))

    resolved = _source(sample_models_config, transport, cache).resolve()

    assert resolved.source == "manifest"
    assert transport.calls == 1


def test_corrupt_cache_is_ignored(sample_models_config, tmp_path):
    cache = tmp_path / "model_cache.json"
    cache.write_text("{not json", encoding="utf-8")
    transport = CountingTransport(lambda request: httpx.Response(200, json=MANIFEST))
    assert _source(sample_models_config, transport, cache).resolve().source == "manifest"


def test_static_source_returns_same_table():
    table = ResolvedModels(source="manifest", tiers={"sonnet": ModelTier("s", True)})
    source = StaticAvailabilitySource(table)
    assert source.resolve() is table
    assert source.resolve() is table
