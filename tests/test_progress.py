"""Tests for conductor/progress.py."""

import json

import pytest

from conductor.errors import PipelineStateError
from conductor.models import IN_PROGRESS, PENDING, RUNNING, ProjectState
from conductor.progress import ProgressStore


def test_init_and_load(project_root, sample_stages):
    store = ProgressStore(project_root)
    assert not store.exists()

    store.init("demo", "v2", sample_stages, total_sprints=4)

    assert store.exists()
    state = store.load()
    assert state.project_name == "demo"
    assert state.total_sprints == 4
    assert state.current_sprint == 1
    assert state.pipeline.current_stage == "01-plan"
    assert state.pipeline.status == RUNNING
    assert [s.id for s in state.stages] == ["01-plan", "02-design", "03-build"]
    assert all(s.status == PENDING for s in state.stages)


def test_init_without_stages(project_root):
    with pytest.raises(PipelineStateError, match="no stages"):
        ProgressStore(project_root).init("demo", "v0", [])


def test_transition_persists(project_root, sample_stages):
    store = ProgressStore(project_root)
    store.init("demo", "v2", sample_stages)

    def start(state: ProjectState) -> None:
        state.stage("01-plan").status = IN_PROGRESS

    returned = store.transition(start)

    assert returned.stage("01-plan").status == IN_PROGRESS
    assert store.load().stage("01-plan").status == IN_PROGRESS
    assert not store.path.with_suffix(".json.tmp").exists()


def test_load_missing_file(project_root):
    with pytest.raises(PipelineStateError, match="conductor init"):
        ProgressStore(project_root).load()


@pytest.mark.parametrize("payload", ["{not json", json.dumps({"project_name": "x"}), json.dumps([1, 2])])
def test_load_corrupt_file(project_root, payload):
    store = ProgressStore(project_root)
    store.path.parent.mkdir(parents=True)
    store.path.write_text(payload, encoding="utf-8")
    with pytest.raises(PipelineStateError, match="Corrupt"):
        store.load()


def test_retry_state_round_trips(project_root, sample_stages):
    store = ProgressStore(project_root)
    store.init("demo", "v2", sample_stages)
    raw = json.loads(store.path.read_text(encoding="utf-8"))
    raw["pipeline"]["retry_state"] = {"stage": "01-plan", "attempt": 2, "last_failures": ["Missing plan.md"]}
    store.path.write_text(json.dumps(raw), encoding="utf-8")

    retry = store.load().pipeline.retry_state
    assert retry.stage == "01-plan"
    assert retry.attempt == 2
    assert retry.last_failures == ["Missing plan.md"]


def test_stage_lookup_unknown_id(project_root, sample_stages):
    state = ProgressStore(project_root).init("demo", "v2", sample_stages)
    with pytest.raises(KeyError):
        state.stage("99-nope")
