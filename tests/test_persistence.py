# tests/test_persistence.py
from __future__ import annotations

import pytest

from relayci.executor import StepResult
from relayci.model import EventKind
from relayci.persistence import SqlRunStore
from relayci.triggers import TriggerEvent

from conftest import ScriptedExecutor

WORKFLOW = {
    "name": "persisted",
    "on": {"push": None},
    "jobs": {
        "build": {"runs-on": "linux", "steps": [{"name": "make", "run": "make"}]},
        "test": {"runs-on": "linux", "needs": "build", "steps": [{"name": "pytest", "run": "pytest"}]},
    },
}


@pytest.fixture
def store():
    return SqlRunStore("sqlite:///:memory:")


def test_requires_url_or_engine():
    with pytest.raises(ValueError):
        SqlRunStore()


def test_run_snapshots_are_upserted(make_engine, tmp_path, store):
    executor = ScriptedExecutor(
        {"make": StepResult(exit_status=0, outputs={"v": "1"}, artifacts={"out.bin": b"123"}),
         "pytest": StepResult(exit_status=1, error="tests failed")},
        workspace=tmp_path,
    )
    engine = make_engine(executor, reporters=[store])
    engine.register(WORKFLOW)
    run = engine.submit(TriggerEvent(kind=EventKind.PUSH, ref="refs/heads/main", actor="dev"))[0]
    engine.wait(run.id, timeout=5)

    saved = store.load_run(run.id)
    assert saved["status"] == "failed"
    assert saved["workflow"] == "persisted"
    assert saved["event"]["actor"] == "dev"
    assert saved["finished_at"] is not None
    assert list(saved["jobs"]) == ["build", "test"]
    assert saved["jobs"]["build"]["outputs"] == {"v": "1"}
    assert saved["jobs"]["test"]["state"] == "failed"
    assert saved["jobs"]["test"]["steps"][0]["error"] == "tests failed"
    assert [(a["job"], a["name"], a["size"]) for a in saved["artifacts"]] == [("build", "out.bin", 3)]

    # a second snapshot of the same run does not duplicate rows
    store.publish(engine.report(run.id))
    again = store.load_run(run.id)
    assert len(again["artifacts"]) == 1
    assert list(again["jobs"]) == ["build", "test"]

    listed = store.list_runs(workflow="persisted")
    assert [r["run_id"] for r in listed] == [run.id]
    assert store.list_runs(workflow="other") == []


def test_unknown_run(store):
    assert store.load_run("nope") is None
