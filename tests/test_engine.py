# tests/test_engine.py
from __future__ import annotations

import threading
import time

import pytest

from relayci.errors import (
    GateNotFoundError,
    RunActiveError,
    RunNotFoundError,
    UnauthorizedReviewerError,
    ValidationError,
)
from relayci.executor import StepResult
from relayci.model import EnvironmentSpec, EventKind, JobState, RunStatus
from relayci.report import StatusReporter
from relayci.runners import Runner
from relayci.triggers import TriggerEvent

from conftest import BASIC_YAML, ScriptedExecutor

PUSH_MAIN = TriggerEvent(kind=EventKind.PUSH, ref="refs/heads/main", actor="dev")


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def workflow(jobs, environments=None, on=None):
    doc = {"name": "wf", "on": on or {"push": None}, "jobs": jobs}
    if environments:
        doc["environments"] = environments
    return doc


def step_job(*commands, **extra):
    return {"runs-on": "linux", "steps": [{"name": c, "run": c} for c in commands], **extra}


class RecordingReporter(StatusReporter):
    def __init__(self):
        self.published = []
        self.finalized = []

    def publish(self, report):
        self.published.append(report.status)

    def finalize(self, report):
        self.finalized.append(report)


def test_single_job_push_succeeds(make_engine, tmp_path):
    executor = ScriptedExecutor(workspace=tmp_path)
    engine = make_engine(executor)
    engine.register(BASIC_YAML)
    runs = engine.submit(PUSH_MAIN)
    assert len(runs) == 1
    report = engine.wait(runs[0].id, timeout=5)
    assert report.status is RunStatus.SUCCEEDED
    assert report.jobs["build"].state is JobState.SUCCEEDED
    assert report.jobs["build"].runner == "linux-1"
    assert report.jobs["build"].exit_statuses == [0]
    assert executor.calls == [("build", "make build", "linux-1")]


def test_non_matching_event_creates_no_run(make_engine):
    engine = make_engine()
    engine.register(BASIC_YAML)
    assert engine.submit(TriggerEvent(kind=EventKind.PUSH, ref="refs/heads/feature")) == []
    assert engine.runs() == []


def test_failure_cancels_dependents_without_running_them(make_engine, tmp_path):
    executor = ScriptedExecutor({"build/compile": StepResult(exit_status=1, error="boom")}, workspace=tmp_path)
    engine = make_engine(executor)
    engine.register(workflow({
        "build": step_job("compile"),
        "test": step_job("pytest", needs="build"),
        "deploy": step_job("ship", needs="test"),
        "docs": step_job("mkdocs"),
    }))
    run = engine.submit(PUSH_MAIN)[0]
    report = engine.wait(run.id, timeout=5)

    assert report.status is RunStatus.FAILED
    assert report.jobs["build"].state is JobState.FAILED
    assert report.jobs["test"].state is JobState.CANCELLED
    assert report.jobs["deploy"].state is JobState.CANCELLED
    assert "build" in report.jobs["test"].reason
    assert report.jobs["docs"].state is JobState.SUCCEEDED
    assert "test" not in executor.jobs_called()
    assert "deploy" not in executor.jobs_called()
    assert report.jobs["test"].runner is None


def test_failed_step_skips_the_rest(make_engine, tmp_path):
    executor = ScriptedExecutor({"two": StepResult(exit_status=2)}, workspace=tmp_path)
    engine = make_engine(executor)
    engine.register(workflow({"build": step_job("one", "two", "three")}))
    report = engine.wait(engine.submit(PUSH_MAIN)[0].id, timeout=5)
    steps = report.jobs["build"].steps
    assert [s.status for s in steps] == ["succeeded", "failed", "skipped"]
    assert report.jobs["build"].exit_statuses == [0, 2, None]
    assert [c[1] for c in executor.calls] == ["one", "two"]


def test_job_waits_on_gate_until_approved(make_engine, tmp_path):
    executor = ScriptedExecutor(workspace=tmp_path)
    engine = make_engine(executor)
    engine.register(workflow(
        {"deploy": step_job("ship", environment="production")},
        environments={"production": {"required-approvals": 1, "wait-timer": 0, "reviewers": ["alice"]}},
    ))
    run = engine.submit(PUSH_MAIN)[0]

    assert run.jobs["deploy"].state is JobState.WAITING_ON_GATE
    assert run.status is RunStatus.RUNNING
    assert engine.pool.holders() == {}
    assert executor.calls == []

    with pytest.raises(UnauthorizedReviewerError):
        engine.approve(run.id, "production", "mallory")
    with pytest.raises(GateNotFoundError):
        engine.approve(run.id, "staging", "alice")

    engine.approve(run.id, "production", "alice")
    report = engine.wait(run.id, timeout=5)
    assert report.status is RunStatus.SUCCEEDED
    assert report.gates[0]["state"] == "satisfied"
    assert report.gates[0]["approvals"] == ["alice"]


def test_gate_opens_only_when_dependencies_succeed(make_engine, tmp_path):
    release = threading.Event()

    def slow(step, ctx):
        release.wait(5)
        return StepResult(exit_status=0)

    engine = make_engine(ScriptedExecutor({"compile": slow}, workspace=tmp_path))
    engine.register(workflow(
        {"build": step_job("compile"), "deploy": step_job("ship", needs="build", environment="production")},
        environments={"production": {"required-approvals": 1, "reviewers": ["alice"]}},
    ))
    run = engine.submit(PUSH_MAIN)[0]
    with pytest.raises(GateNotFoundError):
        engine.approve(run.id, "production", "alice")
    release.set()
    assert wait_for(lambda: run.jobs["deploy"].state is JobState.WAITING_ON_GATE)
    engine.approve(run.id, "production", "alice")
    assert engine.wait(run.id, timeout=5).status is RunStatus.SUCCEEDED


def test_wait_timer_follows_injected_clock(make_engine, clock):
    engine = make_engine()
    engine.register(workflow(
        {"deploy": step_job("ship", environment="staging")},
        environments={"staging": {"wait-timer": 1}},
    ))
    run = engine.submit(PUSH_MAIN)[0]
    assert run.jobs["deploy"].state is JobState.WAITING_ON_GATE
    clock.advance(30)
    engine.tick()
    assert run.jobs["deploy"].state is JobState.WAITING_ON_GATE
    clock.advance(30)
    engine.tick()
    assert engine.wait(run.id, timeout=5).status is RunStatus.SUCCEEDED


def test_rejection_cancels_gated_job_and_dependents(make_engine, tmp_path):
    executor = ScriptedExecutor(workspace=tmp_path)
    engine = make_engine(executor)
    engine.register(workflow(
        {
            "deploy": step_job("ship", environment="production"),
            "notify": step_job("mail", needs="deploy"),
        },
        environments={"production": {"required-approvals": 1, "reviewers": ["alice", "bob"]}},
    ))
    run = engine.submit(PUSH_MAIN)[0]
    engine.reject(run.id, "production", "bob")
    report = engine.wait(run.id, timeout=5)
    assert report.jobs["deploy"].state is JobState.CANCELLED
    assert "rejected by bob" in report.jobs["deploy"].reason
    assert report.jobs["notify"].state is JobState.CANCELLED
    assert report.status is RunStatus.FAILED
    assert executor.calls == []


def test_engine_level_environment_and_definition_override(make_engine):
    gated = EnvironmentSpec("production", required_approvals=1, reviewers=frozenset({"ops"}))
    engine = make_engine(environments=[gated])

    engine.register(workflow({"deploy": step_job("ship", environment="production")}))
    run = engine.submit(PUSH_MAIN)[0]
    assert run.jobs["deploy"].state is JobState.WAITING_ON_GATE
    engine.cancel(run.id)

    engine.register(workflow(
        {"deploy": step_job("ship", environment="production")},
        environments={"production": {"required-approvals": 0}},
    ))
    run = engine.submit(PUSH_MAIN)[0]
    assert engine.wait(run.id, timeout=5).status is RunStatus.SUCCEEDED


def test_unconfigured_environment_is_not_gated(make_engine):
    engine = make_engine()
    engine.register(workflow({"deploy": step_job("ship", environment="preview")}))
    assert engine.wait(engine.submit(PUSH_MAIN)[0].id, timeout=5).status is RunStatus.SUCCEEDED


@pytest.mark.parametrize(
    "coverage, state",
    [
        ("75.00", JobState.FAILED),
        ("80", JobState.SUCCEEDED),
        ("91.5%", JobState.SUCCEEDED),
        (None, JobState.FAILED),
        ("nan", JobState.FAILED),
        ("inf", JobState.FAILED),
        ("garbage", JobState.FAILED),
    ],
)
def test_coverage_threshold(make_engine, tmp_path, coverage, state):
    outputs = {"coverage": coverage} if coverage is not None else {}
    executor = ScriptedExecutor({"cov": StepResult(exit_status=0, outputs=outputs)}, workspace=tmp_path)
    engine = make_engine(executor)
    engine.register(workflow({"test": step_job("cov", **{"coverage-threshold": 80})}))
    report = engine.wait(engine.submit(PUSH_MAIN)[0].id, timeout=5)
    assert report.jobs["test"].state is state
    if state is JobState.FAILED:
        assert "coverage" in report.jobs["test"].reason
        assert report.jobs["test"].exit_statuses == [0]


def test_retry_until_success(make_engine, tmp_path):
    attempts = []

    def flaky(step, ctx):
        attempts.append(1)
        return StepResult(exit_status=0 if len(attempts) == 3 else 1)

    engine = make_engine(ScriptedExecutor({"flaky": flaky}, workspace=tmp_path))
    engine.register(workflow({"build": {"runs-on": "linux", "steps": [{"name": "flaky", "run": "x", "retry": 3}]}}))
    report = engine.wait(engine.submit(PUSH_MAIN)[0].id, timeout=5)
    assert report.status is RunStatus.SUCCEEDED
    assert report.jobs["build"].steps[0].attempts == 3


def test_retries_exhausted(make_engine, tmp_path):
    engine = make_engine(ScriptedExecutor({"flaky": StepResult(exit_status=1)}, workspace=tmp_path))
    engine.register(workflow({"build": {"runs-on": "linux", "steps": [{"name": "flaky", "run": "x", "retry": 2}]}}))
    report = engine.wait(engine.submit(PUSH_MAIN)[0].id, timeout=5)
    assert report.jobs["build"].state is JobState.FAILED
    assert report.jobs["build"].steps[0].attempts == 2


def test_outputs_env_and_artifacts_flow_downstream(make_engine, tmp_path):
    seen = {}

    def produce(step, ctx):
        return StepResult(exit_status=0, outputs={"version": "1.2.3"}, env={"STAGE": "built"},
                          artifacts={"pkg.whl": b"wheel"})

    def same_job(step, ctx):
        seen["env"] = dict(ctx.env)
        return StepResult(exit_status=0)

    def consume(step, ctx):
        seen["needs"] = ctx.expressions["needs"]
        seen["inputs"] = ctx.expressions["inputs"]
        return StepResult(exit_status=0)

    executor = ScriptedExecutor({"produce": produce, "after": same_job, "consume": consume}, workspace=tmp_path)
    engine = make_engine(executor)
    engine.register(workflow({
        "build": step_job("produce", "after", env={"BASE": "1"}),
        "deploy": step_job("consume", needs="build"),
    }))
    report = engine.wait(engine.submit(PUSH_MAIN)[0].id, timeout=5)

    assert report.status is RunStatus.SUCCEEDED
    assert seen["env"] == {"BASE": "1", "STAGE": "built"}
    assert seen["needs"] == {"build": {"outputs": {"version": "1.2.3"}, "result": "succeeded"}}
    assert report.jobs["build"].outputs == {"version": "1.2.3"}
    [artifact] = report.jobs["build"].artifacts
    assert artifact["name"] == "pkg.whl"
    assert engine.artifacts.get(artifact["ref"]) == b"wheel"


def test_upstream_outputs_are_frozen(make_engine):
    engine = make_engine(ScriptedExecutor({"produce": StepResult(exit_status=0, outputs={"k": "v"})}))
    engine.register(workflow({"build": step_job("produce")}))
    run = engine.submit(PUSH_MAIN)[0]
    engine.wait(run.id, timeout=5)
    with pytest.raises(TypeError):
        run.jobs["build"].outputs["k"] = "changed"


def test_unroutable_job_queues_until_a_runner_joins(make_engine):
    engine = make_engine()
    engine.register(workflow({
        "win": {"runs-on": "windows", "steps": [{"run": "dir"}]},
        "after": step_job("x", needs="win"),
    }))
    run = engine.submit(PUSH_MAIN)[0]
    assert engine.pool.queued() == {frozenset({"windows"}): [f"{run.id}/win"]}
    time.sleep(0.1)
    assert run.jobs["win"].state is JobState.PENDING
    assert run.status is RunStatus.PENDING

    engine.pool.add(Runner("win-1", frozenset({"windows"})))
    report = engine.wait(run.id, timeout=5)
    assert report.status is RunStatus.SUCCEEDED
    assert report.jobs["win"].runner == "win-1"
    assert report.jobs["after"].runner == "linux-1"


def test_acquire_timeout_fails_queued_job(make_engine):
    engine = make_engine(acquire_timeout=0.1)
    engine.register(workflow({
        "win": {"runs-on": "windows", "steps": [{"run": "dir"}]},
        "after": step_job("x", needs="win"),
    }))
    report = engine.wait(engine.submit(PUSH_MAIN)[0].id, timeout=5)
    assert report.jobs["win"].state is JobState.FAILED
    assert "windows" in report.jobs["win"].reason
    assert report.jobs["after"].state is JobState.CANCELLED
    assert report.status is RunStatus.FAILED
    assert engine.pool.queued() == {}


def test_queued_job_does_not_hold_a_worker(make_engine, tmp_path):
    release_a = threading.Event()
    started = {}

    def work(step, ctx):
        started[ctx.job.name] = time.monotonic()
        if ctx.job.name == "a":
            release_a.wait(5)
        return StepResult(exit_status=0)

    runners = [Runner("linux-1", frozenset({"linux"})), Runner("mac-1", frozenset({"macos"}))]
    executor = ScriptedExecutor({"work": work}, workspace=tmp_path)
    engine = make_engine(executor, runners=runners, max_workers=2)
    engine.register(workflow({
        "a": step_job("work"),
        "b": step_job("work"),
        "c": {"runs-on": "macos", "steps": [{"name": "work", "run": "work"}]},
    }))
    run = engine.submit(PUSH_MAIN)[0]

    # b waits for linux-1 without a thread, so c gets the second worker
    assert wait_for(lambda: "c" in started, timeout=2)
    assert "b" not in started
    assert run.jobs["b"].state is JobState.PENDING
    release_a.set()
    report = engine.wait(run.id, timeout=5)
    assert report.status is RunStatus.SUCCEEDED
    assert report.jobs["b"].runner == "linux-1"


def test_one_runner_never_runs_two_jobs(make_engine, tmp_path):
    def busy(step, ctx):
        time.sleep(0.05)
        return StepResult(exit_status=0)

    executor = ScriptedExecutor({"work": busy}, workspace=tmp_path)
    engine = make_engine(executor)
    engine.register(workflow({name: step_job("work") for name in ("a", "b", "c", "d")}))
    report = engine.wait(engine.submit(PUSH_MAIN)[0].id, timeout=10)
    assert report.status is RunStatus.SUCCEEDED
    assert executor.overlaps == []
    assert sorted(executor.jobs_called()) == ["a", "b", "c", "d"]


def test_independent_jobs_use_parallel_runners(make_engine, tmp_path):
    both_running = threading.Barrier(2, timeout=5)

    def rendezvous(step, ctx):
        both_running.wait()
        return StepResult(exit_status=0)

    runners = [Runner("r1", frozenset({"linux"})), Runner("r2", frozenset({"linux"}))]
    executor = ScriptedExecutor({"work": rendezvous}, workspace=tmp_path)
    engine = make_engine(executor, runners=runners)
    engine.register(workflow({"a": step_job("work"), "b": step_job("work")}))
    report = engine.wait(engine.submit(PUSH_MAIN)[0].id, timeout=10)
    assert report.status is RunStatus.SUCCEEDED
    assert {report.jobs["a"].runner, report.jobs["b"].runner} == {"r1", "r2"}


def test_cancel_stops_running_and_pending_jobs(make_engine, tmp_path):
    started = threading.Event()

    def blocking(step, ctx):
        started.set()
        ctx.cancelled.wait(5)
        return StepResult(exit_status=143, error="terminated")

    executor = ScriptedExecutor({"long": blocking}, workspace=tmp_path)
    engine = make_engine(executor)
    engine.register(workflow({"build": step_job("long"), "test": step_job("pytest", needs="build")}))
    run = engine.submit(PUSH_MAIN)[0]
    assert started.wait(5)

    report = engine.cancel(run.id)
    assert report.status is RunStatus.CANCELLED
    assert {j.state for j in report.jobs.values()} == {JobState.CANCELLED}
    assert run.done.is_set()
    assert wait_for(lambda: engine.pool.holders() == {})
    assert engine.report(run.id).status is RunStatus.CANCELLED
    assert "test" not in executor.jobs_called()


def test_executor_crash_fails_job(make_engine, tmp_path):
    def explode(step, ctx):
        raise RuntimeError("disk on fire")

    engine = make_engine(ScriptedExecutor({"boom": explode}, workspace=tmp_path))
    engine.register(workflow({"build": step_job("boom", "after")}))
    report = engine.wait(engine.submit(PUSH_MAIN)[0].id, timeout=5)
    assert report.jobs["build"].state is JobState.FAILED
    assert "disk on fire" in report.jobs["build"].reason
    crashed, rest = report.jobs["build"].steps
    assert crashed.status == "failed"
    assert crashed.finished_at is not None
    assert "disk on fire" in crashed.error
    assert rest.status == "skipped"
    assert engine.pool.holders() == {}


def test_reporters_get_one_final_snapshot(make_engine):
    recorder = RecordingReporter()

    class Broken(StatusReporter):
        def publish(self, report):
            raise RuntimeError("reporter down")

    engine = make_engine(reporters=[Broken(), recorder])
    engine.register(workflow({"a": step_job("x"), "b": step_job("y", needs="a")}))
    run = engine.submit(PUSH_MAIN)[0]
    report = engine.wait(run.id, timeout=5)
    assert report.status is RunStatus.SUCCEEDED
    assert len(recorder.finalized) == 1
    assert recorder.finalized[0].status is RunStatus.SUCCEEDED
    assert RunStatus.RUNNING in recorder.published
    assert recorder.finalized[0].finished_at is not None


def test_dispatch_validates_inputs_before_creating_runs(make_engine, tmp_path):
    seen = {}

    def capture(step, ctx):
        seen.update(ctx.expressions["inputs"])
        return StepResult(exit_status=0)

    engine = make_engine(ScriptedExecutor({"deploy": capture}, workspace=tmp_path))
    engine.register(workflow(
        {"release": step_job("deploy")},
        on={"workflow_dispatch": {"inputs": {
            "target": {"type": "choice", "options": ["staging", "production"], "required": True},
        }}},
    ))
    with pytest.raises(ValidationError):
        engine.dispatch("wf", {"target": "Production"})
    assert engine.runs() == []

    run = engine.dispatch("wf", {"target": "production"}, actor="alice")
    assert engine.wait(run.id, timeout=5).status is RunStatus.SUCCEEDED
    assert seen == {"target": "production"}


def test_schedule_event_from_dict(make_engine):
    engine = make_engine()
    engine.register(workflow({"nightly": step_job("x")}, on={"schedule": [{"cron": "0 3 * * *"}]}))
    runs = engine.submit({"kind": "schedule", "timestamp": "2024-05-01T03:00:00+00:00"})
    assert len(runs) == 1
    assert engine.submit({"kind": "schedule", "timestamp": "2024-05-01T04:00:00+00:00"}) == []


def test_register_reuses_definition_per_version(make_engine):
    engine = make_engine()
    first = engine.register(BASIC_YAML)
    assert engine.register(BASIC_YAML) is first
    assert engine.workflow("ci") is first
    assert [w.name for w in engine.workflows()] == ["ci"]
    engine.unregister("ci")
    assert engine.workflows() == []


def test_runs_from_old_version_keep_their_graph(make_engine):
    release = threading.Event()

    def slow(step, ctx):
        release.wait(5)
        return StepResult(exit_status=0)

    engine = make_engine(ScriptedExecutor({"compile": slow}))
    engine.register(workflow({"build": step_job("compile")}))
    old_run = engine.submit(PUSH_MAIN)[0]
    engine.register(workflow({"build": step_job("compile"), "extra": step_job("more")}))
    release.set()
    report = engine.wait(old_run.id, timeout=5)
    assert list(report.jobs) == ["build"]


def test_unknown_run(make_engine):
    engine = make_engine()
    with pytest.raises(RunNotFoundError):
        engine.get_run("nope")
    with pytest.raises(RunNotFoundError):
        engine.cancel("nope")


def test_wait_timeout(make_engine):
    engine = make_engine()
    engine.register(workflow(
        {"deploy": step_job("ship", environment="production")},
        environments={"production": {"required-approvals": 1, "reviewers": ["alice"]}},
    ))
    run = engine.submit(PUSH_MAIN)[0]
    with pytest.raises(TimeoutError):
        engine.wait(run.id, timeout=0.05)


def test_forget_drops_finished_run_and_gates(make_engine):
    engine = make_engine()
    engine.register(workflow(
        {"deploy": step_job("ship", environment="production")},
        environments={"production": {"required-approvals": 1, "reviewers": ["alice"]}},
    ))
    run = engine.submit(PUSH_MAIN)[0]
    assert wait_for(lambda: run.jobs["deploy"].state is JobState.WAITING_ON_GATE)
    with pytest.raises(RunActiveError):
        engine.forget(run.id)

    engine.approve(run.id, "production", "alice")
    engine.wait(run.id, timeout=5)
    report = engine.forget(run.id)
    assert report.status is RunStatus.SUCCEEDED
    assert engine.runs() == []
    assert engine.gates.gates_for(run.id) == []
    with pytest.raises(RunNotFoundError):
        engine.report(run.id)


def test_slow_reporter_does_not_stall_other_runs(make_engine, tmp_path):
    go = threading.Event()
    stalled = threading.Event()
    unblock = threading.Event()

    def held(step, ctx):
        go.wait(5)
        return StepResult(exit_status=0)

    class SlowForOneWorkflow(StatusReporter):
        def publish(self, report):
            steps = report.jobs["build"].steps
            if report.workflow == "slow" and steps and steps[0].status == "succeeded" and not stalled.is_set():
                stalled.set()
                unblock.wait(5)

    runners = [Runner("r1", frozenset({"linux"})), Runner("r2", frozenset({"linux"}))]
    engine = make_engine(ScriptedExecutor({"x": held}, workspace=tmp_path),
                         reporters=[SlowForOneWorkflow()], runners=runners)
    engine.register({**workflow({"build": step_job("x")}, on={"push": {"branches": ["slow"]}}), "name": "slow"})
    engine.register({**workflow({"build": step_job("y")}, on={"push": {"branches": ["fast"]}}), "name": "fast"})

    slow = engine.submit(TriggerEvent(kind=EventKind.PUSH, ref="refs/heads/slow"))[0]
    go.set()
    assert stalled.wait(5)
    try:
        fast = engine.submit(TriggerEvent(kind=EventKind.PUSH, ref="refs/heads/fast"))[0]
        assert engine.wait(fast.id, timeout=2).status is RunStatus.SUCCEEDED
    finally:
        unblock.set()
    assert engine.wait(slow.id, timeout=5).status is RunStatus.SUCCEEDED


def test_manual_dispatch_ignores_ref_filters(make_engine):
    engine = make_engine()
    engine.register(workflow({"build": step_job("x")}, on={"workflow_dispatch": None, "push": {"branches": ["main"]}}))
    run = engine.dispatch("wf", ref="refs/heads/feature/x")
    assert engine.wait(run.id, timeout=5).status is RunStatus.SUCCEEDED
    assert engine.submit(TriggerEvent(kind=EventKind.PUSH, ref="refs/heads/feature/x")) == []
