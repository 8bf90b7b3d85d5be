# tests/test_executor.py
"""Runs real shell commands; needs a POSIX shell."""
from __future__ import annotations

import os
import threading
import time

import pytest

from relayci.actions import ActionRegistry
from relayci.engine import Engine
from relayci.dsl import job, sh, uses
from relayci.executor import (
    EXIT_TIMEOUT,
    EXIT_UNKNOWN_ACTION,
    StepContext,
    StepResult,
    SubprocessStepExecutor,
    parse_workflow_commands,
)
from relayci.model import ActionStep, JobState
from relayci.runners import Runner, RunnerPool

pytestmark = pytest.mark.skipif(os.name != "posix", reason="uses /bin/sh semantics")


@pytest.fixture
def executor(tmp_path):
    return SubprocessStepExecutor(tmp_path, poll_interval=0.05)


@pytest.fixture
def ctx(executor):
    spec = job("build", sh("noop", "true"))
    return StepContext(
        run_id="run1",
        job=spec,
        runner=Runner("r1", frozenset({"linux"})),
        workspace=executor.workspace_for("run1", "build"),
        expressions={"inputs": {"target": "staging"}},
    )


def test_parse_workflow_commands():
    outputs, env, artifacts = parse_workflow_commands(
        "noise\n::set-output name=version::1.2.3\n  ::set-env name=MODE::fast\n::upload-artifact name=log:: out/log.txt\n"
    )
    assert outputs == {"version": "1.2.3"}
    assert env == {"MODE": "fast"}
    assert artifacts == {"log": "out/log.txt"}


def test_command_output_and_env(executor, ctx):
    result = executor.execute(
        sh("hello", 'echo "hi ${{ inputs.target }} $RELAYCI_JOB $EXTRA"; echo "::set-output name=answer::42"',
           env={"EXTRA": "x"}),
        ctx,
    )
    assert result.ok
    assert "hi staging build x" in result.log
    assert result.outputs == {"answer": "42"}


def test_undecodable_output_is_replaced(executor, ctx):
    result = executor.execute(sh("binary", "printf '\\377\\376ok\\n::set-output name=k::v\\n'; exit 0"), ctx)
    assert result.ok
    assert "ok" in result.log
    assert "\ufffd" in result.log
    assert result.outputs == {"k": "v"}


def test_unsupported_step_type_is_rejected(executor, ctx):
    with pytest.raises(TypeError, match="Unsupported step type"):
        executor.execute(object(), ctx)


def test_accumulated_env_is_visible(executor, ctx):
    ctx.env["FROM_EARLIER"] = "yes"
    result = executor.execute(sh("env", "test \"$FROM_EARLIER\" = yes && test \"$CI\" = true"), ctx)
    assert result.exit_status == 0


def test_non_zero_exit(executor, ctx):
    assert executor.execute(sh("fail", "exit 3"), ctx).exit_status == 3


def test_artifact_files_are_collected(executor, ctx):
    result = executor.execute(
        sh("art", "mkdir -p out && printf data > out/a.txt && echo '::upload-artifact name=a::out/a.txt'"),
        ctx,
    )
    assert result.artifacts == {"a": b"data"}


def test_working_directory(executor, ctx):
    (ctx.workspace / "sub").mkdir()
    result = executor.execute(sh("pwd", "pwd", cwd="sub"), ctx)
    assert result.log.strip().endswith("sub")
    missing = executor.execute(sh("pwd", "pwd", cwd="nope"), ctx)
    assert missing.exit_status == 1
    assert "not found" in missing.error


def test_timeout_kills_step(executor, ctx):
    started = time.monotonic()
    result = executor.execute(sh("slow", "sleep 10", timeout_minutes=0.01), ctx)
    assert result.exit_status == EXIT_TIMEOUT
    assert "timed out" in result.error
    assert time.monotonic() - started < 8


def test_cancellation_stops_running_step(executor, ctx):
    threading.Timer(0.2, ctx.cancelled.set).start()
    result = executor.execute(sh("slow", "sleep 10"), ctx)
    assert result.error == "cancelled"
    assert not result.ok


def test_unknown_action(executor, ctx):
    result = executor.execute(uses("someone/else@v2"), ctx)
    assert result.exit_status == EXIT_UNKNOWN_ACTION
    assert "someone/else@v2" in result.error


def test_custom_action_sees_step_env_only_during_step(tmp_path, ctx):
    registry = ActionRegistry()
    seen = {}

    @registry.register("acme/echo")
    def echo(params, step_ctx, executor):
        seen.update(step_ctx.env)
        return StepResult(exit_status=0, outputs={"said": params["text"]})

    executor = SubprocessStepExecutor(tmp_path, actions=registry)
    step = ActionStep(name="echo", uses="acme/echo@v1", params={"text": "${{ inputs.target }}"}, env={"TEMP": "1"})
    result = executor.execute(step, ctx)
    assert result.outputs == {"said": "staging"}
    assert seen == {"TEMP": "1"}
    assert ctx.env == {}
    assert "acme/echo" in registry and registry.names() == ["acme/echo"]


def test_isolated_workspaces(tmp_path):
    executor = SubprocessStepExecutor(tmp_path, isolate=True)
    path = executor.workspace_for("run1", "build")
    assert path == tmp_path.resolve() / "run1" / "build"
    assert path.is_dir()
    assert SubprocessStepExecutor(tmp_path).workspace_for("run1", "build") == tmp_path.resolve()


def test_binary_output_does_not_fail_the_job(tmp_path):
    pool = RunnerPool([Runner("r1", frozenset({"linux"}))])
    with Engine(pool, SubprocessStepExecutor(tmp_path, poll_interval=0.05), max_workers=2) as engine:
        engine.register({
            "name": "bytes",
            "on": {"push": None},
            "jobs": {"build": {"runs-on": "linux", "steps": [{"name": "emit", "run": "printf '\\377\\376ok'; exit 0"}]}},
        })
        run = engine.submit({"kind": "push", "ref": "refs/heads/main"})[0]
        report = engine.wait(run.id, timeout=10)
    step = report.jobs["build"].steps[0]
    assert report.jobs["build"].state is JobState.SUCCEEDED
    assert step.status == "succeeded"
    assert step.exit_status == 0
    assert "ok" in step.log
