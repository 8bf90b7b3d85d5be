# executor.py
from __future__ import annotations

import os
import re
import signal
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

from .expressions import interpolate, interpolate_map
from .model import ActionStep, CommandStep, JobSpec, StepSpec
from .runners import Runner

if TYPE_CHECKING:
    from .actions import ActionRegistry

EXIT_TIMEOUT = 124
EXIT_UNKNOWN_ACTION = 127

_COMMAND_RE = re.compile(r"^::(set-output|set-env|upload-artifact) name=([^:]+)::(.*)$")


@dataclass
class StepResult:
    """What the engine gets back from one step execution."""
    exit_status: int
    outputs: Dict[str, str] = field(default_factory=dict)
    artifacts: Dict[str, bytes] = field(default_factory=dict)   # name -> blob
    env: Dict[str, str] = field(default_factory=dict)           # visible to later steps
    log: str = ""
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.exit_status == 0


@dataclass
class StepContext:
    """
    Job-local state shared by the steps of one job on its runner.

    `env` accumulates across steps; `expressions` is the ${{ }} lookup
    context (inputs, frozen upstream outputs, run/event metadata).
    """
    run_id: str
    job: JobSpec
    runner: Runner
    workspace: Path
    env: Dict[str, str] = field(default_factory=dict)
    expressions: Dict[str, Any] = field(default_factory=dict)
    cancelled: threading.Event = field(default_factory=threading.Event)
    step_timeout: Optional[float] = None    # minutes, set per step
    log_tail: int = 4000

    def expression_context(self) -> Dict[str, Any]:
        return {**self.expressions, "env": dict(self.env)}


class StepExecutor:
    """
    Boundary to whatever actually runs a step. Implementations must be
    thread-safe: independent jobs call execute() concurrently.
    """

    def workspace_for(self, run_id: str, job: str) -> Path:
        return Path(".").resolve()

    def execute(self, step: StepSpec, ctx: StepContext) -> StepResult:
        raise NotImplementedError


def parse_workflow_commands(text: str) -> Tuple[Dict[str, str], Dict[str, str], Dict[str, str]]:
    """
    Scan step output for workflow commands:
      ::set-output name=KEY::VALUE
      ::set-env name=KEY::VALUE
      ::upload-artifact name=NAME::PATH
    Returns (outputs, env, artifact_paths).
    """
    outputs: Dict[str, str] = {}
    env: Dict[str, str] = {}
    artifacts: Dict[str, str] = {}
    for line in text.splitlines():
        m = _COMMAND_RE.match(line.strip())
        if not m:
            continue
        command, name, value = m.group(1), m.group(2).strip(), m.group(3)
        if command == "set-output":
            outputs[name] = value
        elif command == "set-env":
            env[name] = value
        else:
            artifacts[name] = value.strip()
    return outputs, env, artifacts


def _terminate(proc: subprocess.Popen) -> None:
    """Best-effort termination of the whole process group."""
    try:
        if os.name == "posix":
            os.killpg(proc.pid, signal.SIGTERM)
        else:
            proc.terminate()
    except ProcessLookupError:
        return
    try:
        proc.wait(timeout=5)
    except subprocess.TimeoutExpired:
        if os.name == "posix":
            try:
                os.killpg(proc.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
        else:
            proc.kill()


class SubprocessStepExecutor(StepExecutor):
    """
    Runs `run:` steps as shell commands and `uses:` steps through the action
    registry.

    With isolate=True each job gets <workspace_root>/<run_id>/<job>; otherwise
    every job runs in workspace_root (a local checkout).
    """

    def __init__(
        self,
        workspace_root: str | Path = ".",
        *,
        isolate: bool = False,
        actions: Optional["ActionRegistry"] = None,
        poll_interval: float = 0.2,
    ):
        from .actions import builtin_actions

        self.workspace_root = Path(workspace_root).expanduser().resolve()
        self.isolate = isolate
        self.actions = actions if actions is not None else builtin_actions()
        self.poll_interval = poll_interval

    def workspace_for(self, run_id: str, job: str) -> Path:
        path = self.workspace_root / run_id / job if self.isolate else self.workspace_root
        path.mkdir(parents=True, exist_ok=True)
        return path

    def execute(self, step: StepSpec, ctx: StepContext) -> StepResult:
        if not isinstance(step, (CommandStep, ActionStep)):
            raise TypeError(f"Unsupported step type: {type(step).__name__}")
        exprs = ctx.expression_context()
        step_env = interpolate_map(step.env, exprs)
        ctx.step_timeout = step.timeout_minutes

        if isinstance(step, CommandStep):
            return self.run_command(
                interpolate(step.run, exprs),
                ctx,
                cwd=step.cwd,
                env=step_env,
                timeout_minutes=step.timeout_minutes,
            )

        action = self.actions.get(step.action)
        if action is None:
            return StepResult(
                exit_status=EXIT_UNKNOWN_ACTION,
                error=f"Unknown action '{step.uses}'. Known: {self.actions.names()}",
            )
        params = interpolate_map(step.params, exprs)
        saved_env = dict(ctx.env)
        ctx.env.update(step_env)
        try:
            return action(params, ctx, self)
        finally:
            # step-level env doesn't leak into later steps
            ctx.env.clear()
            ctx.env.update(saved_env)

    def _environ(self, ctx: StepContext, extra: Optional[Dict[str, str]]) -> Dict[str, str]:
        env = os.environ.copy()
        env.update(
            {
                "CI": "true",
                "RELAYCI": "true",
                "RELAYCI_RUN_ID": ctx.run_id,
                "RELAYCI_JOB": ctx.job.name,
                "RELAYCI_RUNNER": ctx.runner.name,
                "RELAYCI_WORKSPACE": str(ctx.workspace),
            }
        )
        env.update(ctx.env)
        env.update(extra or {})
        return env

    def run_command(
        self,
        command: str,
        ctx: StepContext,
        *,
        cwd: str | None = None,
        env: Optional[Dict[str, str]] = None,
        timeout_minutes: float | None = None,
    ) -> StepResult:
        workdir = (ctx.workspace / (cwd or ".")).resolve()
        if not workdir.exists():
            return StepResult(exit_status=1, error=f"working directory not found: {workdir}")

        timeout_minutes = timeout_minutes if timeout_minutes is not None else ctx.step_timeout
        deadline = None if timeout_minutes is None else time.monotonic() + timeout_minutes * 60

        proc = subprocess.Popen(
            command,
            shell=True,
            cwd=str(workdir),
            env=self._environ(ctx, env),
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            encoding="utf-8",
            errors="replace",
            start_new_session=(os.name == "posix"),
        )

        chunks: List[str] = []
        error: Optional[str] = None
        while True:
            try:
                out, _ = proc.communicate(timeout=self.poll_interval)
                chunks.append(out or "")
                break
            except subprocess.TimeoutExpired:
                if ctx.cancelled.is_set():
                    error = "cancelled"
                elif deadline is not None and time.monotonic() > deadline:
                    error = f"timed out after {timeout_minutes:g} minute(s)"
                else:
                    continue
                _terminate(proc)
                out, _ = proc.communicate()
                chunks.append(out or "")
                break

        text = "".join(chunks)
        outputs, env_updates, artifact_paths = parse_workflow_commands(text)

        artifacts: Dict[str, bytes] = {}
        for name, rel in artifact_paths.items():
            path = (workdir / rel).resolve()
            if path.is_file():
                artifacts[name] = path.read_bytes()

        exit_status = proc.returncode
        if error and error.startswith("timed out"):
            exit_status = EXIT_TIMEOUT

        return StepResult(
            exit_status=exit_status,
            outputs=outputs,
            artifacts=artifacts,
            env=env_updates,
            log=text[-ctx.log_tail:] if ctx.log_tail else text,
            error=error,
        )
