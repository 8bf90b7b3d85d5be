# actions/test.py
from __future__ import annotations

from typing import TYPE_CHECKING, Dict, List

from ..executor import StepResult

if TYPE_CHECKING:
    from ..executor import StepContext, SubprocessStepExecutor

_TRUE = {"1", "true", "yes", "on"}


def compile_test(params: Dict[str, str]) -> List[str]:
    """
    Turn `with: {framework, args, install}` into the shell commands to run.
    """
    framework = (params.get("framework") or "pytest").strip()
    args = (params.get("args") or "").strip()
    install = (params.get("install") or "false").strip().lower() in _TRUE

    if framework == "pytest":
        out: List[str] = []
        if install:
            out.append("python -m pip install -r requirements.txt")
        out.append(f"pytest {args}".strip())
        return out

    if framework == "npm":
        out = []
        if install:
            out.append("npm ci")
        out.append(f"npm test {args}".strip())
        return out

    raise ValueError(f"Unknown framework: {framework!r}")


def test(params: Dict[str, str], ctx: "StepContext", executor: "SubprocessStepExecutor") -> StepResult:
    try:
        commands = compile_test(params)
    except ValueError as e:
        return StepResult(exit_status=2, error=str(e))

    cwd = params.get("working-directory")
    logs: List[str] = []
    result = StepResult(exit_status=0)
    for cmd in commands:
        result = executor.run_command(cmd, ctx, cwd=cwd)
        logs.append(f"$ {cmd}\n{result.log}")
        if not result.ok:
            break

    text = "\n".join(logs)
    result.log = text[-ctx.log_tail:] if ctx.log_tail else text
    return result
