# actions/lint.py
from __future__ import annotations

import shlex
import shutil
from typing import TYPE_CHECKING, Dict, List

from ..executor import StepResult

if TYPE_CHECKING:
    from ..executor import StepContext, SubprocessStepExecutor

TOOL_HINTS = {
    "ruff": "Install ruff (e.g., pip install ruff).",
    "flake8": "Install flake8 (e.g., pip install flake8).",
    "pylint": "Install pylint (e.g., pip install pylint).",
    "eslint": "Install eslint (e.g., npm install eslint).",
}


def lint_command(params: Dict[str, str]) -> List[str]:
    """`with: {tool, args, files}` -> argv. Files default to the working directory."""
    tool = (params.get("tool") or "ruff").strip()
    parts = [tool]
    if tool == "ruff" and not params.get("args"):
        parts.append("check")
    if params.get("args"):
        parts.extend(shlex.split(params["args"]))
    files = shlex.split(params.get("files") or "")
    parts.extend(files or ["."])
    return parts


def lint(params: Dict[str, str], ctx: "StepContext", executor: "SubprocessStepExecutor") -> StepResult:
    argv = lint_command(params)
    tool = argv[0]
    if shutil.which(tool) is None:
        hint = TOOL_HINTS.get(tool, f"Install {tool} or fix PATH.")
        return StepResult(exit_status=127, error=f"{tool} is not available. {hint}")
    return executor.run_command(shlex.join(argv), ctx, cwd=params.get("working-directory"))
