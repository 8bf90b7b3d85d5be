# actions/__init__.py
"""
Built-in `uses:` actions.

An action is a callable (params, ctx, executor) -> StepResult. `executor` is
the SubprocessStepExecutor running the step, so actions can shell out through
executor.run_command and inherit timeouts, env and cancellation.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Callable, Dict, List, Optional

if TYPE_CHECKING:
    from ..executor import StepContext, StepResult, SubprocessStepExecutor

Action = Callable[[Dict[str, str], "StepContext", "SubprocessStepExecutor"], "StepResult"]


class ActionRegistry:
    def __init__(self):
        self._actions: Dict[str, Action] = {}

    def register(self, name: str, fn: Optional[Action] = None):
        """Register directly, or use as a decorator: @registry.register("relayci/x")."""
        if fn is not None:
            self._actions[name] = fn
            return fn

        def deco(f: Action) -> Action:
            self._actions[name] = f
            return f

        return deco

    def get(self, name: str) -> Optional[Action]:
        return self._actions.get(name)

    def names(self) -> List[str]:
        return sorted(self._actions)

    def __contains__(self, name: str) -> bool:
        return name in self._actions


def builtin_actions() -> ActionRegistry:
    from .artifact import upload_artifact
    from .coverage import coverage
    from .lint import lint
    from .test import test

    registry = ActionRegistry()
    registry.register("relayci/test", test)
    registry.register("relayci/lint", lint)
    registry.register("relayci/coverage", coverage)
    registry.register("relayci/upload-artifact", upload_artifact)
    return registry


__all__ = ["Action", "ActionRegistry", "builtin_actions"]
