# settings.py
from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from typing import List, Mapping, Optional

from .errors import ConfigError
from .runners import Runner, default_runners, parse_runner_specs

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


def _default_workers() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


def _int(env: Mapping[str, str], key: str, default: int, *, minimum: int) -> int:
    raw = env.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{key} must be an integer, got {raw!r}") from None
    if value < minimum:
        raise ConfigError(f"{key} must be >= {minimum}, got {value}")
    return value


def _bool(env: Mapping[str, str], key: str, default: bool) -> bool:
    raw = env.get(key)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ConfigError(f"{key} must be true/false, got {raw!r}")


@dataclass
class Settings:
    """Engine configuration. CLI options override individual fields via with_overrides()."""
    max_workers: int = field(default_factory=_default_workers)
    runners: List[Runner] = field(default_factory=default_runners)
    workspace_dir: str = "."
    isolate_workspaces: bool = False
    artifact_dir: Optional[str] = None
    database_url: Optional[str] = None
    redis_url: Optional[str] = None
    status_channel: str = "relayci:status"
    log_tail: int = 4000

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        runner_spec = env.get("RELAYCI_RUNNERS", "").strip()
        return cls(
            max_workers=_int(env, "RELAYCI_MAX_WORKERS", _default_workers(), minimum=1),
            runners=parse_runner_specs(runner_spec) if runner_spec else default_runners(),
            workspace_dir=env.get("RELAYCI_WORKSPACE_DIR") or ".",
            isolate_workspaces=_bool(env, "RELAYCI_ISOLATE_WORKSPACES", False),
            artifact_dir=env.get("RELAYCI_ARTIFACT_DIR") or None,
            database_url=env.get("RELAYCI_DATABASE_URL") or None,
            redis_url=env.get("RELAYCI_REDIS_URL") or None,
            status_channel=env.get("RELAYCI_STATUS_CHANNEL") or "relayci:status",
            log_tail=_int(env, "RELAYCI_LOG_TAIL", 4000, minimum=0),
        )

    def with_overrides(self, **overrides) -> "Settings":
        """Return a copy with every non-None override applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})
