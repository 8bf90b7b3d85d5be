# actions/coverage.py
from __future__ import annotations

import json
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import TYPE_CHECKING, Dict, Optional

from ..executor import StepResult

if TYPE_CHECKING:
    from ..executor import StepContext, SubprocessStepExecutor

DEFAULT_REPORTS = ("coverage.json", "coverage.xml")


def read_json_report(path: Path) -> float:
    """coverage.py `coverage json` output: totals.percent_covered."""
    data = json.loads(path.read_text(encoding="utf-8"))
    return float(data["totals"]["percent_covered"])


def read_cobertura_report(path: Path) -> float:
    """Cobertura XML: root line-rate is a 0..1 fraction."""
    root = ET.parse(str(path)).getroot()
    return float(root.attrib["line-rate"]) * 100.0


def read_coverage(path: Path, fmt: str = "auto") -> float:
    if fmt == "auto":
        fmt = "xml" if path.suffix.lower() == ".xml" else "json"
    if fmt == "json":
        return read_json_report(path)
    if fmt in ("xml", "cobertura"):
        return read_cobertura_report(path)
    raise ValueError(f"Unknown coverage format: {fmt!r}")


def _find_report(base: Path, explicit: Optional[str]) -> Optional[Path]:
    candidates = [explicit] if explicit else list(DEFAULT_REPORTS)
    for rel in candidates:
        path = (base / rel).resolve()
        if path.is_file():
            return path
    return None


def coverage(params: Dict[str, str], ctx: "StepContext", executor: "SubprocessStepExecutor") -> StepResult:
    base = (ctx.workspace / (params.get("working-directory") or ".")).resolve()
    path = _find_report(base, params.get("path"))
    if path is None:
        wanted = params.get("path") or " or ".join(DEFAULT_REPORTS)
        return StepResult(exit_status=1, error=f"coverage report not found: {wanted}")

    try:
        percent = read_coverage(path, (params.get("format") or "auto").lower())
    except (KeyError, ValueError, TypeError, ET.ParseError, json.JSONDecodeError) as e:
        return StepResult(exit_status=1, error=f"unreadable coverage report {path.name}: {e}")

    value = f"{percent:.2f}"
    return StepResult(exit_status=0, outputs={"coverage": value}, log=f"coverage: {value}% ({path.name})")
