# actions/artifact.py
from __future__ import annotations

import io
import tarfile
from pathlib import Path
from typing import TYPE_CHECKING, Dict

from ..executor import StepResult

if TYPE_CHECKING:
    from ..executor import StepContext, SubprocessStepExecutor


def pack_directory(path: Path) -> bytes:
    """tar.gz a directory in memory, entries relative to `path`."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for p in sorted(path.rglob("*")):
            if p.is_file():
                tar.add(str(p), arcname=p.relative_to(path).as_posix(), recursive=False)
    return buf.getvalue()


def upload_artifact(params: Dict[str, str], ctx: "StepContext", executor: "SubprocessStepExecutor") -> StepResult:
    rel = params.get("path")
    if not rel:
        return StepResult(exit_status=2, error="upload-artifact requires `path`")

    path = (ctx.workspace / (params.get("working-directory") or ".") / rel).resolve()
    if path.is_file():
        blob = path.read_bytes()
        name = params.get("name") or path.name
    elif path.is_dir():
        blob = pack_directory(path)
        name = params.get("name") or f"{path.name}.tar.gz"
    else:
        return StepResult(exit_status=1, error=f"artifact path not found: {path}")

    return StepResult(exit_status=0, artifacts={name: blob}, log=f"artifact {name}: {len(blob)} bytes")
