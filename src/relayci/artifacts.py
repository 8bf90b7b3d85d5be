# artifacts.py
from __future__ import annotations

import hashlib
import json
import re
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .errors import ArtifactNotFoundError

_SAFE_COMPONENT = re.compile(r"^[A-Za-z0-9_.-]+$")


def _sha256_bytes(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


@dataclass(frozen=True)
class ArtifactRef:
    """Reference to a stored blob: "<run_id>/<job_id>/<sha256>"."""
    run_id: str
    job_id: str
    digest: str
    name: str = ""
    size: int = 0

    @property
    def ref(self) -> str:
        return f"{self.run_id}/{self.job_id}/{self.digest}"

    @staticmethod
    def split(reference: str) -> Tuple[str, str, str]:
        parts = reference.strip("/").split("/")
        if len(parts) != 3 or not all(parts):
            raise ArtifactNotFoundError(reference)
        return parts[0], parts[1], parts[2]

    def to_dict(self) -> dict:
        return {"ref": self.ref, "name": self.name, "size": self.size, "sha256": self.digest}


class ArtifactStore:
    """
    Key-addressed blob store indexed by (run_id, job_id).

    Subclasses implement _write/_read; lifetime of stored content is managed
    externally (nothing here deletes).
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._index: Dict[Tuple[str, str], List[ArtifactRef]] = {}

    def put(self, run_id: str, job_id: str, blob: bytes, name: str | None = None) -> str:
        for component in (run_id, job_id):
            if not _SAFE_COMPONENT.match(component):
                raise ValueError(f"Unsafe artifact key component: {component!r}")
        digest = _sha256_bytes(blob)
        ref = ArtifactRef(run_id=run_id, job_id=job_id, digest=digest, name=name or digest[:12], size=len(blob))
        with self._lock:
            self._write(ref, blob)
            entries = self._index.setdefault((run_id, job_id), [])
            if all(e.ref != ref.ref or e.name != ref.name for e in entries):
                entries.append(ref)
        return ref.ref

    def get(self, reference: str) -> bytes:
        run_id, job_id, digest = ArtifactRef.split(reference)
        with self._lock:
            return self._read(run_id, job_id, digest, reference)

    def list(self, run_id: str, job_id: Optional[str] = None) -> List[ArtifactRef]:
        with self._lock:
            if job_id is not None:
                return list(self._index.get((run_id, job_id), []))
            return [r for (rid, _), refs in self._index.items() if rid == run_id for r in refs]

    def _write(self, ref: ArtifactRef, blob: bytes) -> None:
        raise NotImplementedError

    def _read(self, run_id: str, job_id: str, digest: str, reference: str) -> bytes:
        raise NotImplementedError


class InMemoryArtifactStore(ArtifactStore):
    def __init__(self):
        super().__init__()
        self._blobs: Dict[str, bytes] = {}

    def _write(self, ref: ArtifactRef, blob: bytes) -> None:
        self._blobs[ref.ref] = blob

    def _read(self, run_id: str, job_id: str, digest: str, reference: str) -> bytes:
        try:
            return self._blobs[f"{run_id}/{job_id}/{digest}"]
        except KeyError:
            raise ArtifactNotFoundError(reference) from None


class FileSystemArtifactStore(ArtifactStore):
    """
    Layout:
      <root>/<run_id>/<job_id>/<sha256>        blob
      <root>/<run_id>/<job_id>/<sha256>.json   {"name": ..., "size": ...}

    The index is rebuilt from disk on startup so references survive restarts.
    """

    def __init__(self, root: str | Path):
        super().__init__()
        self.root = Path(root).expanduser().resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self._load_index()

    def _load_index(self) -> None:
        for meta_path in sorted(self.root.glob("*/*/*.json")):
            job_dir = meta_path.parent
            try:
                meta = json.loads(meta_path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError):
                continue
            ref = ArtifactRef(
                run_id=job_dir.parent.name,
                job_id=job_dir.name,
                digest=meta_path.stem,
                name=meta.get("name", ""),
                size=int(meta.get("size", 0)),
            )
            self._index.setdefault((ref.run_id, ref.job_id), []).append(ref)

    def _path(self, run_id: str, job_id: str, digest: str) -> Path:
        if not all(_SAFE_COMPONENT.match(c) for c in (run_id, job_id, digest)):
            raise ArtifactNotFoundError(f"{run_id}/{job_id}/{digest}")
        return self.root / run_id / job_id / digest

    def _write(self, ref: ArtifactRef, blob: bytes) -> None:
        path = self._path(ref.run_id, ref.job_id, ref.digest)
        path.parent.mkdir(parents=True, exist_ok=True)
        if not path.exists():
            tmp = path.with_suffix(".tmp")
            tmp.write_bytes(blob)
            tmp.replace(path)
        meta = {"name": ref.name, "size": ref.size}
        path.with_suffix(".json").write_text(json.dumps(meta, sort_keys=True), encoding="utf-8")

    def _read(self, run_id: str, job_id: str, digest: str, reference: str) -> bytes:
        path = self._path(run_id, job_id, digest)
        if not path.is_file():
            raise ArtifactNotFoundError(reference)
        return path.read_bytes()
