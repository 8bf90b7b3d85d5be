# persistence.py
from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import sqlalchemy as sa
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from .report import RunReport, StatusReporter


class Base(DeclarativeBase):
    pass


class RunRow(Base):
    __tablename__ = "runs"
    id: Mapped[str] = mapped_column(sa.String(64), primary_key=True)
    workflow: Mapped[str] = mapped_column(sa.Text, nullable=False)
    version: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    status: Mapped[str] = mapped_column(sa.String(16), nullable=False)
    event_json: Mapped[dict] = mapped_column(sa.JSON, nullable=False, default=dict)
    inputs_json: Mapped[dict] = mapped_column(sa.JSON, nullable=False, default=dict)
    gates_json: Mapped[list] = mapped_column(sa.JSON, nullable=False, default=list)
    created_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True))
    finished_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True))


class JobRow(Base):
    __tablename__ = "jobs"
    __table_args__ = (sa.UniqueConstraint("run_id", "job_name"),)
    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(sa.String(64), sa.ForeignKey("runs.id", ondelete="CASCADE"), nullable=False)
    job_name: Mapped[str] = mapped_column(sa.Text, nullable=False)
    state: Mapped[str] = mapped_column(sa.String(16), nullable=False)
    runner: Mapped[Optional[str]] = mapped_column(sa.Text)
    reason: Mapped[Optional[str]] = mapped_column(sa.Text)
    coverage: Mapped[Optional[float]] = mapped_column(sa.Float)
    payload_json: Mapped[dict] = mapped_column(sa.JSON, nullable=False, default=dict)


class ArtifactRow(Base):
    __tablename__ = "artifacts"
    __table_args__ = (sa.UniqueConstraint("reference", "name"),)
    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(sa.String(64), sa.ForeignKey("runs.id", ondelete="CASCADE"), nullable=False)
    job_id: Mapped[str] = mapped_column(sa.Text, nullable=False)
    reference: Mapped[str] = mapped_column(sa.Text, nullable=False)
    name: Mapped[str] = mapped_column(sa.Text, nullable=False)
    size: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)


def _ts(value: Optional[float]) -> Optional[datetime]:
    return datetime.fromtimestamp(value, timezone.utc) if value is not None else None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def create_db_engine(url: str) -> sa.Engine:
    if url.startswith("sqlite") and (":memory:" in url or url.rstrip("/") == "sqlite:"):
        # one shared connection, usable from job threads
        return sa.create_engine(url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    if url.startswith("sqlite"):
        return sa.create_engine(url, connect_args={"check_same_thread": False})
    return sa.create_engine(url, pool_pre_ping=True)


class SqlRunStore(StatusReporter):
    """
    Persists run snapshots. Every publish() upserts the run row, one row per
    job and one row per artifact reference.
    """

    def __init__(self, url: str | None = None, *, engine: sa.Engine | None = None):
        if engine is None and url is None:
            raise ValueError("SqlRunStore needs a database url or an engine")
        self.engine = engine if engine is not None else create_db_engine(url)
        Base.metadata.create_all(self.engine)
        self.SessionLocal = sessionmaker(self.engine, expire_on_commit=False)
        self._lock = threading.Lock()

    def publish(self, report: RunReport) -> None:
        with self._lock, self.SessionLocal() as s:
            with s.begin():
                run = s.get(RunRow, report.run_id)
                if run is None:
                    run = RunRow(id=report.run_id)
                    s.add(run)
                run.workflow = report.workflow
                run.version = report.version
                run.status = report.status.value
                run.event_json = dict(report.event)
                run.inputs_json = dict(report.inputs)
                run.gates_json = list(report.gates)
                run.created_at = _ts(report.created_at)
                run.finished_at = _ts(report.finished_at)
                s.flush()

                existing = {
                    j.job_name: j
                    for j in s.scalars(sa.select(JobRow).where(JobRow.run_id == report.run_id))
                }
                known_refs = {
                    (a.reference, a.name)
                    for a in s.scalars(sa.select(ArtifactRow).where(ArtifactRow.run_id == report.run_id))
                }

                for name, job in report.jobs.items():
                    row = existing.get(name)
                    if row is None:
                        row = JobRow(run_id=report.run_id, job_name=name)
                        s.add(row)
                    row.state = job.state.value
                    row.runner = job.runner
                    row.reason = job.reason
                    row.coverage = job.coverage
                    row.payload_json = job.to_dict()

                    for art in job.artifacts:
                        key = (art["ref"], art["name"])
                        if key in known_refs:
                            continue
                        known_refs.add(key)
                        s.add(ArtifactRow(run_id=report.run_id, job_id=name, reference=art["ref"],
                                          name=art["name"], size=int(art.get("size", 0))))

    def load_run(self, run_id: str) -> Optional[Dict[str, Any]]:
        """Stored snapshot of a run as a plain dict, or None."""
        with self.SessionLocal() as s:
            run = s.get(RunRow, run_id)
            if run is None:
                return None
            jobs = s.scalars(sa.select(JobRow).where(JobRow.run_id == run_id).order_by(JobRow.id)).all()
            artifacts = s.scalars(
                sa.select(ArtifactRow).where(ArtifactRow.run_id == run_id).order_by(ArtifactRow.id)
            ).all()
            return {
                "run_id": run.id,
                "workflow": run.workflow,
                "version": run.version,
                "status": run.status,
                "event": dict(run.event_json or {}),
                "inputs": dict(run.inputs_json or {}),
                "gates": list(run.gates_json or []),
                "created_at": _iso(run.created_at),
                "finished_at": _iso(run.finished_at),
                "jobs": {j.job_name: dict(j.payload_json or {}) for j in jobs},
                "artifacts": [
                    {"job": a.job_id, "ref": a.reference, "name": a.name, "size": a.size} for a in artifacts
                ],
            }

    def list_runs(self, workflow: str | None = None, limit: int = 50) -> List[Dict[str, Any]]:
        with self.SessionLocal() as s:
            q = sa.select(RunRow)
            if workflow:
                q = q.where(RunRow.workflow == workflow)
            q = q.order_by(RunRow.created_at.desc()).limit(limit)
            return [
                {"run_id": r.id, "workflow": r.workflow, "status": r.status, "created_at": _iso(r.created_at)}
                for r in s.scalars(q)
            ]
