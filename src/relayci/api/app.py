# api/app.py
from __future__ import annotations

from typing import Any, Mapping

import yaml
from fastapi import FastAPI, HTTPException
from fastapi.responses import Response

from ..engine import Engine
from ..errors import (
    ArtifactNotFoundError,
    DefinitionError,
    GateNotFoundError,
    RunActiveError,
    RunNotFoundError,
    UnauthorizedReviewerError,
    ValidationError,
    WorkflowNotFoundError,
)
from ..gates import Gate
from ..model import WorkflowDefinition
from ..settings import Settings
from ..triggers import TriggerEvent
from .schemas import (
    EventRequest,
    EventResponse,
    GateResponse,
    RegisterWorkflowRequest,
    ReviewRequest,
    RunSummary,
    WorkflowSummary,
)


def _summary(definition: WorkflowDefinition) -> WorkflowSummary:
    return WorkflowSummary(
        name=definition.name,
        version=definition.version,
        jobs=list(definition.jobs),
        triggers=[rule.kind.value for rule in definition.triggers.rules],
        environments=sorted(definition.environments),
    )


def _gate(gate: Gate, now: float) -> GateResponse:
    return GateResponse(run_id=gate.run_id, **gate.to_dict(now))


def create_app(engine: Engine | None = None) -> FastAPI:
    """
    Build the HTTP surface around an Engine. Without an engine one is wired
    from RELAYCI_* environment variables, so this also works as a uvicorn
    factory: `uvicorn --factory relayci.api.app:create_app`.
    """
    if engine is None:
        engine = Engine.from_settings(Settings.from_env())

    app = FastAPI(title="relayci")
    app.state.engine = engine

    @app.on_event("shutdown")
    def shutdown() -> None:
        engine.shutdown(wait=False)

    # -------------------- Workflows --------------------

    @app.post("/workflows", response_model=WorkflowSummary)
    def register_workflow(req: RegisterWorkflowRequest):
        source: Any = req.source
        if isinstance(source, str):
            try:
                source = yaml.safe_load(source)
            except yaml.YAMLError as e:
                raise HTTPException(status_code=422, detail=f"malformed document: {e}")
        if not isinstance(source, Mapping):
            raise HTTPException(status_code=422, detail="workflow source must be a mapping")
        try:
            definition = engine.register(source, name=req.name)
        except DefinitionError as e:
            raise HTTPException(status_code=422, detail=str(e))
        return _summary(definition)

    @app.get("/workflows", response_model=list[WorkflowSummary])
    def list_workflows():
        return [_summary(d) for d in engine.workflows()]

    # -------------------- Events --------------------

    @app.post("/events", response_model=EventResponse)
    def submit_event(req: EventRequest):
        try:
            event = TriggerEvent.from_dict(req.model_dump())
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))
        try:
            runs = engine.submit(event)
        except ValidationError as e:
            raise HTTPException(status_code=422, detail={"workflow": e.workflow, "errors": e.errors})
        except WorkflowNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        return EventResponse(run_ids=[r.id for r in runs])

    # -------------------- Runs --------------------

    @app.get("/runs", response_model=list[RunSummary])
    def list_runs():
        return [RunSummary(run_id=r.id, workflow=r.definition.name, status=r.status.value) for r in engine.runs()]

    @app.get("/runs/{run_id}")
    def get_run(run_id: str) -> dict[str, Any]:
        try:
            return engine.report(run_id).to_dict()
        except RunNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))

    @app.get("/runs/{run_id}/jobs/{job}")
    def get_job(run_id: str, job: str) -> dict[str, Any]:
        try:
            report = engine.report(run_id)
        except RunNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        if job not in report.jobs:
            raise HTTPException(status_code=404, detail=f"Run {run_id} has no job '{job}'")
        return report.jobs[job].to_dict()

    @app.post("/runs/{run_id}/cancel")
    def cancel_run(run_id: str) -> dict[str, Any]:
        try:
            run = engine.get_run(run_id)
        except RunNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        if run.finalized:
            raise HTTPException(status_code=409, detail=f"Run already {run.status.value}")
        return engine.cancel(run_id).to_dict()

    @app.delete("/runs/{run_id}")
    def forget_run(run_id: str) -> dict[str, Any]:
        try:
            return engine.forget(run_id).to_dict()
        except RunNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except RunActiveError as e:
            raise HTTPException(status_code=409, detail=str(e))

    # -------------------- Gates --------------------

    def _review(action, run_id: str, environment: str, reviewer: str) -> GateResponse:
        try:
            gate = action(run_id, environment, reviewer)
        except (RunNotFoundError, GateNotFoundError) as e:
            raise HTTPException(status_code=404, detail=str(e))
        except UnauthorizedReviewerError as e:
            raise HTTPException(status_code=403, detail=str(e))
        return _gate(gate, engine.gates.clock())

    @app.post("/runs/{run_id}/environments/{environment}/approve", response_model=GateResponse)
    def approve(run_id: str, environment: str, req: ReviewRequest):
        return _review(engine.approve, run_id, environment, req.reviewer)

    @app.post("/runs/{run_id}/environments/{environment}/reject", response_model=GateResponse)
    def reject(run_id: str, environment: str, req: ReviewRequest):
        return _review(engine.reject, run_id, environment, req.reviewer)

    # -------------------- Artifacts --------------------

    @app.get("/artifacts/{reference:path}")
    def get_artifact(reference: str):
        try:
            blob = engine.artifacts.get(reference)
        except ArtifactNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        return Response(content=blob, media_type="application/octet-stream")

    return app
