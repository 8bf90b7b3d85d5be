# api/schemas.py
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional, Union

from pydantic import BaseModel, Field


class RegisterWorkflowRequest(BaseModel):
    source: Union[str, dict[str, Any]]      # YAML/JSON text or an already-parsed document
    name: Optional[str] = None


class WorkflowSummary(BaseModel):
    name: str
    version: str
    jobs: list[str]
    triggers: list[str]
    environments: list[str] = Field(default_factory=list)


class EventRequest(BaseModel):
    kind: str
    ref: str = ""
    actor: str = ""
    inputs: dict[str, Any] = Field(default_factory=dict)
    workflow: Optional[str] = None
    action: Optional[str] = None
    timestamp: Optional[datetime] = None
    sha: Optional[str] = None


class EventResponse(BaseModel):
    run_ids: list[str]


class ReviewRequest(BaseModel):
    reviewer: str


class GateResponse(BaseModel):
    run_id: str
    environment: str
    state: str
    approvals: list[str]
    required_approvals: int
    remaining_wait_seconds: float
    rejected_by: Optional[str] = None


class RunSummary(BaseModel):
    run_id: str
    workflow: str
    status: str
