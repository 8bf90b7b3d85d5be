# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional


class RelayCIError(Exception):
    """Base class for every error raised by relayci."""


class ConfigError(RelayCIError):
    """Malformed engine configuration (environment variables, CLI values)."""


# ----------------------------------------------------------------------
# Definition errors (rejected before any Run exists)
# ----------------------------------------------------------------------

class DefinitionError(RelayCIError):
    """Structural problem with a workflow definition."""


class ParseError(DefinitionError):
    def __init__(self, message: str, location: str | None = None):
        self.message = message
        self.location = location
        super().__init__(f"{location}: {message}" if location else message)


class UnknownDependencyError(DefinitionError):
    def __init__(self, job: str, dependency: str):
        self.job = job
        self.dependency = dependency
        super().__init__(f"Job '{job}' needs missing job '{dependency}'")


class CyclicDependencyError(DefinitionError):
    def __init__(self, jobs: List[str]):
        self.jobs = list(jobs)
        super().__init__(f"Job graph has a cycle. Stuck jobs: {self.jobs}")


# ----------------------------------------------------------------------
# Trigger time
# ----------------------------------------------------------------------

class ValidationError(RelayCIError):
    """Manual dispatch inputs did not match the declared schema."""

    def __init__(self, workflow: str, errors: List[str]):
        self.workflow = workflow
        self.errors = list(errors)
        super().__init__(f"Invalid inputs for workflow '{workflow}': " + "; ".join(self.errors))


class WorkflowNotFoundError(RelayCIError):
    pass


class RunNotFoundError(RelayCIError):
    pass


class RunActiveError(RelayCIError):
    """The run still has non-terminal jobs."""


# ----------------------------------------------------------------------
# Runtime outcomes
# ----------------------------------------------------------------------

@dataclass(eq=False)
class StepFailure(RelayCIError):
    """
    A job failed: non-zero exit status of a step, or a threshold breach after
    all steps succeeded (step is None in that case).
    """
    job: str
    step: str | None
    exit_code: int | None
    reason: str
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        where = f"step '{self.step}'" if self.step else "job check"
        code = f" (exit={self.exit_code})" if self.exit_code is not None else ""
        return f"[{self.job}] {where} failed{code}: {self.reason}"


@dataclass(eq=False)
class GateRejected(RelayCIError):
    run_id: str
    environment: str
    reviewer: str

    def __str__(self) -> str:
        return f"Deployment to '{self.environment}' rejected by {self.reviewer} (run {self.run_id})"


class RunnerUnavailable(RelayCIError):
    """No runner satisfied a capability requirement within the acquire timeout."""

    def __init__(self, requirement, message: Optional[str] = None):
        self.requirement = frozenset(requirement)
        labels = ",".join(sorted(self.requirement)) or "<any>"
        super().__init__(message or f"No runner available for labels [{labels}]")


class JobCancelled(RelayCIError):
    """Raised inside a job thread when its run was cancelled."""


# ----------------------------------------------------------------------
# Gate interaction surface
# ----------------------------------------------------------------------

class GateError(RelayCIError):
    pass


class UnauthorizedReviewerError(GateError):
    def __init__(self, environment: str, reviewer: str):
        self.environment = environment
        self.reviewer = reviewer
        super().__init__(f"'{reviewer}' is not a reviewer for environment '{environment}'")


class GateNotFoundError(GateError):
    def __init__(self, run_id: str, environment: str):
        self.run_id = run_id
        self.environment = environment
        super().__init__(f"Run {run_id} has no job waiting on environment '{environment}'")


class UnknownActionError(RelayCIError):
    pass


class ArtifactNotFoundError(RelayCIError, KeyError):
    def __init__(self, reference: str):
        self.reference = reference
        super().__init__(f"Artifact not found: {reference}")

    def __str__(self) -> str:
        return f"Artifact not found: {self.reference}"
