# gates.py
from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Set, Tuple

from .errors import GateNotFoundError, UnauthorizedReviewerError
from .model import EnvironmentSpec


class GateState(str, Enum):
    PENDING = "pending"
    SATISFIED = "satisfied"
    REJECTED = "rejected"


@dataclass
class Gate:
    """
    Per-(Run, Environment) barrier.

    PENDING -> SATISFIED once approvals >= required AND the wait timer has
    elapsed; PENDING -> REJECTED on any reviewer veto. Neither terminal state
    ever transitions again.
    """
    run_id: str
    environment: EnvironmentSpec
    started_at: float
    approvals: Set[str] = field(default_factory=set)
    state: GateState = GateState.PENDING
    rejected_by: Optional[str] = None
    decided_at: Optional[float] = None

    def remaining_wait(self, now: float) -> float:
        return max(0.0, self.environment.wait_seconds - (now - self.started_at))

    def approvals_missing(self) -> int:
        return max(0, self.environment.required_approvals - len(self.approvals))

    def evaluate(self, now: float) -> GateState:
        if self.state is GateState.PENDING and self.approvals_missing() == 0 and self.remaining_wait(now) == 0:
            self.state = GateState.SATISFIED
            self.decided_at = now
        return self.state

    def to_dict(self, now: float) -> dict:
        return {
            "environment": self.environment.name,
            "state": self.state.value,
            "approvals": sorted(self.approvals),
            "required_approvals": self.environment.required_approvals,
            "remaining_wait_seconds": self.remaining_wait(now) if self.state is GateState.PENDING else 0.0,
            "rejected_by": self.rejected_by,
        }


class GateManager:
    """Owns every gate instance; all mutation happens under one lock."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        self._lock = threading.Lock()
        self._gates: Dict[Tuple[str, str], Gate] = {}

    def open(self, run_id: str, environment: EnvironmentSpec) -> Gate:
        """
        Return the gate for (run, environment), creating it (and starting its
        wait timer) the first time a job becomes eligible to enter it.
        """
        with self._lock:
            key = (run_id, environment.name)
            gate = self._gates.get(key)
            if gate is None:
                gate = Gate(run_id=run_id, environment=environment, started_at=self.clock())
                self._gates[key] = gate
            gate.evaluate(self.clock())
            return gate

    def get(self, run_id: str, environment: str) -> Gate:
        with self._lock:
            return self._get(run_id, environment)

    def _get(self, run_id: str, environment: str) -> Gate:
        try:
            return self._gates[(run_id, environment)]
        except KeyError:
            raise GateNotFoundError(run_id, environment) from None

    def _authorize(self, gate: Gate, reviewer: str) -> None:
        if reviewer not in gate.environment.reviewers:
            raise UnauthorizedReviewerError(gate.environment.name, reviewer)

    def approve(self, run_id: str, environment: str, reviewer: str) -> Gate:
        """Record one approval per distinct reviewer; duplicates are no-ops."""
        with self._lock:
            gate = self._get(run_id, environment)
            self._authorize(gate, reviewer)
            if gate.state is GateState.PENDING:
                gate.approvals.add(reviewer)
                gate.evaluate(self.clock())
            return gate

    def reject(self, run_id: str, environment: str, reviewer: str) -> Gate:
        with self._lock:
            gate = self._get(run_id, environment)
            self._authorize(gate, reviewer)
            if gate.state is GateState.PENDING:
                gate.state = GateState.REJECTED
                gate.rejected_by = reviewer
                gate.decided_at = self.clock()
            return gate

    def evaluate(self, run_id: str, environment: str) -> GateState:
        with self._lock:
            return self._get(run_id, environment).evaluate(self.clock())

    def gates_for(self, run_id: str) -> List[Gate]:
        with self._lock:
            return [g for (rid, _), g in self._gates.items() if rid == run_id]

    def discard(self, run_id: str) -> None:
        with self._lock:
            for key in [k for k in self._gates if k[0] == run_id]:
                del self._gates[key]
