# runners.py
from __future__ import annotations

import platform
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, FrozenSet, Iterable, List, Optional

from .errors import ConfigError, JobCancelled, RunnerUnavailable


@dataclass(frozen=True)
class Runner:
    """An execution slot advertising capability labels."""
    name: str
    labels: FrozenSet[str]

    def satisfies(self, requirement: FrozenSet[str]) -> bool:
        # exact or superset match
        return requirement <= self.labels


def os_family() -> str:
    system = platform.system().lower()
    return {"darwin": "macos"}.get(system, system or "linux")


def default_runners(count: int = 1) -> List[Runner]:
    labels = frozenset({"self-hosted", "local", os_family()})
    return [Runner(name=f"local-{i}", labels=labels) for i in range(max(1, count))]


def parse_runner_specs(spec: str) -> List[Runner]:
    """
    "linux-1=linux,x64;mac-1=macos" -> [Runner(linux-1,{linux,x64}), Runner(mac-1,{macos})]
    """
    runners: List[Runner] = []
    for chunk in spec.replace("\n", ";").split(";"):
        chunk = chunk.strip()
        if not chunk:
            continue
        name, sep, labels = chunk.partition("=")
        name = name.strip()
        if not sep or not name:
            raise ConfigError(f"Invalid runner spec {chunk!r}; expected NAME=label,label")
        label_set = frozenset(l.strip() for l in labels.split(",") if l.strip())
        if not label_set:
            raise ConfigError(f"Runner {name!r} declares no labels")
        runners.append(Runner(name=name, labels=label_set))
    return runners


@dataclass(eq=False)
class Reservation:
    """A queued request for a runner; `runner` is set once it is granted."""
    requirement: FrozenSet[str]
    holder: str
    on_grant: Optional[Callable[[Runner], None]] = None
    runner: Optional[Runner] = None
    withdrawn: bool = False

    @property
    def granted(self) -> bool:
        return self.runner is not None


class RunnerPool:
    """
    Tracks runners and who holds them.

    Invariants:
      - a runner is held by at most one job at a time
      - reservations with the same requirement (capability class) are served FIFO
      - a requirement no runner advertises stays queued until one is add()ed
    """

    def __init__(self, runners: Iterable[Runner] = ()):
        self._cond = threading.Condition()
        self._runners: Dict[str, Runner] = {}
        self._holders: Dict[str, str] = {}                           # runner name -> holder
        self._waiters: Dict[FrozenSet[str], Deque[Reservation]] = {}  # capability class -> queue
        for r in runners:
            self.add(r)

    # ---- membership (elastic pools) ----

    def add(self, runner: Runner) -> None:
        with self._cond:
            if runner.name in self._runners:
                raise ValueError(f"Duplicate runner name: {runner.name}")
            self._runners[runner.name] = runner
            granted = self._grant()
            self._cond.notify_all()
        self._notify(granted)

    def remove(self, name: str) -> None:
        with self._cond:
            if name in self._holders:
                raise ValueError(f"Runner {name} is busy (held by {self._holders[name]})")
            self._runners.pop(name, None)

    @property
    def runners(self) -> List[Runner]:
        with self._cond:
            return list(self._runners.values())

    def holders(self) -> Dict[str, str]:
        with self._cond:
            return dict(self._holders)

    def queued(self) -> Dict[FrozenSet[str], List[str]]:
        with self._cond:
            return {req: [r.holder for r in queue] for req, queue in self._waiters.items()}

    def can_satisfy(self, requirement: Iterable[str]) -> bool:
        req = frozenset(requirement)
        with self._cond:
            return any(r.satisfies(req) for r in self._runners.values())

    # ---- acquisition ----

    def _idle_match(self, req: FrozenSet[str]) -> Optional[Runner]:
        # best fit: fewest extra labels, then registration order
        best: Optional[Runner] = None
        for r in self._runners.values():
            if r.name in self._holders or not r.satisfies(req):
                continue
            if best is None or len(r.labels - req) < len(best.labels - req):
                best = r
        return best

    def _grant(self) -> List[Reservation]:
        """Hand idle runners to queue heads, class by class. Caller holds _cond."""
        granted: List[Reservation] = []
        for req in list(self._waiters):
            queue = self._waiters[req]
            while queue:
                runner = self._idle_match(req)
                if runner is None:
                    break
                reservation = queue.popleft()
                reservation.runner = runner
                self._holders[runner.name] = reservation.holder
                granted.append(reservation)
            if not queue:
                del self._waiters[req]
        return granted

    @staticmethod
    def _notify(granted: List[Reservation]) -> None:
        # callbacks run outside the pool lock
        for reservation in granted:
            if reservation.on_grant is not None and reservation.runner is not None:
                reservation.on_grant(reservation.runner)

    def reserve(
        self,
        requirement: Iterable[str],
        *,
        holder: str = "",
        on_grant: Optional[Callable[[Runner], None]] = None,
    ) -> Reservation:
        """
        Queue for a runner without blocking. `on_grant(runner)` is called
        (possibly before this returns) once a runner is assigned.
        """
        reservation = Reservation(frozenset(requirement), holder, on_grant)
        with self._cond:
            self._waiters.setdefault(reservation.requirement, deque()).append(reservation)
            granted = self._grant()
            self._cond.notify_all()
        self._notify(granted)
        return reservation

    def withdraw(self, reservation: Reservation) -> bool:
        """Leave the queue. Returns False if the runner was already granted."""
        with self._cond:
            if reservation.granted:
                return False
            if not reservation.withdrawn:
                reservation.withdrawn = True
                queue = self._waiters.get(reservation.requirement)
                if queue is not None:
                    queue.remove(reservation)
                    if not queue:
                        del self._waiters[reservation.requirement]
            return True

    def try_acquire(self, requirement: Iterable[str], holder: str = "") -> Optional[Runner]:
        """Non-blocking acquire. Returns None (busy) if a runner isn't free or others are queued first."""
        req = frozenset(requirement)
        with self._cond:
            if self._waiters.get(req):
                return None
            runner = self._idle_match(req)
            if runner is not None:
                self._holders[runner.name] = holder
            return runner

    def acquire(
        self,
        requirement: Iterable[str],
        *,
        holder: str = "",
        timeout: float | None = None,
        cancelled: threading.Event | None = None,
    ) -> Runner:
        """
        Block until a runner satisfying `requirement` is free, FIFO within the
        requirement's capability class.

        Raises:
          RunnerUnavailable: `timeout` elapsed first.
          JobCancelled: `cancelled` was set while waiting (see interrupt()).
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        reservation = self.reserve(requirement, holder=holder)

        with self._cond:
            while not reservation.granted:
                if cancelled is not None and cancelled.is_set():
                    self.withdraw(reservation)
                    raise JobCancelled(f"{holder or 'job'} cancelled while queued for a runner")
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    self.withdraw(reservation)
                    raise RunnerUnavailable(reservation.requirement)
                self._cond.wait(remaining)
            return reservation.runner

    def release(self, runner: Runner) -> None:
        with self._cond:
            if runner.name not in self._holders:
                raise ValueError(f"Runner {runner.name} is not held")
            del self._holders[runner.name]
            granted = self._grant()
            self._cond.notify_all()
        self._notify(granted)

    def interrupt(self) -> None:
        """Wake every blocked acquire() so it can observe cancellation."""
        with self._cond:
            self._cond.notify_all()
