from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from threading import Lock


class Phase(str, Enum):
    UNKNOWN = "Unknown"
    STARTING = "Starting"
    READY = "Ready"
    UNHEALTHY = "Unhealthy"
    FAILED = "Failed"


class ProbeKind(str, Enum):
    STARTUP = "startup"
    READINESS = "readiness"
    LIVENESS = "liveness"


class Outcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"

    @property
    def ok(self) -> bool:
        return self is Outcome.SUCCESS


class Action(str, Enum):
    CREATE = "create"
    TERMINATE = "terminate"


@dataclass
class ProbeCounter:
    successes: int = 0
    failures: int = 0

    def record(self, ok: bool) -> None:
        # Consecutive counts only: the opposite outcome wipes the streak.
        if ok:
            self.successes += 1
            self.failures = 0
        else:
            self.failures += 1
            self.successes = 0

    def reset(self) -> None:
        self.successes = 0
        self.failures = 0


@dataclass
class Instance:
    id: str
    phase: Phase = Phase.UNKNOWN
    created_at: float = 0.0
    last_transition_time: float = 0.0
    started_at: float | None = None
    ready_since: float | None = None
    counters: dict[ProbeKind, ProbeCounter] = field(
        default_factory=lambda: {k: ProbeCounter() for k in ProbeKind}
    )
    next_due: dict[ProbeKind, float] = field(default_factory=dict)
    lock: Lock = field(default_factory=Lock, repr=False, compare=False)

    def copy(self) -> "Instance":
        """Detached copy safe to hand out of the state machine."""
        return Instance(
            id=self.id,
            phase=self.phase,
            created_at=self.created_at,
            last_transition_time=self.last_transition_time,
            started_at=self.started_at,
            ready_since=self.ready_since,
            counters={k: ProbeCounter(c.successes, c.failures) for k, c in self.counters.items()},
            next_due=dict(self.next_due),
        )


@dataclass(frozen=True)
class TransitionEvent:
    instance_id: str
    from_phase: Phase
    to_phase: Phase
    reason: str
    timestamp: float


@dataclass(frozen=True)
class MetricSample:
    instance_id: str
    timestamp: float
    cpu_utilization: float  # percent of requested CPU
    mem_utilization: float  # percent of requested memory


@dataclass(frozen=True)
class Aggregate:
    cpu: float
    mem: float
    instance_count: int


@dataclass
class ReplicaSetState:
    desired_count: int
    instances: dict[str, Instance] = field(default_factory=dict)


@dataclass(frozen=True)
class ScalingIntent:
    target_replicas: int
    previous: int
    reason: str
    timestamp: float


@dataclass(frozen=True)
class PodLifecycleIntent:
    action: Action
    instance_id: str
    reason: str = ""
