from __future__ import annotations

from dataclasses import dataclass, field
from threading import Lock

from .models import Aggregate, ScalingIntent


@dataclass(frozen=True)
class RouteTarget:
    instance_id: str
    base_url: str


@dataclass
class LoopStatus:
    desired_count: int = 0
    last_aggregate: Aggregate | None = None
    last_decision_reason: str = ""
    last_scaling_intent: ScalingIntent | None = None
    ticks: int = 0
    last_error: str = ""
    history: list[ScalingIntent] = field(default_factory=list)


class RuntimeState:
    """In-memory state shared between the control loop and the API."""

    def __init__(self, history_size: int = 50) -> None:
        self.lock = Lock()
        self.status = LoopStatus()
        self.routing: list[RouteTarget] = []
        self.rr_index = 0
        self.history_size = max(1, int(history_size))

    def set_targets(self, targets: list[RouteTarget]) -> None:
        with self.lock:
            self.routing = list(targets)

    def get_targets(self) -> list[RouteTarget]:
        with self.lock:
            return list(self.routing)

    def next_index(self, n: int) -> int:
        with self.lock:
            if n <= 0:
                return 0
            i = self.rr_index % n
            self.rr_index = (i + 1) % n
            return i

    def record_scaling(self, intent: ScalingIntent) -> None:
        with self.lock:
            self.status.last_scaling_intent = intent
            self.status.history.append(intent)
            del self.status.history[: -self.history_size]

    def update(self, **fields) -> None:
        with self.lock:
            for k, v in fields.items():
                setattr(self.status, k, v)

    def snapshot(self) -> LoopStatus:
        with self.lock:
            s = self.status
            return LoopStatus(
                desired_count=s.desired_count,
                last_aggregate=s.last_aggregate,
                last_decision_reason=s.last_decision_reason,
                last_scaling_intent=s.last_scaling_intent,
                ticks=s.ticks,
                last_error=s.last_error,
                history=list(s.history),
            )
