from __future__ import annotations

import math
from collections import deque
from dataclasses import dataclass

from .config import ScalingPolicy
from .models import Aggregate

# Guards ceil() against float noise such as 4 * 0.7 / 0.7 == 4.000000000000001.
_EPS = 1e-9


class ScalingHistory:
    """Rolling (timestamp, proposal) pairs used for stabilization."""

    def __init__(self, retention_s: float = 0.0):
        self.retention_s = float(retention_s)
        self._items: deque[tuple[float, int]] = deque()

    def record(self, now: float, proposal: int) -> None:
        self._items.append((now, int(proposal)))
        self.prune(now)

    def prune(self, now: float) -> None:
        while self._items and now - self._items[0][0] > self.retention_s:
            self._items.popleft()

    def since(self, start: float) -> list[int]:
        return [p for t, p in self._items if t >= start]

    def __len__(self) -> int:
        return len(self._items)


@dataclass(frozen=True)
class Decision:
    desired: int
    proposal: int | None
    reason: str


class ScalingDecisionEngine:
    """Turns aggregated utilization into a replica count.

    decide() never raises for a valid policy and always returns a value within
    [min_replicas, max_replicas].
    """

    def propose(self, aggregate: Aggregate, policy: ScalingPolicy, current: int) -> int | None:
        """Raw per-dimension proposal (max across configured targets), before any clamping."""
        proposals: list[int] = []
        for observed, target in (
            (aggregate.cpu, policy.target_cpu_utilization),
            (aggregate.mem, policy.target_mem_utilization),
        ):
            if not target:
                continue
            ratio = observed / target
            if abs(ratio - 1.0) <= policy.tolerance:
                proposals.append(current)
                continue
            proposals.append(math.ceil(current * ratio - _EPS))
        if not proposals:
            return None
        return max(proposals)

    def evaluate(
        self,
        aggregate: Aggregate | None,
        policy: ScalingPolicy,
        current_desired: int,
        history: ScalingHistory,
        now: float,
    ) -> Decision:
        current = policy.clamp(current_desired)
        if aggregate is None:
            return Decision(current, None, "no data; holding")

        raw = self.propose(aggregate, policy, current)
        if raw is None:
            return Decision(current, None, "no utilization target configured")
        proposal = policy.clamp(raw)
        history.retention_s = max(history.retention_s, policy.longest_window)
        history.prune(now)

        if proposal > current:
            window_s = policy.scale_up_stabilization_window
        elif proposal < current:
            window_s = policy.scale_down_stabilization_window
        else:
            window_s = 0.0
        if window_s > 0 and not history.since(now - window_s):
            # Nothing recorded inside the window yet: the current count opens it.
            history.record(now, current)
        history.record(now, proposal)

        if proposal > current:
            window = history.since(now - policy.scale_up_stabilization_window)
            stabilized = min(window) if policy.scale_up_stabilization_window > 0 else proposal
            if stabilized <= current:
                return Decision(current, proposal, "scale-up held by stabilization window")
            reason = "scale up"
        elif proposal < current:
            window = history.since(now - policy.scale_down_stabilization_window)
            stabilized = max(window)
            if stabilized >= current:
                return Decision(current, proposal, "scale-down held by stabilization window")
            reason = "scale down"
        else:
            return Decision(current, proposal, "at target")

        max_step = max(1, math.floor(policy.max_change_fraction * current + _EPS))
        step = max(-max_step, min(max_step, stabilized - current))
        return Decision(policy.clamp(current + step), proposal, reason)

    def decide(
        self,
        aggregate: Aggregate | None,
        policy: ScalingPolicy,
        current_desired: int,
        history: ScalingHistory,
        now: float,
    ) -> int:
        return self.evaluate(aggregate, policy, current_desired, history, now).desired
