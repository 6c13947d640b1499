from __future__ import annotations

import time
from threading import Lock
from typing import Callable

from .config import ProbeSet
from .models import Instance, Outcome, Phase, ProbeKind, TransitionEvent

TransitionListener = Callable[[TransitionEvent], None]

# Probe kinds evaluated in each phase; everything else is ignored.
_ACTIVE_PROBES: dict[Phase, tuple[ProbeKind, ...]] = {
    Phase.STARTING: (ProbeKind.STARTUP,),
    Phase.READY: (ProbeKind.READINESS, ProbeKind.LIVENESS),
    Phase.UNHEALTHY: (ProbeKind.READINESS, ProbeKind.LIVENESS),
}


class UnknownInstance(KeyError):
    pass


class ProbeStateMachine:
    """Per-instance phase derived from consecutive probe outcomes.

    Unknown -> Starting -> Ready <-> Unhealthy, with Starting/Ready/Unhealthy -> Failed.
    Failed is terminal for an instance id.

    Outcomes for one instance are applied under that instance's lock, so they
    are never interleaved; different instances proceed independently.
    """

    def __init__(self, probes: ProbeSet, clock: Callable[[], float] = time.monotonic):
        self.probes = probes
        self._clock = clock
        self._lock = Lock()
        self._instances: dict[str, Instance] = {}
        self._events: list[TransitionEvent] = []
        self._listeners: list[TransitionListener] = []

    # -- registry -----------------------------------------------------------------

    def add_listener(self, fn: TransitionListener) -> None:
        self._listeners.append(fn)

    def add_instance(self, instance_id: str, now: float | None = None) -> Instance:
        now = self._now(now)
        with self._lock:
            inst = self._instances.get(instance_id)
            if inst is None:
                inst = Instance(id=instance_id, created_at=now, last_transition_time=now)
                self._instances[instance_id] = inst
            return inst

    def mark_started(self, instance_id: str, now: float | None = None) -> TransitionEvent | None:
        """Creation confirmed: Unknown -> Starting and schedule the startup probe."""
        now = self._now(now)
        inst = self._get(instance_id)
        with inst.lock:
            if inst.phase is not Phase.UNKNOWN:
                return None
            inst.started_at = now
            inst.next_due = {ProbeKind.STARTUP: now + self.probes.startup.initial_delay}
            ev = self._transition(inst, Phase.STARTING, "created", now)
        return self._notify(ev)

    def remove(self, instance_id: str) -> None:
        with self._lock:
            self._instances.pop(instance_id, None)

    def get(self, instance_id: str) -> Instance | None:
        with self._lock:
            inst = self._instances.get(instance_id)
        if inst is None:
            return None
        with inst.lock:
            return inst.copy()

    def snapshot(self) -> dict[str, Instance]:
        with self._lock:
            instances = list(self._instances.values())
        out: dict[str, Instance] = {}
        for inst in instances:
            with inst.lock:
                out[inst.id] = inst.copy()
        return out

    def ready_ids(self) -> frozenset[str]:
        """Traffic- and metrics-eligible instances."""
        return frozenset(i.id for i in self.snapshot().values() if i.phase is Phase.READY)

    def drain_events(self) -> list[TransitionEvent]:
        with self._lock:
            events, self._events = self._events, []
        return events

    # -- probing ------------------------------------------------------------------

    def due_checks(self, now: float | None = None) -> list[tuple[str, ProbeKind]]:
        """Checks whose schedule has come up. Returned checks are rescheduled one interval ahead."""
        now = self._now(now)
        with self._lock:
            instances = list(self._instances.values())
        due: list[tuple[str, ProbeKind]] = []
        for inst in instances:
            with inst.lock:
                for kind in _ACTIVE_PROBES.get(inst.phase, ()):
                    at = inst.next_due.get(kind)
                    if at is None or at > now:
                        continue
                    inst.next_due[kind] = now + self.probes.for_kind(kind).interval
                    due.append((inst.id, kind))
        return due

    def record_outcome(
        self,
        instance_id: str,
        kind: ProbeKind,
        outcome: Outcome,
        now: float | None = None,
    ) -> TransitionEvent | None:
        """Apply one probe result. Returns the transition it caused, if any."""
        now = self._now(now)
        inst = self._get(instance_id)
        with inst.lock:
            ev = self._apply(inst, kind, outcome, now)
        return self._notify(ev)

    def expire_startups(self, now: float | None = None) -> list[TransitionEvent]:
        """Fail instances still Starting after their startup window, even if checks went missing."""
        now = self._now(now)
        window = self.probes.startup.startup_window
        with self._lock:
            instances = list(self._instances.values())
        events: list[TransitionEvent] = []
        for inst in instances:
            with inst.lock:
                if inst.phase is not Phase.STARTING or inst.started_at is None:
                    continue
                if now - inst.started_at >= window:
                    events.append(
                        self._transition(inst, Phase.FAILED, f"startup did not succeed within {window:g}s", now)
                    )
        for ev in events:
            self._notify(ev)
        return events

    # -- internals ----------------------------------------------------------------

    def _now(self, now: float | None) -> float:
        return self._clock() if now is None else now

    def _get(self, instance_id: str) -> Instance:
        with self._lock:
            inst = self._instances.get(instance_id)
        if inst is None:
            raise UnknownInstance(instance_id)
        return inst

    def _apply(self, inst: Instance, kind: ProbeKind, outcome: Outcome, now: float) -> TransitionEvent | None:
        # Caller holds inst.lock.
        if kind not in _ACTIVE_PROBES.get(inst.phase, ()):
            return None

        cfg = self.probes.for_kind(kind)
        counter = inst.counters[kind]
        counter.record(outcome.ok)

        if inst.phase is Phase.STARTING:
            if counter.successes >= cfg.success_threshold:
                return self._transition(inst, Phase.READY, "startup probe succeeded", now)
            if counter.failures >= cfg.failure_threshold:
                return self._transition(inst, Phase.FAILED, f"startup probe failed {counter.failures} times", now)
            return None

        if kind is ProbeKind.LIVENESS:
            if counter.failures >= cfg.failure_threshold:
                return self._transition(inst, Phase.FAILED, f"liveness probe failed {counter.failures} times", now)
            return None

        if inst.phase is Phase.READY and counter.failures >= cfg.failure_threshold:
            return self._transition(inst, Phase.UNHEALTHY, f"readiness probe failed {counter.failures} times", now)
        if inst.phase is Phase.UNHEALTHY and counter.successes >= cfg.success_threshold:
            return self._transition(inst, Phase.READY, "readiness probe recovered", now)
        return None

    def _notify(self, ev: TransitionEvent | None) -> TransitionEvent | None:
        # Runs after inst.lock is released; listeners may read the machine back.
        if ev is not None:
            for fn in self._listeners:
                fn(ev)
        return ev

    def _transition(self, inst: Instance, to: Phase, reason: str, now: float) -> TransitionEvent:
        # Caller holds inst.lock.
        ev = TransitionEvent(
            instance_id=inst.id, from_phase=inst.phase, to_phase=to, reason=reason, timestamp=now
        )
        inst.phase = to
        inst.last_transition_time = now

        if to is Phase.READY:
            inst.ready_since = now
            if ev.from_phase is Phase.STARTING:
                for c in inst.counters.values():
                    c.reset()
                started = inst.started_at if inst.started_at is not None else now
                inst.next_due = {
                    k: max(now, started + self.probes.for_kind(k).initial_delay)
                    for k in (ProbeKind.READINESS, ProbeKind.LIVENESS)
                }
            else:
                inst.counters[ProbeKind.READINESS].reset()
        elif to is Phase.UNHEALTHY:
            # Liveness keeps its streak across readiness flips.
            inst.counters[ProbeKind.READINESS].reset()
            inst.ready_since = None
        elif to is Phase.FAILED:
            inst.ready_since = None
            inst.next_due = {}

        with self._lock:
            self._events.append(ev)
        return ev
