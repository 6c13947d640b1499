from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Callable, Iterable

from .models import Action, Instance, Phase, PodLifecycleIntent, ReplicaSetState, TransitionEvent


def new_instance_id() -> str:
    return secrets.token_hex(4)


@dataclass
class IntentRecord:
    intent: PodLifecycleIntent
    in_flight: bool = True
    attempts: int = 0
    failures: int = 0
    next_attempt_at: float = 0.0
    degraded: bool = False
    last_error: str = ""


class ReplicaController:
    """Reconciles desired vs. actual into create/terminate intents.

    Intents are fire-and-confirm: an emitted intent stays in flight until the
    caller reports intent_succeeded() or intent_failed(). In-flight intents are
    never emitted twice, which makes reconcile() idempotent.
    """

    def __init__(
        self,
        backoff_base_s: float = 1.0,
        backoff_max_s: float = 60.0,
        degraded_after: int = 5,
        id_factory: Callable[[], str] = new_instance_id,
    ):
        self.backoff_base_s = max(0.0, float(backoff_base_s))
        self.backoff_max_s = max(self.backoff_base_s, float(backoff_max_s))
        self.degraded_after = max(1, int(degraded_after))
        self._new_id = id_factory
        self._creates: dict[str, IntentRecord] = {}
        self._terminates: dict[str, IntentRecord] = {}

    # -- reconciliation -----------------------------------------------------------

    def reconcile(
        self,
        state: ReplicaSetState,
        events: Iterable[TransitionEvent] = (),
        now: float = 0.0,
    ) -> list[PodLifecycleIntent]:
        intents: list[PodLifecycleIntent] = []
        instances = state.instances

        failed = {e.instance_id for e in events if e.to_phase is Phase.FAILED}
        failed.update(i.id for i in instances.values() if i.phase is Phase.FAILED)
        for instance_id in sorted(failed):
            if instance_id in instances:
                self._queue_terminate(instance_id, "instance failed", intents)

        live = [
            i for i in instances.values()
            if i.phase is not Phase.FAILED and i.id not in self._terminates
        ]
        pending_creates = [i for i in self._creates if i not in instances]
        diff = state.desired_count - (len(live) + len(pending_creates))

        if diff > 0:
            for _ in range(diff):
                instance_id = self._new_id()
                while instance_id in instances or instance_id in self._creates:
                    instance_id = self._new_id()
                intent = PodLifecycleIntent(Action.CREATE, instance_id, "scale up")
                self._creates[instance_id] = IntentRecord(intent, attempts=1)
                intents.append(intent)
        elif diff < 0:
            # Never race a terminate against a create still in flight.
            candidates = [
                i for i in live
                if not (i.id in self._creates and self._creates[i.id].in_flight)
            ]
            for victim in self.pick_victims(candidates, -diff):
                self._queue_terminate(victim.id, "scale down", intents)

        intents.extend(self._due_retries(now))
        return intents

    @staticmethod
    def pick_victims(live: list[Instance], n: int) -> list[Instance]:
        """Unhealthy first, then instances not yet ready (newest first), then oldest Ready.

        Replicas that are not serving go before ones that are. The most
        recently Ready instance is never picked.
        """
        if n <= 0:
            return []
        unhealthy = sorted(
            (i for i in live if i.phase is Phase.UNHEALTHY), key=lambda i: i.last_transition_time
        )
        ready = sorted(
            (i for i in live if i.phase is Phase.READY), key=lambda i: (i.ready_since or 0.0, i.id)
        )
        if ready:
            ready = ready[:-1]
        not_ready = sorted(
            (i for i in live if i.phase in {Phase.UNKNOWN, Phase.STARTING}),
            key=lambda i: i.created_at,
            reverse=True,
        )
        return (unhealthy + not_ready + ready)[:n]

    # -- confirmations ------------------------------------------------------------

    def intent_succeeded(self, intent: PodLifecycleIntent) -> None:
        # From here on the replica set state is the source of truth for this instance.
        self._records(intent.action).pop(intent.instance_id, None)

    def intent_failed(self, intent: PodLifecycleIntent, now: float, error: str = "") -> IntentRecord | None:
        rec = self._records(intent.action).get(intent.instance_id)
        if rec is None:
            return None
        rec.in_flight = False
        rec.failures += 1
        rec.last_error = error
        rec.next_attempt_at = now + self.backoff_for(rec.failures)
        if rec.failures >= self.degraded_after:
            rec.degraded = True
        return rec

    def forget(self, instance_id: str) -> None:
        """Drop all bookkeeping for an instance that no longer exists."""
        self._creates.pop(instance_id, None)
        self._terminates.pop(instance_id, None)

    def backoff_for(self, failures: int) -> float:
        if failures <= 0:
            return 0.0
        return min(self.backoff_max_s, self.backoff_base_s * (2 ** (failures - 1)))

    # -- introspection ------------------------------------------------------------

    def degraded(self) -> list[IntentRecord]:
        return [r for r in self._all() if r.degraded]

    def pending(self) -> list[IntentRecord]:
        return list(self._all())

    def terminating(self) -> frozenset[str]:
        return frozenset(self._terminates)

    # -- internals ----------------------------------------------------------------

    def _records(self, action: Action) -> dict[str, IntentRecord]:
        return self._creates if action is Action.CREATE else self._terminates

    def _all(self) -> Iterable[IntentRecord]:
        yield from self._creates.values()
        yield from self._terminates.values()

    def _queue_terminate(self, instance_id: str, reason: str, out: list[PodLifecycleIntent]) -> None:
        if instance_id in self._terminates:
            return
        # A pending create for the same id is moot once we decide to remove it.
        self._creates.pop(instance_id, None)
        intent = PodLifecycleIntent(Action.TERMINATE, instance_id, reason)
        self._terminates[instance_id] = IntentRecord(intent, attempts=1)
        out.append(intent)

    def _due_retries(self, now: float) -> list[PodLifecycleIntent]:
        out: list[PodLifecycleIntent] = []
        for rec in self._all():
            if rec.in_flight or rec.next_attempt_at > now:
                continue
            rec.in_flight = True
            rec.attempts += 1
            out.append(rec.intent)
        return out
