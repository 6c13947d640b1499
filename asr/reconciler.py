from __future__ import annotations

import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from queue import Empty, Queue
from threading import Event, Lock, Thread, current_thread
from typing import Callable

from . import db
from .alerts import send_email
from .config import ControllerConfig
from .controller import IntentRecord, ReplicaController
from .health import ProbeRunner
from .interfaces import InstanceLifecycle, MetricsSource, ProbeExecutor
from .metrics import MetricsAggregator
from .models import Action, Phase, PodLifecycleIntent, ReplicaSetState, ScalingIntent, TransitionEvent
from .probes import ProbeStateMachine, UnknownInstance
from .runtime import RouteTarget, RuntimeState
from .scaling import ScalingDecisionEngine, ScalingHistory
from .settings import settings


class Reconciler:
    """Fixed-period control loop.

    Each tick: apply confirmations from the orchestrator, start a probe round
    when one is due, (less often) recompute the desired replica count, then
    reconcile desired vs. actual into lifecycle intents. Ticks never overlap;
    intents are dispatched to a worker pool and confirmed on a later tick.

    Probe rounds run on their own worker and feed the state machine as they
    finish, so a round full of hung checks never holds up scaling or
    reconciliation; those read whatever Ready set the last finished round
    left behind. With probe_in_background=False rounds run inline instead.
    """

    def __init__(
        self,
        config: ControllerConfig,
        executor: ProbeExecutor,
        metrics_source: MetricsSource,
        lifecycle: InstanceLifecycle,
        runtime: RuntimeState | None = None,
        base_url: Callable[[str], str] | None = None,
        clock: Callable[[], float] = time.monotonic,
        probe_period_s: float = settings.probe_period_s,
        scale_period_s: float = settings.scale_period_s,
        probe_workers: int = settings.probe_workers,
        lifecycle_workers: int = settings.lifecycle_workers,
        metrics_staleness_s: float = settings.metrics_staleness_s,
        metrics_buffer: int = settings.metrics_buffer,
        backoff_base_s: float = settings.backoff_base_s,
        backoff_max_s: float = settings.backoff_max_s,
        degraded_after: int = settings.degraded_after,
        probe_in_background: bool = True,
    ):
        self.config = config
        self.metrics_source = metrics_source
        self.lifecycle = lifecycle
        self.runtime = runtime or RuntimeState()
        self.base_url = base_url
        self._clock = clock
        self.probe_period_s = float(probe_period_s)
        self.scale_period_s = float(scale_period_s)

        self.machine = ProbeStateMachine(config.probes, clock=clock)
        self.aggregator = MetricsAggregator(metrics_staleness_s, metrics_buffer)
        self.engine = ScalingDecisionEngine()
        self.history = ScalingHistory(config.policy.longest_window)
        self.controller = ReplicaController(backoff_base_s, backoff_max_s, degraded_after)
        self.runner = ProbeRunner(executor, config.probes, probe_workers)
        self.state = ReplicaSetState(desired_count=config.starting_desired)
        self.runtime.update(desired_count=self.state.desired_count)

        # lifecycle_workers=0 runs intents inline; confirmations still arrive on the next tick.
        self._pool = ThreadPoolExecutor(lifecycle_workers, thread_name_prefix="asr-lifecycle") if lifecycle_workers > 0 else None
        self._completions: Queue[tuple[PodLifecycleIntent, str | None]] = Queue()
        self._probe_pool = ThreadPoolExecutor(1, thread_name_prefix="asr-probes") if probe_in_background else None
        self._probe_round: Future | None = None
        self._cycle_lock = Lock()
        self._last_probe: float | None = None
        self._last_scale: float | None = None
        self._stop = Event()
        self._thr: Thread | None = None

        self.machine.add_listener(self._on_transition)

    # -- thread -------------------------------------------------------------------

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._stop.clear()
        self._thr = Thread(target=self._loop, daemon=True, name="asr-reconciler")
        self._thr.start()

    def stop(self, timeout: float | None = None) -> None:
        """Stop the loop, wait for the current tick and probe round, then release the pools."""
        self._stop.set()
        if self._thr is not None and self._thr is not current_thread():
            self._thr.join(timeout)
        self.join_probes(timeout)
        if self._pool is not None:
            self._pool.shutdown(wait=False)
        if self._probe_pool is not None:
            self._probe_pool.shutdown(wait=False)

    def join_probes(self, timeout: float | None = None) -> None:
        """Block until the probe round in flight (if any) has been applied."""
        fut = self._probe_round
        if fut is not None:
            wait([fut], timeout)
            self._reap_probe_round()

    def _loop(self) -> None:
        db.log_event("INFO", f"Reconciler started for '{self.config.name}'")
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception as e:
                msg = f"Reconciler tick failed: {type(e).__name__}: {e}"
                self.runtime.update(last_error=msg)
                db.log_event("ERROR", msg)
            self._stop.wait(max(0.1, settings.tick_s))

    # -- cycles -------------------------------------------------------------------

    def tick(self, now: float | None = None) -> list[PodLifecycleIntent]:
        with self._cycle_lock:
            now = self._clock() if now is None else now
            self.apply_completions(now)
            self._reap_probe_round()
            if self._last_probe is None or now - self._last_probe >= self.probe_period_s:
                self._start_probe_round(now)
            if self._last_scale is None or now - self._last_scale >= self.scale_period_s:
                self._last_scale = now
                self.scale_cycle(now)
            intents = self.reconcile_cycle(now)
            self._rebuild_routing()
            self.runtime.update(ticks=self.runtime.status.ticks + 1)
            return intents

    def probe_cycle(self, now: float) -> None:
        checks = self.machine.due_checks(now)
        for r in self.runner.run_sync(checks):
            try:
                self.machine.record_outcome(r.instance_id, r.kind, r.outcome, now)
            except UnknownInstance:
                # Terminated while the check was in flight.
                continue
        self.machine.expire_startups(now)

    def _start_probe_round(self, now: float) -> None:
        if self._probe_pool is None:
            self._last_probe = now
            self.probe_cycle(now)
            return
        if self._probe_round is not None:
            # Previous round still waiting on timeouts; try again next tick.
            return
        self._last_probe = now
        self._probe_round = self._probe_pool.submit(self.probe_cycle, now)

    def _reap_probe_round(self) -> None:
        fut = self._probe_round
        if fut is None or not fut.done():
            return
        self._probe_round = None
        error = _error_of(fut)
        if error is not None:
            msg = f"Probe round failed: {error}"
            self.runtime.update(last_error=msg)
            db.log_event("ERROR", msg)

    def scale_cycle(self, now: float) -> ScalingIntent | None:
        ready = self.machine.ready_ids()
        self.aggregator.collect(self.metrics_source, ready, now)
        aggregate = self.aggregator.aggregate(ready, now)
        policy = self.config.policy
        previous = self.state.desired_count
        decision = self.engine.evaluate(aggregate, policy, previous, self.history, now)
        self.runtime.update(last_aggregate=aggregate, last_decision_reason=decision.reason)
        if decision.desired == previous:
            return None

        self.state.desired_count = decision.desired
        intent = ScalingIntent(decision.desired, previous, decision.reason, now)
        self.runtime.update(desired_count=decision.desired)
        self.runtime.record_scaling(intent)
        db.record_intent("scaling", "scale", "issued", target_replicas=decision.desired, detail=decision.reason)
        db.log_event("INFO", f"Desired replicas {previous} -> {decision.desired} ({decision.reason})")
        return intent

    def reconcile_cycle(self, now: float) -> list[PodLifecycleIntent]:
        events = self.machine.drain_events()
        self.state.instances = self.machine.snapshot()
        intents = self.controller.reconcile(self.state, events, now)
        for intent in intents:
            self._dispatch(intent, now)
        return intents

    def apply_completions(self, now: float) -> None:
        while True:
            try:
                intent, error = self._completions.get_nowait()
            except Empty:
                return
            if error is None:
                self._on_intent_succeeded(intent, now)
            else:
                self._on_intent_failed(intent, error, now)

    def adopt(self, instance_ids: list[str], now: float | None = None) -> list[str]:
        """Take over instances that already exist, e.g. containers left by a previous run.

        They start in Starting and must pass the startup probe like any new
        instance. Any surplus over the desired count is removed by the normal
        scale-down path.
        """
        now = self._clock() if now is None else now
        known = self.machine.snapshot()
        adopted = []
        for instance_id in instance_ids:
            if not instance_id or instance_id in known:
                continue
            self.machine.add_instance(instance_id, now)
            self.machine.mark_started(instance_id, now)
            db.log_event("INFO", "Adopted existing instance", instance=instance_id)
            adopted.append(instance_id)
        return adopted

    # -- intents ------------------------------------------------------------------

    def _dispatch(self, intent: PodLifecycleIntent, now: float) -> None:
        if intent.action is Action.CREATE:
            self.machine.add_instance(intent.instance_id, now)
            fn = self.lifecycle.create
        else:
            fn = self.lifecycle.terminate
        db.record_intent("lifecycle", intent.action.value, "issued", instance=intent.instance_id, detail=intent.reason)

        if self._pool is None:
            try:
                fn(intent.instance_id)
            except Exception as e:
                self._completions.put((intent, f"{type(e).__name__}: {e}"))
            else:
                self._completions.put((intent, None))
            return

        fut = self._pool.submit(fn, intent.instance_id)
        fut.add_done_callback(lambda f, i=intent: self._completions.put((i, _error_of(f))))

    def _on_intent_succeeded(self, intent: PodLifecycleIntent, now: float) -> None:
        self.controller.intent_succeeded(intent)
        instance_id = intent.instance_id
        if intent.action is Action.CREATE:
            try:
                self.machine.mark_started(instance_id, now)
            except UnknownInstance:
                # Picked as a scale-down victim and removed before the create landed.
                pass
        else:
            self.machine.remove(instance_id)
            self.aggregator.forget(instance_id)
            self.controller.forget(instance_id)
        db.record_intent("lifecycle", intent.action.value, "succeeded", instance=instance_id)

    def _on_intent_failed(self, intent: PodLifecycleIntent, error: str, now: float) -> None:
        rec = self.controller.intent_failed(intent, now, error)
        db.record_intent("lifecycle", intent.action.value, "failed", instance=intent.instance_id, detail=error)
        if rec is None:
            return
        db.log_event(
            "WARN",
            f"{intent.action.value} failed (attempt {rec.attempts}); retry in {self.controller.backoff_for(rec.failures):g}s: {error}",
            instance=intent.instance_id,
        )
        if rec.degraded and rec.failures == self.controller.degraded_after:
            self._report_degraded(rec)

    def _report_degraded(self, rec: IntentRecord) -> None:
        intent = rec.intent
        msg = f"{intent.action.value} degraded after {rec.failures} consecutive failures: {rec.last_error}"
        db.record_intent("lifecycle", intent.action.value, "degraded", instance=intent.instance_id, detail=rec.last_error)
        db.log_event("ERROR", msg, instance=intent.instance_id)
        send_email(f"DEGRADED: {self.config.name} {intent.action.value} {intent.instance_id}", msg)

    # -- observability ------------------------------------------------------------

    def _on_transition(self, ev: TransitionEvent) -> None:
        level = "INFO"
        if ev.to_phase is Phase.UNHEALTHY:
            level = "WARN"
        elif ev.to_phase is Phase.FAILED:
            level = "ERROR"
        db.log_event(level, f"{ev.from_phase.value} -> {ev.to_phase.value}: {ev.reason}", instance=ev.instance_id)
        if ev.to_phase is Phase.FAILED:
            send_email(
                f"FAILED: {self.config.name} instance {ev.instance_id}",
                f"Replica set: {self.config.name}\nInstance: {ev.instance_id}\nDetail: {ev.reason}\nA replacement will be created.",
            )

    def _rebuild_routing(self) -> None:
        if self.base_url is None:
            return
        self.runtime.set_targets(
            [RouteTarget(instance_id=i, base_url=self.base_url(i)) for i in sorted(self.machine.ready_ids())]
        )


def _error_of(fut: Future) -> str | None:
    exc = fut.exception()
    if exc is None:
        return None
    return f"{type(exc).__name__}: {exc}"


def docker_reconciler(config: ControllerConfig, runtime: RuntimeState | None = None) -> Reconciler:
    """Reconciler wired to the local Docker daemon and HTTP probes."""
    from .docker_ops import DockerLifecycle, DockerMetricsSource, docker_available
    from .health import HttpProbeExecutor

    lifecycle = DockerLifecycle(config.name, config.target)
    rec = Reconciler(
        config,
        executor=HttpProbeExecutor(config.probes, lifecycle.base_url),
        metrics_source=DockerMetricsSource(config.name),
        lifecycle=lifecycle,
        runtime=runtime,
        base_url=lifecycle.base_url,
    )
    if docker_available():
        rec.adopt(lifecycle.list_instance_ids())
    else:
        db.log_event("WARN", "Docker daemon not reachable; existing containers were not adopted")
    return rec
