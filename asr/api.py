from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Callable

from fastapi import FastAPI, HTTPException, Query

from . import db
from .api_models import (
    AggregateOut,
    DegradedIntentOut,
    InstanceOut,
    RouteOut,
    ScalingIntentOut,
    StatusOut,
)
from .config import load_config
from .gateway import NoReadyBackends, select_backend
from .models import Instance, ProbeKind
from .reconciler import Reconciler, docker_reconciler
from .settings import settings


def _instance_out(inst: Instance, terminating: frozenset[str]) -> InstanceOut:
    return InstanceOut(
        id=inst.id,
        phase=inst.phase.value,
        last_transition_time=inst.last_transition_time,
        ready_since=inst.ready_since,
        startup_failures=inst.counters[ProbeKind.STARTUP].failures,
        readiness_failures=inst.counters[ProbeKind.READINESS].failures,
        liveness_failures=inst.counters[ProbeKind.LIVENESS].failures,
        terminating=inst.id in terminating,
    )


def _default_reconciler() -> Reconciler:
    return docker_reconciler(load_config(settings.config_path))


def create_app(
    reconciler_factory: Callable[[], Reconciler] = _default_reconciler,
    start_loop: bool = True,
) -> FastAPI:
    """Read-only status API around one reconciler.

    The reconciler is built on startup so importing the module has no side effects.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        db.init_db()
        rec = reconciler_factory()
        app.state.reconciler = rec
        if start_loop:
            rec.start()
        try:
            yield
        finally:
            rec.stop()

    app = FastAPI(title="Autoscaling Service Reconciler", lifespan=lifespan)

    def _rec() -> Reconciler:
        return app.state.reconciler

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "healthy"}

    @app.get("/status", response_model=StatusOut)
    def status() -> StatusOut:
        rec = _rec()
        snap = rec.runtime.snapshot()
        terminating = rec.controller.terminating()
        instances = sorted(rec.machine.snapshot().values(), key=lambda i: i.created_at)
        agg = snap.last_aggregate
        last = snap.last_scaling_intent
        return StatusOut(
            name=rec.config.name,
            desired_count=rec.state.desired_count,
            min_replicas=rec.config.policy.min_replicas,
            max_replicas=rec.config.policy.max_replicas,
            instances=[_instance_out(i, terminating) for i in instances],
            ready=sorted(rec.machine.ready_ids()),
            last_aggregate=AggregateOut(cpu=agg.cpu, mem=agg.mem, instance_count=agg.instance_count) if agg else None,
            last_decision_reason=snap.last_decision_reason,
            last_scaling_intent=ScalingIntentOut(
                target_replicas=last.target_replicas, previous=last.previous, reason=last.reason, timestamp=last.timestamp
            ) if last else None,
            degraded=[
                DegradedIntentOut(
                    action=r.intent.action.value,
                    instance_id=r.intent.instance_id,
                    failures=r.failures,
                    last_error=r.last_error,
                )
                for r in rec.controller.degraded()
            ],
            ticks=snap.ticks,
            last_error=snap.last_error,
        )

    @app.get("/instances", response_model=list[InstanceOut])
    def instances() -> list[InstanceOut]:
        rec = _rec()
        terminating = rec.controller.terminating()
        return [_instance_out(i, terminating) for i in sorted(rec.machine.snapshot().values(), key=lambda i: i.created_at)]

    @app.get("/events")
    def events(limit: int = Query(100, ge=1, le=1000), instance: str | None = None) -> list[dict[str, Any]]:
        return db.latest_events(limit, instance=instance)

    @app.get("/intents")
    def intents(limit: int = Query(100, ge=1, le=1000)) -> list[dict[str, Any]]:
        return db.latest_intents(limit)

    @app.get("/route", response_model=RouteOut)
    def route() -> RouteOut:
        try:
            target = select_backend(_rec().runtime)
        except NoReadyBackends as e:
            raise HTTPException(status_code=503, detail=str(e))
        return RouteOut(instance_id=target.instance_id, base_url=target.base_url)

    return app
